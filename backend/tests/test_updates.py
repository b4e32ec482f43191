from __future__ import annotations

from chat_relay.updates import extract_phone_number, parse_cloud_webhook, parse_team_update, parse_waha_webhook


def _cloud_payload(value: dict) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}],
    }


def test_parse_cloud_text_message_with_quote() -> None:
    update = parse_cloud_webhook(
        _cloud_payload(
            {
                "messages": [
                    {
                        "id": "wamid.M1",
                        "from": "15551234567",
                        "type": "text",
                        "text": {"body": "hello there"},
                        "context": {"id": "wamid.M0"},
                    }
                ]
            }
        )
    )

    assert update is not None
    assert update.channel == "cloud"
    assert update.event_id == "wamid.M1"
    assert update.address == "15551234567"
    assert update.kind == "text"
    assert update.text == "hello there"
    assert update.reply_to == "wamid.M0"


def test_parse_cloud_image_keeps_media_reference_and_caption() -> None:
    update = parse_cloud_webhook(
        _cloud_payload(
            {
                "messages": [
                    {
                        "id": "wamid.IMG",
                        "from": "15551234567",
                        "type": "image",
                        "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "receipt"},
                    }
                ]
            }
        )
    )

    assert update is not None
    assert update.kind == "image"
    assert update.media_ref == "media-1"
    assert update.mime_type == "image/jpeg"
    assert update.caption == "receipt"


def test_parse_cloud_interactive_reply_becomes_text() -> None:
    update = parse_cloud_webhook(
        _cloud_payload(
            {
                "messages": [
                    {
                        "id": "wamid.BTN",
                        "from": "15551234567",
                        "type": "interactive",
                        "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Yes please"}},
                    }
                ]
            }
        )
    )

    assert update is not None
    assert update.kind == "text"
    assert update.text == "Yes please"


def test_parse_cloud_status_is_tagged_as_status() -> None:
    update = parse_cloud_webhook(
        _cloud_payload({"statuses": [{"id": "wamid.OUT", "status": "read", "recipient_id": "15551234567"}]})
    )

    assert update is not None
    assert update.kind == "status"
    assert update.event_id == "wamid.OUT"


def test_parse_cloud_ignores_other_fields_and_garbage() -> None:
    assert parse_cloud_webhook({"entry": [{"changes": [{"field": "account_update", "value": {}}]}]}) is None
    assert parse_cloud_webhook({"entry": "nope"}) is None
    assert parse_cloud_webhook({}) is None


def test_parse_waha_text_message() -> None:
    update = parse_waha_webhook(
        {
            "event": "message",
            "session": "default",
            "payload": {
                "id": "false_15551234567@c.us_AAA",
                "from": "15551234567@c.us",
                "fromMe": False,
                "body": "hi from the gateway",
                "hasMedia": False,
            },
        }
    )

    assert update is not None
    assert update.channel == "waha"
    assert update.address == "15551234567"
    assert update.kind == "text"
    assert update.text == "hi from the gateway"


def test_parse_waha_media_kind_follows_mime_prefix() -> None:
    update = parse_waha_webhook(
        {
            "event": "message",
            "payload": {
                "id": "false_1@c.us_V",
                "from": "1@c.us",
                "body": "look",
                "hasMedia": True,
                "media": {"url": "http://waha/api/files/v.mp4", "mimetype": "video/mp4"},
            },
        }
    )

    assert update is not None
    assert update.kind == "video"
    assert update.media_ref == "http://waha/api/files/v.mp4"
    assert update.caption == "look"
    assert update.text is None


def test_parse_waha_vcard_contact() -> None:
    update = parse_waha_webhook(
        {
            "event": "message",
            "payload": {
                "id": "false_1@c.us_C",
                "from": "1@c.us",
                "body": "",
                "vCards": ["BEGIN:VCARD\nVERSION:3.0\nFN:Jane Roe\nTEL;type=CELL:+1 555 0100\nEND:VCARD"],
            },
        }
    )

    assert update is not None
    assert update.kind == "contacts"
    assert update.contacts == [{"name": {"formatted_name": "Jane Roe"}, "phones": [{"phone": "+1 555 0100"}]}]


def test_parse_waha_skips_own_messages_and_maps_acks() -> None:
    own = parse_waha_webhook(
        {"event": "message", "payload": {"id": "true_1@c.us_X", "from": "1@c.us", "fromMe": True, "body": "x"}}
    )
    ack = parse_waha_webhook({"event": "message.ack", "payload": {"id": "true_1@c.us_X", "to": "1@c.us", "ack": 3}})

    assert own is None
    assert ack is not None
    assert ack.kind == "status"
    assert ack.address == "1"


def test_extract_phone_number() -> None:
    assert extract_phone_number("15551234567@c.us") == "15551234567"
    assert extract_phone_number("15551234567") == "15551234567"


def test_parse_team_text_post_in_thread() -> None:
    post = parse_team_update(
        {
            "update_id": 1,
            "message": {
                "message_id": 501,
                "message_thread_id": 77,
                "is_topic_message": True,
                "from": {"id": 9, "is_bot": False},
                "text": "on it",
                "reply_to_message": {"message_id": 480},
            },
        }
    )

    assert post is not None
    assert post.message_id == "501"
    assert post.thread_ref == "77"
    assert post.kind == "text"
    assert post.reply_to_message_id == "480"
    assert post.edited is False
    assert post.from_bot is False


def test_parse_team_reply_to_thread_root_is_not_a_quote() -> None:
    post = parse_team_update(
        {
            "message": {
                "message_id": 502,
                "message_thread_id": 77,
                "text": "plain reply",
                "reply_to_message": {"message_id": 77},
            }
        }
    )

    assert post is not None
    assert post.reply_to_message_id is None


def test_parse_team_edit_and_media_posts() -> None:
    edited = parse_team_update(
        {"edited_message": {"message_id": 501, "message_thread_id": 77, "text": "fixed", "edit_date": 1700000000}}
    )
    photo = parse_team_update(
        {
            "message": {
                "message_id": 503,
                "message_thread_id": 77,
                "photo": [{"file_id": "small"}, {"file_id": "large"}],
                "caption": "see attached",
            }
        }
    )
    sticker = parse_team_update(
        {"message": {"message_id": 504, "message_thread_id": 77, "sticker": {"file_id": "st", "emoji": "👍"}}}
    )

    assert edited is not None and edited.edited is True and edited.edit_date == 1700000000
    assert photo is not None and photo.kind == "image" and photo.file_ref == "large"
    assert sticker is not None and sticker.kind == "sticker" and sticker.sticker_emoji == "👍"


def test_parse_team_ignores_updates_without_content() -> None:
    assert parse_team_update({"callback_query": {}}) is None
    assert parse_team_update({"message": {"message_id": 1, "message_thread_id": 2}}) is None
