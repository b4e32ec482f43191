from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .config import Settings
from .dedup import DedupGate, create_dedup_gate
from .delivery import DeliveryEngine, DeliveryJob
from .identities import CustomerIdentity, IdentityRepository, create_identity_repository
from .jobs import JobQueue, create_job_queue
from .ledger import LedgerConflictError, MessageLedger, create_message_ledger
from .models import TEAM_CHANNEL
from .providers import (
    ChannelProvider,
    ConfigurationMissingError,
    MediaTransferError,
    OutboundPayload,
    ProviderRegistry,
    Sent,
    mask_contact_target,
)
from .team import HttpTeamChatClient, TeamChatClient
from .threads import ThreadLifecycleManager
from .updates import InboundUpdate, ThreadPost

logger = logging.getLogger(__name__)

IGNORED_INBOUND_KINDS = frozenset({"status", "reaction"})
EDIT_PREFIX = "✏️ "
DEFAULT_STICKER_EMOJI = "🙂"


@dataclass(frozen=True)
class BuiltPayload:
    payload: OutboundPayload
    cleanup_paths: tuple[str, ...] = ()


def format_contact(name: str | None, phone: str | None) -> str:
    return f"Contact:\nName: {name or '-'}\nPhone: {phone or '-'}"


def _inbound_contacts_text(contacts: list[dict[str, Any]] | None) -> str | None:
    blocks: list[str] = []
    for contact in contacts or []:
        name_block = contact.get("name") if isinstance(contact.get("name"), dict) else {}
        phones = contact.get("phones") if isinstance(contact.get("phones"), list) else []
        phone = phones[0].get("phone") if phones and isinstance(phones[0], dict) else None
        blocks.append(format_contact(name_block.get("formatted_name"), phone))
    return "\n\n".join(blocks) or None


# Customer channel -> team thread.

InboundBuilder = Callable[[InboundUpdate, ChannelProvider], BuiltPayload | None]


def _build_team_text(update: InboundUpdate, provider: ChannelProvider) -> BuiltPayload | None:
    if not update.text:
        return None
    return BuiltPayload(OutboundPayload(kind="text", text=update.text))


def _team_media_builder(kind: str) -> InboundBuilder:
    def build(update: InboundUpdate, provider: ChannelProvider) -> BuiltPayload | None:
        if not update.media_ref:
            logger.warning("inbound %s %s carries no media reference, dropping", update.kind, update.event_id)
            return None
        local_file = provider.download_media(update.media_ref, update.filename)
        if local_file is None:
            logger.warning("media download failed for inbound %s %s, dropping", update.kind, update.event_id)
            return None
        payload = OutboundPayload(
            kind=kind,
            local_path=str(local_file.path),
            mime_type=local_file.mime_type or update.mime_type,
            caption=update.caption,
            filename=update.filename,
        )
        return BuiltPayload(payload, cleanup_paths=(str(local_file.path),))

    return build


def _build_team_location(update: InboundUpdate, provider: ChannelProvider) -> BuiltPayload | None:
    location = update.location or {}
    if location.get("latitude") is None or location.get("longitude") is None:
        return None
    return BuiltPayload(
        OutboundPayload(
            kind="location",
            latitude=float(location["latitude"]),
            longitude=float(location["longitude"]),
        )
    )


def _build_team_contacts(update: InboundUpdate, provider: ChannelProvider) -> BuiltPayload | None:
    text = _inbound_contacts_text(update.contacts)
    if text is None:
        return None
    return BuiltPayload(OutboundPayload(kind="text", text=text))


TEAM_BUILDERS: dict[str, InboundBuilder] = {
    "text": _build_team_text,
    "image": _team_media_builder("image"),
    "document": _team_media_builder("document"),
    "video": _team_media_builder("document"),
    "audio": _team_media_builder("audio"),
    "sticker": _team_media_builder("sticker"),
    "location": _build_team_location,
    "contacts": _build_team_contacts,
}


# Team thread -> customer channel.

OutboundBuilder = Callable[[ThreadPost, str, ChannelProvider, TeamChatClient], BuiltPayload | None]


def _build_channel_text(post: ThreadPost, to: str, provider: ChannelProvider, team: TeamChatClient) -> BuiltPayload | None:
    if not post.text:
        return None
    return BuiltPayload(OutboundPayload(kind="text", to=to, text=post.text))


def _channel_upload_builder(kind: str, default_mime: str) -> OutboundBuilder:
    def build(post: ThreadPost, to: str, provider: ChannelProvider, team: TeamChatClient) -> BuiltPayload | None:
        if not post.file_ref:
            return None
        content = team.download_file(post.file_ref)
        if content is None:
            logger.warning("could not fetch team file for post %s, dropping", post.message_id)
            return None
        mime_type = post.mime_type or default_mime
        try:
            media_id = provider.upload_media(content, mime_type)
        except MediaTransferError as exc:
            logger.warning("media upload failed for post %s: %s", post.message_id, exc)
            return None
        media_url = None if media_id is not None else team.file_url(post.file_ref)
        if media_id is None and media_url is None:
            logger.warning("no media reference available for post %s, dropping", post.message_id)
            return None
        payload = OutboundPayload(
            kind=kind,
            to=to,
            media_id=media_id,
            media_url=media_url,
            mime_type=mime_type,
            caption=post.caption,
        )
        return BuiltPayload(payload)

    return build


def _build_channel_document(post: ThreadPost, to: str, provider: ChannelProvider, team: TeamChatClient) -> BuiltPayload | None:
    if not post.file_ref:
        return None
    media_url = team.file_url(post.file_ref)
    if media_url is None:
        logger.warning("could not resolve team file for post %s, dropping", post.message_id)
        return None
    return BuiltPayload(
        OutboundPayload(
            kind="document",
            to=to,
            media_url=media_url,
            mime_type=post.mime_type,
            caption=post.caption,
            filename=post.file_name,
        )
    )


def _build_channel_location(post: ThreadPost, to: str, provider: ChannelProvider, team: TeamChatClient) -> BuiltPayload | None:
    location = post.location or {}
    if location.get("latitude") is None or location.get("longitude") is None:
        return None
    return BuiltPayload(
        OutboundPayload(
            kind="location",
            to=to,
            latitude=float(location["latitude"]),
            longitude=float(location["longitude"]),
        )
    )


def _build_channel_sticker(post: ThreadPost, to: str, provider: ChannelProvider, team: TeamChatClient) -> BuiltPayload | None:
    return BuiltPayload(OutboundPayload(kind="text", to=to, text=post.sticker_emoji or DEFAULT_STICKER_EMOJI))


def _build_channel_contact(post: ThreadPost, to: str, provider: ChannelProvider, team: TeamChatClient) -> BuiltPayload | None:
    contact = post.contact or {}
    name = " ".join(part for part in (contact.get("first_name"), contact.get("last_name")) if part)
    return BuiltPayload(OutboundPayload(kind="text", to=to, text=format_contact(name, contact.get("phone_number"))))


CHANNEL_BUILDERS: dict[str, OutboundBuilder] = {
    "text": _build_channel_text,
    "image": _channel_upload_builder("image", "image/jpeg"),
    "audio": _channel_upload_builder("audio", "audio/ogg"),
    "document": _build_channel_document,
    "location": _build_channel_location,
    "sticker": _build_channel_sticker,
    "contacts": _build_channel_contact,
}


def _discard_files(paths: tuple[str, ...]) -> None:
    for raw_path in paths:
        Path(raw_path).unlink(missing_ok=True)


class RelayService:
    def __init__(
        self,
        *,
        settings: Settings,
        dedup: DedupGate,
        identities: IdentityRepository,
        ledger: MessageLedger,
        registry: ProviderRegistry,
        team_client: TeamChatClient,
        threads: ThreadLifecycleManager,
        engine: DeliveryEngine,
        queue: JobQueue,
    ) -> None:
        self.settings = settings
        self.dedup = dedup
        self.identities = identities
        self.ledger = ledger
        self.registry = registry
        self.team_client = team_client
        self.threads = threads
        self.engine = engine
        self.queue = queue

    def reset(self) -> None:
        self.dedup.reset()
        self.ledger.reset()
        self.identities.reset()

    def handle_inbound_update(self, update: InboundUpdate) -> None:
        if not self.dedup.admit(update.channel, update.event_id):
            logger.info("duplicate %s event %s ignored", update.channel, update.event_id)
            return
        if update.kind in IGNORED_INBOUND_KINDS:
            logger.debug("dropping %s event %s of kind %s", update.channel, update.event_id, update.kind)
            return

        try:
            provider = self.registry.resolve(update.channel)
        except ConfigurationMissingError as exc:
            logger.error("cannot relay %s event %s: %s", update.channel, update.event_id, exc)
            return

        provider.mark_read(update.event_id)
        identity = self.identities.get_or_create(channel=update.channel, native_address=update.address)
        if identity.banned:
            self._send_ban_notice(identity, provider)
            return

        builder = TEAM_BUILDERS.get(update.kind)
        if builder is None:
            logger.info("unsupported %s message kind %s for event %s", update.channel, update.kind, update.event_id)
            return
        built = builder(update, provider)
        if built is None:
            return

        payload = built.payload
        if update.reply_to:
            payload = payload.with_reply_to(
                self.ledger.resolve_counterpart(update.reply_to, update.channel, customer_id=identity.customer_id)
            )

        try:
            entry = self.ledger.record_origin(identity.customer_id, "inbound", update.event_id, channel=update.channel)
        except LedgerConflictError:
            logger.info("inbound %s event %s already relayed", update.channel, update.event_id)
            _discard_files(built.cleanup_paths)
            return

        self.engine.submit(
            DeliveryJob(
                customer_id=identity.customer_id,
                target="team",
                payload=payload,
                ledger_entry_id=entry.entry_id,
                origin=update,
                cleanup_paths=built.cleanup_paths,
            )
        )

    def _send_ban_notice(self, identity: CustomerIdentity, provider: ChannelProvider) -> None:
        notice = self.settings.ban_notice_text.strip()
        if not notice:
            return
        result = provider.send_message(OutboundPayload(kind="text", to=identity.native_address, text=notice))
        if not isinstance(result, Sent):
            logger.warning(
                "ban notice to %s was not delivered: %s",
                mask_contact_target(identity.native_address),
                result.message,
            )

    def handle_outbound_reply(self, post: ThreadPost) -> None:
        if post.from_bot or not post.thread_ref:
            return
        identity = self.identities.find_by_thread_ref(post.thread_ref)
        if identity is None:
            logger.info("team post %s in unknown thread %s ignored", post.message_id, post.thread_ref)
            return
        if identity.banned:
            logger.info("customer %s is banned, team post %s not relayed", identity.customer_id, post.message_id)
            return

        try:
            provider = self.registry.resolve(identity.channel)
        except ConfigurationMissingError as exc:
            logger.error("cannot relay team post %s: %s", post.message_id, exc)
            return

        if post.edited:
            text = post.text or post.caption
            if not text:
                return
            origin_id = f"{post.message_id}:edit:{post.edit_date or 0}"
            built: BuiltPayload | None = BuiltPayload(
                OutboundPayload(kind="text", to=identity.native_address, text=f"{EDIT_PREFIX}{text}")
            )
        else:
            origin_id = post.message_id
            builder = CHANNEL_BUILDERS.get(post.kind)
            if builder is None:
                logger.info("unsupported team post kind %s for post %s", post.kind, post.message_id)
                return
            built = builder(post, identity.native_address, provider, self.team_client)
        if built is None:
            return

        payload = built.payload
        if post.reply_to_message_id and not post.edited:
            payload = payload.with_reply_to(
                self.ledger.resolve_counterpart(post.reply_to_message_id, TEAM_CHANNEL, customer_id=identity.customer_id)
            )

        try:
            entry = self.ledger.record_origin(identity.customer_id, "outbound", origin_id, channel=identity.channel)
        except LedgerConflictError:
            logger.info("team post %s already relayed", origin_id)
            return

        self.engine.submit(
            DeliveryJob(
                customer_id=identity.customer_id,
                target="channel",
                payload=payload,
                ledger_entry_id=entry.entry_id,
                origin=post,
                provider=provider,
            )
        )


def build_relay_service(
    settings: Settings,
    *,
    team_client: TeamChatClient | None = None,
    registry: ProviderRegistry | None = None,
    queue: JobQueue | None = None,
    dedup: DedupGate | None = None,
    identities: IdentityRepository | None = None,
    ledger: MessageLedger | None = None,
) -> RelayService:
    queue = queue or create_job_queue(backend=settings.job_queue_backend, pool_size=settings.worker_pool_size)
    dedup = dedup or create_dedup_gate(
        backend=settings.relay_store_backend,
        database_url=settings.database_url,
        ttl_seconds=settings.dedup_ttl_seconds,
    )
    identities = identities or create_identity_repository(
        backend=settings.relay_store_backend,
        database_url=settings.database_url,
    )
    ledger = ledger or create_message_ledger(backend=settings.relay_store_backend, database_url=settings.database_url)
    registry = registry or ProviderRegistry()
    team_client = team_client or HttpTeamChatClient.from_settings(settings)
    threads = ThreadLifecycleManager(
        identities=identities,
        team_client=team_client,
        queue=queue,
        icon_incoming=settings.team_icon_incoming,
        icon_outgoing=settings.team_icon_outgoing,
    )
    engine = DeliveryEngine(
        identities=identities,
        ledger=ledger,
        team_client=team_client,
        threads=threads,
        queue=queue,
        max_attempts=settings.delivery_max_attempts,
        base_retry_seconds=settings.delivery_base_retry_seconds,
    )
    return RelayService(
        settings=settings,
        dedup=dedup,
        identities=identities,
        ledger=ledger,
        registry=registry,
        team_client=team_client,
        threads=threads,
        engine=engine,
        queue=queue,
    )
