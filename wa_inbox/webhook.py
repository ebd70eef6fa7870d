"""
WhatsApp Cloud API webhook processing.

Deliveries are at-least-once and may arrive out of order. Each event is
applied on its own: a failure is logged, the session rolled back, and the
remaining events still run.
"""

import hmac
import logging
from dataclasses import dataclass, asdict
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_inbox.metrics import record_webhook_event
from wa_inbox.schemas import (
    MESSAGES_FIELD,
    WHATSAPP_OBJECT,
    ChangeMetadata,
    InboundMessageEvent,
    MessagesChangeValue,
    StatusEvent,
    WebhookEnvelope,
)
from wa_inbox.storage import create_inbound_message, get_or_create_contact, update_message_status
from wa_inbox.tenants import TenantResolver
from wa_inbox.utils import parse_unix_timestamp

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    expected_token: str,
) -> bool:
    """Subscription handshake: mode must be 'subscribe' and the token must match."""
    if mode != SUBSCRIBE_MODE or token is None:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8"))


@dataclass
class ProcessingSummary:
    """Per-delivery counters, logged with the request and fed to metrics."""
    messages_stored: int = 0
    duplicates: int = 0
    statuses_applied: int = 0
    statuses_unmatched: int = 0
    dropped: int = 0
    failed: int = 0

    def as_log_fields(self) -> dict:
        return asdict(self)


class WebhookProcessor:
    """Applies one webhook delivery to the record store."""

    def __init__(self, db: Session, resolver: TenantResolver):
        self.db = db
        self.resolver = resolver

    def process(self, envelope: WebhookEnvelope) -> ProcessingSummary:
        summary = ProcessingSummary()

        if envelope.object != WHATSAPP_OBJECT:
            logger.info(f"Ignoring webhook for object '{envelope.object}'")
            record_webhook_event("delivery", "ignored")
            return summary

        for entry in envelope.entry:
            for change in entry.changes:
                if change.field != MESSAGES_FIELD:
                    logger.debug(f"Skipping change with field '{change.field}'")
                    continue

                try:
                    value = MessagesChangeValue.model_validate(change.value)
                except ValidationError as e:
                    logger.error(f"Invalid messages change in entry {entry.id}: {e}")
                    summary.failed += 1
                    record_webhook_event("change", "failed")
                    continue

                for raw_message in value.messages:
                    self._apply(summary, "message", raw_message, entry.id, value.metadata)
                for raw_status in value.statuses:
                    self._apply(summary, "status", raw_status, entry.id, value.metadata)

        return summary

    def _apply(
        self,
        summary: ProcessingSummary,
        kind: str,
        raw: Any,
        entry_id: Optional[str],
        metadata: ChangeMetadata,
    ) -> None:
        event_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            if not isinstance(raw, dict):
                logger.error(f"Invalid {kind} event: expected an object, got {type(raw).__name__}")
                result = "failed"
            elif kind == "message":
                result = self.handle_message(InboundMessageEvent.model_validate(raw), entry_id, metadata)
            else:
                result = self.handle_status(StatusEvent.model_validate(raw), entry_id, metadata)
        except ValidationError as e:
            logger.error(f"Invalid {kind} event {event_id}: {e}")
            result = "failed"
        except (SQLAlchemyError, LookupError) as e:
            self.db.rollback()
            logger.error(f"Failed to apply {kind} event {event_id}: {e}")
            result = "failed"
        except Exception:
            self.db.rollback()
            logger.exception(f"Unexpected error applying {kind} event {event_id}")
            result = "failed"

        record_webhook_event(kind, result)
        if result == "stored":
            summary.messages_stored += 1
        elif result == "duplicate":
            summary.duplicates += 1
        elif result == "applied":
            summary.statuses_applied += 1
        elif result == "unmatched":
            summary.statuses_unmatched += 1
        elif result == "dropped":
            summary.dropped += 1
        else:
            summary.failed += 1

    def handle_message(
        self,
        event: InboundMessageEvent,
        entry_id: Optional[str],
        metadata: ChangeMetadata,
    ) -> str:
        """Store one inbound message, creating the sender's contact on first contact."""
        profile = self.resolver.resolve(self.db, entry_id, metadata)
        if profile is None:
            logger.warning(
                f"No profile for phone_number_id {metadata.phone_number_id}, dropping message {event.id}"
            )
            return "dropped"

        contact, created = get_or_create_contact(self.db, profile.id, event.from_id)
        if created:
            logger.info(f"New contact {event.from_id} for profile {profile.id}")

        _, is_duplicate = create_inbound_message(
            self.db,
            user_id=profile.id,
            contact_id=contact.id,
            message_id=event.id,
            content=event.content,
            message_type=event.type,
            timestamp=parse_unix_timestamp(event.timestamp),
        )
        return "duplicate" if is_duplicate else "stored"

    def handle_status(
        self,
        event: StatusEvent,
        entry_id: Optional[str],
        metadata: ChangeMetadata,
    ) -> str:
        """Apply a delivery status to the matching stored message, if there is one."""
        profile = self.resolver.resolve(self.db, entry_id, metadata)
        if profile is None:
            logger.warning(
                f"No profile for phone_number_id {metadata.phone_number_id}, dropping status for {event.id}"
            )
            return "dropped"

        found = update_message_status(
            self.db,
            user_id=profile.id,
            message_id=event.id,
            status=event.status,
            timestamp=parse_unix_timestamp(event.timestamp),
        )
        return "applied" if found else "unmatched"
