from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from leadflow.models import CampaignRecipientRecord, DeliveryStatus, utc_now
from leadflow.store import InMemoryStore

logger = logging.getLogger("leadflow.delivery")

ALLOWED_TRANSITIONS = {
    DeliveryStatus.pending: {DeliveryStatus.queued, DeliveryStatus.skipped},
    DeliveryStatus.queued: {DeliveryStatus.sending},
    DeliveryStatus.sending: {DeliveryStatus.sent, DeliveryStatus.failed},
    DeliveryStatus.sent: {
        DeliveryStatus.delivered,
        DeliveryStatus.read,
        DeliveryStatus.failed,
        DeliveryStatus.bounced,
    },
    DeliveryStatus.delivered: {DeliveryStatus.read},
    DeliveryStatus.read: set(),
    DeliveryStatus.failed: {DeliveryStatus.queued},
    DeliveryStatus.bounced: set(),
    DeliveryStatus.skipped: set(),
}

PROGRESS_RANK = {
    DeliveryStatus.queued: 1,
    DeliveryStatus.sending: 2,
    DeliveryStatus.sent: 3,
    DeliveryStatus.delivered: 4,
    DeliveryStatus.read: 5,
}

TIMESTAMP_FIELDS = {
    DeliveryStatus.queued: "queued_at_utc",
    DeliveryStatus.sent: "sent_at_utc",
    DeliveryStatus.delivered: "delivered_at_utc",
    DeliveryStatus.read: "read_at_utc",
    DeliveryStatus.failed: "failed_at_utc",
    DeliveryStatus.bounced: "failed_at_utc",
}

SETTLED_STATUSES = {
    DeliveryStatus.sent,
    DeliveryStatus.delivered,
    DeliveryStatus.read,
    DeliveryStatus.bounced,
    DeliveryStatus.skipped,
}


class DeliveryTransitionError(Exception):
    pass


class TransitionOutcome(str, Enum):
    applied = "applied"
    duplicate = "duplicate"
    rejected = "rejected"


def is_terminal(recipient: CampaignRecipientRecord, max_retries: int) -> bool:
    if recipient.delivery_status in SETTLED_STATUSES:
        return True
    if recipient.delivery_status == DeliveryStatus.failed:
        return not recipient.retryable or recipient.retry_count >= max_retries
    return False


class DeliveryStateMachine:
    def __init__(
        self, store: InMemoryStore, *, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.store = store
        self.clock = clock

    def transition(
        self,
        recipient_id: str,
        to_status: DeliveryStatus,
        *,
        expected: Optional[DeliveryStatus] = None,
        at: Optional[datetime] = None,
        **changes: Any,
    ) -> CampaignRecipientRecord:
        with self.store.row_lock("recipient", recipient_id):
            recipient = self.store.get_recipient(recipient_id)
            current = recipient.delivery_status
            if expected is not None and current != expected:
                raise DeliveryTransitionError(
                    f"recipient {recipient_id} is {current.value}, expected {expected.value}"
                )
            if to_status not in ALLOWED_TRANSITIONS[current]:
                raise DeliveryTransitionError(
                    f"invalid delivery transition {current.value} -> {to_status.value}"
                )
            now = at or self.clock()
            update: dict[str, Any] = {"delivery_status": to_status, "updated_at_utc": now}
            field = TIMESTAMP_FIELDS.get(to_status)
            if field:
                update[field] = now
            update.update(changes)
            return self.store.save_recipient(recipient.model_copy(update=update))

    def apply_provider_event(
        self,
        recipient_id: str,
        status: DeliveryStatus,
        occurred_at: datetime,
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> TransitionOutcome:
        with self.store.row_lock("recipient", recipient_id):
            recipient = self.store.get_recipient(recipient_id)
            current = recipient.delivery_status
            if current == status:
                return TransitionOutcome.duplicate
            if (
                current in PROGRESS_RANK
                and status in PROGRESS_RANK
                and PROGRESS_RANK[current] >= PROGRESS_RANK[status]
            ):
                return TransitionOutcome.duplicate
            field = TIMESTAMP_FIELDS.get(status)
            existing = getattr(recipient, field) if field else None
            if existing is not None and existing >= occurred_at:
                return TransitionOutcome.duplicate
            if status not in ALLOWED_TRANSITIONS[current]:
                logger.info(
                    "delivery_event_rejected recipient_id=%s current=%s incoming=%s",
                    recipient_id,
                    current.value,
                    status.value,
                )
                return TransitionOutcome.rejected

            update: dict[str, Any] = {
                "delivery_status": status,
                "updated_at_utc": self.clock(),
            }
            if field:
                update[field] = occurred_at
            if status == DeliveryStatus.read and recipient.delivered_at_utc is None:
                update["delivered_at_utc"] = occurred_at
            if status in {DeliveryStatus.failed, DeliveryStatus.bounced}:
                update["retryable"] = False
                update["error_code"] = error_code or status.value
                update["error_message"] = error_message
            self.store.save_recipient(recipient.model_copy(update=update))
            return TransitionOutcome.applied

    def requeue(
        self, recipient_id: str, max_retries: int, now: Optional[datetime] = None
    ) -> bool:
        with self.store.row_lock("recipient", recipient_id):
            recipient = self.store.get_recipient(recipient_id)
            now = now or self.clock()
            if recipient.delivery_status != DeliveryStatus.failed or not recipient.retryable:
                return False
            if recipient.retry_count >= max_retries:
                return False
            if recipient.next_retry_at_utc and recipient.next_retry_at_utc > now:
                return False
            self.store.save_recipient(
                recipient.model_copy(
                    update={
                        "delivery_status": DeliveryStatus.queued,
                        "queued_at_utc": now,
                        "retry_count": recipient.retry_count + 1,
                        "failed_at_utc": None,
                        "error_code": None,
                        "error_message": None,
                        "retryable": False,
                        "next_retry_at_utc": None,
                        "updated_at_utc": now,
                    }
                )
            )
            return True
