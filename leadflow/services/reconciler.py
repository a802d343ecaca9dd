from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from leadflow.models import (
    DeliveryEventRequest,
    DeliveryEventResponse,
    IngestResult,
    WebhookEventRecord,
    WebhookEventStatus,
    utc_now,
)
from leadflow.observability import MetricsRegistry
from leadflow.services.delivery import DeliveryStateMachine, TransitionOutcome
from leadflow.services.dispatcher import CampaignDispatcher
from leadflow.store import InMemoryStore, new_id

logger = logging.getLogger("leadflow.webhooks")


class WebhookReconciler:
    """
    Applies provider delivery callbacks to recipients.

    Events are keyed by ``provider:event_id`` so redelivered callbacks are
    detected. Events whose message id is not known yet are buffered and
    looked up again later, up to ``max_attempts`` lookups in total.
    """

    def __init__(
        self,
        store: InMemoryStore,
        deliveries: DeliveryStateMachine,
        dispatcher: CampaignDispatcher,
        *,
        metrics: Optional[MetricsRegistry] = None,
        max_attempts: int = 5,
        retry_seconds: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.deliveries = deliveries
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.retry_seconds = retry_seconds
        self.clock = clock

    def ingest(self, provider: str, event: DeliveryEventRequest) -> DeliveryEventResponse:
        key = f"{provider}:{event.event_id}"
        now = self.clock()
        with self.store.row_lock("webhook", key):
            record = self.store.get_webhook_event(key)
            if record and (
                record.processed or record.status == WebhookEventStatus.permanently_unmatched
            ):
                result = (
                    IngestResult.duplicate if record.processed else IngestResult.unmatched
                )
                self._count(result)
                return DeliveryEventResponse(
                    status=result, recipient_id=record.recipient_id, attempts=record.retry_count
                )
            if record is None:
                record = WebhookEventRecord(
                    id=new_id("whe"),
                    key=key,
                    provider=provider,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    provider_message_id=event.provider_message_id,
                    occurred_at_utc=event.occurred_at_utc or now,
                    payload=event.payload,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            response, campaign_id = self._process(record, now)
        self._after_apply(campaign_id)
        return response

    def retry_unmatched(self, now: Optional[datetime] = None) -> list[DeliveryEventResponse]:
        now = now or self.clock()
        responses: list[DeliveryEventResponse] = []
        for candidate in self.store.list_webhook_events(WebhookEventStatus.unmatched):
            if candidate.next_retry_utc and candidate.next_retry_utc > now:
                continue
            with self.store.row_lock("webhook", candidate.key):
                record = self.store.get_webhook_event(candidate.key)
                if not record or record.status != WebhookEventStatus.unmatched:
                    continue
                response, campaign_id = self._process(record, now)
            self._after_apply(campaign_id)
            responses.append(response)
        return responses

    def _process(
        self, record: WebhookEventRecord, now: datetime
    ) -> tuple[DeliveryEventResponse, Optional[str]]:
        recipient = self.store.find_recipient_by_message_id(record.provider_message_id)
        if recipient is None:
            return self._buffer(record, now), None

        outcome = self.deliveries.apply_provider_event(
            recipient.id,
            record.event_type,
            record.occurred_at_utc,
            error_code=record.payload.get("error_code"),
            error_message=record.payload.get("error_message"),
        )
        result = IngestResult.ok if outcome == TransitionOutcome.applied else IngestResult.duplicate
        self.store.save_webhook_event(
            record.model_copy(
                update={
                    "processed": True,
                    "status": WebhookEventStatus.processed,
                    "outcome": result,
                    "recipient_id": recipient.id,
                    "next_retry_utc": None,
                    "updated_at_utc": now,
                }
            )
        )
        self._count(result)
        logger.info(
            "webhook_processed key=%s recipient_id=%s event=%s outcome=%s",
            record.key,
            recipient.id,
            record.event_type.value,
            outcome.value,
        )
        response = DeliveryEventResponse(
            status=result, recipient_id=recipient.id, attempts=record.retry_count + 1
        )
        return response, recipient.campaign_id if result == IngestResult.ok else None

    def _buffer(self, record: WebhookEventRecord, now: datetime) -> DeliveryEventResponse:
        attempts = record.retry_count + 1
        exhausted = attempts >= self.max_attempts
        self.store.save_webhook_event(
            record.model_copy(
                update={
                    "status": (
                        WebhookEventStatus.permanently_unmatched
                        if exhausted
                        else WebhookEventStatus.unmatched
                    ),
                    "outcome": IngestResult.unmatched,
                    "retry_count": attempts,
                    "next_retry_utc": (
                        None if exhausted else now + timedelta(seconds=self.retry_seconds)
                    ),
                    "updated_at_utc": now,
                }
            )
        )
        if exhausted:
            logger.warning(
                "webhook_permanently_unmatched key=%s message_id=%s attempts=%s",
                record.key,
                record.provider_message_id,
                attempts,
            )
            if self.metrics:
                self.metrics.increment("webhooks_permanently_unmatched", provider=record.provider)
        self._count(IngestResult.unmatched)
        return DeliveryEventResponse(status=IngestResult.unmatched, attempts=attempts)

    def _after_apply(self, campaign_id: Optional[str]) -> None:
        if not campaign_id:
            return
        self.dispatcher.analytics.refresh_counters(campaign_id)
        self.dispatcher.refresh_completion(campaign_id)

    def _count(self, result: IngestResult) -> None:
        if self.metrics:
            self.metrics.increment("webhooks", outcome=result.value)
