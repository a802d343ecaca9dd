from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from threading import BoundedSemaphore, Lock
from typing import Any, Callable, Optional

from leadflow.models import (
    AudienceFilter,
    CampaignChannel,
    CampaignCreateRequest,
    CampaignRecipientRecord,
    CampaignRecord,
    CampaignStatus,
    DeliveryStatus,
    DispatchSummary,
    RecipientInput,
    utc_now,
)
from leadflow.observability import MetricsRegistry
from leadflow.services.analytics import CampaignAnalyticsAggregator
from leadflow.services.channels import (
    DEFAULT_CHANNEL_PRIORITY,
    ChannelValidationError,
    PermanentProviderError,
    ProviderAuthError,
    ProviderError,
    ProviderRegistry,
    TransientProviderError,
    get_channel,
    resolve_channel,
)
from leadflow.services.dedupe import RecipientDeduper
from leadflow.services.delivery import (
    DeliveryStateMachine,
    DeliveryTransitionError,
    is_terminal,
)
from leadflow.services.rate_limit import TokenBucket
from leadflow.store import InMemoryStore, new_id

logger = logging.getLogger("leadflow.dispatcher")

CAMPAIGN_TRANSITIONS = {
    CampaignStatus.draft: {CampaignStatus.scheduled, CampaignStatus.active, CampaignStatus.paused},
    CampaignStatus.scheduled: {CampaignStatus.active, CampaignStatus.paused},
    CampaignStatus.active: {CampaignStatus.completed, CampaignStatus.paused, CampaignStatus.failed},
    CampaignStatus.paused: {CampaignStatus.active, CampaignStatus.failed},
    CampaignStatus.completed: set(),
    CampaignStatus.failed: set(),
}

DEFAULT_CHANNEL_CONCURRENCY = {"email": 10, "sms": 5, "whatsapp": 8}


class CampaignStateError(Exception):
    pass


class CampaignConfigurationError(Exception):
    pass


class CampaignDispatcher:
    """
    Owns the campaign lifecycle and pushes queued recipients through the
    providers.

    ``dispatch`` paces sends with a token bucket on the calling thread and
    hands each send to a bounded worker pool. Provider calls never run while
    a store or row lock is held.
    """

    def __init__(
        self,
        store: InMemoryStore,
        deliveries: DeliveryStateMachine,
        providers: ProviderRegistry,
        analytics: CampaignAnalyticsAggregator,
        *,
        metrics: Optional[MetricsRegistry] = None,
        default_rate_limit: int = 10,
        default_max_retries: int = 3,
        backoff_seconds: float = 60.0,
        backoff_max_seconds: float = 3600.0,
        channel_concurrency: Optional[dict[str, int]] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.deliveries = deliveries
        self.providers = providers
        self.analytics = analytics
        self.metrics = metrics
        self.default_rate_limit = default_rate_limit
        self.default_max_retries = default_max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.channel_concurrency = channel_concurrency or dict(DEFAULT_CHANNEL_CONCURRENCY)
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep
        self._lock = Lock()
        self._dispatch_locks: dict[str, Lock] = {}

    # Lifecycle

    def create_campaign(self, request: CampaignCreateRequest) -> CampaignRecord:
        campaign = self.store.create_campaign(
            request,
            default_rate_limit=self.default_rate_limit,
            default_max_retries=self.default_max_retries,
        )
        if campaign.scheduled_at_utc:
            campaign = self._set_status(campaign.id, CampaignStatus.scheduled)
        self.store.log_campaign_action(
            campaign.id,
            "created",
            details={"channel": campaign.channel.value, "audience": len(campaign.audience)},
        )
        logger.info(
            "campaign_created campaign_id=%s channel=%s", campaign.id, campaign.channel.value
        )
        return campaign

    def add_recipients(
        self, campaign_id: str, recipients: list[RecipientInput]
    ) -> CampaignRecord:
        with self.store.row_lock("campaign", campaign_id):
            campaign = self.store.get_campaign(campaign_id)
            if (
                campaign.status not in {CampaignStatus.draft, CampaignStatus.scheduled}
                or campaign.audience_materialized
            ):
                raise CampaignStateError(
                    f"recipients can only be added before start (status={campaign.status.value})"
                )
            updated = self.store.save_campaign(
                campaign.model_copy(
                    update={
                        "audience": [*campaign.audience, *recipients],
                        "updated_at_utc": self.clock(),
                    }
                )
            )
        self.store.log_campaign_action(
            campaign_id, "recipients_added", details={"count": len(recipients)}
        )
        return updated

    def schedule(self, campaign_id: str, at: datetime) -> CampaignRecord:
        campaign = self.store.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.draft:
            raise CampaignStateError(f"only draft campaigns can be scheduled: {campaign_id}")
        updated = self._set_status(campaign_id, CampaignStatus.scheduled, scheduled_at_utc=at)
        self.store.log_campaign_action(
            campaign_id, "scheduled", details={"scheduled_at_utc": at.isoformat()}
        )
        return updated

    def start(self, campaign_id: str, now: Optional[datetime] = None) -> CampaignRecord:
        now = now or self.clock()
        with self.store.row_lock("campaign", campaign_id):
            campaign = self.store.get_campaign(campaign_id)
            if campaign.status not in {CampaignStatus.draft, CampaignStatus.scheduled}:
                raise CampaignStateError(
                    f"campaign {campaign_id} cannot start from {campaign.status.value}"
                )
            if campaign.scheduled_at_utc and campaign.scheduled_at_utc > now:
                raise CampaignStateError(f"campaign {campaign_id} is not due yet")
            self._validate_configuration(campaign)
            self._prepare_recipients(campaign, now)
            campaign = self.store.get_campaign(campaign_id)
            started = self.store.save_campaign(
                campaign.model_copy(
                    update={
                        "status": CampaignStatus.active,
                        "started_at_utc": now,
                        "updated_at_utc": now,
                    }
                )
            )
        self.store.log_campaign_action(
            campaign_id, "started", details={"recipients": started.total_recipients}
        )
        self.analytics.refresh_counters(campaign_id)
        logger.info(
            "campaign_started campaign_id=%s recipients=%s",
            campaign_id,
            started.total_recipients,
        )
        return self.store.get_campaign(campaign_id)

    def pause(self, campaign_id: str) -> CampaignRecord:
        campaign = self._set_status(campaign_id, CampaignStatus.paused)
        self.store.log_campaign_action(campaign_id, "paused")
        logger.info("campaign_paused campaign_id=%s", campaign_id)
        return campaign

    def resume(self, campaign_id: str) -> CampaignRecord:
        now = self.clock()
        with self.store.row_lock("campaign", campaign_id):
            campaign = self.store.get_campaign(campaign_id)
            if campaign.status != CampaignStatus.paused:
                raise CampaignStateError(
                    f"campaign {campaign_id} cannot resume from {campaign.status.value}"
                )
            if not campaign.audience_materialized:
                self._validate_configuration(campaign)
                self._prepare_recipients(campaign, now)
                campaign = self.store.get_campaign(campaign_id)
            resumed = self.store.save_campaign(
                campaign.model_copy(
                    update={
                        "status": CampaignStatus.active,
                        "started_at_utc": campaign.started_at_utc or now,
                        "updated_at_utc": now,
                    }
                )
            )
        self.store.log_campaign_action(campaign_id, "resumed")
        logger.info("campaign_resumed campaign_id=%s", campaign_id)
        return resumed

    def activate_due(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self.clock()
        started: list[str] = []
        for campaign in self.store.list_campaigns(CampaignStatus.scheduled):
            if campaign.scheduled_at_utc and campaign.scheduled_at_utc > now:
                continue
            try:
                self.start(campaign.id, now)
            except (CampaignStateError, CampaignConfigurationError) as exc:
                logger.warning("campaign_activation_failed campaign_id=%s error=%s", campaign.id, exc)
                continue
            started.append(campaign.id)
        return started

    def refresh_completion(self, campaign_id: str) -> CampaignRecord:
        with self.store.row_lock("campaign", campaign_id):
            campaign = self.store.get_campaign(campaign_id)
            if campaign.status != CampaignStatus.active:
                return campaign
            recipients = self.store.list_recipients(campaign_id)
            if not all(is_terminal(item, campaign.max_retries) for item in recipients):
                return campaign
            now = self.clock()
            completed = self.store.save_campaign(
                campaign.model_copy(
                    update={
                        "status": CampaignStatus.completed,
                        "completed_at_utc": now,
                        "updated_at_utc": now,
                    }
                )
            )
        self.store.log_campaign_action(campaign_id, "completed")
        logger.info("campaign_completed campaign_id=%s", campaign_id)
        return completed

    # Sending

    def dispatch(self, campaign_id: str) -> DispatchSummary:
        summary = DispatchSummary(campaign_id=campaign_id)
        lock = self._dispatch_lock(campaign_id)
        if not lock.acquire(blocking=False):
            summary.stopped_reason = "already_running"
            return summary
        try:
            campaign = self.store.get_campaign(campaign_id)
            if campaign.status != CampaignStatus.active:
                summary.stopped_reason = f"campaign_{campaign.status.value}"
                return summary
            self._run_dispatch(campaign, summary)
        finally:
            lock.release()

        self.analytics.refresh_counters(campaign_id)
        if summary.stopped_reason is None:
            self.refresh_completion(campaign_id)
        logger.info(
            "campaign_dispatch campaign_id=%s dispatched=%s sent=%s failed=%s stopped=%s",
            campaign_id,
            summary.dispatched,
            summary.sent,
            summary.failed,
            summary.stopped_reason,
        )
        return summary

    def _run_dispatch(self, campaign: CampaignRecord, summary: DispatchSummary) -> None:
        workers = self._worker_count(campaign)
        bucket = TokenBucket(
            campaign.rate_limit_per_second, clock=self.monotonic, sleep=self.sleep
        )
        gate = BoundedSemaphore(workers)
        futures = []
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"dispatch-{campaign.id}"
        ) as pool:
            for recipient in self.store.list_recipients(campaign.id, status=DeliveryStatus.queued):
                summary.stopped_reason = self._stop_reason(campaign.id)
                if summary.stopped_reason:
                    break
                gate.acquire()
                bucket.acquire()
                summary.stopped_reason = self._stop_reason(campaign.id)
                if summary.stopped_reason:
                    gate.release()
                    break
                future = pool.submit(self._send_one, campaign.id, recipient.id)
                future.add_done_callback(lambda _: gate.release())
                futures.append(future)
                summary.dispatched += 1

        for future in futures:
            outcome = future.result()
            if outcome == DeliveryStatus.sent:
                summary.sent += 1
            elif outcome == DeliveryStatus.failed:
                summary.failed += 1

    def _send_one(self, campaign_id: str, recipient_id: str) -> Optional[DeliveryStatus]:
        campaign = self.store.get_campaign(campaign_id)
        try:
            recipient = self.deliveries.transition(
                recipient_id, DeliveryStatus.sending, expected=DeliveryStatus.queued
            )
        except DeliveryTransitionError:
            return None

        channel = self._recipient_channel(campaign, recipient)
        try:
            handler = get_channel(channel)
            handler.validate(recipient)
            payload = handler.build_payload(recipient, campaign.template)
            provider = self.providers.get(channel)
        except ChannelValidationError as exc:
            self._fail_recipient(
                campaign, recipient, code="invalid_recipient", message=str(exc), retryable=False
            )
            return DeliveryStatus.failed

        try:
            result = provider.send(recipient, channel, payload)
        except ProviderAuthError as exc:
            self._fail_recipient(campaign, recipient, code=exc.code, message=str(exc), retryable=True)
            self._fail_campaign(campaign_id, exc)
            return DeliveryStatus.failed
        except TransientProviderError as exc:
            self._fail_recipient(campaign, recipient, code=exc.code, message=str(exc), retryable=True)
            return DeliveryStatus.failed
        except PermanentProviderError as exc:
            self._fail_recipient(
                campaign, recipient, code=exc.code, message=str(exc), retryable=False
            )
            return DeliveryStatus.failed
        except Exception as exc:
            logger.exception(
                "provider_send_crashed campaign_id=%s recipient_id=%s", campaign_id, recipient_id
            )
            self._fail_recipient(
                campaign, recipient, code="unexpected_error", message=str(exc), retryable=True
            )
            return DeliveryStatus.failed

        try:
            self.deliveries.transition(
                recipient_id,
                DeliveryStatus.sent,
                expected=DeliveryStatus.sending,
                provider_message_id=result.provider_message_id,
            )
        except DeliveryTransitionError as exc:
            logger.warning(
                "send_result_dropped recipient_id=%s message_id=%s error=%s",
                recipient_id,
                result.provider_message_id,
                exc,
            )
            return None
        if self.metrics:
            self.metrics.increment("sends", channel=channel.value, outcome="sent")
        return DeliveryStatus.sent

    def _fail_recipient(
        self,
        campaign: CampaignRecord,
        recipient: CampaignRecipientRecord,
        *,
        code: str,
        message: str,
        retryable: bool,
    ) -> None:
        now = self.clock()
        next_retry_at = None
        if retryable:
            delay = min(
                self.backoff_seconds * (2 ** recipient.retry_count), self.backoff_max_seconds
            )
            next_retry_at = now + timedelta(seconds=delay)
        self.deliveries.transition(
            recipient.id,
            DeliveryStatus.failed,
            expected=DeliveryStatus.sending,
            at=now,
            retryable=retryable,
            error_code=code,
            error_message=message[:500],
            next_retry_at_utc=next_retry_at,
        )
        self.store.log_campaign_action(
            campaign.id,
            "recipient_failed",
            recipient_id=recipient.id,
            details={"error_code": code, "retryable": retryable},
        )
        if self.metrics:
            channel = recipient.channel.value if recipient.channel else campaign.channel.value
            self.metrics.increment("sends", channel=channel, outcome="failed")
        logger.info(
            "recipient_failed recipient_id=%s code=%s retryable=%s", recipient.id, code, retryable
        )

    def _fail_campaign(self, campaign_id: str, error: ProviderError) -> None:
        with self.store.row_lock("campaign", campaign_id):
            campaign = self.store.get_campaign(campaign_id)
            if CampaignStatus.failed not in CAMPAIGN_TRANSITIONS[campaign.status]:
                return
            error_summary = dict(campaign.error_summary)
            error_summary[error.code] = error_summary.get(error.code, 0) + 1
            now = self.clock()
            self.store.save_campaign(
                campaign.model_copy(
                    update={
                        "status": CampaignStatus.failed,
                        "failure_reason": str(error),
                        "error_summary": error_summary,
                        "completed_at_utc": now,
                        "updated_at_utc": now,
                    }
                )
            )
        self.store.log_campaign_action(
            campaign_id, "failed", details={"error_code": error.code, "reason": str(error)}
        )
        logger.error("campaign_failed campaign_id=%s error=%s", campaign_id, error)

    # Helpers

    def _set_status(
        self, campaign_id: str, status: CampaignStatus, **changes: Any
    ) -> CampaignRecord:
        with self.store.row_lock("campaign", campaign_id):
            campaign = self.store.get_campaign(campaign_id)
            if status not in CAMPAIGN_TRANSITIONS[campaign.status]:
                raise CampaignStateError(
                    f"invalid campaign transition {campaign.status.value} -> {status.value}"
                )
            return self.store.save_campaign(
                campaign.model_copy(
                    update={"status": status, "updated_at_utc": self.clock(), **changes}
                )
            )

    def _stop_reason(self, campaign_id: str) -> Optional[str]:
        campaign = self.store.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.active:
            return f"campaign_{campaign.status.value}"
        return None

    def _dispatch_lock(self, campaign_id: str) -> Lock:
        with self._lock:
            return self._dispatch_locks.setdefault(campaign_id, Lock())

    def _campaign_channels(self, campaign: CampaignRecord) -> list[CampaignChannel]:
        if campaign.channel != CampaignChannel.multi_channel:
            return [campaign.channel]
        return list(campaign.channel_priority or DEFAULT_CHANNEL_PRIORITY)

    def _worker_count(self, campaign: CampaignRecord) -> int:
        ceiling = max(
            self.channel_concurrency.get(channel.value, 1)
            for channel in self._campaign_channels(campaign)
        )
        return max(1, min(campaign.rate_limit_per_second, ceiling))

    def _recipient_channel(
        self, campaign: CampaignRecord, recipient: CampaignRecipientRecord
    ) -> CampaignChannel:
        if recipient.channel:
            return recipient.channel
        return self._campaign_channels(campaign)[0]

    def _validate_configuration(self, campaign: CampaignRecord) -> None:
        for channel in self._campaign_channels(campaign):
            try:
                get_channel(channel).validate_template(campaign.template)
            except ChannelValidationError as exc:
                raise CampaignConfigurationError(str(exc)) from exc
            if not self.providers.has(channel):
                raise CampaignConfigurationError(f"no provider configured for {channel.value}")

    def _prepare_recipients(self, campaign: CampaignRecord, now: datetime) -> None:
        if not campaign.audience_materialized:
            self._materialize(campaign, now)
        for recipient in self.store.list_recipients(campaign.id, status=DeliveryStatus.pending):
            self.deliveries.transition(
                recipient.id, DeliveryStatus.queued, expected=DeliveryStatus.pending, at=now
            )
        total = len(self.store.list_recipients(campaign.id))
        fresh = self.store.get_campaign(campaign.id)
        self.store.save_campaign(
            fresh.model_copy(
                update={
                    "audience_materialized": True,
                    "total_recipients": total,
                    "updated_at_utc": now,
                }
            )
        )

    def _materialize(self, campaign: CampaignRecord, now: datetime) -> None:
        deduper = RecipientDeduper()
        audience = [*campaign.audience, *self._audience_from_leads(campaign)]
        for item in audience:
            duplicate = deduper.seen(phone=item.phone_number, email=item.email)
            recipient = self.store.save_recipient(
                CampaignRecipientRecord(
                    id=new_id("rcp"),
                    campaign_id=campaign.id,
                    sequence=self.store.next_sequence(),
                    lead_id=item.lead_id,
                    name=item.name,
                    phone_number=item.phone_number,
                    email=item.email,
                    channel=resolve_channel(campaign.channel, campaign.channel_priority, item),
                    template_variables=item.template_variables,
                    consent_checked=item.consent_checked,
                    is_duplicate=duplicate,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            )
            skip_reason = None
            if duplicate:
                skip_reason = "duplicate"
            elif campaign.consent_required and not item.consent_checked:
                skip_reason = "missing_consent"
            if skip_reason:
                self.deliveries.transition(
                    recipient.id,
                    DeliveryStatus.skipped,
                    expected=DeliveryStatus.pending,
                    at=now,
                    skip_reason=skip_reason,
                )
        self.store.log_campaign_action(
            campaign.id, "audience_materialized", details={"recipients": len(audience)}
        )

    def _audience_from_leads(self, campaign: CampaignRecord) -> list[RecipientInput]:
        audience_filter: Optional[AudienceFilter] = campaign.audience_filter
        if audience_filter is None:
            return []
        lead_ids = set(audience_filter.lead_ids)
        stages = {stage.casefold() for stage in audience_filter.stages}
        sources = {source.casefold() for source in audience_filter.sources}
        output: list[RecipientInput] = []
        for lead in self.store.list_leads(campaign.company_id):
            if lead_ids and lead.id not in lead_ids:
                continue
            if stages and lead.stage.casefold() not in stages:
                continue
            if sources and (lead.source or "").casefold() not in sources:
                continue
            if not (lead.phone or lead.email):
                continue
            output.append(
                RecipientInput(
                    name=lead.name,
                    phone_number=lead.phone,
                    email=lead.email,
                    lead_id=lead.id,
                    consent_checked=bool(lead.attributes.get("consent", False)),
                )
            )
        return output
