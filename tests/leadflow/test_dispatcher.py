from __future__ import annotations

import time
from datetime import timedelta
from threading import Lock
from typing import Callable, Optional

import pytest

from leadflow.models import (
    AudienceFilter,
    CampaignChannel,
    CampaignCreateRequest,
    CampaignStatus,
    DeliveryStatus,
    RecipientInput,
    TemplatePayload,
)
from leadflow.services.channels import (
    PermanentProviderError,
    ProviderAuthError,
    SendResult,
    TransientProviderError,
)
from leadflow.services.dispatcher import CampaignConfigurationError, CampaignStateError


class RecordingProvider:
    def __init__(
        self,
        fail_with: Optional[Callable[[object], Optional[Exception]]] = None,
        delay: float = 0.0,
    ) -> None:
        self.fail_with = fail_with
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = Lock()

    def send(self, recipient, channel, payload) -> SendResult:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.calls.append(recipient.id)
        try:
            if self.delay:
                time.sleep(self.delay)
            error = self.fail_with(recipient) if self.fail_with else None
            if error:
                raise error
            return SendResult(provider_message_id=f"msg_{recipient.id}")
        finally:
            with self._lock:
                self.in_flight -= 1


def _audience(count: int) -> list[RecipientInput]:
    return [
        RecipientInput(name=f"R{index}", phone_number=f"+9715000{index:05d}")
        for index in range(count)
    ]


def _campaign(engine, audience, *, channel=CampaignChannel.sms, rate=5, **fields):
    request = CampaignCreateRequest(
        company_id="acme",
        name="Spring launch",
        channel=channel,
        template=fields.pop("template", TemplatePayload(subject="Hello", body="Hi {{name}}")),
        audience=audience,
        rate_limit_per_second=rate,
        **fields,
    )
    return engine.dispatcher.create_campaign(request)


def _statuses(engine, campaign_id: str) -> list[DeliveryStatus]:
    return [item.delivery_status for item in engine.store.list_recipients(campaign_id)]


def test_rate_limited_dispatch_completes_campaign(engine, clock) -> None:
    provider = RecordingProvider(delay=0.002)
    engine.providers.register(CampaignChannel.sms, provider)
    campaign = _campaign(engine, _audience(100), rate=5)

    engine.dispatcher.start(campaign.id)
    summary = engine.dispatcher.dispatch(campaign.id)

    assert summary.sent == 100
    assert summary.stopped_reason is None
    assert clock.elapsed >= 19.8 - 1e-6
    assert provider.max_in_flight <= 5
    assert len(set(provider.calls)) == 100
    finished = engine.store.get_campaign(campaign.id)
    assert finished.status == CampaignStatus.completed
    assert finished.counters["sent"] == 100


def test_duplicate_recipient_is_never_sent(engine) -> None:
    provider = RecordingProvider()
    engine.providers.register(CampaignChannel.sms, provider)
    audience = [
        RecipientInput(name="Lina", phone_number="+971 50 000 0001"),
        RecipientInput(name="Lina again", phone_number="00971500000001"),
    ]
    campaign = _campaign(engine, audience)

    engine.dispatcher.start(campaign.id)
    engine.dispatcher.dispatch(campaign.id)

    first, second = engine.store.list_recipients(campaign.id)
    assert provider.calls == [first.id]
    assert second.delivery_status == DeliveryStatus.skipped
    assert second.is_duplicate
    assert second.skip_reason == "duplicate"


def test_missing_consent_is_skipped(engine) -> None:
    audience = [
        RecipientInput(name="Yes", phone_number="+971500000001"),
        RecipientInput(name="No", phone_number="+971500000002", consent_checked=False),
    ]
    campaign = _campaign(engine, audience, consent_required=True)

    engine.dispatcher.start(campaign.id)

    statuses = _statuses(engine, campaign.id)
    assert statuses == [DeliveryStatus.queued, DeliveryStatus.skipped]


def test_transient_and_permanent_failures(engine, clock) -> None:
    def fail_with(recipient):
        if recipient.name == "R0":
            return TransientProviderError("gateway timeout")
        if recipient.name == "R1":
            return PermanentProviderError("number opted out", code="opted_out")
        return None

    engine.providers.register(CampaignChannel.sms, RecordingProvider(fail_with=fail_with))
    campaign = _campaign(engine, _audience(3), rate=1)

    engine.dispatcher.start(campaign.id)
    summary = engine.dispatcher.dispatch(campaign.id)

    assert (summary.sent, summary.failed) == (1, 2)
    transient, permanent, ok = engine.store.list_recipients(campaign.id)
    assert transient.retryable
    assert transient.error_code == "provider_unavailable"
    assert transient.next_retry_at_utc == transient.failed_at_utc + timedelta(seconds=60)
    assert not permanent.retryable
    assert permanent.error_code == "opted_out"
    assert ok.delivery_status == DeliveryStatus.sent
    assert engine.store.get_campaign(campaign.id).status == CampaignStatus.active


def test_provider_auth_failure_fails_campaign(engine) -> None:
    def fail_with(recipient):
        if recipient.name == "R2":
            return ProviderAuthError("token expired")
        return None

    provider = RecordingProvider(fail_with=fail_with)
    engine.providers.register(CampaignChannel.sms, provider)
    campaign = _campaign(engine, _audience(10), rate=1)

    engine.dispatcher.start(campaign.id)
    summary = engine.dispatcher.dispatch(campaign.id)

    failed = engine.store.get_campaign(campaign.id)
    assert failed.status == CampaignStatus.failed
    assert failed.error_summary["provider_auth_failed"] == 1
    assert failed.failure_reason == "token expired"
    assert len(provider.calls) == 3
    assert summary.stopped_reason == "campaign_failed"
    assert _statuses(engine, campaign.id).count(DeliveryStatus.queued) == 7


def test_pause_stops_new_sends_and_resume_finishes(engine, clock) -> None:
    provider = RecordingProvider()
    engine.providers.register(CampaignChannel.sms, provider)
    campaign = _campaign(engine, _audience(10), rate=1)
    engine.dispatcher.start(campaign.id)

    def pause_on_second_wait(calls: int) -> None:
        if calls == 2:
            engine.dispatcher.pause(campaign.id)

    clock.on_sleep = pause_on_second_wait
    summary = engine.dispatcher.dispatch(campaign.id)
    clock.on_sleep = None

    statuses = _statuses(engine, campaign.id)
    assert summary.stopped_reason == "campaign_paused"
    assert statuses.count(DeliveryStatus.sent) == 2
    assert statuses.count(DeliveryStatus.queued) == 8
    assert DeliveryStatus.sending not in statuses

    engine.dispatcher.resume(campaign.id)
    engine.dispatcher.dispatch(campaign.id)

    assert len(provider.calls) == 10
    assert engine.store.get_campaign(campaign.id).status == CampaignStatus.completed


def test_dispatch_is_not_reentrant(engine, clock) -> None:
    engine.providers.register(CampaignChannel.sms, RecordingProvider())
    campaign = _campaign(engine, _audience(3), rate=1)
    engine.dispatcher.start(campaign.id)
    nested = []
    clock.on_sleep = lambda calls: nested.append(engine.dispatcher.dispatch(campaign.id))

    summary = engine.dispatcher.dispatch(campaign.id)

    assert summary.sent == 3
    assert nested and all(item.stopped_reason == "already_running" for item in nested)


def test_scheduled_campaign_waits_until_due(engine, clock) -> None:
    send_at = clock() + timedelta(hours=2)
    campaign = _campaign(engine, _audience(2), scheduled_at_utc=send_at)
    assert campaign.status == CampaignStatus.scheduled

    with pytest.raises(CampaignStateError):
        engine.dispatcher.start(campaign.id, now=clock())
    assert engine.dispatcher.activate_due(now=clock()) == []

    assert engine.dispatcher.activate_due(now=send_at) == [campaign.id]
    assert engine.store.get_campaign(campaign.id).status == CampaignStatus.active


def test_invalid_template_blocks_start(engine) -> None:
    campaign = _campaign(
        engine,
        [RecipientInput(email="a@example.com")],
        channel=CampaignChannel.email,
        template=TemplatePayload(body="No subject"),
    )
    with pytest.raises(CampaignConfigurationError):
        engine.dispatcher.start(campaign.id)
    assert engine.store.get_campaign(campaign.id).status == CampaignStatus.draft


def test_recipients_locked_after_start(engine) -> None:
    campaign = _campaign(engine, _audience(1))
    engine.dispatcher.add_recipients(campaign.id, _audience(2)[1:])
    engine.dispatcher.start(campaign.id)

    assert engine.store.get_campaign(campaign.id).total_recipients == 2
    with pytest.raises(CampaignStateError):
        engine.dispatcher.add_recipients(campaign.id, _audience(1))


def test_multi_channel_picks_channel_per_recipient(engine) -> None:
    audience = [
        RecipientInput(name="Mail only", email="mail@example.com"),
        RecipientInput(name="Phone", phone_number="+971500000009", email="p@example.com"),
    ]
    campaign = _campaign(
        engine,
        audience,
        channel=CampaignChannel.multi_channel,
        channel_priority=[CampaignChannel.whatsapp, CampaignChannel.email],
    )

    engine.dispatcher.start(campaign.id)
    engine.dispatcher.dispatch(campaign.id)

    mail, phone = engine.store.list_recipients(campaign.id)
    assert mail.channel == CampaignChannel.email
    assert phone.channel == CampaignChannel.whatsapp
    assert len(engine.providers.get(CampaignChannel.whatsapp).sent) == 1
    assert engine.providers.get(CampaignChannel.email).sent[0]["payload"]["body"] == "Hi Mail only"


def test_audience_filter_materializes_leads(engine, make_lead) -> None:
    included = make_lead(name="Sara", phone="+971500000101", stage="New", attributes={"consent": True})
    make_lead(name="Won", phone="+971500000102", stage="Closed")
    make_lead(name="No phone", stage="New")
    campaign = _campaign(engine, [], audience_filter=AudienceFilter(stages=["new"]))

    engine.dispatcher.start(campaign.id)

    recipients = engine.store.list_recipients(campaign.id)
    assert [item.lead_id for item in recipients] == [included]
    assert recipients[0].delivery_status == DeliveryStatus.queued


def test_campaign_log_records_lifecycle(engine) -> None:
    campaign = _campaign(engine, _audience(1))
    engine.dispatcher.start(campaign.id)
    engine.dispatcher.dispatch(campaign.id)

    actions = [item.action for item in engine.store.list_campaign_logs(campaign.id)]
    assert actions[0] == "created"
    assert "started" in actions
    assert actions[-1] == "completed"
