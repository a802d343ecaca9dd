from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock

from leadflow.models import (
    CampaignChannel,
    CampaignCreateRequest,
    CampaignStatus,
    DeliveryStatus,
    RecipientInput,
    TemplatePayload,
)
from leadflow.services.channels import ProviderAuthError, SendResult, TransientProviderError


class FlakyProvider:
    """Fails the first ``failures`` sends per recipient name listed in ``flaky``."""

    def __init__(self, flaky: set[str], failures: int = 1, error=TransientProviderError) -> None:
        self.flaky = flaky
        self.failures = failures
        self.error = error
        self.attempts: dict[str, int] = {}
        self._lock = Lock()

    def send(self, recipient, channel, payload) -> SendResult:
        with self._lock:
            attempt = self.attempts.get(recipient.name, 0) + 1
            self.attempts[recipient.name] = attempt
        if recipient.name in self.flaky and attempt <= self.failures:
            raise self.error(f"attempt {attempt} failed")
        return SendResult(provider_message_id=f"msg_{recipient.id}_{attempt}")


def _start_campaign(engine, count: int, provider, **fields):
    engine.providers.register(CampaignChannel.sms, provider)
    campaign = engine.dispatcher.create_campaign(
        CampaignCreateRequest(
            company_id="acme",
            name="Retry drill",
            channel=CampaignChannel.sms,
            template=TemplatePayload(body="Hello {{name}}"),
            audience=[
                RecipientInput(name=f"R{index}", phone_number=f"+9715010{index:05d}")
                for index in range(count)
            ],
            rate_limit_per_second=10,
            **fields,
        )
    )
    engine.dispatcher.start(campaign.id)
    engine.dispatcher.dispatch(campaign.id)
    return campaign


def test_retry_waits_for_backoff_then_recovers(engine, clock) -> None:
    campaign = _start_campaign(engine, 3, FlakyProvider({"R1"}))

    assert engine.retries.run_retry_pass(campaign.id) == []

    clock.advance(seconds=61)
    requeued = engine.retries.run_retry_pass(campaign.id)

    assert len(requeued) == 1
    recipient = engine.store.get_recipient(requeued[0])
    assert recipient.delivery_status == DeliveryStatus.queued
    assert recipient.retry_count == 1

    engine.dispatcher.dispatch(campaign.id)
    assert engine.store.get_recipient(requeued[0]).delivery_status == DeliveryStatus.sent
    assert engine.store.get_campaign(campaign.id).status == CampaignStatus.completed


def test_run_all_redispatches_requeued_campaigns(engine, clock) -> None:
    campaign = _start_campaign(engine, 2, FlakyProvider({"R0"}))
    clock.advance(minutes=2)

    assert engine.retries.run_all() == {campaign.id: 1}
    finished = engine.store.get_campaign(campaign.id)
    assert finished.status == CampaignStatus.completed
    assert finished.counters["sent"] == 2


def test_retries_stop_at_max_retries(engine, clock) -> None:
    provider = FlakyProvider({"R0"}, failures=100)
    campaign = _start_campaign(engine, 1, provider, max_retries=2)

    for _ in range(5):
        clock.advance(hours=2)
        engine.retries.run_all()

    recipient = engine.store.list_recipients(campaign.id)[0]
    assert provider.attempts["R0"] == 3
    assert recipient.delivery_status == DeliveryStatus.failed
    assert recipient.retry_count == 2
    finished = engine.store.get_campaign(campaign.id)
    assert finished.status == CampaignStatus.completed
    assert finished.counters["exhausted_failures"] == 1


def test_backoff_doubles_per_retry(engine, clock) -> None:
    campaign = _start_campaign(engine, 1, FlakyProvider({"R0"}, failures=2), max_retries=5)
    first = engine.store.list_recipients(campaign.id)[0]
    assert (first.next_retry_at_utc - first.failed_at_utc).total_seconds() == 60

    clock.advance(seconds=61)
    engine.retries.run_all()

    second = engine.store.get_recipient(first.id)
    assert second.retry_count == 1
    assert (second.next_retry_at_utc - second.failed_at_utc).total_seconds() == 120


def test_concurrent_retry_passes_requeue_each_recipient_once(engine, clock) -> None:
    names = {f"R{index}" for index in range(10)}
    campaign = _start_campaign(engine, 10, FlakyProvider(names))
    clock.advance(minutes=5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(lambda _: engine.retries.run_retry_pass(campaign.id), range(8))
        )

    requeued = [recipient_id for batch in results for recipient_id in batch]
    assert len(requeued) == 10
    assert len(set(requeued)) == 10
    assert all(
        item.retry_count == 1 for item in engine.store.list_recipients(campaign.id)
    )


def test_failed_campaign_is_not_retried(engine, clock) -> None:
    campaign = _start_campaign(engine, 3, FlakyProvider({"R0"}, error=ProviderAuthError))
    assert engine.store.get_campaign(campaign.id).status == CampaignStatus.failed

    clock.advance(hours=1)

    assert engine.retries.run_retry_pass(campaign.id) == []
    assert engine.retries.run_all() == {}
