from __future__ import annotations

from datetime import timedelta

import pytest

from leadflow.models import CampaignRecipientRecord, DeliveryStatus, utc_now
from leadflow.services.delivery import DeliveryTransitionError, TransitionOutcome, is_terminal


def _recipient(engine, status: DeliveryStatus = DeliveryStatus.pending, **fields):
    now = utc_now()
    return engine.store.save_recipient(
        CampaignRecipientRecord(
            id=fields.pop("id", "rcp_1"),
            campaign_id="cmp_1",
            sequence=engine.store.next_sequence(),
            phone_number="+971500000001",
            delivery_status=status,
            created_at_utc=now,
            updated_at_utc=now,
            **fields,
        )
    )


def test_dispatcher_path_sets_timestamps(engine) -> None:
    _recipient(engine)
    sm = engine.deliveries
    sm.transition("rcp_1", DeliveryStatus.queued)
    sm.transition("rcp_1", DeliveryStatus.sending, expected=DeliveryStatus.queued)
    sent = sm.transition("rcp_1", DeliveryStatus.sent, provider_message_id="wamid.1")

    assert sent.queued_at_utc is not None
    assert sent.sent_at_utc is not None
    assert engine.store.find_recipient_by_message_id("wamid.1").id == "rcp_1"


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (DeliveryStatus.pending, DeliveryStatus.sent),
        (DeliveryStatus.queued, DeliveryStatus.sent),
        (DeliveryStatus.skipped, DeliveryStatus.queued),
        (DeliveryStatus.read, DeliveryStatus.delivered),
        (DeliveryStatus.bounced, DeliveryStatus.queued),
    ],
)
def test_illegal_transitions_raise(engine, start, target) -> None:
    _recipient(engine, start)
    with pytest.raises(DeliveryTransitionError):
        engine.deliveries.transition("rcp_1", target)


def test_expected_status_acts_as_compare_and_set(engine) -> None:
    _recipient(engine, DeliveryStatus.queued)
    engine.deliveries.transition("rcp_1", DeliveryStatus.sending, expected=DeliveryStatus.queued)
    with pytest.raises(DeliveryTransitionError):
        engine.deliveries.transition(
            "rcp_1", DeliveryStatus.sending, expected=DeliveryStatus.queued
        )


def test_read_before_delivered_backfills_delivery(engine) -> None:
    sent_at = utc_now()
    _recipient(engine, DeliveryStatus.sent, sent_at_utc=sent_at)
    read_at = sent_at + timedelta(seconds=40)

    outcome = engine.deliveries.apply_provider_event("rcp_1", DeliveryStatus.read, read_at)
    late = engine.deliveries.apply_provider_event(
        "rcp_1", DeliveryStatus.delivered, sent_at + timedelta(seconds=20)
    )

    assert outcome == TransitionOutcome.applied
    assert late == TransitionOutcome.duplicate
    recipient = engine.store.get_recipient("rcp_1")
    assert recipient.delivery_status == DeliveryStatus.read
    assert recipient.delivered_at_utc == read_at
    assert recipient.read_at_utc == read_at


def test_repeated_event_is_duplicate(engine) -> None:
    sent_at = utc_now()
    _recipient(engine, DeliveryStatus.sent, sent_at_utc=sent_at)
    delivered_at = sent_at + timedelta(seconds=5)

    first = engine.deliveries.apply_provider_event("rcp_1", DeliveryStatus.delivered, delivered_at)
    second = engine.deliveries.apply_provider_event(
        "rcp_1", DeliveryStatus.delivered, delivered_at
    )

    assert first == TransitionOutcome.applied
    assert second == TransitionOutcome.duplicate


def test_failure_after_delivery_is_rejected(engine) -> None:
    _recipient(engine, DeliveryStatus.delivered, delivered_at_utc=utc_now())
    outcome = engine.deliveries.apply_provider_event(
        "rcp_1", DeliveryStatus.failed, utc_now() + timedelta(seconds=1)
    )
    assert outcome == TransitionOutcome.rejected
    assert engine.store.get_recipient("rcp_1").delivery_status == DeliveryStatus.delivered


def test_bounce_is_terminal_and_not_retryable(engine) -> None:
    _recipient(engine, DeliveryStatus.sent, sent_at_utc=utc_now())
    outcome = engine.deliveries.apply_provider_event(
        "rcp_1", DeliveryStatus.bounced, utc_now() + timedelta(seconds=1)
    )
    recipient = engine.store.get_recipient("rcp_1")
    assert outcome == TransitionOutcome.applied
    assert recipient.error_code == "bounced"
    assert is_terminal(recipient, max_retries=3)


def test_requeue_is_bounded_and_waits_for_backoff(engine, clock) -> None:
    now = clock()
    _recipient(
        engine,
        DeliveryStatus.failed,
        retryable=True,
        retry_count=1,
        failed_at_utc=now,
        next_retry_at_utc=now + timedelta(seconds=120),
        error_code="provider_unavailable",
    )

    assert engine.deliveries.requeue("rcp_1", max_retries=3, now=now) is False
    assert engine.deliveries.requeue("rcp_1", max_retries=1, now=now + timedelta(hours=1)) is False
    assert engine.deliveries.requeue("rcp_1", max_retries=3, now=now + timedelta(seconds=121))

    recipient = engine.store.get_recipient("rcp_1")
    assert recipient.delivery_status == DeliveryStatus.queued
    assert recipient.retry_count == 2
    assert recipient.error_code is None
    assert recipient.failed_at_utc is None
    assert recipient.next_retry_at_utc is None


def test_failed_recipient_terminal_rules() -> None:
    now = utc_now()
    base = dict(
        id="rcp_x",
        campaign_id="cmp_1",
        sequence=1,
        delivery_status=DeliveryStatus.failed,
        created_at_utc=now,
        updated_at_utc=now,
    )
    assert is_terminal(CampaignRecipientRecord(**base, retryable=False), max_retries=3)
    assert not is_terminal(CampaignRecipientRecord(**base, retryable=True), max_retries=3)
    assert is_terminal(
        CampaignRecipientRecord(**base, retryable=True, retry_count=3), max_retries=3
    )
