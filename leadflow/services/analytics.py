from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Callable

from leadflow.models import CampaignAnalytics, DeliveryStatus, utc_now
from leadflow.services.delivery import is_terminal
from leadflow.store import InMemoryStore


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part * 100.0 / whole, 2)


class CampaignAnalyticsAggregator:
    def __init__(
        self, store: InMemoryStore, *, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.store = store
        self.clock = clock

    def summarize(self, campaign_id: str) -> CampaignAnalytics:
        campaign = self.store.get_campaign(campaign_id)
        recipients = self.store.list_recipients(campaign_id)
        counts = {status.value: 0 for status in DeliveryStatus}
        errors: Counter[str] = Counter()
        exhausted = 0
        retry_pending = 0
        delivery_seconds: list[float] = []

        for recipient in recipients:
            counts[recipient.delivery_status.value] += 1
            if recipient.error_code:
                errors[recipient.error_code] += 1
            if recipient.delivery_status == DeliveryStatus.failed:
                if is_terminal(recipient, campaign.max_retries):
                    exhausted += 1
                else:
                    retry_pending += 1
            if recipient.sent_at_utc and recipient.delivered_at_utc:
                delivery_seconds.append(
                    (recipient.delivered_at_utc - recipient.sent_at_utc).total_seconds()
                )

        total = len(recipients)
        reached = counts[DeliveryStatus.delivered.value] + counts[DeliveryStatus.read.value]
        failed = counts[DeliveryStatus.failed.value] + counts[DeliveryStatus.bounced.value]
        return CampaignAnalytics(
            campaign_id=campaign.id,
            status=campaign.status,
            total_recipients=total,
            counts=counts,
            exhausted_failures=exhausted,
            retry_pending=retry_pending,
            delivery_rate=_percent(reached, total),
            read_rate=_percent(counts[DeliveryStatus.read.value], reached),
            failure_rate=_percent(failed, total),
            average_delivery_time_seconds=(
                round(sum(delivery_seconds) / len(delivery_seconds), 3)
                if delivery_seconds
                else None
            ),
            error_summary=dict(errors),
        )

    def refresh_counters(self, campaign_id: str) -> CampaignAnalytics:
        with self.store.row_lock("campaign", campaign_id):
            summary = self.summarize(campaign_id)
            campaign = self.store.get_campaign(campaign_id)
            error_summary = dict(campaign.error_summary)
            for code, count in summary.error_summary.items():
                error_summary[code] = max(error_summary.get(code, 0), count)
            self.store.save_campaign(
                campaign.model_copy(
                    update={
                        "total_recipients": summary.total_recipients,
                        "counters": {
                            **{key: value for key, value in summary.counts.items() if value},
                            "exhausted_failures": summary.exhausted_failures,
                            "retry_pending": summary.retry_pending,
                        },
                        "error_summary": error_summary,
                        "updated_at_utc": self.clock(),
                    }
                )
            )
        return summary
