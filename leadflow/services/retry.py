from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from leadflow.models import CampaignStatus, DeliveryStatus, utc_now
from leadflow.observability import MetricsRegistry
from leadflow.services.delivery import DeliveryStateMachine
from leadflow.services.dispatcher import CampaignDispatcher
from leadflow.store import InMemoryStore

logger = logging.getLogger("leadflow.retry")


class RetryCoordinator:
    def __init__(
        self,
        store: InMemoryStore,
        deliveries: DeliveryStateMachine,
        dispatcher: CampaignDispatcher,
        *,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.deliveries = deliveries
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.clock = clock

    def run_retry_pass(
        self,
        campaign_id: str,
        *,
        max_retries: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        campaign = self.store.get_campaign(campaign_id)
        limit = campaign.max_retries if max_retries is None else max_retries
        now = now or self.clock()
        requeued: list[str] = []
        if campaign.status in {CampaignStatus.active, CampaignStatus.paused}:
            for recipient in self.store.list_recipients(campaign_id, status=DeliveryStatus.failed):
                if self.deliveries.requeue(recipient.id, limit, now):
                    requeued.append(recipient.id)
        if requeued:
            self.store.log_campaign_action(
                campaign_id, "retry_pass", details={"requeued": len(requeued)}
            )
            if self.metrics:
                self.metrics.increment("retries", amount=len(requeued))
            logger.info("retry_pass campaign_id=%s requeued=%s", campaign_id, len(requeued))
        self.dispatcher.analytics.refresh_counters(campaign_id)
        self.dispatcher.refresh_completion(campaign_id)
        return requeued

    def run_all(self, now: Optional[datetime] = None) -> dict[str, int]:
        results: dict[str, int] = {}
        for campaign in self.store.list_campaigns(CampaignStatus.active):
            requeued = self.run_retry_pass(campaign.id, now=now)
            if requeued:
                self.dispatcher.dispatch(campaign.id)
            results[campaign.id] = len(requeued)
        return results
