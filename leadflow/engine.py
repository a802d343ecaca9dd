from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from leadflow.models import utc_now
from leadflow.observability import MetricsRegistry
from leadflow.services.agent_load import AgentLoadTracker
from leadflow.services.analytics import CampaignAnalyticsAggregator
from leadflow.services.channels import ProviderRegistry, sandbox_registry
from leadflow.services.delivery import DeliveryStateMachine
from leadflow.services.dispatcher import CampaignDispatcher
from leadflow.services.jobs import JobScheduler
from leadflow.services.ledger import AssignmentLedger
from leadflow.services.reassignment import ReassignmentScheduler
from leadflow.services.reconciler import WebhookReconciler
from leadflow.services.retry import RetryCoordinator
from leadflow.services.routing import LeadRouter
from leadflow.services.rule_engine import AssignmentRuleEngine
from leadflow.settings import Settings
from leadflow.store import InMemoryStore


@dataclass
class Engine:
    store: InMemoryStore
    metrics: MetricsRegistry
    loads: AgentLoadTracker
    rules: AssignmentRuleEngine
    ledger: AssignmentLedger
    router: LeadRouter
    reassignment: ReassignmentScheduler
    deliveries: DeliveryStateMachine
    providers: ProviderRegistry
    analytics: CampaignAnalyticsAggregator
    dispatcher: CampaignDispatcher
    retries: RetryCoordinator
    webhooks: WebhookReconciler
    jobs: Optional[JobScheduler] = None

    def launch_due_campaigns(self) -> list[str]:
        started = self.dispatcher.activate_due()
        for campaign_id in started:
            self.dispatcher.dispatch(campaign_id)
        return started

    def start_jobs(self) -> None:
        if self.jobs is not None:
            self.jobs.start()

    def stop_jobs(self) -> None:
        if self.jobs is not None:
            self.jobs.shutdown()


def build_engine(
    store: InMemoryStore,
    settings: Settings,
    *,
    providers: Optional[ProviderRegistry] = None,
    metrics: Optional[MetricsRegistry] = None,
    clock: Callable[[], datetime] = utc_now,
    monotonic: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Engine:
    metrics = metrics or MetricsRegistry()
    providers = providers or sandbox_registry()
    loads = AgentLoadTracker(store, default_capacity=settings.default_agent_capacity, clock=clock)
    rules = AssignmentRuleEngine(store, loads)
    ledger = AssignmentLedger(store, loads, metrics=metrics, clock=clock)
    router = LeadRouter(store, rules, ledger, loads, clock=clock)
    reassignment = ReassignmentScheduler(
        store, ledger, rules, router, loads, metrics=metrics, clock=clock
    )
    deliveries = DeliveryStateMachine(store, clock=clock)
    analytics = CampaignAnalyticsAggregator(store, clock=clock)
    dispatcher = CampaignDispatcher(
        store,
        deliveries,
        providers,
        analytics,
        metrics=metrics,
        default_rate_limit=settings.default_rate_limit_per_second,
        default_max_retries=settings.default_max_retries,
        backoff_seconds=settings.retry_backoff_seconds,
        backoff_max_seconds=settings.retry_backoff_max_seconds,
        channel_concurrency=settings.channel_concurrency(),
        clock=clock,
        monotonic=monotonic,
        sleep=sleep,
    )
    retries = RetryCoordinator(store, deliveries, dispatcher, metrics=metrics, clock=clock)
    webhooks = WebhookReconciler(
        store,
        deliveries,
        dispatcher,
        metrics=metrics,
        max_attempts=settings.webhook_match_max_attempts,
        retry_seconds=settings.webhook_match_retry_seconds,
        clock=clock,
    )
    engine = Engine(
        store=store,
        metrics=metrics,
        loads=loads,
        rules=rules,
        ledger=ledger,
        router=router,
        reassignment=reassignment,
        deliveries=deliveries,
        providers=providers,
        analytics=analytics,
        dispatcher=dispatcher,
        retries=retries,
        webhooks=webhooks,
    )
    jobs = JobScheduler(settings.job_interval_seconds)
    jobs.add("launch_campaigns", engine.launch_due_campaigns)
    jobs.add("retry_failed_sends", retries.run_all)
    jobs.add("reconcile_webhooks", webhooks.retry_unmatched)
    jobs.add("reassign_stale_leads", reassignment.sweep_all)
    engine.jobs = jobs
    return engine
