from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from leadflow.models import AssignmentMethod, AutoReassignmentRuleRecord, LeadRecord, utc_now
from leadflow.observability import MetricsRegistry
from leadflow.services.agent_load import AgentLoadTracker
from leadflow.services.ledger import AssignmentLedger
from leadflow.services.routing import LeadRouter
from leadflow.services.rule_engine import AssignmentRuleEngine
from leadflow.store import InMemoryStore

logger = logging.getLogger("leadflow.reassignment")


def last_activity(lead: LeadRecord) -> datetime:
    moments = [lead.created_at_utc]
    if lead.assigned_at_utc:
        moments.append(lead.assigned_at_utc)
    if lead.last_contacted_at_utc:
        moments.append(lead.last_contacted_at_utc)
    return max(moments)


def _is_stale(lead: LeadRecord, stages: set[str], cutoff: datetime) -> bool:
    return (
        lead.assigned_agent_id is not None
        and lead.reassignment_due_utc is None
        and lead.stage.casefold() in stages
        and last_activity(lead) < cutoff
    )


class ReassignmentScheduler:
    """
    Moves leads whose owner has not touched them in time. A lead is claimed
    by stamping ``reassignment_due_utc`` under its row lock before any target
    is picked, so overlapping sweeps reassign each lead at most once.
    """

    def __init__(
        self,
        store: InMemoryStore,
        ledger: AssignmentLedger,
        rules: AssignmentRuleEngine,
        router: LeadRouter,
        loads: AgentLoadTracker,
        *,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.rules = rules
        self.router = router
        self.loads = loads
        self.metrics = metrics
        self.clock = clock

    def sweep(self, company_id: str, now: Optional[datetime] = None) -> list[str]:
        now = now or self.clock()
        reassigned: list[str] = []
        for rule in self.store.list_reassignment_rules(company_id):
            if not rule.is_active:
                continue
            cutoff = now - timedelta(days=rule.days_without_contact)
            stages = {stage.casefold() for stage in rule.apply_to_stages}
            for lead in self.store.list_leads(company_id):
                if lead.id in reassigned or not _is_stale(lead, stages, cutoff):
                    continue
                claimed = self._claim(lead.id, stages, cutoff, now)
                if not claimed:
                    continue
                target = self._pick_target(rule, claimed)
                if not target:
                    self._release(lead.id, now)
                    logger.info(
                        "reassignment_no_target lead_id=%s rule_id=%s", lead.id, rule.id
                    )
                    continue
                self.ledger.assign(
                    lead.id,
                    target,
                    AssignmentMethod.reassignment,
                    reason=f"no contact for {rule.days_without_contact} days",
                    assigned_by=f"auto:{rule.id}",
                    at=now,
                )
                reassigned.append(lead.id)
        if reassigned:
            if self.metrics:
                self.metrics.increment("reassignments", amount=len(reassigned))
            logger.info(
                "reassignment_sweep company_id=%s reassigned=%s", company_id, len(reassigned)
            )
        return reassigned

    def sweep_all(self, now: Optional[datetime] = None) -> list[str]:
        companies = sorted(
            {rule.company_id for rule in self.store.list_reassignment_rules() if rule.is_active}
        )
        reassigned: list[str] = []
        for company_id in companies:
            reassigned.extend(self.sweep(company_id, now))
        return reassigned

    def _claim(
        self, lead_id: str, stages: set[str], cutoff: datetime, now: datetime
    ) -> Optional[LeadRecord]:
        with self.store.row_lock("lead", lead_id):
            lead = self.store.get_lead(lead_id)
            if not _is_stale(lead, stages, cutoff):
                return None
            return self.store.save_lead(
                lead.model_copy(update={"reassignment_due_utc": now, "updated_at_utc": now})
            )

    def _release(self, lead_id: str, claimed_at: datetime) -> None:
        with self.store.row_lock("lead", lead_id):
            lead = self.store.get_lead(lead_id)
            if lead.reassignment_due_utc != claimed_at:
                return
            self.store.save_lead(
                lead.model_copy(
                    update={"reassignment_due_utc": None, "updated_at_utc": self.clock()}
                )
            )

    def _pick_target(
        self, rule: AutoReassignmentRuleRecord, lead: LeadRecord
    ) -> Optional[str]:
        exclude = {lead.assigned_agent_id} if lead.assigned_agent_id else set()
        explicit = rule.reassign_to_agent_id
        if explicit and explicit not in exclude and self.loads.is_eligible(explicit):
            return explicit
        if rule.reassign_to_pool_id:
            agent_id = self.rules.select_from_pool(rule.reassign_to_pool_id, exclude=exclude)
            if agent_id:
                return agent_id
        if rule.use_round_robin:
            return self.router.fallback_agent(lead.company_id, exclude=exclude)
        return None
