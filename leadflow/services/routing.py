from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Collection, Optional

from leadflow.models import (
    AssignmentConfigRecord,
    AssignmentConfigRequest,
    AssignmentMethod,
    AssignmentPriority,
    LeadCreateRequest,
    LeadRecord,
    LeadResponse,
    RoutingDecision,
    utc_now,
)
from leadflow.services.agent_load import AgentLoadTracker
from leadflow.services.ledger import AssignmentLedger
from leadflow.services.rule_engine import AssignmentRuleEngine, pick_round_robin
from leadflow.store import InMemoryStore

logger = logging.getLogger("leadflow.routing")


class NoEligibleAgentError(Exception):
    pass


class LeadRouter:
    def __init__(
        self,
        store: InMemoryStore,
        rules: AssignmentRuleEngine,
        ledger: AssignmentLedger,
        loads: AgentLoadTracker,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.rules = rules
        self.ledger = ledger
        self.loads = loads
        self.clock = clock

    def intake(self, request: LeadCreateRequest) -> LeadResponse:
        lead = self.store.create_lead(request)
        if not request.auto_assign:
            return LeadResponse(lead_id=lead.id, assigned_agent_id=None, previous_agent_id=None)
        try:
            return self.route(lead.id)
        except NoEligibleAgentError as exc:
            logger.warning("lead_unassigned lead_id=%s reason=%s", lead.id, exc)
            return LeadResponse(
                lead_id=lead.id,
                assigned_agent_id=None,
                previous_agent_id=None,
                detail=str(exc),
            )

    def route(self, lead_id: str) -> LeadResponse:
        lead = self.store.get_lead(lead_id)
        decision = self.decide(lead)
        entry_id = self.ledger.assign(
            lead.id,
            decision.agent_id,
            decision.method,
            rule_id=decision.rule_id,
            reason="rule match" if decision.rule_id else "company fallback",
        )
        updated = self.store.get_lead(lead.id)
        return LeadResponse(
            lead_id=updated.id,
            assigned_agent_id=updated.assigned_agent_id,
            previous_agent_id=updated.previous_agent_id,
            log_entry_id=entry_id,
        )

    def decide(self, lead: LeadRecord) -> RoutingDecision:
        decision = self.rules.evaluate(lead)
        if decision:
            return decision
        agent_id = self.fallback_agent(lead.company_id)
        if not agent_id:
            raise NoEligibleAgentError(f"no eligible agent for lead {lead.id}")
        return RoutingDecision(agent_id=agent_id, method=AssignmentMethod.round_robin)

    def fallback_agent(
        self, company_id: str, *, exclude: Collection[str] = ()
    ) -> Optional[str]:
        config = self.store.get_assignment_config(company_id)
        if not config:
            return None
        if (
            config.default_agent_id
            and config.default_agent_id not in exclude
            and self.loads.is_eligible(config.default_agent_id)
        ):
            return config.default_agent_id
        if config.default_pool_id and config.default_pool_id in self.store.pools:
            agent_id = self.rules.select_from_pool(config.default_pool_id, exclude=exclude)
            if agent_id:
                return agent_id
        return self.fallback_round_robin(company_id, exclude=exclude)

    def fallback_round_robin(
        self, company_id: str, *, exclude: Collection[str] = ()
    ) -> Optional[str]:
        with self.store.row_lock("config", company_id):
            config = self.store.get_assignment_config(company_id)
            if not config or not config.fallback_agent_ids:
                return None
            picked = pick_round_robin(
                config.fallback_agent_ids,
                config.round_robin_index,
                self.loads.is_eligible,
                exclude=exclude,
            )
            if not picked:
                return None
            index, agent_id = picked
            self.store.save_assignment_config(
                config.model_copy(
                    update={
                        "round_robin_index": (index + 1) % len(config.fallback_agent_ids),
                        "updated_at_utc": self.clock(),
                    }
                )
            )
            return agent_id

    def configure(
        self, company_id: str, request: AssignmentConfigRequest
    ) -> AssignmentConfigRecord:
        if request.default_agent_id:
            self.store.get_agent(request.default_agent_id)
        if request.default_pool_id:
            self.store.get_pool(request.default_pool_id)
        for agent_id in request.fallback_agent_ids:
            self.store.get_agent(agent_id)
        with self.store.row_lock("config", company_id):
            existing = self.store.get_assignment_config(company_id)
            cursor = existing.round_robin_index if existing else 0
            return self.store.save_assignment_config(
                AssignmentConfigRecord(
                    company_id=company_id,
                    default_agent_id=request.default_agent_id,
                    default_pool_id=request.default_pool_id,
                    fallback_agent_ids=list(request.fallback_agent_ids),
                    round_robin_index=cursor,
                    updated_at_utc=self.clock(),
                )
            )

    def record_contact(self, lead_id: str, at: Optional[datetime] = None) -> LeadRecord:
        with self.store.row_lock("lead", lead_id):
            lead = self.store.get_lead(lead_id)
            now = self.clock()
            return self.store.save_lead(
                lead.model_copy(
                    update={"last_contacted_at_utc": at or now, "updated_at_utc": now}
                )
            )

    def set_priority(self, lead_id: str, priority: AssignmentPriority) -> LeadRecord:
        with self.store.row_lock("lead", lead_id):
            lead = self.store.get_lead(lead_id)
            return self.store.save_lead(
                lead.model_copy(
                    update={"assignment_priority": priority, "updated_at_utc": self.clock()}
                )
            )
