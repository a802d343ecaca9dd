from __future__ import annotations

import logging
from typing import Callable, Collection, Optional, Sequence

from leadflow.models import (
    AssignmentMethod,
    AssignmentRuleRecord,
    LeadRecord,
    MatchType,
    RoutingDecision,
    utc_now,
)
from leadflow.services.agent_load import AgentLoadTracker
from leadflow.services.conditions import evaluate_all, lead_facts
from leadflow.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("leadflow.rules")


class RuleConfigurationError(Exception):
    pass


def pick_round_robin(
    candidates: Sequence[str],
    cursor: int,
    is_eligible: Callable[[str], bool],
    *,
    exclude: Collection[str] = (),
) -> Optional[tuple[int, str]]:
    """
    Scan ``candidates`` starting at ``cursor`` and return the first eligible
    ``(index, agent_id)``. The cursor is clamped modulo the list length so a
    list that shrank since the cursor was stored still resolves.
    """
    total = len(candidates)
    if total == 0:
        return None
    start = cursor % total
    for offset in range(total):
        index = (start + offset) % total
        agent_id = candidates[index]
        if agent_id in exclude or not is_eligible(agent_id):
            continue
        return index, agent_id
    return None


class AssignmentRuleEngine:
    def __init__(self, store: InMemoryStore, loads: AgentLoadTracker) -> None:
        self.store = store
        self.loads = loads

    def evaluate(self, lead: LeadRecord) -> Optional[RoutingDecision]:
        facts = lead_facts(lead)
        for rule in self.store.list_rules(lead.company_id):
            if not evaluate_all(rule.conditions, facts, match_all=rule.match_all_conditions):
                continue
            self._check_configuration(rule)
            decision = self._select(rule)
            if decision:
                logger.info(
                    "rule_matched lead_id=%s rule_id=%s agent_id=%s",
                    lead.id,
                    rule.id,
                    decision.agent_id,
                )
                return decision
            logger.info("rule_no_eligible_agent lead_id=%s rule_id=%s", lead.id, rule.id)
        return None

    def select_from_pool(
        self, pool_id: str, *, exclude: Collection[str] = ()
    ) -> Optional[str]:
        with self.store.row_lock("pool", pool_id):
            pool = self.store.get_pool(pool_id)
            if not pool.is_active:
                return None
            picked = pick_round_robin(
                pool.member_agent_ids,
                pool.round_robin_index,
                self.loads.is_eligible,
                exclude=exclude,
            )
            if not picked:
                return None
            index, agent_id = picked
            self.store.save_pool(
                pool.model_copy(
                    update={
                        "round_robin_index": (index + 1) % len(pool.member_agent_ids),
                        "updated_at_utc": utc_now(),
                    }
                )
            )
            return agent_id

    def _check_configuration(self, rule: AssignmentRuleRecord) -> None:
        if rule.rule_type == MatchType.pool:
            if not rule.pool_id or rule.pool_id not in self.store.pools:
                raise RuleConfigurationError(
                    f"rule {rule.id} references unknown pool: {rule.pool_id}"
                )
            return
        if not rule.assigned_agents:
            raise RuleConfigurationError(f"rule {rule.id} has no assigned agents")
        for agent_id in rule.assigned_agents:
            if agent_id not in self.store.agents:
                raise RuleConfigurationError(
                    f"rule {rule.id} references unknown agent: {agent_id}"
                )

    def _select(self, rule: AssignmentRuleRecord) -> Optional[RoutingDecision]:
        if rule.rule_type == MatchType.pool:
            agent_id = self.select_from_pool(rule.pool_id)
            if not agent_id:
                return None
            return RoutingDecision(
                agent_id=agent_id,
                method=AssignmentMethod.round_robin,
                rule_id=rule.id,
                pool_id=rule.pool_id,
            )

        if rule.rule_type == MatchType.direct:
            first = rule.assigned_agents[0]
            if self.loads.is_eligible(first):
                return RoutingDecision(agent_id=first, method=AssignmentMethod.rule, rule_id=rule.id)

        agent_id = self._advance_rule_cursor(rule.id)
        if not agent_id:
            return None
        return RoutingDecision(
            agent_id=agent_id, method=AssignmentMethod.round_robin, rule_id=rule.id
        )

    def _advance_rule_cursor(self, rule_id: str) -> Optional[str]:
        with self.store.row_lock("rule", rule_id):
            try:
                rule = self.store.get_rule(rule_id)
            except StoreNotFoundError:
                return None
            picked = pick_round_robin(
                rule.assigned_agents, rule.round_robin_index, self.loads.is_eligible
            )
            if not picked:
                return None
            index, agent_id = picked
            self.store.save_rule(
                rule.model_copy(
                    update={
                        "round_robin_index": (index + 1) % len(rule.assigned_agents),
                        "version": rule.version + 1,
                        "updated_at_utc": utc_now(),
                    }
                )
            )
            return agent_id
