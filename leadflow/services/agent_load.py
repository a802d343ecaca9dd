from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from leadflow.models import AgentCreateRequest, AgentLoad, AgentRecord, utc_now
from leadflow.store import InMemoryStore

logger = logging.getLogger("leadflow.agent_load")


def _week_key(day: datetime) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


class AgentLoadTracker:
    """Per-agent capacity and assignment counters."""

    def __init__(
        self,
        store: InMemoryStore,
        *,
        default_capacity: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.default_capacity = default_capacity
        self.clock = clock

    def register_agent(self, request: AgentCreateRequest) -> AgentRecord:
        agent = self.store.create_agent(request, default_capacity=self.default_capacity)
        logger.info(
            "agent_registered agent_id=%s company_id=%s capacity=%s",
            agent.id,
            agent.company_id,
            agent.max_leads_capacity,
        )
        return agent

    def get_load(self, agent_id: str) -> AgentLoad:
        agent = self.store.get_agent(agent_id)
        return AgentLoad(
            agent_id=agent.id,
            current_count=agent.current_leads_count,
            capacity=agent.max_leads_capacity,
            is_available=agent.is_available,
        )

    def list_loads(self, company_id: str) -> list[AgentLoad]:
        return [self.get_load(agent.id) for agent in self.store.list_agents(company_id)]

    def is_eligible(self, agent_id: str) -> bool:
        agent = self.store.agents.get(agent_id)
        if not agent:
            return False
        return agent.is_available and agent.current_leads_count < agent.max_leads_capacity

    def record_assignment(self, agent_id: str) -> AgentRecord:
        with self.store.row_lock("agent", agent_id):
            agent = self.store.get_agent(agent_id)
            now = self.clock()
            agent = self._roll_counters(agent, now)
            updated = agent.model_copy(
                update={
                    "current_leads_count": agent.current_leads_count + 1,
                    "total_assignments_today": agent.total_assignments_today + 1,
                    "total_assignments_week": agent.total_assignments_week + 1,
                    "last_assignment_at_utc": now,
                    "updated_at_utc": now,
                }
            )
            return self.store.save_agent(updated)

    def record_completion(self, agent_id: str) -> AgentRecord:
        with self.store.row_lock("agent", agent_id):
            agent = self.store.get_agent(agent_id)
            updated = agent.model_copy(
                update={
                    "current_leads_count": max(0, agent.current_leads_count - 1),
                    "updated_at_utc": self.clock(),
                }
            )
            return self.store.save_agent(updated)

    def set_availability(self, agent_id: str, is_available: bool) -> AgentRecord:
        with self.store.row_lock("agent", agent_id):
            agent = self.store.get_agent(agent_id)
            updated = agent.model_copy(
                update={"is_available": is_available, "updated_at_utc": self.clock()}
            )
            logger.info("agent_availability agent_id=%s available=%s", agent_id, is_available)
            return self.store.save_agent(updated)

    def set_capacity(self, agent_id: str, capacity: int) -> AgentRecord:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        with self.store.row_lock("agent", agent_id):
            agent = self.store.get_agent(agent_id)
            updated = agent.model_copy(
                update={"max_leads_capacity": capacity, "updated_at_utc": self.clock()}
            )
            return self.store.save_agent(updated)

    def update_performance(
        self,
        agent_id: str,
        *,
        conversion_rate: Optional[float] = None,
        average_response_time_hours: Optional[float] = None,
    ) -> AgentRecord:
        with self.store.row_lock("agent", agent_id):
            agent = self.store.get_agent(agent_id)
            changes: dict = {"updated_at_utc": self.clock()}
            if conversion_rate is not None:
                changes["conversion_rate"] = max(0.0, min(1.0, conversion_rate))
            if average_response_time_hours is not None:
                changes["average_response_time_hours"] = max(0.0, average_response_time_hours)
            return self.store.save_agent(agent.model_copy(update=changes))

    def _roll_counters(self, agent: AgentRecord, now: datetime) -> AgentRecord:
        today = now.date().isoformat()
        if agent.counters_date == today:
            return agent
        changes: dict = {"counters_date": today, "total_assignments_today": 0}
        if agent.counters_date is None or _week_key(
            datetime.fromisoformat(agent.counters_date)
        ) != _week_key(now):
            changes["total_assignments_week"] = 0
        return agent.model_copy(update=changes)
