from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from leadflow.models import (
    AssignmentLogEntry,
    AssignmentMethod,
    AssignmentNotificationRecord,
    utc_now,
)
from leadflow.observability import MetricsRegistry
from leadflow.services.agent_load import AgentLoadTracker
from leadflow.store import InMemoryStore, StoreConflictError, StoreNotFoundError, new_id

logger = logging.getLogger("leadflow.ledger")


class AssignmentLedger:
    """
    The only writer of lead ownership. Every change appends an entry to the
    assignment log; entries are never edited except for the write-once undo
    stamp and clearing ``can_undo`` when a newer entry supersedes them.
    """

    def __init__(
        self,
        store: InMemoryStore,
        loads: AgentLoadTracker,
        *,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.loads = loads
        self.metrics = metrics
        self.clock = clock

    def assign(
        self,
        lead_id: str,
        to_agent_id: str,
        method: AssignmentMethod = AssignmentMethod.manual,
        *,
        rule_id: Optional[str] = None,
        reason: Optional[str] = None,
        assigned_by: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> str:
        self.store.get_agent(to_agent_id)
        with self.store.row_lock("lead", lead_id):
            lead = self.store.get_lead(lead_id)
            from_agent_id = lead.assigned_agent_id
            now = at or self.clock()
            latest = self.latest_entry(lead_id)
            if latest and latest.can_undo and latest.undone_at_utc is None:
                self.store.supersede_assignment_entry(latest.id)
            self.store.save_lead(
                lead.model_copy(
                    update={
                        "assigned_agent_id": to_agent_id,
                        "previous_agent_id": from_agent_id,
                        "assigned_at_utc": now,
                        "reassignment_due_utc": None,
                        "updated_at_utc": now,
                    }
                )
            )
            entry = self.store.append_assignment_log(
                AssignmentLogEntry(
                    id=new_id("alog"),
                    sequence=self.store.next_sequence(),
                    lead_id=lead.id,
                    company_id=lead.company_id,
                    from_agent_id=from_agent_id,
                    to_agent_id=to_agent_id,
                    method=method,
                    rule_id=rule_id,
                    reason=reason,
                    assigned_by=assigned_by,
                    can_undo=True,
                    created_at_utc=now,
                )
            )
            self._move_load(from_agent_id, to_agent_id)

        self._notify(to_agent_id, lead.id, lead.name, method)
        if self.metrics:
            self.metrics.increment("assignments", method=method.value)
        logger.info(
            "lead_assigned lead_id=%s from=%s to=%s method=%s",
            lead_id,
            from_agent_id,
            to_agent_id,
            method.value,
        )
        return entry.id

    def bulk_assign(
        self, lead_ids: list[str], agent_id: str, *, assigned_by: Optional[str] = None
    ) -> int:
        assigned = 0
        for lead_id in lead_ids:
            try:
                self.assign(
                    lead_id,
                    agent_id,
                    AssignmentMethod.manual,
                    reason="bulk assignment",
                    assigned_by=assigned_by,
                )
            except (StoreNotFoundError, StoreConflictError) as exc:
                logger.warning("bulk_assign_skipped lead_id=%s error=%s", lead_id, exc)
                continue
            assigned += 1
        return assigned

    def undo(self, lead_id: str, *, undone_by: Optional[str] = None) -> bool:
        with self.store.row_lock("lead", lead_id):
            lead = self.store.get_lead(lead_id)
            latest = self.latest_entry(lead_id)
            if not latest or not latest.can_undo or latest.undone_at_utc is not None:
                return False

            now = self.clock()
            current_agent_id = lead.assigned_agent_id
            restored_agent_id = latest.from_agent_id
            self.store.stamp_assignment_undone(
                latest.model_copy(update={"undone_at_utc": now, "undone_by": undone_by})
            )
            self.store.save_lead(
                lead.model_copy(
                    update={
                        "assigned_agent_id": restored_agent_id,
                        "previous_agent_id": current_agent_id,
                        "assigned_at_utc": now if restored_agent_id else None,
                        "reassignment_due_utc": None,
                        "updated_at_utc": now,
                    }
                )
            )
            self.store.append_assignment_log(
                AssignmentLogEntry(
                    id=new_id("alog"),
                    sequence=self.store.next_sequence(),
                    lead_id=lead.id,
                    company_id=lead.company_id,
                    from_agent_id=current_agent_id,
                    to_agent_id=restored_agent_id,
                    method=AssignmentMethod.undo,
                    reason=f"undo of {latest.id}",
                    assigned_by=undone_by,
                    can_undo=False,
                    created_at_utc=now,
                )
            )
            self._move_load(current_agent_id, restored_agent_id)

        if self.metrics:
            self.metrics.increment("assignments", method=AssignmentMethod.undo.value)
        logger.info(
            "assignment_undone lead_id=%s entry_id=%s restored=%s",
            lead_id,
            latest.id,
            restored_agent_id,
        )
        return True

    def history(self, lead_id: str) -> list[AssignmentLogEntry]:
        return self.store.list_assignment_log(lead_id)

    def latest_entry(self, lead_id: str) -> Optional[AssignmentLogEntry]:
        entries = self.store.list_assignment_log(lead_id)
        return entries[-1] if entries else None

    def _move_load(self, from_agent_id: Optional[str], to_agent_id: Optional[str]) -> None:
        if from_agent_id == to_agent_id:
            return
        if from_agent_id and from_agent_id in self.store.agents:
            self.loads.record_completion(from_agent_id)
        if to_agent_id:
            self.loads.record_assignment(to_agent_id)

    def _notify(
        self, agent_id: str, lead_id: str, lead_name: str, method: AssignmentMethod
    ) -> None:
        self.store.add_notification(
            AssignmentNotificationRecord(
                id=new_id("ntf"),
                agent_id=agent_id,
                lead_id=lead_id,
                title="New lead assigned",
                message=f"{lead_name} was assigned to you ({method.value})",
                created_at_utc=self.clock(),
            )
        )
