from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from leadflow.models import (
    AssignmentLogEntry,
    AssignmentMethod,
    DeliveryStatus,
    IngestResult,
    WebhookEventRecord,
    WebhookEventStatus,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlPersistence:
    """
    Durable side of the store. Works against SQLite and PostgreSQL URLs.

    The whole engine state is kept as one JSON snapshot so a restart can
    hydrate the in-memory store. Assignment log entries and webhook events
    are also written to their own tables so the audit trail stays queryable
    without loading the snapshot.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.assignment_log_entries = Table(
            "assignment_log_entries",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("sequence", Integer, nullable=False),
            Column("lead_id", String(120), nullable=False, index=True),
            Column("company_id", String(120), nullable=False),
            Column("from_agent_id", String(120), nullable=True),
            Column("to_agent_id", String(120), nullable=True),
            Column("method", String(30), nullable=False),
            Column("rule_id", String(120), nullable=True),
            Column("reason", Text, nullable=True),
            Column("assigned_by", String(120), nullable=True),
            Column("can_undo", Boolean, nullable=False),
            Column("undone_at_utc", DateTime, nullable=True),
            Column("undone_by", String(120), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.webhook_events = Table(
            "webhook_events",
            self.metadata,
            Column("key", String(255), primary_key=True),
            Column("id", String(120), nullable=False),
            Column("provider", String(50), nullable=False),
            Column("event_id", String(255), nullable=False),
            Column("event_type", String(30), nullable=False),
            Column("provider_message_id", String(255), nullable=False, index=True),
            Column("occurred_at_utc", DateTime, nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("processed", Boolean, nullable=False),
            Column("status", String(50), nullable=False),
            Column("outcome", String(30), nullable=True),
            Column("retry_count", Integer, nullable=False),
            Column("next_retry_utc", DateTime, nullable=True),
            Column("recipient_id", String(120), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def append_assignment_log(self, entry: AssignmentLogEntry) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.assignment_log_entries.insert().values(
                        id=entry.id,
                        sequence=entry.sequence,
                        lead_id=entry.lead_id,
                        company_id=entry.company_id,
                        from_agent_id=entry.from_agent_id,
                        to_agent_id=entry.to_agent_id,
                        method=entry.method.value,
                        rule_id=entry.rule_id,
                        reason=entry.reason,
                        assigned_by=entry.assigned_by,
                        can_undo=entry.can_undo,
                        undone_at_utc=entry.undone_at_utc,
                        undone_by=entry.undone_by,
                        created_at_utc=entry.created_at_utc,
                    )
                )

    def mark_assignment_undone(
        self, *, entry_id: str, undone_at_utc: datetime, undone_by: Optional[str]
    ) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.assignment_log_entries.update()
                    .where(self.assignment_log_entries.c.id == entry_id)
                    .where(self.assignment_log_entries.c.undone_at_utc.is_(None))
                    .values(undone_at_utc=undone_at_utc, undone_by=undone_by)
                )

    def mark_assignment_superseded(self, entry_id: str) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.assignment_log_entries.update()
                    .where(self.assignment_log_entries.c.id == entry_id)
                    .values(can_undo=False)
                )

    def list_assignment_log(self, lead_id: Optional[str] = None) -> list[AssignmentLogEntry]:
        table = self.assignment_log_entries
        query = select(table).order_by(table.c.sequence)
        if lead_id:
            query = query.where(table.c.lead_id == lead_id)
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [
            AssignmentLogEntry(
                id=row.id,
                sequence=row.sequence,
                lead_id=row.lead_id,
                company_id=row.company_id,
                from_agent_id=row.from_agent_id,
                to_agent_id=row.to_agent_id,
                method=AssignmentMethod(row.method),
                rule_id=row.rule_id,
                reason=row.reason,
                assigned_by=row.assigned_by,
                can_undo=bool(row.can_undo),
                undone_at_utc=row.undone_at_utc,
                undone_by=row.undone_by,
                created_at_utc=row.created_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]

    def upsert_webhook_event(self, record: WebhookEventRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.webhook_events.c.key).where(
                        self.webhook_events.c.key == record.key
                    )
                ).first()
                payload = {
                    "id": record.id,
                    "provider": record.provider,
                    "event_id": record.event_id,
                    "event_type": record.event_type.value,
                    "provider_message_id": record.provider_message_id,
                    "occurred_at_utc": record.occurred_at_utc,
                    "payload_json": json.dumps(record.payload),
                    "processed": record.processed,
                    "status": record.status.value,
                    "outcome": record.outcome.value if record.outcome else None,
                    "retry_count": record.retry_count,
                    "next_retry_utc": record.next_retry_utc,
                    "recipient_id": record.recipient_id,
                    "created_at_utc": record.created_at_utc,
                    "updated_at_utc": record.updated_at_utc,
                }
                if existing:
                    conn.execute(
                        self.webhook_events.update()
                        .where(self.webhook_events.c.key == record.key)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.webhook_events.insert().values(key=record.key, **payload))

    def list_webhook_events(self) -> list[WebhookEventRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.webhook_events)).all()
        output: list[WebhookEventRecord] = []
        for row in rows:
            output.append(
                WebhookEventRecord(
                    key=row.key,
                    id=row.id,
                    provider=row.provider,
                    event_id=row.event_id,
                    event_type=DeliveryStatus(row.event_type),
                    provider_message_id=row.provider_message_id,
                    occurred_at_utc=row.occurred_at_utc,
                    payload=json.loads(row.payload_json),
                    processed=bool(row.processed),
                    status=WebhookEventStatus(row.status),
                    outcome=IngestResult(row.outcome) if row.outcome else None,
                    retry_count=row.retry_count,
                    next_retry_utc=row.next_retry_utc,
                    recipient_id=row.recipient_id,
                    created_at_utc=row.created_at_utc or datetime.utcnow(),
                    updated_at_utc=row.updated_at_utc or datetime.utcnow(),
                )
            )
        return output
