from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import TYPE_CHECKING, Any, Iterator, Optional
from uuid import uuid4

from leadflow.models import (
    AgentCreateRequest,
    AgentPoolCreateRequest,
    AgentPoolRecord,
    AgentRecord,
    AssignmentConfigRecord,
    AssignmentLogEntry,
    AssignmentNotificationRecord,
    AssignmentRuleCreateRequest,
    AssignmentRuleRecord,
    AutoReassignmentRuleCreateRequest,
    AutoReassignmentRuleRecord,
    CampaignCreateRequest,
    CampaignLogRecord,
    CampaignRecipientRecord,
    CampaignRecord,
    CampaignStatus,
    DeliveryStatus,
    LeadCreateRequest,
    LeadRecord,
    WebhookEventRecord,
    WebhookEventStatus,
    utc_now,
)

if TYPE_CHECKING:
    from leadflow.persistence import SqlPersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    """
    Process-local state for the engine.

    ``_lock`` only guards collection writes and snapshots. Read-modify-write
    sequences on a single row go through ``row_lock`` so two writers of
    different rows never wait on each other.
    """

    def __init__(self, persistence: Optional["SqlPersistence"] = None) -> None:
        self._lock = RLock()
        self._row_locks: dict[tuple[str, str], list[Any]] = {}
        self._sequence = 0
        self.persistence = persistence
        self.leads: dict[str, LeadRecord] = {}
        self.agents: dict[str, AgentRecord] = {}
        self.pools: dict[str, AgentPoolRecord] = {}
        self.rules: dict[str, AssignmentRuleRecord] = {}
        self.assignment_configs: dict[str, AssignmentConfigRecord] = {}
        self.reassignment_rules: dict[str, AutoReassignmentRuleRecord] = {}
        self.assignment_log: list[AssignmentLogEntry] = []
        self.notifications: dict[str, AssignmentNotificationRecord] = {}
        self.campaigns: dict[str, CampaignRecord] = {}
        self.recipients: dict[str, CampaignRecipientRecord] = {}
        self.webhook_events: dict[str, WebhookEventRecord] = {}
        self.campaign_logs: list[CampaignLogRecord] = []
        self._recipients_by_message_id: dict[str, str] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            else:
                for event in self.persistence.list_webhook_events():
                    self.webhook_events[event.key] = event
                self.assignment_log = self.persistence.list_assignment_log()

    @contextmanager
    def row_lock(self, kind: str, key: str) -> Iterator[None]:
        # Entries are [lock, holders]; an entry is dropped once nobody holds or waits on it.
        with self._lock:
            entry = self._row_locks.setdefault((kind, key), [Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._row_locks[(kind, key)]

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    # Leads

    def create_lead(self, request: LeadCreateRequest) -> LeadRecord:
        now = utc_now()
        lead = LeadRecord(
            id=new_id("lead"),
            company_id=request.company_id.strip(),
            name=request.name.strip(),
            phone=request.phone.strip() if request.phone else None,
            email=request.email.strip() if request.email else None,
            source=request.source,
            stage=request.stage,
            budget=request.budget,
            location=request.location,
            property_type=request.property_type,
            attributes=request.attributes,
            assignment_priority=request.assignment_priority,
            created_at_utc=now,
            updated_at_utc=now,
        )
        return self.save_lead(lead)

    def get_lead(self, lead_id: str) -> LeadRecord:
        lead = self.leads.get(lead_id)
        if not lead:
            raise StoreNotFoundError(f"lead not found: {lead_id}")
        return lead

    def save_lead(self, lead: LeadRecord) -> LeadRecord:
        with self._lock:
            self.leads[lead.id] = lead
            self._persist_state()
            return lead

    def list_leads(self, company_id: Optional[str] = None) -> list[LeadRecord]:
        with self._lock:
            records = list(self.leads.values())
        if company_id:
            records = [lead for lead in records if lead.company_id == company_id]
        return records

    # Agents and pools

    def create_agent(self, request: AgentCreateRequest, *, default_capacity: int) -> AgentRecord:
        with self._lock:
            agent_id = request.agent_id or new_id("agt")
            if agent_id in self.agents:
                raise StoreConflictError(f"agent already exists: {agent_id}")
            now = utc_now()
            agent = AgentRecord(
                id=agent_id,
                company_id=request.company_id.strip(),
                name=request.name.strip(),
                is_available=request.is_available,
                max_leads_capacity=request.max_leads_capacity or default_capacity,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.agents[agent.id] = agent
            self._persist_state()
            return agent

    def get_agent(self, agent_id: str) -> AgentRecord:
        agent = self.agents.get(agent_id)
        if not agent:
            raise StoreNotFoundError(f"agent not found: {agent_id}")
        return agent

    def save_agent(self, agent: AgentRecord) -> AgentRecord:
        with self._lock:
            self.agents[agent.id] = agent
            self._persist_state()
            return agent

    def list_agents(self, company_id: Optional[str] = None) -> list[AgentRecord]:
        with self._lock:
            records = list(self.agents.values())
        if company_id:
            records = [agent for agent in records if agent.company_id == company_id]
        return records

    def create_pool(self, request: AgentPoolCreateRequest) -> AgentPoolRecord:
        for agent_id in request.member_agent_ids:
            self.get_agent(agent_id)
        now = utc_now()
        pool = AgentPoolRecord(
            id=new_id("pool"),
            company_id=request.company_id.strip(),
            name=request.name.strip(),
            member_agent_ids=list(request.member_agent_ids),
            created_at_utc=now,
            updated_at_utc=now,
        )
        return self.save_pool(pool)

    def get_pool(self, pool_id: str) -> AgentPoolRecord:
        pool = self.pools.get(pool_id)
        if not pool:
            raise StoreNotFoundError(f"pool not found: {pool_id}")
        return pool

    def save_pool(self, pool: AgentPoolRecord) -> AgentPoolRecord:
        with self._lock:
            self.pools[pool.id] = pool
            self._persist_state()
            return pool

    # Routing configuration

    def create_rule(self, request: AssignmentRuleCreateRequest) -> AssignmentRuleRecord:
        now = utc_now()
        rule = AssignmentRuleRecord(
            id=new_id("rule"),
            company_id=request.company_id.strip(),
            name=request.name.strip(),
            priority=request.priority,
            rule_order=request.rule_order,
            match_all_conditions=request.match_all_conditions,
            conditions=request.conditions,
            rule_type=request.rule_type,
            assigned_agents=list(request.assigned_agents),
            pool_id=request.pool_id,
            created_at_utc=now,
            updated_at_utc=now,
        )
        return self.save_rule(rule)

    def get_rule(self, rule_id: str) -> AssignmentRuleRecord:
        rule = self.rules.get(rule_id)
        if not rule:
            raise StoreNotFoundError(f"assignment rule not found: {rule_id}")
        return rule

    def save_rule(self, rule: AssignmentRuleRecord) -> AssignmentRuleRecord:
        with self._lock:
            self.rules[rule.id] = rule
            self._persist_state()
            return rule

    def list_rules(
        self, company_id: str, *, active_only: bool = True
    ) -> list[AssignmentRuleRecord]:
        with self._lock:
            records = [rule for rule in self.rules.values() if rule.company_id == company_id]
        if active_only:
            records = [rule for rule in records if rule.is_active]
        records.sort(key=lambda rule: (rule.priority, rule.rule_order, rule.created_at_utc))
        return records

    def get_assignment_config(self, company_id: str) -> Optional[AssignmentConfigRecord]:
        return self.assignment_configs.get(company_id)

    def save_assignment_config(self, config: AssignmentConfigRecord) -> AssignmentConfigRecord:
        with self._lock:
            self.assignment_configs[config.company_id] = config
            self._persist_state()
            return config

    def create_reassignment_rule(
        self, request: AutoReassignmentRuleCreateRequest
    ) -> AutoReassignmentRuleRecord:
        if request.reassign_to_agent_id:
            self.get_agent(request.reassign_to_agent_id)
        if request.reassign_to_pool_id:
            self.get_pool(request.reassign_to_pool_id)
        now = utc_now()
        rule = AutoReassignmentRuleRecord(
            id=new_id("rar"),
            company_id=request.company_id.strip(),
            name=request.name.strip(),
            days_without_contact=request.days_without_contact,
            apply_to_stages=request.apply_to_stages,
            use_round_robin=request.use_round_robin,
            reassign_to_agent_id=request.reassign_to_agent_id,
            reassign_to_pool_id=request.reassign_to_pool_id,
            created_at_utc=now,
            updated_at_utc=now,
        )
        with self._lock:
            self.reassignment_rules[rule.id] = rule
            self._persist_state()
            return rule

    def list_reassignment_rules(
        self, company_id: Optional[str] = None
    ) -> list[AutoReassignmentRuleRecord]:
        with self._lock:
            records = list(self.reassignment_rules.values())
        if company_id:
            records = [rule for rule in records if rule.company_id == company_id]
        records.sort(key=lambda rule: rule.created_at_utc)
        return records

    # Assignment audit trail

    def append_assignment_log(self, entry: AssignmentLogEntry) -> AssignmentLogEntry:
        with self._lock:
            self.assignment_log.append(entry)
            if self.persistence:
                self.persistence.append_assignment_log(entry)
            self._persist_state()
            return entry

    def stamp_assignment_undone(self, entry: AssignmentLogEntry) -> AssignmentLogEntry:
        with self._lock:
            for index, existing in enumerate(self.assignment_log):
                if existing.id != entry.id:
                    continue
                if existing.undone_at_utc is not None:
                    raise StoreConflictError(f"assignment already undone: {entry.id}")
                self.assignment_log[index] = entry
                if self.persistence and entry.undone_at_utc:
                    self.persistence.mark_assignment_undone(
                        entry_id=entry.id,
                        undone_at_utc=entry.undone_at_utc,
                        undone_by=entry.undone_by,
                    )
                self._persist_state()
                return entry
        raise StoreNotFoundError(f"assignment log entry not found: {entry.id}")

    def supersede_assignment_entry(self, entry_id: str) -> AssignmentLogEntry:
        with self._lock:
            for index, existing in enumerate(self.assignment_log):
                if existing.id != entry_id:
                    continue
                superseded = existing.model_copy(update={"can_undo": False})
                self.assignment_log[index] = superseded
                if self.persistence:
                    self.persistence.mark_assignment_superseded(entry_id)
                self._persist_state()
                return superseded
        raise StoreNotFoundError(f"assignment log entry not found: {entry_id}")

    def list_assignment_log(self, lead_id: Optional[str] = None) -> list[AssignmentLogEntry]:
        with self._lock:
            entries = list(self.assignment_log)
        if lead_id:
            entries = [entry for entry in entries if entry.lead_id == lead_id]
        entries.sort(key=lambda entry: entry.sequence)
        return entries

    def add_notification(self, notification: AssignmentNotificationRecord) -> None:
        with self._lock:
            self.notifications[notification.id] = notification
            self._persist_state()

    def list_notifications(
        self, agent_id: str, *, unread_only: bool = False
    ) -> list[AssignmentNotificationRecord]:
        with self._lock:
            records = [item for item in self.notifications.values() if item.agent_id == agent_id]
        if unread_only:
            records = [item for item in records if not item.is_read]
        records.sort(key=lambda item: item.created_at_utc, reverse=True)
        return records

    def mark_notification_read(self, notification_id: str) -> AssignmentNotificationRecord:
        with self._lock:
            notification = self.notifications.get(notification_id)
            if not notification:
                raise StoreNotFoundError(f"notification not found: {notification_id}")
            if notification.is_read:
                return notification
            updated = notification.model_copy(update={"is_read": True, "read_at_utc": utc_now()})
            self.notifications[notification_id] = updated
            self._persist_state()
            return updated

    # Campaigns

    def create_campaign(
        self,
        request: CampaignCreateRequest,
        *,
        default_rate_limit: int,
        default_max_retries: int,
    ) -> CampaignRecord:
        now = utc_now()
        campaign = CampaignRecord(
            id=new_id("cmp"),
            company_id=request.company_id.strip(),
            name=request.name.strip(),
            channel=request.channel,
            channel_priority=request.channel_priority,
            template=request.template,
            audience=request.audience,
            audience_filter=request.audience_filter,
            consent_required=request.consent_required,
            rate_limit_per_second=request.rate_limit_per_second or default_rate_limit,
            max_retries=(
                request.max_retries if request.max_retries is not None else default_max_retries
            ),
            scheduled_at_utc=request.scheduled_at_utc,
            created_at_utc=now,
            updated_at_utc=now,
        )
        return self.save_campaign(campaign)

    def get_campaign(self, campaign_id: str) -> CampaignRecord:
        campaign = self.campaigns.get(campaign_id)
        if not campaign:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return campaign

    def save_campaign(self, campaign: CampaignRecord) -> CampaignRecord:
        with self._lock:
            self.campaigns[campaign.id] = campaign
            self._persist_state()
            return campaign

    def list_campaigns(self, status: Optional[CampaignStatus] = None) -> list[CampaignRecord]:
        with self._lock:
            records = list(self.campaigns.values())
        if status:
            records = [campaign for campaign in records if campaign.status == status]
        return records

    def get_recipient(self, recipient_id: str) -> CampaignRecipientRecord:
        recipient = self.recipients.get(recipient_id)
        if not recipient:
            raise StoreNotFoundError(f"recipient not found: {recipient_id}")
        return recipient

    def save_recipient(self, recipient: CampaignRecipientRecord) -> CampaignRecipientRecord:
        with self._lock:
            self.recipients[recipient.id] = recipient
            if recipient.provider_message_id:
                self._recipients_by_message_id[recipient.provider_message_id] = recipient.id
            self._persist_state()
            return recipient

    def list_recipients(
        self,
        campaign_id: str,
        *,
        status: Optional[DeliveryStatus] = None,
    ) -> list[CampaignRecipientRecord]:
        with self._lock:
            records = [
                item for item in self.recipients.values() if item.campaign_id == campaign_id
            ]
        if status:
            records = [item for item in records if item.delivery_status == status]
        records.sort(key=lambda item: item.sequence)
        return records

    def find_recipient_by_message_id(
        self, provider_message_id: str
    ) -> Optional[CampaignRecipientRecord]:
        recipient_id = self._recipients_by_message_id.get(provider_message_id)
        if not recipient_id:
            return None
        return self.recipients.get(recipient_id)

    def log_campaign_action(
        self,
        campaign_id: str,
        action: str,
        *,
        recipient_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> CampaignLogRecord:
        record = CampaignLogRecord(
            id=new_id("clog"),
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            action=action,
            details=details or {},
            created_at_utc=utc_now(),
        )
        with self._lock:
            self.campaign_logs.append(record)
            self._persist_state()
            return record

    def list_campaign_logs(self, campaign_id: str) -> list[CampaignLogRecord]:
        with self._lock:
            return [item for item in self.campaign_logs if item.campaign_id == campaign_id]

    # Webhook events

    def get_webhook_event(self, key: str) -> Optional[WebhookEventRecord]:
        return self.webhook_events.get(key)

    def save_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        with self._lock:
            self.webhook_events[record.key] = record
            if self.persistence:
                self.persistence.upsert_webhook_event(record)
            self._persist_state()
            return record

    def list_webhook_events(
        self, status: Optional[WebhookEventStatus] = None
    ) -> list[WebhookEventRecord]:
        with self._lock:
            records = list(self.webhook_events.values())
        if status:
            records = [item for item in records if item.status == status]
        records.sort(key=lambda item: item.created_at_utc)
        return records

    # Snapshots

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "sequence": self._sequence,
            "leads": [record.model_dump(mode="json") for record in self.leads.values()],
            "agents": [record.model_dump(mode="json") for record in self.agents.values()],
            "pools": [record.model_dump(mode="json") for record in self.pools.values()],
            "rules": [record.model_dump(mode="json") for record in self.rules.values()],
            "assignment_configs": [
                record.model_dump(mode="json") for record in self.assignment_configs.values()
            ],
            "reassignment_rules": [
                record.model_dump(mode="json") for record in self.reassignment_rules.values()
            ],
            "assignment_log": [record.model_dump(mode="json") for record in self.assignment_log],
            "notifications": [
                record.model_dump(mode="json") for record in self.notifications.values()
            ],
            "campaigns": [record.model_dump(mode="json") for record in self.campaigns.values()],
            "recipients": [
                record.model_dump(mode="json") for record in self.recipients.values()
            ],
            "webhook_events": [
                record.model_dump(mode="json") for record in self.webhook_events.values()
            ],
            "campaign_logs": [record.model_dump(mode="json") for record in self.campaign_logs],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self._sequence = int(snapshot.get("sequence", 0))
        self.leads = {
            record["id"]: LeadRecord.model_validate(record)
            for record in snapshot.get("leads", [])
        }
        self.agents = {
            record["id"]: AgentRecord.model_validate(record)
            for record in snapshot.get("agents", [])
        }
        self.pools = {
            record["id"]: AgentPoolRecord.model_validate(record)
            for record in snapshot.get("pools", [])
        }
        self.rules = {
            record["id"]: AssignmentRuleRecord.model_validate(record)
            for record in snapshot.get("rules", [])
        }
        self.assignment_configs = {
            record["company_id"]: AssignmentConfigRecord.model_validate(record)
            for record in snapshot.get("assignment_configs", [])
        }
        self.reassignment_rules = {
            record["id"]: AutoReassignmentRuleRecord.model_validate(record)
            for record in snapshot.get("reassignment_rules", [])
        }
        self.assignment_log = [
            AssignmentLogEntry.model_validate(record)
            for record in snapshot.get("assignment_log", [])
        ]
        self.notifications = {
            record["id"]: AssignmentNotificationRecord.model_validate(record)
            for record in snapshot.get("notifications", [])
        }
        self.campaigns = {
            record["id"]: CampaignRecord.model_validate(record)
            for record in snapshot.get("campaigns", [])
        }
        self.recipients = {
            record["id"]: CampaignRecipientRecord.model_validate(record)
            for record in snapshot.get("recipients", [])
        }
        self._recipients_by_message_id = {
            recipient.provider_message_id: recipient.id
            for recipient in self.recipients.values()
            if recipient.provider_message_id
        }
        self.webhook_events = {
            record["key"]: WebhookEventRecord.model_validate(record)
            for record in snapshot.get("webhook_events", [])
        }
        self.campaign_logs = [
            CampaignLogRecord.model_validate(record)
            for record in snapshot.get("campaign_logs", [])
        ]
