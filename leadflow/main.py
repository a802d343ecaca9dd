from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from leadflow.engine import Engine, build_engine
from leadflow.models import (
    AgentAvailabilityRequest,
    AgentCreateRequest,
    AgentLoad,
    AgentPoolCreateRequest,
    AgentPoolRecord,
    AgentRecord,
    AssignmentConfigRecord,
    AssignmentConfigRequest,
    AssignmentLogEntry,
    AssignmentNotificationRecord,
    AssignmentRuleCreateRequest,
    AssignmentRuleRecord,
    AssignRequest,
    AutoReassignmentRuleCreateRequest,
    AutoReassignmentRuleRecord,
    BulkAssignRequest,
    BulkAssignResponse,
    CampaignAnalytics,
    CampaignCreateRequest,
    CampaignLogRecord,
    CampaignRecipientRecord,
    CampaignRecord,
    CampaignResponse,
    CampaignScheduleRequest,
    DeliveryEventResponse,
    DeliveryStatus,
    LeadCreateRequest,
    LeadPriorityRequest,
    LeadRecord,
    LeadResponse,
    RecipientInput,
    RetryPassResponse,
    SweepResponse,
    UndoResponse,
)
from leadflow.observability import MetricsRegistry, configure_logging, observe_request
from leadflow.persistence import SqlPersistence
from leadflow.services.dispatcher import CampaignConfigurationError, CampaignStateError
from leadflow.services.routing import NoEligibleAgentError
from leadflow.services.rule_engine import RuleConfigurationError
from leadflow.services.webhooks import (
    SignatureVerificationError,
    parse_delivery_events,
    verify_signature,
)
from leadflow.settings import Settings, load_settings
from leadflow.store import InMemoryStore, StoreConflictError, StoreNotFoundError

WEBHOOK_CHANNELS = {"whatsapp", "sms", "email"}


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()
    persistence = SqlPersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    metrics = MetricsRegistry()
    engine = build_engine(store, settings, metrics=metrics)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if settings.background_jobs_enabled:
            engine.start_jobs()
        try:
            yield
        finally:
            engine.stop_jobs()

    app = FastAPI(title="LeadFlow API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.engine = engine

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, StoreNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (StoreConflictError, CampaignStateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(
        exc, (RuleConfigurationError, NoEligibleAgentError, CampaignConfigurationError, ValueError)
    ):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    raise exc


def campaign_response(campaign: CampaignRecord) -> CampaignResponse:
    return CampaignResponse(
        campaign_id=campaign.id,
        status=campaign.status,
        total_recipients=campaign.total_recipients,
        counters=campaign.counters,
        started_at_utc=campaign.started_at_utc,
        completed_at_utc=campaign.completed_at_utc,
        failure_reason=campaign.failure_reason,
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(get_store(request), "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        return PlainTextResponse(get_metrics(request).to_prometheus())

    # Agents and routing configuration

    @router.post("/agents", response_model=AgentRecord)
    def register_agent(payload: AgentCreateRequest, request: Request) -> AgentRecord:
        try:
            return get_engine(request).loads.register_agent(payload)
        except StoreConflictError as exc:
            raise http_error(exc) from exc

    @router.get("/agents/loads", response_model=list[AgentLoad])
    def list_agent_loads(company_id: str, request: Request) -> list[AgentLoad]:
        return get_engine(request).loads.list_loads(company_id)

    @router.post("/agents/{agent_id}/availability", response_model=AgentRecord)
    def set_availability(
        agent_id: str, payload: AgentAvailabilityRequest, request: Request
    ) -> AgentRecord:
        try:
            return get_engine(request).loads.set_availability(agent_id, payload.is_available)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    @router.get("/agents/{agent_id}/load", response_model=AgentLoad)
    def agent_load(agent_id: str, request: Request) -> AgentLoad:
        try:
            return get_engine(request).loads.get_load(agent_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    @router.get(
        "/agents/{agent_id}/notifications", response_model=list[AssignmentNotificationRecord]
    )
    def agent_notifications(
        agent_id: str, request: Request, unread_only: bool = False
    ) -> list[AssignmentNotificationRecord]:
        return get_store(request).list_notifications(agent_id, unread_only=unread_only)

    @router.post("/pools", response_model=AgentPoolRecord)
    def create_pool(payload: AgentPoolCreateRequest, request: Request) -> AgentPoolRecord:
        try:
            return get_store(request).create_pool(payload)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc

    @router.post("/assignment-rules", response_model=AssignmentRuleRecord)
    def create_rule(payload: AssignmentRuleCreateRequest, request: Request) -> AssignmentRuleRecord:
        store = get_store(request)
        unknown = [agent_id for agent_id in payload.assigned_agents if agent_id not in store.agents]
        if payload.pool_id and payload.pool_id not in store.pools:
            unknown.append(payload.pool_id)
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown assignment targets: {', '.join(unknown)}",
            )
        return store.create_rule(payload)

    @router.get("/assignment-rules", response_model=list[AssignmentRuleRecord])
    def list_rules(company_id: str, request: Request) -> list[AssignmentRuleRecord]:
        return get_store(request).list_rules(company_id, active_only=False)

    @router.put(
        "/companies/{company_id}/assignment-config", response_model=AssignmentConfigRecord
    )
    def configure_assignment(
        company_id: str, payload: AssignmentConfigRequest, request: Request
    ) -> AssignmentConfigRecord:
        try:
            return get_engine(request).router.configure(company_id, payload)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc

    # Leads

    @router.post("/leads", response_model=LeadResponse)
    def create_lead(payload: LeadCreateRequest, request: Request) -> LeadResponse:
        try:
            return get_engine(request).router.intake(payload)
        except (RuleConfigurationError, StoreNotFoundError) as exc:
            raise http_error(exc) from exc

    @router.get("/leads/{lead_id}", response_model=LeadRecord)
    def get_lead(lead_id: str, request: Request) -> LeadRecord:
        try:
            return get_store(request).get_lead(lead_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    @router.post("/leads/{lead_id}/route", response_model=LeadResponse)
    def route_lead(lead_id: str, request: Request) -> LeadResponse:
        try:
            return get_engine(request).router.route(lead_id)
        except (StoreNotFoundError, RuleConfigurationError, NoEligibleAgentError) as exc:
            raise http_error(exc) from exc

    @router.post("/leads/bulk-assign", response_model=BulkAssignResponse)
    def bulk_assign(payload: BulkAssignRequest, request: Request) -> BulkAssignResponse:
        try:
            assigned = get_engine(request).ledger.bulk_assign(payload.lead_ids, payload.agent_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc
        return BulkAssignResponse(requested=len(payload.lead_ids), assigned=assigned)

    @router.post("/leads/{lead_id}/assign", response_model=LeadResponse)
    def assign_lead(lead_id: str, payload: AssignRequest, request: Request) -> LeadResponse:
        engine = get_engine(request)
        try:
            entry_id = engine.ledger.assign(
                lead_id,
                payload.agent_id,
                payload.method,
                reason=payload.reason,
                assigned_by=payload.assigned_by,
            )
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc
        lead = engine.store.get_lead(lead_id)
        return LeadResponse(
            lead_id=lead.id,
            assigned_agent_id=lead.assigned_agent_id,
            previous_agent_id=lead.previous_agent_id,
            log_entry_id=entry_id,
        )

    @router.post("/leads/{lead_id}/undo", response_model=UndoResponse)
    def undo_assignment(
        lead_id: str, request: Request, undone_by: Optional[str] = None
    ) -> UndoResponse:
        engine = get_engine(request)
        try:
            undone = engine.ledger.undo(lead_id, undone_by=undone_by)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc
        lead = engine.store.get_lead(lead_id)
        return UndoResponse(
            lead_id=lead.id,
            undone=undone,
            assigned_agent_id=lead.assigned_agent_id,
            detail="assignment undone" if undone else "nothing to undo",
        )

    @router.get("/leads/{lead_id}/assignments", response_model=list[AssignmentLogEntry])
    def assignment_history(lead_id: str, request: Request) -> list[AssignmentLogEntry]:
        engine = get_engine(request)
        try:
            engine.store.get_lead(lead_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc
        return engine.ledger.history(lead_id)

    @router.post("/leads/{lead_id}/contacted", response_model=LeadRecord)
    def mark_contacted(lead_id: str, request: Request) -> LeadRecord:
        try:
            return get_engine(request).router.record_contact(lead_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    @router.post("/leads/{lead_id}/priority", response_model=LeadRecord)
    def set_priority(lead_id: str, payload: LeadPriorityRequest, request: Request) -> LeadRecord:
        try:
            return get_engine(request).router.set_priority(lead_id, payload.assignment_priority)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    # Reassignment

    @router.post("/reassignment-rules", response_model=AutoReassignmentRuleRecord)
    def create_reassignment_rule(
        payload: AutoReassignmentRuleCreateRequest, request: Request
    ) -> AutoReassignmentRuleRecord:
        try:
            return get_store(request).create_reassignment_rule(payload)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc

    @router.post("/companies/{company_id}/reassignment/sweep", response_model=SweepResponse)
    def sweep(company_id: str, request: Request) -> SweepResponse:
        reassigned = get_engine(request).reassignment.sweep(company_id)
        return SweepResponse(company_id=company_id, reassigned_lead_ids=reassigned)

    # Campaigns

    @router.post("/campaigns", response_model=CampaignResponse)
    def create_campaign(payload: CampaignCreateRequest, request: Request) -> CampaignResponse:
        campaign = get_engine(request).dispatcher.create_campaign(payload)
        return campaign_response(campaign)

    @router.get("/campaigns/{campaign_id}", response_model=CampaignResponse)
    def get_campaign(campaign_id: str, request: Request) -> CampaignResponse:
        try:
            return campaign_response(get_store(request).get_campaign(campaign_id))
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    @router.post("/campaigns/{campaign_id}/recipients", response_model=CampaignResponse)
    def add_recipients(
        campaign_id: str, payload: list[RecipientInput], request: Request
    ) -> CampaignResponse:
        try:
            campaign = get_engine(request).dispatcher.add_recipients(campaign_id, payload)
        except (StoreNotFoundError, CampaignStateError) as exc:
            raise http_error(exc) from exc
        return campaign_response(campaign)

    @router.post("/campaigns/{campaign_id}/schedule", response_model=CampaignResponse)
    def schedule_campaign(
        campaign_id: str, payload: CampaignScheduleRequest, request: Request
    ) -> CampaignResponse:
        try:
            campaign = get_engine(request).dispatcher.schedule(
                campaign_id, payload.scheduled_at_utc
            )
        except (StoreNotFoundError, CampaignStateError) as exc:
            raise http_error(exc) from exc
        return campaign_response(campaign)

    @router.post("/campaigns/{campaign_id}/start", response_model=CampaignResponse)
    def start_campaign(
        campaign_id: str, request: Request, background_tasks: BackgroundTasks
    ) -> CampaignResponse:
        engine = get_engine(request)
        try:
            campaign = engine.dispatcher.start(campaign_id)
        except (StoreNotFoundError, CampaignStateError, CampaignConfigurationError) as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(engine.dispatcher.dispatch, campaign_id)
        return campaign_response(campaign)

    @router.post("/campaigns/{campaign_id}/pause", response_model=CampaignResponse)
    def pause_campaign(campaign_id: str, request: Request) -> CampaignResponse:
        try:
            campaign = get_engine(request).dispatcher.pause(campaign_id)
        except (StoreNotFoundError, CampaignStateError) as exc:
            raise http_error(exc) from exc
        return campaign_response(campaign)

    @router.post("/campaigns/{campaign_id}/resume", response_model=CampaignResponse)
    def resume_campaign(
        campaign_id: str, request: Request, background_tasks: BackgroundTasks
    ) -> CampaignResponse:
        engine = get_engine(request)
        try:
            campaign = engine.dispatcher.resume(campaign_id)
        except (StoreNotFoundError, CampaignStateError, CampaignConfigurationError) as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(engine.dispatcher.dispatch, campaign_id)
        return campaign_response(campaign)

    @router.post("/campaigns/{campaign_id}/retry", response_model=RetryPassResponse)
    def retry_campaign(
        campaign_id: str, request: Request, background_tasks: BackgroundTasks
    ) -> RetryPassResponse:
        engine = get_engine(request)
        try:
            requeued = engine.retries.run_retry_pass(campaign_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc
        if requeued:
            background_tasks.add_task(engine.dispatcher.dispatch, campaign_id)
        return RetryPassResponse(campaign_id=campaign_id, requeued=len(requeued))

    @router.get("/campaigns/{campaign_id}/analytics", response_model=CampaignAnalytics)
    def campaign_analytics(campaign_id: str, request: Request) -> CampaignAnalytics:
        try:
            return get_engine(request).analytics.summarize(campaign_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc

    @router.get(
        "/campaigns/{campaign_id}/recipients", response_model=list[CampaignRecipientRecord]
    )
    def list_recipients(
        campaign_id: str, request: Request, delivery_status: Optional[DeliveryStatus] = None
    ) -> list[CampaignRecipientRecord]:
        store = get_store(request)
        try:
            store.get_campaign(campaign_id)
        except StoreNotFoundError as exc:
            raise http_error(exc) from exc
        return store.list_recipients(campaign_id, status=delivery_status)

    @router.get("/campaigns/{campaign_id}/logs", response_model=list[CampaignLogRecord])
    def campaign_logs(campaign_id: str, request: Request) -> list[CampaignLogRecord]:
        return get_store(request).list_campaign_logs(campaign_id)

    # Provider delivery callbacks

    @router.post("/webhooks/{channel}", response_model=list[DeliveryEventResponse])
    async def delivery_webhook(channel: str, request: Request) -> list[DeliveryEventResponse]:
        if channel not in WEBHOOK_CHANNELS:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown channel: {channel}"
            )
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_signature(
                channel, request.headers, raw_body, settings.webhook_secret_for(channel)
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            events = parse_delivery_events(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc

        reconciler = get_engine(request).webhooks
        return [reconciler.ingest(channel, event) for event in events]

    return router


app = create_app()
