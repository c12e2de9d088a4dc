from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from inbox_engine.app.models import (
    AllocationResult,
    AllocationUpdateRequest,
    BrokerLeadBatchRequest,
    CampaignMetrics,
    InboundEventRequest,
    InboundEventResponse,
    InboundMediaJobRecord,
    LeadAllocationStatus,
    LeadAllocationView,
    MediaJobClaimRequest,
    MediaJobFailRequest,
    MediaJobRescheduleRequest,
    MessageAckRequest,
    MessageRecord,
    TicketDetailResponse,
    TicketRecord,
    TicketStatusRequest,
)
from inbox_engine.app.observability import (
    Diagnostics,
    MetricsRegistry,
    configure_logging,
    observe_request,
)
from inbox_engine.app.persistence import SqlPersistence
from inbox_engine.app.settings import load_settings
from inbox_engine.app.store import (
    AllocationTargetError,
    MissingTicketError,
    ReconciliationStore,
    StoreConflictError,
    StoreNotFoundError,
)


def create_app() -> FastAPI:
    app = FastAPI(title="Inbox Reconciliation Engine API", version="0.1.0")
    settings = load_settings()
    configure_logging(settings.log_level)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    metrics = MetricsRegistry()
    persistence = SqlPersistence(settings.effective_database_url)
    app.state.store = ReconciliationStore(
        persistence,
        settings=settings,
        diagnostics=Diagnostics(metrics=metrics),
    )
    app.state.settings = settings
    app.state.metrics = metrics

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> ReconciliationStore:
    return request.app.state.store


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _conflict(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/tenants/{tenant_id}/inbound/messages", response_model=InboundEventResponse)
    def ingest_inbound_message(
        tenant_id: str,
        payload: InboundEventRequest,
        request: Request,
    ) -> InboundEventResponse:
        store = get_store(request)
        try:
            return store.ingest_event(tenant_id, payload)
        except MissingTicketError as exc:
            raise _conflict(exc) from exc
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
            ) from exc

    @router.post("/tenants/{tenant_id}/messages/{message_id}/ack", response_model=MessageRecord)
    def acknowledge_message(
        tenant_id: str,
        message_id: str,
        payload: MessageAckRequest,
        request: Request,
    ) -> MessageRecord:
        store = get_store(request)
        try:
            return store.acknowledge_message(
                tenant_id,
                message_id,
                status=payload.status,
                metadata=payload.metadata,
                instance_id=payload.instance_id,
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.get("/tenants/{tenant_id}/tickets/{ticket_id}", response_model=TicketDetailResponse)
    def ticket_detail(tenant_id: str, ticket_id: str, request: Request) -> TicketDetailResponse:
        store = get_store(request)
        try:
            ticket = store.get_ticket(tenant_id, ticket_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return TicketDetailResponse(
            ticket=ticket,
            messages=store.list_ticket_messages(tenant_id, ticket_id),
        )

    @router.post("/tenants/{tenant_id}/tickets/{ticket_id}/status", response_model=TicketRecord)
    def transition_ticket(
        tenant_id: str,
        ticket_id: str,
        payload: TicketStatusRequest,
        request: Request,
    ) -> TicketRecord:
        store = get_store(request)
        try:
            return store.transition_ticket(tenant_id, ticket_id, payload.status)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    @router.post("/tenants/{tenant_id}/broker/leads", response_model=AllocationResult)
    def allocate_broker_leads(
        tenant_id: str,
        payload: BrokerLeadBatchRequest,
        request: Request,
    ) -> AllocationResult:
        store = get_store(request)
        try:
            return store.allocate_broker_leads(
                tenant_id,
                payload.leads,
                campaign_id=payload.campaign_id,
                instance_id=payload.instance_id,
            )
        except AllocationTargetError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
            ) from exc
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.get("/tenants/{tenant_id}/allocations", response_model=list[LeadAllocationView])
    def list_allocations(
        tenant_id: str,
        request: Request,
        campaign_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        agreement_id: Optional[str] = None,
        statuses: Optional[list[LeadAllocationStatus]] = Query(default=None, alias="status"),
    ) -> list[LeadAllocationView]:
        return get_store(request).list_allocations(
            tenant_id,
            campaign_id=campaign_id,
            instance_id=instance_id,
            agreement_id=agreement_id,
            statuses=statuses,
        )

    @router.patch(
        "/tenants/{tenant_id}/allocations/{allocation_id}",
        response_model=LeadAllocationView,
    )
    def update_allocation(
        tenant_id: str,
        allocation_id: str,
        payload: AllocationUpdateRequest,
        request: Request,
    ) -> LeadAllocationView:
        store = get_store(request)
        changes = {}
        if "notes" in payload.model_fields_set:
            changes["notes"] = payload.notes
        try:
            return store.update_allocation(
                tenant_id, allocation_id, status=payload.status, **changes
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    @router.get(
        "/tenants/{tenant_id}/campaigns/{campaign_id}/metrics",
        response_model=CampaignMetrics,
    )
    def campaign_metrics(tenant_id: str, campaign_id: str, request: Request) -> CampaignMetrics:
        try:
            return get_store(request).get_campaign_metrics(tenant_id, campaign_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/media-jobs/claim", response_model=list[InboundMediaJobRecord])
    def claim_media_jobs(
        payload: MediaJobClaimRequest, request: Request
    ) -> list[InboundMediaJobRecord]:
        return get_store(request).claim_media_jobs(
            limit=payload.limit, tenant_id=payload.tenant_id
        )

    @router.post("/media-jobs/{job_id}/complete", response_model=InboundMediaJobRecord)
    def complete_media_job(job_id: str, request: Request) -> InboundMediaJobRecord:
        try:
            return get_store(request).complete_media_job(job_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/media-jobs/{job_id}/reschedule", response_model=InboundMediaJobRecord)
    def reschedule_media_job(
        job_id: str, payload: MediaJobRescheduleRequest, request: Request
    ) -> InboundMediaJobRecord:
        next_retry_at = payload.next_retry_at
        if next_retry_at.tzinfo is not None:
            next_retry_at = next_retry_at.astimezone(timezone.utc).replace(tzinfo=None)
        try:
            return get_store(request).reschedule_media_job(job_id, next_retry_at, payload.error)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/media-jobs/{job_id}/fail", response_model=InboundMediaJobRecord)
    def fail_media_job(
        job_id: str, payload: MediaJobFailRequest, request: Request
    ) -> InboundMediaJobRecord:
        try:
            return get_store(request).fail_media_job(job_id, payload.error)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/media-jobs/{job_id}/retry", response_model=InboundMediaJobRecord)
    def retry_media_job(
        job_id: str, payload: MediaJobFailRequest, request: Request
    ) -> InboundMediaJobRecord:
        try:
            return get_store(request).retry_or_fail_media_job(job_id, payload.error)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    return router


app = create_app()
