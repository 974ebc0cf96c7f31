from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from crm_backend.app.auth import MARKETING_ROLES, RECEIPT_ROLES, AuthContext, require_roles
from crm_backend.app.context import AppContext, build_context
from crm_backend.app.errors import (
    StoreConflictError,
    StoreNotFoundError,
    StoreUnavailableError,
    StoreValidationError,
)
from crm_backend.app.models import (
    CampaignCreateRequest,
    CampaignCreateResponse,
    CampaignHistoryResponse,
    CustomerCreateRequest,
    CustomerDetailsItem,
    CustomerResponse,
    DashboardRequest,
    DashboardResponse,
    OrderCreateRequest,
    OrderResponse,
    ReceiptBatchRequest,
    ReceiptBatchResponse,
    ReceiptItem,
    ReceiptResponse,
    SegmentCreateRequest,
    SegmentCreateResponse,
    SegmentPreviewRequest,
    SegmentPreviewResponse,
)
from crm_backend.app.observability import MetricsRegistry, configure_logging, observe_request
from crm_backend.app.settings import load_settings
from crm_backend.app.store import CrmStore


def create_app() -> FastAPI:
    configure_logging()
    context = build_context(load_settings())

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if context.settings.worker_enabled:
            context.scheduler.start()
        try:
            yield
        finally:
            context.close()

    app = FastAPI(title="Mini CRM API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.context = context

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=context.metrics)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = sorted(
            {
                ".".join(str(part) for part in error.get("loc", ()) if part != "body")
                for error in exc.errors()
            }
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "invalid request payload", "fields": fields},
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(
        request: Request, exc: StoreUnavailableError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "storage unavailable"},
        )

    app.include_router(build_router())
    return app


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_store(request: Request) -> CrmStore:
    return get_context(request).store


def get_metrics(request: Request) -> MetricsRegistry:
    return get_context(request).metrics


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_context(request).database.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post(
        "/customers",
        response_model=CustomerResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def create_customer(
        payload: CustomerCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> CustomerResponse:
        store = get_store(request)
        try:
            customer = store.create_customer(payload)
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return CustomerResponse(customer=customer)

    @router.get("/customers/details", response_model=list[CustomerDetailsItem])
    def customer_details(
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> list[CustomerDetailsItem]:
        return get_store(request).customer_details()

    @router.post(
        "/orders",
        response_model=OrderResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def create_order(
        payload: OrderCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> OrderResponse:
        store = get_store(request)
        try:
            order = store.create_order(payload)
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return OrderResponse(order=order)

    @router.post(
        "/segments",
        response_model=SegmentCreateResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def create_segment(
        payload: SegmentCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> SegmentCreateResponse:
        store = get_store(request)
        try:
            segment, customers = store.create_segment(
                user_id=payload.user_id,
                name=payload.name,
                rules=payload.rules,
            )
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return SegmentCreateResponse(
            segment=segment,
            customers=customers,
            audience_size=segment.audience_size,
        )

    @router.post("/segments/preview", response_model=SegmentPreviewResponse)
    def preview_segment(
        payload: SegmentPreviewRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> SegmentPreviewResponse:
        store = get_store(request)
        try:
            customers = store.preview_segment(payload.rules)
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return SegmentPreviewResponse(audience_size=len(customers), customers=customers)

    @router.post(
        "/campaigns",
        response_model=CampaignCreateResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def create_campaign(
        payload: CampaignCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> CampaignCreateResponse:
        store = get_store(request)
        try:
            campaign, targeted = store.create_campaign(
                segment_id=payload.segment_id,
                message=payload.message,
            )
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return CampaignCreateResponse(campaign=campaign, customers_targeted=targeted)

    @router.get("/campaigns/history", response_model=CampaignHistoryResponse)
    def campaign_history(
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> CampaignHistoryResponse:
        return CampaignHistoryResponse(campaigns=get_store(request).campaign_history())

    @router.post("/receipt", response_model=ReceiptResponse)
    def update_receipt(
        payload: ReceiptItem,
        request: Request,
        _: AuthContext = Depends(require_roles(*RECEIPT_ROLES)),
    ) -> ReceiptResponse:
        receipts = get_context(request).receipts
        try:
            result = receipts.update_one(payload.campaign_id, payload.customer_id, payload.status)
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return ReceiptResponse(message="status updated", result=result)

    @router.post("/receipt/batch", response_model=ReceiptBatchResponse)
    def update_receipt_batch(
        payload: ReceiptBatchRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*RECEIPT_ROLES)),
    ) -> ReceiptBatchResponse:
        receipts = get_context(request).receipts
        try:
            result = receipts.update_batch(list(payload.receipts))
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return ReceiptBatchResponse(
            message="batch update successful",
            updated=result.updated,
            unchanged=result.unchanged,
        )

    @router.post("/stats/dashboard", response_model=DashboardResponse)
    def dashboard(
        payload: DashboardRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*MARKETING_ROLES)),
    ) -> DashboardResponse:
        store = get_store(request)
        try:
            return store.dashboard(payload.user_id)
        except StoreValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return router
