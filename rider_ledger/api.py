import asyncio
import logging
from datetime import date
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool

from .bonus import BonusTracker
from .config import get_settings
from .errors import (
    ConcurrentMutationConflict,
    InsufficientBalance,
    InvalidAmount,
    InvalidSplit,
    RiderBlocked,
    RiderNotFound,
)
from .events import NotificationPublisher, Subscription
from .ingest import OrderCompletionIngestor
from .models import (
    BlockRequest,
    BlockResult,
    BonusProgress,
    BonusStatus,
    DeliveryCompletedRequest,
    FleetTotals,
    IngestResult,
    LedgerHistoryResponse,
    PendingBreakdown,
    ReconciliationReport,
    RiderSummary,
    SettleRequest,
    SettlementBatch,
    SettlementResult,
    SettlementStatus,
    SweepResult,
)
from .queries import AdminQueryService
from .service import LedgerService

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(
    title="Rider Ledger API",
    description="Rider COD cash ledger, settlement status and daily delivery bonus",
    version=settings.APP_VERSION,
)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

publisher = NotificationPublisher(max_pending=settings.EVENT_QUEUE_SIZE)
ledger_service = LedgerService(settings=settings, publisher=publisher)
bonus_tracker = BonusTracker(ledger_service)
ingestor = OrderCompletionIngestor(ledger_service, bonus_tracker, publisher)
query_service = AdminQueryService(ledger_service.storage, settings)


def _not_found(rider_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Rider {rider_id} not found")


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.post("/deliveries", response_model=IngestResult, status_code=status.HTTP_201_CREATED, tags=["Deliveries"])
def deliver_order(request: DeliveryCompletedRequest, response: Response) -> IngestResult:
    try:
        result = ingestor.on_order_delivered(
            order_id=request.order_id,
            rider_id=request.rider_id,
            order_total=request.order_total,
            commission_rate=request.commission_rate,
            is_cod=request.is_cod,
            delivery_fee=request.delivery_fee,
            delivered_on=request.delivered_on,
        )
    except RiderBlocked as e:
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=str(e))
    except InvalidSplit as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConcurrentMutationConflict as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result


@app.post("/riders/{rider_id}/settlements", response_model=SettlementResult, tags=["Settlements"])
def settle_rider(rider_id: str, request: SettleRequest) -> SettlementResult:
    try:
        return ledger_service.settle(
            rider_id,
            amount_collected=request.amount_collected,
            earnings_paid=request.earnings_paid,
            settled_by=request.settled_by,
        )
    except RiderNotFound:
        raise _not_found(rider_id)
    except InvalidAmount as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InsufficientBalance as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ConcurrentMutationConflict as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.post("/riders/{rider_id}/block", response_model=BlockResult, tags=["Settlements"])
def block_rider(rider_id: str, request: BlockRequest) -> BlockResult:
    try:
        return ledger_service.set_blocked(
            rider_id, request.blocked, performed_by=request.performed_by, reason=request.reason
        )
    except ConcurrentMutationConflict as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.post("/admin/settlement-sweep", response_model=SweepResult, tags=["Settlements"])
def sweep_settlement_status() -> SweepResult:
    return ledger_service.sweep()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@app.get("/riders", response_model=list[RiderSummary], tags=["Riders"])
def list_riders(
    status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
) -> list[RiderSummary]:
    return query_service.list_riders(status_filter)


@app.get("/riders/{rider_id}", response_model=RiderSummary, tags=["Riders"])
def get_rider(rider_id: str) -> RiderSummary:
    try:
        return query_service.rider_summary(rider_id)
    except RiderNotFound:
        raise _not_found(rider_id)


@app.get("/riders/{rider_id}/pending", response_model=PendingBreakdown, tags=["Riders"])
def get_pending(rider_id: str) -> PendingBreakdown:
    try:
        return query_service.pending_breakdown(rider_id)
    except RiderNotFound:
        raise _not_found(rider_id)


@app.get("/riders/{rider_id}/transactions", response_model=LedgerHistoryResponse, tags=["Riders"])
def get_transactions(rider_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    try:
        return query_service.transaction_history(rider_id, limit, offset)
    except RiderNotFound:
        raise _not_found(rider_id)


@app.get("/riders/{rider_id}/settlements", response_model=list[SettlementBatch], tags=["Riders"])
def get_settlements(rider_id: str) -> list[SettlementBatch]:
    try:
        return query_service.settlement_history(rider_id)
    except RiderNotFound:
        raise _not_found(rider_id)


@app.get("/riders/{rider_id}/reconciliation", response_model=ReconciliationReport, tags=["Riders"])
def get_reconciliation(rider_id: str) -> ReconciliationReport:
    try:
        return query_service.reconcile(rider_id)
    except RiderNotFound:
        raise _not_found(rider_id)


@app.get("/riders/{rider_id}/bonus", response_model=BonusStatus, tags=["Bonus"])
def get_bonus(rider_id: str, on: Optional[date] = None) -> BonusStatus:
    return query_service.bonus_status(rider_id, on or ledger_service.clock().date())


@app.get("/bonus/daily", response_model=list[BonusProgress], tags=["Bonus"])
def get_daily_bonus_board(on: Optional[date] = None) -> list[BonusProgress]:
    return query_service.daily_bonus_board(on or ledger_service.clock().date())


@app.get("/fleet/totals", response_model=FleetTotals, tags=["Fleet"])
def get_fleet_totals() -> FleetTotals:
    return query_service.fleet_totals()


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


async def _forward_events(websocket: WebSocket, subscription: Subscription):
    while True:
        event = await run_in_threadpool(subscription.get, 1.0)
        if event is not None:
            await websocket.send_text(event.model_dump_json())


@app.websocket("/ws/admin")
async def admin_events(websocket: WebSocket):
    await websocket.accept()
    subscription = None
    sender = None
    try:
        subscription = publisher.subscribe()
        sender = asyncio.create_task(_forward_events(websocket, subscription))
        # Inbound frames are ignored; receiving is how a disconnect is noticed.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if subscription is not None:
            publisher.unsubscribe(subscription)
        if sender is not None:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("[EVENTS] Admin event stream failed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
