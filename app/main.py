from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from app.config import settings
from app.errors import InvalidTransition, PayoutNotFound, PromoterNotFound
from app.intake import handle_order_created
from app.logging_config import setup_logging
from app.models import OrderEvent, PayoutStatus
from app.settlement import (
    evaluate_and_settle,
    process_auto_payouts,
    process_bulk_payouts,
    process_payout,
    retry_failed,
)
from app.store import DataStore
from app.transfers import TransferProvider, make_provider

_store: Optional[DataStore] = None
_provider: Optional[TransferProvider] = None


def get_store() -> DataStore:
    global _store
    if _store is None:
        _store = DataStore.from_url(settings.DATABASE_URL, settings.LEDGER_MAX_TRANSITION_ATTEMPTS)
    return _store


def get_provider() -> TransferProvider:
    global _provider
    if _provider is None:
        _provider = make_provider(settings)
    return _provider


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    if settings.SEED_ON_STARTUP:
        from scripts.seed_data import seed
        seed(get_store(), get_provider())
    yield


app = FastAPI(
    title="Commission Settlement Service",
    version="1.0.0",
    description="Promoter commission attribution and payout settlement engine",
    lifespan=lifespan,
)


class DestinationUpdate(BaseModel):
    transfer_destination_id: str


# ── Order webhooks ───────────────────────────────────────────────────────────

@app.post("/api/v1/webhooks/orders-create", summary="Process a verified order-creation event")
def orders_create(
    event: OrderEvent,
    store: DataStore = Depends(get_store),
    provider: TransferProvider = Depends(get_provider),
):
    return handle_order_created(event, store, provider).model_dump(mode="json")


# ── Promoters ────────────────────────────────────────────────────────────────

@app.post("/api/v1/promoters/{promoter_id}/settle", summary="Evaluate auto-payout and settle a promoter")
def settle_promoter(
    promoter_id: str,
    store: DataStore = Depends(get_store),
    provider: TransferProvider = Depends(get_provider),
):
    try:
        result = evaluate_and_settle(promoter_id, store, provider)
    except PromoterNotFound as exc:
        raise HTTPException(404, str(exc))
    return result.model_dump(mode="json")


@app.put("/api/v1/promoters/{promoter_id}/destination", summary="Attach a transfer destination")
def attach_destination(
    promoter_id: str,
    body: DestinationUpdate,
    store: DataStore = Depends(get_store),
):
    if not body.transfer_destination_id.strip():
        raise HTTPException(400, "transfer_destination_id must not be empty")
    try:
        promoter = store.attach_destination(promoter_id, body.transfer_destination_id.strip())
    except PromoterNotFound as exc:
        raise HTTPException(404, str(exc))
    return promoter.model_dump(mode="json")


# ── Payouts ──────────────────────────────────────────────────────────────────

@app.get("/api/v1/payouts/{payout_id}", summary="Get a payout record")
def get_payout(payout_id: str, store: DataStore = Depends(get_store)):
    record = store.get_payout(payout_id)
    if not record:
        raise HTTPException(404, f"Payout '{payout_id}' not found")
    return record.model_dump(mode="json")


@app.post("/api/v1/payouts/{payout_id}/retry", summary="Retry a failed payout")
def retry_payout(
    payout_id: str,
    store: DataStore = Depends(get_store),
    provider: TransferProvider = Depends(get_provider),
):
    try:
        status = retry_failed(payout_id, store, provider)
    except PayoutNotFound as exc:
        raise HTTPException(404, str(exc))
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc))
    return {"payout_id": payout_id, "status": status.value}


@app.post("/api/v1/payouts/{payout_id}/process", summary="Settle one pending payout now")
def process_single_payout(
    payout_id: str,
    store: DataStore = Depends(get_store),
    provider: TransferProvider = Depends(get_provider),
):
    try:
        record = process_payout(payout_id, store, provider)
    except PayoutNotFound as exc:
        raise HTTPException(404, str(exc))
    except InvalidTransition as exc:
        raise HTTPException(409, str(exc))
    return record.model_dump(mode="json")


# ── Merchants ────────────────────────────────────────────────────────────────

@app.get("/api/v1/merchants/{merchant_id}/payouts", summary="List a merchant's payouts")
def list_payouts(
    merchant_id: str,
    status: Optional[PayoutStatus] = Query(default=None),
    promoter_id: Optional[str] = Query(default=None),
    store: DataStore = Depends(get_store),
):
    records = store.list_payouts(merchant_id, status=status, promoter_id=promoter_id)
    return {"payouts": [r.model_dump(mode="json") for r in records]}


@app.get("/api/v1/merchants/{merchant_id}/payouts/summary", summary="Payout totals by status")
def payout_summary(merchant_id: str, store: DataStore = Depends(get_store)):
    return store.summary(merchant_id).model_dump(mode="json")


@app.get("/api/v1/merchants/{merchant_id}/payouts/analytics", summary="Payout analytics over a lookback period")
def payout_analytics(
    merchant_id: str,
    period: int = Query(default=30, ge=1, le=3650, description="Lookback period in days"),
    promoter_id: Optional[str] = Query(default=None),
    store: DataStore = Depends(get_store),
):
    return store.analytics(merchant_id, period_days=period, promoter_id=promoter_id).model_dump(mode="json")


@app.post("/api/v1/merchants/{merchant_id}/payouts/bulk-process", summary="Settle a merchant's pending payouts")
def bulk_process(
    merchant_id: str,
    mode: Literal["auto", "manual"] = Query(default="auto"),
    store: DataStore = Depends(get_store),
    provider: TransferProvider = Depends(get_provider),
):
    if mode == "auto":
        result = process_auto_payouts(merchant_id, store, provider)
    else:
        result = process_bulk_payouts(merchant_id, store, provider)
    return result.model_dump(mode="json")


# ── Admin ─────────────────────────────────────────────────────────────────────

@app.post("/api/v1/admin/seed", summary="Seed test data")
def reseed(
    store: DataStore = Depends(get_store),
    provider: TransferProvider = Depends(get_provider),
):
    from scripts.seed_data import seed
    # additive: directory rows are upserted and already-recorded orders come back as duplicates
    seed(store, provider)
    return {
        "status": "seeded",
        "promoters": len(store.list_promoters()),
    }
