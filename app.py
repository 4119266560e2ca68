import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

import psycopg
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backends import build_backend
from config import get_settings
from errors import InstrumentUnavailable, InsufficientHoldings, InvalidRewardRequest, PriceUnavailable, RewardError
from logging_config import configure_logging
from models import GRANT, RewardRecord, RewardRequest

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    logger.info("Starting %s with settings %s", settings.app_name, settings.dict_for_logging())
    backend = build_backend(settings)
    app.state.backend = backend
    if settings.price_refresh_enabled:
        backend.start_price_refresher()
    try:
        yield
    finally:
        backend.stop()


app = FastAPI(title="Stock Reward Ledger", version="0.1.0", lifespan=lifespan)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_backend(request: Request):
    return request.app.state.backend


# ---------
# pydantic models (requests)
# ---------


class RewardCreateRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, description="Unique key; retries must reuse it")
    user_id: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1, description="Instrument symbol, e.g. TCS")
    quantity: Decimal = Field(..., description="Units to grant (or reverse), up to 6 dp")
    kind: Literal["grant", "reversal"] = GRANT
    reason: Optional[str] = Field(None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None
    granted_at: Optional[datetime] = None


# ---------
# helpers for serialization
# ---------

# status code per error type; validation failures are the caller's to fix,
# PriceUnavailable is transient and safe to retry with the same key
ERROR_STATUS = [
    (InvalidRewardRequest, 400),
    (InsufficientHoldings, 400),
    (InstrumentUnavailable, 404),
    (PriceUnavailable, 503),
]


def _error_response(e: RewardError) -> HTTPException:
    status = next((code for cls, code in ERROR_STATUS if isinstance(e, cls)), 400)
    return HTTPException(
        status_code=status,
        detail={"error": e.code, "details": str(e), "retryable": e.retryable},
    )


# connection-level failures: nothing was decided, the same request can be retried
STORAGE_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError, ConnectionError, TimeoutError)


def _unexpected_error(e: Exception) -> HTTPException:
    if isinstance(e, STORAGE_ERRORS):
        logger.error("Storage unavailable: %s", e)
        return HTTPException(
            status_code=503,
            detail={
                "error": "storage_unavailable",
                "details": "Storage is unavailable, retry later.",
                "retryable": True,
            },
        )
    logger.exception("Unexpected error")
    return HTTPException(
        status_code=500,
        detail={"error": "internal_error", "details": "Internal server error", "retryable": False},
    )


def _record_json(record: RewardRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "idempotency_key": record.idempotency_key,
        "user_id": record.user_id,
        "symbol": record.symbol,
        "kind": record.kind,
        "quantity": f"{record.quantity:.6f}",
        "price_per_unit": f"{record.price_per_unit:.4f}",
        "gross_value": f"{record.gross_value:.4f}",
        "fees": {k: f"{v:.4f}" for k, v in record.fees.items()},
        "total_fees": f"{record.total_fees:.4f}",
        "total_cost": f"{record.total_cost:.4f}",
        "reason": record.reason,
        "metadata": record.metadata,
        "granted_at": record.granted_at.isoformat(),
        "recorded_at": record.recorded_at.isoformat(),
        "posting_group_id": str(record.posting_group_id),
    }


def _jsonable(value):
    """decimals must serialize as strings."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


# ---------
# endpoints
# ---------


@app.get("/health")
def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/v1/reward", status_code=201)
def create_reward(payload: RewardCreateRequest, backend=Depends(get_backend)):
    """
    grant (or reverse) units of an instrument for a user.
    replays of a known idempotency_key return the stored reward unchanged.
    """
    request = RewardRequest(
        idempotency_key=payload.idempotency_key,
        user_id=payload.user_id,
        symbol=payload.symbol,
        quantity=payload.quantity,
        kind=payload.kind,
        reason=payload.reason,
        metadata=payload.metadata,
        granted_at=payload.granted_at,
    )

    try:
        outcome = backend.grant(request)
    except RewardError as e:
        raise _error_response(e)
    except Exception as e:
        raise _unexpected_error(e)

    return {
        "success": True,
        "replayed": outcome.replayed,
        "warnings": outcome.warnings,
        "data": _record_json(outcome.record),
    }


@app.get("/api/v1/today-stocks/{user_id}")
def today_stocks(user_id: str, backend=Depends(get_backend)):
    try:
        rewards = backend.today(user_id)
    except Exception as e:
        raise _unexpected_error(e)
    return {
        "success": True,
        "user_id": user_id,
        "count": len(rewards),
        "data": [_record_json(r) for r in rewards],
    }


@app.get("/api/v1/historical-inr/{user_id}")
def historical_inr(user_id: str, backend=Depends(get_backend)):
    try:
        historical = backend.historical(user_id)
    except Exception as e:
        raise _unexpected_error(e)
    return {"success": True, "data": _jsonable({"user_id": user_id, **historical})}


@app.get("/api/v1/stats/{user_id}")
def stats(user_id: str, backend=Depends(get_backend)):
    try:
        result = backend.stats(user_id)
    except Exception as e:
        raise _unexpected_error(e)
    return {"success": True, "data": _jsonable({"user_id": user_id, **result})}


@app.get("/api/v1/portfolio/{user_id}")
def user_portfolio(user_id: str, backend=Depends(get_backend)):
    try:
        result = backend.portfolio(user_id)
    except Exception as e:
        raise _unexpected_error(e)
    return {"success": True, "user_id": user_id, **_jsonable(result)}


@app.post("/api/v1/admin/reconcile")
def reconcile(backend=Depends(get_backend)):
    """rebuild holdings and missing ledger postings from the reward log."""
    try:
        result = backend.reconcile()
    except Exception as e:
        raise _unexpected_error(e)
    return {"success": True, "data": result}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
