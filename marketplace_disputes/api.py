"""HTTP surface for the dispute engine.

The caller identity is established upstream (session gateway) and passed
in the ``X-Caller-Id`` / ``X-Caller-Admin`` headers.  Gateway settlement
callbacks are verified with HMAC-SHA256 over the raw body.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace_disputes import __version__
from marketplace_disputes.engine import DisputeEngine, build_engine
from marketplace_disputes.errors import (
    AuthorizationError,
    DisputeError,
    DisputeNotFound,
    DownstreamUnavailable,
    DuplicateRequest,
    InvalidTransition,
    ValidationError,
)
from marketplace_disputes.scheduler import DeadlineScheduler
from marketplace_disputes.schemas import Caller, EvidenceInput

logger = logging.getLogger(__name__)

MAX_REQUEST_BODY_BYTES = 1 * 1024 * 1024  # 1 MiB hard cap on all request bodies


class _BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose body exceeds MAX_REQUEST_BODY_BYTES.

    Evidence is uploaded elsewhere, so nothing legitimate comes close.
    """

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and int(content_length) > MAX_REQUEST_BODY_BYTES:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request body too large"},
            )
        return await call_next(request)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class OpenDisputeRequest(BaseModel):
    order_id: str
    seller_id: str
    category: str
    title: str
    description: str
    amount: Decimal
    currency: str | None = None
    evidence: list[EvidenceInput] = Field(default_factory=list)
    payout_identifier: str | None = None


class PayoutRequest(BaseModel):
    payout_identifier: str


class SellerResponseRequest(BaseModel):
    text: str
    evidence: list[EvidenceInput] = Field(default_factory=list)


class ProposalRequest(BaseModel):
    kind: str
    amount: Decimal | None = None


class EscalateRequest(BaseModel):
    reason: str | None = None


class DecisionRequest(BaseModel):
    kind: str
    reasoning: str
    amount: Decimal | None = None


class MessageRequest(BaseModel):
    text: str
    evidence: EvidenceInput | None = None


class CloseRequest(BaseModel):
    note: str | None = None


class DisbursementCallback(BaseModel):
    """Terminal outcome reported by the disbursement gateway."""

    idempotency_key: str
    outcome: str
    external_reference: str | None = None
    failure_reason: str | None = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _engine(request: Request) -> DisputeEngine:
    return request.app.state.engine


def _caller(
    x_caller_id: str | None = Header(default=None),
    x_caller_admin: str | None = Header(default=None),
) -> Caller:
    if not x_caller_id:
        raise HTTPException(status_code=401, detail="Missing X-Caller-Id header")
    is_admin = (x_caller_admin or "").strip().lower() in {"1", "true", "yes"}
    return Caller(user_id=x_caller_id, is_admin=is_admin)


def _verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Verify the callback HMAC-SHA256 signature."""
    if not secret:
        # No secret configured: skip verification (development mode)
        logger.warning("Callback signature verification skipped (no secret configured)")
        return True

    if not signature:
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[DisputeError], int]] = [
    (DisputeNotFound, 404),
    (AuthorizationError, 403),
    (InvalidTransition, 409),
    (ValidationError, 422),
    (DownstreamUnavailable, 503),
]


async def _dispute_error_handler(_request: Request, exc: DisputeError) -> JSONResponse:
    if isinstance(exc, DuplicateRequest):
        original = exc.original
        content = original.model_dump(mode="json") if isinstance(original, BaseModel) else original
        return JSONResponse(status_code=200, content=content)

    status = 400
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status = code
            break
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InvalidTransition) and exc.current_state:
        content["current_state"] = exc.current_state
    return JSONResponse(status_code=status, content=content)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
def health(engine: DisputeEngine = Depends(_engine)):
    return {
        "status": "ok",
        "service": "marketplace-disputes",
        "version": __version__,
        "currency": engine.settings.currency,
        "response_window_days": engine.settings.response_window_days,
    }


@router.post("/disputes", status_code=201)
def open_dispute(
    req: OpenDisputeRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    dispute = engine.open_dispute(
        caller,
        order_id=req.order_id,
        seller_id=req.seller_id,
        category=req.category,
        title=req.title,
        description=req.description,
        amount=req.amount,
        evidence=req.evidence,
        currency=req.currency,
        payout_identifier=req.payout_identifier,
    )
    return dispute.model_dump(mode="json")


@router.get("/disputes/{dispute_id}")
def get_dispute(
    dispute_id: str,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.get_dispute(caller, dispute_id).model_dump(mode="json")


@router.put("/disputes/{dispute_id}/payout")
def register_payout_identifier(
    dispute_id: str,
    req: PayoutRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    """Buyer sets the mobile-money number refunds for this dispute go to."""
    dispute = engine.register_payout_identifier(caller, dispute_id, req.payout_identifier)
    return dispute.model_dump(mode="json")


@router.post("/disputes/{dispute_id}/response")
def seller_respond(
    dispute_id: str,
    req: SellerResponseRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.seller_respond(caller, dispute_id, req.text, req.evidence).model_dump(mode="json")


@router.post("/disputes/{dispute_id}/proposals")
def propose_agreement(
    dispute_id: str,
    req: ProposalRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    dispute = engine.propose_agreement(caller, dispute_id, req.kind, req.amount)
    return dispute.model_dump(mode="json")


@router.post("/disputes/{dispute_id}/proposals/accept")
def accept_agreement(
    dispute_id: str,
    req: ProposalRequest | None = None,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    """Accept the other party's proposal; send its terms to guard against a swap."""
    expected = (req.kind, req.amount) if req is not None else None
    return engine.accept_agreement(caller, dispute_id, expected).model_dump(mode="json")


@router.post("/disputes/{dispute_id}/escalate")
def escalate(
    dispute_id: str,
    req: EscalateRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.escalate(caller, dispute_id, req.reason).model_dump(mode="json")


@router.post("/disputes/{dispute_id}/decision")
def admin_decide(
    dispute_id: str,
    req: DecisionRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    """Final admin ruling.  Any refund is recorded Pending and settles later."""
    dispute = engine.admin_decide(caller, dispute_id, req.kind, req.reasoning, req.amount)
    return dispute.model_dump(mode="json")


@router.post("/disputes/{dispute_id}/messages", status_code=201)
def append_message(
    dispute_id: str,
    req: MessageRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    entry = engine.append_message(caller, dispute_id, req.text, req.evidence)
    return entry.model_dump(mode="json")


@router.get("/disputes/{dispute_id}/timeline")
def list_timeline(
    dispute_id: str,
    limit: int | None = None,
    offset: int = 0,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    entries = engine.list_timeline(caller, dispute_id, limit=limit, offset=offset)
    return {"entries": [e.model_dump(mode="json") for e in entries]}


@router.post("/disputes/{dispute_id}/disbursement/retry")
def retry_disbursement(
    dispute_id: str,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.retry_disbursement(caller, dispute_id).model_dump(mode="json")


@router.post("/disputes/{dispute_id}/close")
def close_dispute(
    dispute_id: str,
    req: CloseRequest,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.close_dispute(caller, dispute_id, req.note).model_dump(mode="json")


@router.get("/buyers/{buyer_id}/disputes")
def list_buyer_disputes(
    buyer_id: str,
    limit: int | None = None,
    offset: int = 0,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    page = engine.list_disputes_for_buyer(caller, buyer_id, limit=limit, offset=offset)
    return page.model_dump(mode="json")


@router.get("/sellers/{seller_id}/disputes")
def list_seller_disputes(
    seller_id: str,
    limit: int | None = None,
    offset: int = 0,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    page = engine.list_disputes_for_seller(caller, seller_id, limit=limit, offset=offset)
    return page.model_dump(mode="json")


@router.get("/sellers/{seller_id}/reputation")
def seller_reputation(
    seller_id: str,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.get_reputation(caller, seller_id).model_dump(mode="json")


@router.get("/admin/disputes/pending")
def list_pending_admin_review(
    limit: int | None = None,
    offset: int = 0,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    """Admin queue, oldest escalation first."""
    page = engine.list_pending_admin_review(caller, limit=limit, offset=offset)
    return page.model_dump(mode="json")


@router.get("/admin/stats")
def dispute_stats(
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    return engine.get_stats(caller).model_dump(mode="json")


@router.get("/alerts")
def list_alerts(
    limit: int | None = None,
    offset: int = 0,
    caller: Caller = Depends(_caller),
    engine: DisputeEngine = Depends(_engine),
):
    alerts = engine.list_alerts(caller, limit=limit, offset=offset)
    return {
        "alerts": [a.model_dump(mode="json") for a in alerts],
        "total": len(engine.alerts),
    }


@router.post("/callbacks/disbursement")
async def disbursement_callback(
    request: Request,
    x_disbursement_signature: str | None = Header(default=None),
):
    """Terminal refund outcome from the gateway.

    Safe to deliver more than once; a repeat returns the recorded outcome.
    """
    engine: DisputeEngine = request.app.state.engine
    body = await request.body()

    if not _verify_signature(engine.settings.callback_secret, body, x_disbursement_signature):
        raise HTTPException(status_code=401, detail="Invalid callback signature")

    try:
        payload = DisbursementCallback(**json.loads(body))
    except (ValueError, PayloadError) as exc:
        logger.error("Failed to parse disbursement callback: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid payload") from exc

    logger.info(
        "Disbursement callback: key=%s outcome=%s ref=%s",
        payload.idempotency_key,
        payload.outcome,
        payload.external_reference or "-",
    )
    # Engine calls take per-dispute locks; keep them off the event loop.
    request_record = await run_in_threadpool(
        engine.record_disbursement_outcome,
        payload.idempotency_key,
        payload.outcome,
        payload.external_reference,
        payload.failure_reason,
    )
    return request_record.model_dump(mode="json")


@router.get("/scheduler/status")
def scheduler_status(request: Request):
    """Return the current state of the deadline scheduler."""
    return request.app.state.scheduler.status()


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(
    engine: DisputeEngine | None = None,
    scheduler: DeadlineScheduler | None = None,
) -> FastAPI:
    """Build the FastAPI app around *engine* (a configured one by default)."""
    if engine is None:
        # Refunds are handed to the gateway off the request thread.
        engine = build_engine(
            executor=ThreadPoolExecutor(max_workers=4, thread_name_prefix="disbursement")
        )
    scheduler = scheduler or DeadlineScheduler(engine)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if engine.settings.scheduler_enabled:
            scheduler.start()
        yield
        scheduler.stop()

    app = FastAPI(
        title="Marketplace Disputes",
        description="Buyer/seller dispute resolution with admin arbitration and refunds",
        version=__version__,
        lifespan=_lifespan,
    )
    app.state.engine = engine
    app.state.scheduler = scheduler
    app.add_middleware(_BodySizeLimitMiddleware)
    app.add_exception_handler(DisputeError, _dispute_error_handler)
    app.include_router(router)
    return app


app = create_app()
