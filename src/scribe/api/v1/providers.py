"""Provider availability and credit balance endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.scribe.api.deps import CurrentUser, get_current_user
from src.scribe.billing.schemas import CREDIT_PACKS, CreditEntry, CreditPack, LedgerSummary, PurchaseRequest
from src.scribe.errors import PreconditionError
from src.scribe.providers.base import ProviderStatus

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["providers"])


def _get_router(request: Request) -> Any:
    provider_router = getattr(request.app.state, "provider_router", None)
    if provider_router is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider router not initialized",
        )
    return provider_router


def _get_ledger(request: Request) -> Any:
    ledger = getattr(request.app.state, "credit_ledger", None)
    if ledger is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Credit ledger not initialized",
        )
    return ledger


@router.get("/providers", response_model=ProviderStatus)
async def list_providers(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> ProviderStatus:
    """Providers in display order with connection state and per-minute cost."""
    provider_router = _get_router(request)
    ledger = _get_ledger(request)
    balance = await ledger.balance(user.user_id)
    return await provider_router.provider_status(user.user_id, balance=balance)


@router.get("/credits", response_model=LedgerSummary)
async def get_credits(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> LedgerSummary:
    ledger = _get_ledger(request)
    # Pro allowance is granted lazily on read as well as on submit.
    await ledger.ensure_window(user.user_id, datetime.now(timezone.utc))
    return await ledger.summary(user.user_id)


@router.get("/credits/packs", response_model=list[CreditPack])
async def list_credit_packs() -> list[CreditPack]:
    return list(CREDIT_PACKS.values())


@router.post(
    "/credits/purchase",
    response_model=CreditEntry,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_credits(
    body: PurchaseRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> CreditEntry:
    """Record a pack purchase. Payment capture happens upstream."""
    ledger = _get_ledger(request)
    try:
        entry = await ledger.purchase(user.user_id, body.pack_id)
    except PreconditionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    logger.info("credits_purchased", user_id=user.user_id, pack_id=body.pack_id, amount=entry.amount)
    return entry
