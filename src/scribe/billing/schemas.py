"""Pydantic v2 schemas for credits and user accounts."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class EntryType(str, Enum):
    """Kind of ledger entry. Usage entries are negative; the rest positive
    except adjustments, which may carry either sign."""

    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


class UserTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class CreditEntry(BaseModel):
    """One immutable ledger row. Balance is the sum of all amounts."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    amount: int
    type: EntryType
    description: str
    job_id: uuid.UUID | None = None
    created_at: datetime | None = None


class LedgerSummary(BaseModel):
    balance: int
    recent_entries: list[CreditEntry] = Field(default_factory=list)


class UserAccount(BaseModel):
    """Per-user settings owned by the account service.

    Stored provider keys are the user's own credentials; when one is used
    the request is not billed against the credit balance.
    """

    user_id: str
    tier: UserTier = UserTier.FREE
    gemini_api_key: str | None = None
    openai_api_key: str | None = None
    groq_api_key: str | None = None
    selected_provider: str | None = None
    prefer_own_key: bool = False
    credits_reset_at: datetime | None = None

    def key_for(self, provider_id: str) -> str | None:
        key = getattr(self, f"{provider_id}_api_key", None)
        return key or None


class CreditPack(BaseModel):
    id: str
    credits: int
    price_cents: int


CREDIT_PACKS: dict[str, CreditPack] = {
    pack.id: pack
    for pack in (
        CreditPack(id="starter", credits=100, price_cents=499),
        CreditPack(id="standard", credits=500, price_cents=1999),
        CreditPack(id="bulk", credits=2000, price_cents=6999),
    )
}


class PurchaseRequest(BaseModel):
    pack_id: str
