"""CreditLedger -- append-only credit accounting.

Balance is derived (sum of entries), never stored. Every mutation is an
entry, so a mistake is undone with a compensating ``adjustment`` rather
than an edit.

Exports:
    CreditLedger: debit / credit / balance / summary / refund / estimate.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta

import structlog

from src.scribe.billing.repository import BillingRepository
from src.scribe.billing.schemas import (
    CREDIT_PACKS,
    CreditEntry,
    EntryType,
    LedgerSummary,
    UserTier,
)
from src.scribe.config import Settings, get_settings
from src.scribe.errors import InsufficientCreditsError, PreconditionError

logger = structlog.get_logger(__name__)

RECENT_ENTRIES_LIMIT = 20
PRO_ALLOWANCE_DESCRIPTION = "Pro plan monthly credits"


class CreditLedger:
    """Credit balance accounting on top of BillingRepository.

    Args:
        repository: BillingRepository (or a test double with the same interface).
        settings: Optional settings override (defaults to get_settings()).
    """

    def __init__(
        self,
        repository: BillingRepository,
        settings: Settings | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()

    @staticmethod
    def estimate(duration_seconds: float, cost_per_minute: int) -> int:
        """Credits for a recording: whole minutes (rounded up) times cost."""
        if cost_per_minute <= 0 or duration_seconds <= 0:
            return 0
        return math.ceil(duration_seconds / 60) * cost_per_minute

    async def balance(self, user_id: str) -> int:
        return await self._repository.balance(user_id)

    async def summary(self, user_id: str) -> LedgerSummary:
        """Balance plus the 20 most recent entries, newest first."""
        balance = await self._repository.balance(user_id)
        entries = await self._repository.recent_entries(user_id, RECENT_ENTRIES_LIMIT)
        return LedgerSummary(balance=balance, recent_entries=entries)

    async def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        job_id: uuid.UUID | None = None,
    ) -> CreditEntry:
        """Record a usage entry, refusing to take the balance below zero.

        Raises:
            InsufficientCreditsError: balance < amount. Nothing is recorded.
            ValueError: amount is not positive.
        """
        if amount <= 0:
            raise ValueError(f"debit amount must be positive, got {amount}")

        entry, balance = await self._repository.debit_if_sufficient(
            user_id, amount, description, job_id
        )
        if entry is None:
            logger.info(
                "debit_rejected",
                user_id=user_id,
                required=amount,
                balance=balance,
            )
            raise InsufficientCreditsError(balance=balance, required=amount)

        logger.info(
            "credits_debited",
            user_id=user_id,
            amount=amount,
            balance=balance,
            job_id=str(job_id) if job_id else None,
        )
        return entry

    async def credit(
        self,
        user_id: str,
        amount: int,
        entry_type: EntryType,
        description: str,
        job_id: uuid.UUID | None = None,
    ) -> CreditEntry:
        """Record a positive entry (purchase, bonus or adjustment)."""
        if entry_type == EntryType.USAGE:
            raise ValueError("usage entries are recorded through debit()")
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")

        entry = await self._repository.append(user_id, amount, entry_type, description, job_id)
        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            type=entry_type.value,
        )
        return entry

    async def refund(
        self,
        user_id: str,
        amount: int,
        job_id: uuid.UUID | None,
        reason: str,
    ) -> CreditEntry | None:
        """Compensate an earlier debit with a positive adjustment entry."""
        if amount <= 0:
            return None
        return await self.credit(
            user_id, amount, EntryType.ADJUSTMENT, f"Refund: {reason}", job_id
        )

    async def purchase(self, user_id: str, pack_id: str) -> CreditEntry:
        """Record a credit pack purchase (payment is handled upstream)."""
        pack = CREDIT_PACKS.get(pack_id)
        if pack is None:
            raise PreconditionError(f"Unknown credit pack '{pack_id}'")
        return await self.credit(
            user_id,
            pack.credits,
            EntryType.PURCHASE,
            f"Purchased {pack.credits} credits ({pack.id})",
        )

    async def upgrade_to_pro(self, user_id: str, now: datetime) -> CreditEntry:
        """Switch the account to pro and grant the first monthly allowance."""
        reset_at = now + timedelta(days=self._settings.CREDIT_RESET_DAYS)
        await self._repository.set_tier(user_id, UserTier.PRO, reset_at)
        return await self.credit(
            user_id,
            self._settings.PRO_MONTHLY_CREDITS,
            EntryType.BONUS,
            PRO_ALLOWANCE_DESCRIPTION,
        )

    async def ensure_window(self, user_id: str, now: datetime) -> CreditEntry | None:
        """Grant the pro allowance when the account's reset time has passed.

        Returns the bonus entry, or None when nothing was due (free tier,
        window still open, or a concurrent caller already granted it).
        """
        account = await self._repository.get_account(user_id)
        if account.tier != UserTier.PRO or account.credits_reset_at is None:
            return None
        if account.credits_reset_at > now:
            return None

        next_reset = account.credits_reset_at
        period = timedelta(days=self._settings.CREDIT_RESET_DAYS)
        while next_reset <= now:
            next_reset += period

        entry = await self._repository.grant_window(
            user_id,
            expected_reset_at=account.credits_reset_at,
            next_reset_at=next_reset,
            amount=self._settings.PRO_MONTHLY_CREDITS,
            description=PRO_ALLOWANCE_DESCRIPTION,
        )
        if entry is not None:
            logger.info(
                "credit_window_granted",
                user_id=user_id,
                amount=entry.amount,
                next_reset_at=next_reset.isoformat(),
            )
        return entry
