"""Billing repository -- ledger rows and user accounts.

Debits and window grants lock the user's account row (SELECT ... FOR
UPDATE) for the length of one transaction, so the balance check and the
insert that depends on it cannot interleave with another writer.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.scribe.billing.models import CreditEntryModel, UserAccountModel
from src.scribe.billing.schemas import CreditEntry, EntryType, UserAccount, UserTier
from src.scribe.errors import PersistenceError

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_entry(model: CreditEntryModel) -> CreditEntry:
    return CreditEntry(
        id=model.id,
        user_id=model.user_id,
        amount=model.amount,
        type=EntryType(model.type),
        description=model.description,
        job_id=model.job_id,
        created_at=model.created_at,
    )


def _model_to_account(model: UserAccountModel) -> UserAccount:
    return UserAccount(
        user_id=model.user_id,
        tier=UserTier(model.tier or "free"),
        gemini_api_key=model.gemini_api_key,
        openai_api_key=model.openai_api_key,
        groq_api_key=model.groq_api_key,
        selected_provider=model.selected_provider,
        prefer_own_key=bool(model.prefer_own_key),
        credits_reset_at=model.credits_reset_at,
    )


async def _sum_balance(session: AsyncSession, user_id: str) -> int:
    stmt = select(func.coalesce(func.sum(CreditEntryModel.amount), 0)).where(
        CreditEntryModel.user_id == user_id
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def _lock_account(session: AsyncSession, user_id: str) -> UserAccountModel:
    """Lock the account row, creating a free-tier row on first use."""
    stmt = (
        select(UserAccountModel)
        .where(UserAccountModel.user_id == user_id)
        .with_for_update()
    )
    result = await session.execute(stmt)
    model = result.scalar_one_or_none()
    if model is None:
        model = UserAccountModel(user_id=user_id, tier=UserTier.FREE.value)
        session.add(model)
        await session.flush()
    return model


# ── Repository ──────────────────────────────────────────────────────────────


class BillingRepository:
    """Async persistence for credit entries and user accounts.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Accounts ──────────────────────────────────────────────────────────

    async def get_account(self, user_id: str) -> UserAccount:
        """Return the user's account; an unknown user is a free-tier account."""
        try:
            async for session in self._session_factory():
                result = await session.execute(
                    select(UserAccountModel).where(UserAccountModel.user_id == user_id)
                )
                model = result.scalar_one_or_none()
                if model is None:
                    return UserAccount(user_id=user_id)
                return _model_to_account(model)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read account: {exc}") from exc

    async def set_tier(self, user_id: str, tier: UserTier, reset_at: datetime | None) -> None:
        try:
            async for session in self._session_factory():
                model = await _lock_account(session, user_id)
                model.tier = tier.value
                model.credits_reset_at = reset_at
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to update tier: {exc}") from exc

    # ── Entries ───────────────────────────────────────────────────────────

    async def balance(self, user_id: str) -> int:
        try:
            async for session in self._session_factory():
                return await _sum_balance(session, user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read balance: {exc}") from exc

    async def recent_entries(self, user_id: str, limit: int = 20) -> list[CreditEntry]:
        """Most recent entries, newest first."""
        try:
            async for session in self._session_factory():
                stmt = (
                    select(CreditEntryModel)
                    .where(CreditEntryModel.user_id == user_id)
                    .order_by(CreditEntryModel.created_at.desc())
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [_model_to_entry(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read entries: {exc}") from exc

    async def append(
        self,
        user_id: str,
        amount: int,
        entry_type: EntryType,
        description: str,
        job_id: uuid.UUID | None = None,
    ) -> CreditEntry:
        """Insert an entry unconditionally."""
        try:
            async for session in self._session_factory():
                model = CreditEntryModel(
                    user_id=user_id,
                    amount=amount,
                    type=entry_type.value,
                    description=description,
                    job_id=job_id,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_entry(model)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to append entry: {exc}") from exc

    async def debit_if_sufficient(
        self,
        user_id: str,
        amount: int,
        description: str,
        job_id: uuid.UUID | None = None,
    ) -> tuple[CreditEntry | None, int]:
        """Insert a usage entry of ``-amount`` only if the balance covers it.

        Returns:
            (entry, balance_after) on success, (None, current_balance) when
            the balance is too low. Nothing is written in the second case.
        """
        try:
            async for session in self._session_factory():
                await _lock_account(session, user_id)
                current = await _sum_balance(session, user_id)
                if current < amount:
                    await session.rollback()
                    return None, current
                model = CreditEntryModel(
                    user_id=user_id,
                    amount=-amount,
                    type=EntryType.USAGE.value,
                    description=description,
                    job_id=job_id,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_entry(model), current - amount
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to debit credits: {exc}") from exc

    async def grant_window(
        self,
        user_id: str,
        expected_reset_at: datetime | None,
        next_reset_at: datetime,
        amount: int,
        description: str,
    ) -> CreditEntry | None:
        """Grant a period allowance and advance the window, at most once.

        The grant applies only if ``credits_reset_at`` still equals
        ``expected_reset_at`` under the row lock; a concurrent caller that
        already advanced the window makes this a no-op returning None.
        """
        try:
            async for session in self._session_factory():
                account = await _lock_account(session, user_id)
                if account.credits_reset_at != expected_reset_at:
                    await session.rollback()
                    return None
                await session.execute(
                    update(UserAccountModel)
                    .where(UserAccountModel.user_id == user_id)
                    .values(credits_reset_at=next_reset_at)
                    .execution_options(synchronize_session=False)
                )
                model = CreditEntryModel(
                    user_id=user_id,
                    amount=amount,
                    type=EntryType.BONUS.value,
                    description=description,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_entry(model)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to grant credits: {exc}") from exc
