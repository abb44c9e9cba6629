"""ProcessingOrchestrator -- the job state machine.

Legal transitions::

    pending    -> processing            (submit)
    completed  -> processing            (reprocess)
    processing -> completed             (provider success)
    processing -> pending | completed   (provider failure: prior state restored)
    processing -> failed                (user cancel)

Submission is two-phase so the HTTP layer can return before the provider
call finishes:

``begin()``
    ownership, preconditions, route + rate limit + balance checks, the
    compare-and-swap into ``processing``, and the credit debit.
``run()``
    the provider call and the conditional write of its outcome.

Every write that leaves ``processing`` is conditional on the job still
being in ``processing``. A result that arrives after a cancel therefore
matches no row and is discarded, and exactly one of {cancel, failure
restore} refunds the run's debit.

Errors raised by collaborators are ScribeError subclasses and are turned
into a ProcessingOutcome here. PersistenceError is the exception: it
propagates and aborts the operation.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel

from src.scribe.audio.storage import AudioStore
from src.scribe.billing.ledger import CreditLedger
from src.scribe.billing.rate_limit import UsageRateLimiter
from src.scribe.billing.repository import BillingRepository
from src.scribe.billing.schemas import UserTier
from src.scribe.core.monitoring import record_debit, record_transition
from src.scribe.core.redis import ViewCache
from src.scribe.errors import (
    AlreadyProcessingError,
    AuthorizationError,
    InsufficientCreditsError,
    PersistenceError,
    PreconditionError,
    ScribeError,
)
from src.scribe.jobs.repository import JobRepository
from src.scribe.jobs.schemas import (
    JobSnapshot,
    JobStatus,
    JobView,
    ProcessingJob,
    ProcessingOutcome,
)
from src.scribe.providers.base import RouteDecision
from src.scribe.providers.router import ProviderRouter

logger = structlog.get_logger(__name__)

CANCEL_NOTE = "Processing cancelled by user"


class ProcessingTicket(BaseModel):
    """Everything run() needs, captured by begin() after the debit."""

    job_id: uuid.UUID
    user_id: str
    model_id: str
    audio_ref: str
    title: str
    reprocess: bool
    prior_status: JobStatus
    snapshot: JobSnapshot
    decision: RouteDecision
    tier: UserTier
    debit_amount: int = 0


class ProcessingOrchestrator:
    """Coordinates jobs, credits, and providers for one request at a time.

    Holds no mutable state of its own; the persisted job row is the single
    source of truth and its status column is the only lock.

    Args:
        jobs: JobRepository.
        ledger: CreditLedger.
        router: ProviderRouter.
        store: AudioStore for artifact existence checks.
        accounts: BillingRepository for the caller's tier.
        rate_limiter: Optional per-provider request limiter.
        view_cache: Optional cache invalidated after each transition.
    """

    def __init__(
        self,
        jobs: JobRepository,
        ledger: CreditLedger,
        router: ProviderRouter,
        store: AudioStore,
        accounts: BillingRepository,
        rate_limiter: UsageRateLimiter | None = None,
        view_cache: ViewCache | None = None,
    ) -> None:
        self._jobs = jobs
        self._ledger = ledger
        self._router = router
        self._store = store
        self._accounts = accounts
        self._rate_limiter = rate_limiter
        self._view_cache = view_cache

    # ── Queries ──────────────────────────────────────────────────────────

    async def create_job(
        self,
        user_id: str,
        audio_ref: str | None,
        duration_seconds: float,
        title: str | None = None,
    ) -> ProcessingJob:
        job = await self._jobs.create(
            user_id=user_id,
            audio_ref=audio_ref,
            duration_seconds=duration_seconds,
            title=title or "Untitled recording",
        )
        logger.info(
            "job_created",
            job_id=str(job.id),
            user_id=user_id,
            duration_seconds=duration_seconds,
        )
        return job

    async def get_job(self, user_id: str, job_id: uuid.UUID | str) -> ProcessingJob:
        """Return the caller's job.

        Raises:
            AuthorizationError: job missing or owned by someone else.
        """
        try:
            job = await self._jobs.get(job_id)
        except ValueError:
            # Malformed id: indistinguishable from "not found".
            raise AuthorizationError() from None
        if job is None or job.user_id != user_id:
            raise AuthorizationError()
        return job

    async def get_view(self, user_id: str, job_id: uuid.UUID | str) -> JobView:
        """Polling read path; served from the view cache when warm.

        The cache generation is read before the database so a view that a
        transition overtakes is written under a retired generation.
        """
        generation = None
        if self._view_cache is not None:
            generation = await self._view_cache.generation(str(job_id))
            if generation is not None:
                cached = await self._view_cache.get_job(str(job_id), generation)
                if cached and cached.get("user_id") == user_id:
                    return JobView.model_validate(cached["view"])

        view = JobView.of(await self.get_job(user_id, job_id))
        if self._view_cache is not None and generation is not None:
            await self._view_cache.put_job(
                str(job_id),
                generation,
                {"user_id": user_id, "view": view.model_dump(mode="json")},
            )
        return view

    # ── Commands ─────────────────────────────────────────────────────────

    async def submit(
        self, user_id: str, job_id: uuid.UUID | str, model_id: str
    ) -> ProcessingOutcome:
        """Process a pending job end to end."""
        return await self._execute(user_id, job_id, model_id, reprocess=False)

    async def reprocess(
        self, user_id: str, job_id: uuid.UUID | str, model_id: str
    ) -> ProcessingOutcome:
        """Re-run a completed job, possibly with a different model."""
        return await self._execute(user_id, job_id, model_id, reprocess=True)

    async def _execute(
        self, user_id: str, job_id: uuid.UUID | str, model_id: str, reprocess: bool
    ) -> ProcessingOutcome:
        try:
            ticket = await self.begin(user_id, job_id, model_id, reprocess=reprocess)
        except ScribeError as exc:
            return await self._begin_failure(user_id, job_id, exc)
        return await self.run(ticket)

    async def begin(
        self,
        user_id: str,
        job_id: uuid.UUID | str,
        model_id: str,
        *,
        reprocess: bool = False,
    ) -> ProcessingTicket:
        """Validate, claim the job, and pay for the run.

        Raises:
            AuthorizationError, PreconditionError, AlreadyProcessingError,
            InsufficientCreditsError, RateLimitError: nothing was changed,
            or the claim was rolled back.
        """
        # 1. Ownership before anything else.
        job = await self.get_job(user_id, job_id)

        # 2. State preconditions.
        if job.status == JobStatus.PROCESSING:
            raise AlreadyProcessingError()
        if reprocess:
            if job.status != JobStatus.COMPLETED:
                raise PreconditionError("Only completed jobs can be reprocessed")
            if not self._store.exists(job.audio_ref):
                raise PreconditionError("No audio file to reprocess")
            expected = JobStatus.COMPLETED
        else:
            if job.status != JobStatus.PENDING:
                raise PreconditionError(
                    f"Job cannot be submitted while {job.status.value}"
                )
            if not self._store.exists(job.audio_ref):
                raise PreconditionError("No audio file available")
            expected = JobStatus.PENDING

        # 3. Route, rate limit, and balance, all before the claim.
        now = datetime.now(timezone.utc)
        await self._ledger.ensure_window(user_id, now)
        account = await self._accounts.get_account(user_id)
        decision = await self._router.resolve(user_id, model_id, account)
        if self._rate_limiter is not None:
            await self._rate_limiter.check(user_id, decision.provider_id, account.tier, now)

        billable = decision.billable and decision.cost_per_minute > 0
        if billable and job.duration_seconds <= 0:
            raise PreconditionError(
                "Recording duration is unknown; use your own API key or the on-device model"
            )
        amount = (
            self._ledger.estimate(job.duration_seconds, decision.cost_per_minute)
            if billable
            else 0
        )
        if amount > 0:
            balance = await self._ledger.balance(user_id)
            if balance < amount:
                raise InsufficientCreditsError(balance=balance, required=amount)

        # 4. Linearization point.
        snapshot = JobSnapshot.of(job)
        claimed = await self._jobs.transition(
            job.id,
            [expected],
            JobStatus.PROCESSING,
            fields={"progress": 0, "credits_held": 0},
        )
        if claimed is None:
            raise AlreadyProcessingError()
        await self._committed(claimed, expected)

        # 5. Debit strictly before the provider call.
        if amount > 0:
            minutes = math.ceil(job.duration_seconds / 60)
            try:
                await self._ledger.debit(
                    user_id,
                    amount,
                    f"{job.title}: {minutes} min with {model_id}",
                    job_id=job.id,
                )
            except InsufficientCreditsError:
                await self._restore(job.id, expected, snapshot)
                raise
            record_debit(decision.provider_id, amount)

            held = await self._jobs.transition(
                job.id,
                [JobStatus.PROCESSING],
                JobStatus.PROCESSING,
                fields={"credits_held": amount},
            )
            if held is None:
                # Cancelled between claim and debit; cancel saw nothing held.
                await self._ledger.refund(user_id, amount, job.id, "cancelled before processing")
                raise PreconditionError("Job was cancelled")

        logger.info(
            "job_processing_started",
            job_id=str(job.id),
            user_id=user_id,
            model=model_id,
            provider=decision.provider_id,
            reprocess=reprocess,
            credits=amount,
        )
        return ProcessingTicket(
            job_id=job.id,
            user_id=user_id,
            model_id=model_id,
            audio_ref=job.audio_ref,
            title=job.title,
            reprocess=reprocess,
            prior_status=expected,
            snapshot=snapshot,
            decision=decision,
            tier=account.tier,
            debit_amount=amount,
        )

    async def run(self, ticket: ProcessingTicket) -> ProcessingOutcome:
        """Call the provider and commit (or roll back) its outcome."""
        try:
            if self._rate_limiter is not None:
                await self._rate_limiter.record(ticket.user_id, ticket.decision.provider_id)
            result = await self._router.process(
                ticket.user_id,
                ticket.audio_ref,
                ticket.model_id,
                decision=ticket.decision,
                tier=ticket.tier,
                on_progress=self._progress_sink(ticket.job_id),
                job_id=str(ticket.job_id),
            )
        except ScribeError as exc:
            return await self._fail(ticket, exc)

        fields = {
            "transcript": result.transcript,
            "summary": result.summary,
            "action_items": result.action_items,
            "key_topics": result.key_topics,
            "sentiment": result.sentiment,
            "processing_model": result.model,
            "error_note": None,
            "progress": 100,
            "credits_held": 0,
        }
        if ticket.reprocess:
            fields["reprocessed_at"] = datetime.now(timezone.utc)

        completed = await self._jobs.transition(
            ticket.job_id,
            [JobStatus.PROCESSING],
            JobStatus.COMPLETED,
            fields=fields,
            credits_delta=ticket.debit_amount,
        )
        if completed is None:
            # Cancelled while the provider was working; keep the cancel.
            current = await self._jobs.get(ticket.job_id)
            logger.info(
                "late_result_discarded",
                job_id=str(ticket.job_id),
                status=current.status.value if current else None,
            )
            return ProcessingOutcome(
                success=False,
                job_id=ticket.job_id,
                status=current.status if current else None,
                error="Job is no longer processing; result discarded",
                error_code="result_discarded",
            )

        await self._committed(completed, JobStatus.PROCESSING)
        logger.info(
            "job_completed",
            job_id=str(ticket.job_id),
            model=result.model,
            reprocess=ticket.reprocess,
            credits=ticket.debit_amount,
        )
        return ProcessingOutcome.from_job(completed, credits_charged=ticket.debit_amount)

    async def cancel(self, user_id: str, job_id: uuid.UUID | str) -> ProcessingOutcome:
        """Stop caring about an in-flight run; terminal jobs are a no-op."""
        try:
            job = await self.get_job(user_id, job_id)
        except AuthorizationError as exc:
            return ProcessingOutcome.failure(exc)

        if job.status.is_terminal:
            return ProcessingOutcome(success=True, job_id=job.id, status=job.status)
        if job.status == JobStatus.PENDING:
            return ProcessingOutcome.failure(
                PreconditionError("Job is not processing and cannot be cancelled"),
                job_id=job.id,
                status=job.status,
            )

        cancelled = await self._jobs.transition(
            job.id,
            [JobStatus.PROCESSING],
            JobStatus.FAILED,
            fields={"error_note": CANCEL_NOTE},
        )
        if cancelled is None:
            # The run finished (or rolled back) between our read and the CAS.
            current = await self._jobs.get(job.id)
            if current is not None and current.status.is_terminal:
                return ProcessingOutcome(success=True, job_id=job.id, status=current.status)
            return ProcessingOutcome.failure(
                PreconditionError("Job is not processing and cannot be cancelled"),
                job_id=job.id,
                status=current.status if current else None,
            )

        await self._committed(cancelled, JobStatus.PROCESSING)
        self._router.cancel(str(job.id))
        if cancelled.credits_held > 0:
            await self._ledger.refund(user_id, cancelled.credits_held, job.id, CANCEL_NOTE)
        logger.info(
            "job_cancelled",
            job_id=str(job.id),
            user_id=user_id,
            refunded=cancelled.credits_held,
        )
        return ProcessingOutcome(success=True, job_id=job.id, status=JobStatus.FAILED)

    # ── Internals ────────────────────────────────────────────────────────

    async def _fail(self, ticket: ProcessingTicket, exc: ScribeError) -> ProcessingOutcome:
        """Put the job back where it was and refund the run."""
        if ticket.reprocess:
            fields = ticket.snapshot.restore_fields()
        else:
            fields = {"error_note": exc.message, "progress": 0}
        fields["credits_held"] = 0

        restored = await self._jobs.transition(
            ticket.job_id,
            [JobStatus.PROCESSING],
            ticket.prior_status,
            fields=fields,
        )
        if restored is None:
            current = await self._jobs.get(ticket.job_id)
            status = current.status if current else None
            logger.info(
                "late_failure_discarded",
                job_id=str(ticket.job_id),
                status=status.value if status else None,
            )
        else:
            status = restored.status
            await self._committed(restored, JobStatus.PROCESSING)
            if ticket.debit_amount > 0:
                await self._ledger.refund(
                    ticket.user_id, ticket.debit_amount, ticket.job_id, "processing failed"
                )

        logger.warning(
            "job_processing_failed",
            job_id=str(ticket.job_id),
            provider=ticket.decision.provider_id,
            error_code=exc.code,
            error=exc.message,
            raw_error=getattr(exc, "raw_message", None),
            reprocess=ticket.reprocess,
        )
        return ProcessingOutcome.failure(exc, job_id=ticket.job_id, status=status)

    async def _restore(
        self, job_id: uuid.UUID, prior: JobStatus, snapshot: JobSnapshot
    ) -> None:
        restored = await self._jobs.transition(
            job_id,
            [JobStatus.PROCESSING],
            prior,
            fields={**snapshot.restore_fields(), "credits_held": 0},
        )
        if restored is not None:
            await self._committed(restored, JobStatus.PROCESSING)

    async def _begin_failure(
        self, user_id: str, job_id: uuid.UUID | str, exc: ScribeError
    ) -> ProcessingOutcome:
        logger.info(
            "job_submission_rejected",
            job_id=str(job_id),
            user_id=user_id,
            error_code=exc.code,
        )
        if isinstance(exc, AuthorizationError):
            return ProcessingOutcome.failure(exc)
        job = await self._jobs.get(job_id)
        return ProcessingOutcome.failure(
            exc,
            job_id=job.id if job else None,
            status=job.status if job else None,
        )

    def _progress_sink(self, job_id: uuid.UUID):
        async def sink(percent: int, phase: str) -> None:
            try:
                await self._jobs.update_progress(job_id, percent)
            except PersistenceError as exc:
                logger.warning("progress_update_failed", job_id=str(job_id), error=str(exc))
                return
            if self._view_cache is not None:
                await self._view_cache.drop_job(str(job_id))
            logger.debug("job_progress", job_id=str(job_id), progress=percent, phase=phase)

        return sink

    async def _committed(self, job: ProcessingJob, from_status: JobStatus) -> None:
        record_transition(from_status.value, job.status.value)
        if self._view_cache is not None:
            await self._view_cache.invalidate_job(job.user_id, str(job.id), job.status.value)
        logger.info(
            "job_transition",
            job_id=str(job.id),
            from_status=from_status.value,
            to_status=job.status.value,
        )
