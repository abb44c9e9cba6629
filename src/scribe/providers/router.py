"""ProviderRouter -- model id to backend dispatch, credentials, and error mapping.

Dispatch is by model id prefix against a static registry; an unrecognized
id goes to the baseline provider (Gemini). The router also decides whose
key pays for a request:

- the user's own key when they have one and either prefer it or are on
  the free tier (not billed against credits);
- otherwise the system key (billed at the model's cost per minute);
- free-tier users without their own key cannot use cloud providers.

Upstream exceptions are mapped to RateLimitError (with reset time and
upgrade hint) or ProviderError (raw message kept for diagnostics only).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import litellm
import structlog

from src.scribe.audio.storage import AudioStore
from src.scribe.billing.repository import BillingRepository
from src.scribe.billing.schemas import UserAccount, UserTier
from src.scribe.config import Settings, get_settings
from src.scribe.core.monitoring import track_provider_call
from src.scribe.errors import PreconditionError, ProviderError, RateLimitError, ScribeError
from src.scribe.providers.base import (
    ProcessingResult,
    ProgressSink,
    ProviderDescriptor,
    ProviderStatus,
    RouteDecision,
    TranscriptionBackend,
)

logger = structlog.get_logger(__name__)


# ── Registry ─────────────────────────────────────────────────────────────────

BASELINE_PROVIDER = "gemini"

# (provider id, display name, description) in display order
PROVIDERS: tuple[tuple[str, str, str], ...] = (
    ("gemini", "Google Gemini", "Multimodal transcription and analysis in one pass"),
    ("groq", "Groq", "Fast Whisper transcription with Llama analysis"),
    ("openai", "OpenAI", "Whisper transcription with GPT analysis"),
    ("local", "On-device", "Whisper runs on this server; only text leaves it"),
)

# Checked in order; first match wins.
MODEL_PREFIXES: tuple[tuple[str, str], ...] = (
    ("gemini", "gemini"),
    ("whisper-large", "groq"),
    ("whisper-1", "openai"),
    ("gpt", "openai"),
    ("openai", "openai"),
    ("groq", "groq"),
    ("grok", "groq"),
    ("llama", "groq"),
    ("local", "local"),
    ("on-device", "local"),
)

PROVIDER_COSTS: dict[str, int] = {"gemini": 1, "groq": 1, "openai": 3, "local": 0}

MODEL_COSTS: dict[str, int] = {
    "gemini-1.5-flash": 1,
    "gemini-1.5-pro": 2,
    "grok-2": 2,
    "gpt-4o": 3,
}

NO_KEY_MESSAGE = (
    "No API key found. Please add your own API key in Settings or upgrade to Pro."
)


def provider_for_model(model_id: str) -> str:
    """Map a model id to a provider id by prefix, defaulting to the baseline."""
    normalized = model_id.strip().lower()
    for prefix, provider_id in MODEL_PREFIXES:
        if normalized.startswith(prefix):
            return provider_id
    return BASELINE_PROVIDER


def cost_per_minute(model_id: str) -> int:
    """Credits per audio minute for a model id."""
    normalized = model_id.strip().lower()
    if normalized in MODEL_COSTS:
        return MODEL_COSTS[normalized]
    return PROVIDER_COSTS[provider_for_model(normalized)]


def _retry_after(exc: Exception) -> int | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _is_rate_limited(exc: Exception) -> bool:
    return isinstance(exc, litellm.RateLimitError) or getattr(exc, "status_code", None) == 429


# ── Router ───────────────────────────────────────────────────────────────────


class ProviderRouter:
    """Dispatch processing requests to the right backend.

    Args:
        backends: Provider id -> backend. Must contain the baseline provider.
        accounts: BillingRepository for tier and stored keys.
        store: AudioStore resolving audio refs to files.
        settings: Optional settings override.
    """

    def __init__(
        self,
        backends: dict[str, TranscriptionBackend],
        accounts: BillingRepository,
        store: AudioStore,
        settings: Settings | None = None,
    ) -> None:
        if BASELINE_PROVIDER not in backends:
            raise ValueError(f"baseline provider '{BASELINE_PROVIDER}' must be registered")
        self._backends = backends
        self._accounts = accounts
        self._store = store
        self._settings = settings or get_settings()

    def backend_for(self, model_id: str) -> TranscriptionBackend:
        provider_id = provider_for_model(model_id)
        return self._backends.get(provider_id) or self._backends[BASELINE_PROVIDER]

    async def resolve(
        self,
        user_id: str,
        model_id: str,
        account: UserAccount | None = None,
    ) -> RouteDecision:
        """Pick backend and credentials for a request.

        Raises:
            PreconditionError: no usable key for the provider.
        """
        account = account or await self._accounts.get_account(user_id)
        provider_id = self.backend_for(model_id).provider_id

        if provider_id == "local":
            # Transcription is free; the insight step uses a Gemini key if any.
            return RouteDecision(
                provider_id=provider_id,
                model_id=model_id,
                api_key=account.key_for("gemini") or self._settings.system_key_for("gemini") or None,
                billable=False,
                cost_per_minute=0,
            )

        user_key = account.key_for(provider_id)
        system_key = self._settings.system_key_for(provider_id)

        if user_key and (account.prefer_own_key or account.tier == UserTier.FREE):
            return RouteDecision(
                provider_id=provider_id,
                model_id=model_id,
                api_key=user_key,
                billable=False,
                cost_per_minute=0,
            )

        if account.tier == UserTier.FREE:
            raise PreconditionError(NO_KEY_MESSAGE)

        if system_key:
            return RouteDecision(
                provider_id=provider_id,
                model_id=model_id,
                api_key=system_key,
                billable=True,
                cost_per_minute=cost_per_minute(model_id),
            )

        if user_key:
            return RouteDecision(
                provider_id=provider_id,
                model_id=model_id,
                api_key=user_key,
                billable=False,
                cost_per_minute=0,
            )

        raise PreconditionError(f"No connected provider for '{provider_id}'")

    async def process(
        self,
        user_id: str,
        audio_ref: str,
        model_id: str,
        *,
        decision: RouteDecision | None = None,
        tier: UserTier = UserTier.FREE,
        on_progress: ProgressSink | None = None,
        job_id: str | None = None,
    ) -> ProcessingResult:
        """Run a recording through the backend for ``model_id``.

        Raises:
            RateLimitError: upstream throttled the request.
            ProviderError: any other upstream failure.
            PreconditionError: missing credentials or audio.
        """
        if decision is None:
            account = await self._accounts.get_account(user_id)
            tier = account.tier
            decision = await self.resolve(user_id, model_id, account)

        audio_path: Path = self._store.open_path(audio_ref)
        backend = self._backends.get(decision.provider_id) or self._backends[BASELINE_PROVIDER]

        async with track_provider_call(decision.provider_id, model_id) as tracker:
            try:
                result = await backend.process(
                    audio_path,
                    model_id,
                    decision.api_key,
                    on_progress=on_progress,
                    job_id=job_id,
                )
            except ScribeError:
                raise
            except Exception as exc:
                if _is_rate_limited(exc):
                    tracker["status"] = "rate_limited"
                    raise self._rate_limit_error(decision.provider_id, exc, tier) from exc
                logger.warning(
                    "provider_call_failed",
                    provider=decision.provider_id,
                    model=model_id,
                    user_id=user_id,
                    error=str(exc),
                )
                raise ProviderError(decision.provider_id, str(exc)) from exc

        logger.info(
            "provider_call_succeeded",
            provider=decision.provider_id,
            model=result.model,
            user_id=user_id,
            billable=decision.billable,
        )
        return result

    def cancel(self, job_id: str) -> bool:
        """Best-effort cancel of an in-flight on-device request."""
        cancelled = False
        for backend in self._backends.values():
            cancel = getattr(backend, "cancel", None)
            if callable(cancel):
                cancelled = bool(cancel(job_id)) or cancelled
        return cancelled

    async def provider_status(self, user_id: str, balance: int | None = None) -> ProviderStatus:
        """Ordered provider list with connection state and prices."""
        account = await self._accounts.get_account(user_id)
        descriptors: list[ProviderDescriptor] = []
        for provider_id, name, description in PROVIDERS:
            if provider_id not in self._backends:
                continue
            if provider_id == "local":
                connected = True
            elif account.key_for(provider_id):
                connected = True
            else:
                connected = account.tier == UserTier.PRO and bool(
                    self._settings.system_key_for(provider_id)
                )
            descriptors.append(
                ProviderDescriptor(
                    id=provider_id,
                    name=name,
                    connected=connected,
                    cost_per_minute=PROVIDER_COSTS[provider_id],
                    description=description,
                )
            )
        return ProviderStatus(
            providers=descriptors,
            default_provider=account.selected_provider or BASELINE_PROVIDER,
            tier=account.tier.value,
            balance=balance,
        )

    @staticmethod
    def _rate_limit_error(provider_id: str, exc: Exception, tier: UserTier) -> RateLimitError:
        wait_seconds = _retry_after(exc) or 60
        reset_at = datetime.now(timezone.utc) + timedelta(seconds=wait_seconds)
        logger.info("provider_rate_limited", provider=provider_id, reset_at=reset_at.isoformat())
        return RateLimitError(
            f"Rate limit reached for {provider_id}. Please try again later.",
            reset_at=reset_at,
            upgrade_eligible=tier == UserTier.FREE,
            provider=provider_id,
        )
