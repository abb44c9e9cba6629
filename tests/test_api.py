"""Integration tests for the jobs, providers and credits endpoints.

Builds a minimal FastAPI app around the v1 routers, puts the in-memory
orchestrator, ledger and router from conftest on app.state, and overrides
the auth dependency.
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.scribe.api.deps import CurrentUser, get_current_user
from src.scribe.audio.preprocessor import CompressedAudio
from src.scribe.billing.schemas import UserAccount
from src.scribe.core.security import create_access_token
from src.scribe.errors import CompressionError
from src.scribe.jobs.schemas import JobStatus

from conftest import OTHER_USER_ID, USER_ID

MODEL = "gemini-1.5-flash"


class FakePreprocessor:
    """Stores the upload as is, or fails like a missing ffmpeg would."""

    def __init__(self, store, fail: bool = False) -> None:
        self._store = store
        self.fail = fail
        self.calls = 0
        self.probed_duration = 90.0

    async def probe_duration(self, source) -> float:
        return self.probed_duration

    async def compress(self, source, options=None, on_progress=None) -> CompressedAudio:
        self.calls += 1
        if self.fail:
            raise CompressionError("ffmpeg not found on PATH")
        size = source.stat().st_size
        audio_ref = await self._store.put(source)
        return CompressedAudio(
            audio_ref=audio_ref,
            channels=1,
            sample_rate=options.sample_rate,
            bitrate_kbps=float(options.target_bitrate_kbps),
            duration_seconds=300.0,
            size_bytes=size,
        )


def _make_mock_app():
    """Create a minimal FastAPI app with the v1 job and provider routers."""
    from fastapi import FastAPI

    from src.scribe.api.v1 import jobs, providers

    app = FastAPI()
    app.include_router(jobs.router, prefix="/api/v1")
    app.include_router(providers.router, prefix="/api/v1")
    return app


async def _mock_get_current_user() -> CurrentUser:
    return CurrentUser(user_id=USER_ID)


@pytest_asyncio.fixture
async def app(orchestrator, ledger, provider_router, audio_store):
    app = _make_mock_app()
    app.dependency_overrides[get_current_user] = _mock_get_current_user
    app.state.orchestrator = orchestrator
    app.state.credit_ledger = ledger
    app.state.provider_router = provider_router
    app.state.audio_store = audio_store
    app.state.audio_preprocessor = FakePreprocessor(audio_store)
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _job(orchestrator, audio_ref, user_id=USER_ID):
    return await orchestrator.create_job(user_id, audio_ref, 600.0, "Weekly sync")


# ── Upload ───────────────────────────────────────────────────────────────────


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_creates_pending_job(self, client, app, audio_store):
        response = await client.post(
            "/api/v1/jobs",
            files={"file": ("standup.wav", b"RIFF" + b"\x00" * 1024, "audio/wav")},
            data={"title": "Standup"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["title"] == "Standup"
        assert body["duration_seconds"] == 300.0
        assert body["has_audio"] is True
        assert app.state.audio_preprocessor.calls == 1

    @pytest.mark.asyncio
    async def test_compression_failure_is_422(self, client, app):
        app.state.audio_preprocessor.fail = True

        response = await client.post(
            "/api/v1/jobs",
            files={"file": ("standup.wav", b"RIFF" + b"\x00" * 1024, "audio/wav")},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "compression_failed"

    @pytest.mark.asyncio
    async def test_compression_failure_can_keep_original(self, client, app, audio_store):
        app.state.audio_preprocessor.fail = True

        response = await client.post(
            "/api/v1/jobs",
            files={"file": ("standup.mp3", b"ID3" + b"\x00" * 1024, "audio/mpeg")},
            data={"allow_uncompressed": "true"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["duration_seconds"] == 90.0
        assert body["has_audio"] is True
        assert len(list(audio_store.root.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_uncompressed_duration_ignores_client_value(self, client, app):
        app.state.audio_preprocessor.fail = True

        response = await client.post(
            "/api/v1/jobs",
            files={"file": ("standup.mp3", b"ID3" + b"\x00" * 1024, "audio/mpeg")},
            data={"allow_uncompressed": "true", "duration_seconds": "1"},
        )

        assert response.status_code == 201
        assert response.json()["duration_seconds"] == 90.0

    @pytest.mark.asyncio
    async def test_unprobeable_original_cannot_be_billed(self, client, app, ledger, pro_user):
        app.state.audio_preprocessor.fail = True
        app.state.audio_preprocessor.probed_duration = 0.0

        created = await client.post(
            "/api/v1/jobs",
            files={"file": ("standup.mp3", b"ID3" + b"\x00" * 1024, "audio/mpeg")},
            data={"allow_uncompressed": "true"},
        )
        response = await client.post(
            f"/api/v1/jobs/{created.json()['id']}/process",
            json={"model_id": "gpt-4o"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "precondition_failed"
        assert await ledger.balance(USER_ID) == 1200


# ── Jobs ─────────────────────────────────────────────────────────────────────


class TestJobEndpoints:
    @pytest.mark.asyncio
    async def test_get_job(self, client, orchestrator, stored_audio):
        job = await _job(orchestrator, stored_audio)

        response = await client.get(f"/api/v1/jobs/{job.id}")

        assert response.status_code == 200
        assert response.json()["id"] == str(job.id)
        assert response.json()["progress"] == 0

    @pytest.mark.asyncio
    async def test_foreign_and_unknown_jobs_are_404(self, client, orchestrator, stored_audio):
        foreign = await _job(orchestrator, stored_audio, user_id=OTHER_USER_ID)

        for job_id in (foreign.id, uuid.uuid4(), "not-a-uuid"):
            response = await client.get(f"/api/v1/jobs/{job_id}")
            assert response.status_code == 404
            assert response.json()["detail"] == "Job not found"

    @pytest.mark.asyncio
    async def test_process_returns_outcome(self, client, orchestrator, stored_audio, pro_user):
        job = await _job(orchestrator, stored_audio)

        response = await client.post(f"/api/v1/jobs/{job.id}/process", json={"model_id": MODEL})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "completed"
        assert body["credits_charged"] == 10
        assert body["summary"] == f"Summary by {MODEL}"

    @pytest.mark.asyncio
    async def test_business_failure_is_200_with_metadata(
        self, client, orchestrator, billing_repo, stored_audio
    ):
        billing_repo.set_account(UserAccount(user_id=USER_ID))
        job = await _job(orchestrator, stored_audio)

        response = await client.post(f"/api/v1/jobs/{job.id}/process", json={"model_id": MODEL})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "precondition_failed"
        assert body["status"] == "pending"

    @pytest.mark.asyncio
    async def test_process_foreign_job_is_404(self, client, orchestrator, stored_audio):
        foreign = await _job(orchestrator, stored_audio, user_id=OTHER_USER_ID)

        response = await client.post(
            f"/api/v1/jobs/{foreign.id}/process", json={"model_id": MODEL}
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    @pytest.mark.asyncio
    async def test_background_process_then_poll(
        self, client, orchestrator, stored_audio, pro_user
    ):
        job = await _job(orchestrator, stored_audio)

        response = await client.post(
            f"/api/v1/jobs/{job.id}/process", json={"model_id": MODEL, "background": True}
        )

        body = response.json()
        assert body["success"] is True
        assert body["status"] == "processing"
        assert body["credits_charged"] == 10

        polled = await client.get(f"/api/v1/jobs/{job.id}")
        assert polled.json()["status"] == "completed"
        assert polled.json()["progress"] == 100

    @pytest.mark.asyncio
    async def test_background_rejection_is_immediate(
        self, client, orchestrator, stored_audio
    ):
        job = await _job(orchestrator, stored_audio)

        response = await client.post(
            f"/api/v1/jobs/{job.id}/process", json={"model_id": MODEL, "background": True}
        )

        body = response.json()
        assert body["success"] is False
        assert body["error"]

    @pytest.mark.asyncio
    async def test_reprocess_completed_job(self, client, orchestrator, stored_audio, pro_user):
        job = await _job(orchestrator, stored_audio)
        await orchestrator.submit(USER_ID, job.id, MODEL)

        response = await client.post(
            f"/api/v1/jobs/{job.id}/reprocess", json={"model_id": "gemini-1.5-pro"}
        )

        body = response.json()
        assert body["success"] is True
        assert body["credits_charged"] == 20
        assert body["summary"] == "Summary by gemini-1.5-pro"

    @pytest.mark.asyncio
    async def test_empty_model_id_is_rejected(self, client, orchestrator, stored_audio):
        job = await _job(orchestrator, stored_audio)

        response = await client.post(f"/api/v1/jobs/{job.id}/process", json={"model_id": ""})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel(self, client, orchestrator, job_repo, stored_audio):
        job = await _job(orchestrator, stored_audio)
        await job_repo.transition(job.id, [JobStatus.PENDING], JobStatus.PROCESSING)

        response = await client.post(f"/api/v1/jobs/{job.id}/cancel")

        assert response.status_code == 200
        assert response.json() == {"success": True, "error": None, "error_code": None}
        assert (await job_repo.get(job.id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_pending_job_fails(self, client, orchestrator, stored_audio):
        job = await _job(orchestrator, stored_audio)

        response = await client.post(f"/api/v1/jobs/{job.id}/cancel")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error_code"] == "precondition_failed"

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_is_404(self, client):
        response = await client.post(f"/api/v1/jobs/{uuid.uuid4()}/cancel")
        assert response.status_code == 404


# ── Providers and Credits ────────────────────────────────────────────────────


class TestProviderEndpoints:
    @pytest.mark.asyncio
    async def test_providers_with_balance(self, client, pro_user):
        response = await client.get("/api/v1/providers")

        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "pro"
        assert body["balance"] == 1200
        assert [p["id"] for p in body["providers"]] == ["gemini", "groq", "openai", "local"]

    @pytest.mark.asyncio
    async def test_credit_summary(self, client, pro_user):
        response = await client.get("/api/v1/credits")

        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 1200
        assert body["recent_entries"][0]["amount"] == 1200

    @pytest.mark.asyncio
    async def test_list_packs(self, client):
        response = await client.get("/api/v1/credits/packs")

        assert response.status_code == 200
        assert {p["id"] for p in response.json()} == {"starter", "standard", "bulk"}

    @pytest.mark.asyncio
    async def test_purchase(self, client, ledger):
        response = await client.post("/api/v1/credits/purchase", json={"pack_id": "starter"})

        assert response.status_code == 201
        assert response.json()["amount"] == 100
        assert await ledger.balance(USER_ID) == 100

    @pytest.mark.asyncio
    async def test_purchase_unknown_pack_is_400(self, client):
        response = await client.post("/api/v1/credits/purchase", json={"pack_id": "mega"})

        assert response.status_code == 400
        assert "mega" in response.json()["detail"]


# ── Wiring ───────────────────────────────────────────────────────────────────


class TestWiring:
    @pytest.mark.asyncio
    async def test_orchestrator_not_initialized_returns_503(self):
        app = _make_mock_app()
        app.dependency_overrides[get_current_user] = _mock_get_current_user
        app.state.orchestrator = None

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get(f"/api/v1/jobs/{uuid.uuid4()}")

        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_ledger_not_initialized_returns_503(self):
        app = _make_mock_app()
        app.dependency_overrides[get_current_user] = _mock_get_current_user
        app.state.credit_ledger = None

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/credits")

        assert response.status_code == 503


class TestAuthentication:
    @pytest_asyncio.fixture
    async def real_auth_client(self, orchestrator, ledger, provider_router, audio_store):
        app = _make_mock_app()
        app.state.orchestrator = orchestrator
        app.state.credit_ledger = ledger
        app.state.provider_router = provider_router
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, real_auth_client):
        response = await real_auth_client.get("/api/v1/credits")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_is_401(self, real_auth_client):
        response = await real_auth_client.get(
            "/api/v1/credits", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token_is_401(self, real_auth_client):
        token = create_access_token(USER_ID, expires_delta=timedelta(seconds=-1))
        response = await real_auth_client.get(
            "/api/v1/credits", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_token_identifies_caller(
        self, real_auth_client, orchestrator, stored_audio
    ):
        job = await _job(orchestrator, stored_audio)
        token = create_access_token(USER_ID)

        response = await real_auth_client.get(
            f"/api/v1/jobs/{job.id}", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 200
        other = create_access_token(OTHER_USER_ID)
        response = await real_auth_client.get(
            f"/api/v1/jobs/{job.id}", headers={"Authorization": f"Bearer {other}"}
        )
        assert response.status_code == 404
