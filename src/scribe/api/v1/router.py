"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.scribe.api.v1 import health, jobs, providers

router = APIRouter()

router.include_router(health.router)
router.include_router(jobs.router, prefix="/api/v1")
router.include_router(providers.router, prefix="/api/v1")
