"""Liveness and build information endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from ntnsync.version import BUILD_TIME, COMMIT, VERSION

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


class VersionResponse(BaseModel):
    version: str
    commit: str
    build_time: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check for monitoring and load balancers."""
    return HealthResponse(status="ok")


@router.get("/api/version", response_model=VersionResponse)
async def get_version() -> VersionResponse:
    return VersionResponse(version=VERSION, commit=COMMIT, build_time=BUILD_TIME)
