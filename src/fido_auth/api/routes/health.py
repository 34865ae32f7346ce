"""Liveness endpoint.

- GET /health - {"status": "ok"} while the process is serving

Routes mounted at: /
"""

from __future__ import annotations

__all__ = ["router"]

from fastapi import APIRouter

from fido_auth.api.schemas import HealthResponse

router = APIRouter()


@router.get("/health")
async def health() -> HealthResponse:
    return HealthResponse(status="ok")
