from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ubos.apps.api.response import DataEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=DataEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; no database or store round trip.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)
