from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    supervisor = request.app.state.supervisor
    snapshot = await supervisor.health()
    return snapshot.to_payload()
