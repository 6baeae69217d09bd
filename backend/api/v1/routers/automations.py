"""
Automations Router — direct-trigger endpoints.

Every automation can be run here without the change feed, which is how
reactions happen at all when the feed is degraded.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_engine
from automation.engine import AutomationEngine
from automation.errors import UnknownAutomation

router = APIRouter(prefix="/api/v1/automations", tags=["automations"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ReactionResponse(BaseModel):
    kind: str
    entity_id: UUID
    status: str
    effects: int
    error: str | None = None


class SweepResponse(BaseModel):
    sweep_id: str
    overdue_count: int
    applied: int
    noop: int
    skipped: int
    failed: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(engine: AutomationEngine = Depends(get_engine)):
    """Run one overdue sweep now."""
    return await engine.run_sweep()


@router.post("/{kind}/{entity_id}", response_model=ReactionResponse)
async def trigger_automation(kind: str, entity_id: UUID, engine: AutomationEngine = Depends(get_engine)):
    try:
        result = await engine.trigger(kind, entity_id)
    except UnknownAutomation as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    return ReactionResponse(
        kind=result.kind.value,
        entity_id=result.entity_id,
        status=result.status,
        effects=result.effects,
        error=result.error,
    )
