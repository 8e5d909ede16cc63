"""HTTP surface: trigger syncs and read health and run history."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from pydantic import BaseModel

from . import __version__
from .config import MonitorConfig
from .logging_config import get_logger
from .models import SyncMode
from .orchestrator import SyncOrchestrator

logger = get_logger("api")

router = APIRouter()


class SyncRequest(BaseModel):
    mode: SyncMode = SyncMode.INCREMENTAL
    sources: Optional[List[str]] = None


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


@router.post("/sync")
async def trigger_sync(
    body: Optional[SyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Run a sync and return its summary once every source has finished."""
    body = body or SyncRequest()
    logger.info("Sync requested via API: mode=%s sources=%s", body.mode.value, body.sources or "all")
    summary = await orchestrator.run_sync(sources=body.sources, mode=body.mode)
    return summary.to_dict()


@router.get("/health")
async def get_health(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    summary = await asyncio.to_thread(orchestrator.health.summary)
    return summary.to_dict()


@router.get("/sync/runs")
async def list_sync_runs(
    source: Optional[str] = None,
    limit: int = Query(20, ge=1, le=500),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Most recent sync run records, newest first."""
    runs = await asyncio.to_thread(orchestrator.store.list_sync_runs, source, limit)
    return {"runs": [run.to_dict() for run in runs]}


def create_app(
    orchestrator: Optional[SyncOrchestrator] = None,
    config: Optional[MonitorConfig] = None,
) -> FastAPI:
    """Create the FastAPI application around an orchestrator."""
    if orchestrator is None:
        orchestrator = SyncOrchestrator.from_config(config or MonitorConfig())
    app = FastAPI(title="Regulatory Monitor", version=__version__)
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app
