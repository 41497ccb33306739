"""FastAPI service for launching market deployments and streaming their progress."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Literal

import duckdb
import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from jobs.config import DeploymentSettings, load_settings
from jobs.create_market import build_orchestrator
from pipelines.deploy.orchestrator import DeploymentOrchestrator, Pipeline
from pipelines.discovery import CreationStep, derive_step
from pipelines.economics import compute_bond_split
from pipelines.errors import InvalidBondTerms
from pipelines.model import MarketDraft, ProgressEvent
from pipelines.progress import ProgressChannel
from pipelines.sources.deployment_gateway import HttpDeploymentGateway
from storage.db import connect, fetch_deployed_markets

DEFAULT_LIMIT = 50
MAX_LIMIT = 500
load_dotenv()


class CreatePipelineRequest(BaseModel):
    draft: MarketDraft
    creator: str | None = None
    mode: Literal["sponsored", "direct"] | None = None
    bond: dict[str, str] | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    conn = connect()
    conn.close()
    app.state.channel = ProgressChannel()
    app.state.pipelines = {}
    yield
    for pipeline in app.state.pipelines.values():
        pipeline.cancel()


app = FastAPI(title="Market Creation API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(load_settings().cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


def _settings_for(mode: str | None) -> DeploymentSettings:
    settings = load_settings()
    if mode is None:
        return settings
    return replace(settings, gasless_enabled=mode == "sponsored")


def _orchestrator(request: Request, settings: DeploymentSettings) -> DeploymentOrchestrator:
    factory = getattr(request.app.state, "orchestrator_factory", None)
    if factory is not None:
        return factory(settings, request.app.state.channel)
    return build_orchestrator(settings, channel=request.app.state.channel)


def _get_pipeline(request: Request, pipeline_id: str) -> Pipeline:
    pipeline = request.app.state.pipelines.get(pipeline_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline '{pipeline_id}'")
    return pipeline


def _register(request: Request, pipeline: Pipeline, limit: int) -> None:
    """Track ``pipeline``, dropping the oldest finished pipelines once ``limit`` is reached."""

    pipelines: dict[str, Pipeline] = request.app.state.pipelines
    finished = [pid for pid, tracked in pipelines.items() if tracked.status.is_terminal]
    while finished and len(pipelines) >= limit:
        pipelines.pop(finished.pop(0))
    pipelines[pipeline.pipeline_id] = pipeline


def _sse(event: ProgressEvent) -> str:
    return f"event: progress\ndata: {event.model_dump_json(by_alias=True)}\n\n"


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/pipelines", status_code=202)
async def create_pipeline(body: CreatePipelineRequest, request: Request) -> dict[str, Any]:
    step = derive_step(body.draft)
    if step is not CreationStep.COMPLETE:
        raise HTTPException(status_code=422, detail=f"Draft is incomplete (next step: {step.value}).")
    settings = _settings_for(body.mode)
    creator = body.creator or settings.creator_address
    if not creator:
        raise HTTPException(status_code=422, detail="A creator address is required.")
    try:
        orchestrator = _orchestrator(request, settings)
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    pipeline = orchestrator.create_pipeline(body.draft, creator=creator, bond=body.bond)
    _register(request, pipeline, settings.max_retained_pipelines)
    orchestrator.start(pipeline)
    return pipeline.to_dict()


@app.get("/pipelines/{pipeline_id}")
def get_pipeline(pipeline_id: str, request: Request) -> dict[str, Any]:
    return _get_pipeline(request, pipeline_id).to_dict()


@app.get("/pipelines/{pipeline_id}/events")
async def stream_pipeline_events(pipeline_id: str, request: Request) -> StreamingResponse:
    pipeline = _get_pipeline(request, pipeline_id)
    channel: ProgressChannel = request.app.state.channel

    async def _stream() -> AsyncIterator[str]:
        # Checked when streaming starts; a finished pipeline replays its recorded events.
        if not channel.is_open(pipeline_id):
            for event in list(pipeline.events):
                yield _sse(event)
            return
        async with channel.subscribe(pipeline_id) as subscription:
            async for event in subscription:
                yield _sse(event)

    return StreamingResponse(_stream(), media_type="text/event-stream")


@app.post("/pipelines/{pipeline_id}/cancel")
async def cancel_pipeline(pipeline_id: str, request: Request) -> dict[str, Any]:
    pipeline = _get_pipeline(request, pipeline_id)
    if not pipeline.cancel():
        raise HTTPException(status_code=409, detail=f"Pipeline is already {pipeline.status.value}.")
    return pipeline.to_dict()


@app.get("/markets")
def list_markets(
    symbol: str | None = Query(None, description="Filter by market symbol"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Maximum records returned"),
):
    where = "symbol = ?" if symbol else None
    params = [symbol] if symbol else []
    conn = connect(read_only=True)
    try:
        markets = fetch_deployed_markets(conn, where=where, params=params, limit=limit)
    except duckdb.Error as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    finally:
        conn.close()
    payload = {"count": len(markets), "items": [market.model_dump(mode="json") for market in markets]}
    return JSONResponse(content=payload)


@app.get("/bond/quote")
async def bond_quote(
    amount: int | None = Query(None, ge=0, description="Bond amount in smallest units"),
    bps: int | None = Query(None, ge=0, description="Creation penalty in basis points"),
) -> dict[str, Any]:
    if amount is None or bps is None:
        try:
            terms = await HttpDeploymentGateway().fetch_bond_terms()
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=502, detail="Bond configuration unavailable") from exc
        except InvalidBondTerms as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        amount = terms.default_bond_amount if amount is None else amount
        bps = terms.creation_penalty_bps if bps is None else bps
    try:
        split = compute_bond_split(amount, bps)
    except InvalidBondTerms as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"defaultBondAmount": str(amount), "creationPenaltyBps": bps, **split.as_dict()}
