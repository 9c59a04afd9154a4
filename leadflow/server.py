"""FastAPI app factory.

Endpoints are thin wrappers over the runtime: the sweeper, the event gateway
and the run repository.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from . import __version__
from .constants import PROVIDER_EVENTS_TOPIC
from .contracts import EventResult, ProviderEvent, RunOutcome
from .errors import ContactNotFound, StorageError, TemplateError
from .persistence import WorkflowRun
from .runtime import Runtime, build_runtime
from .webhooks import parse_twilio_webhook, parse_vapi_webhook

logger = logging.getLogger(__name__)

TWIML_EMPTY = "<Response></Response>"


class SweepRequest(BaseModel):
    batch_size: Optional[int] = None


class SweepResponse(BaseModel):
    processed: int
    results: list[RunOutcome]


class StartRunRequest(BaseModel):
    workflow_id: str
    contact_id: str
    context: Dict[str, Any] = {}


class StartRunResponse(BaseModel):
    created: bool
    run: WorkflowRun


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    runtime = runtime or build_runtime()

    app = FastAPI(
        title="Leadflow",
        version=__version__,
        description="Lead-nurturing workflow engine: sweeps, provider webhooks and runs.",
    )
    app.state.runtime = runtime

    @app.exception_handler(StorageError)
    async def storage_error(_request: Request, exc: StorageError) -> JSONResponse:
        logger.error(f"Run store error: {exc}")
        return JSONResponse(status_code=503, content={"detail": "run store unavailable"})

    @app.exception_handler(TemplateError)
    async def template_error(_request: Request, exc: TemplateError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ContactNotFound)
    async def contact_not_found(_request: Request, exc: ContactNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    async def dispatch_event(event: ProviderEvent) -> EventResult:
        if runtime.config.transport.publish_events:
            await runtime.transport.publish(PROVIDER_EVENTS_TOPIC, event)
            return EventResult(status="ignored", detail="queued")
        return await runtime.gateway.on_provider_event(event)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": "ok", "version": __version__}
        if runtime.config.transport.publish_events:
            body["queued_events"] = await runtime.transport.depth(PROVIDER_EVENTS_TOPIC)
        return body

    @app.post("/sweep", response_model=SweepResponse)
    async def sweep(payload: Optional[SweepRequest] = None) -> SweepResponse:
        results = await runtime.sweeper.sweep(payload.batch_size if payload else None)
        return SweepResponse(processed=len(results), results=results)

    @app.post("/events", response_model=EventResult)
    async def events(event: ProviderEvent) -> EventResult:
        return await dispatch_event(event)

    @app.post("/webhooks/vapi", response_model=EventResult)
    async def vapi_webhook(request: Request) -> EventResult:
        body = await request.json()
        event = parse_vapi_webhook(body if isinstance(body, dict) else {})
        if event is None:
            return EventResult(status="ignored", detail="not a call-ended message")
        return await dispatch_event(event)

    @app.post("/webhooks/twilio")
    async def twilio_webhook(request: Request) -> Response:
        form = await request.form()
        event = parse_twilio_webhook(dict(form))
        if event is None:
            raise HTTPException(status_code=400, detail="Missing From or Body")
        result = await dispatch_event(event)
        logger.info(f"Twilio webhook {event.event_type}: {result.status} {result.run_ids}")
        return Response(content=TWIML_EMPTY, media_type="text/xml")

    @app.post("/runs", response_model=StartRunResponse)
    async def start_run(payload: StartRunRequest) -> StartRunResponse:
        run, created = await runtime.start_run(
            payload.workflow_id, payload.contact_id, payload.context
        )
        return StartRunResponse(created=created, run=run)

    @app.get("/runs/{run_id}", response_model=WorkflowRun)
    async def get_run(run_id: str) -> WorkflowRun:
        run = await runtime.repository.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
        return run

    return app
