"""FastAPI control surface for dictation and model provisioning.

WHY: The UI layer lives in a separate front-end process. It needs a small
request surface to trigger the operations (status, download, start, stop)
and a way to pick up the events those operations produce.

HOW: Module-level singletons (event bus, dictation manager, downloader)
are shared by all requests. Operations answer immediately; their outcome
arrives as events, which clients poll from GET /events?after=<seq>. The
lifespan hook stops any running dictation on shutdown.

RULES:
- DictationError maps to HTTP 400 with the error message as detail
- Recoverable conditions never produce an HTTP error; they are events
- GET /audio/models/status also emits audio.models.status on the bus
- Endpoints that touch the filesystem or wait on the sidecar are plain def
  so FastAPI runs them in its threadpool
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.concurrency import run_in_threadpool

from localdesk_audio import __version__, config
from localdesk_audio.assets.downloader import AssetDownloader
from localdesk_audio.assets.status import publish_status
from localdesk_audio.dictation.supervisor import DictationManager
from localdesk_audio.errors import DictationError
from localdesk_audio.events import EventBus
from localdesk_audio.server.models import (
    DictationRequest,
    DownloadStartedResponse,
    ErrorResponse,
    EventListResponse,
    HealthResponse,
    StatusResponse,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App and shared state
# ---------------------------------------------------------------------------

event_bus = EventBus()
dictation_manager = DictationManager(event_bus)
asset_downloader = AssetDownloader(event_bus)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Stop any running dictation when the server shuts down."""
    yield
    await run_in_threadpool(dictation_manager.shutdown)


app = FastAPI(
    lifespan=lifespan,
    title="LocalDesk Audio API",
    description=(
        "Control surface for live dictation through the asr-sidecar and for "
        "installing the speech models it needs. Operations return at once; "
        "progress and results are delivered as events via GET /events."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Endpoints: models
# ---------------------------------------------------------------------------


@app.get(
    "/audio/models/status",
    response_model=StatusResponse,
    tags=["models"],
    summary="Get model readiness",
)
def get_models_status() -> StatusResponse:
    status = publish_status(event_bus)
    return StatusResponse(status=status.to_dict())


@app.post(
    "/audio/models/download",
    response_model=DownloadStartedResponse,
    status_code=202,
    tags=["models"],
    summary="Start a model download campaign",
    description=(
        "Starts downloading missing or size-mismatched model files in the "
        "background. Watch audio.models.download.* events for progress."
    ),
)
async def start_models_download() -> DownloadStartedResponse:
    return DownloadStartedResponse(accepted=asset_downloader.start())


# ---------------------------------------------------------------------------
# Endpoints: dictation
# ---------------------------------------------------------------------------


@app.post(
    "/audio/dictation/start",
    status_code=204,
    tags=["dictation"],
    summary="Start dictation",
    responses={400: {"model": ErrorResponse, "description": "Request rejected"}},
)
def start_dictation(body: DictationRequest) -> Response:
    try:
        dictation_manager.start(body.dictation_id)
    except DictationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post(
    "/audio/dictation/stop",
    status_code=204,
    tags=["dictation"],
    summary="Stop dictation",
    description="Blocks until the sidecar has exited. Stopping twice is not an error.",
    responses={400: {"model": ErrorResponse, "description": "Request rejected"}},
)
def stop_dictation(body: DictationRequest) -> Response:
    try:
        dictation_manager.stop(body.dictation_id)
    except DictationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Endpoints: events and health
# ---------------------------------------------------------------------------


@app.get(
    "/events",
    response_model=EventListResponse,
    tags=["events"],
    summary="Poll buffered events",
)
async def list_events(
    after: int = Query(default=0, ge=0, description="Return events with seq greater than this."),
) -> EventListResponse:
    return EventListResponse(events=event_bus.since(after), last_seq=event_bus.last_seq)


@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)


def run_api(host: str = config.API_HOST, port: int = config.API_PORT) -> None:
    """Run the API with uvicorn (blocking)."""
    import uvicorn

    logger.info("Starting LocalDesk Audio API on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)
