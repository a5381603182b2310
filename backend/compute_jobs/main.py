from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .config import Settings, settings
from .gateway import NotificationGateway, relay_from_broker
from .models import ComputeRequest, JobCreatedData, JobEnvelope, error_response, success_response
from .store import JobStore, StoreError

logger = logging.getLogger(__name__)

router = APIRouter()

def _store(request: Request) -> JobStore:
    return request.app.state.store

@router.post("/api/jobs", status_code=201)
async def submit_job(body: ComputeRequest, request: Request):
    job = await _store(request).create_job(body.numberA, body.numberB)
    return success_response(JobCreatedData(id=job.id).model_dump())

@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, request: Request):
    job = await _store(request).find_job_by_id(job_id)
    if job is None:
        return JSONResponse(status_code=404, content=error_response("Job not found", 404))
    # Pydantic's JSON encoder renders non-finite results as null
    return Response(content=JobEnvelope(data=job).model_dump_json(), media_type="application/json")

# Root path kept for workers configured with a bare ws://host:port URL
@router.websocket("/ws")
@router.websocket("/")
async def notifications(websocket: WebSocket):
    await websocket.app.state.gateway.handle_connection(websocket)

def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"

def create_app(app_settings: Optional[Settings] = None, store: Optional[JobStore] = None,
               gateway: Optional[NotificationGateway] = None, relay_broker: bool = True) -> FastAPI:
    cfg = app_settings or settings
    job_store = store or JobStore(cfg.DATABASE_URL)
    notification_gateway = gateway or NotificationGateway()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting API server...")
        await asyncio.to_thread(job_store.init_schema)

        relay_task = None
        if relay_broker:
            relay_task = asyncio.create_task(relay_from_broker(
                notification_gateway,
                cfg.REDIS_URL,
                cfg.BROKER_CHANNEL,
                max_retries=cfg.BROKER_MAX_RETRIES,
                retry_step=cfg.BROKER_RETRY_STEP_S,
                retry_max_delay=cfg.BROKER_RETRY_MAX_DELAY_S,
            ))
        logger.info("WebSocket gateway ready on /ws and /")

        yield

        logger.info("Shutting down API server")
        if relay_task is not None:
            relay_task.cancel()
            try:
                await relay_task
            except asyncio.CancelledError:
                pass
        await notification_gateway.close()

    app = FastAPI(title="Compute Jobs API", lifespan=lifespan)
    app.state.store = job_store
    app.state.gateway = notification_gateway

    origins = [o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=error_response(_validation_message(exc), 400))

    @app.exception_handler(StoreError)
    async def _store_failure(request: Request, exc: StoreError):
        return JSONResponse(status_code=500, content=error_response(str(exc), 500))

    app.include_router(router)
    return app

app = create_app()

def serve(app_settings: Optional[Settings] = None) -> None:
    """Run the API and notification gateway with uvicorn on API_HOST:API_PORT."""
    cfg = app_settings or settings
    logging.basicConfig(
        level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logger.info(f"Starting API server on {cfg.API_HOST}:{cfg.API_PORT}")
    uvicorn.run(app if app_settings is None else create_app(cfg), host=cfg.API_HOST, port=cfg.API_PORT)

if __name__ == "__main__":
    serve()
