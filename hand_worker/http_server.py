import logging
from typing import Optional
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn
from threading import Thread

from .errors import (
    AuthorizationError, ErrorCode, InvalidTransitionError, PipelineError, RecordNotFoundError,
)

logger = logging.getLogger("hand_worker")

ERROR_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.AUTHORIZATION: 401,
}


class SyncHandsRequest(BaseModel):
    streamId: Optional[str] = None
    tournamentId: Optional[str] = None
    eventId: Optional[str] = None


class AnalyzeRequest(BaseModel):
    streamId: Optional[str] = None


def create_app(service) -> FastAPI:
    """Build the worker API around an initialized WorkerService"""
    app = FastAPI(title="Hand Worker API")

    def require_token(authorization: Optional[str] = Header(default=None)) -> None:
        token = service.config.API_TOKEN
        if not token:
            return
        if authorization != f"Bearer {token}":
            raise AuthorizationError("Missing or invalid bearer token")

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error(f"{request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content={"success": False, "error": exc.message, "code": exc.code})

    @app.get("/healthz")
    async def health_check():
        """Health check endpoint"""
        try:
            service.store.get_stats()
            return {"ok": True, "status": "healthy"}
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            raise HTTPException(status_code=503, detail=f"Document store unavailable: {str(e)}")

    @app.get("/stats", dependencies=[Depends(require_token)])
    async def get_stats():
        """Get worker statistics"""
        return service.get_stats()

    @app.get("/uploads/{upload_id}/status", dependencies=[Depends(require_token)])
    def upload_status(upload_id: str):
        return service.tracker.get_status(upload_id).to_status_dict()

    @app.post("/uploads/{upload_id}/reset", dependencies=[Depends(require_token)])
    def reset_upload(upload_id: str):
        """Reset a stale upload to none (409 if it is not stale)"""
        return service.tracker.reset_stale(upload_id).to_status_dict()

    @app.post("/streams/sync-hands", dependencies=[Depends(require_token)])
    def sync_stream_hands(body: SyncHandsRequest):
        if not (body.streamId and body.tournamentId and body.eventId):
            return JSONResponse(
                status_code=400,
                content={"success": False, "error": "streamId, tournamentId and eventId are required"}
            )
        stream = service.store.get_stream(body.streamId)
        if stream is None or stream.tournament_id != body.tournamentId or stream.event_id != body.eventId:
            raise RecordNotFoundError("Stream", body.streamId)
        return service.orchestrator.sync_stream_hands(body.streamId).to_dict()

    @app.post("/streams/analyze", status_code=202, dependencies=[Depends(require_token)])
    def analyze_stream(body: AnalyzeRequest):
        if not body.streamId:
            return JSONResponse(status_code=400, content={"success": False, "error": "streamId is required"})
        job = service.orchestrator.create_job(body.streamId)
        return job.to_status_dict()

    @app.post("/streams/{stream_id}/reset", dependencies=[Depends(require_token)])
    def reset_stream(stream_id: str):
        stream = service.orchestrator.reset_stream_analysis(stream_id)
        return {"success": True, "streamId": stream.id, "pipelineStatus": stream.pipeline_status}

    @app.get("/jobs/{job_id}", dependencies=[Depends(require_token)])
    def job_status(job_id: str):
        return service.orchestrator.job_status(job_id)

    @app.post("/jobs/{job_id}/cancel", dependencies=[Depends(require_token)])
    def cancel_job(job_id: str):
        return service.orchestrator.request_cancel(job_id).to_status_dict()

    @app.post("/jobs/{job_id}/fail-stale", dependencies=[Depends(require_token)])
    def fail_stale_job(job_id: str):
        """Fail a job with no heartbeat past the stale timeout (409 otherwise)"""
        return service.orchestrator.fail_stale_job(job_id).to_status_dict()

    return app


class HealthServer:
    def __init__(self, service, port: int = 8000):
        self.service = service
        self.port = port
        self.app = create_app(service)
        self.server_thread = None
        self.running = False

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        def run_server():
            try:
                uvicorn.run(
                    self.app,
                    host="0.0.0.0",
                    port=self.port,
                    log_level="warning",  # Reduce uvicorn logging
                    access_log=False
                )
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"HTTP server started on port {self.port}")

    def stop(self):
        """Stop the HTTP server"""
        self.running = False
        logger.info("HTTP server stopped")


def start_health_server(service) -> Optional[HealthServer]:
    """Start the HTTP server if enabled"""
    if service.config.ENABLE_HTTP_SERVER:
        server = HealthServer(service, service.config.HTTP_PORT)
        server.start()
        return server
    return None
