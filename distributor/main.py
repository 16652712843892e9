"""FastAPI application: health check, status queries and control endpoints"""

import html
import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from distributor.config import config
from distributor.container import Distributor, build_distributor
from distributor.errors import AuthError, ConfigurationError, DisabledError, NotFoundError, UploadError
from distributor.utils.logger import get_logger, redact_settings

logger = get_logger(__name__)


class RetryUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    received_id: str = Field(..., alias="receivedId")
    destination: str


def _auth_page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    body = (
        f"<html><head><title>{html.escape(title)}</title></head>"
        "<body style=\"font-family: system-ui; padding: 40px; text-align: center;\">"
        f"<h1>{html.escape(title)}</h1><p>{html.escape(message)}</p><p><a href=\"/\">Return to Dashboard</a></p>"
        "</body></html>"
    )
    return HTMLResponse(content=body, status_code=status_code)


def create_app(distributor: Distributor) -> FastAPI:
    """Build the API around an explicit distributor instance"""
    app = FastAPI(
        title="Photo Distributor",
        description="Receives photos and distributes them to configured destinations",
        version="1.0.0",
    )
    app.state.distributor = distributor
    app.state.started_at = None

    @app.on_event("startup")
    async def startup_event():
        app.state.started_at = time.time()
        await distributor.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await distributor.shutdown()

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(DisabledError)
    async def disabled_handler(request: Request, exc: DisabledError):
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        return JSONResponse(status_code=502, content={"error": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        messages = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
        return JSONResponse(status_code=400, content={"error": f"Invalid settings: {messages}"})

    @app.get("/health")
    async def health_check():
        """Health check endpoint with minimal logging"""
        current_time = time.time()
        started_at: Optional[float] = app.state.started_at
        checks: Dict[str, Any] = {
            "status": "ok",
            "timestamp": current_time,
            "uptime": (current_time - started_at) if started_at else 0,
        }

        try:
            checks["database"] = await distributor.database.health_check()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            checks["database"] = False

        checks["destinations"] = {
            "enabled": len(distributor.manager.get_enabled_destinations()),
            "ready": await distributor.manager.has_ready_destinations(),
        }

        if not checks["database"]:
            checks["status"] = "degraded"
            return JSONResponse(status_code=503, content=checks)
        return checks

    @app.get("/api/status")
    async def get_status():
        return {
            "activeUploads": distributor.status.get_active_uploads(),
            "stats": distributor.status.get_upload_stats(),
            "destinations": await distributor.status.get_destinations(),
            "pendingFiles": distributor.pipeline.pending,
        }

    @app.get("/api/history")
    async def get_history(limit: int = Query(100, ge=1, le=1000)):
        return distributor.status.get_combined_history(limit)

    @app.get("/api/destinations")
    async def get_destinations():
        return await distributor.status.get_destinations()

    @app.get("/api/settings")
    async def get_settings():
        settings = await distributor.settings_service.reload()
        return redact_settings(settings.to_document())

    @app.patch("/api/settings")
    async def patch_settings(updates: Dict[str, Any] = Body(...)):
        settings = await distributor.control.update_settings(updates)
        return redact_settings(settings.to_document())

    @app.get("/api/auth/google/status")
    async def google_auth_status():
        return await distributor.google_auth.get_status()

    @app.get("/api/auth/google/{service}/start")
    async def google_auth_start(service: str, request: Request):
        redirect_uri = str(request.url_for("google_auth_callback"))
        return {"authUrl": await distributor.google_auth.start(service, redirect_uri)}

    @app.get("/api/auth/google/callback", name="google_auth_callback")
    async def google_auth_callback(state: str = "", code: Optional[str] = None, error: Optional[str] = None):
        """Landing page of the consent redirect"""
        if error:
            return _auth_page("Authentication Failed", f"Error: {error}", status_code=400)
        if not code:
            return _auth_page("Authentication Failed", "No authorization code received", status_code=400)

        try:
            service = await distributor.google_auth.complete(state, code)
        except AuthError as e:
            return _auth_page("Token Exchange Failed", str(e), status_code=400)

        # Bring the destination up with its new token
        await distributor.control.setup_destinations()
        return _auth_page("Authentication Successful", f"Google {service.title()} has been connected.")

    @app.post("/api/retry-upload")
    async def retry_upload(request: RetryUploadRequest):
        outcome = await distributor.control.retry_upload(request.received_id, request.destination)
        if not outcome["success"]:
            raise UploadError(outcome.get("error") or "Upload failed")
        return outcome

    @app.post("/api/retry-all-failed")
    async def retry_all_failed():
        return await distributor.control.retry_all_eligible_failures()

    return app


# Global application instance
app = create_app(build_distributor(config))


if __name__ == "__main__":
    uvicorn.run(app, host=config.web_host, port=config.web_port)
