"""
FastAPI backend for survey studio.

Serves the Document Store, participant responses and survey templates,
materializes surveys for participants, hosts editor sessions with
per-session project reconciliation, and pushes document changes over
WebSocket.
"""

import os
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse

from api.app_config import load_settings
from api.shared.logger import get_logger, setup_logging

settings = load_settings()
setup_logging(settings.log_level)
logger = get_logger(__name__)

from api.documents import router as documents_router
from api.editor import router as editor_router
from api.responses import router as responses_router
from api.survey import router as survey_router
from api.system import log_error
from api.system import router as system_router
from api.templates import router as templates_router
from realtime import project_channel, realtime_manager

# Create FastAPI app
app = FastAPI(
    title="survey studio API",
    description="Survey authoring backend: document store, editor sessions and participant surveys",
    version="2.0.0",
    default_response_class=ORJSONResponse,
)


# ============= Exception Handlers for Error Logging =============


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Log HTTP exceptions and return JSON response."""
    # Only log 5xx errors (server errors)
    if exc.status_code >= 500:
        log_error(
            endpoint=str(request.url.path),
            message=str(exc.detail),
            level="error",
            details=f"Status code: {exc.status_code}",
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Log unexpected exceptions and return JSON response."""
    log_error(
        endpoint=str(request.url.path),
        message=str(exc),
        level="critical",
        details=f"Unhandled exception: {type(exc).__name__}",
        exc=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include API routes
app.include_router(documents_router, prefix="/api", tags=["documents"])
app.include_router(responses_router, prefix="/api", tags=["responses"])
app.include_router(templates_router, prefix="/api", tags=["templates"])
app.include_router(survey_router, prefix="/api", tags=["survey"])
app.include_router(editor_router, prefix="/api", tags=["editor"])
app.include_router(system_router, prefix="/api", tags=["system"])


# ============= Startup Events =============


@app.on_event("startup")
async def startup_event():
    """Create storage folders and log where data lives."""
    current = load_settings()
    current.ensure_dirs()
    logger.info("survey studio backend starting...")
    logger.info("Data directory: %s", current.data_dir)
    if current.store_url:
        logger.info("Editor sessions use remote document store: %s", current.store_url)


# ============= WebSocket Endpoints =============


async def _serve_connection(websocket: WebSocket) -> None:
    while True:
        message_text = await websocket.receive_text()
        response = await realtime_manager.handle_message(websocket, message_text)
        if response:
            await realtime_manager.send_to_connection(websocket, response)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: str = None):
    """
    Main WebSocket endpoint for document updates.

    Clients subscribe to ``project:{project_id}`` channels and receive
    ``document_saved`` / ``document_deleted`` messages.

    Message format (JSON):
    {
        "type": "subscribe" | "unsubscribe" | "ping",
        "channel": "channel_name",
        "data": {}
    }
    """
    await realtime_manager.connect(websocket, client_id)
    try:
        await _serve_connection(websocket)
    except WebSocketDisconnect:
        await realtime_manager.disconnect(websocket)


@app.websocket("/ws/project/{project_id}")
async def project_websocket_endpoint(websocket: WebSocket, project_id: str):
    """
    WebSocket endpoint for one project.

    Subscribes to the project channel on connection; used by open survey
    pages to reload when the admin saves.
    """
    await realtime_manager.connect(websocket, f"project-{project_id}")
    await realtime_manager.subscribe(websocket, project_channel(project_id))
    try:
        await _serve_connection(websocket)
    except WebSocketDisconnect:
        await realtime_manager.disconnect(websocket)


@app.get("/api/ws/stats")
async def get_websocket_stats(project_id: Optional[str] = Query(None, alias="projectId")):
    """Get WebSocket connection statistics, optionally for one project channel."""
    stats = {
        "total_connections": realtime_manager.get_connection_count(),
    }
    if project_id:
        stats["project_subscribers"] = realtime_manager.get_channel_subscribers(project_channel(project_id))
    return stats


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="survey studio backend server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("SURVEY_STUDIO_PORT", 3001)),
        help="Port to run the server on (default: 3001 or SURVEY_STUDIO_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload",
    )
    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
