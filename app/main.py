"""FastAPI application for the Blueprint Coach."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.routers import chat, sessions
from execution.session import SessionLoadError

logger = logging.getLogger(__name__)

app = FastAPI(title="Blueprint Coach")

app.include_router(sessions.router)
app.include_router(chat.router)


@app.exception_handler(SessionLoadError)
async def session_load_error_handler(request: Request, exc: SessionLoadError):
    """A corrupt snapshot is unrecoverable, and is reported apart from in-session errors."""
    logger.error("Unrecoverable session at %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=422,
        content={"error": "session_unrecoverable", "detail": str(exc)},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle ValueError from execution modules as a bad request."""
    return JSONResponse(status_code=400, content={"error": "bad_request", "detail": str(exc)})
