"""Vercel entry: serves ``promptcoach.main.app`` from ``apps/api``.

A deploy whose settings or SDKs fail to import still answers, with a 503
carrying the import error, so the failure shows up in both the function
logs and the client.
"""

import os
import sys

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from loguru import logger

API_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "apps", "api")
if API_DIR not in sys.path:
    sys.path.append(API_DIR)


def unavailable_app(exc: Exception) -> FastAPI:
    detail = f"{type(exc).__name__}: {exc}"
    fallback = FastAPI(title="Prompt Coach API (unavailable)")

    @fallback.api_route("/{path:path}", methods=["GET", "POST"])
    async def unavailable(path: str) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": "Service temporarily unavailable.", "detail": detail},
        )

    return fallback


def load_app() -> FastAPI:
    try:
        from promptcoach.main import app as service
    except Exception as exc:  # pragma: no cover
        logger.opt(exception=exc).error("promptcoach failed to import; serving 503s")
        return unavailable_app(exc)
    return service


app = load_app()
