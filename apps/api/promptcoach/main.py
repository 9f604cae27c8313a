from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .cache import ResultCache
from .config import is_production, settings
from .errors import (
    ConfigurationError,
    ErrorKind,
    ExhaustedError,
    InvalidRequestError,
    ParseError,
    status_code_of,
)
from .generation import (
    analyze_prompt,
    compose_prompt,
    generate_flat_tags,
    generate_structured_tags,
    generate_tags,
)
from .llm import build_providers
from .logs import configure_logging, mask_secret
from .schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    PromptComposeRequest,
    PromptComposeResponse,
    SmartTagRequest,
    TagGenerateRequest,
    TagGenerateResponse,
)

configure_logging()

app = FastAPI(title=settings.app_name, version=settings.version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

result_cache = ResultCache(ttl_seconds=settings.cache_ttl_seconds)
providers = build_providers(settings)

ANALYZE_ERROR_STATUS = {
    ErrorKind.auth: (401, "Authentication failed. Please contact support."),
    ErrorKind.rate_limited: (429, "API quota exceeded. Please try again later."),
    ErrorKind.overloaded: (503, "The AI service is overloaded. Please try again later."),
    ErrorKind.network: (503, "Unable to reach the AI service. Please check your internet connection."),
    ErrorKind.other: (500, "An internal error occurred. Please try again later."),
}
PERMISSION_DENIED = (403, "Service access denied. Please contact support.")


@app.on_event("startup")
def _startup() -> None:
    logger.info(
        f"{settings.app_name} starting ({settings.environment}); "
        f"gemini={mask_secret(settings.gemini_api_key)} openai={mask_secret(settings.openai_api_key)}"
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    logger.debug(f"Rejected {request.url.path}: invalid fields {fields}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Missing required fields", "fields": fields},
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
    }


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "analyze": "/api/gemini/analyze",
            "tags": "/api/tags/generate",
            "flatTags": "/api/gemini/tags",
            "smartTags": "/api/gemini/smart-tags",
            "prompt": "/api/prompt/generate",
        },
    }


@app.post("/api/tags/generate", response_model=TagGenerateResponse, response_model_exclude_none=True)
@app.post("/api/gemini/tags/generate", response_model=TagGenerateResponse, response_model_exclude_none=True)
async def generate_tags_endpoint(payload: TagGenerateRequest) -> TagGenerateResponse:
    logger.debug(f"/api/tags/generate topic={payload.topic!r} intent={payload.intent!r} stage={payload.stage!r}")
    return await asyncio.to_thread(generate_tags, payload, providers, result_cache)


@app.post("/api/gemini/tags", response_model=TagGenerateResponse, response_model_exclude_none=True)
async def generate_flat_tags_endpoint(payload: TagGenerateRequest) -> TagGenerateResponse:
    logger.debug(f"/api/gemini/tags topic={payload.topic!r} intent={payload.intent!r} stage={payload.stage!r}")
    return await asyncio.to_thread(generate_flat_tags, payload, providers, result_cache)


@app.post("/api/gemini/smart-tags", response_model=TagGenerateResponse, response_model_exclude_none=True)
async def generate_smart_tags_endpoint(payload: SmartTagRequest) -> TagGenerateResponse:
    logger.debug(f"/api/gemini/smart-tags topic={payload.topic!r} intent={payload.intent!r}")
    return await asyncio.to_thread(generate_structured_tags, payload, providers, result_cache)


@app.post("/api/gemini/analyze", response_model=AnalyzeResponse, response_model_by_alias=True)
async def analyze_endpoint(payload: AnalyzeRequest) -> AnalyzeResponse:
    try:
        return await asyncio.to_thread(analyze_prompt, payload.student_prompt, providers)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ConfigurationError as exc:
        logger.error(f"Analyze unavailable: {exc}")
        raise HTTPException(status_code=500, detail="Service temporarily unavailable. Please contact support.")
    except ExhaustedError as exc:
        status, message = ANALYZE_ERROR_STATUS[exc.kind]
        if isinstance(exc.error, ParseError):
            status, message = 500, "Failed to analyze prompt."
        elif exc.kind == ErrorKind.auth and status_code_of(exc.error) == 403:
            status, message = PERMISSION_DENIED
        logger.error(f"Analyze failed [{exc.kind.value}]: {exc}")
        detail: Any = message if is_production() else {"error": message, "details": str(exc)}
        raise HTTPException(status_code=status, detail=detail)


@app.post("/api/prompt/generate", response_model=PromptComposeResponse)
@app.post("/api/gemini/prompt/generate", response_model=PromptComposeResponse)
async def compose_prompt_endpoint(payload: PromptComposeRequest) -> PromptComposeResponse:
    try:
        prompt = compose_prompt(payload.topic, payload.intent, payload.selected_tags)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return PromptComposeResponse(prompt=prompt)
