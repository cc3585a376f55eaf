"""FastAPI application for the Mystara gateway.

Provides a single /api/chat endpoint that validates the caller's question,
enforces the per-caller quota, applies the content filter, forwards the
prompt to the upstream model, and returns the answer either as one JSON
payload or as a server-sent-events stream.

Components (quota tracker, content filter, upstream client) are built once
per application by create_app() and stored on ``app.state``; handlers reach
them through dependencies rather than module globals.
"""

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mystara_gateway.config import GatewayConfig, load_config_or_default
from mystara_gateway.content_filter import ContentFilter, load_filter
from mystara_gateway.dispatcher import (
    ResponseDispatcher,
    Result,
    StreamFrame,
    frames_for,
    iter_frames,
)
from mystara_gateway.models import ChatRequest
from mystara_gateway.prompt import MSG_METHOD_NOT_ALLOWED
from mystara_gateway.quota import QuotaTracker
from mystara_gateway.telemetry import setup_logging
from mystara_gateway.upstream import GeminiClient

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/gateway.json")
CHAT_PATH = "/api/chat"

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

router = APIRouter()


def get_config(request: Request) -> GatewayConfig:
    return request.app.state.config


def get_dispatcher(request: Request) -> ResponseDispatcher:
    return request.app.state.dispatcher


def cors_headers(config: GatewayConfig) -> Dict[str, str]:
    """Permissive CORS headers attached to every endpoint response."""
    return {
        "Access-Control-Allow-Origin": config.cors_allow_origin,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "86400",
    }


async def _encode(frames: AsyncIterator[StreamFrame]) -> AsyncIterator[str]:
    """Serialize frames as SSE events, closing the source no matter what."""
    try:
        async for frame in frames:
            yield frame.encode()
    finally:
        aclose = getattr(frames, "aclose", None)
        if aclose is not None:
            await aclose()


def _stream_response(
    status: int, frames: AsyncIterator[StreamFrame], config: GatewayConfig
) -> StreamingResponse:
    headers = dict(_STREAM_HEADERS)
    headers.update(cors_headers(config))
    return StreamingResponse(
        _encode(frames),
        status_code=status,
        media_type="text/event-stream",
        headers=headers,
    )


def render(result: Result, config: GatewayConfig) -> Response:
    """Render a finished result in the deployment's response shape."""
    if config.is_streaming:
        return _stream_response(
            result.status, iter_frames(frames_for(result)), config
        )
    return JSONResponse(
        status_code=result.status,
        content=result.body(),
        headers=cors_headers(config),
    )


@router.post(CHAT_PATH, response_model=None)
async def chat(
    request: Request,
    body: ChatRequest,
    config: GatewayConfig = Depends(get_config),
    dispatcher: ResponseDispatcher = Depends(get_dispatcher),
) -> Response:
    """Answer a caller's question.

    Request flow:
    1. Validate message, caller id and server credential
    2. Admit against the caller's quota tier
    3. Apply the content filter (canned reply on match)
    4. Call the upstream model
    5. Emit JSON (buffered) or SSE frames (streaming)
    """
    if config.is_streaming:
        status, frames = dispatcher.stream(
            body, is_disconnected=request.is_disconnected
        )
        return _stream_response(status, frames, config)

    result = await dispatcher.respond(body)
    return render(result, config)


@router.options(CHAT_PATH, response_model=None)
async def chat_preflight(config: GatewayConfig = Depends(get_config)) -> Response:
    """Answer cross-origin preflight requests."""
    return Response(status_code=204, headers=cors_headers(config))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> Response:
    """Turn an unparseable body into the endpoint's own 400 error."""
    config = get_config(request)
    rejection = get_dispatcher(request).invalid_body(str(exc.errors()))
    return render(rejection, config)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> Response:
    """Wrap routing errors (405, 404) in the endpoint's error envelope."""
    config = get_config(request)
    headers = cors_headers(config)
    if exc.headers:
        headers.update(exc.headers)
    if exc.status_code == 405:
        content: Dict[str, Any] = {
            "error": "method_not_allowed",
            "message": MSG_METHOD_NOT_ALLOWED,
        }
    else:
        content = {"error": "http_error", "message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def build_dispatcher(
    config: GatewayConfig,
    generator: Optional[Any] = None,
    content_filter: Optional[ContentFilter] = None,
) -> ResponseDispatcher:
    """Construct the quota tracker, filter and upstream client for one app."""
    tracker = QuotaTracker(
        standard_limit=config.quota.standard_limit,
        elevated_limit=config.quota.elevated_limit,
        window_seconds=config.quota.window_seconds,
        max_tracked_callers=config.quota.max_tracked_callers,
    )
    if content_filter is None:
        if config.filter_file:
            content_filter = load_filter(config.filter_file)
        else:
            content_filter = ContentFilter()
    if generator is None:
        generator = GeminiClient(config.upstream)
    return ResponseDispatcher(config, tracker, content_filter, generator)


def create_app(
    config: Optional[GatewayConfig] = None,
    generator: Optional[Any] = None,
    content_filter: Optional[ContentFilter] = None,
) -> FastAPI:
    """Build a gateway application with its own independent state.

    Args:
        config: Gateway configuration; loaded from GATEWAY_CONFIG when None.
        generator: Upstream generator; a GeminiClient when None.
        content_filter: Content filter; built from config when None.
    """
    if config is None:
        config = load_config_or_default(CONFIG_PATH)

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        """Initialize logging on startup."""
        setup_logging(config.log_file)
        yield

    application = FastAPI(title="Mystara Gateway", version="0.1.0", lifespan=lifespan)
    application.state.config = config
    application.state.dispatcher = build_dispatcher(config, generator, content_filter)
    application.include_router(router)
    application.add_exception_handler(
        RequestValidationError, validation_exception_handler
    )
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    return application


app = create_app()
