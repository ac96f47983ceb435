from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from datetime import UTC, datetime, timedelta
from time import perf_counter
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from redis.asyncio import Redis

from maskproxy.config import ProxyConfig, load_proxy_config
from maskproxy.core.analysis.service import AnalysisService
from maskproxy.detectors.presidio_http import PresidioHttpDetector
from maskproxy.detectors.secret_detector import SecretRegexDetector
from maskproxy.guard import (
    GuardBlockedError,
    GuardContextConflictError,
    GuardDetectionFailedError,
    GuardError,
    GuardNotFoundError,
    GuardService,
    ProtectedMessages,
    ProtectionSummary,
    TextInput,
)
from maskproxy.models.api import (
    ChatCompletionRequest,
    ContentItem,
    InfoResponse,
    MaskRequest,
    MaskResponse,
    ProtectionSummaryModel,
    SessionFinalizeResponse,
    UnmaskedItem,
    UnmaskRequest,
    UnmaskResponse,
    UnmaskStreamRequest,
    UnmaskStreamResponse,
)
from maskproxy.proxy.sse import SSEUnmasker
from maskproxy.proxy.upstream import UpstreamClient, forwardable_headers
from maskproxy.settings import settings
from maskproxy.storage.redis_store import RedisMappingStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)
if logger.isEnabledFor(logging.DEBUG):
    for noisy_logger in ("httpcore", "httpx"):
        logging.getLogger(noisy_logger).setLevel(logging.INFO)

app = FastAPI(title="maskproxy", version="0.1.0")


def _build_presidio(config: ProxyConfig) -> PresidioHttpDetector | None:
    pii = config.pii_detection
    if not pii.enabled:
        return None
    return PresidioHttpDetector(
        settings.presidio_url,
        entities=pii.entities,
        score_threshold=pii.score_threshold,
        windowing=pii.windowing.to_config(),
        allow_partial=pii.allow_partial,
        timeout_seconds=settings.presidio_timeout_s,
    )


def _build_secret_detector(config: ProxyConfig) -> SecretRegexDetector | None:
    secrets = config.secrets_detection
    if not secrets.enabled or secrets.action == "passthrough":
        return None
    return SecretRegexDetector(enabled_types=secrets.entities, max_scan_chars=secrets.max_scan_chars)


def _load_runtime() -> None:
    config = load_proxy_config(settings.config_path)
    presidio = _build_presidio(config)
    analysis = AnalysisService(
        pii_detector=presidio,
        secret_detector=_build_secret_detector(config),
        language=config.pii_detection.language,
        pii_roles=config.pii_detection.scan_roles,
    )
    app.state.proxy_config = config
    app.state.presidio = presidio
    app.state.guard = GuardService(config, analysis, mapping_store=app.state.mapping_store)
    logger.info(
        "config loaded from %s, placeholder_style=%s, pii=%s, secrets=%s",
        settings.config_path,
        config.masking.placeholder_style,
        "on" if presidio is not None else "off",
        config.secrets_detection.action if config.secrets_detection.enabled else "off",
    )


async def _wait_for_presidio() -> None:
    detector = getattr(app.state, "presidio", None)
    if detector is None:
        app.state.detectors_ready = True
        return
    ready = await detector.wait_until_ready(max_retries=settings.presidio_startup_retries)
    app.state.detectors_ready = ready
    if ready:
        logger.info("presidio analyzer is ready at %s", settings.presidio_url)
    else:
        logger.error("presidio analyzer not reachable at %s; requests will fail until it is", settings.presidio_url)


@app.on_event("startup")
async def startup() -> None:
    app.state.detectors_ready = False
    app.state.redis = Redis.from_url(settings.redis_url, decode_responses=False)
    app.state.mapping_store = RedisMappingStore(app.state.redis)
    app.state.upstream = UpstreamClient(settings.upstream_base_url, timeout_seconds=settings.upstream_timeout_s)
    _load_runtime()
    app.state.presidio_wait_task = asyncio.create_task(_wait_for_presidio())


@app.on_event("shutdown")
async def shutdown() -> None:
    task = getattr(app.state, "presidio_wait_task", None)
    if task is not None and not task.done():
        task.cancel()
    detector = getattr(app.state, "presidio", None)
    if detector is not None:
        await detector.close()
    upstream = getattr(app.state, "upstream", None)
    if upstream is not None:
        await upstream.close()
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        await redis_client.aclose()


def _protection_headers(summary: ProtectionSummary) -> dict[str, str]:
    return {
        "x-maskproxy-masked": str(summary.pii_count),
        "x-maskproxy-secrets": str(summary.secret_count),
    }


def _summary_model(summary: ProtectionSummary) -> ProtectionSummaryModel:
    return ProtectionSummaryModel(
        pii_count=summary.pii_count,
        secret_count=summary.secret_count,
        pii_types=summary.pii_types,
        secret_types=summary.secret_types,
    )


def _guard_http_error(exc: GuardError) -> HTTPException:
    if isinstance(exc, GuardBlockedError):
        return HTTPException(
            status_code=403,
            detail={"message": str(exc), "type": "secrets_detected", "secret_types": exc.secret_types},
        )
    if isinstance(exc, GuardDetectionFailedError):
        return HTTPException(
            status_code=503,
            detail={"message": str(exc), "type": "detection_unavailable", "detector_errors": exc.detector_errors},
        )
    if isinstance(exc, GuardNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, GuardContextConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
async def readyz() -> dict[str, str]:
    try:
        pong = await app.state.redis.ping()
        if not pong:
            raise RuntimeError("redis ping returned false")
        detector = getattr(app.state, "presidio", None)
        if detector is not None and not await detector.health():
            raise RuntimeError("presidio analyzer is not healthy")
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"not ready: {exc}") from exc
    return {"status": "ready"}


@app.get("/v1/info", response_model=InfoResponse)
async def info_endpoint() -> InfoResponse:
    config: ProxyConfig = app.state.proxy_config
    return InfoResponse(
        service=settings.service_name,
        placeholder_style=config.masking.placeholder_style,
        pii_detection={
            "enabled": config.pii_detection.enabled,
            "entities": config.pii_detection.entities,
            "scan_roles": config.pii_detection.scan_roles,
            "ready": bool(getattr(app.state, "detectors_ready", False)),
        },
        secrets_detection={
            "enabled": config.secrets_detection.enabled,
            "action": config.secrets_detection.action,
            "entities": config.secrets_detection.entities,
        },
    )


async def _stream_completion(
    payload: dict,
    headers: dict[str, str],
    protected: ProtectedMessages,
) -> Response:
    guard: GuardService = app.state.guard
    upstream: UpstreamClient = app.state.upstream
    stack = AsyncExitStack()
    try:
        response = await stack.enter_async_context(upstream.stream_chat_completions(payload, headers=headers))
    except httpx.HTTPError as exc:
        await stack.aclose()
        raise HTTPException(status_code=502, detail=f"upstream request failed: {exc}") from exc

    response_headers = _protection_headers(protected.summary)
    if response.status_code != 200:
        body = await upstream.read_error(response)
        await stack.aclose()
        return JSONResponse(status_code=response.status_code, content=body, headers=response_headers)

    unmasker = SSEUnmasker(lambda: guard.stream_restorer(protected.contexts))

    async def body() -> AsyncIterator[str]:
        async with stack:
            async for line in response.aiter_lines():
                for piece in unmasker.feed_line(line):
                    yield piece
            for piece in unmasker.finish():
                yield piece
        logger.debug("stream finished replacements=%d", unmasker.replaced)

    return StreamingResponse(body(), media_type="text/event-stream", headers=response_headers)


@app.post("/v1/chat/completions")
async def chat_completions_endpoint(request: ChatCompletionRequest, raw_request: Request) -> Response:
    started_at = perf_counter()
    guard: GuardService = app.state.guard
    payload = request.model_dump(exclude_unset=True)

    try:
        protected = await guard.protect_messages(payload["messages"])
    except GuardError as exc:
        raise _guard_http_error(exc) from exc
    payload["messages"] = protected.messages

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "chat.completions masked pii=%d secrets=%d pii_types=%s secret_types=%s stream=%s",
            protected.summary.pii_count,
            protected.summary.secret_count,
            protected.summary.pii_types,
            protected.summary.secret_types,
            request.stream,
        )

    headers = forwardable_headers(raw_request.headers)
    if request.stream:
        return await _stream_completion(payload, headers, protected)

    try:
        status_code, body, passthrough = await app.state.upstream.chat_completions(payload, headers=headers)
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail=f"upstream request failed: {exc}") from exc

    if status_code == 200:
        body = guard.restore_response(body, protected.contexts)

    response_headers = _protection_headers(protected.summary)
    if passthrough.get("x-request-id"):
        response_headers["x-request-id"] = passthrough["x-request-id"]
    logger.debug("chat.completions done status=%d elapsed_ms=%.3f", status_code, (perf_counter() - started_at) * 1000.0)
    return JSONResponse(status_code=status_code, content=body, headers=response_headers)


@app.post("/v1/mask", response_model=MaskResponse)
async def mask_endpoint(request: MaskRequest) -> MaskResponse:
    session_id = request.session_id or uuid4().hex
    try:
        result = await app.state.guard.mask_items(
            session_id=session_id,
            items=[TextInput(id=item.id, text=item.text) for item in request.items],
            ttl_seconds=request.ttl_seconds,
        )
    except GuardError as exc:
        raise _guard_http_error(exc) from exc

    expires_at = (datetime.now(tz=UTC) + timedelta(seconds=result.ttl_seconds)).isoformat()
    return MaskResponse(
        session_id=result.session_id,
        ttl_seconds=result.ttl_seconds,
        expires_at=expires_at,
        placeholders_count=result.placeholders_count,
        summary=_summary_model(result.summary),
        items=[ContentItem(id=item.id, text=item.text) for item in result.items],
    )


@app.post("/v1/unmask", response_model=UnmaskResponse)
async def unmask_endpoint(request: UnmaskRequest) -> UnmaskResponse:
    try:
        result = await app.state.guard.unmask_items(
            session_id=request.session_id,
            items=[TextInput(id=item.id, text=item.text) for item in request.items],
            delete_context=request.delete_context,
            allow_missing_context=request.allow_missing_context,
        )
    except GuardError as exc:
        raise _guard_http_error(exc) from exc

    return UnmaskResponse(
        session_id=result.session_id,
        context_found=result.context_found,
        replacements=result.replacements,
        context_deleted=result.context_deleted,
        items=[UnmaskedItem(id=item.id, text=item.text, replacements=item.replacements) for item in result.items],
    )


@app.post("/v1/unmask-stream", response_model=UnmaskStreamResponse)
async def unmask_stream_endpoint(request: UnmaskStreamRequest) -> UnmaskStreamResponse:
    try:
        result = await app.state.guard.unmask_stream_chunk(
            session_id=request.session_id,
            stream_id=request.stream_id,
            chunk=request.chunk,
            final=request.final,
            delete_context=request.delete_context,
            allow_missing_context=request.allow_missing_context,
        )
    except GuardError as exc:
        raise _guard_http_error(exc) from exc

    return UnmaskStreamResponse(
        session_id=result.session_id,
        stream_id=result.stream_id,
        context_found=result.context_found,
        output=result.output,
        replacements=result.replacements,
        buffered_chars=result.buffered_chars,
        final=result.final,
        context_deleted=result.context_deleted,
    )


@app.post("/v1/sessions/{session_id}/finalize", response_model=SessionFinalizeResponse)
async def finalize_session_endpoint(session_id: str) -> SessionFinalizeResponse:
    finalized = await app.state.guard.finalize_session(session_id)
    return SessionFinalizeResponse(session_id=session_id, finalized=finalized)
