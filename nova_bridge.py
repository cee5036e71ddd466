#!/usr/bin/env python3
"""
Nova Image Bridge
=================
Prompt (and optional reference image) in, generated image reference out.

Providers (attempted in order):
- Customer / raster: OpenAI Images (generations, or edits with a reference)
  -> Replicate fast diffusion model
- Owner / vector: Replicate vectorizer (raster -> SVG) -> Replicate text-to-SVG

Endpoints:
- GET  /health, /api/health
- POST /api/generate   (JSON or multipart with a "file" field)
- POST /api/edit       (single-model reference edit)
- GET  /outputs/...    (when PERSIST_OUTPUTS is on)
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import FormParser, MultiPartException, MultiPartParser

from nova_config import Config, configure_logging
from nova_models import EditResponse, GenerateResponse, HealthResponse, normalize_request
from nova_orchestrator import GenerationService
from nova_providers import (
    AllProvidersFailed,
    BridgeError,
    InvalidRequest,
    OpenAIImagesClient,
    PayloadTooLarge,
    build_runner,
    redact,
)
from nova_storage import DailyUsageCounter, OutputStore

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


async def _limited_stream(request: Request, limit: int) -> AsyncIterator[bytes]:
    """The request body, failing once more than ``limit`` bytes have arrived."""
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            logger.warning(f"🚫 [HTTP] Body on {request.url.path} passed {limit} bytes while streaming")
            raise PayloadTooLarge(f"Request body exceeds {limit / (1024 * 1024):g} MB")
        yield chunk


async def read_body(request: Request, limit: int) -> Tuple[Dict[str, Any], Optional[Tuple[bytes, str, str]]]:
    """JSON body, or multipart/urlencoded fields plus the optional ``file`` upload.

    The size limit is enforced while reading, so bodies sent without a
    Content-Length header are bounded too.
    """
    content_type = request.headers.get("content-type", "").lower()

    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        stream = _limited_stream(request, limit)
        if content_type.startswith("multipart/form-data"):
            parser = MultiPartParser(request.headers, stream)
        else:
            parser = FormParser(request.headers, stream)
        try:
            form = await parser.parse()
        except MultiPartException as e:
            raise InvalidRequest(f"Malformed form body: {e.message}")
        fields: Dict[str, Any] = {}
        upload = None
        try:
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    if key == "file" and upload is None:
                        upload = (await value.read(), value.content_type or "", value.filename or "upload")
                    continue
                fields[key] = value
        finally:
            await form.close()
        return fields, upload

    raw = b"".join([chunk async for chunk in _limited_stream(request, limit)])
    if not raw.strip():
        return {}, None
    try:
        body = json.loads(raw)
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body, None


def client_key(request: Request, trust_proxy: bool = False) -> str:
    """Caller identity for the daily counter.

    X-Forwarded-For is client-controlled, so it is only read when the bridge
    sits behind a proxy that overwrites it.
    """
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(config: Config,
               service: Optional[GenerationService] = None,
               usage: Optional[DailyUsageCounter] = None) -> FastAPI:
    if service is not None:
        store = service.store
    else:
        store = OutputStore(config.output_dir, config.public_base_url) if config.persist_outputs else None
        service = GenerationService(
            config,
            build_runner(config),
            OpenAIImagesClient(
                config.openai_api_key,
                endpoint=config.openai_endpoint,
                model=config.openai_image_model,
                timeout=config.request_timeout,
            ),
            store=store,
        )
    if usage is None:
        usage = DailyUsageCounter(config.daily_limit)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info("")
        logger.info(f"🚀 Nova Image Bridge {__version__} starting...")
        config.print_config()
        yield

    app = FastAPI(title="Nova Image Bridge", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.service = service
    app.state.usage = usage

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials="*" not in config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length", "")
        if length.isdigit() and int(length) > config.max_body_bytes:
            logger.warning(f"🚫 [HTTP] Rejected {length}-byte body on {request.url.path}")
            return JSONResponse(
                status_code=413,
                content={"ok": False, "error": f"Request body exceeds {config.max_body_mb:g} MB"},
            )
        return await call_next(request)

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        message = redact(str(exc), config.secrets)
        content: Dict[str, Any] = {"ok": False, "error": message}
        if isinstance(exc, AllProvidersFailed):
            content["detail"] = [
                {"provider": name, "error": redact(str(err), config.secrets)} for name, err in exc.failures
            ]
        if exc.status_code >= 500:
            logger.error(f"❌ [HTTP] {request.url.path} -> {exc.status_code}: {message}")
        else:
            logger.warning(f"⚠️ [HTTP] {request.url.path} -> {exc.status_code}: {message}")
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"⚠️ [HTTP] {request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors())
        logger.warning(f"⚠️ [HTTP] {request.url.path} -> 422: {errors}")
        return JSONResponse(status_code=422, content={"ok": False, "error": errors or "Invalid request"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"❌ [HTTP] Unexpected error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": redact(f"Internal error: {exc}", config.secrets)},
        )

    if store is not None:
        app.mount("/outputs", StaticFiles(directory=str(store.root)), name="outputs")

    @app.get("/")
    async def root():
        return {
            "service": "Nova Image Bridge",
            "version": __version__,
            "status": "running",
        }

    @app.get("/health", response_model=HealthResponse)
    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(ok=True, **service.describe())

    @app.post("/api/generate", response_model=GenerateResponse)
    async def generate(request: Request):
        body, upload = await read_body(request, config.max_body_bytes)
        gen_request = normalize_request(body, upload)
        # Echo requests cost nothing and are not counted
        key = None if gen_request.is_echo else client_key(request, config.trust_proxy)
        if key is not None:
            usage.hit(key)
        try:
            result = await service.generate(gen_request)
        except BridgeError:
            if key is not None:
                usage.refund(key)
            raise
        return GenerateResponse(ok=True, **result.model_dump())

    @app.post("/api/edit", response_model=EditResponse)
    async def edit(request: Request):
        body, upload = await read_body(request, config.max_body_bytes)
        gen_request = normalize_request(body, upload)
        key = client_key(request, config.trust_proxy)
        usage.hit(key)
        try:
            return await service.edit(gen_request)
        except BridgeError:
            usage.refund(key)
            raise

    return app


load_dotenv()
settings = Config.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


def main():
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
