"""
Provider layer for the Nova Image Bridge

- Error taxonomy shared by every provider and the HTTP layer
- ProviderJob + PollPolicy + the one polling loop
- Response normalizer (explicit mappings for known providers, generic
  depth-first search as the safety net)
- Replicate (raw HTTP or SDK) and OpenAI Images clients
- with_fallback(): ordered provider attempts for one generation path
"""

import asyncio
import base64
import binascii
import logging
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx
import replicate
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


# ============================================
# ERRORS
# ============================================
class BridgeError(Exception):
    status_code = 500


class InvalidRequest(BridgeError):
    status_code = 400


class QuotaExceeded(BridgeError):
    status_code = 429


class PayloadTooLarge(BridgeError):
    status_code = 413


class ProviderError(BridgeError):
    """A provider call failed. ``detail`` keeps the provider's own payload for logs."""
    status_code = 502

    def __init__(self, provider: str, message: str, detail: Any = None):
        self.provider = provider
        self.message = message
        self.detail = detail
        super().__init__(f"[{provider}] {message}")


class ProviderTimeout(ProviderError):
    pass


class NoImageInResponse(ProviderError):
    def __init__(self, provider: str = "normalizer", message: str = "No image found in provider response", detail: Any = None):
        super().__init__(provider, message, detail)


class AllProvidersFailed(BridgeError):
    status_code = 502

    def __init__(self, path: str, failures: List[Tuple[str, Exception]]):
        self.path = path
        self.failures = failures
        if failures:
            summary = "; ".join(f"{name}: {err}" for name, err in failures)
        else:
            summary = "no providers available"
        super().__init__(f"All providers failed for {path} path. {summary}")


def redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def provider_error_from_response(provider: str, response) -> ProviderError:
    """Build a ProviderError from a non-success HTTP response."""
    message = ""
    detail = None
    try:
        detail = response.json()
    except ValueError:
        detail = None

    if isinstance(detail, dict):
        error_obj = detail.get("error")
        if isinstance(error_obj, dict):
            message = error_obj.get("message") or error_obj.get("code") or ""
        elif isinstance(error_obj, str):
            message = error_obj
        message = message or detail.get("detail") or detail.get("message") or detail.get("title") or ""
    if not message:
        message = (getattr(response, "text", "") or "")[:200]

    return ProviderError(provider, f"HTTP {response.status_code}: {message}".rstrip(": "), detail)


# ============================================
# PROVIDER JOBS + POLLING
# ============================================
class JobStatus(str, Enum):
    STARTING = "starting"
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED)

# Other hosts spell these differently
_STATUS_ALIASES = {
    "created": JobStatus.QUEUED,
    "pending": JobStatus.QUEUED,
    "in_queue": JobStatus.QUEUED,
    "in_progress": JobStatus.PROCESSING,
    "running": JobStatus.PROCESSING,
    "completed": JobStatus.SUCCEEDED,
    "success": JobStatus.SUCCEEDED,
    "error": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELED,
}


def parse_status(value: Any) -> JobStatus:
    text = str(value or "").strip().lower()
    try:
        return JobStatus(text)
    except ValueError:
        return _STATUS_ALIASES.get(text, JobStatus.PROCESSING)


class ProviderJob(BaseModel):
    id: str = ""
    status: JobStatus = JobStatus.STARTING
    output: Any = None
    error: Any = None
    logs: Any = None
    urls: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "ProviderJob":
        if not isinstance(payload, dict):
            raise ProviderError("Replicate", f"Unexpected job payload: {type(payload).__name__}")
        urls = payload.get("urls") or {}
        return cls(
            id=str(payload.get("id") or ""),
            status=parse_status(payload.get("status")),
            output=payload.get("output"),
            error=payload.get("error"),
            logs=payload.get("logs"),
            urls={k: v for k, v in urls.items() if isinstance(v, str)} if isinstance(urls, dict) else {},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class PollPolicy(BaseModel):
    """How every job-style adapter waits for a terminal status."""
    model_config = ConfigDict(frozen=True)

    interval: float = 2.5
    max_wait: float = 120.0
    max_attempts: int = 0
    backoff: float = 1.0
    max_interval: float = 10.0

    @classmethod
    def from_config(cls, config) -> "PollPolicy":
        return cls(
            interval=config.poll_interval,
            max_wait=config.max_poll_seconds,
            max_attempts=config.max_poll_attempts,
            backoff=config.poll_backoff,
            max_interval=config.poll_max_interval,
        )


async def poll_until_terminal(
    fetch: Callable[[], Awaitable[ProviderJob]],
    policy: PollPolicy,
    provider: str = "provider",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProviderJob:
    """Fetch the job until it reaches a terminal status.

    Status fetches count against ``max_wait`` too: each one only gets the
    time that is left. Raises ProviderTimeout when that runs out, when another
    wait would reach ``max_wait``, or after ``max_attempts`` fetches.
    """
    started = clock()
    interval = policy.interval
    attempt = 0
    while True:
        attempt += 1
        remaining = policy.max_wait - (clock() - started)
        if remaining <= 0:
            raise ProviderTimeout(provider, f"No time left to poll (max {policy.max_wait:g}s)")
        try:
            job = await asyncio.wait_for(fetch(), timeout=remaining)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(provider, f"Status fetch {attempt} cut off at the {policy.max_wait:g}s limit") from e
        if job.is_terminal:
            logger.info(f"⏱️ [{provider}] Job {job.id or '-'} {job.status.value} after {attempt} poll(s)")
            return job

        if policy.max_attempts and attempt >= policy.max_attempts:
            raise ProviderTimeout(provider, f"Job {job.id or '-'} still {job.status.value} after {attempt} polls")

        elapsed = clock() - started
        if elapsed + interval >= policy.max_wait:
            raise ProviderTimeout(provider, f"Job {job.id or '-'} still {job.status.value} after {elapsed:.1f}s (max {policy.max_wait:g}s)")

        if attempt % 5 == 1:
            logger.info(f"⏱️ [{provider}] Still {job.status.value} (poll {attempt})")
        await sleep(interval)
        interval = min(interval * policy.backoff, policy.max_interval)


# ============================================
# RESPONSE NORMALIZER
# ============================================
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".svg", ".bmp", ".tif", ".tiff", ".avif")
DATA_URI_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,(.*)$", re.DOTALL)


def is_data_url(value: Any) -> bool:
    return isinstance(value, str) and DATA_URI_RE.match(value.strip()) is not None


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(("http://", "https://"))


def is_svg_text(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    head = value.lstrip()[:512].lower()
    return head.startswith("<svg") or (head.startswith("<?xml") and "<svg" in head)


def svg_to_data_url(svg: str) -> str:
    encoded = base64.b64encode(svg.strip().encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def split_data_url(value: str) -> Tuple[str, bytes]:
    """Return (mime, bytes) for a base64 image data URL."""
    match = DATA_URI_RE.match(value.strip())
    if not match:
        raise ValueError("Not a base64 image data URL")
    try:
        return match.group(1), base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def sniff_mime(data: bytes) -> Optional[str]:
    """Mime type from magic numbers, None when unknown."""
    if data[:3] == b'\xff\xd8\xff':
        return "image/jpeg"
    if data[:4] == b'\x89PNG':
        return "image/png"
    if data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return "image/webp"
    if data[:4] == b'GIF8':
        return "image/gif"
    if is_svg_text(data[:512].decode("utf-8", errors="ignore")):
        return "image/svg+xml"
    return None


def _match_image_string(value: str) -> Optional[str]:
    text = value.strip()
    if is_data_url(text):
        return text
    if is_http_url(text):
        if urlparse(text).path.lower().endswith(IMAGE_EXTENSIONS):
            return text
        return None
    if is_svg_text(text):
        return svg_to_data_url(text)
    return None


def _walk(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return _match_image_string(value)
    if isinstance(value, dict):
        for item in value.values():
            found = _walk(item)
            if found is not None:
                return found
        return None
    if isinstance(value, (list, tuple)):
        for item in value:
            found = _walk(item)
            if found is not None:
                return found
        return None
    # SDK file objects
    url = getattr(value, "url", None)
    if isinstance(url, str):
        return _match_image_string(url)
    return None


def extract_image_ref(value: Any, provider: str = "normalizer") -> str:
    """Depth-first search for the first image URL, data URL or inline SVG."""
    found = _walk(value)
    if found is None:
        raise NoImageInResponse(provider, "No image URL, data URL or SVG in provider output", detail=value)
    return found


def replicate_image_ref(job: ProviderJob, provider: str = "Replicate") -> str:
    """Replicate outputs: a string, a list whose first element is the image, or file objects."""
    output = job.output
    if isinstance(output, (list, tuple)):
        output = output[0] if output else None
    if output is not None and not isinstance(output, (str, dict)):
        url = getattr(output, "url", None)
        if isinstance(url, str):
            output = url
    if isinstance(output, str):
        text = output.strip()
        if is_http_url(text) or is_data_url(text):
            return text
        if is_svg_text(text):
            return svg_to_data_url(text)
    return extract_image_ref(job.output, provider)


def openai_image_ref(payload: Any, provider: str = "OpenAI") -> str:
    """OpenAI Images: ``data[0].url`` or ``data[0].b64_json``."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        first = data[0]
        if first.get("url"):
            return first["url"]
        if first.get("b64_json"):
            return f"data:image/png;base64,{first['b64_json']}"
    return extract_image_ref(payload, provider)


async def download_image(url: str, timeout: float = 30.0, provider: str = "download") -> Tuple[bytes, str]:
    """GET an image URL, returning (bytes, mime)."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
    except httpx.TimeoutException as e:
        raise ProviderTimeout(provider, f"Timed out downloading {url}") from e
    except httpx.HTTPError as e:
        raise ProviderError(provider, f"Download failed for {url}: {e}") from e

    if response.status_code != 200:
        raise ProviderError(provider, f"Download failed for {url}: HTTP {response.status_code}")
    content = response.content
    if not content:
        raise ProviderError(provider, f"Download returned no bytes for {url}")
    header = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
    mime = header if header.startswith("image/") else (sniff_mime(content) or "image/png")
    return content, mime


async def fetch_as_data_url(ref: str, timeout: float = 30.0, provider: str = "download") -> str:
    if is_data_url(ref):
        return ref.strip()
    if is_svg_text(ref):
        return svg_to_data_url(ref)
    content, mime = await download_image(ref, timeout=timeout, provider=provider)
    return f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"


# ============================================
# MODEL RUNNERS (REPLICATE)
# ============================================
class ModelRunner:
    """run_model(model_id, input) -> terminal, succeeded ProviderJob"""
    name = "runner"

    async def run_model(self, model_id: str, model_input: Dict[str, Any]) -> ProviderJob:
        raise NotImplementedError


class ReplicateClient(ModelRunner):
    """Replicate predictions API over raw HTTP: create, then poll the status URL."""
    name = "replicate"

    def __init__(self, api_token: str, endpoint: str = "https://api.replicate.com/v1",
                 policy: Optional[PollPolicy] = None, timeout: float = 60.0):
        self.api_token = api_token
        self.endpoint = endpoint.rstrip("/")
        self.policy = policy or PollPolicy()
        self.timeout = timeout
        logger.info(f"🌐 [Replicate] Client initialized - Endpoint: {self.endpoint}")
        logger.info(f"🌐 [Replicate] API token configured: {bool(api_token)}")

    def _create_request(self, model_id: str, model_input: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if ":" in model_id:
            _, version = model_id.split(":", 1)
            return f"{self.endpoint}/predictions", {"version": version, "input": model_input}
        return f"{self.endpoint}/models/{model_id}/predictions", {"input": model_input}

    async def _request(self, provider: str, method: str, url: str, body: Optional[Dict] = None) -> Any:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json"
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if method == "POST":
                    response = await client.post(url, json=body, headers=headers)
                else:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(provider, f"{method} {url} timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(provider, f"{method} {url} failed: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise provider_error_from_response(provider, response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(provider, f"Malformed JSON from {url}") from e

    async def run_model(self, model_id: str, model_input: Dict[str, Any]) -> ProviderJob:
        provider = f"Replicate:{model_id}"
        if not self.api_token:
            raise ProviderError(provider, "REPLICATE_API_TOKEN not configured")

        url, body = self._create_request(model_id, model_input)
        logger.info(f"🌐 [Replicate] Creating prediction for {model_id} (input keys: {sorted(model_input)})")
        job = ProviderJob.from_payload(await self._request(provider, "POST", url, body))
        logger.info(f"🌐 [Replicate] Prediction {job.id or '-'} created, status={job.status.value}")

        if not job.is_terminal:
            status_url = job.urls.get("get") or f"{self.endpoint}/predictions/{job.id}"

            async def fetch():
                return ProviderJob.from_payload(await self._request(provider, "GET", status_url))

            job = await poll_until_terminal(fetch, self.policy, provider=provider)

        if job.status != JobStatus.SUCCEEDED:
            raise ProviderError(
                provider,
                f"Prediction {job.id or '-'} {job.status.value}: {job.error or 'no error detail'}",
                detail={"error": job.error, "logs": job.logs},
            )
        return job


def _coerce_sdk_output(output: Any) -> Any:
    if isinstance(output, (str, bytes, dict)) or output is None:
        return output
    if isinstance(output, (list, tuple)):
        return [_coerce_sdk_output(item) for item in output]
    url = getattr(output, "url", None)
    if isinstance(url, str):
        return url
    if hasattr(output, "__iter__"):
        return [_coerce_sdk_output(item) for item in output]
    return output


class ReplicateSDKClient(ModelRunner):
    """Replicate via the official SDK; ``run`` blocks and polls internally.

    ``run`` never exposes the prediction it creates, so a timeout can only stop
    waiting: the worker thread keeps polling until the SDK returns and the
    prediction keeps running (and billing) on Replicate. Use the HTTP runner
    where that matters.
    """
    name = "replicate-sdk"

    def __init__(self, api_token: str, policy: Optional[PollPolicy] = None, sdk_client=None):
        self.policy = policy or PollPolicy()
        self.client = sdk_client
        if self.client is None and api_token:
            self.client = replicate.Client(api_token=api_token)
            logger.info("🌐 [Replicate SDK] Client initialized with official SDK")
        elif self.client is None:
            logger.warning("⚠️ [Replicate SDK] SDK available but API token missing")

    async def run_model(self, model_id: str, model_input: Dict[str, Any]) -> ProviderJob:
        provider = f"Replicate:{model_id}"
        if not self.client:
            raise ProviderError(provider, "Replicate SDK client not initialized")

        logger.info(f"🌐 [Replicate SDK] Running {model_id} in thread pool...")
        try:
            output = await asyncio.wait_for(
                asyncio.to_thread(self.client.run, model_id, input=model_input),
                timeout=self.policy.max_wait,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"⚠️ [Replicate SDK] Stopped waiting for {model_id} after {self.policy.max_wait:g}s; "
                           f"the prediction and its worker thread are still running")
            raise ProviderTimeout(provider, f"SDK run exceeded {self.policy.max_wait:g}s") from e
        except Exception as e:
            raise ProviderError(provider, f"SDK run failed: {e}") from e

        return ProviderJob(status=JobStatus.SUCCEEDED, output=_coerce_sdk_output(output))


def build_runner(config) -> ModelRunner:
    policy = PollPolicy.from_config(config)
    if config.replicate_mode == "sdk":
        return ReplicateSDKClient(config.replicate_api_token, policy=policy)
    return ReplicateClient(
        config.replicate_api_token,
        endpoint=config.replicate_endpoint,
        policy=policy,
        timeout=config.request_timeout,
    )


# ============================================
# OPENAI IMAGES CLIENT
# ============================================
class OpenAIImagesClient:
    """OpenAI Images API: generations, or edits when a reference image is given."""
    name = "openai"

    def __init__(self, api_key: str, endpoint: str = "https://api.openai.com/v1",
                 model: str = "gpt-image-1", timeout: float = 60.0):
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout = timeout
        logger.info(f"🎨 [OpenAI] Images client initialized - model: {self.model}")
        logger.info(f"🎨 [OpenAI] API key configured: {bool(api_key)}")

    async def generate(self, prompt: str, size: str = "1024x1024",
                       image: Optional[Tuple[bytes, str]] = None) -> Dict[str, Any]:
        """Return the raw Images API payload."""
        if not self.api_key:
            raise ProviderError("OpenAI", "OPENAI_API_KEY not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if image is None:
                    logger.info(f"🎨 [OpenAI] images/generations size={size}")
                    response = await client.post(
                        f"{self.endpoint}/images/generations",
                        json={"model": self.model, "prompt": prompt, "size": size, "n": 1},
                        headers=headers,
                    )
                else:
                    content, mime = image
                    ext = (mime.split("/")[-1] or "png").split("+")[0].lower()
                    logger.info(f"🎨 [OpenAI] images/edits size={size} reference={len(content)} bytes ({mime})")
                    response = await client.post(
                        f"{self.endpoint}/images/edits",
                        data={"model": self.model, "prompt": prompt, "size": size},
                        files={"image[]": (f"reference.{ext}", content, mime)},
                        headers=headers,
                    )
        except httpx.TimeoutException as e:
            raise ProviderTimeout("OpenAI", f"Images request timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise ProviderError("OpenAI", f"Images request failed: {e}") from e

        if response.status_code != 200:
            raise provider_error_from_response("OpenAI", response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("OpenAI", "Malformed JSON from Images API") from e


# ============================================
# FALLBACK
# ============================================
class ProviderAttempt:
    """One provider in a path's ordered list; ``call`` returns an image reference."""

    def __init__(self, provider: str, model: str, call: Callable[[], Awaitable[str]]):
        self.provider = provider
        self.model = model
        self.call = call

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.model}"


class FallbackOutcome(BaseModel):
    image: str
    provider: str
    model: str
    failures: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return bool(self.failures)


async def with_fallback(path: str, attempts: Sequence[ProviderAttempt]) -> FallbackOutcome:
    """Try each provider in order; the first extractable image wins."""
    failures: List[Tuple[str, Exception]] = []

    for idx, attempt in enumerate(attempts, 1):
        logger.info(f"🔄 [Fallback] [{path} {idx}/{len(attempts)}] Attempting {attempt.label}")
        try:
            image = await attempt.call()
            if not image:
                raise NoImageInResponse(attempt.label)
        except Exception as e:
            failures.append((attempt.label, e))
            logger.error(f"❌ [Fallback] [{path}] FAILED with {attempt.label}: {e}")
            if isinstance(e, ProviderError) and e.detail is not None:
                logger.debug(f"❌ [Fallback] [{path}] Provider detail: {e.detail}")
            if idx < len(attempts):
                logger.info("🔄 [Fallback] Trying next...")
            continue

        logger.info(f"✅ [Fallback] [{path}] SUCCESS with {attempt.label}")
        return FallbackOutcome(
            image=image,
            provider=attempt.provider,
            model=attempt.model,
            failures=[{"provider": name, "error": str(err)} for name, err in failures],
        )

    raise AllProvidersFailed(path, failures)
