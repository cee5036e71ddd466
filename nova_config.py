"""
Nova Image Bridge configuration
===============================
Everything the bridge needs from the environment is read once, here, into an
immutable ``Config``. The rest of the code receives the instance explicitly.
"""

import hashlib
import logging
import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )


def prompt_hash(text: str) -> str:
    """Short stable hash for logging without leaking prompt text."""
    if not text:
        return "0" * 12
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(value: Optional[str]) -> List[str]:
    if not value:
        return ["*"]
    return [item.strip() for item in value.split(",") if item.strip()] or ["*"]


class Config(BaseModel):
    """Bridge configuration"""
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # Credentials
    replicate_api_token: str = ""
    openai_api_key: str = ""

    # Endpoints
    replicate_endpoint: str = "https://api.replicate.com/v1"
    openai_endpoint: str = "https://api.openai.com/v1"
    replicate_mode: str = "http"

    # Models
    vectorizer_model: str = "methexis-inc/img2svg"
    vector_model: str = "recraft-ai/recraft-20b-svg"
    raster_model: str = "black-forest-labs/flux-schnell"
    edit_model: str = "black-forest-labs/flux-kontext-pro"
    openai_image_model: str = "gpt-image-1"
    openai_image_size: str = "1024x1024"

    # Polling
    poll_interval: float = 2.5
    max_poll_seconds: float = 120.0
    max_poll_attempts: int = 0
    poll_backoff: float = 1.0
    poll_max_interval: float = 10.0

    # Outbound HTTP
    request_timeout: float = 60.0
    download_timeout: float = 30.0

    # Inbound HTTP
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    max_body_mb: float = 30.0
    # Honor X-Forwarded-For only behind a trusted reverse proxy
    trust_proxy: bool = False

    # Disk cache
    persist_outputs: bool = False
    output_dir: str = "outputs"
    public_base_url: str = ""

    # 0 disables the per-IP daily counter
    daily_limit: int = 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if environ is None else environ

        def get(name, default=""):
            value = env.get(name)
            return default if value is None or value == "" else value

        return cls(
            host=get("HOST", "0.0.0.0"),
            port=int(get("PORT", get("BRIDGE_PORT", "3000"))),
            log_level=get("LOG_LEVEL", "INFO").upper(),
            replicate_api_token=get("REPLICATE_API_TOKEN"),
            openai_api_key=get("OPENAI_API_KEY"),
            replicate_endpoint=get("REPLICATE_ENDPOINT", "https://api.replicate.com/v1").rstrip("/"),
            openai_endpoint=get("OPENAI_ENDPOINT", "https://api.openai.com/v1").rstrip("/"),
            replicate_mode=get("REPLICATE_MODE", "http").lower(),
            vectorizer_model=get("VECTORIZER_MODEL", "methexis-inc/img2svg"),
            vector_model=get("VECTOR_MODEL", "recraft-ai/recraft-20b-svg"),
            raster_model=get("RASTER_MODEL", "black-forest-labs/flux-schnell"),
            edit_model=get("EDIT_MODEL", get("REPLICATE_MODEL_ID", "black-forest-labs/flux-kontext-pro")),
            openai_image_model=get("OPENAI_IMAGE_MODEL", "gpt-image-1"),
            openai_image_size=get("OPENAI_IMAGE_SIZE", "1024x1024"),
            poll_interval=float(get("POLL_INTERVAL", "2.5")),
            max_poll_seconds=float(get("MAX_POLL_SECONDS", "120")),
            max_poll_attempts=int(get("MAX_POLL_ATTEMPTS", "0")),
            poll_backoff=float(get("POLL_BACKOFF", "1.0")),
            poll_max_interval=float(get("POLL_MAX_INTERVAL", "10")),
            request_timeout=float(get("REQUEST_TIMEOUT", "60")),
            download_timeout=float(get("DOWNLOAD_TIMEOUT", "30")),
            cors_origins=_env_list(env.get("CORS_ORIGIN")),
            max_body_mb=float(get("MAX_BODY_MB", "30")),
            trust_proxy=_env_bool(env.get("TRUST_PROXY")),
            persist_outputs=_env_bool(env.get("PERSIST_OUTPUTS")),
            output_dir=get("OUTPUT_DIR", "outputs"),
            public_base_url=get("PUBLIC_BASE_URL").rstrip("/"),
            daily_limit=int(get("DAILY_LIMIT", "0")),
        )

    @property
    def max_body_bytes(self) -> int:
        return int(self.max_body_mb * 1024 * 1024)

    @property
    def secrets(self) -> List[str]:
        return [s for s in (self.replicate_api_token, self.openai_api_key) if s]

    def print_config(self):
        logger.info("=" * 80)
        logger.info("NOVA IMAGE BRIDGE CONFIGURATION")
        logger.info("=" * 80)
        logger.info(f"Listen: {self.host}:{self.port}")
        logger.info(f"CORS origins: {', '.join(self.cors_origins)}")
        logger.info(f"Body limit: {self.max_body_mb:g} MB")
        logger.info("")
        logger.info("MODELS:")
        logger.info(f"  Raster:     openai:{self.openai_image_model} (primary) -> {self.raster_model}")
        logger.info(f"  Vector:     {self.vectorizer_model} (primary) -> {self.vector_model}")
        logger.info(f"  Edit:       {self.edit_model}")
        logger.info("")
        logger.info("PROVIDER STATUS:")
        logger.info(f"  Replicate ({self.replicate_mode}): {'CONFIGURED' if self.replicate_api_token else 'NOT CONFIGURED (REPLICATE_API_TOKEN not set)'}")
        logger.info(f"  OpenAI Images: {'CONFIGURED' if self.openai_api_key else 'NOT CONFIGURED (OPENAI_API_KEY not set)'}")
        logger.info("")
        logger.info(f"Polling: every {self.poll_interval}s, max {self.max_poll_seconds}s"
                    f"{f', max {self.max_poll_attempts} attempts' if self.max_poll_attempts else ''}")
        if self.persist_outputs:
            logger.info(f"Disk cache: {self.output_dir} -> {self.public_base_url or '(relative URLs)'}/outputs")
        if self.daily_limit:
            logger.info(f"Daily limit: {self.daily_limit} generations per IP (in-memory)")
            logger.info(f"Client IP source: {'X-Forwarded-For' if self.trust_proxy else 'socket peer'}")
        logger.info("=" * 80)
