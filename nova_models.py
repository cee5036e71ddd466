"""
API models and the request normalizer.

Front ends have posted the same concepts under many names over time
(``ref``/``image``/``image_url``/``reference``, ``target``/``mode``,
``parameters``/``params``); ``normalize_request`` folds them all into one
``GenerationRequest``.
"""

import base64
import binascii
import json
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from nova_providers import (
    InvalidRequest,
    download_image,
    is_data_url,
    is_http_url,
    sniff_mime,
    split_data_url,
)

REFERENCE_FIELDS = ("referenceImage", "reference", "ref", "image", "image_url", "image_base64")
SIZE_RE = re.compile(r"^\d{2,5}x\d{2,5}$")


# ============================================
# REQUEST MODELS
# ============================================
class Target(str, Enum):
    OWNER = "owner"
    CUSTOMER = "customer"
    BOTH = "both"

    @property
    def wants_owner(self) -> bool:
        return self in (Target.OWNER, Target.BOTH)

    @property
    def wants_customer(self) -> bool:
        return self in (Target.CUSTOMER, Target.BOTH)


TARGET_ALIASES = {
    "owner": Target.OWNER,
    "vector": Target.OWNER,
    "customer": Target.CUSTOMER,
    "realistic": Target.CUSTOMER,
    "raster": Target.CUSTOMER,
    "both": Target.BOTH,
}


class GenerationParameters(BaseModel):
    size: Optional[str] = Field(default=None, description="WIDTHxHEIGHT")
    steps: Optional[int] = Field(default=None, description="Sampling steps")
    guidance: Optional[float] = Field(default=None, description="Guidance / CFG scale")
    strength: Optional[float] = Field(default=None, description="Reference strength, 0..1")
    seed: Optional[int] = Field(default=None, description="Seed")


class ReferenceImage(BaseModel):
    """A reference image: a remote URL or inline bytes."""
    url: Optional[str] = None
    data: Optional[bytes] = None
    mime: str = "image/png"
    filename: Optional[str] = None
    # Exactly what the caller sent, for echo responses
    original: Optional[str] = None

    def as_ref(self) -> str:
        if self.url:
            return self.url
        return f"data:{self.mime};base64,{base64.b64encode(self.data or b'').decode('ascii')}"

    async def read_bytes(self, timeout: float = 30.0) -> Tuple[bytes, str]:
        if self.data is not None:
            return self.data, self.mime
        return await download_image(self.url, timeout=timeout, provider="reference")


class GenerationRequest(BaseModel):
    prompt: str = ""
    reference: Optional[ReferenceImage] = None
    target: Target = Target.BOTH
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    negative: str = ""
    font: str = ""
    strict: bool = False
    title: Optional[str] = None
    source: Optional[str] = None
    model: Optional[str] = None

    @property
    def is_echo(self) -> bool:
        """Reference without prompt: hand the reference back, no provider calls."""
        return not self.prompt and self.reference is not None


# ============================================
# RESPONSE MODELS
# ============================================
class GenerationResult(BaseModel):
    owner: Optional[str] = None
    customer: Optional[str] = None
    provenance: Dict[str, Any] = Field(default_factory=dict)
    title: str = "Generated"
    base_from: str = "prompt"


class GenerateResponse(GenerationResult):
    ok: bool = True


class EditResponse(BaseModel):
    ok: bool = True
    image: str
    used: str
    strength: float
    steps: int


class HealthResponse(BaseModel):
    ok: bool = True
    vectorModel: str
    rasterModel: str
    vectorizerModel: str
    editModel: str
    openai: bool
    persist: bool


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    detail: Optional[List[Dict[str, str]]] = None


# ============================================
# NORMALIZER
# ============================================
def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_mapping(name: str, value: Any) -> Dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        # multipart forms carry nested objects as JSON text
        try:
            value = json.loads(value)
        except ValueError:
            raise InvalidRequest(f"'{name}' must be an object")
    if not isinstance(value, dict):
        raise InvalidRequest(f"'{name}' must be an object")
    return value


def _coerce(name: str, value: Any, kind):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidRequest(f"Invalid value for '{name}': {value!r}")
    try:
        if kind is int:
            return int(float(value))
        return kind(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid value for '{name}': {value!r}")


def parse_parameters(body: Mapping[str, Any]) -> GenerationParameters:
    merged = dict(_as_mapping("parameters", body.get("parameters", body.get("params"))))
    for key in ("size", "steps", "guidance", "strength", "seed"):
        if body.get(key) not in (None, ""):
            merged[key] = body[key]

    size = merged.get("size")
    if size not in (None, ""):
        size = str(size).strip().lower()
        if size != "auto" and not SIZE_RE.match(size):
            raise InvalidRequest(f"Invalid value for 'size': {merged.get('size')!r} (expected WIDTHxHEIGHT)")
    else:
        size = None

    strength = _coerce("strength", merged.get("strength"), float)
    if strength is not None:
        strength = max(0.0, min(1.0, strength))

    return GenerationParameters(
        size=size,
        steps=_coerce("steps", merged.get("steps"), int),
        guidance=_coerce("guidance", merged.get("guidance"), float),
        strength=strength,
        seed=_coerce("seed", merged.get("seed"), int),
    )


def parse_reference(value: Any) -> Optional[ReferenceImage]:
    """URL, data URI or bare base64 -> ReferenceImage."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest("Reference image must be a URL or a base64 string")
    text = value.strip()
    if not text:
        return None

    if is_http_url(text):
        return ReferenceImage(url=text, original=value)

    if text.startswith("data:"):
        if not is_data_url(text):
            raise InvalidRequest("Reference data URI must be a base64 image")
        try:
            mime, data = split_data_url(text)
        except ValueError as e:
            raise InvalidRequest(f"Invalid reference image: {e}")
        return ReferenceImage(data=data, mime=mime, original=value)

    try:
        data = base64.b64decode("".join(text.split()), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("Unsupported reference image encoding (expected URL, data URI or base64)")
    if not data:
        return None
    return ReferenceImage(data=data, mime=sniff_mime(data) or "image/png", original=value)


def parse_target(body: Mapping[str, Any]) -> Target:
    raw = body.get("target") or body.get("mode") or "both"
    target = TARGET_ALIASES.get(str(raw).strip().lower())
    if target is None:
        raise InvalidRequest(f"Unknown target: {raw!r} (expected owner, customer or both)")
    return target


def prompt_from_product(body: Mapping[str, Any]) -> str:
    """Compose a prompt from product fields when no prompt text was sent."""
    product = body.get("product") or {}
    parts = []
    if isinstance(product, dict):
        label = " ".join(str(p) for p in (product.get("category"), product.get("name")) if p)
        if label:
            parts.append(f"Product mockup for laser/acrylic: {label}")
    if body.get("color"):
        parts.append(f"dominant color: {body['color']}")
    text = f"{str(body.get('text1') or '').strip()} {str(body.get('text2') or '').strip()}".strip()
    if text:
        parts.append(f'include the text: "{text}"')
    return ". ".join(parts)


def normalize_request(body: Mapping[str, Any],
                      upload: Optional[Tuple[bytes, str, str]] = None) -> GenerationRequest:
    """Build a GenerationRequest from a JSON body or multipart fields.

    ``upload`` is ``(bytes, content_type, filename)`` of a multipart ``file``.
    Raises InvalidRequest when neither a prompt nor a reference is present.
    """
    if not isinstance(body, Mapping):
        raise InvalidRequest("Request body must be a JSON object")

    reference = None
    if upload is not None and upload[0]:
        content, content_type, filename = upload
        mime = content_type if (content_type or "").startswith("image/") else (sniff_mime(content) or "image/png")
        reference = ReferenceImage(data=content, mime=mime, filename=filename)
    else:
        for field in REFERENCE_FIELDS:
            if body.get(field):
                reference = parse_reference(body[field])
                break

    prompt = str(body.get("prompt") or "").strip()
    if not prompt:
        prompt = prompt_from_product(body)

    if not prompt and reference is None:
        raise InvalidRequest("A prompt or a reference image is required")

    meta = _as_mapping("meta", body.get("meta"))
    return GenerationRequest(
        prompt=prompt,
        reference=reference,
        target=parse_target(body),
        parameters=parse_parameters(body),
        negative=str(body.get("negative") or body.get("negative_prompt") or "").strip(),
        font=str(body.get("font") or "").strip(),
        strict=_as_bool(body.get("strict", False)),
        title=meta.get("title") or body.get("title") or None,
        source=meta.get("source") or None,
        model=str(body.get("model")).strip() if body.get("model") else None,
    )
