"""
Generation orchestration.

Two paths, each an ordered provider list run through ``with_fallback``:

- customer (raster): OpenAI Images -> Replicate raster model
- owner (vector):    Replicate vectorizer on a source image -> Replicate text-to-SVG

The paths run concurrently unless the vectorizer needs the customer image.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from nova_config import Config, prompt_hash
from nova_models import EditResponse, GenerationRequest, GenerationResult, ReferenceImage
from nova_providers import (
    AllProvidersFailed,
    FallbackOutcome,
    InvalidRequest,
    ModelRunner,
    OpenAIImagesClient,
    ProviderAttempt,
    fetch_as_data_url,
    openai_image_ref,
    redact,
    replicate_image_ref,
    with_fallback,
)
from nova_storage import OutputStore

logger = logging.getLogger(__name__)

PRESERVE_TEXT = ("Preserve the original composition, camera/lens, lighting, background and materials. "
                 "Do not alter the layout or framing.")
VECTOR_STYLE_TEXT = ("Clean vector style, flat solid colors, bold thick outlines, high contrast, "
                     "simplified shapes for laser engraving/cutting.")
STRICT_TEXT = "Change only the requested subject/shape; keep everything else identical."
REFERENCE_BASE_TEXT = "Use the reference image as the exact base for composition and lighting."

EDIT_GUIDE_TEXT = ("Only change the main figure and/or the overlaid texts. "
                   "Keep the original style, composition, background, and line weights. "
                   "Use font: {font}.")
EDIT_DEFAULT_FONT = "DM Sans"
EDIT_NEGATIVE_DEFAULTS = ", ".join([
    "no background changes",
    "no layout changes",
    "no composition changes",
    "no extra objects",
    "no new elements",
    "no 3D volume",
    "no gradients",
    "no realistic materials",
    "keep same lighting",
    "keep same line weights",
    "no style drift",
])

# Aspect ratios the fast raster models accept
ASPECT_RATIOS = [
    (1.0, "1:1"),
    (16 / 9, "16:9"),
    (9 / 16, "9:16"),
    (4 / 3, "4:3"),
    (3 / 4, "3:4"),
    (3 / 2, "3:2"),
    (2 / 3, "2:3"),
]


def dimensions_to_aspect_ratio(size: str) -> Optional[str]:
    """Map 'WIDTHxHEIGHT' to the closest supported aspect ratio."""
    try:
        width, height = (int(part) for part in size.lower().split("x"))
    except (AttributeError, ValueError):
        return None
    if width <= 0 or height <= 0:
        return None
    ratio = width / height
    return min(ASPECT_RATIOS, key=lambda o: abs(o[0] - ratio))[1]


def build_owner_prompt(request: GenerationRequest) -> str:
    parts = [PRESERVE_TEXT if request.reference else "", VECTOR_STYLE_TEXT, request.prompt]
    return " ".join(p for p in parts if p)


def build_customer_prompt(request: GenerationRequest) -> str:
    parts = [
        PRESERVE_TEXT if request.reference else "",
        STRICT_TEXT if request.strict else "",
        request.prompt,
    ]
    return " ".join(p for p in parts if p)


def build_edit_prompt(request: GenerationRequest) -> str:
    guided = EDIT_GUIDE_TEXT.format(font=request.font or EDIT_DEFAULT_FONT)
    return f"{guided} Instructions: {request.prompt}" if request.prompt else guided


class GenerationService:
    """Runs generation paths for normalized requests."""

    def __init__(self, config: Config, runner: ModelRunner, openai_client: OpenAIImagesClient,
                 store: Optional[OutputStore] = None):
        self.config = config
        self.runner = runner
        self.openai = openai_client
        self.store = store

    def describe(self) -> Dict[str, Any]:
        return {
            "vectorModel": self.config.vector_model,
            "rasterModel": self.config.raster_model,
            "vectorizerModel": self.config.vectorizer_model,
            "editModel": self.config.edit_model,
            "openai": bool(self.config.openai_api_key),
            "persist": self.store is not None,
        }

    # ------------------------------------------
    # attempts per path
    # ------------------------------------------
    def _raster_input(self, prompt: str, request: GenerationRequest) -> Dict[str, Any]:
        params = request.parameters
        model_input: Dict[str, Any] = {"prompt": prompt}
        aspect_ratio = dimensions_to_aspect_ratio(params.size) if params.size else None
        if aspect_ratio:
            model_input["aspect_ratio"] = aspect_ratio
        if params.steps is not None:
            model_input["num_inference_steps"] = params.steps
        if params.seed is not None:
            model_input["seed"] = params.seed
        return model_input

    def customer_attempts(self, request: GenerationRequest) -> List[ProviderAttempt]:
        prompt = build_customer_prompt(request)
        size = request.parameters.size or self.config.openai_image_size
        reference = request.reference

        async def openai_call():
            image = await reference.read_bytes(self.config.download_timeout) if reference else None
            payload = await self.openai.generate(prompt, size=size, image=image)
            return openai_image_ref(payload)

        fallback_prompt = f"{prompt} {REFERENCE_BASE_TEXT}" if reference else prompt
        raster_input = self._raster_input(fallback_prompt, request)

        async def raster_call():
            job = await self.runner.run_model(self.config.raster_model, raster_input)
            return replicate_image_ref(job, f"replicate:{self.config.raster_model}")

        return [
            ProviderAttempt("openai", self.config.openai_image_model, openai_call),
            ProviderAttempt("replicate", self.config.raster_model, raster_call),
        ]

    def owner_attempts(self, request: GenerationRequest, source: Optional[str]) -> List[ProviderAttempt]:
        attempts = []
        if source:
            async def vectorize_call():
                job = await self.runner.run_model(self.config.vectorizer_model, {"image": source})
                return replicate_image_ref(job, f"replicate:{self.config.vectorizer_model}")

            attempts.append(ProviderAttempt("replicate", self.config.vectorizer_model, vectorize_call))

        vector_input: Dict[str, Any] = {"prompt": build_owner_prompt(request)}
        if request.parameters.size and request.parameters.size != "auto":
            vector_input["size"] = request.parameters.size

        async def vector_call():
            job = await self.runner.run_model(self.config.vector_model, vector_input)
            return replicate_image_ref(job, f"replicate:{self.config.vector_model}")

        attempts.append(ProviderAttempt("replicate", self.config.vector_model, vector_call))
        return attempts

    # ------------------------------------------
    # helpers
    # ------------------------------------------
    async def _run_path(self, path: str, attempts: List[ProviderAttempt]
                        ) -> Tuple[Optional[FallbackOutcome], Optional[AllProvidersFailed]]:
        try:
            return await with_fallback(path, attempts), None
        except AllProvidersFailed as e:
            return None, e

    async def _stage_reference(self, reference: Optional[ReferenceImage]) -> Optional[str]:
        """Reference as something a provider can fetch: URL, stored public URL or data URI."""
        if reference is None:
            return None
        if reference.url:
            return reference.url
        if self.store is not None and self.store.public_base_url:
            try:
                stored = await asyncio.to_thread(self.store.save, reference.data, "reference")
            except ValueError as e:
                raise InvalidRequest(f"Reference is not a valid image: {e}")
            return stored.url
        return reference.as_ref()

    async def _persist(self, image: str, name: str) -> str:
        if self.store is None:
            return image
        try:
            stored = await self.store.persist_ref(image, name=name, timeout=self.config.download_timeout)
        except Exception as e:
            logger.error(f"💾 [Store] Could not persist output, returning provider reference: {e}")
            return image
        return stored.url

    def _provenance(self, outcome: Optional[FallbackOutcome], error: Optional[AllProvidersFailed]) -> Dict[str, Any]:
        secrets = self.config.secrets
        if outcome is None:
            return {"error": redact(str(error), secrets)}
        return {
            "provider": outcome.provider,
            "model": outcome.model,
            "fallback": outcome.used_fallback,
            "failures": [
                {"provider": f["provider"], "error": redact(f["error"], secrets)} for f in outcome.failures
            ],
        }

    # ------------------------------------------
    # operations
    # ------------------------------------------
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        request_id = uuid.uuid4().hex[:8]
        started = time.time()
        title = request.title or "Generated"
        base_from = request.source or ("reference" if request.reference else "prompt")

        if request.is_echo:
            ref = request.reference.original or request.reference.as_ref()
            logger.info(f"🪞 [Request {request_id}] Reference without prompt, echoing it back")
            return GenerationResult(
                owner=ref,
                customer=ref,
                provenance={"echo": True, "reference": True, "request_id": request_id},
                title=title,
                base_from=base_from,
            )

        target = request.target
        logger.info(f"📸 [Request {request_id}] target={target.value} prompt_hash={prompt_hash(request.prompt)} "
                    f"reference={request.reference is not None} strict={request.strict}")

        reference_ref = await self._stage_reference(request.reference)
        customer: Tuple[Optional[FallbackOutcome], Optional[AllProvidersFailed]] = (None, None)
        owner: Tuple[Optional[FallbackOutcome], Optional[AllProvidersFailed]] = (None, None)

        if target.wants_owner and target.wants_customer and reference_ref is None:
            # The vectorizer works from the customer image
            customer = await self._run_path("customer", self.customer_attempts(request))
            source = customer[0].image if customer[0] else None
            owner = await self._run_path("owner", self.owner_attempts(request, source))
        else:
            jobs = {}
            if target.wants_customer:
                jobs["customer"] = self._run_path("customer", self.customer_attempts(request))
            if target.wants_owner:
                jobs["owner"] = self._run_path("owner", self.owner_attempts(request, reference_ref))
            results = dict(zip(jobs, await asyncio.gather(*jobs.values())))
            customer = results.get("customer", customer)
            owner = results.get("owner", owner)

        requested = {}
        if target.wants_owner:
            requested["owner"] = owner
        if target.wants_customer:
            requested["customer"] = customer
        if all(outcome is None for outcome, _ in requested.values()):
            errors = [err for _, err in requested.values()]
            if len(errors) == 1:
                raise errors[0]
            raise AllProvidersFailed("owner+customer", [f for err in errors for f in err.failures])

        slug = request.title or request.prompt or "image"
        owner_image = await self._persist(owner[0].image, f"{slug}-owner") if owner[0] else None
        customer_image = await self._persist(customer[0].image, f"{slug}-customer") if customer[0] else None

        provenance: Dict[str, Any] = {
            "echo": False,
            "reference": request.reference is not None,
            "strict": request.strict,
            "request_id": request_id,
        }
        for name, (outcome, error) in requested.items():
            provenance[name] = self._provenance(outcome, error)

        logger.info(f"✅ [Request {request_id}] Completed in {time.time() - started:.2f}s "
                    f"(owner={'yes' if owner_image else 'no'}, customer={'yes' if customer_image else 'no'})")
        return GenerationResult(
            owner=owner_image,
            customer=customer_image,
            provenance=provenance,
            title=title,
            base_from=base_from,
        )

    async def edit(self, request: GenerationRequest) -> EditResponse:
        """Single-model image edit; no fallback, failures surface as ProviderError."""
        reference_ref = await self._stage_reference(request.reference)
        params = request.parameters

        strength = params.strength if params.strength is not None else (0.2 if reference_ref else 1.0)
        strength = max(0.0, min(1.0, strength))
        steps = max(12, min(50, params.steps if params.steps is not None else 28))
        model_id = request.model or self.config.edit_model

        model_input: Dict[str, Any] = {
            "prompt": build_edit_prompt(request),
            "negative_prompt": request.negative or EDIT_NEGATIVE_DEFAULTS,
            "num_inference_steps": steps,
            "guidance": params.guidance if params.guidance is not None else 3.5,
        }
        if params.seed is not None:
            model_input["seed"] = params.seed
        if reference_ref:
            model_input["image"] = reference_ref
            model_input["strength"] = strength

        logger.info(f"✏️ [Edit] model={model_id} steps={steps} strength={strength} "
                    f"prompt_hash={prompt_hash(request.prompt)}")
        job = await self.runner.run_model(model_id, model_input)
        image_ref = replicate_image_ref(job, f"replicate:{model_id}")
        image = await fetch_as_data_url(image_ref, timeout=self.config.download_timeout, provider=f"replicate:{model_id}")
        return EditResponse(image=image, used=f"replicate:{model_id}", strength=strength, steps=steps)
