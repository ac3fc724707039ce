"""
Generation Providers
Upstream image/video generation backends and their failure classification.

- Pollinations: plain HTTP GET returning the media bytes (default)
- Gemini "Nano Banana": native image generation via google-genai
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from studio.core.config import settings
from studio.workers.base import (
    GenerationError,
    NonRetryableGenerationError,
    RetryableGenerationError,
)

logger = logging.getLogger(__name__)

MODEL_UNAVAILABLE_PATTERN = "No active flux servers available"


@dataclass(frozen=True)
class ErrorClassification:
    retryable: bool
    reason: str


@dataclass
class ProviderResult:
    """Raw output of one upstream generation call."""
    data: bytes
    content_type: str
    model: str


def classify_http_error(status: int) -> ErrorClassification:
    """
    Classify an upstream HTTP status.

    Retryable: 429 (rate limit), 5xx (server errors).
    Non-retryable: 400 (validation), 401/403 (auth), 404, other 4xx, anything unknown.
    """
    if status == 429:
        return ErrorClassification(True, "rate_limited")
    if status >= 500:
        return ErrorClassification(True, "server_error")
    if status in (401, 403):
        return ErrorClassification(False, "auth_error")
    if status == 400:
        return ErrorClassification(False, "validation_error")
    if status == 404:
        return ErrorClassification(False, "not_found")
    if 400 <= status < 500:
        return ErrorClassification(False, "client_error")
    return ErrorClassification(False, "unknown")


def is_model_unavailable(error_text: str) -> bool:
    """True when the body reports the known transient 'no flux servers' condition."""
    if not error_text:
        return False
    if MODEL_UNAVAILABLE_PATTERN in error_text:
        return True
    # Pollinations sometimes nests the message inside a JSON envelope
    try:
        parsed = json.loads(error_text)
    except ValueError:
        return False
    if isinstance(parsed, dict):
        nested = parsed.get("message") or parsed.get("error")
        return isinstance(nested, str) and MODEL_UNAVAILABLE_PATTERN in nested
    return False


def classify_api_error(status: int, error_text: str) -> ErrorClassification:
    """Combine body inspection with status classification."""
    if is_model_unavailable(error_text):
        return ErrorClassification(True, "model_unavailable")
    return classify_http_error(status)


class GenerationProvider(ABC):
    """One upstream generation backend."""

    name = "provider"
    default_model = ""

    @abstractmethod
    async def generate(self, params: Dict[str, Any]) -> ProviderResult:
        """
        Run one generation with fully-resolved params.

        Raises:
            GenerationError: classified as retryable or not
        """


# ---------------------------------------------------------------------------
# Pollinations
# ---------------------------------------------------------------------------

def build_pollinations_url(base_url: str, params: Dict[str, Any]) -> str:
    """Build the Pollinations generation URL for resolved params."""
    query: List[Tuple[str, str]] = []

    negative = (params.get("negative_prompt") or "").strip()
    if negative:
        query.append(("negative_prompt", negative))
    if params.get("model"):
        query.append(("model", params["model"]))
    if params.get("width"):
        query.append(("width", str(params["width"])))
    if params.get("height"):
        query.append(("height", str(params["height"])))
    seed = params.get("seed")
    if seed is not None and seed >= 0:
        query.append(("seed", str(seed)))

    # Always use high quality
    query.append(("quality", "high"))

    if params.get("enhance"):
        query.append(("enhance", "true"))
    if params.get("safe"):
        query.append(("safe", "true"))
    if params.get("private"):
        query.append(("private", "true"))
    if params.get("image"):
        query.append(("image", params["image"]))

    # Video options
    if params.get("duration"):
        query.append(("duration", str(params["duration"])))
    if params.get("audio") is not None:
        query.append(("audio", "true" if params["audio"] else "false"))
    if params.get("aspect_ratio"):
        query.append(("aspectRatio", params["aspect_ratio"]))

    prompt = quote(params["prompt"], safe="")
    return f"{base_url.rstrip('/')}/image/{prompt}?{urlencode(query)}"


def _display_error(text: str) -> str:
    """Unwrap JSON error bodies into a readable message."""
    try:
        parsed = json.loads(text)
    except ValueError:
        return text.strip()
    if isinstance(parsed, dict):
        message = parsed.get("message") or parsed.get("error")
        if isinstance(message, str):
            return message
    return json.dumps(parsed)


class PollinationsClient(GenerationProvider):
    """Pollinations image/video API."""

    name = "pollinations"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.POLLINATIONS_BASE_URL
        self.api_key = api_key if api_key is not None else settings.POLLINATIONS_API_KEY
        self.timeout = timeout or settings.GENERATION_TIMEOUT
        self.default_model = settings.POLLINATIONS_DEFAULT_MODEL
        self._transport = transport

    async def generate(self, params: Dict[str, Any]) -> ProviderResult:
        url = build_pollinations_url(self.base_url, params)
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        # Log without the prompt, which may contain personal data
        logger.info(
            f"[Pollinations] Generating model={params.get('model') or self.default_model} "
            f"size={params.get('width')}x{params.get('height')} seed={params.get('seed')}"
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise RetryableGenerationError(f"Upstream timeout: {e}", reason="timeout")
        except httpx.TransportError as e:
            raise RetryableGenerationError(f"Network error: {e}", reason="network_error")

        if response.status_code != 200:
            text = response.text
            classification = classify_api_error(response.status_code, text)
            raise GenerationError(
                f"HTTP {response.status_code}: {_display_error(text)}",
                retryable=classification.retryable,
                reason=classification.reason,
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        if not response.content:
            raise RetryableGenerationError("Upstream returned an empty body", reason="empty_response")

        return ProviderResult(
            data=response.content,
            content_type=content_type or "image/jpeg",
            model=params.get("model") or self.default_model,
        )


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiImageClient(GenerationProvider):
    """Image generation using native Gemini image models."""

    name = "gemini"

    def __init__(self, client: Optional[genai.Client] = None, model: Optional[str] = None):
        self.client = client or genai.Client(api_key=settings.GEMINI_API_KEY)
        self.default_model = model or settings.GEMINI_MODEL or "gemini-2.5-flash-image"
        logger.info(f"[Gemini] Initialized with model: {self.default_model}")

    async def _load_reference(self, image_url: str) -> Optional[bytes]:
        """Download a reference image; None if it cannot be fetched."""
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(image_url, timeout=30.0)
        except httpx.HTTPError as e:
            logger.warning(f"[Gemini] Failed to load reference image: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"[Gemini] Reference image HTTP {response.status_code}")
            return None
        return response.content

    def _build_prompt(self, params: Dict[str, Any]) -> str:
        prompt = params["prompt"]
        if params.get("negative_prompt"):
            prompt += f"\n\nAvoid: {params['negative_prompt']}"
        if params.get("width") and params.get("height"):
            prompt += f"\n\nOutput size: {params['width']}x{params['height']} pixels."
        return prompt

    async def generate(self, params: Dict[str, Any]) -> ProviderResult:
        model = params.get("model") or self.default_model
        contents: List[Any] = []

        if params.get("image"):
            ref_bytes = await self._load_reference(params["image"])
            if ref_bytes:
                contents.append(types.Part.from_bytes(data=ref_bytes, mime_type="image/jpeg"))
        contents.append(self._build_prompt(params))

        config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            seed=params.get("seed"),
        )

        logger.info(f"[Gemini] Generating image with model: {model}")
        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except genai_errors.ServerError as e:
            raise RetryableGenerationError(f"Gemini server error: {e}", reason="server_error", status_code=e.code)
        except genai_errors.ClientError as e:
            classification = classify_http_error(e.code or 400)
            raise GenerationError(
                f"Gemini request rejected: {e}",
                retryable=classification.retryable,
                reason=classification.reason,
                status_code=e.code,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise RetryableGenerationError(f"Gemini network error: {e}", reason="network_error")

        for candidate in response.candidates or []:
            if not candidate.content:
                continue
            for part in candidate.content.parts or []:
                if part.inline_data is not None and part.inline_data.data:
                    return ProviderResult(
                        data=part.inline_data.data,
                        content_type=part.inline_data.mime_type or "image/png",
                        model=model,
                    )

        finish_reason = "unknown"
        if response.candidates:
            finish_reason = str(response.candidates[0].finish_reason)
        # No image usually means a safety/policy block; retrying the same prompt won't help
        raise NonRetryableGenerationError(
            f"No image generated. Finish Reason: {finish_reason}",
            reason="policy_blocked",
        )


def get_provider(name: Optional[str] = None) -> GenerationProvider:
    """Provider selected by GENERATION_PROVIDER."""
    name = (name or settings.GENERATION_PROVIDER).lower()
    if name == "pollinations":
        return PollinationsClient()
    if name == "gemini":
        return GeminiImageClient()
    raise ValueError(f"Unknown generation provider: {name}")


__all__ = [
    "ErrorClassification",
    "ProviderResult",
    "classify_http_error",
    "classify_api_error",
    "is_model_unavailable",
    "build_pollinations_url",
    "GenerationProvider",
    "PollinationsClient",
    "GeminiImageClient",
    "get_provider",
]
