"""Gemini image generation backend for the diagram MCP server.

This module provides:
- The REST call to Gemini's native image generation (generateContent)
- Retry with exponential backoff for transient failures
- PNG validation and file output helpers

HTTP is done with the Python standard library (no external HTTP libraries).
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar
from urllib import error, request

from .config import API_KEY_ENVS, get_api_key

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MIME_TYPE = "image/png"
DEFAULT_MODEL_ID = "gemini-3-pro-image-preview"
DEFAULT_SIZE = "2K"

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# Failures that will not succeed on retry.
NON_RETRYABLE_STATUS = frozenset({400, 401, 403, 429})
NON_RETRYABLE_MARKERS = ("invalid api key", "api key not valid", "quota", "permission denied")

T = TypeVar("T")


class GenerationError(RuntimeError):
    """Image generation failed; ``retryable`` tells whether another attempt may help."""

    def __init__(self, message: str, *, retryable: bool = True, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


@dataclass
class ImageResult:
    """Result of an image generation request."""
    buffer: bytes
    mime_type: str
    response: Dict[str, Any]
    text: Optional[str] = None


def _is_retryable(message: str, status: Optional[int]) -> bool:
    if status in NON_RETRYABLE_STATUS:
        return False
    lowered = message.lower()
    return not any(marker in lowered for marker in NON_RETRYABLE_MARKERS)


def with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY_SECONDS,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds, backing off exponentially between attempts.

    Non-retryable GenerationErrors (quota, permission, invalid key) are raised
    immediately.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    last_exc: Optional[GenerationError] = None
    for attempt in range(max_attempts):
        try:
            return fn()
        except GenerationError as exc:
            if not exc.retryable:
                raise
            last_exc = exc
            if attempt < max_attempts - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Generation attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt + 1, max_attempts, exc, delay,
                )
                (sleep or time.sleep)(delay)
    raise last_exc


def build_url(*, base_url: str = DEFAULT_BASE_URL, model_id: str) -> str:
    """Build the API endpoint URL."""
    return f"{base_url.rstrip('/')}/{model_id}:generateContent"


def build_request_body(
    prompt: str,
    *,
    aspect_ratio: Optional[str] = None,
    size: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the request body for the Gemini API."""
    if not prompt or not isinstance(prompt, str):
        raise ValueError("Prompt is required and must be a string.")

    body: Dict[str, Any] = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }

    image_cfg: Dict[str, Any] = {}
    if aspect_ratio:
        image_cfg["aspectRatio"] = aspect_ratio
    if size:
        image_cfg["imageSize"] = size
    if image_cfg:
        body["generationConfig"]["imageConfig"] = image_cfg

    return body


def _http_post_json(url: str, payload: Dict[str, Any], api_key: str) -> Dict[str, Any]:
    """Make an HTTP POST request and return JSON response."""
    data = json.dumps(payload).encode("utf-8")
    req = request.Request(
        url,
        data=data,
        headers={
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
        },
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=120) as resp:
            content = resp.read()
            return json.loads(content.decode("utf-8"))
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore") if hasattr(exc, "read") else ""
        message = f"API error {exc.code}: {detail[:400]}"
        raise GenerationError(
            message, retryable=_is_retryable(message, exc.code), status=exc.code
        ) from exc
    except error.URLError as exc:
        raise GenerationError(f"Network error: {exc}") from exc
    except (TimeoutError, ValueError) as exc:
        raise GenerationError(f"Invalid or incomplete API response: {exc}") from exc


def _extract_parts(payload: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], str]:
    """Return the first inline image part and the concatenated text parts."""
    image_part: Optional[Dict[str, Any]] = None
    text = ""
    candidates = payload.get("candidates") or []
    for candidate in candidates[:1]:
        for part in candidate.get("content", {}).get("parts", []):
            inline = part.get("inlineData") or {}
            if inline.get("data"):
                image_part = {
                    "data": inline["data"],
                    "mimeType": inline.get("mimeType", DEFAULT_MIME_TYPE),
                }
            elif part.get("text"):
                text += part["text"]
    return image_part, text


def _buffer_from_inline(data: str) -> bytes:
    """Decode base64 image data."""
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as exc:
        raise GenerationError(f"Unable to decode image data: {exc}", retryable=False) from exc


def is_valid_png(buffer: bytes) -> bool:
    """Check the 8-byte PNG signature."""
    return len(buffer) > len(PNG_SIGNATURE) and buffer[:len(PNG_SIGNATURE)] == PNG_SIGNATURE


def generate_image(
    *,
    prompt: str,
    aspect_ratio: Optional[str] = None,
    size: Optional[str] = None,
    model_id: Optional[str] = None,
    base_url: str = DEFAULT_BASE_URL,
    api_key: Optional[str] = None,
    max_attempts: int = MAX_ATTEMPTS,
) -> ImageResult:
    """Generate a PNG image using the Gemini API.

    Args:
        prompt: Fully specified prompt text.
        aspect_ratio: Aspect ratio (e.g., "16:9", "1:1").
        size: Resolution tier ("1K", "2K" or "4K").
        model_id: Model identifier; defaults to DEFAULT_MODEL_ID.
        base_url: Base URL for the API.
        api_key: Optional API key (uses environment variables if not provided).
        max_attempts: Attempts for transient failures.

    Returns:
        ImageResult containing the PNG buffer, MIME type, raw response and any text.

    Raises:
        ValueError: If the prompt or API key is missing.
        GenerationError: If the API request fails or returns no usable PNG.
    """
    key = api_key or get_api_key()
    if not key:
        raise ValueError(f"Missing API key. Set {API_KEY_ENVS[0]} or {API_KEY_ENVS[1]}.")

    url = build_url(base_url=base_url, model_id=model_id or DEFAULT_MODEL_ID)
    body = build_request_body(prompt, aspect_ratio=aspect_ratio, size=size or DEFAULT_SIZE)

    response_json = with_retry(lambda: _http_post_json(url, body, key), max_attempts=max_attempts)
    part, text = _extract_parts(response_json)
    if not part:
        detail = f": {text}" if text else ""
        raise GenerationError(f"No image generated{detail}", retryable=False)

    buffer = _buffer_from_inline(part["data"])
    if not is_valid_png(buffer):
        raise GenerationError("Generated data is not a valid PNG image", retryable=False)

    return ImageResult(
        buffer=buffer,
        mime_type=part.get("mimeType", DEFAULT_MIME_TYPE),
        response=response_json,
        text=text or None,
    )


class GeminiImageGenerator:
    """The generation collaborator handed to each ToolDispatcher."""

    def __init__(self, api_key: Optional[str] = None, model_id: Optional[str] = None):
        self.api_key = api_key
        self.model_id = model_id or DEFAULT_MODEL_ID

    def generate(self, prompt: str, *, aspect_ratio: str, size: str) -> ImageResult:
        return generate_image(
            prompt=prompt,
            aspect_ratio=aspect_ratio,
            size=size,
            model_id=self.model_id,
            api_key=self.api_key,
        )


def write_image_to_file(buffer: bytes, target_path: "Path | str") -> Path:
    """Write image bytes to a file, creating directories as needed."""
    if not isinstance(buffer, (bytes, bytearray)):
        raise TypeError("Expected bytes for image buffer.")
    path = Path(target_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(buffer)
    return path
