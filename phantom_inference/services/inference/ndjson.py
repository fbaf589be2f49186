"""Helpers for Ollama's wire formats: NDJSON streams and base64 image payloads."""

import base64
import json
import re
from collections.abc import AsyncIterator

import httpx
import structlog

logger = structlog.get_logger()

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")

VISION_MODEL_KEYWORDS = ("llava", "bakllava", "qwen-vl", "qwen2-vl", "llava-llama3", "moondream")


def supports_vision(model: str) -> bool:
    """Guess from the model name whether it accepts image input."""
    model_lower = model.lower()
    return any(kw in model_lower for kw in VISION_MODEL_KEYWORDS)


def encode_image(image: str | bytes) -> str:
    """Return the bare base64 payload Ollama expects.

    Accepts raw image bytes, base64 text, or a `data:image/...;base64,` URL.
    """
    if isinstance(image, (bytes, bytearray)):
        return base64.b64encode(image).decode("ascii")
    return _DATA_URL_PREFIX.sub("", image)


async def iter_ndjson(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield one decoded object per non-empty line of a streaming response.

    Lines that are not JSON objects are logged and skipped.
    """
    async for line in response.aiter_lines():
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("ndjson_line_skipped", line=line[:200])
            continue
        if not isinstance(data, dict):
            logger.warning("ndjson_line_skipped", line=line[:200])
            continue
        yield data
