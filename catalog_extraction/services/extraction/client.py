"""
Vision-model client for attribute extraction.

Sends one image plus schema-derived instructions to an OpenAI-compatible chat
completion endpoint, then validates the JSON answer into strict
``AttributeDetail`` objects before anything reaches the row store.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import time
from typing import Any, Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from .errors import (
    ExtractionError,
    ImageQualityRejectedError,
    MalformedResponseError,
    RateLimitedError,
    RemoteServiceError,
    SchemaValidationFailedError,
    TransientNetworkError,
)
from .models import AttributeDetail, AttributeMap, ExtractionOutcome, clamp_confidence
from .retry import RetryPolicy, Sleep
from .schemas import SchemaItem

logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"^```(\w*\n)?")
_NON_NUMERIC = re.compile(r"[^0-9.\-]+")


def build_extraction_prompt(schema: Sequence[SchemaItem]) -> str:
    """
    Build the instruction text for a schema snapshot.

    Args:
        schema: Ordered attribute definitions

    Returns:
        Prompt asking for one JSON object keyed by every schema key
    """
    lines = []
    for item in schema:
        if item.type == "select" and item.allowed_values:
            options = ", ".join(f"'{v}'" for v in item.allowed_values)
            hint = f"choose from [{options}] or report what you see"
        elif item.type == "number":
            hint = "a numeric value only"
        else:
            hint = "free text"
        req = " (required)" if item.required else ""
        desc = f" {item.description}." if item.description else ""
        lines.append(f'- "{item.key}" ({item.label}, {item.type}{req}): {hint}.{desc}')

    example = {
        "neck": {
            "schemaValue": "POLO NECK",
            "rawValue": "Polo collar with buttons",
            "isNewDiscovery": False,
            "visualConfidence": 100,
            "mappingConfidence": 95,
        }
    }

    return f"""You are a master data specialist. Analyze the product image and extract its attributes precisely.

Work in two steps:
1. Raw visual scan: the literal value you observe for each attribute, with a "visualConfidence" (0-100).
2. Schema mapping: the best matching schema value for that observation, with a "mappingConfidence" (0-100).

SCHEMA:
{chr(10).join(lines)}

OUTPUT FORMAT:
- Respond with ONE raw JSON object containing EVERY schema key listed above
- Each value is either null (attribute not visible) or an object with:
  "schemaValue", "rawValue", "isNewDiscovery", "visualConfidence", "mappingConfidence", optional "reasoning"
- Set "isNewDiscovery" to true when the observed value has no good match among the allowed values
- Lower the confidence scores when the image is unclear

Example for one key: {json.dumps(example)}"""


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    match = _FENCE_START.match(cleaned)
    if match:
        cleaned = cleaned[match.end():]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _best_match(value: str, allowed: Sequence[str]) -> Optional[str]:
    lowered = value.lower()
    for option in allowed:
        if option.lower() == lowered:
            return option
    for option in allowed:
        candidate = option.lower()
        if candidate in lowered or lowered in candidate:
            return option
    return None


def normalize_value(value: Any, item: SchemaItem) -> tuple[Any, bool]:
    """Map a reported value onto the schema item.

    Returns ``(schema_value, unmatched)`` where ``unmatched`` is True for a select
    value with no acceptable allowed-value match.
    """
    if value is None:
        return None, False
    text = str(value).strip()
    if not text:
        return None, False

    if item.type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value, False
        cleaned = _NON_NUMERIC.sub("", text)
        try:
            number = float(cleaned)
        except ValueError:
            return None, False
        return (int(number) if number.is_integer() else number), False

    if item.type == "select" and item.allowed_values:
        match = _best_match(text, item.allowed_values)
        if match is None:
            return text, True
        return match, False

    return text, False


def validate_attributes(payload: Any, schema: Sequence[SchemaItem]) -> AttributeMap:
    """
    Validate a decoded response against the schema snapshot.

    Every schema key must be present; each value must be null or an object
    carrying at least ``schemaValue`` and ``rawValue``. Keys outside the schema
    are dropped.

    Raises:
        SchemaValidationFailedError: on any shape mismatch
    """
    if not isinstance(payload, dict):
        raise SchemaValidationFailedError("Response is not a JSON object keyed by schema attributes")

    missing = [item.key for item in schema if item.key not in payload]
    if missing:
        raise SchemaValidationFailedError(f"Response is missing schema keys: {', '.join(missing)}")

    result: AttributeMap = {}
    for item in schema:
        detail = payload[item.key]
        if detail is None:
            result[item.key] = None
            continue
        if not isinstance(detail, dict) or "schemaValue" not in detail or "rawValue" not in detail:
            raise SchemaValidationFailedError(
                f"Attribute '{item.key}' must be null or an object with schemaValue and rawValue"
            )

        raw = detail.get("rawValue")
        raw_value = None
        if raw is not None:
            raw_value = str(raw).strip() or None
        schema_value, unmatched = normalize_value(detail.get("schemaValue"), item)
        if schema_value is None and raw_value is not None:
            # best-effort mapping from the observation instead of dropping it
            schema_value, unmatched = normalize_value(raw_value, item)
            if schema_value is None:
                schema_value, unmatched = raw_value, item.type == "select"

        reasoning = detail.get("reasoning")
        result[item.key] = AttributeDetail(
            schema_value=schema_value,
            raw_value=raw_value,
            is_new_discovery=bool(detail.get("isNewDiscovery")) or unmatched,
            visual_confidence=clamp_confidence(detail.get("visualConfidence")),
            mapping_confidence=clamp_confidence(detail.get("mappingConfidence")),
            reasoning=str(reasoning) if reasoning is not None else None,
        )
    return result


def parse_response(content: str, schema: Sequence[SchemaItem]) -> AttributeMap:
    try:
        payload = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Vision response was not valid JSON: {exc.msg}") from exc
    return validate_attributes(payload, schema)


def classify_error(exc: Exception) -> ExtractionError:
    """Translate an SDK/transport exception into the pipeline's error taxonomy."""
    if isinstance(exc, ExtractionError):
        return exc
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(f"Rate limited by vision service: {exc.message}")
    if isinstance(exc, openai.APITimeoutError):
        return TransientNetworkError("Vision service request timed out")
    if isinstance(exc, openai.APIConnectionError):
        return TransientNetworkError(f"Vision service unreachable: {exc.message}")
    if isinstance(exc, openai.InternalServerError):
        return TransientNetworkError(f"Vision service returned {exc.status_code}: {exc.message}")
    if isinstance(exc, openai.BadRequestError) and "image" in (exc.message or "").lower():
        return ImageQualityRejectedError(
            "Image quality too low or corrupted. Please use a higher resolution image."
        )
    if isinstance(exc, openai.APIStatusError):
        return RemoteServiceError(f"Vision service returned {exc.status_code}: {exc.message}", exc.status_code)
    if isinstance(exc, httpx.TransportError):
        return TransientNetworkError(f"Vision service transport error: {exc}")
    return RemoteServiceError(f"Vision request failed: {exc}")


class ExtractionClient:
    """Performs one extraction, retrying transient failures under ``policy``."""

    def __init__(
        self,
        llm_client: Any,
        model: str,
        *,
        policy: Optional[RetryPolicy] = None,
        temperature: float = 0.1,
        max_tokens: int = 2048,
        min_image_chars: int = 1000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = llm_client
        self.model = model
        self.policy = policy or RetryPolicy()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.min_image_chars = max(0, int(min_image_chars))
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Any) -> "ExtractionClient":
        llm_client = AsyncOpenAI(
            base_url=settings.vision_base_url,
            api_key=settings.vision_api_key or "missing-api-key",
            timeout=httpx.Timeout(settings.vision_timeout, connect=min(10.0, settings.vision_timeout)),
            max_retries=0,
        )
        policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            rate_limit_delay=settings.rate_limit_retry_delay,
        )
        return cls(
            llm_client,
            settings.vision_model,
            policy=policy,
            temperature=settings.vision_temperature,
            max_tokens=settings.vision_max_tokens,
            min_image_chars=settings.min_image_chars,
        )

    async def extract(
        self,
        image: bytes,
        schema: Sequence[SchemaItem],
        *,
        media_type: str = "image/jpeg",
        label: Optional[str] = None,
    ) -> ExtractionOutcome:
        """
        Extract every schema attribute from one image.

        Args:
            image: Preview image bytes
            schema: Schema snapshot the result must conform to
            media_type: MIME type used in the inline data URL
            label: Name used in log lines (usually the source filename)

        Returns:
            ExtractionOutcome with validated attributes and usage metadata

        Raises:
            ExtractionError: a terminal failure, or a transient one after the
                retry budget is spent
        """
        encoded = base64.b64encode(image).decode("ascii")
        if len(encoded) < self.min_image_chars:
            raise ImageQualityRejectedError("Image file too small or corrupted. Please use a higher quality image.")

        data_url = f"data:{media_type};base64,{encoded}"
        prompt = build_extraction_prompt(schema)
        name = label or "extraction"
        start = time.perf_counter()

        async def attempt(number: int) -> ExtractionOutcome:
            logger.info("Vision call for %s: attempt %d/%d", name, number, self.policy.max_attempts)
            return await self._attempt(data_url, prompt, schema)

        outcome = await self.policy.run(attempt, sleep=self._sleep, label=f"Vision call for {name}")
        outcome.processing_time_ms = int(round((time.perf_counter() - start) * 1000))
        logger.info("Extracted %s in %dms, tokens=%d", name, outcome.processing_time_ms, outcome.tokens_used)
        return outcome

    async def _attempt(self, data_url: str, prompt: str, schema: Sequence[SchemaItem]) -> ExtractionOutcome:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise classify_error(exc) from exc

        if not response.choices:
            raise MalformedResponseError("Vision service returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise MalformedResponseError("Vision service returned an empty message")

        attributes = parse_response(content, schema)
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage is not None else 0
        return ExtractionOutcome(
            attributes=attributes,
            tokens_used=tokens,
            model_used=getattr(response, "model", None) or self.model,
            processing_time_ms=0,
        )
