from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from autolister.config import settings
from autolister.errors import InferenceError
from autolister.utils.logger import logger


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class AspectInference:
    aspect_value: str
    keyword_pattern: Optional[str]
    confidence: Confidence


def extract_json_object(content: str) -> Optional[Dict[str, Any]]:
    """Pull the first ``{...}`` block out of a model reply and decode it."""
    if not content:
        return None
    match = _JSON_OBJECT_RE.search(content)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def parse_aspect_inference(content: str) -> Optional[AspectInference]:
    """Decode an aspect suggestion; ``None`` when the reply is unusable.

    A reply is unusable when it has no JSON object, no ``aspect_value`` or a
    confidence outside high/medium/low.
    """
    data = extract_json_object(content)
    if data is None:
        return None

    value = data.get("aspect_value", data.get("aspectValue"))
    pattern = data.get("keyword_pattern", data.get("keywordPattern"))
    raw_confidence = data.get("confidence")

    if not isinstance(value, str) or not value.strip():
        return None
    try:
        confidence = Confidence(str(raw_confidence).strip().lower())
    except ValueError:
        return None

    if pattern is not None and not isinstance(pattern, str):
        pattern = None

    return AspectInference(
        aspect_value=value.strip(),
        keyword_pattern=(pattern or "").strip() or None,
        confidence=confidence,
    )


class InferenceClient:
    """OpenAI-compatible chat completions over httpx."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.base_url = (base_url or settings.OPENAI_API_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def complete(self, prompt: str, *, system: Optional[str] = None, max_tokens: int = 300) -> str:
        if not self.api_key:
            raise InferenceError("OPENAI_API_KEY is not configured")

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.0,
            "max_tokens": max_tokens,
        }
        url = f"{self.base_url}/v1/chat/completions"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    url,
                    headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                    json=payload,
                )
        except httpx.RequestError as exc:
            logger.error("[inference] provider request failed: %s", exc)
            raise InferenceError("Failed to contact inference provider") from exc

        if resp.status_code >= 400:
            logger.error("[inference] provider HTTP %s: %s", resp.status_code, resp.text[:500])
            raise InferenceError(f"Inference provider returned HTTP {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("[inference] unexpected response structure: %s", resp.text[:500])
            raise InferenceError("Inference provider returned an unexpected payload") from exc

        return content or ""


ASPECT_SYSTEM_PROMPT = (
    "You are an eBay listing expert. You map product titles to eBay item "
    "specifics and write case-insensitive regular expressions that detect "
    "the same value in other titles. Respond with JSON only."
)


def build_aspect_prompt(
    *,
    aspect_name: str,
    product_title: str,
    category_name: Optional[str],
    brand: Optional[str] = None,
    model: Optional[str] = None,
    allowed_values: Optional[list] = None,
) -> str:
    lines = [
        f'eBay requires the item specific "{aspect_name}" for a listing in '
        f'category "{category_name or "unknown"}".',
        "",
        f"Product title: {product_title}",
    ]
    if brand:
        lines.append(f"Brand: {brand}")
    if model:
        lines.append(f"Model: {model}")
    if allowed_values:
        shown = ", ".join(str(v) for v in allowed_values[:50])
        lines.append("")
        lines.append(f"The value MUST be one of: {shown}")
    lines.extend([
        "",
        "Return a JSON object with exactly these keys:",
        '  "aspect_value": the value for this product,',
        '  "keyword_pattern": a regex (matched case-insensitively against titles) '
        "that identifies products with this value, using | for alternatives,",
        '  "confidence": "high", "medium" or "low".',
        'Use "high" only when the title states the value explicitly.',
    ])
    return "\n".join(lines)


def build_same_product_prompt(primary_title: str, primary_brand: Optional[str],
                              candidate_asin: str, candidate_title: str,
                              candidate_brand: Optional[str]) -> str:
    return (
        "PRIMARY PRODUCT:\n"
        f"Title: {primary_title}\n"
        f"Brand: {primary_brand or 'Unknown'}\n\n"
        "CANDIDATE PRODUCT:\n"
        f"ASIN: {candidate_asin}\n"
        f"Title: {candidate_title}\n"
        f"Brand: {candidate_brand or 'Unknown'}\n\n"
        "Question: Is the CANDIDATE the same product as the primary product?\n\n"
        "Answer YES if both are the same kind of product, or the candidate is a "
        "variant of the primary (different color, size or model).\n"
        "Answer NO if the candidate is a different kind of product, an accessory "
        "(charger, cable, case, adapter), serves a different purpose, or is a "
        "different year's model.\n\n"
        "Answer with ONLY: YES or NO"
    )


inference_client = InferenceClient()
