"""
Identify a photographed pill with a vision model and compare it against the
patient's prescribed medications.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, no external call is made and the model is
   treated as having found no candidates.
2. Otherwise the OpenAI Responses API is called with the image inlined as a
   data URL.

Any exception raised by the SDK is converted into a RuntimeError so callers
have a consistent error path; a reply that is not JSON raises
:class:`VisionResponseError` carrying the raw text.
"""

from __future__ import annotations

import base64
import json
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote_plus

import structlog

from periop.metrics import PILL_CHECKS_TOTAL


logger = structlog.get_logger(__name__)

DEFAULT_VISION_MODEL = "gpt-4.1-mini"
DEFAULT_MIME = "image/jpeg"

SYSTEM_PROMPT = """
You are a cautious medication identifier looking at photos of solid oral dosage forms (tablets/capsules).
Rules:
- Return STRICT JSON only, no extra text.
- If imprint text is unclear/missing, set "needs_imprint"=true and suggest a few likely characters.
- Never give medical advice; include a "warnings" array reminding verification by pharmacist.
JSON schema:
{
  "candidates": [
    {
      "name": "string",
      "possible_dose_mg": number|null,
      "reasoning": "string",
      "confidence_0to1": 0.0-1.0,
      "imprint": "string|null",
      "color": "string|null",
      "shape": "string|null"
    }
  ]
}
If multiple plausible names exist, include 2-4 candidates.
""".strip()

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")
_WORD = re.compile(r"[a-z0-9]+")

_client = None


class VisionResponseError(RuntimeError):
    """The model replied with something that is not JSON."""

    def __init__(self, raw: str) -> None:
        super().__init__("LLM returned non-JSON")
        self.raw = raw


def _use_offline() -> bool:
    return os.getenv("USE_OFFLINE_MODEL", "").lower() in {"1", "true", "yes"}


def sniff_image_mime(data: bytes, declared: Optional[str] = None) -> str:
    """Return the image MIME type from magic bytes, falling back to ``declared``."""

    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if declared and declared.startswith("image/"):
        return declared
    return DEFAULT_MIME


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = _FENCE_END.sub("", _FENCE_START.sub("", text)).strip()
    return text


def _get_client():
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OpenAI key not configured.")
        from openai import OpenAI

        _client = OpenAI(api_key=api_key)
    return _client


def _request_completion(content: List[Dict[str, Any]], model: str) -> str:
    """Send ``content`` to the Responses API and return the output text."""

    try:
        response = _get_client().responses.create(
            model=model,
            input=[{"role": "user", "content": content}],
        )
    except RuntimeError:
        raise
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc
    return response.output_text or ""


def identify_pill(
    image: bytes,
    mime: str,
    *,
    imprint: str = "",
    color: str = "",
    shape: str = "",
    model: Optional[str] = None,
) -> Dict[str, Any]:
    """Ask the vision model for candidate identifications of ``image``."""

    if _use_offline():
        return {"candidates": [], "warnings": ["Offline mode: no identification performed."]}

    user_context = (
        f"Known (may be empty): imprint={imprint}, color={color}, shape={shape}.\n"
        "Use these hints when ranking candidates."
    )
    data_url = f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"
    content = [
        {"type": "input_text", "text": SYSTEM_PROMPT},
        {"type": "input_text", "text": user_context},
        {"type": "input_image", "image_url": data_url, "detail": "high"},
    ]
    raw = strip_code_fences(
        _request_completion(content, model or os.getenv("PERIOP_VISION_MODEL", DEFAULT_VISION_MODEL))
    )
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        PILL_CHECKS_TOTAL.labels("non_json").inc()
        logger.warning("pill_check_non_json", length=len(raw))
        raise VisionResponseError(raw) from None
    if not isinstance(parsed, dict):
        raise VisionResponseError(raw)
    if not isinstance(parsed.get("candidates"), list):
        parsed["candidates"] = []
    return parsed


def _words(value: Any) -> List[str]:
    return _WORD.findall(str(value or "").lower())


def _names_match(candidate: str, title: str) -> bool:
    candidate_words = _words(candidate)
    title_words = _words(title)
    if not candidate_words or not title_words:
        return False
    # The leading word of a drug name is its distinguishing part.
    return candidate_words[0] in title_words or title_words[0] in candidate_words


def _confidence(candidate: Mapping[str, Any]) -> Optional[float]:
    try:
        return float(candidate.get("confidence_0to1"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def match_medication(
    candidates: Sequence[Mapping[str, Any]],
    medications: Sequence[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Pick the highest ranked candidate that is on the medication list."""

    usable = [c for c in candidates if isinstance(c, Mapping) and c.get("name")]
    if not usable:
        return {
            "matched": False,
            "identified_name": None,
            "confidence": None,
            "reason": None,
            "medication": None,
            "message": "The pill could not be identified. Please check with your pharmacist.",
        }

    for candidate in usable:
        for medication in medications:
            if _names_match(candidate["name"], medication.get("title") or ""):
                return {
                    "matched": True,
                    "identified_name": candidate["name"],
                    "confidence": _confidence(candidate),
                    "reason": candidate.get("reasoning"),
                    "medication": {
                        "title": medication.get("title"),
                        "description": medication.get("description"),
                    },
                    "message": f"{candidate['name']} matches your prescribed medication.",
                }

    best = usable[0]
    return {
        "matched": False,
        "identified_name": best["name"],
        "confidence": _confidence(best),
        "reason": best.get("reasoning"),
        "medication": None,
        "message": f"{best['name']} is not on your current medication list. Please confirm with your care team.",
    }


def verification_links(imprint: str, color: str, shape: str) -> List[Dict[str, str]]:
    core = " ".join(part for part in (imprint, color, shape) if part)
    query = quote_plus(f"site:drugs.com pill identifier {core}".strip())
    return [
        {"label": "Drugs.com site search", "url": f"https://www.google.com/search?q={query}"},
    ]


def check_pill(
    image: bytes,
    *,
    declared_mime: Optional[str],
    medications: Sequence[Mapping[str, Any]],
    version_ids: Sequence[int],
    imprint: str = "",
    color: str = "",
    shape: str = "",
) -> Dict[str, Any]:
    """Identify ``image`` and compare the result with ``medications``."""

    mime = sniff_image_mime(image, declared_mime)
    parsed = identify_pill(image, mime, imprint=imprint, color=color, shape=shape)
    candidates = parsed.get("candidates") or []
    best = candidates[0] if candidates and isinstance(candidates[0], Mapping) else {}

    used_imprint = (imprint or best.get("imprint") or "").strip()
    used_color = (color or best.get("color") or "").strip()
    used_shape = (shape or best.get("shape") or "").strip()

    decision = match_medication(candidates, medications)
    PILL_CHECKS_TOTAL.labels("matched" if decision["matched"] else "unmatched").inc()
    logger.info(
        "pill_check_completed",
        candidates=len(candidates),
        medications=len(medications),
        matched=decision["matched"],
    )
    return {
        "image_checked": {"mime": mime, "size": len(image)},
        "inputs_used": {"imprint": used_imprint, "color": used_color, "shape": used_shape},
        "llm": parsed,
        "user_med_list_count": len(medications),
        "versionIds": list(version_ids),
        "decision": decision,
        "verification": {
            "strategy": "Open the links and confirm imprint/appearance matches official photos/descriptions.",
            "links": verification_links(used_imprint, used_color, used_shape),
        },
    }


__all__ = [
    "VisionResponseError",
    "sniff_image_mime",
    "strip_code_fences",
    "identify_pill",
    "match_medication",
    "verification_links",
    "check_pill",
]
