"""Normalize raw LLM output into the strict AIRecommendations contract.

Known spelling variance is repaired first (envelopes, legacy field names,
impact/effort synonyms), then the result is validated strictly. Anything the
repair step does not recognize is left alone so validation rejects it.
"""

import json
import logging

from pydantic import ValidationError

from schemas import AIRecommendations

log = logging.getLogger(__name__)

LEVEL_SYNONYMS: dict[str, str] = {
    "high": "high",
    "hi": "high",
    "h": "high",
    "maximum": "high",
    "max": "high",
    "major": "high",
    "medium": "med",
    "med": "med",
    "middle": "med",
    "mid": "med",
    "moderate": "med",
    "average": "med",
    "normal": "med",
    "m": "med",
    "low": "low",
    "lo": "low",
    "l": "low",
    "minimum": "low",
    "min": "low",
    "minor": "low",
    "small": "low",
}

WRAPPER_KEYS = ("AIRecommendationsV1", "recommendations", "result", "data")
FIELD_ALIASES = {
    "actionItems": "prioritised_actions",
    "schema": "schema_recommendations",
}
LEVEL_FIELDS = ("impact", "effort")

PLACEHOLDER_SUMMARY = "SEO analysis completed successfully. AI recommendations temporarily unavailable."
PLACEHOLDER_NOTE = "Please try again later for AI-powered recommendations."


class InvalidJSONError(ValueError):
    """Raw LLM text is not parseable JSON."""


class SchemaMismatchError(ValueError):
    """Parsed JSON does not satisfy the AIRecommendations contract."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors) or "AI response does not match expected format")


def canonical_level(value: object) -> str | None:
    """Map an impact/effort spelling to high/med/low, or None when unknown."""
    if not isinstance(value, str):
        return None
    key = "".join(ch for ch in value.strip().lower() if "a" <= ch <= "z")
    return LEVEL_SYNONYMS.get(key)


def _strip_fences(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        text = text.replace("```json", "").replace("```", "").strip()
    return text


def _unwrap(obj: object) -> object:
    if not isinstance(obj, dict) or "version" in obj:
        return obj
    for key in WRAPPER_KEYS:
        inner = obj.get(key)
        if isinstance(inner, dict) and (len(obj) == 1 or key == WRAPPER_KEYS[0]):
            log.warning("Unwrapped AI response envelope %r", key)
            return inner
    return obj


def _rename_aliases(obj: dict) -> dict:
    out = dict(obj)
    for alias, canonical in FIELD_ALIASES.items():
        if alias in out and canonical not in out:
            log.warning("Renamed AI response field %r to %r", alias, canonical)
            out[canonical] = out.pop(alias)
    return out


def _canonicalise_levels(obj: dict) -> dict:
    actions = obj.get("prioritised_actions")
    if not isinstance(actions, list):
        return obj
    fixed = []
    for action in actions:
        if isinstance(action, dict):
            action = dict(action)
            for field in LEVEL_FIELDS:
                level = canonical_level(action.get(field))
                if level is not None:
                    action[field] = level
        fixed.append(action)
    return {**obj, "prioritised_actions": fixed}


def _format_errors(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ())) or "(root)"
        errors.append(f"{path}: {err.get('msg', 'invalid')}")
    return errors


def normalize_recommendations(raw_text: str) -> AIRecommendations:
    """
    Parse, repair and validate one raw LLM completion.
    Raises InvalidJSONError or SchemaMismatchError.
    """
    try:
        parsed = json.loads(_strip_fences(raw_text))
    except (TypeError, ValueError, RecursionError) as e:
        raise InvalidJSONError(f"AI returned invalid JSON: {e}") from e

    obj = _unwrap(parsed)
    if isinstance(obj, dict):
        obj = _canonicalise_levels(_rename_aliases(obj))

    try:
        return AIRecommendations.model_validate(obj)
    except ValidationError as e:
        errors = _format_errors(e)
        log.warning("AI validation failed: %s", errors)
        raise SchemaMismatchError(errors) from e


def render_html_code(jsonld: dict) -> str:
    """Ready-to-paste <script> wrapper for a JSON-LD object."""
    body = json.dumps(jsonld, indent=2, ensure_ascii=False).replace("</", "<\\/")
    return f'<script type="application/ld+json">\n{body}\n</script>'


def with_html_snippets(recs: AIRecommendations) -> AIRecommendations:
    blocks = [
        block if block.html_code else block.model_copy(update={"html_code": render_html_code(block.jsonld)})
        for block in recs.schema_recommendations
    ]
    return recs.model_copy(update={"schema_recommendations": blocks})


def placeholder_recommendations() -> AIRecommendations:
    return AIRecommendations(
        version="1.0",
        summary=PLACEHOLDER_SUMMARY,
        prioritised_actions=[],
        schema_recommendations=[],
        notes=[PLACEHOLDER_NOTE],
    )
