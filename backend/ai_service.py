"""
Claude API key must be defined in a .env file in the backend root:

ANTHROPIC_API_KEY=your_real_key_here

The app loads environment variables automatically using python-dotenv.
Without a key the AI step is skipped and the scan carries placeholder
recommendations.
"""

from dotenv import load_dotenv
import logging
import os
from pathlib import Path
import random
import time
from typing import Callable

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

from anthropic import Anthropic

from models import OverallScoreResult, SeoSignals
from recommendations import InvalidJSONError, SchemaMismatchError, normalize_recommendations, with_html_snippets
from schemas import AIRecommendations

log = logging.getLogger(__name__)

MODEL_CANDIDATES = [
    os.getenv("CLAUDE_MODEL", "").strip(),
    "claude-3-5-sonnet-latest",
    "claude-3-haiku-20240307",
]
MODEL_CANDIDATES = [m for m in MODEL_CANDIDATES if m]
TEMPERATURE = 0.2
MAX_TOKENS = int(os.getenv("CLAUDE_MAX_TOKENS", "2000"))
MAX_RETRIES = int(os.getenv("CLAUDE_MAX_RETRIES", "3"))
RETRY_BASE_SECONDS = float(os.getenv("CLAUDE_RETRY_BASE_SECONDS", "1.0"))
# Wall-clock budget for one completion, retries and backoff included
REQUEST_BUDGET_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))

Completion = Callable[[str], str]

SYSTEM_MESSAGE = """You are an AI SEO expert analyzing a website for search engine and AI assistant visibility.
Return ONLY valid raw JSON that matches the schema exactly.
Recommendations must be specific to the provided URL and the detected signals.
Do not include markdown, code fences, wrapper objects, or text outside JSON."""

USER_TEMPLATE = """ANALYSIS DATA:
Website: {url}
Current AI Visibility Score: {overall_score}/100 ({band})

EXISTING CONTENT:
- Title: "{title}" ({title_length} chars)
- Meta Description: "{description}" ({description_length} chars)
- H1 Tags: {h1_tags}

BUSINESS INFORMATION DETECTED:
- Phone: {phone}
- Email: {email}
- Address: {address}
- Logo: {logo}
- Business Type: {business_type}

CURRENT SCHEMA STATUS:
- Existing Schema Types: {schema_types}
- Has Organization Schema: {has_organization}
- Has WebSite Schema: {has_website}
- Has LocalBusiness Schema: {has_local_business}
- Has Breadcrumb Schema: {has_breadcrumb}

SOCIAL MEDIA PRESENCE:
- Social Media Links: {same_as}

IDENTIFIED ISSUES:
{issues}

Return EXACTLY this JSON structure:

{{
  "version": "1.0",
  "summary": "string",
  "prioritised_actions": [
    {{ "task": "string", "impact": "high", "effort": "low", "where": ["string"] }}
  ],
  "schema_recommendations": [
    {{
      "type": "SchemaType",
      "where": ["head section"],
      "jsonld": {{ "@context": "https://schema.org", "@type": "SchemaType" }},
      "htmlCode": "<script type=\\"application/ld+json\\">...</script>"
    }}
  ],
  "notes": ["string"]
}}

REQUIREMENTS:
1. Generate 3-5 prioritised_actions based on the biggest opportunities above.
2. Use the actual business information detected (phone, email, address, social links).
3. ONLY recommend schemas that are MISSING (showing "No" above). Never recommend schemas that already exist.
4. For each schema recommendation include both "jsonld" and "htmlCode".
5. Summary must be strategic, reference specific findings, and stay under 1000 characters.
6. Use ONLY these exact values - impact: "high" | "med" | "low", effort: "low" | "med" | "high".

No additional text."""


class AIUnavailableError(RuntimeError):
    """No API key configured or the model returned nothing usable."""


def _yes_no(flag: object) -> str:
    return "Yes" if flag else "No"


def _build_user_message(signals: SeoSignals, score: OverallScoreResult, issues: list[str]) -> str:
    business = signals.get("business_info") or {}
    schema = signals["schema"]

    def _value(value: object, missing: str = "Not found") -> str:
        cleaned = str(value or "").strip()
        return cleaned if cleaned else missing

    return USER_TEMPLATE.format(
        url=signals["final_url"] or signals["url"],
        overall_score=score["overall_score"],
        band=score["band"],
        title=_value(signals["meta_title"], "Missing"),
        title_length=signals["meta_title_length"],
        description=_value(signals["meta_description"], "Missing"),
        description_length=signals["meta_description_length"],
        h1_tags=", ".join(f'"{h}"' for h in signals["h1_tags"]) or "None found",
        phone=_value(business.get("phone")),
        email=_value(business.get("email")),
        address=_value(business.get("address")),
        logo="Found" if business.get("logo") else "Not found",
        business_type=_value(business.get("business_type"), "Unknown"),
        schema_types=", ".join(schema["types"]) or "None detected",
        has_organization=_yes_no(schema["has_organization"]),
        has_website=_yes_no(schema["has_website"]),
        has_local_business=_yes_no(schema["has_local_business"]),
        has_breadcrumb=_yes_no(schema["has_breadcrumb"]),
        same_as=", ".join(signals["same_as"]) or "None found",
        issues="\n".join(f"- {issue}" for issue in issues) or "- No major issues detected",
    )


def _retry_suffix(errors: list[str]) -> str:
    listed = "\n".join(f"- {e}" for e in errors[:10])
    return f"""
Previous output was invalid:
{listed}
Regenerate complete strict JSON only, matching the structure above exactly.
"""


def _extract_response_text(response: object) -> str:
    content = ""
    for block in getattr(response, "content", []) or []:
        text = getattr(block, "text", None)
        if text:
            content += text
    return content.strip()


def _is_retryable_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    retry_tokens = (
        "overloaded",
        "529",
        "rate limit",
        "rate_limit",
        "429",
        "500",
        "502",
        "503",
        "504",
        "timeout",
    )
    return any(token in msg for token in retry_tokens)


def _call_claude(client: Anthropic, user_message: str, budget: float = REQUEST_BUDGET_SECONDS) -> str:
    last_error: Exception | None = None
    deadline = time.monotonic() + budget

    for model in MODEL_CANDIDATES:
        for attempt in range(MAX_RETRIES):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning("Claude budget of %.0fs used up, giving up", budget)
                raise AIUnavailableError(f"Claude did not answer within {budget:.0f}s") from last_error
            try:
                response = client.messages.create(
                    model=model,
                    max_tokens=MAX_TOKENS,
                    system=SYSTEM_MESSAGE,
                    messages=[{"role": "user", "content": user_message}],
                    temperature=TEMPERATURE,
                    timeout=remaining,
                )
                content = _extract_response_text(response)
                if getattr(response, "stop_reason", None) == "max_tokens":
                    log.warning("Claude output hit max_tokens for model=%s", model)
                if content:
                    return content

                last_error = AIUnavailableError("Empty Claude response content.")
                if attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_SECONDS * (2 ** attempt) + random.uniform(0, 0.35)
                    delay = min(delay, max(0.0, deadline - time.monotonic()))
                    log.warning("Claude retry: model=%s empty-content wait=%.2fs", model, delay)
                    time.sleep(delay)
                    continue
            except Exception as e:
                last_error = e
                if _is_retryable_error(e) and attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_SECONDS * (2 ** attempt) + random.uniform(0, 0.35)
                    delay = min(delay, max(0.0, deadline - time.monotonic()))
                    log.warning("Claude retry: model=%s attempt=%d wait=%.2fs", model, attempt + 1, delay)
                    time.sleep(delay)
                    continue
            break

    if last_error is not None:
        raise last_error
    return ""


def claude_complete(prompt: str) -> str:
    """Send one prompt to Claude and return the raw text of the reply."""
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise AIUnavailableError("ANTHROPIC_API_KEY not found in environment.")
    return _call_claude(Anthropic(api_key=api_key, max_retries=0), prompt)


def generate_recommendations(
    signals: SeoSignals,
    score: OverallScoreResult,
    issues: list[str],
    complete: Completion = claude_complete,
) -> AIRecommendations:
    """
    Build the prompt, call the model and normalize the reply.
    A reply that fails normalization is retried once with the validation errors appended.
    Raises AIUnavailableError, InvalidJSONError or SchemaMismatchError when no usable reply was produced.
    """
    user_message = _build_user_message(signals, score, issues)
    content = complete(user_message)
    if not content:
        raise AIUnavailableError("Empty AI response.")

    try:
        return with_html_snippets(normalize_recommendations(content))
    except (InvalidJSONError, SchemaMismatchError) as e:
        errors = e.errors if isinstance(e, SchemaMismatchError) else [str(e)]
        log.warning("AI reply rejected, retrying once: %s", errors)

    retry_content = complete(user_message + "\n\n" + _retry_suffix(errors))
    if not retry_content:
        raise AIUnavailableError("Empty AI response on retry.")
    return with_html_snippets(normalize_recommendations(retry_content))
