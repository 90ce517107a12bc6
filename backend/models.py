"""Data models and types used across the backend.

API request/response bodies and the AI recommendation contract are in schemas.py.
Types for extracted page signals, scoring output and scan results live here.
"""

import math
from typing import Literal, Optional, TypedDict

Band = Literal["red", "amber", "green"]
CheckStatus = Literal["found", "not_found", "error"]


class H1Evidence(TypedDict):
    """One <h1> as found in the DOM, hidden or not."""

    text: str
    selector: str
    hidden: bool


class BusinessInfo(TypedDict, total=False):
    phone: str
    email: str
    address: str
    hours: str
    logo: str
    business_type: str


class CoreWebVitals(TypedDict):
    fcp: float
    lcp: float
    fid: float
    cls: float


class SchemaSummary(TypedDict):
    """Classifier output for the JSON-LD blocks of one page."""

    count: int
    types: list[str]
    has_organization: bool
    has_website: bool
    has_local_business: bool
    has_breadcrumb: bool
    has_structured_data: bool


class SchemaItem(TypedDict):
    """One parsed JSON-LD block."""

    types: list[str]
    errors: list[str]
    warnings: list[str]
    raw: dict


class SeoSignals(TypedDict):
    """Flat record of extracted page facts. All numbers are finite and >= 0."""

    url: str
    final_url: str
    meta_title: str
    meta_title_length: int
    meta_description: str
    meta_description_length: int
    canonical_url: str
    robots_meta: str
    lang_attribute: str
    viewport_meta: str
    charset_meta: str
    has_hreflang: bool
    h1_tags: list[str]
    h1_count: int
    h1_evidence: list[H1Evidence]
    h2_tags: list[str]
    h2_count: int
    images_total: int
    images_with_alt: int
    images_missing_alt: int
    images_alt_percentage: float
    images_webp_count: int
    images_lazy_loading_count: int
    images_large_count: int
    internal_links_count: int
    external_links_count: int
    nofollow_links_count: int
    og_title: str
    og_description: str
    og_image: str
    og_type: str
    open_graph_count: int
    twitter_card: str
    twitter_title: str
    twitter_description: str
    twitter_image: str
    twitter_count: int
    same_as: list[str]
    json_ld: list[dict]
    schema: SchemaSummary
    business_info: BusinessInfo
    word_count: int
    paragraph_count: int
    content_density: float
    heading_hierarchy_score: float
    readability_score: float
    semantic_html_score: float
    missing_aria_labels: int
    accessibility_score: float
    css_files_count: int
    js_files_count: int
    render_blocking_resources: int
    estimated_load_time: float
    performance_score: float
    core_web_vitals: CoreWebVitals
    performance_source: str
    robots_txt_status: CheckStatus
    sitemap_status: CheckStatus
    sitemap_url: str
    page_size_kb: float


class SubScoreResult(TypedDict):
    score: int
    notes: list[str]
    ai_visibility_impact: list[str]


class AreaScore(TypedDict):
    score: int
    weighted_score: int
    weight: int


class AreaBreakdown(TypedDict):
    schema: AreaScore
    performance: AreaScore
    content: AreaScore
    images: AreaScore
    accessibility: AreaScore
    technical_seo: AreaScore


class OverallScoreResult(TypedDict):
    overall_score: int
    band: Band
    area_breakdown: AreaBreakdown
    ai_commentary: dict[str, list[str]]
    schema_errors: int
    schema_warnings: int


class ScanResult(TypedDict):
    """Payload returned to the presentation layer for a completed scan."""

    run_id: str
    url: str
    status: str
    cancelled: bool
    error: Optional[str]
    cost: int
    remaining_credits: int
    analysis: dict
    ai: dict
    ai_status: str


# Neutral values used when a numeric signal is missing or unusable.
NUMERIC_DEFAULTS: dict[str, float] = {
    "estimated_load_time": 3.0,
    "render_blocking_resources": 3,
    "css_files_count": 5,
    "js_files_count": 8,
    "heading_hierarchy_score": 70,
    "word_count": 500,
    "readability_score": 70,
    "paragraph_count": 5,
    "content_density": 50,
    "images_alt_percentage": 80,
    "accessibility_score": 80,
    "semantic_html_score": 70,
    "missing_aria_labels": 2,
    "performance_score": 0,
    "page_size_kb": 0,
}

COUNT_FIELDS = (
    "meta_title_length",
    "meta_description_length",
    "h1_count",
    "h2_count",
    "images_total",
    "images_with_alt",
    "images_missing_alt",
    "images_webp_count",
    "images_lazy_loading_count",
    "images_large_count",
    "internal_links_count",
    "external_links_count",
    "nofollow_links_count",
    "open_graph_count",
    "twitter_count",
)


def coerce_number(value: object, default: float) -> float:
    """Return value as a finite, non-negative number, else default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(number) or number < 0:
        return default
    return number
