"""AI visibility scoring.

Six independent scorers, one per analysis area, each a pure function of
already-coerced signals (see scraper.finalize_signals). compute_overall_score
weights and sums them into a 0-100 score and a red/amber/green band.
"""

import math

from models import AreaBreakdown, Band, OverallScoreResult, SchemaItem, SeoSignals, SubScoreResult

AREA_WEIGHTS: dict[str, int] = {
    "schema": 25,
    "performance": 20,
    "content": 20,
    "images": 15,
    "accessibility": 10,
    "technical_seo": 10,
}

# (types, points, note). Each rule counts once, whichever of its types matched.
SCHEMA_RULES: list[tuple[tuple[str, ...], int, str]] = [
    (("WebSite",), 3, "WebSite - AI can identify your site"),
    (("Organization", "LocalBusiness"), 12, "Organization/LocalBusiness - AI understands your business"),
    (("PostalAddress",), 3, "Address - AI knows your location"),
    (("OpeningHoursSpecification",), 5, "Hours - AI can tell customers when you're open"),
    (("FAQPage",), 18, "FAQ Page - ChatGPT can answer customer questions"),
    (("HowTo",), 18, "How-To - AI assistants can guide customers"),
    (("Article", "BlogPosting", "NewsArticle"), 15, "Content - AI understands your expertise"),
    (("Product", "Service"), 15, "Product/Service - AI can recommend your offerings"),
    (("Review", "AggregateRating"), 20, "Reviews - AI sees your reputation and ratings"),
    (("Event", "Offer"), 15, "Events/Offers - AI can suggest timely opportunities"),
    (("SpeakableSpecification",), 20, "Speakable - Optimized for voice assistants"),
    (("SoftwareApplication", "WebApplication"), 25, "Software/App - AI understands your technology"),
    (("Course", "CreativeWork", "ProfessionalService"), 22, "Professional Services - AI recognizes your expertise"),
    (("BreadcrumbList",), 12, "Breadcrumbs - AI can navigate your site structure"),
    (("SiteNavigationElement",), 10, "Navigation - AI understands your site organization"),
    (("SearchAction",), 8, "Search - AI can find content on your site"),
]

QUICK_RECOMMENDATION_COUNT = 4
EXTRA_RECOMMENDATIONS = [
    "Add BreadcrumbList schema to help AI systems understand your site structure",
    "Consider implementing Review and AggregateRating schema for trust signals",
    "Add WebSite schema with siteNavigationElement for better site understanding",
    "Implement Twitter Card tags for improved social media appearance",
    "Add structured data for your products/services to enhance AI visibility",
    "Optimize internal linking structure to improve page authority distribution",
    "Add language attributes and hreflang tags for international SEO",
    "Ensure robots.txt is properly configured to guide search engine crawling",
]
FILLER_RECOMMENDATION = "Continue expanding your structured data and SEO optimization for maximum AI visibility"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


def _clamp(score: float) -> int:
    return max(0, min(100, round_half_up(score)))


def band_for_score(score: float) -> Band:
    if score <= 40:
        return "red"
    if score <= 70:
        return "amber"
    return "green"


def _item_types(items: list[SchemaItem]) -> set[str]:
    found: set[str] = set()
    for item in items or []:
        for t in item.get("types") or []:
            if isinstance(t, str):
                found.add(t.lower())
    return found


def count_schema_issues(items: list[SchemaItem]) -> tuple[int, int]:
    errors = sum(len(item.get("errors") or []) for item in items or [])
    warnings = sum(len(item.get("warnings") or []) for item in items or [])
    return errors, warnings


def score_schema(items: list[SchemaItem]) -> SubScoreResult:
    """Additive credit for AI-relevant schema.org types, adjusted for validation issues."""
    items = items or []
    present = _item_types(items)
    score = 0
    notes: list[str] = []
    for types, points, note in SCHEMA_RULES:
        if any(t.lower() in present for t in types):
            score += points
            notes.append(f"{note} (+{points})")

    errors, warnings = count_schema_issues(items)
    if items and errors == 0:
        score += 15
        notes.append("Clean schema - AI can read it perfectly (+15)")
    elif errors > 0:
        penalty = min(30, errors * 5)
        score -= penalty
        notes.append(f"{errors} schema errors - AI confused (-{penalty})")
    if items and warnings == 0:
        score += 3
        notes.append("Optimized schema - No AI reading issues (+3)")
    elif warnings > 0:
        penalty = min(10, math.ceil(warnings / 3) * 3)
        score -= penalty
        notes.append(f"{warnings} schema warnings - AI may misunderstand (-{penalty})")

    return {"score": _clamp(score), "notes": notes, "ai_visibility_impact": list(notes)}


def score_performance(signals: SeoSignals) -> SubScoreResult:
    score = 100
    notes: list[str] = []
    impact: list[str] = []
    load_time = signals["estimated_load_time"]
    blocking = signals["render_blocking_resources"]
    css_files = signals["css_files_count"]
    js_files = signals["js_files_count"]

    if load_time <= 2.5:
        notes.append("Fast loading - Good user experience")
        impact.append("ChatGPT and Perplexity prefer fast sites for real-time data extraction")
    elif load_time <= 4.0:
        score -= 15
        notes.append(f"Moderate load time ({load_time}s) - May impact user experience (-15)")
        impact.append("AI scrapers (GPTBot, ClaudeBot) may time out on slow pages")
    else:
        score -= 30
        notes.append(f"Slow loading ({load_time}s) - Poor user experience (-30)")
        impact.append("Voice assistants (Siri, Alexa) skip slow-loading content for faster responses")

    if blocking <= 2:
        notes.append("Minimal render-blocking - Good performance")
    elif blocking <= 5:
        score -= 10
        notes.append(f"{blocking} render-blocking resources - Affects page speed (-10)")
        impact.append("Google AI needs a fast First Contentful Paint to understand your content priority")
    else:
        score -= 20
        notes.append(f"{blocking} render-blocking resources - Seriously impacts performance (-20)")
        impact.append("Too many blocking resources prevent AI from quickly accessing your content")

    if css_files <= 5 and js_files <= 8:
        notes.append("Well-optimized resources")
    else:
        total = css_files + js_files
        penalty = min(15, math.floor(max(0, total - 13) / 2) * 3)
        score -= penalty
        if penalty > 0:
            notes.append(f"{total} total resources - Consider bundling (-{penalty})")
            impact.append("AI assistants work better with optimized, bundled resources")

    return {"score": _clamp(score), "notes": notes, "ai_visibility_impact": impact}


def score_content_structure(signals: SeoSignals) -> SubScoreResult:
    score = 100
    notes: list[str] = []
    impact: list[str] = []
    hierarchy = signals["heading_hierarchy_score"]
    words = signals["word_count"]
    readability = signals["readability_score"]
    paragraphs = signals["paragraph_count"]
    density = signals["content_density"]

    if hierarchy >= 90:
        notes.append("Perfect heading structure - Clear content hierarchy")
        impact.append("AI models use H1-H6 tags to create content summaries and outlines")
    elif hierarchy >= 70:
        score -= 10
        notes.append("Good heading structure with minor issues (-10)")
        impact.append("ChatGPT and Gemini can still understand your content structure")
    else:
        score -= 25
        notes.append("Poor heading hierarchy - Confuses content structure (-25)")
        impact.append("AI assistants struggle to summarize pages with broken heading hierarchy")

    if words >= 1000:
        notes.append("Comprehensive content - Good depth for topic coverage")
        impact.append("AI models prefer detailed content to provide accurate, comprehensive answers")
    elif words >= 500:
        score -= 5
        notes.append("Moderate content length - Could expand for better coverage (-5)")
        impact.append("Adequate content for basic AI understanding")
    elif words >= 300:
        score -= 15
        notes.append("Thin content - May not provide enough value (-15)")
        impact.append("Perplexity and other AI assistants may skip thin pages in favor of more detailed sources")
    else:
        score -= 30
        notes.append("Very thin content - Insufficient for meaningful analysis (-30)")
        impact.append("AI models rarely reference pages with minimal content")

    if readability >= 80:
        notes.append("Excellent readability - Easy for users and AI to understand")
        impact.append("Clear, readable content helps AI provide accurate quotes and summaries")
    elif readability >= 60:
        score -= 8
        notes.append("Good readability with room for improvement (-8)")
    else:
        score -= 15
        notes.append("Poor readability - Complex sentences may confuse readers (-15)")
        impact.append("AI models struggle with overly complex or poorly structured text")

    if paragraphs > 0 and 30 < density < 100:
        notes.append("Well-structured paragraphs - Good content organization")
    elif density <= 20:
        score -= 10
        notes.append("Very short paragraphs - May appear fragmented (-10)")
    elif density > 150:
        score -= 10
        notes.append("Very long paragraphs - May be hard to read (-10)")
        impact.append("AI models prefer well-structured paragraphs for context understanding")

    return {"score": _clamp(score), "notes": notes, "ai_visibility_impact": impact}


def score_images(signals: SeoSignals) -> SubScoreResult:
    total = signals["images_total"]
    if total == 0:
        return {
            "score": 80,
            "notes": ["No images found"],
            "ai_visibility_impact": ["Adding relevant images with alt text helps AI understand your content better"],
        }

    score = 100
    notes: list[str] = []
    impact: list[str] = []
    alt_pct = signals["images_alt_percentage"]
    if alt_pct >= 95:
        notes.append("Excellent image accessibility - Nearly all images have alt text")
        impact.append("AI assistants can describe and reference all your visual content")
    elif alt_pct >= 80:
        score -= 10
        notes.append(f"Good alt text coverage ({alt_pct}%) - Minor gaps (-10)")
        impact.append("Most images are AI-readable, but complete coverage would be ideal")
    elif alt_pct >= 50:
        score -= 20
        notes.append(f"Moderate alt text coverage ({alt_pct}%) - Needs improvement (-20)")
        impact.append("AI models can only understand part of your images - missing context opportunities")
    else:
        score -= 35
        notes.append(f"Poor alt text coverage ({alt_pct}%) - Major accessibility issue (-35)")
        impact.append("AI assistants cannot describe most of your images to users")

    webp_ratio = signals["images_webp_count"] / total * 100
    if webp_ratio >= 70:
        notes.append("Excellent use of modern image formats (WebP/AVIF)")
        impact.append("Fast-loading images help AI crawlers process your content more efficiently")
    elif webp_ratio >= 30:
        score -= 5
        notes.append("Some modern image formats used - Could optimize more (-5)")
    elif total > 5:
        score -= 10
        notes.append("Mostly legacy image formats - Consider WebP for better performance (-10)")

    large = signals["images_large_count"]
    if signals["images_lazy_loading_count"] > total * 0.8:
        notes.append("Good use of lazy loading - Optimized for performance")
        impact.append("Lazy loading helps pages load faster for AI crawlers")
    elif large > 3:
        score -= 8
        notes.append(f"{large} large images without optimization - May slow loading (-8)")
        impact.append("Large images can make AI scrapers time out on your content")

    return {"score": _clamp(score), "notes": notes, "ai_visibility_impact": impact}


def score_accessibility(signals: SeoSignals) -> SubScoreResult:
    base = signals["accessibility_score"]
    semantic = signals["semantic_html_score"]
    missing_aria = signals["missing_aria_labels"]
    score = base
    notes: list[str] = []
    impact: list[str] = []

    if base >= 90:
        notes.append("Excellent accessibility - WCAG AA compliant")
        impact.append("Accessible sites provide cleaner data for AI assistants and voice readers to process")
    elif base >= 75:
        notes.append("Good accessibility with minor issues")
        impact.append("Most accessibility features help AI understand your content structure")
    elif base >= 60:
        notes.append("Moderate accessibility - Needs improvement")
        impact.append("Accessibility issues can make it harder for AI to extract clean data")
    else:
        notes.append("Poor accessibility - Major issues found")
        impact.append("Poor accessibility creates barriers for both users and voice assistants")

    if semantic >= 80:
        notes.append("Excellent semantic HTML structure")
        impact.append("Semantic markup helps AI models understand content hierarchy and purpose")
    elif semantic >= 50:
        score -= 5
        notes.append("Good semantic structure with room for improvement (-5)")
    else:
        score -= 15
        notes.append("Poor semantic HTML - Too many generic div/span elements (-15)")
        impact.append("AI assistants work better with proper semantic HTML elements")

    if missing_aria == 0:
        notes.append("Perfect ARIA labeling - All interactive elements labeled")
    elif missing_aria <= 3:
        score -= 5
        notes.append(f"{missing_aria} interactive elements missing ARIA labels (-5)")
    else:
        score -= 12
        notes.append(f"{missing_aria} interactive elements missing ARIA labels (-12)")
        impact.append("Missing ARIA labels make it harder for AI to understand interactive elements")

    return {"score": _clamp(score), "notes": notes, "ai_visibility_impact": impact}


def score_basic_seo(signals: SeoSignals) -> SubScoreResult:
    score = 0
    notes: list[str] = []
    impact: list[str] = []

    title_length = signals["meta_title_length"]
    if signals["meta_title"]:
        if 30 <= title_length <= 60:
            score += 8
            notes.append("Clear title - AI understands your page purpose (+8)")
            impact.append("Optimal title length helps AI assistants accurately describe your page")
        else:
            score += 4
            notes.append("Page title present - AI can identify content (+4)")
    else:
        score -= 5
        notes.append("Missing title - AI confused about page content (-5)")
        impact.append("No title makes it impossible for AI to understand your page purpose")

    description_length = signals["meta_description_length"]
    if signals["meta_description"]:
        if 120 <= description_length <= 160:
            score += 7
            notes.append("Good summary - AI can describe your business clearly (+7)")
            impact.append("An ideal meta description helps AI provide accurate page summaries")
        else:
            score += 4
            notes.append("Page summary present - AI has context (+4)")
    else:
        score -= 3
        notes.append("No summary - AI must guess what you do (-3)")
        impact.append("Missing description forces AI to guess your page content")

    h1_count = signals["h1_count"]
    if h1_count == 1:
        score += 6
        notes.append("Clear main heading - AI knows your primary message (+6)")
        impact.append("A single H1 helps AI identify your main topic clearly")
    elif h1_count > 1:
        score += 2
        notes.append(f"Multiple main headings - AI may be confused: {h1_count} (+2)")
        impact.append("Multiple H1s can confuse AI about your page focus")
    else:
        score -= 4
        notes.append("No main heading - AI cannot identify key message (-4)")
        impact.append("No H1 makes it hard for AI to understand your main topic")

    og_points = 2 * sum(1 for field in ("og_title", "og_description", "og_image", "og_type") if signals[field])
    if og_points:
        score += og_points
        notes.append(f"Social sharing data - AI understands context (+{og_points})")
        impact.append("Open Graph helps AI understand how to present your content")

    if signals["twitter_card"]:
        score += 4
        notes.append("Twitter Card - More AI-readable content (+4)")

    if signals["robots_txt_status"] == "found":
        score += 2
        notes.append("Robot instructions - AI knows what to crawl (+2)")
        impact.append("Robots.txt guides AI crawlers (GPTBot, ClaudeBot, PerplexityBot)")
    if signals["sitemap_status"] == "found":
        score += 3
        notes.append("Site map - AI can discover all content (+3)")
        impact.append("A sitemap helps AI crawlers find all your valuable content")

    if "noindex" in signals["robots_meta"]:
        score -= 10
        notes.append("Blocking AI crawlers - Major visibility issue (-10)")
        impact.append("CRITICAL: noindex blocks AI crawlers and assistants from this page")

    return {"score": _clamp(score), "notes": notes, "ai_visibility_impact": impact}


def _mentions(lines: list[str], *words: str) -> list[str]:
    return [line for line in lines if any(word in line for word in words)]


def _overall_insights(results: dict[str, SubScoreResult]) -> list[str]:
    groups = [
        ("ChatGPT and GPT models:", _mentions(results["schema"]["notes"], "ChatGPT")
         + _mentions(results["performance"]["ai_visibility_impact"], "ChatGPT")),
        ("Perplexity AI:", _mentions(results["performance"]["ai_visibility_impact"], "Perplexity")
         + _mentions(results["content"]["ai_visibility_impact"], "Perplexity")),
        ("Voice assistants (Siri, Alexa, Google):", _mentions(results["performance"]["ai_visibility_impact"], "Siri", "Alexa")
         + _mentions(results["schema"]["notes"], "voice")
         + _mentions(results["accessibility"]["ai_visibility_impact"], "voice", "Voice")),
        ("AI web crawlers (GPTBot, ClaudeBot, PerplexityBot):", _mentions(results["technical_seo"]["ai_visibility_impact"], "GPTBot", "ClaudeBot", "crawl")
         + _mentions(results["performance"]["ai_visibility_impact"], "GPTBot")),
        ("Google AI and Gemini:", _mentions(results["content"]["ai_visibility_impact"], "Google", "Gemini")
         + _mentions(results["performance"]["ai_visibility_impact"], "Google")),
    ]
    insights: list[str] = []
    for heading, lines in groups:
        if lines:
            insights.append(heading)
            insights.extend(dict.fromkeys(lines))
    return insights


def compute_overall_score(schema_items: list[SchemaItem], signals: SeoSignals) -> OverallScoreResult:
    """Run all six scorers and combine them. Deterministic for identical inputs."""
    results: dict[str, SubScoreResult] = {
        "schema": score_schema(schema_items),
        "performance": score_performance(signals),
        "content": score_content_structure(signals),
        "images": score_images(signals),
        "accessibility": score_accessibility(signals),
        "technical_seo": score_basic_seo(signals),
    }
    breakdown = {
        area: {
            "score": results[area]["score"],
            "weighted_score": round_half_up(results[area]["score"] * weight / 100),
            "weight": weight,
        }
        for area, weight in AREA_WEIGHTS.items()
    }
    overall = _clamp(min(100, sum(entry["weighted_score"] for entry in breakdown.values())))
    errors, warnings = count_schema_issues(schema_items)

    commentary: dict[str, list[str]] = {
        area: list(results[area]["ai_visibility_impact"]) for area in AREA_WEIGHTS
    }
    commentary["overall"] = _overall_insights(results)
    return {
        "overall_score": overall,
        "band": band_for_score(overall),
        "area_breakdown": breakdown,  # type: ignore[typeddict-item]
        "ai_commentary": commentary,
        "schema_errors": errors,
        "schema_warnings": warnings,
    }


def area_notes(schema_items: list[SchemaItem], signals: SeoSignals) -> dict[str, list[str]]:
    """Per-area scoring notes for the detailed breakdown view."""
    return {
        "schema": score_schema(schema_items)["notes"],
        "performance": score_performance(signals)["notes"],
        "content": score_content_structure(signals)["notes"],
        "images": score_images(signals)["notes"],
        "accessibility": score_accessibility(signals)["notes"],
        "technical_seo": score_basic_seo(signals)["notes"],
    }


def build_issue_list(signals: SeoSignals) -> list[str]:
    issues: list[str] = []
    if not signals["meta_title"]:
        issues.append("Missing title")
    if not signals["meta_description"]:
        issues.append("Missing meta description")
    if signals["h1_count"] == 0:
        issues.append("No H1 found")
    elif signals["h1_count"] > 1:
        issues.append(f"Multiple H1s: {signals['h1_count']}")
    if signals["images_missing_alt"] > 0:
        issues.append(f"Images missing alt: {signals['images_missing_alt']}")
    if "noindex" in signals["robots_meta"]:
        issues.append("Page marked noindex")
    if not signals["canonical_url"]:
        issues.append("Missing canonical")
    if signals["open_graph_count"] == 0:
        issues.append("Missing Open Graph tags")
    if not signals["schema"]["types"]:
        issues.append("No structured data found")
    return issues


def build_quick_recommendations(schema_items: list[SchemaItem], signals: SeoSignals) -> list[str]:
    """Exactly four deterministic recommendations, used when no AI output is available."""
    recs: list[str] = []
    if not signals["meta_title"]:
        recs.append("Add a compelling meta title (30-60 characters) to improve search visibility")
    elif not 30 <= signals["meta_title_length"] <= 60:
        recs.append("Optimize meta title length to 30-60 characters for better search display")

    if not signals["meta_description"]:
        recs.append("Add a meta description (120-160 characters) to control search result snippets")
    elif not 120 <= signals["meta_description_length"] <= 160:
        recs.append("Optimize meta description length to 120-160 characters for better search display")

    errors, _ = count_schema_issues(schema_items)
    if errors > 0:
        recs.append(f"Fix {errors} schema validation error{'s' if errors > 1 else ''} to improve AI understanding")
    if not schema_items:
        recs.append("Add basic Organization or LocalBusiness schema markup for AI entity recognition")

    if signals["h1_count"] == 0:
        recs.append("Add exactly one H1 tag to clearly define page topic for search engines")
    elif signals["h1_count"] > 1:
        recs.append(f"Optimize page structure: use only one H1 tag (currently {signals['h1_count']})")

    if signals["images_total"] > 0 and signals["images_alt_percentage"] < 70:
        recs.append(
            f"Improve accessibility: add alt text to more images (currently {signals['images_alt_percentage']}% covered)"
        )
    if signals["sitemap_status"] != "found":
        recs.append("Create and submit an XML sitemap to help search engines discover your content")
    if not signals["canonical_url"]:
        recs.append("Add canonical URLs to prevent duplicate content issues")
    if not (signals["og_title"] and signals["og_description"] and signals["og_image"]):
        recs.append("Add Open Graph tags (og:title, og:description, og:image) for better social media sharing")

    present = _item_types(schema_items)
    if "organization" not in present and "localbusiness" not in present:
        recs.append("Add Organization schema to establish your business identity for AI systems")
    if "faqpage" not in present:
        recs.append("Add FAQ schema markup to capture voice search queries and AI assistant interactions")

    for rec in EXTRA_RECOMMENDATIONS:
        if len(recs) >= QUICK_RECOMMENDATION_COUNT:
            break
        keyword = rec.split(" ")[1]
        if rec not in recs and not any(keyword in existing for existing in recs):
            recs.append(rec)
    while len(recs) < QUICK_RECOMMENDATION_COUNT:
        recs.append(FILLER_RECOMMENDATION)
    return recs[:QUICK_RECOMMENDATION_COUNT]
