import pytest

from schema_types import build_schema_items
from scoring import (
    AREA_WEIGHTS,
    QUICK_RECOMMENDATION_COUNT,
    SCHEMA_RULES,
    band_for_score,
    build_issue_list,
    build_quick_recommendations,
    compute_overall_score,
    round_half_up,
    score_accessibility,
    score_basic_seo,
    score_content_structure,
    score_images,
    score_performance,
    score_schema,
)
from scraper import default_signals, extract_signals, merge_signals

from conftest import BARE_PAGE, RICH_PAGE


def signals_with(**updates):
    return merge_signals(default_signals("https://example.com/"), updates)


def item(*types, errors=(), warnings=()):
    return {"types": list(types), "errors": list(errors), "warnings": list(warnings), "raw": {}}


def test_weights_sum_to_100():
    assert sum(AREA_WEIGHTS.values()) == 100


@pytest.mark.parametrize(
    "score,band",
    [(0, "red"), (40, "red"), (41, "amber"), (70, "amber"), (71, "green"), (100, "green")],
)
def test_band_thresholds(score, band):
    assert band_for_score(score) == band


def test_round_half_up_differs_from_bankers_rounding():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(2.4) == 2


def test_schema_empty_scores_zero():
    assert score_schema([])["score"] == 0


def test_schema_rules_count_once_per_group():
    result = score_schema([item("Organization"), item("LocalBusiness")])
    # 12 for the org group, 15 clean, 3 no warnings
    assert result["score"] == 30


def test_schema_errors_and_warnings_penalised():
    result = score_schema([item("FAQPage", errors=["a", "b"], warnings=["w"])])
    # 18 - 10 errors - 3 warnings
    assert result["score"] == 5
    assert any("2 schema errors" in n for n in result["notes"])


def test_schema_error_penalty_capped_and_clamped():
    result = score_schema([item("Thing", errors=["e"] * 20)])
    assert result["score"] == 0


def test_schema_score_capped_at_100():
    every_type = [t for types, _, _ in SCHEMA_RULES for t in types]
    assert score_schema([item(*every_type)])["score"] == 100


@pytest.mark.parametrize("load_time,expected", [(2.5, 100), (2.6, 85), (4.0, 85), (4.1, 70)])
def test_performance_load_time_thresholds(load_time, expected):
    signals = signals_with(estimated_load_time=load_time, render_blocking_resources=0, css_files_count=1, js_files_count=1)
    assert score_performance(signals)["score"] == expected


@pytest.mark.parametrize("blocking,expected", [(2, 100), (3, 90), (5, 90), (6, 80)])
def test_performance_blocking_thresholds(blocking, expected):
    signals = signals_with(estimated_load_time=1.0, render_blocking_resources=blocking, css_files_count=1, js_files_count=1)
    assert score_performance(signals)["score"] == expected


def test_performance_resource_penalty():
    signals = signals_with(estimated_load_time=1.0, render_blocking_resources=0, css_files_count=10, js_files_count=20)
    # 30 resources -> floor(17 / 2) * 3 = 24, capped at 15
    assert score_performance(signals)["score"] == 85


def test_performance_no_penalty_just_over_bundle_limits():
    signals = signals_with(estimated_load_time=1.0, render_blocking_resources=0, css_files_count=6, js_files_count=8)
    # 14 resources -> floor(1 / 2) = 0
    assert score_performance(signals)["score"] == 100


def test_content_structure_thresholds():
    strong = signals_with(
        heading_hierarchy_score=95, word_count=1200, readability_score=85, paragraph_count=10, content_density=60
    )
    assert score_content_structure(strong)["score"] == 100

    weak = signals_with(heading_hierarchy_score=50, word_count=100, readability_score=40, paragraph_count=0, content_density=0)
    # 100 - 25 - 30 - 15 - 10
    assert score_content_structure(weak)["score"] == 20


def test_content_long_paragraphs_penalised():
    signals = signals_with(
        heading_hierarchy_score=95, word_count=1200, readability_score=85, paragraph_count=2, content_density=200
    )
    assert score_content_structure(signals)["score"] == 90


def test_images_none_found_is_neutral():
    result = score_images(signals_with(images_total=0))
    assert result["score"] == 80
    assert result["notes"] == ["No images found"]


def test_images_poor_alt_and_legacy_formats():
    signals = signals_with(
        images_total=10, images_alt_percentage=40, images_webp_count=0, images_lazy_loading_count=0, images_large_count=4
    )
    # 100 - 35 - 10 - 8
    assert score_images(signals)["score"] == 47


def test_images_lazy_loading_skips_large_penalty():
    signals = signals_with(
        images_total=10, images_alt_percentage=100, images_webp_count=8, images_lazy_loading_count=9, images_large_count=5
    )
    assert score_images(signals)["score"] == 100


def test_accessibility_deductions():
    signals = signals_with(accessibility_score=70, semantic_html_score=40, missing_aria_labels=5)
    # 70 - 15 - 12
    assert score_accessibility(signals)["score"] == 43


def test_accessibility_zero_aria_is_not_defaulted():
    signals = signals_with(accessibility_score=95, semantic_html_score=90, missing_aria_labels=0)
    assert score_accessibility(signals)["score"] == 95


def test_basic_seo_all_present():
    signals = signals_with(
        meta_title="A" * 40,
        meta_title_length=40,
        meta_description="B" * 140,
        meta_description_length=140,
        h1_count=1,
        og_title="t",
        og_description="d",
        og_image="i",
        og_type="website",
        twitter_card="summary",
        robots_txt_status="found",
        sitemap_status="found",
    )
    # 8 + 7 + 6 + 8 + 4 + 2 + 3
    assert score_basic_seo(signals)["score"] == 38


def test_basic_seo_noindex_penalty_and_clamp():
    assert score_basic_seo(signals_with(robots_meta="noindex, nofollow"))["score"] == 0
    signals = signals_with(meta_title="Short", meta_title_length=5, h1_count=1, robots_meta="noindex")
    # 4 - 3 + 6 - 10 = -3 -> 0
    assert score_basic_seo(signals)["score"] == 0


def test_overall_is_weighted_sum_and_deterministic():
    signals = extract_signals(RICH_PAGE, "https://acme.example/")
    items = build_schema_items(signals["json_ld"])
    first = compute_overall_score(items, signals)
    second = compute_overall_score(items, signals)
    assert first == second
    breakdown = first["area_breakdown"]
    assert first["overall_score"] == sum(entry["weighted_score"] for entry in breakdown.values())
    for area, weight in AREA_WEIGHTS.items():
        assert breakdown[area]["weight"] == weight
        assert breakdown[area]["weighted_score"] == round_half_up(breakdown[area]["score"] * weight / 100)
    assert 0 <= first["overall_score"] <= 100
    assert first["band"] == band_for_score(first["overall_score"])


def test_bare_page_lands_in_red_band():
    signals = extract_signals(BARE_PAGE, "https://example.com/")
    result = compute_overall_score(build_schema_items(signals["json_ld"]), signals)
    assert result["overall_score"] == 40
    assert result["band"] == "red"


def test_commentary_has_overall_section():
    signals = signals_with(estimated_load_time=5.0)
    result = compute_overall_score([], signals)
    assert set(AREA_WEIGHTS) <= set(result["ai_commentary"])
    assert "Voice assistants (Siri, Alexa, Google):" in result["ai_commentary"]["overall"]


def test_issue_list_for_bare_page():
    issues = build_issue_list(extract_signals(BARE_PAGE, "https://example.com/"))
    assert "Missing title" in issues
    assert "No H1 found" in issues
    assert "No structured data found" in issues


def test_quick_recommendations_always_four():
    bare = extract_signals(BARE_PAGE, "https://example.com/")
    rich = extract_signals(RICH_PAGE, "https://acme.example/")
    for signals in (bare, rich):
        recs = build_quick_recommendations(build_schema_items(signals["json_ld"]), signals)
        assert len(recs) == QUICK_RECOMMENDATION_COUNT
        assert all(isinstance(r, str) and r for r in recs)
