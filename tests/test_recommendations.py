import json

import pytest

from recommendations import (
    PLACEHOLDER_SUMMARY,
    InvalidJSONError,
    SchemaMismatchError,
    canonical_level,
    normalize_recommendations,
    placeholder_recommendations,
    render_html_code,
    with_html_snippets,
)

from conftest import VALID_AI_REPLY


def payload(**overrides):
    data = json.loads(VALID_AI_REPLY)
    data.update(overrides)
    return data


@pytest.mark.parametrize(
    "raw,expected",
    [("High", "high"), (" MEDIUM ", "med"), ("moderate", "med"), ("Lo", "low"), ("minor", "low"), ("med.", "med")],
)
def test_canonical_level_synonyms(raw, expected):
    assert canonical_level(raw) == expected


@pytest.mark.parametrize("raw", ["urgent", "", None, 3])
def test_canonical_level_unknown(raw):
    assert canonical_level(raw) is None


def test_valid_reply_is_normalized():
    recs = normalize_recommendations(VALID_AI_REPLY)
    assert recs.version == "1.0"
    assert [(a.impact, a.effort) for a in recs.prioritised_actions] == [("high", "med"), ("med", "low")]
    assert recs.schema_recommendations[0].type == "Organization"


def test_code_fences_are_stripped():
    recs = normalize_recommendations("```json\n" + VALID_AI_REPLY + "\n```")
    assert recs.summary.startswith("Acme")


@pytest.mark.parametrize("key", ["AIRecommendationsV1", "recommendations", "result", "data"])
def test_single_envelope_is_unwrapped(key):
    recs = normalize_recommendations(json.dumps({key: payload()}))
    assert len(recs.prioritised_actions) == 2


def test_legacy_field_names_are_renamed():
    data = payload()
    data["actionItems"] = data.pop("prioritised_actions")
    data["schema"] = data.pop("schema_recommendations")
    recs = normalize_recommendations(json.dumps(data))
    assert len(recs.prioritised_actions) == 2
    assert len(recs.schema_recommendations) == 1


def test_invalid_json_raises():
    with pytest.raises(InvalidJSONError):
        normalize_recommendations("Sure! Here are some ideas: add schema.")


def test_deeply_nested_json_raises_invalid_json():
    with pytest.raises(InvalidJSONError):
        normalize_recommendations("[" * 100000)


def test_unknown_level_is_rejected_with_path():
    data = payload(prioritised_actions=[{"task": "Do it", "impact": "urgent", "effort": "low"}])
    with pytest.raises(SchemaMismatchError) as info:
        normalize_recommendations(json.dumps(data))
    assert any(e.startswith("prioritised_actions.0.impact") for e in info.value.errors)


def test_wrong_version_and_missing_fields_are_rejected():
    with pytest.raises(SchemaMismatchError) as info:
        normalize_recommendations(json.dumps({"version": "2.0", "summary": "x"}))
    paths = {e.split(":")[0] for e in info.value.errors}
    assert {"version", "prioritised_actions", "schema_recommendations"} <= paths


def test_summary_longer_than_limit_is_rejected():
    with pytest.raises(SchemaMismatchError):
        normalize_recommendations(json.dumps(payload(summary="x" * 1001)))


def test_non_object_root_is_rejected():
    with pytest.raises(SchemaMismatchError) as info:
        normalize_recommendations("[1, 2, 3]")
    assert info.value.errors[0].startswith("(root)")


def test_html_code_escapes_script_close():
    html = render_html_code({"@type": "Thing", "name": "</script><b>x</b>"})
    assert html.startswith('<script type="application/ld+json">')
    assert html.count("</script>") == 1
    assert "<\\/script>" in html


def test_snippets_added_and_serialized_as_htmlCode():
    recs = with_html_snippets(normalize_recommendations(VALID_AI_REPLY))
    dumped = recs.model_dump(by_alias=True)
    block = dumped["schema_recommendations"][0]
    assert block["htmlCode"].startswith("<script")
    assert '"name": "Acme Plumbing"' in block["htmlCode"]


def test_placeholder_is_valid_contract():
    recs = placeholder_recommendations()
    assert recs.summary == PLACEHOLDER_SUMMARY
    assert recs.prioritised_actions == [] and recs.schema_recommendations == []
    assert recs.notes
