from schema_types import OTHER_SCHEMA_TYPES, build_schema_items, classify_schemas, label_types, raw_types


def test_raw_types_handles_lists_and_junk():
    assert raw_types({"@type": ["Organization", "LocalBusiness"]}) == ["Organization", "LocalBusiness"]
    assert raw_types({"@type": "WebSite"}) == ["WebSite"]
    assert raw_types({"@type": 5}) == []
    assert raw_types("not a dict") == []


def test_label_types_maps_and_deduplicates():
    assert label_types(["ImageObject", "ImageObject", "Organization"]) == ["Image", "Organization"]


def test_unknown_types_collapse_to_single_label():
    assert label_types(["Dentist", "MedicalClinic"]) == [OTHER_SCHEMA_TYPES]
    # known types win, unknown ones are dropped
    assert label_types(["Dentist", "Organization"]) == ["Organization"]
    assert label_types([]) == []


def test_classify_reads_graph_and_arrays():
    blocks = [
        {"@context": "https://schema.org", "@graph": [{"@type": "WebSite"}, {"@type": "Organization"}]},
        [{"@type": "BreadcrumbList"}],
    ]
    summary = classify_schemas(blocks)
    assert summary["count"] == 2
    assert summary["types"] == ["WebSite", "Organization", "BreadcrumbList"]
    assert summary["has_website"] and summary["has_organization"] and summary["has_breadcrumb"]
    assert not summary["has_local_business"]
    assert summary["has_structured_data"]


def test_classify_empty_and_garbage():
    summary = classify_schemas("nope")
    assert summary["count"] == 0
    assert summary["types"] == []
    assert not summary["has_structured_data"]


def test_local_business_counts_as_organization():
    summary = classify_schemas([{"@type": "LocalBusiness"}])
    assert summary["has_organization"] and summary["has_local_business"]


def test_build_items_includes_nested_types():
    block = {
        "@context": "https://schema.org",
        "@type": "WebSite",
        "potentialAction": {"@type": "SearchAction", "target": "https://x.example/?q={q}"},
    }
    [item] = build_schema_items([block])
    assert item["types"] == ["WebSite", "SearchAction"]
    assert item["errors"] == [] and item["warnings"] == []


def test_build_items_flags_missing_type_and_context():
    items = build_schema_items([{"name": "Acme"}, {"@type": "Organization"}])
    assert items[0]["errors"] == ["Missing @type"]
    assert "Missing @context" in items[1]["warnings"]
    assert "Organization without name" in items[1]["warnings"]


def test_graph_nodes_become_separate_items_without_double_counting():
    block = {
        "@context": "https://schema.org",
        "@graph": [{"@type": "WebSite", "name": "X"}, {"@type": "Organization", "name": "X"}],
    }
    items = build_schema_items([block])
    assert [i["types"] for i in items] == [["WebSite"], ["Organization"]]
    # graph members inherit the container's @context
    assert all(i["warnings"] == [] for i in items)


def test_graph_wrapped_in_array_is_unpacked():
    block = [{"@context": "https://schema.org", "@graph": [{"@type": "Organization", "name": "A"}]}]
    items = build_schema_items([block])
    assert [(i["types"], i["errors"], i["warnings"]) for i in items] == [(["Organization"], [], [])]


def test_typed_graph_container_keeps_its_own_item():
    block = {
        "@context": "https://schema.org",
        "@type": "WebPage",
        "@graph": [{"@type": "Organization", "name": "A"}],
    }
    items = build_schema_items([block])
    assert [i["types"] for i in items] == [["WebPage"], ["Organization"]]
    assert all(i["warnings"] == [] for i in items)
