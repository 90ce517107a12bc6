"""Schema.org type classification for JSON-LD blocks found on a page.

Raw @type values are mapped to display labels. Types outside the table collapse
into a single "Other schema types" label, and only when nothing known was found.
"""

from models import SchemaItem, SchemaSummary

OTHER_SCHEMA_TYPES = "Other schema types"

TYPE_LABELS: dict[str, str] = {
    "Organization": "Organization",
    "LocalBusiness": "LocalBusiness",
    "WebSite": "WebSite",
    "WebPage": "WebPage",
    "Article": "Article",
    "BlogPosting": "BlogPosting",
    "FAQPage": "FAQPage",
    "HowTo": "HowTo",
    "Product": "Product",
    "BreadcrumbList": "BreadcrumbList",
    "ImageObject": "Image",
    "VideoObject": "Video",
    "Person": "Person",
    "Place": "Place",
    "Event": "Event",
    "Review": "Review",
    "Recipe": "Recipe",
    "Course": "Course",
    "JobPosting": "JobPosting",
    "Service": "Service",
    "Offer": "Offer",
    "ContactPoint": "ContactPoint",
    "PostalAddress": "PostalAddress",
}


def raw_types(block: object) -> list[str]:
    """Return the @type value(s) of one JSON-LD block, always as a list of strings."""
    if not isinstance(block, dict):
        return []
    value = block.get("@type")
    values = value if isinstance(value, list) else [value]
    return [v for v in values if isinstance(v, str) and v]


def _graph_nodes(block: object) -> list[object]:
    # Top-level arrays and @graph containers both hold sibling nodes.
    if isinstance(block, list):
        nodes: list[object] = []
        for item in block:
            nodes.extend(_graph_nodes(item))
        return nodes
    if isinstance(block, dict) and isinstance(block.get("@graph"), list):
        return [block, *block["@graph"]]
    return [block]


def label_types(types: list[str]) -> list[str]:
    """Map raw types to labels, deduplicated in first-seen order."""
    unique = list(dict.fromkeys(t for t in types if isinstance(t, str) and t))
    mapped = list(dict.fromkeys(TYPE_LABELS[t] for t in unique if t in TYPE_LABELS))
    if mapped:
        return mapped
    return [OTHER_SCHEMA_TYPES] if unique else []


def classify_schemas(blocks: list[object]) -> SchemaSummary:
    """Summarize parsed JSON-LD blocks. Never raises."""
    blocks = blocks if isinstance(blocks, list) else []
    found: list[str] = []
    for block in blocks:
        for node in _graph_nodes(block):
            found.extend(raw_types(node))
    types = label_types(found)
    return {
        "count": len(blocks),
        "types": types,
        "has_organization": "Organization" in types or "LocalBusiness" in types,
        "has_website": "WebSite" in types,
        "has_local_business": "LocalBusiness" in types,
        "has_breadcrumb": "BreadcrumbList" in types,
        "has_structured_data": len(types) > 0,
    }


def _nested_types(value: object, out: list[str]) -> None:
    if isinstance(value, dict):
        out.extend(raw_types(value))
        for key, child in value.items():
            if key != "@type":
                _nested_types(child, out)
    elif isinstance(value, list):
        for child in value:
            _nested_types(child, out)


def _validate_block(block: dict, types: list[str], in_graph: bool) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []
    if not types:
        errors.append("Missing @type")
    context = block.get("@context")
    if context is None:
        if not in_graph:
            warnings.append("Missing @context")
    elif isinstance(context, str) and "schema.org" not in context.lower():
        warnings.append(f"Unexpected @context: {context}")
    if any(t in ("Organization", "LocalBusiness") for t in types) and not block.get("name"):
        warnings.append("Organization without name")
    return errors, warnings


def _item_nodes(block: object, in_graph: bool = False):
    """Yield (node, in_graph) pairs. @graph wrappers become an item only when typed."""
    if isinstance(block, list):
        for child in block:
            yield from _item_nodes(child, in_graph)
    elif isinstance(block, dict) and isinstance(block.get("@graph"), list):
        if raw_types(block):
            yield {k: v for k, v in block.items() if k != "@graph"}, True
        for child in block["@graph"]:
            yield from _item_nodes(child, True)
    elif isinstance(block, dict):
        yield block, in_graph


def build_schema_items(blocks: list[object]) -> list[SchemaItem]:
    """Turn parsed JSON-LD blocks into scoring items.

    Types include nested nodes (an Organization's PostalAddress, a WebSite's
    SearchAction) since those are what the schema scorer rewards.
    """
    items: list[SchemaItem] = []
    for block in blocks if isinstance(blocks, list) else []:
        for node, in_graph in _item_nodes(block):
            types: list[str] = []
            _nested_types(node, types)
            types = list(dict.fromkeys(types))
            errors, warnings = _validate_block(node, raw_types(node), in_graph)
            items.append({"types": types, "errors": errors, "warnings": warnings, "raw": node})
    return items
