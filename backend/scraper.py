"""Signal extractor: parse a rendered HTML document into flat SEO signals.

Extracts meta tags, headings (with H1 evidence), link profile, images, social
tags, JSON-LD structured data, business info, and content/accessibility
heuristics. Pure function of the HTML string: no network I/O, never raises on
malformed markup. Performance and crawl facts (PageSpeed, robots.txt, sitemap)
are merged in later by the scan service via merge_signals().
"""

import json as _json
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from models import COUNT_FIELDS, NUMERIC_DEFAULTS, BusinessInfo, H1Evidence, SeoSignals, coerce_number
from schema_types import classify_schemas, raw_types

SOCIAL_HOST_PATTERN = re.compile(
    r"(^|\.)(facebook\.com|instagram\.com|linkedin\.com|twitter\.com|x\.com|youtube\.com|"
    r"tiktok\.com|pinterest\.com|threads\.net)$",
    re.IGNORECASE,
)
PHONE_PATTERN = re.compile(r"\+?[\d\s\-().]{10,}")
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
LANDMARK_TAGS = ("header", "nav", "main", "footer", "article", "section", "aside")
MODERN_IMAGE_EXTENSIONS = (".webp", ".avif")
LARGE_IMAGE_PX = 1200
HIDDEN_MARKER = "data-hidden-computed"

STRING_FIELDS = (
    "url",
    "final_url",
    "meta_title",
    "meta_description",
    "canonical_url",
    "robots_meta",
    "lang_attribute",
    "viewport_meta",
    "charset_meta",
    "og_title",
    "og_description",
    "og_image",
    "og_type",
    "twitter_card",
    "twitter_title",
    "twitter_description",
    "twitter_image",
    "sitemap_url",
)
LIST_FIELDS = ("h1_tags", "h1_evidence", "h2_tags", "same_as", "json_ld")
CHECK_STATUSES = ("found", "not_found", "error")


def default_signals(url: str = "") -> SeoSignals:
    """All-defaults signals, used when a page could not be fetched or parsed."""
    signals: dict = {field: "" for field in STRING_FIELDS}
    signals.update({field: [] for field in LIST_FIELDS})
    signals.update({field: 0 for field in COUNT_FIELDS})
    signals.update(NUMERIC_DEFAULTS)
    signals.update(
        {
            "url": url,
            "final_url": url,
            "has_hreflang": False,
            "schema": classify_schemas([]),
            "business_info": {},
            "core_web_vitals": {"fcp": 0.0, "lcp": 0.0, "fid": 0.0, "cls": 0.0},
            "performance_source": "estimated",
            "robots_txt_status": "not_found",
            "sitemap_status": "not_found",
        }
    )
    return signals  # type: ignore[return-value]


def finalize_signals(raw: dict) -> SeoSignals:
    """Fill gaps and coerce every numeric field once, at the extraction boundary.

    Missing, non-numeric, NaN, infinite and negative values become the
    documented neutral default; zero is kept as a real value.
    """
    base = default_signals(str(raw.get("url") or ""))
    out: dict = {**base}
    for key, value in raw.items():
        if value is not None:
            out[key] = value

    for field in STRING_FIELDS:
        out[field] = str(out.get(field) or "").strip()
    for field in LIST_FIELDS:
        if not isinstance(out.get(field), list):
            out[field] = []
    for field in COUNT_FIELDS:
        out[field] = int(coerce_number(out.get(field), 0))
    for field, default in NUMERIC_DEFAULTS.items():
        out[field] = coerce_number(raw.get(field), default)
    for field in ("word_count", "paragraph_count", "missing_aria_labels", "css_files_count",
                  "js_files_count", "render_blocking_resources"):
        out[field] = int(out[field])

    vitals = raw.get("core_web_vitals") if isinstance(raw.get("core_web_vitals"), dict) else {}
    out["core_web_vitals"] = {k: float(coerce_number(vitals.get(k), 0.0)) for k in ("fcp", "lcp", "fid", "cls")}
    for field in ("robots_txt_status", "sitemap_status"):
        if out.get(field) not in CHECK_STATUSES:
            out[field] = "not_found"
    if not isinstance(out.get("business_info"), dict):
        out["business_info"] = {}
    if not isinstance(out.get("schema"), dict):
        out["schema"] = classify_schemas(out["json_ld"])
    out["has_hreflang"] = bool(out.get("has_hreflang"))
    out["performance_source"] = str(out.get("performance_source") or "estimated")
    return out  # type: ignore[return-value]


def merge_signals(signals: SeoSignals, updates: dict) -> SeoSignals:
    """Return a new signals record with updates applied and re-coerced."""
    return finalize_signals({**signals, **updates})


def _attr_text(tag, name: str) -> str:
    if tag is None:
        return ""
    value = tag.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return str(value or "").strip()


def _rel_values(tag) -> list[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _meta_content(soup: BeautifulSoup, **attrs) -> str:
    return _attr_text(soup.find("meta", attrs=attrs), "content")


def _is_hidden(el) -> bool:
    if el.has_attr("hidden") or el.has_attr(HIDDEN_MARKER):
        return True
    if _attr_text(el, "aria-hidden").lower() == "true":
        return True
    style = re.sub(r"\s+", "", _attr_text(el, "style").lower())
    return "display:none" in style or "visibility:hidden" in style


def _css_path(el) -> str:
    parts: list[str] = []
    current = el
    for _ in range(6):
        if current is None or not getattr(current, "name", None) or current.name == "[document]":
            break
        tag = current.name.lower()
        element_id = _attr_text(current, "id")
        if element_id:
            parts.insert(0, f"{tag}#{element_id}")
            break
        classes = ".".join((current.get("class") or [])[:2])
        parent = current.parent
        siblings = parent.find_all(tag, recursive=False) if parent is not None else [current]
        index = next((i for i, sib in enumerate(siblings, start=1) if sib is current), 1)
        parts.insert(0, f"{tag}.{classes}:nth-of-type({index})" if classes else f"{tag}:nth-of-type({index})")
        current = parent
    return " > ".join(parts)


def _h1_evidence(soup: BeautifulSoup) -> list[H1Evidence]:
    evidence: list[H1Evidence] = []
    for el in soup.find_all("h1"):
        text = re.sub(r"\s+", " ", el.get_text(" ", strip=True))[:160]
        evidence.append({"text": text or "(empty)", "selector": _css_path(el), "hidden": _is_hidden(el)})
    return evidence


def _parse_json_ld(soup: BeautifulSoup) -> list:
    blocks: list = []
    for script_tag in soup.find_all("script", attrs={"type": re.compile(r"^application/ld\+json$", re.I)}):
        content = (script_tag.string or script_tag.get_text() or "").strip()
        if not content:
            continue
        try:
            blocks.append(_json.loads(content))
        except (ValueError, RecursionError):
            continue
    return blocks


def _business_nodes(blocks: list) -> list[dict]:
    nodes: list[dict] = []
    stack = list(blocks)
    while stack:
        node = stack.pop(0)
        if isinstance(node, list):
            stack.extend(node)
        elif isinstance(node, dict):
            if any(t in ("Organization", "LocalBusiness") for t in raw_types(node)):
                nodes.append(node)
            if isinstance(node.get("@graph"), list):
                stack.extend(node["@graph"])
    return nodes


def _business_info(soup: BeautifulSoup, blocks: list, body_text: str) -> BusinessInfo:
    info: BusinessInfo = {}
    for block in _business_nodes(blocks):
        if block.get("telephone"):
            info["phone"] = str(block["telephone"])
        if block.get("email"):
            info["email"] = str(block["email"])
        address = block.get("address")
        if isinstance(address, str) and address.strip():
            info["address"] = address.strip()
        elif isinstance(address, dict):
            info["address"] = str(address.get("streetAddress") or _json.dumps(address, sort_keys=True))
        if block.get("openingHours"):
            info["hours"] = _json.dumps(block["openingHours"])
        logo = block.get("logo")
        if isinstance(logo, dict):
            logo = logo.get("url")
        if isinstance(logo, str) and logo:
            info["logo"] = logo
        info["business_type"] = raw_types(block)[0]

    if not info.get("phone"):
        for match in PHONE_PATTERN.finditer(body_text):
            candidate = match.group(0).strip()
            if len(re.sub(r"\D", "", candidate)) >= 7:
                info["phone"] = candidate
                break
    if not info.get("email"):
        match = EMAIL_PATTERN.search(body_text)
        if match:
            info["email"] = match.group(0)
    if not info.get("logo"):
        for img in soup.find_all("img", src=True):
            marker = f"{_attr_text(img, 'alt')} {_attr_text(img, 'class')}".lower()
            if "logo" in marker:
                info["logo"] = _attr_text(img, "src")
                break
    return info


def _heading_hierarchy_score(soup: BeautifulSoup) -> float:
    levels = [int(h.name[1]) for h in soup.find_all(re.compile(r"^h[1-6]$"))]
    score = 100
    h1_count = levels.count(1)
    if h1_count == 0:
        score -= 30
    elif h1_count > 1:
        score -= 20
    previous = 0
    for level in levels:
        if previous and level > previous + 1:
            score -= 15
        previous = level
    distinct = len(set(levels))
    if distinct <= 1:
        score -= 20
    elif distinct == 2:
        score -= 10
    return float(max(0, min(100, score)))


def _count_syllables(word: str) -> int:
    w = re.sub(r"[^a-z]", "", word.lower())
    if not w:
        return 0
    syllables = 0
    prev_vowel = False
    for ch in w:
        is_vowel = ch in "aeiouy"
        if is_vowel and not prev_vowel:
            syllables += 1
        prev_vowel = is_vowel
    if w.endswith("e") and syllables > 1:
        syllables -= 1
    return max(1, syllables)


def _readability_score(text: str) -> float | None:
    """Flesch reading ease clamped to 0-100, None when there is no prose."""
    words = re.findall(r"[A-Za-z']+", text)
    sentences = [s for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]
    if not words or not sentences:
        return None
    syllables = sum(_count_syllables(w) for w in words)
    ease = 206.835 - 1.015 * (len(words) / len(sentences)) - 84.6 * (syllables / len(words))
    return round(max(0.0, min(100.0, ease)), 1)


def _labelled_ids(soup: BeautifulSoup) -> set[str]:
    return {_attr_text(label, "for") for label in soup.find_all("label") if _attr_text(label, "for")}


def _has_accessible_name(el, label_ids: set[str]) -> bool:
    for attr in ("aria-label", "aria-labelledby", "title"):
        if _attr_text(el, attr):
            return True
    if el.get_text(strip=True):
        return True
    if any(_attr_text(img, "alt") for img in el.find_all("img")):
        return True
    if el.name == "input":
        if _attr_text(el, "id") in label_ids or el.find_parent("label") is not None:
            return True
        if _attr_text(el, "type").lower() in ("submit", "button", "reset") and _attr_text(el, "value"):
            return True
    return False


def _missing_aria_labels(soup: BeautifulSoup) -> int:
    label_ids = _labelled_ids(soup)
    missing = 0
    for el in soup.find_all(["button", "a", "input", "select", "textarea"]):
        if el.name == "a" and not el.has_attr("href"):
            continue
        if el.name == "input" and _attr_text(el, "type").lower() in ("hidden", "image"):
            continue
        if not _has_accessible_name(el, label_ids):
            missing += 1
    return missing


def _image_stats(soup: BeautifulSoup) -> dict:
    images = soup.find_all("img")
    total = len(images)
    missing_alt = sum(1 for img in images if not _attr_text(img, "alt"))
    webp = lazy = large = 0
    for img in images:
        sources = [_attr_text(img, "src").lower(), _attr_text(img, "srcset").lower()]
        picture = img.find_parent("picture")
        modern = any(src.split("?")[0].endswith(MODERN_IMAGE_EXTENSIONS) for src in sources if src)
        if picture is not None:
            modern = modern or any(
                _attr_text(source, "type").lower() in ("image/webp", "image/avif")
                for source in picture.find_all("source")
            )
        if modern:
            webp += 1
        if _attr_text(img, "loading").lower() == "lazy":
            lazy += 1
        dims = [coerce_number(_attr_text(img, attr).rstrip("px"), 0) for attr in ("width", "height")]
        if not modern and max(dims) >= LARGE_IMAGE_PX:
            large += 1
    with_alt = total - missing_alt
    return {
        "images_total": total,
        "images_with_alt": with_alt,
        "images_missing_alt": missing_alt,
        "images_alt_percentage": round(with_alt * 100.0 / total, 1) if total else 100.0,
        "images_webp_count": webp,
        "images_lazy_loading_count": lazy,
        "images_large_count": large,
    }


def _link_stats(soup: BeautifulSoup, final_url: str) -> dict:
    host = (urlparse(final_url).hostname or "").lower()
    internal = external = nofollow = 0
    same_as: list[str] = []
    for a in soup.find_all("a", href=True):
        href = _attr_text(a, "href")
        if "nofollow" in _rel_values(a):
            nofollow += 1
        if href.startswith("//"):
            href = "https:" + href
        if href.startswith("/") or (host and host in href.lower()):
            internal += 1
            continue
        parsed = urlparse(href)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            continue
        external += 1
        if SOCIAL_HOST_PATTERN.search(parsed.hostname) and href not in same_as and len(same_as) < 10:
            same_as.append(href)
    return {
        "internal_links_count": internal,
        "external_links_count": external,
        "nofollow_links_count": nofollow,
        "same_as": same_as,
    }


def _asset_stats(soup: BeautifulSoup) -> dict:
    stylesheets = [link for link in soup.find_all("link", href=True) if "stylesheet" in _rel_values(link)]
    scripts = soup.find_all("script", src=True)
    head = soup.head
    blocking_scripts = [
        s for s in (head.find_all("script", src=True) if head is not None else [])
        if not s.has_attr("async") and not s.has_attr("defer") and _attr_text(s, "type").lower() != "module"
    ]
    blocking_css = [link for link in stylesheets if _attr_text(link, "media").lower() != "print"]
    return {
        "css_files_count": len(stylesheets),
        "js_files_count": len(scripts),
        "render_blocking_resources": len(blocking_css) + len(blocking_scripts),
    }


def _accessibility_score(soup: BeautifulSoup, missing_alt: int, missing_aria: int) -> float:
    score = 100
    html_tag = soup.find("html")
    if not _attr_text(html_tag, "lang"):
        score -= 15
    if soup.find("main") is None and soup.find(attrs={"role": "main"}) is None:
        score -= 10
    score -= min(30, missing_alt * 5)
    score -= min(20, missing_aria * 4)
    return float(max(0, min(100, score)))


def extract_signals(html: str, final_url: str) -> SeoSignals:
    """
    Parse `html` (as rendered at `final_url`) into SeoSignals.
    Missing elements yield empty strings, zeros or neutral defaults.
    """
    try:
        soup = BeautifulSoup(html or "", "html.parser")
    except Exception:
        return default_signals(final_url)

    # --- Structured data (extract before decomposing scripts) ---
    json_ld = _parse_json_ld(soup)
    assets = _asset_stats(soup)

    # --- Meta ---
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    meta_description = _meta_content(soup, name=re.compile(r"^description$", re.I))
    canonical_tag = next((link for link in soup.find_all("link") if "canonical" in _rel_values(link)), None)
    canonical_url = urljoin(final_url, _attr_text(canonical_tag, "href")) if _attr_text(canonical_tag, "href") else ""
    robots_meta = _meta_content(soup, name=re.compile(r"^robots$", re.I)).lower()
    viewport = _meta_content(soup, name=re.compile(r"^viewport$", re.I))
    charset_tag = soup.find("meta", charset=True)
    charset = _attr_text(charset_tag, "charset")
    if not charset:
        content_type = _meta_content(soup, **{"http-equiv": re.compile(r"^content-type$", re.I)})
        found = re.search(r"charset=([\w\-]+)", content_type, flags=re.I)
        charset = found.group(1) if found else ""

    # --- Social ---
    og_tags = soup.find_all("meta", attrs={"property": re.compile(r"^og:", re.I)})
    twitter_tags = soup.find_all("meta", attrs={"name": re.compile(r"^twitter:", re.I)})
    twitter_tags += [
        m for m in soup.find_all("meta", attrs={"property": re.compile(r"^twitter:", re.I)})
        if m not in twitter_tags
    ]

    def og(prop: str) -> str:
        return _meta_content(soup, property=re.compile(rf"^og:{prop}$", re.I))

    def twitter(prop: str) -> str:
        return (
            _meta_content(soup, name=re.compile(rf"^twitter:{prop}$", re.I))
            or _meta_content(soup, property=re.compile(rf"^twitter:{prop}$", re.I))
        )

    # --- Headings ---
    h1_evidence = _h1_evidence(soup)
    visible_h1 = [h["text"] for h in h1_evidence if not h["hidden"] and h["text"] != "(empty)"]
    h2_tags = [t for t in (h.get_text(" ", strip=True) for h in soup.find_all("h2")) if t]
    hierarchy = _heading_hierarchy_score(soup)

    # --- Accessibility (before text extraction touches the tree) ---
    semantic = min(100, 25 * sum(1 for tag in LANDMARK_TAGS if soup.find(tag) is not None))
    missing_aria = _missing_aria_labels(soup)
    images = _image_stats(soup)
    links = _link_stats(soup, final_url)

    # --- Visible text ---
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    visible_text = body.get_text(separator=" ", strip=True)
    paragraphs = [p.get_text(" ", strip=True) for p in soup.find_all("p")]
    paragraphs = [p for p in paragraphs if p]
    paragraph_words = sum(len(p.split()) for p in paragraphs)

    raw = {
        "url": final_url,
        "final_url": final_url,
        "meta_title": title,
        "meta_title_length": len(title),
        "meta_description": meta_description,
        "meta_description_length": len(meta_description),
        "canonical_url": canonical_url,
        "robots_meta": robots_meta,
        "lang_attribute": _attr_text(soup.find("html"), "lang"),
        "viewport_meta": viewport,
        "charset_meta": charset,
        "has_hreflang": soup.find("link", hreflang=True) is not None,
        "h1_tags": visible_h1,
        "h1_count": len(visible_h1),
        "h1_evidence": h1_evidence,
        "h2_tags": h2_tags,
        "h2_count": len(h2_tags),
        **images,
        **links,
        "og_title": og("title"),
        "og_description": og("description"),
        "og_image": og("image"),
        "og_type": og("type"),
        "open_graph_count": len(og_tags),
        "twitter_card": twitter("card"),
        "twitter_title": twitter("title"),
        "twitter_description": twitter("description"),
        "twitter_image": twitter("image"),
        "twitter_count": len(twitter_tags),
        "json_ld": json_ld,
        "schema": classify_schemas(json_ld),
        "business_info": _business_info(soup, json_ld, visible_text),
        "word_count": len(visible_text.split()),
        "paragraph_count": len(paragraphs),
        "content_density": round(paragraph_words / len(paragraphs), 1) if paragraphs else 0,
        "heading_hierarchy_score": hierarchy,
        "readability_score": _readability_score(visible_text),
        "semantic_html_score": semantic,
        "missing_aria_labels": missing_aria,
        "accessibility_score": _accessibility_score(soup, images["images_missing_alt"], missing_aria),
        **assets,
        "estimated_load_time": None,
        "performance_source": "estimated",
        "page_size_kb": round(len((html or "").encode("utf-8", errors="ignore")) / 1024, 1),
    }
    return finalize_signals(raw)
