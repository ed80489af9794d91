# domainscope/scanner/probes/content_probe.py
"""
Content scrape / business intelligence probe.

Parses the shared homepage fetch with BeautifulSoup (html.parser) and
extracts:

    SEO         title, meta description, robots, viewport, canonical, lang,
                Open Graph / Twitter meta, h1..h6, visible word count,
                image alt coverage
    Structured  JSON-LD blocks and their @type values
    Contacts    emails (text + mailto:), phones (text + tel:), social
                profile links, contact form, privacy / legal links
    Business    model indicators (ecommerce, saas, marketplace, blog,
                lead_generation) and B2B / B2C audience keyword scoring
    Performance response time, page size, compression

Malformed JSON-LD and non-HTML bodies produce warnings (PartialData); the
performance facts are still reported.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from domainscope.scanner.base import BaseProbe, Collected, ScanContext, complete_only
from domainscope.scanner.models import ContentResult, HttpResponse, ProbeKind
from domainscope.scanner.probes.http_fetch import fetch_homepage

logger = logging.getLogger(__name__)

MAX_HEADING_LENGTH = 150

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERNS = (
    re.compile(r"\+\d{1,3}[\s.-]?\(?\d{1,4}\)?[\s.-]?\d{1,4}[\s.-]?\d{1,9}"),
    re.compile(r"\(\d{3}\)[\s.-]?\d{3}[\s.-]?\d{4}"),
    re.compile(r"\b\d{3}[\s.-]\d{3}[\s.-]\d{4}\b"),
)

PLACEHOLDER_EMAILS = {"example@example.com", "test@test.com", "email@example.com", "you@example.com"}
ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".css", ".js")

SOCIAL_PATTERNS = {
    "facebook": re.compile(r"(?:https?:)?//(?:www\.)?facebook\.com/[a-zA-Z0-9.\-_]+", re.I),
    "twitter": re.compile(r"(?:https?:)?//(?:www\.)?(?:twitter\.com|x\.com)/[a-zA-Z0-9_]+", re.I),
    "instagram": re.compile(r"(?:https?:)?//(?:www\.)?instagram\.com/[a-zA-Z0-9.\-_]+", re.I),
    "linkedin": re.compile(r"(?:https?:)?//(?:[a-z]{2,3}\.)?linkedin\.com/(?:company|in)/[a-zA-Z0-9\-_%]+", re.I),
    "youtube": re.compile(r"(?:https?:)?//(?:www\.)?youtube\.com/(?:channel/|c/|user/|@)[a-zA-Z0-9\-_]+", re.I),
    "tiktok": re.compile(r"(?:https?:)?//(?:www\.)?tiktok\.com/@[a-zA-Z0-9.\-_]+", re.I),
    "pinterest": re.compile(r"(?:https?:)?//(?:www\.)?pinterest\.com/[a-zA-Z0-9.\-_]+", re.I),
    "github": re.compile(r"(?:https?:)?//(?:www\.)?github\.com/[a-zA-Z0-9\-_]+", re.I),
}

PRIVACY_RE = re.compile(r"privacy|datenschutz|privacidad|cookie|terms|legal|imprint|impressum|gdpr", re.I)

BUSINESS_MODEL_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "ecommerce": ("add to cart", "checkout", "shopping cart", "woocommerce", "free shipping"),
    "saas": ("subscription", "pricing", "sign up", "free trial", "per month"),
    "marketplace": ("marketplace", "sellers", "vendors", "become a seller"),
    "blog": ("blog", "article", "latest posts", "read more"),
    "lead_generation": ("contact us", "get a quote", "request demo", "request a demo", "book a call"),
}

AUDIENCE_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "b2b": ("enterprise", "business", "corporate", "b2b", "solution", "roi", "teams", "partners"),
    "b2c": ("shop", "buy", "customer", "personal", "individual", "b2c", "family", "gift"),
}

# Whole words only: "roi" must not match inside "android"
_KEYWORD_PATTERNS: Dict[str, Pattern[str]] = {
    word: re.compile(rf"\b{re.escape(word)}\b", re.I)
    for table in (BUSINESS_MODEL_KEYWORDS, AUDIENCE_KEYWORDS)
    for words in table.values()
    for word in words
}

NON_VISIBLE_TAGS = ("script", "style", "noscript", "template", "svg")


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

def _meta_map(soup: BeautifulSoup) -> Dict[str, str]:
    meta: Dict[str, str] = {}
    for tag in soup.find_all("meta"):
        name = (tag.get("name") or tag.get("property") or "").strip().lower()
        content = tag.get("content")
        if name and content is not None and name not in meta:
            meta[name] = content.strip()
    return meta


def _link_href(soup: BeautifulSoup, rel: str) -> Optional[str]:
    for tag in soup.find_all("link", href=True):
        rels = tag.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if rel in [r.lower() for r in rels]:
            return tag["href"].strip()
    return None


def _headings(soup: BeautifulSoup) -> Dict[str, Tuple[str, ...]]:
    out: Dict[str, Tuple[str, ...]] = {}
    for level in range(1, 7):
        texts = [" ".join(h.get_text(" ").split())[:MAX_HEADING_LENGTH] for h in soup.find_all(f"h{level}")]
        out[f"h{level}"] = tuple(texts)
    return out


def parse_json_ld(soup: BeautifulSoup) -> Tuple[int, Tuple[str, ...], List[str]]:
    """(block count, @type values, warnings) for every ld+json script."""
    types: List[str] = []
    warnings: List[str] = []
    blocks = soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.I)})
    for i, block in enumerate(blocks, start=1):
        raw = block.string or block.get_text() or ""
        try:
            data = json.loads(raw)
        except ValueError as e:
            warnings.append(f"Malformed JSON-LD block #{i}: {e}")
            continue
        types.extend(_ld_types(data))
    return len(blocks), tuple(dict.fromkeys(types)), warnings


def _ld_types(data: Any) -> List[str]:
    found: List[str] = []
    items = data if isinstance(data, list) else [data]
    for item in items:
        if not isinstance(item, dict):
            continue
        t = item.get("@type")
        if isinstance(t, str):
            found.append(t)
        elif isinstance(t, list):
            found.extend(str(x) for x in t)
        if "@graph" in item:
            found.extend(_ld_types(item["@graph"]))
    return found


def extract_emails(html: str, soup: BeautifulSoup) -> Tuple[str, ...]:
    emails = list(EMAIL_RE.findall(html))
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if href.lower().startswith("mailto:"):
            emails.append(href[7:].split("?", 1)[0])
    cleaned = []
    for email in emails:
        e = email.strip().lower()
        if not e or e in PLACEHOLDER_EMAILS or e.endswith(ASSET_SUFFIXES):
            continue
        cleaned.append(e)
    return tuple(dict.fromkeys(cleaned))


def extract_phones(text: str, soup: BeautifulSoup) -> Tuple[str, ...]:
    phones: List[str] = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if href.lower().startswith("tel:"):
            phones.append(href[4:].strip())
    for pattern in PHONE_PATTERNS:
        phones.extend(m.strip() for m in pattern.findall(text))
    return tuple(dict.fromkeys(p for p in phones if sum(c.isdigit() for c in p) >= 7))


def extract_social_profiles(html: str) -> Dict[str, str]:
    profiles = {}
    for platform, pattern in SOCIAL_PATTERNS.items():
        match = pattern.search(html)
        if match:
            url = match.group(0)
            profiles[platform] = "https:" + url if url.startswith("//") else url
    return profiles


def has_contact_form(soup: BeautifulSoup) -> bool:
    for form in soup.find_all("form"):
        action = (form.get("action") or "").lower()
        if "contact" in action:
            return True
        if form.find("textarea") is not None and form.find("input", attrs={"type": "email"}) is not None:
            return True
    return False


def extract_privacy_links(soup: BeautifulSoup, base_url: str) -> Tuple[str, ...]:
    links = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        label = " ".join(a.get_text(" ").split())
        if PRIVACY_RE.search(href) or PRIVACY_RE.search(label):
            links.append(urljoin(base_url, href))
    return tuple(dict.fromkeys(links))


def _keyword_hits(text: str, keywords: Iterable[str]) -> int:
    return sum(1 for k in keywords if _KEYWORD_PATTERNS[k].search(text))


def business_model(text: str) -> Dict[str, bool]:
    return {model: _keyword_hits(text, words) > 0 for model, words in BUSINESS_MODEL_KEYWORDS.items()}


def audience(text: str) -> Tuple[str, Dict[str, int]]:
    scores = {name: _keyword_hits(text, words) for name, words in AUDIENCE_KEYWORDS.items()}
    b2b, b2c = scores["b2b"], scores["b2c"]
    if not b2b and not b2c:
        return "unknown", scores
    if b2b > b2c:
        return "b2b", scores
    if b2c > b2b:
        return "b2c", scores
    return "mixed", scores


def visible_text(soup: BeautifulSoup) -> str:
    for tag in soup.find_all(NON_VISIBLE_TAGS):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def _is_html(response: HttpResponse) -> bool:
    ct = response.content_type.lower()
    if ct:
        return "html" in ct
    return response.body.lstrip()[:1] == b"<"


def analyse_content(response: HttpResponse) -> Tuple[ContentResult, List[str]]:
    """Build a ContentResult plus warnings from one homepage response."""
    base = dict(
        url=response.final_url,
        status_code=response.status_code,
        content_type=response.content_type,
        response_time_ms=response.elapsed_ms,
        page_size=len(response.body),
        compression=response.content_encoding,
    )
    warnings: List[str] = []
    if response.truncated:
        warnings.append(f"Body truncated at {len(response.body)} bytes")

    if not _is_html(response):
        warnings.append(f"Homepage is not HTML ({response.content_type or 'no content-type'})")
        return ContentResult(**base), warnings

    html = response.text
    soup = BeautifulSoup(html, "html.parser")

    meta = _meta_map(soup)
    title_tag = soup.find("title")
    title = " ".join(title_tag.get_text(" ").split()) if title_tag else None
    html_tag = soup.find("html")
    lang = None
    if html_tag is not None:
        lang = (html_tag.get("lang") or "").strip() or None

    images = soup.find_all("img")
    missing_alt = sum(1 for img in images if img.get("alt") is None)

    ld_count, ld_types, ld_warnings = parse_json_ld(soup)
    warnings.extend(ld_warnings)

    emails = extract_emails(html, soup)
    socials = extract_social_profiles(html)
    privacy = extract_privacy_links(soup, response.final_url)
    contact_form = has_contact_form(soup)
    headings = _headings(soup)

    # Destructive: strips script/style from the tree, so runs last
    text = visible_text(soup)
    lowered = text.lower()
    phones = extract_phones(text, soup)
    primary, audience_scores = audience(lowered)

    result = ContentResult(
        **base,
        title=title or None,
        meta_description=meta.get("description") or None,
        meta=meta,
        canonical=_link_href(soup, "canonical"),
        lang=lang,
        viewport=meta.get("viewport"),
        headings=headings,
        word_count=len(text.split()),
        images_total=len(images),
        images_missing_alt=missing_alt,
        json_ld_types=ld_types,
        json_ld_blocks=ld_count,
        emails=emails,
        phones=phones,
        social_profiles=socials,
        has_contact_form=contact_form,
        privacy_links=privacy,
        business_model=business_model(lowered),
        audience=primary,
        audience_scores=audience_scores,
    )
    return result, warnings


class ContentProbe(BaseProbe):
    kind = ProbeKind.CONTENT

    def collect(self, ctx: ScanContext) -> Collected:
        def fetch() -> Collected:
            fetched = fetch_homepage(ctx)
            result, warnings = analyse_content(fetched.data)
            logger.debug(
                f"Content: {result.url} title={result.title!r} words={result.word_count} "
                f"json-ld={list(result.json_ld_types)} audience={result.audience}"
            )
            return Collected(result, warnings=tuple(warnings), cached=fetched.cached)

        base_ttl = ctx.settings.ttl_for("content")
        value, hit = ctx.cached("content", fetch, ttl=lambda v: complete_only(v, base_ttl))
        return replace(value, cached=value.cached or hit)
