"""
FILE DESCRIPTION: Page classification and on-page SEO signal extraction.
CONSOLIDATED FROM: parser, content_fingerprint, js_detect
KEY FUNCTIONS/CLASSES: detect_is_html, PageExtractor, SchemaExtractor, CustomExtractorRunner
"""

import json
import re
from typing import Any, Iterable, List, Optional, Union
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, UnicodeDammit
from lxml import etree
from lxml import html as lxml_html

from scouter import simhash
from scouter.core import logger
from scouter.models import ExtractionResult, ExtractorConfig, FetchResult, Link, RegexExtractor, XPathExtractor
from scouter.processor import LinkUtility, ScopePolicy

# === CLASSIFICATION ===

NON_HTML_EXTENSIONS = frozenset((
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "odt", "ods", "odp",
    "jpg", "jpeg", "png", "gif", "bmp", "webp", "svg", "ico", "tiff", "tif",
    "mp3", "wav", "ogg", "flac", "aac", "m4a",
    "mp4", "avi", "mov", "wmv", "mkv", "webm", "flv",
    "zip", "rar", "7z", "tar", "gz", "bz2",
    "exe", "msi", "dmg", "apk", "deb", "rpm",
    "css", "js", "json", "xml", "rss", "atom",
    "ttf", "woff", "woff2", "eot", "otf",
))

NON_HTML_CONTENT_TYPES = (
    "application/pdf", "application/zip", "application/octet-stream",
    "application/javascript", "application/json", "application/xml",
    "image/", "audio/", "video/", "font/",
    "text/css", "text/javascript", "text/plain", "text/xml",
)

BINARY_SIGNATURES = (
    b"%PDF", b"\xff\xd8\xff", b"\x89PNG", b"GIF8", b"PK\x03\x04", b"Rar!",
    b"\x1f\x8b", b"BM", b"\x00\x00\x00", b"ID3", b"\xff\xfb", b"OggS",
)

HTML_TAG_RE = re.compile(rb"<(!DOCTYPE|html|head|body|div|p|a|span|script|link|meta)", re.IGNORECASE)
PRINTABLE_RE = re.compile(rb"[\x20-\x7e\x0a\x0d\x09]")
PRINTABLE_RATIO = 0.8


def robots_directives(value: str):
    """(noindex, nofollow) from a robots meta content or X-Robots-Tag value. 'none' means both."""
    tokens = [t.strip().rsplit(":", 1)[-1].strip() for t in (value or "").lower().split(",")]
    none = "none" in tokens
    return none or "noindex" in tokens, none or "nofollow" in tokens


def detect_is_html(url: str, content_type: str, body: bytes) -> bool:
    """
    FLOW: URL extension -> explicit Content-Type -> binary magic bytes ->
    known HTML tags -> printable-character ratio of the first 1000 bytes.
    """
    path = urlsplit(url).path or ""
    last_segment = path.rsplit("/", 1)[-1]
    if "." in last_segment and last_segment.rsplit(".", 1)[-1].lower() in NON_HTML_EXTENSIONS:
        return False

    content_type = (content_type or "").lower()
    if any(t in content_type for t in NON_HTML_CONTENT_TYPES):
        return False
    if "text/html" in content_type or "application/xhtml" in content_type:
        return True

    if not body:
        return False
    if body.startswith(BINARY_SIGNATURES):
        return False
    if HTML_TAG_RE.search(body):
        return True
    sample = body[:1000]
    if len(PRINTABLE_RE.findall(sample)) / len(sample) < PRINTABLE_RATIO:
        return False
    return True


# === STRUCTURED DATA ===

SCHEMA_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
SCHEMA_URL_RE = re.compile(r"^https?://schema\.org/(.+)$", re.IGNORECASE)
SCHEMA_PREFIX_RE = re.compile(r"^schema:(.+)$", re.IGNORECASE)


def _attr_tokens(value) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [v for v in value if v]
    return (value or "").split()


class SchemaExtractor:
    """
    Top-level entity types from JSON-LD, Microdata and RDFa.
    Entities attached to a parent through itemprop/property are sub-objects and are skipped.
    """

    @staticmethod
    def clean_type(raw: str) -> str:
        raw = (raw or "").strip()
        m = SCHEMA_URL_RE.match(raw) or SCHEMA_PREFIX_RE.match(raw)
        if m:
            return m.group(1).strip("/")
        return raw if SCHEMA_NAME_RE.match(raw) else ""

    @classmethod
    def extract(cls, soup: BeautifulSoup) -> List[str]:
        types: List[str] = []
        for raw in cls._jsonld_types(soup) + cls._microdata_types(soup) + cls._rdfa_types(soup):
            cleaned = cls.clean_type(raw)
            if cleaned and cleaned not in types:
                types.append(cleaned)
        return types

    @classmethod
    def _jsonld_types(cls, soup) -> List[str]:
        types: List[str] = []
        for script in soup.find_all("script", attrs={"type": re.compile(r"^\s*application/ld\+json\s*$", re.I)}):
            content = (script.string or script.get_text() or "").strip()
            if not content:
                continue
            try:
                data = json.loads(content)
            except ValueError:
                continue
            if isinstance(data, dict) and isinstance(data.get("@graph"), list):
                items = data["@graph"]
            elif isinstance(data, dict):
                items = [data]
            elif isinstance(data, list):
                items = data
            else:
                items = []
            for item in items:
                types.extend(cls._types_of(item))
        return types

    @staticmethod
    def _types_of(item: Any) -> List[str]:
        if not isinstance(item, dict):
            return []
        value = item.get("@type")
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str)]
        return []

    @staticmethod
    def _nested_under(element, attribute: str) -> bool:
        if element.has_attr(attribute):
            return True
        return any(parent.has_attr(attribute) for parent in element.parents if hasattr(parent, "has_attr"))

    @classmethod
    def _microdata_types(cls, soup) -> List[str]:
        types: List[str] = []
        for element in soup.find_all(attrs={"itemscope": True, "itemtype": True}):
            if cls._nested_under(element, "itemprop"):
                continue
            types.extend(_attr_tokens(element["itemtype"]))
        return types

    @classmethod
    def _rdfa_types(cls, soup) -> List[str]:
        types: List[str] = []
        for element in soup.find_all(attrs={"typeof": True}):
            if cls._nested_under(element, "property"):
                continue
            types.extend(_attr_tokens(element["typeof"]))
        return types


# === CUSTOM EXTRACTORS ===

XPATH_WRAPPERS = (
    ("replace", re.compile(r"""^replace\s*\(\s*(.+?)\s*,\s*['"](.+?)['"]\s*,\s*['"](.*)['"]\s*\)$""", re.I)),
    ("lower-case", re.compile(r"^lower-case\s*\(\s*(.+?)\s*\)$", re.I)),
    ("upper-case", re.compile(r"^upper-case\s*\(\s*(.+?)\s*\)$", re.I)),
    ("matches", re.compile(r"""^matches\s*\(\s*(.+?)\s*,\s*['"](.+?)['"]\s*\)$""", re.I)),
    ("ends-with", re.compile(r"""^ends-with\s*\(\s*(.+?)\s*,\s*['"](.+?)['"]\s*\)$""", re.I)),
    ("tokenize", re.compile(r"""^tokenize\s*\(\s*(.+?)\s*,\s*['"](.+?)['"]\s*\)\s*\[(\d+)\]$""", re.I)),
)


def _node_value(node) -> Optional[str]:
    if isinstance(node, etree._Element):
        return node.text_content().strip() if hasattr(node, "text_content") else "".join(node.itertext()).strip()
    if isinstance(node, str):
        return str(node).strip()
    return None


class CustomExtractorRunner:
    """
    FLOW: Regex extractors run on the decoded markup -> XPath extractors run on an lxml tree ->
    XPath 2.0 style wrappers are unwrapped and applied afterwards in Python.
    A broken expression yields None for that extractor only.
    """

    def __init__(self, config: ExtractorConfig):
        self.config = config

    def run(self, markup: str, tree) -> dict:
        results = {}
        for extractor in self.config.regex:
            results[extractor.name] = self.apply_regex(extractor, markup)
        for extractor in self.config.xpath:
            if tree is None:
                results[extractor.name] = [] if extractor.is_tree else None
            elif extractor.is_tree:
                results[extractor.name] = self.apply_tree(extractor, tree)
            else:
                results[extractor.name] = self.apply_xpath(extractor.xpath, tree)
        return results

    @staticmethod
    def apply_regex(extractor: RegexExtractor, markup: str) -> Optional[str]:
        try:
            m = re.search(extractor.pattern, markup, re.IGNORECASE | re.DOTALL)
        except re.error as e:
            logger.warning(f"[EXTRACT] Invalid regex extractor '{extractor.name}': {e}")
            return None
        if not m:
            return None
        value = m.group(1) if m.re.groups else m.group(0)
        return value.strip() if value is not None else None

    @staticmethod
    def _unwrap(expression: str):
        for kind, pattern in XPATH_WRAPPERS:
            m = pattern.match(expression.strip())
            if m:
                return m.group(1), kind, m.groups()[1:]
        return expression, None, ()

    @classmethod
    def apply_xpath(cls, expression: str, tree) -> Optional[str]:
        inner, kind, args = cls._unwrap(expression)
        try:
            result = tree.xpath(inner)
        except (etree.XPathError, TypeError, ValueError) as e:
            logger.warning(f"[EXTRACT] Invalid xpath '{expression}': {e}")
            return None

        if isinstance(result, bool):
            value = "true" if result else "false"
        elif isinstance(result, float):
            value = str(int(result)) if result.is_integer() else str(result)
        elif isinstance(result, list):
            value = _node_value(result[0]) if result else None
        else:
            value = _node_value(result)

        if value is None or kind is None:
            return value
        try:
            return cls._post_process(value, kind, args)
        except re.error as e:
            logger.warning(f"[EXTRACT] Invalid pattern in '{expression}': {e}")
            return None

    @staticmethod
    def _post_process(value: str, kind: str, args) -> str:
        if kind == "replace":
            return re.sub(args[0], args[1], value)
        if kind == "lower-case":
            return value.lower()
        if kind == "upper-case":
            return value.upper()
        if kind == "matches":
            return "true" if re.search(args[0], value) else "false"
        if kind == "ends-with":
            return "true" if value.endswith(args[0]) else "false"
        if kind == "tokenize":
            parts = re.split(args[0], value)
            index = int(args[1]) - 1  # XPath indexes from 1
            return parts[index] if 0 <= index < len(parts) else ""
        return value

    @staticmethod
    def apply_tree(extractor: XPathExtractor, tree) -> List[dict]:
        try:
            nodes = tree.xpath(extractor.xpath)
        except (etree.XPathError, TypeError, ValueError) as e:
            logger.warning(f"[EXTRACT] Invalid tree xpath '{extractor.xpath}': {e}")
            return []
        if not isinstance(nodes, list):
            return []

        records = []
        for node in nodes:
            if not isinstance(node, etree._Element):
                continue
            record = {}
            for field_name, expression in extractor.fields:
                if expression == ".":
                    record[field_name] = _node_value(node)
                elif expression.startswith("@"):
                    record[field_name] = node.get(expression[1:])
                else:
                    try:
                        found = node.xpath(expression)
                    except (etree.XPathError, TypeError, ValueError):
                        found = None
                    if isinstance(found, list):
                        record[field_name] = _node_value(found[0]) if found else None
                    else:
                        record[field_name] = None if found is None else str(found)
            records.append(record)
        return records


# === PAGE EXTRACTOR ===

CONTENT_CONTAINERS = ("main", "article", "body")
BOILERPLATE_TAGS = ["nav", "header", "footer", "aside"]
INVISIBLE_TAGS = ["script", "style", "noscript", "template"]
WORD_RE = re.compile(r"[^\W\d_]+(?:['’-][^\W\d_]+)*")


class PageExtractor:
    """
    FLOW: Classifies the response -> Decodes markup leniently -> Extracts head signals (title, meta, canonical,
    robots) -> Headings -> Links -> Structured data -> Custom extractors -> Main content fingerprint.
    Malformed markup never raises; partial results are returned.
    """

    def __init__(self, parser: str = "lxml"):
        self.parser = parser

    def extract(self, url: str, fetch: FetchResult, scope: Union[ScopePolicy, Iterable[str]],
                extractor_config: Optional[ExtractorConfig] = None) -> ExtractionResult:
        if not isinstance(scope, ScopePolicy):
            scope = ScopePolicy(scope)
        extractor_config = extractor_config or ExtractorConfig()

        header_noindex, header_nofollow = robots_directives(fetch.header("X-Robots-Tag"))

        if not detect_is_html(url, fetch.content_type, fetch.body):
            return ExtractionResult(is_html=False, noindex=header_noindex, nofollow=header_nofollow)

        markup = self.decode(fetch.body, fetch.content_type)
        soup = BeautifulSoup(markup, self.parser)

        base = url
        base_tag = soup.find("base", href=True)
        if base_tag:
            base = LinkUtility.resolve(url, base_tag["href"]) or url

        title = self._text(soup.find("title"))
        h1_count, first_h1, headings_missing = self._headings(soup)
        meta_description = self._meta_content(soup, "description")

        canonical = ""
        for link in soup.find_all("link", href=True):
            rel = link.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            if "canonical" in [r.lower() for r in rel]:
                canonical = LinkUtility.resolve(base, link["href"]) or ""
                break

        meta_noindex, meta_nofollow = robots_directives(self._meta_content(soup, "robots"))
        noindex = header_noindex or meta_noindex
        nofollow = header_nofollow or meta_nofollow

        links = self._links(soup, base, scope)
        schemas = SchemaExtractor.extract(soup)

        extracts = {}
        if extractor_config:
            extracts = CustomExtractorRunner(extractor_config).run(markup, self.xpath_tree(markup))

        content_text = self._main_content_text(soup)
        return ExtractionResult(
            is_html=True,
            title=title,
            h1=first_h1,
            h1_count=h1_count,
            meta_description=meta_description,
            canonical=canonical,
            noindex=noindex,
            nofollow=nofollow,
            headings_missing=headings_missing,
            links=tuple(links),
            schemas=tuple(schemas),
            simhash=simhash.compute(content_text),
            word_count=len(WORD_RE.findall(content_text)),
            extracts=extracts,
        )

    @staticmethod
    def decode(body: bytes, content_type: str = "") -> str:
        if not body:
            return ""
        declared = []
        m = re.search(r"charset=([\w.:-]+)", content_type or "", re.I)
        if m:
            declared.append(m.group(1))
        return UnicodeDammit(body, known_definite_encodings=declared).unicode_markup or ""

    @staticmethod
    def xpath_tree(markup: str):
        if not markup.strip():
            return None
        parser = lxml_html.HTMLParser(encoding="utf-8", recover=True)
        try:
            return lxml_html.document_fromstring(markup.encode("utf-8"), parser=parser)
        except (etree.ParserError, ValueError) as e:
            logger.debug(f"[EXTRACT] lxml could not build a tree: {e}")
            return None

    @staticmethod
    def _text(tag) -> str:
        return tag.get_text(" ", strip=True) if tag else ""

    @staticmethod
    def _meta_content(soup, name: str) -> str:
        for meta in soup.find_all("meta", attrs={"name": True}):
            if meta["name"].strip().lower() == name:
                return (meta.get("content") or "").strip()
        return ""

    def _headings(self, soup):
        """Returns (h1 count, first h1 text, heading-gap flag)."""
        levels, first_h1, h1_count = [], "", 0
        for heading in soup.find_all(re.compile(r"^h[1-6]$")):
            level = int(heading.name[1])
            if level == 1:
                h1_count += 1
                if h1_count == 1:
                    first_h1 = self._text(heading)
            levels.append(level)

        gap = False
        if levels and levels[0] > 1:
            gap = True
        for previous, level in zip(levels, levels[1:]):
            if level > previous + 1:
                gap = True
                break
        return h1_count, first_h1, gap

    @staticmethod
    def _links(soup, base: str, scope: ScopePolicy) -> List[Link]:
        links = []
        for a in soup.find_all("a", href=True):
            target = LinkUtility.resolve(base, a["href"])
            if not target:
                continue
            rel = a.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            links.append(Link(
                url=target,
                external=scope.is_external(target),
                anchor=a.get_text(" ", strip=True),
                nofollow="nofollow" in [r.lower() for r in rel],
            ))
        return links

    @staticmethod
    def _main_content_text(soup) -> str:
        container = None
        for name in CONTENT_CONTAINERS:
            container = soup.find(name)
            if container is not None:
                break
        if container is None:
            container = soup
        for tag in container.find_all(BOILERPLATE_TAGS + INVISIBLE_TAGS):
            tag.decompose()
        return container.get_text(" ", strip=True)
