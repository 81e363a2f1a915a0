#!/usr/bin/env python3
import argparse
import asyncio
import hashlib
import json
import logging
import mimetypes
import posixpath
import re
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union
from urllib.parse import unquote, urljoin, urlparse, urlunparse

import requests
import yaml
from bs4 import BeautifulSoup, FeatureNotFound
from bs4.element import Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
}
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
CSS_ACCEPT = "text/css,*/*;q=0.1"

CSS_URL_RE = re.compile(r"""url\(\s*(['"]?)([^'")]+)\1\s*\)""", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"""@import\s+(?:url\(\s*)?(['"]?)([^'")\s;]+)\1\s*\)?([^;]*);""",
    re.IGNORECASE,
)
SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
BAD_HOST_CHARS_RE = re.compile(r"[\s<>\"'{}|\\^`]")
SRCSET_GAP_RE = re.compile(r"[\s,]*")
SRCSET_URL_RE = re.compile(r"\S+")
UNSAFE_FILENAME_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")

# url() values that never hit the network
INERT_CSS_URL_PREFIXES = ("data:", "#", "blob:")

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif"}
FONT_EXTS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}
JS_EXTS = {".js", ".mjs"}

LAZY_ATTRS = ("data-src", "data-original", "data-lazy")
SRI_ATTRS = ("integrity", "crossorigin", "referrerpolicy")

STEPS = ("START", "THINK", "TOOL", "OBSERVE", "OUTPUT")


@dataclass
class Settings:
    user_agent: str = DEFAULT_USER_AGENT
    timeout_ms: int = 20000
    max_redirects: int = 5
    retries: int = 2
    concurrency: int = 8

    # @import inlining depth for linked sheets and for inline <style> blocks
    import_depth: int = 2
    inline_import_depth: int = 1

    outdir: Optional[str] = None
    output_root: Path = Path(".")
    verbose: bool = False

    @property
    def timeout(self) -> float:
        return max(self.timeout_ms, 1) / 1000.0


# -------------------- Errors --------------------


class CloneError(Exception):
    pass


class InvalidUrlError(CloneError):
    pass


class FetchError(CloneError):
    pass


class StylesheetFetchError(CloneError):
    pass


class ImportResolutionError(CloneError):
    pass


class AssetDownloadError(CloneError):
    pass


class FileSystemError(CloneError):
    pass


# -------------------- Data model --------------------


@dataclass(frozen=True)
class PageDocument:
    raw_html: str
    final_url: str
    content_type: str


@dataclass
class StylesheetUnit:
    source_url: str  # absolute URL, or "inline"
    css_text: str
    base_url: str


@dataclass(frozen=True)
class DownloadOutcome:
    requested_url: str
    success: bool
    final_url: Optional[str] = None
    content_type: str = ""
    data: bytes = b""
    error: Optional[str] = None


@dataclass
class CloneResult:
    output_dir: Path
    final_url: str
    stylesheets: int
    inline_blocks: int
    assets_total: int
    assets_ok: int
    assets_failed: int


class UrlSet:
    """Insertion-ordered set; ``add`` is the only mutation."""

    def __init__(self, init: Optional[Iterable[str]] = None):
        self._m: Dict[str, None] = dict.fromkeys(init or [])

    def add(self, url: str) -> bool:
        if url in self._m:
            return False
        self._m[url] = None
        return True

    def __contains__(self, url: object) -> bool:
        return url in self._m

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._m))

    def __len__(self) -> int:
        return len(self._m)


# -------------------- Progress --------------------


def log_step(step: str, content: Optional[str] = None, **fields: object) -> None:
    if step not in STEPS:
        raise ValueError(f"unknown step: {step}")
    record: Dict[str, object] = {"step": step}
    if content is not None:
        record["content"] = content
    record.update(fields)
    logging.info("%s", json.dumps(record, ensure_ascii=False))


# -------------------- URL utils --------------------


def normalize_url(raw: str) -> str:
    s = (raw or "").strip()
    if not s:
        raise InvalidUrlError("Invalid URL: empty input")
    if not SCHEME_RE.match(s):
        s = f"https://{s}"
    try:
        p = urlparse(s)
        host = p.hostname
        if p.port is not None and p.port <= 0:
            raise InvalidUrlError(f"Invalid URL: {raw} (bad port)")
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL: {raw} ({e})") from e
    if not host or BAD_HOST_CHARS_RE.search(host):
        raise InvalidUrlError(f"Invalid URL: {raw}")
    netloc = p.netloc if "@" in p.netloc else p.netloc.lower()
    return urlunparse(
        (p.scheme.lower(), netloc, p.path or "/", p.params, p.query, p.fragment)
    )


def folder_name_from_url(url: str) -> str:
    host = urlparse(url).hostname or "site"
    root = re.sub(r"^www\.", "", host, flags=re.IGNORECASE)
    return root.split(".")[0] or "site"


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip().lower()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return bool(u)


def resolve_url(raw: Optional[str], base: str) -> Optional[str]:
    if not raw or not can_fetch_url(raw):
        return None
    try:
        absu = urljoin(base, raw.strip())
        p = urlparse(absu)
    except ValueError:
        return None
    if p.scheme not in ("http", "https") or not p.netloc:
        return None
    return absu


def comment_safe(text: str) -> str:
    return text.replace("*/", "* /")


# -------------------- HTTP --------------------


def build_session(settings: Settings, referer: Optional[str] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool = max(16, settings.concurrency * 2)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool, pool_maxsize=pool)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.max_redirects = settings.max_redirects
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = settings.user_agent or DEFAULT_USER_AGENT
    if referer:
        # asset hosts with hotlink protection check these two
        p = urlparse(referer)
        s.headers["Referer"] = referer
        s.headers["Origin"] = f"{p.scheme}://{p.netloc}"
    return s


class HttpClient:
    def __init__(
        self,
        settings: Settings,
        referer: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.session = session if session is not None else build_session(settings, referer)

    def get(self, url: str, accept: str = "*/*") -> requests.Response:
        # never raises on HTTP status; callers inspect status_code
        return self.session.get(
            url,
            headers={"Accept": accept},
            timeout=self.settings.timeout,
            allow_redirects=True,
        )

    def close(self) -> None:
        self.session.close()


def is_ok(resp: requests.Response) -> bool:
    return 200 <= resp.status_code < 300


def response_text(resp: requests.Response) -> str:
    ct = (resp.headers.get("Content-Type") or "").lower()
    if "charset=" not in ct:
        resp.encoding = resp.apparent_encoding or "utf-8"
    return resp.text or ""


async def fetch_html(client: HttpClient, url: str) -> PageDocument:
    try:
        r = await asyncio.to_thread(client.get, url, HTML_ACCEPT)
    except requests.RequestException as e:
        raise FetchError(f"request failed for {url}: {e}") from e
    if not is_ok(r):
        raise FetchError(f"Non-OK HTTP status {r.status_code} for {url}")
    final_url = r.url or url
    html = response_text(r)
    if not html:
        raise FetchError(f"Empty HTML from {final_url}")
    return PageDocument(
        raw_html=html,
        final_url=final_url,
        content_type=r.headers.get("Content-Type", ""),
    )


async def fetch_text(client: HttpClient, url: str) -> Tuple[str, str, str]:
    try:
        r = await asyncio.to_thread(client.get, url, CSS_ACCEPT)
    except requests.RequestException as e:
        raise StylesheetFetchError(f"request failed: {e}") from e
    if not is_ok(r):
        raise StylesheetFetchError(f"Non-OK HTTP {r.status_code} for {url}")
    return response_text(r), r.url or url, r.headers.get("Content-Type", "")


SheetFetch = Union[Tuple[str, str, str], StylesheetFetchError]


async def fetch_texts(client: HttpClient, urls: Sequence[str]) -> List[SheetFetch]:
    """Fetch stylesheets concurrently; results line up with ``urls``.

    A failed fetch comes back as its StylesheetFetchError, anything else raises.
    """
    results = await asyncio.gather(
        *(fetch_text(client, u) for u in urls), return_exceptions=True
    )
    for res in results:
        if isinstance(res, BaseException) and not isinstance(res, StylesheetFetchError):
            raise res
    return results


async def fetch_binary(client: HttpClient, url: str) -> Tuple[bytes, str, str]:
    try:
        r = await asyncio.to_thread(client.get, url, "*/*")
    except requests.RequestException as e:
        raise AssetDownloadError(f"request failed: {e}") from e
    if not is_ok(r):
        raise AssetDownloadError(f"Non-OK HTTP {r.status_code} for {url}")
    return r.content, r.url or url, r.headers.get("Content-Type", "")


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def link_rels(tag: Tag) -> Set[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


def is_stylesheet_link(tag: Tag) -> bool:
    rels = link_rels(tag)
    if "stylesheet" in rels:
        return True
    return "preload" in rels and (tag.get("as") or "").lower() == "style"


def srcset_candidates(v: str) -> List[Tuple[str, str]]:
    # a candidate URL runs to the next whitespace, so commas inside data: URIs stay put
    cands: List[Tuple[str, str]] = []
    v = v or ""
    pos = 0
    while True:
        pos = SRCSET_GAP_RE.match(v, pos).end()
        m = SRCSET_URL_RE.match(v, pos)
        if m is None:
            return cands
        url, pos = m.group(0), m.end()
        if url.endswith(","):
            cands.append((url.rstrip(","), ""))
            continue
        comma = v.find(",", pos)
        stop = len(v) if comma < 0 else comma
        cands.append((url, v[pos:stop].strip()))
        pos = stop


def parse_srcset(v: str) -> List[str]:
    return [url for url, _ in srcset_candidates(v) if url]


# -------------------- Style collection --------------------


def extract_styles(
    soup: BeautifulSoup, base_url: str
) -> Tuple[List[str], List[StylesheetUnit]]:
    links = UrlSet()
    for link in soup.find_all("link", href=True):
        if not is_stylesheet_link(link):
            continue
        absu = resolve_url(link.get("href"), base_url)
        if absu:
            links.add(absu)
    inline: List[StylesheetUnit] = []
    for style in soup.find_all("style"):
        css = style.string if style.string is not None else style.get_text()
        if css and css.strip():
            inline.append(
                StylesheetUnit(source_url="inline", css_text=css, base_url=base_url)
            )
    return list(links), inline


# -------------------- CSS processing --------------------


def rewrite_css_urls_to_absolute(
    css: str, base_url: str, collect: Optional[UrlSet] = None
) -> str:
    # url() tokens inside @import rules belong to inline_imports
    import_spans = [m.span() for m in CSS_IMPORT_RE.finditer(css)]

    def repl(m: re.Match) -> str:
        if any(start <= m.start() < end for start, end in import_spans):
            return m.group(0)
        q = m.group(1) or ""
        val = m.group(2).strip()
        if val.lower().startswith(INERT_CSS_URL_PREFIXES):
            return m.group(0)
        absu = resolve_url(val, base_url)
        if absu is None:
            return m.group(0)
        if collect is not None:
            collect.add(absu)
        return f"url({q}{absu}{q})"

    return CSS_URL_RE.sub(repl, css)


def absolutize_imports(css: str, base_url: str) -> str:
    def repl(m: re.Match) -> str:
        absu = resolve_url(m.group(2).strip(), base_url)
        if absu is None:
            return m.group(0)
        q = m.group(1) or '"'
        media = m.group(3).strip()
        return f"@import url({q}{absu}{q}){' ' + media if media else ''};"

    return CSS_IMPORT_RE.sub(repl, css)


def resolve_import(href: str, base_url: str) -> str:
    absu = resolve_url(href, base_url)
    if absu is None:
        raise ImportResolutionError(f"bad URL: {href}")
    return absu


async def _inline_one_import(
    absu: str,
    fetched: SheetFetch,
    client: HttpClient,
    depth: int,
    visited: UrlSet,
    collect: UrlSet,
) -> str:
    if isinstance(fetched, StylesheetFetchError):
        logging.warning("@import failed: %s (%s)", absu, fetched)
        return f"/* @import failed: {comment_safe(absu)} ({comment_safe(str(fetched))}) */"
    text, final_url, _ = fetched
    body = rewrite_css_urls_to_absolute(text, final_url, collect)
    body = await inline_imports(body, final_url, client, depth - 1, visited, collect)
    return f"/* @import inlined from {comment_safe(final_url)} */\n{body}\n/* end import */"


async def inline_imports(
    css: str,
    base_url: str,
    client: HttpClient,
    depth: int,
    visited: UrlSet,
    collect: UrlSet,
) -> str:
    """Replace @import rules with the imported sheets, ``depth`` levels deep.

    Targets already in ``visited`` are replaced with a "skipped (visited)"
    comment. At depth 0 the remaining rules stay as @import with absolute URLs.
    Sibling imports are fetched together but claimed and expanded in source
    order, so the result does not depend on which response arrives first.
    """
    matches = list(CSS_IMPORT_RE.finditer(css))
    if not matches:
        return css
    if depth <= 0:
        return absolutize_imports(css, base_url)

    replacements: List[Optional[str]] = []
    targets: List[str] = []
    for m in matches:
        href = m.group(2).strip()
        try:
            absu = resolve_import(href, base_url)
        except ImportResolutionError as e:
            logging.debug("@import skipped: %s", e)
            replacements.append(f"/* @import skipped (bad URL): {comment_safe(href)} */")
            continue
        if not visited.add(absu):
            replacements.append(f"/* @import skipped (visited): {comment_safe(absu)} */")
            continue
        replacements.append(None)
        targets.append(absu)

    fetched = iter(zip(targets, await fetch_texts(client, targets)))
    out: List[str] = []
    pos = 0
    for m, rep in zip(matches, replacements):
        out.append(css[pos : m.start()])
        if rep is None:
            absu, res = next(fetched)
            rep = await _inline_one_import(absu, res, client, depth, visited, collect)
        out.append(rep)
        pos = m.end()
    out.append(css[pos:])
    return "".join(out)


def looks_like_css(url: str, content_type: str) -> bool:
    ct = (content_type or "").lower()
    if "text/css" in ct or "charset=" in ct:
        return True
    return urlparse(url).path.lower().endswith(".css")


async def expand_stylesheet(
    unit: StylesheetUnit,
    client: HttpClient,
    depth: int,
    visited: UrlSet,
    collect: UrlSet,
) -> None:
    unit.css_text = rewrite_css_urls_to_absolute(unit.css_text, unit.base_url, collect)
    unit.css_text = await inline_imports(
        unit.css_text, unit.base_url, client, depth, visited, collect
    )


async def _process_external(
    url: str,
    fetched: SheetFetch,
    client: HttpClient,
    depth: int,
    visited: UrlSet,
    collect: UrlSet,
) -> str:
    if isinstance(fetched, StylesheetFetchError):
        logging.warning("stylesheet failed: %s (%s)", url, fetched)
        return f"/* Failed CSS {comment_safe(url)}: {comment_safe(str(fetched))} */"
    text, final_url, content_type = fetched
    if not looks_like_css(final_url, content_type):
        logging.debug("skipping non-CSS response %s (%s)", final_url, content_type)
        return f"/* Skipped non-CSS {comment_safe(final_url)} */"
    unit = StylesheetUnit(source_url=url, css_text=text, base_url=final_url)
    await expand_stylesheet(unit, client, depth, visited, collect)
    return f"/* ===== CSS from {comment_safe(final_url)} ===== */\n{unit.css_text}\n"


async def _process_inline(
    unit: StylesheetUnit, client: HttpClient, depth: int, visited: UrlSet, collect: UrlSet
) -> str:
    await expand_stylesheet(unit, client, depth, visited, collect)
    return (
        f"/* ===== Inline <style> from {comment_safe(unit.base_url)} ===== */\n"
        f"{unit.css_text}\n"
    )


async def process_stylesheets(
    stylesheet_urls: Sequence[str],
    inline_units: Sequence[StylesheetUnit],
    client: HttpClient,
    settings: Settings,
) -> Tuple[str, List[str]]:
    # top-level sheets are emitted on their own; an @import of one is a duplicate
    visited = UrlSet(stylesheet_urls)
    collect = UrlSet()
    fetched = await fetch_texts(client, stylesheet_urls)

    # expansion claims shared imports, so it runs in discovery order:
    # linked sheets first, then inline blocks
    parts: List[str] = []
    for url, res in zip(stylesheet_urls, fetched):
        parts.append(
            await _process_external(url, res, client, settings.import_depth, visited, collect)
        )
    for unit in inline_units:
        parts.append(
            await _process_inline(unit, client, settings.inline_import_depth, visited, collect)
        )
    return "\n".join(parts), list(collect)


# -------------------- Asset discovery --------------------


@dataclass(frozen=True)
class AssetRule:
    selector: str
    attr: str
    kind: str = "url"  # url | srcset | style


ASSET_RULES: Tuple[AssetRule, ...] = (
    AssetRule(
        "img[src], video[src], audio[src], source[src], track[src], script[src]",
        "src",
    ),
    AssetRule("input[type=image][src]", "src"),
    AssetRule("video[poster]", "poster"),
    AssetRule(
        'link[rel*="icon"][href], link[rel="apple-touch-icon"][href], '
        'link[as="image"][href], link[rel="manifest"][href]',
        "href",
    ),
    AssetRule("[data-src]", "data-src"),
    AssetRule("[data-original]", "data-original"),
    AssetRule("[data-lazy]", "data-lazy"),
    AssetRule("[srcset]", "srcset", "srcset"),
    AssetRule("[data-srcset]", "data-srcset", "srcset"),
    AssetRule("[style]", "style", "style"),
)


def attr_text(tag: Tag, attr: str) -> str:
    value = tag.get(attr)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def iter_rule_values(tag: Tag, rule: AssetRule) -> Iterator[str]:
    value = attr_text(tag, rule.attr)
    if not value:
        return
    if rule.kind == "srcset":
        yield from parse_srcset(value)
    elif rule.kind == "style":
        for m in CSS_URL_RE.finditer(value):
            u = m.group(2).strip()
            if not u.lower().startswith(INERT_CSS_URL_PREFIXES):
                yield u
    else:
        yield value


def collect_tree_assets(soup: BeautifulSoup, base_url: str, found: UrlSet) -> None:
    for rule in ASSET_RULES:
        for tag in soup.select(rule.selector):
            for raw in iter_rule_values(tag, rule):
                absu = resolve_url(raw, base_url)
                if absu:
                    found.add(absu)


def noscript_fragments(soup: BeautifulSoup) -> Iterator[BeautifulSoup]:
    # <noscript> bodies are inert markup; parse each as its own document
    for ns in soup.find_all("noscript"):
        markup = "".join(str(c) for c in ns.contents)
        if markup.strip():
            yield bs4_parse(markup)


def collect_html_asset_urls(soup: BeautifulSoup, base_url: str) -> List[str]:
    found = UrlSet()
    collect_tree_assets(soup, base_url, found)
    for fragment in noscript_fragments(soup):
        collect_tree_assets(fragment, base_url, found)
    return list(found)


# -------------------- Downloader --------------------


async def download_all(
    urls: Sequence[str], client: HttpClient, limit: int = 8
) -> List[DownloadOutcome]:
    out: List[Optional[DownloadOutcome]] = [None] * len(urls)
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < len(urls):
            idx = cursor
            cursor += 1
            url = urls[idx]
            try:
                data, final_url, content_type = await fetch_binary(client, url)
            except AssetDownloadError as e:
                out[idx] = DownloadOutcome(requested_url=url, success=False, error=str(e))
                logging.debug("[asset FAIL] %s :: %s", url, e)
                continue
            out[idx] = DownloadOutcome(
                requested_url=url,
                success=True,
                final_url=final_url,
                content_type=content_type,
                data=data,
            )
            logging.debug("[asset OK] %s (%dB)", final_url, len(data))

    workers = max(1, min(limit, len(urls)))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return [o for o in out if o is not None]


# -------------------- Path classification --------------------


def url_ext(url: str) -> str:
    return posixpath.splitext(urlparse(url).path)[1]


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    if not ct:
        return None
    if ct in ("application/javascript", "text/javascript", "application/x-javascript"):
        return ".js"
    if ct == "image/svg+xml":
        return ".svg"
    if ct == "image/jpeg":
        return ".jpg"
    if ct == "font/woff2":
        return ".woff2"
    if ct in ("font/woff", "application/font-woff"):
        return ".woff"
    if ct == "application/manifest+json":
        return ".webmanifest"
    return mimetypes.guess_extension(ct)


def classify(url: str, content_type: Optional[str]) -> str:
    ext = url_ext(url).lower()
    ct = (content_type or "").lower()
    if not ct and ext:
        ct = (mimetypes.guess_type("file" + ext)[0] or "").lower()
    if ext in JS_EXTS or re.search(r"javascript|ecmascript", ct):
        return "js"
    if ext in FONT_EXTS or re.search(r"font|opentype|woff", ct):
        return "fonts"
    if ext in IMAGE_EXTS or "image/" in ct:
        return "img"
    return "other"


def ensure_ext(url: str, content_type: Optional[str]) -> str:
    ext = url_ext(url)
    if len(ext) > 1:
        return UNSAFE_FILENAME_CHARS_RE.sub("_", ext)[:16]
    guessed = guess_ext_from_type(content_type)
    if guessed:
        return guessed
    ct = (content_type or "").lower()
    if "image/" in ct:
        return ".img"
    if "javascript" in ct:
        return ".js"
    if re.search(r"font|woff|opentype", ct):
        return ".woff"
    return ".bin"


def sanitize_filename(name: str) -> str:
    name = UNSAFE_FILENAME_CHARS_RE.sub("_", name or "")[:80]
    if name.startswith("."):
        name = "_" + name[1:]
    return name or "file"


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def local_path_for_asset(remote_url: str, content_type: Optional[str]) -> str:
    folder = classify(remote_url, content_type)
    name = posixpath.basename(urlparse(remote_url).path)
    stem = posixpath.splitext(name)[0]
    base = sanitize_filename(unquote(stem))
    ext = ensure_ext(remote_url, content_type)
    return posixpath.join("assets", folder, f"{base}-{short_h(remote_url)}{ext}")


def build_url_map(outcomes: Iterable[DownloadOutcome]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for o in outcomes:
        if not o.success:
            continue
        remote = o.final_url or o.requested_url
        local = local_path_for_asset(remote, o.content_type)
        mapping.setdefault(remote, local)
        mapping.setdefault(o.requested_url, local)
    return mapping


# -------------------- Rewriters --------------------


def rewrite_css_references(css: str, url_map: Dict[str, str]) -> str:
    # a match must end where the URL token ends, so https://a/x.png never eats
    # https://a/x.png?v=2 whether or not the longer URL was downloaded
    for remote in sorted(url_map, key=len, reverse=True):
        pattern = re.compile(re.escape(remote) + r"""(?=['")\s;,]|$)""")
        css = pattern.sub(lambda _m, local=url_map[remote]: local, css)
    return css


def map_value(raw: str, base_url: str, url_map: Dict[str, str]) -> Optional[str]:
    absu = resolve_url(raw, base_url)
    if absu is None:
        return None
    return url_map.get(absu)


def rewrite_srcset(value: str, base_url: str, url_map: Dict[str, str]) -> str:
    parts = []
    for u, desc in srcset_candidates(value):
        if not u:
            continue
        out = map_value(u, base_url, url_map) or u
        parts.append(f"{out} {desc}".strip())
    return ", ".join(parts)


def rewrite_style_urls(style: str, base_url: str, url_map: Dict[str, str]) -> str:
    def repl(m: re.Match) -> str:
        v = m.group(2).strip()
        if v.lower().startswith(INERT_CSS_URL_PREFIXES):
            return m.group(0)
        loc = map_value(v, base_url, url_map)
        if loc is None:
            return m.group(0)
        q = m.group(1) or ""
        return f"url({q}{loc}{q})"

    return CSS_URL_RE.sub(repl, style)


def replace_stylesheets(soup: BeautifulSoup) -> None:
    for link in soup.find_all("link"):
        if is_stylesheet_link(link):
            link.decompose()
    for style in soup.find_all("style"):
        style.decompose()
    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            soup.insert(0, head)
    head.append(soup.new_tag("link", rel="stylesheet", href="style.css"))


def rewrite_html_references(
    soup: BeautifulSoup, base_url: str, url_map: Dict[str, str]
) -> str:
    for rule in ASSET_RULES:
        for tag in soup.select(rule.selector):
            old = attr_text(tag, rule.attr)
            if not old:
                continue
            if rule.kind == "srcset":
                new = rewrite_srcset(old, base_url, url_map)
            elif rule.kind == "style":
                new = rewrite_style_urls(old, base_url, url_map)
            else:
                new = map_value(old, base_url, url_map) or old
                if rule.attr in LAZY_ATTRS and new != old and not tag.get("src"):
                    tag["src"] = new
            if new == old:
                continue
            tag[rule.attr] = new
            for a in SRI_ATTRS:
                if a in tag.attrs:
                    del tag.attrs[a]
    replace_stylesheets(soup)
    return serialize_html(soup)


# -------------------- Output --------------------


def unique_folder_name(base: str, root: Path = Path(".")) -> Path:
    candidate = root / base
    i = 1
    while candidate.exists():
        candidate = root / f"{base}-{i}"
        i += 1
    return candidate


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def _write_file(path: Path, data: Union[bytes, str]) -> None:
    ensure_parent_dir(path)
    if isinstance(data, bytes):
        path.write_bytes(data)
    else:
        path.write_text(data, encoding="utf-8")


async def write_file(path: Path, data: Union[bytes, str]) -> None:
    try:
        await asyncio.to_thread(_write_file, path, data)
    except OSError as e:
        raise FileSystemError(f"failed to write {path}: {e}") from e


async def make_output_dir(folder: Path) -> None:
    try:
        await asyncio.to_thread(folder.mkdir, parents=True, exist_ok=False)
    except OSError as e:
        raise FileSystemError(f"failed to create {folder}: {e}") from e


async def write_assets(folder: Path, outcomes: Iterable[DownloadOutcome]) -> Tuple[int, int]:
    ok = fail = 0
    written: Set[str] = set()
    for o in outcomes:
        if not o.success:
            fail += 1
            continue
        rel = local_path_for_asset(o.final_url or o.requested_url, o.content_type)
        if rel not in written:
            await write_file(folder / rel, o.data)
            written.add(rel)
        ok += 1
    return ok, fail


# -------------------- Main: single page --------------------


async def _clone(url: str, folder: Path, client: HttpClient, settings: Settings) -> CloneResult:
    log_step("TOOL", tool_name="fetchHTML", input=json.dumps({"url": url}))
    page = await fetch_html(client, url)
    log_step("OBSERVE", f"Fetched HTML {page.final_url} (len={len(page.raw_html)})")
    if page.content_type and "html" not in page.content_type.lower():
        logging.warning(
            "entry document %s is %s, parsing it as HTML anyway",
            page.final_url,
            page.content_type,
        )

    soup = bs4_parse(page.raw_html)
    stylesheet_urls, inline_units = extract_styles(soup, page.final_url)
    html_asset_urls = collect_html_asset_urls(soup, page.final_url)

    log_step("TOOL", tool_name="fetchCSS", input=json.dumps({"count": len(stylesheet_urls)}))
    css_text, css_asset_urls = await process_stylesheets(
        stylesheet_urls, inline_units, client, settings
    )
    log_step(
        "OBSERVE",
        f"CSS collected: external={len(stylesheet_urls)}, inline={len(inline_units)}, "
        f"cssAssets={len(css_asset_urls)}",
    )

    all_urls = list(UrlSet([*html_asset_urls, *css_asset_urls]))
    log_step("THINK", f"Total assets detected: {len(all_urls)}")

    await make_output_dir(folder)

    log_step(
        "TOOL",
        tool_name="downloadAssets",
        input=json.dumps({"count": len(all_urls), "concurrency": settings.concurrency}),
    )
    outcomes = await download_all(all_urls, client, settings.concurrency)
    url_map = build_url_map(outcomes)
    ok, fail = await write_assets(folder, outcomes)
    log_step("OBSERVE", f"Assets saved: {ok}, failed: {fail}")

    local_css = rewrite_css_references(css_text, url_map)
    final_html = rewrite_html_references(soup, page.final_url, url_map)
    await write_file(folder / "index.html", final_html)
    await write_file(folder / "style.css", local_css)
    log_step("OUTPUT", f"Saved site to {folder}/ (index.html, style.css, assets/*)")

    return CloneResult(
        output_dir=folder,
        final_url=page.final_url,
        stylesheets=len(stylesheet_urls),
        inline_blocks=len(inline_units),
        assets_total=len(all_urls),
        assets_ok=ok,
        assets_failed=fail,
    )


async def clone_page(
    raw_url: str, settings: Settings, session: Optional[requests.Session] = None
) -> CloneResult:
    """Mirror one page into a fresh output directory.

    Raises InvalidUrlError, FetchError or FileSystemError; everything else
    is absorbed per stylesheet, import or asset.
    """
    log_step("START", f"Clone HTML+CSS+assets for {raw_url}")
    url = normalize_url(raw_url)
    folder = unique_folder_name(
        settings.outdir or folder_name_from_url(url), settings.output_root
    )
    client = HttpClient(settings, referer=url, session=session)
    try:
        return await _clone(url, folder, client, settings)
    finally:
        client.close()


def run_clone(raw_url: str, settings: Settings) -> CloneResult:
    return asyncio.run(clone_page(raw_url, settings))


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, object]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            data = tomllib.load(f)
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")
    if not isinstance(data, dict):
        raise RuntimeError("Top-level config must be a mapping")
    flat = {k: v for k, v in data.items() if not isinstance(v, dict)}
    if isinstance(data.get("clone"), dict):
        flat.update(data["clone"])
    return {k.replace("-", "_"): v for k, v in flat.items()}


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Clone a single page into index.html, style.css and assets/.",
    )
    p.add_argument("--config", type=str, default=None, help="path to config.toml|.yaml")
    p.add_argument("url", help="page URL (scheme optional, defaults to https)")
    p.add_argument("--outdir", type=str, default=None, help="output folder name")
    p.add_argument("--ua", type=str, default=None, help="User-Agent header")
    p.add_argument("--timeout", type=int, default=20000, help="request timeout in ms")
    p.add_argument("--concurrency", type=int, default=8, help="parallel asset downloads")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        parser.set_defaults(**load_config_file(preliminary.config))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        user_agent=args.ua or DEFAULT_USER_AGENT,
        timeout_ms=args.timeout if args.timeout and args.timeout > 0 else 20000,
        concurrency=max(1, args.concurrency),
        outdir=args.outdir,
        verbose=args.verbose,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )
    settings = settings_from_args(args)
    try:
        result = run_clone(args.url, settings)
    except InvalidUrlError as e:
        log_step("OUTPUT", str(e))
        sys.exit(1)
    except FetchError as e:
        log_step("OUTPUT", f"Failed to fetch HTML: {e}")
        sys.exit(1)
    except FileSystemError as e:
        log_step("OUTPUT", f"Failed to write output: {e}")
        sys.exit(1)
    logging.debug(
        "assets: %d ok, %d failed of %d",
        result.assets_ok,
        result.assets_failed,
        result.assets_total,
    )


if __name__ == "__main__":
    main()
