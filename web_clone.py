#!/usr/bin/env python3
import argparse
import hashlib
import itertools
import json
import logging
import os
import re
import sys
import tempfile
import threading
import time
import tomllib
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import quote, unquote, urljoin, urlparse, urlunparse

import requests
import yaml
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from requests.cookies import RequestsCookieJar
from tqdm import tqdm
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
# url() imports are already covered by CSS_URL_RE
CSS_IMPORT_RE = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)
CSS_IMPORT_TARGET_RE = re.compile(
    r"@import\s+(?:url\(\s*([\"']?)([^)\"']+)\1\s*\)|([\"'])([^\"']+)\3)", re.IGNORECASE
)
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')

UNFETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")
DEFAULT_PORTS = {"http": 80, "https": 443}

KIND_STYLESHEET = "stylesheet"
KIND_SCRIPT = "script"
KIND_IMAGE = "image"
KIND_FONT = "font"
KIND_PAGE = "page"
KIND_UNKNOWN = "unknown"

SAME_ORIGIN = "same-origin"
EXTERNAL = "external"

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif"}
FONT_EXTS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}
SCRIPT_EXTS = {".js", ".mjs"}
HTML_LIKE_EXTS = {".html", ".htm", ".php", ".asp", ".aspx", ".jsp", ".jspx", ".cfm"}

ROOT_DOCUMENT = "index.html"
EXTERNAL_DIR = "external"
META_DIR = "_mirror"

INTERSTITIAL_SELECTORS = (
    'button[data-translate="dismiss_and_enter"]',
    'button:has-text("Ignore & Proceed")',
    'input[value*="bypass"]',
    ".cf-btn-danger",
    "#bypass-button",
)
TURNSTILE_SELECTOR = ".cf-turnstile"
TURNSTILE_PROBE_MS = 5000
BYPASS_NAVIGATION_MS = 30000

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
]

REWRITE_ATTRS = (("link", "href"), ("script", "src"), ("img", "src"))
UNSAFE_LOCAL_ATTRS = ("integrity", "crossorigin", "referrerpolicy")

# -------------------- Settings --------------------


@dataclass
class Settings:
    output_dir: Optional[str] = None
    create_zip: bool = True
    headless: bool = True

    # Fetch
    timeout: float = 15.0
    workers: int = 6
    max_attempts: int = 3
    backoff: float = 1.0
    max_bytes: int = 50_000_000
    run_timeout: Optional[float] = None

    # Rendering
    navigation_timeout_ms: int = 60000
    wait_until: str = "networkidle"
    user_data_dir: Optional[str] = None

    # Interstitial
    bypass: bool = True
    settle_ms: int = 2000
    turnstile_wait_ms: int = 10000

    # Discovery
    css_passes: int = 2

    # Output
    progress: bool = True
    write_manifest: bool = True


# -------------------- Errors --------------------


class CloneError(Exception):
    pass


class InvalidURL(CloneError, ValueError):
    pass


class RendererError(CloneError):
    pass


class NavigationFailure(CloneError):
    pass


class BypassFailure(CloneError):
    pass


class DiscoveryFailure(CloneError):
    pass


class DownloadFailure(CloneError):
    pass


class PackagingFailure(CloneError):
    pass


# -------------------- URL resolution --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip().lower()
    if not u or u.startswith(UNFETCHABLE_PREFIXES):
        return False
    return True


def normalize_url(u: str) -> str:
    p = urlparse(u)
    scheme = p.scheme.lower()
    netloc = p.netloc.lower()
    if p.port is not None and DEFAULT_PORTS.get(scheme) == p.port:
        netloc = netloc.rsplit(":", 1)[0]
    return urlunparse((scheme, netloc, p.path or "/", p.params, p.query, ""))


def resolve(reference: Optional[str], base_url: str) -> str:
    """Resolve ``reference`` against ``base_url`` into a normalized http(s) URL.

    Raises InvalidURL for empty, fragment-only, non-fetchable (``data:``,
    ``javascript:`` ...) and malformed references.
    """
    if not can_fetch_url(reference):
        raise InvalidURL(f"not a fetchable reference: {reference!r}")
    try:
        normalized = normalize_url(urljoin(base_url, reference.strip()))
    except ValueError as e:
        raise InvalidURL(f"malformed URL {reference!r}: {e}") from e
    p = urlparse(normalized)
    if p.scheme not in DEFAULT_PORTS or not p.hostname:
        raise InvalidURL(f"not an absolute http(s) URL: {normalized!r}")
    return normalized


def hostname(u: str) -> str:
    return (urlparse(u).hostname or "").lower()


def is_same_origin(site_origin: str, other: str) -> bool:
    host = hostname(other)
    return bool(host) and host == hostname(site_origin)


def kind_for_path(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext == ".css":
        return KIND_STYLESHEET
    if ext in SCRIPT_EXTS:
        return KIND_SCRIPT
    if ext in IMAGE_EXTS:
        return KIND_IMAGE
    if ext in FONT_EXTS:
        return KIND_FONT
    if ext in HTML_LIKE_EXTS:
        return KIND_PAGE
    return KIND_UNKNOWN


def classify(url: str, site_origin: str, kind: Optional[str] = None) -> Tuple[str, str]:
    origin = SAME_ORIGIN if is_same_origin(site_origin, url) else EXTERNAL
    return kind or kind_for_path(urlparse(url).path), origin


@dataclass(frozen=True)
class ResourceURL:
    url: str
    kind: str = KIND_UNKNOWN
    origin: str = EXTERNAL

    @classmethod
    def from_reference(
        cls,
        reference: str,
        base_url: str,
        site_origin: str,
        kind: Optional[str] = None,
    ) -> "ResourceURL":
        url = resolve(reference, base_url)
        k, o = classify(url, site_origin, kind)
        return cls(url=url, kind=k, origin=o)

    @property
    def same_origin(self) -> bool:
        return self.origin == SAME_ORIGIN


# -------------------- Output layout --------------------


def sanitize_segment(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    return (name or "file")[:200]


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def local_path(url: str, site_origin: str) -> str:
    """Output-root relative POSIX path for ``url``.

    Same-origin URLs keep their path, external ones go under
    ``external/<hostname>/``. A bare root maps to ``index.html``; a root
    carrying a query gets a hashed name so it never lands on the main
    document. Directory-like paths (trailing slash or no extension) get
    an ``index.html`` leaf.
    """
    p = urlparse(url)
    raw = [unquote(seg) for seg in (p.path or "/").split("/")]
    segs = [sanitize_segment(seg) for seg in raw if seg not in ("", ".", "..")]
    if not segs:
        if p.query:
            segs = [f"index_{short_h(normalize_url(url))}.html"]
        else:
            segs = [ROOT_DOCUMENT]
    elif p.path.endswith("/") or not os.path.splitext(segs[-1])[1]:
        # extensionless routes are stored as <route>/index.html
        segs.append(ROOT_DOCUMENT)
    if not is_same_origin(site_origin, url):
        segs = [EXTERNAL_DIR, sanitize_segment(p.hostname or "host")] + segs
    return "/".join(segs)


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    ensure_parent_dir(path)
    fd, tmp = tempfile.mkstemp(prefix=".part-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# -------------------- CSS scanning --------------------


def extract_css_references(css_text: str, base_url: str) -> Iterator[str]:
    """Yield absolute URLs referenced by ``url(...)`` and ``@import`` in css_text.

    References that do not resolve are dropped; each URL is yielded once.
    """
    refs = itertools.chain(
        (m.group(2) for m in CSS_URL_RE.finditer(css_text)),
        (m.group(2) for m in CSS_IMPORT_RE.finditer(css_text)),
    )
    seen: Set[str] = set()
    for ref in refs:
        try:
            absu = resolve(ref, base_url)
        except InvalidURL:
            continue
        if absu in seen:
            continue
        seen.add(absu)
        yield absu


def extract_css_imports(css_text: str, base_url: str) -> Iterator[str]:
    for m in CSS_IMPORT_TARGET_RE.finditer(css_text):
        try:
            yield resolve(m.group(2) or m.group(4), base_url)
        except InvalidURL:
            continue


# -------------------- Discovery --------------------


class DiscoverySet:
    def __init__(self, resources: Iterable[ResourceURL] = ()):
        self._items: Dict[str, ResourceURL] = {}
        self._frozen = False
        for r in resources:
            self.add(r)

    def add(self, resource: ResourceURL) -> bool:
        if self._frozen:
            raise RuntimeError("discovery set is frozen")
        key = normalize_url(resource.url)
        if key in self._items:
            return False
        if resource.url != key:
            resource = replace(resource, url=key)
        self._items[key] = resource
        return True

    def freeze(self) -> "DiscoverySet":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def of_kind(self, kind: str) -> List[ResourceURL]:
        return [r for r in self._items.values() if r.kind == kind]

    def __contains__(self, url: object) -> bool:
        if not isinstance(url, str):
            return False
        try:
            return normalize_url(url) in self._items
        except ValueError:
            return False

    def __iter__(self) -> Iterator[ResourceURL]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class PageResources:
    stylesheets: List[str] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    fonts: List[str] = field(default_factory=list)
    backgrounds: List[str] = field(default_factory=list)
    anchors: List[str] = field(default_factory=list)


def discover(page: "RenderedPage", page_url: str, *, css_passes: int = 2) -> DiscoverySet:
    found = DiscoverySet()

    def admit(reference: str, base: str, kind: Optional[str] = None) -> None:
        try:
            res = ResourceURL.from_reference(reference, base, page_url, kind)
        except InvalidURL as e:
            logging.debug("skip reference %r: %s", reference, e)
            return
        # index.html is reserved for the main document
        if local_path(res.url, page_url) == ROOT_DOCUMENT:
            return
        found.add(res)

    try:
        resources = page.query_resources()
    except Exception as e:
        logging.warning("resource query failed on %s: %s", page_url, e)
        return found

    for href in resources.stylesheets:
        admit(href, page_url, KIND_STYLESHEET)
    for src in resources.scripts:
        admit(src, page_url, KIND_SCRIPT)
    for src in resources.images:
        admit(src, page_url, KIND_IMAGE)
    for href in resources.fonts:
        admit(href, page_url, KIND_FONT)
    for value in resources.backgrounds:
        for u in extract_css_references(value, page_url):
            admit(u, page_url, KIND_IMAGE)
    for href in resources.anchors:
        try:
            absu = resolve(href, page_url)
        except InvalidURL:
            continue
        if is_same_origin(page_url, absu):
            admit(absu, page_url, KIND_PAGE)

    scanned: Set[str] = set()
    for _ in range(max(0, css_passes)):
        pending = [r for r in found.of_kind(KIND_STYLESHEET) if r.url not in scanned]
        if not pending:
            break
        for sheet in pending:
            scanned.add(sheet.url)
            try:
                text = page.fetch_text(sheet.url)
            except Exception as e:
                logging.warning("failed to parse CSS %s: %s", sheet.url, e)
                continue
            imports = set(extract_css_imports(text, sheet.url))
            for u in extract_css_references(text, sheet.url):
                admit(u, sheet.url, KIND_STYLESHEET if u in imports else None)

    return found


# -------------------- Fetch pipeline --------------------

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"


@dataclass
class DownloadRecord:
    url: str
    local_path: str
    status: str = PENDING
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "local_path": self.local_path,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: float = 1.0

    def delay(self, attempt: int) -> float:
        # seconds to wait after ``attempt`` failed
        return self.backoff * attempt


def build_session(headers: Optional[Dict[str, str]] = None, retries: int = 0) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=16, pool_maxsize=16)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


class HttpFetcher:
    """``url -> bytes`` backed by one requests session per worker thread."""

    def __init__(self, settings: Settings, headers: Optional[Dict[str, str]] = None):
        self.timeout = settings.timeout
        self.max_bytes = settings.max_bytes
        self.headers = dict(DEFAULT_HEADERS if headers is None else headers)
        self.cookies = RequestsCookieJar()
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        s = getattr(self._local, "session", None)
        if s is None:
            s = build_session(self.headers)
            s.cookies.update(self.cookies)
            self._local.session = s
            with self._lock:
                self._sessions.append(s)
        return s

    def load_cookies(self, cookies: Iterable[Mapping]) -> None:
        for c in cookies:
            name = c.get("name")
            if not name:
                continue
            self.cookies.set(
                name,
                c.get("value", ""),
                domain=c.get("domain", ""),
                path=c.get("path", "/"),
                secure=bool(c.get("secure")),
            )

    def __call__(self, url: str) -> bytes:
        with self.session.get(url, timeout=self.timeout, stream=True) as resp:
            if resp.status_code >= 400:
                raise DownloadFailure(f"HTTP {resp.status_code}")
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.max_bytes:
                raise DownloadFailure(f"too large ({cl} bytes)")
            buf = bytearray()
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                buf.extend(chunk)
                if len(buf) > self.max_bytes:
                    raise DownloadFailure(f"exceeds {self.max_bytes} bytes")
            return bytes(buf)

    def close(self) -> None:
        with self._lock:
            for s in self._sessions:
                s.close()
            self._sessions.clear()


def download_one(
    record: DownloadRecord,
    fetch: Callable[[str], bytes],
    output_dir: Path,
    policy: RetryPolicy,
    cancel: threading.Event,
) -> DownloadRecord:
    target = output_dir / record.local_path
    for attempt in range(1, policy.max_attempts + 1):
        if cancel.is_set():
            record.error = record.error or "cancelled"
            break
        record.attempts = attempt
        try:
            atomic_write_bytes(target, fetch(record.url))
        except Exception as e:
            record.error = str(e) or type(e).__name__
            logging.debug(
                "attempt %d/%d failed for %s: %s",
                attempt,
                policy.max_attempts,
                record.url,
                record.error,
            )
            if attempt < policy.max_attempts and cancel.wait(policy.delay(attempt)):
                break
            continue
        record.status = SUCCESS
        record.error = None
        logging.debug("downloaded asset: %s -> %s", record.url, target)
        return record
    record.status = FAILED
    logging.warning("failed to download %s: %s", record.url, record.error)
    return record


def fetch_all(
    discovery: DiscoverySet,
    output_dir: Path,
    site_origin: str,
    fetch: Callable[[str], bytes],
    *,
    workers: int = 6,
    policy: RetryPolicy = RetryPolicy(),
    run_timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    progress: bool = False,
) -> List[DownloadRecord]:
    discovery.freeze()
    output_dir = Path(output_dir)
    cancel = cancel if cancel is not None else threading.Event()
    records = [DownloadRecord(r.url, local_path(r.url, site_origin)) for r in discovery]
    if not records:
        return records

    bar = tqdm(total=len(records), unit="files", desc="Downloading", disable=not progress)
    pool = ThreadPoolExecutor(max_workers=max(1, workers))
    future_map = {
        pool.submit(download_one, rec, fetch, output_dir, policy, cancel): rec
        for rec in records
    }
    try:
        for fut in as_completed(future_map, timeout=run_timeout):
            rec = fut.result()
            bar.update(1)
            bar.set_postfix_str(f"{rec.status}: {os.path.basename(rec.local_path)}")
    except FuturesTimeoutError:
        logging.warning("run timeout reached after %ss, abandoning pending downloads", run_timeout)
        cancel.set()
    finally:
        pool.shutdown(wait=True, cancel_futures=True)
        bar.close()

    for rec in records:
        if rec.status == PENDING:
            rec.status = FAILED
            rec.error = rec.error or "cancelled"
    return records


# -------------------- Manifest --------------------


def utc_timestamp() -> str:
    # RFC3339 UTC timestamp without microseconds
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


@dataclass(frozen=True)
class MirrorManifest:
    output_dir: str
    total: int
    succeeded: int
    failed: int
    failed_urls: Tuple[str, ...] = ()
    records: Tuple[DownloadRecord, ...] = ()
    site: Optional[str] = None
    archive: Optional[str] = None
    archive_error: Optional[str] = None
    created_utc: str = ""

    @classmethod
    def from_records(
        cls,
        output_dir: Union[str, Path],
        records: Iterable[DownloadRecord],
        *,
        site: Optional[str] = None,
        archive: Optional[str] = None,
        archive_error: Optional[str] = None,
    ) -> "MirrorManifest":
        recs = tuple(records)
        failed_urls = tuple(r.url for r in recs if r.status != SUCCESS)
        return cls(
            output_dir=str(output_dir),
            total=len(recs),
            succeeded=len(recs) - len(failed_urls),
            failed=len(failed_urls),
            failed_urls=failed_urls,
            records=recs,
            site=site,
            archive=archive,
            archive_error=archive_error,
            created_utc=utc_timestamp(),
        )

    def to_dict(self) -> dict:
        return {
            "site": self.site,
            "created_utc": self.created_utc,
            "output_dir": self.output_dir,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_urls": list(self.failed_urls),
            "archive": self.archive,
            "archive_error": self.archive_error,
            "resources": [r.to_dict() for r in self.records],
        }


def write_manifest(manifest: MirrorManifest) -> Path:
    path = Path(manifest.output_dir) / META_DIR / "manifest.json"
    atomic_write_bytes(path, json.dumps(manifest.to_dict(), indent=2).encode("utf-8"))
    return path


# -------------------- Rewriting --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag is None:
        return fallback
    try:
        return urljoin(fallback, tag["href"])
    except ValueError:
        return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def rewrite_html(html: str, base_url: str, site_origin: Optional[str] = None) -> str:
    soup = bs4_parse(html)
    base = effective_base_url(soup, base_url)
    origin = site_origin or base_url
    for tag_name, attr in REWRITE_ATTRS:
        for tag in soup.find_all(tag_name, attrs={attr: True}):
            try:
                absu = resolve(tag.get(attr), base)
            except InvalidURL:
                continue
            tag[attr] = quote(local_path(absu, origin), safe="/")
            for rm in UNSAFE_LOCAL_ATTRS:
                if rm in tag.attrs:
                    del tag.attrs[rm]
    # local paths must not resolve against the live site
    for tag in soup.find_all("base", href=True):
        tag.decompose()
    return serialize_html(soup)


# -------------------- Rendering --------------------

QUERY_RESOURCES_JS = """
() => {
  const values = (selector, attr) => Array.from(document.querySelectorAll(selector))
    .map(el => el[attr])
    .filter(v => typeof v === 'string' && v.length > 0);
  const backgrounds = [];
  document.querySelectorAll('*').forEach(el => {
    const bg = window.getComputedStyle(el).backgroundImage;
    if (bg && bg !== 'none') backgrounds.push(bg);
  });
  return {
    stylesheets: values('link[rel="stylesheet"]', 'href'),
    scripts: values('script[src]', 'src'),
    images: values('img[src]', 'src'),
    fonts: values('link[href*=".woff"], link[href*=".ttf"], link[href*=".eot"]', 'href'),
    backgrounds: backgrounds,
    anchors: values('a[href]', 'href'),
  };
}
"""


class RenderedPage:
    @property
    def url(self) -> str:
        raise NotImplementedError

    def query_resources(self) -> PageResources:
        raise NotImplementedError

    def fetch_text(self, url: str) -> str:
        raise NotImplementedError

    def fetch_bytes(self, url: str) -> bytes:
        raise NotImplementedError

    def current_markup(self) -> str:
        raise NotImplementedError

    def has_element(self, selector: str) -> bool:
        raise NotImplementedError

    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        raise NotImplementedError

    def click_and_wait(self, selector: str, timeout_ms: int) -> None:
        raise NotImplementedError

    def pause(self, ms: int) -> None:
        raise NotImplementedError

    def cookies(self) -> List[dict]:
        return []


class PageRenderer:
    def navigate(self, url: str, timeout_ms: int, wait_until: str) -> RenderedPage:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "PageRenderer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class PlaywrightPage(RenderedPage):
    def __init__(self, page, settings: Settings):
        self._page = page
        self.settings = settings

    @property
    def url(self) -> str:
        return self._page.url

    def query_resources(self) -> PageResources:
        data = self._page.evaluate(QUERY_RESOURCES_JS) or {}
        return PageResources(
            stylesheets=list(data.get("stylesheets") or []),
            scripts=list(data.get("scripts") or []),
            images=list(data.get("images") or []),
            fonts=list(data.get("fonts") or []),
            backgrounds=list(data.get("backgrounds") or []),
            anchors=list(data.get("anchors") or []),
        )

    def _get(self, url: str, error: type):
        # the context's request client shares cookies and leaves the page where it is
        resp = self._page.context.request.get(url, timeout=self.settings.timeout * 1000)
        if not resp.ok:
            raise error(f"HTTP {resp.status} for {url}")
        return resp

    def fetch_text(self, url: str) -> str:
        return self._get(url, DiscoveryFailure).text()

    def fetch_bytes(self, url: str) -> bytes:
        return self._get(url, DownloadFailure).body()

    def current_markup(self) -> str:
        return self._page.content()

    def has_element(self, selector: str) -> bool:
        return self._page.query_selector(selector) is not None

    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        try:
            self._page.wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True

    def click_and_wait(self, selector: str, timeout_ms: int) -> None:
        with self._page.expect_navigation(wait_until=self.settings.wait_until, timeout=timeout_ms):
            self._page.click(selector)

    def pause(self, ms: int) -> None:
        self._page.wait_for_timeout(ms)

    def cookies(self) -> List[dict]:
        return self._page.context.cookies()


class PlaywrightRenderer(PageRenderer):
    def __init__(self, settings: Settings):
        self.settings = settings
        self._pl = None
        self._browser = None
        self._context = None

    def _ensure_context(self):
        if self._context is not None:
            return self._context
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise RendererError(
                "Playwright not installed. Run: pip install playwright && playwright install chromium"
            ) from e
        ua = DEFAULT_HEADERS["User-Agent"]
        extra = {"Accept-Language": DEFAULT_HEADERS["Accept-Language"]}
        try:
            self._pl = sync_playwright().start()
            chromium = self._pl.chromium
            if self.settings.user_data_dir:
                self._context = chromium.launch_persistent_context(
                    self.settings.user_data_dir,
                    headless=self.settings.headless,
                    args=LAUNCH_ARGS,
                    user_agent=ua,
                    extra_http_headers=extra,
                )
            else:
                self._browser = chromium.launch(headless=self.settings.headless, args=LAUNCH_ARGS)
                self._context = self._browser.new_context(user_agent=ua, extra_http_headers=extra)
        except Exception as e:
            self.close()
            raise RendererError(f"failed to launch browser: {e}") from e
        return self._context

    def navigate(self, url: str, timeout_ms: int, wait_until: str) -> RenderedPage:
        context = self._ensure_context()
        try:
            page = context.new_page()
        except Exception as e:
            raise RendererError(f"failed to open a page: {e}") from e
        try:
            page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except Exception as e:
            raise NavigationFailure(f"failed to load {url}: {e}") from e
        return PlaywrightPage(page, self.settings)

    def close(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                closer.close()
            except Exception as e:
                logging.debug("browser close failed: %s", e)
        if self._pl is not None:
            try:
                self._pl.stop()
            except Exception as e:
                logging.debug("playwright stop failed: %s", e)
        self._pl = self._browser = self._context = None


# -------------------- Interstitial bypass --------------------


def _click_through(page: RenderedPage, selector: str, settings: Settings) -> None:
    if page.wait_for_selector(TURNSTILE_SELECTOR, TURNSTILE_PROBE_MS):
        logging.info("waiting for Turnstile verification...")
        page.pause(settings.turnstile_wait_ms)
    try:
        page.click_and_wait(selector, BYPASS_NAVIGATION_MS)
    except Exception as e:
        raise BypassFailure(f"click-through on {selector} failed: {e}") from e


def bypass_interstitial(page: RenderedPage, settings: Settings) -> bool:
    page.pause(settings.settle_ms)
    for selector in INTERSTITIAL_SELECTORS:
        try:
            present = page.has_element(selector)
        except Exception as e:
            logging.debug("interstitial probe %s failed: %s", selector, e)
            continue
        if not present:
            continue
        logging.info("interstitial warning detected (%s), attempting bypass...", selector)
        try:
            _click_through(page, selector, settings)
        except BypassFailure as e:
            logging.warning("%s", e)
            return False
        logging.info("bypassed interstitial warning")
        return True
    return False


# -------------------- Archive --------------------


def create_zip(source_dir: Union[str, Path], output_file: Union[str, Path]) -> Path:
    source_dir = Path(source_dir)
    output_file = Path(output_file)
    if not source_dir.is_dir():
        raise PackagingFailure(f"not a directory: {source_dir}")
    try:
        with zipfile.ZipFile(output_file, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for p in sorted(source_dir.rglob("*")):
                if p.is_file():
                    zf.write(p, p.relative_to(source_dir).as_posix())
    except OSError as e:
        raise PackagingFailure(f"failed to create {output_file}: {e}") from e
    logging.info("ZIP created: %s (%d bytes)", output_file, output_file.stat().st_size)
    return output_file


# -------------------- Orchestration --------------------


class MirrorState(str, Enum):
    INIT = "init"
    NAVIGATED = "navigated"
    BYPASS_ATTEMPTED = "bypass_attempted"
    DISCOVERED = "discovered"
    FETCHING = "fetching"
    REWRITING = "rewriting"
    PACKAGING = "packaging"
    DONE = "done"
    FAILED = "failed"


def validate_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    try:
        p = urlparse(normalize_url(url))
    except ValueError as e:
        raise InvalidURL(f"Invalid URL: {e}") from e
    if p.scheme not in DEFAULT_PORTS or not p.hostname:
        raise InvalidURL("Invalid URL. Use http:// or https://")
    return url


def default_output_dir(url: str) -> str:
    host = sanitize_segment(hostname(url) or "site")
    return f"cloned_{host}_{int(time.time() * 1000)}"


class WebsiteCloner:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        renderer_factory: Optional[Callable[[Settings], PageRenderer]] = None,
        fetch: Optional[Callable[[str], bytes]] = None,
        archiver: Optional[Callable[[Path, Path], Path]] = None,
    ):
        self.settings = settings or Settings()
        self.renderer_factory = renderer_factory or PlaywrightRenderer
        self.fetch = fetch
        self.archiver = archiver or create_zip
        self.state = MirrorState.INIT
        self.page_url: Optional[str] = None
        self.discovery: Optional[DiscoverySet] = None
        self.records: List[DownloadRecord] = []

    def _enter(self, state: MirrorState) -> None:
        logging.debug("state %s -> %s", self.state.value, state.value)
        self.state = state

    def clone(self, url: str) -> MirrorManifest:
        self.state = MirrorState.INIT
        self.page_url = None
        self.discovery = None
        self.records = []
        try:
            url = validate_url(url)
            output_dir = Path(self.settings.output_dir or default_output_dir(url)).resolve()
            logging.info("initializing website cloner for %s", url)
            with self.renderer_factory(self.settings) as renderer:
                self._mirror(renderer, url, output_dir)
        except CloneError as e:
            self._enter(MirrorState.FAILED)
            logging.error("cloning failed: %s", e)
            raise
        except Exception as e:
            self._enter(MirrorState.FAILED)
            logging.error("cloning failed: %s", e)
            raise CloneError(f"unexpected error: {e}") from e

        archive, archive_error = self._package(output_dir)
        manifest = MirrorManifest.from_records(
            output_dir,
            self.records,
            site=self.page_url,
            archive=archive,
            archive_error=archive_error,
        )
        if self.settings.write_manifest:
            try:
                write_manifest(manifest)
            except OSError as e:
                logging.warning("failed to write manifest: %s", e)
        self._enter(MirrorState.DONE)
        logging.info("website cloned to: %s", output_dir)
        return manifest

    def _mirror(self, renderer: PageRenderer, url: str, output_dir: Path) -> None:
        s = self.settings
        logging.info("navigating to: %s", url)
        page = renderer.navigate(url, s.navigation_timeout_ms, s.wait_until)
        self._enter(MirrorState.NAVIGATED)

        if s.bypass:
            try:
                bypass_interstitial(page, s)
            except Exception as e:
                logging.warning("error handling interstitial warning: %s", e)
        self._enter(MirrorState.BYPASS_ATTEMPTED)

        self.page_url = page.url or url
        logging.info("extracting resources...")
        self.discovery = discover(page, self.page_url, css_passes=s.css_passes)
        self._enter(MirrorState.DISCOVERED)
        logging.info("found %d resources to download", len(self.discovery))

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CloneError(f"cannot create output directory {output_dir}: {e}") from e

        self._enter(MirrorState.FETCHING)
        fetch, owned = self._fetcher(page)
        try:
            self.records = fetch_all(
                self.discovery,
                output_dir,
                self.page_url,
                fetch,
                workers=s.workers,
                policy=RetryPolicy(max(1, s.max_attempts), max(0.0, s.backoff)),
                run_timeout=s.run_timeout,
                progress=s.progress,
            )
        finally:
            if owned:
                fetch.close()

        self._enter(MirrorState.REWRITING)
        try:
            markup = page.current_markup()
        except Exception as e:
            raise RendererError(f"cannot read the rendered document: {e}") from e
        html = rewrite_html(markup, self.page_url)
        root_doc = output_dir / ROOT_DOCUMENT
        try:
            atomic_write_bytes(root_doc, html.encode("utf-8"))
        except OSError as e:
            raise CloneError(f"cannot write {root_doc}: {e}") from e
        logging.info("saved main document: %s", root_doc)

    def _fetcher(self, page: RenderedPage) -> Tuple[Callable[[str], bytes], bool]:
        if self.fetch is not None:
            return self.fetch, False
        fetcher = HttpFetcher(self.settings)
        try:
            fetcher.load_cookies(page.cookies())
        except Exception as e:
            logging.debug("could not export browser cookies: %s", e)
        return fetcher, True

    def _package(self, output_dir: Path) -> Tuple[Optional[str], Optional[str]]:
        self._enter(MirrorState.PACKAGING)
        if not self.settings.create_zip:
            return None, None
        zip_path = output_dir.with_name(output_dir.name + ".zip")
        logging.info("creating ZIP archive...")
        try:
            return str(self.archiver(output_dir, zip_path)), None
        except Exception as e:
            failure = e if isinstance(e, PackagingFailure) else PackagingFailure(f"archive failed: {e}")
            logging.error("%s", failure)
            return None, str(failure)


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, None]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Clone a rendered web page and its resources for offline browsing.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", nargs="?", default=None, help="http(s) URL")
    p.add_argument(
        "-o",
        "--output-dir",
        dest="output_dir",
        type=str,
        default=None,
        help="output directory (default: cloned_<host>_<timestamp>)",
    )
    p.add_argument(
        "--no-zip", dest="create_zip", action="store_false", help="do not create a ZIP archive"
    )
    p.add_argument(
        "--headed", dest="headless", action="store_false", help="show the browser window"
    )
    p.add_argument(
        "-i", "--interactive", action="store_true", help="prompt for the clone options"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # fetch
    p.add_argument("--workers", type=int, default=6, help="concurrent downloads")
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument(
        "--run-timeout",
        type=float,
        default=None,
        help="stop downloading after N seconds and keep what succeeded",
    )
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per file"
    )
    p.add_argument(
        "--max-attempts", type=int, default=3, help="download attempts per URL"
    )
    p.add_argument(
        "--backoff", type=float, default=1.0, help="linear retry backoff step seconds"
    )
    p.add_argument(
        "--no-progress", dest="progress", action="store_false", help="hide progress bar"
    )
    p.add_argument(
        "--no-manifest",
        dest="write_manifest",
        action="store_false",
        help="do not write _mirror/manifest.json",
    )
    p.add_argument(
        "--css-passes", type=int, default=2, help="nested stylesheet expansion passes"
    )

    # render
    p.add_argument(
        "--navigation-timeout-ms",
        type=int,
        default=60000,
        help="page load timeout ms",
    )
    p.add_argument(
        "--wait-until", type=str, default="networkidle", help="Playwright wait_until"
    )
    p.add_argument(
        "--user-data-dir", type=str, default=None, help="persistent browser profile"
    )
    p.add_argument(
        "--no-bypass",
        dest="bypass",
        action="store_false",
        help="do not try to click through interstitial warnings",
    )
    p.add_argument(
        "--settle-ms", type=int, default=2000, help="pause before probing for an interstitial"
    )
    p.add_argument(
        "--turnstile-wait-ms",
        type=int,
        default=10000,
        help="time allowed for human verification",
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("general", "fetch", "render"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def prompt_yes_no(question: str, default: bool = True) -> bool:
    hint = "Y/n" if default else "y/N"
    while True:
        answer = input(f"{question} [{hint}] ").strip().lower()
        if not answer:
            return default
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        print("Please answer y or n")


def prompt_options(args: argparse.Namespace) -> argparse.Namespace:
    while True:
        url = input("Enter the website URL to clone: ").strip()
        try:
            args.url = validate_url(url)
            break
        except InvalidURL:
            print("Please enter a valid URL")
    out = input("Output directory name (optional): ").strip()
    args.output_dir = out or args.output_dir
    args.create_zip = prompt_yes_no("Create ZIP archive?", args.create_zip)
    args.headless = prompt_yes_no("Run in headless mode?", args.headless)
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        output_dir=args.output_dir or None,
        create_zip=bool(args.create_zip),
        headless=bool(args.headless),
        timeout=max(1.0, args.timeout),
        workers=max(1, args.workers),
        max_attempts=max(1, args.max_attempts),
        backoff=max(0.0, args.backoff),
        max_bytes=max(1024, args.max_bytes),
        run_timeout=args.run_timeout if args.run_timeout and args.run_timeout > 0 else None,
        navigation_timeout_ms=max(1000, args.navigation_timeout_ms),
        wait_until=args.wait_until,
        user_data_dir=args.user_data_dir,
        bypass=bool(args.bypass),
        settle_ms=max(0, args.settle_ms),
        turnstile_wait_ms=max(0, args.turnstile_wait_ms),
        css_passes=max(0, args.css_passes),
        progress=bool(args.progress) and sys.stderr.isatty(),
        write_manifest=bool(args.write_manifest),
    )


def print_summary(manifest: MirrorManifest) -> None:
    print("Cloning complete")
    print(f"Downloaded: {manifest.succeeded}/{manifest.total}")
    if manifest.failed:
        print(f"Failed: {manifest.failed}")
        for u in manifest.failed_urls:
            print(f"  - {u}")
    print(f"Saved to: {manifest.output_dir}")
    if manifest.archive:
        print(f"Archive: {manifest.archive}")
    elif manifest.archive_error:
        print(f"Archive failed: {manifest.archive_error}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if args.interactive or not args.url:
        try:
            prompt_options(args)
        except (EOFError, KeyboardInterrupt):
            print("\nAborted.")
            return 1
    try:
        validate_url(args.url)
    except InvalidURL as e:
        print(e)
        return 1

    print("Reminder: only clone content you own or have permission to copy.")
    cloner = WebsiteCloner(settings_from_args(args))
    try:
        manifest = cloner.clone(args.url)
    except CloneError as e:
        print(f"Fatal error: {e}")
        return 1
    print_summary(manifest)
    return 0


if __name__ == "__main__":
    sys.exit(main())
