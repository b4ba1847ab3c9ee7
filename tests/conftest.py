from typing import Dict, List, Optional

import pytest

from web_clone import NavigationFailure, PageRenderer, PageResources, RenderedPage


class FakePage(RenderedPage):
    def __init__(
        self,
        url: str,
        *,
        resources: Optional[PageResources] = None,
        stylesheets: Optional[Dict[str, str]] = None,
        markup: str = "<html><body></body></html>",
        elements: Optional[List[str]] = None,
        turnstile: bool = False,
        click_error: Optional[Exception] = None,
    ):
        self._url = url
        self.resources = resources or PageResources()
        self.stylesheets = stylesheets or {}
        self.markup = markup
        self.elements = set(elements or [])
        self.turnstile = turnstile
        self.click_error = click_error
        self.pauses: List[int] = []
        self.clicked: List[str] = []
        self.fetched_css: List[str] = []

    @property
    def url(self) -> str:
        return self._url

    def query_resources(self) -> PageResources:
        return self.resources

    def fetch_text(self, url: str) -> str:
        self.fetched_css.append(url)
        if url not in self.stylesheets:
            raise RuntimeError(f"404 for {url}")
        return self.stylesheets[url]

    def fetch_bytes(self, url: str) -> bytes:
        return self.fetch_text(url).encode("utf-8")

    def current_markup(self) -> str:
        return self.markup

    def has_element(self, selector: str) -> bool:
        return selector in self.elements

    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        return self.turnstile and selector == ".cf-turnstile"

    def click_and_wait(self, selector: str, timeout_ms: int) -> None:
        self.clicked.append(selector)
        if self.click_error is not None:
            raise self.click_error
        self.elements.clear()

    def pause(self, ms: int) -> None:
        self.pauses.append(ms)


class FakeRenderer(PageRenderer):
    def __init__(self, page: Optional[FakePage] = None, error: Optional[Exception] = None):
        self.page = page
        self.error = error
        self.navigations: List[str] = []
        self.closed = False

    def navigate(self, url: str, timeout_ms: int, wait_until: str) -> RenderedPage:
        self.navigations.append(url)
        if self.error is not None:
            raise self.error
        if self.page is None:
            raise NavigationFailure(f"failed to load {url}")
        return self.page

    def close(self) -> None:
        self.closed = True


class ScriptedFetch:
    """Fetch callable that fails a configurable number of times per URL."""

    def __init__(self, failures: Optional[Dict[str, int]] = None, always_fail=()):
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail)
        self.calls: Dict[str, int] = {}

    def __call__(self, url: str) -> bytes:
        self.calls[url] = self.calls.get(url, 0) + 1
        if url in self.always_fail:
            raise ConnectionError(f"boom {url}")
        if self.calls[url] <= self.failures.get(url, 0):
            raise ConnectionError(f"transient {url}")
        return f"payload:{url}".encode("utf-8")


@pytest.fixture
def site_page() -> FakePage:
    resources = PageResources(
        stylesheets=["http://site.test/css/site.css"],
        scripts=["http://site.test/js/app.js"],
        images=["http://site.test/img/logo.png", "https://cdn.other/img/photo.jpg"],
        backgrounds=['url("http://site.test/img/bg.png")'],
        anchors=["http://site.test/", "http://site.test/#top", "mailto:hi@site.test"],
    )
    markup = (
        "<html><head>"
        '<link rel="stylesheet" href="/css/site.css">'
        '<script src="/js/app.js"></script>'
        "</head><body>"
        '<img src="img/logo.png">'
        '<img src="https://cdn.other/img/photo.jpg">'
        "</body></html>"
    )
    return FakePage(
        "http://site.test/",
        resources=resources,
        stylesheets={"http://site.test/css/site.css": "body{background:url(../img/bg.png)}"},
        markup=markup,
    )
