import json
import zipfile
from pathlib import Path

import pytest
from bs4 import BeautifulSoup
from conftest import FakePage, FakeRenderer, ScriptedFetch

import web_clone
from web_clone import (
    CloneError,
    MirrorState,
    NavigationFailure,
    PackagingFailure,
    RendererError,
    Settings,
    WebsiteCloner,
    bypass_interstitial,
    create_zip,
    default_output_dir,
    parse_args,
    settings_from_args,
)


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        output_dir=str(tmp_path / "out"),
        create_zip=False,
        backoff=0.0,
        progress=False,
        settle_ms=0,
    )
    values.update(overrides)
    return Settings(**values)


# -------------------- bypass --------------------


def test_bypass_absent_returns_false() -> None:
    page = FakePage("http://site.test/")
    assert bypass_interstitial(page, Settings()) is False
    assert page.pauses == [2000]
    assert page.clicked == []


def test_bypass_clicks_through_warning_and_waits_for_turnstile() -> None:
    page = FakePage("http://site.test/", elements=[".cf-btn-danger"], turnstile=True)
    assert bypass_interstitial(page, Settings(settle_ms=0, turnstile_wait_ms=7)) is True
    assert page.clicked == [".cf-btn-danger"]
    assert page.pauses == [0, 7]


def test_bypass_failure_is_not_raised() -> None:
    page = FakePage(
        "http://site.test/",
        elements=["#bypass-button"],
        click_error=TimeoutError("no navigation"),
    )
    assert bypass_interstitial(page, Settings(settle_ms=0)) is False
    assert page.clicked == ["#bypass-button"]


# -------------------- archive --------------------


def test_create_zip_stores_relative_paths(tmp_path: Path) -> None:
    src = tmp_path / "site"
    (src / "css").mkdir(parents=True)
    (src / "index.html").write_text("<html></html>", encoding="utf-8")
    (src / "css" / "s.css").write_text("a{}", encoding="utf-8")

    out = create_zip(src, tmp_path / "site.zip")

    with zipfile.ZipFile(out) as zf:
        assert sorted(zf.namelist()) == ["css/s.css", "index.html"]
        assert all(i.compress_type == zipfile.ZIP_DEFLATED for i in zf.infolist())


def test_create_zip_missing_source(tmp_path: Path) -> None:
    with pytest.raises(PackagingFailure):
        create_zip(tmp_path / "nope", tmp_path / "nope.zip")


# -------------------- orchestration --------------------


def test_clone_end_to_end(tmp_path: Path, site_page: FakePage) -> None:
    renderer = FakeRenderer(site_page)
    fetch = ScriptedFetch()
    cloner = WebsiteCloner(
        _settings(tmp_path, create_zip=True),
        renderer_factory=lambda s: renderer,
        fetch=fetch,
    )

    manifest = cloner.clone("http://site.test/")

    out = tmp_path / "out"
    assert cloner.state == MirrorState.DONE
    assert renderer.closed
    assert len(cloner.discovery) == 5
    paths = [r.local_path for r in cloner.records]
    assert len(set(paths)) == 5
    assert sorted(paths) == [
        "css/site.css",
        "external/cdn.other/img/photo.jpg",
        "img/bg.png",
        "img/logo.png",
        "js/app.js",
    ]
    assert manifest.total == 5
    assert manifest.succeeded == 5
    assert manifest.failed == 0
    assert manifest.archive == str(tmp_path / "out.zip")
    assert (tmp_path / "out.zip").exists()

    soup = BeautifulSoup((out / "index.html").read_text(encoding="utf-8"), "html.parser")
    assert [i["src"] for i in soup.find_all("img")] == ["img/logo.png", "external/cdn.other/img/photo.jpg"]
    assert soup.find("link")["href"] == "css/site.css"
    assert soup.find("script")["src"] == "js/app.js"

    data = json.loads((out / "_mirror" / "manifest.json").read_text(encoding="utf-8"))
    assert data["total"] == 5
    assert data["site"] == "http://site.test/"


def test_clone_partial_failure_still_produces_output(tmp_path: Path, site_page: FakePage) -> None:
    fetch = ScriptedFetch(always_fail={"https://cdn.other/img/photo.jpg"})
    cloner = WebsiteCloner(
        _settings(tmp_path),
        renderer_factory=lambda s: FakeRenderer(site_page),
        fetch=fetch,
    )

    manifest = cloner.clone("http://site.test/")

    assert manifest.succeeded == 4
    assert manifest.failed_urls == ("https://cdn.other/img/photo.jpg",)
    assert fetch.calls["https://cdn.other/img/photo.jpg"] == 3
    assert (tmp_path / "out" / "index.html").exists()
    assert manifest.archive is None


def test_clone_main_document_is_not_clobbered(tmp_path: Path, site_page: FakePage) -> None:
    site_page.resources.anchors.append("http://site.test")
    cloner = WebsiteCloner(
        _settings(tmp_path),
        renderer_factory=lambda s: FakeRenderer(site_page),
        fetch=ScriptedFetch(),
    )
    cloner.clone("http://site.test/")
    html = (tmp_path / "out" / "index.html").read_text(encoding="utf-8")
    assert "payload:" not in html
    assert "<img" in html


def test_clone_navigation_failure_is_fatal(tmp_path: Path) -> None:
    renderer = FakeRenderer(error=NavigationFailure("timeout"))
    cloner = WebsiteCloner(_settings(tmp_path), renderer_factory=lambda s: renderer, fetch=ScriptedFetch())

    with pytest.raises(NavigationFailure):
        cloner.clone("http://site.test/")

    assert cloner.state == MirrorState.FAILED
    assert renderer.closed
    assert not (tmp_path / "out").exists()


def test_clone_renderer_launch_failure_is_fatal(tmp_path: Path) -> None:
    def factory(settings: Settings):
        raise RendererError("no browser")

    cloner = WebsiteCloner(_settings(tmp_path), renderer_factory=factory)
    with pytest.raises(RendererError):
        cloner.clone("http://site.test/")
    assert cloner.state == MirrorState.FAILED


def test_clone_rejects_invalid_url(tmp_path: Path) -> None:
    cloner = WebsiteCloner(_settings(tmp_path), renderer_factory=lambda s: FakeRenderer())
    with pytest.raises(web_clone.InvalidURL):
        cloner.clone("ftp://site.test/")


def test_clone_packaging_failure_keeps_mirror(tmp_path: Path, site_page: FakePage) -> None:
    def broken_archiver(src: Path, dest: Path) -> Path:
        raise PackagingFailure("disk full")

    cloner = WebsiteCloner(
        _settings(tmp_path, create_zip=True),
        renderer_factory=lambda s: FakeRenderer(site_page),
        fetch=ScriptedFetch(),
        archiver=broken_archiver,
    )
    manifest = cloner.clone("http://site.test/")

    assert cloner.state == MirrorState.DONE
    assert manifest.archive is None
    assert manifest.archive_error == "disk full"
    assert manifest.succeeded == 5


def test_clone_runs_bypass_before_discovery(tmp_path: Path, site_page: FakePage) -> None:
    site_page.elements.add('button[data-translate="dismiss_and_enter"]')
    cloner = WebsiteCloner(
        _settings(tmp_path),
        renderer_factory=lambda s: FakeRenderer(site_page),
        fetch=ScriptedFetch(),
    )
    cloner.clone("http://site.test/")
    assert site_page.clicked == ['button[data-translate="dismiss_and_enter"]']


def test_default_output_dir_uses_hostname() -> None:
    name = default_output_dir("https://Example.COM:8443/path")
    assert name.startswith("cloned_example.com_")
    assert name.rsplit("_", 1)[1].isdigit()


# -------------------- CLI --------------------


def test_parse_args_reads_toml_config(tmp_path: Path) -> None:
    cfg = tmp_path / "clone.toml"
    cfg.write_text(
        'url = "https://site.test/"\ncreate_zip = false\n[fetch]\nworkers = 3\n',
        encoding="utf-8",
    )
    args = parse_args(["--config", str(cfg)])
    assert args.url == "https://site.test/"
    assert args.create_zip is False
    assert args.workers == 3


def test_parse_args_reads_yaml_config(tmp_path: Path) -> None:
    cfg = tmp_path / "clone.yaml"
    cfg.write_text("render:\n  wait_until: load\nheadless: false\n", encoding="utf-8")
    args = parse_args(["https://site.test/", "--config", str(cfg)])
    assert args.wait_until == "load"
    assert args.headless is False


def test_main_exit_codes(tmp_path: Path, monkeypatch, site_page: FakePage) -> None:
    assert web_clone.main(["notaurl"]) == 1

    monkeypatch.setattr(web_clone, "PlaywrightRenderer", lambda s: FakeRenderer(error=NavigationFailure("down")))
    assert web_clone.main(["http://site.test/", "-o", str(tmp_path / "a"), "--no-zip"]) == 1

    monkeypatch.setattr(web_clone, "PlaywrightRenderer", lambda s: FakeRenderer(site_page))
    monkeypatch.setattr(web_clone, "HttpFetcher", _StubFetcher)
    assert web_clone.main(["http://site.test/", "-o", str(tmp_path / "b"), "--no-zip", "--no-bypass"]) == 0
    assert (tmp_path / "b" / "index.html").exists()


def test_main_prompts_when_url_missing(tmp_path: Path, monkeypatch, site_page: FakePage) -> None:
    answers = iter(["not a url", "http://site.test/", str(tmp_path / "p"), "n", ""])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
    monkeypatch.setattr(web_clone, "PlaywrightRenderer", lambda s: FakeRenderer(site_page))
    monkeypatch.setattr(web_clone, "HttpFetcher", _StubFetcher)

    assert web_clone.main(["--no-bypass"]) == 0
    assert (tmp_path / "p" / "index.html").exists()
    assert not (tmp_path / "p.zip").exists()


class _StubFetcher(ScriptedFetch):
    def __init__(self, settings: Settings):
        super().__init__()

    def load_cookies(self, cookies) -> None:
        pass

    def close(self) -> None:
        pass


def test_config_file_reaches_every_setting(tmp_path: Path) -> None:
    cfg = tmp_path / "clone.toml"
    cfg.write_text(
        "write_manifest = false\n"
        "[fetch]\nmax_attempts = 1\nbackoff = 0.0\n"
        "[render]\ncss_passes = 5\nsettle_ms = 0\nturnstile_wait_ms = 250\n",
        encoding="utf-8",
    )
    settings = settings_from_args(parse_args(["https://site.test/", "--config", str(cfg)]))
    assert settings.max_attempts == 1
    assert settings.backoff == 0.0
    assert settings.css_passes == 5
    assert settings.settle_ms == 0
    assert settings.turnstile_wait_ms == 250
    assert settings.write_manifest is False


def test_flags_override_retry_settings() -> None:
    settings = settings_from_args(
        parse_args(["https://site.test/", "--max-attempts", "2", "--backoff", "0.5", "--no-manifest"])
    )
    assert (settings.max_attempts, settings.backoff, settings.write_manifest) == (2, 0.5, False)


def test_clone_wraps_unexpected_renderer_errors(tmp_path: Path, site_page: FakePage) -> None:
    class BrokenMarkupPage(FakePage):
        def current_markup(self) -> str:
            raise RuntimeError("target closed")

    page = BrokenMarkupPage(site_page.url, resources=site_page.resources)
    renderer = FakeRenderer(page)
    cloner = WebsiteCloner(_settings(tmp_path), renderer_factory=lambda s: renderer, fetch=ScriptedFetch())

    with pytest.raises(RendererError, match="target closed"):
        cloner.clone("http://site.test/")
    assert cloner.state == MirrorState.FAILED
    assert renderer.closed


def test_clone_wraps_errors_outside_the_hierarchy(tmp_path: Path) -> None:
    def factory(settings: Settings):
        raise RuntimeError("driver crashed")

    cloner = WebsiteCloner(_settings(tmp_path), renderer_factory=factory)
    with pytest.raises(CloneError, match="driver crashed"):
        cloner.clone("http://site.test/")
    assert cloner.state == MirrorState.FAILED


def test_clone_archiver_os_error_is_recorded(tmp_path: Path, site_page: FakePage) -> None:
    def broken_archiver(src: Path, dest: Path) -> Path:
        raise PermissionError("read-only filesystem")

    cloner = WebsiteCloner(
        _settings(tmp_path, create_zip=True),
        renderer_factory=lambda s: FakeRenderer(site_page),
        fetch=ScriptedFetch(),
        archiver=broken_archiver,
    )
    manifest = cloner.clone("http://site.test/")

    assert cloner.state == MirrorState.DONE
    assert manifest.archive is None
    assert "read-only filesystem" in manifest.archive_error


def test_main_reports_unexpected_errors(monkeypatch, tmp_path: Path) -> None:
    def factory(settings: Settings):
        raise RuntimeError("driver crashed")

    monkeypatch.setattr(web_clone, "PlaywrightRenderer", factory)
    assert web_clone.main(["http://site.test/", "-o", str(tmp_path / "x"), "--no-zip"]) == 1
