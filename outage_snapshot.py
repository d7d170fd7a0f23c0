#!/usr/bin/env python3
import argparse
import copy
import hashlib
import json
import logging
import mimetypes
import os
import posixpath
import re
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

# inner literal of url(...), any quoting style
CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
SAFE_EXT_RE = re.compile(r"^\.[a-z0-9]{1,8}$")

UNFETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")


# -------------------- Settings --------------------


@dataclass
class SnapshotSettings:
    output_dir: Path = Path("maintenance")
    site_url: str = ""
    page_url: str = ""
    timeout: float = 15.0
    max_bytes: int = 20_000_000

    # Output layout
    resources_url: str = "/resources"
    resources_dirname: str = "resources"
    template_name: str = "index.html"
    manifest_name: str = "manifest.json"

    # Rendering
    render_js: bool = False
    render_timeout_ms: int = 10000
    wait_until: str = "networkidle"

    # Session
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"


# -------------------- Errors --------------------


class SnapshotError(RuntimeError):
    pass


class InvalidStateError(SnapshotError):
    """The rewritten document is in a state that should never be reached."""


class ResourceFetchError(SnapshotError):
    """A resource could not be fetched or stored."""


# -------------------- Utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.startswith(UNFETCHABLE_PREFIXES):
        return False
    return True


def site_origin(url: str) -> str:
    p = urlparse(url)
    if not p.scheme or not p.netloc:
        return ""
    return f"{p.scheme}://{p.netloc}"


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def apply_extra_headers(session: requests.Session, headers: List[str]) -> None:
    for h in headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    if ct == "text/css":
        return ".css"
    if ct in ("image/x-icon", "image/vnd.microsoft.icon"):
        return ".ico"
    if ct == "image/svg+xml":
        return ".svg"
    if ct == "image/jpeg":
        return ".jpg"
    if ct == "font/woff2":
        return ".woff2"
    if ct == "font/woff":
        return ".woff"
    return mimetypes.guess_extension(ct)


def resource_identifier(url: str, content_type: Optional[str] = None) -> str:
    """Stable file name for ``url``: sha1 of the URL plus a file extension.

    The extension comes from the URL path when it looks like one, otherwise
    from the response content type. The same URL always yields the same name.
    """
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    if not SAFE_EXT_RE.match(ext):
        ext = guess_ext_from_type(content_type) or ""
    return digest + ext


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


class SourceOrderFormatter(HTMLFormatter):
    """The "html" formatter, but attributes keep their document order."""

    def __init__(self):
        super().__init__(entity_substitution=EntitySubstitution.substitute_html)

    def attributes(self, tag) -> Iterable[Tuple[str, object]]:
        if tag.attrs is None:
            return []
        return list(tag.attrs.items())


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter=SourceOrderFormatter())
    except Exception:
        return str(soup)


def link_rel(tag) -> str:
    rel = tag.get("rel") or ""
    if isinstance(rel, list):
        rel = " ".join(rel)
    return rel.strip().lower()


# -------------------- Resource localizer --------------------


@dataclass(frozen=True)
class SavedFile:
    identifier: Optional[str] = None
    path: Optional[Path] = None

    @property
    def skipped(self) -> bool:
        return self.identifier is None


SKIPPED = SavedFile()


class ResourceLocalizer:
    """Fetches, stores and maps the resources referenced by a static page."""

    def cleanup(self) -> None:
        raise NotImplementedError

    def create_resources_path(self) -> None:
        raise NotImplementedError

    def save_url_file(self, url: str) -> SavedFile:
        raise NotImplementedError

    def get_url_for_file(self, identifier: str) -> str:
        raise NotImplementedError

    def generate_file_url(self, url: str) -> str:
        try:
            saved = self.save_url_file(url)
        except ResourceFetchError as e:
            logging.warning("keeping original reference %s: %s", url, e)
            return url
        if saved.skipped:
            return url
        return self.get_url_for_file(saved.identifier)

    def save_template_file(self, html: str) -> None:
        raise NotImplementedError

    @staticmethod
    def is_url(value: str) -> bool:
        p = urlparse(value or "")
        return bool(p.scheme and p.netloc)


class FileResourceLocalizer(ResourceLocalizer):
    """Stores resources under ``settings.output_dir`` using stable names.

    Layout::

        <output_dir>/index.html          rewritten page
        <output_dir>/resources/<sha1>.x  downloaded resources
        <output_dir>/manifest.json       source URL of every stored resource
    """

    def __init__(
        self, settings: SnapshotSettings, session: Optional[requests.Session] = None
    ):
        self.settings = settings
        if session is None:
            session = build_session()
            apply_extra_headers(session, settings.extra_headers)
        self.session = session
        self._saved: Dict[str, SavedFile] = {}

    @property
    def output_dir(self) -> Path:
        return Path(self.settings.output_dir)

    @property
    def resources_path(self) -> Path:
        return self.output_dir / self.settings.resources_dirname

    @property
    def template_path(self) -> Path:
        return self.output_dir / self.settings.template_name

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / self.settings.manifest_name

    def cleanup(self) -> None:
        for p in (self.template_path, self.manifest_path):
            p.unlink(missing_ok=True)
        if self.resources_path.exists():
            shutil.rmtree(self.resources_path)
        self._saved.clear()
        logging.debug("cleaned up %s", self.output_dir)

    def create_resources_path(self) -> None:
        self.resources_path.mkdir(parents=True, exist_ok=True)

    def is_local(self, url: str) -> bool:
        prefix = self.settings.resources_url.rstrip("/") + "/"
        if url.startswith(prefix):
            return True
        if not self.is_url(url) or self.is_url(prefix):
            return False
        # root-relative resources_url reached through the site or its origin
        for base in (self.settings.site_url, site_origin(self.settings.site_url)):
            if base and url.startswith(base.rstrip("/") + prefix):
                return True
        return False

    def absolute_url(self, url: str) -> str:
        u = url.strip()
        if self.is_url(u):
            return u
        base = self.settings.page_url or self.settings.site_url
        if u.startswith("//"):
            scheme = urlparse(base).scheme or "https"
            return f"{scheme}:{u}"
        if not base:
            return u
        return urljoin(base, u)

    def save_url_file(self, url: str) -> SavedFile:
        if not can_fetch_url(url) or self.is_local(url.strip()):
            logging.debug("skip: %s", url)
            return SKIPPED
        absu = self.absolute_url(url)
        if urlparse(absu).scheme not in ("http", "https"):
            logging.debug("skip unsupported scheme: %s", absu)
            return SKIPPED
        saved = self._saved.get(absu)
        if saved is None:
            saved = self._download(absu)
            self._saved[absu] = saved
        return saved

    def _download(self, absolute_url: str) -> SavedFile:
        try:
            resp = self.session.get(
                absolute_url, timeout=self.settings.timeout, stream=True
            )
        except requests.RequestException as e:
            raise ResourceFetchError(f"error downloading {absolute_url}: {e}") from e
        try:
            if resp.status_code >= 400:
                raise ResourceFetchError(
                    f"failed {absolute_url} -> HTTP {resp.status_code}"
                )
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.settings.max_bytes:
                logging.warning("skip large file %s (%s bytes)", absolute_url, cl)
                return SKIPPED
            identifier = resource_identifier(
                absolute_url, resp.headers.get("Content-Type")
            )
            local_path = self.resources_path / identifier
            self.create_resources_path()
            written = 0
            with open(local_path, "wb") as f:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    if not chunk:
                        continue
                    written += len(chunk)
                    if written > self.settings.max_bytes:
                        break
                    f.write(chunk)
        except requests.RequestException as e:
            raise ResourceFetchError(f"error downloading {absolute_url}: {e}") from e
        finally:
            resp.close()

        if written > self.settings.max_bytes:
            logging.warning("skip large file %s (> %d bytes)", absolute_url, written)
            local_path.unlink(missing_ok=True)
            return SKIPPED
        if written == 0:
            logging.warning("empty response %s", absolute_url)
            local_path.unlink(missing_ok=True)
            return SKIPPED

        logging.info("downloaded resource: %s -> %s", absolute_url, local_path)
        return SavedFile(identifier, local_path)

    def get_url_for_file(self, identifier: str) -> str:
        return f"{self.settings.resources_url.rstrip('/')}/{identifier}"

    def save_template_file(self, html: str) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.template_path.write_text(html, encoding="utf-8")
        logging.info("saved template: %s", self.template_path)
        self.write_manifest()

    def write_manifest(self) -> None:
        created_ts = (
            datetime.now(timezone.utc)
            .replace(microsecond=0)
            .isoformat()
            .replace("+00:00", "Z")
        )
        resources = {
            s.identifier: u for u, s in sorted(self._saved.items()) if not s.skipped
        }
        data = {
            "site": self.settings.site_url,
            "page": self.settings.page_url,
            "created_utc": created_ts,
            "template": self.settings.template_name,
            "resources_dir": self.settings.resources_dirname + "/",
            "resources": resources,
        }
        self.manifest_path.write_text(json.dumps(data, indent=2), encoding="utf-8")


# -------------------- CSS url() localization --------------------


def extract_css_urls(text: str) -> List[str]:
    return [m.group(2).strip() for m in CSS_URL_RE.finditer(text)]


def base_reference(href: str) -> str:
    """Directory part of ``href`` against which nested references resolve."""
    path = href.split("#", 1)[0].split("?", 1)[0]
    return posixpath.dirname(path) or "."


def resolve_css_url(literal: str, base_ref: str, site_url: str) -> str:
    # Concatenation only: "./" and "../" segments are kept as written.
    if ResourceLocalizer.is_url(literal) or literal.startswith("//"):
        return literal
    if literal.startswith("/"):
        return site_url.rstrip("/") + literal
    return base_ref.rstrip("/") + "/" + literal


def localize_stylesheet_urls(
    path: Union[str, Path], base_ref: str, io: ResourceLocalizer, site_url: str = ""
) -> None:
    """Localize the ``url(...)`` references of the stylesheet stored at ``path``.

    Each reference is resolved against ``base_ref`` (or ``site_url`` for
    root-relative references), handed to ``io`` and, unless skipped, replaced
    inside its own ``url(...)`` token by the local URL. The file is rewritten
    in place. Stylesheets referenced from this one are not scanned.
    """
    css_path = Path(path)
    text = css_path.read_text(encoding="utf-8", errors="surrogateescape")
    if not CSS_URL_RE.search(text):
        return

    localized: Dict[str, Optional[str]] = {}

    def repl(m: re.Match) -> str:
        q = m.group(1) or ""
        literal = m.group(2).strip()
        if not can_fetch_url(literal):
            return m.group(0)
        if literal not in localized:
            saved = io.save_url_file(resolve_css_url(literal, base_ref, site_url))
            localized[literal] = (
                None if saved.skipped else io.get_url_for_file(saved.identifier)
            )
        new_url = localized[literal]
        if new_url is None:
            return m.group(0)
        return f"url({q}{new_url}{q})"

    css_path.write_text(
        CSS_URL_RE.sub(repl, text), encoding="utf-8", errors="surrogateescape"
    )


# -------------------- Page rewriter --------------------


class StaticPageGenerator:
    """Rewrites a page into a static snapshot served without the application.

    ``document`` may be ``None`` (nothing was fetched); ``generate()`` then only
    clears the previous output.
    """

    def __init__(
        self,
        document: Optional[BeautifulSoup],
        io: ResourceLocalizer,
        site_url: str = "",
    ):
        if document is not None and not isinstance(document, BeautifulSoup):
            raise TypeError("document must be None or a BeautifulSoup object.")
        self.document = document
        self.io = io
        self.site_url = site_url

    def get_io(self) -> ResourceLocalizer:
        return self.io

    def generate(self) -> Optional[str]:
        self.io.cleanup()
        if self.document is None:
            return None

        self.io.create_resources_path()
        soup = copy.copy(self.document)
        self.remove_script_tags(soup)
        self.update_link_stylesheet(soup)
        self.update_link_favicon(soup)
        self.update_images(soup)

        html = serialize_html(soup)
        if not html.strip():
            raise InvalidStateError("sanity check failed, serialized HTML is empty")
        self.io.save_template_file(html)
        return html

    @staticmethod
    def remove_script_tags(soup: BeautifulSoup) -> None:
        # collect first, detach after
        scripts = list(soup.find_all("script"))
        for node in scripts:
            node.decompose()

    def update_link_stylesheet(self, soup: BeautifulSoup) -> None:
        # a stored copy is already rewritten after its first scan
        scanned: Set[str] = set()
        for link in soup.find_all("link"):
            href = link.get("href") or ""
            if link_rel(link) != "stylesheet" or not href:
                continue
            saved = self.io.save_url_file(href)
            if saved.skipped:
                continue
            if saved.identifier not in scanned:
                scanned.add(saved.identifier)
                localize_stylesheet_urls(
                    saved.path, base_reference(href), self.io, self.site_url
                )
            link["href"] = self.io.get_url_for_file(saved.identifier)

    def update_link_favicon(self, soup: BeautifulSoup) -> None:
        for link in soup.find_all("link"):
            href = link.get("href") or ""
            if link_rel(link) != "shortcut icon" or not href:
                continue
            link["href"] = self.io.generate_file_url(href)

    def update_images(self, soup: BeautifulSoup) -> None:
        for img in soup.find_all("img"):
            src = img.get("src") or ""
            if not src:
                continue
            img["src"] = self.io.generate_file_url(src)


# -------------------- Rendering --------------------


class HtmlRenderer:
    def fetch(self, session: requests.Session, url: str, timeout: float) -> str:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RequestsRenderer(HtmlRenderer):
    def fetch(self, session: requests.Session, url: str, timeout: float) -> str:
        try:
            r = session.get(url, timeout=timeout)
        except requests.RequestException as e:
            raise ResourceFetchError(f"error fetching {url}: {e}") from e
        if r.status_code >= 400:
            raise ResourceFetchError(f"failed {url} -> HTTP {r.status_code}")
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            raise ResourceFetchError(f"not an HTML page: {url} ({ct or 'no type'})")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        return r.text


class PlaywrightRenderer(HtmlRenderer):
    def __init__(
        self,
        wait_until: str = "networkidle",
        timeout_ms: int = 10000,
    ):
        self.wait_until = wait_until
        self.timeout_ms = timeout_ms
        self._pl = None
        self._browser = None

    def _ensure_browser(self) -> None:
        if self._pl is not None and self._browser is not None:
            return
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise ResourceFetchError(
                "Playwright not installed. Run: pip install playwright && playwright install"
            ) from e
        self._pl = sync_playwright().start()
        self._browser = self._pl.chromium.launch(headless=True)

    def fetch(self, session: requests.Session, url: str, timeout: float) -> str:
        self._ensure_browser()
        ua = session.headers.get("User-Agent")
        context = self._browser.new_context(user_agent=ua)
        try:
            context.set_extra_http_headers(dict(session.headers))
            page = context.new_page()
            page.goto(url, wait_until=self.wait_until, timeout=self.timeout_ms)
            return page.content()
        except Exception as e:
            raise ResourceFetchError(f"Playwright render failed for {url}: {e}") from e
        finally:
            context.close()

    def close(self) -> None:
        if self._browser:
            self._browser.close()
        if self._pl:
            self._pl.stop()


def get_renderer(settings: SnapshotSettings, session: requests.Session) -> HtmlRenderer:
    if settings.render_js:
        return PlaywrightRenderer(settings.wait_until, settings.render_timeout_ms)
    return RequestsRenderer()


def fetch_document(
    url: str, settings: SnapshotSettings, session: Optional[requests.Session] = None
) -> BeautifulSoup:
    if session is None:
        session = build_session()
        apply_extra_headers(session, settings.extra_headers)
    renderer = get_renderer(settings, session)
    try:
        logging.info("GET %s", url)
        html = renderer.fetch(session, url, settings.timeout)
    finally:
        renderer.close()
    return bs4_parse(html)


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
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
        prog="outage-snapshot",
        description="Save a static maintenance snapshot of a page.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the page to snapshot")
    p.add_argument("output_dir", help="output directory")
    p.add_argument(
        "--site-url",
        type=str,
        default=None,
        help="site root URL for root-relative CSS references (default: URL origin)",
    )
    p.add_argument(
        "--resources-url",
        type=str,
        default="/resources",
        help="URL prefix the static server exposes the resources directory on",
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument(
        "--max-bytes", type=int, default=20_000_000, help="max bytes per resource"
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # render
    p.add_argument(
        "--render-js", action="store_true", help="render with Playwright if installed"
    )
    p.add_argument(
        "--render-timeout-ms", type=int, default=10000, help="Playwright timeout ms"
    )
    p.add_argument(
        "--wait-until", type=str, default="networkidle", help="Playwright wait_until"
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("snapshot", "render", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> SnapshotSettings:
    return SnapshotSettings(
        output_dir=Path(args.output_dir),
        site_url=args.site_url or site_origin(args.url),
        page_url=args.url,
        timeout=args.timeout,
        max_bytes=max(1024, args.max_bytes),
        resources_url=args.resources_url,
        render_js=args.render_js,
        render_timeout_ms=args.render_timeout_ms,
        wait_until=args.wait_until,
        extra_headers=args.header or [],
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    if urlparse(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    settings = settings_from_args(args)
    io = FileResourceLocalizer(settings)
    try:
        document = fetch_document(args.url, settings, io.session)
    except ResourceFetchError as e:
        logging.error("%s", e)
        document = None

    StaticPageGenerator(document, io, site_url=settings.site_url).generate()
    if document is None:
        print(f"Critical error: failed to fetch HTML for {args.url}")
        sys.exit(1)
    print("Snapshot complete")
    print(f"Saved to: {io.template_path}")


if __name__ == "__main__":
    main()
