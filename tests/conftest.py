from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pytest
import requests

from outage_snapshot import SKIPPED, ResourceLocalizer, SavedFile


class FakeLocalizer(ResourceLocalizer):
    """In-memory localizer: ``files`` maps a URL to (identifier, content)."""

    def __init__(
        self,
        root: Path,
        files: Optional[Dict[str, Union[Tuple[str, str], Exception]]] = None,
    ):
        self.root = root
        self.files = dict(files or {})
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.templates: List[str] = []

    @property
    def resources_path(self) -> Path:
        return self.root / "res"

    def cleanup(self) -> None:
        self.calls.append(("cleanup", None))
        shutil.rmtree(self.resources_path, ignore_errors=True)

    def create_resources_path(self) -> None:
        self.calls.append(("create_resources_path", None))
        self.resources_path.mkdir(parents=True, exist_ok=True)

    def save_url_file(self, url: str) -> SavedFile:
        self.calls.append(("save_url_file", url))
        entry = self.files.get(url)
        if entry is None:
            return SKIPPED
        if isinstance(entry, Exception):
            raise entry
        identifier, content = entry
        path = self.resources_path / identifier
        path.write_text(content, encoding="utf-8")
        return SavedFile(identifier, path)

    def get_url_for_file(self, identifier: str) -> str:
        return f"/static/{identifier}"

    def save_template_file(self, html: str) -> None:
        self.calls.append(("save_template_file", None))
        self.templates.append(html)

    def saved_urls(self) -> List[str]:
        return [arg for op, arg in self.calls if op == "save_url_file"]


class FakeResponse:
    def __init__(
        self,
        body: bytes = b"",
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.body = body
        self.status_code = status_code
        self.headers = headers or {}
        self.encoding = "utf-8"
        self.apparent_encoding = "utf-8"
        self.closed = False

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding)

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Answers GETs from ``routes``; unknown URLs get a 404."""

    def __init__(self, routes: Optional[Dict[str, Union[FakeResponse, Exception]]] = None):
        self.routes = dict(routes or {})
        self.requested: List[str] = []
        self.headers: Dict[str, str] = {}

    def get(self, url: str, timeout: float = None, stream: bool = False) -> FakeResponse:
        self.requested.append(url)
        r = self.routes.get(url)
        if r is None:
            return FakeResponse(status_code=404)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture
def fake_localizer(tmp_path):
    def make(files=None) -> FakeLocalizer:
        return FakeLocalizer(tmp_path, files)

    return make


@pytest.fixture
def fake_session():
    def make(routes=None) -> FakeSession:
        return FakeSession(routes)

    return make


@pytest.fixture
def response():
    return FakeResponse


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
