import json
import time
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Union

import pytest
import requests

from flume_exporter import main as app
from flume_exporter.credentials import Credentials


def make_response(
    status: int,
    body: Any = None,
    text: Optional[str] = None,
    url: str = "https://api.example.test/",
) -> requests.Response:
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    response.encoding = "utf-8"
    if body is not None:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = (text or "").encode("utf-8")
    return response


def http_error(status: int, text: str = "") -> requests.HTTPError:
    return requests.HTTPError(f"{status} Error", response=make_response(status, text=text))


def token_response(access_token: str = "access-1", refresh_token: str = "refresh-1") -> requests.Response:
    return make_response(200, {"data": [{"access_token": access_token, "refresh_token": refresh_token}]})


def graph_response(graph: List[dict]) -> requests.Response:
    return make_response(200, {"data": [{"graph": graph}]})


class FakeSession:
    """Stands in for requests.Session, replaying queued outcomes in order."""

    def __init__(self, outcomes: List[Union[requests.Response, Exception]]):
        self.outcomes = list(outcomes)
        self.calls: List[dict] = []

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.outcomes:
            raise AssertionError(f"Unexpected request: {method} {url}")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeStore:
    """In-memory credential store recording every save."""

    def __init__(self, credentials: Credentials):
        self.credentials = credentials
        self.saved: List[Credentials] = []
        self.locks = 0

    def load(self) -> Credentials:
        return Credentials(**self.credentials.to_dict())

    def save(self, credentials: Credentials) -> None:
        self.saved.append(Credentials(**credentials.to_dict()))

    @contextmanager
    def lock(self) -> Iterator[None]:
        self.locks += 1
        yield


class RecordingSink:
    """Sink that remembers what it was asked to write."""

    def __init__(self):
        self.calls: List[tuple] = []

    def write_points(self, points, tags=None) -> int:
        self.calls.append((list(points), tags))
        return len(points)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        client_id="client",
        client_secret="secret",
        username="user@example.com",
        password="hunter2",
        user_id="1234",
        device_id="6248287314",
    )


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch) -> dict:
    cfg = dict(app.config)
    monkeypatch.setattr(app, "config", cfg)
    return cfg


@pytest.fixture
def local_tz(monkeypatch: pytest.MonkeyPatch):
    """Switch the process local time zone for one test."""

    def _set(name: str) -> None:
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield _set
    monkeypatch.undo()
    time.tzset()
