import logging
from datetime import datetime

import pytest
import requests
from influxdb_client.rest import ApiException
from prometheus_client import CollectorRegistry

from flume_exporter import main as app
from flume_exporter.client import FlumeAuthError, FlumeClient
from flume_exporter.credentials import CredentialError, Credentials, CredentialStore
from flume_exporter.exporter import FlumeMetrics
from flume_exporter.retry import RetryExecutor
from tests.conftest import (
    FakeSession,
    FakeStore,
    RecordingSink,
    graph_response,
    make_response,
    token_response,
)

NOW = datetime(2024, 1, 1, 1, 0, 0)

GRAPH = [
    {"datetime": "2024-01-01 00:00:00", "value": "1.5"},
    {"datetime": "2024-01-01 00:01:00", "value": "2"},
]


def make_client(outcomes, max_retries: int = 5) -> FlumeClient:
    return FlumeClient(
        base_url="https://api.example.test",
        executor=RetryExecutor(max_retries=max_retries),
        session=FakeSession(outcomes),
    )


def test_run_ingest_writes_points(credentials: Credentials) -> None:
    store = FakeStore(credentials)
    sink = RecordingSink()
    client = make_client([token_response("a1", "r1"), graph_response(GRAPH)])

    ok = app.run_ingest(store, client, sink, lookback_hours=1, now=NOW)

    assert ok is True
    assert len(sink.calls) == 1
    points, tags = sink.calls[0]
    assert tags == {"device_id": "6248287314"}
    assert [p.value for p in points] == [1.5, 2.0]
    assert points[1].timestamp - points[0].timestamp == 60
    assert all(p.series == "flow" for p in points)


def test_run_ingest_persists_fresh_tokens_before_query(credentials: Credentials) -> None:
    store = FakeStore(credentials)
    client = make_client([token_response("a1", "r1"), make_response(401, {"message": "expired"})])

    app.run_ingest(store, client, RecordingSink(), now=NOW)

    assert len(store.saved) == 1
    assert store.saved[0].access_token == "a1"
    assert store.saved[0].refresh_token == "r1"
    query_call = client.session.calls[1]
    assert query_call["headers"] == {"Authorization": "Bearer a1"}


def test_run_ingest_uses_configured_window(credentials: Credentials, isolated_config: dict) -> None:
    isolated_config["lookback_hours"] = 18
    isolated_config["series"] = "water"
    sink = RecordingSink()
    client = make_client([token_response(), graph_response(GRAPH)])

    app.run_ingest(FakeStore(credentials), client, sink, offset_hours=1, now=NOW)

    query = client.session.calls[1]["json"]["queries"][0]
    assert query["until_datetime"] == "2023-12-31 23:59:00"
    assert query["since_datetime"] == "2023-12-31 06:00:01"
    assert all(p.series == "water" for p in sink.calls[0][0])


def test_dry_run_never_writes(credentials: Credentials) -> None:
    sink = RecordingSink()
    client = make_client([token_response(), graph_response(GRAPH)])

    ok = app.run_ingest(FakeStore(credentials), client, sink, dry_run=True, now=NOW)

    assert ok is True
    assert sink.calls == []


def test_dry_run_without_sink(credentials: Credentials) -> None:
    client = make_client([token_response(), graph_response(GRAPH)])
    assert app.run_ingest(FakeStore(credentials), client, None, dry_run=True, now=NOW) is True


def test_sink_required_without_dry_run(credentials: Credentials) -> None:
    with pytest.raises(ValueError):
        app.run_ingest(FakeStore(credentials), make_client([]), None, now=NOW)


def test_query_unauthorized_is_logged_not_raised(
    credentials: Credentials, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    sink = RecordingSink()
    client = make_client([token_response(), make_response(401, {"message": "token revoked"})])

    ok = app.run_ingest(FakeStore(credentials), client, sink, now=NOW)

    assert ok is False
    assert sink.calls == []
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert any("401" in r.getMessage() and "token revoked" in r.getMessage() for r in errors)


def test_query_retries_exhausted_is_logged(credentials: Credentials, caplog: pytest.LogCaptureFixture) -> None:
    client = make_client(
        [token_response()] + [make_response(502, text="bad gateway")] * 3,
        max_retries=2,
    )

    assert app.run_ingest(FakeStore(credentials), client, RecordingSink(), now=NOW) is False
    assert "bad-gateway" in caplog.text


def test_data_integrity_error_surfaced(credentials: Credentials, caplog: pytest.LogCaptureFixture) -> None:
    sink = RecordingSink()
    client = make_client([
        token_response(),
        graph_response([{"datetime": "2024-01-01 00:00:00", "value": "n/a"}]),
    ])

    assert app.run_ingest(FakeStore(credentials), client, sink, now=NOW) is False
    assert sink.calls == []
    assert "Data integrity" in caplog.text


def test_authentication_failure_propagates(credentials: Credentials) -> None:
    store = FakeStore(credentials)
    client = make_client([make_response(401, {"message": "bad password"})])

    with pytest.raises(FlumeAuthError):
        app.run_ingest(store, client, RecordingSink(), now=NOW)

    assert store.saved == []


def test_credential_failure_propagates_before_network() -> None:
    class _BrokenStore:
        def load(self) -> Credentials:
            raise CredentialError("missing")

    client = make_client([])
    with pytest.raises(CredentialError):
        app.run_ingest(_BrokenStore(), client, RecordingSink(), now=NOW)
    assert client.session.calls == []


def test_run_scrape_survives_auth_failure(credentials: Credentials) -> None:
    registry = CollectorRegistry()
    metrics = FlumeMetrics(registry=registry)
    client = make_client([make_response(401, {"message": "bad password"})])

    assert app.run_scrape(FakeStore(credentials), client, RecordingSink(), metrics) is False
    assert registry.get_sample_value("flume_scrape_success") == 0


def test_run_scrape_records_success(credentials: Credentials) -> None:
    registry = CollectorRegistry()
    metrics = FlumeMetrics(registry=registry)
    client = make_client([token_response(), graph_response(GRAPH)])

    assert app.run_scrape(FakeStore(credentials), client, RecordingSink(), metrics) is True
    assert registry.get_sample_value("flume_scrape_success") == 1
    assert registry.get_sample_value("flume_readings_written") == 2


def test_load_config_requires_influxdb_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("INFLUXDB_TOKEN", raising=False)
    assert app.load_config() is False
    assert app.load_config(require_influxdb=False) is True


def test_load_config_reads_environment(monkeypatch: pytest.MonkeyPatch, isolated_config: dict) -> None:
    monkeypatch.setenv("INFLUXDB_TOKEN", "tok")
    monkeypatch.setenv("INFLUXDB_BUCKET", "water")
    monkeypatch.setenv("FLUME_LOOKBACK_HOURS", "1")
    monkeypatch.setenv("FLUME_MAX_RETRIES", "2")
    monkeypatch.setenv("FLUME_CREDENTIALS_PATH", "/tmp/flume.yaml")

    assert app.load_config() is True
    assert isolated_config["influxdb_token"] == "tok"
    assert isolated_config["influxdb_bucket"] == "water"
    assert isolated_config["lookback_hours"] == 1
    assert isolated_config["max_retries"] == 2
    assert isolated_config["credentials_path"] == "/tmp/flume.yaml"
    assert app.build_client().executor.max_retries == 2


@pytest.mark.parametrize("raw", ["soon", "0", "-4"])
def test_invalid_lookback_falls_back(monkeypatch: pytest.MonkeyPatch, isolated_config: dict, raw: str) -> None:
    monkeypatch.setenv("FLUME_LOOKBACK_HOURS", raw)
    app.load_config(require_influxdb=False)
    assert isolated_config["lookback_hours"] == 18


def test_missing_device_id_fails_before_network(credentials: Credentials) -> None:
    credentials.device_id = ""
    store = FakeStore(credentials)
    client = make_client([token_response(), graph_response(GRAPH)])

    with pytest.raises(CredentialError, match="device_id"):
        app.run_ingest(store, client, RecordingSink(), now=NOW)

    assert client.session.calls == []
    assert store.saved == []


@pytest.mark.parametrize("value", ["NaN", "inf"])
def test_non_finite_reading_is_not_written(
    credentials: Credentials, caplog: pytest.LogCaptureFixture, value: str
) -> None:
    sink = RecordingSink()
    client = make_client([
        token_response(),
        graph_response([{"datetime": "2024-01-01 00:00:00", "value": value}]),
    ])

    assert app.run_ingest(FakeStore(credentials), client, sink, now=NOW) is False
    assert sink.calls == []
    assert "Data integrity" in caplog.text


@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.ChunkedEncodingError("connection broken"),
        requests.exceptions.TooManyRedirects("redirect loop"),
    ],
)
def test_unclassified_request_error_is_logged(
    credentials: Credentials, caplog: pytest.LogCaptureFixture, error: Exception
) -> None:
    client = make_client([token_response(), error])

    assert app.run_ingest(FakeStore(credentials), client, RecordingSink(), now=NOW) is False
    assert len(client.session.calls) == 2
    assert "request error" in caplog.text


def test_influxdb_write_failure_is_logged(credentials: Credentials, caplog: pytest.LogCaptureFixture) -> None:
    class _FailingSink(RecordingSink):
        def write_points(self, points, tags=None) -> int:
            raise ApiException(status=500, reason="Internal Server Error")

    client = make_client([token_response(), graph_response(GRAPH)])

    assert app.run_ingest(FakeStore(credentials), client, _FailingSink(), now=NOW) is False
    assert "InfluxDB" in caplog.text


def test_run_scrape_holds_credential_lock(credentials: Credentials) -> None:
    store = FakeStore(credentials)
    client = make_client([token_response(), graph_response(GRAPH)])

    assert app.run_scrape(store, client, RecordingSink()) is True
    assert store.locks == 1


def test_run_scrape_skips_while_another_run_holds_lock(
    credentials: Credentials, tmp_path, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "flume.yaml"
    CredentialStore(path).save(credentials)
    registry = CollectorRegistry()
    metrics = FlumeMetrics(registry=registry)
    client = make_client([token_response(), graph_response(GRAPH)])
    sink = RecordingSink()

    with CredentialStore(path).lock():
        assert app.run_scrape(CredentialStore(path), client, sink, metrics) is False

    assert client.session.calls == []
    assert sink.calls == []
    assert registry.get_sample_value("flume_scrape_success") == 0
    assert "Scrape skipped" in caplog.text
