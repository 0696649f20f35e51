"""Main entry point for Flume Exporter.

This module handles:
- Loading configuration from environment variables
- Running one authenticate → query → convert → write ingestion pass
- Scheduling periodic ingestion with APScheduler
- Exposing operational metrics for the scheduled daemon
"""

import logging
import os
import time
from datetime import datetime
from typing import Optional

import requests
import urllib3
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from influxdb_client.rest import ApiException

from flume_exporter.client import FlumeAPIError, FlumeClient, FlumeError, RequestRejected, RetryExhausted
from flume_exporter.credentials import DEFAULT_CREDENTIALS_PATH, CredentialError, CredentialLockError, CredentialStore
from flume_exporter.exporter import FlumeMetrics
from flume_exporter.influxdb_exporter import InfluxDBExporter
from flume_exporter.readings import DEFAULT_SERIES, ReadingParseError, convert
from flume_exporter.retry import DEFAULT_MAX_RETRIES, RetryExecutor
from flume_exporter.window import DEFAULT_LOOKBACK_HOURS, build_window

# Configure module logger
logger = logging.getLogger(__name__)

# Configuration from environment
config = {
    "credentials_path": str(DEFAULT_CREDENTIALS_PATH),
    "api_url": FlumeClient.BASE_URL,
    "lookback_hours": DEFAULT_LOOKBACK_HOURS,
    "max_retries": DEFAULT_MAX_RETRIES,
    "timeout": 30,
    "series": DEFAULT_SERIES,
    "scrape_interval_minutes": 60,
    "exporter_port": 9121,
    # InfluxDB config
    "influxdb_url": "http://localhost:8086",
    "influxdb_token": "",
    "influxdb_org": "flume",
    "influxdb_bucket": "flume",
}


def _int_env(name: str, key: str, default: int, minimum: int = 0) -> None:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError(raw)
        config[key] = value
    except ValueError:
        logger.warning(f"Invalid {name}, using default: {default}")
        config[key] = default


def load_config(require_influxdb: bool = True) -> bool:
    """Load configuration from environment variables.

    Required:
        INFLUXDB_TOKEN: InfluxDB API token (unless require_influxdb is False)

    Optional:
        FLUME_CREDENTIALS_PATH: Credential file (default: ~/.credentials/flume.yaml)
        FLUME_API_URL: Flume API base URL (default: https://api.flumetech.com)
        FLUME_LOOKBACK_HOURS: Query window length in hours (default: 18)
        FLUME_MAX_RETRIES: Retries for transient failures (default: 5)
        FLUME_TIMEOUT: Per-request timeout in seconds (default: 30)
        FLUME_SERIES: Measurement name (default: flow)
        SCRAPE_INTERVAL_MINUTES: Daemon scrape period (default: 60)
        EXPORTER_PORT: Prometheus port (default: 9121)
        INFLUXDB_URL: InfluxDB server URL (default: http://localhost:8086)
        INFLUXDB_ORG: InfluxDB organization (default: flume)
        INFLUXDB_BUCKET: InfluxDB bucket (default: flume)

    Args:
        require_influxdb: Whether the InfluxDB token must be present

    Returns:
        True if all required config loaded, False otherwise
    """
    config["credentials_path"] = os.getenv("FLUME_CREDENTIALS_PATH", str(DEFAULT_CREDENTIALS_PATH))
    config["api_url"] = os.getenv("FLUME_API_URL", FlumeClient.BASE_URL)
    config["series"] = os.getenv("FLUME_SERIES", DEFAULT_SERIES) or DEFAULT_SERIES

    # Optional with defaults
    _int_env("FLUME_LOOKBACK_HOURS", "lookback_hours", DEFAULT_LOOKBACK_HOURS, minimum=1)
    _int_env("FLUME_MAX_RETRIES", "max_retries", DEFAULT_MAX_RETRIES)
    _int_env("FLUME_TIMEOUT", "timeout", 30, minimum=1)
    _int_env("SCRAPE_INTERVAL_MINUTES", "scrape_interval_minutes", 60, minimum=1)
    _int_env("EXPORTER_PORT", "exporter_port", 9121, minimum=1)

    # InfluxDB configuration
    config["influxdb_url"] = os.getenv("INFLUXDB_URL", "http://localhost:8086")
    config["influxdb_token"] = os.getenv("INFLUXDB_TOKEN", "")
    config["influxdb_org"] = os.getenv("INFLUXDB_ORG", "flume")
    config["influxdb_bucket"] = os.getenv("INFLUXDB_BUCKET", "flume")

    if require_influxdb and not config["influxdb_token"]:
        logger.error("Missing required environment variables: INFLUXDB_TOKEN")
        return False

    logger.info(f"Configuration loaded: credentials={config['credentials_path']}, "
                f"lookback_hours={config['lookback_hours']}, "
                f"influxdb_url={config['influxdb_url']}")
    return True


def build_client() -> FlumeClient:
    """Create a Flume client from the loaded configuration."""
    return FlumeClient(
        base_url=config["api_url"],
        timeout=config["timeout"],
        executor=RetryExecutor(max_retries=config["max_retries"]),
    )


def build_sink() -> InfluxDBExporter:
    """Create an (unconnected) InfluxDB exporter from the loaded configuration."""
    return InfluxDBExporter(
        url=config["influxdb_url"],
        token=config["influxdb_token"],
        org=config["influxdb_org"],
        bucket=config["influxdb_bucket"],
    )


def run_ingest(
    store: CredentialStore,
    client: FlumeClient,
    sink: Optional[InfluxDBExporter],
    offset_hours: int = 0,
    dry_run: bool = False,
    lookback_hours: Optional[int] = None,
    series: Optional[str] = None,
    now: Optional[datetime] = None,
    metrics: Optional[FlumeMetrics] = None,
) -> bool:
    """Execute one authenticate, fetch, convert and write pass.

    Credential and authentication failures propagate: a run that cannot
    authenticate is fatal. Failures of the ingestion step itself (rejected
    query, exhausted retries, malformed readings, transport and InfluxDB
    write errors) are logged and reported through the return value.

    Args:
        store: Credential store, loaded at the start and saved after auth
        client: Flume API client
        sink: InfluxDB exporter (may be None for a dry run)
        offset_hours: Shift the query window this many hours into the past
        dry_run: Fetch and convert, but do not write
        lookback_hours: Query window length (default: configured value)
        series: Measurement name (default: configured value)
        now: Reference time for the window (default: current local time)
        metrics: Optional metrics to record the written points on

    Returns:
        True if the run completed, False if the ingestion step failed
    """
    if sink is None and not dry_run:
        raise ValueError("A sink is required unless dry_run is set")

    lookback_hours = config["lookback_hours"] if lookback_hours is None else lookback_hours
    series = series or config["series"]

    credentials = store.load()
    # device_id cannot be discovered from the token, unlike user_id
    if not credentials.device_id:
        raise CredentialError("device_id must be set in the credential file to record usage")

    client.authenticate(credentials)
    store.save(credentials)

    window = build_window(now or datetime.now(), offset_hours, lookback_hours)
    logger.info(f"Query window: {window.since_datetime} to {window.until_datetime}")

    try:
        readings = client.fetch_readings(credentials, window)
        points = [convert(reading, series) for reading in readings]

        if dry_run:
            logger.info(f"Dry run: skipping write of {len(points)} points")
            for point in points:
                logger.debug(f"{point.series} {point.timestamp} {point.value}")
        else:
            sink.write_points(points, tags={"device_id": credentials.device_id})

        if metrics:
            metrics.record_points(points)

    except RequestRejected as e:
        logger.error(f"Query rejected ({e.status_code}): {e.body}")
        return False

    except RetryExhausted as e:
        logger.error(f"Query failed after retries ({e.kind.value}): {e}")
        return False

    except FlumeAPIError as e:
        logger.error(f"Query failed ({e.status_code}): {e.body}")
        return False

    except ReadingParseError as e:
        logger.error(f"Data integrity error in query response: {e}")
        return False

    except requests.RequestException as e:
        logger.error(f"Query failed (request error): {e}")
        return False

    except (ApiException, urllib3.exceptions.HTTPError) as e:
        logger.error(f"Failed to write points to InfluxDB: {e}")
        return False

    logger.info("Ingestion completed successfully")
    return True


def run_scrape(
    store: CredentialStore,
    client: FlumeClient,
    sink: InfluxDBExporter,
    metrics: Optional[FlumeMetrics] = None,
) -> bool:
    """Run one scheduled ingestion, never raising into the scheduler.

    Returns:
        True if scrape succeeded, False otherwise
    """
    logger.info("Starting scheduled scrape")
    start_time = time.time()

    try:
        with store.lock():
            success = run_ingest(store, client, sink, metrics=metrics)

    except CredentialLockError as e:
        logger.warning(f"Scrape skipped: {e}")
        success = False

    except FlumeError as e:
        logger.error(f"Scrape failed (Flume error): {e}")
        success = False

    except Exception as e:
        logger.exception(f"Scrape failed (unexpected error): {e}")
        success = False

    if metrics:
        metrics.set_scrape_success(success, time.time() - start_time)
    return success


def serve(store: CredentialStore, client: FlumeClient) -> int:
    """Run the scrape on a schedule until interrupted.

    1. Connect to InfluxDB
    2. Start Prometheus HTTP server (for operational metrics)
    3. Run initial scrape at startup
    4. Block on the scheduler

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    sink = build_sink()
    if not sink.connect():
        logger.error("Failed to connect to InfluxDB, exiting")
        return 1

    metrics = FlumeMetrics(port=config["exporter_port"])
    metrics.start()

    interval = config["scrape_interval_minutes"]
    scheduler = BlockingScheduler()
    scheduler.add_job(
        run_scrape,
        trigger=IntervalTrigger(minutes=interval),
        args=[store, client, sink, metrics],
        id="flume_scrape",
        name=f"Scrape every {interval} minutes",
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled scrape every {interval} minutes")

    logger.info("Running initial scrape at startup")
    run_scrape(store, client, sink, metrics)

    logger.info("Starting scheduler, press Ctrl+C to exit")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Received interrupt, shutting down")
        scheduler.shutdown(wait=False)
    finally:
        sink.close()

    return 0
