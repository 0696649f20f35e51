"""Command-line interface for the Flume exporter."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from flume_exporter import main as app
from flume_exporter.credentials import CredentialStore

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argparse namespace.
    """
    parser = argparse.ArgumentParser(
        prog="flume-exporter",
        description="Record Flume water usage into InfluxDB.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--log-file", help="Also append log output to this file.")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("authenticate", help="Obtain fresh tokens and store them.")
    sub.add_parser("show-devices", help="List the devices on the account.")

    record = sub.add_parser("record", help="Record recent usage into InfluxDB.")
    record.add_argument(
        "--offset",
        type=int,
        default=0,
        help="Shift the query window this many hours into the past (default: 0).",
    )
    record.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and convert readings without writing them.",
    )

    sub.add_parser("serve", help="Record usage on a schedule and expose metrics.")
    return parser.parse_args(argv)


def setup_logging(verbose: bool, log_file: Optional[str]) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o755)
        handlers.append(logging.FileHandler(path))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def cmd_authenticate(store: CredentialStore) -> int:
    client = app.build_client()
    credentials = store.load()
    client.authenticate(credentials)
    store.save(credentials)
    print(f"OK: tokens stored in {store.path}")
    return 0


def cmd_show_devices(store: CredentialStore) -> int:
    client = app.build_client()
    credentials = store.load()
    client.authenticate(credentials)
    store.save(credentials)

    devices = client.list_devices(credentials)
    for device in devices:
        marker = "*" if str(device.get("id")) == credentials.device_id else " "
        print(f"{marker} id={device.get('id')} type={device.get('type')} "
              f"location_id={device.get('location_id')}")
    return 0


def cmd_record(store: CredentialStore, offset: int, dry_run: bool) -> int:
    sink = None
    if not dry_run:
        sink = app.build_sink()
        if not sink.connect():
            logger.error("Failed to connect to InfluxDB, exiting")
            return 1

    try:
        with store.lock():
            ok = app.run_ingest(store, app.build_client(), sink, offset_hours=offset, dry_run=dry_run)
    finally:
        if sink:
            sink.close()
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI.

    Returns:
        Exit code (0 on success).
    """
    ns = parse_args(argv)
    setup_logging(ns.verbose, ns.log_file)
    logger.info(f"Flume exporter starting: {ns.command}")

    load_dotenv()
    needs_influxdb = ns.command == "serve" or (ns.command == "record" and not ns.dry_run)
    if not app.load_config(require_influxdb=needs_influxdb):
        logger.error("Configuration failed, exiting")
        return 1

    store = CredentialStore(app.config["credentials_path"])

    if ns.command == "authenticate":
        return cmd_authenticate(store)
    if ns.command == "show-devices":
        return cmd_show_devices(store)
    if ns.command == "record":
        return cmd_record(store, ns.offset, ns.dry_run)
    return app.serve(store, app.build_client())
