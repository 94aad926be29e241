#!/usr/bin/env python3
import argparse
import dataclasses
import logging

from exporterlib.config import load_config
from exporterlib.errors import ConfigError
from exporterlib.metrics import Metrics, StatsLogger
from exporterlib.net import ContentFetcher
from exporterlib.prometheus_exporter import PrometheusExporter
from exporterlib.server import build_app, make_exporter_server


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve upstream JSON/HTML content with fetch metrics for Prometheus.")
    parser.add_argument("--config", required=True, help="Path to the JSON configuration file.")
    parser.add_argument("--port", type=int, default=None, help="Listening port (overrides the configuration).")
    parser.add_argument("--address", default=None, help="Listening address (overrides the configuration).")
    parser.add_argument(
        "--metrics-interval",
        type=float,
        default=None,
        help="Seconds between perf logs, 0 to disable (overrides the configuration).",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    log_level = logging.WARNING
    if args.verbose == 1:
        log_level = logging.INFO
    elif args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(threadName)s %(message)s",
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.error("%s (%s)", e.message, e.kind.value)
        return 1

    overrides = {}
    if args.port is not None:
        overrides["port"] = args.port
    if args.address is not None:
        overrides["address"] = args.address
    if args.metrics_interval is not None:
        overrides["metrics_interval"] = max(0.0, args.metrics_interval)
    config = dataclasses.replace(config, **overrides)

    metrics = Metrics()
    exporter = PrometheusExporter(metrics)
    fetcher = ContentFetcher()
    app = build_app(config, fetcher, metrics, exporter)
    server = make_exporter_server(config, app)

    stats_thread = None
    if config.metrics_interval > 0:
        stats_thread = StatsLogger(metrics, config.metrics_interval, logging.info)
        stats_thread.start()

    logging.info("Serving %s content from %s on http://%s:%d", config.mime_type, config.url, config.address, config.port)
    logging.info("Routes: %s", ", ".join(app.paths))
    if config.basic_auth is None:
        logging.warning("No basicAuth configured; the *BasicAuth routes will refuse every request")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logging.info("Interrupted, shutting down")
    finally:
        if stats_thread:
            stats_thread.stop()
        server.server_close()
        fetcher.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
