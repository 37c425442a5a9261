import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import StoreConfig
from .errors import CrawlStoreError, EmptyQueueError
from .metrics import Metrics, StatsLogger
from .prometheus_exporter import PrometheusExporter
from .storage import Storage


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="crawlstore", description="Inspect and edit a crawlstore database file.")
    parser.add_argument("path", help="Path to the store file (created if missing).")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the store lock.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")
    parser.add_argument("--stats-interval", type=float, default=0.0, help="Seconds between store stats logs (0 to disable).")
    parser.add_argument("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port while running.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the buckets.")
    sub.add_parser("stats", help="Print entry counts as JSON.")

    push = sub.add_parser("push", help="Enqueue one or more items.")
    push.add_argument("items", nargs="+", help="Items, stored as UTF-8.")

    sub.add_parser("pop", help="Dequeue and print the oldest item.")

    visit = sub.add_parser("visit", help="Mark a request fingerprint as visited.")
    visit.add_argument("request_id", type=int)
    visit.add_argument("--check", action="store_true", help="Only report whether it is visited.")

    cookies = sub.add_parser("cookies", help="Print (or set) the cookies stored for an origin.")
    cookies.add_argument("origin")
    cookies.add_argument("--set", dest="value", default=None, help="Replace the stored cookies.")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> int:
    config = StoreConfig(path=args.path, timeout=args.timeout, strict_cookies=True)
    metrics = Metrics()
    with Storage.open(config, metrics=metrics) as store:
        store.init()
        stats_thread = None
        exporter = None
        if args.stats_interval > 0:
            stats_thread = StatsLogger(metrics, args.stats_interval, logging.info)
            stats_thread.start()
        if args.metrics_port is not None:
            exporter = PrometheusExporter(metrics, port=args.metrics_port, queue_size=store.size)
            exporter.start()
            logging.info("Prometheus metrics available at http://0.0.0.0:%d/metrics", args.metrics_port)
        try:
            return run_command(store, args)
        finally:
            if exporter:
                exporter.update_metrics()
                exporter.stop()
            if stats_thread:
                stats_thread.stop()
                stats_thread.log_once()


def run_command(store: Storage, args: argparse.Namespace) -> int:
    if args.command == "stats":
        print(json.dumps(store.stats(), sort_keys=True))
    elif args.command == "push":
        for item in args.items:
            store.enqueue(item.encode("utf-8"))
        logging.info("Enqueued %d items", len(args.items))
    elif args.command == "pop":
        try:
            item = store.dequeue()
        except EmptyQueueError as exc:
            print(exc, file=sys.stderr)
            return 1
        print(item.decode("utf-8", errors="replace"))
    elif args.command == "visit":
        if args.check:
            print("visited" if store.is_visited(args.request_id) else "not visited")
        else:
            store.mark_visited(args.request_id)
    elif args.command == "cookies":
        if args.value is not None:
            store.set_cookies(args.origin, args.value)
        else:
            print(store.get_cookies(args.origin))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
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
        return run(args)
    except CrawlStoreError as exc:
        logging.error("%s", exc)
        return 2
