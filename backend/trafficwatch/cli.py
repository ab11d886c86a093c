"""
TrafficWatch command line interface.

    trafficwatch watch            tail the proxy log directory
    trafficwatch parse FILE       parse a log file offline, print a summary
    trafficwatch check-status     check every proxy host
    trafficwatch serve            run the HTTP ingestion API
    trafficwatch init-db          create the database tables
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from collections import Counter

import uvicorn
from pydantic import ValidationError

from trafficwatch.config import configure_logging, get_settings
from trafficwatch.database import create_schema, get_engine, get_session_factory
from trafficwatch.ingestion.parser import Matched, extract_proxy_host_id, parse_line
from trafficwatch.ingestion.state import IngestionContext
from trafficwatch.ingestion.watcher import LogWatcher
from trafficwatch.runtime import build_npm_client, build_pipeline
from trafficwatch.utils.status_check import check_all_hosts

log = logging.getLogger("trafficwatch.cli")


async def _watch(watcher: LogWatcher):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, watcher.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass
    await watcher.run()


def watch(args) -> int:
    settings = get_settings()
    engine = get_engine()
    create_schema(engine)

    context = IngestionContext()
    pipeline = build_pipeline(settings, get_session_factory(), stats=context.stats)
    watcher = LogWatcher(
        args.directory or settings.NPM_LOG_DIR,
        pipeline,
        context=context,
        interval=settings.WATCH_INTERVAL / 1000.0,
        max_concurrent_files=settings.MAX_CONCURRENT_FILES,
        stats_interval=settings.STATS_INTERVAL / 1000.0,
    )
    try:
        asyncio.run(_watch(watcher))
    finally:
        engine.dispose()
        log.info("Database pool closed")
    return 0


def parse_file(args) -> int:
    """Parse without touching the database."""
    grammars = Counter()
    failed = []
    total = 0
    with open(args.file, encoding="utf-8", errors="replace") as f:
        for line in f:
            if not line.strip():
                continue
            total += 1
            result = parse_line(line)
            if isinstance(result, Matched):
                grammars[result.grammar] += 1
            else:
                failed.append(result.line[:200])

    summary = {
        "file": args.file,
        "proxy_host_id": extract_proxy_host_id(os.path.basename(args.file)),
        "lines": total,
        "parsed": sum(grammars.values()),
        "parse_failures": len(failed),
        "grammars": dict(grammars),
        "failed_samples": failed[:args.samples],
    }
    print(json.dumps(summary, indent=2))
    return 0


def check_status(args) -> int:
    settings = get_settings()
    client = build_npm_client(settings)
    if client is None:
        log.error("NPM_API_URL is not configured")
        return 1
    engine = get_engine()
    create_schema(engine)
    try:
        check_all_hosts(client, get_session_factory(), timeout=settings.STATUS_CHECK_TIMEOUT)
    finally:
        engine.dispose()
    return 0


def serve(args) -> int:
    uvicorn.run("trafficwatch.main:app", host=args.host, port=args.port, log_level=get_settings().LOG_LEVEL.lower())
    return 0


def init_db(args) -> int:
    create_schema(get_engine())
    log.info("Tables created")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="TrafficWatch - reverse-proxy log ingestion")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    watch_parser = subparsers.add_parser("watch", help="Tail the proxy log directory")
    watch_parser.add_argument("--directory", help="Log directory (default: NPM_LOG_DIR)")
    watch_parser.set_defaults(handler=watch)

    parse_parser = subparsers.add_parser("parse", help="Parse a log file and print a summary")
    parse_parser.add_argument("file", help="Log file to parse")
    parse_parser.add_argument("--samples", type=int, default=3,
                              help="Unparsed lines to include (default: 3)")
    parse_parser.set_defaults(handler=parse_file)

    status_parser = subparsers.add_parser("check-status", help="Check every proxy host")
    status_parser.set_defaults(handler=check_status)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP ingestion API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(handler=serve)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(handler=init_db)

    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    if args.command == "parse":
        configure_logging("WARNING")
        return args.handler(args)

    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging()
        log.error("Invalid configuration: %s", e)
        return 1
    configure_logging(settings.LOG_LEVEL)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
