import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import uvicorn

import rio_bench.constants as C
from rio_bench.config import load_config
from rio_bench.driver import run_benchmark
from rio_bench.logging_config import setup_logging

log = logging.getLogger("rio_bench.cli")


def non_negative_int(value: str) -> int:
    n = int(value)
    if n < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {n}")
    return n


def positive_int(value: str) -> int:
    n = int(value)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {n}")
    return n


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="rio-bench", description="Transaction throughput benchmark for Rio chain nodes.")
    parser.add_argument("-c", "--config",
                        type=Path,
                        help="TOML file merged over the packaged defaults.",
                        )
    parser.add_argument("--log-level",
                        help="Log level for rio_bench loggers (default: $LOG_LEVEL or INFO).",
                        )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one benchmark and print its report.")
    run.add_argument("-s", "--scenario",
                     choices=[s.value for s in C.Scenario],
                     help="Which benchmark to run.",
                     )
    run.add_argument("-n", "--total",
                     type=non_negative_int,
                     help="Number of test accounts.",
                     )
    run.add_argument("-b", "--per-loop",
                     type=positive_int,
                     help="Accounts per batch.",
                     )
    run.add_argument("-t", "--timeout",
                     type=float,
                     help="Seconds each completion watcher waits (0 waits forever).",
                     )
    run.add_argument("-m", "--max-in-flight",
                     type=non_negative_int,
                     help="Upper bound on open completion watchers.",
                     )
    run.add_argument("--ws-url",
                     help="Node WebSocket endpoint.",
                     )
    run.add_argument("--no-probe",
                     action="store_true",
                     help="Skip the system_health probe before connecting.",
                     )
    run.add_argument("-o", "--report",
                     type=Path,
                     help="Also write the JSON report to this file.",
                     )

    serve = sub.add_parser("serve", help="Start the HTTP control service.")
    serve.add_argument("--host",
                       help="Bind address.",
                       )
    serve.add_argument("--port",
                       type=int,
                       help="Bind port.",
                       )
    return parser.parse_args(argv)


def overrides(a) -> dict:
    o: dict = {}
    if getattr(a, "scenario", None) is not None:
        o["scenario"] = a.scenario
    accounts = {}
    if getattr(a, "total", None) is not None:
        accounts["total"] = a.total
    if getattr(a, "per_loop", None) is not None:
        accounts["per_loop"] = a.per_loop
    if accounts:
        o["accounts"] = accounts
    bench = {}
    if getattr(a, "timeout", None) is not None:
        bench["watch_timeout"] = a.timeout
    if getattr(a, "max_in_flight", None) is not None:
        bench["max_in_flight"] = a.max_in_flight
    if bench:
        o["bench"] = bench
    node = {}
    if getattr(a, "ws_url", None) is not None:
        node["ws_url"] = a.ws_url
    if getattr(a, "no_probe", False):
        node["probe"] = False
    if node:
        o["node"] = node
    service = {}
    if getattr(a, "host", None) is not None:
        service["host"] = a.host
    if getattr(a, "port", None) is not None:
        service["port"] = a.port
    if service:
        o["service"] = service
    return o


def run(conf: dict, report_file: Path | None = None) -> int:
    try:
        report = asyncio.run(run_benchmark(conf))
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130

    payload = json.dumps(report.to_dict(), indent=2)
    print(payload)
    if report_file is not None:
        report_file.write_text(payload)
    return report.exit_code


def main(argv=None) -> int:
    args = parse_args(argv)
    conf = load_config(args.config, overrides(args))

    if args.command == "serve":
        # importing the app applies the default logging setup
        from rio_bench.app import app
        setup_logging(args.log_level)
        app.state.config = conf
        service = conf["service"]
        uvicorn.run(app, host=service["host"], port=service["port"], lifespan="on", log_config=None)
        return 0

    setup_logging(args.log_level)
    return run(conf, args.report)


if __name__ == "__main__":
    sys.exit(main())
