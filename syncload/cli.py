#!/usr/bin/env python3
"""Command-line entry point: load config, run the scheduler, report status."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from .config import (
    RunConfig,
    discover_config,
    load_json_config,
    parse_duration,
    parse_run_config,
)
from .errors import ConfigError
from .payload import PayloadMode
from .scheduler import Scheduler, log_summary


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WebSocket sync-service load generator")
    parser.add_argument("--config", type=Path, help="Path to JSON configuration")
    parser.add_argument("--url", help="Override target URL")
    parser.add_argument("--vus", type=int, help="Override number of virtual users")
    parser.add_argument("--duration", help="Override run duration (e.g. 60s)")
    parser.add_argument("--iterations", type=int, help="Override shared iteration count")
    parser.add_argument("--mode", choices=[m.value for m in PayloadMode], help="Override payload mode")
    parser.add_argument("--log-level", help="Override log level")
    parser.add_argument("--ca", help="CA bundle for TLS")
    parser.add_argument("--no-verify", dest="no_verify", action="store_true", help="Disable TLS validation")
    parser.add_argument("--summary-export", dest="summary_export", type=Path,
                        help="Write the final summary as JSON to this path")
    return parser


def apply_overrides(config: RunConfig, args: argparse.Namespace) -> RunConfig:
    load = config.load
    session = config.session
    target = session.target
    if args.url:
        target = replace(target, url=args.url)
    if args.ca:
        target = replace(target, tls=replace(target.tls, ca_file=args.ca))
    if args.no_verify:
        target = replace(target, tls=replace(target.tls, verify=False))
    if args.vus is not None:
        if args.vus <= 0:
            raise ConfigError("--vus must be positive")
        load = replace(load, vus=args.vus)
    if args.duration is not None:
        load = replace(load, duration_ms=parse_duration(args.duration))
    if args.iterations is not None:
        load = replace(load, iterations=args.iterations)
    if args.log_level:
        load = replace(load, log_level=args.log_level)
    if args.mode:
        session = replace(session, mode=PayloadMode(args.mode))
    return RunConfig(load=load, session=replace(session, target=target))


async def async_main(config: RunConfig, summary_path: Optional[Path]) -> int:
    summary = await Scheduler(config).run()
    log_summary(summary)
    data = summary.as_dict()
    if summary_path is not None:
        summary_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logging.info("summary written to %s", summary_path)
    else:
        print(json.dumps(data, indent=2))
    return 0 if summary.passed else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config_path = discover_config(args.config)
        data = load_json_config(config_path) if config_path else {}
        config = apply_overrides(parse_run_config(data), args)
    except (FileNotFoundError, ConfigError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.load.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if config_path:
        logging.info("using config file %s", config_path)
    try:
        return asyncio.run(async_main(config, args.summary_export))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("fatal: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
