from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Sequence

from ._types import AnomalyEvent
from .config import load_config
from .controller import Controller
from .errors import BadfdError, ConfigError, PrerequisiteError
from .output import EventPrinter, EventSerializer
from .strace_source import StraceSource, ensure_prereqs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="badfd",
        description="Report file opens that fail or take too long.",
    )

    parser.add_argument(
        "--ms",
        type=int,
        default=None,
        help="Latency threshold in ms (0 = trace all, default: 10)."
    )

    parser.add_argument(
        "--err",
        action="store_true",
        default=None,
        help="Trace only errors (ignore latency)."
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output one JSON object per event."
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file with a 'badfd' section."
    )

    parser.add_argument(
        "-p", "--pid",
        type=int,
        default=None,
        help="Attach to an already running process instead of starting a command."
    )

    parser.add_argument(
        "--output-file",
        type=str,
        default=None,
        help="Also save every reported event to this JSON file."
    )

    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print hook counters (drops by cause) on exit."
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging."
    )

    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run and trace (after '--').")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger("badfd")

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if bool(command) == (args.pid is not None):
        parser.error("give either a command to run or --pid, not both")

    try:
        config = load_config(args.config, threshold_ms=args.ms, errors_only=args.err)
    except ConfigError as e:
        logger.error("%s", e)
        return 2

    try:
        ensure_prereqs(attach=args.pid is not None)
    except PrerequisiteError as e:
        logger.error("%s", e)
        return 1

    printer = EventPrinter(sys.stdout, json_mode=args.json)
    collected: List[AnomalyEvent] = []
    sinks = [printer]
    if args.output_file:
        sinks.append(collected.append)

    controller = Controller(config, sinks=sinks)
    controller.install_signal_handlers()
    source = StraceSource(controller.hooks, command=command or None, pid=args.pid)

    if not args.json:
        target = f"PID {args.pid}" if args.pid is not None else " ".join(command)
        logger.info("badfd: watching %s...", target)
    printer.header()

    try:
        stats = controller.run(source)
    except (BadfdError, OSError) as e:
        logger.error("Tracing failed: %r", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        return 1

    if args.output_file:
        EventSerializer.dump(collected, args.output_file)
        logger.info("Events saved to %s", args.output_file)

    if args.stats:
        for key, value in stats.to_dict().items():
            print(f"  - {key}: {value}", file=sys.stderr)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
