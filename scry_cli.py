import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from scry.scry_config import load_config
from scry.scry_host import ExecutionHost
from scry.scry_printer import EventPrinter

logger = logging.getLogger("scry")

WATCH_INTERVAL = 0.25
WATCH_DEBOUNCE_MS = 300


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scry", description="Run a script and show what each line evaluates to.")
    parser.add_argument("file", nargs="?", help="script to run; reads stdin when omitted")
    parser.add_argument("--timeout", type=int, metavar="MS", help="execution time limit in milliseconds")
    parser.add_argument("--json", action="store_true", help="print events as JSON lines")
    parser.add_argument("--watch", action="store_true", help="re-run the file whenever it changes")
    parser.add_argument("--config", metavar="PATH", help="YAML configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def print_events(events, as_json: bool = False) -> bool:
    """Print a trace. Returns True when it contains an error event."""
    printer = EventPrinter()
    for event in events:
        if as_json:
            print(json.dumps(event.to_dict(), ensure_ascii=False))
        else:
            print(printer.pformat(event))
    sys.stdout.flush()
    return any(event.is_error for event in events)


async def run_script_file(host: ExecutionHost, file_path: str, timeout_ms=None, as_json: bool = False) -> int:
    """Run a script file once and return the exit status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    events = await host.run(source, timeout_ms)
    return 1 if print_events(events or (), as_json) else 0


async def watch_script_file(host: ExecutionHost, file_path: str, timeout_ms=None, as_json: bool = False) -> None:
    p = Path(file_path)
    last_mtime = None

    def show(events):
        print(f"--- {p.name}")
        print_events(events, as_json)

    while True:
        try:
            mtime = p.stat().st_mtime_ns
        except FileNotFoundError:
            mtime = None
        if mtime is not None and mtime != last_mtime:
            last_mtime = mtime
            logger.debug("%s changed, re-running", p)
            host.submit(p.read_text(encoding="utf-8"), show, timeout_ms=timeout_ms, delay_ms=WATCH_DEBOUNCE_MS)
        await asyncio.sleep(WATCH_INTERVAL)


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 2
    if args.timeout is not None and args.timeout <= 0:
        print("Error: --timeout must be a positive number of milliseconds", file=sys.stderr)
        return 2

    host = ExecutionHost(config, on_unhandled=lambda event: print_events((event,), args.json))
    try:
        if args.file is None:
            if args.watch:
                print("Error: --watch needs a FILE", file=sys.stderr)
                return 2
            events = await host.run(sys.stdin.read(), args.timeout)
            return 1 if print_events(events or (), args.json) else 0
        if args.watch:
            await watch_script_file(host, args.file, args.timeout, args.json)
            return 0
        return await run_script_file(host, args.file, args.timeout, args.json)
    finally:
        await host.aclose()


def cli():
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nExiting.")
        raise SystemExit(130)


if __name__ == "__main__":
    cli()
