"""
Entry point of the isolated worker process (`python -m scry.scry_worker`).

Reads one JSON request `{"source": ..., "config": {...}}` from stdin and
answers with JSON lines on a private copy of stdout:

    {"type": "started"}                  user code is about to run
    {"type": "unhandled", "event": {..}} a detached failure, any time
    {"type": "events", "events": [..]}   the final trace

The real stdout is pointed at stderr first, so `print` in user code cannot
corrupt the protocol.
"""

import asyncio
import gc
import json
import logging
import os
import sys
from typing import Any, Dict, TextIO

from scry.scry_config import ScryConfig
from scry.scry_executor import unhandled_event
from scry.scry_runtime import ScriptRunner

logger = logging.getLogger(__name__)


class Channel:
    def __init__(self, stream: TextIO):
        self._stream = stream

    def send(self, message: Dict[str, Any]) -> None:
        self._stream.write(json.dumps(message) + "\n")
        self._stream.flush()


def open_channel() -> Channel:
    fd = os.dup(sys.stdout.fileno())
    sys.stdout.flush()
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    return Channel(os.fdopen(fd, "w", encoding="utf-8"))


async def serve(source: str, config: ScryConfig, channel: Channel) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(
        lambda _loop, context: channel.send({'type': 'unhandled', 'event': unhandled_event(context).to_dict()})
    )

    runner = ScriptRunner(config=config, on_start=lambda: channel.send({'type': 'started'}))
    events = await runner.handle_script(source)
    channel.send({'type': 'events', 'events': [e.to_dict() for e in events]})

    # Give detached tasks a moment to fail so their errors can still be reported.
    current = asyncio.current_task()
    pending = [t for t in asyncio.all_tasks() if t is not current]
    if pending and config.drain_grace_ms:
        await asyncio.wait(pending, timeout=config.drain_grace_ms / 1000)
    del pending
    gc.collect()


def main() -> int:
    request = json.loads(sys.stdin.read() or "{}")
    config = ScryConfig.from_mapping(request.get('config'))
    channel = open_channel()
    asyncio.run(serve(request.get('source', ''), config, channel))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
