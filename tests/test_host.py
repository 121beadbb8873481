import asyncio

import pytest

from scry.scry_config import ScryConfig
from scry.scry_datatypes import EventKind, LogLevel, TraceEvent
from scry.scry_host import ExecutionHost


@pytest.mark.asyncio
async def test_run_in_worker():
    host = ExecutionHost()
    try:
        events = await host.run("1 + 1\nconsole.log('hi')\n")
    finally:
        await host.aclose()
    assert events == (TraceEvent.result(2, 1), TraceEvent.log([['hi']], 2))


@pytest.mark.asyncio
async def test_print_does_not_corrupt_the_channel():
    host = ExecutionHost()
    try:
        events = await host.run("print('noise')\nprint('{\"type\": \"events\"}')\n3\n")
    finally:
        await host.aclose()
    assert events[-1] == TraceEvent.result(3, 3)


@pytest.mark.asyncio
async def test_infinite_loop_times_out():
    host = ExecutionHost()
    try:
        events = await host.run("while True:\n    pass\n", timeout_ms=1000)
    finally:
        await host.aclose()
    assert len(events) == 1
    assert events[0].is_error
    assert events[0].data == [["Execution timed out after 1000ms"]]


@pytest.mark.asyncio
async def test_timeout_must_be_positive():
    host = ExecutionHost()
    with pytest.raises(ValueError):
        await host.run("1", timeout_ms=0)
    with pytest.raises(ValueError):
        await host.run("1", timeout_ms=-5)


@pytest.mark.asyncio
async def test_runs_are_isolated():
    host = ExecutionHost()
    try:
        await host.run("x = 1\n")
        events = await host.run("x\n")
    finally:
        await host.aclose()
    assert events[0].is_error
    assert "NameError" in events[0].data[0][0]


@pytest.mark.asyncio
async def test_newer_run_supersedes_older():
    host = ExecutionHost()
    try:
        first = asyncio.ensure_future(host.run("while True:\n    pass\n", timeout_ms=5000))
        await asyncio.sleep(0.2)
        second = await host.run("'second'\n")
        assert await first is None
    finally:
        await host.aclose()
    assert second == (TraceEvent.result('second', 1),)


@pytest.mark.asyncio
async def test_cancel_disposes_current_run():
    host = ExecutionHost()
    try:
        pending = asyncio.ensure_future(host.run("while True:\n    pass\n", timeout_ms=5000))
        await asyncio.sleep(0.2)
        assert host.busy
        host.cancel()
        assert await pending is None
        assert not host.busy
    finally:
        await host.aclose()


@pytest.mark.asyncio
async def test_worker_exit_is_reported():
    host = ExecutionHost()
    try:
        events = await host.run("import os\nos._exit(3)\n")
    finally:
        await host.aclose()
    assert events == (TraceEvent.error("Execution process exited unexpectedly (exit code 3)"),)


@pytest.mark.asyncio
async def test_unhandled_task_failure_is_reported_separately():
    seen = []
    arrived = asyncio.Event()

    def on_unhandled(event):
        seen.append(event)
        arrived.set()

    source = (
        "import asyncio\n"
        "async def boom():\n"
        "    raise ValueError('late')\n"
        "asyncio.get_running_loop().create_task(boom())\n"
        "None\n"
    )
    host = ExecutionHost(on_unhandled=on_unhandled)
    try:
        events = await host.run(source)
        await asyncio.wait_for(arrived.wait(), timeout=10)
    finally:
        await host.aclose()
    assert all(not e.is_error for e in events)
    assert seen[0].kind is EventKind.LOG
    assert seen[0].level is LogLevel.ERROR
    assert seen[0].data == [["Unhandled exception in task:", "ValueError: late"]]


@pytest.mark.asyncio
async def test_submit_debounces():
    delivered = []
    done = asyncio.Event()

    def callback(events):
        delivered.append(events)
        done.set()

    host = ExecutionHost()
    try:
        host.submit("'first'\n", callback, delay_ms=200)
        host.submit("'second'\n", callback, delay_ms=200)
        await asyncio.wait_for(done.wait(), timeout=15)
        await asyncio.sleep(0.3)
    finally:
        await host.aclose()
    assert delivered == [(TraceEvent.result('second', 1),)]


@pytest.mark.asyncio
async def test_disposed_submission_never_calls_back():
    delivered = []
    host = ExecutionHost()
    try:
        dispose = host.submit("1\n", delivered.append, delay_ms=100)
        dispose()
        await asyncio.sleep(0.3)
    finally:
        await host.aclose()
    assert delivered == []


@pytest.mark.asyncio
async def test_worker_uses_configured_limits():
    host = ExecutionHost(ScryConfig(max_object_keys=1))
    try:
        events = await host.run("{'a': 1, 'b': 2}\n")
    finally:
        await host.aclose()
    assert events[0].data == {'a': 1, '...': '1 more keys'}


SPINNING_TASK = (
    "import asyncio\n"
    "async def spin():\n"
    "    while True:\n"
    "        pass\n"
    "asyncio.get_running_loop().create_task(spin())\n"
    "1\n"
)


@pytest.fixture
def spawned(monkeypatch):
    """Records every worker process the host starts."""
    processes = []
    create = asyncio.create_subprocess_exec

    async def recording_create(*args, **kwargs):
        process = await create(*args, **kwargs)
        processes.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_create)
    return processes


@pytest.mark.asyncio
async def test_aclose_kills_workers_left_running(spawned):
    host = ExecutionHost()
    events = await host.run(SPINNING_TASK)
    assert events[-1] == TraceEvent.result(1, 6)
    await host.aclose()
    assert spawned
    assert all(p.returncode is not None for p in spawned)


@pytest.mark.asyncio
async def test_next_run_kills_previous_worker(spawned):
    host = ExecutionHost()
    try:
        await host.run(SPINNING_TASK)
        events = await host.run("2\n")
        assert events == (TraceEvent.result(2, 1),)
        await asyncio.wait_for(spawned[0].wait(), timeout=5)
    finally:
        await host.aclose()


@pytest.mark.asyncio
async def test_finished_worker_is_killed_after_drain_grace(spawned):
    host = ExecutionHost(ScryConfig(drain_grace_ms=0))
    try:
        await host.run(SPINNING_TASK)
        # The worker never exits by itself; only the host can end it.
        await asyncio.wait_for(spawned[0].wait(), timeout=5)
    finally:
        await host.aclose()


@pytest.mark.asyncio
async def test_oversize_result_is_reported_not_timed_out():
    host = ExecutionHost()
    try:
        events = await host.run("'x' * 20_000_000\n", timeout_ms=5000)
    finally:
        await host.aclose()
    assert events == (TraceEvent.error("Execution result too large to transfer"),)


@pytest.mark.asyncio
async def test_keyboard_interrupt_in_script_is_an_ordinary_error():
    host = ExecutionHost()
    try:
        events = await host.run("console.log('before')\n1\nraise KeyboardInterrupt('k')\n")
    finally:
        await host.aclose()
    assert events[0] == TraceEvent.log([['before']], 1)
    assert events[1] == TraceEvent.result(1, 2)
    assert events[2].is_error
    assert events[2].line == 3
    assert events[2].data == [["KeyboardInterrupt: k (at line 3)"]]
