import pytest

from scry.scry_datatypes import InstrumentationError
from scry.scry_executor import (
    PRAGMA, AssembledBody, assemble_body, build_callable, render_helpers, unhandled_event,
)
from scry.scry_rewriter import Rewriter


def prepare(text, console_name="console"):
    res = Rewriter(console_name).rewrite(text)
    return build_callable(assemble_body(res.instrumented_text, res.helpers_required), console_name)


def test_helpers_render_with_engine_names():
    text = render_helpers()
    assert "def __scry_accumulate__(level, line, args):" in text
    assert "def __scry_report__(value, line, report, flush):" in text
    assert "{{" not in text


def test_assembled_body_offsets():
    plain = assemble_body("x = 1\n", helpers_required=False)
    assert plain.text == PRAGMA + "\nx = 1\n"
    assert plain.helper_line_offset == 1

    helped = assemble_body("x = 1\n", helpers_required=True)
    assert helped.text.startswith(PRAGMA + "\n")
    assert helped.text.splitlines()[helped.helper_line_offset] == "x = 1"


@pytest.mark.asyncio
async def test_results_and_logs_are_reported_in_order():
    events = []
    execute = prepare("console.log('a')\n1 + 1\nconsole.log('b')\n")
    await execute(events.append)
    assert events == [
        {'kind': 'log', 'level': 'log', 'line': None, 'data': [['a']]},
        {'kind': 'result', 'line': None, 'data': 2},
        {'kind': 'log', 'level': 'log', 'line': None, 'data': [['b']]},
    ]


@pytest.mark.asyncio
async def test_console_object_catches_unrewritten_calls():
    events = []
    execute = build_callable(assemble_body("getattr(console, 'warn')('b', 2)\n", helpers_required=False))
    await execute(events.append)
    assert events == [{'kind': 'log', 'level': 'warn', 'line': None, 'data': [['b', 2]]}]


@pytest.mark.asyncio
async def test_top_level_await():
    events = []
    execute = prepare("import asyncio\nawait asyncio.sleep(0)\n7\n")
    await execute(events.append)
    assert [e['data'] for e in events if e['kind'] == 'result'] == [None, 7]


@pytest.mark.asyncio
async def test_pending_logs_flush_when_execution_raises():
    events = []
    execute = prepare("console.error('before')\nraise ValueError('x')\n")
    with pytest.raises(ValueError):
        await execute(events.append)
    assert events == [{'kind': 'log', 'level': 'error', 'line': None, 'data': [['before']]}]


@pytest.mark.asyncio
async def test_each_execution_gets_a_fresh_namespace():
    execute = prepare("try:\n    n\nexcept NameError:\n    n = 0\nn = n + 1\nn\n")
    first, second = [], []
    await execute(first.append)
    await execute(second.append)
    assert first == second == [{'kind': 'result', 'line': None, 'data': 1}]


@pytest.mark.asyncio
async def test_dataclasses_work_under_the_pragma():
    events = []
    execute = prepare(
        "from dataclasses import dataclass\n"
        "@dataclass\n"
        "class P:\n"
        "    x: int\n"
        "    y: int = 0\n"
        "P(3).x + P(1, 2).y\n"
    )
    await execute(events.append)
    assert events[-1]['data'] == 5


def test_uncompilable_body_raises():
    with pytest.raises(InstrumentationError):
        build_callable(AssembledBody("x = (", 0))


def test_unhandled_event():
    event = unhandled_event({'exception': ValueError('late'), 'message': 'Task exception was never retrieved'})
    assert event.is_error
    assert event.data == [["Unhandled exception in task:", "ValueError: late"]]
    assert unhandled_event({'message': 'oops'}).data == [["Unhandled exception in task:", "oops"]]
