import asyncio
import io

import pytest
from rich.console import Console

from deckhand.cli import TerminalUI
from deckhand.permissions import ApprovalChoice, ApprovalRequest
from deckhand.session import Session, SessionSummary


def _ui(*answers: str) -> tuple[TerminalUI, io.StringIO]:
    buffer = io.StringIO()
    replies = list(answers)

    def fake_input(prompt: str) -> str:
        if not replies:
            raise EOFError("no more input")
        return replies.pop(0)

    return TerminalUI(console=Console(file=buffer, width=120), input_func=fake_input), buffer


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("fix the tests", ("MESSAGE", "fix the tests")),
        ("/mode", ("MODE", "")),
        ("/mode apply", ("MODE", "apply")),
        ("/yolo", ("YOLO", "")),
        ("/compact", ("COMPACT", "")),
        ("/sessions", ("SESSIONS", "")),
        ("/resume 123-1-0", ("RESUME", "123-1-0")),
        ("/new", ("NEW", "")),
        ("/save", ("SAVE", "")),
        ("/quit", ("EXIT", "")),
        ("/EXIT", ("EXIT", "")),
    ],
)
def test_special_commands(line, expected):
    ui, _ = _ui()
    assert ui.handle_special_command(line) == expected


def test_help_unknown_and_incomplete_commands_print_instead():
    ui, buffer = _ui()
    assert ui.handle_special_command("/help") is None
    assert "/compact" in buffer.getvalue()
    assert ui.handle_special_command("/teleport") is None
    assert "Unknown command" in buffer.getvalue()
    assert ui.handle_special_command("/resume") is None
    assert "Usage: /resume" in buffer.getvalue()


@pytest.mark.asyncio
async def test_approve_maps_answers():
    request = ApprovalRequest(
        "web_fetch",
        {"url": "https://docs.example.com/a"},
        "https://docs.example.com/a",
        "no web_fetch rule matched; default is ask",
        grant_pattern="https://docs.example.com/*",
    )
    ui, buffer = _ui("y", "d", "n", "maybe")
    assert await ui.approve(request) is ApprovalChoice.APPROVE_ONCE
    assert await ui.approve(request) is ApprovalChoice.APPROVE_DOMAIN
    assert await ui.approve(request) is ApprovalChoice.DENY_ONCE
    assert await ui.approve(request) is ApprovalChoice.DENY_ONCE
    assert "https://docs.example.com/*" in buffer.getvalue()


@pytest.mark.asyncio
async def test_domain_answer_is_refused_when_not_offered():
    request = ApprovalRequest("bash", {"command": "make"}, "make", "default")
    ui, _ = _ui("d")
    assert await ui.approve(request) is ApprovalChoice.DENY_ONCE


@pytest.mark.asyncio
async def test_ask_questions_accepts_numbers_or_free_text():
    questions = [
        {"question": "Which database?", "header": "DB", "options": [{"label": "SQLite"}, {"label": "Postgres"}]},
        {
            "question": "Which extras?",
            "options": [{"label": "cli"}, {"label": "docs"}, {"label": "web"}],
            "multiSelect": True,
        },
        {"question": "Name?", "options": [{"label": "a"}, {"label": "b"}]},
    ]
    ui, _ = _ui("2", "1, 3", "something else")
    answers = await ui.ask_questions(questions)
    assert answers == {
        "Which database?": "Postgres",
        "Which extras?": "cli, web",
        "Name?": "something else",
    }


@pytest.mark.asyncio
async def test_read_line_raises_eof():
    ui, _ = _ui()
    with pytest.raises(EOFError):
        await ui.read_line()


@pytest.mark.asyncio
async def test_abandoned_read_is_reused():
    ui, _ = _ui("first")
    prompt = asyncio.create_task(ui.read_line())
    await asyncio.sleep(0)
    prompt.cancel()
    with pytest.raises(asyncio.CancelledError):
        await prompt
    assert await asyncio.wait_for(ui.read_line(), timeout=5) == "first"


def test_print_sessions_table():
    ui, buffer = _ui()
    ui.print_sessions([])
    assert "No saved sessions" in buffer.getvalue()
    session = Session(id="abc", title="Fix the parser")
    ui.print_sessions([SessionSummary.of(session)])
    assert "abc" in buffer.getvalue()
    assert "Fix the parser" in buffer.getvalue()
