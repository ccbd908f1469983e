from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from claude_app_server.errors import TurnExecutionError
from claude_app_server.events import parse_event
from claude_app_server.models import StoredItem, Thread, Turn
from claude_app_server.runner import TurnRunner, TurnTranslator, build_agent_args
from claude_app_server.store import ThreadStore

from support import make_conn


def _assistant(message_id: str, content: list[dict[str, Any]], *, partial: bool) -> str:
    return json.dumps(
        {"type": "assistant", "is_partial": partial, "message": {"id": message_id, "content": content}}
    )


def _translator() -> tuple[TurnTranslator, Thread, Turn, Any]:
    thread = Thread(cwd="/tmp")
    turn = Turn(thread_id=thread.id, user_content="hi")
    thread.turns.append(turn)
    thread.active_turn_id = turn.id
    conn, recorder = make_conn()
    return TurnTranslator(thread, turn, conn), thread, turn, recorder


def _apply(translator: TurnTranslator, *lines: str) -> None:
    for line in lines:
        event = parse_event(line)
        assert event is not None
        translator.apply(event)


def test_build_args_new_thread_uses_own_session_id() -> None:
    thread = Thread(cwd="/tmp", permission_mode="default")
    args = build_agent_args(thread)
    assert args[:7] == [
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--permission-mode",
        "default",
    ]
    assert args[-2:] == ["--session-id", thread.id]
    assert "--resume" not in args
    assert "--model" not in args


def test_build_args_resumes_captured_session_and_passes_model() -> None:
    thread = Thread(cwd="/tmp", permission_mode="acceptEdits", cli_session_id="sess-1")
    args = build_agent_args(thread, "claude-haiku-4-5")
    assert args[args.index("--permission-mode") + 1] == "acceptEdits"
    assert args[args.index("--model") + 1] == "claude-haiku-4-5"
    assert args[-2:] == ["--resume", "sess-1"]
    assert "--session-id" not in args
    assert "--fork-session" not in args


def test_build_args_fork_precedence() -> None:
    thread = Thread(cwd="/tmp", fork_from="origin-session")
    assert build_agent_args(thread)[-3:] == ["--resume", "origin-session", "--fork-session"]

    thread.cli_session_id = "own-session"
    args = build_agent_args(thread)
    assert args[-2:] == ["--resume", "own-session"]
    assert "--fork-session" not in args


@pytest.mark.parametrize(
    "partials",
    [
        [],
        ["H"],
        ["He", "Hel", "Hello"],
        ["Hello", "Hello", "Hel", "Hello w"],
        ["Hello world"],
    ],
)
def test_text_deltas_concatenate_to_final_text(partials: list[str]) -> None:
    translator, _, turn, recorder = _translator()
    for text in partials:
        _apply(translator, _assistant("m1", [{"type": "text", "text": text}], partial=True))
    _apply(translator, _assistant("m1", [{"type": "text", "text": "Hello world"}], partial=False))

    deltas = [p["delta"]["text"] for p in recorder.notifications("item/progress")]
    assert "".join(deltas) == "Hello world"
    assert all(deltas)
    assert [stored.item.type for stored in turn.items] == ["text"]
    assert turn.items[0].item.text == "Hello world"


def test_each_message_tracks_its_own_prefix() -> None:
    translator, _, turn, recorder = _translator()
    final = _assistant("m1", [{"type": "text", "text": "abc"}], partial=False)
    _apply(translator, final, _assistant("m2", [{"type": "text", "text": "xyz"}], partial=True))
    deltas = [p["delta"]["text"] for p in recorder.notifications("item/progress")]
    assert deltas == ["abc", "xyz"]
    assert len(turn.items) == 1


def test_thinking_and_tool_use_only_on_final_events() -> None:
    translator, _, turn, recorder = _translator()
    content = [
        {"type": "thinking", "thinking": "pondering"},
        {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
    ]
    _apply(translator, _assistant("m1", content, partial=True))
    assert turn.items == []
    assert recorder.sent == []

    _apply(translator, _assistant("m1", content, partial=False))
    progress = recorder.notifications("item/progress")
    assert progress[0]["delta"] == {"type": "thinking", "thinking": "pondering"}
    assert [stored.item.type for stored in turn.items] == ["thinking", "tool_call"]
    tool_call = turn.items[1].item
    assert tool_call.tool_use_id == "toolu_1"
    assert tool_call.name == "Bash"
    assert tool_call.input == {"command": "ls"}


def test_tool_results_are_normalised() -> None:
    translator, _, turn, _ = _translator()
    line = json.dumps(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": "plain output"},
                    {
                        "type": "tool_result",
                        "tool_use_id": "t2",
                        "content": [{"type": "text", "text": "part 1, "}, {"type": "text", "text": "part 2"}],
                        "is_error": True,
                    },
                ]
            },
        }
    )
    _apply(translator, line)
    results = [stored.item for stored in turn.items]
    assert [(r.tool_use_id, r.content, r.is_error) for r in results] == [
        ("t1", "plain output", False),
        ("t2", "part 1, part 2", True),
    ]


def test_item_created_replay_matches_stored_items() -> None:
    translator, thread, turn, recorder = _translator()
    _apply(
        translator,
        _assistant("m1", [{"type": "text", "text": "Hi"}], partial=True),
        _assistant(
            "m1",
            [
                {"type": "thinking", "thinking": "t"},
                {"type": "text", "text": "Hi there"},
                {"type": "tool_use", "id": "u1", "name": "Read", "input": {}},
            ],
            partial=False,
        ),
        json.dumps(
            {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "u1", "content": "x"}]}}
        ),
    )
    created = recorder.notifications("item/created")
    assert all(p["turn_id"] == turn.id and p["thread_id"] == thread.id for p in created)
    replayed = [StoredItem.model_validate(p["item"]) for p in created]
    assert replayed == turn.items
    assert len({stored.id for stored in turn.items}) == 4


def test_session_ids_and_result_events() -> None:
    translator, thread, turn, recorder = _translator()
    _apply(translator, '{"type":"system","subtype":"init","session_id":"s-1"}')
    assert thread.cli_session_id == "s-1"

    denials = [{"tool_name": "Write", "tool_use_id": "u9"}]
    _apply(
        translator,
        json.dumps(
            {
                "type": "result",
                "subtype": "error_during_execution",
                "session_id": "s-2",
                "permission_denials": denials,
            }
        ),
    )
    assert thread.cli_session_id == "s-2"
    assert turn.error == "error_during_execution"
    assert recorder.notifications("turn/permission_denied") == [
        {"turn_id": turn.id, "thread_id": thread.id, "denials": denials}
    ]


def test_cancelled_turn_emits_nothing_but_keeps_session() -> None:
    translator, thread, turn, recorder = _translator()
    turn.interrupt()
    _apply(
        translator,
        _assistant("m1", [{"type": "text", "text": "late"}], partial=False),
        '{"type":"result","subtype":"success","session_id":"s-9","permission_denials":[{"tool_name":"Bash"}]}',
    )
    assert recorder.sent == []
    assert turn.items == []
    assert thread.cli_session_id == "s-9"


def test_runner_requires_command_and_strips_nested_agent_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with pytest.raises(ValueError):
        TurnRunner(ThreadStore(), [])

    monkeypatch.setenv("CLAUDECODE", "1")
    monkeypatch.setenv("KEEP_ME", "yes")
    runner = TurnRunner(ThreadStore(), ["claude"], env={"EXTRA": "1"})
    env = runner._child_env()
    assert "CLAUDECODE" not in env
    assert env["KEEP_ME"] == "yes"
    assert env["EXTRA"] == "1"


class _ProcessWithoutStdout:
    stdin = None
    stdout = None
    stderr = None
    returncode = None

    async def wait(self) -> int:
        return 0

    def terminate(self) -> None:
        self.returncode = -15


def test_missing_stdout_pipe_is_a_turn_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_spawn(*args: Any, **kwargs: Any) -> _ProcessWithoutStdout:
        return _ProcessWithoutStdout()

    monkeypatch.setattr("claude_app_server.runner.asyncio.create_subprocess_exec", fake_spawn)
    store = ThreadStore()
    thread = store.create_thread("/tmp")
    turn = store.begin_turn(thread, "hi")
    conn, recorder = make_conn()

    with pytest.raises(TurnExecutionError, match="stdout"):
        asyncio.run(TurnRunner(store, ["claude"]).run(thread, turn, conn))
    assert turn.process is None
    assert recorder.sent == []
