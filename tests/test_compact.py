"""Tests for history compaction."""

import io
import json
import types

import pytest
from rich.console import Console

from gpt5cli import agent, fmt
from gpt5cli.errors import AgentError, InvalidHistoryIndex
from gpt5cli.history import HistoryEntry, HistoryStore, HistoryTurn


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


def _logger():
    return fmt.Logger(Console(file=io.StringIO(), no_color=True, width=200))


def _summary_response(text):
    return types.SimpleNamespace(
        id="resp_sum",
        status="completed",
        output=[
            types.SimpleNamespace(
                type="message",
                content=[types.SimpleNamespace(type="output_text", text=text)],
            )
        ],
    )


def _store(tmp_path, turns, **kw):
    log = _logger()
    store = HistoryStore(tmp_path / "history.json", log=log)
    store.save_entries(
        [
            HistoryEntry(
                title="chat",
                model=kw.get("model", "gpt-5-mini"),
                updated_at="2024-01-01T00:00:00.000Z",
                first_response_id="resp_1",
                last_response_id="resp_2",
                request_count=2,
                turns=turns,
            )
        ]
    )
    return store, log


def _turns():
    return [
        HistoryTurn(role="user", text="What is D2?", at="t1"),
        HistoryTurn(role="assistant", text="A diagram language.", at="t1"),
        HistoryTurn(role="user", text="  ", at="t2"),
        HistoryTurn(role="assistant", text="Anything else?", at="t2"),
    ]


class TestFormatTurns:
    def test_blank_turns_are_skipped(self):
        text = agent.format_turns_for_summary(_turns())
        assert text == (
            "user:\nWhat is D2?\n\n---\n\n"
            "assistant:\nA diagram language.\n\n---\n\n"
            "assistant:\nAnything else?"
        )

    def test_summary_turn_is_labelled(self):
        turns = [HistoryTurn(role="system", kind="summary", text="old gist")]
        assert agent.format_turns_for_summary(turns) == "summary:\nold gist"


class TestPerformCompact:
    def test_replaces_turns_and_sets_resume(self, tmp_path, monkeypatch):
        store, log = _store(tmp_path, _turns())
        requests = []

        def fake_call_llm(request):
            requests.append(request)
            return _summary_response("- D2 is a diagram language")

        monkeypatch.setattr(agent, "call_llm", fake_call_llm)
        out = io.StringIO()
        agent.perform_compact(store, 1, log=log, out=out)

        assert out.getvalue() == "- D2 is a diagram language\n"
        [request] = requests
        assert request["model"] == "gpt-5-mini"
        assert "What is D2?" in request["input"][1]["content"][0]["text"]

        [entry] = store.load_entries()
        assert len(entry.turns) == 1
        assert entry.turns[0].role == "system"
        assert entry.turns[0].kind == "summary"
        assert entry.turns[0].text == "- D2 is a diagram language"
        assert entry.resume.mode == "new_request"
        assert entry.resume.previous_response_id == ""
        assert entry.resume.summary.text == "- D2 is a diagram language"
        assert entry.last_response_id == "resp_2"
        assert entry.request_count == 2

    def test_explicit_model_wins(self, tmp_path, monkeypatch):
        store, log = _store(tmp_path, _turns())
        seen = []
        monkeypatch.setattr(
            agent,
            "call_llm",
            lambda request: seen.append(request["model"]) or _summary_response("gist"),
        )
        agent.perform_compact(store, 1, model="gpt-5", log=log, out=io.StringIO())
        assert seen == ["gpt-5"]

    def test_no_turns(self, tmp_path):
        store, log = _store(tmp_path, [])
        with pytest.raises(AgentError, match="no messages to summarize"):
            agent.perform_compact(store, 1, log=log)

    def test_only_blank_turns(self, tmp_path):
        store, log = _store(tmp_path, [HistoryTurn(role="user", text="   ")])
        with pytest.raises(AgentError, match="no messages to summarize"):
            agent.perform_compact(store, 1, log=log)

    def test_empty_summary_leaves_entry_untouched(self, tmp_path, monkeypatch):
        store, log = _store(tmp_path, _turns())
        before = json.loads((tmp_path / "history.json").read_text())
        monkeypatch.setattr(agent, "call_llm", lambda request: _summary_response("  "))
        with pytest.raises(AgentError, match="empty summary"):
            agent.perform_compact(store, 1, log=log, out=io.StringIO())
        assert json.loads((tmp_path / "history.json").read_text()) == before

    def test_invalid_index(self, tmp_path):
        store, log = _store(tmp_path, _turns())
        with pytest.raises(InvalidHistoryIndex):
            agent.perform_compact(store, 5, log=log)
