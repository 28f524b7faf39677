"""Tests for the JSON-backed conversation history store."""

import io
import json

import pytest
from rich.console import Console

from gpt5cli import fmt
from gpt5cli.context import ConversationContext
from gpt5cli.errors import ConfigError, InvalidHistoryIndex
from gpt5cli.history import (
    UNTITLED,
    HistoryEntry,
    HistoryResume,
    HistoryStore,
    HistorySummary,
    HistoryTurn,
    cli_entry_filter,
    format_history_line,
    print_history_detail,
    print_history_list,
    resolve_history_path,
)


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


def _logger():
    buf = io.StringIO()
    console = Console(file=buf, no_color=True, width=200)
    return fmt.Logger(console), buf


def _entry(title, updated_at, last_id, **kw):
    return HistoryEntry(
        title=title,
        model="gpt-5-nano",
        effort="low",
        verbosity="low",
        created_at=updated_at,
        updated_at=updated_at,
        first_response_id=last_id,
        last_response_id=last_id,
        request_count=1,
        **kw,
    )


def _store(tmp_path, **kw):
    log, buf = _logger()
    return HistoryStore(tmp_path / "history.json", log=log, **kw), buf


def _new_context(title="hello"):
    return ConversationContext(is_new_conversation=True, title_to_use=title)


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


class TestLoadSave:
    def test_missing_file_is_empty(self, tmp_path):
        store, _ = _store(tmp_path)
        assert store.load_entries() == []

    def test_round_trip(self, tmp_path):
        store, _ = _store(tmp_path)
        entries = [
            _entry(
                "first",
                "2024-01-01T00:00:00.000Z",
                "resp_1",
                resume=HistoryResume(
                    mode="response_id",
                    previous_response_id="resp_1",
                    summary=HistorySummary(text="sum", created_at="2024-01-01"),
                ),
                turns=[
                    HistoryTurn(role="user", text="hi", at="2024-01-01"),
                    HistoryTurn(
                        role="assistant", text="yo", at="2024-01-01", response_id="resp_1"
                    ),
                ],
                context={"cli": "d2", "relative_path": "a.d2", "custom": [1, 2]},
            ),
            _entry("second", "2024-02-01T00:00:00.000Z", "resp_2"),
        ]
        store.save_entries(entries)
        assert store.load_entries() == entries

    def test_file_is_pretty_printed_array(self, tmp_path):
        store, _ = _store(tmp_path)
        store.save_entries([_entry("t", "2024-01-01", "r1")])
        text = store.path.read_text(encoding="utf-8")
        assert text.startswith("[\n  {")
        assert isinstance(json.loads(text), list)

    def test_corrupt_file_loads_empty(self, tmp_path):
        store, buf = _store(tmp_path)
        store.path.write_text("{not json", encoding="utf-8")
        assert store.load_entries() == []
        assert "not valid JSON" in buf.getvalue()

    def test_non_array_loads_empty(self, tmp_path):
        store, _ = _store(tmp_path)
        store.path.write_text('{"a": 1}', encoding="utf-8")
        assert store.load_entries() == []

    def test_invalid_entry_is_skipped(self, tmp_path):
        store, buf = _store(tmp_path)
        store.path.write_text(
            json.dumps(
                [
                    {"title": "ok", "updated_at": "2024-01-01", "turns": []},
                    {"title": 42},
                    {"title": "bad sql", "context": {"cli": "sql", "engine": "oracle"}},
                ]
            ),
            encoding="utf-8",
        )
        entries = store.load_entries()
        assert [e.title for e in entries] == ["ok"]
        assert "skipping history entry 1" in buf.getvalue()
        assert "skipping history entry 2" in buf.getvalue()

    def test_unknown_cli_tag_is_opaque(self, tmp_path):
        store, buf = _store(tmp_path)
        context = {"cli": "image", "size": [512, 512]}
        store.path.write_text(
            json.dumps([{"title": "pic", "updated_at": "2024-01-01", "context": context}]),
            encoding="utf-8",
        )
        [entry] = store.load_entries()
        assert entry.context == context
        assert entry.cli == "image"
        assert "skipping" not in buf.getvalue()

    def test_unparseable_entries_survive_writes(self, tmp_path):
        store, _ = _store(tmp_path)
        broken = {"title": 42, "last_response_id": "r-broken"}
        other_tool = {
            "title": "from elsewhere",
            "updated_at": "2024-01-01",
            "last_response_id": "r-old",
            "context": {"cli": "image", "prompt": "cat"},
        }
        store.path.write_text(json.dumps([broken, other_tool]), encoding="utf-8")
        store.upsert_conversation(
            response_id="r-new",
            user_text="hello",
            assistant_text="OK!",
            metadata={},
            context=_new_context(),
            context_data={"cli": "ask"},
        )
        saved = json.loads(store.path.read_text(encoding="utf-8"))
        assert [e.get("last_response_id") for e in saved] == ["r-old", "r-new", "r-broken"]
        assert saved[0]["context"] == {"cli": "image", "prompt": "cat"}
        assert saved[2] == broken

    def test_delete_keeps_unparseable_entries(self, tmp_path):
        store, _ = _store(tmp_path)
        broken = {"title": "bad sql", "context": {"cli": "sql", "engine": "oracle"}}
        store.path.write_text(
            json.dumps([{"title": "a", "updated_at": "2024-01-01", "last_response_id": "r1"}, broken]),
            encoding="utf-8",
        )
        store.delete_by_number(1)
        assert json.loads(store.path.read_text(encoding="utf-8")) == [broken]

    def test_unknown_fields_are_preserved(self, tmp_path):
        store, _ = _store(tmp_path)
        raw = [
            {
                "title": "t",
                "updated_at": "2024-01-01",
                "last_response_id": "r1",
                "turns": [],
                "pinned": True,
                "context": {"cli": "ask", "note": "keep me"},
            }
        ]
        store.path.write_text(json.dumps(raw), encoding="utf-8")
        store.save_entries(store.load_entries())
        saved = json.loads(store.path.read_text(encoding="utf-8"))
        assert saved[0]["pinned"] is True
        assert saved[0]["context"]["note"] == "keep me"

    def test_legacy_task_entries_are_upgraded(self, tmp_path):
        store, _ = _store(tmp_path)
        raw = [
            {
                "title": "legacy",
                "updated_at": "2024-01-01",
                "turns": [],
                "task": {"mode": "d2", "d2": {"file_path": "/w/a.d2"}},
            }
        ]
        store.path.write_text(json.dumps(raw), encoding="utf-8")
        [entry] = store.load_entries()
        assert entry.context == {"cli": "d2", "absolute_path": "/w/a.d2"}
        assert "task" not in entry.extra


# ---------------------------------------------------------------------------
# Ordinals
# ---------------------------------------------------------------------------


class TestOrdinals:
    def _seed(self, store):
        store.save_entries(
            [
                _entry("old", "2024-01-01T00:00:00.000Z", "r_old"),
                _entry("new", "2024-03-01T00:00:00.000Z", "r_new"),
                _entry("mid", "2024-02-01T00:00:00.000Z", "r_mid"),
            ]
        )

    def test_select_orders_by_updated_desc(self, tmp_path):
        store, _ = _store(tmp_path)
        self._seed(store)
        assert store.select_by_number(1).title == "new"
        assert store.select_by_number(2).title == "mid"
        assert store.select_by_number(3).title == "old"

    @pytest.mark.parametrize("index", [0, 4, -1])
    def test_out_of_range(self, tmp_path, index):
        store, _ = _store(tmp_path)
        self._seed(store)
        with pytest.raises(InvalidHistoryIndex, match="valid range: 1-3"):
            store.select_by_number(index)

    def test_empty_history_message(self, tmp_path):
        store, _ = _store(tmp_path)
        with pytest.raises(InvalidHistoryIndex, match="no history entries"):
            store.select_by_number(1)

    def test_delete_shifts_following_entry(self, tmp_path):
        store, _ = _store(tmp_path)
        self._seed(store)
        removed_id, title = store.delete_by_number(2)
        assert (removed_id, title) == ("r_mid", "mid")
        assert store.select_by_number(2).title == "old"
        assert len(store.load_entries()) == 2

    def test_delete_untitled(self, tmp_path):
        store, _ = _store(tmp_path)
        store.save_entries([_entry(None, "2024-01-01", "r1")])
        assert store.delete_by_number(1) == ("r1", UNTITLED)

    def test_find_latest(self, tmp_path):
        store, _ = _store(tmp_path)
        assert store.find_latest() is None
        self._seed(store)
        assert store.find_latest().title == "new"

    def test_filter_hides_other_modes(self, tmp_path):
        store, _ = _store(tmp_path, entry_filter=cli_entry_filter("d2"))
        store.save_entries(
            [
                _entry("ask", "2024-03-01", "r1", context={"cli": "ask"}),
                _entry("d2", "2024-02-01", "r2", context={"cli": "d2"}),
                _entry("untagged", "2024-01-01", "r3"),
            ]
        )
        assert [e.title for e in store.filtered_entries()] == ["d2", "untagged"]
        assert store.select_by_number(1).title == "d2"

    def test_filtered_delete_keeps_hidden_entries(self, tmp_path):
        store, _ = _store(tmp_path, entry_filter=cli_entry_filter("d2"))
        store.save_entries(
            [
                _entry("ask", "2024-03-01", "r1", context={"cli": "ask"}),
                _entry("d2", "2024-02-01", "r2", context={"cli": "d2"}),
            ]
        )
        store.delete_by_number(1)
        assert [e.title for e in store.load_entries()] == ["ask"]


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------


class TestUpsertConversation:
    def test_new_conversation_appends(self, tmp_path):
        store, _ = _store(tmp_path)
        store.upsert_conversation(
            response_id="resp_1",
            user_text="hello",
            assistant_text="OK!",
            metadata={"model": "gpt-5-nano", "effort": "low", "verbosity": "low"},
            context=_new_context(),
            context_data={"cli": "ask"},
        )
        [entry] = store.load_entries()
        assert entry.request_count == 1
        assert entry.first_response_id == entry.last_response_id == "resp_1"
        assert [t.role for t in entry.turns] == ["user", "assistant"]
        assert entry.turns[1].text == "OK!"
        assert entry.created_at == entry.updated_at
        assert entry.title == "hello"
        assert entry.resume.mode == "response_id"
        assert entry.resume.previous_response_id == "resp_1"
        assert entry.context == {"cli": "ask"}

    def test_continuation_updates_matching_entry(self, tmp_path):
        store, _ = _store(tmp_path)
        store.save_entries(
            [
                _entry(
                    "topic",
                    "2024-01-01T00:00:00.000Z",
                    "resp_1",
                    resume=HistoryResume(
                        mode="new_request",
                        previous_response_id="",
                        summary=HistorySummary(text="earlier", created_at="2024"),
                    ),
                    context={"cli": "ask", "relative_path": "out.md"},
                )
            ]
        )
        context = ConversationContext(
            is_new_conversation=False,
            title_to_use="topic",
            previous_response_id="resp_1",
            active_last_response_id="resp_1",
            previous_context={"cli": "ask", "relative_path": "out.md"},
        )
        store.upsert_conversation(
            response_id="resp_2",
            user_text="more",
            assistant_text="sure",
            metadata={"model": "gpt-5", "effort": "high", "verbosity": "low"},
            context=context,
        )
        [entry] = store.load_entries()
        assert entry.request_count == 2
        assert entry.first_response_id == "resp_1"
        assert entry.last_response_id == "resp_2"
        assert entry.model == "gpt-5"
        assert entry.effort == "high"
        assert entry.resume.mode == "response_id"
        assert entry.resume.previous_response_id == "resp_2"
        assert entry.resume.summary.text == "earlier"
        assert entry.context == {"cli": "ask", "relative_path": "out.md"}
        assert entry.updated_at != "2024-01-01T00:00:00.000Z"

    def test_missing_target_falls_back_to_new_entry(self, tmp_path):
        store, buf = _store(tmp_path)
        store.save_entries([_entry("other", "2024-01-01", "resp_x")])
        context = ConversationContext(
            is_new_conversation=False,
            title_to_use="gone",
            previous_response_id="resp_missing",
        )
        store.upsert_conversation(
            response_id="resp_9",
            user_text="q",
            assistant_text="a",
            metadata={},
            context=context,
        )
        entries = store.load_entries()
        assert len(entries) == 2
        assert entries[1].last_response_id == "resp_9"
        assert entries[1].request_count == 1
        assert "resp_missing" in buf.getvalue()

    def test_upsert_entry_replaces_by_last_response_id(self, tmp_path):
        store, _ = _store(tmp_path)
        store.save_entries([_entry("a", "2024-01-01", "r1")])
        replacement = _entry("a2", "2024-05-01", "r1")
        store.upsert_entry(replacement)
        assert [e.title for e in store.load_entries()] == ["a2"]
        store.upsert_entry(_entry("b", "2024-06-01", "r2"))
        assert len(store.load_entries()) == 2


# ---------------------------------------------------------------------------
# Path resolution and display
# ---------------------------------------------------------------------------


class TestResolvePath:
    def test_env_wins(self, tmp_path, monkeypatch):
        target = tmp_path / "h.json"
        monkeypatch.setenv("GPT_5_CLI_HISTORY_INDEX_FILE", str(target))
        assert resolve_history_path(tmp_path / "other.json") == target.resolve()

    def test_empty_env_is_config_error(self, monkeypatch):
        monkeypatch.setenv("GPT_5_CLI_HISTORY_INDEX_FILE", "  ")
        with pytest.raises(ConfigError):
            resolve_history_path("/tmp/x.json")

    def test_default_used_without_env(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GPT_5_CLI_HISTORY_INDEX_FILE", raising=False)
        assert resolve_history_path(tmp_path / "d.json") == (tmp_path / "d.json").resolve()


class TestDisplay:
    def _console(self):
        buf = io.StringIO()
        return Console(file=buf, no_color=True, width=300), buf

    def test_line_format(self):
        entry = _entry(
            "title",
            "2024-01-01",
            "r1",
            context={"cli": "d2", "relative_path": "a.d2", "copy": True},
        )
        line = format_history_line(1, entry)
        assert line == (
            " 1) title [gpt-5-nano/low/low 1req] 2024-01-01 paths[relative=a.d2, copy]"
        )

    def test_empty_list(self):
        console, buf = self._console()
        print_history_list([], console)
        assert buf.getvalue().strip() == "(no history)"

    def test_list_numbers_entries(self):
        console, buf = self._console()
        print_history_list(
            [_entry("a", "2024-02-01", "r1"), _entry("b", "2024-01-01", "r2")], console
        )
        out = buf.getvalue()
        assert " 1) a " in out
        assert " 2) b " in out

    def test_detail_shows_turns_and_summary(self):
        console, buf = self._console()
        entry = _entry(
            "t",
            "2024-01-01",
            "r1",
            turns=[
                HistoryTurn(role="system", kind="summary", text="the gist"),
                HistoryTurn(role="user", text="question"),
                HistoryTurn(role="assistant", text="answer"),
            ],
        )
        print_history_detail(entry, 1, console)
        out = buf.getvalue()
        assert "[summary]" in out and "the gist" in out
        assert out.index("[user]") < out.index("[assistant]")

    def test_detail_without_turns(self):
        console, buf = self._console()
        print_history_detail(_entry("t", "2024-01-01", "r1"), 1, console)
        assert "(this entry has no saved messages)" in buf.getvalue()
