from __future__ import annotations

import json
import math
from typing import List, Tuple

import pytest
from pydantic import ValidationError

from heylock.config import MAX_CONTEXT_ENTRY_LENGTH
from heylock.context_store import ContextStore, format_time_ago
from heylock.errors import IndexOutOfRangeError, InvalidArgumentError
from heylock.models import ContextEntry

NOW = 1_700_000_000.0


def make_store(now: float = NOW) -> Tuple[ContextStore, List[str]]:
    warnings: List[str] = []

    def warn(message: str, *args) -> None:
        warnings.append(message % args if args else message)

    return ContextStore(warn, clock=lambda: now), warnings


### Adding, modifying, removing ###############################################


def test_add_trims_content_and_defaults_timestamp_to_now():
    store, _ = make_store()

    index = store.add("  Visitor opened pricing  ")

    assert index == 0
    assert store.entries == (ContextEntry(content="Visitor opened pricing", timestamp=NOW),)


def test_add_then_remove_restores_previous_entries():
    store, _ = make_store()
    store.add("first", 10)
    store.add("second", 20)
    before = store.entries

    index = store.add("third", 30)
    store.remove(index)

    assert store.entries == before


@pytest.mark.parametrize(
    "content",
    ["", "   ", None, 42, "x" * (MAX_CONTEXT_ENTRY_LENGTH + 1)],
)
def test_add_rejects_invalid_content(content):
    store, _ = make_store()

    with pytest.raises(InvalidArgumentError) as exc:
        store.add(content)

    assert str(exc.value).startswith("add_context_entry failed:")
    assert store.entries == ()


@pytest.mark.parametrize("timestamp", [-1, math.inf, math.nan, "yesterday", True])
def test_add_rejects_invalid_timestamp(timestamp):
    store, _ = make_store()

    with pytest.raises(InvalidArgumentError):
        store.add("valid", timestamp)


def test_future_timestamp_is_accepted_with_warning():
    store, warnings = make_store()

    store.add("from the future", NOW + 60)

    assert store.entries[0].timestamp == NOW + 60
    assert any("timestamp is in the future" in w for w in warnings)


def test_modify_keeps_timestamp_when_omitted():
    store, _ = make_store()
    store.add("before", 123)

    store.modify(0, " after ")

    assert store.entries == (ContextEntry(content="after", timestamp=123),)


def test_modify_replaces_timestamp_when_given():
    store, _ = make_store()
    store.add("before", 123)

    store.modify(0, "after", 456)

    assert store.entries[0].timestamp == 456


@pytest.mark.parametrize("index", [-1, 1, 5])
def test_index_operations_fail_out_of_bounds(index):
    store, _ = make_store()
    store.add("only", 1)

    with pytest.raises(IndexOutOfRangeError):
        store.modify(index, "new")
    with pytest.raises(IndexError):
        store.remove(index)

    assert len(store) == 1


def test_index_must_be_an_integer():
    store, _ = make_store()
    store.add("only", 1)

    with pytest.raises(InvalidArgumentError):
        store.remove("0")


### Replace ##################################################################


def test_replace_is_all_or_nothing():
    store, _ = make_store()
    store.add("keep me", 1)

    with pytest.raises(InvalidArgumentError) as exc:
        store.replace([{"content": "fine", "timestamp": 2}, {"content": ""}])

    assert "entry at index 1 is invalid" in str(exc.value)
    assert store.entries == (ContextEntry(content="keep me", timestamp=1),)


def test_replace_copies_and_normalizes_entries():
    store, _ = make_store()
    source = [{"content": "  one  ", "timestamp": 5}, {"content": "two"}]

    store.replace(source)
    source[0]["content"] = "mutated"

    assert store.entries == (
        ContextEntry(content="one", timestamp=5),
        ContextEntry(content="two", timestamp=NOW),
    )


def test_replace_rejects_non_list():
    store, _ = make_store()

    with pytest.raises(InvalidArgumentError):
        store.replace("not a list")


def test_clear_empties_store():
    store, _ = make_store()
    store.add("one", 1)

    store.clear()

    assert store.entries == ()


### Snapshots and notifications ###############################################


def test_snapshots_cannot_change_internal_state():
    store, _ = make_store()
    store.add("original", 1)
    snapshot = store.entries

    with pytest.raises(ValidationError):
        snapshot[0].content = "changed"
    with pytest.raises(AttributeError):
        snapshot.append(ContextEntry(content="extra", timestamp=1))  # type: ignore[attr-defined]

    assert store.entries[0].content == "original"


def test_every_mutation_notifies_subscribers_with_snapshot():
    store, _ = make_store()
    seen = []
    store.subscribe(lambda entries: seen.append([entry.content for entry in entries]))

    store.add("a", 1)
    store.add("b", 2)
    store.modify(0, "A")
    store.remove(1)
    store.replace([{"content": "z", "timestamp": 3}])
    store.clear()

    assert seen == [["a"], ["a", "b"], ["A", "b"], ["A"], ["z"], []]


def test_failing_subscriber_does_not_block_others():
    store, warnings = make_store()
    seen = []

    def broken(_entries):
        raise RuntimeError("boom")

    store.subscribe(broken)
    store.subscribe(lambda entries: seen.append(len(entries)))

    store.add("a", 1)

    assert seen == [1]
    assert any("on_context_change callback error: boom" in w for w in warnings)


def test_unsubscribe_during_notification_keeps_order():
    store, _ = make_store()
    calls = []
    unsubscribe_first = None

    def first(_entries):
        calls.append("first")
        unsubscribe_first()

    unsubscribe_first = store.subscribe(first)
    store.subscribe(lambda _entries: calls.append("second"))

    store.add("a", 1)
    store.add("b", 2)

    assert calls == ["first", "second", "second"]


### Rendering ################################################################


@pytest.mark.parametrize(
    "elapsed,expected",
    [
        (0, "now"),
        (0.9, "now"),
        (1, "1 second ago"),
        (59, "59 seconds ago"),
        (61, "1 minute ago"),
        (150, "2 minutes ago"),
        (3600, "1 hour ago"),
        (7200 + 59, "2 hours ago"),
        (86400, "1 day ago"),
        (3 * 86400 + 10, "3 days ago"),
        (-5, "in the future"),
    ],
)
def test_format_time_ago_buckets(elapsed, expected):
    assert format_time_ago(NOW - elapsed, NOW) == expected


def test_render_concatenates_entries_in_order():
    store, _ = make_store()
    store.add("Visitor likes hiking", NOW)
    store.add("Visitor viewed boots", NOW - 61)

    assert store.render() == "Visitor likes hiking now. Visitor viewed boots 1 minute ago. "


def test_render_empty_store_is_empty_string():
    store, _ = make_store()
    assert store.render() == ""


### Restoring persisted entries ##############################################


def test_restore_loads_valid_serialized_entries():
    store, warnings = make_store()

    restored = store.restore(json.dumps([{"content": " one ", "timestamp": 1}, {"content": "two"}]))

    assert restored is True
    assert store.entries == (
        ContextEntry(content="one", timestamp=1),
        ContextEntry(content="two", timestamp=NOW),
    )
    assert warnings == []


def test_restore_discards_unparseable_data_with_warning():
    store, warnings = make_store()

    assert store.restore("not json") is False

    assert store.entries == ()
    assert any("Failed to parse stored context" in w for w in warnings)


@pytest.mark.parametrize(
    "payload",
    [
        [{"content": 123}, "bad"],
        [{"content": "ok", "timestamp": 1}, {"content": "neg", "timestamp": -4}],
        {"content": "not a list"},
    ],
)
def test_restore_discards_structurally_invalid_data(payload):
    store, warnings = make_store()

    assert store.restore(json.dumps(payload)) is False

    assert store.entries == ()
    assert any("Stored context is invalid" in w for w in warnings)


def test_restore_does_not_notify_subscribers():
    store, _ = make_store()
    seen = []
    store.subscribe(seen.append)

    store.restore(json.dumps([{"content": "one", "timestamp": 1}]))

    assert seen == []
