"""Unit tests for the in-memory reference store."""

import asyncio
import threading

import pytest

from livequery import (
    TICK,
    CancellationToken,
    FetchCancelledError,
    InMemoryStore,
    QueryDescriptor,
    RelevanceKey,
    StoreClosedError,
    StoreError,
)
from tests.utils import Chore, Note, Task


def run(store, descriptor, token=None):
    return store.execute(store.create_read_context(), descriptor, token)


class TestRows:
    """Basic row bookkeeping."""

    @pytest.mark.unit
    @pytest.mark.store
    def test_insert_assigns_increasing_ids(self, store):
        first = store.insert(Note("a"))
        second = store.insert(Note("b"))

        assert second > first
        assert store.get(first) == Note("a")
        assert len(store) == 2

    @pytest.mark.unit
    @pytest.mark.store
    def test_update_replaces_row_and_returns_old(self, store):
        row_id = store.insert(Note("draft"))

        old = store.update(row_id, Note("final"))

        assert old == Note("draft")
        assert store.get(row_id) == Note("final")

    @pytest.mark.unit
    @pytest.mark.store
    def test_update_can_change_row_type(self, store):
        row_id = store.insert(Task("sweep"))

        store.update(row_id, Chore("sweep", room="hall"))

        assert store.rows(Task) == []
        assert store.rows(Chore) == [Chore("sweep", room="hall")]

    @pytest.mark.unit
    @pytest.mark.store
    def test_delete_removes_row(self, store):
        row_id = store.insert(Note("gone"))

        assert store.delete(row_id) == Note("gone")
        assert len(store) == 0
        with pytest.raises(KeyError):
            store.get(row_id)

    @pytest.mark.unit
    @pytest.mark.store
    def test_every_mutation_bumps_revision(self, store):
        start = store.revision
        row_id = store.insert(Note("a"))
        store.update(row_id, Note("b"))
        store.delete(row_id)

        assert store.revision == start + 3


class TestExecute:
    """Descriptor execution: filtering, ordering and windowing."""

    @pytest.fixture
    def notes(self, store):
        for title, rank, pinned in [("c", 2, True), ("a", 3, False), ("b", 1, True)]:
            store.insert(Note(title, pinned=pinned, rank=rank))
        return store

    @pytest.mark.unit
    @pytest.mark.store
    def test_unsorted_results_keep_insertion_order(self, notes):
        assert [n.title for n in run(notes, QueryDescriptor(Note))] == ["c", "a", "b"]

    @pytest.mark.unit
    @pytest.mark.store
    def test_predicate_filters_rows(self, notes):
        pinned = run(notes, QueryDescriptor(Note, predicate=lambda n: n.pinned))

        assert [n.title for n in pinned] == ["c", "b"]

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.parametrize(
        "sort_by, expected",
        [
            ("title", ["a", "b", "c"]),
            ("rank", ["b", "c", "a"]),
            (("pinned", "rank"), ["a", "b", "c"]),
            (lambda n: -n.rank, ["a", "c", "b"]),
        ],
    )
    def test_sort_by_attribute_tuple_or_key(self, notes, sort_by, expected):
        rows = run(notes, QueryDescriptor(Note, sort_by=sort_by))

        assert [n.title for n in rows] == expected

    @pytest.mark.unit
    @pytest.mark.store
    def test_reverse_offset_and_limit(self, notes):
        descriptor = QueryDescriptor(
            Note, sort_by="title", reverse=True, offset=1, limit=1
        )

        assert [n.title for n in run(notes, descriptor)] == ["b"]

    @pytest.mark.unit
    @pytest.mark.store
    def test_reverse_without_sort_reverses_insertion_order(self, notes):
        rows = run(notes, QueryDescriptor(Note, reverse=True))

        assert [n.title for n in rows] == ["b", "a", "c"]

    @pytest.mark.unit
    @pytest.mark.store
    def test_subclass_rows_are_included_in_insertion_order(self, store):
        store.insert(Task("laundry"))
        store.insert(Chore("dishes"))
        store.insert(Task("taxes"))

        assert [t.name for t in run(store, QueryDescriptor(Task))] == [
            "laundry",
            "dishes",
            "taxes",
        ]
        assert [t.name for t in run(store, QueryDescriptor(Chore))] == ["dishes"]

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.edge_case
    def test_empty_store_returns_empty_list(self, store):
        assert run(store, QueryDescriptor(Note)) == []

    @pytest.mark.unit
    @pytest.mark.store
    def test_read_context_is_a_snapshot(self, store):
        store.insert(Note("before"))
        context = store.create_read_context()

        store.insert(Note("after"))

        rows = store.execute(context, QueryDescriptor(Note))
        assert [n.title for n in rows] == ["before"]

    @pytest.mark.unit
    @pytest.mark.store
    def test_results_are_cached_per_revision(self, notes):
        descriptor = QueryDescriptor(Note, sort_by="rank")

        first = run(notes, descriptor)
        second = run(notes, descriptor)
        notes.insert(Note("d"))
        third = run(notes, descriptor)

        assert first == second
        assert first is not second
        assert len(third) == 4
        assert notes.stats()["cache_hits"] == 1
        assert notes.fetch_count == 3

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.edge_case
    def test_predicate_failure_is_a_store_error(self, notes):
        def broken(note):
            raise ValueError("bad predicate")

        with pytest.raises(StoreError, match="bad predicate") as excinfo:
            run(notes, QueryDescriptor(Note, predicate=broken))

        assert isinstance(excinfo.value.__cause__, ValueError)

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.edge_case
    def test_cancelled_token_aborts_scan(self, notes):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(FetchCancelledError):
            run(notes, QueryDescriptor(Note), token)

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.edge_case
    def test_foreign_read_context_is_rejected(self, store):
        with pytest.raises(StoreError, match="read context"):
            store.execute(object(), QueryDescriptor(Note))


class TestChangeFeeds:
    """Change feeds and relevance routing."""

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.asyncio
    async def test_each_mutation_ticks_once(self, store):
        feed = store.observe_changes(RelevanceKey(Note))

        row_id = store.insert(Note("a"))
        store.update(row_id, Note("b"))

        assert feed.pending == 2
        assert await asyncio.wait_for(feed.__anext__(), 1) is TICK
        assert await asyncio.wait_for(feed.__anext__(), 1) is TICK
        assert feed.pending == 0
        await feed.aclose()

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.asyncio
    async def test_waiting_consumer_is_woken_from_another_thread(self, store):
        feed = store.observe_changes(RelevanceKey(Note))
        waiting = asyncio.ensure_future(feed.__anext__())
        await asyncio.sleep(0)

        writer = threading.Thread(target=store.insert, args=(Note("remote"),))
        writer.start()
        writer.join()

        assert await asyncio.wait_for(waiting, 1) is TICK
        await feed.aclose()

    @pytest.mark.unit
    @pytest.mark.store
    def test_other_entities_do_not_notify(self, store):
        feed = store.observe_changes(RelevanceKey(Note))

        store.insert(Task("unrelated"))

        assert feed.pending == 0

    @pytest.mark.unit
    @pytest.mark.store
    def test_subclass_mutations_notify_base_feeds(self, store):
        tasks = store.observe_changes(RelevanceKey(Task))
        chores = store.observe_changes(RelevanceKey(Chore))

        store.insert(Chore("mop"))
        store.insert(Task("file"))

        assert tasks.pending == 2
        assert chores.pending == 1

    @pytest.mark.unit
    @pytest.mark.store
    def test_narrowed_key_only_sees_matching_rows(self, store):
        feed = store.observe_changes(RelevanceKey(Note, lambda n: n.pinned))

        store.insert(Note("plain"))
        assert feed.pending == 0

        pinned_id = store.insert(Note("pinned", pinned=True))
        assert feed.pending == 1

        # Unpinning is relevant: the old row matched.
        store.update(pinned_id, Note("pinned", pinned=False))
        assert feed.pending == 2

    @pytest.mark.unit
    @pytest.mark.store
    def test_batch_coalesces_notifications(self, store):
        feed = store.observe_changes(RelevanceKey(Note))
        others = store.observe_changes(RelevanceKey(Task))

        with store.batch():
            store.insert(Note("a"))
            with store.batch():
                store.insert(Note("b"))
            assert feed.pending == 0
            store.insert(Note("c"))

        assert feed.pending == 1
        assert others.pending == 0

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.asyncio
    async def test_aclose_unregisters_feed(self, store):
        feed = store.observe_changes(RelevanceKey(Note))
        assert store.stats()["feeds"] == 1

        await feed.aclose()
        store.insert(Note("ignored"))

        assert store.stats()["feeds"] == 0
        assert feed.pending == 0
        with pytest.raises(StopAsyncIteration):
            await feed.__anext__()

    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.edge_case
    def test_registration_off_the_designated_thread_fails(self, store):
        errors = []

        def register():
            try:
                store.observe_changes(RelevanceKey(Note))
            except StoreError as e:
                errors.append(e)

        thread = threading.Thread(target=register, name="intruder")
        thread.start()
        thread.join()

        assert len(errors) == 1
        assert "intruder" in str(errors[0])

    @pytest.mark.unit
    @pytest.mark.store
    def test_registration_thread_can_be_chosen(self):
        designated = threading.Thread(target=lambda: None, name="ui")
        store = InMemoryStore(registration_thread=designated)

        with pytest.raises(StoreError, match="'ui'"):
            store.observe_changes(RelevanceKey(Note))


class TestClose:
    @pytest.mark.unit
    @pytest.mark.store
    @pytest.mark.asyncio
    async def test_close_fails_open_feeds(self):
        store = InMemoryStore()
        feed = store.observe_changes(RelevanceKey(Note))

        store.close()

        with pytest.raises(StoreClosedError):
            await asyncio.wait_for(feed.__anext__(), 1)
        with pytest.raises(StopAsyncIteration):
            await feed.__anext__()

    @pytest.mark.unit
    @pytest.mark.store
    def test_closed_store_rejects_reads_and_writes(self):
        store = InMemoryStore()
        store.close()

        assert store.closed
        with pytest.raises(StoreClosedError):
            store.create_read_context()
        with pytest.raises(StoreClosedError):
            store.insert(Note("late"))
        with pytest.raises(StoreClosedError):
            store.observe_changes(RelevanceKey(Note))

    @pytest.mark.unit
    @pytest.mark.store
    def test_closed_store_rejects_fetch_on_old_context(self):
        store = InMemoryStore()
        context = store.create_read_context()
        store.close()

        with pytest.raises(StoreClosedError):
            store.execute(context, QueryDescriptor(Note))
