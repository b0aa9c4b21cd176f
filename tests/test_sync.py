"""Tests for change synchronization, reindex and drift."""

import asyncio

import pytest

from factories import make_listing
from fake_elasticsearch import FakeElasticsearch
from listing_search.errors import ReindexInProgressError, TransientBackendError
from listing_search.events.types import ChangeNotification, ChangeOperation
from listing_search.lifecycle import SearchRuntime
from listing_search.listings.schemas import ListingStatus
from listing_search.search.schemas import SearchFilters
from listing_search.search.transform import to_document

INDEX = "test_listings"


def _note(listing_id: str, operation: ChangeOperation = ChangeOperation.UPDATE) -> ChangeNotification:
    return ChangeNotification(id=listing_id, operation=operation)


async def publish(runtime: SearchRuntime, *notifications: ChangeNotification) -> None:
    """Publish through the feed and wait until the sync service is idle."""
    while runtime.feed.subscriber_count == 0:
        await asyncio.sleep(0)
    for notification in notifications:
        await runtime.feed.publish(notification)
    while runtime.feed.pending:
        await asyncio.sleep(0.001)
    await runtime.sync_service.drain()


async def _search_ids(runtime: SearchRuntime, **filters) -> list[str]:
    result = await runtime.orchestrator.search(SearchFilters(**filters))
    return [hit.id for hit in result.records]


async def test_inserted_listing_becomes_searchable(runtime: SearchRuntime) -> None:
    assert await _search_ids(runtime, region=("Mangistauskaya",)) == []

    runtime.store.save(make_listing("m1", region="Mangistauskaya"))
    await publish(runtime, _note("m1", ChangeOperation.INSERT))

    assert await _search_ids(runtime, region=("Mangistauskaya",)) == ["m1"]


async def test_sold_listing_leaves_results_without_drift(runtime: SearchRuntime) -> None:
    runtime.store.save(make_listing("m1", region="Mangistauskaya"))
    await publish(runtime, _note("m1", ChangeOperation.INSERT))
    assert await _search_ids(runtime, region=("Mangistauskaya",)) == ["m1"]

    runtime.store.save(make_listing("m1", region="Mangistauskaya", status=ListingStatus.SOLD))
    await publish(runtime, _note("m1"))

    assert await _search_ids(runtime, region=("Mangistauskaya",)) == []
    report = await runtime.sync_service.verify_drift()
    assert report.in_sync


async def test_index_document_strips_internal_fields(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    runtime.store.save(make_listing("m1"))
    await publish(runtime, _note("m1", ChangeOperation.INSERT))

    source = es.docs(INDEX)["m1"]
    assert "moderation_notes" not in source
    assert source["location"] == {"lat": 49.8, "lon": 73.1}


async def test_notifications_for_one_id_apply_in_order(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    runtime.store.save(make_listing("x"))
    service = runtime.sync_service

    await service.submit(_note("x", ChangeOperation.INSERT))
    await service.submit(_note("x"))
    await service.submit(_note("x", ChangeOperation.DELETE))
    await service.drain()

    assert "x" not in es.docs(INDEX)
    assert es.calls[-1] == "delete"


async def test_interleaved_ids_converge_on_store_state(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    service = runtime.sync_service
    ids = [f"x{i}" for i in range(10)]
    for listing_id in ids:
        runtime.store.save(make_listing(listing_id, title=f"First {listing_id}"))
        await service.submit(_note(listing_id, ChangeOperation.INSERT))
    for listing_id in ids:
        runtime.store.save(make_listing(listing_id, title=f"Second {listing_id}"))
        await service.submit(_note(listing_id))
    for listing_id in ids[::2]:
        runtime.store.remove(listing_id)
        await service.submit(_note(listing_id, ChangeOperation.DELETE))
    await service.drain()

    docs = es.docs(INDEX)
    assert sorted(docs) == sorted(ids[1::2])
    assert all(doc["title"].startswith("Second") for doc in docs.values())


async def test_redelivered_notification_is_harmless(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    runtime.store.save(make_listing("x"))
    await publish(runtime, _note("x", ChangeOperation.INSERT), _note("x", ChangeOperation.INSERT))
    await publish(runtime, _note("y", ChangeOperation.DELETE))

    assert list(es.docs(INDEX)) == ["x"]
    stats = await runtime.sync_service.stats()
    assert stats.dead_lettered == 0


async def test_transient_failure_is_retried(runtime: SearchRuntime, es: FakeElasticsearch) -> None:
    runtime.store.save(make_listing("x"))
    es.fail_next = 1

    await publish(runtime, _note("x"))

    assert "x" in es.docs(INDEX)
    stats = await runtime.sync_service.stats()
    assert stats.retried == 1
    assert stats.applied == 1


async def test_exhausted_retries_dead_letter_then_replay(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    runtime.store.save(make_listing("x"))
    es.available = False

    await publish(runtime, _note("x"))

    letters = runtime.dead_letters.list_entries()
    assert len(letters) == 1
    assert letters[0].listing_id == "x"
    assert letters[0].operation is ChangeOperation.UPDATE
    assert letters[0].attempts == 3

    es.available = True
    replayed = await runtime.sync_service.replay_dead_letters()

    assert replayed == 1
    assert "x" in es.docs(INDEX)
    assert runtime.dead_letters.count() == 0


async def test_rejected_document_is_dead_lettered_without_retry(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    runtime.store.save(make_listing("bad"))
    es.reject_ids = {"bad"}

    await publish(runtime, _note("bad"))

    stats = await runtime.sync_service.stats()
    assert stats.retried == 0
    assert stats.dead_lettered == 1
    assert stats.dead_letters_stored == 1
    assert runtime.dead_letters.list_entries()[0].attempts == 1


async def test_applied_change_invalidates_cached_results(runtime: SearchRuntime) -> None:
    runtime.store.save(make_listing("a"))
    await publish(runtime, _note("a", ChangeOperation.INSERT))
    assert await _search_ids(runtime) == ["a"]
    assert len(runtime.cache) == 1

    runtime.store.save(make_listing("b"))
    await publish(runtime, _note("b", ChangeOperation.INSERT))

    assert len(runtime.cache) == 0
    assert await _search_ids(runtime) == ["a", "b"]


async def test_sync_document(runtime: SearchRuntime, es: FakeElasticsearch) -> None:
    service = runtime.sync_service
    runtime.store.save(make_listing("x"))
    assert await service.sync_document("x") == "upserted"
    assert "x" in es.docs(INDEX)

    runtime.store.save(make_listing("x", status=ListingStatus.DRAFT))
    assert await service.sync_document("x") == "deleted"
    assert "x" not in es.docs(INDEX)


async def test_reindex_batches_and_removes_stale_documents(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    for listing_id in ("r1", "r2", "r3", "r4", "r5"):
        runtime.store.save(make_listing(listing_id))
    runtime.store.save(make_listing("s1", status=ListingStatus.SOLD))
    await runtime.index.upsert(to_document(make_listing("ghost")))

    report = await runtime.sync_service.reindex_all()

    assert report.indexed == 5
    assert report.deleted == 1
    assert report.skipped == 0
    assert report.batches == 3
    assert sorted(es.docs(INDEX)) == ["r1", "r2", "r3", "r4", "r5"]

    again = await runtime.sync_service.reindex_all()
    assert again.indexed == 5
    assert again.deleted == 0


async def test_reindex_skips_rejected_documents(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    for listing_id in ("r1", "r2", "r3"):
        runtime.store.save(make_listing(listing_id))
    es.reject_ids = {"r2"}

    report = await runtime.sync_service.reindex_all()

    assert report.indexed == 2
    assert report.skipped == 1
    assert sorted(es.docs(INDEX)) == ["r1", "r3"]


async def test_reindex_is_single_flight(runtime: SearchRuntime, es: FakeElasticsearch) -> None:
    runtime.store.save(make_listing("r1"))
    es.delay = 0.01
    first = asyncio.create_task(runtime.sync_service.reindex_all())
    await asyncio.sleep(0)

    assert runtime.sync_service.reindex_running
    with pytest.raises(ReindexInProgressError):
        await runtime.sync_service.reindex_all()

    report = await first
    assert report.indexed == 1
    assert not runtime.sync_service.reindex_running


async def test_failed_reindex_resumes_after_last_batch(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    for listing_id in ("r1", "r2", "r3", "r4", "r5"):
        runtime.store.save(make_listing(listing_id))
    original_bulk = es.bulk

    async def failing_after_first_batch(*args, **kwargs):
        if es.calls.count("bulk") >= 1:
            es.available = False
        return await original_bulk(*args, **kwargs)

    es.bulk = failing_after_first_batch  # type: ignore[method-assign]
    with pytest.raises(TransientBackendError):
        await runtime.sync_service.reindex_all()
    assert sorted(es.docs(INDEX)) == ["r1", "r2"]

    es.bulk = original_bulk  # type: ignore[method-assign]
    es.available = True
    report = await runtime.sync_service.reindex_all(resume=True)

    assert report.resumed_from == "r2"
    assert report.indexed == 3
    assert report.batches == 2
    assert sorted(es.docs(INDEX)) == ["r1", "r2", "r3", "r4", "r5"]


async def test_drift_reports_both_directions_and_repairs(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    service = runtime.sync_service
    for listing_id in ("a", "b", "c"):
        runtime.store.save(make_listing(listing_id))
    await service.sync_document("a")
    await runtime.index.upsert(to_document(make_listing("ghost")))

    report = await service.verify_drift()

    assert not report.in_sync
    assert report.store_count == 3
    assert report.index_count == 2
    assert report.missing_in_index == ["b", "c"]
    assert report.missing_in_store == ["ghost"]

    repair = await service.repair_drift()

    assert repair.queued_upserts == 2
    assert repair.queued_deletes == 1
    assert sorted(es.docs(INDEX)) == ["a", "b", "c"]
    assert (await service.verify_drift()).in_sync


async def test_drift_monitor_repairs_missed_notifications(
    make_runtime, es: FakeElasticsearch
) -> None:
    runtime = make_runtime(drift_check_interval=0.01)
    await runtime.start()
    try:
        runtime.store.save(make_listing("missed"))

        async def indexed() -> None:
            while "missed" not in es.docs(INDEX):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(indexed(), timeout=2.0)
    finally:
        await runtime.close()


async def test_stats_track_reindex_and_drift(runtime: SearchRuntime) -> None:
    runtime.store.save(make_listing("a"))
    await runtime.sync_service.reindex_all()
    await runtime.sync_service.verify_drift()

    stats = await runtime.sync_service.stats()

    assert stats.last_reindex is not None
    assert stats.last_reindex.indexed == 1
    assert stats.last_drift is not None
    assert stats.last_drift.in_sync
    assert stats.pending == 0
    assert stats.active_lanes == 0


async def test_reindex_reapplies_changes_written_during_the_run(
    runtime: SearchRuntime, es: FakeElasticsearch
) -> None:
    service = runtime.sync_service
    runtime.store.save(make_listing("r1", title="Old title"))
    original = runtime.index.bulk_upsert
    raced = False

    async def racing_bulk_upsert(documents):
        nonlocal raced
        if not raced:
            raced = True
            # Batch already holds the old version when the edit syncs
            runtime.store.save(make_listing("r1", title="New title"))
            await service.apply(_note("r1"))
            assert es.docs(INDEX)["r1"]["title"] == "New title"
        return await original(documents)

    runtime.index.bulk_upsert = racing_bulk_upsert  # type: ignore[method-assign]
    report = await service.reindex_all()

    assert report.reapplied == 1
    assert es.docs(INDEX)["r1"]["title"] == "New title"
    assert (await service.verify_drift()).in_sync


async def test_backoff_does_not_hold_a_worker_slot(
    make_runtime, es: FakeElasticsearch
) -> None:
    runtime = make_runtime(
        sync_workers=1, sync_max_retries=1, sync_backoff_base=0.3, sync_backoff_max=0.3
    )
    await runtime.start()
    try:
        runtime.store.save(make_listing("a"))
        runtime.store.save(make_listing("b"))
        original = runtime.index.upsert

        async def refusing_a(document):
            if document.id == "a":
                raise TransientBackendError("index", "upsert", "refused")
            return await original(document)

        runtime.index.upsert = refusing_a  # type: ignore[method-assign]
        await runtime.sync_service.submit(_note("a"))
        await runtime.sync_service.submit(_note("b"))

        async def indexed() -> None:
            while "b" not in es.docs(INDEX):
                await asyncio.sleep(0.005)

        # "a" is sleeping out its backoff; "b" must not wait behind it
        await asyncio.wait_for(indexed(), timeout=0.2)
        await runtime.sync_service.drain()
        assert runtime.dead_letters.list_entries()[0].listing_id == "a"
    finally:
        await runtime.close()


async def test_drift_monitor_recreates_a_lost_index(
    make_runtime, es: FakeElasticsearch
) -> None:
    runtime = make_runtime(drift_check_interval=0.02)
    await runtime.start()
    try:
        runtime.store.save(make_listing("a"))
        es.available = False
        del es.indexes[INDEX]
        await asyncio.sleep(0.05)
        es.available = True

        async def rebuilt() -> None:
            while INDEX not in es.indexes or "a" not in es.docs(INDEX):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(rebuilt(), timeout=2.0)
        assert (await runtime.orchestrator.health_check()).index_available
    finally:
        await runtime.close()


async def test_index_unreachable_at_startup_is_provisioned_later(
    make_runtime, es: FakeElasticsearch
) -> None:
    runtime = make_runtime(index_recovery_interval=0.02)
    runtime.store.save(make_listing("a"))
    del es.indexes[INDEX]
    es.available = False
    await runtime.start()
    try:
        await asyncio.sleep(0.05)
        assert INDEX not in es.indexes
        es.available = True

        async def provisioned() -> None:
            while INDEX not in es.indexes or "a" not in es.docs(INDEX):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(provisioned(), timeout=2.0)
        result = await runtime.orchestrator.search(SearchFilters())
        assert [hit.id for hit in result.records] == ["a"]
    finally:
        await runtime.close()


async def test_close_dead_letters_unfinished_notifications(
    make_runtime, es: FakeElasticsearch
) -> None:
    runtime = make_runtime(shutdown_timeout=0.01)
    await runtime.start()
    for listing_id in ("a", "b", "c"):
        runtime.store.save(make_listing(listing_id))
    es.delay = 0.2
    for listing_id in ("a", "b", "c"):
        await runtime.sync_service.submit(_note(listing_id))

    await runtime.close()

    letters = runtime.dead_letters.list_entries()
    assert sorted(letter.listing_id for letter in letters) == ["a", "b", "c"]
    assert {letter.reason for letter in letters} == {"shutdown"}
    # Let the shielded index writes finish before the loop closes
    await asyncio.sleep(0.25)


async def test_close_dead_letters_notifications_still_in_the_feed(make_runtime) -> None:
    runtime = make_runtime()
    await runtime.start()
    while runtime.feed.subscriber_count == 0:
        await asyncio.sleep(0)

    await runtime.feed.publish(_note("a"))
    await runtime.feed.publish(_note("b", ChangeOperation.DELETE))
    await runtime.close()

    letters = runtime.dead_letters.list_entries()
    assert sorted((letter.listing_id, letter.operation) for letter in letters) == [
        ("a", ChangeOperation.UPDATE),
        ("b", ChangeOperation.DELETE),
    ]
