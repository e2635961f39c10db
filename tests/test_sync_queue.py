from dataclasses import replace
from datetime import timedelta

from habitisland.enums import EntityType, OperationType, SyncStatus
from habitisland.results import QueueFull
from habitisland.services import sync_queue

from conftest import NOW


def enqueue(db, config, entity_id, payload=None, entity_type=EntityType.HABIT, now=NOW):
    return sync_queue.enqueue(db, owner_id="u1", entity_type=entity_type, entity_id=entity_id,
                              payload=payload or {"id": entity_id}, now=now, config=config)


def test_upserts_for_one_entity_coalesce(db, config):
    enqueue(db, config, "h1", {"id": "h1", "name": "a"}).unwrap()
    op = enqueue(db, config, "h1", {"id": "h1", "name": "b"}).unwrap()
    assert sync_queue.size(db, "u1") == 1
    assert op.id == "habit:h1"
    assert op.payload["name"] == "b"


def test_full_queue_rejects_new_entities_only(db, config):
    config = replace(config, sync_queue_limit=2)
    enqueue(db, config, "h1").unwrap()
    enqueue(db, config, "h2").unwrap()

    result = enqueue(db, config, "h3")

    assert result.failure == QueueFull(current_size=2, max_size=2)
    assert sync_queue.size(db, "u1") == 2
    # an entity already queued can still be updated
    assert enqueue(db, config, "h1", {"id": "h1", "name": "again"}).is_ok


def test_pending_is_oldest_first(db, config):
    enqueue(db, config, "h2", now=NOW + timedelta(seconds=5)).unwrap()
    enqueue(db, config, "h1", now=NOW).unwrap()
    assert [op.entity_id for op in sync_queue.pending(db, "u1")] == ["h1", "h2"]


def test_failed_operations_give_up_after_max_retries(db, config):
    op = enqueue(db, config, "h1").unwrap()
    for _ in range(config.sync_max_retries - 1):
        sync_queue.mark_failed(op, "offline", NOW, config)
        assert op.status == SyncStatus.PENDING.value
    sync_queue.mark_failed(op, "offline", NOW, config)

    assert op.status == SyncStatus.FAILED.value
    assert op.retry_count == config.sync_max_retries
    db.flush()
    assert sync_queue.pending(db, "u1") == []

    assert sync_queue.retry_failed(db, "u1") == 1
    assert op.retry_count == 0
    db.flush()
    assert len(sync_queue.pending(db, "u1")) == 1


def test_non_retryable_failure_fails_immediately(db, config):
    op = enqueue(db, config, "h1").unwrap()
    sync_queue.mark_failed(op, "400 bad request", NOW, config, retryable=False)
    assert op.status == SyncStatus.FAILED.value


def test_synced_operations_leave_the_queue(db, config):
    op = enqueue(db, config, "h1").unwrap()
    sync_queue.mark_synced(db, op)
    db.flush()
    assert sync_queue.size(db, "u1") == 0


def test_delete_replaces_pending_upsert(db, config):
    enqueue(db, config, "h1").unwrap()
    op = sync_queue.enqueue(db, owner_id="u1", entity_type=EntityType.HABIT, entity_id="h1",
                            payload={"id": "h1"}, now=NOW, config=config,
                            operation=OperationType.DELETE).unwrap()
    assert op.operation == OperationType.DELETE.value
    assert sync_queue.size(db, "u1") == 1
