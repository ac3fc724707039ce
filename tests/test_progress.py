"""Tests for progress broadcasting and observation."""

import json
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from studio.core.exceptions import JobNotFoundError, NotAuthorizedError
from studio.models.generated_image import GeneratedImage
from studio.services.job_store import new_image_id
from studio.services.progress import (
    InMemoryProgressBroker,
    ProgressObserver,
    RedisProgressBroker,
    job_channel,
    owner_channel,
)

from tests.conftest import OTHER_OWNER, OWNER


@pytest.fixture
def observer(store, broker):
    return ProgressObserver(store, broker, heartbeat=0.05)


def _image(job_id, index):
    return GeneratedImage(
        id=new_image_id(),
        owner_id=OWNER,
        batch_job_id=job_id,
        item_index=index,
        storage_key=f"generated/x/{index}.jpg",
        url=f"http://testserver/files/generated/x/{index}.jpg",
        content_type="image/jpeg",
        size_bytes=10,
        prompt="cat",
        visibility="public",
    )


def test_channel_names():
    assert job_channel("batch_1") == "studio:batch:batch_1"
    assert owner_channel("user_1") == "studio:owner:user_1"


def test_in_memory_broker_fans_out_and_unsubscribes():
    broker = InMemoryProgressBroker()
    first = broker.subscribe(["a"])
    second = broker.subscribe(["a", "b"])

    broker.publish("a", {"n": 1})
    broker.publish("b", {"n": 2})

    assert first.get(timeout=0.1) == {"n": 1}
    assert first.get(timeout=0.01) is None
    assert second.get(timeout=0.1) == {"n": 1}
    assert second.get(timeout=0.1) == {"n": 2}

    first.close()
    second.close()
    assert broker.subscriber_count("a") == 0
    assert broker.subscriber_count("b") == 0


def test_redis_broker_publishes_json():
    client = MagicMock()
    broker = RedisProgressBroker(redis_client=client)

    broker.publish_job({"id": "batch_1", "owner_id": OWNER, "status": "processing"})

    channels = [c.args[0] for c in client.publish.call_args_list]
    assert channels == [job_channel("batch_1"), owner_channel(OWNER)]
    assert json.loads(client.publish.call_args_list[0].args[1])["status"] == "processing"


def test_redis_publish_failure_does_not_raise():
    client = MagicMock()
    client.publish.side_effect = RedisConnectionError("down")
    broker = RedisProgressBroker(redis_client=client)

    broker.publish_job({"id": "batch_1", "owner_id": OWNER, "status": "processing"})

    assert client.publish.call_count == 2


def test_redis_subscription_decodes_messages():
    pubsub = MagicMock()
    pubsub.get_message.side_effect = [
        {"type": "message", "data": b'{"id": "batch_1"}'},
        None,
    ]
    client = MagicMock()
    client.pubsub.return_value = pubsub
    broker = RedisProgressBroker(redis_client=client)

    with broker.subscribe([job_channel("batch_1")]) as sub:
        assert sub.get(timeout=0.1) == {"id": "batch_1"}
        assert sub.get(timeout=0.1) is None

    pubsub.subscribe.assert_called_once_with(job_channel("batch_1"))
    pubsub.close.assert_called_once()


def test_subscribe_job_streams_until_terminal(control, store, observer, broker):
    job_id = control.start(OWNER, {"prompt": "cat"}, 3)
    events = observer.subscribe_job(OWNER, job_id)

    assert next(events)["status"] == "pending"

    store.claim_step(job_id, OWNER)
    assert next(events)["status"] == "processing"

    control.cancel(OWNER, job_id)
    assert next(events)["status"] == "cancelled"

    with pytest.raises(StopIteration):
        next(events)
    assert broker.subscriber_count(job_channel(job_id)) == 0


def test_subscribe_job_on_terminal_job_yields_once(control, observer):
    job_id = control.start(OWNER, {"prompt": "cat"}, 1)
    control.cancel(OWNER, job_id)

    rows = list(observer.subscribe_job(OWNER, job_id))

    assert [row["status"] for row in rows] == ["cancelled"]


def test_subscribe_job_checks_access_eagerly(control, observer):
    job_id = control.start(OWNER, {"prompt": "cat"}, 1)

    with pytest.raises(NotAuthorizedError):
        observer.subscribe_job(OTHER_OWNER, job_id)
    with pytest.raises(JobNotFoundError):
        observer.subscribe_job(OWNER, "batch_missing")


def test_subscribe_job_last_write_wins(control, store, observer):
    job_id = control.start(OWNER, {"prompt": "cat"}, 3)
    events = observer.subscribe_job(OWNER, job_id)
    next(events)

    # Several changes land before the subscriber reads; it sees the latest row
    store.claim_step(job_id, OWNER)
    store.increment_completed(job_id, OWNER)
    store.increment_completed(job_id, OWNER)

    row = next(events)
    assert row["completed_count"] == 2


def test_subscribe_active_jobs_tracks_owner_jobs(control, observer):
    first = control.start(OWNER, {"prompt": "cat"}, 1)
    control.start(OTHER_OWNER, {"prompt": "cat"}, 1)
    events = observer.subscribe_active_jobs(OWNER)

    assert [row["id"] for row in next(events)] == [first]

    second = control.start(OWNER, {"prompt": "dog"}, 1)
    assert {row["id"] for row in next(events)} == {first, second}

    control.cancel(OWNER, first)
    assert [row["id"] for row in next(events)] == [second]
    events.close()


def test_subscribe_job_items_streams_artifacts(control, store, observer):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    store.claim_step(job_id, OWNER)
    events = observer.subscribe_job_items(OWNER, job_id)

    assert next(events) == []

    first = _image(job_id, 0)
    store.record_success(job_id, OWNER, 0, first)
    assert [image["id"] for image in next(events)] == [first.id]

    second = _image(job_id, 1)
    store.record_success(job_id, OWNER, 1, second)
    assert [image["id"] for image in next(events)] == [first.id, second.id]

    # Job completed with the second item
    with pytest.raises(StopIteration):
        next(events)
