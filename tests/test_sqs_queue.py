import asyncio
import json

import pytest

from agentforge.model import SQSMessage
from agentforge.queue import QueueError
from agentforge.sqs_queue import (
    SQSQueue,
    SQSQueueConfig,
    dedupe_id_for_message,
    group_id_for_message,
)

URL = "http://localhost:4566/000000000000/tasks"
FIFO_URL = "http://localhost:4566/000000000000/tasks.fifo"


class FakeSQSClient:
    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.sent = []
        self.deleted = []
        self.visibility = []
        self.attribute_requests = []
        self.fail_send = False
        self.fail_attributes = False

    async def send_message(self, queue_url, body, group_id, dedupe_id):
        if self.fail_send:
            raise RuntimeError("send down")
        self.sent.append((queue_url, body, group_id, dedupe_id))

    async def receive_messages(self, queue_url, max_messages, wait_time_seconds, visibility_timeout):
        if self.batches:
            return self.batches.pop(0)
        await asyncio.sleep(0.01)
        return []

    async def delete_message(self, queue_url, receipt_handle):
        self.deleted.append((queue_url, receipt_handle))

    async def change_visibility(self, queue_url, receipt_handle, visibility_timeout):
        self.visibility.append((queue_url, receipt_handle, visibility_timeout))

    async def get_queue_attributes(self, queue_url, attribute_names):
        if self.fail_attributes:
            raise RuntimeError("unreachable")
        self.attribute_requests.append((queue_url, list(attribute_names)))
        return {"ApproximateNumberOfMessages": "0"}


async def consume_until(queue, handler, predicate, timeout=2.0):
    task = asyncio.create_task(queue.start_consumer(handler))
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def body_of(**fields):
    return json.dumps(SQSMessage(**fields).to_dict())


@pytest.mark.parametrize(
    "msg, want",
    [
        (SQSMessage(task_id="task_1", run_id="run_1", tenant_id="tnt_1"), "task_1#run_1"),
        (SQSMessage(task_id="task_1", tenant_id="tnt_1"), "task_1"),
        (SQSMessage(run_id="run_1", tenant_id="tnt_1"), "run_1"),
        (SQSMessage(tenant_id="tnt_1"), "tnt_1"),
        (SQSMessage(), "default"),
        (None, "default"),
    ],
    ids=["task and run", "task only", "run only", "tenant fallback", "default fallback", "nil message"],
)
def test_group_id_for_message(msg, want):
    assert group_id_for_message(msg) == want


def test_dedupe_id_for_message():
    msg = SQSMessage(task_id="task_1", run_id="run_1", dedupe_key="custom_key")
    assert dedupe_id_for_message(msg) == "custom_key"
    msg.dedupe_key = ""
    assert dedupe_id_for_message(msg) == "task_1#run_1"
    assert dedupe_id_for_message(None) == ""


def test_constructor_requires_client():
    with pytest.raises(QueueError):
        SQSQueue(None, SQSQueueConfig(queue_url=URL))


def test_constructor_requires_url():
    with pytest.raises(QueueError):
        SQSQueue(FakeSQSClient(), SQSQueueConfig(queue_url="   "))


def test_constructor_applies_defaults():
    q = SQSQueue(FakeSQSClient(), SQSQueueConfig(queue_url=f"  {URL} ", max_messages=50))
    assert q.queue_url == URL
    assert q.wait_time_seconds == 20
    assert q.visibility_timeout == 300
    assert q.max_messages == 10
    assert q.handler_concurrency == 10
    assert q.is_fifo is False


def test_constructor_keeps_explicit_values():
    q = SQSQueue(
        FakeSQSClient(),
        SQSQueueConfig(queue_url=FIFO_URL, wait_time_seconds=1, visibility_timeout=10, max_messages=4),
    )
    assert (q.wait_time_seconds, q.visibility_timeout, q.max_messages) == (1, 10, 4)
    assert q.is_fifo is True


@pytest.mark.asyncio
async def test_enqueue_standard_queue_sends_body_without_fifo_ids():
    client = FakeSQSClient()
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL))
    await q.enqueue(SQSMessage(tenant_id="t", task_id="task_1", run_id="run_1"))
    assert len(client.sent) == 1
    url, body, group_id, dedupe_id = client.sent[0]
    assert url == URL
    assert group_id is None and dedupe_id is None
    decoded = json.loads(body)
    assert decoded["task_id"] == "task_1"
    assert decoded["attempt"] == 1


@pytest.mark.asyncio
async def test_enqueue_fifo_queue_sets_group_and_dedupe():
    client = FakeSQSClient()
    q = SQSQueue(client, SQSQueueConfig(queue_url=FIFO_URL))
    await q.enqueue(SQSMessage(tenant_id="t", task_id="task_1", run_id="run_1", attempt=3))
    _, body, group_id, dedupe_id = client.sent[0]
    assert group_id == "task_1#run_1"
    assert dedupe_id == "task_1#run_1"
    assert json.loads(body)["attempt"] == 3


@pytest.mark.asyncio
async def test_enqueue_rejects_none():
    q = SQSQueue(FakeSQSClient(), SQSQueueConfig(queue_url=URL))
    with pytest.raises(QueueError):
        await q.enqueue(None)


@pytest.mark.asyncio
async def test_enqueue_wraps_send_failure():
    client = FakeSQSClient()
    client.fail_send = True
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL))
    with pytest.raises(QueueError, match="send message"):
        await q.enqueue(SQSMessage(task_id="a", run_id="b"))


@pytest.mark.asyncio
async def test_health_check_queries_attributes():
    client = FakeSQSClient()
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL))
    await q.health_check()
    assert client.attribute_requests == [(URL, ["ApproximateNumberOfMessages"])]


@pytest.mark.asyncio
async def test_health_check_failure_raises():
    client = FakeSQSClient()
    client.fail_attributes = True
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL))
    with pytest.raises(QueueError, match="health check"):
        await q.health_check()


@pytest.mark.asyncio
async def test_start_consumer_rejects_none_handler():
    q = SQSQueue(FakeSQSClient(), SQSQueueConfig(queue_url=URL))
    with pytest.raises(QueueError):
        await q.start_consumer(None)


@pytest.mark.asyncio
async def test_consumer_delivers_and_deletes_on_success():
    batch = [
        {"body": body_of(tenant_id="t", task_id="a", run_id="r"), "receipt_handle": "rh-a", "attributes": {}},
        {"body": body_of(tenant_id="t", task_id="b", run_id="r"), "receipt_handle": "rh-b", "attributes": {}},
    ]
    client = FakeSQSClient([batch])
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL, visibility_timeout=1))
    seen = []

    async def handler(msg):
        seen.append((msg.task_id, msg.attempt))

    await consume_until(q, handler, lambda: len(client.deleted) == 2)
    assert sorted(seen) == [("a", 1), ("b", 1)]
    assert sorted(client.deleted) == [(URL, "rh-a"), (URL, "rh-b")]
    assert client.visibility == []


@pytest.mark.asyncio
async def test_consumer_uses_receive_count_as_attempt():
    batch = [{
        "body": body_of(task_id="a", run_id="r", attempt=1),
        "receipt_handle": "rh-1",
        "attributes": {"ApproximateReceiveCount": "3"},
    }]
    client = FakeSQSClient([batch])
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL, visibility_timeout=1))
    delivered = []

    async def handler(msg):
        delivered.append(msg)

    await consume_until(q, handler, lambda: bool(client.deleted))
    assert len(delivered) == 1
    assert delivered[0].task_id == "a"
    assert delivered[0].run_id == "r"
    assert delivered[0].attempt == 3
    assert client.deleted == [(URL, "rh-1")]


@pytest.mark.asyncio
async def test_consumer_failure_shortens_visibility_and_keeps_message():
    batch = [{"body": body_of(task_id="a", run_id="r"), "receipt_handle": "rh-1", "attributes": {}}]
    client = FakeSQSClient([batch])
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL, visibility_timeout=1))

    async def handler(msg):
        raise RuntimeError("boom")

    await consume_until(q, handler, lambda: bool(client.visibility))
    assert client.visibility == [(URL, "rh-1", 1)]
    assert client.deleted == []


@pytest.mark.asyncio
async def test_consumer_drops_invalid_and_empty_payloads():
    batch = [
        {"body": "{not json", "receipt_handle": "rh-bad", "attributes": {}},
        {"body": None, "receipt_handle": "rh-empty", "attributes": {}},
    ]
    client = FakeSQSClient([batch])
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL, visibility_timeout=1))
    calls = []

    async def handler(msg):
        calls.append(msg)

    await consume_until(q, handler, lambda: len(client.deleted) == 2)
    assert calls == []
    assert sorted(client.deleted) == [(URL, "rh-bad"), (URL, "rh-empty")]


@pytest.mark.asyncio
async def test_consumer_processes_batch_concurrently():
    batch = [
        {"body": body_of(task_id=f"t{i}", run_id="r"), "receipt_handle": f"rh-{i}", "attributes": {}}
        for i in range(4)
    ]
    client = FakeSQSClient([batch])
    q = SQSQueue(client, SQSQueueConfig(queue_url=URL, visibility_timeout=1, max_messages=10))
    in_flight = 0
    max_in_flight = 0

    async def handler(msg):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1

    await consume_until(q, handler, lambda: len(client.deleted) == 4)
    assert len(client.deleted) == 4
    assert max_in_flight >= 2