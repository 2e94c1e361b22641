# agentforge

Building blocks for running agent tasks on asyncio workers. The package needs
no third-party libraries at run time.

## Modules

- **`agentforge.model`** holds dataclasses for `Task`, `Run`, `Step`,
  `TokenUsage`, `ArtifactRef`, `CheckpointRef`, `ModelConfig`, `Connection`,
  `SQSMessage`, `MemorySnapshot`, `MemoryMessage`, `MemoryToolCall` and
  `StreamEvent`. It also holds the enums `TaskStatus`, `RunStatus`, `StepType`,
  `StepStatus`, `MessageRole` and `StreamEventType`. Each class has
  `to_dict()` and `from_dict()`, which use the JSON field names. Optional fields
  are left out when they are empty. Timestamps are written as RFC 3339 strings.
- **`agentforge.snapshot`** provides `Snapshotter`. Its `save(tenant_id,
  task_id, snap)` writes a `MemorySnapshot` as gzipped JSON to an
  `ArtifactStore` and returns an `ArtifactRef`. `load(ref)` reads the snapshot
  back. It first checks the stored size and SHA-256 digest and raises
  `SnapshotIntegrityError` if they differ. Other failures raise `SnapshotError`.
  `s3_key()` builds keys of the form
  `memory/<tenant>/<task>/<run>/step_00000042.json.gz`.
- **`agentforge.queue`** provides `MemoryQueue`, an in-process asyncio queue. It:
  - serves tenants round-robin;
  - drops duplicate messages while one is queued, running or finished within the
    dedupe window;
  - retries failed messages with linear backoff;
  - moves messages to a dead-letter list once `max_attempts` is used up.

  `TenantManager` sets per-tenant limits on running and queued messages, a rate
  limit per minute, optional token and cost budgets, and a circuit breaker after
  repeated errors. It records alerts. `normalize_tenant()` and `message_key()`
  are the helpers used for deduplication.
- **`agentforge.sqs_queue`** provides `SQSQueue`. It has the same `enqueue` and
  `start_consumer` interface and is backed by an `SQSClient`. It:
  - adds message group and deduplication ids when the queue URL ends in
    `.fifo`;
  - takes the attempt number from `ApproximateReceiveCount`;
  - extends visibility while a handler runs;
  - shortens visibility after a failure so the message is retried soon.
- **`agentforge.counters`** holds process-wide reliability counters:
  - `inc_claim_conflicts()`, `inc_finalize_failures()`,
    `inc_stream_push_errors()` and `inc_recovery_runs()` add one;
  - `add_recovery_requeued(n)` and `add_recovery_errors(n)` ignore values that
    are not positive;
  - `snapshot_counters()` returns a `CounterSnapshot`;
  - `reset_counters()` sets every counter to zero.

## Install

```
pip install .
pip install ".[test]"   # with test tools
```

## Using the in-memory queue

Handlers are coroutines that take one `SQSMessage`. A handler that returns
acknowledges the message. A handler that raises asks for a retry. Consumers run
until their task is cancelled.

```python
import asyncio
from agentforge.model import SQSMessage
from agentforge.queue import MemoryQueue

async def main():
    queue = MemoryQueue.with_buffer_size(10)
    await queue.enqueue(SQSMessage(tenant_id="t1", task_id="task_1", run_id="run_1"))

    async def handle(msg):
        print("processing", msg.task_id, "attempt", msg.attempt)

    consumer = asyncio.create_task(queue.start_consumer(handle))
    await asyncio.sleep(0.2)
    consumer.cancel()

asyncio.run(main())
```

Settings go in `MemoryQueueConfig`. Durations are in seconds, and values of
zero or less fall back to the defaults.

```python
from agentforge.queue import MemoryQueue, MemoryQueueConfig, TenantManager

manager = TenantManager(max_running=2, max_queued=10, rate_limit_per_minute=100)
queue = MemoryQueue(MemoryQueueConfig(max_attempts=2, retry_backoff=0.02, tenant_manager=manager))
```

When a tenant's limits reject a message, `enqueue` raises `QueueError`. When a
message has no attempts left, it goes to `queue.dead_letters()`. Calling
`await queue.redrive_dead_letters(limit)` puts up to `limit` of them back on the
queue (all of them if `limit <= 0`) and returns how many were re-enqueued. For
tenant state, use `tenant_snapshot(tenant_id)`, `tenant_snapshots()` and
`tenant_alerts(tenant_id, limit)`.

## Saving memory snapshots

Any object with `put(key, data) -> (sha256_hex, size)` and `get(key) -> bytes`
can serve as the artifact store:

```python
import hashlib
from agentforge.model import MemoryMessage, MemorySnapshot
from agentforge.snapshot import Snapshotter

class DictStore:
    def __init__(self):
        self.blobs = {}

    def put(self, key, data):
        self.blobs[key] = data
        return hashlib.sha256(data).hexdigest(), len(data)

    def get(self, key):
        return self.blobs[key]

snapshotter = Snapshotter(DictStore())
ref = snapshotter.save("tnt_1", "task_1", MemorySnapshot(
    run_id="run_1", step_index=0,
    messages=[MemoryMessage(role="user", content="hello")],
))
restored = snapshotter.load(ref)
```

## What is not included

The package has no agent engine, worker, HTTP or WebSocket API, and no command
line. It also has no concrete storage or network clients:

- you supply an `ArtifactStore` for snapshots;
- you supply an `SQSClient` (an async object with `send_message`,
  `receive_messages`, `delete_message`, `change_visibility` and
  `get_queue_attributes`) for `SQSQueue`.

## Tests

```
pytest
```