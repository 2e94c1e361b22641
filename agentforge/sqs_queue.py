"""Queue implementation backed by an SQS-style message service.

The service itself is reached through an ``SQSClient``. Received messages are
mappings with the keys ``"body"`` (str or None), ``"receipt_handle"`` (str or
None) and ``"attributes"`` (a mapping of str to str).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Protocol, Sequence

from agentforge.model import SQSMessage
from agentforge.queue import MessageHandler, QueueError

logger = logging.getLogger(__name__)

DEFAULT_WAIT_TIME_SECONDS = 20
DEFAULT_VISIBILITY_TIMEOUT = 300
DEFAULT_MAX_MESSAGES = 10
_MAX_RECEIVE_BACKOFF = 30.0
_HEARTBEAT_TIMEOUT = 5.0
_RETRY_HINT_TIMEOUT = 3.0
_RECEIVE_COUNT_ATTRIBUTE = "ApproximateReceiveCount"


class SQSClient(Protocol):
    """The calls SQSQueue makes on the message service."""

    async def send_message(
        self, queue_url: str, body: str, group_id: str | None, dedupe_id: str | None
    ) -> None:
        """Send one message; group and dedupe ids are given for FIFO queues only."""

    async def receive_messages(
        self,
        queue_url: str,
        max_messages: int,
        wait_time_seconds: int,
        visibility_timeout: int,
    ) -> Sequence[Mapping[str, Any]]:
        """Long-poll for messages, including their receive-count attribute."""

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        """Delete a received message."""

    async def change_visibility(
        self, queue_url: str, receipt_handle: str, visibility_timeout: int
    ) -> None:
        """Set the visibility timeout of a received message."""

    async def get_queue_attributes(
        self, queue_url: str, attribute_names: Sequence[str]
    ) -> Mapping[str, str]:
        """Return the requested attributes of the queue."""


@dataclass
class SQSQueueConfig:
    """Settings for SQSQueue; non-positive values fall back to defaults."""

    queue_url: str = ""
    wait_time_seconds: int = 0
    visibility_timeout: int = 0
    max_messages: int = 0


def group_id_for_message(msg: SQSMessage | None) -> str:
    """Return the FIFO message group id, scoped to task and run."""
    if msg is None:
        return "default"
    if msg.task_id and msg.run_id:
        return f"{msg.task_id}#{msg.run_id}"
    return msg.task_id or msg.run_id or msg.tenant_id or "default"


def dedupe_id_for_message(msg: SQSMessage | None) -> str:
    """Return the FIFO deduplication id for a message."""
    if msg is None:
        return ""
    if msg.dedupe_key:
        return msg.dedupe_key
    return f"{msg.task_id}#{msg.run_id}"


class SQSQueue:
    """Queue that publishes to and long-polls an SQS-style service."""

    def __init__(self, client: SQSClient, config: SQSQueueConfig) -> None:
        if client is None:
            raise QueueError("queue: sqs client is required")
        queue_url = (config.queue_url or "").strip()
        if not queue_url:
            raise QueueError("queue: queue url is required")
        self.client = client
        self.queue_url = queue_url
        self.wait_time_seconds = (
            config.wait_time_seconds if config.wait_time_seconds > 0 else DEFAULT_WAIT_TIME_SECONDS
        )
        self.visibility_timeout = (
            config.visibility_timeout
            if config.visibility_timeout > 0
            else DEFAULT_VISIBILITY_TIMEOUT
        )
        self.max_messages = (
            config.max_messages if 0 < config.max_messages <= 10 else DEFAULT_MAX_MESSAGES
        )
        self.handler_concurrency = self.max_messages
        self.is_fifo = queue_url.endswith(".fifo")

    async def health_check(self) -> None:
        """Raise QueueError if the queue cannot be reached."""
        try:
            await self.client.get_queue_attributes(
                self.queue_url, ["ApproximateNumberOfMessages"]
            )
        except Exception as exc:
            raise QueueError(f"queue: sqs health check: {exc}") from exc

    async def enqueue(self, msg: SQSMessage) -> None:
        """Publish a task pointer message."""
        if msg is None:
            raise QueueError("queue: enqueue: nil message")
        cp = replace(msg)
        if cp.attempt <= 0:
            cp.attempt = 1
        try:
            body = json.dumps(cp.to_dict(), separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise QueueError(f"queue: marshal message: {exc}") from exc

        group_id = dedupe_id = None
        if self.is_fifo:
            # Grouping by task/run limits head-of-line blocking to a single run.
            group_id = group_id_for_message(cp)
            dedupe_id = dedupe_id_for_message(cp)
        try:
            await self.client.send_message(self.queue_url, body, group_id, dedupe_id)
        except Exception as exc:
            raise QueueError(f"queue: sqs send message: {exc}") from exc

    async def start_consumer(self, handler: MessageHandler) -> None:
        """Long-poll the queue and dispatch messages to handler until cancelled."""
        if handler is None:
            raise QueueError("queue: nil handler")
        backoff = 1.0
        while True:
            try:
                messages = await self.client.receive_messages(
                    self.queue_url,
                    self.max_messages,
                    self.wait_time_seconds,
                    self.visibility_timeout,
                )
            except Exception as exc:
                logger.warning("queue: sqs receive message failed: %s", exc)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_RECEIVE_BACKOFF)
                continue
            backoff = 1.0
            await self._process_batch(handler, list(messages or []))

    async def _process_batch(
        self, handler: MessageHandler, messages: list[Mapping[str, Any]]
    ) -> None:
        if not messages:
            return
        concurrency = max(1, min(self.handler_concurrency, len(messages)))
        semaphore = asyncio.Semaphore(concurrency)

        async def run(raw: Mapping[str, Any]) -> None:
            async with semaphore:
                await self._process_message(handler, raw)

        tasks = [asyncio.create_task(run(raw)) for raw in messages]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _process_message(self, handler: MessageHandler, raw: Mapping[str, Any]) -> None:
        receipt = raw.get("receipt_handle")
        body = raw.get("body")
        if body is None:
            try:
                await self._delete(receipt)
            except QueueError as exc:
                logger.warning("queue: drop empty sqs message failed: %s", exc)
            return

        try:
            decoded = json.loads(body)
            if not isinstance(decoded, dict):
                raise ValueError("payload is not a JSON object")
            msg = SQSMessage.from_dict(decoded)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("queue: invalid sqs payload, dropping message: %s", exc)
            try:
                await self._delete(receipt)
            except QueueError as del_exc:
                logger.warning("queue: delete invalid sqs message failed: %s", del_exc)
            return

        attributes = raw.get("attributes") or {}
        count = attributes.get(_RECEIVE_COUNT_ATTRIBUTE)
        if count is not None:
            try:
                received = int(count)
            except (TypeError, ValueError):
                received = 0
            if received > 0:
                msg.attempt = received
        if msg.attempt <= 0:
            msg.attempt = 1

        heartbeat = self._start_visibility_heartbeat(receipt)
        failed = False
        try:
            await handler(msg)
        except Exception as exc:
            failed = True
            logger.debug("queue: handler failed task=%s run=%s: %s", msg.task_id, msg.run_id, exc)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

        if failed:
            # Leave the message in place for the redrive policy, but retry soon.
            try:
                await self._accelerate_retry(receipt)
            except QueueError as exc:
                logger.warning("queue: accelerate retry visibility failed: %s", exc)
            return
        try:
            await self._delete(receipt)
        except QueueError as exc:
            logger.warning("queue: delete processed sqs message failed: %s", exc)

    def _start_visibility_heartbeat(self, receipt: str | None) -> asyncio.Task | None:
        if self.visibility_timeout <= 1 or not receipt:
            return None
        interval = max(float(self.visibility_timeout // 2), 5.0)

        async def beat() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await asyncio.wait_for(
                        self.client.change_visibility(
                            self.queue_url, receipt, self.visibility_timeout
                        ),
                        _HEARTBEAT_TIMEOUT,
                    )
                except Exception as exc:
                    logger.warning("queue: visibility heartbeat failed: %s", exc)

        return asyncio.create_task(beat())

    async def _delete(self, receipt: str | None) -> None:
        if not receipt:
            return
        try:
            await self.client.delete_message(self.queue_url, receipt)
        except Exception as exc:
            raise QueueError(f"queue: sqs delete message: {exc}") from exc

    async def _accelerate_retry(self, receipt: str | None) -> None:
        if not receipt:
            return
        retry_visibility = 1
        if 0 < self.visibility_timeout < retry_visibility:
            retry_visibility = self.visibility_timeout
        try:
            await asyncio.wait_for(
                self.client.change_visibility(self.queue_url, receipt, retry_visibility),
                _RETRY_HINT_TIMEOUT,
            )
        except Exception as exc:
            raise QueueError(f"queue: sqs accelerate retry visibility: {exc}") from exc