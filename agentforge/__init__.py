"""Agent task model, memory snapshots, multi-tenant queues and runtime counters."""

__version__ = "0.1.0"
__all__ = ["model", "counters", "snapshot", "queue", "sqs_queue"]