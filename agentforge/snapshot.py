"""Saving and loading agent memory snapshots as gzipped JSON artifacts."""

from __future__ import annotations

import gzip
import hashlib
import json
import zlib
from typing import Protocol, runtime_checkable

from agentforge.model import ArtifactRef, MemorySnapshot


class SnapshotError(Exception):
    """A memory snapshot could not be saved or loaded."""


class SnapshotIntegrityError(SnapshotError):
    """A stored snapshot does not match its recorded size or checksum."""


@runtime_checkable
class ArtifactStore(Protocol):
    """Storage for opaque artifact blobs addressed by key."""

    def put(self, key: str, data: bytes) -> tuple[str, int]:
        """Store data under key and return its hex SHA-256 and size in bytes."""

    def get(self, key: str) -> bytes:
        """Return the bytes stored under key."""


def s3_key(tenant_id: str, task_id: str, run_id: str, step_index: int) -> str:
    """Return the canonical storage key for a memory snapshot."""
    return f"memory/{tenant_id}/{task_id}/{run_id}/step_{step_index:08d}.json.gz"


class Snapshotter:
    """Saves and loads memory snapshots through an artifact store."""

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    def save(self, tenant_id: str, task_id: str, snap: MemorySnapshot) -> ArtifactRef:
        """Serialize snap to gzipped JSON, store it and return its reference."""
        try:
            data = json.dumps(
                snap.to_dict(), separators=(",", ":"), ensure_ascii=False
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise SnapshotError(f"memory: marshal: {exc}") from exc

        payload = gzip.compress(data, mtime=0)
        key = s3_key(tenant_id, task_id, snap.run_id, snap.step_index)
        try:
            sha, size = self._store.put(key, payload)
        except Exception as exc:
            raise SnapshotError(f"memory: put: {exc}") from exc
        return ArtifactRef(s3_key=key, sha256=sha, size=size)

    def load(self, ref: ArtifactRef) -> MemorySnapshot:
        """Fetch, verify and decode the snapshot that ref points to."""
        try:
            raw = bytes(self._store.get(ref.s3_key))
        except Exception as exc:
            raise SnapshotError(f"memory: get: {exc}") from exc

        if ref.size > 0 and len(raw) != ref.size:
            raise SnapshotIntegrityError(
                "memory: snapshot integrity check failed: snapshot size mismatch "
                f"(expected={ref.size} got={len(raw)})"
            )
        if ref.sha256:
            actual = hashlib.sha256(raw).hexdigest()
            if actual != ref.sha256:
                raise SnapshotIntegrityError(
                    "memory: snapshot integrity check failed: snapshot sha256 mismatch "
                    f"(expected={ref.sha256} got={actual})"
                )

        try:
            data = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error) as exc:
            raise SnapshotError(f"memory: gzip reader: {exc}") from exc

        try:
            decoded = json.loads(data)
        except ValueError as exc:
            raise SnapshotError(f"memory: unmarshal: {exc}") from exc
        if not isinstance(decoded, dict):
            raise SnapshotError("memory: unmarshal: snapshot is not a JSON object")
        try:
            return MemorySnapshot.from_dict(decoded)
        except (TypeError, ValueError, AttributeError) as exc:
            raise SnapshotError(f"memory: unmarshal: {exc}") from exc