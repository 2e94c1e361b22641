import dataclasses
import gzip
import hashlib
import json

import pytest

from agentforge.model import ArtifactRef, MemoryMessage, MemorySnapshot, MessageRole
from agentforge.snapshot import (
    ArtifactStore,
    SnapshotError,
    SnapshotIntegrityError,
    Snapshotter,
    s3_key,
)


class InMemoryStore:
    def __init__(self):
        self.objects = {}

    def put(self, key, data):
        blob = bytes(data)
        self.objects[key] = blob
        return hashlib.sha256(blob).hexdigest(), len(blob)

    def get(self, key):
        return self.objects[key]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def snapshotter(store):
    return Snapshotter(store)


def _simple(step_index):
    return MemorySnapshot(
        run_id="run_1",
        step_index=step_index,
        messages=[MemoryMessage(role=MessageRole.USER, content="hello")],
    )


def test_save_and_load(snapshotter):
    original = MemorySnapshot(
        run_id="run_1",
        step_index=0,
        messages=[
            MemoryMessage(role=MessageRole.USER, content="hello"),
            MemoryMessage(role=MessageRole.ASSISTANT, content="hi there"),
        ],
        scratchpad="thinking...",
        tool_state={"counter": 42.0},
    )

    ref = snapshotter.save("tnt_1", "task_1", original)
    assert ref.s3_key == s3_key("tnt_1", "task_1", "run_1", 0)
    assert len(ref.sha256) == 64
    assert ref.size > 0

    loaded = snapshotter.load(ref)
    assert loaded.run_id == original.run_id
    assert loaded.step_index == original.step_index
    assert len(loaded.messages) == 2
    assert loaded.messages[0].content == "hello"
    assert loaded.scratchpad == "thinking..."
    assert loaded.tool_state == {"counter": 42.0}
    assert loaded == original


def test_s3_key():
    assert s3_key("tnt_1", "task_1", "run_1", 42) == "memory/tnt_1/task_1/run_1/step_00000042.json.gz"


def test_stored_blob_is_gzipped_json(snapshotter, store):
    ref = snapshotter.save("tnt_1", "task_1", _simple(3))
    blob = store.objects[ref.s3_key]
    assert blob[:2] == b"\x1f\x8b"
    assert json.loads(gzip.decompress(blob))["run_id"] == "run_1"
    assert ref.size == len(blob)


def test_load_rejects_sha256_mismatch(snapshotter):
    ref = snapshotter.save("tnt_1", "task_1", _simple(1))
    bad = dataclasses.replace(ref, sha256="deadbeef")
    with pytest.raises(SnapshotIntegrityError):
        snapshotter.load(bad)


def test_load_rejects_size_mismatch(snapshotter):
    ref = snapshotter.save("tnt_1", "task_1", _simple(2))
    bad = dataclasses.replace(ref, size=ref.size + 1)
    with pytest.raises(SnapshotIntegrityError):
        snapshotter.load(bad)


def test_load_detects_tampered_bytes(snapshotter, store):
    ref = snapshotter.save("tnt_1", "task_1", _simple(4))
    blob = bytearray(store.objects[ref.s3_key])
    blob[-1] ^= 0xFF
    store.objects[ref.s3_key] = bytes(blob)
    with pytest.raises(SnapshotIntegrityError):
        snapshotter.load(ref)


def test_load_missing_key_raises(snapshotter):
    with pytest.raises(SnapshotError):
        snapshotter.load(ArtifactRef(s3_key="memory/none"))


def test_load_corrupt_payload_without_checks_raises(snapshotter, store):
    store.objects["k"] = b"not gzip at all"
    with pytest.raises(SnapshotError) as info:
        snapshotter.load(ArtifactRef(s3_key="k"))
    assert not isinstance(info.value, SnapshotIntegrityError)


def test_unserializable_tool_state_raises(snapshotter):
    snap = MemorySnapshot(run_id="r", tool_state={"x": object()})
    with pytest.raises(SnapshotError):
        snapshotter.save("tnt_1", "task_1", snap)


def test_integrity_error_is_snapshot_error(snapshotter, store):
    assert isinstance(store, ArtifactStore)
    ref = snapshotter.save("tnt_1", "task_1", _simple(5))
    bad = dataclasses.replace(ref, sha256="0" * 64)
    with pytest.raises(SnapshotError) as info:
        snapshotter.load(bad)
    assert isinstance(info.value, SnapshotIntegrityError)