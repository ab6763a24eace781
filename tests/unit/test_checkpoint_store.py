import json

import pytest

from changefeed_follower.checkpoint import (
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
)
from changefeed_follower.follower import ChangesFollower


class _RecordingTransport:
    def __init__(self, payloads):
        self._payloads = list(payloads)
        self.since: list[str] = []

    def issue(self, params):
        self.since.append(params.since)
        return self._payloads.pop(0)


def _payload(*seqs: str) -> dict:
    return {
        "results": [
            {"seq": seq, "id": f"doc-{seq}", "changes": [{"rev": "1-a"}]} for seq in seqs
        ],
        "last_seq": seqs[-1] if seqs else "0",
        "pending": 0,
    }


@pytest.mark.unit
def test_persistent_store_persists_across_instances(tmp_path):
    store_path = tmp_path / "resume_tokens.json"
    store = PersistentCheckpointStore(store_path)

    store.save("orders", "12-g1AAAA")
    assert store.load("orders") == "12-g1AAAA"

    persisted = json.loads(store_path.read_text())
    assert persisted == {"orders": "12-g1AAAA"}

    reloaded = PersistentCheckpointStore(store_path)
    assert reloaded.load("orders") == "12-g1AAAA"
    assert reloaded.path == store_path


@pytest.mark.unit
def test_tokens_are_opaque_and_always_overwritten(tmp_path):
    store = PersistentCheckpointStore(tmp_path / "resume.json", fsync=True)
    store.save("orders", "9-zzz")
    store.save("orders", "10-aaa")
    assert store.load("orders") == "10-aaa"


@pytest.mark.unit
def test_corrupt_file_is_ignored(tmp_path):
    path = tmp_path / "resume.json"
    path.write_text("{not json")
    store = PersistentCheckpointStore(path)
    assert store.load("orders") is None

    path.write_text(json.dumps(["orders"]))
    assert PersistentCheckpointStore(path).load("orders") is None


@pytest.mark.unit
def test_manual_reset_requires_expected_token(tmp_path):
    store = PersistentCheckpointStore(tmp_path / "resume.json")
    store.save("orders", "200-b")

    with pytest.raises(ValueError):
        store.reset("orders")

    with pytest.raises(ValueError):
        store.reset("orders", expected_token="150-a")

    store.reset("orders", expected_token="200-b")
    assert store.load("orders") is None

    reloaded = PersistentCheckpointStore(tmp_path / "resume.json")
    assert reloaded.load("orders") is None


@pytest.mark.unit
def test_manual_reset_can_rewind(tmp_path):
    store = PersistentCheckpointStore(tmp_path / "resume.json")
    store.save("orders", "500-e")

    store.reset("orders", expected_token="500-e", new_token="120-a")
    assert store.load("orders") == "120-a"

    store.reset("orders", new_token="0", force=True)
    contents = json.loads((tmp_path / "resume.json").read_text())
    assert contents == {"orders": "0"}


@pytest.mark.unit
def test_in_memory_store_reset_semantics():
    store = InMemoryCheckpointStore()
    assert store.load("orders") is None

    with pytest.raises(ValueError):
        store.reset("orders", expected_token="1-a")

    store.save("orders", "1-a")
    store.reset("orders", expected_token="1-a", new_token="2-b")
    assert store.load("orders") == "2-b"

    store.reset("orders", force=True)
    assert store.load("orders") is None


@pytest.mark.unit
def test_new_follower_resumes_from_persisted_seq(tmp_path):
    checkpoint_path = tmp_path / "checkpoint.json"
    transport = _RecordingTransport([_payload("1-a", "2-b"), _payload("3-c")])

    store = PersistentCheckpointStore(checkpoint_path)
    for change in ChangesFollower(transport).start_one_off():
        store.save("orders", change.seq)
    assert store.load("orders") == "2-b"

    # Re-instantiate store to simulate restart
    resumed_store = PersistentCheckpointStore(checkpoint_path)
    resumed = ChangesFollower(transport, since=resumed_store.load("orders"))
    seqs = [change.seq for change in resumed.start_one_off()]

    assert seqs == ["3-c"]
    assert transport.since == ["0", "2-b"]
