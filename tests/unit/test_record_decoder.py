import json

import pytest

from changefeed_follower.decoder import RecordDecoder, parse_record
from changefeed_follower.errors import ProtocolError
from changefeed_follower.models import ChangeRecord, FeedEnd, Heartbeat, Revision


def _line(doc_id: str, seq: str, rev: str = "1-a", **extra) -> bytes:
    payload = {"seq": seq, "id": doc_id, "changes": [{"rev": rev}]}
    payload.update(extra)
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


_STREAM = (
    _line("alpha", "1-g1AAAA")
    + b"\n"
    + _line("beta", "2-g1AAAB", rev="3-c", deleted=True)
    + _line("gamma", "3-g1AAAC", doc={"_id": "gamma", "name": "café"})
    + b"\n"
    + b'{"last_seq": "3-g1AAAC", "pending": 0}\n'
)


def _decode_all(decoder: RecordDecoder, chunks) -> list:
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.finish())
    return events


@pytest.mark.unit
def test_stream_decodes_records_heartbeats_and_trailer():
    events = _decode_all(RecordDecoder(), [_STREAM])

    assert [type(event) for event in events] == [
        ChangeRecord,
        Heartbeat,
        ChangeRecord,
        ChangeRecord,
        Heartbeat,
        FeedEnd,
    ]
    alpha, _, beta, gamma, _, end = events
    assert alpha == ChangeRecord(
        id="alpha", seq="1-g1AAAA", revisions=(Revision("1-a"),)
    )
    assert beta.deleted is True
    assert beta.revisions == (Revision("3-c"),)
    assert gamma.doc == {"_id": "gamma", "name": "café"}
    assert end == FeedEnd(last_seq="3-g1AAAC", pending=0)


@pytest.mark.unit
def test_chunk_boundaries_never_change_the_decoded_events():
    expected = _decode_all(RecordDecoder(), [_STREAM])

    for offset in range(len(_STREAM) + 1):
        chunks = [_STREAM[:offset], _STREAM[offset:]]
        assert _decode_all(RecordDecoder(), chunks) == expected, offset

    single_bytes = [_STREAM[index : index + 1] for index in range(len(_STREAM))]
    assert _decode_all(RecordDecoder(), single_bytes) == expected


@pytest.mark.unit
def test_partial_line_is_buffered_until_newline():
    decoder = RecordDecoder()
    line = _line("alpha", "1-x")

    assert list(decoder.feed(line[:10])) == []
    assert decoder.buffered == 10

    events = list(decoder.feed(line[10:]))
    assert [event.id for event in events] == ["alpha"]
    assert decoder.buffered == 0


@pytest.mark.unit
def test_finish_flushes_unterminated_trailer():
    decoder = RecordDecoder()
    assert list(decoder.feed(b'{"last_seq": "9-z"}')) == []

    assert list(decoder.finish()) == [FeedEnd(last_seq="9-z", pending=None)]
    assert list(decoder.finish()) == []


@pytest.mark.unit
def test_whitespace_only_lines_are_heartbeats():
    events = list(RecordDecoder().feed(b"\n \r\n"))
    assert events == [Heartbeat(), Heartbeat()]


@pytest.mark.unit
@pytest.mark.parametrize(
    "line",
    [
        b'{"seq": "1-a", "id": \n',
        b"[1, 2, 3]\n",
        b'{"seq": "1-a", "changes": []}\n',
        b'{"id": "alpha", "changes": []}\n',
        b'{"seq": "1-a", "id": "alpha", "changes": [{"rev": 3}]}\n',
        b"\xff\xfe\n",
    ],
)
def test_malformed_lines_raise_protocol_error(line):
    with pytest.raises(ProtocolError):
        list(RecordDecoder().feed(line))


@pytest.mark.unit
def test_numeric_and_array_sequences_become_opaque_strings():
    record = parse_record({"seq": 42, "id": "alpha", "changes": [{"rev": "1-a"}]})
    assert record.seq == "42"

    legacy = parse_record({"seq": [7, "g1A"], "id": "beta", "changes": []})
    assert legacy.seq == '[7,"g1A"]'
    assert legacy.revisions == ()


@pytest.mark.unit
def test_decode_payload_builds_batch():
    payload = {
        "results": [
            {"seq": "1-a", "id": "alpha", "changes": [{"rev": "1-x"}]},
            {"seq": "2-b", "id": "beta", "changes": [{"rev": "2-y"}], "deleted": True},
        ],
        "last_seq": "2-b",
        "pending": 5,
    }

    batch = RecordDecoder().decode_payload(payload)

    assert [record.id for record in batch.records] == ["alpha", "beta"]
    assert batch.records[1].deleted is True
    assert batch.last_seq == "2-b"
    assert batch.pending == 5


@pytest.mark.unit
def test_decode_payload_tolerates_missing_pending():
    batch = RecordDecoder().decode_payload({"results": [], "last_seq": "0"})
    assert batch.records == ()
    assert batch.pending is None


@pytest.mark.unit
def test_decode_payload_requires_results_array():
    with pytest.raises(ProtocolError):
        RecordDecoder().decode_payload({"last_seq": "1"})
    with pytest.raises(ProtocolError):
        RecordDecoder().decode_payload({"results": ["alpha"], "last_seq": "1"})


@pytest.mark.unit
def test_record_round_trips_to_wire_format():
    raw = {
        "seq": "5-e",
        "id": "epsilon",
        "changes": [{"rev": "2-b"}, {"rev": "2-c"}],
        "deleted": True,
        "doc": {"_id": "epsilon", "_deleted": True},
    }
    assert parse_record(raw).to_dict() == raw
