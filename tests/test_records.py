import pytest

from bbl2csv import DecodeStats, Encoding, FieldDefinition, RecordDecoder, Schema, SchemaError, parse_schema

from conftest import signed_vlq, unsigned_vlq


@pytest.fixture
def schema():
    return parse_schema([
        "H Field I name:loopIteration,time",
        "H Field I encoding:1,1",
        "H Field I signed:0,0",
    ])


def test_single_record(schema):
    decoder = RecordDecoder(b"\x05\x0a", schema)
    assert list(decoder.records()) == [(5, 10)]
    assert decoder.stats == DecodeStats(records=1, consumed=2, remaining=0, stopped=None)


def test_empty_payload_yields_nothing(schema):
    decoder = RecordDecoder(b"", schema)
    assert list(decoder.records()) == []
    assert decoder.stats == DecodeStats(0, 0, 0, None)


def test_trailing_partial_record_is_dropped(schema):
    payload = unsigned_vlq(1) + unsigned_vlq(1000) + unsigned_vlq(2) + unsigned_vlq(2000) + unsigned_vlq(3)
    decoder = RecordDecoder(payload, schema)
    assert list(decoder.records()) == [(1, 1000), (2, 2000)]
    assert decoder.stats.records == 2
    assert "time" in decoder.stats.stopped


def test_mixed_encodings():
    schema = parse_schema(["H Field I name:i,p", "H Field I encoding:1,0"])
    payload = unsigned_vlq(200) + signed_vlq(-37) + unsigned_vlq(201) + signed_vlq(5)
    assert list(RecordDecoder(payload, schema).records()) == [(200, -37), (201, 5)]


def test_unknown_encoding_stops_decoding():
    schema = parse_schema(["H Field I name:a,b", "H Field I encoding:1,7"])
    decoder = RecordDecoder(b"\x01\x02\x03\x04", schema)
    assert list(decoder.records()) == []
    assert "unsupported encoding 7" in decoder.stats.stopped
    assert decoder.stats.consumed == 1


def test_restricted_columns_decode_in_given_order(schema):
    decoder = RecordDecoder(b"\x01\x02\x03\x04", schema, columns=["time"])
    assert decoder.columns == ["time"]
    assert list(decoder.records()) == [(1,), (2,), (3,), (4,)]


def test_restricted_column_missing_from_schema(schema):
    decoder = RecordDecoder(b"\x01\x02", schema, columns=["time", "gyroADC[0]"])
    assert list(decoder.records()) == []
    assert "gyroADC[0]" in decoder.stats.stopped


def test_fixed32_tail_shorter_than_width_terminates():
    schema = Schema([FieldDefinition("t", Encoding.FIXED32_LE)])
    decoder = RecordDecoder(b"\x10\x00\x00\x00\x01\x02", schema)
    assert list(decoder.records()) == [(16,)]
    assert decoder.stats.remaining == 2


def test_fixed8_columns():
    schema = Schema([FieldDefinition("a", Encoding.FIXED8, True), FieldDefinition("b", Encoding.FIXED8)])
    assert list(RecordDecoder(b"\xfe\xfe\x01\x02", schema).records()) == [(-2, 254), (1, 2)]


def test_records_can_be_replayed(schema):
    decoder = RecordDecoder(b"\x05\x0a", schema)
    assert list(decoder.records()) == list(decoder.records()) == [(5, 10)]


def test_empty_schema_is_rejected():
    with pytest.raises(SchemaError):
        RecordDecoder(b"\x01", Schema([]))


def test_empty_column_selection_is_rejected(schema):
    with pytest.raises(SchemaError):
        RecordDecoder(b"\x01", schema, columns=[])
