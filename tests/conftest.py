import pytest


def unsigned_vlq(value):
    value &= 0xFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def signed_vlq(value):
    # sign bit in bit 0, magnitude above it
    return unsigned_vlq((abs(value) << 1) | (1 if value < 0 else 0))


def header_block(names, encodings=None, signed=None, predictors=None, extra=()):
    lines = ["H Product:Blackbox flight data recorder by Nicholas Sherlock",
             "H Data version:2"]
    lines += list(extra)
    lines.append("H Field I name:" + ",".join(names))
    if encodings is not None:
        lines.append("H Field I encoding:" + ",".join(str(e) for e in encodings))
    if signed is not None:
        lines.append("H Field I signed:" + ",".join(str(s) for s in signed))
    if predictors is not None:
        lines.append("H Field I predictor:" + ",".join(str(p) for p in predictors))
    return "".join(line + "\n" for line in lines).encode("ascii")


@pytest.fixture
def write_log(tmp_path):
    def _write(header, payload=b"", name="LOG00001.BBL"):
        path = tmp_path / name
        path.write_bytes(header + payload)
        return path
    return _write
