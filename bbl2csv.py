import sys
import os
import csv
import logging
import argparse
from struct import pack, unpack
from collections import namedtuple
from enum import Enum
from typing import BinaryIO, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TextIO, Tuple, Any

logger = logging.getLogger("bbl2csv")

# ==========================================
# PART 1: Types & Tools
# ==========================================

class Encoding(Enum):
    SIGNED_VLQ = 'signed_vlq'
    UNSIGNED_VLQ = 'unsigned_vlq'
    FIXED8 = 'fixed8'
    FIXED32_LE = 'fixed32_le'
    UNKNOWN = 'unknown'

# Header encoding numbers; anything else is kept as Encoding.UNKNOWN with its raw code
HEADER_CODES = {0: Encoding.SIGNED_VLQ, 1: Encoding.UNSIGNED_VLQ}

# Bytes that must remain before a field of this encoding is decoded
MIN_WIDTH = {
    Encoding.SIGNED_VLQ: 1, Encoding.UNSIGNED_VLQ: 1,
    Encoding.FIXED8: 1, Encoding.FIXED32_LE: 4,
}

NAME_PREFIX = "H Field I name:"
ENCODING_PREFIX = "H Field I encoding:"
SIGNED_PREFIX = "H Field I signed:"
PREDICTOR_PREFIX = "H Field I predictor:"

DEFAULT_FIELDS = (
    "loopIteration", "time",
    "axisP[0]", "axisP[1]", "axisP[2]",
    "axisI[0]", "axisI[1]", "axisI[2]",
    "axisD[0]", "axisD[1]", "axisD[2]",
    "axisF[0]", "axisF[1]", "axisF[2]",
)

FieldDefinition = namedtuple('FieldDefinition', 'name encoding signed predictor code',
                             defaults=(Encoding.SIGNED_VLQ, False, 0, 0))
DecodeStats = namedtuple('DecodeStats', 'records consumed remaining stopped')

Record = Tuple[int, ...]
Decoder = Callable[["Cursor", Optional[FieldDefinition]], int]

# --- Tools ---
def map_to(key: Any, amap: dict) -> Callable:
    def decorator(fun: Callable) -> Callable:
        amap[key] = fun
        return fun
    return decorator

def toint32(word: int) -> int:
    return unpack('i', pack('I', word & 0xFFFFFFFF))[0]

def sign_extend_8bit(byte: int) -> int: return toint32(byte | 0xFFFFFF00) if byte & 0x80 else byte

def _is_ascii(s: bytes) -> bool:
    try: s.decode('ascii'); return True
    except UnicodeDecodeError: return False

def _parse_u8(s: str) -> int:
    if s.startswith("+"): s = s[1:]
    if not (s.isascii() and s.isdigit()): return 0
    value = int(s)
    return value if value <= 0xFF else 0

def _split_values(line: str, prefix: str) -> List[str]:
    return [s.strip() for s in line[len(prefix):].split(',')]

# ==========================================
# PART 2: Errors
# ==========================================

class BlackboxError(Exception):
    pass

class SchemaError(BlackboxError):
    pass

class DecodeError(BlackboxError):
    def __init__(self, fdef: FieldDefinition, position: int):
        super().__init__(f"Cannot decode field {fdef.name!r} (encoding {fdef.code}) at 0x{position:X}")
        self.field = fdef
        self.position = position

# ==========================================
# PART 3: Header Scanning
# ==========================================

def scan_headers(f: BinaryIO) -> Tuple[List[str], bytes]:
    """Split a log into its trimmed ASCII header lines and the binary payload.

    The first line holding a byte above 0x7F starts the payload and is kept in it.
    """
    lines = []
    while True:
        line = f.readline()
        if not line: return lines, b''
        if not _is_ascii(line): return lines, line + f.read()
        lines.append(line.decode('ascii').strip())

def log_headers(lines: Sequence[str]):
    logger.info("Headers:")
    for index, line in enumerate(lines, 1):
        logger.info("Header %d: %s", index, line)

# ==========================================
# PART 4: Schema
# ==========================================

class Schema:
    def __init__(self, fields: Iterable[FieldDefinition]):
        self._fields = tuple(fields)
        self._names_to_indices = dict()
        for i, fdef in enumerate(self._fields):
            self._names_to_indices.setdefault(fdef.name, i)

    def __len__(self) -> int: return len(self._fields)
    def __iter__(self) -> Iterator[FieldDefinition]: return iter(self._fields)
    def __getitem__(self, index: int) -> FieldDefinition: return self._fields[index]
    def __contains__(self, name: str) -> bool: return name in self._names_to_indices
    def __repr__(self) -> str: return f"Schema({list(self._fields)!r})"

    @property
    def names(self) -> List[str]: return [fdef.name for fdef in self._fields]

    def index(self, name: str) -> Optional[int]: return self._names_to_indices.get(name)

    def get(self, name: str) -> Optional[FieldDefinition]:
        index = self._names_to_indices.get(name)
        return None if index is None else self._fields[index]

def parse_schema(lines: Iterable[str]) -> Schema:
    """Build the I-frame schema from the "H Field I ..." header lines.

    When an attribute line appears more than once the last one wins. Attribute
    lists are aligned to the name list by position; missing entries default to
    encoding 0, unsigned, predictor 0.
    """
    names = None
    encodings, signed, predictors = [], [], []
    for line in lines:
        if line.startswith(NAME_PREFIX): names = _split_values(line, NAME_PREFIX)
        elif line.startswith(ENCODING_PREFIX): encodings = [_parse_u8(s) for s in _split_values(line, ENCODING_PREFIX)]
        elif line.startswith(SIGNED_PREFIX): signed = [s == "1" for s in _split_values(line, SIGNED_PREFIX)]
        elif line.startswith(PREDICTOR_PREFIX): predictors = [_parse_u8(s) for s in _split_values(line, PREDICTOR_PREFIX)]

    if names is None: raise SchemaError(f"'{NAME_PREFIX}' header not found")
    if names == ['']: raise SchemaError(f"'{NAME_PREFIX}' header has no entries")

    fields = []
    for i, name in enumerate(names):
        code = encodings[i] if i < len(encodings) else 0
        fields.append(FieldDefinition(
            name=name,
            encoding=HEADER_CODES.get(code, Encoding.UNKNOWN),
            signed=signed[i] if i < len(signed) else False,
            predictor=predictors[i] if i < len(predictors) else 0,
            code=code,
        ))
    return Schema(fields)

def log_schema(schema: Schema):
    logger.info("Internal Column Definitions:")
    for i, fdef in enumerate(schema, 1):
        logger.info('Column %d: Name="%s", Signed=%s, Predictor=%d, Encoding=%d',
                    i, fdef.name, fdef.signed, fdef.predictor, fdef.code)

# ==========================================
# PART 5: Cursor & Value Decoders
# ==========================================

class Cursor:
    """Forward-only read position over the payload, shared by every field decode."""

    def __init__(self, data: bytes):
        self._data = data
        self._data_len = len(data)
        self._ptr = 0

    def tell(self) -> int: return self._ptr
    def remaining(self) -> int: return self._data_len - self._ptr

    def read(self, n: int) -> bytes:
        chunk = self._data[self._ptr:self._ptr + n]
        self._ptr += len(chunk)
        return chunk

    def __iter__(self) -> Iterator[int]: return self
    def __next__(self) -> int:
        if self._ptr == self._data_len: raise StopIteration
        byte = self._data[self._ptr]
        self._ptr += 1
        return byte

decoder_map: Dict[Encoding, Decoder] = dict()

def _read_vlq(data: Cursor) -> int:
    shift, result = 0, 0
    for byte in data:
        result = (result | ((byte & 0x7F) << shift)) & 0xFFFFFFFF
        if byte < 0x80: break
        shift += 7
    return result

@map_to(Encoding.SIGNED_VLQ, decoder_map)
def _signed_vlq(data: Cursor, fdef: Optional[FieldDefinition] = None) -> int:
    # sign in bit 0, magnitude above it
    value = _read_vlq(data)
    magnitude = value >> 1
    return -magnitude if value & 1 else magnitude

@map_to(Encoding.UNSIGNED_VLQ, decoder_map)
def _unsigned_vlq(data: Cursor, fdef: Optional[FieldDefinition] = None) -> int:
    return toint32(_read_vlq(data))

@map_to(Encoding.FIXED8, decoder_map)
def _fixed8(data: Cursor, fdef: Optional[FieldDefinition] = None) -> int:
    try: byte = next(data)
    except StopIteration: return 0
    return sign_extend_8bit(byte) if fdef is not None and fdef.signed else byte

@map_to(Encoding.FIXED32_LE, decoder_map)
def _fixed32_le(data: Cursor, fdef: Optional[FieldDefinition] = None) -> int:
    if data.remaining() < 4: return 0
    return toint32(unpack('<I', data.read(4))[0])

def decode_value(fdef: FieldDefinition, cursor: Cursor) -> int:
    decoder = decoder_map.get(fdef.encoding)
    if decoder is None: raise DecodeError(fdef, cursor.tell())
    return decoder(cursor, fdef)

# ==========================================
# PART 6: Record Decoder
# ==========================================

class RecordDecoder:
    def __init__(self, payload: bytes, schema: Schema, columns: Optional[Sequence[str]] = None):
        if not len(schema): raise SchemaError("Schema has no columns")
        self._payload = payload
        self._columns = list(columns) if columns is not None else schema.names
        if not self._columns: raise SchemaError("No columns selected for decoding")
        # None marks a column the schema does not define
        self._plan = [(name, schema.get(name)) for name in self._columns]
        self._cursor = Cursor(payload)
        self._records = 0
        self._stopped = None

    @property
    def columns(self) -> List[str]: return list(self._columns)

    @property
    def stats(self) -> DecodeStats:
        return DecodeStats(records=self._records, consumed=self._cursor.tell(),
                           remaining=self._cursor.remaining(), stopped=self._stopped)

    def records(self) -> Iterator[Record]:
        cursor = self._cursor = Cursor(self._payload)
        self._records, self._stopped = 0, None
        while cursor.remaining():
            record = self._decode_record(cursor)
            if record is None: break
            self._records += 1
            yield record

    def _decode_record(self, cursor: Cursor) -> Optional[Record]:
        start = cursor.tell()
        values = []
        for name, fdef in self._plan:
            if fdef is None:
                return self._stop(f"column {name!r} is not in the schema", start, logging.WARNING)
            if fdef.encoding not in MIN_WIDTH:
                return self._stop(f"unsupported encoding {fdef.code} for {name!r}", start, logging.WARNING)
            if cursor.remaining() < MIN_WIDTH[fdef.encoding]:
                return self._stop(f"payload ends inside field {name!r}", start, logging.DEBUG)
            values.append(decode_value(fdef, cursor))
        return tuple(values)

    def _stop(self, reason: str, start: int, level: int) -> None:
        self._stopped = reason
        logger.log(level, "Decoding stopped at record %d (offset 0x%X): %s",
                   self._records + 1, start, reason)
        return None

# ==========================================
# PART 7: Projection & Output
# ==========================================

class FieldProjector:
    """Pick the desired columns, in the caller's order, out of decoded records.

    Desired names the source columns do not contain are dropped.
    """

    def __init__(self, source_columns: Sequence[str], desired: Iterable[str]):
        names_to_indices = dict()
        for i, name in enumerate(source_columns):
            names_to_indices.setdefault(name, i)
        selected = [(name, names_to_indices[name]) for name in desired if name in names_to_indices]
        self._columns = [name for name, _ in selected]
        self._indices = [index for _, index in selected]

    @property
    def columns(self) -> List[str]: return list(self._columns)

    def project(self, record: Record) -> Record:
        return tuple(record[i] for i in self._indices)

    def rows(self, records: Iterable[Record]) -> Iterator[Record]:
        for record in records:
            yield self.project(record)

def write_csv(f: TextIO, header: Sequence[str], rows: Iterable[Record]) -> int:
    writer = csv.writer(f)
    writer.writerow(header)
    count = 0
    for row in rows:
        writer.writerow([str(x) for x in row])
        count += 1
    return count

# ==========================================
# PART 8: Log Facade & Conversion
# ==========================================

class BlackboxLog:
    def __init__(self, headers: Sequence[str], payload: bytes):
        self._headers = list(headers)
        self._payload = payload
        self._schema = parse_schema(self._headers)
        self._decoder = None

    @staticmethod
    def load(path: str) -> "BlackboxLog":
        with open(path, "rb") as f:
            headers, payload = scan_headers(f)
        return BlackboxLog(headers, payload)

    def records(self, columns: Optional[Sequence[str]] = None) -> Iterator[Record]:
        self._decoder = RecordDecoder(self._payload, self._schema, columns)
        return self._decoder.records()

    @property
    def headers(self) -> List[str]: return list(self._headers)
    @property
    def schema(self) -> Schema: return self._schema
    @property
    def payload(self) -> bytes: return self._payload
    @property
    def stats(self) -> Optional[DecodeStats]: return self._decoder.stats if self._decoder else None

def output_path(path: str, output_dir: Optional[str] = None) -> str:
    base_name, _ = os.path.splitext(path)
    if output_dir: base_name = os.path.join(output_dir, os.path.basename(base_name))
    return f"{base_name}.csv"

def convert(path: str, out_path: Optional[str] = None,
            fields: Optional[Sequence[str]] = DEFAULT_FIELDS) -> DecodeStats:
    """Decode one log and write the selected columns to CSV.

    With fields=None every schema column is written in schema order.
    """
    log = BlackboxLog.load(path)
    log_headers(log.headers)
    log_schema(log.schema)

    projector = FieldProjector(log.schema.names, log.schema.names if fields is None else fields)
    records = log.records()
    with open(out_path or output_path(path), 'w', newline='') as f:
        write_csv(f, projector.columns, projector.rows(records))
    return log.stats

# ==========================================
# PART 9: Main Execution (CLI)
# ==========================================

LOG_EXTENSIONS = ('.bbl', '.bfl')

def _field_list(value: str) -> List[str]:
    fields = [s.strip() for s in value.split(",") if s.strip()]
    if not fields: raise argparse.ArgumentTypeError("expected at least one field name")
    return fields

def _collect_files(paths: Sequence[str]) -> List[str]:
    files_to_process = []
    for p in paths:
        if os.path.isfile(p):
            if p.lower().endswith(LOG_EXTENSIONS):
                files_to_process.append(p)
            else:
                print(f"Skipping non-bbl file: {p}")
        elif os.path.isdir(p):
            print(f"Scanning directory: {p}")
            for root, dirs, files in os.walk(p):
                dirs.sort()
                for file in sorted(files):
                    if file.lower().endswith(LOG_EXTENSIONS):
                        files_to_process.append(os.path.join(root, file))
        else:
            print(f"Error: Path not found: {p}")
    return files_to_process

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser_args = argparse.ArgumentParser(description="Blackbox log to CSV converter")
    parser_args.add_argument("paths", nargs='+', help="Path to .bbl files or directories")
    parser_args.add_argument("-f", "--fields", type=_field_list, default=list(DEFAULT_FIELDS),
                             help="Comma separated field names to export (default: loop, time and PIDF terms)")
    parser_args.add_argument("-a", "--all-fields", action="store_true", help="Export every field in header order")
    parser_args.add_argument("-o", "--output-dir", help="Directory for CSV files (default: next to each log)")
    parser_args.add_argument("-q", "--quiet", action="store_true", help="Do not print headers and column definitions")

    args = parser_args.parse_args(argv)
    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO, format="%(message)s")

    files_to_process = _collect_files(args.paths)
    if not files_to_process:
        print("No .bbl files found.")
        return 1

    print(f"Found {len(files_to_process)} .bbl files to process.")
    print("-" * 40)
    if args.output_dir: os.makedirs(args.output_dir, exist_ok=True)
    fields = None if args.all_fields else args.fields

    failed = 0
    for log_file in files_to_process:
        print(f"Processing: {log_file}")
        out_csv = output_path(log_file, args.output_dir)
        try:
            stats = convert(log_file, out_csv, fields)
            print(f"    - Completed: {out_csv} ({stats.records} records)")
            if stats.remaining:
                print(f"    - {stats.remaining} trailing bytes not decoded")
        except (BlackboxError, OSError) as e:
            print(f"  Failed to process {log_file}: {e}")
            failed += 1
        print("-" * 40)
    return 1 if failed else 0

if __name__ == "__main__":
    sys.exit(main())
