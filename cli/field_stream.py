"""
Incremental framing of delimiter-separated trace records.

The stream is read in whatever chunks the underlying file hands back, so a
delimiter, a field, or a whole record may be split across reads. Only the
delimiter terminates a field: field contents may contain newlines.

Record layout
-------------
    MARKER D f1 D f2 ... D fN  \n MARKER D f1 D ... D fN \n

Splitting on `D` yields a prefix chunk ending in MARKER, followed by groups of
N fields. The last field of each group also carries the line break and MARKER
introducing the next record; those are stripped before the record is handed
out. The final record instead ends with a single line break.
"""

import re
from collections.abc import Iterator
from typing import Protocol

DEFAULT_CHUNK_SIZE = 64 * 1024


class TraceDecodeError(ValueError):
    pass


class ReadableStream(Protocol):
    def read(self, size: int = -1, /) -> bytes: ...


class FieldStream:
    def __init__(self, stream: ReadableStream | None = None, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """`stream` may be attached later (see `shcov_xtrace.Xtrace`), but must be
        set before iterating."""
        self.stream = stream
        self.chunk_size = chunk_size

    def chunks(self) -> Iterator[bytes]:
        if self.stream is None:
            raise RuntimeError("FieldStream has no stream to read from")
        while chunk := self.stream.read(self.chunk_size):
            yield chunk

    def each_field(self, delimiter: bytes) -> Iterator[bytes]:
        """Yield the bytes between consecutive delimiters, then whatever
        follows the last delimiter once the stream is exhausted.

        Each byte is scanned once, so a single huge field (a traced
        `x=$(cat big_file)`) costs no more than many small ones."""
        if not delimiter:
            raise ValueError("Delimiter must not be empty")

        buf = bytearray()
        for chunk in self.chunks():
            # A delimiter may straddle the previous chunk and this one.
            scan_from = max(0, len(buf) - len(delimiter) + 1)
            buf += chunk

            start = 0
            while (end := buf.find(delimiter, scan_from)) != -1:
                yield bytes(buf[start:end])
                start = scan_from = end + len(delimiter)
            if start:
                del buf[:start]
        yield bytes(buf)

    def each(self, delimiter: bytes, field_count: int, marker: bytes) -> Iterator[list[bytes]]:
        """Yield records of `field_count` fields.

        `marker` is a regex fragment (unanchored) matching the bytes that
        introduce each record, e.g. rb"\\++" for one or more plus signs.

        Raises `TraceDecodeError` if the stream ends part-way through a record,
        or if a record is not followed by another record's marker yet more
        data follows.
        """
        if field_count < 1:
            raise ValueError(f"field_count must be positive, got {field_count}")
        boundary = re.compile(rb"(?:\A|\n)(?:" + marker + rb")\Z")

        fields = self.each_field(delimiter)
        prefix = next(fields)
        record: list[bytes] = []
        started = boundary.search(prefix) is not None

        for field in fields:
            if not started:
                raise TraceDecodeError(
                    f"Data before the first delimiter does not end with a record marker: "
                    f"{prefix[-80:]!r}"
                )
            record.append(field)
            if len(record) < field_count:
                continue

            last = record[-1]
            m = boundary.search(last)
            if m is not None:
                record[-1] = last[: m.start()]
                yield record
                record = []
                continue

            # No marker: this can only be the final record of the stream.
            following = next(fields, None)
            if following is not None:
                raise TraceDecodeError(
                    f"Record is not followed by a record marker: {record!r}"
                )
            record[-1] = last.removesuffix(b"\n")
            yield record
            return

        if record:
            raise TraceDecodeError(
                f"Stream ended after {len(record)} of {field_count} fields: {record!r}"
            )
