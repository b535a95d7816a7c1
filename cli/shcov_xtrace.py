import os
import re
import shlex
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from shcov_constants import DEPTH_CHAR
from field_stream import FieldStream, TraceDecodeError
from source_file import SourceFile


class XtraceError(RuntimeError):
    """Decoding Bash's xtrace output failed part-way through.

    `files` holds the coverage gathered before the failure, so callers can
    still report on it."""

    def __init__(self, message: str, files: dict[Path, SourceFile]):
        super().__init__(message)
        self.files = files


@dataclass
class TraceEvent:
    filename: Path
    line_number: int
    src: str
    count: int = 1


class Xtrace:
    """Reads Bash xtrace records from a pipe and folds them into `SourceFile`s.

    Each executed command is announced by the expansion of `ps4`, which
    encodes the current file and line, followed by the command text itself.
    The child writes into `file_descriptor`; `read` drains the other end.

    Use as a context manager: leaving the block closes both ends of the pipe
    if they are still open."""

    FIELDS = ("${BASH_SOURCE[0]-}", "${LINENO-}")
    FIELD_COUNT = len(FIELDS) + 1  # plus the command text

    def __init__(self, field_stream: FieldStream, cwd: Path | None = None, delimiter: str | None = None):
        # A fresh delimiter per run makes a collision with script text a
        # deliberate act rather than an accident.
        self.delimiter = delimiter or uuid.uuid4().hex
        self.cwd = cwd if cwd is not None else Path.cwd()
        self.files: dict[Path, SourceFile] = {}
        # Startup files of our own, whose commands are not reported.
        self.skipped_files: set[Path] = set()

        read_fd, write_fd = os.pipe()
        self._write_fd: int | None = write_fd
        self._reader: IO[bytes] = os.fdopen(read_fd, "rb", buffering=0)
        self.field_stream = field_stream
        self.field_stream.stream = self._reader

    @property
    def ps4(self) -> str:
        d = self.delimiter
        return DEPTH_CHAR + d + d.join(self.FIELDS) + d

    def write_bash_env(self, directory: Path, chained_bash_env: str | None = None) -> Path:
        """Write a BASH_ENV startup file installing `ps4`, and return its path.

        Bash does not import PS4 from the environment when running as root,
        so the child also assigns it at startup. Tracing is paused around the
        assignment, so the delimiter reaches the pipe only inside prompts.
        A BASH_ENV the caller already had is sourced afterwards, traced."""
        lines = ["set +x", f"PS4={shlex.quote(self.ps4)}", "set -x"]
        if chained_bash_env:
            lines.append(f". {shlex.quote(chained_bash_env)}")

        path = Path(os.path.abspath(directory / "bash_env.sh"))
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.skipped_files.add(path)
        return path

    @property
    def file_descriptor(self) -> int:
        """The write end of the trace pipe, to be bound into the child."""
        if self._write_fd is None:
            raise RuntimeError("Xtrace pipe has already been closed for writing")
        return self._write_fd

    def close(self) -> None:
        """Stop writing: once every child holding the pipe has exited too,
        `read` sees end-of-stream and returns."""
        if self._write_fd is not None:
            os.close(self._write_fd)
            self._write_fd = None

    def __enter__(self) -> "Xtrace":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        self._reader.close()
        return False  # propagate exception

    def read(self) -> dict[Path, SourceFile]:
        """Consume the trace until end-of-stream.

        Returns the coverage gathered, keyed by absolute script path.
        Raises `XtraceError` (carrying the partial result) if the stream
        cannot be decoded."""
        records = self.field_stream.each(
            self.delimiter.encode("ascii"), self.FIELD_COUNT, re.escape(DEPTH_CHAR.encode()) + b"+"
        )
        try:
            for fields in records:
                event = self.parse_record(fields)
                if event is not None:
                    self.update(event)
        except TraceDecodeError as e:
            raise XtraceError(str(e), self.files) from e
        finally:
            self._reader.close()

        return self.files

    def parse_record(self, fields: list[bytes]) -> TraceEvent | None:
        """Turn one decoded record into a `TraceEvent`, or None for commands
        that do not come from a script (`bash -c '...'`, interactive input, our
        own startup file)."""
        raw_filename, raw_lineno, raw_src = fields
        if not raw_filename:
            return None

        try:
            lineno = int(raw_lineno)
        except ValueError:
            raise TraceDecodeError(
                f"Expected a line number, got {raw_lineno[:80]!r} (for {raw_filename[:200]!r})"
            ) from None

        filename = Path(os.path.abspath(os.path.join(self.cwd, os.fsdecode(raw_filename))))
        if filename in self.skipped_files:
            return None

        src = raw_src.decode("utf-8", errors="replace")
        return TraceEvent(filename, lineno, src)

    def update(self, event: TraceEvent) -> None:
        if event.filename not in self.files:
            self.files[event.filename] = SourceFile(event.filename)
        self.files[event.filename].add_command(event.src, event.line_number, event.count)
