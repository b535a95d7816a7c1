"""
Per-line coverage model for a single Bash script.

A physical line can hold several independent commands (`a && b`, `x; y`),
and Bash traces each of them separately. A `SourceFile` therefore keeps, for
every line number, a mapping from command text to `Command`, and only sums
those counts when reducing to a coverage array.

Coverage states of a `Command`
------------------------------
None (IGNORED)
    Never analyzed: a placeholder the lexer has not promoted, or a line that
    is not coverage-relevant.
0 (UNCOVERED)
    Relevant, but never executed.
n > 0
    Executed `n` times.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Literal, Protocol, overload

import bash_lexer
from shcov_types import CoverageArray, LineCoverage

type CommandStatus = Literal["covered", "missed", "never"]
type FilterPattern = str | re.Pattern[str]


class CoverageLine(Protocol):
    """What a report renderer needs from one tracked chunk of source."""

    @property
    def src(self) -> str: ...

    @property
    def line_number(self) -> int: ...

    @property
    def coverage(self) -> LineCoverage: ...


class Lexer(Protocol):
    def relevant(self, line: str) -> bool: ...


@dataclass
class Command:
    """One distinct chunk of source text executed on a given line.

    Two commands are equal when their `src` and `line_number` are; the
    coverage count does not take part in comparisons."""

    UNCOVERED = 0
    IGNORED = None

    src: str
    line_number: int
    coverage: LineCoverage = field(default=None, compare=False)

    def increment(self, n: LineCoverage = 1) -> LineCoverage:
        """Add `n` executions; a never-analyzed command starts counting at `n`."""
        if n is None:
            return self.coverage
        self.coverage = n if self.coverage is None else self.coverage + n
        return self.coverage

    def uncovered(self) -> None:
        self.coverage = Command.UNCOVERED

    def ignored(self) -> None:
        self.coverage = Command.IGNORED

    @property
    def empty(self) -> bool:
        return self.src == ""

    @property
    def covered(self) -> bool:
        return self.coverage is not None and self.coverage > 0

    @property
    def missed(self) -> bool:
        return self.coverage == Command.UNCOVERED

    @property
    def never(self) -> bool:
        return self.coverage is None

    @property
    def status(self) -> CommandStatus:
        if self.covered:
            return "covered"
        if self.missed:
            return "missed"
        return "never"


class SourceFile:
    """A Bash script and the commands observed (or expected) on each line.

    `lines` maps a 1-based line number to a dict of command text -> `Command`.
    Line 0 is never used. A `Command` always sits in the slot matching its
    own `line_number`."""

    def __init__(self, filename: Path | str):
        self.filename = filename
        self.lines: dict[int, dict[str, Command]] = {}

    def merge_command(self, cmd: Command) -> Command:
        """Merge `cmd` into the file's coverage.

        If a command with the same text already occupies the line, `cmd`'s
        count is added to it; otherwise `cmd` itself is inserted. Returns the
        command now holding the combined count."""
        if cmd.line_number < 1:
            raise ValueError(f"Invalid line number {cmd.line_number} for command {cmd.src!r}")

        line = self.lines.setdefault(cmd.line_number, {})
        if cmd.src in line:
            line[cmd.src].increment(cmd.coverage)
        else:
            line[cmd.src] = cmd
        return line[cmd.src]

    def add_command(self, src: str, line_number: int, coverage: LineCoverage) -> Command:
        return self.merge_command(Command(src, line_number, coverage))

    def open(self) -> IO[str]:
        return open(self.filename, "r", encoding="utf-8", errors="replace", newline="\n")

    def filter(self, *patterns: FilterPattern) -> "SourceFile":
        """Remove every command whose text matches any of `patterns`.

        A line emptied this way reports as ignored."""
        compiled = [re.compile(p) if isinstance(p, str) else p for p in patterns]
        if not compiled:
            return self

        for line in self.lines.values():
            for src in [src for src in line if any(p.search(src) for p in compiled)]:
                del line[src]
        return self

    def lex(self, lexer: Lexer = bash_lexer) -> "SourceFile":
        """Walk the script on disk and mark what the trace alone cannot tell us.

        - Irrelevant lines are cleared, whatever the trace reported for them.
        - Relevant lines with nothing traced get a placeholder.
        - On a line continuing the previous one (trailing backslash), commands
          that were never analyzed stay that way: Bash reports the whole
          logical statement under a single line number.
          Only relevant lines can continue: Bash reads a backslash ending a
          comment as part of the comment, so the line after it starts fresh.
        - Elsewhere, a line whose commands were all never analyzed is marked
          uncovered.
        """
        physical_lines = 0
        continuation = False
        with self.open() as f:
            for lineno, line in enumerate(f, start=1):
                physical_lines = lineno
                text = line.rstrip("\r\n")

                if not lexer.relevant(text):
                    self.lines[lineno] = {}
                    continuation = False
                    continue

                if not self.lines.get(lineno):
                    self.add_command(text, lineno, Command.IGNORED)

                cmds = list(self.lines[lineno].values())
                if continuation:
                    for cmd in cmds:
                        if cmd.never:
                            cmd.ignored()
                elif all(cmd.never for cmd in cmds):
                    for cmd in cmds:
                        cmd.uncovered()

                continuation = text.endswith("\\")

        beyond = sorted(n for n, cmds in self.lines.items() if n > physical_lines and cmds)
        if beyond:
            raise ValueError(
                f"{self.filename}: trace references line {beyond[0]}, "
                f"but the file has only {physical_lines} lines"
            )
        return self

    def __len__(self) -> int:
        """The highest line number known to this file."""
        return max(self.lines, default=0)

    @overload
    def __getitem__(self, index: int) -> list[Command]: ...

    @overload
    def __getitem__(self, index: slice) -> list[list[Command]]: ...

    def __getitem__(self, index: int | slice) -> list[Command] | list[list[Command]]:
        """Commands on line `index` (or on each line of a slice of line numbers).
        `sf[0]` is always empty."""
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self) + 1))]
        return list(self.lines.get(index, {}).values())

    def each(self) -> Iterator[list[Command]]:
        """Yield the commands of lines 1..len(self), in line order."""
        for lineno in range(1, len(self) + 1):
            yield self[lineno]

    def to_h(self) -> dict[int, list[Command]]:
        return {lineno: cmds for lineno, cmds in enumerate(self.each(), start=1)}

    def dump(self) -> dict[int, list[str] | None]:
        return {
            lineno: [cmd.src for cmd in cmds] if cmds else None
            for lineno, cmds in self.to_h().items()
        }

    def to_coverage(self) -> CoverageArray:
        """Reduce to one entry per line: element `k` is line `k + 1`."""
        return [_line_coverage(cmds) for cmds in self.each()]


def _line_coverage(cmds: list[Command]) -> LineCoverage:
    counts = [cmd.coverage for cmd in cmds if cmd.coverage is not None]
    if not counts:
        return Command.IGNORED
    return sum(counts)
