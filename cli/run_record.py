import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dataclasses_json import DataClassJsonMixin


@dataclass
class Interval:
    start_ns: int
    end_ns: int

    def duration_ns(self) -> int:
        """Duration in nanoseconds"""
        return self.end_ns - self.start_ns

    def duration_ms_int(self) -> int:
        """Duration in milliseconds (rounded down)"""
        return self.duration_ns() // 1_000_000


@dataclass
class RunRecord(DataClassJsonMixin):  # mixin for better type inference
    """What a report renderer receives from one traced run.

    `coverage` maps each script path to its coverage array, where element `k`
    describes line `k + 1`: an execution count, or None for a line that is
    not coverage-relevant."""

    command: list[str]
    exit_code: int
    start_unix_timestamp: int
    elapsed_ms: int
    coverage: dict[str, list[Optional[int]]]

    def relevant_lines(self) -> int:
        return sum(1 for arr in self.coverage.values() for n in arr if n is not None)

    def covered_lines(self) -> int:
        return sum(1 for arr in self.coverage.values() for n in arr if n)

    @staticmethod
    def load(filepath: Path | str) -> "RunRecord":
        with open(filepath, "r", encoding="utf-8") as f:
            return RunRecord.from_dict(json.load(f))

    def save(self, filepath: Path | str):
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)


class RunTiming:
    def __init__(self):
        self.start_unix_timestamp = int(time.time())
        self._start_time_ns = time.monotonic_ns()

    def elapsed(self) -> Interval:
        return Interval(self._start_time_ns, time.monotonic_ns())
