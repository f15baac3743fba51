"""
crontab_file.py

Crontab reader for docker-cron: six-field cron expressions or @aliases,
followed by a container name.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import islice
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from croniter import croniter
from croniter.croniter import CroniterBadCronError

UTC = timezone.utc
ALIAS_PREFIX = "@"
ALIAS_SPLIT_INDEX = 0
FIELDS_SPLIT_INDEX = 5
_VALIDATION_ANCHOR = datetime(2000, 1, 1, tzinfo=UTC)


class CrontabError(Exception):
    """Base error for crontab loading."""


class InvalidFormatError(CrontabError):
    """A single line could not be parsed."""

    def __init__(self, cause: Optional[Exception] = None):
        self.cause = cause
        message = "Invalid crontab line"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class CrontabFormatError(CrontabError):
    def __init__(self, line_no: int, cause: InvalidFormatError):
        self.line_no = line_no
        self.cause = cause
        message = (
            f"Invalid crontab entry on line {line_no}. Cron expressions must "
            "consist of six(!) space-separated fields or an alias that "
            "starts with @. Environment variable specifications are not "
            "supported."
        )
        if cause.cause is not None:
            message = f"{message} ({cause.cause})"
        super().__init__(message)


class CrontabIOError(CrontabError):
    def __init__(self, path: Path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Error reading from crontab at {path}: {cause}")


def find_whitespace_runs(line: str) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) for each maximal run of whitespace, left to right.

    A run still open at the end of the line closes at len(line).
    """
    start: Optional[int] = None
    for idx, char in enumerate(line):
        if char.isspace():
            if start is None:
                start = idx
        elif start is not None:
            yield start, idx
            start = None
    if start is not None:
        yield start, len(line)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class Schedule:
    expression: str

    @staticmethod
    def parse(expression: str) -> "Schedule":
        # croniter validates eagerly in its constructor. Day-of-month and
        # day-of-week must both match when both are restricted.
        croniter(expression, _VALIDATION_ANCHOR, day_or=False, second_at_beginning=True)
        return Schedule(expression=expression)

    def next_after(self, instant: datetime) -> datetime:
        """Earliest matching instant strictly after ``instant``, in UTC."""
        iterator = croniter(
            self.expression,
            _ensure_aware_utc(instant),
            day_or=False,
            second_at_beginning=True,
        )
        return _ensure_aware_utc(iterator.get_next(datetime))

    def upcoming(self, instant: datetime, count: int) -> List[datetime]:
        runs: List[datetime] = []
        cursor = instant
        while len(runs) < count:
            cursor = self.next_after(cursor)
            runs.append(cursor)
        return runs

    def __str__(self) -> str:
        return self.expression


@dataclass(frozen=True)
class CronJob:
    schedule: Schedule
    command: str

    @staticmethod
    def parse(line: str) -> "CronJob":
        runs = find_whitespace_runs(line)
        index = ALIAS_SPLIT_INDEX if line.startswith(ALIAS_PREFIX) else FIELDS_SPLIT_INDEX
        split = next(islice(runs, index, None), None)
        if split is None:
            raise InvalidFormatError()

        spec_end, command_start = split
        try:
            schedule = Schedule.parse(line[:spec_end])
        except (CroniterBadCronError, ValueError) as exc:
            raise InvalidFormatError(exc) from exc
        return CronJob(schedule=schedule, command=line[command_start:])


def read_crontab(text: str) -> List[CronJob]:
    jobs: List[CronJob] = []
    for line_idx, raw in enumerate(text.split("\n")):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            jobs.append(CronJob.parse(line))
        except InvalidFormatError as exc:
            raise CrontabFormatError(line_idx + 1, exc) from exc
    return jobs


def load_crontab(path: Path) -> List[CronJob]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CrontabIOError(path, exc) from exc
    return read_crontab(text)
