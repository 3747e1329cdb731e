"""
borg_report.py - The report model of borgreport and the borg result interpreters.

A Report holds five sections: errors, warnings, summary, checks and compacts.
A Section is an append-only list of Records. Each Record remembers the
repository and archive glob it came from. Reports of single repositories
are appended into one report in processing order; nothing is ever sorted.

The interpreters (borg_info, sanity_check, borg_check, borg_compact) turn
the result of a borg call into a small Report, which the caller appends.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generic, Iterable, Iterator, List, Optional, TypeVar, Union

from borg_utils import BorgInfo, CommandOutput

T = TypeVar("T")


@dataclass(frozen=True)
class Known(Generic[T]):
    """A value that is present."""
    value: T


class Unknown:
    """A value that is absent. Use the UNKNOWN singleton."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        return False


UNKNOWN = Unknown()

Maybe = Union[Known[T], Unknown]


def known(value: Optional[T]) -> "Maybe[T]":
    """Wrap an optional value: None becomes UNKNOWN."""
    return UNKNOWN if value is None else Known(value)


# Section payloads

@dataclass(frozen=True)
class BulletPoint:
    """An element of an unordered list. The text may span multiple lines."""
    text: str


@dataclass(frozen=True)
class ArchiveInfo:
    name: str
    hostname: str
    start: datetime  # UTC
    duration: float  # seconds
    original_size: int  # size of the backup source
    compressed_size: int
    deduplicated_size: int  # deduplicated and compressed
    nfiles: int


@dataclass(frozen=True)
class RepositoryInfo:
    unique_csize: int  # deduplicated and compressed repository size


@dataclass(frozen=True)
class Info:
    archive: "Maybe[ArchiveInfo]"  # UNKNOWN if the query returned no archive
    repository: RepositoryInfo


@dataclass(frozen=True)
class InfoEntry:
    """A summary line. info is UNKNOWN if `borg info` failed."""
    info: "Maybe[Info]"


@dataclass(frozen=True)
class CheckEntry:
    """A `borg check` result. A check covers a single archive or the whole repository."""
    archive_name: "Maybe[str]"
    duration: float
    success: bool


@dataclass(frozen=True)
class CompactResult:
    duration: float
    success: bool
    # Unknown when a remote repository does not forward --verbose to `borg serve`
    freed_bytes: "Maybe[int]"


@dataclass(frozen=True)
class CompactEntry:
    """A `borg compact` result. compact is UNKNOWN if the compact was skipped."""
    compact: "Maybe[CompactResult]"


@dataclass(frozen=True)
class Record(Generic[T]):
    """A data point with reference to its origin."""
    repository: str
    archive_glob: Optional[str]
    payload: T


def dedup(records: Iterable[Record]) -> List[Record]:
    """Collapse consecutive records with equal payloads. Non-adjacent duplicates stay."""
    result: List[Record] = []
    for record in records:
        if result and result[-1].payload == record.payload:
            continue
        result.append(record)
    return result


class Section(Generic[T]):
    """An ordered, append-only list of records."""

    def __init__(self, records: Optional[Iterable[Record]] = None):
        self._records: List[Record] = list(records or [])

    def add(self, repository: str, archive_glob: Optional[str], payload: T) -> None:
        self._records.append(Record(repository, archive_glob, payload))

    def append(self, other: "Section[T]") -> None:
        """Move all records of other to the end of this section. other is left empty."""
        self._records.extend(other._records)
        other._records = []

    def dedup(self) -> List[Record]:
        return dedup(self._records)

    def is_empty(self) -> bool:
        return not self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records)

    def __getitem__(self, index: int) -> Record:
        return self._records[index]

    def __repr__(self) -> str:
        return f"Section({self._records!r})"


def add_msg_prefix(repository: str, archive_glob: Optional[str], msg: str) -> str:
    """Format msg with a "repo[glob]: " prefix. No prefix if neither is given."""
    glob = f"[{archive_glob}]" if archive_glob is not None else ""
    separator = "" if not repository and archive_glob is None else ": "
    return f"{repository}{glob}{separator}{msg}"


class Report:
    """A report with sections of structured data."""

    SECTIONS = ("errors", "warnings", "summary", "checks", "compacts")

    def __init__(self):
        self.errors: Section[BulletPoint] = Section()  # borg error messages and additional errors
        self.warnings: Section[BulletPoint] = Section()  # borg messages and sanity checks
        self.summary: Section[InfoEntry] = Section()  # the last archive of each repository / glob
        self.checks: Section[CheckEntry] = Section()
        self.compacts: Section[CompactEntry] = Section()

    def append(self, other: "Report") -> None:
        """Move all records of other into this report."""
        for name in self.SECTIONS:
            getattr(self, name).append(getattr(other, name))

    def add_warning(self, repository: str, archive_glob: Optional[str], msg: str) -> None:
        self.warnings.add(repository, archive_glob, BulletPoint(add_msg_prefix(repository, archive_glob, msg)))

    def add_error(self, repository: str, archive_glob: Optional[str], msg: str) -> None:
        self.errors.add(repository, archive_glob, BulletPoint(add_msg_prefix(repository, archive_glob, msg)))

    def has_errors(self) -> bool:
        return not self.errors.is_empty()

    def has_warnings(self) -> bool:
        return not self.warnings.is_empty()

    def count_errors(self) -> int:
        return len(self.errors)

    def count_warnings(self) -> int:
        return len(self.warnings)

    def has_warning_or_error_for(self, repository: str) -> bool:
        return (any(r.repository == repository for r in self.warnings)
                or any(r.repository == repository for r in self.errors))


def borg_info(repo_name: str, archive_glob: Optional[str], info: Optional[BorgInfo], error: Optional[str]) -> Report:
    """Convert a `borg info` result into a report."""
    report = Report()

    if info is None:
        # An empty summary line keeps the repository visible in the report
        report.summary.add(repo_name, archive_glob, InfoEntry(UNKNOWN))
        report.add_error(repo_name, archive_glob, error or "borg info failed")
        return report

    repository = RepositoryInfo(unique_csize=info.unique_csize)

    if not info.archives:
        report.summary.add(repo_name, archive_glob, InfoEntry(Known(Info(UNKNOWN, repository))))
        if archive_glob is None:
            report.add_warning(repo_name, archive_glob, "Repository is empty")
        else:
            report.add_warning(repo_name, archive_glob, f"The glob '{archive_glob}' yields no result!")
        return report

    for a in info.archives:
        archive = ArchiveInfo(
            name=a.name,
            hostname=a.hostname,
            start=a.start,
            duration=a.duration,
            original_size=a.stats.original_size,
            compressed_size=a.stats.compressed_size,
            deduplicated_size=a.stats.deduplicated_size,
            nfiles=a.stats.nfiles,
        )
        report.summary.add(repo_name, archive_glob, InfoEntry(Known(Info(Known(archive), repository))))
    return report


def sanity_check(repo_name: str, archive_glob: Optional[str], info: BorgInfo, max_age_hours: float,
                 now: Optional[datetime] = None) -> Report:
    """Warn about archives that are too old or empty. Never produces errors."""
    report = Report()
    now = now or datetime.now(timezone.utc)

    for a in info.archives:
        age_hours = (now - a.start.astimezone(timezone.utc)).total_seconds() / 3600
        if age_hours > max_age_hours:
            report.add_warning(repo_name, archive_glob, f"Last backup is older than {max_age_hours:g} hours")
        if a.stats.original_size == 0:
            report.add_warning(repo_name, archive_glob,
                               f"Last backup archive contains no data. Archive {a.name} is empty.")
    return report


def borg_check(repo_name: str, archive_glob: Optional[str], archive_name: Optional[str],
               output: Optional[CommandOutput], error: Optional[str]) -> Report:
    """Convert a `borg check` result into a report.

    If borg could not be run, only an error is added and no check line: the check did not run.
    """
    report = Report()

    if output is None:
        report.add_error(repo_name, archive_glob, error or "borg check failed")
        return report

    report.checks.add(repo_name, archive_glob, CheckEntry(
        archive_name=known(archive_name),
        duration=output.duration,
        success=output.success,
    ))
    if output.stdout.strip():
        report.add_warning(repo_name, archive_glob, output.stdout)
    if output.stderr.strip():
        report.add_error(repo_name, archive_glob, output.stderr)
    return report


def borg_compact(repo_name: str, output: Optional[CommandOutput], freed_bytes: Optional[int],
                 error: Optional[str]) -> Report:
    """Convert a `borg compact` result into a report."""
    report = Report()

    if output is None:
        report.add_error(repo_name, None, error or "borg compact failed")
        return report

    report.compacts.add(repo_name, None, CompactEntry(Known(CompactResult(
        duration=output.duration,
        success=output.success,
        freed_bytes=known(freed_bytes),
    ))))
    if output.stdout.strip():
        report.add_warning(repo_name, None, output.stdout)
    if output.stderr.strip():
        report.add_error(repo_name, None, output.stderr)
    return report


def borg_compact_skipped(repo_name: str) -> Report:
    """A compact that was not run because the repository already has warnings or errors."""
    report = Report()
    report.compacts.add(repo_name, None, CompactEntry(UNKNOWN))
    return report
