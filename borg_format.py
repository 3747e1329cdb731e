"""
borg_format.py - Render a Report as text, HTML or OpenMetrics.

All renderers only read the report. Errors and warnings are shown
deduplicated (consecutive repeats collapse into one bullet). Rows for
failed or skipped operations are kept and shown with "-" placeholders.
"""
import html
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import borg_utils as utils
from borg_report import Known, Report, Section, UNKNOWN

SUMMARY_HEADER = ["Repository", "Hostname", "Last archive", "Start", "Duration",
                  "Source", "Δ Archive", "∑ Repository"]
CHECK_HEADER = ["Repository", "Archive", "Duration", "Okay"]
COMPACT_HEADER = ["Repository", "Duration", "Freed space"]

# Columns aligned right
SUMMARY_NUMERIC = (4, 5, 6, 7)
CHECK_NUMERIC = (2, 3)
COMPACT_NUMERIC = (1, 2)

CHECK_SKIPPED_NOTE = "Some repositories could not be checked due to previous errors."
COMPACT_SKIPPED_NOTE = "Repositories with errors or warnings are not compacted."
FREED_UNKNOWN_NOTE = ("Some remote repositories cannot return the freed bytes. "
                      "This happens when the SSH_ORIGINAL_COMMAND is not passed to borg serve.")


def _format_date(dt: datetime) -> str:
    return dt.astimezone().strftime("%Y-%m-%d")


def summary_rows(section: Section) -> List[List[str]]:
    """Table cells of the summary section, one row per record."""
    rows = []
    for record in section:
        info = record.payload.info
        if info is UNKNOWN:
            # borg info failed
            rows.append([record.repository, "-", record.archive_glob or "-", "-", "-", "-", "-", "-"])
            continue

        unique_csize = utils.format_size(info.value.repository.unique_csize)
        archive = info.value.archive
        if archive is UNKNOWN:
            rows.append([record.repository, "", record.archive_glob or "", "", "", "", "", unique_csize])
            continue

        a = archive.value
        rows.append([
            record.repository,
            a.hostname,
            a.name,
            _format_date(a.start),
            utils.format_duration(a.duration),
            utils.format_size(a.original_size),
            utils.format_size(a.deduplicated_size),
            unique_csize,
        ])
    return rows


def check_rows(section: Section) -> List[List[str]]:
    rows = []
    for record in section:
        check = record.payload
        archive_name = check.archive_name.value if isinstance(check.archive_name, Known) else ""
        rows.append([
            record.repository,
            archive_name,
            utils.format_duration(check.duration),
            "yes" if check.success else "no",
        ])
    return rows


def compact_rows(section: Section) -> List[List[str]]:
    rows = []
    for record in section:
        compact = record.payload.compact
        if compact is UNKNOWN:
            # skipped
            rows.append([record.repository, "-", "-"])
            continue
        freed = compact.value.freed_bytes
        rows.append([
            record.repository,
            utils.format_duration(compact.value.duration),
            utils.format_size(freed.value) if isinstance(freed, Known) else "",
        ])
    return rows


def compact_notes(section: Section) -> List[str]:
    notes = []
    if any(r.payload.compact is UNKNOWN for r in section):
        notes.append(COMPACT_SKIPPED_NOTE)
    if any(isinstance(r.payload.compact, Known) and r.payload.compact.value.freed_bytes is UNKNOWN
           for r in section):
        notes.append(FREED_UNKNOWN_NOTE)
    return notes


# Text (text/plain)

def markdown_table(header: Sequence[str], rows: Sequence[Sequence[str]], right: Sequence[int] = ()) -> str:
    """Render a Markdown style table with fixed column widths."""
    widths = [max(len(cell) for cell in column) for column in zip(header, *rows)]

    def line(cells: Sequence[str]) -> str:
        padded = []
        for i, cell in enumerate(cells):
            padded.append(cell.rjust(widths[i]) if i in right else cell.ljust(widths[i]))
        return "| " + " | ".join(padded) + " |"

    lines = [line(header), "|" + "|".join("-" * (w + 2) for w in widths) + "|"]
    lines.extend(line(row) for row in rows)
    return "\n".join(lines) + "\n"


def text_bullets(section: Section) -> str:
    """One bullet per entry, continuation lines indented."""
    out = []
    for record in section.dedup():
        lines = record.payload.text.strip().splitlines()
        if not lines:
            continue
        out.append(f" * {lines[0]}")
        out.extend(f"   {line}" for line in lines[1:])
    return "".join(f"{line}\n" for line in out)


def render_text(report: Report, now: Optional[datetime] = None) -> str:
    now = now or datetime.now().astimezone()
    parts = [f"==== Backup report ({now.strftime('%Y-%m-%d')}) ====\n\n"]

    if report.has_errors():
        parts.append(f"=== Errors ===\n\n{text_bullets(report.errors)}\n")
    if report.has_warnings():
        parts.append(f"=== Warnings ===\n\n{text_bullets(report.warnings)}\n")
    if not report.summary.is_empty():
        table = markdown_table(SUMMARY_HEADER, summary_rows(report.summary), SUMMARY_NUMERIC)
        parts.append(f"=== Summary ===\n\n{table}\n")
    if not report.checks.is_empty():
        table = markdown_table(CHECK_HEADER, check_rows(report.checks), CHECK_NUMERIC)
        parts.append(f"=== `borg check` result ===\n\n{table}\n")
    if not report.compacts.is_empty():
        notes = "".join(f"{note}\n\n" for note in compact_notes(report.compacts))
        table = markdown_table(COMPACT_HEADER, compact_rows(report.compacts), COMPACT_NUMERIC)
        parts.append(f"=== `borg compact` result ===\n\n{notes}{table}\n")

    parts.append(f"Generated {utils.format_timestamp_rfc2822(now)} ({utils.PKG_NAME} {utils.PKG_VERSION})\n")
    return "".join(parts)


# HTML (text/html)

HTML_STYLE = """
            body {
                font-family: sans-serif;
            }
            li {
                font-family: monospace, sans-serif;
            }
            code {
                font-family: monospace, sans-serif;
            }
            table {
                border-collapse: collapse;
                table-layout: fixed;
            }
            thead {
                text-align: left;
            }
            th, td {
                padding: 5px;
                white-space: nowrap;
            }
            td {
                border: 1px solid black;
                font-family: monospace, sans-serif;
            }"""


def html_bullets(section: Section) -> str:
    items = []
    for record in section.dedup():
        lines = record.payload.text.strip().splitlines()
        if lines:
            items.append(f"\n            <li>{'<br>'.join(html.escape(line) for line in lines)}</li>")
    return f"\n        <ul>{''.join(items)}\n        </ul>"


def html_table(header: Sequence[str], rows: Sequence[Sequence[str]], right: Sequence[int] = ()) -> str:
    head = "".join(f"\n                    <th>{html.escape(h)}</th>" for h in header)
    body = []
    for row in rows:
        cells = []
        for i, cell in enumerate(row):
            style = ' style="text-align:right"' if i in right else ""
            cells.append(f"\n                    <td{style}>{html.escape(cell)}</td>")
        body.append(f"\n                <tr>{''.join(cells)}\n                </tr>")
    return (f"\n        <table>\n            <thead>\n                <tr>{head}\n                </tr>"
            f"\n            </thead>\n            <tbody>{''.join(body)}\n            </tbody>\n        </table>")


def render_html(report: Report, now: Optional[datetime] = None) -> str:
    now = now or datetime.now().astimezone()
    title = f"Backup report ({now.strftime('%Y-%m-%d')})"

    parts = [f"""<!DOCTYPE html>
<html lang="en">
    <head>
        <meta charset=utf-8>
        <meta name=generator content="{utils.PKG_NAME} {utils.PKG_VERSION}">
        <meta name=license content="{utils.PKG_LICENSE}">
        <meta name=viewport content="width=device-width, initial-scale=1, minimum-scale=1">
        <title>{title}</title>
        <style>{HTML_STYLE}
        </style>
    </head>
    <body>
        <h1>{title}</h1>"""]

    if report.has_errors():
        parts.append("\n        <h2>Errors</h2>")
        parts.append(html_bullets(report.errors))
    if report.has_warnings():
        parts.append("\n        <h2>Warnings</h2>")
        parts.append(html_bullets(report.warnings))
    if not report.summary.is_empty():
        parts.append("\n        <h2>Summary</h2>")
        parts.append(html_table(SUMMARY_HEADER, summary_rows(report.summary), SUMMARY_NUMERIC))
    if not report.checks.is_empty():
        parts.append("\n        <h2><code>borg check</code> result</h2>")
        parts.append(html_table(CHECK_HEADER, check_rows(report.checks), CHECK_NUMERIC))
    if not report.compacts.is_empty():
        parts.append("\n        <h2><code>borg compact</code> result</h2>")
        parts.extend(f"\n        <p>{html.escape(note)}</p>" for note in compact_notes(report.compacts))
        parts.append(html_table(COMPACT_HEADER, compact_rows(report.compacts), COMPACT_NUMERIC))

    parts.append(f"""
        <footer>
            <p>
                Generated on {utils.format_timestamp_rfc2822(now)} with <a href="{utils.PKG_URL}" target="_blank">{utils.PKG_NAME}</a> {utils.PKG_VERSION}
            </p>
        </footer>
    </body>
</html>
""")
    return "".join(parts)


# Metrics (application/openmetrics-text)

Labels = Tuple[Tuple[str, str], ...]


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class MetricFamily:
    """A gauge (or info) metric with one sample per label set. Setting a label set again overwrites it."""

    def __init__(self, name: str, help_text: str, unit: Optional[str] = None, metric_type: str = "gauge"):
        self.name = f"{name}_{unit}" if unit else name
        self.help_text = help_text
        self.unit = unit
        self.metric_type = metric_type
        self.samples: Dict[Labels, int] = {}

    def set(self, labels: Labels, value: int) -> None:
        self.samples[labels] = value

    def encode(self) -> List[str]:
        lines = [
            f"# HELP {self.name} {self.help_text}",
            f"# TYPE {self.name} {self.metric_type}",
        ]
        if self.unit:
            lines.append(f"# UNIT {self.name} {self.unit}")
        sample_name = f"{self.name}_info" if self.metric_type == "info" else self.name
        for labels, value in self.samples.items():
            label_str = ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in labels)
            label_str = f"{{{label_str}}}" if label_str else ""
            lines.append(f"{sample_name}{label_str} {value}")
        return lines


def repository_label(repository: str) -> Labels:
    return (("repository", repository),)


def archive_glob_label(repository: str, archive_glob: Optional[str]) -> Labels:
    labels: List[Tuple[str, str]] = [("repository", repository)]
    if archive_glob is not None:
        labels.append(("archive_glob", archive_glob))
    return tuple(labels)


def archive_glob_hostname_label(repository: str, hostname: str, archive_glob: Optional[str]) -> Labels:
    labels: List[Tuple[str, str]] = [("repository", repository), ("hostname", hostname)]
    if archive_glob is not None:
        labels.append(("archive_glob", archive_glob))
    return tuple(labels)


def duration_as_secs(seconds: float) -> int:
    """Round a duration up to whole seconds."""
    return int(math.ceil(seconds))


def collect_metrics(report: Report) -> List[MetricFamily]:
    """Convert a Report into borg_* metric families.

    A Report is made for humans. A row without an archive means there was no
    measurement, so it does not produce archive metrics.
    """
    unique_csize = MetricFamily("borg_deduplicated_compressed_size",
                                "Size of the backup repository in bytes (compressed and deduplicated)", "bytes")
    create_original_size = MetricFamily("borg_create_last_original_size",
                                        "Source size of the last backup archive in bytes", "bytes")
    create_compressed_size = MetricFamily("borg_create_last_compressed_size",
                                          "Compressed size of the last backup archive in bytes (not deduplicated)",
                                          "bytes")
    create_deduplicated_size = MetricFamily("borg_create_last_deduplicated_compressed_size",
                                            "Deduplicated and compressed size of the last backup archive in bytes",
                                            "bytes")
    create_start_timestamp = MetricFamily("borg_create_last_start_timestamp",
                                          "Unix time when the last backup was started", "seconds")
    create_duration = MetricFamily("borg_create_last_duration", "Duration of the last backup in seconds", "seconds")
    create_nfiles = MetricFamily("borg_create_last_files", "Number of files in the last archive")
    check_duration = MetricFamily("borg_check_last_duration",
                                  "Duration of the check of the last archive in seconds", "seconds")
    check_success = MetricFamily("borg_check_last_success",
                                 "True (1) if the check of the last archive was successful", "boolean")
    compact_duration = MetricFamily("borg_compact_duration", "Duration of running borg compact in seconds", "seconds")
    compact_freed_size = MetricFamily("borg_compact_freed_size", "Size of the freed space in bytes", "bytes")

    for record in report.summary:
        info = record.payload.info
        if info is UNKNOWN:
            continue
        # The size of the repository can be zero
        unique_csize.set(repository_label(record.repository), info.value.repository.unique_csize)

        if info.value.archive is UNKNOWN:
            continue
        a = info.value.archive.value
        label = archive_glob_hostname_label(record.repository, a.hostname, record.archive_glob)
        create_original_size.set(label, a.original_size)
        create_compressed_size.set(label, a.compressed_size)
        create_deduplicated_size.set(label, a.deduplicated_size)
        create_nfiles.set(label, a.nfiles)
        start = int(a.start.astimezone(timezone.utc).timestamp())
        if start > 0:
            create_start_timestamp.set(label, start)
        create_duration.set(label, duration_as_secs(a.duration))

    for record in report.checks:
        label = archive_glob_label(record.repository, record.archive_glob)
        check_duration.set(label, duration_as_secs(record.payload.duration))
        check_success.set(label, 1 if record.payload.success else 0)

    for record in report.compacts:
        compact = record.payload.compact
        if compact is UNKNOWN:
            continue
        label = repository_label(record.repository)
        if isinstance(compact.value.freed_bytes, Known):
            compact_freed_size.set(label, compact.value.freed_bytes.value)
        compact_duration.set(label, duration_as_secs(compact.value.duration))

    return [
        unique_csize,
        create_original_size,
        create_compressed_size,
        create_deduplicated_size,
        create_start_timestamp,
        create_duration,
        create_nfiles,
        check_duration,
        check_success,
        compact_duration,
        compact_freed_size,
    ]


def render_metrics(report: Report, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)

    info = MetricFamily(utils.PKG_NAME, f"{utils.PKG_NAME} metadata", metric_type="info")
    info.set((("name", utils.PKG_NAME), ("version", utils.PKG_VERSION)), 1)
    generated = MetricFamily(f"{utils.PKG_NAME}_last_report_timestamp",
                             "Unix time when the metrics were generated", "seconds")
    generated.set((), int(now.timestamp()))

    lines: List[str] = []
    for family in [info, generated] + collect_metrics(report):
        lines.extend(family.encode())
    lines.append("# EOF")
    return "\n".join(lines) + "\n"
