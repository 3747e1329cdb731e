"""
borg_utils.py - Shared utilities for the borgreport scripts.

Provides the I/O side of borgreport:
- BorgRunner class for borg command execution (info, check, compact)
- Parsing of `borg info --json` into typed archive records
- Byte size scanning of free-text borg output
- Human readable sizes and durations
- Repository sources: *.env files (python-dotenv) and a YAML repository file
- Mail delivery through a sendmail compatible MTA
- systemd status notifications

Borg environment:
    Every borg call runs with a scrubbed environment. All BORG_* variables of
    the current process (and NOTIFY_SOCKET) are removed, then the defaults
    LC_ALL=C.UTF-8 and TZ=UTC are applied, then the repository's own env.
    Borg reports all timestamps in UTC because of this.
"""
import os
import sys
import json
import time
import socket
import getpass
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import Tuple, Optional, List, Dict, Any

import yaml
from dotenv import dotenv_values

PKG_NAME = "borgreport"
PKG_VERSION = "0.3.0"
PKG_URL = "https://github.com/bbx0/borgreport"
PKG_LICENSE = "GPL-3.0-or-later"

BORG_EXE = "borg"
SENDMAIL_EXE = "sendmail"

BORG_TZ = "UTC"
BORG_DEFAULT_ENV = {"LC_ALL": "C.UTF-8", "TZ": BORG_TZ}

# Decimal multiples as printed by borg (e.g. "3.4 kB")
SI_UNITS = {
    "B": 1,
    "kB": 1000, "KB": 1000,
    "MB": 1000 ** 2,
    "GB": 1000 ** 3,
    "TB": 1000 ** 4,
    "PB": 1000 ** 5,
    "EB": 1000 ** 6,
}


@dataclass(frozen=True)
class ArchiveStats:
    original_size: int
    compressed_size: int
    deduplicated_size: int
    nfiles: int


@dataclass(frozen=True)
class Archive:
    """One archive as returned by `borg info --json`."""
    hostname: str
    name: str
    start: datetime  # UTC, timezone aware
    duration: float  # seconds
    stats: ArchiveStats


@dataclass(frozen=True)
class BorgInfo:
    """Response of `borg info --json`."""
    archives: List[Archive]
    unique_csize: int  # deduplicated and compressed repository size


@dataclass(frozen=True)
class CommandOutput:
    """Output of a finished borg process."""
    returncode: int
    stdout: str
    stderr: str
    duration: float  # seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0


def parse_borg_timestamp(value: str) -> datetime:
    """Parse a borg timestamp (e.g. "2024-08-06T01:48:43.000000") as UTC.

    Borg prints naive timestamps in the TZ of the process, which is always UTC here.
    """
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_borg_info(data: Dict[str, Any]) -> BorgInfo:
    """Convert the decoded `borg info --json` document into a BorgInfo.

    Raises KeyError, TypeError or ValueError if a required field is missing or malformed.
    """
    archives = []
    for a in data['archives']:
        stats = a['stats']
        archives.append(Archive(
            hostname=a['hostname'],
            name=a['name'],
            start=parse_borg_timestamp(a['start']),
            duration=float(a['duration']),
            stats=ArchiveStats(
                original_size=int(stats['original_size']),
                compressed_size=int(stats['compressed_size']),
                deduplicated_size=int(stats['deduplicated_size']),
                nfiles=int(stats['nfiles']),
            ),
        ))
    return BorgInfo(archives=archives, unique_csize=int(data['cache']['stats']['unique_csize']))


def first_typed_bytes(text: str) -> Optional[int]:
    """Find the first "<number> <SI unit>" pair in a string and return it in bytes.

    Example: "compaction freed about 3.4 kB repository space." -> 3400
    """
    words = text.split()
    for value, unit in zip(words, words[1:]):
        multiplier = SI_UNITS.get(unit.rstrip('.,;:'))
        if multiplier is None:
            continue
        try:
            number = float(value)
        except ValueError:
            continue
        if number != number or number < 0:  # NaN or negative
            continue
        return int(round(number * multiplier))
    return None


def format_size(size_bytes: int) -> str:
    """Format size in bytes to a human readable string (SI units)."""
    size = float(size_bytes)
    for unit in ("B", "kB", "MB", "GB", "TB", "PB"):
        if abs(size) < 1000:
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.1f} {unit}"
        size /= 1000
    return f"{size:.1f} EB"


def format_duration(seconds: float) -> str:
    """Format a duration in seconds, e.g. "1.2s", "3:04.5" or "1:02:03"."""
    # Round first, so no field can carry over to 60
    tenths = int(round(seconds * 10))
    if tenths < 600:
        return f"{tenths // 10}.{tenths % 10}s"
    if tenths < 36000:
        minutes, rest = divmod(tenths, 600)
        return f"{minutes}:{rest // 10:02d}.{rest % 10}"
    hours, rest = divmod(int(round(seconds)), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


class BorgRunner:
    """Handles borg command execution for one repository."""

    def __init__(self, borg_binary: str = BORG_EXE, env: Optional[Dict[str, str]] = None):
        self.borg_binary = str(borg_binary)
        self.env = dict(env or {})

    def _build_env(self) -> Dict[str, str]:
        """Process env without BORG_* and NOTIFY_SOCKET, plus defaults and the repository env."""
        env = {k: v for k, v in os.environ.items()
               if not k.startswith("BORG_") and k != "NOTIFY_SOCKET"}
        env.update(BORG_DEFAULT_ENV)
        env.update(self.env)
        return env

    def run(self, args: List[str]) -> Tuple[Optional[CommandOutput], Optional[str]]:
        """Run borg with the given arguments and wait for it.

        Returns:
            (output, error) - output is None if the process could not be run at all
        """
        cmd = [self.borg_binary] + list(args)
        logging.debug(f"Executing: {subprocess.list2cmdline(cmd)}")

        started = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                env=self._build_env(),
                capture_output=True,
                text=True,
                encoding='utf-8',
            )
        except FileNotFoundError:
            return None, f"Failed to execute borg binary: `{self.borg_binary}` (not found)"
        except UnicodeDecodeError as e:
            return None, f"Failed to decode borg output as UTF-8: {e}"
        except OSError as e:
            return None, f"Failed to execute borg binary: `{self.borg_binary}` ({e})"
        duration = time.monotonic() - started

        logging.debug(f"borg exited with code {result.returncode} after {duration:.1f}s")
        return CommandOutput(result.returncode, result.stdout or "", result.stderr or "", duration), None

    def info(self, archive_glob: Optional[str] = None) -> Tuple[Optional[BorgInfo], Optional[str]]:
        """Query `borg info` for the last archive (matching archive_glob, if given).

        Returns:
            (info, error) - info is None on any failure and error holds borg's diagnostic text
        """
        args = ["--bypass-lock", "info"]
        if archive_glob:
            args.extend(["--glob-archives", archive_glob])
        args.extend(["--last", "1", "--json", "::"])

        output, error = self.run(args)
        if output is None:
            return None, error
        if not output.success:
            return None, output.stderr.strip() or f"borg info exited with code {output.returncode}"

        try:
            return parse_borg_info(json.loads(output.stdout)), None
        except json.JSONDecodeError as e:
            return None, f"Failed to parse JSON response of `borg info`: {e}"
        except (KeyError, TypeError, ValueError) as e:
            return None, f"Unexpected JSON response of `borg info`: {e!r}"

    def check(self, archive_name: Optional[str] = None, check_options: Optional[List[str]] = None) -> Tuple[Optional[CommandOutput], Optional[str]]:
        """Check one archive (`borg check ::<ARCHIVE>`) or the whole repository."""
        args = ["check"]
        args.extend(check_options or [])
        args.append(f"::{archive_name or ''}")
        return self.run(args)

    def compact(self, compact_options: Optional[List[str]] = None) -> Tuple[Optional[CommandOutput], Optional[int], Optional[str]]:
        """Compact the repository.

        --verbose makes borg log the freed space to stderr. That line is removed from
        stderr and returned as a byte count. Remote repositories may not report it.

        Returns:
            (output, freed_bytes, error)
        """
        args = ["compact", "--verbose"]
        args.extend(compact_options or [])

        output, error = self.run(args)
        if output is None:
            return None, None, error

        freed_bytes = None
        stderr_lines = []
        for line in output.stderr.splitlines():
            if freed_bytes is None:
                freed_bytes = first_typed_bytes(line)
                if freed_bytes is not None:
                    continue
            stderr_lines.append(line)
        stderr = "".join(f"{line}\n" for line in stderr_lines)

        return CommandOutput(output.returncode, output.stdout, stderr, output.duration), freed_bytes, None


def collect_env_files(env_dirs: List[str]) -> List[Path]:
    """Collect all *.env files from the given directories, sorted by path.

    Raises OSError if a directory cannot be read.
    """
    files = []
    for env_dir in env_dirs:
        for entry in Path(env_dir).iterdir():
            if entry.is_file() and entry.suffix.lower() == ".env":
                files.append(entry)
    return sorted(files)


def load_env_file(path: Path) -> Tuple[str, Dict[str, str]]:
    """Parse an env file into (repository_name, env).

    The repository name is the file name without its extension.
    Keys without a value are dropped.
    """
    values = dotenv_values(path)
    env = {k: v for k, v in values.items() if k and v is not None}
    return Path(path).stem, env


def inherit_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Collect the BORG_* and BORGREPORT_* variables of the current process."""
    if environ is None:
        environ = dict(os.environ)
    return {k: v for k, v in environ.items() if k.startswith(("BORG_", "BORGREPORT_"))}


# Valid field names for a repository entry in the YAML file (for validation)
VALID_REPO_FIELDS = {'name', 'env'}
REQUIRED_REPO_FIELDS = {'name', 'env'}


def load_config(config_path: str) -> List[Dict[str, Any]]:
    """Load repository definitions from a YAML file.

    Format:
        repositories:
          - name: srv
            env:
              BORG_REPO: ssh://backup@host/./srv
              BORGREPORT_CHECK: "true"

    Returns a list of {'name': str, 'env': dict, 'error': str or None}. Entries with
    unknown or missing fields carry an error instead of failing the whole file.

    Raises OSError if the file cannot be read and yaml.YAMLError if it is not valid YAML.
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise yaml.YAMLError(f"Expected a mapping at the top level of {config_path}")

    entries = []
    for index, repo in enumerate(config.get('repositories') or []):
        if not isinstance(repo, dict):
            entries.append({'name': f"{Path(config_path).stem}[{index}]", 'env': {},
                            'error': "Repository entry is not a mapping"})
            continue

        repo_name = str(repo.get('name') or f"{Path(config_path).stem}[{index}]")
        error = None

        # Check for unknown fields (typos)
        unknown_fields = set(repo.keys()) - VALID_REPO_FIELDS
        missing_fields = REQUIRED_REPO_FIELDS - set(repo.keys())
        if unknown_fields:
            error = f"Unknown field(s) in repository '{repo_name}': {', '.join(sorted(unknown_fields))}"
        elif missing_fields:
            error = f"Missing required field(s) in repository '{repo_name}': {', '.join(sorted(missing_fields))}"
        elif not isinstance(repo['env'], dict):
            error = f"Field 'env' of repository '{repo_name}' is not a mapping"

        env = {}
        if error is None:
            # YAML scalars (true, 24) are passed on as the strings an env file would hold
            for key, value in repo['env'].items():
                if isinstance(value, bool):
                    value = "true" if value else "false"
                env[str(key)] = "" if value is None else str(value)

        entries.append({'name': repo_name, 'env': env, 'error': error})
    return entries


def default_mail_from() -> str:
    """Fallback sender address: user@host."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = PKG_NAME
    return f"{user}@{socket.gethostname() or 'localhost'}"


def send_mail(to_addr: str, from_addr: Optional[str], subject: str, plain: str, html: str) -> None:
    """Send a multipart (text + html) mail through a sendmail compatible MTA.

    Without from_addr no envelope sender is passed, so a sender configured in
    sendmail itself takes effect. The header still carries user@host.

    Raises OSError or subprocess.CalledProcessError on delivery failure.
    """
    message = EmailMessage()
    message['From'] = from_addr or default_mail_from()
    message['To'] = to_addr
    message['Subject'] = subject
    message.set_content(plain)
    message.add_alternative(html, subtype='html')

    cmd = [SENDMAIL_EXE, "-i"]
    if from_addr:
        cmd.extend(["-f", from_addr])
    cmd.append(to_addr)

    logging.debug(f"Executing: {subprocess.list2cmdline(cmd)}")
    result = subprocess.run(cmd, input=message.as_bytes(), capture_output=True)
    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, cmd, output=result.stdout, stderr=result.stderr)


def systemd_notify(state: str) -> bool:
    """Send a state string (e.g. "READY=1") to systemd if NOTIFY_SOCKET is set.

    Returns True if a message was sent.
    """
    address = os.environ.get("NOTIFY_SOCKET")
    if not address:
        return False
    if address.startswith("@"):
        address = "\0" + address[1:]  # abstract namespace

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            sock.connect(address)
            sock.sendall(state.encode('utf-8'))
        return True
    except OSError as e:
        logging.debug(f"Could not notify systemd: {e}")
        return False


def format_timestamp_rfc2822(dt: datetime) -> str:
    """Format a datetime like "Tue, 06 Aug 2024 01:48:43 +0200"."""
    return dt.strftime("%a, %d %b %Y %H:%M:%S %z")


def is_terminal(stream=None) -> bool:
    """Return True if the given stream (default: stdin) is attached to a terminal."""
    stream = stream if stream is not None else sys.stdin
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False
