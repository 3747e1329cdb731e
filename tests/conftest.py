import pytest
import os
import sys
from datetime import datetime, timedelta, timezone

# Add parent directory to path so we can import the borgreport modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import borg_utils as utils

START = datetime(2024, 8, 6, 1, 48, 43, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_environ(monkeypatch):
    """Remove BORG_*, BORGREPORT_* and NOTIFY_SOCKET so tests never see the host setup."""
    for key in list(os.environ):
        if key.startswith(("BORG_", "BORGREPORT_")) or key == "NOTIFY_SOCKET":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def now():
    """One hour after the sample archive was started."""
    return START + timedelta(hours=1)


@pytest.fixture
def info_json():
    """A `borg info --json` response with one archive."""
    return {
        "archives": [
            {
                "hostname": "host1",
                "name": "host1-2024-08-06T01:48:43",
                "start": "2024-08-06T01:48:43.000000",
                "end": "2024-08-06T01:49:00.500000",
                "duration": 17.5,
                "stats": {
                    "original_size": 2000000,
                    "compressed_size": 1500000,
                    "deduplicated_size": 4500,
                    "nfiles": 42,
                },
            }
        ],
        "cache": {
            "stats": {
                "total_chunks": 100,
                "total_csize": 3000000,
                "total_size": 4000000,
                "total_unique_chunks": 50,
                "unique_csize": 1200000,
                "unique_size": 2000000,
            }
        },
        "encryption": {"mode": "repokey-blake2"},
        "repository": {"id": "abc", "last_modified": "2024-08-06T01:49:01.000000", "location": "/backup/srv"},
    }


@pytest.fixture
def make_info():
    """Factory for BorgInfo values: make_info(("archive-name", original_size), ...)."""
    def factory(*archives, unique_csize=1200000, start=START):
        return utils.BorgInfo(
            archives=[
                utils.Archive(
                    hostname="host1",
                    name=name,
                    start=start,
                    duration=17.5,
                    stats=utils.ArchiveStats(
                        original_size=original_size,
                        compressed_size=1500000,
                        deduplicated_size=4500,
                        nfiles=42,
                    ),
                )
                for name, original_size in archives
            ],
            unique_csize=unique_csize,
        )
    return factory


class FakeRunner:
    """Stands in for BorgRunner and records every call."""

    def __init__(self, infos=None, check_output=None, compact_output=None, freed_bytes=None):
        self.infos = infos or {}
        self.check_output = check_output or utils.CommandOutput(0, "", "", 3.0)
        self.compact_output = compact_output or utils.CommandOutput(0, "", "", 1.0)
        self.freed_bytes = freed_bytes
        self.calls = []

    def info(self, archive_glob=None):
        self.calls.append(("info", archive_glob))
        return self.infos.get(archive_glob, (None, "Repository /backup/srv does not exist."))

    def check(self, archive_name=None, check_options=None):
        self.calls.append(("check", archive_name))
        return self.check_output, None

    def compact(self, compact_options=None):
        self.calls.append(("compact", None))
        return self.compact_output, self.freed_bytes, None


@pytest.fixture
def fake_runner():
    return FakeRunner
