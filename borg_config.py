"""
borg_config.py - Repository configuration for borgreport.

Every repository option is resolved from up to three places, first hit wins:
    1. Command line option (forced override for all repositories)
    2. Repository env (the *.env file or YAML entry of the repository)
    3. Global process environment (soft default for all repositories)
    4. Built-in default

Option names are also the environment variable names (BORGREPORT_*).
BORG_* variables are not options: they only ever come from the repository env.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple


class ConfigError(Exception):
    """A repository option or the repository env is invalid."""


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    raise ValueError("expected 'true' or 'false'")


def parse_float(value: str) -> float:
    result = float(value)
    if result != result:
        raise ValueError("NaN is not a number of hours")
    return result


def parse_str(value: str) -> str:
    return value


def parse_path(value: str) -> Path:
    if not value:
        raise ValueError("path must not be empty")
    return Path(value)


@dataclass(frozen=True)
class Option:
    """A repository level option. The name is shared by the env var and the CLI value."""
    name: str
    parse: Callable[[str], Any]
    flag: str
    help: str


GLOB_ARCHIVES = Option(
    "BORGREPORT_GLOB_ARCHIVES", parse_str, "--glob-archives",
    'A list of space separated archive globs e.g. "etc-* srv-*" for archive names '
    'starting with etc- or srv-. (Default: "")')
CHECK = Option(
    "BORGREPORT_CHECK", parse_bool, "--check",
    "Enables the execution of `borg check`. (Default: false)")
CHECK_OPTIONS = Option(
    "BORGREPORT_CHECK_OPTIONS", parse_str, "--check-options",
    'A list of space separated raw options passed to `borg check`. On the command line use the "=" form, '
    'e.g. --check-options="--verify-data". (Default: "")')
COMPACT = Option(
    "BORGREPORT_COMPACT", parse_bool, "--compact",
    "Enables the execution of `borg compact`. (Default: false)")
COMPACT_OPTIONS = Option(
    "BORGREPORT_COMPACT_OPTIONS", parse_str, "--compact-options",
    'A list of space separated raw options passed to `borg compact`. On the command line use the "=" form, '
    'e.g. --compact-options="--threshold 0". (Default: "")')
BORG_BINARY = Option(
    "BORGREPORT_BORG_BINARY", parse_path, "--borg-binary",
    "Path to a local 'borg' binary. (Default: borg)")
MAX_AGE_HOURS = Option(
    "BORGREPORT_MAX_AGE_HOURS", parse_float, "--max-age-hours",
    "Threshold to warn, when the last backup is older than <HOURS>. (Default: 24)")

REPOSITORY_OPTIONS = (
    GLOB_ARCHIVES, CHECK, CHECK_OPTIONS, COMPACT, COMPACT_OPTIONS, BORG_BINARY, MAX_AGE_HOURS,
)

DEFAULT_BORG_BINARY = Path("borg")
DEFAULT_MAX_AGE_HOURS = 24.0


@dataclass
class ConfigContext:
    """Values that apply to all repositories: explicit CLI values and the process env.

    cli_values holds already typed values keyed by option name. Only options the
    user actually passed on the command line are present.
    """
    cli_values: Dict[str, Any] = field(default_factory=dict)
    environ: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_process(cls, cli_values: Optional[Dict[str, Any]] = None) -> "ConfigContext":
        return cls(cli_values=dict(cli_values or {}), environ=dict(os.environ))


def _parse(option: Option, raw: str, source: str) -> Any:
    try:
        return option.parse(raw)
    except ValueError as e:
        raise ConfigError(f"Cannot parse {option.name}={raw!r} from {source}: {e}") from e


def resolve(option: Option, repo_env: Mapping[str, str], context: ConfigContext) -> Optional[Any]:
    """Resolve an option: command line, then repository env, then global env.

    Returns None when no value was given anywhere (the caller applies its default).
    Raises ConfigError if a present value cannot be parsed.
    """
    if option.name in context.cli_values and context.cli_values[option.name] is not None:
        return context.cli_values[option.name]
    if option.name in repo_env:
        return _parse(option, repo_env[option.name], "the repository env")
    if option.name in context.environ:
        return _parse(option, context.environ[option.name], "the environment")
    return None


@dataclass(frozen=True)
class Repository:
    """Access parameters and report settings of one borg repository."""
    name: str
    env: Dict[str, str]  # BORG_* (and BORGREPORT_*) variables of this repository
    borg_binary: Path = DEFAULT_BORG_BINARY
    archive_globs: Tuple[str, ...] = ()
    run_check: bool = False
    check_options: Tuple[str, ...] = ()
    run_compact: bool = False
    compact_options: Tuple[str, ...] = ()
    max_age_hours: float = DEFAULT_MAX_AGE_HOURS


def build_repository(name: str, env: Mapping[str, str], context: ConfigContext) -> Repository:
    """Construct a Repository from its env and the global context.

    Raises ConfigError if an option is invalid or BORG_REPO is missing.
    """
    def arg(option: Option) -> Optional[Any]:
        try:
            return resolve(option, env, context)
        except ConfigError as e:
            raise ConfigError(f"Cannot parse parameter {option.name} for repo {name}: {e}") from e

    borg_binary = arg(BORG_BINARY)
    run_check = arg(CHECK)
    run_compact = arg(COMPACT)
    max_age_hours = arg(MAX_AGE_HOURS)
    archive_globs = tuple((arg(GLOB_ARCHIVES) or "").split())
    check_options = tuple((arg(CHECK_OPTIONS) or "").split())
    compact_options = tuple((arg(COMPACT_OPTIONS) or "").split())

    if not env.get("BORG_REPO"):
        raise ConfigError(f"No value for 'BORG_REPO' was provided for repository: '{name}'")

    return Repository(
        name=name,
        env=dict(env),
        borg_binary=Path(borg_binary) if borg_binary is not None else DEFAULT_BORG_BINARY,
        archive_globs=archive_globs,
        run_check=bool(run_check) if run_check is not None else False,
        check_options=check_options,
        run_compact=bool(run_compact) if run_compact is not None else False,
        compact_options=compact_options,
        max_age_hours=float(max_age_hours) if max_age_hours is not None else DEFAULT_MAX_AGE_HOURS,
    )
