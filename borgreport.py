#!/usr/bin/env python
"""
borgreport.py - Summarize the state of BorgBackup repositories in one report.

For every repository `borg info` is queried for the last archive (per archive
glob), sanity checks are applied, and optionally `borg check` and
`borg compact` are run. The result is one report as plain text, HTML or
OpenMetrics, written to files, stdout or sent by mail.

Repository sources:
    --env-dir DIR       every *.env file in DIR is one repository (name = file stem)
    --env-inherit NAME  one repository from the BORG_* variables of this process
    --config FILE       YAML file with a `repositories` list of {name, env}

Usage:
    python borgreport.py --env-dir /etc/borgreport/repos
    python borgreport.py --env-dir ./repos --check --html-to report.html
    python borgreport.py --env-inherit local --metrics-to /var/lib/node_exporter/borg.prom
    python borgreport.py --env-dir ./repos --mail-to admin@example.org

Requires:
    - borg CLI in PATH (or BORGREPORT_BORG_BINARY)
    - sendmail compatible MTA for --mail-to
"""
import os
import sys
import logging
import argparse
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Optional, Tuple

import yaml

import borg_utils as utils
import borg_config as config
import borg_format as fmt
from borg_config import ConfigContext, ConfigError, Repository
from borg_report import (Report, BulletPoint, borg_info, sanity_check, borg_check, borg_compact,
                         borg_compact_skipped)

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 2
EXIT_OUTPUT_ERROR = 3

# (name, env, error) of one configured repository
Source = Tuple[str, Dict[str, str], Optional[str]]


def create_report(repo: Repository, runner: Optional[utils.BorgRunner] = None,
                  now: Optional[datetime] = None) -> Report:
    """Query, check and compact a single repository and return its report."""
    runner = runner or utils.BorgRunner(repo.borg_binary, repo.env)
    report = Report()

    # Process every archive glob, or once without a glob
    for archive_glob in (repo.archive_globs or (None,)):
        logging.info(f"{repo.name}: borg info" + (f" [{archive_glob}]" if archive_glob else ""))
        info, error = runner.info(archive_glob)
        report.append(borg_info(repo.name, archive_glob, info, error))
        if info is None:
            continue

        report.append(sanity_check(repo.name, archive_glob, info, repo.max_age_hours, now))

        if not repo.run_check:
            continue
        if info.archives:
            for archive in info.archives:
                logging.info(f"{repo.name}: borg check ::{archive.name}")
                output, error = runner.check(archive.name, list(repo.check_options))
                report.append(borg_check(repo.name, archive_glob, archive.name, output, error))
        elif archive_glob is None:
            # An empty repository can still be checked
            logging.info(f"{repo.name}: borg check (whole repository)")
            output, error = runner.check(None, list(repo.check_options))
            report.append(borg_check(repo.name, None, None, output, error))
        else:
            logging.info(f"{repo.name}: glob '{archive_glob}' matched nothing, check skipped")

    if repo.run_compact:
        if report.has_warning_or_error_for(repo.name):
            logging.info(f"{repo.name}: borg compact skipped (warnings or errors)")
            report.append(borg_compact_skipped(repo.name))
        else:
            logging.info(f"{repo.name}: borg compact")
            output, freed_bytes, error = runner.compact(list(repo.compact_options))
            report.append(borg_compact(repo.name, output, freed_bytes, error))

    return report


def collect_sources(env_dirs: List[str], env_inherit: Optional[str] = None,
                    config_path: Optional[str] = None) -> List[Source]:
    """Collect repositories in processing order: env files, inherited env, YAML file.

    A name that was already taken becomes an error entry.

    Raises OSError if a directory or file cannot be read, yaml.YAMLError on invalid YAML.
    """
    sources: List[Source] = []
    for path in utils.collect_env_files(env_dirs):
        name, env = utils.load_env_file(path)
        sources.append((name, env, None))

    if env_inherit:
        sources.append((env_inherit, utils.inherit_env(), None))

    if config_path:
        for entry in utils.load_config(config_path):
            sources.append((entry['name'], entry['env'], entry['error']))

    seen = set()
    result = []
    for name, env, error in sources:
        if name in seen and error is None:
            error = f"Duplicate repository name '{name}'. The repository was not processed."
        seen.add(name)
        result.append((name, env, error))
    return result


def process_source(source: Source, context: ConfigContext, now: Optional[datetime] = None) -> Report:
    """Build the repository of a source and create its report.

    A configuration error skips the repository and becomes one report error.
    """
    name, env, error = source
    if error is None:
        try:
            return create_report(config.build_repository(name, env, context), now=now)
        except ConfigError as e:
            error = str(e)

    logging.warning(error)
    report = Report()
    # The message already names the repository
    report.errors.add(name, None, BulletPoint(error))
    return report


def emit_progress(msg: str, enabled: bool = True) -> None:
    """Show progress on an attached terminal and as systemd status."""
    if not enabled:
        return
    if utils.is_terminal():
        # Pad and truncate, so the next message overwrites this one
        sys.stderr.write(f"{msg:<76.76}\r")
        sys.stderr.flush()
    utils.systemd_notify(f"STATUS={msg}")


def mail_subject(report: Report, now: datetime) -> str:
    suffix = []
    if report.has_errors():
        suffix.append(f"Errors:{report.count_errors()}")
    if report.has_warnings():
        suffix.append(f"Warnings:{report.count_warnings()}")
    return f"Backup report ({now.strftime('%Y-%m-%d')}) {' '.join(suffix)}".rstrip()


def write_file(path: str, content: str) -> None:
    """Write content via a temporary file, so readers never see a partial report."""
    target = Path(path)
    tmp = target.with_name(f".{target.name}.tmp")
    tmp.write_text(content, encoding='utf-8')
    os.replace(tmp, target)


def write_outputs(args: argparse.Namespace, report: Report, now: datetime) -> None:
    """Write the report to all requested sinks. Text goes to stdout if nothing else consumed it.

    Raises OSError or subprocess.CalledProcessError if a sink fails.
    """
    output_processed = False
    for target, render in ((args.text_to, fmt.render_text),
                           (args.html_to, fmt.render_html),
                           (args.metrics_to, fmt.render_metrics)):
        if not target:
            continue
        content = render(report, now)
        if target == "-":
            sys.stdout.write(content)
        else:
            write_file(target, content)
            logging.info(f"Report written to {target}")
        output_processed = True

    if args.mail_to:
        utils.send_mail(
            args.mail_to,
            args.mail_from,
            mail_subject(report, now),
            fmt.render_text(report, now),
            fmt.render_html(report, now),
        )
        logging.info(f"Report sent to {args.mail_to}")
        output_processed = True

    if not output_processed:
        sys.stdout.write(fmt.render_text(report, now))


def _env_bool(name: str) -> bool:
    try:
        return config.parse_bool(os.environ.get(name, "false"))
    except ValueError:
        return False


def _option_dest(option: config.Option) -> str:
    return option.flag.lstrip("-").replace("-", "_")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=utils.PKG_NAME,
        description="Summarize the state of BorgBackup repositories in one report",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  borgreport --env-dir /etc/borgreport/repos              Text report to stdout
  borgreport --env-dir ./repos --check --compact          Also run borg check and borg compact
  borgreport --env-dir ./repos --html-to report.html      Write an HTML report
  borgreport --env-dir ./repos --metrics-to borg.prom     Write OpenMetrics for node_exporter
  borgreport --env-dir ./repos --mail-to root@localhost   Send text and HTML by mail

Repository options are looked up in this order (first hit wins):
  command line, repository env (*.env file), process environment, default.
"""
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {utils.PKG_VERSION}")

    # Repository sources
    sources = parser.add_argument_group("repository sources")
    sources.add_argument("--env-dir", dest="env_dirs", action="append", metavar="DIR",
                         default=None,
                         help="Directory with one *.env file per repository (repeatable, env: BORGREPORT_ENV_DIR)")
    sources.add_argument("--env-inherit", metavar="NAME", default=os.environ.get("BORGREPORT_ENV_INHERIT"),
                         help="Report on the repository given by the BORG_* env of this process, named NAME")
    sources.add_argument("--config", metavar="FILE", default=os.environ.get("BORGREPORT_CONFIG"),
                         help="YAML file with a list of repositories (env: BORGREPORT_CONFIG)")

    # Outputs
    outputs = parser.add_argument_group("outputs")
    outputs.add_argument("--text-to", metavar="FILE", default=os.environ.get("BORGREPORT_TEXT_TO"),
                         help="Write the text report to FILE ('-' for stdout)")
    outputs.add_argument("--html-to", metavar="FILE", default=os.environ.get("BORGREPORT_HTML_TO"),
                         help="Write the HTML report to FILE ('-' for stdout)")
    outputs.add_argument("--metrics-to", metavar="FILE", default=os.environ.get("BORGREPORT_METRICS_TO"),
                         help="Write OpenMetrics to FILE ('-' for stdout)")
    outputs.add_argument("--mail-to", metavar="ADDR", default=os.environ.get("BORGREPORT_MAIL_TO"),
                         help="Send the report (text and HTML) to ADDR via sendmail")
    outputs.add_argument("--mail-from", metavar="ADDR", default=os.environ.get("BORGREPORT_MAIL_FROM"),
                         help="Sender address (default: the sender configured in sendmail)")
    outputs.add_argument("--no-progress", action="store_true", default=_env_bool("BORGREPORT_NO_PROGRESS"),
                         help="Do not show progress on the terminal or send it to systemd")

    # Repository options, forced for all repositories when given
    repo = parser.add_argument_group("repository options (override the *.env files)")
    repo.add_argument(config.GLOB_ARCHIVES.flag, metavar="GLOBS", help=config.GLOB_ARCHIVES.help)
    repo.add_argument(config.CHECK.flag, nargs="?", const=True, type=config.parse_bool, metavar="BOOL",
                      help=config.CHECK.help)
    repo.add_argument(config.CHECK_OPTIONS.flag, metavar="OPTS", help=config.CHECK_OPTIONS.help)
    repo.add_argument(config.COMPACT.flag, nargs="?", const=True, type=config.parse_bool, metavar="BOOL",
                      help=config.COMPACT.help)
    repo.add_argument(config.COMPACT_OPTIONS.flag, metavar="OPTS", help=config.COMPACT_OPTIONS.help)
    repo.add_argument(config.BORG_BINARY.flag, type=config.parse_path, metavar="PATH",
                      help=config.BORG_BINARY.help)
    repo.add_argument(config.MAX_AGE_HOURS.flag, type=config.parse_float, metavar="HOURS",
                      help=config.MAX_AGE_HOURS.help)

    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Set logging level (default: WARNING)")
    return parser


def cli_values(args: argparse.Namespace) -> Dict[str, object]:
    """Typed values of the repository options that were passed on the command line."""
    values = {}
    for option in config.REPOSITORY_OPTIONS:
        value = getattr(args, _option_dest(option))
        if value is not None:
            values[option.name] = value
    return values


def parse_args(parser: argparse.ArgumentParser, argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the command line. BORGREPORT_ENV_DIR is used only if no --env-dir was given."""
    args = parser.parse_args(argv)
    if not args.env_dirs:
        env_dirs = os.environ.get("BORGREPORT_ENV_DIR")
        args.env_dirs = env_dirs.split(os.pathsep) if env_dirs else None
    return args


def no_repositories_message(args: argparse.Namespace) -> str:
    """Name the sources that were searched without finding a repository."""
    messages = []
    if args.env_dirs:
        messages.append(f"No *.env files found in {args.env_dirs}")
    if args.config:
        messages.append(f"No repositories found in {args.config}")
    return ". ".join(messages)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parse_args(parser, argv)

    # Logging goes to stderr, stdout is reserved for the report
    logging.basicConfig(
        level=args.log_level,
        format='%(message)s',
        stream=sys.stderr
    )

    if not (args.env_dirs or args.env_inherit or args.config):
        parser.error("at least one of --env-dir, --env-inherit or --config is required")

    context = ConfigContext.from_process(cli_values(args))

    try:
        sources = collect_sources(args.env_dirs or [], args.env_inherit, args.config)
    except OSError as e:
        logging.error(f"Cannot read repository configuration: {e}")
        return EXIT_CONFIG_ERROR
    except yaml.YAMLError as e:
        logging.error(f"Invalid YAML in {args.config}: {e}")
        return EXIT_CONFIG_ERROR

    # Startup is complete once all configuration is read
    utils.systemd_notify("READY=1")

    now = datetime.now().astimezone()
    report = Report()
    if not sources:
        report.add_warning("", None, no_repositories_message(args))

    for source in sources:
        emit_progress(f"Process repository: '{source[0]}'", not args.no_progress)
        report.append(process_source(source, context, now))
        # Short, so it gets fully overwritten by the next message
        emit_progress("Done.", not args.no_progress)

    try:
        write_outputs(args, report, now)
    except OSError as e:
        logging.error(f"Cannot write report: {e}")
        return EXIT_OUTPUT_ERROR
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode('utf-8', errors='replace').strip() if e.stderr else ""
        logging.error(f"Cannot send mail (sendmail exited with code {e.returncode}): {stderr}")
        return EXIT_OUTPUT_ERROR

    utils.systemd_notify("STOPPING=1")
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
