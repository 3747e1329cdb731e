import pytest
import os
import sys
import subprocess

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import borg_utils as utils
import borgreport
from borg_config import ConfigContext, Repository
from borg_report import Known, UNKNOWN


class TestCreateReport:
    def test_single_archive_with_check(self, fake_runner, make_info, now):
        runner = fake_runner(infos={None: (make_info(("A", 2000)), None)})
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, run_check=True)

        report = borgreport.create_report(repo, runner, now)

        assert len(report.summary) == 1
        archive = report.summary[0].payload.info.value.archive.value
        assert report.summary[0].repository == "R"
        assert archive.name == "A"
        assert archive.duration > 0
        assert len(report.checks) == 1
        assert report.checks[0].repository == "R"
        assert report.checks[0].payload.archive_name == Known("A")
        assert report.checks[0].payload.success
        assert report.compacts.is_empty()
        assert report.errors.is_empty()
        assert runner.calls == [("info", None), ("check", "A")]

    def test_invocation_failure(self, fake_runner):
        runner = fake_runner(infos={None: (None, "Connection closed by remote host")})
        repo = Repository(name="R", env={"BORG_REPO": "ssh://r"}, run_check=True)

        report = borgreport.create_report(repo, runner)

        assert len(report.summary) == 1
        assert report.summary[0].payload.info is UNKNOWN
        assert report.count_errors() == 1
        assert report.errors[0].payload.text.startswith("R: ")
        assert report.checks.is_empty()
        assert report.compacts.is_empty()
        assert runner.calls == [("info", None)]

    def test_compact_skipped_after_error(self, fake_runner):
        runner = fake_runner(infos={None: (None, "Repository does not exist")})
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, run_compact=True)

        report = borgreport.create_report(repo, runner)

        assert len(report.compacts) == 1
        assert report.compacts[0].payload.compact is UNKNOWN
        assert ("compact", None) not in runner.calls

    def test_compact_runs_when_clean(self, fake_runner, make_info, now):
        runner = fake_runner(infos={None: (make_info(("A", 2000)), None)}, freed_bytes=3400)
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, run_compact=True)

        report = borgreport.create_report(repo, runner, now)

        assert len(report.compacts) == 1
        assert report.compacts[0].payload.compact.value.freed_bytes == Known(3400)
        assert runner.calls[-1] == ("compact", None)

    def test_empty_repository_is_checked_as_a_whole(self, fake_runner, make_info, now):
        runner = fake_runner(infos={None: (make_info(unique_csize=500), None)})
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, run_check=True)

        report = borgreport.create_report(repo, runner, now)

        assert len(report.summary) == 1
        info = report.summary[0].payload.info.value
        assert info.archive is UNKNOWN
        assert info.repository.unique_csize == 500
        assert len(report.checks) == 1
        assert report.checks[0].payload.archive_name is UNKNOWN
        assert report.compacts.is_empty()

    def test_empty_repository_without_check(self, fake_runner, make_info, now):
        runner = fake_runner(infos={None: (make_info(), None)})
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"})

        report = borgreport.create_report(repo, runner, now)

        assert len(report.summary) == 1
        assert report.checks.is_empty()
        assert report.compacts.is_empty()

    def test_glob_without_match(self, fake_runner, make_info, now):
        runner = fake_runner(infos={"etc-*": (make_info(), None)})
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, archive_globs=("etc-*",), run_check=True)

        report = borgreport.create_report(repo, runner, now)

        assert report.count_warnings() == 1
        assert "etc-*" in report.warnings[0].payload.text
        assert report.errors.is_empty()
        assert report.checks.is_empty()
        assert runner.calls == [("info", "etc-*")]

    def test_globs_in_declared_order(self, fake_runner, make_info, now):
        runner = fake_runner(infos={
            "srv-*": (make_info(("srv-1", 10)), None),
            "etc-*": (make_info(("etc-1", 10)), None),
        })
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, archive_globs=("srv-*", "etc-*"),
                          run_check=True)

        report = borgreport.create_report(repo, runner, now)

        assert [r.archive_glob for r in report.summary] == ["srv-*", "etc-*"]
        assert [r.archive_glob for r in report.checks] == ["srv-*", "etc-*"]
        assert runner.calls == [("info", "srv-*"), ("check", "srv-1"), ("info", "etc-*"), ("check", "etc-1")]

    def test_failed_glob_does_not_stop_other_globs(self, fake_runner, make_info, now):
        runner = fake_runner(infos={"etc-*": (make_info(("etc-1", 10)), None)})
        repo = Repository(name="R", env={"BORG_REPO": "/backup/r"}, archive_globs=("srv-*", "etc-*"))

        report = borgreport.create_report(repo, runner, now)

        assert len(report.summary) == 2
        assert report.errors[0].payload.text.startswith("R[srv-*]: ")


class TestSources:
    def test_duplicate_names(self, tmp_path):
        (tmp_path / "srv.env").write_text("BORG_REPO=/backup/srv\n")
        config_file = tmp_path / "repos.yaml"
        config_file.write_text("repositories:\n  - name: srv\n    env:\n      BORG_REPO: /backup/other\n")

        sources = borgreport.collect_sources([str(tmp_path)], config_path=str(config_file))

        assert [s[0] for s in sources] == ["srv", "srv"]
        assert sources[0][2] is None
        assert "Duplicate repository name 'srv'" in sources[1][2]

    def test_config_error_becomes_one_report_error(self):
        report = borgreport.process_source(("srv", {}, None), ConfigContext())
        assert [r.payload.text for r in report.errors] == [
            "No value for 'BORG_REPO' was provided for repository: 'srv'"]
        assert report.errors[0].repository == "srv"
        assert report.has_warning_or_error_for("srv")
        assert report.summary.is_empty()


class TestCommandLine:
    def test_cli_values_only_for_given_flags(self):
        args = borgreport.build_parser().parse_args(["--env-dir", "/x", "--check", "--max-age-hours", "12"])
        assert borgreport.cli_values(args) == {"BORGREPORT_CHECK": True, "BORGREPORT_MAX_AGE_HOURS": 12.0}

    def test_explicit_false(self):
        args = borgreport.build_parser().parse_args(["--compact=false"])
        assert borgreport.cli_values(args) == {"BORGREPORT_COMPACT": False}

    def test_invalid_bool(self):
        with pytest.raises(SystemExit):
            borgreport.build_parser().parse_args(["--check=maybe"])

    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("BORGREPORT_ENV_DIR", os.pathsep.join(["/etc/borgreport", "/srv/borgreport"]))
        monkeypatch.setenv("BORGREPORT_NO_PROGRESS", "true")
        args = borgreport.parse_args(borgreport.build_parser(), [])
        assert args.env_dirs == ["/etc/borgreport", "/srv/borgreport"]
        assert args.no_progress is True

    def test_env_dir_on_command_line_replaces_env(self, monkeypatch):
        monkeypatch.setenv("BORGREPORT_ENV_DIR", "/etc/from-env")
        args = borgreport.parse_args(borgreport.build_parser(), ["--env-dir", "/from-cli"])
        assert args.env_dirs == ["/from-cli"]

    def test_raw_options_need_equals_form(self):
        parser = borgreport.build_parser()
        args = parser.parse_args(["--check-options=--verify-data --repair", "--compact-options=--threshold 0"])
        assert borgreport.cli_values(args) == {
            "BORGREPORT_CHECK_OPTIONS": "--verify-data --repair",
            "BORGREPORT_COMPACT_OPTIONS": "--threshold 0",
        }
        help_text = parser.format_help()
        assert "--check-options=" in help_text
        assert "--compact-options=" in help_text

    def test_mail_subject(self, now):
        report = borgreport.Report()
        assert borgreport.mail_subject(report, now) == "Backup report (2024-08-06)"
        report.add_error("r", None, "e")
        report.add_warning("r", None, "w")
        report.add_warning("r", None, "w")
        assert borgreport.mail_subject(report, now) == "Backup report (2024-08-06) Errors:1 Warnings:2"


class TestMain:
    @pytest.fixture
    def env_dir(self, tmp_path):
        env_dir = tmp_path / "repos"
        env_dir.mkdir()
        (env_dir / "srv.env").write_text("BORG_REPO=/backup/srv\nBORGREPORT_CHECK=true\n")
        (env_dir / "broken.env").write_text("BORG_PASSPHRASE=secret\n")
        return env_dir

    @pytest.fixture
    def runners(self, monkeypatch, fake_runner, make_info):
        created = []

        def factory(borg_binary, env):
            runner = fake_runner(infos={None: (make_info(("srv-1", 10)), None)})
            created.append((borg_binary, env, runner))
            return runner

        monkeypatch.setattr(utils, "BorgRunner", factory)
        return created

    def test_text_to_stdout(self, env_dir, runners, capsys):
        code = borgreport.main(["--env-dir", str(env_dir), "--no-progress"])

        assert code == borgreport.EXIT_SUCCESS
        out = capsys.readouterr().out
        assert out.startswith("==== Backup report (")
        assert "No value for 'BORG_REPO' was provided for repository: 'broken'" in out
        assert "srv-1" in out
        assert len(runners) == 1
        assert runners[0][1]["BORG_REPO"] == "/backup/srv"

    def test_files(self, env_dir, runners, tmp_path, capsys):
        text_file = tmp_path / "report.txt"
        html_file = tmp_path / "report.html"
        metrics_file = tmp_path / "borg.prom"

        code = borgreport.main(["--env-dir", str(env_dir), "--no-progress", "--text-to", str(text_file),
                                "--html-to", str(html_file), "--metrics-to", str(metrics_file)])

        assert code == borgreport.EXIT_SUCCESS
        assert capsys.readouterr().out == ""
        assert "=== Summary ===" in text_file.read_text()
        assert "<h2>Summary</h2>" in html_file.read_text()
        assert metrics_file.read_text().endswith("# EOF\n")
        assert not list(tmp_path.glob(".*.tmp"))

    def test_command_line_overrides_env_file(self, env_dir, runners, tmp_path):
        metrics_file = tmp_path / "borg.prom"
        borgreport.main(["--env-dir", str(env_dir), "--no-progress", "--check=false",
                         "--metrics-to", str(metrics_file)])
        assert [call for call in runners[0][2].calls if call[0] == "check"] == []

    def test_dash_writes_to_stdout(self, env_dir, runners, capsys):
        borgreport.main(["--env-dir", str(env_dir), "--no-progress", "--metrics-to", "-"])
        out = capsys.readouterr().out
        assert out.endswith("# EOF\n")
        assert "==== Backup report" not in out

    def test_mail(self, env_dir, runners, monkeypatch, capsys):
        sent = []
        monkeypatch.setattr(utils, "send_mail", lambda *args: sent.append(args))

        code = borgreport.main(["--env-dir", str(env_dir), "--no-progress", "--mail-to", "admin@example.org"])

        assert code == borgreport.EXIT_SUCCESS
        assert capsys.readouterr().out == ""
        to_addr, from_addr, subject, plain, html = sent[0]
        assert to_addr == "admin@example.org"
        assert from_addr is None
        assert "Errors:1" in subject
        assert "=== Errors ===" in plain
        assert html.startswith("<!DOCTYPE html>")

    def test_mail_failure(self, env_dir, runners, monkeypatch):
        def fail(*args):
            raise subprocess.CalledProcessError(1, ["sendmail"], stderr=b"no MTA")

        monkeypatch.setattr(utils, "send_mail", fail)
        code = borgreport.main(["--env-dir", str(env_dir), "--no-progress", "--mail-to", "admin@example.org"])
        assert code == borgreport.EXIT_OUTPUT_ERROR

    def test_unwritable_output(self, env_dir, runners, tmp_path):
        code = borgreport.main(["--env-dir", str(env_dir), "--no-progress",
                                "--text-to", str(tmp_path / "missing" / "report.txt")])
        assert code == borgreport.EXIT_OUTPUT_ERROR

    def test_missing_env_dir(self, tmp_path):
        code = borgreport.main(["--env-dir", str(tmp_path / "missing"), "--no-progress"])
        assert code == borgreport.EXIT_CONFIG_ERROR

    def test_no_source(self):
        with pytest.raises(SystemExit) as excinfo:
            borgreport.main([])
        assert excinfo.value.code == borgreport.EXIT_CONFIG_ERROR

    def test_empty_env_dir(self, tmp_path, capsys):
        code = borgreport.main(["--env-dir", str(tmp_path), "--no-progress"])
        assert code == borgreport.EXIT_SUCCESS
        assert "No *.env files found in" in capsys.readouterr().out

    def test_empty_config_file(self, tmp_path, capsys):
        config_file = tmp_path / "repos.yaml"
        config_file.write_text("repositories: []\n")
        code = borgreport.main(["--config", str(config_file), "--no-progress"])
        assert code == borgreport.EXIT_SUCCESS
        out = capsys.readouterr().out
        assert f"No repositories found in {config_file}" in out
        assert "*.env" not in out

    def test_env_inherit(self, runners, monkeypatch, capsys):
        monkeypatch.setenv("BORG_REPO", "/backup/local")
        monkeypatch.setenv("BORGREPORT_MAX_AGE_HOURS", "100000")

        code = borgreport.main(["--env-inherit", "local", "--no-progress"])

        assert code == borgreport.EXIT_SUCCESS
        assert runners[0][1] == {"BORG_REPO": "/backup/local", "BORGREPORT_MAX_AGE_HOURS": "100000"}
        assert "| local " in capsys.readouterr().out
