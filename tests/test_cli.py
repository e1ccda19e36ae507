"""End-to-end tests for the depsolve command line."""
import json
import textwrap
from types import SimpleNamespace

import pytest

from args import parse_args
from cli_config import build_settings
from constants import DefaultResolver, ExitCodes
from depsolve import run
from lockfile import load
from versioning.models import GitSource, PackageName, PathSource

INDEX = {
    "packages": {
        "requests": {"2.31.0": {"requires": ["idna>=2.5"]}, "2.30.0": {}},
        "idna": {"3.4": {}},
        "pytest": {"8.0.0": {}},
    }
}

PYPROJECT = """
    [project]
    name = "app"
    version = "0.1.0"
    dependencies = ["requests>=2.30"]

    [tool.depsolve]
    dev-dependencies = ["pytest"]
"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / "pyproject.toml").write_text(textwrap.dedent(PYPROJECT), encoding="utf-8")
    (tmp_path / "index.json").write_text(json.dumps(INDEX), encoding="utf-8")
    return tmp_path


def cli(root, *argv):
    """Run one subcommand against ``root`` with logs going to a file."""
    command, rest = argv[0], list(argv[1:])
    return run(
        [command, "--project", str(root), "--index", str(root / "index.json"),
         "--logfile", str(root / "depsolve.log")] + rest
    )


def log_text(root):
    return (root / "depsolve.log").read_text(encoding="utf-8")


class TestLock:
    """depsolve lock."""

    def test_writes_lock(self, project):
        assert cli(project, "lock") == ExitCodes.SUCCESS.value
        lock = load(str(project / "depsolve.lock"))
        assert {str(e.name): str(e.version) for e in lock} == {"idna": "3.4", "requests": "2.31.0"}

    def test_dev_lock_is_separate(self, project):
        assert cli(project, "lock", "--dev") == ExitCodes.SUCCESS.value
        assert not (project / "depsolve.lock").exists()
        assert "pytest" in [str(n) for n in load(str(project / "depsolve-dev.lock")).names()]

    def test_relock_keeps_versions_until_update(self, project):
        assert cli(project, "lock") == ExitCodes.SUCCESS.value
        newer = json.loads(json.dumps(INDEX))
        newer["packages"]["idna"]["3.6"] = {}
        (project / "index.json").write_text(json.dumps(newer), encoding="utf-8")

        assert cli(project, "lock") == ExitCodes.SUCCESS.value
        assert str(load(str(project / "depsolve.lock")).get("idna").version) == "3.4"

        assert cli(project, "lock", "--update", "idna") == ExitCodes.SUCCESS.value
        assert str(load(str(project / "depsolve.lock")).get("idna").version) == "3.6"

    def test_conflict_writes_nothing(self, project, capsys):
        (project / "pyproject.toml").write_text(
            '[project]\nname = "app"\nversion = "0.1"\ndependencies = ["requests>=3"]\n', encoding="utf-8"
        )
        assert cli(project, "lock") == ExitCodes.RESOLUTION_ERROR.value
        assert not (project / "depsolve.lock").exists()
        assert "requests" in capsys.readouterr().err

    def test_unknown_package(self, project):
        (project / "pyproject.toml").write_text(
            '[project]\nname = "app"\nversion = "0.1"\ndependencies = ["ghost"]\n', encoding="utf-8"
        )
        assert cli(project, "lock") == ExitCodes.RESOLUTION_ERROR.value
        assert "ghost" in log_text(project)

    def test_missing_workspace(self, tmp_path):
        (tmp_path / "index.json").write_text("{}", encoding="utf-8")
        assert cli(tmp_path, "lock") == ExitCodes.FILE_ERROR.value

    def test_bad_config(self, project):
        config = project / "depsolve.yml"
        config.write_text("resolver:\n  max_iterations: 0\n", encoding="utf-8")
        assert cli(project, "lock", "--config", str(config)) == ExitCodes.CONFIG_ERROR.value


class TestCheck:
    """depsolve check."""

    def test_fresh_lock(self, project):
        cli(project, "lock")
        assert cli(project, "check") == ExitCodes.SUCCESS.value

    def test_stale_after_edit(self, project):
        cli(project, "lock")
        (project / "pyproject.toml").write_text(
            textwrap.dedent(PYPROJECT).replace("requests>=2.30", "requests>=2.31"), encoding="utf-8"
        )
        assert cli(project, "check") == ExitCodes.STALE_LOCK.value
        assert "out of date" in log_text(project)

    def test_missing_lock(self, project):
        assert cli(project, "check") == ExitCodes.FILE_ERROR.value


class TestExportAndSync:
    """depsolve export and sync --dry-run."""

    def test_export_to_stdout(self, project, capsys):
        cli(project, "lock")
        capsys.readouterr()
        assert cli(project, "export", "-o", "-") == ExitCodes.SUCCESS.value
        out = capsys.readouterr().out
        assert "requests==2.31.0" in out
        assert out.startswith("# generated by depsolve")

    def test_export_default_path(self, project):
        cli(project, "lock")
        assert cli(project, "export") == ExitCodes.SUCCESS.value
        assert "idna==3.4" in (project / "requirements.lock").read_text(encoding="utf-8")

    def test_dry_run_sync(self, project, capsys):
        (project / "index.json").write_text(
            json.dumps({"packages": {"depsolve-test-only-pkg": {"1.0": {}}}}), encoding="utf-8"
        )
        (project / "pyproject.toml").write_text(
            '[project]\nname = "app"\nversion = "0.1"\ndependencies = ["depsolve-test-only-pkg"]\n',
            encoding="utf-8",
        )
        cli(project, "lock")
        capsys.readouterr()
        assert cli(project, "sync", "--dry-run") == ExitCodes.SUCCESS.value
        assert "+ depsolve-test-only-pkg==1.0" in capsys.readouterr().out

    def test_sync_refuses_stale_lock(self, project):
        cli(project, "lock")
        (project / "pyproject.toml").write_text(
            textwrap.dedent(PYPROJECT).replace("requests>=2.30", "requests"), encoding="utf-8"
        )
        assert cli(project, "sync", "--dry-run") == ExitCodes.STALE_LOCK.value


class TestSettings:
    """Config layering: CLI over YAML over defaults."""

    def test_defaults(self, tmp_path):
        args = parse_args(["lock", "--project", str(tmp_path), "--config", str(self._config(tmp_path, ""))])
        settings = build_settings(args)
        assert settings.max_iterations == DefaultResolver.MAX_ITERATIONS.value
        assert settings.lock_path == str(tmp_path / "depsolve.lock")
        assert settings.index is None

    def test_yaml_then_cli(self, tmp_path):
        config = self._config(tmp_path, """
            index: snapshot.json
            lock:
              path: locks/app.lock
            resolver:
              max_iterations: 50
              allow_prereleases: false
            sources:
              lib:
                git: https://example.com/lib.git
                rev: v1
              util:
                path: libs/util
        """)
        settings = build_settings(parse_args(["lock", "--project", str(tmp_path), "--config", str(config)]))
        assert settings.index == str(tmp_path / "snapshot.json")
        assert settings.lock_path == str(tmp_path / "locks" / "app.lock")
        assert settings.max_iterations == 50
        assert settings.sources == {
            PackageName.parse("lib"): GitSource("https://example.com/lib.git", "v1"),
            PackageName.parse("util"): PathSource("libs/util"),
        }

        settings = build_settings(parse_args([
            "lock", "--project", str(tmp_path), "--config", str(config),
            "--index", "other.json", "--lockfile", "x.lock", "--pre",
        ]))
        assert settings.index == "other.json"
        assert settings.lock_path == "x.lock"
        assert settings.allow_prereleases

    @pytest.mark.parametrize(
        "body",
        [
            "- a list\n",
            "resolver: 3\n",
            "resolver:\n  prefetch_workers: -1\n",
            "resolver:\n  allow_prereleases: sometimes\n",
            "sources:\n  lib:\n    svn: x\n",
            "index: [1, 2]\n",
        ],
    )
    def test_invalid_config(self, tmp_path, body):
        with pytest.raises(ValueError):
            build_settings(SimpleNamespace(CONFIG=str(self._config(tmp_path, body)), PROJECT=str(tmp_path)))

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ValueError):
            build_settings(SimpleNamespace(CONFIG=str(tmp_path / "nope.yml"), PROJECT=str(tmp_path)))

    @staticmethod
    def _config(root, body):
        path = root / "depsolve.yml"
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path
