from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from conftest import set_dev_dependencies, make_override, write_json
from override_tools import config
from override_tools.config import Settings
from override_tools.console import Reporter
from override_tools.download import run_download
from override_tools.errors import ConfigError
from override_tools.install import InstallResult, write_results
from override_tools.package_tests import (
    REASON_MODULE_ERROR_AFTER_REINSTALL,
    REASON_NOT_DOWNLOADED,
    REASON_NOT_INSTALLED,
    PackageTester,
    build_test_env,
    failure_diagnostics,
    has_module_error,
    load_candidates,
    run_tests,
    select_targets,
    summarize,
)
from override_tools.packages import PackageRecord
from override_tools.process import CommandError, CommandResult


class FakeNpm:
    """npm test 依次按 outcomes 返回（None 表示通过，否则抛出给定的 CommandError）；pnpm 命令只记录。"""

    def __init__(self, *outcomes: CommandError | None) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[list[str], Path, dict]] = []

    async def __call__(self, cmd, cwd=None, env=None, check=True) -> CommandResult:
        cmd = list(cmd)
        self.calls.append((cmd, Path(cwd), env))
        if cmd[0] == config.NPM and cmd[1] == "test":
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if outcome is not None:
                raise outcome
        return CommandResult(cmd, 0, "ok", "")

    def commands(self, tool: str) -> list[list[str]]:
        return [c for c, _, _ in self.calls if c[0] == tool]


def npm_failure(stdout: str = "", stderr: str = "") -> CommandError:
    return CommandError([config.NPM, "test"], 1, stdout, stderr)


def installed_target(settings: Settings, name: str = "is-regex", scripts: dict | None = None) -> InstallResult:
    work_dir = settings.temp_dir / name
    scripts = {"test": "tape test/*.js"} if scripts is None else scripts
    write_json(work_dir / "node_modules" / name / "package.json", {"name": name, "version": "1.0.0", "scripts": scripts})
    record = PackageRecord(name, name, settings.npm_packages_path / name, "1.0.0")
    return InstallResult(record, True, work_dir)


def run_one(settings: Settings, fake: FakeNpm, target: InstallResult):
    tester = PackageTester(settings, Reporter(quiet=True), run=fake)
    return asyncio.run(tester.test(target))


def test_passing_package(settings: Settings) -> None:
    target = installed_target(settings)
    fake = FakeNpm(None)

    result = run_one(settings, fake, target)

    assert (result.passed, result.skipped, result.reinstalled, result.reason) == (True, False, False, None)
    [(cmd, cwd, _)] = fake.calls
    assert cmd == [config.NPM, "test"]
    assert cwd == settings.temp_dir / "is-regex" / "node_modules" / "is-regex"


def test_module_error_triggers_one_reinstall_then_passes(settings: Settings) -> None:
    target = installed_target(settings)
    fake = FakeNpm(npm_failure(stderr="Error: Cannot find module 'call-bound'"), None)

    result = run_one(settings, fake, target)

    assert result.passed is True and result.reinstalled is True
    assert len(fake.commands(config.NPM)) == 2
    assert [c[1] for c in fake.commands(config.PNPM)] == ["install", "install"]


def test_module_error_persisting_after_reinstall(settings: Settings) -> None:
    target = installed_target(settings)
    fake = FakeNpm(npm_failure(stdout="MODULE_NOT_FOUND: module not found"), npm_failure(stderr="still broken"))

    result = run_one(settings, fake, target)

    assert (result.passed, result.reason) == (False, REASON_MODULE_ERROR_AFTER_REINSTALL)
    assert result.diagnostics == ["Error output:", "  still broken"]
    assert len(fake.commands(config.NPM)) == 2


def test_ordinary_failure_keeps_command_reason_and_diagnostics(settings: Settings) -> None:
    target = installed_target(settings)
    stdout = "\n".join(f"ok {i}" for i in range(30)) + "\nnot ok 31 regex"
    fake = FakeNpm(npm_failure(stdout=stdout, stderr="npm ERR! Test failed"))

    result = run_one(settings, fake, target)

    assert result.passed is False
    assert result.reason == f"Command failed: {config.NPM} test"
    assert result.diagnostics[:2] == ["Error output:", "  npm ERR! Test failed"]
    assert result.diagnostics[2] == "Test output:"
    assert len(result.diagnostics) == 3 + 20
    assert result.diagnostics[-1] == "  not ok 31 regex"
    assert fake.commands(config.PNPM) == []


def test_missing_working_directory(settings: Settings) -> None:
    record = PackageRecord("ghost", "ghost", settings.npm_packages_path / "ghost")
    fake = FakeNpm()

    result = run_one(settings, fake, InstallResult(record, False, settings.temp_dir / "ghost"))

    assert (result.passed, result.reason) == (False, REASON_NOT_DOWNLOADED)
    assert fake.calls == []


def test_missing_installed_package(settings: Settings) -> None:
    (settings.temp_dir / "ghost").mkdir(parents=True)
    record = PackageRecord("ghost", "ghost", settings.npm_packages_path / "ghost")

    result = run_one(settings, FakeNpm(), InstallResult(record, False, settings.temp_dir / "ghost"))

    assert (result.passed, result.reason) == (False, REASON_NOT_INSTALLED)


def test_tarball_package_found_in_pnpm_store(settings: Settings) -> None:
    spec = "https://codeload.github.com/inspect-js/is-regex/tar.gz/abc123"
    work_dir = settings.temp_dir / "is-regex"
    store = (work_dir / "node_modules" / ".pnpm" / "is-regex@https+++codeload.github.com+inspect-js+is-regex+tar.gz+abc123"
             / "node_modules" / "is-regex")
    write_json(store / "package.json", {"name": "is-regex", "version": "1.1.4", "scripts": {"test": "tape"}})
    record = PackageRecord("is-regex", "is-regex", settings.npm_packages_path / "is-regex", spec)
    fake = FakeNpm(None)

    result = run_one(settings, fake, InstallResult(record, True, work_dir))

    assert (result.passed, result.reason) == (True, None)
    [(cmd, cwd, _)] = fake.calls
    assert cwd == store


def test_missing_test_script_is_a_skip(settings: Settings) -> None:
    target = installed_target(settings, scripts={"lint": "eslint ."})
    fake = FakeNpm()

    result = run_one(settings, fake, target)

    assert (result.passed, result.skipped, result.reason) == (True, True, "No test script")
    assert fake.calls == []


def test_build_test_env_prepends_bin_directories(settings: Settings) -> None:
    work_dir = Path("/w/is-regex")
    installed = work_dir / "node_modules" / "is-regex"

    env = build_test_env(settings, work_dir, installed, base={"PATH": "/usr/bin"})

    assert env["PATH"].split(os.pathsep) == [
        str(installed / "node_modules" / ".bin"),
        str(work_dir / "node_modules" / ".bin"),
        str(settings.root_node_modules_bin_path),
        "/usr/bin",
    ]


@pytest.mark.parametrize(
    ("stdout", "stderr", "expected"),
    [
        ("", "Error: Cannot find module 'x'", True),
        ("Module not found: can't resolve", "", True),
        ("not ok 1", "AssertionError", False),
    ],
)
def test_has_module_error(stdout: str, stderr: str, expected: bool) -> None:
    assert has_module_error(stdout, stderr) is expected


def test_failure_diagnostics_without_output_is_empty() -> None:
    assert failure_diagnostics(npm_failure()) == []


def candidates(settings: Settings) -> list[InstallResult]:
    def make(name: str, installed: bool) -> InstallResult:
        record = PackageRecord(name, name, settings.npm_packages_path / name, "1.0.0")
        return InstallResult(record, installed, settings.temp_dir / name if installed else None)

    return [make("a", True), make("b", True), make("c", False)]


def test_select_targets_defaults_to_changed_installed_packages(settings: Settings) -> None:
    selected = select_targets(settings, candidates(settings), changed=["b", "c"], reporter=Reporter(quiet=True))

    assert [t.package.override_name for t in selected] == ["b"]


def test_select_targets_without_changes_is_empty(settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    assert select_targets(settings, candidates(settings), changed=[], reporter=Reporter(quiet=True)) == []
    assert "--force" in capsys.readouterr().out


def test_select_targets_force_takes_every_installed_package(settings: Settings) -> None:
    selected = select_targets(settings, candidates(settings), force=True, changed=[])

    assert [t.package.override_name for t in selected] == ["a", "b"]


def test_select_targets_requested_names_include_unknown_packages(settings: Settings) -> None:
    selected = select_targets(settings, candidates(settings), requested=["c", "hyrious__bun.lockb", "c"])

    assert [t.package.override_name for t in selected] == ["c", "hyrious__bun.lockb"]
    assert selected[1].package.original_name == "@hyrious/bun.lockb"
    assert selected[1].working_directory == settings.temp_dir / "hyrious__bun.lockb"


def test_load_candidates_falls_back_to_download_results(settings: Settings, repo: Path) -> None:
    set_dev_dependencies(repo, {"is-regex": "1.1.4"})
    make_override(repo, "is-regex", {"name": "@socketregistry/is-regex", "version": "1.0.0"})
    asyncio.run(run_download(settings, reporter=Reporter(quiet=True)))

    [candidate] = load_candidates(settings)

    assert candidate.package.original_name == "is-regex"
    assert candidate.working_directory == settings.temp_dir / "is-regex"


def test_load_candidates_requires_an_earlier_stage(settings: Settings) -> None:
    with pytest.raises(ConfigError):
        load_candidates(settings)


def test_run_tests_writes_failure_log(settings: Settings) -> None:
    ok = installed_target(settings, "a")
    bad = installed_target(settings, "b")
    write_results(settings.temp_dir / config.INSTALL_RESULTS_JSON, [ok, bad])

    class ByPackage(FakeNpm):
        async def __call__(self, cmd, cwd=None, env=None, check=True) -> CommandResult:
            if Path(cwd).name == "b":
                raise npm_failure(stderr="boom")
            return CommandResult(list(cmd), 0, "", "")

    reporter = Reporter(quiet=True)
    tester = PackageTester(settings, reporter, run=ByPackage())
    results = asyncio.run(run_tests(settings, force=True, reporter=reporter, tester=tester))

    assert {r.package: r.passed for r in results} == {"a": True, "b": False}
    log = (settings.logs_path / "test-failures.log").read_text(encoding="utf-8")
    assert "## b: Command failed" in log and "  boom" in log
    assert [r.package for r in summarize(results, reporter)] == ["b"]


def test_run_tests_with_nothing_changed_runs_nothing(settings: Settings) -> None:
    write_results(settings.temp_dir / config.INSTALL_RESULTS_JSON, [installed_target(settings, "a")])
    fake = FakeNpm()

    results = asyncio.run(run_tests(settings, reporter=Reporter(quiet=True),
                                    tester=PackageTester(settings, Reporter(quiet=True), run=fake), changed=[]))

    assert results == []
    assert fake.calls == []
