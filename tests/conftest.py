from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from override_tools.config import Settings
from override_tools.console import Reporter
from override_tools.process import CommandError, CommandResult
from override_tools.registry import split_package_spec


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return path


def make_override(root: Path, name: str, pkg_json: dict, files: dict[str, str] | None = None) -> Path:
    pkg_dir = root / "packages" / "npm" / name
    write_json(pkg_dir / "package.json", pkg_json)
    for rel, content in (files or {}).items():
        fp = pkg_dir / rel
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content, encoding="utf-8")
    return pkg_dir


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / "packages" / "npm").mkdir(parents=True)
    (root / "pnpm-workspace.yaml").write_text("packages:\n  - packages/npm/*\n  - registry\n", encoding="utf-8")
    write_json(root / "test" / "npm" / "package.json", {"name": "test-npm", "devDependencies": {}})
    return root


@pytest.fixture
def settings(repo: Path, tmp_path: Path) -> Settings:
    return Settings(start=repo, env={}, temp_dir=tmp_path / "work")


@pytest.fixture
def reporter() -> Reporter:
    return Reporter(quiet=True)


def set_dev_dependencies(repo: Path, deps: dict[str, str]) -> None:
    write_json(repo / "test" / "npm" / "package.json", {"name": "test-npm", "devDependencies": deps})


class FakePnpm:
    """
    记录命令；pnpm add 时把 originals 中对应的 package.json 写进 node_modules。
    tarballs 把 https spec 映射回包名；install_failures 让前几次 pnpm install 失败。
    """

    def __init__(self, originals: dict[str, dict], nested: dict[str, dict[str, dict]] | None = None,
                 add_failures: int = 0, always_fail_add: bool = False,
                 tarballs: dict[str, str] | None = None, install_failures: int = 0) -> None:
        self.originals = originals
        self.nested = nested or {}
        self.add_failures = add_failures
        self.always_fail_add = always_fail_add
        self.tarballs = tarballs or {}
        self.install_failures = install_failures
        self.calls: list[tuple[list[str], Path]] = []

    async def __call__(self, cmd, cwd=None, env=None, check=True) -> CommandResult:
        cmd = list(cmd)
        self.calls.append((cmd, Path(cwd)))
        if cmd[1] == "add":
            if self.always_fail_add or self.add_failures > 0:
                self.add_failures -= 1
                raise CommandError(cmd, 1, "", "ERR_PNPM_FETCH_404")
            name = self.tarballs.get(cmd[2]) or split_package_spec(cmd[2])[0]
            installed = Path(cwd) / "node_modules" / name
            write_json(installed / "package.json", self.originals[name])
            (installed / "index.js").write_text("module.exports = 'original'\n", encoding="utf-8")
            for dep, dep_json in self.nested.get(name, {}).items():
                write_json(installed / "node_modules" / dep / "package.json", dep_json)
        elif cmd[1] == "install" and self.install_failures > 0:
            self.install_failures -= 1
            raise CommandError(cmd, 1, "", "ERR_PNPM_OUTDATED_LOCKFILE")
        return CommandResult(cmd, 0, "", "")

    def commands(self, sub: str) -> list[list[str]]:
        return [c for c, _ in self.calls if c[1] == sub]
