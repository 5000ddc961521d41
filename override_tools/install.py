# -*- coding: utf-8 -*-
"""
阶段二：安装。

每个包一个独立工作目录 <temp>/<override 名>：
1. 缓存命中（标记文件中的 versionSpec 与 overrideHash 均与当前一致）：只重新覆盖 override 文件并补装依赖；
2. 否则全新安装：写最小 package.json → pnpm add 原包（指数退避重试）→ 覆盖 override 文件并合并字段
   → pnpm install（含 devDependencies）→ 递归处理嵌套依赖中的 override → 写缓存标记。
单个包失败只记录 reason，不影响同批其它包。结果写 install-results.json 供测试阶段读取。
"""

import asyncio
import json
import shutil
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from . import config
from .config import Settings
from .console import Reporter, emoji
from .download import REASON_SKIPPED, read_download_results
from .errors import ConfigError, PackageJsonError
from .package_json import (
    OVERLAY_EXCLUDE_NAMES,
    clean_test_scripts,
    compute_override_hash,
    merge_override_fields,
    read_package_json,
    resolve_original_package_name,
    write_package_json,
)
from .packages import PackageRecord, find_override_directory, is_allowed_failure, is_skipped
from .process import CommandError, CommandResult, child_env, run_command
from .runner import retry_async, run_bounded

REASON_NO_TEST_SCRIPT = "No test script"

# pnpm 按 npm 的方式平铺安装
PNPM_NPM_LIKE_FLAGS = [
    "--config.shamefully-hoist=true",
    "--config.node-linker=hoisted",
    "--config.auto-install-peers=false",
    "--config.strict-peer-dependencies=false",
]

PNPM_INSTALL_FLAGS = [
    *PNPM_NPM_LIKE_FLAGS,
    "--config.confirmModulesPurge=false",
    "--no-frozen-lockfile",
]

# CI 或 NODE_ENV=production 时 pnpm 会跳过 devDependencies
PNPM_INSTALL_ENV = {"CI": None, "NODE_ENV": None}

OVERLAY_IGNORE = shutil.ignore_patterns(*sorted(OVERLAY_EXCLUDE_NAMES))

Runner = Callable[..., Awaitable[CommandResult]]


@dataclass
class InstallResult:
    package: PackageRecord
    installed: bool
    working_directory: Optional[Path] = None
    reason: Optional[str] = None
    cached: bool = False

    def to_json(self) -> Dict:
        data = {
            "package": self.package.original_name,
            "socketPackage": self.package.override_name,
            "installed": self.installed,
            "versionSpec": self.package.version_spec,
            "overridePath": str(self.package.override_directory),
            "cached": self.cached,
        }
        if self.working_directory is not None:
            data["tempDir"] = str(self.working_directory)
        if self.reason is not None:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_json(cls, data: Dict) -> "InstallResult":
        override = data.get("socketPackage") or data.get("package", "")
        record = PackageRecord(
            original_name=data.get("package") or resolve_original_package_name(override),
            override_name=override,
            override_directory=Path(data.get("overridePath") or ""),
            version_spec=data.get("versionSpec") or "",
        )
        temp_dir = data.get("tempDir")
        return cls(
            package=record,
            installed=bool(data.get("installed")),
            working_directory=Path(temp_dir) if temp_dir else None,
            reason=data.get("reason"),
            cached=bool(data.get("cached")),
        )


@dataclass
class CacheMarker:
    installed_at: str
    version_spec: str
    override_hash: str
    override_package: str = ""
    original_package: str = ""

    def matches(self, version_spec: str, override_hash: str) -> bool:
        return self.version_spec == version_spec and self.override_hash == override_hash

    def to_json(self) -> Dict:
        return {
            "installedAt": self.installed_at,
            "versionSpec": self.version_spec,
            "overrideHash": self.override_hash,
            "socketPackage": self.override_package,
            "originalPackage": self.original_package,
        }

    @classmethod
    def read(cls, path: Path) -> Optional["CacheMarker"]:
        """标记文件不存在或损坏时返回 None（视为缓存失效）。"""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        return cls(
            installed_at=data.get("installedAt", ""),
            version_spec=data.get("versionSpec", ""),
            override_hash=data.get("overrideHash", ""),
            override_package=data.get("socketPackage", ""),
            original_package=data.get("originalPackage", ""),
        )

    def write(self, path: Path) -> None:
        Path(path).write_text(json.dumps(self.to_json(), indent=2), encoding="utf-8")


def copy_override_files(override_dir: Path, target_dir: Path) -> None:
    """把 override 文件复制到已安装包目录（跳过 package.json / .DS_Store / node_modules，符号链接取实际内容）。"""
    override_dir = Path(override_dir)
    target_dir = Path(target_dir)
    if override_dir.resolve() == target_dir.resolve():
        return
    shutil.copytree(override_dir, target_dir, symlinks=False, ignore=OVERLAY_IGNORE, dirs_exist_ok=True)


def overlay_package(override_dir: Path, installed_path: Path, clean_scripts: bool = False) -> Dict:
    """覆盖文件并合并 package.json 字段，返回写回后的 package.json 内容。"""
    installed_json = read_package_json(installed_path)
    override_json = read_package_json(override_dir)
    copy_override_files(override_dir, installed_path)
    merged = merge_override_fields(installed_json, override_json)
    if clean_scripts and merged.get("scripts"):
        merged["scripts"] = clean_test_scripts(merged["scripts"])
    write_package_json(installed_path, merged)
    return merged


def has_test_script(pkg_json: Dict) -> bool:
    return bool((pkg_json.get("scripts") or {}).get("test"))


def is_tarball_spec(spec: str) -> bool:
    return spec.startswith("https://")


def package_spec(record: PackageRecord) -> str:
    spec = record.version_spec
    if is_tarball_spec(spec):
        return spec
    return f"{record.original_name}@{spec}"


class Installer:
    """安装阶段执行器；run 可替换（测试中注入假的 pnpm）。"""

    def __init__(self, settings: Settings, reporter: Optional[Reporter] = None,
                 run: Runner = run_command, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.settings = settings
        self.reporter = reporter or Reporter()
        self.run = run
        self.sleep = sleep
        self.counts: Counter = Counter()

    # ---------- 路径 ----------
    def working_directory(self, record: PackageRecord) -> Path:
        return self.settings.temp_dir / record.override_name

    def installed_path(self, record: PackageRecord) -> Path:
        return self.working_directory(record) / config.NODE_MODULES / record.original_name

    def marker_path(self, record: PackageRecord) -> Path:
        return self.working_directory(record) / config.INSTALL_MARKER

    def add_flags(self, record: PackageRecord) -> List[str]:
        """tarball（GitHub 等 https:// spec）的下载缓存放进 github_cache_path，与安装缓存一起失效。"""
        flags = list(PNPM_NPM_LIKE_FLAGS)
        if is_tarball_spec(record.version_spec):
            self.settings.github_cache_path.mkdir(parents=True, exist_ok=True)
            flags.append(f"--config.cache-dir={self.settings.github_cache_path}")
        return flags

    # ---------- 入口 ----------
    async def install(self, record: PackageRecord) -> InstallResult:
        if is_skipped(self.settings, record.override_name, record.original_name):
            self._mark("skipped", "⚠️", record)
            return InstallResult(record, False, reason=REASON_SKIPPED)
        try:
            cached = await self._install_cached(record)
            if cached is not None:
                return cached
            return await self._install_fresh(record)
        except Exception as e:
            self._mark("failed", "❌", record, str(e))
            return InstallResult(record, False, reason=str(e))

    # ---------- 缓存 ----------
    async def _install_cached(self, record: PackageRecord) -> Optional[InstallResult]:
        marker_path = self.marker_path(record)
        marker = CacheMarker.read(marker_path)
        installed_path = self.find_installed(record)
        if marker is None or installed_path is None:
            return None
        pkg_json_path = installed_path / config.PACKAGE_JSON
        try:
            existing = read_package_json(pkg_json_path)
        except PackageJsonError:
            return None
        current_hash = compute_override_hash(record.override_directory)
        if not has_test_script(existing) or not marker.matches(record.version_spec, current_hash):
            return None
        if is_tarball_spec(record.version_spec) and not self.settings.github_cache_path.is_dir():
            return None

        # 依赖树没变也要重新覆盖 override 文件；刷新失败按缓存失效处理，走全新安装
        try:
            overlay_package(record.override_directory, installed_path)
            await self.install_dependencies(record, installed_path)
            self.apply_nested_overrides(installed_path)
        except (OSError, PackageJsonError, CommandError) as e:
            self.reporter.warn(f"{record.original_name}: 缓存刷新失败，重新安装（{str(e)[:100]}）")
            if marker_path.exists():
                marker_path.unlink()
            return None
        self._mark("cached", "💾", record)
        return InstallResult(record, True, self.working_directory(record), cached=True)

    # ---------- 全新安装 ----------
    async def _install_fresh(self, record: PackageRecord) -> InstallResult:
        work_dir = self.working_directory(record)
        work_dir.mkdir(parents=True, exist_ok=True)
        marker_path = self.marker_path(record)
        if marker_path.exists():
            marker_path.unlink()

        write_package_json(work_dir, {
            "name": "test-temp",
            "version": "1.0.0",
            "private": True,
            "pnpm": {"overrides": self.pnpm_overrides(exclude=record.original_name)},
        })

        spec = package_spec(record)

        def on_retry(attempt, error, delay):
            self.reporter.info(f"{emoji.get('🔁')} {record.original_name}: 第 {attempt} 次重试 pnpm add（{delay:.0f}s 后），错误: {str(error)[:100]}")

        await retry_async(
            lambda: self.run([config.PNPM, "add", spec, *self.add_flags(record)], cwd=work_dir, env=child_env()),
            retries=config.INSTALL_RETRIES,
            base_delay=config.INSTALL_RETRY_BASE_DELAY,
            backoff_factor=config.INSTALL_RETRY_BACKOFF,
            retry_on=(CommandError,),
            on_retry=on_retry,
            sleep=self.sleep,
        )

        installed_path = self._locate_installed(record)
        merged = overlay_package(record.override_directory, installed_path, clean_scripts=True)
        if not has_test_script(merged):
            self._mark("failed", "⚠️", record, REASON_NO_TEST_SCRIPT)
            return InstallResult(record, False, reason=REASON_NO_TEST_SCRIPT)

        await self.install_dependencies(record, installed_path)
        self.apply_nested_overrides(installed_path)

        CacheMarker(
            installed_at=time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            version_spec=record.version_spec,
            override_hash=compute_override_hash(record.override_directory),
            override_package=record.override_name,
            original_package=record.original_name,
        ).write(marker_path)

        self._mark("installed", "📦", record)
        return InstallResult(record, True, work_dir)

    def find_installed(self, record: PackageRecord, work_dir: Optional[Path] = None) -> Optional[Path]:
        """
        已安装包目录：优先 node_modules/<name>；读不到 package.json 时尝试 pnpm store 目录
        （GitHub tarball 之类的 spec 中 ':' 和 '/' 会被编码为 '+'）。都没有时返回 None。
        """
        work_dir = work_dir or self.working_directory(record)
        installed_path = work_dir / config.NODE_MODULES / record.original_name
        if (installed_path / config.PACKAGE_JSON).exists():
            return installed_path
        store_dir = f"{record.original_name}@{record.version_spec.replace(':', '+').replace('/', '+')}"
        store_path = work_dir / config.NODE_MODULES / ".pnpm" / store_dir / config.NODE_MODULES / record.original_name
        if (store_path / config.PACKAGE_JSON).exists():
            return store_path
        return None

    def _locate_installed(self, record: PackageRecord) -> Path:
        installed_path = self.find_installed(record)
        if installed_path is None:
            raise FileNotFoundError(f"Cannot read package.json for {record.original_name}")
        return installed_path

    # ---------- 依赖 ----------
    async def install_dependencies(self, record: PackageRecord, installed_path: Optional[Path] = None,
                                   work_dir: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> None:
        """先在工作目录装生产依赖，再在已安装包内装 devDependencies。"""
        work_dir = work_dir or self.working_directory(record)
        installed_path = installed_path or self.installed_path(record)
        env = child_env(PNPM_INSTALL_ENV, base=env)
        await self.run([config.PNPM, "install", *PNPM_INSTALL_FLAGS], cwd=work_dir, env=env)
        await self.run([config.PNPM, "install", "--prod=false", *PNPM_INSTALL_FLAGS], cwd=installed_path, env=env)

    def pnpm_overrides(self, exclude: str = "") -> Dict[str, str]:
        """所有 override 包 -> file:// 本地路径，供 pnpm.overrides 使用；正在安装的原包本身除外。"""
        overrides: Dict[str, str] = {}
        root = self.settings.npm_packages_path
        if not root.is_dir():
            return overrides
        for pkg_dir in sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith(".")):
            try:
                pkg_json = read_package_json(pkg_dir)
            except (OSError, PackageJsonError):
                continue
            original = resolve_original_package_name(pkg_dir.name)
            if pkg_json.get("name") and original != exclude:
                overrides[original] = pkg_dir.resolve().as_uri()
        return overrides

    def apply_nested_overrides(self, package_path: Path, seen: Optional[Set[Path]] = None) -> int:
        """
        递归遍历 node_modules（含 @scope 目录），对有 override 的嵌套依赖做同样的覆盖；返回处理的包数。
        指向 override 源目录本身的链接（pnpm.overrides 的 file: 依赖）不覆盖也不深入。
        """
        seen = set() if seen is None else seen
        sources = self.settings.npm_packages_path.resolve()
        node_modules = Path(package_path) / config.NODE_MODULES
        if not node_modules.is_dir():
            return 0
        applied = 0
        for name, nested_path in self._iter_node_modules(node_modules):
            real = nested_path.resolve()
            if real in seen:
                continue
            seen.add(real)
            if real == sources or sources in real.parents:
                continue
            override_dir = find_override_directory(self.settings, name)
            if override_dir is not None:
                try:
                    overlay_package(override_dir, nested_path)
                    applied += 1
                except (OSError, PackageJsonError) as e:
                    self.reporter.warn(f"{name}: 嵌套 override 覆盖失败 {e}")
            applied += self.apply_nested_overrides(nested_path, seen)
        return applied

    @staticmethod
    def _iter_node_modules(node_modules: Path):
        for entry in sorted(node_modules.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if entry.name.startswith("@"):
                for scoped in sorted(entry.iterdir()):
                    if scoped.is_dir():
                        yield f"{entry.name}/{scoped.name}", scoped
            else:
                yield entry.name, entry

    # ---------- 进度 ----------
    def _mark(self, kind: str, symbol: str, record: PackageRecord, detail: str = "") -> None:
        self.counts[kind] += 1
        suffix = f": {detail[:200]}" if detail else ""
        self.reporter.info(f"{emoji.get(symbol)} {record.original_name}{suffix}")


def summarize(settings: Settings, results: List[InstallResult], counts: Counter, reporter: Reporter) -> List[InstallResult]:
    """打印安装汇总，返回严重失败（非跳过、非无测试脚本、非允许失败）的列表。"""
    if counts.get("cached"):
        reporter.summary(f"{emoji.get('♻️')}  使用缓存: {counts['cached']}")
    if counts.get("installed"):
        reporter.summary(f"{emoji.get('📦')} 已安装: {counts['installed']}")

    failed = [r for r in results if not r.installed and r.reason != REASON_SKIPPED]
    no_test_script = [r for r in failed if r.reason == REASON_NO_TEST_SCRIPT]
    others = [r for r in failed if r.reason != REASON_NO_TEST_SCRIPT]
    allowed = [r for r in others if is_allowed_failure(settings, r.package.override_name, r.package.original_name)]
    critical = [r for r in others if r not in allowed]

    if no_test_script:
        reporter.summary(f"{emoji.get('⚠️')} 无测试脚本: {len(no_test_script)} 个包")
        if len(no_test_script) <= 5:
            reporter.indented((f"- {r.package.original_name}" for r in no_test_script), "  ")
    if allowed:
        reporter.summary(f"{emoji.get('⚠️')} 允许失败: {len(allowed)} 个包")
        if len(allowed) <= 5:
            reporter.indented((f"- {r.package.original_name}: {r.reason}" for r in allowed), "  ")
    if critical:
        reporter.fail(f"安装失败: {len(critical)} 个包")
        reporter.indented((f"- {r.package.original_name}: {(r.reason or '')[:300]}" for r in critical), "  ")
    return critical


def write_results(path: Path, results: Iterable[InstallResult]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([r.to_json() for r in results], indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def read_install_results(temp_dir: Path) -> Optional[List[InstallResult]]:
    path = Path(temp_dir) / config.INSTALL_RESULTS_JSON
    if not path.exists():
        return None
    return [InstallResult.from_json(item) for item in json.loads(path.read_text(encoding="utf-8"))]


def records_to_install(settings: Settings, requested: Optional[Iterable[str]] = None) -> List[PackageRecord]:
    """从 download-results.json 取校验通过的包，--package 再按原包名或 override 名过滤。"""
    downloads = read_download_results(settings.temp_dir)
    if downloads is None:
        raise ConfigError(f"未找到 {settings.temp_dir / config.DOWNLOAD_RESULTS_JSON}，请先执行 download 阶段")
    wanted = set(requested or [])
    records = []
    for r in downloads:
        if not r.downloaded:
            continue
        if wanted and r.package not in wanted and r.override_package not in wanted:
            continue
        records.append(PackageRecord(
            original_name=r.package,
            override_name=r.override_package,
            override_directory=Path(r.override_path) if r.override_path else settings.npm_packages_path / r.override_package,
            version_spec=r.version_spec or "",
        ))
    return records


async def run_install(
    settings: Settings,
    requested: Optional[Iterable[str]] = None,
    concurrency: Optional[int] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[asyncio.Event] = None,
    installer: Optional[Installer] = None,
) -> List[InstallResult]:
    reporter = reporter or Reporter()
    concurrency = max(1, concurrency or settings.concurrency_for("install"))
    records = records_to_install(settings, requested)
    if not records:
        reporter.warn("没有需要安装的包")
        write_results(settings.temp_dir / config.INSTALL_RESULTS_JSON, [])
        return []

    installer = installer or Installer(settings, reporter)
    settings.temp_dir.mkdir(parents=True, exist_ok=True)
    reporter.info(f"{emoji.get('📦')} 安装 {len(records)} 个包，并发 {concurrency} ...")

    done = 0

    async def install_one(record: PackageRecord) -> InstallResult:
        nonlocal done
        result = await installer.install(record)
        done += 1
        reporter.progress(done, len(records), "安装进度")
        return result

    results = await run_bounded(records, install_one, concurrency, cancel=cancel, raise_errors=True)
    write_results(settings.temp_dir / config.INSTALL_RESULTS_JSON, results)
    return results
