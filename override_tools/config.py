# -*- coding: utf-8 -*-
"""
项目配置 + 平台初始化。

上半部分为可直接修改的默认值（与各阶段脚本共用）；Settings 负责在运行期解析路径、
环境变量与 config.local，进程内只构造一次，再显式传给各组件。
每个派生值在首次访问时计算并缓存，invalidate() 可清掉缓存重新计算。
"""

import io
import os
import sys
import tempfile
from functools import cached_property
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

import yaml

from .config_loader import as_bool, as_list, load_config
from .errors import ConfigError

# ===== 项目配置（按需修改） =====

# 公网 registry（查询版本、元数据、发布）
NPM_PUBLIC_REGISTRY = "https://registry.npmjs.org"

# 请求超时（秒）
REQUEST_TIMEOUT = 30

# 各阶段默认并发数：(本地, CI, CI + Windows)
DOWNLOAD_CONCURRENCY = (50, 10, 5)
INSTALL_CONCURRENCY = (15, 10, 5)
TEST_CONCURRENCY = (20, 8, 3)
MANIFEST_CONCURRENCY = 3

# pnpm add 重试：次数 / 首次等待秒数 / 退避倍数
INSTALL_RETRIES = 3
INSTALL_RETRY_BASE_DELAY = 1.0
INSTALL_RETRY_BACKOFF = 2.0

# 允许安装/测试失败的包（CI 中偶发失败）
ALLOW_TEST_FAILURES = frozenset({
    "es-get-iterator",
    "function.prototype.name",
    "is-boolean-object",
    "object.assign",
})

# ===== 平台常量（无需修改） =====

PACKAGE_DIR = Path(__file__).resolve().parent
IS_WIN = sys.platform == "win32"
NPM = "npm.cmd" if IS_WIN else "npm"
PNPM = "pnpm.cmd" if IS_WIN else "pnpm"
GIT = "git"

ECOSYSTEM = "npm"
PACKAGE_JSON = "package.json"
NODE_MODULES = "node_modules"
WORKSPACE_MARKER = "pnpm-workspace.yaml"
INSTALL_MARKER = ".socket-install-complete"
DOWNLOAD_RESULTS_JSON = "download-results.json"
INSTALL_RESULTS_JSON = "install-results.json"
SOCKET_REGISTRY_SCOPE = "@socketregistry"
SCOPE_DELIMITER = "__"


def configure_console() -> None:
    """控制台编码：Windows 下强制 UTF-8，其它平台开启行缓冲。"""
    if IS_WIN:
        os.environ.setdefault("PYTHONIOENCODING", "utf-8")
        try:
            sys.stdout = io.TextIOWrapper(
                sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True,
            )
            sys.stderr = io.TextIOWrapper(
                sys.stderr.buffer, encoding="utf-8", errors="replace", line_buffering=True,
            )
        except (AttributeError, ValueError):
            pass
    elif hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(line_buffering=True)
            sys.stderr.reconfigure(line_buffering=True)
        except (AttributeError, ValueError):
            pass


def find_project_root(start: Optional[Path] = None) -> Path:
    """从 start（默认 cwd）向上查找 pnpm-workspace.yaml；找不到时回退到本包所在目录的上一级。"""
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / WORKSPACE_MARKER).is_file():
            return candidate
    return PACKAGE_DIR.parent


def pick_concurrency(defaults, ci: bool, is_win: bool = IS_WIN) -> int:
    local, in_ci, in_ci_win = defaults
    if not ci:
        return local
    return in_ci_win if is_win else in_ci


class Settings:
    """
    运行期配置。所有路径都由 root_path 推导，首次访问时计算并缓存。
    env 默认取 os.environ；测试时可传入 dict 隔离环境。
    """

    def __init__(self, start: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
                 temp_dir: Optional[Path] = None):
        self._start = Path(start) if start else None
        self._env = dict(os.environ if env is None else env)
        self._temp_dir_arg = Path(temp_dir) if temp_dir else None

    def invalidate(self, *names: str) -> None:
        """清掉缓存的派生值；不传名称时全部清掉。"""
        keys = names or [k for k, v in type(self).__dict__.items() if isinstance(v, cached_property)]
        for key in keys:
            self.__dict__.pop(key, None)

    # ---------- 根目录与本地配置 ----------
    @cached_property
    def root_path(self) -> Path:
        return find_project_root(self._start)

    @cached_property
    def local_config(self) -> Dict[str, str]:
        return load_config(self.root_path)

    @cached_property
    def workspace_globs(self) -> List[str]:
        marker = self.root_path / WORKSPACE_MARKER
        if not marker.is_file():
            return []
        try:
            data = yaml.safe_load(marker.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{marker} 格式错误: {e}") from e
        return [str(p) for p in (data.get("packages") or [])]

    # ---------- 环境 ----------
    @cached_property
    def ci(self) -> bool:
        return as_bool(self._env.get("CI"))

    @cached_property
    def verbose_build(self) -> bool:
        return as_bool(self._env.get("VERBOSE_BUILD"))

    @cached_property
    def node_auth_token(self) -> str:
        return self._env.get("NODE_AUTH_TOKEN", "")

    @cached_property
    def registry_url(self) -> str:
        return (self.local_config.get("NPM_REGISTRY") or NPM_PUBLIC_REGISTRY).rstrip("/")

    # ---------- 路径 ----------
    @cached_property
    def packages_path(self) -> Path:
        return self.root_path / "packages"

    @cached_property
    def npm_packages_path(self) -> Path:
        return self.packages_path / ECOSYSTEM

    @cached_property
    def test_npm_path(self) -> Path:
        return self.root_path / "test" / ECOSYSTEM

    @cached_property
    def test_npm_package_json_path(self) -> Path:
        return self.test_npm_path / PACKAGE_JSON

    @cached_property
    def registry_path(self) -> Path:
        return self.root_path / "registry"

    @cached_property
    def manifest_json_path(self) -> Path:
        return self.registry_path / "manifest.json"

    @cached_property
    def extensions_json_path(self) -> Path:
        return self.registry_path / "extensions.json"

    @cached_property
    def root_node_modules_bin_path(self) -> Path:
        return self.root_path / NODE_MODULES / ".bin"

    @cached_property
    def cache_path(self) -> Path:
        return self.root_path / ".cache"

    @cached_property
    def github_cache_path(self) -> Path:
        # tarball 解压产物，与安装缓存同生命周期
        return self.cache_path / "github"

    @cached_property
    def temp_dir(self) -> Path:
        if self._temp_dir_arg:
            return self._temp_dir_arg
        configured = self.local_config.get("TEMP_DIR")
        if configured:
            return Path(configured)
        return Path(tempfile.gettempdir()) / "npm-package-tests"

    @cached_property
    def logs_path(self) -> Path:
        return self.temp_dir / "logs"

    # ---------- 包列表 ----------
    @cached_property
    def npm_package_names(self) -> List[str]:
        if not self.npm_packages_path.is_dir():
            raise ConfigError(f"未找到 override 包目录: {self.npm_packages_path}")
        return sorted(
            p.name for p in self.npm_packages_path.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    @cached_property
    def skip_tests(self) -> FrozenSet[str]:
        """跳过测试的包：非 Windows 下的 date、test/npm 中有独立测试文件的包、config.local 追加项。"""
        names = set()
        if not IS_WIN:
            names.add("date")
        if self.test_npm_path.is_dir():
            for fp in self.test_npm_path.iterdir():
                if fp.is_file() and ".test." in fp.name:
                    names.add(fp.name.split(".test.", 1)[0])
        names.update(as_list(self.local_config.get("SKIP_TESTS")))
        return frozenset(names)

    @cached_property
    def skip_tests_by_ecosystem(self) -> Dict[str, FrozenSet[str]]:
        return {ECOSYSTEM: self.skip_tests}

    @cached_property
    def allow_test_failures_by_ecosystem(self) -> Dict[str, FrozenSet[str]]:
        extra = as_list(self.local_config.get("ALLOW_TEST_FAILURES"))
        return {ECOSYSTEM: frozenset(ALLOW_TEST_FAILURES | set(extra))}

    # ---------- 并发 ----------
    def concurrency_for(self, stage: str) -> int:
        defaults = {
            "download": DOWNLOAD_CONCURRENCY,
            "install": INSTALL_CONCURRENCY,
            "test": TEST_CONCURRENCY,
        }
        if stage not in defaults:
            return MANIFEST_CONCURRENCY
        return pick_concurrency(defaults[stage], self.ci)
