# -*- coding: utf-8 -*-
"""override 包发现：PackageRecord、跳过/允许失败判定、从 test/npm/package.json 取版本范围。"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import config
from .config import Settings
from .errors import ConfigError, PackageJsonError
from .package_json import read_package_json, resolve_original_package_name


@dataclass(frozen=True)
class PackageRecord:
    original_name: str
    override_name: str
    override_directory: Path
    version_spec: str = ""


def make_record(settings: Settings, override_name: str, version_spec: str = "") -> PackageRecord:
    return PackageRecord(
        original_name=resolve_original_package_name(override_name),
        override_name=override_name,
        override_directory=settings.npm_packages_path / override_name,
        version_spec=version_spec,
    )


def is_skipped(settings: Settings, *names: str, ecosystem: str = config.ECOSYSTEM) -> bool:
    skip_set = settings.skip_tests_by_ecosystem.get(ecosystem) or frozenset()
    return any(n in skip_set for n in names if n)


def is_allowed_failure(settings: Settings, *names: str, ecosystem: str = config.ECOSYSTEM) -> bool:
    allow_set = settings.allow_test_failures_by_ecosystem.get(ecosystem) or frozenset()
    return any(n in allow_set for n in names if n)


def load_test_dev_dependencies(settings: Settings) -> Dict[str, str]:
    """test/npm/package.json 的 devDependencies；文件缺失或损坏属于配置级错误。"""
    path = settings.test_npm_package_json_path
    try:
        data = read_package_json(path)
    except FileNotFoundError as e:
        raise ConfigError(f"未找到 {path}") from e
    except PackageJsonError as e:
        raise ConfigError(str(e)) from e
    return dict(data.get("devDependencies") or {})


def get_version_spec(dev_dependencies: Dict[str, str], original_name: str) -> Optional[str]:
    spec = dev_dependencies.get(original_name)
    return spec.strip() if isinstance(spec, str) and spec.strip() else None


def select_package_names(settings: Settings, requested: Optional[Iterable[str]] = None) -> List[str]:
    """--package 给了就用给定名单（保序去重），否则取 packages/npm 下全部 override 目录。"""
    if requested:
        out: List[str] = []
        for name in requested:
            if name and name not in out:
                out.append(name)
        return out
    return list(settings.npm_package_names)


def find_override_directory(settings: Settings, package_name: str) -> Optional[Path]:
    """按已安装包名查找 override 目录：先按作用域编码名，再按去掉作用域的名字。"""
    candidates = [package_name]
    if package_name.startswith("@") and "/" in package_name:
        scope, rest = package_name[1:].split("/", 1)
        candidates = [f"{scope}{config.SCOPE_DELIMITER}{rest}", rest]
    for name in candidates:
        path = settings.npm_packages_path / name
        if path.is_dir():
            return path
    return None
