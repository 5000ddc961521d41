# -*- coding: utf-8 -*-
"""git 辅助：找出工作区中有改动（暂存 / 未暂存 / 未跟踪）的文件与 override 包。"""

import subprocess
from pathlib import Path
from typing import List, Optional

from . import config
from .config import Settings


def changed_files(cwd: Path, timeout: int = 30) -> List[str]:
    """
    git status --porcelain 列出的改动文件（相对仓库根的 posix 路径）。
    git 不可用或不在仓库中时返回空列表。
    """
    try:
        out = subprocess.run(
            [config.GIT, "status", "--porcelain", "--untracked-files=all"],
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            cwd=str(cwd),
        )
    except (subprocess.TimeoutExpired, OSError):
        return []
    if out.returncode != 0:
        return []
    files = []
    for line in out.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        # 重命名: "R  old -> new"
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip().strip('"'))
    return files


def changed_packages(settings: Settings, files: Optional[List[str]] = None) -> List[str]:
    """改动落在 packages/npm/<name>/ 下的 override 包名（排序去重）。"""
    if files is None:
        files = changed_files(settings.root_path)
    prefix = settings.npm_packages_path.relative_to(settings.root_path).as_posix() + "/"
    names = set()
    for fp in files:
        if fp.startswith(prefix):
            name = fp[len(prefix):].split("/", 1)[0]
            if name:
                names.add(name)
    return sorted(names)


def has_package_changes(settings: Settings, files: Optional[List[str]] = None) -> bool:
    """packages/ 下是否有任何改动（manifest 生成前判断是否需要重建）。"""
    if files is None:
        files = changed_files(settings.root_path)
    prefix = settings.packages_path.relative_to(settings.root_path).as_posix() + "/"
    return any(fp.startswith(prefix) for fp in files)
