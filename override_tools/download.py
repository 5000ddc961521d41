# -*- coding: utf-8 -*-
"""
阶段一：校验（download/validate）。

对每个 override 包检查：是否在跳过名单、override 目录是否存在、
test/npm/package.json 的 devDependencies 中是否有版本范围。
只读检查，单个包的失败写入 reason，结果写 download-results.json 供安装阶段读取。
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import config
from .config import Settings
from .console import Reporter, SymbolProgress, emoji
from .packages import (
    get_version_spec,
    is_skipped,
    load_test_dev_dependencies,
    make_record,
    select_package_names,
)
from .runner import run_bounded

REASON_SKIPPED = "Skipped"
REASON_NO_OVERRIDE = "No override"
REASON_NOT_IN_DEV_DEPENDENCIES = "Not in devDependencies"


@dataclass
class DownloadResult:
    package: str
    override_package: str
    downloaded: bool
    version_spec: Optional[str] = None
    override_path: Optional[str] = None
    reason: Optional[str] = None

    def to_json(self) -> Dict:
        data = {
            "package": self.package,
            "socketPackage": self.override_package,
            "downloaded": self.downloaded,
        }
        if self.version_spec is not None:
            data["versionSpec"] = self.version_spec
        if self.override_path is not None:
            data["overridePath"] = self.override_path
        if self.reason is not None:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_json(cls, data: Dict) -> "DownloadResult":
        return cls(
            package=data.get("package", ""),
            override_package=data.get("socketPackage") or data.get("package", ""),
            downloaded=bool(data.get("downloaded")),
            version_spec=data.get("versionSpec"),
            override_path=data.get("overridePath"),
            reason=data.get("reason"),
        )


def validate_package(settings: Settings, override_name: str, dev_dependencies: Dict[str, str]) -> DownloadResult:
    record = make_record(settings, override_name)
    original = record.original_name

    # 跳过名单最先判断，不触碰文件系统
    if is_skipped(settings, override_name, original):
        return DownloadResult(original, override_name, False, reason=REASON_SKIPPED)

    try:
        if not record.override_directory.is_dir():
            return DownloadResult(original, override_name, False, reason=REASON_NO_OVERRIDE)
    except OSError as e:
        return DownloadResult(original, override_name, False, reason=str(e))

    spec = get_version_spec(dev_dependencies, original)
    if not spec:
        return DownloadResult(original, override_name, False, reason=REASON_NOT_IN_DEV_DEPENDENCIES)

    return DownloadResult(
        original, override_name, True,
        version_spec=spec,
        override_path=str(record.override_directory),
    )


def is_failure(result: DownloadResult) -> bool:
    return not result.downloaded and result.reason != REASON_SKIPPED


def write_results(path: Path, results: Iterable) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([r.to_json() for r in results], indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def read_download_results(temp_dir: Path) -> Optional[List[DownloadResult]]:
    """读取 download-results.json；文件不存在返回 None。"""
    path = Path(temp_dir) / config.DOWNLOAD_RESULTS_JSON
    if not path.exists():
        return None
    return [DownloadResult.from_json(item) for item in json.loads(path.read_text(encoding="utf-8"))]


async def run_download(
    settings: Settings,
    requested: Optional[Iterable[str]] = None,
    concurrency: Optional[int] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[asyncio.Event] = None,
) -> List[DownloadResult]:
    reporter = reporter or Reporter()
    concurrency = max(1, concurrency or settings.concurrency_for("download"))
    names = select_package_names(settings, requested)
    temp_dir = settings.temp_dir

    reporter.info(f"{emoji.get('🔍')} 校验 {len(names)} 个 override 包，并发 {concurrency} ...")
    reporter.info(f"{emoji.get('✅')} 临时目录: {temp_dir}")
    reporter.info(f"进度: {emoji.get('✅')} = 成功, {emoji.get('❌')} = 失败, {emoji.get('⚠️')} = 跳过\n")

    temp_dir.mkdir(parents=True, exist_ok=True)
    dev_dependencies = load_test_dev_dependencies(settings)

    progress = SymbolProgress(len(names), reporter)
    progress.start()

    async def check(name: str) -> DownloadResult:
        result = validate_package(settings, name, dev_dependencies)
        if result.downloaded:
            progress.tick("✅")
        elif result.reason == REASON_SKIPPED:
            progress.tick("⚠️")
        else:
            progress.tick("❌")
        return result

    results = await run_bounded(names, check, concurrency, cancel=cancel, raise_errors=True)
    progress.finish()

    write_results(temp_dir / config.DOWNLOAD_RESULTS_JSON, results)
    failed = [r for r in results if is_failure(r)]
    if failed:
        reporter.fail(f"校验失败 {len(failed)} 个包：")
        reporter.indented(f"- {r.package}: {r.reason}" for r in failed)
    return results
