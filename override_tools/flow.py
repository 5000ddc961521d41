# -*- coding: utf-8 -*-
"""
各阶段的退出码约定 + 闭环流程（校验 → 安装 → 测试）。

每个 *_stage 返回退出码：0 成功，1 有失败；force=True 时阶段内的失败不影响退出码。
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .config import Settings
from .console import Reporter, emoji, write_log
from .download import is_failure, run_download
from .install import Installer, run_install, summarize as summarize_install
from .package_tests import run_tests, summarize as summarize_tests


@dataclass
class StageOptions:
    packages: List[str] = field(default_factory=list)
    concurrency: Optional[int] = None
    force: bool = False


def _exit_code(failed: bool, force: bool) -> int:
    return 1 if failed and not force else 0


async def download_stage(settings: Settings, opts: StageOptions, reporter: Reporter,
                         cancel: Optional[asyncio.Event] = None) -> int:
    results = await run_download(settings, opts.packages, opts.concurrency, reporter, cancel)
    ok = sum(1 for r in results if r.downloaded)
    reporter.summary(f"{emoji.get('📊')} 校验完成: 通过 {ok}/{len(results)}")
    return _exit_code(any(is_failure(r) for r in results), opts.force)


async def install_stage(settings: Settings, opts: StageOptions, reporter: Reporter,
                        cancel: Optional[asyncio.Event] = None, installer: Optional[Installer] = None) -> int:
    installer = installer or Installer(settings, reporter)
    t0 = time.time()
    results = await run_install(settings, opts.packages, opts.concurrency, reporter, cancel, installer)
    critical = summarize_install(settings, results, installer.counts, reporter)
    reporter.summary(f"{emoji.get('⏱️')} 安装耗时 {time.time() - t0:.1f} 秒")
    if critical:
        write_log(settings.logs_path / "install-failures.log", "安装失败记录",
                  (f"{r.package.original_name}  {r.reason}" for r in critical))
    return _exit_code(bool(critical), opts.force)


async def test_stage(settings: Settings, opts: StageOptions, reporter: Reporter,
                     cancel: Optional[asyncio.Event] = None, **kwargs) -> int:
    results = await run_tests(settings, opts.packages, opts.force, opts.concurrency, reporter, cancel, **kwargs)
    if not results:
        return 0
    failed = summarize_tests(results, reporter)
    # 测试阶段只要有失败就返回 1，--force 只决定测哪些包
    return 1 if failed else 0


async def run_flow(settings: Settings, opts: StageOptions, reporter: Reporter,
                   cancel: Optional[asyncio.Event] = None) -> int:
    """依次执行三个阶段；某阶段失败（且未 --force）时停止。"""
    steps = [
        ("Step1: 校验 override 包", download_stage),
        ("Step2: 安装并覆盖 override", install_stage),
        ("Step3: 运行原包测试", test_stage),
    ]
    for title, stage in steps:
        if cancel is not None and cancel.is_set():
            reporter.summary("已中断，后续阶段不再执行")
            return 1
        reporter.summary(f"\n{title} ...")
        code = await stage(settings, opts, reporter, cancel)
        if code != 0:
            reporter.fail(f"{title} 失败（退出码 {code}），流程停止")
            return code
    reporter.summary(f"\n{emoji.get('🎉')} 全部阶段完成")
    return 0
