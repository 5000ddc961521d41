# -*- coding: utf-8 -*-
"""
命令行入口：override-tools <command> [选项]

  download   校验 override 包（跳过名单 / override 目录 / devDependencies 版本范围）
  install    安装原包到独立目录并覆盖 override 文件（带缓存）
  test       在已安装的包里运行 npm test
  flow       download → install → test
  manifest   生成 registry/manifest.json
  bump       递增 override 包版本号
  publish    发布 override 包
"""

import argparse
import asyncio
import signal
import sys
import time
import traceback
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from . import __version__, config
from .config import Settings
from .console import Reporter, emoji
from .errors import FatalError
from .flow import StageOptions, download_stage, install_stage, run_flow, test_stage
from .publish import MAX_WORKERS, RELEASE_TYPES, run_bump, run_publish
from .registry_manifest import run_manifest


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--package", "-p", action="append", default=[], metavar="NAME",
                        help="只处理指定的包（原包名或 override 目录名，可重复）")
    common.add_argument("--concurrency", "-c", type=int, default=None, help="并发数（默认按阶段与 CI 环境决定）")
    common.add_argument("--temp-dir", type=Path, default=None, help="安装 / 测试用的临时目录")
    common.add_argument("--force", "-f", action="store_true",
                        help="校验 / 安装阶段失败不影响退出码；测试与 manifest 处理全部包")
    common.add_argument("--quiet", "-q", action="store_true", help="只输出汇总与错误")
    common.add_argument("--debug", action="store_true", help="出错时打印完整堆栈")

    p = argparse.ArgumentParser(prog="override-tools", description="npm override 包校验 / 安装 / 测试 / 发布工具")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    sub.add_parser("download", parents=[common], help="校验 override 包")
    sub.add_parser("install", parents=[common], help="安装原包并覆盖 override 文件")
    sub.add_parser("test", parents=[common], help="运行原包测试")
    sub.add_parser("flow", parents=[common], help="download → install → test")
    sub.add_parser("manifest", parents=[common], help="生成 registry/manifest.json")

    bump = sub.add_parser("bump", parents=[common], help="递增 override 包版本号")
    bump.add_argument("--release", "-r", choices=RELEASE_TYPES, default="patch", help="版本递增类型")

    publish = sub.add_parser("publish", parents=[common], help="发布 override 包")
    publish.add_argument("--tag", default=None, help="npm dist-tag（默认按版本号推断，正式版为 latest）")
    publish.add_argument("--dry-run", action="store_true", help="只检查不发布")
    publish.add_argument("--workers", "-w", type=int, default=MAX_WORKERS, help="并发发布数")
    return p


async def _run_cancellable(fn: Callable[[asyncio.Event], Awaitable[int]]) -> int:
    """Ctrl+C 时置位 cancel 事件：不再派发新任务，已在跑的任务跑完为止。"""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    handled = False
    if not config.IS_WIN:
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.set)
            handled = True
        except (NotImplementedError, RuntimeError):
            pass
    try:
        code = await fn(cancel)
    finally:
        if handled:
            loop.remove_signal_handler(signal.SIGINT)
    if cancel.is_set():
        print("\n已中断：未开始的任务已取消", flush=True)
        return 1
    return code


def run_command(args: argparse.Namespace, settings: Settings, reporter: Reporter) -> int:
    opts = StageOptions(packages=list(args.package), concurrency=args.concurrency, force=args.force)
    stages = {
        "download": download_stage,
        "install": install_stage,
        "test": test_stage,
        "flow": run_flow,
    }
    if args.command in stages:
        stage = stages[args.command]
        return asyncio.run(_run_cancellable(lambda cancel: stage(settings, opts, reporter, cancel)))

    if args.command == "manifest":
        async def manifest(cancel: asyncio.Event) -> int:
            await run_manifest(settings, args.force, args.concurrency, reporter, cancel)
            return 0
        return asyncio.run(_run_cancellable(manifest))

    if args.command == "bump":
        run_bump(settings, args.package, args.release, reporter)
        return 0

    if args.command == "publish":
        outcomes = run_publish(settings, args.package, args.tag, args.dry_run, args.workers, reporter)
        return 1 if any(status == "failure" for _, status, _ in outcomes) else 0

    raise FatalError(f"未知命令: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    config.configure_console()
    args = build_parser().parse_args(argv)
    settings = Settings(temp_dir=args.temp_dir)
    reporter = Reporter(quiet=args.quiet, debug=args.debug or settings.verbose_build)

    t0 = time.time()
    try:
        code = run_command(args, settings, reporter)
    except FatalError as e:
        reporter.fail(f"程序出错: {e}")
        if reporter.debug:
            traceback.print_exc()
        return 1
    except KeyboardInterrupt:
        print("\n已中断", flush=True)
        return 1
    reporter.info(f"{emoji.get('⏱️')} 总耗时 {time.time() - t0:.1f} 秒")
    return code


if __name__ == "__main__":
    sys.exit(main())
