# -*- coding: utf-8 -*-
"""终端输出：emoji/ASCII 自适应、进度行、失败列表与日志文件。"""

import os
import sys
import time
from pathlib import Path
from typing import Iterable, List, Tuple

from . import config


class Emoji:
    """根据终端能力自动选择 emoji 或 ASCII 替代符。"""

    _MAP = {
        "✅": "[OK]", "❌": "[X]", "⚠️": "[!]", "🔍": "[?]",
        "📦": "[PKG]", "🎉": "[YAY]", "🔧": "[TOOL]", "⏱️": "[TIME]",
        "📊": "[STAT]", "📝": "[LOG]", "🚫": "[BLOCK]", "🔁": "[RETRY]",
        "💾": "[CACHE]", "📚": "[DEPS]", "♻️": "[REUSE]",
    }

    def __init__(self):
        self.supports_emoji = self._detect()

    @staticmethod
    def _detect() -> bool:
        if getattr(sys, 'frozen', False):
            return False
        if config.IS_WIN:
            return bool(os.environ.get('WT_SESSION') or os.environ.get('TERM_PROGRAM'))
        return True

    def get(self, char: str) -> str:
        return char if self.supports_emoji else self._MAP.get(char, "[?]")


emoji = Emoji()


class Reporter:
    """
    各阶段共用的输出对象。quiet=True 时只打印汇总与错误，进度/逐包信息不打印。
    """

    def __init__(self, quiet: bool = False, debug: bool = False):
        self.quiet = quiet
        self.debug = debug

    def info(self, message: str = "") -> None:
        if not self.quiet:
            print(message, flush=True)

    def summary(self, message: str = "") -> None:
        print(message, flush=True)

    def success(self, message: str) -> None:
        self.info(f"{emoji.get('✅')} {message}")

    def warn(self, message: str) -> None:
        self.info(f"{emoji.get('⚠️')} {message}")

    def fail(self, message: str) -> None:
        print(f"{emoji.get('❌')} {message}", flush=True)

    def progress(self, done: int, total: int, label: str = "进度") -> None:
        if self.quiet:
            return
        pct = (done * 100) // total if total else 100
        print(f"{label}: {done}/{total} ({pct}%)", flush=True)

    def indented(self, lines: Iterable[str], prefix: str = "     ") -> None:
        for line in lines:
            print(f"{prefix}{line}", flush=True)


class SymbolProgress:
    """逐包打印一个状态符号，满一行（width 个）换行并标注 (完成数/总数)。"""

    def __init__(self, total: int, reporter: Reporter, width: int = 80):
        self.total = total
        self.reporter = reporter
        self.width = width
        self.done = 0
        self._column = 0

    def start(self) -> None:
        if self.reporter.quiet:
            return
        head = f"(0/{self.total}) "
        sys.stdout.write(head)
        sys.stdout.flush()
        self._column = len(head)

    def tick(self, symbol: str) -> None:
        self.done += 1
        if self.reporter.quiet:
            return
        if self._column >= self.width:
            head = f"\n({self.done}/{self.total}) "
            sys.stdout.write(head)
            self._column = len(head) - 1
        sys.stdout.write(emoji.get(symbol))
        sys.stdout.flush()
        self._column += 1

    def finish(self) -> None:
        if not self.reporter.quiet:
            sys.stdout.write("\n")
            sys.stdout.flush()


def progress_bar(done: int, total: int, counts: List[Tuple[str, int]], width: int = 40) -> str:
    pct = (done * 100) // total if total else 0
    filled = (done * width) // total if total else 0
    bar = "#" * filled + " " * (width - filled)
    stats = " ".join(f"{name}: {n}" for name, n in counts)
    return f"\r  [{bar}] {pct}% | {stats} | {done}/{total}"


def write_log(log_path: Path, title: str, lines: Iterable[str]) -> Path:
    """每次运行覆盖写入，只保留本次日志。"""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("w", encoding="utf-8") as f:
        f.write(f"# {title}\n# 时间: {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
        for line in lines:
            f.write(f"{line}\n")
    return log_path
