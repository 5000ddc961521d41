# -*- coding: utf-8 -*-
"""子进程执行：异步启动 npm / pnpm / git，捕获输出，非 0 退出码抛 CommandError。"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence


@dataclass
class CommandResult:
    cmd: List[str]
    code: int
    stdout: str
    stderr: str


class CommandError(Exception):
    """命令以非 0 退出码结束；保留 code/stdout/stderr 供诊断。"""

    def __init__(self, cmd: Sequence[str], code: Optional[int], stdout: str = "", stderr: str = ""):
        self.cmd = list(cmd)
        self.code = code
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(f"Command failed: {' '.join(self.cmd)}")


def child_env(extra: Optional[Dict[str, Optional[str]]] = None, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """继承当前环境并设置 NODE_NO_WARNINGS；extra 中值为 None 的键会被删除。"""
    env = dict(os.environ if base is None else base)
    env["NODE_NO_WARNINGS"] = "1"
    for k, v in (extra or {}).items():
        if v is None:
            env.pop(k, None)
        else:
            env[k] = v
    return env


async def run_command(
    cmd: Sequence[str],
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    check: bool = True,
) -> CommandResult:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            env=env if env is not None else child_env(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise CommandError(cmd, None, "", str(e)) from e
    out, err = await proc.communicate()
    stdout = out.decode("utf-8", errors="replace")
    stderr = err.decode("utf-8", errors="replace")
    if check and proc.returncode != 0:
        raise CommandError(cmd, proc.returncode, stdout, stderr)
    return CommandResult(list(cmd), proc.returncode, stdout, stderr)


def head_lines(text: str, n: int = 20) -> List[str]:
    return (text or "").splitlines()[:n]


def tail_lines(text: str, n: int = 20) -> List[str]:
    lines = (text or "").splitlines()
    return lines[-n:] if n else []
