# -*- coding: utf-8 -*-
"""
从项目根目录的 config.local 读取本地配置（可选文件，模板格式 KEY=VALUE）。
敏感信息与个人偏好（registry 地址、临时目录、额外跳过列表）不写在代码里，统一放在 config.local。
"""

from pathlib import Path
from typing import Dict, List

CONFIG_FILE_NAME = "config.local"

TRUTHY = ("1", "true", "yes", "on")


def load_config(base_dir: Path) -> Dict[str, str]:
    """读取 config.local，返回键值对（键大写，值已 strip）；文件不存在时返回空 dict。"""
    cfg: Dict[str, str] = {}
    path = Path(base_dir) / CONFIG_FILE_NAME
    if not path.exists():
        return cfg
    for line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" in line:
            k, v = line.split("=", 1)
            cfg[k.strip().upper()] = v.strip().strip("'\"").rstrip("/")
    return cfg


def as_bool(value) -> bool:
    return (value or "").strip().lower() in TRUTHY


def as_list(value) -> List[str]:
    """逗号分隔的值 -> 去空去重保序的列表。"""
    out: List[str] = []
    for part in (value or "").split(","):
        part = part.strip()
        if part and part not in out:
            out.append(part)
    return out
