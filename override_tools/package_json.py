# -*- coding: utf-8 -*-
"""
package.json 读写与 override 字段合并。

- read_package_json / edit：读取为 dict，或得到可修改视图（update + save）。
- merge_override_fields：把 override 的入口字段整体覆盖到已安装包的 package.json 上。
- compute_override_hash：override 目录内容哈希，作为安装缓存的失效依据。
"""

import hashlib
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .errors import PackageJsonError


class _Absent:
    """update() 中表示「删除该字段」的哨兵值。"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "ABSENT"

    def __bool__(self):
        return False


ABSENT = _Absent()

REQUIRED_FIELDS = ("name", "version")

# 入口相关字段：override 有值则整体替换，没有值则从结果中删除
OVERRIDE_ENTRY_FIELDS = ("main", "module", "types", "files", "sideEffects", "socket")
# override 有值则整体替换，没有值则保留原包的值
OVERRIDE_REPLACE_IF_SET_FIELDS = ("exports", "dependencies")

OVERLAY_EXCLUDE_NAMES = frozenset({config.PACKAGE_JSON, ".DS_Store", config.NODE_MODULES})

TEST_RUNNERS = ("tests-only", "test:unit", "test:source", "test:module", "test:stock", "test:all")

_NPM_RUN_RE = re.compile(r"npm run ([-:\w]+)")
_NPM_RUN_ONLY_RE = re.compile(r"^npm run ([-:\w]+)$")
_SKIPPED_STEP_RE = re.compile(r"^npm run (?:lint|pretest|posttest)(?::[-\w]+)?$")
_COVERAGE_RE = re.compile(r"^(?:nyc|c8)(?:\s+--?[-\w]+(?:=\S+)?)*\s+")


def package_json_path(path) -> Path:
    path = Path(path)
    return path if path.name == config.PACKAGE_JSON else path / config.PACKAGE_JSON


def read_package_json(path) -> Dict[str, Any]:
    """读取 package.json（传目录或文件均可）；非法 JSON 抛 PackageJsonError，文件不存在抛 FileNotFoundError。"""
    fp = package_json_path(path)
    text = fp.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise PackageJsonError(fp, f"JSON 解析失败: {e}") from e
    if not isinstance(data, dict):
        raise PackageJsonError(fp, "顶层不是对象")
    return data


def dump_package_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_package_json(path, data: Dict[str, Any]) -> None:
    package_json_path(path).write_text(dump_package_json(data), encoding="utf-8")


def validate_package_json(data: Dict[str, Any]) -> List[str]:
    """返回缺失的必填字段问题列表；是否中止由调用方决定。"""
    return [f"缺少字段 {field}" for field in REQUIRED_FIELDS if not data.get(field)]


class EditablePackageJson:
    """可编辑的 package.json：update() 浅合并，save() 写回，保持原有键顺序。"""

    def __init__(self, path, content: Dict[str, Any]):
        self.path = package_json_path(path)
        self.content = content

    def update(self, fields: Dict[str, Any]) -> "EditablePackageJson":
        for key, value in fields.items():
            if value is ABSENT:
                self.content.pop(key, None)
            else:
                self.content[key] = value
        return self

    def save(self) -> None:
        write_package_json(self.path, self.content)


def edit(path) -> EditablePackageJson:
    return EditablePackageJson(path, read_package_json(path))


# ===== 包名 =====
def resolve_original_package_name(name: str) -> str:
    """
    override 名称 -> 原包名：
    @socketregistry/is-regex -> is-regex；hyrious__bun.lockb -> @hyrious/bun.lockb。
    """
    prefix = f"{config.SOCKET_REGISTRY_SCOPE}/"
    if name.startswith(prefix):
        name = name[len(prefix):]
    if not name.startswith("@") and config.SCOPE_DELIMITER in name:
        scope, rest = name.split(config.SCOPE_DELIMITER, 1)
        if scope and rest:
            return f"@{scope}/{rest}"
    return name


def override_name_for(original_name: str) -> str:
    """原包名 -> override 目录名（resolve_original_package_name 的逆操作）。"""
    if original_name.startswith("@") and "/" in original_name:
        scope, rest = original_name[1:].split("/", 1)
        return f"{scope}{config.SCOPE_DELIMITER}{rest}"
    return original_name


# ===== exports =====
def is_conditional_exports(entry_exports: Any) -> bool:
    """条件导出对象：非空，且所有键都不以 '.' 开头。"""
    if not isinstance(entry_exports, dict) or not entry_exports:
        return False
    return not any(k.startswith(".") for k in entry_exports)


def resolve_package_json_entry_exports(entry_exports: Any) -> Optional[Any]:
    """字符串 / 数组形式的 exports 规范成 {".": ...}；其它对象原样返回。"""
    if isinstance(entry_exports, (str, list)):
        return {".": entry_exports}
    if isinstance(entry_exports, dict):
        return entry_exports
    return None


# ===== override 合并 =====
def merge_override_fields(installed: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    以已安装包的 package.json 为底，合并 override 字段，返回新 dict：
    - exports / dependencies：override 声明了就整体替换（exports 不做深合并，
      条件导出对象与子路径导出对象无法安全合并）；
    - main / module / types / files / sideEffects / socket：一律取 override 的值，override 未声明则删除；
    - private 固定为 true，避免误发布。
    """
    merged = dict(installed)
    for field in OVERRIDE_REPLACE_IF_SET_FIELDS:
        if field in override:
            merged[field] = override[field]
    for field in OVERRIDE_ENTRY_FIELDS:
        if field in override:
            merged[field] = override[field]
        else:
            merged.pop(field, None)
    merged["private"] = True
    return merged


def _is_excluded(rel_parts) -> bool:
    return any(part in (config.NODE_MODULES, ".DS_Store") for part in rel_parts)


def iter_override_files(override_dir: Path, include_package_json: bool = True):
    """按路径排序遍历 override 目录下的文件，跳过 node_modules 与 .DS_Store。"""
    override_dir = Path(override_dir)
    for fp in sorted(override_dir.rglob("*")):
        rel = fp.relative_to(override_dir)
        if _is_excluded(rel.parts) or not fp.is_file():
            continue
        if not include_package_json and rel.as_posix() == config.PACKAGE_JSON:
            continue
        yield fp, rel


def compute_override_hash(override_dir) -> str:
    """override 目录内所有文件（相对路径 + 内容）的 sha256；目录不存在返回空串。"""
    override_dir = Path(override_dir)
    if not override_dir.is_dir():
        return ""
    h = hashlib.sha256()
    for fp, rel in iter_override_files(override_dir):
        h.update(rel.as_posix().encode("utf-8"))
        h.update(b"\0")
        h.update(fp.read_bytes())
        h.update(b"\0")
    return h.hexdigest()


# ===== 测试脚本清理 =====
def clean_test_script(script: str) -> str:
    """去掉 lint / pretest / posttest 步骤与 nyc / c8 覆盖率包装。"""
    steps = []
    for step in (script or "").split("&&"):
        step = step.strip()
        if not step or _SKIPPED_STEP_RE.match(step):
            continue
        steps.append(_COVERAGE_RE.sub("", step).strip())
    return " && ".join(s for s in steps if s)


def clean_test_scripts(scripts: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """
    整理 scripts，让 npm test 直接跑真正的测试：
    删除 pretest/posttest；test 只是 lint 或 npm run X 转发时改为实际测试命令；清理 test / test:* / tests* 脚本。
    """
    if not scripts:
        return scripts
    scripts = dict(scripts)
    scripts.pop("pretest", None)
    scripts.pop("posttest", None)

    actual = next((r for r in TEST_RUNNERS if scripts.get(r)), None)
    test = scripts.get("test")
    if not actual and test:
        m = _NPM_RUN_RE.search(test)
        if m and scripts.get(m.group(1)):
            actual = m.group(1)

    if test and ("lint" in test or "pretest" in test):
        real = next((r for r in TEST_RUNNERS if scripts.get(r) and "lint" not in scripts[r]), None)
        if real:
            scripts["test"] = scripts[real]

    test = scripts.get("test")
    m = _NPM_RUN_ONLY_RE.match(test or "")
    if m:
        target = scripts.get(m.group(1))
        if target and "lint" not in target:
            scripts["test"] = target

    if actual and scripts.get(actual):
        scripts[actual] = clean_test_script(scripts[actual])
    for key, value in list(scripts.items()):
        if key == "test" or key.startswith("test:") or key.startswith("tests"):
            scripts[key] = clean_test_script(value)
    if not scripts.get("test"):
        scripts.pop("test", None)
    return scripts
