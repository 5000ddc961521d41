# -*- coding: utf-8 -*-
"""
生成 registry/manifest.json：每个 override 包一条 [purl, 元数据]，按 purl 排序。

元数据来源：
- override 包自身的 package.json（name / type / exports / engines / socket）；
- 公网 registry 中原包 <name>@<test/npm 中的版本范围>（license / deprecated）；
- registry 中已发布的 override 包 <name>@latest（version）；
- registry/extensions.json 中额外登记的包。
相同输入多次生成的文件逐字节一致。
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from . import config
from .config import Settings
from .console import Reporter, emoji
from .git import has_package_changes
from .package_json import (
    is_conditional_exports,
    read_package_json,
    resolve_original_package_name,
    resolve_package_json_entry_exports,
)
from .packages import get_version_spec, is_skipped, load_test_dev_dependencies
from .registry import fetch_package_manifest, make_purl, open_session
from .runner import run_bounded

AT_LATEST = "@latest"
UNLICENSED = "UNLICENSED"
DEFAULT_NODE_RANGE = ">=18"
PACKAGE_MANAGER_ENGINES = ("npm", "pnpm", "yarn")
BLESSED_SCOPES = ("@socketregistry/", "@socketsecurity/")

ManifestEntry = Tuple[str, Dict[str, Any]]
FetchManifest = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


def filter_engines(engines: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """去掉 npm / pnpm / yarn 这类包管理器约束，只保留运行时约束。"""
    if not engines:
        return engines
    return {k: v for k, v in engines.items() if k not in PACKAGE_MANAGER_ENGINES}


def sorted_object(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: data[k] for k in sorted(data)}


def is_blessed_package_name(name: str) -> bool:
    return any(name.startswith(scope) for scope in BLESSED_SCOPES)


def detect_interop(pkg_json: Dict[str, Any]) -> List[str]:
    """cjs 总有；type=module 加 esm；非 esm 且入口导出同时有 node 和 default 条件时加 browserify。"""
    interop = ["cjs"]
    is_esm = pkg_json.get("type") == "module"
    if is_esm:
        interop.append("esm")
    entry = resolve_package_json_entry_exports(pkg_json.get("exports"))
    if not is_esm and entry:
        candidates = [entry, entry.get(".")]
        if any(is_conditional_exports(c) and "node" in c and "default" in c for c in candidates):
            interop.append("browserify")
    return sorted(interop)


def build_entry_metadata(
    pkg_json: Dict[str, Any],
    original_name: str,
    original_manifest: Dict[str, Any],
    version: str,
    skip_tests: bool,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "name": pkg_json.get("name"),
        "interop": detect_interop(pkg_json),
        "license": original_manifest.get("license") or UNLICENSED,
        "package": original_name,
        "version": version,
    }
    if original_manifest.get("deprecated"):
        meta["deprecated"] = True
    engines = pkg_json.get("engines")
    meta["engines"] = sorted_object(filter_engines(engines)) if engines else {"node": DEFAULT_NODE_RANGE}
    if skip_tests:
        meta["skipTests"] = True
    socket = pkg_json.get("socket")
    if isinstance(socket, dict):
        meta.update(socket)
    return sorted_object(meta)


def read_extensions(path: Path, ecosystem: str = config.ECOSYSTEM) -> List[Dict[str, Any]]:
    """registry/extensions.json 中 [purl, data] 列表的 data 部分；文件不存在返回空列表。"""
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    return [item[1] for item in data.get(ecosystem) or [] if isinstance(item, list) and len(item) == 2]


def render_manifest(entries: List[ManifestEntry], ecosystem: str = config.ECOSYSTEM) -> str:
    manifest = {ecosystem: sorted(entries, key=lambda e: e[0])} if entries else {}
    return json.dumps(manifest, indent=2, ensure_ascii=False) + "\n"


class ManifestBuilder:
    """fetch 为 "name@spec" → registry manifest 的异步函数；测试中可注入假的实现。"""

    def __init__(self, settings: Settings, fetch: FetchManifest, reporter: Optional[Reporter] = None,
                 concurrency: Optional[int] = None, cancel: Optional[asyncio.Event] = None):
        self.settings = settings
        self.fetch = fetch
        self.reporter = reporter or Reporter()
        self.concurrency = max(1, concurrency or settings.concurrency_for("manifest"))
        self.cancel = cancel

    async def override_entry(self, override_name: str, dev_dependencies: Dict[str, str]) -> Optional[ManifestEntry]:
        original = resolve_original_package_name(override_name)
        spec = get_version_spec(dev_dependencies, original) or "latest"
        original_id = f"{original}@{spec}"
        original_manifest = await self.fetch(original_id)
        if not original_manifest:
            self.reporter.warn(f"{original_id}: registry 中未找到")
            return None

        pkg_json = read_package_json(self.settings.npm_packages_path / override_name)
        name = pkg_json.get("name") or override_name
        published = await self.fetch(f"{name}{AT_LATEST}")
        if not published:
            self.reporter.warn(f"{name}: registry 中未找到")
            return None

        version = published.get("version") or "latest"
        meta = build_entry_metadata(
            pkg_json, original, original_manifest, version,
            skip_tests=is_skipped(self.settings, override_name, original),
        )
        return make_purl(name, version), meta

    async def extension_entry(self, data: Dict[str, Any]) -> Optional[ManifestEntry]:
        name = data.get("name") or ""
        package_id = f"{name}{AT_LATEST}"
        published = await self.fetch(package_id)
        if not published:
            self.reporter.warn(f"{package_id}: registry 中未找到")
            return None
        version = published.get("version") or "latest"
        engines = (published.get("engines") or data.get("engines")) if is_blessed_package_name(name) else data.get("engines")
        meta = {
            "categories": (published.get("socket") or {}).get("categories") or data.get("categories"),
            "engines": filter_engines(engines),
            "interop": data.get("interop"),
            "license": published.get("license") or data.get("license"),
            "name": name,
            "package": data.get("package"),
            "version": version,
        }
        return make_purl(name, version), sorted_object({k: v for k, v in meta.items() if v is not None})

    async def resolve_latest(self, entry: ManifestEntry) -> ManifestEntry:
        """purl 仍以 @latest 结尾的条目再查一次 registry 换成具体版本。"""
        purl, meta = entry
        if not purl.endswith(AT_LATEST):
            return entry
        published = await self.fetch(f"{meta.get('name')}{AT_LATEST}")
        version = (published or {}).get("version")
        if not version or version == "latest":
            self.reporter.warn(f"{meta.get('name')}: 无法解析 latest 版本")
            return entry
        meta = dict(meta, version=version)
        return f"{purl[:-len(AT_LATEST)]}@{version}", meta

    async def build(self, override_names: Iterable[str]) -> List[ManifestEntry]:
        dev_dependencies = load_test_dev_dependencies(self.settings)
        extensions = read_extensions(self.settings.extensions_json_path)

        ext_entries = await run_bounded(extensions, self.extension_entry, self.concurrency,
                                        cancel=self.cancel, raise_errors=True)
        pkg_entries = await run_bounded(
            list(override_names),
            lambda n: self.override_entry(n, dev_dependencies),
            self.concurrency, cancel=self.cancel, raise_errors=True,
        )
        entries = [e for e in [*ext_entries, *pkg_entries] if e]
        entries = await run_bounded(entries, self.resolve_latest, self.concurrency,
                                    cancel=self.cancel, raise_errors=True)
        return sorted(entries, key=lambda e: e[0])


async def run_manifest(
    settings: Settings,
    force: bool = False,
    concurrency: Optional[int] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[asyncio.Event] = None,
    fetch: Optional[FetchManifest] = None,
    changed_files: Optional[List[str]] = None,
) -> Optional[Path]:
    """生成并写入 manifest.json；未加 --force 且 packages/ 下没有改动时直接返回 None。"""
    reporter = reporter or Reporter()
    if not force and not has_package_changes(settings, changed_files):
        reporter.info("packages/ 下没有改动，跳过 manifest 生成（使用 --force 强制生成）")
        return None

    out_path = settings.manifest_json_path
    reporter.info(f"{emoji.get('📝')} 更新 {out_path} ...")

    async def build(fetcher: FetchManifest) -> List[ManifestEntry]:
        builder = ManifestBuilder(settings, fetcher, reporter, concurrency, cancel)
        return await builder.build(settings.npm_package_names)

    if fetch is not None:
        entries = await build(fetch)
    else:
        async with open_session(concurrency or settings.concurrency_for("manifest")) as session:
            entries = await build(lambda spec: fetch_package_manifest(session, spec, settings.registry_url))

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(render_manifest(entries), encoding="utf-8")
    reporter.success(f"manifest 已更新: {len(entries)} 条")
    return out_path
