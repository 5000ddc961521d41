# -*- coding: utf-8 -*-
"""
npm registry 客户端（aiohttp）：
- 拉取 packument（全部版本元数据），按 dist-tag 或 semver range 解析出具体版本的 manifest；
- range 匹配支持 *, x, ^, ~, >=, >, <=, <, =, ||、空格连接的多个条件以及 ^4 / 1.x 之类的简写；
- make_purl 生成 pkg:npm/... 形式的 PURL。
"""

import asyncio
import re
from typing import Dict, Optional, Tuple

import aiohttp

from . import config


def registry_package_url(registry: str, name: str) -> str:
    """作用域包名编码为 @scope%2Fname。"""
    registry = registry.rstrip('/')
    if name.startswith('@') and '/' in name:
        scope, pkg_name = name.split('/', 1)
        return f"{registry}/{scope}%2F{pkg_name}"
    return f"{registry}/{name}"


def split_package_spec(spec: str) -> Tuple[str, str]:
    """"@scope/name@^1.2" -> ("@scope/name", "^1.2")；没有版本部分时为 latest。"""
    spec = (spec or '').strip()
    at = spec.find('@', 1)
    if at == -1:
        return spec, 'latest'
    return spec[:at], spec[at + 1:].strip() or 'latest'


def make_purl(name: str, version: str) -> str:
    """pkg:npm/is-regex@1.1.4；作用域包：pkg:npm/%40scope/name@1.0.0。"""
    if name.startswith('@'):
        name = f"%40{name[1:]}"
    return f"pkg:{config.ECOSYSTEM}/{name}@{version}"


def parse_version_tuple(version_str) -> Tuple[int, int, int]:
    """将 4.6.7 或 4.6.7-beta.1 解析为 (4, 6, 7) 用于比较，预发布只取数字部分。"""
    m = re.match(r'^v?(\d+)\.(\d+)\.(\d+)', str(version_str).strip())
    if m:
        return (int(m.group(1)), int(m.group(2)), int(m.group(3)))
    return (0, 0, 0)


def is_prerelease(version_str) -> bool:
    return '-' in str(version_str).split('+', 1)[0]


def version_satisfies_range(version_str, range_str) -> bool:
    """判断 version 是否满足 npm semver range。"""
    v = parse_version_tuple(version_str)
    range_str = (range_str or '').strip()

    # 通配符
    if not range_str or range_str in ('*', 'x', 'X', 'latest'):
        return True

    # || 分隔：任一满足
    if '||' in range_str:
        return any(version_satisfies_range(version_str, p.strip())
                   for p in range_str.split('||'))

    # 一个条件: 可选前缀 + 主版本号[.次版本号[.补丁号]]
    m = re.match(
        r'^(\^|~|>=|>|<=|<|=)?\s*v?(\d+)(?:\.(\d+|[xX*]))?(?:\.(\d+|[xX*]))?(?:-[0-9A-Za-z.-]+)?',
        range_str,
    )
    if not m:
        return False

    prefix = m.group(1) or ''
    major = int(m.group(2))
    minor_raw, patch_raw = m.group(3), m.group(4)
    has_minor = minor_raw is not None and minor_raw not in ('x', 'X', '*')
    has_patch = patch_raw is not None and patch_raw not in ('x', 'X', '*')
    minor = int(minor_raw) if has_minor else 0
    patch = int(patch_raw) if has_patch else 0
    b = (major, minor, patch)

    def _ok():
        if prefix == '^':
            # ^1.2.3: >=1.2.3 <2；^0.2.3: >=0.2.3 <0.3；^0.0.3: 精确
            if major > 0:
                return v >= b and v[0] == major
            if has_minor and minor > 0:
                return v >= b and v[0] == 0 and v[1] == minor
            if has_patch:
                return v == b
            return v[0] == major
        if prefix == '~':
            if has_minor:
                return v >= b and v[0] == major and v[1] == minor
            return v >= b and v[0] == major
        if prefix == '>=':
            return v >= b
        if prefix == '>':
            # >1 / >1.2：大于整个 1.x / 1.2.x
            if not has_minor:
                return v[0] > major
            if not has_patch:
                return v[:2] > (major, minor)
            return v > b
        if prefix == '<=':
            if not has_minor:
                return v[0] <= major
            if not has_patch:
                return v[:2] <= (major, minor)
            return v <= b
        if prefix == '<':
            return v < b
        # "=" 或无前缀
        if not has_minor:
            return v[0] == major          # "2" → 任意 2.x.x
        if not has_patch:
            return v[0] == major and v[1] == minor  # "1.2" → 任意 1.2.x
        return v == b

    ok = _ok()
    # 空格分隔的后续条件（如 ">=1 <3"）：全部满足
    rest = range_str[m.end():].strip()
    if rest and ok:
        return version_satisfies_range(version_str, rest)
    return ok


def pick_best_version(versions, range_str) -> Optional[str]:
    """
    从 versions（dict 的 key 或列表）中选一个满足 range 的最高版本。
    预发布版本只有在 range 本身写了预发布号时才参与。
    """
    allow_pre = '-' in (range_str or '')
    candidates = []
    for ver in versions:
        if is_prerelease(ver) and not allow_pre:
            continue
        if version_satisfies_range(ver, range_str):
            candidates.append((parse_version_tuple(ver), ver))
    if not candidates:
        return None
    candidates.sort(key=lambda x: x[0], reverse=True)
    return candidates[0][1]


def resolve_version(packument: Dict, spec: str) -> Optional[str]:
    """dist-tag（latest 等）→ 精确版本 → semver range，依次尝试。"""
    versions = packument.get('versions') or {}
    spec = (spec or '').strip() or 'latest'
    tags = packument.get('dist-tags') or {}
    if spec in tags:
        return tags[spec] if tags[spec] in versions else None
    if spec in versions:
        return spec
    return pick_best_version(versions, spec)


def open_session(concurrency: int = config.MANIFEST_CONCURRENCY) -> aiohttp.ClientSession:
    timeout = aiohttp.ClientTimeout(total=config.REQUEST_TIMEOUT)
    conn = aiohttp.TCPConnector(limit=max(1, concurrency))
    return aiohttp.ClientSession(timeout=timeout, connector=conn)


async def fetch_packument(session, name: str, registry: str = config.NPM_PUBLIC_REGISTRY) -> Optional[Dict]:
    """请求包的完整元数据；404 / 网络错误 / 非 JSON 返回 None。"""
    url = registry_package_url(registry, name)
    try:
        async with session.get(url, headers={"Accept": "application/json"}) as resp:
            if resp.status != 200:
                return None
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return None
    return data if isinstance(data, dict) else None


async def fetch_package_manifest(session, spec: str, registry: str = config.NPM_PUBLIC_REGISTRY) -> Optional[Dict]:
    """"name@range" → 满足条件的最高版本的 manifest（versions[ver]）；找不到返回 None。"""
    name, range_spec = split_package_spec(spec)
    packument = await fetch_packument(session, name, registry)
    if not packument:
        return None
    version = resolve_version(packument, range_spec)
    if not version:
        return None
    manifest = (packument.get('versions') or {}).get(version)
    return manifest if isinstance(manifest, dict) else None
