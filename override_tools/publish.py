# -*- coding: utf-8 -*-
"""
override 包版本号递增与批量发布。

bump：改 packages/npm/<name>/package.json 的 version（patch / minor / major）。
publish：先查 registry 是否已有同版本，已有则跳过；否则在包目录下执行 npm publish --access public。
registry 中已存在时 npm 报 "cannot publish over"，同样计为跳过。每次运行覆盖写 logs/publish.log。
"""

import re
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import requests

from . import config
from .config import Settings
from .console import Reporter, emoji, progress_bar
from .errors import PackageJsonError, VersionError
from .package_json import EditablePackageJson, edit, read_package_json, validate_package_json
from .packages import select_package_names
from .process import child_env
from .registry import registry_package_url

RELEASE_TYPES = ("patch", "minor", "major")
MAX_WORKERS = 8
PUBLISH_TIMEOUT = 300

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")

PublishOutcome = Tuple[str, str, Optional[str]]


def bump_version(version: str, release: str = "patch") -> str:
    """
    1.2.3 -> 1.2.4 / 1.3.0 / 2.0.0。
    预发布版本做 patch 时去掉预发布号（1.2.4-beta.1 -> 1.2.4），与 npm version 行为一致。
    """
    if release not in RELEASE_TYPES:
        raise ValueError(f"未知的 release 类型: {release}")
    m = _VERSION_RE.match((version or "").strip())
    if not m:
        raise ValueError(f"无法解析版本号: {version!r}")
    major, minor, patch = int(m.group(1)), int(m.group(2)), int(m.group(3))
    pre = m.group(4)
    if release == "major":
        if pre and minor == 0 and patch == 0:
            return f"{major}.0.0"
        return f"{major + 1}.0.0"
    if release == "minor":
        if pre and patch == 0:
            return f"{major}.{minor}.0"
        return f"{major}.{minor + 1}.0"
    if pre:
        return f"{major}.{minor}.{patch}"
    return f"{major}.{minor}.{patch + 1}"


def plan_bump(package_dir: Path, release: str = "patch") -> Tuple[EditablePackageJson, str, str]:
    """读取并计算新版本，不写盘；返回 (可编辑 package.json, 旧版本, 新版本)。版本号非法时抛 ValueError。"""
    pkg = edit(package_dir)
    old = pkg.content.get("version") or "0.0.0"
    return pkg, old, bump_version(old, release)


def run_bump(settings: Settings, requested: Optional[Iterable[str]] = None, release: str = "patch",
             reporter: Optional[Reporter] = None) -> List[Tuple[str, str, str]]:
    """先全部检查再统一写盘：任一包版本号无法递增时抛 VersionError，所有包保持原样。"""
    reporter = reporter or Reporter()
    planned = []
    problems = []
    for name in select_package_names(settings, requested):
        package_dir = settings.npm_packages_path / name
        if not (package_dir / config.PACKAGE_JSON).exists():
            reporter.warn(f"{name}: 未找到 package.json，跳过")
            continue
        try:
            planned.append((name, *plan_bump(package_dir, release)))
        except ValueError as e:
            problems.append(f"{name}: {e}")
    if problems:
        raise VersionError("版本号无法递增，未修改任何包: " + "; ".join(problems))

    bumped = []
    for name, pkg, old, new in planned:
        pkg.update({"version": new}).save()
        reporter.info(f"{emoji.get('🔧')} {name}: {old} -> {new}")
        bumped.append((name, old, new))
    reporter.summary(f"{emoji.get('✅')} 已更新 {len(bumped)} 个包的版本号（{release}）")
    return bumped


def release_tag(version: str, default: str = "latest") -> str:
    """1.0.0-beta.1 -> beta；正式版本用 default。"""
    m = _VERSION_RE.match(version or "")
    if m and m.group(4):
        return re.split(r"[.\d]", m.group(4), maxsplit=1)[0] or default
    return default


def is_version_published(name: str, version: str, registry: str, timeout: int = config.REQUEST_TIMEOUT) -> Optional[bool]:
    """查询 registry：已发布 True，未发布 False，查询失败 None（交给 npm publish 判断）。"""
    try:
        r = requests.get(registry_package_url(registry, name), timeout=timeout,
                         headers={"Accept": "application/json"})
    except requests.RequestException:
        return None
    if r.status_code == 404:
        return False
    if r.status_code != 200:
        return None
    try:
        versions = r.json().get("versions") or {}
    except ValueError:
        return None
    return version in versions


def publish_one(settings: Settings, package_dir: Path, tag: Optional[str] = None,
                dry_run: bool = False) -> PublishOutcome:
    """返回 (包名, 'success'|'skipped'|'failure', 说明)。"""
    try:
        pkg_json = read_package_json(package_dir)
    except (OSError, PackageJsonError) as e:
        return (package_dir.name, "failure", str(e))
    name = pkg_json.get("name") or package_dir.name
    version = pkg_json.get("version") or ""
    if pkg_json.get("private"):
        return (name, "skipped", "private")
    problems = validate_package_json(pkg_json)
    if problems:
        return (name, "failure", "; ".join(problems))

    if is_version_published(name, version, settings.registry_url) is True:
        return (name, "skipped", f"{version} already published")
    if dry_run:
        return (name, "success", f"dry-run {version}")

    cmd = [config.NPM, "publish", "--access", "public", "--tag", tag or release_tag(version)]
    if settings.registry_url != config.NPM_PUBLIC_REGISTRY:
        cmd.append(f"--registry={settings.registry_url}")
    env = child_env({"NODE_AUTH_TOKEN": settings.node_auth_token or None})
    try:
        r = subprocess.run(cmd, cwd=str(package_dir), env=env, capture_output=True,
                           encoding="utf-8", errors="replace", timeout=PUBLISH_TIMEOUT)
    except (subprocess.TimeoutExpired, OSError) as e:
        return (name, "failure", str(e))
    if r.returncode == 0:
        return (name, "success", version)
    if "cannot publish over" in (r.stderr or ""):
        return (name, "skipped", f"{version} already published")
    return (name, "failure", (r.stderr or r.stdout or f"exit {r.returncode}").strip()[:300])


def run_publish(
    settings: Settings,
    requested: Optional[Iterable[str]] = None,
    tag: Optional[str] = None,
    dry_run: bool = False,
    workers: int = MAX_WORKERS,
    reporter: Optional[Reporter] = None,
) -> List[PublishOutcome]:
    reporter = reporter or Reporter()
    names = select_package_names(settings, requested)
    dirs = [settings.npm_packages_path / n for n in names]
    total = len(dirs)
    if not total:
        reporter.warn("没有需要发布的包")
        return []

    log_path = settings.logs_path / "publish.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    reporter.summary("============================================")
    reporter.summary("  override 包批量发布（publish）")
    reporter.summary("============================================")
    reporter.summary(f"  registry: {settings.registry_url}")
    reporter.summary(f"  包数: {total}")
    reporter.summary(f"  并发: {workers}")
    if dry_run:
        reporter.summary("  模式: dry-run（不实际发布）")
    reporter.summary("============================================\n")

    outcomes: List[PublishOutcome] = []
    counts = {"success": 0, "skipped": 0, "failure": 0}
    t0 = time.time()

    def bar(done: int) -> str:
        return progress_bar(done, total, [("成功", counts["success"]), ("跳过", counts["skipped"]),
                                          ("失败", counts["failure"])])

    # 每次运行覆盖日志文件，只保留本次执行的完整日志
    with log_path.open("w", encoding="utf-8") as log:
        log.write(f"# override 包发布日志\n# 时间: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        log.write(f"# registry: {settings.registry_url}\n# 总数: {total}\n\n")
        with ThreadPoolExecutor(max_workers=max(1, workers)) as ex:
            futures = {ex.submit(publish_one, settings, d, tag, dry_run): d for d in dirs}
            for f in as_completed(futures):
                name, status, msg = f.result()
                outcomes.append((name, status, msg))
                counts[status] += 1
                tag_word = {"success": "OK  ", "skipped": "SKIP", "failure": "FAIL"}[status]
                log.write(f"{tag_word} {name}  {msg or ''}\n")
                if not reporter.quiet:
                    print(bar(len(outcomes)), end="", flush=True)

    if not reporter.quiet:
        print(bar(total), flush=True)
    failed = [(n, m) for n, s, m in outcomes if s == "failure"]
    reporter.summary("\n============================================")
    reporter.summary("  发布完成")
    reporter.summary("============================================")
    reporter.summary(f"  成功: {counts['success']}")
    reporter.summary(f"  跳过: {counts['skipped']}（已发布）")
    reporter.summary(f"  失败: {len(failed)}")
    reporter.summary(f"  耗时: {time.time() - t0:.1f} 秒")
    reporter.summary(f"  日志: {log_path}")
    if failed:
        reporter.summary("\n失败列表:")
        for name, msg in sorted(failed)[:30]:
            reporter.summary(f"    {name}  {msg}")
        if len(failed) > 30:
            reporter.summary(f"    ... 共 {len(failed)} 条，详见 {log_path}")
    return outcomes
