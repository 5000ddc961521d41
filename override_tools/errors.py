# -*- coding: utf-8 -*-
"""
致命错误类型。

单个包的「预期失败」（无 override、无测试脚本、被跳过等）一律写进结果记录的 reason，
不抛异常；只有配置级 / 无法继续的错误才抛 FatalError，由 CLI 统一捕获并以退出码 1 结束。
"""


class FatalError(Exception):
    """终止整个运行的错误。"""


class ConfigError(FatalError):
    """必需的配置文件缺失或无法解析。"""


class PackageJsonError(FatalError):
    """package.json 不是合法 JSON；path 为出错文件。"""

    def __init__(self, path, message):
        self.path = path
        super().__init__(f"{path}: {message}")


class VersionError(FatalError):
    """版本号无法递增；出错时不改动任何包。"""
