"""npm override 包校验 / 安装 / 测试 / 发布工具。配置项见 override_tools/config.py。"""

__version__ = "1.0.0"
