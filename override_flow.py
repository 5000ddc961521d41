#!/usr/bin/env python3
"""override 包闭环工具入口（download → install → test 等）。配置项见 override_tools/config.py。"""

from override_tools.cli import main

if __name__ == "__main__":
    try:
        exit_code = main()
    except Exception as e:
        print(f"flow 异常: {e}", flush=True)
        import traceback
        traceback.print_exc()
        exit_code = 1
    raise SystemExit(exit_code)
