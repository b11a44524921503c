#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[page-control] mode={'stdio' if '--stdio-only' in sys.argv else os.environ.get('PAGE_CONTROL_MODE', 'sse')} | "
    f"ws={os.environ.get('PAGE_CONTROL_WS_HOST', '127.0.0.1')}:{os.environ.get('PAGE_CONTROL_WS_PORT', '3001')} | "
    f"http={os.environ.get('PAGE_CONTROL_HTTP_HOST', '127.0.0.1')}:{os.environ.get('PAGE_CONTROL_HTTP_PORT', '4000')} | "
    f"timeout={os.environ.get('PAGE_CONTROL_REQUEST_TIMEOUT', '30')}s",
    file=sys.stderr,
)

from mcp_servers.page_control.main import main  # noqa: E402

if __name__ == "__main__":
    main()
