"""Server launcher that sets the Windows event loop policy before uvicorn starts."""
import asyncio
import sys

if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import uvicorn

from termchat.config import get_config


def main() -> None:
    cfg = get_config()
    uvicorn.run(
        "termchat.main:app",
        host=cfg.server.host,
        port=cfg.server.port,
        log_level=cfg.server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
