"""
DAB Runner - declarative browser task automation

Usage:
    python main.py [path/to/config.json]

Control while running (stdin, one per line): pause | resume | stop
or JSON {"type": "pause"}. SIGINT/SIGTERM stop cleanly.
stdout carries only the {"type": "paused", ...} state lines; logs go to stderr.
"""
import asyncio
import sys

from dotenv import load_dotenv

import config as cfg
from dab_runner.control import ControlChannel, PauseController
from dab_runner.logger_utils import ColoredLogger as log
from dab_runner.runner import AutomationRunner

# Load environment variables
load_dotenv()


async def main_async(config_path=None, read_stdin=True):
    """Async main entry point; returns the exit code"""
    if cfg.LOG_FILE:
        log.enable_file_logging(cfg.LOG_FILE)

    # stdout is reserved for control state lines
    log.set_console_stream(sys.stderr)

    controller = PauseController()
    channel = ControlChannel(controller)
    channel.start(read_stream=read_stdin)

    try:
        runner = AutomationRunner(controller, config_path=config_path)
        return await runner.run()
    finally:
        channel.close()


def main():
    """Main entry point"""
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    sys.exit(asyncio.run(main_async(config_path)))


if __name__ == "__main__":
    main()
