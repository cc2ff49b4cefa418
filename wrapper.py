#!/usr/bin/env python3
"""
wrapper.py - Entry point for the Kiwi scanner when run from a checkout.
Puts src/ on the import path, logs resource usage around the run and
maps the scanner's result onto a process exit code.
"""
import logging
import os
import sys
import time

import psutil

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(SCRIPT_DIR, "src"))

from scanner import main as scanner_main  # noqa: E402

logger = logging.getLogger("kiwi_scanner.wrapper")


def log_resource_usage(stage: str = "final") -> None:
    """Log memory and CPU usage for performance monitoring."""
    try:
        process = psutil.Process(os.getpid())
        mem_mb = process.memory_info().rss / 1024 / 1024
        cpu_percent = process.cpu_percent(interval=0.1)
    except psutil.Error as e:
        logger.debug(f"Could not log resource usage: {e}")
        return
    logger.info(f"Resource Usage [{stage}] | Memory: {mem_mb:.1f}MB | CPU: {cpu_percent:.1f}%")


def main() -> int:
    """
    Returns:
        0: Success
        1: Configuration or scan failure
        130: Interrupted (SIGINT/SIGTERM)
    """
    start_time = time.time()
    code = scanner_main()
    logger.info(f"Execution time: {time.time() - start_time:.2f}s")
    log_resource_usage("complete")
    return code


if __name__ == "__main__":
    sys.exit(main())
