"""
Start the content-processing worker pool against Redis and the configured database.

Usage:
    python3 run_worker.py [--concurrency 2] [--log-level INFO] [--log-file logs/worker.log]
"""

import argparse
import dataclasses
import signal
import threading
from pathlib import Path

from lesson_companion.logging_setup import setup_logging
from lesson_companion.processing import ProcessingConfig, build_worker_pool


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--concurrency", type=int, default=None, help="Override WORKER_CONCURRENCY")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", default=None, type=Path, help="Also write logs to this file")
    args = parser.parse_args()

    setup_logging(args.log_level.upper(), args.log_file)
    config = ProcessingConfig.from_env()
    if args.concurrency is not None:
        config = dataclasses.replace(config, concurrency=args.concurrency)

    pool = build_worker_pool(config)
    stopping = threading.Event()

    def request_stop(signum, frame):
        stopping.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    pool.start()
    stopping.wait()
    pool.stop()


if __name__ == "__main__":
    main()
