from __future__ import annotations

import logging
import signal
import sys
import threading

from mailsync.worker.handlers import build_scheduler
from mailsync.worker.scheduler import run_worker_pool


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    scheduler = build_scheduler()

    if "--once" in args:
        # Drain whatever is due and exit; for cron and one-off maintenance runs.
        scheduler.run_until_idle()
        return

    scheduler.install_periodic_sync()

    stop_event = threading.Event()

    def _stop(signum, frame) -> None:  # type: ignore[no-untyped-def]
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    run_worker_pool(scheduler, stop_event=stop_event)


if __name__ == "__main__":
    main()
