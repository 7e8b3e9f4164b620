#!/usr/bin/env python3
"""
הפעלת Celery worker לתור אחד, עם ה-concurrency שהוגדר לו ב-WEBHOOK_QUEUES.

הרצה (מתוך תיקיית הפרויקט):
    python scripts/run_worker.py --queue webhooks
    python scripts/run_worker.py --queue maintenance --beat

תורים: webhooks, incoming, maintenance (ברירות מחדל: 8 / 4 / 1).
"""
import argparse
import sys
from pathlib import Path

# הוספת תיקיית הפרויקט ל-path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from relay.core.config import QUEUE_CONCURRENCY  # noqa: E402
from relay.core.logging import setup_logging, get_logger  # noqa: E402


def build_worker_argv(queue: str, loglevel: str = "INFO", beat: bool = False) -> list[str]:
    """Arguments for celery_app.worker_main for one queue"""
    if queue not in QUEUE_CONCURRENCY:
        raise SystemExit(
            f"Unknown queue '{queue}'. Configured queues: {', '.join(sorted(QUEUE_CONCURRENCY))}"
        )
    argv = [
        "worker",
        f"--queues={queue}",
        f"--concurrency={QUEUE_CONCURRENCY[queue]}",
        f"--loglevel={loglevel}",
        f"--hostname={queue}@%h",
    ]
    if beat:
        argv.append("--beat")
    return argv


def main() -> None:
    parser = argparse.ArgumentParser(description="Start a Celery worker for one queue")
    parser.add_argument("--queue", required=True, help="Queue name from WEBHOOK_QUEUES")
    parser.add_argument("--loglevel", default="INFO")
    parser.add_argument(
        "--beat",
        action="store_true",
        help="Embed the beat scheduler (run on exactly one maintenance worker)",
    )
    args = parser.parse_args()

    setup_logging(level=args.loglevel.upper())
    logger = get_logger("relay.worker")

    argv = build_worker_argv(args.queue, args.loglevel, args.beat)
    logger.info(
        "Starting worker",
        extra_data={"queue": args.queue, "concurrency": QUEUE_CONCURRENCY[args.queue], "beat": args.beat},
    )

    from relay.workers.celery_app import celery_app

    celery_app.worker_main(argv)


if __name__ == "__main__":
    main()
