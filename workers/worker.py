"""Worker for the monthly closing pipeline.

Listens on the closing task queue and executes the closing workflow and its
activities. The database schema is created on startup.

Run with --queue <name> to override the task queue from settings.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import load_settings
from core.observability.logging import configure_logging, get_logger
from core.storage.db import init_db
from temporal_client import get_temporal_client
from workflows.closing_workflow import MonthlyClosingWorkflow
from activities.closing import (
    save_report_activity,
    recalculate_commissions_activity,
    run_checklist_activity,
    close_period_activity,
)


logger = get_logger(__name__)

ACTIVITIES = [
    save_report_activity,
    recalculate_commissions_activity,
    run_checklist_activity,
    close_period_activity,
]


async def run_worker(queue: str = None):
    """Start a worker listening on the closing task queue.

    Args:
        queue: Task queue to poll (defaults to TEMPORAL_TASK_QUEUE)

    Raises:
        Exception: If connection to Temporal fails
    """
    settings = load_settings()
    configure_logging(settings.log_level, json_format=settings.log_json, include_temporal=True)
    init_db(settings.db_path)

    task_queue = queue or settings.task_queue
    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal: {client.namespace}")

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=[MonthlyClosingWorkflow],
        activities=ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{task_queue}':")
    logger.info(f"  - Activities: {len(ACTIVITIES)}")

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Monthly Closing Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=None,
        help="Task queue to poll (default: TEMPORAL_TASK_QUEUE or closing-default)",
    )
    args = parser.parse_args()
    try:
        asyncio.run(run_worker(queue=args.queue))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
