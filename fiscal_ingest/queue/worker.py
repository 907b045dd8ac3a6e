"""arq worker runner.

Run with: python -m fiscal_ingest.queue.worker
Or: arq fiscal_ingest.queue.tasks.WorkerSettings
"""

import logging

from arq import run_worker

from fiscal_ingest.queue.tasks import WorkerSettings
from fiscal_ingest.shared import metrics
from fiscal_ingest.shared.config import get_settings
from fiscal_ingest.shared.logging_setup import configure_logging

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the arq worker."""
    settings = get_settings()
    configure_logging(settings)

    logger.info(f"Starting worker {settings.service_name} {settings.service_version}")
    logger.info(f"Extraction provider: {settings.extraction_provider}")
    logger.info(
        f"Batch scheduling: {settings.batch_scheduling} "
        f"(max concurrency {settings.batch_max_concurrency})"
    )
    logger.info(f"Max jobs: {settings.queue_max_jobs}")
    logger.info(f"Job timeout: {settings.queue_job_timeout}s")

    metrics.start_metrics_server(settings.metrics_port)

    WorkerSettings.redis_settings = WorkerSettings.get_redis_settings()
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout

    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
