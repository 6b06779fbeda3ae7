"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.worker.tasks import get_redis_settings, shutdown, startup, sweep_stale_reservations


class WorkerSettings:
    redis_settings = get_redis_settings()
    cron_jobs = [
        cron(sweep_stale_reservations, second=0, run_at_startup=True),  # every minute at :00
    ]
    on_startup = startup
    on_shutdown = shutdown


def main():
    configure_logging(debug=get_settings().debug)
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
