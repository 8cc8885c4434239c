from __future__ import annotations

from arq.worker import run_worker

from tollgate.core.logging import configure_logging
from tollgate.workers.maintenance_worker import WorkerSettings


def main() -> None:
    # Equivalent to `arq tollgate.workers.maintenance_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
