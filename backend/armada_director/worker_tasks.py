from django.db import close_old_connections


def run_task(task_id: int) -> None:
    """rq entry point: run one director task in this worker process."""
    from .director import get_director

    close_old_connections()
    try:
        get_director().tasks.run(int(task_id))
    finally:
        close_old_connections()
