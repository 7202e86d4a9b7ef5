import os

import django
import redis
from rq import Worker


def main() -> None:
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "armada.settings")
    django.setup()
    from django.conf import settings

    options = getattr(settings, "ARMADA", {})
    conn = redis.Redis.from_url(options.get("jobs_redis_url") or "redis://redis:6379/0")
    worker = Worker([options.get("jobs_queue") or "armada-tasks"], connection=conn)
    # Deferred tasks (deployment busy) are enqueued with enqueue_in and need the scheduler.
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
