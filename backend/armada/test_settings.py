from .settings import *  # noqa: F401,F403
from .settings import ARMADA, build_caches

ARMADA = {**ARMADA, "async_jobs_mode": "inprocess"}
CACHES = build_caches("inprocess", "", "")
