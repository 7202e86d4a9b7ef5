from django.conf import settings
from django.core import checks

PROCESS_LOCAL_CACHES = {
    "django.core.cache.backends.locmem.LocMemCache",
    "django.core.cache.backends.dummy.DummyCache",
}


@checks.register()
def lock_cache_is_shared(app_configs, **kwargs):
    """rq workers are separate processes; deployment locks need a cache they all see."""
    mode = str((getattr(settings, "ARMADA", {}) or {}).get("async_jobs_mode") or "").lower()
    backend = (settings.CACHES.get("default") or {}).get("BACKEND", "")
    if mode == "redis" and backend in PROCESS_LOCAL_CACHES:
        return [
            checks.Error(
                "Deployment locks use a per-process cache while tasks run on rq workers.",
                hint="Set ARMADA_CACHE_REDIS_URL or leave it empty to share ARMADA_JOBS_REDIS_URL.",
                id="armada_director.E001",
            )
        ]
    return []
