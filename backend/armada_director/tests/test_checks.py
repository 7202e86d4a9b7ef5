from django.test import SimpleTestCase, override_settings

from armada.settings import build_caches
from armada_director.checks import lock_cache_is_shared

LOCMEM = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}
REDIS = {"default": {"BACKEND": "django.core.cache.backends.redis.RedisCache", "LOCATION": "redis://redis:6379/1"}}


class LockCacheSettingsTests(SimpleTestCase):
    def test_redis_jobs_share_the_jobs_redis_by_default(self):
        caches = build_caches("redis", "", "redis://redis:6379/0")
        self.assertEqual(caches["default"]["BACKEND"], "django.core.cache.backends.redis.RedisCache")
        self.assertEqual(caches["default"]["LOCATION"], "redis://redis:6379/0")

    def test_explicit_cache_url_wins(self):
        caches = build_caches("redis", "redis://cache:6379/2", "redis://redis:6379/0")
        self.assertEqual(caches["default"]["LOCATION"], "redis://cache:6379/2")

    def test_in_process_jobs_use_memory_cache(self):
        caches = build_caches("inprocess", "", "redis://redis:6379/0")
        self.assertEqual(caches["default"]["BACKEND"], "django.core.cache.backends.locmem.LocMemCache")


class LockCacheCheckTests(SimpleTestCase):
    @override_settings(ARMADA={"async_jobs_mode": "redis"}, CACHES=LOCMEM)
    def test_process_local_cache_with_rq_workers_is_an_error(self):
        errors = lock_cache_is_shared(None)
        self.assertEqual([error.id for error in errors], ["armada_director.E001"])

    @override_settings(ARMADA={"async_jobs_mode": "redis"}, CACHES=REDIS)
    def test_shared_cache_passes(self):
        self.assertEqual(lock_cache_is_shared(None), [])

    @override_settings(ARMADA={"async_jobs_mode": "inprocess"}, CACHES=LOCMEM)
    def test_in_process_mode_may_use_memory_cache(self):
        self.assertEqual(lock_cache_is_shared(None), [])
