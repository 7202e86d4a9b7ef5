import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() == "true"

ALLOWED_HOSTS = [host.strip() for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if host.strip()]
if "*" not in ALLOWED_HOSTS and "director" not in ALLOWED_HOSTS:
    ALLOWED_HOSTS.append("director")

# Respect proxy headers from nginx so redirects use https.
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
USE_X_FORWARDED_HOST = True

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "armada_director.apps.ArmadaDirectorConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "armada.middleware.ApiTokenAuthMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "armada.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "armada.wsgi.application"

DB_ENGINE = os.environ.get("ARMADA_DB_ENGINE", "sqlite").strip().lower()
if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ.get("POSTGRES_DB", "armada"),
            "USER": os.environ.get("POSTGRES_USER", "armada"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", "armada"),
            "HOST": os.environ.get("POSTGRES_HOST", "db"),
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("ARMADA_SQLITE_PATH", str(BASE_DIR / "armada.sqlite3")),
        }
    }

ASYNC_JOBS_MODE = os.environ.get("ARMADA_ASYNC_JOBS_MODE", "").strip().lower() or ("inprocess" if DEBUG else "redis")
JOBS_REDIS_URL = os.environ.get("ARMADA_JOBS_REDIS_URL", "redis://redis:6379/0")


def build_caches(jobs_mode: str, cache_url: str, jobs_redis_url: str) -> dict:
    """Deployment locks live in the cache, so every worker process must share it.

    rq workers are separate processes: without an explicit cache URL they
    share the jobs redis instead of a per-process memory cache.
    """
    location = cache_url or (jobs_redis_url if jobs_mode == "redis" else "")
    if location:
        return {
            "default": {
                "BACKEND": "django.core.cache.backends.redis.RedisCache",
                "LOCATION": location,
            }
        }
    return {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "armada-director",
        }
    }


CACHES = build_caches(ASYNC_JOBS_MODE, os.environ.get("ARMADA_CACHE_REDIS_URL", "").strip(), JOBS_REDIS_URL)

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ]
}

LOG_LEVEL = os.environ.get("ARMADA_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default"},
    },
    "loggers": {
        "armada_director": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "rq.worker": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


ARMADA = {
    "name": os.environ.get("ARMADA_DIRECTOR_NAME", "Armada Director"),
    "uuid": os.environ.get("ARMADA_DIRECTOR_UUID", ""),
    "async_jobs_mode": ASYNC_JOBS_MODE,
    "jobs_redis_url": JOBS_REDIS_URL,
    "jobs_queue": os.environ.get("ARMADA_JOBS_QUEUE", "armada-tasks"),
    "workers": _env_int("ARMADA_WORKERS", 3),
    "task_log_root": os.environ.get("ARMADA_TASK_LOG_ROOT", str(BASE_DIR / "var" / "tasks")),
    "backup_path": os.environ.get("ARMADA_BACKUP_PATH", str(BASE_DIR / "var" / "backup.tgz")),
    "artifact_root": os.environ.get("ARMADA_ARTIFACT_ROOT", str(BASE_DIR / "var" / "artifacts")),
    "default_infrastructure": os.environ.get("ARMADA_CPI", "dummy"),
    "cloud": {
        "aws": {
            "region": os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "",
            "default_key_name": os.environ.get("ARMADA_AWS_KEY_NAME", ""),
            "default_security_groups": [
                group.strip()
                for group in os.environ.get("ARMADA_AWS_SECURITY_GROUPS", "").split(",")
                if group.strip()
            ],
        },
        "vsphere": {
            "host": os.environ.get("ARMADA_VSPHERE_HOST", ""),
            "user": os.environ.get("ARMADA_VSPHERE_USER", ""),
            "password": os.environ.get("ARMADA_VSPHERE_PASSWORD", ""),
            "datacenter": os.environ.get("ARMADA_VSPHERE_DATACENTER", ""),
            "vm_folder": os.environ.get("ARMADA_VSPHERE_VM_FOLDER", "armada_vms"),
            "api_release": os.environ.get("ARMADA_VSPHERE_API_RELEASE", "8.0.2.0"),
            "verify_tls": os.environ.get("ARMADA_VSPHERE_VERIFY_TLS", "true").lower() == "true",
        },
        "openstack": {
            "auth_url": os.environ.get("OS_AUTH_URL", ""),
            "username": os.environ.get("OS_USERNAME", ""),
            "password": os.environ.get("OS_PASSWORD", ""),
            "project": os.environ.get("OS_PROJECT_NAME", ""),
            "domain": os.environ.get("OS_USER_DOMAIN_NAME", "Default"),
            "region": os.environ.get("OS_REGION_NAME", ""),
        },
        "dummy": {},
    },
    "cpi_timeout": _env_float("ARMADA_CPI_TIMEOUT", 600.0),
    "agent_timeout": _env_float("ARMADA_AGENT_TIMEOUT", 30.0),
    "lock_retry_interval": _env_float("ARMADA_LOCK_RETRY_INTERVAL", 2.0),
    "lock_ttl": _env_int("ARMADA_LOCK_TTL", 300),
    "canaries": _env_int("ARMADA_DEFAULT_CANARIES", 1),
    "max_in_flight": _env_int("ARMADA_DEFAULT_MAX_IN_FLIGHT", 1),
    "update_watch_time": _env_int("ARMADA_UPDATE_WATCH_TIME_MS", 30000),
    "dns": {
        "enabled": os.environ.get("ARMADA_DNS_ENABLED", "false").lower() == "true",
        "domain_name": os.environ.get("ARMADA_DNS_DOMAIN", "armada"),
    },
    "snapshots_enabled": os.environ.get("ARMADA_SNAPSHOTS_ENABLED", "true").lower() == "true",
    "resurrector_interval": _env_int("ARMADA_RESURRECTOR_INTERVAL", 300),
    "out_of_disk_threshold": _env_int("ARMADA_OUT_OF_DISK_THRESHOLD", 90),
    "resolution_defaults": {
        key.strip(): value.strip()
        for key, value in (
            item.split("=", 1)
            for item in os.environ.get("ARMADA_RESOLUTION_DEFAULTS", "").split(",")
            if "=" in item
        )
    },
}
