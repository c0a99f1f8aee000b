"""
Base settings for the e-CF engine.
Environment-specific modules (settings_production, settings_test) import from here.

Every ECF_* value is read once at process start by EcfConfig.from_settings()
and validated before the submission pipeline is built.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("SECRET_KEY", "dev-insecure-key-change-me")
DEBUG = os.environ.get("DEBUG", "1") == "1"
ALLOWED_HOSTS = [h for h in os.environ.get("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "ecf",
]

_db_url = os.environ.get("DATABASE_URL")
if _db_url:
    import dj_database_url

    DATABASES = {"default": dj_database_url.parse(_db_url, conn_max_age=600)}
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("DB_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = os.environ.get("TIME_ZONE", "America/Santo_Domingo")

# Per-invoice submission locks live in the cache; use a shared backend (Redis) when
# more than one worker process runs.
_cache_url = os.environ.get("CACHE_URL")
if _cache_url:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": _cache_url,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "ecf-default",
        }
    }

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_CONCURRENCY = int(os.environ.get("CELERY_WORKER_CONCURRENCY", "4"))
CELERY_BEAT_SCHEDULE = {
    "ecf-poll-submitted": {
        "task": "ecf.poll_submitted_task",
        "schedule": 300.0,
    },
    "ecf-retry-pending": {
        "task": "ecf.retry_pending_task",
        "schedule": 60.0,
    },
}

# Tax authority
ECF_AUTHORITY_BASE_URL = os.environ.get("ECF_AUTHORITY_BASE_URL", "https://test-api.dgii.gov.do/ecf")
ECF_AUTHORITY_USERNAME = os.environ.get("ECF_AUTHORITY_USERNAME", "")
ECF_AUTHORITY_PASSWORD = os.environ.get("ECF_AUTHORITY_PASSWORD", "")
ECF_HTTP_TIMEOUT = int(os.environ.get("ECF_HTTP_TIMEOUT", "30"))
ECF_HTTP_POOL_SIZE = int(os.environ.get("ECF_HTTP_POOL_SIZE", "10"))
ECF_TOKEN_TTL_SECONDS = int(os.environ.get("ECF_TOKEN_TTL_SECONDS", "3600"))

# Submission retries
ECF_MAX_SUBMIT_RETRIES = int(os.environ.get("ECF_MAX_SUBMIT_RETRIES", "3"))
ECF_RETRY_BASE_DELAY = float(os.environ.get("ECF_RETRY_BASE_DELAY", "2.0"))
ECF_RETRY_MAX_DELAY = float(os.environ.get("ECF_RETRY_MAX_DELAY", "60.0"))
ECF_RETRY_IN_PROCESS = os.environ.get("ECF_RETRY_IN_PROCESS", "1") == "1"
ECF_INVOICE_LOCK_TIMEOUT = int(os.environ.get("ECF_INVOICE_LOCK_TIMEOUT", "120"))
ECF_AUTO_SUBMIT = os.environ.get("ECF_AUTO_SUBMIT", "1") == "1"

# Issuer (company) configuration
ECF_ISSUER = {
    "name": os.environ.get("ECF_ISSUER_NAME", ""),
    "fiscal_id": os.environ.get("ECF_ISSUER_FISCAL_ID", ""),
    "address": os.environ.get("ECF_ISSUER_ADDRESS", ""),
    "phone": os.environ.get("ECF_ISSUER_PHONE", ""),
    "email": os.environ.get("ECF_ISSUER_EMAIL", ""),
}
ECF_DEFAULT_DOCUMENT_TYPE = os.environ.get("ECF_DEFAULT_DOCUMENT_TYPE", "01")

# Passphrase protecting the certificate vault at rest. Never stored in the database.
ECF_VAULT_PASSPHRASE = os.environ.get("ECF_VAULT_PASSPHRASE", "")

# Authority status vocabulary -> canonical state. Confirm against the real authority
# before production.
ECF_STATUS_MAP = {
    "ACEPTADO": "ACCEPTED",
    "ACEPTADO CONDICIONAL": "ACCEPTED",
    "RECHAZADO": "REJECTED",
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
        "json": {
            "()": "ecf.logging_formatter.JSONFormatter",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "loggers": {
        "ecf": {
            "handlers": ["console"],
            "level": os.environ.get("ECF_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
