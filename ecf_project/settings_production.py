"""
Production environment settings.
Use: DJANGO_SETTINGS_MODULE=ecf_project.settings_production

- Production DB (PostgreSQL via DATABASE_URL)
- Shared cache for per-invoice locks (CACHE_URL)
- Authority production API
- Log rotation and retention
- DEBUG=False, SECRET_KEY from env
"""

import os
from pathlib import Path

from .settings import *  # noqa: F401, F403

BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = False
SECRET_KEY = os.environ.get("SECRET_KEY")
if not SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable must be set in production")
ALLOWED_HOSTS = os.environ.get("ALLOWED_HOSTS", "").split(",")
if not ALLOWED_HOSTS or ALLOWED_HOSTS == [""]:
    raise ValueError("ALLOWED_HOSTS environment variable must be set in production")

if not os.environ.get("DATABASE_URL"):
    raise ValueError("DATABASE_URL environment variable must be set in production")
if not os.environ.get("CACHE_URL"):
    raise ValueError("CACHE_URL environment variable must be set in production")

ECF_AUTHORITY_BASE_URL = os.environ.get("ECF_AUTHORITY_BASE_URL")
if not ECF_AUTHORITY_BASE_URL:
    raise ValueError("ECF_AUTHORITY_BASE_URL environment variable must be set in production")

LOGS_DIR = Path(os.environ.get("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOGGING["handlers"]["ecf_file"] = {
    "level": "INFO",
    "class": "logging.handlers.RotatingFileHandler",
    "filename": LOGS_DIR / "ecf.log",
    "maxBytes": 10 * 1024 * 1024,  # 10 MB
    "backupCount": 30,
    "formatter": "simple",
}
LOGGING["handlers"]["ecf_json_file"] = {
    "level": "INFO",
    "class": "logging.handlers.RotatingFileHandler",
    "filename": LOGS_DIR / "ecf_json.log",
    "maxBytes": 10 * 1024 * 1024,
    "backupCount": 30,
    "formatter": "json",
}
LOGGING["handlers"]["ecf_error_file"] = {
    "level": "ERROR",
    "class": "logging.handlers.RotatingFileHandler",
    "filename": LOGS_DIR / "ecf_error.log",
    "maxBytes": 5 * 1024 * 1024,
    "backupCount": 90,  # fiscal errors kept longer
    "formatter": "simple",
}
LOGGING["loggers"]["ecf"]["handlers"] = ["console", "ecf_file", "ecf_json_file", "ecf_error_file"]
