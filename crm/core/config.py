from __future__ import annotations

import os


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///montaze.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    APP_ENV = os.getenv("APP_ENV", "production")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    # Upper bound of automatic status hops triggered by a single user action
    MAX_TRANSITION_HOPS = int(os.getenv("MAX_TRANSITION_HOPS", "8"))
    PORTAL_BASE_PATH = os.getenv("PORTAL_BASE_PATH", "/montaz")
    DEFAULT_LANG = os.getenv("DEFAULT_LANG", "pl")
