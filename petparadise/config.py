"""Runtime configuration read from the environment."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "petparadise-secret")
    JWT_SECRET = os.getenv("JWT_SECRET", SECRET_KEY)
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_DAYS = int(os.getenv("ACCESS_TOKEN_DAYS", "7"))
    REFRESH_TOKEN_DAYS = int(os.getenv("REFRESH_TOKEN_DAYS", "30"))

    APP_ENV = os.getenv("APP_ENV", "development")
    DATABASE_PATH = os.getenv("DATABASE_PATH", str(BASE_DIR / "petparadise.db"))
    SITE_URL = os.getenv("SITE_URL", "http://localhost:5000")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    CRON_SECRET = os.getenv("CRON_SECRET")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    CURRENCY = os.getenv("CURRENCY", "usd")
    CHECKOUT_EXPIRY_MINUTES = int(os.getenv("CHECKOUT_EXPIRY_MINUTES", "30"))
    DEPOSIT_PERCENTAGE = os.getenv("DEPOSIT_PERCENTAGE")
    DISCOUNT_POLICY = os.getenv("DISCOUNT_POLICY", "stacked")
