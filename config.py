"""
Runtime settings for the Fashion Mart back office.

Everything is read from the environment so the same build runs locally
(no keys, mock payments) and in production.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "fashion_mart")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
PAYMENT_TIMEOUT = float(os.getenv("PAYMENT_TIMEOUT", "10"))

RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", "7"))
DEFAULT_LOW_STOCK_THRESHOLD = int(os.getenv("DEFAULT_LOW_STOCK_THRESHOLD", "10"))

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "25"))
EMAIL_FROM = os.getenv("EMAIL_FROM", "FashionMart <no-reply@fashionmart.local>")

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))


def is_production() -> bool:
    return APP_ENV.lower() == "production"
