import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gamesales.db")

# Environment name: development, staging or production
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Public base URL of this API (OAuth redirect URIs and provider callbacks are built from it)
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000").rstrip("/")

# Business timezone (sale dates, goal months, calendar events)
APP_TIMEZONE = os.getenv("APP_TIMEZONE", "America/Sao_Paulo")

# Hosted auth/database platform
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
SUPABASE_JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

# Key used by the scheduler (or the hosted cron) to trigger internal jobs over HTTP
INTERNAL_JOBS_KEY = os.getenv("INTERNAL_JOBS_KEY") or SUPABASE_SERVICE_ROLE_KEY

# Google Calendar OAuth Configuration
# OAuth flow: Frontend → Backend /connect → Google → Backend /callback → Frontend /integracoes
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv(
    "GOOGLE_REDIRECT_URI", f"{API_BASE_URL}/google-calendar/oauth/callback"
)
GOOGLE_WEBHOOK_URL = os.getenv("GOOGLE_WEBHOOK_URL", f"{API_BASE_URL}/webhooks/google-calendar")
GOOGLE_CALENDAR_TIMEZONE = os.getenv("GOOGLE_CALENDAR_TIMEZONE", APP_TIMEZONE)

# Mercado Pago Configuration
MERCADOPAGO_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN")
MERCADOPAGO_WEBHOOK_SECRET = os.getenv("MERCADOPAGO_WEBHOOK_SECRET")
MERCADOPAGO_BACK_URL = os.getenv("MERCADOPAGO_BACK_URL", "https://gamesales.app/admin/dashboard")
# Free trial granted on every new subscription (days)
MERCADOPAGO_TRIAL_DAYS = int(os.getenv("MERCADOPAGO_TRIAL_DAYS", "7"))

# Twilio Voice Configuration (click-to-call)
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
