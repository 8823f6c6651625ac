from dotenv import load_dotenv, find_dotenv
import os
from functools import lru_cache

# Load .env files for local development
# override=False means environment variables set by the platform take precedence
load_dotenv(dotenv_path="default.env", override=False)
load_dotenv(dotenv_path=find_dotenv(".env"), override=False)


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings:
    # Database - PostgreSQL in production, SQLite for local development and tests
    DATABASE_URL: str = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI", "sqlite:///./safetrip.db")

    # JWT settings for bearer token verification (tokens are issued by the auth service)
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    ALGORITHM: str = "HS256"

    # Monitoring control routes: a shared key sent as X-Admin-Key, or an admin account email
    ADMIN_KEY: str = os.getenv("ADMIN_KEY", "")
    ADMIN_EMAILS: str = os.getenv("ADMIN_EMAILS", "")

    # Resend email settings
    RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
    RESEND_FROM_EMAIL: str = os.getenv("RESEND_FROM_EMAIL", "noreply@safetrip.app")
    RESEND_ALERTS_EMAIL: str = os.getenv("RESEND_ALERTS_EMAIL", "alerts@safetrip.app")

    # SMS settings for notifications
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_FROM_NUMBER: str = os.getenv("TWILIO_FROM_NUMBER", "")
    TWILIO_MESSAGING_SERVICE_SID: str = os.getenv("TWILIO_MESSAGING_SERVICE_SID", "")

    # Push notification settings
    APNS_KEY_ID: str = os.getenv("APNS_KEY_ID", "")
    APNS_TEAM_ID: str = os.getenv("APNS_TEAM_ID", "")
    APNS_BUNDLE_ID: str = os.getenv("APNS_BUNDLE_ID", "app.safetrip.SafeTrip")
    APNS_AUTH_KEY_PATH: str = os.getenv("APNS_AUTH_KEY_PATH", "")
    APNS_PRIVATE_KEY: str = os.getenv("APNS_PRIVATE_KEY", "")
    APNS_USE_SANDBOX: bool = os.getenv("APNS_USE_SANDBOX", "true").lower() == "true"

    # Development settings
    DEV_MODE: bool = os.getenv("DEV_MODE", "true").lower() == "true"
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")

    # Notification backend settings
    SMS_BACKEND: str = os.getenv("SMS_BACKEND", "dummy")  # "twilio" or "dummy"
    EMAIL_BACKEND: str = os.getenv("EMAIL_BACKEND", "console")  # "resend" or "console"
    PUSH_BACKEND: str = os.getenv("PUSH_BACKEND", "dummy")  # "apns" or "dummy"
    # Order in which channels are tried for each emergency contact
    ALERT_CHANNELS: str = os.getenv("ALERT_CHANNELS", "sms,push,email")
    MAP_LINK_BASE: str = os.getenv("MAP_LINK_BASE", "https://www.google.com/maps?q=")

    # Monitoring intervals (minutes)
    TRIP_CHECK_INTERVAL_MIN: int = _int_env("TRIP_CHECK_INTERVAL_MIN", 5)
    SAFE_ZONE_CHECK_INTERVAL_MIN: int = _int_env("SAFE_ZONE_CHECK_INTERVAL_MIN", 10)
    HIGH_RISK_CHECK_INTERVAL_MIN: int = _int_env("HIGH_RISK_CHECK_INTERVAL_MIN", 2)
    CLEANUP_INTERVAL_MIN: int = _int_env("CLEANUP_INTERVAL_MIN", 60)
    HIGH_RISK_ENABLED: bool = os.getenv("HIGH_RISK_ENABLED", "false").lower() == "true"
    MONITORING_ENABLED: bool = os.getenv("MONITORING_ENABLED", "true").lower() == "true"

    # Alert de-duplication and fanout bounds
    DEDUP_COOLDOWN_MIN: int = _int_env("DEDUP_COOLDOWN_MIN", 60)
    MAX_CONCURRENT_CANDIDATES: int = _int_env("MAX_CONCURRENT_CANDIDATES", 10)
    MAX_CONCURRENT_SENDS: int = _int_env("MAX_CONCURRENT_SENDS", 20)

    # High-risk sub-cycle: users with an unresolved alert in the lookback window
    HIGH_RISK_LOOKBACK_HOURS: int = _int_env("HIGH_RISK_LOOKBACK_HOURS", 24)
    HIGH_RISK_MAX_CANDIDATES: int = _int_env("HIGH_RISK_MAX_CANDIDATES", 50)

    # Retention
    TRIP_RETENTION_DAYS: int = _int_env("TRIP_RETENTION_DAYS", 30)
    ALERT_RETENTION_DAYS: int = _int_env("ALERT_RETENTION_DAYS", 30)

    def get_apns_private_key(self) -> str:
        if self.APNS_AUTH_KEY_PATH and os.path.exists(self.APNS_AUTH_KEY_PATH):
            with open(self.APNS_AUTH_KEY_PATH, "r", encoding="utf-8") as f:
                return f.read()
        return self.APNS_PRIVATE_KEY

    @property
    def ALERT_CHANNELS_LIST(self) -> list[str]:
        return [c.strip().lower() for c in self.ALERT_CHANNELS.split(",") if c.strip()]

    @property
    def ADMIN_EMAILS_LIST(self) -> list[str]:
        return [e.strip().lower() for e in self.ADMIN_EMAILS.split(",") if e.strip()]


@lru_cache()
def get_settings():
    return Settings()


# Create singleton instance for direct imports
settings = get_settings()
