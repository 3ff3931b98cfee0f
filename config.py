# ==========================================================================================================
# -------------- Configuration file for the Sharevest settlement service ----------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))

class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY must be set in production")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")
    TESTING = False


    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'sharevest.db')}"


    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)
    elif _database_url.startswith("postgresql://"):
        _database_url = _database_url.replace("postgresql://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    } if not _database_url.startswith("sqlite") else {"pool_pre_ping": True}

    # Payment provider (transaction-by-reference lookups)
    GATEWAY_API_KEY = os.getenv("GATEWAY_API_KEY")
    GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.lenco.co/access/v1")
    GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

    # Referral commissions, percent per generation
    REFERRAL_RATES = os.getenv("REFERRAL_RATES", "15,3,2")

    # Installment penalties
    LATE_FEE_PERCENTAGE = os.getenv("LATE_FEE_PERCENTAGE", "0.5")
    LATE_FEE_CAP_PERCENT = os.getenv("LATE_FEE_CAP_PERCENT", "7.5")
    GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))
    REMINDER_WINDOW_DAYS = int(os.getenv("REMINDER_WINDOW_DAYS", "14"))

    # Withdrawal limits in minor units (kobo / cents)
    WITHDRAWAL_MIN = int(os.getenv("WITHDRAWAL_MIN", "100000"))
    WITHDRAWAL_MAX = int(os.getenv("WITHDRAWAL_MAX", "500000000"))

    # Scheduler
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "True").lower() in ("true", "1", "t")
    SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "Africa/Lagos")
    RECONCILE_PENDING_MINUTES = int(os.getenv("RECONCILE_PENDING_MINUTES", "2"))
    RECONCILE_PROCESSING_MINUTES = int(os.getenv("RECONCILE_PROCESSING_MINUTES", "2"))
    REFERRAL_DAILY_CRON = os.getenv("REFERRAL_DAILY_CRON", "02:00")
    REFERRAL_WEEKLY_CRON = os.getenv("REFERRAL_WEEKLY_CRON", "sun 03:00")
    INSTALLMENT_DAILY_CRON = os.getenv("INSTALLMENT_DAILY_CRON", "02:00")
    INSTALLMENT_WEEKLY_CRON = os.getenv("INSTALLMENT_WEEKLY_CRON", "sun 03:00")
    INSTALLMENT_MONTHLY_CRON = os.getenv("INSTALLMENT_MONTHLY_CRON", "1 04:00")
    INSTALLMENT_REMINDER_CRON = os.getenv("INSTALLMENT_REMINDER_CRON", "23 09:00")

    # Mail (notification sink)
    MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "True").lower() in ("true", "1", "t")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "no-reply@sharevest.app")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

    RECEIPTS_DIR = os.getenv("RECEIPTS_DIR", os.path.join(basedir, "instance", "receipts"))

    APP_BASE_URL = os.getenv("APP_BASE_URL", "https://sharevest-app.onrender.com")


class TestConfig(Config):
    TESTING = True
    FLASK_ENV = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SCHEDULER_ENABLED = False
    GATEWAY_API_KEY = "test-gateway-key"
    GATEWAY_BASE_URL = "https://gateway.test/access/v1"
    MAIL_SUPPRESS_SEND = True
    ADMIN_EMAIL = "ops@sharevest.test"
    WITHDRAWAL_MIN = 1000
    WITHDRAWAL_MAX = 100000000
