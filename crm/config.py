import os


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Billing (Stripe) ---
    IS_BILLING_ENABLED = os.environ.get(
        "IS_BILLING_ENABLED", "true"
    ).lower() in ("1", "true", "yes")
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    BILLING_STRIPE_BASE_PLAN_PRODUCT_ID = os.environ.get(
        "BILLING_STRIPE_BASE_PLAN_PRODUCT_ID"
    )
    BILLING_FREE_TRIAL_DURATION_IN_DAYS = int(
        os.environ.get("BILLING_FREE_TRIAL_DURATION_IN_DAYS", 7)
    )

    # Checkout success/cancel and portal return URLs are built on this.
    FRONT_BASE_URL = os.environ.get("FRONT_BASE_URL", "http://localhost:3001")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "FRONT_BASE_URL",
        ]
        # Stripe keys are only required when billing is switched on
        billing_on = os.environ.get(
            "IS_BILLING_ENABLED", "true"
        ).lower() in ("1", "true", "yes")
        if billing_on:
            required += [
                "STRIPE_SECRET_KEY",
                "STRIPE_WEBHOOK_SECRET",
                "BILLING_STRIPE_BASE_PLAN_PRODUCT_ID",
            ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    IS_BILLING_ENABLED = True
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    BILLING_STRIPE_BASE_PLAN_PRODUCT_ID = "prod_base_plan_test"
    BILLING_FREE_TRIAL_DURATION_IN_DAYS = 0
    FRONT_BASE_URL = "http://localhost:3001"
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
