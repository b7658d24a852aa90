import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _merchant_accounts() -> dict:
    """Le credenciais de lojistas no formato MERCHANT_<NOME>_EMAIL / _PASSWORD."""
    accounts: dict[str, dict[str, str]] = {}
    for key, value in os.environ.items():
        if not key.startswith("MERCHANT_") or not key.endswith("_EMAIL"):
            continue
        name = key[len("MERCHANT_"):-len("_EMAIL")]
        password = os.getenv(f"MERCHANT_{name}_PASSWORD", "")
        if value and password:
            accounts[name.lower().replace("_", " ")] = {"email": value, "password": password}
    return accounts


class Config:
    # Ambiente - use para rotular logs e liberar gates de desenvolvimento
    APP_ENV = (
        os.getenv("APP_ENV")
        or os.getenv("FLASK_ENV")
        or os.getenv("ENV")
        or "development"
    ).lower()
    IS_PRODUCTION = APP_ENV in {"prod", "production"} or os.getenv("RENDER") == "true" or bool(os.getenv("RENDER_EXTERNAL_URL"))

    APP_NAME = (os.getenv("APP_NAME", "Recompra") or "").strip() or "Recompra"

    def _is_weak_secret(value: str) -> bool:
        if not value:
            return True
        if value == "dev-secret-change-me":
            return True
        if len(value) < 32:
            return True
        return False

    SECRET_KEY = os.getenv("SECRET_KEY", "")
    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-change-me"
    if IS_PRODUCTION and _is_weak_secret(SECRET_KEY):
        raise RuntimeError("SECRET_KEY ausente ou fraco em producao.")

    # Banco:
    # - Local: sqlite
    # - Producao: DATABASE_URL (Postgres)
    DATABASE_URL = os.getenv("DATABASE_URL")

    if DATABASE_URL:
        # Alguns provedores usam "postgres://", SQLAlchemy prefere "postgresql://"
        if DATABASE_URL.startswith("postgres://"):
            DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

        # Forca psycopg (v3); se vier apontando para psycopg2, converte
        if DATABASE_URL.startswith("postgresql+psycopg2://"):
            DATABASE_URL = DATABASE_URL.replace(
                "postgresql+psycopg2://", "postgresql+psycopg://", 1
            )

        if DATABASE_URL.startswith("postgresql://"):
            DATABASE_URL = DATABASE_URL.replace(
                "postgresql://", "postgresql+psycopg://", 1
            )

        if DATABASE_URL.startswith("postgresql") and "sslmode=" not in DATABASE_URL:
            sep = "&" if "?" in DATABASE_URL else "?"
            DATABASE_URL = f"{DATABASE_URL}{sep}sslmode=require"

        SQLALCHEMY_DATABASE_URI = DATABASE_URL
    else:
        SQLALCHEMY_DATABASE_URI = "sqlite:///" + os.path.join(BASE_DIR, "database.db")

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Evita conexoes reutilizadas mortas (SSL/Pooler)
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "280")),
    }

    if SQLALCHEMY_DATABASE_URI.startswith("postgresql"):
        SQLALCHEMY_ENGINE_OPTIONS["pool_timeout"] = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        SQLALCHEMY_ENGINE_OPTIONS["connect_args"] = {
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS["connect_args"] = {
            "check_same_thread": False,
            "timeout": int(os.getenv("SQLITE_TIMEOUT", "30")),
        }

    DEBUG = _env_bool("DEBUG", default=not IS_PRODUCTION)
    if IS_PRODUCTION:
        DEBUG = False
    TESTING = _env_bool("TESTING", default=False)

    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper()

    # URL publica do app (usada nos redirects do setup de cobranca)
    _app_base_url = os.getenv("APP_BASE_URL")
    if not _app_base_url:
        if IS_PRODUCTION:
            raise RuntimeError("APP_BASE_URL deve estar configurado em producao.")
        _app_base_url = "http://127.0.0.1:5000"
    APP_BASE_URL = _app_base_url.rstrip("/")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    if IS_PRODUCTION and not STRIPE_WEBHOOK_SECRET:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET deve estar configurado em producao.")
    # Preco (criado no dashboard) da assinatura base que hospeda as cobrancas
    STRIPE_SERVICE_FEE_PRICE_ID = os.getenv("STRIPE_SERVICE_FEE_PRICE_ID", "")
    STRIPE_TIMEOUT = int(os.getenv("STRIPE_TIMEOUT", "20"))
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

    SERVICE_FEE_CENTS = int(os.getenv("SERVICE_FEE_CENTS", "100"))
    BILLING_CYCLE_DAYS = int(os.getenv("BILLING_CYCLE_DAYS", "30"))
    BILLING_CURRENCY = (os.getenv("BILLING_CURRENCY", "usd") or "usd").strip().lower()

    # Varredura de renovacao (cron)
    CRON_SECRET_KEY = os.getenv("CRON_SECRET_KEY", "")
    if IS_PRODUCTION and not CRON_SECRET_KEY:
        raise RuntimeError("CRON_SECRET_KEY deve estar configurado em producao.")
    RENEWAL_LOOKAHEAD_HOURS = int(os.getenv("RENEWAL_LOOKAHEAD_HOURS", "24"))

    # Servico externo de execucao de compras (navegador autonomo)
    PURCHASE_AGENT_BASE_URL = (os.getenv("PURCHASE_AGENT_BASE_URL", "") or "").rstrip("/")
    PURCHASE_AGENT_API_KEY = os.getenv("PURCHASE_AGENT_API_KEY", "")
    PURCHASE_AGENT_TIMEOUT = int(os.getenv("PURCHASE_AGENT_TIMEOUT", "240"))
    PURCHASE_AGENT_SESSION_MAX_AGE = int(os.getenv("PURCHASE_AGENT_SESSION_MAX_AGE", "1800"))

    # Extrator de intencao (linguagem natural -> intencao estruturada)
    INTENT_EXTRACTOR_URL = (os.getenv("INTENT_EXTRACTOR_URL", "") or "").rstrip("/")
    INTENT_EXTRACTOR_TIMEOUT = int(os.getenv("INTENT_EXTRACTOR_TIMEOUT", "30"))

    MERCHANT_ACCOUNTS = _merchant_accounts()
