import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

# .env na raiz do projeto
env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


# =========================
# BANCO
# =========================

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agenda.db")
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"


# =========================
# JWT
# =========================

SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    warnings.warn(
        "SECRET_KEY não definido! Usando chave insegura - NÃO USAR EM PRODUÇÃO", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105

ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))


# =========================
# AGENDA
# =========================

# relógio único do prestador (sem multi-fuso)
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Africa/Nairobi")

DEFAULT_OPENING_TIME = os.getenv("DEFAULT_OPENING_TIME", "08:00")
DEFAULT_CLOSING_TIME = os.getenv("DEFAULT_CLOSING_TIME", "18:00")
DEFAULT_SLOT_INTERVAL = int(os.getenv("DEFAULT_SLOT_INTERVAL", "30"))

DEPOSIT_RATE = float(os.getenv("DEPOSIT_RATE", "0.3"))
PAYMENT_TOLERANCE = float(os.getenv("PAYMENT_TOLERANCE", "0.01"))


# =========================
# GATEWAY DE PAGAMENTO (Paystack)
# =========================

PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
PAYSTACK_CURRENCY = os.getenv("PAYSTACK_CURRENCY", "KES")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
