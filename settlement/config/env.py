import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# Multi-document transactions need a replica set. Standalone deployments
# fall back to compensating writes (see database.run_transaction).
MONGO_TRANSACTIONS_ENABLED = os.getenv("MONGO_TRANSACTIONS_ENABLED", "true").lower() in {"1", "true", "yes"}
TRANSACTION_MAX_RETRIES = int(os.getenv("TRANSACTION_MAX_RETRIES", 3))
WALLET_WRITE_RETRIES = int(os.getenv("WALLET_WRITE_RETRIES", 5))

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# =====================================================
# LEDGER
# =====================================================
# Wallet that receives the platform commission. When unset, the first
# admin user found is used.
PLATFORM_WALLET_USER_ID = os.getenv("PLATFORM_WALLET_USER_ID")

SETTINGS_CACHE_SECONDS = int(os.getenv("SETTINGS_CACHE_SECONDS", 300))
PROFIT_SWEEP_INTERVAL_SECONDS = int(os.getenv("PROFIT_SWEEP_INTERVAL_SECONDS", 60 * 15))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")

# --------------------------------------------------
# DATA ENCRYPTION
# --------------------------------------------------
WALLET_NUMBER_ENCRYPTION_KEY = os.getenv("WALLET_NUMBER_ENCRYPTION_KEY")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "MONGODB_URI": MONGO_URI,
        "WALLET_NUMBER_ENCRYPTION_KEY": WALLET_NUMBER_ENCRYPTION_KEY,
        "PLATFORM_WALLET_USER_ID": PLATFORM_WALLET_USER_ID,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
