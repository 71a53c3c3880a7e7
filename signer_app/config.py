"""
Configuration module for the Hive signer service.

Centralizes all configuration with environment variable support and
validation.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from hive_signer.recovery import decode_sealing_key

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("SIGNER_ENV", "development")  # development|production|test

# Hive blockchain
HIVE_NODE_URL = os.getenv("HIVE_NODE_URL", "https://api.hive.blog")
HIVE_CREATOR = os.getenv("HIVE_CREATOR", "skatehive")
HIVE_CREATOR_ACTIVE_WIF = os.getenv("HIVE_CREATOR_ACTIVE_WIF", "")
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "lighthive")  # lighthive|memory
LEDGER_TIMEOUT_SECONDS = int(os.getenv("LEDGER_TIMEOUT_SECONDS", "10"))

# Service security
SIGNER_TOKEN = os.getenv("SIGNER_TOKEN", "")
MIN_SIGNER_TOKEN_LENGTH = 32

# Reverse proxies in front of the service whose x-forwarded-for is trusted
TRUST_PROXY_HOPS = int(os.getenv("TRUST_PROXY_HOPS", "0"))

# Sessions
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(15 * 60)))
SESSION_SWEEP_SECONDS = int(os.getenv("SESSION_SWEEP_SECONDS", "60"))
REDIS_URL = os.getenv("REDIS_URL", "")  # optional shared session store

# Emergency recovery
RECOVERY_DIR = os.getenv("RECOVERY_DIR", "emergency-recovery")
RECOVERY_SEALING_KEY = os.getenv("RECOVERY_SEALING_KEY", "")  # base64, 32 bytes
RECOVERY_RETENTION_HOURS = float(os.getenv("RECOVERY_RETENTION_HOURS", "72"))

# Rate limits (requests per window, per client IP)
RATE_WINDOW_SECONDS = int(os.getenv("RATE_WINDOW_SECONDS", str(15 * 60)))
GLOBAL_RATE_LIMIT = int(os.getenv("GLOBAL_RATE_LIMIT", "120"))
ACCOUNT_RATE_LIMIT = int(os.getenv("ACCOUNT_RATE_LIMIT", "30"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")

# Request body ceiling (bytes)
MAX_BODY_BYTES = int(os.getenv("MAX_BODY_BYTES", str(10 * 1024)))


# ============================================================
# Derived Values
# ============================================================

def recovery_sealing_key() -> Optional[bytes]:
    """Decode the optional recovery sealing key."""
    return decode_sealing_key(RECOVERY_SEALING_KEY)


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate required configuration.
    Returns dict of check name -> passed.
    """
    checks = {
        "signer_token": len(SIGNER_TOKEN) >= MIN_SIGNER_TOKEN_LENGTH,
        "hive_creator": 3 <= len(HIVE_CREATOR) <= 16,
        "ledger_backend": LEDGER_BACKEND in ("lighthive", "memory"),
        "trust_proxy_hops": TRUST_PROXY_HOPS >= 0,
    }
    if LEDGER_BACKEND == "lighthive":
        checks["creator_active_wif"] = len(HIVE_CREATOR_ACTIVE_WIF) == 51
    try:
        recovery_sealing_key()
        checks["recovery_sealing_key"] = True
    except ValueError:
        checks["recovery_sealing_key"] = False
    recovery_parent = Path(RECOVERY_DIR).resolve().parent
    checks["recovery_dir_parent"] = recovery_parent.exists()
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "production"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("SIGNER_DEBUG", "").lower() in ("1", "true", "yes")
