import os, sys
import pytest
from fastapi.testclient import TestClient

# Ensure the packages are importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_SIGNER_TOKEN = "test-signer-token-0123456789abcdefghij"

# Configuration is read at import time
os.environ["SIGNER_ENV"] = "test"
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["SIGNER_TOKEN"] = TEST_SIGNER_TOKEN
os.environ["HIVE_CREATOR"] = "skatehive"
os.environ["LOG_JSON"] = "false"
os.environ.pop("RECOVERY_SEALING_KEY", None)
os.environ.pop("REDIS_URL", None)

from hive_signer import FileRecoveryCache, InMemoryLedgerClient, InMemorySessionStore
from signer_app import main


@pytest.fixture
def ledger():
    return InMemoryLedgerClient(existing_accounts={"skatehive", "takenname"})


@pytest.fixture
def signer(tmp_path, ledger):
    """Fresh services and rate limiters for every API test."""
    main.global_limiter.reset()
    main.account_limiter.reset()
    return main.configure(
        ledger=ledger,
        sessions=InMemorySessionStore(),
        recovery=FileRecoveryCache(str(tmp_path / "emergency-recovery")),
    )


@pytest.fixture
def client(signer):
    return TestClient(main.app)


@pytest.fixture
def auth_headers():
    return {"x-signer-token": TEST_SIGNER_TOKEN}
