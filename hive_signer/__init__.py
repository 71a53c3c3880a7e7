"""
Hive Signup Signer

Version: 1.0.0

Provisions Hive accounts on behalf of end users without exposing the
operator's signing key to clients.

Two-phase protocol:
    prepare(name)  -> private keys + single-use session (15 minutes)
    finalize(session, name, authorities) -> operator broadcasts the account

Usage:
    from hive_signer import (
        AccountProvisioner,
        AccountAuthorities,
        InMemorySessionStore,
        FileRecoveryCache,
        InMemoryLedgerClient,
    )

    provisioner = AccountProvisioner(
        ledger=InMemoryLedgerClient(),
        sessions=InMemorySessionStore(),
        recovery=FileRecoveryCache("emergency-recovery"),
        issuer_name="skatehive",
    )
    prepared = provisioner.prepare("skateuser")
    result = provisioner.finalize(
        prepared.data["session_id"],
        "skateuser",
        AccountAuthorities.from_public_keys(prepared.data["pubkeys"]),
    )
    if result.succeeded():
        tx_id = result.data["transaction_id"]
"""

__version__ = "1.0.0"

from .errors import (
    FailureCode,
    InvalidInputError,
    LedgerError,
    LedgerErrorCategory,
    ProvisioningResult,
)

from .keys import (
    ROLES,
    KeyBundle,
    derive,
    validate,
    public_from_private,
    create_authority,
)

from .sessions import (
    Reservation,
    SessionStore,
    InMemorySessionStore,
    RedisSessionStore,
    SessionSweeper,
)

from .recovery import (
    EmergencyRecord,
    RecordStatus,
    RecoveryCache,
    FileRecoveryCache,
)

from .ledger import (
    LedgerClient,
    InMemoryLedgerClient,
    LighthiveLedgerClient,
    classify_ledger_error,
)

from .provisioning import (
    AccountAuthorities,
    AccountProvisioner,
    ProvisioningState,
)


__all__ = [
    "__version__",

    # Errors
    "FailureCode",
    "InvalidInputError",
    "LedgerError",
    "LedgerErrorCategory",
    "ProvisioningResult",

    # Keys
    "ROLES",
    "KeyBundle",
    "derive",
    "validate",
    "public_from_private",
    "create_authority",

    # Sessions
    "Reservation",
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionSweeper",

    # Recovery
    "EmergencyRecord",
    "RecordStatus",
    "RecoveryCache",
    "FileRecoveryCache",

    # Ledger
    "LedgerClient",
    "InMemoryLedgerClient",
    "LighthiveLedgerClient",
    "classify_ledger_error",

    # Orchestrator
    "AccountAuthorities",
    "AccountProvisioner",
    "ProvisioningState",
]
