"""
Two-phase account provisioning.

    prepare:  name check -> derive keys -> reserve -> escrow -> return keys
    finalize: reservation checks -> consume -> broadcast -> mark delivered

States of one provisioning attempt:

    IDLE -> PREPARED -> FINALIZING -> COMPLETED
                 \\-> EXPIRED  (terminal, no side effects)

Once ``consume`` succeeds the attempt runs to completion or to a terminal
failure; a consumed session is never replayed, even after a broadcast
failure. The caller re-runs prepare to try again.

The orchestrator performs no retries and returns a ``ProvisioningResult``
for every protocol outcome. Private keys leave the process only in the
prepare success payload.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from . import keys
from .errors import FailureCode, InvalidInputError, LedgerError, LedgerErrorCategory, ProvisioningResult
from .ledger import LedgerClient, classify_ledger_error
from .logging_config import audit_log
from .recovery import EmergencyRecord, RecoveryCache
from .sessions import SessionStore
from .util import utc_iso

logger = logging.getLogger(__name__)


class ProvisioningState(str, Enum):
    IDLE = "IDLE"
    PREPARED = "PREPARED"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


LEDGER_MESSAGES = {
    LedgerErrorCategory.INSUFFICIENT_RESOURCES:
        "Creator account has insufficient Resource Credits (RC).",
    LedgerErrorCategory.NO_CLAIMED_ACCOUNTS:
        "Creator has no claimed account credits available. Please claim an account first.",
    LedgerErrorCategory.NAME_TAKEN: "Account name is already taken",
    LedgerErrorCategory.LEDGER_ERROR: "Failed to broadcast to the Hive blockchain",
}


@dataclass
class AccountAuthorities:
    """Authority structures submitted for a new account."""
    owner: Dict[str, Any]
    active: Dict[str, Any]
    posting: Dict[str, Any]
    memo_key: str
    json_metadata: str = "{}"

    @staticmethod
    def _first_key(authority: Dict[str, Any]) -> str:
        key_auths = authority.get("key_auths") or []
        if not key_auths or not key_auths[0]:
            return ""
        return key_auths[0][0]

    def public_keys(self) -> Dict[str, str]:
        """Role -> public key, taken from the first key of each authority."""
        return {
            "owner": self._first_key(self.owner),
            "active": self._first_key(self.active),
            "posting": self._first_key(self.posting),
            "memo": self.memo_key,
        }

    @classmethod
    def from_public_keys(cls, public_keys: Dict[str, str], json_metadata: str = "{}") -> "AccountAuthorities":
        return cls(
            owner=keys.create_authority(public_keys["owner"]),
            active=keys.create_authority(public_keys["active"]),
            posting=keys.create_authority(public_keys["posting"]),
            memo_key=public_keys["memo"],
            json_metadata=json_metadata,
        )


def session_correlation_id(session_id: str) -> str:
    return f"session-{session_id}"


class AccountProvisioner:
    """
    Orchestrates account creation for one operator account.

    Usage:
        provisioner = AccountProvisioner(ledger, InMemorySessionStore(),
                                         FileRecoveryCache("emergency-recovery"),
                                         issuer_name="skatehive")
        prepared = provisioner.prepare("skateuser")
        if prepared.succeeded():
            pubkeys = prepared.data["pubkeys"]
            done = provisioner.finalize(
                prepared.data["session_id"], "skateuser",
                AccountAuthorities.from_public_keys(pubkeys))
    """

    def __init__(
        self,
        ledger: LedgerClient,
        sessions: SessionStore,
        recovery: RecoveryCache,
        issuer_name: str,
        allowed_issuers: Optional[Iterable[str]] = None,
    ):
        self.ledger = ledger
        self.sessions = sessions
        self.recovery = recovery
        self.issuer_name = issuer_name
        self.allowed_issuers = set(allowed_issuers or ()) | {issuer_name}

    # ------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------

    def _check_name(self, subject_name: str) -> Optional[ProvisioningResult]:
        """Validate and check availability. Returns a failure or None."""
        try:
            keys.validate_account_name(subject_name)
        except InvalidInputError as e:
            return ProvisioningResult.fail(FailureCode.INVALID_INPUT, e.message, details=e.field)

        try:
            taken = self.ledger.account_exists(subject_name)
        except LedgerError as e:
            category = classify_ledger_error(e)
            logger.error("Availability check failed for %s: %s", subject_name, category.value)
            return ProvisioningResult.fail(
                FailureCode.LEDGER_ERROR,
                "Could not verify account name availability",
                details=e.message,
                ledger_category=category,
            )
        if taken:
            return ProvisioningResult.fail(FailureCode.NAME_TAKEN, "Account name is already taken",
                                           details="new_account_name")
        return None

    def _broadcast_failure(self, subject_name: Optional[str], error: LedgerError) -> ProvisioningResult:
        category = classify_ledger_error(error)
        audit_log.broadcast_failed(subject_name, category.value, error.message)
        return ProvisioningResult.fail(
            FailureCode.BROADCAST_FAILED,
            LEDGER_MESSAGES[category],
            details=error.message,
            ledger_category=category,
        )

    def _escrow(self, record: EmergencyRecord) -> None:
        try:
            self.recovery.store(record)
        except Exception as e:
            # escrow is best effort; the primary path continues
            audit_log.recovery_failed(record.subject_name, "store", type(e).__name__)

    def _mark_delivered(self, subject_name: str, correlation_id: str) -> None:
        try:
            self.recovery.mark_delivered(subject_name, correlation_id)
        except Exception as e:
            audit_log.recovery_failed(subject_name, "mark_delivered", type(e).__name__)

    # ------------------------------------------------------------
    # Phase one
    # ------------------------------------------------------------

    def prepare(
        self,
        subject_name: str,
        issuer_name: Optional[str] = None,
        request_info: Optional[Dict[str, Optional[str]]] = None,
    ) -> ProvisioningResult:
        """
        Generate keys and reserve ``subject_name`` for a later finalize.

        Returns:
            Success payload with ``keys`` (private, plus ``master_password``),
            ``pubkeys``, ``session_id`` and ``expires_at``
        """
        issuer = issuer_name or self.issuer_name
        if issuer not in self.allowed_issuers:
            return ProvisioningResult.fail(FailureCode.INVALID_INPUT,
                                           "Creator account is not served by this signer",
                                           details="creator_account")

        failure = self._check_name(subject_name)
        if failure is not None:
            return failure

        audit_log.prepare_requested(subject_name, issuer)
        bundle = keys.derive(subject_name)
        reservation = self.sessions.create(subject_name, bundle.public_keys, issuer)
        audit_log.state_transition(reservation.session_id, ProvisioningState.IDLE.value,
                                   ProvisioningState.PREPARED.value)

        # escrow before the keys leave the process
        self._escrow(EmergencyRecord(
            subject_name=subject_name,
            correlation_id=session_correlation_id(reservation.session_id),
            private_keys=dict(bundle.private_keys),
            public_keys=dict(bundle.public_keys),
            request_info=dict(request_info or {}),
        ))

        expires_at = utc_iso(reservation.expires_at)
        audit_log.session_created(reservation.session_id, subject_name, expires_at)

        return ProvisioningResult.success(
            "Keys generated successfully. Please save them securely before confirming account creation.",
            keys={**bundle.private_keys, "master_password": bundle.seed},
            pubkeys=dict(bundle.public_keys),
            session_id=reservation.session_id,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------
    # Phase two
    # ------------------------------------------------------------

    def _reject(self, session_id: str, subject_name: str, failure: FailureCode,
                message: str) -> ProvisioningResult:
        audit_log.finalize_rejected(session_id, subject_name, failure.value)
        return ProvisioningResult.fail(failure, message)

    def finalize(
        self,
        session_id: str,
        subject_name: str,
        authorities: AccountAuthorities,
        proof: Optional[str] = None,
    ) -> ProvisioningResult:
        """
        Create the account reserved by ``session_id``.

        Args:
            session_id: Reservation id returned by prepare
            subject_name: Must equal the reserved account name
            authorities: Authorities whose keys must equal the reserved keys
            proof: Optional master seed; when given it must re-derive the
                reserved public keys

        Returns:
            Success payload with ``transaction_id``, or one failure
        """
        reservation = self.sessions.get(session_id)
        if reservation is None:
            return self._reject(session_id, subject_name, FailureCode.INVALID_SESSION,
                                "Session not found or expired. Please generate keys again.")

        if reservation.used:
            return self._reject(session_id, subject_name, FailureCode.SESSION_ALREADY_USED,
                                "This session has already been used to create an account.")

        if reservation.subject_name != subject_name:
            return self._reject(session_id, subject_name, FailureCode.SESSION_MISMATCH,
                                "Account name does not match the prepared session.")

        if not keys.public_keys_equal(reservation.public_keys, authorities.public_keys()):
            return self._reject(session_id, subject_name, FailureCode.KEY_MISMATCH,
                                "Provided public keys do not match the prepared session.")

        if proof is not None and not keys.validate(subject_name, proof, reservation.public_keys):
            return self._reject(session_id, subject_name, FailureCode.KEY_MISMATCH,
                                "Master password does not derive the prepared keys.")

        if not self.sessions.consume(session_id):
            return self._reject(session_id, subject_name, FailureCode.SESSION_ALREADY_USED,
                                "This session has already been used to create an account.")

        audit_log.state_transition(session_id, ProvisioningState.PREPARED.value,
                                   ProvisioningState.FINALIZING.value)

        try:
            tx_id = self.ledger.broadcast_create_account(
                reservation.issuer_name,
                subject_name,
                authorities.owner,
                authorities.active,
                authorities.posting,
                authorities.memo_key,
                authorities.json_metadata,
            )
        except LedgerError as e:
            # the session stays consumed
            return self._broadcast_failure(subject_name, e)

        audit_log.state_transition(session_id, ProvisioningState.FINALIZING.value,
                                   ProvisioningState.COMPLETED.value)
        audit_log.account_created(subject_name, tx_id, "session")
        self._mark_delivered(subject_name, session_correlation_id(session_id))

        return ProvisioningResult.success(
            "Account created successfully",
            transaction_id=tx_id,
            account_name=subject_name,
        )

    # ------------------------------------------------------------
    # One-phase operations
    # ------------------------------------------------------------

    def create_direct(
        self,
        subject_name: str,
        authorities: AccountAuthorities,
        private_keys: Optional[Dict[str, str]] = None,
        request_info: Optional[Dict[str, Optional[str]]] = None,
    ) -> ProvisioningResult:
        """
        Create an account from caller-supplied authorities, no reservation.

        When the caller also sent the matching private keys they are
        escrowed under the transaction id.
        """
        failure = self._check_name(subject_name)
        if failure is not None:
            return failure

        try:
            tx_id = self.ledger.broadcast_create_account(
                self.issuer_name,
                subject_name,
                authorities.owner,
                authorities.active,
                authorities.posting,
                authorities.memo_key,
                authorities.json_metadata,
            )
        except LedgerError as e:
            return self._broadcast_failure(subject_name, e)

        audit_log.account_created(subject_name, tx_id, "direct")

        if private_keys and all(private_keys.get(role) for role in keys.ROLES):
            self._escrow(EmergencyRecord(
                subject_name=subject_name,
                correlation_id=tx_id,
                private_keys={role: private_keys[role] for role in keys.ROLES},
                public_keys=authorities.public_keys(),
                request_info=dict(request_info or {}),
            ))
        else:
            logger.warning("No private keys supplied for %s - emergency storage skipped", subject_name)

        return ProvisioningResult.success(
            "Account created successfully",
            transaction_id=tx_id,
            account_name=subject_name,
        )

    def claim_account(self) -> ProvisioningResult:
        """Claim an account-creation credit using Resource Credits."""
        try:
            tx_id = self.ledger.claim_account(self.issuer_name)
        except LedgerError as e:
            return self._broadcast_failure(None, e)
        audit_log.account_claimed(self.issuer_name, tx_id)
        return ProvisioningResult.success(
            "Account claim successful. You can now create a claimed account.",
            transaction_id=tx_id,
        )
