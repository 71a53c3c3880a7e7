"""
Ledger client interface for the Hive signer.

The core only needs three calls: an availability check, a claim of an
account-creation credit, and the create-claimed-account broadcast. Building
and signing transactions is the client library's job; the operator key is
held in memory by the client and never logged.

``classify_ledger_error`` is the single place where upstream error messages
are matched by substring.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from .errors import LedgerError, LedgerErrorCategory
from .util import sha256_hex

_RESOURCE_MARKERS = ("insufficient resource credits", "bandwidth")
_NO_CLAIM_MARKERS = ("no claimed accounts", "pending claimed accounts")
_NAME_TAKEN_MARKERS = ("already exists", "taken")


def classify_ledger_error(error: LedgerError) -> LedgerErrorCategory:
    """
    Map a ledger failure onto a category.

    A structured ``code`` from the client wins. Otherwise the upstream
    message is matched by substring; anything unrecognised falls through to
    the generic ``LEDGER_ERROR``.
    """
    if error.code:
        try:
            return LedgerErrorCategory(error.code)
        except ValueError:
            return LedgerErrorCategory.LEDGER_ERROR

    message = (error.message or "").lower()
    if any(marker in message for marker in _NO_CLAIM_MARKERS):
        return LedgerErrorCategory.NO_CLAIMED_ACCOUNTS
    if any(marker in message for marker in _NAME_TAKEN_MARKERS):
        return LedgerErrorCategory.NAME_TAKEN
    words = set(message.replace(":", " ").replace(",", " ").replace(".", " ").split())
    if "rc" in words or any(marker in message for marker in _RESOURCE_MARKERS):
        return LedgerErrorCategory.INSUFFICIENT_RESOURCES
    return LedgerErrorCategory.LEDGER_ERROR


class LedgerClient(ABC):
    """Abstract interface to the ledger RPC."""

    @abstractmethod
    def account_exists(self, name: str) -> bool:
        """
        Raises:
            LedgerError: when the node cannot be queried
        """
        pass

    @abstractmethod
    def claim_account(self, issuer: str) -> str:
        """Claim an account-creation credit paid with resource credits."""
        pass

    @abstractmethod
    def broadcast_create_account(
        self,
        issuer: str,
        name: str,
        owner: Dict[str, Any],
        active: Dict[str, Any],
        posting: Dict[str, Any],
        memo_key: str,
        json_metadata: str = "{}",
    ) -> str:
        """
        Broadcast create_claimed_account signed by ``issuer``.

        Returns:
            Transaction id

        Raises:
            LedgerError: carrying the upstream message
        """
        pass


class InMemoryLedgerClient(LedgerClient):
    """
    In-memory ledger for development and tests.

    WARNING: Not connected to any chain.

    ``fail_next_broadcast`` makes the next broadcast raise a
    ``LedgerError`` with the given message. ``claimed_credits=None`` means
    unlimited creation credits.
    """

    def __init__(self, existing_accounts: Optional[Set[str]] = None,
                 claimed_credits: Optional[int] = None):
        self._accounts: Set[str] = set(existing_accounts or ())
        self._credits = claimed_credits
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.broadcasts: List[Dict[str, Any]] = []
        self.fail_next_broadcast: Optional[str] = None
        self.fail_lookups: Optional[str] = None

    def _tx_id(self, payload: str) -> str:
        return sha256_hex(f"{next(self._counter)}:{payload}")[:40]

    def account_exists(self, name: str) -> bool:
        if self.fail_lookups:
            raise LedgerError(self.fail_lookups)
        with self._lock:
            return name in self._accounts

    def claim_account(self, issuer: str) -> str:
        with self._lock:
            if self.fail_next_broadcast:
                message, self.fail_next_broadcast = self.fail_next_broadcast, None
                raise LedgerError(message)
            if self._credits is not None:
                self._credits += 1
            return self._tx_id(f"claim:{issuer}")

    def broadcast_create_account(
        self,
        issuer: str,
        name: str,
        owner: Dict[str, Any],
        active: Dict[str, Any],
        posting: Dict[str, Any],
        memo_key: str,
        json_metadata: str = "{}",
    ) -> str:
        with self._lock:
            if self.fail_next_broadcast:
                message, self.fail_next_broadcast = self.fail_next_broadcast, None
                raise LedgerError(message)
            if name in self._accounts:
                raise LedgerError(f"Account {name} already exists")
            if self._credits is not None:
                if self._credits <= 0:
                    raise LedgerError(f"{issuer} has no claimed accounts")
                self._credits -= 1
            self._accounts.add(name)
            self.broadcasts.append({
                "creator": issuer,
                "new_account_name": name,
                "owner": owner,
                "active": active,
                "posting": posting,
                "memo_key": memo_key,
                "json_metadata": json_metadata,
            })
            return self._tx_id(f"create:{issuer}:{name}")


class LighthiveLedgerClient(LedgerClient):
    """
    Hive ledger client backed by ``lighthive``.

    The client library is imported lazily so the core installs without it.
    Node failover is left to lighthive.
    """

    def __init__(self, node_url: str, creator_active_wif: str, timeout: int = 10):
        self._node_url = node_url
        self._wif = creator_active_wif
        self._timeout = timeout
        self._client = None
        self._lock = threading.Lock()

    def _get_client(self):
        """Lazy-load lighthive client."""
        with self._lock:
            if self._client is None:
                try:
                    from lighthive.client import Client
                except ImportError as e:
                    raise RuntimeError(
                        "lighthive required for Hive broadcasting. Install with: pip install lighthive"
                    ) from e
                self._client = Client(nodes=[self._node_url], keys=[self._wif], read_timeout=self._timeout)
            return self._client

    def _broadcast(self, op_name: str, payload: Dict[str, Any]) -> str:
        client = self._get_client()
        from lighthive.datastructures import Operation

        try:
            result = client.broadcast_sync(Operation(op_name, payload))
        except Exception as e:
            raise LedgerError(str(e)) from e
        tx_id = (result or {}).get("id") if isinstance(result, dict) else None
        if not tx_id:
            raise LedgerError(f"{op_name} broadcast returned no transaction id")
        return tx_id

    def account_exists(self, name: str) -> bool:
        client = self._get_client()
        try:
            accounts = client.get_accounts([name])
        except Exception as e:
            raise LedgerError(str(e)) from e
        return len(accounts or []) > 0

    def claim_account(self, issuer: str) -> str:
        return self._broadcast("claim_account", {
            "creator": issuer,
            "fee": "0.000 HIVE",
            "extensions": [],
        })

    def broadcast_create_account(
        self,
        issuer: str,
        name: str,
        owner: Dict[str, Any],
        active: Dict[str, Any],
        posting: Dict[str, Any],
        memo_key: str,
        json_metadata: str = "{}",
    ) -> str:
        return self._broadcast("create_claimed_account", {
            "creator": issuer,
            "new_account_name": name,
            "owner": owner,
            "active": active,
            "posting": posting,
            "memo_key": memo_key,
            "json_metadata": json_metadata,
            "extensions": [],
        })
