"""
Emergency recovery cache for generated account keys.

Prepare hands private keys to the caller over the wire. If the caller loses
them (crash, dropped response) the only way back is this local escrow. It is
best-effort and out of band: a storage failure is logged and never blocks
provisioning.

Records are append-only. The only mutation is a status change to
``delivered``. Records older than the retention window read as ``expired``
but are never deleted automatically; deletion is a manual operator action.
Files must never be committed to source control.
"""

import base64
import binascii
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox

from .logging_config import audit_log
from .util import filename_timestamp, generate_id, utc_iso

logger = logging.getLogger(__name__)

RETENTION_HOURS = 72
DIR_MODE = 0o700
FILE_MODE = 0o600
FILE_SUFFIX = "-keys.json"


def decode_sealing_key(value: Optional[str]) -> Optional[bytes]:
    """
    Decode a base64 sealing key.

    Returns:
        32 key bytes, or None when ``value`` is empty

    Raises:
        ValueError: not base64, or not a 32-byte key
    """
    if not value:
        return None
    try:
        key = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("RECOVERY_SEALING_KEY must be base64") from e
    if len(key) != SecretBox.KEY_SIZE:
        raise ValueError(f"RECOVERY_SEALING_KEY must decode to {SecretBox.KEY_SIZE} bytes")
    return key


class RecordStatus(str, Enum):
    CREATED = "created"
    DELIVERED = "delivered"
    EXPIRED = "expired"


@dataclass
class EmergencyRecord:
    """Durable escrow copy of a key bundle tied to one provisioning attempt."""
    subject_name: str
    correlation_id: str
    private_keys: Dict[str, str]
    public_keys: Dict[str, str]
    created_at: float = field(default_factory=time.time)
    status: RecordStatus = RecordStatus.CREATED
    request_info: Dict[str, Optional[str]] = field(default_factory=dict)

    def age_hours(self, now: float) -> float:
        return (now - self.created_at) / 3600.0

    def is_expired(self, now: float, retention_hours: float = RETENTION_HOURS) -> bool:
        return self.age_hours(now) > retention_hours

    def effective_status(self, now: float, retention_hours: float = RETENTION_HOURS) -> RecordStatus:
        """Status as seen by readers: anything past retention reads as expired."""
        if self.is_expired(now, retention_hours):
            return RecordStatus.EXPIRED
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_name": self.subject_name,
            "correlation_id": self.correlation_id,
            "timestamp": utc_iso(self.created_at),
            "created_at": self.created_at,
            "status": self.status.value,
            "private_keys": dict(self.private_keys),
            "public_keys": dict(self.public_keys),
            "request_info": dict(self.request_info),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyRecord":
        return cls(
            subject_name=data["subject_name"],
            correlation_id=data["correlation_id"],
            private_keys=dict(data["private_keys"]),
            public_keys=dict(data["public_keys"]),
            created_at=float(data["created_at"]),
            status=RecordStatus(data.get("status", RecordStatus.CREATED.value)),
            request_info=dict(data.get("request_info") or {}),
        )

    def summary(self, now: float, retention_hours: float = RETENTION_HOURS,
                include_keys: bool = False) -> Dict[str, Any]:
        out = {
            "subject_name": self.subject_name,
            "correlation_id": self.correlation_id,
            "timestamp": utc_iso(self.created_at),
            "age_hours": round(self.age_hours(now), 1),
            "status": self.effective_status(now, retention_hours).value,
            "expired": self.is_expired(now, retention_hours),
        }
        if include_keys:
            out["private_keys"] = dict(self.private_keys)
            out["public_keys"] = dict(self.public_keys)
            out["request_info"] = dict(self.request_info)
        return out


class RecoveryCache(ABC):
    """
    Abstract append-only escrow for generated secrets.

    ``store`` must never raise: escrow unavailability cannot block the
    primary provisioning path.
    """

    retention_hours: float = RETENTION_HOURS

    @abstractmethod
    def store(self, record: EmergencyRecord) -> bool:
        """Append a record. Returns False (after logging) on failure."""
        pass

    @abstractmethod
    def retrieve(self, subject_name: str) -> Optional[EmergencyRecord]:
        """Most recent record for ``subject_name``."""
        pass

    @abstractmethod
    def mark_delivered(self, subject_name: str, correlation_id: str) -> bool:
        """
        Flip the matching record to ``delivered``. Idempotent.

        Returns:
            True if a matching record exists (already delivered included)
        """
        pass

    @abstractmethod
    def list(self, include_keys: bool = False) -> List[Dict[str, Any]]:
        """Summaries ordered newest first."""
        pass


class FileRecoveryCache(RecoveryCache):
    """
    One JSON file per record under a restricted directory.

    - Directory mode 0700, file mode 0600
    - Written to a temp file then renamed, so readers never see partial data
    - Optional sealing key: file bodies are encrypted with ``SecretBox``

    File names are ``<UTC timestamp>-<random>-<subject>-keys.json``; sorting
    them sorts records chronologically.
    """

    def __init__(
        self,
        root: str,
        retention_hours: float = RETENTION_HOURS,
        sealing_key: Optional[bytes] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._root = Path(root)
        self.retention_hours = retention_hours
        self._box = SecretBox(sealing_key) if sealing_key else None
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_dir(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
        os.chmod(self._root, DIR_MODE)

    def _encode(self, record: EmergencyRecord) -> bytes:
        body = json.dumps(record.to_dict(), indent=2).encode("utf-8")
        if self._box is None:
            return body
        return self._box.encrypt(body)

    def _decode(self, raw: bytes) -> EmergencyRecord:
        if self._box is not None:
            raw = self._box.decrypt(raw)
        return EmergencyRecord.from_dict(json.loads(raw.decode("utf-8")))

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self._root), prefix=".tmp-", suffix=".part")
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _filename(self, record: EmergencyRecord) -> str:
        return f"{filename_timestamp(record.created_at)}-{generate_id(4)}-{record.subject_name}{FILE_SUFFIX}"

    def store(self, record: EmergencyRecord) -> bool:
        try:
            self._ensure_dir()
            path = self._root / self._filename(record)
            self._write_atomic(path, self._encode(record))
        except Exception as e:
            audit_log.recovery_failed(record.subject_name, "store", f"{type(e).__name__}: {e}")
            return False
        audit_log.recovery_stored(record.subject_name, record.correlation_id, str(path))
        return True

    def _load(self, path: Path) -> Optional[EmergencyRecord]:
        """Read one record; unreadable or partial files count as absent."""
        try:
            return self._decode(path.read_bytes())
        except (OSError, ValueError, KeyError, TypeError, CryptoError) as e:
            logger.warning("Skipping unreadable recovery file %s: %s", path.name, type(e).__name__)
            return None

    def _paths(self, subject_name: Optional[str] = None) -> List[Path]:
        """Record files, newest first."""
        if not self._root.is_dir():
            return []
        suffix = f"-{subject_name}{FILE_SUFFIX}" if subject_name else FILE_SUFFIX
        names = sorted(
            (n for n in os.listdir(self._root) if n.endswith(suffix) and not n.startswith(".")),
            reverse=True,
        )
        return [self._root / n for n in names]

    def _records_for(self, subject_name: str):
        for path in self._paths(subject_name):
            record = self._load(path)
            # the suffix match alone is ambiguous for hyphenated names
            if record is not None and record.subject_name == subject_name:
                yield path, record

    def retrieve(self, subject_name: str) -> Optional[EmergencyRecord]:
        try:
            for _, record in self._records_for(subject_name):
                if record.is_expired(self._clock(), self.retention_hours):
                    logger.warning(
                        "Recovery record for %s is %.1f hours old (expired)",
                        subject_name, record.age_hours(self._clock()),
                    )
                return record
        except OSError as e:
            audit_log.recovery_failed(subject_name, "retrieve", f"{type(e).__name__}: {e}")
        return None

    def mark_delivered(self, subject_name: str, correlation_id: str) -> bool:
        try:
            with self._lock:
                for path, record in self._records_for(subject_name):
                    if record.correlation_id != correlation_id:
                        continue
                    if record.status != RecordStatus.DELIVERED:
                        record.status = RecordStatus.DELIVERED
                        self._write_atomic(path, self._encode(record))
                        logger.info("Recovery record marked delivered for %s", subject_name)
                    return True
        except OSError as e:
            audit_log.recovery_failed(subject_name, "mark_delivered", f"{type(e).__name__}: {e}")
        return False

    def list(self, include_keys: bool = False) -> List[Dict[str, Any]]:
        now = self._clock()
        summaries = []
        try:
            for path in self._paths():
                record = self._load(path)
                if record is None:
                    continue
                summary = record.summary(now, self.retention_hours, include_keys=include_keys)
                summary["filename"] = path.name
                summaries.append(summary)
        except OSError as e:
            audit_log.recovery_failed("*", "list", f"{type(e).__name__}: {e}")
            return []
        summaries.sort(key=lambda s: s["timestamp"], reverse=True)
        return summaries
