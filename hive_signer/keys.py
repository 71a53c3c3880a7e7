"""
Key derivation for prospective Hive accounts.

Turns a secret seed plus an account name into four role-scoped secp256k1
keypairs (owner, active, posting, memo). Derivation is deterministic:

    key_material(role) = SHA256( hex( SHA256(seed + account_name + role) ) )

Private keys are rendered in WIF, public keys in the ledger's ``STM`` form.

Trust boundary: the seed is the only secret. Anyone who learns the seed and
the account name can regenerate every private key for that account. This
enables offline recovery, and it means the seed must never be logged.
"""

import re
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

import base58
from Crypto.Hash import RIPEMD160
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import InvalidInputError
from .util import constant_time_compare, double_sha256, sha256_bytes, sha256_hex

ROLES = ("owner", "active", "posting", "memo")

DERIVATION_VERSION = "v1"
PUBLIC_KEY_PREFIX = "STM"
WIF_VERSION = b"\x80"

MAX_SEED_LENGTH = 256

ACCOUNT_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9-]*[a-z0-9]$')
PUBLIC_KEY_PATTERN = re.compile(r'^STM[1-9A-HJ-NP-Za-km-z]{50}$')


@dataclass(frozen=True)
class KeyBundle:
    """One derived identity's complete credential set."""
    subject_name: str
    seed: str
    private_keys: Dict[str, str]
    public_keys: Dict[str, str]
    version: str = DERIVATION_VERSION

    def is_consistent(self) -> bool:
        """Check that every public key is derived from its private key."""
        return all(
            public_from_private(self.private_keys[role]) == self.public_keys[role]
            for role in ROLES
        )

    def __repr__(self) -> str:
        return (
            f"KeyBundle(subject_name={self.subject_name!r}, "
            f"public_keys={self.public_keys!r}, version={self.version!r})"
        )


# ============================================================
# Input Validation
# ============================================================

def validate_account_name(name: Any) -> str:
    """
    Validate a Hive account name.

    3-16 characters, starts with a lowercase letter, lowercase letters,
    digits and hyphens only, ends with a letter or digit, no ``--``.
    """
    if not isinstance(name, str):
        raise InvalidInputError("account_name", "must be a string")
    if len(name) < 3:
        raise InvalidInputError("account_name", "must be at least 3 characters")
    if len(name) > 16:
        raise InvalidInputError("account_name", "must be at most 16 characters")
    if not ACCOUNT_NAME_PATTERN.match(name):
        raise InvalidInputError(
            "account_name",
            "can only contain lowercase letters, numbers, and hyphens",
        )
    if "--" in name:
        raise InvalidInputError("account_name", "cannot contain consecutive hyphens")
    return name


def validate_seed(seed: Any) -> str:
    if not isinstance(seed, str):
        raise InvalidInputError("seed", "must be a string")
    if not seed:
        raise InvalidInputError("seed", "cannot be empty")
    if len(seed) > MAX_SEED_LENGTH:
        raise InvalidInputError("seed", f"must not exceed {MAX_SEED_LENGTH} characters")
    if any(ch.isspace() or not ch.isprintable() for ch in seed):
        raise InvalidInputError("seed", "must not contain whitespace or control characters")
    return seed


# ============================================================
# Encoding
# ============================================================

def generate_seed() -> str:
    """Generate a fresh master seed: ``P`` followed by 50 hex characters."""
    return "P" + secrets.token_hex(32)[:50]


def _key_material(seed: str, subject_name: str, role: str) -> bytes:
    digest = sha256_hex(f"{seed}{subject_name}{role}")
    return sha256_bytes(digest)


def _private_key(material: bytes) -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(int.from_bytes(material, "big"), ec.SECP256K1())


def encode_wif(material: bytes) -> str:
    payload = WIF_VERSION + material
    return base58.b58encode(payload + double_sha256(payload)[:4]).decode("ascii")


def decode_wif(wif: str) -> bytes:
    """
    Decode a WIF private key to its 32 raw bytes.

    Raises:
        InvalidInputError: bad encoding, checksum or version byte
    """
    try:
        raw = base58.b58decode_check(wif)
    except ValueError as e:
        raise InvalidInputError("private_key", "invalid WIF encoding") from e
    if len(raw) != 33 or raw[:1] != WIF_VERSION:
        raise InvalidInputError("private_key", "invalid WIF payload")
    return raw[1:]


def encode_public_key(point: bytes) -> str:
    checksum = RIPEMD160.new(point).digest()[:4]
    return PUBLIC_KEY_PREFIX + base58.b58encode(point + checksum).decode("ascii")


def _public_key_string(key: ec.EllipticCurvePrivateKey) -> str:
    point = key.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)
    return encode_public_key(point)


def public_from_private(wif: str) -> str:
    """Derive the ``STM`` public key for a WIF private key."""
    return _public_key_string(_private_key(decode_wif(wif)))


# ============================================================
# Derivation
# ============================================================

def derive(subject_name: str, seed: Optional[str] = None) -> KeyBundle:
    """
    Derive the four role keypairs for ``subject_name``.

    Args:
        subject_name: The account name being provisioned
        seed: Master seed; a random one is generated when omitted

    Returns:
        KeyBundle with WIF private keys and STM public keys

    Raises:
        InvalidInputError: If the name or the supplied seed is malformed
    """
    validate_account_name(subject_name)
    if seed is None:
        seed = generate_seed()
    else:
        validate_seed(seed)

    private_keys: Dict[str, str] = {}
    public_keys: Dict[str, str] = {}
    for role in ROLES:
        material = _key_material(seed, subject_name, role)
        private_keys[role] = encode_wif(material)
        public_keys[role] = _public_key_string(_private_key(material))

    return KeyBundle(
        subject_name=subject_name,
        seed=seed,
        private_keys=private_keys,
        public_keys=public_keys,
    )


def public_keys_equal(a: Dict[str, str], b: Dict[str, str]) -> bool:
    """Exact comparison of all four role public keys."""
    if not isinstance(a, dict) or not isinstance(b, dict):
        return False
    result = True
    for role in ROLES:
        left, right = a.get(role), b.get(role)
        if not isinstance(left, str) or not isinstance(right, str):
            return False
        # no short-circuit: every role is compared
        result &= constant_time_compare(left, right)
    return result


def validate(subject_name: str, seed: str, expected_public_keys: Dict[str, str]) -> bool:
    """
    Re-derive from ``seed`` and compare against ``expected_public_keys``.

    Proves custody of the seed without re-exposing private keys. Malformed
    input yields False.
    """
    try:
        bundle = derive(subject_name, seed)
    except InvalidInputError:
        return False
    return public_keys_equal(bundle.public_keys, expected_public_keys)


def create_authority(public_key: str, weight: int = 1) -> Dict[str, Any]:
    """Single-key ledger authority for ``public_key``."""
    return {
        "weight_threshold": 1,
        "account_auths": [],
        "key_auths": [[public_key, weight]],
    }
