"""
Key derivation test suite.

Critical invariant tested:
    THE SAME SEED AND ACCOUNT NAME ALWAYS DERIVE THE SAME FOUR KEYPAIRS
"""

import hashlib
import unittest

import base58
from Crypto.Hash import RIPEMD160

from hive_signer.errors import InvalidInputError
from hive_signer.keys import (
    PUBLIC_KEY_PATTERN,
    ROLES,
    create_authority,
    decode_wif,
    derive,
    encode_wif,
    generate_seed,
    public_from_private,
    public_keys_equal,
    validate,
    validate_account_name,
)

SEED = "P5JxQ3pGTmVw8TUWZq9vLd4c2aF7bN1hR6sYkEeXoCgMnBtHuAiDjK"


class TestDerive(unittest.TestCase):
    """Test deterministic derivation."""

    def test_deterministic(self):
        first = derive("skateuser", SEED)
        second = derive("skateuser", SEED)
        self.assertEqual(first.private_keys, second.private_keys)
        self.assertEqual(first.public_keys, second.public_keys)

    def test_all_roles_present_and_distinct(self):
        bundle = derive("skateuser", SEED)
        self.assertEqual(set(bundle.private_keys), set(ROLES))
        self.assertEqual(set(bundle.public_keys), set(ROLES))
        self.assertEqual(len(set(bundle.public_keys.values())), 4)

    def test_public_key_format(self):
        bundle = derive("skateuser", SEED)
        for role in ROLES:
            self.assertRegex(bundle.public_keys[role], PUBLIC_KEY_PATTERN)

    def test_wif_format(self):
        bundle = derive("skateuser", SEED)
        for role in ROLES:
            wif = bundle.private_keys[role]
            self.assertTrue(wif.startswith("5"))
            self.assertEqual(len(decode_wif(wif)), 32)

    def test_bundle_is_consistent(self):
        bundle = derive("skateuser", SEED)
        self.assertTrue(bundle.is_consistent())
        for role in ROLES:
            self.assertEqual(public_from_private(bundle.private_keys[role]), bundle.public_keys[role])

    def test_name_changes_keys(self):
        a = derive("skateuser", SEED)
        b = derive("skateuser2", SEED)
        self.assertNotEqual(a.public_keys["owner"], b.public_keys["owner"])

    def test_random_seed_when_omitted(self):
        a = derive("skateuser")
        b = derive("skateuser")
        self.assertTrue(a.seed.startswith("P"))
        self.assertEqual(len(a.seed), 51)
        self.assertNotEqual(a.seed, b.seed)
        self.assertNotEqual(a.public_keys, b.public_keys)

    def test_generate_seed_shape(self):
        seed = generate_seed()
        self.assertRegex(seed, r"^P[0-9a-f]{50}$")

    def test_repr_hides_secrets(self):
        bundle = derive("skateuser", SEED)
        text = repr(bundle)
        self.assertNotIn(SEED, text)
        for role in ROLES:
            self.assertNotIn(bundle.private_keys[role], text)

    def test_malformed_seed_rejected(self):
        for bad in ("", "has space", "tab\there", "x" * 257, 12345):
            with self.assertRaises(InvalidInputError):
                derive("skateuser", bad)

    def test_malformed_name_rejected(self):
        for bad in ("ab", "a" * 17, "Skateuser", "1skate", "skate--user", "skate-", "skate_user"):
            with self.assertRaises(InvalidInputError):
                derive(bad, SEED)


class TestValidate(unittest.TestCase):
    """Test seed verification and key comparison."""

    def setUp(self):
        self.bundle = derive("skateuser", SEED)

    def test_validate_correct_seed(self):
        self.assertTrue(validate("skateuser", SEED, self.bundle.public_keys))

    def test_validate_wrong_seed(self):
        self.assertFalse(validate("skateuser", SEED + "x", self.bundle.public_keys))

    def test_validate_malformed_input_is_false(self):
        self.assertFalse(validate("skateuser", "", self.bundle.public_keys))
        self.assertFalse(validate("BAD", SEED, self.bundle.public_keys))

    def test_one_character_difference(self):
        other = dict(self.bundle.public_keys)
        key = other["memo"]
        other["memo"] = key[:-1] + ("A" if key[-1] != "A" else "B")
        self.assertFalse(public_keys_equal(self.bundle.public_keys, other))

    def test_missing_role(self):
        other = dict(self.bundle.public_keys)
        del other["posting"]
        self.assertFalse(public_keys_equal(self.bundle.public_keys, other))

    def test_non_dict(self):
        self.assertFalse(public_keys_equal(self.bundle.public_keys, None))


class TestAccountName(unittest.TestCase):

    def test_valid_names(self):
        for name in ("abc", "skateuser", "skate-user", "a1b2c3", "a" * 16):
            self.assertEqual(validate_account_name(name), name)

    def test_error_carries_field(self):
        with self.assertRaises(InvalidInputError) as ctx:
            validate_account_name("ab")
        self.assertEqual(ctx.exception.field, "account_name")


class TestAuthority(unittest.TestCase):

    def test_authority_shape(self):
        key = derive("skateuser", SEED).public_keys["owner"]
        self.assertEqual(create_authority(key), {
            "weight_threshold": 1,
            "account_auths": [],
            "key_auths": [[key, 1]],
        })

    def test_bad_wif(self):
        with self.assertRaises(InvalidInputError):
            public_from_private("5notavalidwif")


class TestKnownVectors(unittest.TestCase):
    """Fixed reference values for each stage of derivation."""

    # Bitcoin wiki "Wallet import format" example
    WIF_KEY_HEX = "0c28fca386c7a227600b2fe50b7cae11ec86d3bf1fbe471be89827e19d72aa1d"
    WIF = "5HueCGU8rMjxEXxiPuD5BDku4MkFqeZyd4dS1LNoKG67ppsh9Sq"

    # secp256k1 generator G, compressed
    GENERATOR = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"

    def test_key_material_is_sha256_of_hex_sha256(self):
        bundle = derive("skateuser", SEED)
        for role in ROLES:
            inner = hashlib.sha256(f"{SEED}skateuser{role}".encode("utf-8")).hexdigest()
            expected = hashlib.sha256(inner.encode("ascii")).digest()
            self.assertEqual(decode_wif(bundle.private_keys[role]), expected)

    def test_wif_vector(self):
        self.assertEqual(encode_wif(bytes.fromhex(self.WIF_KEY_HEX)), self.WIF)
        self.assertEqual(decode_wif(self.WIF).hex(), self.WIF_KEY_HEX)

    def test_public_key_of_scalar_one_is_generator(self):
        public = public_from_private(encode_wif((1).to_bytes(32, "big")))
        self.assertTrue(public.startswith("STM"))
        raw = base58.b58decode(public[3:])
        point, checksum = raw[:33], raw[33:]
        self.assertEqual(point.hex(), self.GENERATOR)
        self.assertEqual(checksum, RIPEMD160.new(point).digest()[:4])


if __name__ == "__main__":
    unittest.main()
