"""
Tests for wallet signature verification.

The verifier must fail closed: anything it cannot prove is False.
"""

import random
import string

import pytest

from certregistry.core.signature import (
    SignatureVerifier,
    generate_account,
    normalize_address,
    sign_message,
)


@pytest.fixture
def verifier():
    return SignatureVerifier()


@pytest.fixture
def wallet():
    return generate_account()


class TestSignatureVerifier:

    def test_valid_signature(self, verifier, wallet):
        address, key = wallet
        sig = sign_message("hello registry", key)
        assert verifier.verify(address, "hello registry", sig)

    def test_recover_returns_signer(self, verifier, wallet):
        address, key = wallet
        assert verifier.recover("msg", sign_message("msg", key)) == address

    def test_address_case_is_irrelevant(self, verifier, wallet):
        address, key = wallet
        sig = sign_message("msg", key)
        assert verifier.verify(address.lower(), "msg", sig)
        assert verifier.verify("0x" + address[2:].upper(), "msg", sig)

    def test_signature_without_prefix(self, verifier, wallet):
        address, key = wallet
        sig = sign_message("msg", key)
        assert verifier.verify(address, "msg", sig[2:])

    def test_tampered_message_fails(self, verifier, wallet):
        address, key = wallet
        sig = sign_message("Nonce: 1", key)
        assert not verifier.verify(address, "Nonce: 2", sig)

    def test_wrong_key_fuzz_corpus(self, verifier, wallet):
        """A signature from any other key never verifies for the claimed address."""
        claimed, _ = wallet
        rng = random.Random(1815)
        alphabet = string.ascii_letters + string.digits + " \n:-"
        for _ in range(25):
            message = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 120)))
            _, other_key = generate_account()
            assert not verifier.verify(claimed, message, sign_message(message, other_key))

    @pytest.mark.parametrize("signature", [
        "",
        "0x",
        "0x1234",
        "0x" + "zz" * 65,
        "0x" + "00" * 65,
        "0x" + "ff" * 64,
        "0x" + "ab" * 66,
        None,
        12345,
    ])
    def test_malformed_signatures_fail_closed(self, verifier, wallet, signature):
        address, _ = wallet
        assert verifier.verify(address, "msg", signature) is False

    @pytest.mark.parametrize("address", ["", "0x123", "not an address", None])
    def test_malformed_address_fails_closed(self, verifier, wallet, address):
        _, key = wallet
        assert verifier.verify(address, "msg", sign_message("msg", key)) is False

    def test_non_string_message_fails_closed(self, verifier, wallet):
        address, key = wallet
        assert verifier.verify(address, b"msg", sign_message("msg", key)) is False


class TestNormalizeAddress:

    def test_checksums(self):
        raw = "0x8ba1f109551bd432803012645ac136ddd64dba72"
        assert normalize_address(raw) == "0x8ba1f109551bD432803012645Ac136ddd64DBA72"

    def test_strips_whitespace(self):
        assert normalize_address(" 0x8ba1f109551bd432803012645ac136ddd64dba72 ").startswith("0x8ba1")

    @pytest.mark.parametrize("bad", ["", "0x12", "hello", None, 42])
    def test_rejects(self, bad):
        with pytest.raises(ValueError):
            normalize_address(bad)
