"""
Wallet Signature Verification

Verifies EIP-191 personal_sign signatures (the format every browser wallet
produces for a "sign this message" prompt) against a claimed address.

SECURITY MODEL:
- The address is RECOVERED from (message, signature); nothing the client
  claims about the signer is trusted.
- Recovered and claimed addresses are compared as 20 raw bytes in
  constant time.
- Fails closed: any malformed input returns False, never raises.
"""

import hmac
import logging
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_address, to_canonical_address, to_checksum_address

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 65


def normalize_address(address: str) -> str:
    """
    Return the checksummed form of an address.

    Raises ValueError if the input is not a 20-byte hex address.
    """
    if not isinstance(address, str) or not is_address(address.strip()):
        raise ValueError(f"Not a valid address: {address!r}")
    return to_checksum_address(address.strip())


def _decode_signature(signature: str) -> Optional[bytes]:
    if not isinstance(signature, str):
        return None
    raw = signature.strip()
    if raw.startswith(("0x", "0X")):
        raw = raw[2:]
    if len(raw) != SIGNATURE_LENGTH * 2:
        return None
    try:
        return bytes.fromhex(raw)
    except ValueError:
        return None


class SignatureVerifier:
    """Stateless verifier; safe to share across threads."""

    def recover(self, message: str, signature: str) -> Optional[str]:
        """Recover the checksummed signer address, or None if impossible."""
        sig_bytes = _decode_signature(signature)
        if sig_bytes is None:
            return None
        try:
            return Account.recover_message(
                encode_defunct(text=message), signature=sig_bytes
            )
        except Exception as e:
            # eth_keys raises a mix of ValueError/BadSignature/ValidationError
            logger.debug(f"Signature recovery failed: {e}")
            return None

    def verify(self, address: str, message: str, signature: str) -> bool:
        """True iff `signature` over `message` was produced by `address`."""
        if not isinstance(message, str):
            return False
        try:
            claimed = to_canonical_address(normalize_address(address))
        except ValueError:
            return False

        recovered = self.recover(message, signature)
        if recovered is None:
            return False

        return hmac.compare_digest(to_canonical_address(recovered), claimed)


def sign_message(message: str, private_key: str | bytes) -> str:
    """Sign a message the way a wallet's personal_sign does. 0x-prefixed hex."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    sig = signed.signature.hex()
    return sig if sig.startswith("0x") else "0x" + sig


def generate_account() -> tuple[str, str]:
    """Create a throwaway wallet. Returns (address, private_key_hex)."""
    acct = Account.create()
    key = acct.key.hex()
    return acct.address, key if key.startswith("0x") else "0x" + key
