"""
Certificate Content Hashing

Handles deterministic serialization and keccak-256 hashing of certificate
versions. Same input → same cert_hash. Always.

The cert_hash is the external handle of a certificate: it is computed before
submission, stored by the ledger and printed on rendered documents. Changing
the rules below invalidates every hash ever issued, so any change must be
versioned through SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: omitted entirely
4. Empty strings, lists, dicts: preserved
5. Datetimes: must be timezone-aware; ISO 8601 with microseconds, UTC, Z suffix
6. Enums: string value
7. Floats: BANNED (credential values are scaled integers)
8. Decimals: string
9. JSON output: no extra whitespace, sorted keys, ASCII only
10. Top-level: must be a dict
11. Addresses: lowercased before hashing so checksum casing never changes a hash
"""

import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from eth_utils import keccak


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and keccak-256 hashing.

    If you need to change serialization rules, you MUST version them.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        # Floats are the #1 long-term determinism hazard
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Use a scaled integer or Decimal instead."
            )

        if isinstance(value, Decimal):
            return str(value)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ"""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert data to canonical JSON string.

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
            )

        canonical_dict = {
            "__canon_v": cls.SERIALIZATION_VERSION,
            **cls._to_canonical_dict(data),
        }
        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """
        Hash data using keccak-256.

        Returns:
            0x-prefixed lowercase hex digest (66 characters)
        """
        canonical = cls.canonicalize(data)
        return "0x" + keccak(text=canonical).hex().removeprefix("0x")

    @classmethod
    def certificate_payload(
        cls,
        subject_id: str,
        version: int,
        attributes: dict[str, Any] | Any,
        issuer_address: str,
        issuance_time: datetime,
    ) -> dict[str, Any]:
        """The exact dict whose canonical form identifies a certificate version."""
        if hasattr(attributes, "model_dump"):
            attributes = attributes.model_dump(mode="python")
        return {
            "subject_id": subject_id,
            "version": version,
            "attributes": attributes,
            "issuer_address": issuer_address.lower(),
            "issuance_time": issuance_time,
        }

    @classmethod
    def certificate_hash(
        cls,
        subject_id: str,
        version: int,
        attributes: dict[str, Any] | Any,
        issuer_address: str,
        issuance_time: datetime,
    ) -> str:
        """Compute the cert_hash of one certificate version."""
        return cls.hash_data(
            cls.certificate_payload(
                subject_id, version, attributes, issuer_address, issuance_time
            )
        )

    @classmethod
    def verify_certificate_hash(
        cls,
        expected_hash: str,
        subject_id: str,
        version: int,
        attributes: dict[str, Any] | Any,
        issuer_address: str,
        issuance_time: datetime,
    ) -> bool:
        """Recompute a certificate's hash and compare it to the stored one."""
        try:
            computed = cls.certificate_hash(
                subject_id, version, attributes, issuer_address, issuance_time
            )
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed.encode("utf-8"), expected_hash.lower().encode("utf-8"))


def normalize_hash(value: str) -> str:
    """Lowercase a cert_hash and ensure the 0x prefix."""
    value = value.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return value


def is_cert_hash(value: str) -> bool:
    """True when value looks like a 0x-prefixed 32-byte hex digest."""
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return len(value) == 64 and all(c in "0123456789abcdef" for c in value)
