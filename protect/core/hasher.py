"""
Canonical Codec

Deterministic serialization and SHA-256 content hashing for every payload
written to the ledger. Same logical input → same bytes → same hash.

Hashes already on the ledger are recomputed from this encoding, so any
change to it must be backward-compatible or bump SERIALIZATION_VERSION.

Encoding:
- Objects only at the top level; "__canon_v" is added to every encoding
- Keys sorted by codepoint at every depth; non-string keys are rejected
- None omitted from objects (explicit null == absent field); kept in lists
- Empty strings, lists and objects preserved
- datetime: UTC, YYYY-MM-DDTHH:MM:SS.ffffffZ; naive datetimes rejected
- date: YYYY-MM-DD
- UUID: lowercase string; Enum: its value
- int: any size; Decimal: fixed-point string, trailing zeros dropped
- float, bytes, set: rejected
- Output: compact separators, ASCII only

Signed sub-objects are hashed without their signature fields
(strip_signatures), so a hash commits to content, not to its own attestation.
"""

import hashlib
import hmac
import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from .errors import ProtectError


class CanonicalSerializationError(ProtectError):
    """Value has no deterministic encoding."""
    code = "ENCODING"


# Keys that carry an attestation over the rest of the object
SIGNATURE_FIELDS = frozenset({"sig", "signature", "signatures"})

_HEX_DIGEST = re.compile(r"[0-9a-f]{64}")


def _as_object(data: Any, action: str) -> dict[str, Any]:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="python")
    if not isinstance(data, dict):
        raise CanonicalSerializationError(
            f"Cannot {action} {type(data).__name__}; payloads must be objects."
        )
    return data


def _reject(reason: str) -> Callable[[Any, str], Any]:
    def fail(value: Any, path: str) -> Any:
        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path or '<root>'}: {reason}"
        )
    return fail


class Hasher:
    """Canonical serialization and hashing. Unknown types fail loudly."""

    SERIALIZATION_VERSION = 1

    @classmethod
    def _encode_datetime(cls, dt: datetime, path: str) -> str:
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path or '<root>'} is timezone-naive; "
                "only aware datetimes have one canonical form."
            )
        utc = dt.astimezone(timezone.utc)
        return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond:06d}Z"

    @classmethod
    def _encode_decimal(cls, value: Decimal, path: str) -> str:
        if not value.is_finite():
            raise CanonicalSerializationError(f"Non-finite Decimal at {path or '<root>'}")
        # normalize() alone would give exponent form ("1E+2"); "f" keeps it fixed-point
        return "0" if value == 0 else format(value.normalize(), "f")

    @classmethod
    def _encoders(cls) -> list[tuple[type | tuple[type, ...], Callable[[Any, str], Any]]]:
        # Order matters: datetime before date, Enum before its str/int mixin,
        # bool before float (bool is an int, never a float)
        return [
            (UUID, lambda v, p: str(v).lower()),
            (datetime, cls._encode_datetime),
            (date, lambda v, p: v.isoformat()),
            (Enum, lambda v, p: v.value),
            ((bool, int, str), lambda v, p: v),
            (float, _reject("floats are platform-dependent; use int micros or Decimal")),
            (Decimal, cls._encode_decimal),
            ((list, tuple), lambda v, p: [cls._encode(x, f"{p}[{i}]") for i, x in enumerate(v)]),
            (dict, cls._encode_object),
            (bytes, _reject("encode bytes as base64 text first")),
            ((set, frozenset), _reject("sets have no order; pass a sorted list")),
        ]

    @classmethod
    def _encode(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None
        for types, encode in cls._encoders():
            if isinstance(value, types):
                return encode(value, path)
        if hasattr(value, "model_dump"):
            return cls._encode_object(value.model_dump(mode="python"), path)
        return _reject("only JSON-compatible types are allowed")(value, path)

    @classmethod
    def _encode_object(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        bad_keys = [k for k in data if not isinstance(k, str)]
        if bad_keys:
            raise CanonicalSerializationError(
                f"Object keys at {path or '<root>'} must be strings, "
                f"got {type(bad_keys[0]).__name__}"
            )
        encoded = {}
        for key in sorted(data):
            value = cls._encode(data[key], f"{path}.{key}" if path else key)
            if value is not None:
                encoded[key] = value
        return encoded

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Canonical JSON text of an object, including the "__canon_v" marker.

        Raises:
            CanonicalSerializationError
        """
        body = {
            "__canon_v": cls.SERIALIZATION_VERSION,
            **cls._encode_object(_as_object(data, "canonicalize")),
        }
        return json.dumps(
            body,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def normalize(cls, data: dict[str, Any] | Any) -> dict[str, Any]:
        """
        Canonical form as a plain object, without the version marker.

        JSON-safe, and hashing it again yields the same digest as hashing
        the original, so it is what gets embedded in ledger payloads.
        """
        return cls._encode_object(_as_object(data, "normalize"))

    @classmethod
    def canonical_bytes(cls, data: dict[str, Any] | Any) -> bytes:
        return cls.canonicalize(data).encode("utf-8")

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """Lowercase hex SHA-256."""
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        return cls.hash_bytes(cls.canonical_bytes(data))

    @staticmethod
    def strip_signatures(data: dict[str, Any] | Any) -> dict[str, Any]:
        """
        Copy of a signed object without its signature-bearing fields.

        Top level only: each signed sub-object is stripped on its own by
        the caller.
        """
        return {
            k: v for k, v in _as_object(data, "strip signatures from").items()
            if k not in SIGNATURE_FIELDS
        }

    @classmethod
    def hash_event(cls, payload: dict[str, Any], previous_hash: str | None = None) -> str:
        """
        Chained entry hash.

        - First entry: SHA256(canonical_payload)
        - Later entries: SHA256(previous_hash + ":" + canonical_payload)
        """
        canonical = cls.canonicalize(payload)
        if previous_hash is None:
            return cls.hash_bytes(canonical.encode("utf-8"))

        link = previous_hash.lower()
        if not _HEX_DIGEST.fullmatch(link):
            raise CanonicalSerializationError(
                f"previous_hash must be 64 hex characters, got {previous_hash!r}"
            )
        return cls.hash_bytes(f"{link}:{canonical}".encode("utf-8"))

    @classmethod
    def verify_chain(
        cls,
        payload: dict[str, Any],
        expected_hash: str,
        previous_hash: str | None = None,
    ) -> bool:
        """True if `payload` chained onto `previous_hash` yields `expected_hash`."""
        try:
            computed = cls.hash_event(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
