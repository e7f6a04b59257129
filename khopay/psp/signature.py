"""
Signature codec shared by the gateway adapters.

Every provider signs a canonical string built from its parameters with a
keyed HMAC. Providers differ only in how that string is assembled, which a
SignatureScheme captures.
"""
from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple


@dataclass(frozen=True)
class SignatureScheme:
    """
    Canonicalization rules for one provider message type.

    Attributes:
        digest: hashlib constructor used for the HMAC
        delimiter: separator placed between rendered fields
        pairs: render "key=value" (True) or bare values (False)
        fields: explicit field order; None sorts keys byte-wise ascending
        quote: optional value encoder (VNPay url-encodes values)
    """
    digest: Callable = hashlib.sha256
    delimiter: str = "&"
    pairs: bool = True
    fields: Optional[Tuple[str, ...]] = None
    quote: Optional[Callable[[str], str]] = None

    @classmethod
    def ordered(cls, fields: Sequence[str], digest: Callable = hashlib.sha256, delimiter: str = "|"):
        """Value-only scheme over a provider-mandated field order."""
        return cls(digest=digest, delimiter=delimiter, pairs=False, fields=tuple(fields))


def _render(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def canonicalize(params: Mapping[str, Any], scheme: SignatureScheme) -> str:
    if scheme.fields is not None:
        keys = list(scheme.fields)
    else:
        keys = sorted(params, key=lambda k: k.encode("utf-8"))

    parts = []
    for key in keys:
        value = _render(params.get(key))
        if scheme.quote is not None:
            value = scheme.quote(value)
        parts.append(f"{key}={value}" if scheme.pairs else value)
    return scheme.delimiter.join(parts)


def sign(params: Mapping[str, Any], secret: str, scheme: SignatureScheme) -> str:
    """Return the lowercase hex HMAC of the canonical form of params."""
    message = canonicalize(params, scheme)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), scheme.digest).hexdigest()


def verify(params: Mapping[str, Any], signature: Optional[str], secret: str, scheme: SignatureScheme) -> bool:
    """
    Recompute the signature and compare in constant time.
    Malformed input yields False, never an exception.
    """
    if not signature or not isinstance(signature, str) or not secret:
        return False
    try:
        expected = sign(params, secret, scheme)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
    except (AttributeError, TypeError, ValueError, UnicodeError):
        return False
