"""HMAC request signing for the Tixr REST API.

Every request carries ``cpk`` (public key), ``t`` (epoch milliseconds) and a
``hash`` parameter: the hex HMAC-SHA256 of ``{signing_path}?{sorted_query}``
keyed by the group secret.  Values are encoded with the same rules as
JavaScript's ``encodeURIComponent`` because that is what the server expects.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

__all__ = [
    "DEFAULT_SIGNING_PREFIX",
    "Endpoint",
    "SignedQuery",
    "RequestSigner",
    "build_signed_query",
    "encode_component",
]

DEFAULT_SIGNING_PREFIX = "/v1"

# encodeURIComponent leaves A-Z a-z 0-9 - _ . ! ~ * ' ( ) untouched.
_UNRESERVED = "-_.!~*'()"


def encode_component(value: Any) -> str:
    """Percent-encode ``value`` like ``encodeURIComponent``."""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif value is None:
        text = "null"
    else:
        text = str(value)
    return quote(text, safe=_UNRESERVED)


@dataclass(frozen=True)
class Endpoint:
    """An API path plus the prefix the server expects in the signed string."""

    path: str
    signing_prefix: str = DEFAULT_SIGNING_PREFIX

    @property
    def signing_path(self) -> str:
        prefix = (self.signing_prefix or "").rstrip("/")
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{prefix}{path}"


@dataclass(frozen=True)
class SignedQuery:
    query: str
    signature: str

    def url(self, base_url: str, signing_path: str) -> str:
        return f"{base_url.rstrip('/')}{signing_path}?{self.query}&hash={self.signature}"


def build_signed_query(path: str, params: Mapping[str, Any], secret: str) -> SignedQuery:
    """Sort ``params`` by key, encode them and sign ``{path}?{query}``.

    Pure and deterministic: identical inputs always produce identical output,
    and the query string is exactly the one that was signed.
    """
    query = "&".join(f"{key}={encode_component(params[key])}" for key in sorted(params))
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{path}?{query}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return SignedQuery(query=query, signature=digest)


class RequestSigner:
    """Builds signed query strings for one client instance.

    Signatures are memoized by ``(signing_path, t)`` when no extra parameters
    are involved; the cache belongs to this object and never outlives it.
    """

    def __init__(
        self,
        cpk: str,
        secret: str,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cpk = cpk
        self._secret = secret
        self._clock = clock or time.time
        self._cache: Dict[Tuple[str, int], SignedQuery] = {}

    def timestamp(self) -> int:
        return int(self._clock() * 1000)

    def sign(
        self,
        endpoint: Endpoint,
        params: Optional[Mapping[str, Any]] = None,
        *,
        t: Optional[int] = None,
    ) -> SignedQuery:
        stamp = self.timestamp() if t is None else t
        signing_path = endpoint.signing_path
        if not params:
            key = (signing_path, stamp)
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            signed = build_signed_query(signing_path, {"cpk": self.cpk, "t": stamp}, self._secret)
            self._cache[key] = signed
            return signed

        merged: Dict[str, Any] = dict(params)
        merged.update({"cpk": self.cpk, "t": stamp})
        return build_signed_query(signing_path, merged, self._secret)

    def clear(self) -> None:
        self._cache.clear()
