# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("Token", "TokenManager", "TokenStore")

import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from .address import TOKEN_ENDPOINT
from .errors import DecodeError, TokenNotSet

if TYPE_CHECKING:
    from .transport import ReplicaTransport

log = logging.getLogger(__name__)


class Token:
    """Authentication token delivered by a replica server.

    Instances are immutable.

    Parameters
    ----------
    token : `str`, optional
        Value of the token, sent to the server in the 'X-Auth-Token' header.
    expires : `int`, optional
        Expiration time, in seconds since the epoch.
    """

    def __init__(self, token: str = "", expires: int = 0) -> None:
        self._token: str = token
        self._expires: int = expires

    @staticmethod
    def from_json(body: bytes) -> Token:
        """Decode a token from the body of a response of the token
        endpoint, of the form ``{"auth_token": "...", "expires": 1234}``.

        Raises
        ------
        DecodeError
            If `body` is not a JSON object of the expected shape.
        """
        try:
            decoded: Any = json.loads(body)
        except ValueError as e:
            raise DecodeError(f"can not decode token: {e}") from e

        if not isinstance(decoded, dict):
            raise DecodeError(f"can not decode token from {body!r}")

        token = decoded.get("auth_token", "")
        expires = decoded.get("expires", 0)
        if not isinstance(token, str) or type(expires) is not int:
            raise DecodeError(f"unexpected token fields in {body!r}")

        return Token(token=token, expires=expires)

    def __str__(self) -> str:
        return self._token

    def __repr__(self) -> str:
        return f"Token(token='[...]', expires={self._expires})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Token):
            return (self._token, self._expires) == (other._token, other._expires)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self._token, self._expires))

    @property
    def token(self) -> str:
        return self._token

    @property
    def expires(self) -> int:
        return self._expires

    def valid(self) -> bool:
        """Return True if this token has not expired yet."""
        return time.time() < self._expires


class TokenStore:
    """Thread-safe holder of the single token of a client.

    The token is never modified in place: it can only be read or replaced
    by a new one.

    Parameters
    ----------
    token : `Token`, optional
        Initial token. An empty token by default.
    """

    def __init__(self, token: Token | None = None) -> None:
        self._lock = threading.Lock()
        self._token: Token = Token() if token is None else token

    def get(self) -> Token:
        """Return the current token."""
        with self._lock:
            return self._token

    def replace(self, token: Token) -> Token:
        """Make `token` the current token and return it."""
        with self._lock:
            self._token = token
        return token


class TokenManager:
    """Acquire and refresh the token of a client.

    Parameters
    ----------
    transport : `ReplicaTransport`
        Transport used to talk to the token endpoint.
    store : `TokenStore`
        Where the token is cached. Only this class replaces it.
    """

    def __init__(self, transport: ReplicaTransport, store: TokenStore) -> None:
        self._transport: ReplicaTransport = transport
        self._store: TokenStore = store

    def acquire(self, user: str, password: str) -> Token:
        """Request a new token with credentials `user` and `password`.

        Returns
        -------
        token : `Token`
            The new token, which is also cached for subsequent requests.

        Notes
        -----
        If the request fails the previously cached token, if any, is kept.
        """
        log.debug("requesting token for user %s", user)
        return self._fetch({"X-Auth-User": user, "X-Auth-Password": password})

    def current(self) -> Token:
        """Return a valid token.

        The cached token is returned as is while it has not expired.
        Otherwise it is exchanged for a fresh one.

        Raises
        ------
        TokenNotSet
            If no token was ever assigned to the client.
        """
        cached = self._store.get()
        if not cached.token:
            raise TokenNotSet("token not set")

        if cached.valid():
            return cached

        log.debug("cached token expired at %d, refreshing it", cached.expires)
        return self._fetch({"X-Auth-Token": cached.token})

    def _fetch(self, headers: dict[str, str]) -> Token:
        resp = self._transport.request("GET", TOKEN_ENDPOINT, headers=headers)
        body = self._transport.read_body(resp)
        return self._store.replace(Token.from_json(body))
