# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("ReplicaTransport", "make_retry")

import logging
import os
import threading
from typing import BinaryIO

from astropy import units as u
from urllib3 import PoolManager
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import LocationParseError
from urllib3.response import BaseHTTPResponse
from urllib3.util import Retry, Timeout

from lsst.utils.timer import time_this

from .address import join_url, redact_url
from .config import ReplicaConfig
from .errors import InvalidAddress, TransportError, check_response
from .token import TokenStore

log = logging.getLogger(__name__)

# Maximum number of redirections followed for a single request.
MAX_REDIRECTS: int = 10


def make_retry() -> Retry:
    """Create the ``urllib3.util.Retry`` object used by all requests.

    Failed requests are never retried: a failure is reported to the caller
    right away. Redirections are followed.
    """
    return Retry(
        total=None,
        connect=0,
        read=0,
        status=0,
        other=0,
        redirect=MAX_REDIRECTS,
        raise_on_redirect=True,
        raise_on_status=False,
    )


class ReplicaTransport:
    """Build and send the requests to a replica server.

    Instances of this class are thread-safe.

    Parameters
    ----------
    address : `str`
        Normalized address of the server, e.g.
        "https://replica.example.org:7881/json".
    config : `ReplicaConfig`
        Configuration for the server.
    store : `TokenStore`
        Holder of the token attached to every request.
    """

    def __init__(self, address: str, config: ReplicaConfig, store: TokenStore) -> None:
        self._address: str = address
        self._config: ReplicaConfig = config
        self._store: TokenStore = store

        # Lock to protect the lazy initialization of the pool manager.
        self._lock = threading.Lock()

        # Pool manager for sending requests. It is created the first time
        # a request is sent and reused for all subsequent requests.
        self._pool_manager: PoolManager | None = None

    @property
    def address(self) -> str:
        return self._address

    @property
    def config(self) -> ReplicaConfig:
        return self._config

    def _make_pool_manager(self) -> PoolManager:
        """Make the pool manager to send requests with, according to the
        configuration of this transport.
        """
        ca_certs, ca_cert_dir = None, None
        if self._config.insecure_tls:
            cert_reqs = "CERT_NONE"
        else:
            cert_reqs = "CERT_REQUIRED"
            if (trusted_authorities := self._config.trusted_authorities) is not None:
                if os.path.isdir(trusted_authorities):
                    ca_cert_dir = trusted_authorities
                elif os.path.isfile(trusted_authorities):
                    ca_certs = trusted_authorities
                else:
                    raise FileNotFoundError(
                        f"Trusted authorities file or directory {trusted_authorities} does not exist"
                    )

        return PoolManager(
            # Number of connections to the server to persist for later reuse.
            maxsize=self._config.persistent_connections_per_host,
            retries=make_retry(),
            timeout=Timeout(
                connect=self._config.timeout_connect,
                read=self._config.timeout_read,
            ),
            blocksize=self._config.buffer_size,
            # Only relevant for servers using secure HTTP.
            cert_reqs=cert_reqs,
            ca_cert_dir=ca_cert_dir,
            ca_certs=ca_certs,
        )

    @property
    def pool_manager(self) -> PoolManager:
        """Return the pool manager of this transport, creating it if
        needed.
        """
        if self._pool_manager is not None:
            return self._pool_manager

        with self._lock:
            if self._pool_manager is None:
                self._pool_manager = self._make_pool_manager()

        return self._pool_manager

    def request(
        self,
        method: str,
        name: str,
        headers: dict[str, str | bytes] | None = None,
        body: BinaryIO | bytes | None = None,
    ) -> BaseHTTPResponse:
        """Send a request for resource `name` and return the response.

        Parameters
        ----------
        method : `str`
            Request method, e.g. 'GET', 'PUT', 'OPTIONS'.
        name : `str`
            Path of the target resource or 'token' for the token endpoint.
        headers : `dict` [ `str`, `str` or `bytes` ], optional
            Headers to send with the request.
        body : `BinaryIO` or `bytes`, optional
            Request body.

        Returns
        -------
        resp : `urllib3.response.BaseHTTPResponse`
            Successful response, which body has not been read. The caller
            must release it with `read_body` or `discard`.

        Raises
        ------
        TransportError
            If the request could not be sent or no response was received.
        HTTPError
            If the server responded with a status of 400 or more.
        BodyReadError
            If the body of an error response could not be read.
        """
        url = join_url(self._address, name)
        request_headers: dict[str, str | bytes] = {"User-Agent": self._config.user_agent}
        if headers is not None:
            request_headers.update(headers)

        # The current token is attached as is. Refreshing it is the job of
        # the token manager, which itself sends requests through here.
        if token := self._store.get().token:
            request_headers["X-Auth-Token"] = token

        log.debug("sending request %s %s", method, redact_url(url))
        try:
            with time_this(
                log,
                msg="%s %s",
                args=(method, redact_url(url)),
                mem_usage=self._config.collect_memory_usage,
                mem_unit=u.mebibyte,
            ):
                resp = self.pool_manager.request(
                    method,
                    url,
                    body=body,
                    headers=request_headers,
                    preload_content=False,
                )
        except LocationParseError as e:
            raise InvalidAddress(f"invalid URL {redact_url(url)}: {e}") from e
        except Urllib3HTTPError as e:
            raise TransportError(f"{method} {redact_url(url)} failed: {e}") from e

        check_response(resp)
        return resp

    def read_body(self, resp: BaseHTTPResponse) -> bytes:
        """Read the whole body of `resp` and release its connection."""
        try:
            return resp.read()
        except Urllib3HTTPError as e:
            raise TransportError(f"could not read response body: {e}") from e
        finally:
            resp.release_conn()

    def discard(self, resp: BaseHTTPResponse) -> None:
        """Drain the body of `resp`, which is not needed, and release its
        connection.
        """
        try:
            resp.drain_conn()
        finally:
            resp.release_conn()

    def close(self) -> None:
        """Close all the connections to the server."""
        with self._lock:
            if self._pool_manager is not None:
                self._pool_manager.clear()
                self._pool_manager = None
