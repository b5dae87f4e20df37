# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "BodyReadError",
    "DecodeError",
    "HTTPError",
    "InvalidAddress",
    "ReplicaError",
    "TokenNotSet",
    "TransportError",
    "check_response",
    "new_http_error",
)

import json
import logging

from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.response import BaseHTTPResponse

log = logging.getLogger(__name__)


class ReplicaError(Exception):
    """Base class of all the errors raised by the replica client."""


class InvalidAddress(ReplicaError, ValueError):
    """The address of the replica server or of a resource is malformed."""


class TransportError(ReplicaError, ConnectionError):
    """The request could not be sent or its response could not be
    received.
    """


class DecodeError(ReplicaError, ValueError):
    """A response body expected to be JSON could not be decoded."""


class TokenNotSet(ReplicaError):
    """No authentication token is available."""


class BodyReadError(ReplicaError, OSError):
    """The body of an error response could not be read."""


class HTTPError(ReplicaError):
    """Failure reported by the server with a status code of at least 400.

    Parameters
    ----------
    code : `int`
        HTTP status code of the response.
    message : `str`
        Error message, as reported by the server.
    """

    def __init__(self, code: int, message: str) -> None:
        super().__init__(code, message)
        self.code: int = code
        self.message: str = message

    def __str__(self) -> str:
        return f"http error: Code: {self.code} Message: {self.message}"

    def __repr__(self) -> str:
        return f"HTTPError(code={self.code!r}, message={self.message!r})"


def new_http_error(code: int, body: bytes) -> HTTPError:
    """Build the error for a response of status `code` and body `body`.

    Parameters
    ----------
    code : `int`
        Actual HTTP status code of the response.
    body : `bytes`
        Raw response body.

    Returns
    -------
    error : `HTTPError`
        If `body` is a JSON object of the form
        ``{"error_code": int, "error_message": str}`` whose code is `code`,
        the error carries that message. Otherwise the message is the raw
        body with its newline characters removed.
    """
    text = body.decode("utf-8", errors="replace")
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None

    if (
        isinstance(decoded, dict)
        and type(decoded.get("error_code")) is int
        and isinstance(decoded.get("error_message", ""), str)
        and decoded["error_code"] == code
    ):
        return HTTPError(code, decoded.get("error_message", ""))

    return HTTPError(code, text.replace("\n", ""))


def check_response(resp: BaseHTTPResponse) -> None:
    """Raise if `resp` reports a failure.

    Parameters
    ----------
    resp : `urllib3.response.BaseHTTPResponse`
        Response, which body has not been consumed yet.

    Raises
    ------
    HTTPError
        If the status of `resp` is 400 or more. The body of the response is
        consumed and its connection released.
    BodyReadError
        If the body of an error response could not be read.
    """
    if resp.status < 400:
        return

    try:
        body = resp.read()
    except (OSError, Urllib3HTTPError) as e:
        raise BodyReadError(f"could not read body of response with status {resp.status}: {e}") from e
    finally:
        resp.release_conn()

    log.debug("response status %d, body length %d", resp.status, len(body))
    raise new_http_error(resp.status, body)
