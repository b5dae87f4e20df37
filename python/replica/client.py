# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("DirectoryResource", "FileResource", "ReplicaClient", "Resource", "replica_globals")

import logging
import threading
from collections.abc import Iterator, Mapping
from types import TracebackType
from typing import BinaryIO

from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.response import BaseHTTPResponse

from .address import normalize_address, redact_url
from .config import ReplicaConfig, ReplicaConfigPool
from .errors import TransportError
from .fileinfo import (
    DIRECTORY_CONTENT_TYPE,
    REMOVE_META_PREFIX,
    FileInfo,
    decode_listing,
    metadata_headers,
    open_file,
    sort_files,
)
from .token import Token, TokenManager, TokenStore
from .transport import ReplicaTransport

log = logging.getLogger(__name__)

# Environment variable which value is the path to the configuration file of
# the replica servers.
CONFIG_ENV_VAR: str = "REPLICA_CLIENT_CONFIG"


class ReplicaGlobals:
    """Helper container for the global objects shared by all clients."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._config_pool: ReplicaConfigPool | None = None

    def config_pool(self) -> ReplicaConfigPool:
        """Return the configuration of all known replica servers, loading
        it the first time.
        """
        if self._config_pool is not None:
            return self._config_pool

        with self._lock:
            if self._config_pool is None:
                self._config_pool = ReplicaConfigPool(CONFIG_ENV_VAR)

        return self._config_pool

    def _reset(self) -> None:
        """Forget the loaded configuration.

        This method is a helper for reinitializing globals in tests.
        """
        with self._lock:
            if self._config_pool is not None:
                self._config_pool._destroy()
            self._config_pool = None


# Convenience object to encapsulate all global objects needed by this module.
replica_globals: ReplicaGlobals = ReplicaGlobals()


class FileResource:
    """Contents of a remote file, streamed from the server.

    The connection used to download the contents is held until this
    resource is closed, so it must be closed on every path, preferably by
    using it as a context manager.

    Parameters
    ----------
    info : `FileInfo`
        Description of the file.
    response : `urllib3.response.BaseHTTPResponse`
        Response to the GET request, which body has not been read.
    """

    def __init__(self, info: FileInfo, response: BaseHTTPResponse) -> None:
        self._info: FileInfo = info
        self._response: BaseHTTPResponse = response
        self._closed: bool = False

        # Whether the whole body was read.
        self._eof: bool = False

    @property
    def info(self) -> FileInfo:
        return self._info

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int = -1) -> bytes:
        """Read at most `size` bytes, or all the remaining bytes if `size`
        is negative.
        """
        if self._closed:
            raise ValueError("I/O operation on closed file resource")

        try:
            data = self._response.read(None if size < 0 else size)
        except Urllib3HTTPError as e:
            raise TransportError(f"could not read {self._info.path}: {e}") from e

        if size < 0 or len(data) < size:
            self._eof = True
        return data

    def stream(self, chunk_size: int = 65536) -> Iterator[bytes]:
        """Iterate over the remaining contents, by chunks of at most
        `chunk_size` bytes.
        """
        while chunk := self.read(chunk_size):
            yield chunk

    def close(self) -> None:
        """Release the connection of this resource.

        If the contents were not entirely read, the connection is closed
        rather than drained, so the rest of the file is not downloaded.
        """
        if self._closed:
            return

        self._closed = True
        try:
            if self._eof:
                self._response.drain_conn()
            else:
                self._response.close()
        finally:
            self._response.release_conn()

    def __enter__(self) -> FileResource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


class DirectoryResource:
    """Listing of a remote directory.

    Parameters
    ----------
    info : `FileInfo`
        Description of the directory.
    files : `list` [ `FileInfo` ]
        Entries of the directory, in the order sent by the server.
    """

    def __init__(self, info: FileInfo, files: list[FileInfo]) -> None:
        self._info: FileInfo = info
        self._files: list[FileInfo] = files

    @property
    def info(self) -> FileInfo:
        return self._info

    @property
    def files(self) -> list[FileInfo]:
        return self._files

    def __iter__(self) -> Iterator[FileInfo]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def __enter__(self) -> DirectoryResource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        return None


Resource = FileResource | DirectoryResource


class ReplicaClient:
    """Client of a replica server.

    Instances of this class are thread-safe: a single client may be used to
    send concurrent requests. Each method sends exactly one request and
    failures are never retried.

    Parameters
    ----------
    address : `str`, optional
        Address of the server, e.g. 'replica.example.org',
        'https://replica.example.org:8808'. Defaults to the local host.
    config : `ReplicaConfig`, optional
        Settings to use. If None, the settings found for this server in the
        file named by the environment variable ``REPLICA_CLIENT_CONFIG`` are
        used, or default settings if there are none.

    Raises
    ------
    InvalidAddress
        If `address` is malformed.
    """

    def __init__(self, address: str = "", config: ReplicaConfig | None = None) -> None:
        self._address: str = normalize_address(address)
        if config is None:
            config = replica_globals.config_pool().get_config_for_address(self._address)

        self._config: ReplicaConfig = config
        self._store: TokenStore = TokenStore(Token(config.preset_token()))
        self._transport: ReplicaTransport = ReplicaTransport(self._address, config, self._store)
        self._tokens: TokenManager = TokenManager(self._transport, self._store)
        log.debug("created replica client for %s [%d]", redact_url(self._address), id(self))

    def __str__(self) -> str:
        return redact_url(self._address)

    def __enter__(self) -> ReplicaClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def address(self) -> str:
        """Normalized address of the server."""
        return self._address

    @property
    def config(self) -> ReplicaConfig:
        return self._config

    def close(self) -> None:
        """Close the connections to the server. The client remains usable."""
        self._transport.close()

    def get_token(self, user: str, password: str) -> Token:
        """Authenticate with `user` and `password` and return the token
        delivered by the server. That token is attached to all subsequent
        requests.
        """
        return self._tokens.acquire(user, password)

    def token(self) -> Token:
        """Return the current token, refreshed if it has expired.

        Raises
        ------
        TokenNotSet
            If no token was configured nor acquired.
        """
        return self._tokens.current()

    def get_info(self, name: str) -> FileInfo:
        """Return the description of resource `name`."""
        log.debug("get_info %s", name)
        resp = self._transport.request("HEAD", name)
        self._transport.discard(resp)
        return FileInfo.from_headers(resp.headers)

    def get(self, name: str) -> Resource:
        """Get resource `name`.

        Returns
        -------
        resource : `FileResource` or `DirectoryResource`
            If `name` is a directory, its listing. Otherwise the stream of
            the file contents, which must be closed by the caller.
        """
        log.debug("get %s", name)
        resp = self._transport.request("GET", name)
        info = FileInfo.from_headers(resp.headers)
        if info.is_dir:
            return DirectoryResource(info, decode_listing(self._transport.read_body(resp)))

        return FileResource(info, resp)

    def read(self, name: str) -> bytes:
        """Return the whole contents of file `name`.

        Raises
        ------
        IsADirectoryError
            If `name` is a directory.
        """
        resource = self.get(name)
        if isinstance(resource, DirectoryResource):
            raise IsADirectoryError(f"{name} is a directory")

        with resource:
            return resource.read()

    def list_dir(self, name: str) -> list[FileInfo]:
        """Return the entries of directory `name`, directories first.

        Raises
        ------
        NotADirectoryError
            If `name` is a file.
        """
        resource = self.get(name)
        if isinstance(resource, FileResource):
            resource.close()
            raise NotADirectoryError(f"{name} is not a directory")

        return sort_files(resource.files)

    def create_file(self, name: str, info: FileInfo, data: BinaryIO | bytes | None) -> None:
        """Create or replace resource `name`.

        Parameters
        ----------
        name : `str`
            Path of the resource to create.
        info : `FileInfo`
            Size, content type, replica count and metadata of the resource.
            A replica count of zero lets the server choose.
        data : `BinaryIO` or `bytes`, optional
            Contents of the resource, of exactly ``info.size`` bytes.
        """
        log.debug("create_file %s", name)
        headers: dict[str, str | bytes] = {
            "Content-Type": info.content_type,
            "Content-Length": str(info.size),
        }
        if info.replica_count > 0:
            headers["X-Replica-Count"] = str(info.replica_count)
        headers.update(metadata_headers(info.metadata))

        resp = self._transport.request("PUT", name, headers=headers, body=data)
        self._transport.discard(resp)

    def create_dir(
        self, name: str, replica_count: int = 0, metadata: Mapping[str, str] | None = None
    ) -> None:
        """Create directory `name`."""
        info = FileInfo(content_type=DIRECTORY_CONTENT_TYPE, replica_count=replica_count, metadata=metadata)
        self.create_file(name, info, None)

    def upload(
        self,
        local_path: str,
        name: str,
        metadata: Mapping[str, str] | None = None,
        replica_count: int = 0,
    ) -> FileInfo:
        """Upload local file `local_path` as resource `name`.

        Returns
        -------
        info : `FileInfo`
            Description of the uploaded file, as sent to the server.
        """
        local_info, file = open_file(local_path, metadata)
        with file:
            info = FileInfo(
                path=name,
                size=local_info.size,
                content_type=local_info.content_type,
                replica_count=replica_count,
                metadata=local_info.metadata,
            )
            self.create_file(name, info, file)

        return info

    def remove(self, name: str) -> None:
        """Remove resource `name`."""
        log.debug("remove %s", name)
        self._transport.discard(self._transport.request("DELETE", name))

    def remove_all(self, name: str) -> None:
        """Remove resource `name` and, if it is a directory, all of its
        contents.
        """
        log.debug("remove_all %s", name)
        resp = self._transport.request("DELETE", name, headers={"X-Remove-All": "x"})
        self._transport.discard(resp)

    def exists(self, name: str) -> None:
        """Check that resource `name` exists.

        Raises
        ------
        HTTPError
            If the resource does not exist (the code is then 404) or can not
            be accessed.
        """
        self._transport.discard(self._transport.request("OPTIONS", name))

    def update(
        self,
        name: str,
        metadata: Mapping[str, str] | None = None,
        remove_metadata: Mapping[str, str] | None = None,
    ) -> None:
        """Set the metadata in `metadata` and remove the metadata which keys
        are in `remove_metadata` from resource `name`.
        """
        log.debug("update %s", name)
        headers = metadata_headers(metadata)
        headers.update(metadata_headers(remove_metadata, prefix=REMOVE_META_PREFIX))
        self._transport.discard(self._transport.request("POST", name, headers=headers))
