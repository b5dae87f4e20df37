# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "DIRECTORY_CONTENT_TYPE",
    "META_PREFIX",
    "REMOVE_META_PREFIX",
    "SNIFF_LENGTH",
    "ZERO_TIME",
    "FileInfo",
    "canonical_key",
    "decode_header_value",
    "decode_listing",
    "detect_content_type",
    "header_key",
    "metadata_headers",
    "open_file",
    "sort_files",
)

import json
import logging
import mimetypes
import os
import posixpath
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, BinaryIO

import magic
from urllib3 import HTTPHeaderDict

from .errors import DecodeError

log = logging.getLogger(__name__)

# Prefix of the headers carrying the metadata of a resource.
META_PREFIX: str = "X-Meta-"

# Prefix of the headers naming the metadata to remove from a resource.
REMOVE_META_PREFIX: str = "X-Remove-Meta-"

# Content type of a directory, when creating it.
DIRECTORY_CONTENT_TYPE: str = "application/x-directory"

# Format of the 'Last-Modified' header, e.g. 'Wed, 12 Mar 2025 10:11:13 GMT'.
HTTP_TIME_FORMAT: str = "%a, %d %b %Y %H:%M:%S GMT"

# Modification time of a resource which modification time is unknown.
ZERO_TIME: datetime = datetime.min.replace(tzinfo=UTC)

# Number of bytes inspected to guess the content type of a file.
SNIFF_LENGTH: int = 512

# Fractional seconds beyond microseconds, as emitted by some servers.
_nanoseconds_rex = re.compile(r"(\.\d{6})\d+")


def header_key(key: str) -> str:
    """Return `key` with its first letter uppercased, if it is an ASCII
    letter. The rest of the key is left untouched.
    """
    if key and key[0].isascii():
        return key[0].upper() + key[1:]
    return key


def canonical_key(key: str) -> str:
    """Return `key` in the canonical form of a MIME header name, e.g.
    'content-type' becomes 'Content-Type'.

    Keys containing spaces or non ASCII characters are returned unchanged.
    """
    if not key.isascii() or " " in key:
        return key

    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def metadata_headers(metadata: Mapping[str, str] | None, prefix: str = META_PREFIX) -> dict[str, bytes]:
    """Encode `metadata` as request headers.

    Parameters
    ----------
    metadata : `Mapping` [ `str`, `str` ], optional
        Metadata of a resource, e.g. ``{"color": "blue"}``.
    prefix : `str`, optional
        Prefix of the generated header names. Use `REMOVE_META_PREFIX` to
        encode the metadata to remove.

    Returns
    -------
    headers : `dict` [ `str`, `bytes` ]
        One header per key, e.g. ``{"X-Meta-Color": b"blue"}``, values encoded
        in UTF-8.
    """
    if not metadata:
        return {}

    return {prefix + header_key(key): value.encode("utf-8") for key, value in metadata.items()}


def decode_header_value(value: str) -> str:
    """Return the text of header `value`, received as latin-1 text, which
    bytes are the UTF-8 encoding sent by the server.

    Values with characters outside of latin-1 are already decoded and
    returned unchanged.
    """
    try:
        raw = value.encode("latin-1")
    except UnicodeEncodeError:
        return value

    return raw.decode("utf-8", errors="replace")


def _base_name(path: str) -> str:
    if not path:
        return ""

    stripped = path.rstrip("/")
    return posixpath.basename(stripped) if stripped else "/"


def _parse_int(value: str | None) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


def _parse_http_time(value: str | None) -> datetime:
    if not value:
        return ZERO_TIME
    try:
        return datetime.strptime(value, HTTP_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return ZERO_TIME


def _parse_json_time(value: Any) -> datetime:
    if not isinstance(value, str) or not value:
        return ZERO_TIME
    try:
        result = datetime.fromisoformat(_nanoseconds_rex.sub(r"\1", value))
    except ValueError:
        return ZERO_TIME
    return result if result.tzinfo is not None else result.replace(tzinfo=UTC)


class FileInfo:
    """Description of a file or directory stored in a replica server.

    Parameters
    ----------
    path : `str`, optional
        Path of the resource in the server.
    owner : `str`, optional
        Owner of the resource.
    is_dir : `bool`, optional
        Whether the resource is a directory.
    size : `int`, optional
        Size of the resource, in bytes.
    mod_time : `datetime`, optional
        Last modification time.
    content_type : `str`, optional
        Content type sent to the server when creating the resource.
    replica_count : `int`, optional
        Number of replicas to request when creating the resource. Zero
        lets the server use its default.
    metadata : `Mapping` [ `str`, `str` ], optional
        Metadata of the resource.
    name : `str`, optional
        Display name. Defaults to the last component of `path`.
    """

    def __init__(
        self,
        path: str = "",
        owner: str = "",
        is_dir: bool = False,
        size: int = 0,
        mod_time: datetime = ZERO_TIME,
        content_type: str = "",
        replica_count: int = 0,
        metadata: Mapping[str, str] | None = None,
        name: str | None = None,
    ) -> None:
        self._path: str = path
        self._name: str = _base_name(path) if name is None else name
        self._owner: str = owner
        self._is_dir: bool = is_dir
        self._size: int = size
        self._mod_time: datetime = mod_time
        self._content_type: str = content_type
        self._replica_count: int = replica_count
        self._metadata: dict[str, str] = {} if metadata is None else dict(metadata)

    @staticmethod
    def from_headers(headers: Mapping[str, str]) -> FileInfo:
        """Decode the description of a resource from the headers of the
        response to a HEAD or GET request.

        Headers which values can not be parsed leave the corresponding
        attribute to its zero value.
        """
        if not isinstance(headers, HTTPHeaderDict):
            headers = HTTPHeaderDict(headers)

        metadata: dict[str, str] = {}
        for header in headers.keys():
            if len(header) <= len(META_PREFIX) or not header.lower().startswith(META_PREFIX.lower()):
                continue
            metadata[canonical_key(header[len(META_PREFIX) :])] = " ".join(
                decode_header_value(value) for value in headers.getlist(header)
            )

        return FileInfo(
            path=decode_header_value(headers.get("X-Path", "")),
            owner=decode_header_value(headers.get("X-Owner", "")),
            is_dir=headers.get("X-Type", "") == "dir",
            size=_parse_int(headers.get("X-Length")),
            mod_time=_parse_http_time(headers.get("Last-Modified")),
            content_type=headers.get("Content-Type", ""),
            replica_count=_parse_int(headers.get("X-Replica-Count")),
            metadata=metadata,
        )

    @staticmethod
    def from_json(obj: Any) -> FileInfo:
        """Decode an item of a directory listing.

        Raises
        ------
        DecodeError
            If `obj` is not a JSON object or a field has an unexpected type.
        """
        if not isinstance(obj, dict):
            raise DecodeError(f"expecting a JSON object for a directory entry, got {obj!r}")

        expected: dict[str, type | tuple[type, ...]] = {
            "name": str,
            "path": str,
            "owner": str,
            "is_dir": bool,
            "size": int,
            "mod_time": (str, type(None)),
        }
        for field, kind in expected.items():
            if field in obj and not isinstance(obj[field], kind):
                raise DecodeError(f"unexpected value for field {field!r} of directory entry: {obj[field]!r}")

        path = obj.get("path", "")
        return FileInfo(
            path=path,
            name=obj.get("name") or _base_name(path),
            owner=obj.get("owner", ""),
            is_dir=obj.get("is_dir", False),
            size=obj.get("size", 0),
            mod_time=_parse_json_time(obj.get("mod_time")),
        )

    def to_json(self) -> dict[str, Any]:
        """Encode this description as an item of a directory listing.

        Empty fields are omitted. Content type, replica count and metadata
        are never included.
        """
        result: dict[str, Any] = {}
        if self._name:
            result["name"] = self._name
        if self._path:
            result["path"] = self._path
        if self._owner:
            result["owner"] = self._owner
        if self._is_dir:
            result["is_dir"] = True
        if self._size:
            result["size"] = self._size
        result["mod_time"] = self._mod_time.astimezone(UTC).isoformat().replace("+00:00", "Z")
        return result

    def __str__(self) -> str:
        kind = "dir" if self._is_dir else "file"
        return f"{self._path} {kind} {self._size} {self._owner} {self._mod_time.isoformat()}"

    def __repr__(self) -> str:
        return f"FileInfo(path={self._path!r}, is_dir={self._is_dir!r}, size={self._size!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FileInfo):
            return vars(self) == vars(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> str:
        return self._path

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def is_dir(self) -> bool:
        return self._is_dir

    @property
    def size(self) -> int:
        return self._size

    @property
    def mod_time(self) -> datetime:
        return self._mod_time

    @property
    def content_type(self) -> str:
        return self._content_type

    @property
    def replica_count(self) -> int:
        return self._replica_count

    @property
    def metadata(self) -> dict[str, str]:
        return self._metadata


def decode_listing(body: bytes) -> list[FileInfo]:
    """Decode the body of the response to a GET request on a directory,
    a JSON array of directory entries.

    Raises
    ------
    DecodeError
        If `body` is not a JSON array of directory entries.
    """
    try:
        decoded = json.loads(body)
    except ValueError as e:
        raise DecodeError(f"can not decode directory listing: {e}") from e

    # The server encodes an empty directory as 'null'.
    if decoded is None:
        return []

    if not isinstance(decoded, list):
        raise DecodeError(f"expecting a JSON array for directory listing, got {type(decoded).__name__}")

    return [FileInfo.from_json(item) for item in decoded]


def sort_files(files: Iterable[FileInfo]) -> list[FileInfo]:
    """Return `files` sorted with directories first, each kind in
    ascending order of name.
    """
    return sorted(files, key=lambda f: (not f.is_dir, f.name))


def detect_content_type(data: bytes) -> str:
    """Guess the content type of `data`, the first bytes of a file.

    Returns
    -------
    content_type : `str`
        A MIME type as reported by libmagic, e.g. 'image/png',
        'application/octet-stream' if nothing better could be determined.
    """
    return magic.from_buffer(data[:SNIFF_LENGTH], mime=True) or "application/octet-stream"


def open_file(path: str, metadata: Mapping[str, str] | None = None) -> tuple[FileInfo, BinaryIO]:
    """Open local file `path` for upload.

    Parameters
    ----------
    path : `str`
        Path of a local file.
    metadata : `Mapping` [ `str`, `str` ], optional
        Metadata to attach to the uploaded resource.

    Returns
    -------
    info : `FileInfo`
        Size and content type of the file, along with `metadata`. The
        content type is guessed from the file extension, or from the first
        bytes of its contents when the extension is not known.
    file : `BinaryIO`
        The file, open for reading and positioned at its start. The caller
        is responsible for closing it.
    """
    size = os.stat(path).st_size
    content_type, _ = mimetypes.guess_type(path)
    file = open(path, "rb")
    if content_type is None:
        try:
            content_type = detect_content_type(file.read(SNIFF_LENGTH))
            file.seek(0, os.SEEK_SET)
        except (OSError, magic.MagicException):
            file.close()
            raise

    log.debug("opened %s for upload: size=%d content_type=%s", path, size, content_type)
    return FileInfo(path=path, size=size, content_type=content_type, metadata=metadata), file
