# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("ReplicaConfig", "ReplicaConfigPool", "expand_vars", "is_protected")

import logging
import os
import stat
import threading
from typing import Any

import yaml

from .address import normalize_address

log = logging.getLogger(__name__)


class ReplicaConfig:
    """Configurable settings a replica client must use when interacting
    with a particular server.

    Parameters
    ----------
    config : `dict` [ `str`, `Any` ], optional
        Settings for the server at address `config["base_url"]`. Any missing
        setting takes its default value.
    """

    # If True, the certificate presented by a server over secure HTTP is
    # not verified. Only meant for servers using self-signed certificates.
    DEFAULT_INSECURE_TLS: bool = False

    # Token to present to the server before any token is acquired. The
    # value may be the token itself or the path to a file which contains it.
    # That file must only be accessible by its owner.
    DEFAULT_TOKEN: str | None = None

    # Timeout in seconds to establish a network connection with the server.
    DEFAULT_TIMEOUT_CONNECT: float = 10.0

    # Timeout in seconds to read the response to a request. It must be
    # large enough to allow for upload and download of typical files.
    DEFAULT_TIMEOUT_READ: float = 300.0

    # Maximum number of network connections to persist against the server.
    # Additional connections needed by concurrent requests are created and
    # discarded after use.
    DEFAULT_PERSISTENT_CONNECTIONS_PER_HOST: int = 20

    # Size of the buffer (in mebibytes) used when sending requests and
    # receiving responses.
    DEFAULT_BUFFER_SIZE: int = 1

    # Path to a directory or bundle file of trusted certificate authorities.
    # If None, the certificates trusted by the system are used.
    DEFAULT_TRUSTED_AUTHORITIES: str | None = None

    # Value of the 'User-Agent' header of every request.
    DEFAULT_USER_AGENT: str = "Replica Client v0.1"

    # If True, memory usage is reported along with the duration of each
    # request when logging in debug mode. This is costly.
    DEFAULT_COLLECT_MEMORY_USAGE: bool = False

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        if config is None:
            config = {}

        if (base_url := expand_vars(config.get("base_url"))) is None:
            self._base_url = "_default_"
        else:
            self._base_url = normalize_address(base_url)

        self._insecure_tls: bool = bool(config.get("insecure_tls", ReplicaConfig.DEFAULT_INSECURE_TLS))
        self._token: str | None = config.get("token", ReplicaConfig.DEFAULT_TOKEN)
        self._timeout_connect: float = float(
            config.get("timeout_connect", ReplicaConfig.DEFAULT_TIMEOUT_CONNECT)
        )
        self._timeout_read: float = float(config.get("timeout_read", ReplicaConfig.DEFAULT_TIMEOUT_READ))
        self._persistent_connections_per_host: int = int(
            config.get(
                "persistent_connections_per_host",
                ReplicaConfig.DEFAULT_PERSISTENT_CONNECTIONS_PER_HOST,
            )
        )
        self._buffer_size: int = 1_048_576 * int(config.get("buffer_size", ReplicaConfig.DEFAULT_BUFFER_SIZE))
        self._trusted_authorities: str | None = expand_vars(
            config.get("trusted_authorities", ReplicaConfig.DEFAULT_TRUSTED_AUTHORITIES)
        )
        self._user_agent: str = str(config.get("user_agent", ReplicaConfig.DEFAULT_USER_AGENT))
        self._collect_memory_usage: bool = bool(
            config.get("collect_memory_usage", ReplicaConfig.DEFAULT_COLLECT_MEMORY_USAGE)
        )

        if self._timeout_connect <= 0 or self._timeout_read <= 0:
            raise ValueError(f"timeouts for server {self._base_url} must be positive")

        if self._persistent_connections_per_host < 1:
            raise ValueError(
                f"""Value {self._persistent_connections_per_host} for persistent_connections_per_host """
                f"""of server {self._base_url} must be at least 1"""
            )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def insecure_tls(self) -> bool:
        return self._insecure_tls

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def timeout_connect(self) -> float:
        return self._timeout_connect

    @property
    def timeout_read(self) -> float:
        return self._timeout_read

    @property
    def persistent_connections_per_host(self) -> int:
        return self._persistent_connections_per_host

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def trusted_authorities(self) -> str | None:
        return self._trusted_authorities

    @property
    def user_agent(self) -> str:
        return self._user_agent

    @property
    def collect_memory_usage(self) -> bool:
        return self._collect_memory_usage

    def preset_token(self) -> str:
        """Return the token configured for the server, or an empty string.

        If the configured token, once its environment variables and user
        home directory are expanded, is the path of a file, the token is read
        from that file. Otherwise the configured value is returned verbatim.

        Raises
        ------
        PermissionError
            If the token file can be accessed by other users than its owner.
        """
        if self._token is None:
            return ""

        if not os.path.isfile(path := expand_vars(self._token)):
            return self._token

        path = os.path.abspath(path)
        if not is_protected(path):
            raise PermissionError(
                f"""Authorization token file at {path} must be protected for access only """
                """by its owner"""
            )

        log.debug("Reading authorization token from file %s", path)
        with open(path) as f:
            return f.read().rstrip("\n")


class ReplicaConfigPool:
    """Registry of configurable settings for all known replica servers.

    Parameters
    ----------
    filename : `str`, optional
        Name of an environment variable which value is the path to the
        configuration file. That path may include environment variables
        (e.g. '$HOME/path/to/config.yaml') or '~'.

        The configuration file is a YAML file with the structure below:

          - base_url: "https://replica1.example.org:7881"
            insecure_tls: false
            token: "/path/to/token/file"
            timeout_connect: 20.0
            timeout_read: 120.0
            persistent_connections_per_host: 10
            buffer_size: 1
            trusted_authorities: "/etc/grid-security/certificates"
            user_agent: "My Replica Client"
            collect_memory_usage: false

          - base_url: "replica2.example.org"
            ...

        All settings are optional. Servers not found in the file use the
        default settings.

    Notes
    -----
    There is a single instance of this class. This thread-safe singleton is
    initialized the first time a client is created.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls, filename: str | None = None) -> ReplicaConfigPool:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)

        return cls._instance

    def __init__(self, filename: str | None = None) -> None:
        # Configuration used for servers not found in the file.
        self._default_config: ReplicaConfig = ReplicaConfig()

        # The key of this dictionary is the normalized address of a server,
        # e.g. "https://replica.example.org:7881/json"
        self._configs: dict[str, ReplicaConfig] = {}

        if filename is None:
            return

        if (filename := os.getenv(filename)) is None:
            return

        filename = os.path.expanduser(os.path.expandvars(filename))
        log.debug("loading replica client configuration from %s", filename)
        with open(filename) as file:
            for config_item in yaml.safe_load(file) or []:
                config = ReplicaConfig(config_item)
                if config.base_url in self._configs:
                    raise ValueError(
                        f"""configuration file {filename} contains two configurations for """
                        f"""server {config.base_url}"""
                    )
                self._configs[config.base_url] = config

    def get_config_for_address(self, address: str) -> ReplicaConfig:
        """Return the configuration to use when interacting with the server
        at `address`.

        Parameters
        ----------
        address : `str`
            Address of the server, normalized or not.
        """
        if (config := self._configs.get(normalize_address(address))) is not None:
            return config

        return self._default_config

    def _destroy(self) -> None:
        """Destroy this class singleton instance.

        Helper method to be used in tests to reset global configuration.
        """
        with ReplicaConfigPool._lock:
            ReplicaConfigPool._instance = None


def is_protected(filepath: str) -> bool:
    """Return true if the permissions of file at filepath only allow for
    access by its owner.

    Parameters
    ----------
    filepath : `str`
        Path of a local file.
    """
    if not os.path.isfile(filepath):
        return False

    mode = stat.S_IMODE(os.stat(filepath).st_mode)
    owner_accessible = bool(mode & stat.S_IRWXU)
    group_accessible = bool(mode & stat.S_IRWXG)
    other_accessible = bool(mode & stat.S_IRWXO)
    return owner_accessible and not group_accessible and not other_accessible


def expand_vars(value: str | None) -> str | None:
    """Expand the environment variables and the user home directory in
    `value`.

    Parameters
    ----------
    value : `str` or `None`
        Setting which may include an environment variable
        (e.g. '$HOME/path/to/my/file').
    """
    return None if value is None else os.path.expanduser(os.path.expandvars(value))
