# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Selection of the Docker engine to talk to.

An engine given explicitly by host and port is used through the remote
provider. Otherwise the local provider reads DOCKER_HOST like the docker
client does, and falls back to tcp://127.0.0.1:2375.
"""
import logging
import os
import ssl
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import httpx
from dotenv import dotenv_values

from ..ENGINE.engine_client import EngineClient
from ..ENGINE.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = "tcp://127.0.0.1:2375"
DEFAULT_DOCKER_PORT = 2375
DEFAULT_TLS_PORT = 2376


@dataclass
class TlsSettings:
    """Client certificates for an engine protected by TLS."""

    cert_path: str
    verify: bool = True

    def ssl_context(self) -> ssl.SSLContext:
        ca = os.path.join(self.cert_path, "ca.pem")
        if self.verify and os.path.exists(ca):
            context = ssl.create_default_context(cafile=ca)
        else:
            context = ssl.create_default_context()
        if not self.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        cert = os.path.join(self.cert_path, "cert.pem")
        key = os.path.join(self.cert_path, "key.pem")
        if os.path.exists(cert) and os.path.exists(key):
            context.load_cert_chain(cert, key)
        return context


class RemoteProvider:
    """Engine reached over TCP at an explicitly configured host and port."""

    name = "remote"

    def __init__(self, host: str, port: int = DEFAULT_DOCKER_PORT, tls: Optional[TlsSettings] = None):
        self.host = host
        self.port = port
        self.tls = tls

    @property
    def base_url(self) -> str:
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def create_client(self, **client_kwargs) -> EngineClient:
        if self.tls:
            client_kwargs.setdefault("verify", self.tls.ssl_context())
        return EngineClient(base_url=self.base_url, host=self.host, **client_kwargs)

    def __repr__(self) -> str:
        return f"RemoteProvider({self.base_url})"


class LocalProvider:
    """
    Engine reached through a DOCKER_HOST style URL, e.g. 'tcp://host:port'
    or 'unix:///var/run/docker.sock'.
    """

    name = "local"

    def __init__(self, docker_host: str = DEFAULT_DOCKER_HOST, tls: Optional[TlsSettings] = None):
        self.docker_host = docker_host
        self.tls = tls
        parts = urlsplit(docker_host)
        self.scheme = parts.scheme
        if parts.scheme == "unix":
            self.socket_path = parts.path
            if not self.socket_path:
                raise ConfigurationError(f"No socket path in DOCKER_HOST {docker_host}")
            self.host = "localhost"
            self.port = None
        elif parts.scheme in ("tcp", "http", "https"):
            if not parts.hostname:
                raise ConfigurationError(f"No host in DOCKER_HOST {docker_host}")
            self.socket_path = None
            self.host = parts.hostname
            try:
                self.port = parts.port or (DEFAULT_TLS_PORT if self._secure else DEFAULT_DOCKER_PORT)
            except ValueError as e:
                raise ConfigurationError(f"Invalid port in DOCKER_HOST {docker_host}", e)
        else:
            raise ConfigurationError(f"Unsupported DOCKER_HOST scheme '{parts.scheme}' in {docker_host}")

    @property
    def _secure(self) -> bool:
        return self.tls is not None or self.scheme == "https"

    @property
    def base_url(self) -> str:
        if self.socket_path:
            return "http://localhost"
        scheme = "https" if self._secure else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def create_client(self, **client_kwargs) -> EngineClient:
        if self.socket_path:
            client_kwargs.setdefault("transport", httpx.HTTPTransport(uds=self.socket_path))
        elif self.tls:
            client_kwargs.setdefault("verify", self.tls.ssl_context())
        return EngineClient(base_url=self.base_url, host=self.host, **client_kwargs)

    def __repr__(self) -> str:
        return f"LocalProvider({self.docker_host})"


class ProviderSelector:
    """
    Picks the engine provider from explicit options, the environment, or the default.
    """
    def __init__(self, environ: Optional[Mapping[str, str]] = None, env_file: Optional[str] = ".env"):
        """
        Initializes the selector.

        :param environ: Environment to read DOCKER_* variables from. Defaults to
            the process environment, with values from ``env_file`` filling gaps.
        :param env_file: A .env file to read, if it exists.
        """
        if environ is None:
            environ = self._load_environment(env_file)
        self.environ = environ

    @staticmethod
    def _load_environment(env_file: Optional[str]) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        if env_file and os.path.exists(env_file):
            merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        merged.update(os.environ)
        return merged

    def _tls(self) -> Optional[TlsSettings]:
        if self.environ.get("DOCKER_TLS_VERIFY", "") in ("", "0"):
            return None
        cert_path = self.environ.get("DOCKER_CERT_PATH") or os.path.join(os.path.expanduser("~"), ".docker")
        return TlsSettings(cert_path=cert_path)

    def select(self, docker_host: Optional[str] = None, docker_port: Optional[int] = None):
        """
        Chooses the provider.

        :param docker_host: Explicit engine host name.
        :param docker_port: Explicit engine port.
        :return: A RemoteProvider or LocalProvider.
        """
        tls = self._tls()
        if docker_host:
            provider = RemoteProvider(
                docker_host,
                docker_port or (DEFAULT_TLS_PORT if tls else DEFAULT_DOCKER_PORT),
                tls=tls,
            )
        else:
            if docker_port:
                logger.warning("dockerPort is ignored without dockerHost")
            provider = LocalProvider(self.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST, tls=tls)
        logger.info(f"Using {provider}")
        return provider

    def create_client(
        self, docker_host: Optional[str] = None, docker_port: Optional[int] = None, **client_kwargs: Any
    ) -> EngineClient:
        """
        Returns a client for the selected engine.

        :param client_kwargs: Extra arguments for EngineClient, e.g. registry_auth.
        """
        if self.environ.get("DOCKER_API_VERSION"):
            client_kwargs.setdefault("api_version", self.environ["DOCKER_API_VERSION"])
        return self.select(docker_host, docker_port).create_client(**client_kwargs)
