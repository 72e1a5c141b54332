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
Docker engine client.
Implements the parts of the Docker Engine remote API needed to build images
and run containers for a build.
"""

import base64
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type, Union

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from ..MODELS.build_config import ContainerStartSpec
from ..MODELS.engine_objects import InspectResult
from .errors import (
    BadRequestError,
    BuildFailedError,
    ConflictError,
    DockitError,
    EngineError,
    ImageNotFoundError,
    InUseError,
    NotFoundError,
    ProtocolError,
    TransportError,
)
from .log_stream import LogStream

logger = logging.getLogger(__name__)

BUILD_SUCCESS = re.compile(r"Successfully built ([0-9a-f]+)")


def _flag(value: bool) -> str:
    return "1" if value else "0"


def split_image_name(name: str) -> Tuple[str, str]:
    """
    Split an image name into repository and tag.

    Examples:
        - postgres -> ('postgres', 'latest')
        - localhost:5000/app:it -> ('localhost:5000/app', 'it')
        - app@sha256:abc -> ('app@sha256:abc', '')
    """
    if "@" in name:
        return name, ""
    last_colon = name.rfind(":")
    if last_colon != -1 and "/" not in name[last_colon + 1:]:
        return name[:last_colon], name[last_colon + 1:]
    return name, "latest"


def build_create_payload(
    spec: ContainerStartSpec, image: Optional[str] = None, links: Sequence[str] = ()
) -> Dict[str, Any]:
    """
    Translate a container start configuration into a create request body.

    :param spec: The container configuration.
    :param image: Engine-side image reference; defaults to ``spec.image``.
    :param links: Links already resolved to 'peerName:alias'.
    :return: JSON body for ``POST /containers/create``.
    """
    port_bindings: Dict[str, List[Dict[str, str]]] = {}
    for port in spec.ports:
        host_port = "" if port.public_port is None else str(port.public_port)
        port_bindings.setdefault(port.key, []).append({"HostPort": host_port})

    payload: Dict[str, Any] = {
        "Image": image or spec.image,
        "Env": [f"{key}={value}" for key, value in spec.env.items()],
        "ExposedPorts": {key: {} for key in port_bindings},
        "HostConfig": {
            "Links": list(links),
            "PortBindings": port_bindings,
            "PublishAllPorts": spec.publish_all_ports,
            "Privileged": spec.privileged,
        },
    }
    if spec.hostname:
        payload["Hostname"] = spec.hostname
    return payload


class EngineClient:
    """
    Client for the Docker Engine remote API, over TCP or a unix socket.

    Idempotent calls (GET and DELETE) are retried on transport failures;
    calls that may already have had an effect on the engine are not.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:2375",
        host: str = "127.0.0.1",
        transport: Optional[httpx.BaseTransport] = None,
        api_version: Optional[str] = None,
        timeout: float = 60.0,
        verify: Any = True,
        registry_auth: Optional[Dict[str, str]] = None,
        retry_backoff: Sequence[float] = (1.0, 2.0),
    ):
        """
        Initialize the engine client.

        Args:
            base_url: Base URL of the engine, e.g. 'http://10.0.0.5:2375'.
            host: Host name under which published container ports are reachable.
            transport: httpx transport to use, e.g. one bound to a unix socket.
            api_version: Engine API version to pin, e.g. '1.41'.
            timeout: Timeout in seconds for non-streaming requests.
            verify: TLS verification setting or ssl.SSLContext for https engines.
            registry_auth: Single registry credentials blob (username, password,
                serveraddress) used for pulls and builds.
            retry_backoff: Waits between attempts of idempotent requests.
        """
        self.base_url = base_url
        self.host = host
        self._prefix = f"/v{api_version.lstrip('v')}" if api_version else ""
        self._timeout = timeout
        self._registry_auth = registry_auth
        self._retry_backoff = tuple(retry_backoff)
        self._client = httpx.Client(
            base_url=base_url, transport=transport, timeout=timeout, verify=verify
        )

    # -- plumbing -----------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._prefix}{path}"

    def _retrying(self) -> Retrying:
        if self._retry_backoff:
            wait = wait_chain(*[wait_fixed(seconds) for seconds in self._retry_backoff])
        else:
            wait = wait_none()
        return Retrying(
            stop=stop_after_attempt(len(self._retry_backoff) + 1),
            wait=wait,
            retry=retry_if_exception_type(TransportError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _idempotent(self, fn: Callable, *args, **kwargs):
        return self._retrying()(fn, *args, **kwargs)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        text = response.text.strip()
        return text or f"HTTP {response.status_code} {response.reason_phrase}"

    def _raise_for_status(
        self,
        response: httpx.Response,
        not_found: Type[DockitError] = NotFoundError,
        conflict: Type[DockitError] = ConflictError,
    ) -> None:
        status = response.status_code
        if status < 400:
            return
        message = self._error_message(response)
        if status == 404:
            raise not_found(message)
        if status == 409:
            raise conflict(message)
        if status == 400:
            raise BadRequestError(message)
        raise EngineError(message, status_code=status)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Union[float, httpx.Timeout, None] = None,
        not_found: Type[DockitError] = NotFoundError,
        conflict: Type[DockitError] = ConflictError,
    ) -> httpx.Response:
        logger.debug(f"{method} {path} {params or ''}")
        try:
            response = self._client.request(
                method,
                self._url(path),
                params=params,
                json=json_body,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path} failed", e)
        self._raise_for_status(response, not_found=not_found, conflict=conflict)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Malformed response to {response.request.url.path}", e)

    def _open_stream(self, method: str, path: str, **kwargs) -> httpx.Response:
        request = self._client.build_request(method, self._url(path), **kwargs)
        try:
            response = self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path} failed", e)
        if response.status_code >= 400:
            try:
                response.read()
            finally:
                response.close()
            self._raise_for_status(response)
        return response

    def _consume_progress(self, response: httpx.Response, failure: Type[DockitError]) -> List[Dict]:
        """
        Read a newline-delimited JSON progress stream to the end.

        :raises failure: If a record carries an error payload.
        :raises ProtocolError: If a record is not a JSON object.
        """
        records = []
        try:
            for line in response.iter_lines():
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except ValueError as e:
                    raise ProtocolError(f"Malformed progress record: {line!r}", e)
                if not isinstance(record, dict):
                    raise ProtocolError(f"Unexpected progress record: {line!r}")
                if record.get("error") or record.get("errorDetail"):
                    detail = record.get("errorDetail") or {}
                    raise failure(str(record.get("error") or detail.get("message")))
                if record.get("stream"):
                    logger.debug(record["stream"].rstrip())
                elif record.get("status"):
                    logger.debug(record["status"])
                records.append(record)
        except httpx.TransportError as e:
            raise TransportError("Progress stream broke", e)
        finally:
            response.close()
        return records

    def _auth_header(self, name: str) -> Dict[str, str]:
        if not self._registry_auth:
            return {}
        if name == "X-Registry-Config":
            auth = dict(self._registry_auth)
            server = auth.pop("serveraddress", "https://index.docker.io/v1/")
            blob = {server: auth}
        else:
            blob = self._registry_auth
        encoded = base64.urlsafe_b64encode(json.dumps(blob).encode()).decode()
        return {name: encoded}

    # -- images -------------------------------------------------------------

    def build_image(self, context_archive: bytes, name_and_tag: Optional[str] = None) -> str:
        """
        Build an image from a tar archive of the build context.

        Args:
            context_archive: Uncompressed tar with a Dockerfile at its root.
            name_and_tag: Optional 'name:tag' to tag the image with.

        Returns:
            The engine-assigned image id.
        """
        params = {"rm": "1", "forcerm": "1"}
        if name_and_tag:
            params["t"] = name_and_tag
        headers = {"Content-Type": "application/x-tar"}
        headers.update(self._auth_header("X-Registry-Config"))
        response = self._open_stream(
            "POST",
            "/build",
            params=params,
            content=context_archive,
            headers=headers,
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        image_id = None
        for record in self._consume_progress(response, BuildFailedError):
            aux = record.get("aux")
            if isinstance(aux, dict) and aux.get("ID"):
                image_id = aux["ID"]
                continue
            match = BUILD_SUCCESS.search(record.get("stream") or "")
            if match and image_id is None:
                image_id = match.group(1)
        if not image_id:
            raise ProtocolError("Build stream ended without an image id")
        logger.info(f"Built image {image_id}" + (f" as {name_and_tag}" if name_and_tag else ""))
        return image_id

    def image_exists(self, name: str) -> bool:
        """Whether an image with this name or id is present on the engine."""
        try:
            self._idempotent(self._request, "GET", f"/images/{name}/json")
        except NotFoundError:
            return False
        return True

    def pull_image(self, name: str) -> None:
        """
        Pull an image from its registry.

        :param name: Image name, e.g. 'postgres:16'.
        """
        repository, tag = split_image_name(name)
        params = {"fromImage": repository}
        if tag:
            params["tag"] = tag
        logger.info(f"Pulling image {name}")
        response = self._open_stream(
            "POST",
            "/images/create",
            params=params,
            headers=self._auth_header("X-Registry-Auth"),
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        self._consume_progress(response, EngineError)

    def remove_image(self, image_id: str, force: bool = False) -> None:
        """
        Remove an image.

        Raises:
            NotFoundError: The image does not exist.
            InUseError: A container still uses the image.
        """
        self._idempotent(
            self._request,
            "DELETE",
            f"/images/{image_id}",
            params={"force": _flag(force)},
            conflict=InUseError,
        )
        logger.debug(f"Removed image {image_id}")

    # -- containers ---------------------------------------------------------

    def create_container(
        self, spec: ContainerStartSpec, image: Optional[str] = None, links: Sequence[str] = ()
    ) -> str:
        """
        Create a container.

        Args:
            spec: The container configuration.
            image: Engine-side image reference, defaults to ``spec.image``.
            links: Links resolved to 'peerName:alias'.

        Returns:
            The engine-assigned container id.
        """
        payload = build_create_payload(spec, image, links)
        response = self._request(
            "POST", "/containers/create", json_body=payload, not_found=ImageNotFoundError
        )
        body = self._json(response)
        if not isinstance(body, dict) or not body.get("Id"):
            raise ProtocolError("Create response carries no container id")
        for warning in body.get("Warnings") or []:
            logger.warning(f"Engine warning for {spec.start_id}: {warning}")
        return body["Id"]

    def start_container(self, container_id: str) -> None:
        """Start a container. Starting a running container is a no-op."""
        response = self._request("POST", f"/containers/{container_id}/start")
        if response.status_code == 304:
            logger.debug(f"Container {container_id} was already running")

    def stop_container(self, container_id: str, timeout_sec: int = 10) -> None:
        """
        Stop a container, killing it after ``timeout_sec`` seconds.

        Raises:
            NotFoundError: The container does not exist.
        """
        self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": str(timeout_sec)},
            timeout=self._timeout + timeout_sec,
        )

    def remove_container(self, container_id: str, force: bool = True, remove_volumes: bool = True) -> None:
        """Remove a container, together with its anonymous volumes by default."""
        self._idempotent(
            self._request,
            "DELETE",
            f"/containers/{container_id}",
            params={"force": _flag(force), "v": _flag(remove_volumes)},
        )

    def inspect_container(self, container_id: str) -> InspectResult:
        """Return state and port bindings of a container."""
        response = self._idempotent(self._request, "GET", f"/containers/{container_id}/json")
        body = self._json(response)
        try:
            return InspectResult.from_json(body)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed inspection of container {container_id}", e)

    def stream_logs(self, container_id: str, follow: bool = True) -> LogStream:
        """
        Open the combined stdout/stderr log of a container, from its start.

        The caller must close the returned stream.
        """
        response = self._idempotent(
            self._open_stream,
            "GET",
            f"/containers/{container_id}/logs",
            params={"stdout": "1", "stderr": "1", "follow": _flag(follow)},
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        return LogStream(response, container_id)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "EngineClient":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self) -> str:
        return f"EngineClient({self.base_url})"
