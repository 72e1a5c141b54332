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
Orchestration of the build phases: building images, starting containers,
exposing their endpoints, and cleaning everything up again.
"""
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..BUILDERS.context_archive import ContextArchiveBuilder
from ..ENGINE.engine_client import EngineClient
from ..ENGINE.errors import (
    ConflictError,
    DockitError,
    ImageNotFoundError,
    LinkUnresolvedError,
    NotFoundError,
    ProtocolError,
    StartupFailedError,
)
from ..MODELS.build_config import ContainerStartSpec, ImageBuildSpec
from ..MODELS.engine_objects import (
    BuiltImage,
    BuiltImageInfo,
    ExposedEndpoint,
    InspectResult,
    RunningContainer,
)
from .readiness_probe import ReadinessProbe
from .resource_ledger import ResourceLedger

logger = logging.getLogger(__name__)


def compute_endpoints(inspect: InspectResult, host: str) -> List[ExposedEndpoint]:
    """
    Lists the published ports of a container.

    :param inspect: Inspection of the container.
    :param host: Host the engine publishes ports on.
    :return: One endpoint per published port, using its first host binding.
    :raises ProtocolError: If a host port is not a number.
    """
    endpoints = []
    for private_port, bindings in inspect.ports.items():
        if not bindings or not bindings[0].host_port:
            # Exposed by the image but not published
            continue
        try:
            host_port = int(bindings[0].host_port)
        except ValueError as e:
            raise ProtocolError(f"Invalid host port for {private_port}: {bindings[0].host_port!r}", e)
        endpoints.append(ExposedEndpoint(private_port=private_port, host=host, host_port=host_port))
    return endpoints


class ContainerOrchestrator:
    """
    Runs the phases of one build against the engine and records everything it
    creates in the ledger, so that the cleanup phases can remove it again.
    """
    STOP_TIMEOUT = 10

    def __init__(
        self,
        client: EngineClient,
        ledger: Optional[ResourceLedger] = None,
        probe: Optional[ReadinessProbe] = None,
        archive_builder: Optional[ContextArchiveBuilder] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the orchestrator.

        :param client: Client of the engine to run against.
        :param ledger: Record of the resources of this build.
        :param probe: Readiness probe for containers that wait for a log line.
        :param archive_builder: Packs dockerFile directories into build contexts.
        :param clock: Clock startup deadlines are computed on.
        """
        self.client = client
        self.ledger = ledger if ledger is not None else ResourceLedger()
        self.clock = clock
        self.probe = probe or ReadinessProbe(client, clock=clock)
        self.archive_builder = archive_builder or ContextArchiveBuilder()

    # -- build-images -------------------------------------------------------

    def build_images(self, specs: Sequence[ImageBuildSpec]) -> List[BuiltImageInfo]:
        """
        Builds the images in declaration order.
        Images built before a failure stay in the ledger for remove_images.

        :param specs: Images to build.
        :return: Info about each built image.
        """
        built = []
        for spec in specs:
            logger.info(f"Building image {spec.start_id}...")
            if spec.name_and_tag and self.client.image_exists(spec.name_and_tag):
                raise ConflictError(
                    f"Image {spec.name_and_tag} already exists on the engine, refusing to retag it for {spec.start_id}"
                )
            archive = spec.context_archive
            if archive is None:
                archive = self.archive_builder.build(spec.docker_file)
            image_id = self.client.build_image(archive, spec.name_and_tag)
            image = BuiltImage(start_id=spec.start_id, image_id=image_id, keep=spec.keep)
            self.ledger.add_image(image)
            built.append(image.info())
        return built

    # -- start-containers ---------------------------------------------------

    def start_containers(self, specs: Sequence[ContainerStartSpec]) -> List[RunningContainer]:
        """
        Starts the containers in declaration order, waiting for each one to be
        ready before the next starts.

        :param specs: Containers to start.
        :return: The started containers.
        :raises LinkUnresolvedError: Before any engine call, if a link points to
            a container that is neither running nor declared earlier.
        """
        self._check_links(specs)
        started = []
        for spec in specs:
            links = self._resolve_links(spec)
            image, external = self._resolve_image(spec.image)
            container = self._start_container(spec, image, external, links)
            self.ledger.add_container(container)
            started.append(container)
        return started

    def _check_links(self, specs: Sequence[ContainerStartSpec]) -> None:
        available = {c.start_id for c in self.ledger.running_containers}
        for spec in specs:
            for link in spec.links:
                if link.container_id not in available:
                    raise LinkUnresolvedError(
                        f"Container {spec.start_id} links to {link.container_id}, "
                        f"which is not started before it"
                    )
            available.add(spec.start_id)

    def _resolve_links(self, spec: ContainerStartSpec) -> List[str]:
        resolved = []
        for link in spec.links:
            peer = self.ledger.find_container(link.container_id)
            if peer is None:
                raise LinkUnresolvedError(
                    f"Container {spec.start_id} links to {link.container_id}, which is not running"
                )
            resolved.append(f"{peer.name}:{link.effective_alias}")
        return resolved

    def _resolve_image(self, reference: str) -> Tuple[str, bool]:
        """
        :return: The engine-side image, and whether it is external to this build.
        """
        built = self.ledger.find_image(reference)
        if built is not None:
            return built.image_id, False
        return reference, True

    def _start_container(
        self, spec: ContainerStartSpec, image: str, external: bool, links: List[str]
    ) -> RunningContainer:
        logger.info(f"Starting container {spec.start_id} from {image}...")
        try:
            container_id = self.client.create_container(spec, image, links)
        except ImageNotFoundError:
            if not external:
                raise
            self.client.pull_image(image)
            container_id = self.client.create_container(spec, image, links)

        try:
            self.client.start_container(container_id)
            if spec.wait_for_startup:
                deadline = self.clock() + spec.startup_timeout
                result = self.probe.await_pattern(container_id, spec.wait_for_startup, deadline)
                if not result.ready:
                    detail = (
                        f"exited with code {result.exit_code}"
                        if result.exit_code is not None
                        else f"did not log '{spec.wait_for_startup}' within {spec.startup_timeout}s"
                    )
                    raise StartupFailedError(f"Container {spec.start_id} {detail}")
            inspect = self.client.inspect_container(container_id)
            if not inspect.running:
                raise StartupFailedError(
                    f"Container {spec.start_id} is not running (exit code {inspect.exit_code})"
                )
            endpoints = compute_endpoints(inspect, self.client.host)
        except BaseException:
            self._discard(container_id)
            raise

        for endpoint in endpoints:
            logger.info(f"{spec.start_id}: {endpoint.private_port} -> {endpoint.host}:{endpoint.host_port}")
        return RunningContainer(
            start_id=spec.start_id,
            container_id=container_id,
            name=inspect.name or container_id,
            endpoints=endpoints,
        )

    def _discard(self, container_id: str) -> None:
        """Force-removes a container that failed to start."""
        try:
            self.client.remove_container(container_id, force=True)
        except DockitError as e:
            logger.error(f"Could not remove failed container {container_id[:12]}: {e}")

    # -- expose-endpoints ---------------------------------------------------

    def expose_endpoints(self) -> Dict[str, List[ExposedEndpoint]]:
        """
        Returns the published endpoints of every running container.

        :return: Container ids mapped to their endpoints.
        """
        return {c.start_id: list(c.endpoints) for c in self.ledger.running_containers}

    # -- cleanup ------------------------------------------------------------

    def stop_containers(self) -> None:
        """
        Stops and removes every running container, most recent first.
        Failures are logged and never stop the iteration.
        """
        for container in self.ledger.containers_for_cleanup():
            logger.info(f"Stopping container {container.start_id}...")
            try:
                self.client.stop_container(container.container_id, self.STOP_TIMEOUT)
            except NotFoundError:
                logger.info(f"Container {container.start_id} is already gone")
            except DockitError as e:
                logger.warning(f"Failed to stop container {container.start_id}: {e}")
            try:
                self.client.remove_container(container.container_id, force=True)
            except NotFoundError:
                logger.debug(f"Container {container.start_id} was already removed")
            except DockitError as e:
                logger.warning(f"Failed to remove container {container.start_id}: {e}")
            self.ledger.remove_container(container.start_id)

    def remove_images(self) -> None:
        """
        Removes every built image not marked keep, most recent first.
        Failures are logged and never stop the iteration.
        """
        for image in self.ledger.images_for_cleanup():
            if image.keep:
                logger.info(f"Keeping image {image.start_id} ({image.image_id})")
            else:
                logger.info(f"Removing image {image.start_id}...")
                try:
                    self.client.remove_image(image.image_id)
                except NotFoundError:
                    logger.debug(f"Image {image.start_id} was already removed")
                except DockitError as e:
                    logger.warning(f"Failed to remove image {image.start_id}: {e}")
            self.ledger.remove_image(image.start_id)
