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
The operations a build invokes around its integration tests.
"""
import logging
import re
from typing import Dict, List, Optional

from ..ENGINE.engine_client import EngineClient
from ..MANAGERS.container_orchestrator import ContainerOrchestrator
from ..MANAGERS.readiness_probe import ReadinessProbe
from ..MANAGERS.resource_ledger import ResourceLedger
from ..MODELS.build_config import BuildConfig
from ..MODELS.engine_objects import BuiltImageInfo, ExposedEndpoint, RunningContainer

logger = logging.getLogger(__name__)


class BuildLifecycle:
    """
    Entry points for one build: build-images, start-containers,
    expose-endpoints, stop-containers and remove-images.

    Used as a context manager, the cleanup phases always run on exit:

        with BuildLifecycle(config, client) as build:
            build.build_images()
            build.start_containers()
            run_tests(build.build_properties())
    """
    def __init__(
        self,
        config: BuildConfig,
        client: EngineClient,
        ledger: Optional[ResourceLedger] = None,
        probe: Optional[ReadinessProbe] = None,
    ):
        self.config = config
        self.client = client
        self.ledger = ledger if ledger is not None else ResourceLedger()
        self.orchestrator = ContainerOrchestrator(client, self.ledger, probe=probe)
        self.built_images: List[BuiltImageInfo] = []

    def build_images(self) -> List[BuiltImageInfo]:
        self.built_images = self.orchestrator.build_images(self.config.images)
        logger.info(f"Built {len(self.built_images)} image(s)")
        return self.built_images

    def start_containers(self) -> List[RunningContainer]:
        started = self.orchestrator.start_containers(self.config.containers)
        logger.info(f"Started {len(started)} container(s)")
        return started

    def expose_endpoints(self) -> Dict[str, List[ExposedEndpoint]]:
        return self.orchestrator.expose_endpoints()

    def stop_containers(self) -> None:
        self.orchestrator.stop_containers()

    def remove_images(self) -> None:
        self.orchestrator.remove_images()

    def teardown(self) -> None:
        """Runs both cleanup phases. Never raises for engine failures."""
        self.stop_containers()
        self.remove_images()

    def build_properties(self) -> Dict[str, str]:
        """
        Endpoints as build properties: '<id>.<port>/<proto>.host' and '.port'.
        """
        properties = {}
        for start_id, endpoints in self.expose_endpoints().items():
            for endpoint in endpoints:
                prefix = f"{start_id}.{endpoint.private_port}"
                properties[f"{prefix}.host"] = endpoint.host
                properties[f"{prefix}.port"] = str(endpoint.host_port)
        return properties

    def environment(self, prefix: str = "DOCKIT") -> Dict[str, str]:
        """
        Endpoints as environment variables, e.g. DOCKIT_WEB_80_TCP_PORT.
        """
        env = {}
        for key, value in self.build_properties().items():
            name = re.sub(r'[^A-Za-z0-9]+', '_', key).strip('_').upper()
            env[f"{prefix}_{name}"] = value
        return env

    def __enter__(self) -> "BuildLifecycle":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.teardown()
