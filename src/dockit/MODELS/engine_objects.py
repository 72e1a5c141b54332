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
Records of objects that exist on the engine: built images, running
containers and their published endpoints.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class BuiltImageInfo:
    """Image built by this build, as handed to the start phase."""

    start_id: str
    image_id: str


@dataclass
class BuiltImage:
    """An image built during this build, tracked until it is removed."""

    start_id: str
    image_id: str
    keep: bool = False

    def info(self) -> BuiltImageInfo:
        return BuiltImageInfo(start_id=self.start_id, image_id=self.image_id)


@dataclass(frozen=True)
class ExposedEndpoint:
    """
    A container port published on the engine host.

    Examples:
        - ExposedEndpoint("80/tcp", "10.0.0.5", 32768)
    """

    private_port: str
    host: str
    host_port: int


@dataclass
class RunningContainer:
    """A container started during this build, tracked until it is stopped."""

    start_id: str
    container_id: str
    name: str
    endpoints: List[ExposedEndpoint] = field(default_factory=list)


@dataclass(frozen=True)
class PortMapping:
    """One host binding of a container port, as reported by inspect."""

    host_ip: str
    host_port: str


@dataclass
class InspectResult:
    """
    The parts of a container inspection this tool cares about.

    ``ports`` maps '<port>/<proto>' to its host bindings, or None when the
    port is exposed but not published.
    """

    id: str
    name: str
    running: bool
    exit_code: Optional[int] = None
    ports: Dict[str, Optional[List[PortMapping]]] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Dict) -> "InspectResult":
        """
        Build an InspectResult from the engine's JSON document.

        Raises:
            KeyError, TypeError, ValueError: if the document is malformed.
        """
        state = data.get("State") or {}
        network = data.get("NetworkSettings") or {}
        ports: Dict[str, Optional[List[PortMapping]]] = {}
        for key, bindings in (network.get("Ports") or {}).items():
            if bindings is None:
                ports[key] = None
                continue
            ports[key] = [
                PortMapping(host_ip=b.get("HostIp", ""), host_port=str(b.get("HostPort", "")))
                for b in bindings
            ]
        return cls(
            id=data["Id"],
            name=data.get("Name", "").lstrip("/"),
            running=bool(state.get("Running", False)),
            exit_code=state.get("ExitCode"),
            ports=ports,
        )
