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
Models for the declarative build configuration: images to build and
containers to start.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_STARTUP_TIMEOUT = 5 * 60


class PortBinding(BaseModel):
    """
    Binds a port exposed by the container to a port on the engine host.
    A missing public port lets the engine pick one.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    private_port: int = Field(alias="privatePort")
    public_port: Optional[int] = Field(default=None, alias="publicPort")
    protocol: str = Field(default="tcp", alias="type")

    @field_validator("protocol")
    @classmethod
    def _lower_protocol(cls, value: str) -> str:
        value = value.lower()
        if value not in ("tcp", "udp", "sctp"):
            raise ValueError(f"Unsupported port protocol: {value}")
        return value

    @property
    def key(self) -> str:
        """Engine notation of the private port, e.g. '80/tcp'."""
        return f"{self.private_port}/{self.protocol}"


class ContainerLink(BaseModel):
    """
    Link to a container started earlier in the same build.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    container_id: str = Field(alias="container")
    alias: Optional[str] = None

    @property
    def effective_alias(self) -> str:
        return self.alias or self.container_id


class ImageBuildSpec(BaseModel):
    """
    An image to build from a context archive, before the containers start.
    """
    model_config = ConfigDict(populate_by_name=True)

    start_id: str = Field(alias="id")
    context_archive: Optional[bytes] = Field(default=None, alias="contextArchive", repr=False)
    docker_file: Optional[str] = Field(default=None, alias="dockerFile")
    name_and_tag: Optional[str] = Field(default=None, alias="nameAndTag")
    keep: bool = False

    @model_validator(mode="after")
    def _check_context(self) -> "ImageBuildSpec":
        if self.context_archive is None and self.docker_file is None:
            raise ValueError(f"Image '{self.start_id}' needs either dockerFile or contextArchive")
        return self


class ContainerStartSpec(BaseModel):
    """
    A container to start before the integration tests run.

    The image is either the id of an image built in this build or an
    external image name such as 'postgres:16'.
    """
    model_config = ConfigDict(populate_by_name=True)

    start_id: str = Field(alias="id")
    image: str
    hostname: Optional[str] = None
    privileged: bool = False
    env: Dict[str, str] = {}
    links: List[ContainerLink] = []
    ports: List[PortBinding] = []
    publish_all: Optional[bool] = Field(default=None, alias="publishAll")
    wait_for_startup: Optional[str] = Field(default=None, alias="waitForStartup")
    startup_timeout: int = Field(default=DEFAULT_STARTUP_TIMEOUT, alias="startupTimeout")

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value):
        # YAML turns `PORT: 8080` into an int
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("startup_timeout")
    @classmethod
    def _default_timeout(cls, value: int) -> int:
        if value < 0:
            raise ValueError("startupTimeout cannot be negative")
        return value or DEFAULT_STARTUP_TIMEOUT

    @property
    def publish_all_ports(self) -> bool:
        """Publish every exposed port when no explicit binding is given."""
        if self.publish_all is not None:
            return self.publish_all
        return not self.ports


class BuildConfig(BaseModel):
    """
    Complete configuration for one build invocation.
    """
    model_config = ConfigDict(populate_by_name=True)

    images: List[ImageBuildSpec] = []
    containers: List[ContainerStartSpec] = []
    docker_host: Optional[str] = Field(default=None, alias="dockerHost")
    docker_port: Optional[int] = Field(default=None, alias="dockerPort")
    registry_auth: Optional[Dict[str, str]] = Field(default=None, alias="registryAuth")

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "BuildConfig":
        seen = set()
        for start_id in [i.start_id for i in self.images] + [c.start_id for c in self.containers]:
            if start_id in seen:
                raise ValueError(f"Duplicate id '{start_id}', ids must be unique within a build")
            seen.add(start_id)
        return self
