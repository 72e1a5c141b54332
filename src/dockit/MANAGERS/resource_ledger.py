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
Bookkeeping of every image and container a build created on the engine.
"""
from typing import List, Optional

from ..MODELS.engine_objects import BuiltImage, RunningContainer


class ResourceLedger:
    """
    Ordered record of the images built and containers started by one build.
    Only the orchestrator writes to it; cleanup walks it in reverse order.
    """
    def __init__(self):
        self.built_images: List[BuiltImage] = []
        self.running_containers: List[RunningContainer] = []

    def add_image(self, image: BuiltImage) -> None:
        self.built_images.append(image)

    def add_container(self, container: RunningContainer) -> None:
        self.running_containers.append(container)

    def find_image(self, start_id: str) -> Optional[BuiltImage]:
        """
        Looks up a built image by the id it was configured with.

        :param start_id: The configured image id.
        :return: The image, or None if no image with this id was built.
        """
        for image in self.built_images:
            if image.start_id == start_id:
                return image
        return None

    def find_container(self, start_id: str) -> Optional[RunningContainer]:
        """
        Looks up a running container by the id it was configured with.

        :param start_id: The configured container id.
        :return: The container, or None if it is not running.
        """
        for container in self.running_containers:
            if container.start_id == start_id:
                return container
        return None

    def remove_image(self, start_id: str) -> Optional[BuiltImage]:
        image = self.find_image(start_id)
        if image is not None:
            self.built_images.remove(image)
        return image

    def remove_container(self, start_id: str) -> Optional[RunningContainer]:
        container = self.find_container(start_id)
        if container is not None:
            self.running_containers.remove(container)
        return container

    def images_for_cleanup(self) -> List[BuiltImage]:
        """Built images, most recent first."""
        return list(reversed(self.built_images))

    def containers_for_cleanup(self) -> List[RunningContainer]:
        """Running containers, most recent first, so linking containers stop before their peers."""
        return list(reversed(self.running_containers))

    def is_empty(self) -> bool:
        return not self.built_images and not self.running_containers
