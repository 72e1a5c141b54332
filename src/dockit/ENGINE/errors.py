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
Errors raised while talking to the engine or running the build phases.
"""
from typing import Optional


class DockitError(Exception):
    """
    Base class for all errors raised by dockit.

    :param message: Human readable description.
    :param cause: The underlying exception, if any.
    """
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigurationError(DockitError):
    """Invalid configuration file or engine address."""


class TransportError(DockitError):
    """The engine could not be reached or the connection broke."""


class ProtocolError(DockitError):
    """The engine answered with something that could not be decoded."""


class NotFoundError(DockitError):
    """The engine answered 404."""


class ImageNotFoundError(NotFoundError):
    """The image a container should be created from does not exist."""


class ConflictError(DockitError):
    """The engine answered 409, or an object already exists."""


class InUseError(ConflictError):
    """An image cannot be removed because a container still uses it."""


class BadRequestError(DockitError):
    """The engine rejected the request as malformed (400)."""


class EngineError(DockitError):
    """The engine failed internally (5xx)."""

    def __init__(self, message: str, status_code: int = 500, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.status_code = status_code


class BuildFailedError(DockitError):
    """The image build stream reported an error."""


class StartupFailedError(DockitError):
    """A container did not become ready in time or exited while starting."""


class LinkUnresolvedError(DockitError):
    """A container links to an id that is not running in this build."""
