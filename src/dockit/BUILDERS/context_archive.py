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
Packing of build contexts into the tar archives the engine builds from.
"""
import fnmatch
import io
import os
import tarfile
from typing import List

from ..ENGINE.errors import ConfigurationError


class ContextArchiveBuilder:
    """
    Turns a directory holding a Dockerfile into an uncompressed tar archive,
    leaving out what its .dockerignore excludes.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the ContextArchiveBuilder.

        :param base_dir: The base directory for resolving relative paths.
        """
        self.base_dir = base_dir

    def build(self, docker_file: str) -> bytes:
        """
        Packs the build context of a Dockerfile.

        :param docker_file: A Dockerfile, or the directory containing one.
        :return: The tar archive, with the Dockerfile at its root.
        """
        path = os.path.join(self.base_dir, docker_file)
        context_dir = path if os.path.isdir(path) else os.path.dirname(path)
        dockerfile = os.path.join(path, "Dockerfile") if os.path.isdir(path) else path
        if not os.path.isfile(dockerfile):
            raise ConfigurationError(f"No Dockerfile found at {dockerfile}")

        ignored = self._read_ignore_file(context_dir)
        # Without '!' exceptions nothing below an ignored directory can come back
        prune = not any(p.startswith('!') for p in ignored)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for root, dirs, files in os.walk(context_dir):
                rel_root = os.path.relpath(root, context_dir).replace(os.sep, "/")
                prefix = "" if rel_root == "." else rel_root + "/"
                if prune:
                    dirs[:] = [d for d in dirs if not self._is_ignored(prefix + d, ignored)]
                dirs.sort()
                for name in sorted(files):
                    full_path = os.path.join(root, name)
                    arcname = prefix + name
                    if self._is_ignored(arcname, ignored):
                        continue
                    tar.add(full_path, arcname=arcname, recursive=False)
            # The engine expects the Dockerfile under its default name
            if os.path.basename(dockerfile) != "Dockerfile":
                tar.add(dockerfile, arcname="Dockerfile", recursive=False)
        return buffer.getvalue()

    def _read_ignore_file(self, context_dir: str) -> List[str]:
        path = os.path.join(context_dir, ".dockerignore")
        if not os.path.exists(path):
            return []
        patterns = []
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    patterns.append(line.rstrip('/'))
        return patterns

    @staticmethod
    def _is_ignored(arcname: str, patterns: List[str]) -> bool:
        """
        Applies .dockerignore patterns in order; a later '!' pattern re-includes.
        A pattern matching a directory also covers everything below it.
        The Dockerfile and .dockerignore are always sent.
        """
        if arcname in ("Dockerfile", ".dockerignore"):
            return False
        parts = arcname.split("/")
        ignored = False
        for pattern in patterns:
            negate = pattern.startswith('!')
            if negate:
                pattern = pattern[1:]
            segments = [s for s in pattern.strip('/').split('/') if s not in ("", ".")]
            if any(_match_segments(segments, parts[:i]) for i in range(1, len(parts) + 1)):
                ignored = not negate
        return ignored


def _match_segments(pattern: List[str], parts: List[str]) -> bool:
    """
    Matches path segments one at a time so '*' never crosses a '/';
    '**' stands for any number of whole segments.
    """
    if not pattern:
        return not parts
    if pattern[0] == "**":
        return any(_match_segments(pattern[1:], parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch.fnmatchcase(parts[0], pattern[0]) and _match_segments(pattern[1:], parts[1:])
