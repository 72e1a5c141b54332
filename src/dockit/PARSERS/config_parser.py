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
Parser for dockit.yml build configuration files.
"""
import os
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..ENGINE.errors import ConfigurationError
from ..MODELS.build_config import BuildConfig
from ..UTILS.string_interpolation import EnvironmentInterpolator


class ConfigParser:
    """
    Parser for dockit.yml files.

    Besides the full form, ports accept the compose shorthand '8080:80',
    '80' or '80/udp', links accept 'db' or 'db:alias', and env accepts a
    list of 'KEY=VALUE' strings.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None, env_file: Optional[str] = ".env"):
        """
        Initializes the parser with an environment context for interpolation.

        :param context: Variables for interpolation. Defaults to the process
            environment, with values from ``env_file`` filling gaps.
        :param env_file: A .env file to read, if it exists.
        """
        if context is None:
            context = {}
            if env_file and os.path.exists(env_file):
                context.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
            context.update(os.environ)
        self.context = context

    def parse(self, config_path: str) -> BuildConfig:
        """
        Parses a configuration file from a path.
        Relative paths inside it are resolved against the file's directory.

        :param config_path: Path to the configuration file.
        :return: Parsed configuration.
        """
        try:
            with open(config_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read {config_path}", e)
        return self.parse_from_string(content, base_dir=os.path.dirname(os.path.abspath(config_path)))

    def parse_from_string(self, content: str, base_dir: str = ".") -> BuildConfig:
        """
        Parses a configuration from a string.

        :param content: YAML content of the configuration.
        :param base_dir: Directory relative paths are resolved against.
        :return: Parsed configuration.
        """
        content = EnvironmentInterpolator.interpolate(content, self.context)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError("Configuration is not valid YAML", e)
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        images = [self._parse_image(spec, base_dir) for spec in self._entries(data, 'images')]
        containers = [self._parse_container(spec) for spec in self._entries(data, 'containers')]
        try:
            return BuildConfig(
                images=images,
                containers=containers,
                dockerHost=data.get('dockerHost'),
                dockerPort=data.get('dockerPort'),
                registryAuth=data.get('registryAuth'),
            )
        except ValidationError as e:
            raise ConfigurationError("Invalid configuration", e)

    @staticmethod
    def _entries(data: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
        entries = data.get(key) or []
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise ConfigurationError(f"'{key}' must be a list of mappings")
        return entries

    def _parse_image(self, spec: Dict[str, Any], base_dir: str) -> Dict[str, Any]:
        """
        Resolves the build context of an image entry.

        :param spec: The image entry.
        :param base_dir: Directory relative paths are resolved against.
        :return: The entry, ready for validation.
        """
        spec = dict(spec)
        if spec.get('dockerFile'):
            spec['dockerFile'] = os.path.join(base_dir, spec['dockerFile'])
        archive = spec.get('contextArchive')
        if isinstance(archive, str):
            path = os.path.join(base_dir, archive)
            try:
                with open(path, 'rb') as f:
                    spec['contextArchive'] = f.read()
            except OSError as e:
                raise ConfigurationError(f"Cannot read context archive {path}", e)
        return spec

    def _parse_container(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        """
        Expands the shorthand forms of a container entry.

        :param spec: The container entry.
        :return: The entry, ready for validation.
        """
        spec = dict(spec)

        ports = []
        for p in spec.get('ports') or []:
            if isinstance(p, (str, int)):
                ports.append(self._parse_port(str(p)))
            else:
                ports.append(p)
        spec['ports'] = ports

        links = []
        for link in spec.get('links') or []:
            if isinstance(link, str):
                container, _, alias = link.partition(':')
                links.append({'container': container, 'alias': alias or None})
            else:
                links.append(link)
        spec['links'] = links

        env = spec.get('env') or {}
        if isinstance(env, list):
            environment = {}
            for e in env:
                if '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
            env = environment
        spec['env'] = env
        return spec

    @staticmethod
    def _parse_port(value: str) -> Dict[str, Any]:
        """
        Parses '[publicPort:]privatePort[/protocol]'.
        """
        value, _, protocol = value.partition('/')
        parts = value.split(':')
        try:
            if len(parts) == 1:
                port = {'privatePort': int(parts[0])}
            elif len(parts) == 2:
                port = {'privatePort': int(parts[1]), 'publicPort': int(parts[0]) if parts[0] else None}
            else:
                raise ValueError(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid port binding '{value}'", e)
        if protocol:
            port['type'] = protocol
        return port
