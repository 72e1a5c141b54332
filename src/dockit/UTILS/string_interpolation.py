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
Interpolation of ${VAR} placeholders in configuration files.
"""
import re
from typing import Mapping

from ..ENGINE.errors import ConfigurationError

# $$ | ${VAR} | ${VAR:-default} | ${VAR:+value} | ${VAR:?message}
_PLACEHOLDER = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_.]*)(?::([-+?])([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Replaces ${VAR} placeholders with values from a context.
    Supports ${VAR:-default}, ${VAR:+value}, ${VAR:?message} and $$ for a literal $.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates the template using the provided context.

        :param template: Text containing placeholders.
        :param context: Variables available to the placeholders.
        :return: The interpolated text.
        :raises ConfigurationError: If a variable without default is not set.
        """
        def replace(match):
            if match.group(0) == '$$':
                return '$'
            name, modifier, alt_value = match.group(1), match.group(2), match.group(3)
            value = context.get(name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if modifier == '?':
                if not value:
                    raise ConfigurationError(alt_value or f"Variable {name} is required")
                return value
            if value is None:
                raise ConfigurationError(f"Variable {name} is not set")
            return value

        return _PLACEHOLDER.sub(replace, template)
