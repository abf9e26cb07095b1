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
Parsers for YAML strip request files.
"""
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from ..errors import ConfigurationError
from ..MODELS.strip_request import StripRequest
from ..UTILS.string_interpolation import EnvironmentInterpolator

SET_FIELDS = ("packages", "include_files", "exclude_files", "extra_ports")
FLAG_FIELDS = ("verbose", "compress", "follow_package_dependencies", "strict_patterns")

# Keys accepted in request files besides the field names
ALIASES = {
    "source": "source_image",
    "target": "target_image",
    "files": "include_files",
    "include": "include_files",
    "exclude": "exclude_files",
    "ports": "extra_ports",
}


class RequestParser:
    """
    Parser for strip request files such as::

        source_image: nginx:1.25
        target_image: nginx:stripped
        packages: [nginx]
        include_files:
          - /etc/nginx/*
        exclude_files: /usr/share/doc/*
        ports: [8080]
        compress: true
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with an optional context for interpolation.

        :param context: Variables available to ``${VAR}`` references.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, request_path: str) -> Dict[str, Any]:
        """
        Parses a request file from a path.

        :param request_path: Path to the YAML file.
        :return: Normalized request fields.
        """
        try:
            with open(request_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read request file {request_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> Dict[str, Any]:
        """
        Parses request fields from YAML text.

        :param content: YAML content.
        :return: Normalized request fields, not yet validated.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise ConfigurationError(f"Request file interpolation failed: {e.args[0]}") from e

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in request file: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("A request file must contain a mapping")

        fields: Dict[str, Any] = {}
        for key, value in data.items():
            name = ALIASES.get(key, key)
            if name in SET_FIELDS:
                fields[name] = self._to_list(value)
            elif name in FLAG_FIELDS:
                fields[name] = bool(value)
            elif name in ("source_image", "target_image"):
                fields[name] = "" if value is None else str(value)
            else:
                raise ConfigurationError(f"Unknown key in request file: {key}")
        return fields

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list of values.
        """
        if val is None:
            return []
        if isinstance(val, (str, int)):
            return [val]
        return list(val)


def merge_request(file_fields: Mapping[str, Any], **overrides: Any) -> StripRequest:
    """
    Combines request file fields with command line values into a validated request.

    Sets are unioned; scalars given on the command line replace the file values;
    flags are enabled when either side enables them.

    :raises ConfigurationError: If the combined request is invalid.
    """
    fields: Dict[str, Any] = dict(file_fields)
    for name, value in overrides.items():
        if name in SET_FIELDS:
            fields[name] = list(fields.get(name, [])) + list(_iterable(value))
        elif name in FLAG_FIELDS:
            fields[name] = bool(fields.get(name)) or bool(value)
        elif value:
            fields[name] = value
    fields.setdefault("source_image", "")
    fields.setdefault("target_image", "")
    return StripRequest.create(**fields)


def _iterable(value: Any) -> Iterable[Any]:
    if value is None:
        return ()
    if isinstance(value, (str, int)):
        return (value,)
    return value
