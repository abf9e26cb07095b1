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
Models describing a single stripping request.
"""
from typing import Any, FrozenSet, Iterable, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import ConfigurationError

PROTOCOLS = ("tcp", "udp", "sctp")


class ExposedPort(BaseModel):
    """
    A port declared by an image, e.g. ``80`` or ``53/udp``.
    """
    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=1, le=65535)
    protocol: str = "tcp"

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        v = v.lower()
        if v not in PROTOCOLS:
            raise ValueError(f"protocol must be one of {PROTOCOLS}")
        return v

    @classmethod
    def parse(cls, value: Union[int, str, "ExposedPort"]) -> "ExposedPort":
        """
        Parses ``80``, ``"80"`` or ``"80/tcp"`` into a port.

        :param value: The raw port specification.
        :return: The parsed port.
        :raises ValueError: If the specification is not a valid port.
        """
        if isinstance(value, ExposedPort):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid port: {value!r}")
        if isinstance(value, int):
            return cls(number=value)

        text = str(value).strip()
        number, _, protocol = text.partition("/")
        if not number.isdigit():
            raise ValueError(f"Invalid port: {value!r}")
        return cls(number=int(number), protocol=protocol or "tcp")

    def __str__(self) -> str:
        if self.protocol == "tcp":
            return str(self.number)
        return f"{self.number}/{self.protocol}"


def _clean_strings(values: Iterable[Any]) -> FrozenSet[str]:
    cleaned = set()
    for value in values:
        value = str(value).strip()
        if value:
            cleaned.add(value)
    return frozenset(cleaned)


class StripRequest(BaseModel):
    """
    A validated, immutable description of one stripping run.
    """
    model_config = ConfigDict(frozen=True)

    source_image: str
    target_image: str
    packages: FrozenSet[str] = frozenset()
    include_files: FrozenSet[str] = frozenset()
    exclude_files: FrozenSet[str] = frozenset()
    extra_ports: FrozenSet[ExposedPort] = frozenset()
    verbose: bool = False
    compress: bool = False
    follow_package_dependencies: bool = False
    strict_patterns: bool = False

    @field_validator("source_image", "target_image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("image reference must not be empty")
        return v

    @field_validator("packages", "include_files", "exclude_files", mode="before")
    @classmethod
    def normalize_strings(cls, v: Any) -> FrozenSet[str]:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return _clean_strings(v)

    @field_validator("include_files", "exclude_files")
    @classmethod
    def validate_absolute(cls, v: FrozenSet[str]) -> FrozenSet[str]:
        for pattern in v:
            if not pattern.startswith("/"):
                raise ValueError(f"file pattern must be absolute: {pattern}")
        return v

    @field_validator("extra_ports", mode="before")
    @classmethod
    def parse_ports(cls, v: Any) -> FrozenSet[ExposedPort]:
        if v is None:
            return frozenset()
        if isinstance(v, (int, str)):
            v = [v]
        return frozenset(ExposedPort.parse(p) for p in v)

    @model_validator(mode="after")
    def validate_selection(self) -> "StripRequest":
        if not self.packages and not self.include_files:
            raise ValueError("at least one package or include file pattern is required")
        return self

    @classmethod
    def create(cls, **fields: Any) -> "StripRequest":
        """
        Builds a request, turning validation failures into ConfigurationError.
        """
        try:
            return cls(**fields)
        except ValidationError as e:
            messages = []
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"])
                message = error["msg"]
                messages.append(f"{location}: {message}" if location else message)
            raise ConfigurationError("; ".join(messages)) from e
