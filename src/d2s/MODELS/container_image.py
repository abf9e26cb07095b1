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
Models for the runtime metadata of the source image and the definition of the target image.
"""
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .strip_request import ExposedPort


class SourceImageMetadata(BaseModel):
    """
    Read-only snapshot of the runtime configuration of the source image.

    ``entrypoint`` and ``command`` are ``None`` when the image does not set them,
    never an empty list standing in for "unset".
    """
    model_config = ConfigDict(frozen=True)

    exposed_ports: FrozenSet[ExposedPort] = frozenset()
    entrypoint: Optional[Tuple[str, ...]] = None
    command: Optional[Tuple[str, ...]] = None
    env: Tuple[str, ...] = ()
    working_dir: Optional[str] = None
    labels: Dict[str, str] = {}

    @classmethod
    def from_inspect(cls, config: Optional[Dict[str, Any]]) -> "SourceImageMetadata":
        """
        Builds the metadata from the ``Config`` section of ``docker image inspect``.

        :param config: The decoded ``Config`` object, possibly ``None``.
        :return: The metadata snapshot.
        """
        config = config or {}
        ports = frozenset(ExposedPort.parse(p) for p in (config.get("ExposedPorts") or {}))

        entrypoint = config.get("Entrypoint")
        command = config.get("Cmd")
        return cls(
            exposed_ports=ports,
            entrypoint=tuple(entrypoint) if entrypoint is not None else None,
            command=tuple(command) if command is not None else None,
            env=tuple(config.get("Env") or ()),
            working_dir=config.get("WorkingDir") or None,
            labels=config.get("Labels") or {},
        )


def merge_ports(*groups: Iterable[ExposedPort]) -> List[ExposedPort]:
    """
    Unions port groups, collapsing duplicates, in numeric order.
    """
    merged = set()
    for group in groups:
        merged.update(group)
    return sorted(merged, key=lambda p: (p.number, p.protocol))


class ImageDefinition(BaseModel):
    """
    Everything needed to render the definition of the stripped image.
    """
    model_config = ConfigDict(frozen=True)

    payload: str = "rootfs.tar"
    ports: Tuple[ExposedPort, ...] = ()
    entrypoint: Optional[Tuple[str, ...]] = None
    command: Optional[Tuple[str, ...]] = None
    env: Tuple[str, ...] = ()
    working_dir: Optional[str] = None
    labels: Dict[str, str] = {}

    @classmethod
    def from_metadata(cls,
                      metadata: SourceImageMetadata,
                      extra_ports: Iterable[ExposedPort] = (),
                      payload: str = "rootfs.tar") -> "ImageDefinition":
        """
        Transplants the source metadata, adding the explicitly requested ports.
        """
        return cls(
            payload=payload,
            ports=tuple(merge_ports(extra_ports, metadata.exposed_ports)),
            entrypoint=metadata.entrypoint,
            command=metadata.command,
            env=metadata.env,
            working_dir=metadata.working_dir,
            labels=metadata.labels,
        )
