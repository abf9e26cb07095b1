"""
Builders for transplanting the runtime metadata of the source image onto a
fresh scratch image holding the export root.
"""
import json
import logging
import os
import tarfile
from typing import Iterable, Optional

from jinja2 import Environment

from ..errors import AssemblyError, DockerError, ResolutionError
from ..MODELS.container_image import ImageDefinition, SourceImageMetadata
from ..MODELS.strip_request import ExposedPort
from ..RUNNERS.docker_client import DockerClient
from .build_context import BuildContext

logger = logging.getLogger(__name__)

DOCKERFILE_TEMPLATE = """\
FROM scratch
ADD {{ payload }} /
{% for key, value in labels %}
LABEL {{ key }}={{ value }}
{% endfor %}
{% for item in env %}
ENV {{ item }}
{% endfor %}
{% if working_dir %}
WORKDIR {{ working_dir }}
{% endif %}
{% for port in ports %}
EXPOSE {{ port }}
{% endfor %}
{% if entrypoint is not none %}
ENTRYPOINT {{ entrypoint }}
{% endif %}
{% if command is not none %}
CMD {{ command }}
{% endif %}
"""


def quote(value: str) -> str:
    """
    Quotes a value for ENV and LABEL instructions so that no variable
    substitution or word splitting happens.
    """
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def _numeric_owner(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    # names from the host password database mean nothing inside the image
    tarinfo.uname = ""
    tarinfo.gname = ""
    return tarinfo


class ImageBuilder:
    """
    Reads the source metadata, renders the image definition and builds the
    target image without any layer cache.
    """
    def __init__(self, docker: Optional[DockerClient] = None):
        """
        Initializes the ImageBuilder.

        :param docker: The client used to inspect and build images.
        """
        self.docker = docker or DockerClient()
        self.environment = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
        self.template = self.environment.from_string(DOCKERFILE_TEMPLATE)

    def read_metadata(self, image: str) -> SourceImageMetadata:
        """
        Snapshots ports, entrypoint and command of the unmodified source image.

        :raises ResolutionError: If the image cannot be inspected.
        """
        try:
            config = self.docker.inspect_config(image)
        except DockerError as e:
            raise ResolutionError(f"Cannot inspect source image {image}: {e}") from e
        metadata = SourceImageMetadata.from_inspect(config)
        logger.info(
            "Source image %s: ports=%s entrypoint=%s cmd=%s",
            image,
            sorted(str(p) for p in metadata.exposed_ports),
            list(metadata.entrypoint) if metadata.entrypoint is not None else None,
            list(metadata.command) if metadata.command is not None else None,
        )
        return metadata

    def define(self, metadata: SourceImageMetadata, extra_ports: Iterable[ExposedPort] = ()) -> ImageDefinition:
        return ImageDefinition.from_metadata(metadata, extra_ports)

    def render(self, definition: ImageDefinition) -> str:
        """
        Renders the Dockerfile of an image definition.

        Entrypoint and command use the exec form and are left out entirely
        when the source image does not set them.
        """
        env = []
        for item in definition.env:
            key, sep, value = item.partition("=")
            if key and sep:
                env.append(f"{key}={quote(value)}")

        return self.template.render(
            payload=definition.payload,
            labels=[(quote(k), quote(v)) for k, v in sorted(definition.labels.items())],
            env=env,
            working_dir=definition.working_dir,
            ports=[str(p) for p in definition.ports],
            entrypoint=json.dumps(list(definition.entrypoint)) if definition.entrypoint is not None else None,
            command=json.dumps(list(definition.command)) if definition.command is not None else None,
        )

    def pack(self, export_root: str, payload_path: str) -> None:
        """
        Packs the export root into an uncompressed tar archive, keeping
        numeric ownership, modes, symlinks and hard links.
        """
        with tarfile.open(payload_path, "w", format=tarfile.PAX_FORMAT) as tar:
            for name in sorted(os.listdir(export_root)):
                tar.add(os.path.join(export_root, name), arcname=name, filter=_numeric_owner)

    def assemble(self, context: BuildContext, definition: ImageDefinition, target_image: str) -> str:
        """
        Writes the build context and builds the target image.

        :param context: The active build context whose export root is complete.
        :param definition: The image definition to build.
        :param target_image: Tag for the new image.
        :return: The build output.
        :raises AssemblyError: If packing or building fails.
        """
        try:
            self.pack(context.export_root, context.payload(definition.payload))
            with open(context.dockerfile, "w") as f:
                f.write(self.render(definition))
        except (OSError, tarfile.TarError) as e:
            raise AssemblyError(f"Cannot write the build context: {e}") from e

        logger.info("Building %s", target_image)
        try:
            output = self.docker.build(context.context_dir, target_image, no_cache=True)
        except DockerError as e:
            raise AssemblyError(f"Building {target_image} failed", diagnostic=e.stderr) from e
        logger.debug("Build output:\n%s", output)
        return output
