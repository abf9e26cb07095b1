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
Orchestration of one stripping run: resolve, materialize, compress, assemble.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..BUILDERS.build_context import BuildContext
from ..BUILDERS.compressor import CompressionPass, CompressionReport, UpxCompressor
from ..BUILDERS.image_builder import ImageBuilder
from ..BUILDERS.materializer import Materializer
from ..ISOLATION.source_filesystem import ContainerFilesystem, SourceFilesystem
from ..MODELS.container_image import ImageDefinition, SourceImageMetadata
from ..MODELS.path_entry import ResolvedFileSet
from ..MODELS.strip_request import StripRequest
from ..RUNNERS.dependency_resolver import FileClosureResolver
from ..RUNNERS.docker_client import DockerClient
from ..UTILS.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class StripResult:
    """Outcome of a successful run."""

    target_image: str
    resolved: ResolvedFileSet
    definition: ImageDefinition
    compression: Optional[CompressionReport] = None
    duration: float = 0.0


class StripPipeline:
    """
    Runs the stages of a strip request strictly in sequence. Only the
    compression pass is parallel internally.
    """
    def __init__(self,
                 request: StripRequest,
                 settings: Optional[Settings] = None,
                 docker: Optional[DockerClient] = None,
                 compressor: Optional[UpxCompressor] = None,
                 source_factory: Optional[Callable[[str], SourceFilesystem]] = None):
        """
        Initializes the pipeline.

        :param request: The validated request.
        :param settings: Tool locations and knobs.
        :param docker: Container engine client, built from settings when omitted.
        :param compressor: Compression tool, built from settings when omitted.
        :param source_factory: Creates the source filesystem for an image; the
                               result is used as a context manager.
        """
        self.request = request
        self.settings = settings or Settings()
        self.docker = docker or DockerClient(self.settings.docker, timeout=self.settings.command_timeout)
        self.compressor = compressor or UpxCompressor(
            self.settings.upx, self.settings.upx_args, timeout=self.settings.command_timeout
        )
        self.source_factory = source_factory or (lambda image: ContainerFilesystem(image, self.docker))
        self.builder = ImageBuilder(self.docker)

    def check_preconditions(self) -> None:
        """
        Fails fast, before any collaborator is invoked, on missing tools.

        :raises ConfigurationError: If docker, or upx when compressing, is missing.
        """
        self.docker.ensure_available()
        if self.request.compress:
            self.compressor.ensure_available()

    def inspect(self) -> SourceImageMetadata:
        return self.builder.read_metadata(self.request.source_image)

    def resolve(self, source: SourceFilesystem) -> ResolvedFileSet:
        resolved = FileClosureResolver(source).resolve(self.request)
        logger.info("Resolved %d paths from %s", len(resolved), self.request.source_image)
        return resolved

    def resolve_only(self) -> ResolvedFileSet:
        """
        Resolves the closure without writing anything.
        """
        self.check_preconditions()
        with self.source_factory(self.request.source_image) as source:
            return self.resolve(source)

    def run(self) -> StripResult:
        """
        Executes the whole pipeline.

        :return: The result of the run.
        :raises D2SError: On any fatal failure; the build context is always removed.
        """
        started = time.monotonic()
        self.check_preconditions()

        metadata = self.inspect()
        definition = self.builder.define(metadata, self.request.extra_ports)

        with BuildContext(self.settings.work_dir, keep=self.settings.keep_context) as context:
            with self.source_factory(self.request.source_image) as source:
                resolved = self.resolve(source)
                Materializer(source).materialize(resolved, context.export_root)

            report = None
            if self.request.compress:
                workers = self.settings.compress_workers
                report = CompressionPass(self.compressor, workers).run(context.export_root)

            self.builder.assemble(context, definition, self.request.target_image)

        duration = time.monotonic() - started
        logger.info("Built %s in %.1fs", self.request.target_image, duration)
        return StripResult(
            target_image=self.request.target_image,
            resolved=resolved,
            definition=definition,
            compression=report,
            duration=duration,
        )
