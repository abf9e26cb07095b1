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
Read-only views of the source image filesystem.

The resolver and the materializer only talk to a SourceFilesystem, never to
docker or a shell directly.
"""

import logging
import os
from contextlib import contextmanager
from typing import IO, Dict, Iterable, Iterator, Optional, Sequence, Set, Tuple

from ..errors import DockerError, ResolutionError, UnknownPackageError
from ..MODELS.path_entry import PathInfo, normalize
from ..PARSERS import probe_output
from ..RUNNERS.docker_client import DockerClient

logger = logging.getLogger(__name__)

PROBE_DIR = os.path.dirname(os.path.abspath(__file__))
PROBE_SCRIPT = "probe.sh"
MOUNT_POINT = "/.d2s"


class SourceFilesystem:
    """
    Queries against the filesystem of the source image.

    Implementations must never modify the filesystem they describe.
    """

    # Virtual filesystems that never belong to a closure
    ignored_roots: Tuple[str, ...] = ("/proc", "/sys")

    def is_ignored(self, path: str) -> bool:
        return any(path == root or path.startswith(root + "/") for root in self.ignored_roots)

    def package_files(self, package: str) -> Set[str]:
        """
        Returns the absolute paths owned by an installed package.

        Raises:
            UnknownPackageError: If the package is not installed.
        """
        raise NotImplementedError

    def package_dependencies(self, package: str) -> Set[str]:
        """
        Returns the names of the packages a package declares as runtime dependencies.

        Raises:
            UnknownPackageError: If the package is not installed.
        """
        raise NotImplementedError

    def glob(self, patterns: Iterable[str]) -> Dict[str, Set[str]]:
        """Expands glob patterns, returning the matches of every pattern."""
        raise NotImplementedError

    def describe(self, paths: Iterable[str]) -> Dict[str, PathInfo]:
        """Describes paths without following a final symlink."""
        raise NotImplementedError

    def shared_libraries(self, paths: Iterable[str]) -> Dict[str, Set[str]]:
        """
        Returns the direct shared library dependencies of binaries and libraries.

        Paths that are not dynamically linked map to an empty set.
        """
        raise NotImplementedError

    def walk(self, directories: Iterable[str]) -> Set[str]:
        """Returns every path below the given directories, the directories included."""
        raise NotImplementedError

    def hardlink_groups(self) -> Dict[int, Set[str]]:
        """Returns every file name sharing its inode with another name, grouped by inode."""
        raise NotImplementedError

    def export_stream(self):
        """Context manager yielding an uncompressed tar stream of the whole filesystem."""
        raise NotImplementedError


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ContainerFilesystem(SourceFilesystem):
    """
    A source filesystem backed by a running container of the source image.

    The probe script directory is bind-mounted read-only into the container
    and every query runs it through ``docker exec``.
    """

    ignored_roots = ("/proc", "/sys", MOUNT_POINT)

    def __init__(self,
                 image: str,
                 docker: Optional[DockerClient] = None,
                 probe_dir: str = PROBE_DIR,
                 batch_size: int = 512):
        """
        Args:
            image (str): Source image reference.
            docker (Optional[DockerClient]): Client used for all container operations.
            probe_dir (str): Host directory holding ``probe.sh``.
            batch_size (int): Maximum number of paths sent to one probe call.
        """
        self.image = image
        self.docker = docker or DockerClient()
        self.probe_dir = probe_dir
        self.batch_size = batch_size
        self.container: Optional[str] = None
        self._hardlinks: Optional[Dict[int, Set[str]]] = None

    def start(self) -> str:
        """
        Starts an idle container of the source image.

        Raises:
            ResolutionError: If the image cannot be run.
        """
        try:
            self.container = self.docker.run_detached(
                self.image,
                mounts=[(self.probe_dir, MOUNT_POINT, True)],
                entrypoint="tail",
                args=["-f", "/dev/null"],
            )
        except DockerError as e:
            raise ResolutionError(f"Cannot start a container from {self.image}: {e}") from e
        logger.info("Started probe container %s for %s", self.container, self.image)
        return self.container

    def stop(self) -> None:
        if self.container is None:
            return
        container, self.container = self.container, None
        try:
            self.docker.remove(container)
        except DockerError as e:
            logger.warning("Failed to remove container %s: %s", container, e)

    def __enter__(self) -> "ContainerFilesystem":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def _probe(self, command: str, args: Sequence[str] = (), lines: Optional[Sequence[str]] = None):
        if self.container is None:
            raise ResolutionError("The probe container is not running")

        argv = ["/bin/sh", f"{MOUNT_POINT}/{PROBE_SCRIPT}", command, *args]
        data = None
        if lines is not None:
            data = "".join(f"{line}\n" for line in lines).encode("utf-8")

        result = self.docker.exec(self.container, argv, input=data, check=False)
        stderr = result.stderr.decode("utf-8", "replace").strip()
        if result.returncode in (2, 3, 126, 127):
            raise ResolutionError(f"Probe '{command}' failed in {self.image}: {stderr}")
        return result.returncode, result.stdout.decode("utf-8", "replace"), stderr

    def package_files(self, package: str) -> Set[str]:
        status, output, stderr = self._probe("owned", [package])
        if status != 0 or not probe_output.is_package_listed(output):
            logger.debug("Package query for %s failed: %s", package, stderr)
            raise UnknownPackageError(package)
        files = probe_output.parse_package_files(output)
        if not files:
            logger.info("Package %s is installed but owns no files", package)
        return files

    def package_dependencies(self, package: str) -> Set[str]:
        status, output, stderr = self._probe("depends", [package])
        if status != 0:
            logger.debug("Dependency query for %s failed: %s", package, stderr)
            raise UnknownPackageError(package)
        return probe_output.parse_package_dependencies(output)

    def glob(self, patterns: Iterable[str]) -> Dict[str, Set[str]]:
        patterns = sorted(set(patterns))
        if not patterns:
            return {}
        _, output, _ = self._probe("glob", lines=patterns)
        matches = probe_output.parse_glob_output(output)
        return {pattern: matches.get(pattern, set()) for pattern in patterns}

    def describe(self, paths: Iterable[str]) -> Dict[str, PathInfo]:
        infos = {}
        for chunk in _chunks(sorted(set(paths)), self.batch_size):
            _, output, _ = self._probe("describe", lines=chunk)
            infos.update(probe_output.parse_describe_output(output))
        return infos

    def shared_libraries(self, paths: Iterable[str]) -> Dict[str, Set[str]]:
        dependencies: Dict[str, Set[str]] = {}
        for chunk in _chunks(sorted(set(paths)), self.batch_size):
            _, output, _ = self._probe("ldd", lines=chunk)
            dependencies.update(probe_output.parse_ldd_output(output))
        return dependencies

    def walk(self, directories: Iterable[str]) -> Set[str]:
        directories = sorted(set(directories))
        if not directories:
            return set()
        _, output, _ = self._probe("walk", lines=directories)
        return {normalize(line) for line in output.splitlines() if line}

    def hardlink_groups(self) -> Dict[int, Set[str]]:
        if self._hardlinks is None:
            _, output, _ = self._probe("hardlinks")
            groups = probe_output.parse_hardlinks_output(output)
            self._hardlinks = {
                inode: {p for p in names if not self.is_ignored(p)} for inode, names in groups.items()
            }
        return self._hardlinks

    @contextmanager
    def export_stream(self) -> Iterator[IO[bytes]]:
        if self.container is None:
            raise ResolutionError("The probe container is not running")
        with self.docker.export(self.container) as stream:
            yield stream
