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
Copies a resolved file set out of the source filesystem into an isolated export root.
"""

import logging
import os
import shutil
import tarfile
import tempfile
from typing import Dict, List, Set, Tuple

from ..errors import D2SError, MaterializationError
from ..ISOLATION.source_filesystem import SourceFilesystem
from ..MODELS.path_entry import ResolvedFileSet, normalize

logger = logging.getLogger(__name__)


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root + os.sep)


class Materializer:
    """
    Extracts exactly the resolved paths from a tar export of the source filesystem.

    File type, permission bits and, when running privileged, numeric ownership
    are preserved. Symlinks stay symlinks and hard links stay hard links.
    """

    def __init__(self, source: SourceFilesystem):
        """
        Args:
            source (SourceFilesystem): Filesystem providing the export stream.
        """
        self.source = source

    def materialize(self, resolved: ResolvedFileSet, export_root: str) -> int:
        """
        Populates a fresh export root.

        Args:
            resolved (ResolvedFileSet): Paths to copy.
            export_root (str): Directory to create; it must not exist yet.

        Returns:
            int: Number of entries written.

        Raises:
            MaterializationError: On any failure, after removing the partial export root.
        """
        export_root = os.path.abspath(export_root)
        try:
            os.makedirs(export_root, mode=0o755)
        except OSError as e:
            raise MaterializationError(f"Cannot create export root {export_root}: {e}") from e

        try:
            with self.source.export_stream() as stream:
                written = self._extract(stream, resolved, export_root)
            self._verify(resolved, export_root)
        except D2SError as e:
            shutil.rmtree(export_root, ignore_errors=True)
            if isinstance(e, MaterializationError):
                raise
            raise MaterializationError(f"Reading the source filesystem failed: {e}") from e
        except (OSError, tarfile.TarError) as e:
            shutil.rmtree(export_root, ignore_errors=True)
            raise MaterializationError(f"Copying files failed: {e}") from e

        logger.info("Materialized %d paths into %s", written, export_root)
        return written

    def _extract(self, stream, resolved: ResolvedFileSet, export_root: str) -> int:
        real_root = os.path.realpath(export_root)
        wanted = resolved.paths
        extracted: Set[str] = set()
        directories: List[Tuple[tarfile.TarInfo, str]] = []
        # hard link name in the stream -> staged copy of an excluded file
        staged: Dict[str, str] = {}
        staging = None

        def guard(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
            name = member.name.lstrip("/")
            target = os.path.join(real_root, name)
            if not _within(os.path.realpath(os.path.dirname(target)), real_root):
                raise MaterializationError(f"Refusing to write {member.name} outside the export root")
            if member.islnk():
                member = member.replace(linkname=member.linkname.lstrip("/"), deep=False)
            return member.replace(name=name, deep=False)

        try:
            with tarfile.open(fileobj=stream, mode="r|*") as tar:
                for member in tar:
                    path = normalize(member.name)
                    if path in resolved.link_sources and member.isreg():
                        if staging is None:
                            staging = tempfile.mkdtemp(prefix=".links-", dir=os.path.dirname(real_root))
                        staged_name = str(len(staged))
                        tar.extract(
                            member, staging, set_attrs=True, numeric_owner=True,
                            filter=lambda m, dest: m.replace(name=staged_name, deep=False),
                        )
                        staged[path] = os.path.join(staging, staged_name)
                        logger.debug("Staged excluded hard link source %s", path)
                        continue
                    if path == "/" or path not in wanted:
                        continue

                    if member.islnk() and normalize(member.linkname) not in extracted:
                        source = staged.get(normalize(member.linkname))
                        if source is None:
                            raise MaterializationError(
                                f"{path} is a hard link to {member.linkname}, which is not part of the export"
                            )
                        self._link(source, guard(member, real_root).name, real_root)
                    elif member.isdir():
                        tar.extract(member, real_root, set_attrs=False, filter=guard)
                        directories.append((member, os.path.join(real_root, path.lstrip("/"))))
                    else:
                        tar.extract(member, real_root, set_attrs=True, numeric_owner=True, filter=guard)
                    extracted.add(path)
                    logger.debug("Extracted %s", path)

                # directory attributes last, deepest first, so read-only directories can be filled
                for member, target in sorted(directories, key=lambda d: d[1], reverse=True):
                    tar.chown(member, target, numeric_owner=True)
                    tar.utime(member, target)
                    tar.chmod(member, target)
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        return len(extracted)

    @staticmethod
    def _link(source: str, name: str, real_root: str) -> None:
        target = os.path.join(real_root, name)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        if os.path.lexists(target):
            os.unlink(target)
        os.link(source, target)

    def _verify(self, resolved: ResolvedFileSet, export_root: str) -> None:
        missing = [p for p in resolved if not os.path.lexists(os.path.join(export_root, p.lstrip("/")))]
        if missing:
            preview = ", ".join(missing[:5])
            raise MaterializationError(
                f"{len(missing)} resolved paths were not found in the source export: {preview}"
            )
