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
Models for paths in the source filesystem and the resolved closure.
"""
import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional


class PathKind(str, Enum):
    """
    Type of a filesystem entry, as seen without following the final symlink.
    """
    FILE = "file"
    DIRECTORY = "dir"
    LINK = "link"
    OTHER = "other"
    MISSING = "missing"


@dataclass(frozen=True)
class PathInfo:
    """Description of one path in the source filesystem."""

    path: str
    kind: PathKind
    # Location with every parent symlink resolved
    physical: str
    # Absolute, normalized target of a symlink
    link_target: Optional[str] = None
    is_elf: bool = False
    inode: Optional[int] = None
    links: int = 1

    @property
    def exists(self) -> bool:
        return self.kind != PathKind.MISSING


def normalize(path: str) -> str:
    """Normalizes an absolute POSIX path, keeping a single leading slash."""
    path = posixpath.normpath("/" + path.lstrip("/"))
    return path


def ancestors(path: str) -> List[str]:
    """
    Returns the parent directories of a path, outermost first, without ``/``.
    """
    parents = []
    parent = posixpath.dirname(path)
    while parent not in ("/", ""):
        parents.append(parent)
        parent = posixpath.dirname(parent)
    parents.reverse()
    return parents


class ResolvedFileSet:
    """
    The deduplicated set of absolute paths making up a closure.

    ``link_sources`` holds excluded names whose inode is shared with a kept
    hard link; they are read during materialization but never written.
    """

    def __init__(self, entries: Dict[str, PathInfo], link_sources: Iterable[str] = ()):
        self._entries = dict(entries)
        self.link_sources = frozenset(link_sources)

    @property
    def paths(self) -> frozenset:
        return frozenset(self._entries)

    def info(self, path: str) -> PathInfo:
        return self._entries[path]

    def files(self) -> List[str]:
        """Sorted paths that are not directories."""
        return sorted(p for p, i in self._entries.items() if i.kind != PathKind.DIRECTORY)

    def directories(self) -> List[str]:
        return sorted(p for p, i in self._entries.items() if i.kind == PathKind.DIRECTORY)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<ResolvedFileSet {len(self._entries)} paths>"
