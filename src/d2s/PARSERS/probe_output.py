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
Parsers for the output of the in-image probe script: package manager
listings, glob expansions, path descriptions and ldd reports.
"""
import logging
import posixpath
import re
from typing import Dict, List, Set, Tuple

from ..MODELS.path_entry import PathInfo, PathKind, normalize

logger = logging.getLogger(__name__)

# "libcurl.so.4 => /usr/lib/libcurl.so.4 (0x7f...)"
LDD_MAPPED = re.compile(r'^\s*(\S+)\s+=>\s+(.*?)(?:\s+\(0x[0-9a-fA-F]+\))?\s*$')
# "/lib64/ld-linux-x86-64.so.2 (0x7f...)"
LDD_DIRECT = re.compile(r'^\s*(/\S+)(?:\s+\(0x[0-9a-fA-F]+\))?\s*$')
# "libc6 (>= 2.34)", "libssl3:amd64", "libcurl=8.5.0-r0"
VERSION_SUFFIX = re.compile(r'\s*(\(.*\)|[<>=~].*)$')
# package managers' wording for an installed package that owns no files
EMPTY_LISTING_MARKERS = ("contains:", "(contains no files)", "does not contain any files")


def _split_manager(output: str) -> Tuple[str, List[str]]:
    lines = output.splitlines()
    manager = ""
    if lines and lines[0].startswith("@"):
        manager = lines[0][1:].strip()
        lines = lines[1:]
    return manager, lines


def parse_package_files(output: str) -> Set[str]:
    """
    Parses the file listing of a package.

    Handles ``dpkg-query -L`` (absolute paths, ``/.`` and diversion notes),
    ``apk info -L`` (relative paths under a ``contains:`` header) and
    ``rpm -ql`` (absolute paths, ``(contains no files)``).

    :param output: Raw probe output, starting with the ``@manager`` line.
    :return: Absolute paths owned by the package.
    """
    manager, lines = _split_manager(output)
    files = set()
    for line in lines:
        line = line.strip()
        if not line or line == "/." or line.startswith("("):
            continue
        if line.endswith("contains:"):
            continue

        # dpkg: "diverted by foo to: /usr/bin/bar.real"
        if ": /" in line:
            line = line.split(": ", 1)[1]

        if line.startswith("/"):
            files.add(normalize(line))
        elif manager == "apk" and " " not in line:
            files.add(normalize(line))
    return files


def is_package_listed(output: str) -> bool:
    """
    Checks whether the package manager recognized the package at all.

    Metapackages own no files but still print a header or a note, which
    tells them apart from a package that is not installed.
    """
    _, lines = _split_manager(output)
    if parse_package_files(output):
        return True
    if any(line.strip() == "/." for line in lines):
        return True
    return any(marker in line for line in lines for marker in EMPTY_LISTING_MARKERS)


def parse_package_dependencies(output: str) -> Set[str]:
    """
    Parses the declared runtime dependencies of a package into package names.

    Alternatives (``a | b``) keep their first choice. Shared library and
    command providers from apk (``so:``, ``cmd:``) are dropped since library
    dependencies are discovered from the binaries themselves.
    """
    manager, lines = _split_manager(output)
    names = set()
    for line in lines:
        line = line.strip()
        if not line or line.endswith("depends on:"):
            continue
        for item in line.split(","):
            item = item.split("|")[0].strip()
            if not item or item.startswith(("so:", "cmd:", "pc:", "/")):
                continue
            item = VERSION_SUFFIX.sub("", item).strip()
            item = item.split(":", 1)[0] if manager == "dpkg" else item
            # rpm: "no package provides ..."
            if item and " " not in item:
                names.add(item)
    return names


def parse_glob_output(output: str) -> Dict[str, Set[str]]:
    """
    Parses glob expansions grouped under ``#pattern`` header lines.

    :return: Matches per pattern, possibly empty.
    """
    matches: Dict[str, Set[str]] = {}
    current = None
    for line in output.splitlines():
        if line.startswith("#"):
            current = line[1:]
            matches.setdefault(current, set())
        elif line and current is not None:
            matches[current].add(normalize(line))
    return matches


def parse_describe_output(output: str) -> Dict[str, PathInfo]:
    """
    Parses tab separated path descriptions.

    Columns: path, kind, physical path, raw link target, ELF flag, inode, link count.
    Relative link targets are resolved against the physical parent directory.
    """
    infos = {}
    for line in output.splitlines():
        if not line:
            continue
        columns = line.split("\t")
        if len(columns) != 7:
            logger.debug("Ignoring malformed describe line: %r", line)
            continue
        path, kind, physical, target, elf, inode, links = columns
        path = normalize(path)
        physical = normalize(physical)

        link_target = None
        if kind == PathKind.LINK.value and target:
            link_target = normalize(posixpath.join(posixpath.dirname(physical), target))

        infos[path] = PathInfo(
            path=path,
            kind=PathKind(kind),
            physical=physical,
            link_target=link_target,
            is_elf=elf == "1",
            inode=int(inode) if inode.isdigit() and inode != "0" else None,
            links=int(links) if links.isdigit() else 1,
        )
    return infos


def parse_ldd_line(line: str) -> Tuple[str, str]:
    """
    Parses one line of ldd output.

    :return: A tuple ``(status, value)`` where status is ``"path"`` for a
             resolved library, ``"missing"`` for an unresolved soname and
             ``""`` for anything else (vdso, static notes).
    """
    match = LDD_MAPPED.match(line)
    if match:
        soname, target = match.groups()
        target = target.strip()
        if target.startswith("/"):
            return "path", normalize(target)
        if target == "not found":
            return "missing", soname
        return "", ""

    match = LDD_DIRECT.match(line)
    if match:
        return "path", normalize(match.group(1))
    return "", ""


def parse_ldd_output(output: str) -> Dict[str, Set[str]]:
    """
    Parses ldd reports grouped under ``#path`` header lines.

    :return: Direct shared library dependencies per path; files that are not
             dynamically linked map to an empty set.
    """
    dependencies: Dict[str, Set[str]] = {}
    current = None
    for line in output.splitlines():
        if line.startswith("#"):
            current = normalize(line[1:])
            dependencies.setdefault(current, set())
            continue
        if current is None:
            continue

        status, value = parse_ldd_line(line)
        if status == "path":
            if value != current:
                dependencies[current].add(value)
        elif status == "missing":
            logger.warning("%s requires %s which is not installed in the source image", current, value)
    return dependencies


def parse_hardlinks_output(output: str) -> Dict[int, Set[str]]:
    """
    Groups multiply linked file names by inode.
    """
    groups: Dict[int, Set[str]] = {}
    for line in output.splitlines():
        inode, sep, path = line.partition("\t")
        if not sep or not inode.isdigit():
            continue
        groups.setdefault(int(inode), set()).add(normalize(path))
    return groups
