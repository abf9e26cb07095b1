"""
Resolution of requested packages and file patterns into a dependency-complete file closure.
"""
import fnmatch
import logging
from typing import Dict, Iterable, List, Set

from ..errors import ResolutionError, UnknownPackageError
from ..ISOLATION.source_filesystem import SourceFilesystem
from ..MODELS.path_entry import PathInfo, PathKind, ResolvedFileSet, ancestors, normalize
from ..MODELS.strip_request import StripRequest

logger = logging.getLogger(__name__)


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """
    Checks whether a path, or any directory above it, matches one of the glob patterns.
    """
    candidates = [path] + ancestors(path)
    for pattern in patterns:
        for candidate in candidates:
            if fnmatch.fnmatchcase(candidate, pattern):
                return True
    return False


class FileClosureResolver:
    """
    Turns a strip request into the set of paths its software needs to run.
    """
    def __init__(self, source: SourceFilesystem):
        """
        Initializes the resolver.

        :param source: The filesystem of the source image.
        """
        self.source = source
        # physical path -> logical names it was reached through
        self.aliases: Dict[str, Set[str]] = {}

    def resolve(self, request: StripRequest) -> ResolvedFileSet:
        """
        Computes the closure of a request.

        :param request: The validated request.
        :return: Every path required by the request minus the excluded ones.
        :raises UnknownPackageError: If a requested package is not installed.
        :raises ResolutionError: If a pattern matches nothing in strict mode.
        """
        packages = set(request.packages)
        if request.follow_package_dependencies:
            packages = self.expand_packages(packages)

        candidates: Set[str] = set()
        for package in sorted(packages):
            files = self.source.package_files(package)
            logger.info("Package %s owns %d paths", package, len(files))
            candidates.update(files)

        candidates.update(self.expand_patterns(request.include_files, request.strict_patterns))

        closure = self.chase(candidates)
        logger.info("Dependency closure holds %d paths", len(closure))

        kept = self.apply_exclusions(closure, request.exclude_files)
        return ResolvedFileSet(kept, link_sources=self.link_sources(closure, kept))

    def expand_packages(self, packages: Set[str]) -> Set[str]:
        """
        Adds the declared runtime dependencies of the packages, transitively.

        Dependencies the package manager does not know (virtual or not
        installed packages) are skipped; requested packages must exist.
        """
        resolved: Set[str] = set()
        pending = sorted(packages)
        requested = set(packages)
        while pending:
            package = pending.pop()
            if package in resolved:
                continue
            try:
                dependencies = self.source.package_dependencies(package)
            except UnknownPackageError:
                if package in requested:
                    raise
                logger.info("Skipping dependency %s, it is not installed", package)
                continue
            resolved.add(package)
            for dependency in sorted(dependencies - resolved):
                logger.debug("%s depends on %s", package, dependency)
                pending.append(dependency)
        return resolved

    def expand_patterns(self, patterns: Iterable[str], strict: bool = False) -> Set[str]:
        """
        Expands include patterns against the source filesystem.

        Matched directories contribute their whole subtree.
        """
        patterns = set(patterns)
        if not patterns:
            return set()

        matched: Set[str] = set()
        for pattern, found in sorted(self.source.glob(patterns).items()):
            if not found:
                if strict:
                    raise ResolutionError(f"Pattern {pattern} matched no files")
                logger.info("Pattern %s matched no files", pattern)
                continue
            logger.debug("Pattern %s matched %d paths", pattern, len(found))
            matched.update(normalize(p) for p in found)

        infos = self.source.describe(matched)
        directories = [p for p in matched if p in infos and infos[p].kind == PathKind.DIRECTORY]
        if directories:
            matched.update(self.source.walk(directories))
        return matched

    def chase(self, paths: Iterable[str]) -> Dict[str, PathInfo]:
        """
        Follows shared library dependencies, symlinks, parent directories and
        hard links until no new path turns up.

        :param paths: The starting paths.
        :return: The closure keyed by physical path.
        """
        closure: Dict[str, PathInfo] = {}
        described: Dict[str, PathInfo] = {}
        hardlinked: List[PathInfo] = []
        pending = {normalize(p) for p in paths}

        while pending:
            batch = set()
            for path in pending:
                if self.source.is_ignored(path):
                    continue
                batch.add(path)
                batch.update(ancestors(path))
            batch -= described.keys()
            if not batch:
                break

            infos = self.source.describe(batch)
            discovered: Set[str] = set()
            elf_files = []
            for path in sorted(batch):
                info = infos.get(path)
                if info is None or not info.exists:
                    described[path] = info or PathInfo(path=path, kind=PathKind.MISSING, physical=path)
                    logger.debug("Skipping missing path %s", path)
                    continue
                described[path] = info

                if info.physical != path:
                    # reached through a symlinked parent directory
                    self.aliases.setdefault(info.physical, set()).add(path)
                    discovered.add(info.physical)
                    continue

                closure[path] = info
                if info.kind == PathKind.LINK and info.link_target:
                    discovered.add(info.link_target)
                elif info.kind == PathKind.FILE:
                    if info.is_elf:
                        elf_files.append(path)
                    if info.links > 1:
                        hardlinked.append(info)

            if elf_files:
                for path, libraries in self.source.shared_libraries(elf_files).items():
                    for library in libraries:
                        logger.debug("%s needs %s", path, library)
                    discovered.update(libraries)

            if hardlinked:
                discovered.update(self._hardlink_siblings(hardlinked))
                hardlinked = []

            pending = {p for p in discovered if p not in described}

        return closure

    def _hardlink_siblings(self, infos: List[PathInfo]) -> Set[str]:
        groups = self.source.hardlink_groups()
        siblings: Set[str] = set()
        for info in infos:
            names = groups.get(info.inode) if info.inode is not None else None
            if names:
                siblings.update(names)
        return siblings

    @staticmethod
    def link_sources(closure: Dict[str, PathInfo], kept: Dict[str, PathInfo]) -> Set[str]:
        """
        Finds excluded files sharing an inode with a kept hard link.

        The export stream may carry the data under one of these names only.
        """
        inodes = {
            info.inode for info in kept.values()
            if info.kind == PathKind.FILE and info.links > 1 and info.inode is not None
        }
        return {
            path for path, info in closure.items()
            if path not in kept and info.kind == PathKind.FILE and info.inode in inodes
        }

    def apply_exclusions(self, closure: Dict[str, PathInfo], patterns: Iterable[str]) -> Dict[str, PathInfo]:
        """
        Removes every path matching an exclusion pattern, under its physical
        name or any name it was reached through.
        """
        patterns = sorted(set(patterns))
        if not patterns:
            return dict(closure)

        kept = {}
        for path, info in closure.items():
            names = [path, *sorted(self.aliases.get(path, ()))]
            if any(matches_any(name, patterns) for name in names):
                logger.debug("Excluding %s", path)
                continue
            kept[path] = info
        logger.info("Excluded %d paths", len(closure) - len(kept))
        return kept
