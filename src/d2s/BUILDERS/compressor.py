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
Optional in-place compression of executables and shared libraries in the export root.
"""

import logging
import os
import shutil
import stat
import subprocess
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import psutil

from ..errors import CompressionError, ConfigurationError
from ..UTILS.elf import classify

logger = logging.getLogger(__name__)


def available_cpus() -> int:
    """
    Number of processing units this process may run on.
    """
    try:
        return len(psutil.Process().cpu_affinity()) or 1
    except (AttributeError, NotImplementedError, psutil.Error, OSError):
        # cpu_affinity is not available on every platform
        return psutil.cpu_count() or 1


class UpxCompressor:
    """
    Rewrites a binary in place into a self-decompressing UPX executable.
    """

    # UPX exits with 2 for warnings such as "AlreadyPackedException"
    WARNING_EXIT_CODE = 2

    def __init__(self, binary: str = "upx", args: Sequence[str] = ("--best",), timeout: Optional[float] = 600):
        """
        Args:
            binary (str): Name or path of the upx executable.
            args (Sequence[str]): Extra compression options.
            timeout (Optional[float]): Seconds a single file may take.
        """
        self.binary = binary
        self.args = list(args)
        self.timeout = timeout

    def ensure_available(self) -> None:
        """
        Raises:
            ConfigurationError: If upx is not installed.
        """
        if not shutil.which(self.binary):
            raise ConfigurationError(f"Compression requested but '{self.binary}' was not found")

    def compress(self, path: str) -> bool:
        """
        Compresses a file in place.

        Returns:
            bool: True if the file was compressed, False if UPX skipped it.

        Raises:
            CompressionError: If UPX failed; the file is left as it was.
        """
        command = [self.binary, "-q", *self.args, path]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CompressionError(f"{path}: {e}") from e

        if result.returncode == 0:
            return True
        output = (result.stderr or result.stdout).strip()
        if result.returncode == self.WARNING_EXIT_CODE:
            logger.debug("upx skipped %s: %s", path, output)
            return False
        raise CompressionError(f"{path}: {output or f'upx exited with {result.returncode}'}")


@dataclass
class CompressionReport:
    """Outcome of a compression pass."""

    compressed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    bytes_before: int = 0
    bytes_after: int = 0

    @property
    def saved(self) -> int:
        return self.bytes_before - self.bytes_after


class CompressionPass:
    """
    Compresses every ELF executable and shared library of an export root on a
    worker pool, one file per task.
    """

    def __init__(self, compressor: UpxCompressor, workers: Optional[int] = None):
        """
        Args:
            compressor (UpxCompressor): Tool used on each file.
            workers (Optional[int]): Pool size, defaults to the available processing units.
        """
        self.compressor = compressor
        self.workers = workers or available_cpus()

    def candidates(self, export_root: str) -> List[str]:
        """
        Lists regular ELF files below the export root, one path per inode.

        Symlinks are never followed or returned.
        """
        found = []
        seen = set()
        for dirpath, dirnames, filenames in os.walk(export_root):
            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                st = os.lstat(path)
                if not stat.S_ISREG(st.st_mode):
                    continue
                key = (st.st_dev, st.st_ino)
                if key in seen:
                    continue
                seen.add(key)
                if classify(path) is not None:
                    found.append(path)
        return found

    def run(self, export_root: str) -> CompressionReport:
        """
        Runs the pass. Per-file failures are logged and recorded, never raised.
        """
        report = CompressionReport()
        paths = self.candidates(export_root)
        if not paths:
            logger.info("No executables or shared libraries to compress")
            return report

        logger.info("Compressing %d files with %d workers", len(paths), self.workers)
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(self.compress_file, path): path for path in paths}
            for future in as_completed(futures):
                path = futures[future]
                relative = "/" + os.path.relpath(path, export_root)
                try:
                    compressed, before, after = future.result()
                except (CompressionError, OSError) as e:
                    logger.warning("Leaving %s uncompressed: %s", relative, e)
                    report.failed[relative] = str(e)
                    continue

                report.bytes_before += before
                report.bytes_after += after
                if compressed:
                    logger.debug("Compressed %s: %d -> %d bytes", relative, before, after)
                    report.compressed.append(relative)
                else:
                    report.skipped.append(relative)

        report.compressed.sort()
        report.skipped.sort()
        logger.info(
            "Compressed %d files, saved %d bytes, %d failed",
            len(report.compressed), report.saved, len(report.failed),
        )
        return report

    def compress_file(self, path: str):
        """
        Compresses one file, granting execute permission for the duration if
        it lacks it. Mode and ownership are restored afterwards in every case.

        Returns:
            tuple: (compressed, size before, size after)
        """
        st = os.lstat(path)
        mode = stat.S_IMODE(st.st_mode)
        try:
            if not mode & stat.S_IXUSR:
                os.chmod(path, mode | stat.S_IXUSR)
            compressed = self.compressor.compress(path)
        finally:
            current = os.lstat(path)
            if (current.st_uid, current.st_gid) != (st.st_uid, st.st_gid):
                os.chown(path, st.st_uid, st.st_gid)
            os.chmod(path, mode)
        return compressed, st.st_size, os.lstat(path).st_size
