"""
Per-run scratch space holding the export root and the image build context.
"""
import logging
import os
import shutil
import tempfile
from typing import Optional

logger = logging.getLogger(__name__)


class BuildContext:
    """
    A process-unique working directory, removed when the run ends however it ends.

    Layout::

        <path>/rootfs/              the export root
        <path>/context/Dockerfile   the image definition
        <path>/context/rootfs.tar   the packed export root
    """

    def __init__(self, work_dir: Optional[str] = None, keep: bool = False):
        """
        :param work_dir: Parent directory, defaults to the system temporary directory.
        :param keep: Leave the directory in place for debugging.
        """
        self.work_dir = work_dir
        self.keep = keep
        self.path: Optional[str] = None

    def __enter__(self) -> "BuildContext":
        if self.work_dir:
            os.makedirs(self.work_dir, exist_ok=True)
        self.path = tempfile.mkdtemp(prefix="d2s-", dir=self.work_dir)
        os.makedirs(self.context_dir)
        logger.debug("Created build context %s", self.path)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()

    def _require(self) -> str:
        if self.path is None:
            raise RuntimeError("BuildContext is not active")
        return self.path

    @property
    def export_root(self) -> str:
        return os.path.join(self._require(), "rootfs")

    @property
    def context_dir(self) -> str:
        return os.path.join(self._require(), "context")

    @property
    def dockerfile(self) -> str:
        return os.path.join(self.context_dir, "Dockerfile")

    def payload(self, name: str = "rootfs.tar") -> str:
        return os.path.join(self.context_dir, name)

    def cleanup(self) -> None:
        if self.path is None:
            return
        path, self.path = self.path, None
        if self.keep:
            logger.info("Keeping build context %s", path)
            return

        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning("Failed to remove build context %s: %s", path, e)
            return
        logger.debug("Removed build context %s", path)
