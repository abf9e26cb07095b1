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
Thin wrapper around the docker command line.

Every call builds an argument list and runs it without a shell, so no quoting
or escaping ever leaks into the callers.
"""
import json
import logging
import shutil
import subprocess
import uuid
from contextlib import contextmanager
from typing import IO, Any, Dict, Iterator, Optional, Sequence, Tuple

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..errors import ConfigurationError, DockerError

logger = logging.getLogger(__name__)

# (host path, container path, read only)
Mount = Tuple[str, str, bool]

_transient = dict(
    retry=retry_if_exception_type(DockerError),
    stop=stop_after_attempt(3),
    wait=wait_fixed(1),
    reraise=True,
)


class DockerClient:
    """
    Runs docker commands for the pipeline.
    """

    def __init__(self, binary: str = "docker", timeout: Optional[float] = 600):
        """
        Args:
            binary (str): Name or path of the docker executable.
            timeout (Optional[float]): Seconds a single command may take, None to wait forever.
        """
        self.binary = binary
        self.timeout = timeout

    def ensure_available(self) -> None:
        """
        Verifies the docker executable can be found.

        Raises:
            ConfigurationError: If docker is not installed.
        """
        if not shutil.which(self.binary):
            raise ConfigurationError(f"Container engine '{self.binary}' not found. Please install Docker.")

    def _run(self,
             args: Sequence[str],
             input: Optional[bytes] = None,
             timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        logger.debug("Running: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                input=input,
                capture_output=True,
                timeout=timeout if timeout is not None else self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise DockerError(f"Command timed out: {' '.join(command)}") from e
        except OSError as e:
            raise DockerError(f"Failed to execute {self.binary}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            raise DockerError(
                f"'{' '.join(command[:3])}' failed with exit code {result.returncode}: {stderr}",
                stderr=stderr,
            )
        return result

    def run_detached(self,
                     image: str,
                     mounts: Sequence[Mount] = (),
                     entrypoint: Optional[str] = None,
                     args: Sequence[str] = (),
                     name: Optional[str] = None) -> str:
        """
        Starts a container in the background.

        Args:
            image (str): Image to run.
            mounts (Sequence[Mount]): Bind mounts as (host, container, read_only).
            entrypoint (Optional[str]): Overrides the image entrypoint.
            args (Sequence[str]): Command arguments.
            name (Optional[str]): Container name, generated when omitted.

        Returns:
            str: The container name.
        """
        name = name or f"d2s-{uuid.uuid4().hex[:12]}"
        command = ["run", "--detach", "--name", name, "--user", "0", "--network", "none"]
        for host, target, read_only in mounts:
            spec = f"type=bind,source={host},target={target}"
            if read_only:
                spec += ",readonly"
            command += ["--mount", spec]
        if entrypoint is not None:
            command += ["--entrypoint", entrypoint]
        command += [image, *args]
        self._run(command)
        logger.debug("Started container %s from %s", name, image)
        return name

    def exec(self,
             container: str,
             argv: Sequence[str],
             input: Optional[bytes] = None,
             check: bool = True) -> subprocess.CompletedProcess:
        """
        Runs a command inside a running container.

        Args:
            container (str): Container name.
            argv (Sequence[str]): Command and arguments.
            input (Optional[bytes]): Data fed to the command's stdin.
            check (bool): Raise DockerError on a non-zero exit status.

        Returns:
            subprocess.CompletedProcess: The finished command with captured output.
        """
        command = ["exec"]
        if input is not None:
            command.append("--interactive")
        command += [container, *argv]
        if check:
            return self._run(command, input=input)

        full = [self.binary, *command]
        logger.debug("Running: %s", " ".join(full))
        try:
            return subprocess.run(full, input=input, capture_output=True, timeout=self.timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise DockerError(f"Command timed out: {' '.join(full)}") from e

    @retry(**_transient)
    def remove(self, container: str) -> None:
        """Force-removes a container and its anonymous volumes."""
        self._run(["rm", "--force", "--volumes", container], timeout=60)
        logger.debug("Removed container %s", container)

    @retry(**_transient)
    def inspect_config(self, image: str) -> Dict[str, Any]:
        """
        Returns the ``Config`` section of an image.

        Raises:
            DockerError: If the image cannot be inspected.
        """
        result = self._run(["image", "inspect", "--format", "{{json .Config}}", image], timeout=60)
        try:
            config = json.loads(result.stdout.decode("utf-8"))
        except json.JSONDecodeError as e:
            raise DockerError(f"Unexpected inspect output for {image}: {e}") from e
        return config or {}

    @contextmanager
    def export(self, container: str) -> Iterator[IO[bytes]]:
        """
        Streams the filesystem of a container as an uncompressed tar archive.

        The exit status of the export is checked when the block ends.
        """
        command = [self.binary, "export", container]
        logger.debug("Running: %s", " ".join(command))
        process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            yield process.stdout
            # drain the end-of-archive padding the reader did not consume
            while process.stdout.read(65536):
                pass
        except BaseException:
            process.kill()
            process.wait()
            raise
        finally:
            process.stdout.close()

        stderr = process.stderr.read().decode("utf-8", "replace").strip()
        process.stderr.close()
        if process.wait() != 0:
            raise DockerError(f"Exporting container {container} failed: {stderr}", stderr=stderr)

    def build(self, context_dir: str, tag: str, no_cache: bool = True) -> str:
        """
        Builds and tags an image from a build context.

        Args:
            context_dir (str): Directory holding the Dockerfile and payload.
            tag (str): Tag for the resulting image.
            no_cache (bool): Never reuse cached layers.

        Returns:
            str: The combined build output.
        """
        command = ["build", "--pull=false", "--tag", tag]
        if no_cache:
            command.append("--no-cache")
        command.append(context_dir)
        result = self._run(command, timeout=None)
        return (result.stdout + result.stderr).decode("utf-8", "replace")
