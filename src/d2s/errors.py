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
Exception hierarchy shared by every stage of the stripping pipeline.
"""


class D2SError(Exception):
    """Base class for all errors raised by d2s."""


class ConfigurationError(D2SError, ValueError):
    """The request is invalid or a required tool is missing."""


class DockerError(D2SError):
    """A container engine command failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class ResolutionError(D2SError):
    """The file closure could not be computed."""


class UnknownPackageError(ResolutionError):
    """The package manager of the source image does not know a package."""

    def __init__(self, package: str):
        super().__init__(f"Package '{package}' is not installed in the source image")
        self.package = package


class MaterializationError(D2SError):
    """Copying the resolved files into the export root failed."""


class CompressionError(D2SError):
    """A single file could not be compressed."""


class AssemblyError(D2SError):
    """Building the target image failed."""

    def __init__(self, message: str, diagnostic: str = ""):
        super().__init__(message)
        self.diagnostic = diagnostic
