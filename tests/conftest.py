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
Shared fixtures: an in-memory source filesystem and a scripted docker client.
"""
import fnmatch
import io
import os
import posixpath
import subprocess
import tarfile
from contextlib import contextmanager
from types import SimpleNamespace

import pytest

from d2s.errors import UnknownPackageError
from d2s.ISOLATION.source_filesystem import SourceFilesystem
from d2s.MODELS.path_entry import PathInfo, PathKind, ancestors, normalize

# Smallest header classify() accepts: 64-bit, little endian, ET_DYN
ELF_HEADER = b"\x7fELF\x02\x01\x01" + b"\x00" * 9 + b"\x03\x00"


def file(data=b"", mode=0o644, elf=False, inode=None, links=1):
    if elf and not data:
        data = ELF_HEADER + b"\x00" * 64
    return {"kind": "file", "data": data, "mode": mode, "elf": elf, "inode": inode, "links": links}


def directory(mode=0o755):
    return {"kind": "dir", "mode": mode}


def link(target):
    return {"kind": "link", "target": target}


class FakeFilesystem(SourceFilesystem):
    """
    A source filesystem described by a dict of physical paths.

    Missing parent directories are added automatically.
    """

    def __init__(self, entries, packages=None, dependencies=None, libraries=None):
        self.entries = dict(entries)
        for path in list(self.entries):
            for parent in ancestors(path):
                self.entries.setdefault(parent, directory())
        self.packages = packages or {}
        self.dependencies = dependencies or {}
        self.libraries = libraries or {}
        self.described = []
        self.entered = False
        self.exited = False

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.exited = True

    def _physical(self, path):
        if path == "/":
            return "/"
        parent = self._real(posixpath.dirname(path))
        return posixpath.join(parent, posixpath.basename(path))

    def _real(self, path):
        path = self._physical(path)
        entry = self.entries.get(path)
        if entry and entry["kind"] == "link":
            return self._real(normalize(posixpath.join(posixpath.dirname(path), entry["target"])))
        return path

    def package_files(self, package):
        if package not in self.packages:
            raise UnknownPackageError(package)
        return set(self.packages[package])

    def package_dependencies(self, package):
        if package not in self.packages:
            raise UnknownPackageError(package)
        return set(self.dependencies.get(package, ()))

    def glob(self, patterns):
        results = {}
        for pattern in patterns:
            results[pattern] = {
                p for p in self.entries
                if p.count("/") == pattern.count("/") and fnmatch.fnmatchcase(p, pattern)
            }
        return results

    def describe(self, paths):
        paths = list(paths)
        self.described.extend(paths)
        infos = {}
        for path in paths:
            physical = self._physical(path)
            entry = self.entries.get(physical)
            if entry is None:
                infos[path] = PathInfo(path=path, kind=PathKind.MISSING, physical=physical)
                continue
            kind = PathKind(entry["kind"])
            target = None
            if kind == PathKind.LINK:
                target = normalize(posixpath.join(posixpath.dirname(physical), entry["target"]))
            infos[path] = PathInfo(
                path=path,
                kind=kind,
                physical=physical,
                link_target=target,
                is_elf=entry.get("elf", False),
                inode=entry.get("inode"),
                links=entry.get("links", 1),
            )
        return infos

    def shared_libraries(self, paths):
        return {p: set(self.libraries.get(p, ())) for p in paths}

    def walk(self, directories):
        found = set()
        for d in directories:
            found.update(p for p in self.entries if p == d or p.startswith(d + "/"))
        return found

    def hardlink_groups(self):
        groups = {}
        for path, entry in self.entries.items():
            if entry.get("links", 1) > 1 and entry.get("inode") is not None:
                groups.setdefault(entry["inode"], set()).add(path)
        return groups

    def tar_bytes(self):
        buffer = io.BytesIO()
        first_name = {}
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for path in sorted(self.entries):
                entry = self.entries[path]
                info = tarfile.TarInfo(path.lstrip("/"))
                data = None
                if entry["kind"] == "dir":
                    info.type = tarfile.DIRTYPE
                    info.mode = entry["mode"]
                elif entry["kind"] == "link":
                    info.type = tarfile.SYMTYPE
                    info.linkname = entry["target"]
                    info.mode = 0o777
                else:
                    inode = entry.get("inode")
                    info.mode = entry["mode"]
                    if inode is not None and inode in first_name:
                        info.type = tarfile.LNKTYPE
                        info.linkname = first_name[inode]
                    else:
                        if inode is not None:
                            first_name[inode] = info.name
                        data = entry["data"]
                        info.size = len(data)
                tar.addfile(info, io.BytesIO(data) if data is not None else None)
        return buffer.getvalue()

    @contextmanager
    def export_stream(self):
        yield io.BytesIO(self.tar_bytes())


class FakeDocker:
    """
    Records docker calls; exec results are scripted per probe operation.
    """

    def __init__(self, config=None, probe=None):
        self.config = config or {}
        self.probe = probe or {}
        self.calls = []
        self.builds = []
        self.build_error = None
        self.inspect_error = None

    def ensure_available(self):
        self.calls.append(("ensure_available",))

    def inspect_config(self, image):
        self.calls.append(("inspect", image))
        if self.inspect_error:
            raise self.inspect_error
        return self.config

    def run_detached(self, image, mounts=(), entrypoint=None, args=(), name=None):
        self.calls.append(("run", image, tuple(mounts), entrypoint, tuple(args)))
        return "d2s-test"

    def exec(self, container, argv, input=None, check=True):
        operation = argv[2]
        self.calls.append(("exec", container, tuple(argv), input))
        returncode, stdout, stderr = self.probe.get(operation, (0, "", ""))
        return subprocess.CompletedProcess(argv, returncode, stdout.encode(), stderr.encode())

    def remove(self, container):
        self.calls.append(("remove", container))

    def build(self, context_dir, tag, no_cache=True):
        with open(os.path.join(context_dir, "Dockerfile")) as f:
            dockerfile = f.read()
        with tarfile.open(os.path.join(context_dir, "rootfs.tar")) as tar:
            names = sorted(tar.getnames())
        self.builds.append({"tag": tag, "no_cache": no_cache, "dockerfile": dockerfile, "names": names})
        if self.build_error:
            raise self.build_error
        return "Successfully built"


@pytest.fixture
def fake_docker():
    return FakeDocker(config={"ExposedPorts": {"80/tcp": {}}, "Entrypoint": ["/usr/bin/curl"], "Cmd": None})


@pytest.fixture
def curl_image():
    """A Debian-like image with curl, its libraries and some unrelated content."""
    lib = "/usr/lib/x86_64-linux-gnu"
    return FakeFilesystem(
        {
            "/lib": link("usr/lib"),
            "/lib64": link("usr/lib64"),
            "/usr/bin/curl": file(mode=0o755, elf=True),
            "/usr/bin/bash": file(mode=0o755, elf=True),
            f"{lib}/libcurl.so.4": link("libcurl.so.4.8.0"),
            f"{lib}/libcurl.so.4.8.0": file(elf=True),
            f"{lib}/libssl.so.3": file(elf=True),
            f"{lib}/libc.so.6": file(mode=0o755, elf=True),
            f"{lib}/libtinfo.so.6": file(elf=True),
            "/usr/lib64/ld-linux-x86-64.so.2": file(mode=0o755, elf=True),
            "/usr/share/doc/curl/copyright": file(b"MIT"),
            "/etc/passwd": file(b"root:x:0:0::/root:/bin/sh\n"),
            "/etc/ssl/certs/ca-certificates.crt": file(b"-----BEGIN CERTIFICATE-----\n"),
        },
        packages={
            "curl": {"/usr/bin/curl", "/usr/share/doc/curl", "/usr/share/doc/curl/copyright"},
            "libcurl4": {f"{lib}/libcurl.so.4", f"{lib}/libcurl.so.4.8.0"},
            "bash": {"/usr/bin/bash"},
        },
        dependencies={
            "curl": {"libcurl4", "libc6"},
        },
        libraries={
            "/usr/bin/curl": {
                "/lib/x86_64-linux-gnu/libcurl.so.4",
                "/lib/x86_64-linux-gnu/libc.so.6",
                "/lib64/ld-linux-x86-64.so.2",
            },
            f"{lib}/libcurl.so.4.8.0": {
                "/lib/x86_64-linux-gnu/libssl.so.3",
                "/lib/x86_64-linux-gnu/libc.so.6",
            },
            f"{lib}/libssl.so.3": {"/lib/x86_64-linux-gnu/libc.so.6"},
            f"{lib}/libc.so.6": {"/lib64/ld-linux-x86-64.so.2"},
            "/usr/bin/bash": {"/lib/x86_64-linux-gnu/libtinfo.so.6"},
        },
    )


@pytest.fixture
def make_fs():
    return FakeFilesystem


@pytest.fixture
def entries():
    """Builders for FakeFilesystem entries."""
    return SimpleNamespace(file=file, directory=directory, link=link, elf_header=ELF_HEADER)
