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
Unit tests for the materializer.
"""
import os
import stat
from contextlib import contextmanager

import pytest

from d2s.BUILDERS.materializer import Materializer
from d2s.errors import DockerError, MaterializationError
from d2s.MODELS.strip_request import StripRequest
from d2s.RUNNERS.dependency_resolver import FileClosureResolver


def tree(export_root):
    """All paths below the export root, as absolute image paths."""
    found = set()
    for dirpath, dirnames, filenames in os.walk(export_root):
        for name in dirnames + filenames:
            found.add("/" + os.path.relpath(os.path.join(dirpath, name), export_root))
    return found


@pytest.fixture
def source(make_fs, entries):
    return make_fs({
        "/lib": entries.link("usr/lib"),
        "/usr/bin/tool": entries.file(mode=0o750, elf=True, inode=7, links=2),
        "/usr/bin/tool-alias": entries.file(mode=0o750, elf=True, inode=7, links=2),
        "/usr/lib/libx.so.1": entries.link("libx.so.1.0"),
        "/usr/lib/libx.so.1.0": entries.file(b"library", mode=0o644, elf=True),
        "/etc/secret": entries.file(b"do not copy", mode=0o600),
        "/var/empty": entries.directory(mode=0o711),
    }, libraries={"/usr/bin/tool": {"/lib/libx.so.1"}})


def resolve(source, **fields):
    request = StripRequest(source_image="img", target_image="out", **fields)
    return FileClosureResolver(source).resolve(request)


class TestMaterializer:
    """Tests for Materializer."""

    def test_copies_exactly_the_resolved_paths(self, source, tmp_path):
        """Test that only resolved paths are written."""
        resolved = resolve(source, include_files=["/usr/bin/tool", "/var/empty"])
        export_root = str(tmp_path / "rootfs")

        written = Materializer(source).materialize(resolved, export_root)

        assert tree(export_root) == resolved.paths
        assert written == len(resolved)
        assert not os.path.exists(os.path.join(export_root, "etc"))

    def test_preserves_types_and_modes(self, source, tmp_path):
        """Test that file types and modes are kept."""
        resolved = resolve(source, include_files=["/usr/bin/tool", "/var/empty"])
        export_root = str(tmp_path / "rootfs")
        Materializer(source).materialize(resolved, export_root)

        lib = os.path.join(export_root, "lib")
        assert os.path.islink(lib)
        assert os.readlink(lib) == "usr/lib"
        assert os.readlink(os.path.join(export_root, "usr/lib/libx.so.1")) == "libx.so.1.0"

        tool = os.lstat(os.path.join(export_root, "usr/bin/tool"))
        assert stat.S_IMODE(tool.st_mode) == 0o750
        library = os.path.join(export_root, "usr/lib/libx.so.1.0")
        assert stat.S_IMODE(os.lstat(library).st_mode) == 0o644
        with open(library, "rb") as f:
            assert f.read() == b"library"

        empty = os.lstat(os.path.join(export_root, "var/empty"))
        assert stat.S_ISDIR(empty.st_mode)
        assert stat.S_IMODE(empty.st_mode) == 0o711

    def test_hard_links_stay_hard_links(self, source, tmp_path):
        """Test that hard links share an inode."""
        resolved = resolve(source, include_files=["/usr/bin/tool"])
        export_root = str(tmp_path / "rootfs")
        Materializer(source).materialize(resolved, export_root)

        tool = os.lstat(os.path.join(export_root, "usr/bin/tool"))
        alias = os.lstat(os.path.join(export_root, "usr/bin/tool-alias"))
        assert tool.st_ino == alias.st_ino

    def test_excluded_hard_link_name_still_supplies_the_data(self, make_fs, entries, tmp_path):
        """Test that a kept hard link survives exclusion of the name carrying its data."""
        source = make_fs({
            "/usr/bin/perl": entries.file(b"#!perl interpreter", mode=0o755, inode=9, links=2),
            "/usr/bin/perl5.36.0": entries.file(b"#!perl interpreter", mode=0o755, inode=9, links=2),
        })
        resolved = resolve(source, include_files=["/usr/bin/perl"], exclude_files=["/usr/bin/perl"])
        assert resolved.link_sources == {"/usr/bin/perl"}
        export_root = str(tmp_path / "rootfs")

        Materializer(source).materialize(resolved, export_root)

        kept = os.path.join(export_root, "usr/bin/perl5.36.0")
        with open(kept, "rb") as f:
            assert f.read() == b"#!perl interpreter"
        assert stat.S_IMODE(os.lstat(kept).st_mode) == 0o755
        assert not os.path.lexists(os.path.join(export_root, "usr/bin/perl"))
        assert tree(export_root) == resolved.paths
        assert os.listdir(tmp_path) == ["rootfs"]

    def test_every_kept_name_shares_the_excluded_inode(self, make_fs, entries, tmp_path):
        """Test that several kept names linked to an excluded leader stay one inode."""
        source = make_fs({
            "/opt/a": entries.file(b"data", mode=0o640, inode=4, links=3),
            "/opt/b": entries.file(b"data", mode=0o640, inode=4, links=3),
            "/opt/c": entries.file(b"data", mode=0o640, inode=4, links=3),
        })
        resolved = resolve(source, include_files=["/opt/b"], exclude_files=["/opt/a"])
        export_root = str(tmp_path / "rootfs")

        Materializer(source).materialize(resolved, export_root)

        b = os.lstat(os.path.join(export_root, "opt/b"))
        c = os.lstat(os.path.join(export_root, "opt/c"))
        assert b.st_ino == c.st_ino
        assert stat.S_IMODE(b.st_mode) == 0o640
        assert not os.path.lexists(os.path.join(export_root, "opt/a"))

    def test_missing_path_fails_and_cleans_up(self, source, tmp_path):
        """Test that a missing path removes the partial export."""
        resolved = resolve(source, include_files=["/usr/bin/tool"])
        export_root = str(tmp_path / "rootfs")
        del source.entries["/usr/lib/libx.so.1.0"]

        with pytest.raises(MaterializationError, match="libx.so.1.0"):
            Materializer(source).materialize(resolved, export_root)
        assert not os.path.exists(export_root)

    def test_export_failure_is_reported(self, source, tmp_path):
        """Test that export errors become materialization errors."""
        resolved = resolve(source, include_files=["/usr/bin/tool"])
        export_root = str(tmp_path / "rootfs")

        @contextmanager
        def broken_export():
            raise DockerError("export failed", stderr="no such container")
            yield

        source.export_stream = broken_export
        with pytest.raises(MaterializationError, match="export failed"):
            Materializer(source).materialize(resolved, export_root)
        assert not os.path.exists(export_root)

    def test_existing_export_root_is_refused(self, source, tmp_path):
        """Test that an existing export root is left alone."""
        resolved = resolve(source, include_files=["/usr/bin/tool"])
        export_root = tmp_path / "rootfs"
        export_root.mkdir()
        (export_root / "stale").write_text("left over")

        with pytest.raises(MaterializationError):
            Materializer(source).materialize(resolved, str(export_root))
        assert (export_root / "stale").exists()
