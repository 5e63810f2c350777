"""Tests for distribution acquisition, resolution and handles"""

import hashlib
import io
import json
import marshal
import pathlib
import shutil
import sys
import tarfile
import zipfile
from unittest.mock import Mock, patch

import pytest

from conftest import LINUX_TRIPLE, make_archive, make_distribution
from python_embedder.bytecode import BytecodeOptimizationLevel, CompileMode
from python_embedder.distribution import (
    DistributionFlavor,
    DistributionHandle,
    DistributionLocation,
    DistributionRegistry,
    ResolvedDistribution,
    default_distribution_location,
    default_registry,
    fetch_and_verify,
    resolve_cache_root,
)
from python_embedder.errors import AcquisitionError, CompilationError, InvalidArgumentError


@pytest.fixture
def archive(tmp_path, dist_root):
    """A tar.gz of the fake distribution and its sha256"""
    path = tmp_path / "cpython-3.10.9.tar.gz"
    return path, make_archive(dist_root, path)


@pytest.fixture
def registry_file(tmp_path):
    path = tmp_path / "distributions.json"
    path.write_text(
        json.dumps(
            {
                "distributions": [
                    {
                        "python_major_minor_version": "3.10",
                        "flavor": "standalone",
                        "target_triple": LINUX_TRIPLE,
                        "url": "https://example.invalid/cpython-3.10-linux.tar.gz",
                        "sha256": "aa" * 32,
                    },
                    {
                        "python_major_minor_version": "3.11",
                        "flavor": "standalone",
                        "target_triple": LINUX_TRIPLE,
                        "url": "https://example.invalid/cpython-3.11-linux.tar.gz",
                        "sha256": "bb" * 32,
                    },
                ]
            }
        )
    )
    return path


class TestDistributionLocation:
    """Tests for DistributionLocation validation"""

    def test_both_sources_rejected(self):
        with pytest.raises(InvalidArgumentError, match="cannot define both local_path and url"):
            DistributionLocation(sha256="aa", local_path="/x.tar.gz", url="https://x")

    def test_no_source_rejected(self):
        with pytest.raises(InvalidArgumentError, match="must define one of local_path or url"):
            DistributionLocation(sha256="aa")

    def test_sha256_required(self):
        with pytest.raises(InvalidArgumentError):
            DistributionLocation.remote("https://x/y.tar.gz", "")

    def test_archive_name(self):
        loc = DistributionLocation.remote("https://example.invalid/a/cpython.tar.zst?x=1", "aa")
        assert loc.archive_name == "cpython.tar.zst"

    def test_flavor_from_name(self):
        assert DistributionFlavor.from_name("standalone_dynamic") is DistributionFlavor.STANDALONE_DYNAMIC
        with pytest.raises(InvalidArgumentError):
            DistributionFlavor.from_name("conda")


class TestRegistry:
    """Tests for the distribution registry"""

    def test_from_json_and_find(self, registry_file):
        reg = DistributionRegistry.from_json(registry_file)
        rec = reg.find(LINUX_TRIPLE, DistributionFlavor.STANDALONE, "3.11.4")
        assert rec is not None
        assert rec.location.sha256 == "bb" * 32

    def test_find_without_version_prefers_first(self, registry_file):
        reg = DistributionRegistry.from_json(registry_file)
        assert reg.find(LINUX_TRIPLE, DistributionFlavor.STANDALONE).python_major_minor_version == "3.10"

    def test_find_no_match(self, registry_file):
        reg = DistributionRegistry.from_json(registry_file)
        assert reg.find("aarch64-apple-darwin", DistributionFlavor.STANDALONE) is None
        assert reg.find(LINUX_TRIPLE, DistributionFlavor.STANDALONE_STATIC) is None

    def test_malformed(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"distributions": [{"flavor": "standalone"}]}')
        with pytest.raises(AcquisitionError):
            DistributionRegistry.from_json(path)

    def test_environment(self, registry_file, monkeypatch):
        monkeypatch.delenv("PYTHON_EMBEDDER_DISTRIBUTIONS", raising=False)
        assert DistributionRegistry.from_environment().records == ()
        monkeypatch.setenv("PYTHON_EMBEDDER_DISTRIBUTIONS", str(registry_file))
        assert len(DistributionRegistry.from_environment().records) == 2

    def test_default_registry_read_on_first_use(self, registry_file, tmp_path, monkeypatch):
        default_registry.cache_clear()
        monkeypatch.setenv("PYTHON_EMBEDDER_DISTRIBUTIONS", str(tmp_path / "missing.json"))
        try:
            with pytest.raises(AcquisitionError):
                default_registry()
            monkeypatch.setenv("PYTHON_EMBEDDER_DISTRIBUTIONS", str(registry_file))
            first = default_registry()
            assert len(first.records) == 2
            monkeypatch.delenv("PYTHON_EMBEDDER_DISTRIBUTIONS")
            assert default_registry() is first
        finally:
            default_registry.cache_clear()

    def test_default_location_missing(self):
        with pytest.raises(AcquisitionError, match="could not find default Python distribution"):
            default_distribution_location(
                DistributionFlavor.STANDALONE, LINUX_TRIPLE, "3.10", registry=DistributionRegistry()
            )


class TestCacheRoot:
    """Tests for cache root resolution"""

    def test_explicit(self, tmp_path):
        assert resolve_cache_root(tmp_path / "c") == tmp_path / "c"
        assert (tmp_path / "c").is_dir()

    def test_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PYTHON_EMBEDDER_CACHE_DIR", str(tmp_path / "env"))
        assert resolve_cache_root(None) == tmp_path / "env"


class TestFetchAndVerify:
    """Tests for archive acquisition"""

    def test_local_tar(self, tmp_path, archive, logger):
        path, sha = archive
        out = fetch_and_verify(DistributionLocation.local(path, sha), tmp_path / "cache", logger=logger)
        assert out == tmp_path / "cache" / sha[0:12]
        assert (out / "python" / "PYTHON.json").is_file()
        assert (out / ".ok").is_file()

    def test_cache_hit_skips_extraction(self, tmp_path, archive, logger):
        path, sha = archive
        loc = DistributionLocation.local(path, sha.upper())
        fetch_and_verify(loc, tmp_path / "cache", logger=logger)
        with patch("python_embedder.distribution._extract_archive") as extract:
            fetch_and_verify(loc, tmp_path / "cache", logger=logger)
        extract.assert_not_called()

    def test_hash_mismatch(self, tmp_path, archive, logger):
        path, _ = archive
        with pytest.raises(AcquisitionError, match="sha256 mismatch"):
            fetch_and_verify(DistributionLocation.local(path, "00" * 32), tmp_path / "cache", logger=logger)

    def test_missing_local_archive(self, tmp_path, logger):
        with pytest.raises(AcquisitionError, match="does not exist"):
            fetch_and_verify(
                DistributionLocation.local(tmp_path / "nope.tar.gz", "00" * 32), tmp_path / "cache", logger=logger
            )

    def test_download(self, tmp_path, archive, logger):
        path, sha = archive

        def fake_urlretrieve(url, filename):
            shutil.copyfile(path, filename)

        loc = DistributionLocation.remote("https://example.invalid/dist/cpython.tar.gz", sha)
        with patch("python_embedder.distribution.urllib.request.urlretrieve", side_effect=fake_urlretrieve) as dl:
            out = fetch_and_verify(loc, tmp_path / "cache", logger=logger)
        dl.assert_called_once()
        assert (tmp_path / "cache" / "downloads" / "cpython.tar.gz").is_file()
        assert (out / "python" / "PYTHON.json").is_file()

    def test_download_failure(self, tmp_path, logger):
        loc = DistributionLocation.remote("https://example.invalid/cpython.tar.gz", "aa" * 32)
        with patch("python_embedder.distribution.urllib.request.urlretrieve", side_effect=OSError("offline")):
            with pytest.raises(AcquisitionError, match="failed to download"):
                fetch_and_verify(loc, tmp_path / "cache", logger=logger)

    def test_zip_archive(self, tmp_path, dist_root, logger):
        path = tmp_path / "dist.zip"
        with zipfile.ZipFile(path, "w") as zf:
            for p in sorted((dist_root / "python").rglob("*")):
                if p.is_file():
                    zf.write(p, arcname=str(p.relative_to(dist_root)))
        sha = hashlib.sha256(path.read_bytes()).hexdigest()
        out = fetch_and_verify(DistributionLocation.local(path, sha), tmp_path / "cache", logger=logger)
        assert (out / "python" / "PYTHON.json").is_file()

    def test_rejects_escaping_members(self, tmp_path, logger):
        path = tmp_path / "evil.tar"
        with tarfile.open(path, "w") as tf:
            data = b"owned"
            info = tarfile.TarInfo("../evil.txt")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        sha = hashlib.sha256(path.read_bytes()).hexdigest()
        with pytest.raises(AcquisitionError, match="unsafe path"):
            fetch_and_verify(DistributionLocation.local(path, sha), tmp_path / "cache", logger=logger)
        assert not (tmp_path / "cache" / "evil.txt").exists()

    def test_unsupported_archive(self, tmp_path, logger):
        path = tmp_path / "dist.bin"
        path.write_bytes(b"not an archive")
        sha = hashlib.sha256(b"not an archive").hexdigest()
        with pytest.raises(AcquisitionError, match="unsupported distribution archive"):
            fetch_and_verify(DistributionLocation.local(path, sha), tmp_path / "cache", logger=logger)


class TestResolvedDistribution:
    """Tests for reading PYTHON.json"""

    def test_metadata(self, dist_root):
        dist = ResolvedDistribution.from_directory(dist_root, DistributionFlavor.STANDALONE)
        assert dist.python_version == "3.10.9"
        assert dist.python_major_minor_version == "3.10"
        assert dist.cache_tag == "cpython-310"
        assert dist.target_triple == LINUX_TRIPLE
        assert dist.python_exe == pathlib.Path(sys.executable)
        assert dist.stdlib_path == dist_root / "python" / "install" / "lib" / "python3.10"
        assert dist.supports_shared_library_loading() is True
        assert dist.supports_in_memory_shared_library_loading() is False

    def test_windows_dynamic_loads_from_memory(self, tmp_path):
        root = make_distribution(tmp_path / "win", target_triple="x86_64-pc-windows-msvc")
        dist = ResolvedDistribution.from_directory(root, DistributionFlavor.STANDALONE_DYNAMIC)
        assert dist.supports_in_memory_shared_library_loading() is True
        assert dist.create_interpreter_config().raw_allocator.value == "system"

    def test_static_flavor_forces_static_link_mode(self, tmp_path):
        root = make_distribution(tmp_path / "d", link_mode="shared")
        dist = ResolvedDistribution.from_directory(root, DistributionFlavor.STANDALONE_STATIC)
        assert dist.libpython_link_mode == "static"

    def test_source_modules(self, dist_root):
        dist = ResolvedDistribution.from_directory(dist_root, DistributionFlavor.STANDALONE)
        modules = dist.source_modules()
        assert [m.name for m in modules] == ["os", "json", "json.decoder", "test", "test.test_os"]
        assert all(m.is_stdlib for m in modules)
        assert [m.name for m in modules if m.is_test] == ["test", "test.test_os"]
        assert modules[1].is_package is True

    def test_package_resources(self, dist_root):
        dist = ResolvedDistribution.from_directory(dist_root, DistributionFlavor.STANDALONE)
        assert [r.identity_name for r in dist.package_resources()] == ["json:schema.txt"]
        assert [r.identity_name for r in dist.package_resources(include_test=True)] == [
            "json:schema.txt",
            "test:data.bin",
        ]

    def test_extension_modules(self, dist_root):
        dist = ResolvedDistribution.from_directory(dist_root, DistributionFlavor.STANDALONE)
        exts = {e.name: e for e in dist.extension_modules()}
        assert sorted(exts) == ["_io", "_json", "_ssl"]
        assert exts["_io"].required is True
        assert exts["_io"].is_builtin is True
        assert exts["_ssl"].is_builtin is False
        assert exts["_ssl"].extension_file_suffix == ".cpython-310-x86_64-linux-gnu.so"
        assert exts["_ssl"].link_libraries == ("ssl",)
        assert exts["_ssl"].shared_library.resolve_bytes() == b"\x7fELF-ssl"

    def test_missing_metadata(self, tmp_path):
        (tmp_path / "empty" / "python").mkdir(parents=True)
        with pytest.raises(AcquisitionError, match="PYTHON.json"):
            ResolvedDistribution.from_directory(tmp_path / "empty", DistributionFlavor.STANDALONE)

    def test_malformed_metadata(self, tmp_path):
        (tmp_path / "bad" / "python").mkdir(parents=True)
        (tmp_path / "bad" / "python" / "PYTHON.json").write_text("{")
        with pytest.raises(AcquisitionError, match="malformed"):
            ResolvedDistribution.from_directory(tmp_path / "bad", DistributionFlavor.STANDALONE)

    def test_missing_keys(self, tmp_path):
        (tmp_path / "bad" / "python").mkdir(parents=True)
        (tmp_path / "bad" / "python" / "PYTHON.json").write_text('{"python_tag": "cp310"}')
        with pytest.raises(AcquisitionError, match="missing"):
            ResolvedDistribution.from_directory(tmp_path / "bad", DistributionFlavor.STANDALONE)


class TestDistributionHandle:
    """Tests for lazy, single resolution"""

    def test_unresolved_until_asked(self, handle, fetcher):
        assert handle.resolved is None
        fetcher.assert_not_called()

    def test_resolves_once(self, handle, fetcher, logger):
        first = handle.ensure_resolved(logger)
        second = handle.ensure_resolved(logger)
        assert first is second
        assert handle.resolved is first
        fetcher.assert_called_once()

    def test_failure_is_terminal(self, tmp_path, logger):
        failing = Mock(side_effect=AcquisitionError("sha256 mismatch"))
        h = DistributionHandle(
            DistributionFlavor.STANDALONE,
            DistributionLocation.local(tmp_path / "d.tar.gz", "aa"),
            tmp_path / "cache",
            fetcher=failing,
        )
        with pytest.raises(AcquisitionError) as first:
            h.ensure_resolved(logger)
        with pytest.raises(AcquisitionError) as second:
            h.ensure_resolved(logger)
        assert first.value is second.value
        assert first.value.label == "resolve_distribution()"
        assert failing.call_count == 1
        assert h.resolved is None

    def test_io_failure_becomes_acquisition_error(self, tmp_path, logger):
        h = DistributionHandle(
            DistributionFlavor.STANDALONE,
            DistributionLocation.local(tmp_path / "d.tar.gz", "aa"),
            tmp_path / "cache",
            fetcher=Mock(side_effect=OSError("disk full")),
        )
        with pytest.raises(AcquisitionError, match="disk full"):
            h.ensure_resolved(logger)

    def test_compile_bytecode_reuses_compiler(self, handle, logger):
        data = handle.compile_bytecode(
            b"x = 40 + 2\n", "m.py", BytecodeOptimizationLevel.ZERO, CompileMode.BYTECODE, logger=logger
        )
        ns = {}
        exec(marshal.loads(data), ns)
        assert ns["x"] == 42

        compiler = handle.bytecode_compiler(logger)
        handle.compile_bytecode(b"y = 1\n", "n.py", BytecodeOptimizationLevel.ONE, CompileMode.BYTECODE, logger=logger)
        assert handle.bytecode_compiler(logger) is compiler
        assert compiler.compile_count == 2

    def test_compiler_failure_is_stored(self, handle, logger):
        failure = CompilationError("no interpreter", label="create_bytecode_compiler()")
        with patch.object(ResolvedDistribution, "create_bytecode_compiler", side_effect=failure) as create:
            for _ in range(2):
                with pytest.raises(CompilationError):
                    handle.compile_bytecode(
                        b"x = 1\n", "m.py", BytecodeOptimizationLevel.ZERO, CompileMode.BYTECODE, logger=logger
                    )
        assert create.call_count == 1
        assert handle.resolved is not None

    def test_missing_interpreter(self, tmp_path, logger):
        root = make_distribution(tmp_path / "noexe", python_exe="install/bin/python3")
        h = DistributionHandle(
            DistributionFlavor.STANDALONE,
            DistributionLocation.local(tmp_path / "d.tar.gz", "aa"),
            tmp_path / "cache",
            fetcher=Mock(return_value=root),
        )
        with pytest.raises(CompilationError, match="interpreter does not exist"):
            h.compile_bytecode(b"", "m.py", BytecodeOptimizationLevel.ZERO, CompileMode.BYTECODE, logger=logger)

    def test_close_stops_compiler(self, handle, logger):
        with handle:
            compiler = handle.bytecode_compiler(logger)
            assert compiler.running is True
        assert compiler.running is False

    def test_stdlib_scan_is_cached(self, handle, logger):
        dist = handle.ensure_resolved(logger)
        with patch("python_embedder.distribution.find_python_resources", return_value=[]) as scan:
            dist.source_modules()
            dist.package_resources()
            dist.source_modules()
        scan.assert_called_once()
