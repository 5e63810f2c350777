"""Shared fixtures: a python-build-standalone style distribution on disk."""

import hashlib
import json
import logging
import pathlib
import sys
import tarfile
from unittest.mock import Mock

import pytest

from python_embedder.distribution import DistributionFlavor, DistributionHandle, DistributionLocation
from python_embedder.target import host_triple

LINUX_TRIPLE = "x86_64-unknown-linux-gnu"


def make_distribution(
    root: pathlib.Path,
    *,
    target_triple: str = LINUX_TRIPLE,
    python_exe: str | None = None,
    link_mode: str = "static",
    loading: tuple[str, ...] = ("builtin", "shared-library"),
) -> pathlib.Path:
    """Write a small distribution tree under ``root`` and return ``root``.

    The interpreter defaults to the one running the tests so bytecode
    compilation works without a real distribution.
    """

    python_dir = root / "python"
    stdlib = python_dir / "install" / "lib" / "python3.10"
    (stdlib / "json").mkdir(parents=True)
    (stdlib / "test").mkdir()
    (stdlib / "lib-dynload").mkdir()
    (stdlib / "site-packages").mkdir()

    (stdlib / "os.py").write_text("sep = '/'\n")
    (stdlib / "json" / "__init__.py").write_text("from json.decoder import loads\n")
    (stdlib / "json" / "decoder.py").write_text("def loads(s):\n    return s\n")
    (stdlib / "json" / "schema.txt").write_text("schema\n")
    (stdlib / "test" / "__init__.py").write_text("")
    (stdlib / "test" / "test_os.py").write_text("def test_ok():\n    pass\n")
    (stdlib / "test" / "data.bin").write_bytes(b"\x00\x01")
    (stdlib / "lib-dynload" / "_ssl.cpython-310-x86_64-linux-gnu.so").write_bytes(b"\x7fELF-ssl")
    (stdlib / "site-packages" / "README.txt").write_text("site\n")

    info = {
        "python_tag": "cp310",
        "python_version": "3.10.9",
        "target_triple": target_triple,
        "python_exe": python_exe if python_exe is not None else sys.executable,
        "python_stdlib": "install/lib/python3.10",
        "python_stdlib_test_packages": ["test"],
        "python_extension_module_loading": list(loading),
        "libpython_link_mode": link_mode,
        "python_suffixes": {"extension": [".cpython-310-x86_64-linux-gnu.so", ".abi3.so", ".so"]},
        "build_info": {
            "extensions": {
                "_io": [{"in_core": True, "init_fn": "PyInit__io", "required": True, "variant": "default"}],
                "_json": [{"in_core": True, "init_fn": "PyInit__json", "required": False, "variant": "default"}],
                "_ssl": [
                    {
                        "in_core": False,
                        "init_fn": "PyInit__ssl",
                        "required": False,
                        "variant": "default",
                        "shared_lib": "install/lib/python3.10/lib-dynload/_ssl.cpython-310-x86_64-linux-gnu.so",
                        "links": [{"name": "ssl"}, {"name": "pthread", "system": True}],
                    }
                ],
            }
        },
    }
    (python_dir / "PYTHON.json").write_text(json.dumps(info))
    return root


def make_archive(dist_root: pathlib.Path, archive: pathlib.Path) -> str:
    """Tar ``dist_root/python`` into ``archive``; return its sha256."""

    with tarfile.open(archive, "w:gz") as tf:
        tf.add(dist_root / "python", arcname="python")
    return hashlib.sha256(archive.read_bytes()).hexdigest()


@pytest.fixture
def logger():
    return Mock(spec=logging.Logger)


@pytest.fixture
def dist_root(tmp_path):
    """Extracted distribution targeting x86_64 Linux"""
    return make_distribution(tmp_path / "dist")


@pytest.fixture
def host_dist_root(tmp_path):
    """Extracted distribution targeting the machine running the tests"""
    return make_distribution(tmp_path / "host-dist", target_triple=host_triple())


@pytest.fixture
def fetcher(dist_root):
    return Mock(return_value=dist_root)


@pytest.fixture
def handle(tmp_path, fetcher):
    """Distribution handle whose acquisition is replaced by the fake tree"""
    location = DistributionLocation.local(tmp_path / "dist.tar.gz", "ab" * 32)
    h = DistributionHandle(DistributionFlavor.STANDALONE, location, tmp_path / "cache", fetcher=fetcher)
    yield h
    h.close()


@pytest.fixture
def host_handle(tmp_path, host_dist_root):
    """Distribution handle for the host triple"""
    location = DistributionLocation.local(tmp_path / "host.tar.gz", "cd" * 32)
    h = DistributionHandle(
        DistributionFlavor.STANDALONE,
        location,
        tmp_path / "cache",
        fetcher=Mock(return_value=host_dist_root),
    )
    yield h
    h.close()
