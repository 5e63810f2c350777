"""Tests for target triple helpers"""

from unittest.mock import patch

import pytest

from python_embedder.errors import TargetResolutionError
from python_embedder.target import (
    compatible_host_triples,
    default_extension_suffixes,
    host_triple,
    is_windows_triple,
    parse_python_major_minor,
    platform_tag_from_triple,
    resolve_target_config,
)


class TestHostTriple:
    """Tests for host triple detection"""

    def test_linux_glibc(self):
        with patch("platform.system", return_value="Linux"), \
             patch("platform.machine", return_value="x86_64"), \
             patch("platform.libc_ver", return_value=("glibc", "2.35")):
            assert host_triple() == "x86_64-unknown-linux-gnu"

    def test_linux_musl(self):
        with patch("platform.system", return_value="Linux"), \
             patch("platform.machine", return_value="aarch64"), \
             patch("platform.libc_ver", return_value=("", "")):
            assert host_triple() == "aarch64-unknown-linux-musl"

    def test_macos_arm64(self):
        with patch("platform.system", return_value="Darwin"), \
             patch("platform.machine", return_value="arm64"):
            assert host_triple() == "aarch64-apple-darwin"

    def test_windows_amd64(self):
        with patch("platform.system", return_value="Windows"), \
             patch("platform.machine", return_value="AMD64"):
            assert host_triple() == "x86_64-pc-windows-msvc"

    def test_unknown_platform(self):
        with patch("platform.system", return_value="Plan9"), \
             patch("platform.machine", return_value="mips"):
            with pytest.raises(TargetResolutionError):
                host_triple()


class TestPythonVersion:
    """Tests for MAJOR.MINOR normalisation"""

    @pytest.mark.parametrize("version", ["3.10", "3.10.9", "3.10.0rc1"])
    def test_accepts(self, version):
        assert parse_python_major_minor(version) == "3.10"

    def test_rejects(self):
        with pytest.raises(TargetResolutionError):
            parse_python_major_minor("three")

    def test_target_resolution_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_python_major_minor("")


class TestCompatibleHosts:
    """Tests for the host compatibility table"""

    def test_triple_is_compatible_with_itself(self):
        assert compatible_host_triples("x86_64-unknown-linux-gnu") == ["x86_64-unknown-linux-gnu"]

    def test_musl_runs_on_glibc(self):
        assert "x86_64-unknown-linux-gnu" in compatible_host_triples("x86_64-unknown-linux-musl")

    def test_intel_mac_runs_on_apple_silicon(self):
        assert compatible_host_triples("x86_64-apple-darwin") == [
            "x86_64-apple-darwin",
            "aarch64-apple-darwin",
        ]

    def test_no_reverse_compatibility(self):
        assert "x86_64-apple-darwin" not in compatible_host_triples("aarch64-apple-darwin")


class TestTargetConfig:
    """Tests for pip target configuration"""

    def test_linux_gnu(self):
        cfg = resolve_target_config(target="x86_64-unknown-linux-gnu", python_version_override="3.10")
        assert cfg.platform_tag == "manylinux_2_17_x86_64"
        assert cfg.python_version == "3.10"
        assert cfg.implementation == "cp"
        assert cfg.abi == "cp310"

    def test_single_digit_minor_abi(self):
        cfg = resolve_target_config(target="x86_64-unknown-linux-gnu", python_version_override="3.9.1")
        assert cfg.abi == "cp39"

    def test_musl(self):
        assert platform_tag_from_triple("aarch64-unknown-linux-musl") == "musllinux_1_2_aarch64"

    def test_windows(self):
        assert platform_tag_from_triple("x86_64-pc-windows-msvc") == "win_amd64"
        assert is_windows_triple("x86_64-pc-windows-msvc") is True
        assert is_windows_triple("x86_64-unknown-linux-gnu") is False

    def test_platform_override(self):
        cfg = resolve_target_config(
            target="x86_64-apple-darwin",
            python_version_override="3.11",
            platform_tag_override="macosx-12.0-x86_64",
        )
        assert cfg.platform_tag == "macosx_12_0_x86_64"

    def test_bad_triple(self):
        with pytest.raises(TargetResolutionError):
            platform_tag_from_triple("linux")


class TestExtensionSuffixes:
    """Tests for default extension suffixes"""

    def test_linux(self):
        assert default_extension_suffixes("x86_64-unknown-linux-gnu", "3.9") == [
            ".cpython-39-x86_64-linux-gnu.so",
            ".abi3.so",
            ".so",
        ]

    def test_windows(self):
        assert default_extension_suffixes("x86_64-pc-windows-msvc", "3.10.2") == [
            ".cp310-win_amd64.pyd",
            ".pyd",
        ]
