"""Target resolution helpers.

This module is intentionally small and "pragmatic":

- It detects the Rust-like target triple of the build host
  (e.g. ``x86_64-unknown-linux-gnu``).
- It maps a target triple to the pip knobs needed for cross-platform wheel
  downloads and to the extension module suffixes the target can import.
- It knows which host triples can execute binaries built for another triple,
  which decides whether a separate host distribution is needed.
"""

from dataclasses import dataclass
import platform
import re
import sys

from python_embedder.errors import TargetResolutionError


@dataclass(frozen=True, slots=True)
class TargetConfig:
    """Build target configuration.

    :ivar triple: Rust-like target triple.
    :ivar platform_tag: pip ``--platform`` tag (PEP 425-style).
    :ivar python_version: Python version as ``MAJOR.MINOR``.
    :ivar implementation: pip implementation tag (e.g. ``cp``).
    :ivar abi: pip ABI tag (e.g. ``cp312``).
    """

    triple: str
    platform_tag: str
    python_version: str
    implementation: str
    abi: str


_PYVER_RE: re.Pattern[str] = re.compile(r"^(?P<maj>\d+)\.(?P<min>\d+)(\.(?P<patch>\d+).*)?$")

# Binaries built for the key also run on every host listed in the value.
_EXTRA_COMPATIBLE_HOSTS: dict[str, tuple[str, ...]] = {
    "x86_64-unknown-linux-musl": ("x86_64-unknown-linux-gnu",),
    "aarch64-unknown-linux-musl": ("aarch64-unknown-linux-gnu",),
    "i686-unknown-linux-gnu": ("x86_64-unknown-linux-gnu",),
    "x86_64-apple-darwin": ("aarch64-apple-darwin",),
    "i686-pc-windows-msvc": ("x86_64-pc-windows-msvc",),
}


def host_triple() -> str:
    """Detect the target triple of the running interpreter's host.

    :returns: Target triple.
    :raises TargetResolutionError: If the host platform is not recognized.
    """

    system: str = platform.system()
    machine: str = _normalize_arch(platform.machine())

    if system == "Linux":
        libc: str = platform.libc_ver()[0]
        env_part: str = "gnu" if libc == "glibc" else "musl"
        return f"{machine}-unknown-linux-{env_part}"
    if system == "Darwin":
        return f"{machine}-apple-darwin"
    if system == "Windows":
        return f"{machine}-pc-windows-msvc"

    raise TargetResolutionError(f"Unrecognized host platform {system!r} ({machine!r}).")


def _normalize_arch(machine: str) -> str:
    """Map ``platform.machine()`` spellings to triple arch components.

    :param machine: Raw machine string.
    :returns: Arch component.
    """

    m: str = machine.lower()
    if m in {"amd64", "x86_64", "x64"}:
        return "x86_64"
    if m in {"arm64", "aarch64"}:
        return "aarch64"
    if m in {"x86", "i386", "i686"}:
        return "i686"
    return m


def parse_python_major_minor(version: str) -> str:
    """Normalize a Python version to ``MAJOR.MINOR``.

    :param version: ``MAJOR.MINOR`` or ``MAJOR.MINOR.PATCH`` string.
    :returns: Version as ``MAJOR.MINOR``.
    :raises TargetResolutionError: If the version is invalid.
    """

    m = _PYVER_RE.match(version)
    if m is None:
        raise TargetResolutionError(
            f"Invalid Python version {version!r}; expected 'MAJOR.MINOR'."
        )
    return f"{int(m.group('maj'))}.{int(m.group('min'))}"


def is_windows_triple(triple: str) -> bool:
    return "-windows-" in triple


def compatible_host_triples(target_triple: str) -> list[str]:
    """List host triples able to execute binaries built for ``target_triple``.

    :param target_triple: Triple a distribution was built for.
    :returns: The triple itself followed by any extra compatible hosts.
    """

    hosts: list[str] = [target_triple]
    for extra in _EXTRA_COMPATIBLE_HOSTS.get(target_triple, ()):
        if extra not in hosts:
            hosts.append(extra)
    return hosts


def resolve_target_config(
    *,
    target: str,
    python_version_override: str | None,
    platform_tag_override: str | None = None,
    implementation_override: str | None = None,
    abi_override: str | None = None,
) -> TargetConfig:
    """Resolve user-supplied target arguments into a :class:`~TargetConfig`.

    :param target: A target triple. ``native`` uses the host.
    :param python_version_override: Optional explicit Python version.
    :param platform_tag_override: Optional explicit pip platform tag override.
    :param implementation_override: Optional explicit implementation override.
    :param abi_override: Optional explicit ABI override.
    :returns: Resolved target config.
    :raises TargetResolutionError: If the config cannot be resolved.
    """

    triple: str = host_triple() if target == "native" else target

    platform_tag: str
    if platform_tag_override is not None:
        platform_tag = _normalize_platform_tag(platform_tag_override)
    else:
        platform_tag = platform_tag_from_triple(triple)

    python_version: str
    if python_version_override is None:
        python_version = f"{sys.version_info.major}.{sys.version_info.minor}"
    else:
        python_version = parse_python_major_minor(python_version_override)

    implementation: str = implementation_override if implementation_override is not None else "cp"
    abi: str = _resolve_abi(
        abi_override=abi_override,
        implementation=implementation,
        python_version=python_version,
    )

    return TargetConfig(
        triple=triple,
        platform_tag=platform_tag,
        python_version=python_version,
        implementation=implementation,
        abi=abi,
    )


def _resolve_abi(*, abi_override: str | None, implementation: str, python_version: str) -> str:
    """Resolve pip's ABI tag.

    :param abi_override: Optional explicit override.
    :param implementation: Implementation tag (e.g. ``cp``).
    :param python_version: Python version as ``MAJOR.MINOR``.
    :returns: ABI tag.
    :raises TargetResolutionError: If an ABI cannot be inferred.
    """

    if abi_override is not None:
        return abi_override

    if implementation != "cp":
        raise TargetResolutionError(
            "Non-CPython targets require an explicit --abi (and usually --implementation)."
        )

    maj, min_ = python_version.split(".")
    return f"cp{int(maj)}{int(min_)}"


def platform_tag_from_triple(target: str) -> str:
    """Convert a target triple into pip's ``--platform`` tag.

    :param target: Target triple.
    :returns: pip platform tag.
    :raises TargetResolutionError: If the target is not recognized.
    """

    parts: list[str] = target.split("-")
    if len(parts) < 3:
        raise TargetResolutionError(
            f"Unrecognized target spec {target!r}. Provide a Rust-like target triple."
        )

    arch: str = parts[0]
    os_part: str = parts[2]
    env_part: str = parts[3] if len(parts) >= 4 else ""

    if os_part == "linux":
        return _linux_platform_tag(arch=arch, env_part=env_part)
    if os_part == "darwin":
        return _darwin_platform_tag(arch=arch)
    if os_part == "windows":
        return _windows_platform_tag(arch=arch)

    raise TargetResolutionError(
        f"Unrecognized OS in target triple {target!r} (os={os_part!r})."
    )


def default_extension_suffixes(target: str, python_version: str) -> list[str]:
    """Extension module file suffixes importable on a target.

    Used when a distribution does not advertise its own suffix list.

    :param target: Target triple.
    :param python_version: Python version as ``MAJOR.MINOR``.
    :returns: Suffixes, most specific first.
    """

    nodot: str = parse_python_major_minor(python_version).replace(".", "")
    arch: str = target.split("-")[0]

    if is_windows_triple(target) is True:
        win_platform: str = _windows_platform_tag(arch=arch)
        return [f".cp{nodot}-{win_platform}.pyd", ".pyd"]
    if "-apple-darwin" in target:
        return [f".cpython-{nodot}-darwin.so", ".abi3.so", ".so"]

    env_part: str = target.split("-")[-1]
    return [f".cpython-{nodot}-{arch}-linux-{env_part}.so", ".abi3.so", ".so"]


def _linux_platform_tag(*, arch: str, env_part: str) -> str:
    """Map a Rust-like Linux triple into a pip platform tag.

    :param arch: Rust arch component (e.g. ``x86_64``).
    :param env_part: Rust env component (e.g. ``gnu`` or ``musl``).
    :returns: pip platform tag.
    :raises TargetResolutionError: If the arch is not supported.
    """

    arch_map: dict[str, str] = {
        "x86_64": "x86_64",
        "aarch64": "aarch64",
        "armv7": "armv7l",
        "armv7l": "armv7l",
        "i686": "i686",
        "ppc64le": "ppc64le",
        "s390x": "s390x",
    }
    pip_arch: str | None = arch_map.get(arch)
    if pip_arch is None:
        raise TargetResolutionError(f"Unsupported Linux arch in target triple: {arch!r}")

    if env_part == "musl":
        return f"musllinux_1_2_{pip_arch}"
    return f"manylinux_2_17_{pip_arch}"


def _darwin_platform_tag(*, arch: str) -> str:
    if arch == "x86_64":
        return "macosx_10_9_x86_64"
    if arch == "aarch64" or arch == "arm64":
        return "macosx_11_0_arm64"
    raise TargetResolutionError(f"Unsupported Darwin arch in target triple: {arch!r}")


def _windows_platform_tag(*, arch: str) -> str:
    if arch == "x86_64":
        return "win_amd64"
    if arch == "i686":
        return "win32"
    if arch == "aarch64" or arch == "arm64":
        return "win_arm64"
    raise TargetResolutionError(f"Unsupported Windows arch in target triple: {arch!r}")


def _normalize_platform_tag(platform_tag: str) -> str:
    """Normalize common platform-tag spellings into pip's underscore form.

    :param platform_tag: Platform string (pip-style or sysconfig-style).
    :returns: Normalized platform tag.
    """

    # sysconfig uses e.g. "macosx-26.0-arm64" while pip expects "macosx_26_0_arm64".
    v: str = platform_tag.replace("-", "_").replace(".", "_")
    return v
