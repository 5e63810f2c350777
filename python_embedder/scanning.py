"""Discover Python resources on the filesystem.

Scanning classifies every file under a root directory into one of the resource
kinds. Output order is deterministic: directories and files are visited in
sorted order.
"""

from collections.abc import Iterable
import os
import pathlib

from python_embedder.errors import InstallError
from python_embedder.resource import (
    DataLocation,
    PythonExtensionModule,
    PythonModuleSource,
    PythonPackageDistributionResource,
    PythonPackageResource,
    Resource,
    is_stdlib_test_package,
)

_METADATA_DIR_SUFFIXES: tuple[str, ...] = (".dist-info", ".egg-info")


def _is_valid_pkg_segment(segment: str) -> bool:
    """Return whether a path segment can be used as a package name.

    :param segment: Path segment.
    :returns: ``True`` if it can be used as a Python package name.
    """

    if len(segment) == 0:
        return False
    if segment == "__pycache__":
        return False
    return segment.isidentifier()


def _split_metadata_dir(dir_name: str) -> tuple[str, str, str]:
    """Split ``pkg-1.0.dist-info`` into ``("pkg", "1.0", "dist-info")``."""

    stem, _, location_type = dir_name.rpartition(".")
    package, sep, version = stem.partition("-")
    if len(sep) == 0:
        version = ""
    return package, version, location_type


def _match_extension_suffix(file_name: str, suffixes: list[str]) -> str | None:
    for suffix in suffixes:
        if file_name.endswith(suffix) is True and len(file_name) > len(suffix):
            return suffix
    return None


def find_python_resources(
    root: pathlib.Path,
    *,
    cache_tag: str,
    extension_suffixes: Iterable[str],
    load_into_memory: bool = False,
    is_stdlib: bool = False,
    test_packages: Iterable[str] = (),
    exclude_dirs: Iterable[str] = (),
) -> list[Resource]:
    """Walk ``root`` and classify every file into a resource.

    :param root: Directory to scan (a ``sys.path`` entry).
    :param cache_tag: Bytecode cache tag recorded on each resource.
    :param extension_suffixes: Extension module file suffixes to recognise.
    :param load_into_memory: Read file contents now instead of referencing paths.
    :param is_stdlib: Mark resources as standard library resources.
    :param test_packages: Package names whose contents are tests.
    :param exclude_dirs: Directory names to skip wherever they appear.
    :returns: Resources in walk order.
    """

    # Longest first so ".cpython-39-x86_64-linux-gnu.so" wins over ".so".
    suffixes: list[str] = sorted(set(extension_suffixes), key=len, reverse=True)
    tests: tuple[str, ...] = tuple(test_packages)
    skipped: set[str] = {"__pycache__", *exclude_dirs}

    def data_for(path: pathlib.Path) -> DataLocation:
        if load_into_memory is True:
            return DataLocation.memory(path.read_bytes())
        return DataLocation.from_path(path)

    resources: list[Resource] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skipped)
        current: pathlib.Path = pathlib.Path(dirpath)
        rel_dir: tuple[str, ...] = current.relative_to(root).parts

        for file_name in sorted(filenames):
            path: pathlib.Path = current / file_name
            if path.is_file() is False:
                continue
            if file_name.endswith((".pyc", ".pyo")) is True:
                continue

            metadata_index: int | None = None
            for i, part in enumerate(rel_dir):
                if part.endswith(_METADATA_DIR_SUFFIXES) is True:
                    metadata_index = i
                    break

            if metadata_index is not None:
                package, version, location_type = _split_metadata_dir(rel_dir[metadata_index])
                name: str = "/".join([*rel_dir[metadata_index + 1 :], file_name])
                resources.append(
                    PythonPackageDistributionResource(
                        package=package,
                        version=version,
                        name=name,
                        data=data_for(path),
                        location_type=location_type,
                        cache_tag=cache_tag,
                        is_stdlib=is_stdlib,
                        is_test=False,
                        provenance=path,
                    )
                )
                continue

            if file_name.endswith(".py") is True:
                stem: str = file_name[: -len(".py")]
                is_package: bool = stem == "__init__"
                parts: list[str] = list(rel_dir) if is_package is True else [*rel_dir, stem]
                if len(parts) == 0 or all(_is_valid_pkg_segment(p) for p in parts) is False:
                    continue
                module_name: str = ".".join(parts)
                resources.append(
                    PythonModuleSource(
                        name=module_name,
                        source=data_for(path),
                        is_package=is_package,
                        cache_tag=cache_tag,
                        is_stdlib=is_stdlib,
                        is_test=is_stdlib_test_package(module_name, tests),
                        provenance=path,
                    )
                )
                continue

            suffix: str | None = _match_extension_suffix(file_name, suffixes)
            if suffix is not None:
                leaf: str = file_name[: -len(suffix)]
                ext_parts: list[str] = [*rel_dir, leaf]
                if all(_is_valid_pkg_segment(p) for p in ext_parts) is True:
                    ext_name: str = ".".join(ext_parts)
                    resources.append(
                        PythonExtensionModule(
                            name=ext_name,
                            init_fn=f"PyInit_{leaf}",
                            extension_file_suffix=suffix,
                            shared_library=data_for(path),
                            cache_tag=cache_tag,
                            is_stdlib=is_stdlib,
                            is_test=is_stdlib_test_package(ext_name, tests),
                            provenance=path,
                        )
                    )
                    continue

            package_depth: int | None = _leaf_package_depth(root, rel_dir)
            if package_depth is None:
                continue
            leaf_package: str = ".".join(rel_dir[:package_depth])
            relative_name: str = "/".join([*rel_dir[package_depth:], file_name])
            resources.append(
                PythonPackageResource(
                    leaf_package=leaf_package,
                    relative_name=relative_name,
                    data=data_for(path),
                    cache_tag=cache_tag,
                    is_stdlib=is_stdlib,
                    is_test=is_stdlib_test_package(leaf_package, tests),
                    provenance=path,
                )
            )

    return resources


def _leaf_package_depth(root: pathlib.Path, rel_dir: tuple[str, ...]) -> int | None:
    """Depth of the deepest regular package containing ``rel_dir``, if any."""

    for depth in range(len(rel_dir), 0, -1):
        if all(_is_valid_pkg_segment(p) for p in rel_dir[:depth]) is False:
            continue
        if (root.joinpath(*rel_dir[:depth]) / "__init__.py").is_file() is True:
            return depth
    return None


def site_packages_dir(venv: pathlib.Path) -> pathlib.Path:
    """Locate ``site-packages`` inside a virtualenv.

    :raises InstallError: If the virtualenv has no site-packages directory.
    """

    windows_style: pathlib.Path = venv / "Lib" / "site-packages"
    if windows_style.is_dir() is True:
        return windows_style
    candidates: list[pathlib.Path] = sorted(
        p for p in venv.glob("lib/python*/site-packages") if p.is_dir() is True
    )
    if len(candidates) == 0:
        raise InstallError(f"could not find site-packages in virtualenv {venv}", label="read_virtualenv()")
    return candidates[-1]


def read_virtualenv(
    path: pathlib.Path,
    *,
    cache_tag: str,
    extension_suffixes: Iterable[str],
    load_into_memory: bool = False,
) -> list[Resource]:
    """Resources installed in a virtualenv's site-packages."""

    return find_python_resources(
        site_packages_dir(path),
        cache_tag=cache_tag,
        extension_suffixes=extension_suffixes,
        load_into_memory=load_into_memory,
    )


def read_package_root(
    path: pathlib.Path,
    packages: Iterable[str],
    *,
    cache_tag: str,
    extension_suffixes: Iterable[str],
    load_into_memory: bool = False,
) -> list[Resource]:
    """Resources under ``path`` belonging to the listed top-level packages.

    :raises InstallError: If ``path`` is not a directory.
    """

    if path.is_dir() is False:
        raise InstallError(f"package root does not exist: {path}", label="read_package_root()")

    wanted: set[str] = set(packages)
    return [
        r
        for r in find_python_resources(
            path,
            cache_tag=cache_tag,
            extension_suffixes=extension_suffixes,
            load_into_memory=load_into_memory,
        )
        if r.top_level_package in wanted
    ]
