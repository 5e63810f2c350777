"""Run Python packaging tools and collect what they install.

Every function runs the tool against a host interpreter in a temporary
directory, scans the result and returns memory-backed resources, so nothing
refers to the temporary directory once it is gone.
"""

from collections.abc import Iterable, Mapping
import logging
import os
import pathlib
import shutil
import subprocess
import tempfile
import time
import zipfile

from python_embedder.errors import InstallError
from python_embedder.resource import Resource
from python_embedder.scanning import find_python_resources, site_packages_dir
from python_embedder.target import TargetConfig


def _run_tool(
    cmd: list[str],
    *,
    extra_envs: Mapping[str, str] | None,
    cwd: pathlib.Path | None,
    label: str,
    logger: logging.Logger,
) -> None:
    """Run a packaging tool.

    :param cmd: Full command line.
    :param extra_envs: Environment variables added to the current environment.
    :param cwd: Working directory.
    :param label: Operation label used on failure.
    :param logger: Logger for progress output.
    :raises InstallError: If the tool cannot be started or exits non-zero.
    """

    env: dict[str, str] = dict(os.environ)
    if extra_envs is not None:
        env.update(extra_envs)

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"python-embedder: running: {' '.join(cmd)}")

    try:
        proc = subprocess.run(cmd, check=False, env=env, cwd=cwd)
    except OSError as e:
        raise InstallError(f"unable to run {cmd[0]}: {e}", label=label) from e
    if proc.returncode != 0:
        raise InstallError(f"command failed (exit={proc.returncode}): {' '.join(cmd)}", label=label)


def _pip(
    python_exe: pathlib.Path,
    args: list[str],
    *,
    extra_envs: Mapping[str, str] | None,
    label: str,
    logger: logging.Logger,
) -> None:
    """Invoke pip with the given interpreter.

    :param python_exe: Interpreter providing pip.
    :param args: Arguments after ``-m pip``.
    :raises InstallError: If pip fails.
    """

    _run_tool(
        [str(python_exe), "-m", "pip", "--disable-pip-version-check", *args],
        extra_envs=extra_envs,
        cwd=None,
        label=label,
        logger=logger,
    )


def pip_install(
    python_exe: pathlib.Path,
    args: Iterable[str],
    *,
    cache_tag: str,
    extension_suffixes: Iterable[str],
    extra_envs: Mapping[str, str] | None = None,
    logger: logging.Logger,
) -> list[Resource]:
    """``pip install --target`` into a temporary directory and collect the result.

    :param python_exe: Host interpreter.
    :param args: Extra ``pip install`` arguments (requirements, ``-r file``...).
    :raises InstallError: If pip fails.
    """

    arg_list: list[str] = list(args)
    with tempfile.TemporaryDirectory(prefix="python_embedder_pip_") as td:
        target_dir: pathlib.Path = pathlib.Path(td) / "install"
        logger.info(f"python-embedder: pip install {' '.join(arg_list)}")
        t0: float = time.perf_counter()
        _pip(
            python_exe,
            ["install", "--no-compile", "--target", str(target_dir), *arg_list],
            extra_envs=extra_envs,
            label="pip_install()",
            logger=logger,
        )
        resources: list[Resource] = find_python_resources(
            target_dir,
            cache_tag=cache_tag,
            extension_suffixes=extension_suffixes,
            load_into_memory=True,
            exclude_dirs=("bin",),
        )
        t1: float = time.perf_counter()

    logger.info(f"python-embedder: pip install collected {len(resources)} resources in {t1 - t0:.2f}s")
    return resources


def pip_download(
    python_exe: pathlib.Path,
    args: Iterable[str],
    *,
    target: TargetConfig,
    cache_tag: str,
    extension_suffixes: Iterable[str],
    logger: logging.Logger,
) -> list[Resource]:
    """Download binary wheels for the target and collect their contents.

    Only wheels are accepted, so cross-target downloads never build anything
    on the host.

    :param target: Target the wheels must be compatible with.
    :raises InstallError: If pip fails or a download is not a wheel.
    """

    arg_list: list[str] = list(args)
    with tempfile.TemporaryDirectory(prefix="python_embedder_download_") as td:
        wheel_dir: pathlib.Path = pathlib.Path(td) / "wheels"
        install_dir: pathlib.Path = pathlib.Path(td) / "install"
        wheel_dir.mkdir()
        install_dir.mkdir()

        logger.info(f"python-embedder: pip download for {target.platform_tag} {' '.join(arg_list)}")
        _pip(
            python_exe,
            [
                "download",
                "--only-binary",
                ":all:",
                "--dest",
                str(wheel_dir),
                "--platform",
                target.platform_tag,
                "--python-version",
                target.python_version,
                "--implementation",
                target.implementation,
                "--abi",
                target.abi,
                *arg_list,
            ],
            extra_envs=None,
            label="pip_download()",
            logger=logger,
        )

        non_wheels: list[str] = sorted(
            p.name for p in wheel_dir.iterdir() if p.is_file() is True and p.suffix != ".whl"
        )
        if len(non_wheels) > 0:
            raise InstallError(
                f"pip download produced non-wheel artifacts: {', '.join(non_wheels)}",
                label="pip_download()",
            )

        for whl in sorted(wheel_dir.glob("*.whl")):
            install_wheel_file(wheel_path=whl, deps_dir=install_dir)

        resources: list[Resource] = find_python_resources(
            install_dir,
            cache_tag=cache_tag,
            extension_suffixes=extension_suffixes,
            load_into_memory=True,
            exclude_dirs=("__wheel_data__",),
        )

    logger.info(f"python-embedder: pip download collected {len(resources)} resources")
    return resources


def setup_py_install(
    python_exe: pathlib.Path,
    package_path: pathlib.Path,
    *,
    cache_tag: str,
    extension_suffixes: Iterable[str],
    extra_envs: Mapping[str, str] | None = None,
    extra_global_arguments: Iterable[str] = (),
    logger: logging.Logger,
) -> list[Resource]:
    """Run ``setup.py install`` into a temporary prefix and collect the result.

    :param package_path: Directory containing ``setup.py``.
    :raises InstallError: If ``setup.py`` is missing or the install fails.
    """

    setup_py: pathlib.Path = package_path / "setup.py"
    if setup_py.is_file() is False:
        raise InstallError(f"{package_path} does not contain a setup.py", label="setup_py_install()")

    with tempfile.TemporaryDirectory(prefix="python_embedder_setup_py_") as td:
        prefix: pathlib.Path = pathlib.Path(td) / "prefix"
        logger.info(f"python-embedder: setup.py install {package_path}")
        _run_tool(
            [
                str(python_exe),
                "setup.py",
                *extra_global_arguments,
                "install",
                "--prefix",
                str(prefix),
                "--no-compile",
            ],
            extra_envs=extra_envs,
            cwd=package_path,
            label="setup_py_install()",
            logger=logger,
        )
        try:
            site_packages: pathlib.Path = site_packages_dir(prefix)
        except InstallError as e:
            raise e.relabel("setup_py_install()")
        resources: list[Resource] = find_python_resources(
            site_packages,
            cache_tag=cache_tag,
            extension_suffixes=extension_suffixes,
            load_into_memory=True,
        )

    return resources


def install_wheel_file(*, wheel_path: pathlib.Path, deps_dir: pathlib.Path) -> None:
    """Install a wheel by extracting it into ``deps_dir``.

    This is not a full wheel "installer", but it handles the common cases well:
    root packages + ``.dist-info`` and the ``.data/purelib|platlib`` relocation.

    :param wheel_path: Path to ``.whl`` file.
    :param deps_dir: Destination directory.
    :raises InstallError: If extraction fails.
    """

    if wheel_path.suffix != ".whl":
        raise InstallError(f"not a wheel: {wheel_path}")

    with tempfile.TemporaryDirectory(prefix="python_embedder_wheel_") as td:
        tmp_root: pathlib.Path = pathlib.Path(td)
        try:
            with zipfile.ZipFile(wheel_path, "r") as zf:
                zf.extractall(tmp_root)
        except zipfile.BadZipFile as e:
            raise InstallError(f"bad wheel zip: {wheel_path}") from e

        data_dirs: list[pathlib.Path] = []
        for child in sorted(tmp_root.iterdir()):
            if child.name.endswith(".data") is True and child.is_dir() is True:
                data_dirs.append(child)
                continue
            _copy_item(src=child, dst=deps_dir / child.name)

        for data_dir in data_dirs:
            for lib in ("purelib", "platlib"):
                libdir: pathlib.Path = data_dir / lib
                if libdir.exists() is True:
                    shutil.copytree(libdir, deps_dir, dirs_exist_ok=True)

            other_root: pathlib.Path = deps_dir / "__wheel_data__" / data_dir.name
            for sub in ("data", "scripts", "headers"):
                subdir: pathlib.Path = data_dir / sub
                if subdir.exists() is True:
                    shutil.copytree(subdir, other_root / sub, dirs_exist_ok=True)


def _copy_item(*, src: pathlib.Path, dst: pathlib.Path) -> None:
    if src.is_dir() is True:
        shutil.copytree(src, dst, dirs_exist_ok=True)
        return
    if src.is_file() is True:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
