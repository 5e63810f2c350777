"""Command line interface for python-embedder."""

import argparse
import logging
import pathlib
import sys

from python_embedder import api
from python_embedder.distribution import (
    DistributionHandle,
    DistributionLocation,
    DistributionRegistry,
    resolve_cache_root,
)
from python_embedder.errors import BuildError
from python_embedder.executable import PythonExecutable
from python_embedder.resource import CollectibleResource
from python_embedder.target import host_triple


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the python-embedder logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("python_embedder")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _collect_input(executable: PythonExecutable, input_path: pathlib.Path) -> list[CollectibleResource]:
    """Resources for the application given on the command line.

    A ``.py`` file becomes a top-level module, a package directory is read
    from its parent, and any other directory is treated as a ``sys.path`` root.
    """

    if input_path.is_file() is True:
        return [executable.make_python_module_source(input_path.stem, input_path.read_bytes())]
    if (input_path / "__init__.py").is_file() is True:
        return executable.read_package_root(input_path.parent, [input_path.name])
    return executable.read_package_root(input_path, _top_level_names(input_path))


def _top_level_names(root: pathlib.Path) -> list[str]:
    names: list[str] = []
    for child in sorted(root.iterdir()):
        if child.is_dir() is True and (child / "__init__.py").is_file() is True:
            names.append(child.name)
        elif child.is_file() is True and child.suffix == ".py":
            names.append(child.stem)
    return names


def _build(ns: argparse.Namespace, logger: logging.Logger) -> int:
    registry: DistributionRegistry | None = None
    if ns.distributions_file is not None:
        registry = DistributionRegistry.from_json(ns.distributions_file)

    location: DistributionLocation | None = None
    if ns.distribution_url is not None:
        location = DistributionLocation.remote(ns.distribution_url, ns.sha256)
    elif ns.distribution_path is not None:
        location = DistributionLocation.local(ns.distribution_path, ns.sha256)

    target_triple: str = host_triple() if ns.target == "native" else ns.target

    handle: DistributionHandle = api.construct_distribution(
        ns.flavor,
        location,
        target_triple,
        ns.python_version,
        destination=resolve_cache_root(ns.cache_dir),
        registry=registry,
    )
    with handle:
        policy = api.construct_policy(handle, logger=logger)
        api.set_option(policy, "resources_location", ns.resources_location)
        if ns.resources_location_fallback is not None:
            api.set_option(policy, "resources_location_fallback", ns.resources_location_fallback)
        if ns.allow_override is True:
            api.set_option(policy, "allow_resource_override", True)

        options = handle.ensure_resolved(logger).create_interpreter_config()
        if ns.repl is True:
            api.set_option(options, "run_repl", True)
        if ns.no_run is True:
            api.set_option(options, "run_none", True)
        if ns.module is not None:
            api.set_option(options, "run_module", ns.module)
        if ns.code is not None:
            api.set_option(options, "run_eval", ns.code)
        if ns.file is not None:
            api.set_option(options, "run_file", ns.file)

        with api.construct_executable(
            handle,
            policy,
            options,
            ns.name,
            target_triple=target_triple,
            registry=registry,
            pip_platform_tag=ns.platform_tag,
            pip_implementation=ns.implementation,
            pip_abi=ns.abi,
            logger=logger,
        ) as exe:
            if ns.include_stdlib is True:
                exe.add_distribution_resources()

            if ns.requirements is not None:
                req_args: list[str] = ["--requirement", str(ns.requirements)]
                if exe.ensure_host_distribution(logger) is handle:
                    exe.add_python_resources(exe.pip_install(req_args))
                else:
                    exe.add_python_resources(exe.pip_download(req_args))

            for resource in _collect_input(exe, ns.input):
                api.add_resource(exe, resource)

            if len(ns.filter_file) > 0 or len(ns.filter_glob) > 0:
                api.filter_resources(exe, ns.filter_file, ns.filter_glob)

            config_path, packed_path = exe.write_artifacts(ns.output)
            logger.info(f"python-embedder: wrote {config_path} and {packed_path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the python-embedder CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="python-embedder",
        description=(
            "Resolve a Python app and a runtime distribution into packed resources "
            "and an embedded interpreter config."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Produce the config module and packed resources for an executable.",
    )
    p_build.add_argument(
        "input",
        type=pathlib.Path,
        help="Path to a Python file, a package folder or a directory of modules.",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        required=True,
        help="Output directory for default_python_config.py and packed-resources.",
    )
    p_build.add_argument(
        "--name",
        type=str,
        default="app",
        help="Executable name.",
    )
    p_build.add_argument(
        "-r",
        "--requirements",
        type=pathlib.Path,
        default=None,
        help="Path to requirements.txt to install into the executable.",
    )
    p_build.add_argument(
        "--target",
        type=str,
        default="native",
        help="Target triple (e.g. x86_64-unknown-linux-gnu). Use 'native' for the current host.",
    )
    p_build.add_argument(
        "--python-version",
        type=str,
        default=None,
        help="Python version as 'MAJOR.MINOR' for the distribution lookup.",
    )
    p_build.add_argument(
        "--platform-tag",
        type=str,
        default=None,
        help="Override the pip --platform tag used to download wheels (advanced).",
    )
    p_build.add_argument(
        "--implementation",
        type=str,
        default=None,
        help="pip implementation tag for wheel downloads (e.g. cp). Defaults to cp.",
    )
    p_build.add_argument(
        "--abi",
        type=str,
        default=None,
        help="pip ABI tag for wheel downloads (e.g. cp310). Derived when omitted.",
    )
    p_build.add_argument(
        "--flavor",
        type=str,
        default="standalone",
        choices=["standalone", "standalone_static", "standalone_dynamic"],
        help="Distribution flavor.",
    )
    source_group = p_build.add_mutually_exclusive_group()
    source_group.add_argument(
        "--distribution-url",
        type=str,
        default=None,
        help="URL of the distribution archive (requires --sha256).",
    )
    source_group.add_argument(
        "--distribution-path",
        type=pathlib.Path,
        default=None,
        help="Local distribution archive (requires --sha256).",
    )
    p_build.add_argument(
        "--sha256",
        type=str,
        default=None,
        help="Expected SHA-256 of the distribution archive.",
    )
    p_build.add_argument(
        "--distributions-file",
        type=pathlib.Path,
        default=None,
        help="JSON registry of known distributions (defaults to $PYTHON_EMBEDDER_DISTRIBUTIONS).",
    )
    p_build.add_argument(
        "--cache-dir",
        type=pathlib.Path,
        default=None,
        help="Distribution cache directory (defaults to $PYTHON_EMBEDDER_CACHE_DIR or ./.python_embedder_cache).",
    )
    p_build.add_argument(
        "--include-stdlib",
        action="store_true",
        help="Add the distribution's standard library through the packaging policy.",
    )
    p_build.add_argument(
        "--resources-location",
        type=str,
        default="in-memory",
        help="Where resources live at run time: 'in-memory' or 'filesystem-relative:<prefix>'.",
    )
    p_build.add_argument(
        "--resources-location-fallback",
        type=str,
        default=None,
        help="Fallback location for resources that cannot use the primary location.",
    )
    p_build.add_argument(
        "--allow-override",
        action="store_true",
        help="Let later resources replace earlier ones with the same name.",
    )
    p_build.add_argument(
        "--filter-file",
        action="append",
        default=[],
        help="Remove resources collected from this file. Repeatable.",
    )
    p_build.add_argument(
        "--filter-glob",
        action="append",
        default=[],
        help="Remove resources collected from files matching this glob. Repeatable.",
    )
    run_group = p_build.add_mutually_exclusive_group()
    run_group.add_argument("--repl", action="store_true", help="Start a REPL.")
    run_group.add_argument(
        "--no-run", action="store_true", help="Initialize the interpreter without running anything."
    )
    run_group.add_argument("--module", type=str, default=None, help="Run a module (python -m).")
    run_group.add_argument("--code", type=str, default=None, help="Run inline code (python -c).")
    run_group.add_argument("--file", type=pathlib.Path, default=None, help="Run a file.")
    p_build.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p_build.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )

    ns = parser.parse_args(argv)
    if ns.command == "build":
        if (ns.distribution_url is not None or ns.distribution_path is not None) and ns.sha256 is None:
            parser.error("--sha256 is required with --distribution-url/--distribution-path")

        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        try:
            return _build(ns, logger)
        except BuildError as e:
            logger.error(f"python-embedder: error [{e.code}] {e}")
            return 1

    raise AssertionError(f"Unhandled command: {ns.command}")

