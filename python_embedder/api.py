"""Front-end operations.

These are the calls a build description (a script, the CLI, a test) makes.
Each one is synchronous and either returns a value or raises a
:class:`~python_embedder.errors.BuildError` carrying a stable ``code`` and an
operation ``label``.
"""

from collections.abc import Iterable, Iterator
import contextlib
import logging
import os
import pathlib
from typing import Any

from python_embedder.config import EmbeddedConfig, RunTimeOptions
from python_embedder.config import set_option as set_runtime_option
from python_embedder.distribution import (
    DistributionFlavor,
    DistributionHandle,
    DistributionLocation,
    DistributionRegistry,
    Fetcher,
    default_distribution_location,
)
from python_embedder.errors import BuildError, InvalidArgumentError
from python_embedder.executable import PythonExecutable
from python_embedder.packed import ResourceBundle
from python_embedder.policy import PackagingPolicy, ResourceOverride
from python_embedder.resource import CollectibleResource, Resource, ResourceKind
from python_embedder.target import host_triple as detect_host_triple


@contextlib.contextmanager
def _operation(label: str) -> Iterator[None]:
    """Give unlabelled build errors the label of the running operation."""

    try:
        yield
    except BuildError as e:
        if len(e.label) == 0:
            e.relabel(label)
        raise


def _logger(logger: logging.Logger | None) -> logging.Logger:
    return logger if logger is not None else logging.getLogger("python_embedder")


def construct_distribution(
    flavor: DistributionFlavor | str,
    location: DistributionLocation | None = None,
    target_triple: str | None = None,
    python_version: str | None = None,
    *,
    destination: pathlib.Path,
    registry: DistributionRegistry | None = None,
    fetcher: Fetcher | None = None,
) -> DistributionHandle:
    """Create a distribution handle. Nothing is fetched until it is needed.

    :param flavor: Distribution flavor.
    :param location: Archive location; looked up in the registry when ``None``.
    :param target_triple: Triple for the registry lookup; the host when ``None``.
    :param python_version: ``major.minor`` for the registry lookup.
    :param destination: Cache directory for downloads and extraction.
    :param registry: Registry to search instead of the process default.
    :param fetcher: Acquisition function override.
    """

    with _operation("PythonDistribution()"):
        if isinstance(flavor, str):
            flavor = DistributionFlavor.from_name(flavor)
        if location is None:
            triple: str = target_triple if target_triple is not None else detect_host_triple()
            location = default_distribution_location(flavor, triple, python_version, registry=registry)
        return DistributionHandle(flavor, location, destination, fetcher=fetcher)


def construct_policy(handle: DistributionHandle, *, logger: logging.Logger | None = None) -> PackagingPolicy:
    """Packaging policy with the distribution's defaults."""

    with _operation("make_python_packaging_policy()"):
        return handle.ensure_resolved(_logger(logger)).create_packaging_policy()


def register_override(policy: PackagingPolicy, callback: ResourceOverride) -> None:
    with _operation("register_resource_callback()"):
        policy.register_override(callback)


def construct_executable(
    handle: DistributionHandle,
    policy: PackagingPolicy,
    options: RunTimeOptions | None,
    name: str,
    *,
    host_triple: str | None = None,
    target_triple: str | None = None,
    registry: DistributionRegistry | None = None,
    pip_platform_tag: str | None = None,
    pip_implementation: str | None = None,
    pip_abi: str | None = None,
    logger: logging.Logger | None = None,
) -> PythonExecutable:
    """Create the build context for one executable.

    :param options: Run-time options; the distribution's defaults when ``None``.
    :param host_triple: Build machine triple; detected when ``None``.
    :param pip_platform_tag: Wheel platform tag override for downloads.
    """

    with _operation("to_python_executable()"):
        if len(name) == 0:
            raise InvalidArgumentError("executable name must not be empty")
        return PythonExecutable(
            name,
            handle,
            policy,
            options,
            host_triple=host_triple if host_triple is not None else detect_host_triple(),
            target_triple=target_triple,
            registry=registry,
            pip_platform_tag=pip_platform_tag,
            pip_implementation=pip_implementation,
            pip_abi=pip_abi,
            logger=_logger(logger),
        )


def add_resource(executable: PythonExecutable, resource: Resource | CollectibleResource) -> bool:
    with _operation("add_python_resource()"):
        return executable.add_python_resource(resource)


def filter_resources(
    executable: PythonExecutable,
    paths: Iterable[str | os.PathLike[str]] = (),
    globs: Iterable[str] = (),
) -> list[tuple[ResourceKind, str]]:
    with _operation("filter_resources_from_files()"):
        return executable.filter_resources_from_files(paths, globs)


def set_option(target: RunTimeOptions | PackagingPolicy, name: str, value: Any) -> None:
    """Set a run-time option or a packaging policy attribute by name."""

    with _operation("set_option()"):
        if isinstance(target, RunTimeOptions):
            set_runtime_option(target, name, value)
        elif isinstance(target, PackagingPolicy):
            target.set_attribute(name, value)
        else:
            raise InvalidArgumentError(
                f"options target must be RunTimeOptions or PackagingPolicy; got {type(target).__name__}"
            )


def finalize(executable: PythonExecutable) -> tuple[EmbeddedConfig, ResourceBundle]:
    with _operation("finalize()"):
        return executable.finalize()
