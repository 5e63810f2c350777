"""Executable build context.

A :class:`PythonExecutable` gathers everything one produced binary needs: the
target distribution, the packaging policy, the run-time options and the
resource collection. :meth:`PythonExecutable.finalize` turns it into the
``(EmbeddedConfig, ResourceBundle)`` pair handed to the native builder.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import logging
import os
import pathlib
import stat
import time
from typing import Protocol

from python_embedder.bytecode import BytecodeOptimizationLevel, CompileMode
from python_embedder.collection import ResourceCollection
from python_embedder.config import EmbeddedConfig, RunTimeOptions, build_embedded_config
from python_embedder.distribution import (
    DistributionFlavor,
    DistributionHandle,
    DistributionLocation,
    DistributionRegistry,
    ResolvedDistribution,
    default_distribution_location,
)
from python_embedder.errors import AcquisitionError, BuildError
from python_embedder import installer
from python_embedder.packed import PACKED_RESOURCES_FILENAME, ResourceBundle
from python_embedder.policy import PackagingPolicy
from python_embedder.resource import (
    CollectibleResource,
    DataLocation,
    PythonModuleSource,
    Resource,
    ResourceKind,
)
from python_embedder import scanning
from python_embedder.serialize import render_config_module, write_default_python_config
from python_embedder.target import TargetConfig, is_windows_triple, resolve_target_config

CONFIG_MODULE_FILENAME: str = "default_python_config.py"


@dataclass(frozen=True, slots=True)
class ExecutableBuildRequest:
    """What the native executable builder receives."""

    binary_name: str
    resource_bundle: bytes
    config_source: str
    target_triple: str
    opt_level: str
    release: bool


@dataclass(frozen=True, slots=True)
class ExecutableBuildResult:
    binary: bytes
    exe_name: str


class ExecutableBuilder(Protocol):
    def __call__(self, request: ExecutableBuildRequest) -> ExecutableBuildResult: ...


class PythonExecutable:
    """Build context for one executable.

    :param name: Binary name (without platform suffix).
    :param distribution: Target distribution handle.
    :param policy: Packaging policy applied to every added resource.
    :param options: Run-time options; distribution defaults when ``None``.
    :param host_triple: Triple of the machine running the build.
    :param target_triple: Triple the executable is built for; the
        distribution's own triple when ``None``.
    :param registry: Registry used to find a host distribution.
    :param pip_platform_tag: pip ``--platform`` tag replacing the one derived from
        ``target_triple`` when downloading wheels.
    :param pip_implementation: pip ``--implementation`` tag (``cp`` when ``None``).
    :param pip_abi: pip ``--abi`` tag (derived when ``None``).
    :param logger: Logger for progress output.
    """

    def __init__(
        self,
        name: str,
        distribution: DistributionHandle,
        policy: PackagingPolicy,
        options: RunTimeOptions | None,
        *,
        host_triple: str,
        target_triple: str | None = None,
        registry: DistributionRegistry | None = None,
        pip_platform_tag: str | None = None,
        pip_implementation: str | None = None,
        pip_abi: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("python_embedder")
        self.name: str = name
        self.distribution: DistributionHandle = distribution
        self.policy: PackagingPolicy = policy
        self.host_triple: str = host_triple
        self.registry: DistributionRegistry | None = registry
        self.pip_platform_tag: str | None = pip_platform_tag
        self.pip_implementation: str | None = pip_implementation
        self.pip_abi: str | None = pip_abi

        dist: ResolvedDistribution = distribution.ensure_resolved(self.logger)
        self.target_triple: str = target_triple if target_triple is not None else dist.target_triple
        self.options: RunTimeOptions = options if options is not None else dist.create_interpreter_config()
        self.collection: ResourceCollection = ResourceCollection(
            allow_override=policy.allow_resource_override,
            supports_in_memory_shared_library_loading=(
                policy.allow_in_memory_shared_library_loading
                and dist.supports_in_memory_shared_library_loading()
            ),
            supports_shared_library_loading=dist.supports_shared_library_loading(),
            extension_suffixes=dist.extension_suffixes,
            cache_tag=dist.cache_tag,
            logger=self.logger,
        )
        self._host_distribution: DistributionHandle | None = None
        self._owns_host_distribution: bool = False

    def __repr__(self) -> str:
        return f"PythonExecutable<{self.name} {self.target_triple}>"

    @property
    def resolved_distribution(self) -> ResolvedDistribution:
        return self.distribution.ensure_resolved(self.logger)

    @property
    def exe_name(self) -> str:
        if is_windows_triple(self.target_triple) is True:
            return self.name + ".exe"
        return self.name

    def ensure_host_distribution(self, logger: logging.Logger | None = None) -> DistributionHandle:
        """Distribution able to run on the build machine.

        The target distribution is reused when the host can execute it;
        otherwise a standalone distribution for the host triple and the same
        Python version is resolved. The result is remembered.

        :raises AcquisitionError: If no usable host distribution can be resolved.
        """

        if self._host_distribution is not None:
            return self._host_distribution
        log: logging.Logger = logger if logger is not None else self.logger

        dist: ResolvedDistribution = self.resolved_distribution
        if self.host_triple in dist.compatible_host_triples():
            self._host_distribution = self.distribution
            return self.distribution

        version: str = dist.python_major_minor_version
        log.info(f"python-embedder: resolving host distribution for {self.host_triple} (Python {version})")
        try:
            location: DistributionLocation = default_distribution_location(
                DistributionFlavor.STANDALONE,
                self.host_triple,
                version,
                registry=self.registry,
            )
            handle: DistributionHandle = DistributionHandle(
                DistributionFlavor.STANDALONE,
                location,
                self.distribution.destination,
            )
            handle.ensure_resolved(log)
        except AcquisitionError as e:
            raise AcquisitionError(
                f"unable to resolve host Python {version} distribution for {self.host_triple}: {e.message}",
                label="to_python_executable()",
            ) from e

        self._host_distribution = handle
        self._owns_host_distribution = True
        return handle

    def target_config(self) -> TargetConfig:
        return resolve_target_config(
            target=self.target_triple,
            python_version_override=self.resolved_distribution.python_major_minor_version,
            platform_tag_override=self.pip_platform_tag,
            implementation_override=self.pip_implementation,
            abi_override=self.pip_abi,
        )

    def _compile(
        self,
        source: bytes,
        filename: str,
        optimize: BytecodeOptimizationLevel,
        mode: CompileMode,
    ) -> bytes:
        host: DistributionHandle = self.ensure_host_distribution()
        return host.compile_bytecode(source, filename, optimize, mode, logger=self.logger)

    def make_python_module_source(
        self,
        name: str,
        source: str | bytes,
        is_package: bool = False,
    ) -> CollectibleResource:
        """Create a module from source text, with the policy's decision attached."""

        data: bytes = source.encode("utf-8") if isinstance(source, str) else bytes(source)
        module: PythonModuleSource = PythonModuleSource(
            name=name,
            source=DataLocation.memory(data),
            is_package=is_package,
            cache_tag=self.resolved_distribution.cache_tag,
        )
        return self.policy.to_collectible(module)

    def add_python_resource(self, resource: Resource | CollectibleResource) -> bool:
        """Add one resource. Bare resources go through the policy first.

        :returns: ``True`` if stored, ``False`` if excluded.
        """

        collectible: CollectibleResource
        if isinstance(resource, CollectibleResource):
            collectible = resource
        else:
            collectible = self.policy.to_collectible(resource)
        self.collection.allow_override = self.policy.allow_resource_override
        return self.collection.add(collectible)

    def add_python_resources(self, resources: Iterable[Resource | CollectibleResource]) -> int:
        added: int = 0
        for resource in resources:
            if self.add_python_resource(resource) is True:
                added += 1
        return added

    def add_distribution_resources(self) -> int:
        """Add the distribution's standard library through the policy."""

        dist: ResolvedDistribution = self.resolved_distribution
        t0: float = time.perf_counter()
        added: int = self.add_python_resources(dist.source_modules())
        added += self.add_python_resources(dist.package_resources(include_test=self.policy.include_test))
        added += self.add_python_resources(dist.extension_modules())
        t1: float = time.perf_counter()
        self.logger.info(f"python-embedder: added {added} distribution resources in {t1 - t0:.2f}s")
        return added

    def _collectibles(self, resources: list[Resource]) -> list[CollectibleResource]:
        return [self.policy.to_collectible(r) for r in resources]

    def pip_install(
        self,
        args: Iterable[str],
        extra_envs: Mapping[str, str] | None = None,
    ) -> list[CollectibleResource]:
        host: ResolvedDistribution = self.ensure_host_distribution().ensure_resolved(self.logger)
        dist: ResolvedDistribution = self.resolved_distribution
        return self._collectibles(
            installer.pip_install(
                host.python_exe,
                args,
                cache_tag=dist.cache_tag,
                extension_suffixes=dist.extension_suffixes,
                extra_envs=extra_envs,
                logger=self.logger,
            )
        )

    def pip_download(self, args: Iterable[str]) -> list[CollectibleResource]:
        host: ResolvedDistribution = self.ensure_host_distribution().ensure_resolved(self.logger)
        dist: ResolvedDistribution = self.resolved_distribution
        return self._collectibles(
            installer.pip_download(
                host.python_exe,
                args,
                target=self.target_config(),
                cache_tag=dist.cache_tag,
                extension_suffixes=dist.extension_suffixes,
                logger=self.logger,
            )
        )

    def setup_py_install(
        self,
        package_path: pathlib.Path,
        extra_envs: Mapping[str, str] | None = None,
        extra_global_arguments: Iterable[str] = (),
    ) -> list[CollectibleResource]:
        host: ResolvedDistribution = self.ensure_host_distribution().ensure_resolved(self.logger)
        dist: ResolvedDistribution = self.resolved_distribution
        return self._collectibles(
            installer.setup_py_install(
                host.python_exe,
                package_path,
                cache_tag=dist.cache_tag,
                extension_suffixes=dist.extension_suffixes,
                extra_envs=extra_envs,
                extra_global_arguments=extra_global_arguments,
                logger=self.logger,
            )
        )

    def read_package_root(self, path: pathlib.Path, packages: Iterable[str]) -> list[CollectibleResource]:
        dist: ResolvedDistribution = self.resolved_distribution
        return self._collectibles(
            scanning.read_package_root(
                path,
                packages,
                cache_tag=dist.cache_tag,
                extension_suffixes=dist.extension_suffixes,
            )
        )

    def read_virtualenv(self, path: pathlib.Path) -> list[CollectibleResource]:
        dist: ResolvedDistribution = self.resolved_distribution
        return self._collectibles(
            scanning.read_virtualenv(
                path,
                cache_tag=dist.cache_tag,
                extension_suffixes=dist.extension_suffixes,
            )
        )

    def filter_resources_from_files(
        self,
        files: Iterable[str | os.PathLike[str]] = (),
        glob_files: Iterable[str] = (),
    ) -> list[tuple[ResourceKind, str]]:
        return self.collection.filter_from_files(files, glob_files)

    def finalize(self) -> tuple[EmbeddedConfig, ResourceBundle]:
        """Produce the embedded config and the resource bundle.

        Bytecode is compiled here, with the host distribution's interpreter.

        :raises ConfigurationConflictError: If the run-time options conflict.
        :raises CompilationError: If a module fails to compile.
        """

        config: EmbeddedConfig = build_embedded_config(
            self.collection,
            self.options,
            target_triple=self.target_triple,
        )
        t0: float = time.perf_counter()
        bundle: ResourceBundle = ResourceBundle(self.collection.prepare(self._compile), logger=self.logger)
        t1: float = time.perf_counter()
        self.logger.info(f"python-embedder: finalized {self.name} in {t1 - t0:.2f}s")
        return config, bundle

    def write_artifacts(self, output_dir: pathlib.Path) -> tuple[pathlib.Path, pathlib.Path]:
        """Write the config module, packed resources and file installs.

        :returns: ``(config_module_path, packed_resources_path)``.
        """

        config, bundle = self.finalize()
        packed_path: pathlib.Path = bundle.write(output_dir)
        config_path: pathlib.Path = write_default_python_config(
            output_dir / CONFIG_MODULE_FILENAME,
            config,
            PACKED_RESOURCES_FILENAME,
        )
        return config_path, packed_path

    def to_build_request(
        self,
        config_source: str,
        bundle: ResourceBundle,
        opt_level: str = "0",
        release: bool = False,
    ) -> ExecutableBuildRequest:
        return ExecutableBuildRequest(
            binary_name=self.exe_name,
            resource_bundle=bundle.packed_resources,
            config_source=config_source,
            target_triple=self.target_triple,
            opt_level=opt_level,
            release=release,
        )

    def build(
        self,
        builder: ExecutableBuilder,
        output_dir: pathlib.Path,
        *,
        opt_level: str = "0",
        release: bool = False,
    ) -> pathlib.Path:
        """Finalize and hand the result to a native builder.

        The returned binary is written to ``output_dir`` along with any
        filesystem-relative resources.

        :returns: Path of the written executable.
        :raises BuildError: If the builder fails.
        """

        config, bundle = self.finalize()
        source: str = render_config_module(config, PACKED_RESOURCES_FILENAME)
        request: ExecutableBuildRequest = self.to_build_request(source, bundle, opt_level, release)

        self.logger.info(f"python-embedder: building {request.binary_name} for {self.target_triple}")
        result: ExecutableBuildResult = builder(request)
        if len(result.binary) == 0:
            raise BuildError(f"executable builder returned an empty binary for {request.binary_name}")

        bundle.write(output_dir)
        exe_path: pathlib.Path = output_dir / result.exe_name
        exe_path.write_bytes(result.binary)
        mode: int = os.stat(exe_path).st_mode
        os.chmod(exe_path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        self.logger.info(f"python-embedder: wrote {exe_path}")
        return exe_path

    def close(self) -> None:
        if self._owns_host_distribution is True and self._host_distribution is not None:
            self._host_distribution.close()

    def __enter__(self) -> "PythonExecutable":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
