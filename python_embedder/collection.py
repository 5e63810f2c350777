"""Resource collection.

A :class:`ResourceCollection` is the set of resources an executable will carry,
each with the decision that admitted it and the location it resolved to.
Resources arrive from many sources (distribution, scans, installers, single
calls) and may be removed again by provenance with
:meth:`ResourceCollection.filter_from_files`; the collection only ever reflects
the exact sequence of calls made on it.
"""

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
import logging
import os
import pathlib

from python_embedder.bytecode import (
    BytecodeOptimizationLevel,
    CompileMode,
    bytecode_cache_path,
    module_source_path,
)
from python_embedder.errors import CompilationError, PolicyConflictError, UnsupportedResourceError
from python_embedder.resource import (
    AddCollectionContext,
    CollectibleResource,
    PythonExtensionModule,
    PythonModuleSource,
    PythonPackageDistributionResource,
    PythonPackageResource,
    Resource,
    ResourceKind,
    ResourceLocation,
    describe_resource,
    resource_identity,
)

CompileFn = Callable[[bytes, str, BytecodeOptimizationLevel, CompileMode], bytes]

_BYTECODE_FIELDS: dict[BytecodeOptimizationLevel, str] = {
    BytecodeOptimizationLevel.ZERO: "bytecode",
    BytecodeOptimizationLevel.ONE: "bytecode_opt1",
    BytecodeOptimizationLevel.TWO: "bytecode_opt2",
}


@dataclass(slots=True)
class CollectedResource:
    resource: Resource
    context: AddCollectionContext
    location: ResourceLocation


@dataclass(slots=True)
class PreparedResource:
    """An in-memory resource ready for the packed resources bundle."""

    name: str
    kind: ResourceKind
    is_package: bool = False
    is_stdlib: bool = False
    is_builtin: bool = False
    init_fn: str | None = None
    package: str | None = None
    relative_name: str | None = None
    payloads: dict[str, bytes] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class FileInstall:
    """A file written next to the executable (relative to its directory)."""

    path: str
    data: bytes
    executable: bool = False


@dataclass(slots=True)
class PreparedResources:
    resources: list[PreparedResource] = field(default_factory=list)
    files: list[FileInstall] = field(default_factory=list)

    def count(self, kind: ResourceKind) -> int:
        return sum(1 for r in self.resources if r.kind == kind)


def _normalize_path(path: str | os.PathLike[str]) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class ResourceCollection:
    """Resources keyed by identity, in insertion order.

    :param allow_override: Replace on identity collision instead of failing.
    :param supports_in_memory_shared_library_loading: Distribution capability.
    :param supports_shared_library_loading: Distribution capability.
    :param extension_suffixes: Extension suffixes the distribution can import.
        Empty accepts any suffix.
    :param cache_tag: Bytecode cache tag for resources that carry none.
    :param logger: Logger for progress output.
    """

    def __init__(
        self,
        *,
        allow_override: bool = False,
        supports_in_memory_shared_library_loading: bool = False,
        supports_shared_library_loading: bool = True,
        extension_suffixes: Iterable[str] = (),
        cache_tag: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self.allow_override: bool = allow_override
        self.supports_in_memory_shared_library_loading: bool = supports_in_memory_shared_library_loading
        self.supports_shared_library_loading: bool = supports_shared_library_loading
        self.extension_suffixes: tuple[str, ...] = tuple(extension_suffixes)
        self.cache_tag: str = cache_tag
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("python_embedder")
        self.excluded: int = 0
        self._entries: dict[tuple[ResourceKind, str], CollectedResource] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __iter__(self) -> Iterator[tuple[Resource, AddCollectionContext]]:
        return self.iter_resources()

    def iter_resources(self) -> Iterator[tuple[Resource, AddCollectionContext]]:
        """Yield ``(resource, context)`` pairs in insertion order.

        Each call starts a fresh pass over the current contents.
        """

        for entry in list(self._entries.values()):
            yield entry.resource, entry.context

    def entries(self) -> list[CollectedResource]:
        return list(self._entries.values())

    def get(self, identity: tuple[ResourceKind, str]) -> CollectedResource | None:
        return self._entries.get(identity)

    def has_filesystem_resources(self) -> bool:
        return any(e.location.is_in_memory is False for e in self._entries.values())

    def has_in_memory_resources(self) -> bool:
        return any(e.location.is_in_memory is True for e in self._entries.values())

    def _supports_location(self, resource: Resource, location: ResourceLocation) -> bool:
        kind: ResourceKind = resource.kind
        if location.is_in_memory is True:
            if kind.supports_in_memory is True:
                return True
            if isinstance(resource, PythonExtensionModule):
                return self.supports_in_memory_shared_library_loading
            return False
        return kind.supports_filesystem

    def _resolve_location(self, resource: Resource, context: AddCollectionContext) -> ResourceLocation:
        if context.location is None and context.location_fallback is None:
            raise UnsupportedResourceError(
                f"{describe_resource(resource)} is included but has no location",
                label="add_python_resource()",
            )

        if isinstance(resource, PythonExtensionModule):
            if resource.is_builtin is True:
                return ResourceLocation.in_memory()
            if self.supports_shared_library_loading is False:
                raise UnsupportedResourceError(
                    f"{describe_resource(resource)} is a shared library but the distribution "
                    f"cannot load shared library extension modules",
                    label="add_python_resource()",
                )
            if (
                len(self.extension_suffixes) > 0
                and resource.extension_file_suffix not in self.extension_suffixes
            ):
                raise UnsupportedResourceError(
                    f"{describe_resource(resource)} has suffix {resource.extension_file_suffix!r}, "
                    f"which the target distribution cannot import",
                    label="add_python_resource()",
                )

        for candidate in (context.location, context.location_fallback):
            if candidate is not None and self._supports_location(resource, candidate) is True:
                return candidate

        raise UnsupportedResourceError(
            f"{describe_resource(resource)} cannot be placed {context.location}"
            + (f" or {context.location_fallback}" if context.location_fallback is not None else ""),
            label="add_python_resource()",
        )

    def add(self, resource: Resource | CollectibleResource, context: AddCollectionContext | None = None) -> bool:
        """Add a resource with its decision.

        :param resource: Resource, or a collectible carrying its own context.
        :param context: Decision for ``resource`` (ignored for collectibles).
        :returns: ``True`` if stored, ``False`` if the decision excluded it.
        :raises UnsupportedResourceError: If no allowed location fits the resource.
        :raises PolicyConflictError: On identity collision without override.
        """

        if isinstance(resource, CollectibleResource):
            context = resource.add_context
            resource = resource.resource
        if context is None:
            raise UnsupportedResourceError(
                f"{describe_resource(resource)} added without a collection context",
                label="add_python_resource()",
            )

        if context.include is False:
            self.excluded += 1
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"python-embedder: excluding {describe_resource(resource)}")
            return False

        location: ResourceLocation = self._resolve_location(resource, context)
        identity: tuple[ResourceKind, str] = resource_identity(resource)
        existing: CollectedResource | None = self._entries.get(identity)
        if existing is not None:
            if self.allow_override is False:
                raise PolicyConflictError(
                    f"{describe_resource(resource)} conflicts with already added "
                    f"{describe_resource(existing.resource)}",
                    label="add_python_resource()",
                )
            self.logger.info(
                f"python-embedder: {describe_resource(resource)} replaces "
                f"{describe_resource(existing.resource)}"
            )

        self._entries[identity] = CollectedResource(
            resource=resource,
            context=context.copy(),
            location=location,
        )
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"python-embedder: adding {describe_resource(resource)} ({location})")
        return True

    def filter_from_files(
        self,
        files: Iterable[str | os.PathLike[str]] = (),
        glob_files: Iterable[str] = (),
    ) -> list[tuple[ResourceKind, str]]:
        """Remove resources whose provenance matches a path or a glob.

        Resources without provenance are never removed.

        :param files: Exact provenance paths.
        :param glob_files: Glob patterns matched segment by segment against provenance
            paths. Relative patterns match from the right.
            Absolute patterns must match the whole path.
        :returns: Identities of the removed resources.
        """

        paths: set[str] = {_normalize_path(p) for p in files}
        globs: list[str] = list(glob_files)

        removed: list[tuple[ResourceKind, str]] = []
        for identity, entry in list(self._entries.items()):
            provenance: pathlib.Path | None = entry.resource.provenance
            if provenance is None:
                continue
            normalized: str = _normalize_path(provenance)
            if normalized in paths or any(pathlib.PurePath(normalized).match(g) for g in globs) is True:
                del self._entries[identity]
                removed.append(identity)

        if len(removed) > 0:
            self.logger.info(f"python-embedder: filtered {len(removed)} resources")
        return removed

    def _cache_tag_for(self, resource: Resource) -> str:
        tag: str = resource.cache_tag if len(resource.cache_tag) > 0 else self.cache_tag
        if len(tag) == 0:
            raise CompilationError(f"no bytecode cache tag for {describe_resource(resource)}")
        return tag

    def prepare(self, compile_fn: CompileFn) -> PreparedResources:
        """Turn the collection into packed resources and files to install.

        :param compile_fn: ``(source, filename, optimize, mode) -> bytes``.
        :returns: In-memory resources and filesystem installs, in insertion order.
        :raises CompilationError: If a module fails to compile.
        """

        prepared: PreparedResources = PreparedResources()
        for entry in self._entries.values():
            if entry.location.is_in_memory is True:
                prepared.resources.append(self._prepare_in_memory(entry, compile_fn))
            else:
                assert entry.location.prefix is not None
                prepared.files.extend(self._prepare_files(entry, entry.location.prefix, compile_fn))
        self.logger.info(
            f"python-embedder: prepared {len(prepared.resources)} in-memory resources "
            f"and {len(prepared.files)} files"
        )
        return prepared

    def _compile(
        self,
        module: PythonModuleSource,
        filename: str,
        optimize: BytecodeOptimizationLevel,
        mode: CompileMode,
        compile_fn: CompileFn,
    ) -> bytes:
        try:
            return compile_fn(module.source.resolve_bytes(), filename, optimize, mode)
        except CompilationError as e:
            raise CompilationError(f"module {module.name}: {e.message}", label=e.label) from e

    def _prepare_in_memory(self, entry: CollectedResource, compile_fn: CompileFn) -> PreparedResource:
        resource: Resource = entry.resource
        ctx: AddCollectionContext = entry.context

        if isinstance(resource, PythonModuleSource):
            out: PreparedResource = PreparedResource(
                name=resource.name,
                kind=resource.kind,
                is_package=resource.is_package,
                is_stdlib=resource.is_stdlib,
            )
            if ctx.store_source is True:
                out.payloads["source"] = resource.source.resolve_bytes()
            filename: str = module_source_path(name=resource.name, is_package=resource.is_package)
            for level in ctx.optimize_levels():
                optimize: BytecodeOptimizationLevel = BytecodeOptimizationLevel(level)
                out.payloads[_BYTECODE_FIELDS[optimize]] = self._compile(
                    resource, filename, optimize, CompileMode.BYTECODE, compile_fn
                )
            return out

        if isinstance(resource, PythonPackageResource):
            return PreparedResource(
                name=resource.identity_name,
                kind=resource.kind,
                is_stdlib=resource.is_stdlib,
                package=resource.leaf_package,
                relative_name=resource.relative_name,
                payloads={"data": resource.data.resolve_bytes()},
            )

        if isinstance(resource, PythonPackageDistributionResource):
            return PreparedResource(
                name=resource.identity_name,
                kind=resource.kind,
                is_stdlib=resource.is_stdlib,
                package=resource.package,
                relative_name=f"{resource.directory_name}/{resource.name}",
                payloads={"data": resource.data.resolve_bytes()},
            )

        assert isinstance(resource, PythonExtensionModule)
        ext: PreparedResource = PreparedResource(
            name=resource.name,
            kind=resource.kind,
            is_package=resource.is_package,
            is_stdlib=resource.is_stdlib,
            is_builtin=resource.is_builtin,
            init_fn=resource.init_fn,
        )
        if resource.shared_library is not None:
            ext.payloads["shared_library"] = resource.shared_library.resolve_bytes()
        return ext

    def _prepare_files(
        self,
        entry: CollectedResource,
        prefix: str,
        compile_fn: CompileFn,
    ) -> list[FileInstall]:
        resource: Resource = entry.resource
        ctx: AddCollectionContext = entry.context

        if isinstance(resource, PythonModuleSource):
            files: list[FileInstall] = []
            source_rel: str = module_source_path(name=resource.name, is_package=resource.is_package)
            if ctx.store_source is True:
                files.append(FileInstall(path=f"{prefix}/{source_rel}", data=resource.source.resolve_bytes()))
            if ctx.wants_bytecode() is True:
                cache_tag: str = self._cache_tag_for(resource)
                for level in ctx.optimize_levels():
                    optimize: BytecodeOptimizationLevel = BytecodeOptimizationLevel(level)
                    pyc_rel: str = bytecode_cache_path(
                        name=resource.name,
                        is_package=resource.is_package,
                        cache_tag=cache_tag,
                        optimize=optimize,
                    )
                    data: bytes = self._compile(
                        resource, source_rel, optimize, CompileMode.PYC_UNCHECKED_HASH, compile_fn
                    )
                    files.append(FileInstall(path=f"{prefix}/{pyc_rel}", data=data))
            return files

        if isinstance(resource, PythonPackageResource):
            package_dir: str = resource.leaf_package.replace(".", "/")
            return [
                FileInstall(
                    path=f"{prefix}/{package_dir}/{resource.relative_name}",
                    data=resource.data.resolve_bytes(),
                )
            ]

        if isinstance(resource, PythonPackageDistributionResource):
            return [
                FileInstall(
                    path=f"{prefix}/{resource.directory_name}/{resource.name}",
                    data=resource.data.resolve_bytes(),
                )
            ]

        assert isinstance(resource, PythonExtensionModule)
        if resource.shared_library is None:
            return []
        parts: list[str] = resource.name.split(".")[:-1]
        rel: str = "/".join([*parts, resource.file_name])
        return [FileInstall(path=f"{prefix}/{rel}", data=resource.shared_library.resolve_bytes())]
