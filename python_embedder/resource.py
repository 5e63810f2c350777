"""Python resource model.

A resource is anything that may be embedded into, or shipped alongside, a
produced executable: module sources, package data files, package metadata
files and extension modules. The kind set is closed; behaviour that differs per
kind is driven by :class:`ResourceKind` capabilities and explicit branches
rather than by methods on the resource classes.

Every resource is immutable. The per-resource inclusion decision lives in a
separate, mutable :class:`AddCollectionContext`.
"""

from dataclasses import dataclass, field, fields
import enum
import pathlib

from python_embedder.errors import InvalidArgumentError


@dataclass(frozen=True, slots=True)
class DataLocation:
    """Where the bytes of a resource come from.

    Exactly one of ``data`` (in-memory bytes) and ``path`` (file reference) is
    set.
    """

    data: bytes | None = None
    path: pathlib.Path | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.path is None):
            raise InvalidArgumentError("DataLocation requires exactly one of data or path.")

    @classmethod
    def memory(cls, data: bytes) -> "DataLocation":
        return cls(data=bytes(data))

    @classmethod
    def from_path(cls, path: str | pathlib.Path) -> "DataLocation":
        return cls(path=pathlib.Path(path))

    def resolve_bytes(self) -> bytes:
        """Return the resource bytes, reading the backing file if needed."""

        if self.data is not None:
            return self.data
        assert self.path is not None
        return self.path.read_bytes()

    def to_memory(self) -> "DataLocation":
        """Return an in-memory copy (used before temporary directories vanish)."""

        if self.data is not None:
            return self
        return DataLocation.memory(self.resolve_bytes())


class ResourceKind(enum.Enum):
    """Closed set of resource kinds and what each one supports.

    The value tuple is ``(name, needs_compilation, supports_in_memory,
    supports_filesystem)``. Extension modules only live in memory when they are
    builtin or the distribution can load shared libraries from memory; that
    distribution-dependent part is checked by the collection.
    """

    SOURCE_MODULE = ("source_module", True, True, True)
    PACKAGE_RESOURCE = ("package_resource", False, True, True)
    PACKAGE_DISTRIBUTION_RESOURCE = ("package_distribution_resource", False, True, True)
    EXTENSION_MODULE = ("extension_module", False, False, True)

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def needs_compilation(self) -> bool:
        return self.value[1]

    @property
    def supports_in_memory(self) -> bool:
        return self.value[2]

    @property
    def supports_filesystem(self) -> bool:
        return self.value[3]

    @classmethod
    def from_label(cls, label: str) -> "ResourceKind":
        for kind in cls:
            if kind.label == label:
                return kind
        raise InvalidArgumentError(f"unknown resource kind {label!r}")


def _check_relative_name(value: str, what: str) -> None:
    parts: list[str] = value.replace("\\", "/").split("/")
    if len(value) == 0 or value.startswith(("/", "\\")) is True or ":" in parts[0] or ".." in parts:
        raise InvalidArgumentError(f"{what} must be a relative path inside its package; got {value!r}")


@dataclass(frozen=True, slots=True)
class PythonModuleSource:
    """Source code of a Python module.

    :ivar name: Fully qualified module name (``pkg.mod``).
    :ivar source: Source bytes.
    :ivar is_package: Whether the module is a package (``__init__``).
    :ivar cache_tag: Bytecode cache tag (e.g. ``cpython-39``).
    :ivar provenance: File the module was discovered from, if any.
    """

    name: str
    source: DataLocation
    is_package: bool = False
    cache_tag: str = ""
    is_stdlib: bool = False
    is_test: bool = False
    provenance: pathlib.Path | None = None

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.SOURCE_MODULE

    @property
    def identity_name(self) -> str:
        return self.name

    @property
    def top_level_package(self) -> str:
        return self.name.split(".")[0]


@dataclass(frozen=True, slots=True)
class PythonPackageResource:
    """A non-module file belonging to a Python package.

    :ivar leaf_package: Package that owns the file.
    :ivar relative_name: Path of the file relative to the package directory.
    """

    leaf_package: str
    relative_name: str
    data: DataLocation
    cache_tag: str = ""
    is_stdlib: bool = False
    is_test: bool = False
    provenance: pathlib.Path | None = None

    def __post_init__(self) -> None:
        _check_relative_name(self.relative_name, "package resource relative_name")

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.PACKAGE_RESOURCE

    @property
    def identity_name(self) -> str:
        return f"{self.leaf_package}:{self.relative_name}"

    @property
    def name(self) -> str:
        return self.identity_name

    @property
    def is_package(self) -> bool:
        return False

    @property
    def top_level_package(self) -> str:
        return self.leaf_package.split(".")[0]


@dataclass(frozen=True, slots=True)
class PythonPackageDistributionResource:
    """A file from a package's ``.dist-info`` or ``.egg-info`` directory."""

    package: str
    version: str
    name: str
    data: DataLocation
    location_type: str = "dist-info"
    cache_tag: str = ""
    is_stdlib: bool = False
    is_test: bool = False
    provenance: pathlib.Path | None = None

    def __post_init__(self) -> None:
        if self.location_type not in {"dist-info", "egg-info"}:
            raise InvalidArgumentError(
                f"distribution resource location_type must be dist-info or egg-info; got {self.location_type!r}"
            )
        _check_relative_name(self.name, "distribution resource name")

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.PACKAGE_DISTRIBUTION_RESOURCE

    @property
    def identity_name(self) -> str:
        return f"{self.package}:{self.name}"

    @property
    def is_package(self) -> bool:
        return False

    @property
    def top_level_package(self) -> str:
        return self.package

    @property
    def directory_name(self) -> str:
        """Name of the metadata directory (``pkg-1.0.dist-info``)."""

        return f"{self.package}-{self.version}.{self.location_type}"


@dataclass(frozen=True, slots=True)
class PythonExtensionModule:
    """A compiled extension module.

    Builtin extension modules (``shared_library is None``) are linked into
    libpython by the external builder; only their name and init function are
    recorded.

    :ivar init_fn: Name of the ``PyInit_*`` function.
    :ivar extension_file_suffix: File suffix of the shared library, if any.
    :ivar shared_library: Shared library payload, if not builtin.
    :ivar builtin_default: Whether the distribution links it into libpython.
    :ivar required: Whether the interpreter cannot start without it.
    :ivar variant: Distribution variant name, if the distribution has several.
    :ivar link_libraries: Non-system libraries the module links against.
    """

    name: str
    init_fn: str | None = None
    extension_file_suffix: str = ""
    shared_library: DataLocation | None = None
    is_package: bool = False
    builtin_default: bool = False
    required: bool = False
    variant: str | None = None
    link_libraries: tuple[str, ...] = ()
    cache_tag: str = ""
    is_stdlib: bool = False
    is_test: bool = False
    provenance: pathlib.Path | None = None

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.EXTENSION_MODULE

    @property
    def identity_name(self) -> str:
        return self.name

    @property
    def top_level_package(self) -> str:
        return self.name.split(".")[0]

    @property
    def is_builtin(self) -> bool:
        return self.shared_library is None

    @property
    def file_name(self) -> str:
        """File name of the shared library (``mod.cpython-39-x86_64-linux-gnu.so``)."""

        return self.name.split(".")[-1] + self.extension_file_suffix


Resource = (
    PythonModuleSource
    | PythonPackageResource
    | PythonPackageDistributionResource
    | PythonExtensionModule
)

_RESOURCE_TYPES: tuple[type, ...] = (
    PythonModuleSource,
    PythonPackageResource,
    PythonPackageDistributionResource,
    PythonExtensionModule,
)


def is_resource(value: object) -> bool:
    return isinstance(value, _RESOURCE_TYPES)


def resource_identity(resource: Resource) -> tuple[ResourceKind, str]:
    """Identity used to detect duplicates in a collection."""

    return (resource.kind, resource.identity_name)


def describe_resource(resource: Resource) -> str:
    """Short human readable description, e.g. ``source_module 'app'``."""

    desc: str = f"{resource.kind.label} {resource.identity_name!r}"
    if resource.provenance is not None:
        desc += f" (from {resource.provenance})"
    return desc


def is_stdlib_test_package(name: str, test_packages: list[str] | tuple[str, ...]) -> bool:
    """Whether a dotted name is, or lives inside, a stdlib test package.

    :param name: Dotted module or package name.
    :param test_packages: Test package names advertised by the distribution.
    :returns: ``True`` for test packages and their children.
    """

    for pkg in test_packages:
        if name == pkg or name.startswith(pkg + ".") is True:
            return True
    return False


@dataclass(frozen=True, slots=True)
class ResourceLocation:
    """Where a resource is placed at run time.

    Either in the packed resources blob loaded into memory
    (``prefix is None``) or in a file relative to the produced executable,
    under ``prefix``.
    """

    prefix: str | None = None

    @classmethod
    def in_memory(cls) -> "ResourceLocation":
        return cls(prefix=None)

    @classmethod
    def filesystem_relative(cls, prefix: str) -> "ResourceLocation":
        if len(prefix) == 0 or prefix.startswith("/") is True or ".." in prefix.split("/"):
            raise InvalidArgumentError(
                f"filesystem-relative prefix must be a non-empty relative path; got {prefix!r}"
            )
        return cls(prefix=prefix)

    @classmethod
    def parse(cls, value: str) -> "ResourceLocation":
        """Parse ``in-memory`` or ``filesystem-relative:<prefix>``.

        :raises InvalidArgumentError: If the string has another form.
        """

        if value == "in-memory":
            return cls.in_memory()
        if value.startswith("filesystem-relative:") is True:
            return cls.filesystem_relative(value[len("filesystem-relative:") :])
        raise InvalidArgumentError(
            f"invalid resource location {value!r}; expected 'in-memory' or 'filesystem-relative:<prefix>'"
        )

    @property
    def is_in_memory(self) -> bool:
        return self.prefix is None

    def __str__(self) -> str:
        if self.prefix is None:
            return "in-memory"
        return f"filesystem-relative:{self.prefix}"


@dataclass(slots=True)
class AddCollectionContext:
    """Mutable decision record for one resource.

    ``include=False`` is the deliberate way to exclude a resource. An included
    resource must carry a ``location``.
    """

    include: bool = False
    location: ResourceLocation | None = None
    location_fallback: ResourceLocation | None = None
    store_source: bool = False
    optimize_level_zero: bool = False
    optimize_level_one: bool = False
    optimize_level_two: bool = False

    def replace(self, other: "AddCollectionContext") -> None:
        """Overwrite every field with the values of ``other``."""

        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))

    def copy(self) -> "AddCollectionContext":
        new: AddCollectionContext = AddCollectionContext()
        new.replace(self)
        return new

    def wants_bytecode(self) -> bool:
        return self.optimize_level_zero or self.optimize_level_one or self.optimize_level_two

    def optimize_levels(self) -> list[int]:
        levels: list[int] = []
        if self.optimize_level_zero is True:
            levels.append(0)
        if self.optimize_level_one is True:
            levels.append(1)
        if self.optimize_level_two is True:
            levels.append(2)
        return levels


@dataclass(slots=True)
class CollectibleResource:
    """A resource paired with the decision the packaging policy made for it.

    Callers may edit ``add_context`` before handing the pair to a collection to
    override the decision for this one resource.
    """

    resource: Resource
    add_context: AddCollectionContext = field(default_factory=AddCollectionContext)

    @property
    def kind(self) -> ResourceKind:
        return self.resource.kind

    @property
    def name(self) -> str:
        return self.resource.identity_name
