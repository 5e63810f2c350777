"""Python distributions.

A distribution is a concrete, versioned build of CPython for one target triple,
laid out the way python-build-standalone archives are: a ``python/`` directory
holding ``PYTHON.json`` (metadata), the interpreter, the standard library and
the extension module build info.

:class:`DistributionHandle` identifies a distribution (flavor + location) and
resolves it lazily: the archive is fetched, verified and extracted on first use
and the result is shared by everything that asks afterwards.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import enum
import functools
import hashlib
import json
import logging
import os
import pathlib
import shutil
import tarfile
import time
import urllib.request
import zipfile

from python_embedder.bytecode import BytecodeCompiler, BytecodeOptimizationLevel, CompileMode
from python_embedder.config import RunTimeOptions, TerminfoResolution, default_raw_allocator
from python_embedder.errors import AcquisitionError, BuildError, CompilationError, InvalidArgumentError
from python_embedder.policy import PackagingPolicy, create_policy
from python_embedder.resource import (
    DataLocation,
    PythonExtensionModule,
    PythonModuleSource,
    PythonPackageResource,
    Resource,
)
from python_embedder.scanning import find_python_resources
from python_embedder.target import (
    compatible_host_triples,
    default_extension_suffixes,
    is_windows_triple,
    parse_python_major_minor,
)


class DistributionFlavor(enum.Enum):
    STANDALONE = "standalone"
    STANDALONE_STATIC = "standalone_static"
    STANDALONE_DYNAMIC = "standalone_dynamic"

    @classmethod
    def from_name(cls, name: str) -> "DistributionFlavor":
        for flavor in cls:
            if flavor.value == name:
                return flavor
        raise InvalidArgumentError(
            f"invalid distribution flavor {name}",
            label="PythonDistribution()",
        )


@dataclass(frozen=True, slots=True)
class DistributionLocation:
    """Where a distribution archive lives. Exactly one of ``local_path`` / ``url``."""

    sha256: str
    local_path: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if len(self.sha256) == 0:
            raise InvalidArgumentError("sha256 is required", label="PythonDistribution()")
        if self.local_path is not None and self.url is not None:
            raise InvalidArgumentError(
                "cannot define both local_path and url",
                label="PythonDistribution()",
            )
        if self.local_path is None and self.url is None:
            raise InvalidArgumentError(
                "must define one of local_path or url",
                label="PythonDistribution()",
            )

    @classmethod
    def local(cls, path: str | pathlib.Path, sha256: str) -> "DistributionLocation":
        return cls(sha256=sha256, local_path=str(path))

    @classmethod
    def remote(cls, url: str, sha256: str) -> "DistributionLocation":
        return cls(sha256=sha256, url=url)

    @property
    def archive_name(self) -> str:
        if self.url is not None:
            return self.url.rstrip("/").split("/")[-1].split("?")[0]
        assert self.local_path is not None
        return pathlib.Path(self.local_path).name

    def __str__(self) -> str:
        where: str = self.url if self.url is not None else str(self.local_path)
        return f"{where} (sha256={self.sha256})"


@dataclass(frozen=True, slots=True)
class DistributionRecord:
    python_major_minor_version: str
    flavor: DistributionFlavor
    target_triple: str
    location: DistributionLocation
    supports_prebuilt_extension_modules: bool = True


@dataclass(frozen=True, slots=True)
class DistributionRegistry:
    """Known distributions, in preference order. Never mutated once built."""

    records: tuple[DistributionRecord, ...] = ()

    def find(
        self,
        target_triple: str,
        flavor: DistributionFlavor,
        python_major_minor_version: str | None = None,
    ) -> DistributionRecord | None:
        wanted: str | None = None
        if python_major_minor_version is not None:
            wanted = parse_python_major_minor(python_major_minor_version)
        for record in self.records:
            if record.target_triple != target_triple or record.flavor != flavor:
                continue
            if wanted is not None and record.python_major_minor_version != wanted:
                continue
            return record
        return None

    @classmethod
    def from_json(cls, path: pathlib.Path) -> "DistributionRegistry":
        """Load a registry document.

        The document is ``{"distributions": [{"python_major_minor_version",
        "flavor", "target_triple", "sha256", "url" | "local_path",
        "supports_prebuilt_extension_modules"?}]}``.

        :raises AcquisitionError: If the file cannot be read or is malformed.
        """

        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
            records: list[DistributionRecord] = []
            for entry in doc["distributions"]:
                records.append(
                    DistributionRecord(
                        python_major_minor_version=parse_python_major_minor(
                            entry["python_major_minor_version"]
                        ),
                        flavor=DistributionFlavor.from_name(entry["flavor"]),
                        target_triple=entry["target_triple"],
                        location=DistributionLocation(
                            sha256=entry["sha256"],
                            local_path=entry.get("local_path"),
                            url=entry.get("url"),
                        ),
                        supports_prebuilt_extension_modules=bool(
                            entry.get("supports_prebuilt_extension_modules", True)
                        ),
                    )
                )
        except (OSError, ValueError, KeyError, TypeError, BuildError) as e:
            raise AcquisitionError(f"invalid distributions registry {path}: {e}") from e
        return cls(records=tuple(records))

    @classmethod
    def from_environment(cls) -> "DistributionRegistry":
        """Registry named by ``PYTHON_EMBEDDER_DISTRIBUTIONS``; empty when unset."""

        path: str | None = os.environ.get("PYTHON_EMBEDDER_DISTRIBUTIONS")
        if path is None or len(path) == 0:
            return cls()
        return cls.from_json(pathlib.Path(path))


@functools.cache
def default_registry() -> DistributionRegistry:
    """Process-wide registry, read from the environment on first use."""

    return DistributionRegistry.from_environment()


def default_distribution_location(
    flavor: DistributionFlavor,
    target_triple: str,
    python_version: str | None = None,
    registry: DistributionRegistry | None = None,
) -> DistributionLocation:
    """Look up the default distribution for a target.

    :raises AcquisitionError: If no known distribution matches.
    """

    reg: DistributionRegistry = registry if registry is not None else default_registry()
    record: DistributionRecord | None = reg.find(target_triple, flavor, python_version)
    if record is None:
        version_text: str = f" (Python {python_version})" if python_version is not None else ""
        raise AcquisitionError(
            f"could not find default Python distribution for {target_triple}{version_text}",
            label="default_python_distribution()",
        )
    return record.location


def resolve_cache_root(cache_dir: pathlib.Path | None) -> pathlib.Path:
    """Resolve the distribution cache directory.

    Defaults to ``$PYTHON_EMBEDDER_CACHE_DIR`` or ``.python_embedder_cache``
    under the current working directory.

    :param cache_dir: Optional cache directory override.
    :returns: Cache root directory.
    """

    if cache_dir is not None:
        root: pathlib.Path = cache_dir
    elif len(os.environ.get("PYTHON_EMBEDDER_CACHE_DIR", "")) > 0:
        root = pathlib.Path(os.environ["PYTHON_EMBEDDER_CACHE_DIR"])
    else:
        root = pathlib.Path.cwd() / ".python_embedder_cache"

    root.mkdir(parents=True, exist_ok=True)
    return root


def _sha256_file(path: pathlib.Path) -> str:
    """Hash a file with SHA-256.

    :param path: File to hash.
    :returns: Hex digest.
    """

    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk: bytes = f.read(1024 * 1024)
            if len(chunk) == 0:
                break
            h.update(chunk)
    return h.hexdigest()


Fetcher = Callable[..., pathlib.Path]


def fetch_and_verify(
    location: DistributionLocation,
    destination: pathlib.Path,
    *,
    logger: logging.Logger,
) -> pathlib.Path:
    """Obtain, verify and extract a distribution archive.

    :param location: Archive location and expected SHA-256.
    :param destination: Cache directory for downloads and extractions.
    :param logger: Logger for progress output.
    :returns: Directory the archive was extracted into.
    :raises AcquisitionError: On fetch, verification or extraction failure.
    """

    expected: str = location.sha256.lower()
    extract_dir: pathlib.Path = destination / expected[0:12]
    marker: pathlib.Path = extract_dir / ".ok"

    if marker.is_file() is True:
        logger.info(f"python-embedder: distribution cache hit ({extract_dir})")
        return extract_dir

    downloads: pathlib.Path = destination / "downloads"
    downloads.mkdir(parents=True, exist_ok=True)

    archive: pathlib.Path
    if location.local_path is not None:
        archive = pathlib.Path(location.local_path)
        if archive.is_file() is False:
            raise AcquisitionError(f"distribution archive does not exist: {archive}")
    else:
        assert location.url is not None
        archive = downloads / location.archive_name
        if archive.is_file() is False or _sha256_file(archive) != expected:
            logger.info(f"python-embedder: downloading {location.url}")
            tmp_path: pathlib.Path = downloads / (location.archive_name + ".tmp")
            t0: float = time.perf_counter()
            try:
                urllib.request.urlretrieve(location.url, filename=tmp_path)
            except OSError as e:
                if tmp_path.exists() is True:
                    tmp_path.unlink()
                raise AcquisitionError(f"failed to download {location.url}: {e}") from e
            tmp_path.replace(archive)
            t1: float = time.perf_counter()
            logger.info(f"python-embedder: download complete in {t1 - t0:.2f}s")

    actual: str = _sha256_file(archive)
    if actual != expected:
        raise AcquisitionError(
            f"sha256 mismatch for {location.archive_name}: expected {expected}, got {actual}"
        )

    if extract_dir.exists() is True:
        shutil.rmtree(extract_dir)
    extract_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"python-embedder: extracting {archive.name} to {extract_dir}")
    _extract_archive(archive, extract_dir)
    marker.write_text("ok\n", encoding="utf-8")
    return extract_dir


def _extract_archive(archive: pathlib.Path, dest_dir: pathlib.Path) -> None:
    """Extract a tar or zip archive, refusing members outside ``dest_dir``.

    :raises AcquisitionError: For unsupported or unsafe archives.
    """

    dest_resolved: pathlib.Path = dest_dir.resolve()

    def check_member(name: str) -> None:
        target: pathlib.Path = (dest_resolved / name).resolve()
        if target != dest_resolved and target.is_relative_to(dest_resolved) is False:
            raise AcquisitionError(f"unsafe path in distribution archive: {name}")

    try:
        if tarfile.is_tarfile(archive) is True:
            with tarfile.open(archive) as tf:
                for member in tf.getmembers():
                    check_member(member.name)
                if hasattr(tarfile, "data_filter") is True:
                    tf.extractall(dest_dir, filter="data")
                else:
                    tf.extractall(dest_dir)
            return
        if zipfile.is_zipfile(archive) is True:
            with zipfile.ZipFile(archive) as zf:
                for name in zf.namelist():
                    check_member(name)
                zf.extractall(dest_dir)
            return
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        raise AcquisitionError(f"failed to extract {archive}: {e}") from e

    raise AcquisitionError(f"unsupported distribution archive type: {archive}")


@dataclass(slots=True)
class ResolvedDistribution:
    """An extracted distribution and what its ``PYTHON.json`` says about it."""

    flavor: DistributionFlavor
    root: pathlib.Path
    python_version: str
    python_tag: str
    target_triple: str
    python_exe: pathlib.Path
    stdlib_path: pathlib.Path
    stdlib_test_packages: tuple[str, ...] = ()
    extension_module_loading: tuple[str, ...] = ("builtin",)
    libpython_link_mode: str = "static"
    extension_suffixes: tuple[str, ...] = ()
    extensions_info: dict[str, list[dict]] = field(default_factory=dict)
    _stdlib_resources: list[Resource] | None = None

    @classmethod
    def from_directory(cls, root: pathlib.Path, flavor: DistributionFlavor) -> "ResolvedDistribution":
        """Read an extracted distribution.

        :param root: Extraction directory (containing ``python/PYTHON.json``).
        :param flavor: Flavor the distribution was requested as.
        :raises AcquisitionError: If the metadata is missing or malformed.
        """

        python_dir: pathlib.Path = root / "python"
        json_path: pathlib.Path = python_dir / "PYTHON.json"
        try:
            info = json.loads(json_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise AcquisitionError(f"distribution has no readable PYTHON.json: {json_path}") from e
        except ValueError as e:
            raise AcquisitionError(f"malformed PYTHON.json in {root}: {e}") from e

        missing: list[str] = [
            k
            for k in ("python_tag", "python_version", "target_triple", "python_exe", "python_stdlib")
            if k not in info
        ]
        if len(missing) > 0:
            raise AcquisitionError(f"PYTHON.json in {root} is missing {', '.join(missing)}")

        python_version: str = str(info["python_version"])
        target_triple: str = str(info["target_triple"])
        suffixes: list[str] = list(info.get("python_suffixes", {}).get("extension", []))
        if len(suffixes) == 0:
            suffixes = default_extension_suffixes(target_triple, python_version)

        link_mode: str = str(info.get("libpython_link_mode", "static"))
        if flavor == DistributionFlavor.STANDALONE_STATIC:
            link_mode = "static"

        return cls(
            flavor=flavor,
            root=root,
            python_version=python_version,
            python_tag=str(info["python_tag"]),
            target_triple=target_triple,
            python_exe=python_dir / info["python_exe"],
            stdlib_path=python_dir / info["python_stdlib"],
            stdlib_test_packages=tuple(info.get("python_stdlib_test_packages", [])),
            extension_module_loading=tuple(info.get("python_extension_module_loading", ["builtin"])),
            libpython_link_mode=link_mode,
            extension_suffixes=tuple(suffixes),
            extensions_info=dict(info.get("build_info", {}).get("extensions", {})),
        )

    @property
    def python_major_minor_version(self) -> str:
        return parse_python_major_minor(self.python_version)

    @property
    def cache_tag(self) -> str:
        return "cpython-" + self.python_major_minor_version.replace(".", "")

    def compatible_host_triples(self) -> list[str]:
        return compatible_host_triples(self.target_triple)

    def supports_shared_library_loading(self) -> bool:
        return "shared-library" in self.extension_module_loading

    def supports_in_memory_shared_library_loading(self) -> bool:
        return (
            self.flavor == DistributionFlavor.STANDALONE_DYNAMIC
            and is_windows_triple(self.target_triple) is True
        )

    def _scan_stdlib(self) -> list[Resource]:
        if self._stdlib_resources is None:
            self._stdlib_resources = find_python_resources(
                self.stdlib_path,
                cache_tag=self.cache_tag,
                extension_suffixes=(),
                is_stdlib=True,
                test_packages=self.stdlib_test_packages,
                exclude_dirs=("site-packages", "lib-dynload", "config-" + self.python_major_minor_version),
            )
        return self._stdlib_resources

    def source_modules(self) -> list[PythonModuleSource]:
        return [r for r in self._scan_stdlib() if isinstance(r, PythonModuleSource)]

    def package_resources(self, include_test: bool = False) -> list[PythonPackageResource]:
        out: list[PythonPackageResource] = []
        for r in self._scan_stdlib():
            if isinstance(r, PythonPackageResource) is False:
                continue
            assert isinstance(r, PythonPackageResource)
            if include_test is False and r.is_test is True:
                continue
            out.append(r)
        return out

    def extension_modules(self) -> list[PythonExtensionModule]:
        """Extension modules from the distribution build info.

        The first listed variant of each extension is used.
        """

        python_dir: pathlib.Path = self.root / "python"
        modules: list[PythonExtensionModule] = []
        for name in sorted(self.extensions_info):
            variants: list[dict] = self.extensions_info[name]
            if len(variants) == 0:
                continue
            entry: dict = variants[0]

            shared_library: DataLocation | None = None
            suffix: str = ""
            shared_lib: str | None = entry.get("shared_lib")
            if shared_lib is not None and entry.get("in_core", False) is False:
                shared_library = DataLocation.from_path(python_dir / shared_lib)
                file_name: str = pathlib.PurePosixPath(shared_lib).name
                basename: str = name.split(".")[-1]
                suffix = file_name[len(basename) :] if file_name.startswith(basename) is True else ""

            link_libraries: list[str] = []
            for link in entry.get("links", []):
                if link.get("system", False) is True or link.get("framework", False) is True:
                    continue
                link_libraries.append(str(link["name"]))

            modules.append(
                PythonExtensionModule(
                    name=name,
                    init_fn=entry.get("init_fn"),
                    extension_file_suffix=suffix,
                    shared_library=shared_library,
                    builtin_default=bool(entry.get("in_core", False)),
                    required=bool(entry.get("required", False)),
                    variant=entry.get("variant"),
                    link_libraries=tuple(link_libraries),
                    cache_tag=self.cache_tag,
                    is_stdlib=True,
                )
            )
        return modules

    def create_packaging_policy(self) -> PackagingPolicy:
        return create_policy(self)

    def create_interpreter_config(self) -> RunTimeOptions:
        """Default run-time options for executables built from this distribution."""

        options: RunTimeOptions = RunTimeOptions(raw_allocator=default_raw_allocator(self.target_triple))
        if is_windows_triple(self.target_triple) is False:
            options.terminfo_resolution = TerminfoResolution.dynamic()
        return options

    def create_bytecode_compiler(self, *, logger: logging.Logger | None = None) -> BytecodeCompiler:
        """Start a bytecode compiler backed by this distribution's interpreter.

        :raises CompilationError: If the interpreter is missing or fails to start.
        """

        if self.python_exe.is_file() is False:
            raise CompilationError(
                f"distribution interpreter does not exist: {self.python_exe}",
                label="create_bytecode_compiler()",
            )
        compiler: BytecodeCompiler = BytecodeCompiler(self.python_exe, logger=logger)
        compiler.start()
        return compiler


class DistributionHandle:
    """Lazily resolved reference to one distribution.

    :param flavor: Distribution flavor.
    :param source: Archive location.
    :param destination: Cache directory for downloads and extraction.
    :param fetcher: Acquisition function, ``fetch_and_verify`` by default.
    """

    def __init__(
        self,
        flavor: DistributionFlavor,
        source: DistributionLocation,
        destination: pathlib.Path,
        *,
        fetcher: Fetcher | None = None,
    ) -> None:
        self.flavor: DistributionFlavor = flavor
        self.source: DistributionLocation = source
        self.destination: pathlib.Path = destination
        self._fetcher: Fetcher = fetcher if fetcher is not None else fetch_and_verify
        self._resolved: ResolvedDistribution | None = None
        self._resolve_error: AcquisitionError | None = None
        self._compiler: BytecodeCompiler | None = None
        self._compiler_error: CompilationError | None = None

    def __repr__(self) -> str:
        return f"PythonDistribution<{self.flavor.value} {self.source}>"

    @property
    def cache_key(self) -> tuple[DistributionFlavor, DistributionLocation, pathlib.Path]:
        return (self.flavor, self.source, self.destination)

    @property
    def resolved(self) -> ResolvedDistribution | None:
        return self._resolved

    def ensure_resolved(self, logger: logging.Logger | None = None) -> ResolvedDistribution:
        """Resolve the distribution once; later calls return the same object.

        :raises AcquisitionError: On failure. The failure is remembered and
            re-raised by every later call.
        """

        if self._resolved is not None:
            return self._resolved
        if self._resolve_error is not None:
            raise self._resolve_error

        if logger is None:
            logger = logging.getLogger("python_embedder")

        t0: float = time.perf_counter()
        try:
            extracted: pathlib.Path = self._fetcher(self.source, self.destination, logger=logger)
            dist: ResolvedDistribution = ResolvedDistribution.from_directory(extracted, self.flavor)
        except AcquisitionError as e:
            e.relabel("resolve_distribution()")
            self._resolve_error = e
            raise
        except OSError as e:
            self._resolve_error = AcquisitionError(str(e), label="resolve_distribution()")
            raise self._resolve_error from e
        t1: float = time.perf_counter()

        logger.info(
            f"python-embedder: resolved Python {dist.python_version} for {dist.target_triple} "
            f"in {t1 - t0:.2f}s"
        )
        self._resolved = dist
        return dist

    def bytecode_compiler(self, logger: logging.Logger | None = None) -> BytecodeCompiler:
        """The handle's compiler, created on first use.

        :raises AcquisitionError: If the distribution cannot be resolved.
        :raises CompilationError: If the compiler cannot be created; remembered
            for later calls.
        """

        if self._compiler is not None:
            return self._compiler
        if self._compiler_error is not None:
            raise self._compiler_error

        dist: ResolvedDistribution = self.ensure_resolved(logger)
        try:
            self._compiler = dist.create_bytecode_compiler(logger=logger)
        except CompilationError as e:
            self._compiler_error = e
            raise
        return self._compiler

    def compile_bytecode(
        self,
        source: bytes,
        filename: str,
        optimize: BytecodeOptimizationLevel,
        mode: CompileMode,
        *,
        logger: logging.Logger | None = None,
    ) -> bytes:
        """Compile source with this distribution's interpreter.

        A bytecode compiler is lazily instantiated and kept for the lifetime
        of the handle, so repeated calls do not pay the start-up cost again.
        """

        return self.bytecode_compiler(logger).compile(source, filename, optimize, mode)

    def close(self) -> None:
        if self._compiler is not None:
            self._compiler.close()
            self._compiler = None

    def __enter__(self) -> "DistributionHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def resolve_distribution(
    flavor: DistributionFlavor,
    location: DistributionLocation,
    destination: pathlib.Path,
    *,
    logger: logging.Logger,
    fetcher: Fetcher | None = None,
) -> DistributionHandle:
    """Create a handle and resolve it immediately."""

    handle: DistributionHandle = DistributionHandle(flavor, location, destination, fetcher=fetcher)
    handle.ensure_resolved(logger)
    return handle


__all__: list[str] = [
    "DistributionFlavor",
    "DistributionHandle",
    "DistributionLocation",
    "DistributionRecord",
    "DistributionRegistry",
    "ResolvedDistribution",
    "default_distribution_location",
    "default_registry",
    "fetch_and_verify",
    "resolve_cache_root",
    "resolve_distribution",
]


