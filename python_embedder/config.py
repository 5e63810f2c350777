"""Embedded interpreter configuration.

:class:`InterpreterConfig` mirrors the CPython ``PyConfig`` knobs the embedded
interpreter honours; every field except ``profile`` is optional and ``None``
means "leave the interpreter default alone". :class:`EmbeddedConfig` adds the
embedding-specific settings (allocator, importers, frozen-app flags, run mode).

:class:`RunTimeOptions` is what front ends edit while describing a build. It is
turned into an :class:`EmbeddedConfig` by :func:`build_embedded_config` once the
resource collection is known.
"""

import copy
from dataclasses import dataclass, field, fields, replace
import enum
import pathlib
from typing import Any, TYPE_CHECKING

from python_embedder.bytecode import BytecodeOptimizationLevel
from python_embedder.errors import ConfigurationConflictError, InvalidArgumentError
from python_embedder.target import is_windows_triple

if TYPE_CHECKING:
    from python_embedder.collection import ResourceCollection


class PythonInterpreterProfile(enum.Enum):
    ISOLATED = "isolated"
    PYTHON = "python"


class Allocator(enum.Enum):
    DEBUG = "debug"
    DEFAULT = "default"
    MALLOC = "malloc"
    MALLOC_DEBUG = "malloc-debug"
    NOT_SET = "not-set"
    PY_MALLOC = "py-malloc"
    PY_MALLOC_DEBUG = "py-malloc-debug"


class CoerceCLocale(enum.Enum):
    C = "C"
    LC_CTYPE = "LC_CTYPE"


class BytesWarning(enum.Enum):
    NONE = "none"
    WARN = "warn"
    RAISE = "raise"


class CheckHashPycsMode(enum.Enum):
    ALWAYS = "always"
    DEFAULT = "default"
    NEVER = "never"


class MemoryAllocatorBackend(enum.Enum):
    JEMALLOC = "jemalloc"
    RUST = "rust"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class TerminfoResolution:
    """How the interpreter locates terminfo databases.

    ``mode`` is ``none``, ``dynamic`` or ``static``; ``static`` carries the
    colon separated search path in ``value``.
    """

    mode: str = "none"
    value: str | None = None

    def __post_init__(self) -> None:
        if self.mode not in {"none", "dynamic", "static"}:
            raise InvalidArgumentError(f"invalid terminfo resolution mode {self.mode!r}")
        if (self.mode == "static") != (self.value is not None):
            raise InvalidArgumentError("static terminfo resolution requires a value (and only static)")

    @classmethod
    def none(cls) -> "TerminfoResolution":
        return cls("none")

    @classmethod
    def dynamic(cls) -> "TerminfoResolution":
        return cls("dynamic")

    @classmethod
    def static(cls, value: str) -> "TerminfoResolution":
        return cls("static", value)

    @classmethod
    def parse(cls, text: str) -> "TerminfoResolution":
        """Parse ``none``, ``dynamic`` or ``static:<paths>``."""

        if text == "none":
            return cls.none()
        if text == "dynamic":
            return cls.dynamic()
        if text.startswith("static:") is True:
            return cls.static(text[len("static:") :])
        raise InvalidArgumentError(f"invalid terminfo resolution {text!r}")


@dataclass(frozen=True, slots=True)
class RunNone:
    pass


@dataclass(frozen=True, slots=True)
class RunRepl:
    pass


@dataclass(frozen=True, slots=True)
class RunModule:
    module: str


@dataclass(frozen=True, slots=True)
class RunEval:
    code: str


@dataclass(frozen=True, slots=True)
class RunFile:
    path: pathlib.Path


RunMode = RunNone | RunRepl | RunModule | RunEval | RunFile


# Value kinds understood by the serializer and by set_option().
BOOL = "bool"
STR = "str"
PATH = "path"
INT = "int"
STR_LIST = "str_list"
PATH_LIST = "path_list"

# Field order is the order of the external schema.
INTERPRETER_CONFIG_FIELDS: tuple[tuple[str, Any], ...] = (
    ("profile", PythonInterpreterProfile),
    ("allocator", Allocator),
    ("configure_locale", BOOL),
    ("coerce_c_locale", CoerceCLocale),
    ("coerce_c_locale_warn", BOOL),
    ("development_mode", BOOL),
    ("isolated", BOOL),
    ("legacy_windows_fs_encoding", BOOL),
    ("parse_argv", BOOL),
    ("use_environment", BOOL),
    ("utf8_mode", BOOL),
    ("argv", STR_LIST),
    ("base_exec_prefix", PATH),
    ("base_executable", PATH),
    ("base_prefix", PATH),
    ("buffered_stdio", BOOL),
    ("bytes_warning", BytesWarning),
    ("check_hash_pycs_mode", CheckHashPycsMode),
    ("configure_c_stdio", BOOL),
    ("dump_refs", BOOL),
    ("exec_prefix", PATH),
    ("executable", PATH),
    ("fault_handler", BOOL),
    ("filesystem_encoding", STR),
    ("filesystem_errors", STR),
    ("hash_seed", INT),
    ("home", PATH),
    ("import_time", BOOL),
    ("inspect", BOOL),
    ("install_signal_handlers", BOOL),
    ("interactive", BOOL),
    ("legacy_windows_stdio", BOOL),
    ("malloc_stats", BOOL),
    ("module_search_paths", PATH_LIST),
    ("optimization_level", BytecodeOptimizationLevel),
    ("parser_debug", BOOL),
    ("pathconfig_warnings", BOOL),
    ("prefix", PATH),
    ("program_name", PATH),
    ("pycache_prefix", PATH),
    ("python_path_env", STR),
    ("quiet", BOOL),
    ("run_command", STR),
    ("run_filename", PATH),
    ("run_module", STR),
    ("show_alloc_count", BOOL),
    ("show_ref_count", BOOL),
    ("site_import", BOOL),
    ("skip_first_source_line", BOOL),
    ("stdio_encoding", STR),
    ("stdio_errors", STR),
    ("tracemalloc", BOOL),
    ("user_site_directory", BOOL),
    ("verbose", BOOL),
    ("warn_options", STR_LIST),
    ("write_bytecode", BOOL),
    ("x_options", STR_LIST),
)

INTERPRETER_CONFIG_KINDS: dict[str, Any] = dict(INTERPRETER_CONFIG_FIELDS)


@dataclass(slots=True)
class InterpreterConfig:
    """Interpreter startup options. ``None`` means "not set"."""

    profile: PythonInterpreterProfile = PythonInterpreterProfile.ISOLATED
    allocator: Allocator | None = None
    configure_locale: bool | None = None
    coerce_c_locale: CoerceCLocale | None = None
    coerce_c_locale_warn: bool | None = None
    development_mode: bool | None = None
    isolated: bool | None = None
    legacy_windows_fs_encoding: bool | None = None
    parse_argv: bool | None = None
    use_environment: bool | None = None
    utf8_mode: bool | None = None
    argv: list[str] | None = None
    base_exec_prefix: pathlib.Path | None = None
    base_executable: pathlib.Path | None = None
    base_prefix: pathlib.Path | None = None
    buffered_stdio: bool | None = None
    bytes_warning: BytesWarning | None = None
    check_hash_pycs_mode: CheckHashPycsMode | None = None
    configure_c_stdio: bool | None = None
    dump_refs: bool | None = None
    exec_prefix: pathlib.Path | None = None
    executable: pathlib.Path | None = None
    fault_handler: bool | None = None
    filesystem_encoding: str | None = None
    filesystem_errors: str | None = None
    hash_seed: int | None = None
    home: pathlib.Path | None = None
    import_time: bool | None = None
    inspect: bool | None = None
    install_signal_handlers: bool | None = None
    interactive: bool | None = None
    legacy_windows_stdio: bool | None = None
    malloc_stats: bool | None = None
    module_search_paths: list[pathlib.Path] | None = None
    optimization_level: BytecodeOptimizationLevel | None = None
    parser_debug: bool | None = None
    pathconfig_warnings: bool | None = None
    prefix: pathlib.Path | None = None
    program_name: pathlib.Path | None = None
    pycache_prefix: pathlib.Path | None = None
    python_path_env: str | None = None
    quiet: bool | None = None
    run_command: str | None = None
    run_filename: pathlib.Path | None = None
    run_module: str | None = None
    show_alloc_count: bool | None = None
    show_ref_count: bool | None = None
    site_import: bool | None = None
    skip_first_source_line: bool | None = None
    stdio_encoding: str | None = None
    stdio_errors: str | None = None
    tracemalloc: bool | None = None
    user_site_directory: bool | None = None
    verbose: bool | None = None
    warn_options: list[str] | None = None
    write_bytecode: bool | None = None
    x_options: list[str] | None = None


@dataclass(slots=True)
class EmbeddedConfig:
    """Everything the embedded interpreter needs to start."""

    interpreter_config: InterpreterConfig = field(default_factory=InterpreterConfig)
    raw_allocator: MemoryAllocatorBackend = MemoryAllocatorBackend.SYSTEM
    oxidized_importer: bool = True
    filesystem_importer: bool = False
    argvb: bool = False
    sys_frozen: bool = False
    sys_meipass: bool = False
    terminfo_resolution: TerminfoResolution = field(default_factory=TerminfoResolution.none)
    write_modules_directory_env: str | None = None
    run_mode: RunMode = field(default_factory=RunRepl)


def default_raw_allocator(target_triple: str) -> MemoryAllocatorBackend:
    """Determine the default raw allocator for a target triple."""

    # jemalloc is not available for Windows targets.
    if is_windows_triple(target_triple) is True:
        return MemoryAllocatorBackend.SYSTEM
    return MemoryAllocatorBackend.JEMALLOC


def coerce_value(kind: Any, value: Any, name: str) -> Any:
    """Validate (and lightly convert) a value for a config field.

    ``None`` is always accepted. Strings are accepted for path fields and for
    enum fields (matched against member values, then member names).

    :param kind: Field kind (one of the kind constants or an enum class).
    :param value: Candidate value.
    :param name: Field name, for error messages.
    :returns: Converted value.
    :raises InvalidArgumentError: If the value does not fit the kind.
    """

    if value is None:
        return None

    if isinstance(kind, type) and issubclass(kind, enum.Enum):
        if isinstance(value, kind) is True:
            return value
        if isinstance(value, (str, int)) is True and isinstance(value, bool) is False:
            for member in kind:
                if member.value == value or member.name == value:
                    return member
        raise InvalidArgumentError(
            f"{name} must be one of {[m.value for m in kind]}; got {value!r}"
        )

    if kind == BOOL:
        if isinstance(value, bool) is False:
            raise InvalidArgumentError(f"{name} expects a bool; got {type(value).__name__}")
        return value
    if kind == INT:
        if isinstance(value, int) is False or isinstance(value, bool) is True:
            raise InvalidArgumentError(f"{name} expects an int; got {type(value).__name__}")
        return value
    if kind == STR:
        if isinstance(value, str) is False:
            raise InvalidArgumentError(f"{name} expects a string; got {type(value).__name__}")
        return value
    if kind == PATH:
        if isinstance(value, (str, pathlib.PurePath)) is False:
            raise InvalidArgumentError(f"{name} expects a path; got {type(value).__name__}")
        return pathlib.Path(value)
    if kind == STR_LIST or kind == PATH_LIST:
        if isinstance(value, (list, tuple)) is False:
            raise InvalidArgumentError(f"{name} expects a list; got {type(value).__name__}")
        item_kind: str = STR if kind == STR_LIST else PATH
        return [coerce_value(item_kind, v, name) for v in value]

    raise InvalidArgumentError(f"unsupported field kind for {name}: {kind!r}")


# RunTimeOptions fields settable through set_option(), with their kinds.
RUNTIME_OPTION_KINDS: dict[str, Any] = {
    "raw_allocator": MemoryAllocatorBackend,
    "oxidized_importer": BOOL,
    "filesystem_importer": BOOL,
    "argvb": BOOL,
    "sys_frozen": BOOL,
    "sys_meipass": BOOL,
    "terminfo_resolution": TerminfoResolution,
    "write_modules_directory_env": STR,
    "run_none": BOOL,
    "run_repl": BOOL,
    "run_module": STR,
    "run_eval": STR,
    "run_file": PATH,
}

_NON_NULLABLE_OPTIONS: frozenset[str] = frozenset(
    {"oxidized_importer", "argvb", "sys_frozen", "sys_meipass", "run_none", "run_repl"}
)


@dataclass(slots=True)
class RunTimeOptions:
    """Run-time options collected while describing a build.

    At most one of ``run_none``, ``run_repl``, ``run_module``, ``run_eval`` and
    ``run_file`` may be set. ``run_none`` configures the interpreter without
    running anything. ``raw_allocator`` and ``filesystem_importer`` left as ``None``
    are derived when the final config is built.
    """

    interpreter_config: InterpreterConfig = field(default_factory=InterpreterConfig)
    raw_allocator: MemoryAllocatorBackend | None = None
    oxidized_importer: bool = True
    filesystem_importer: bool | None = None
    argvb: bool = False
    sys_frozen: bool = False
    sys_meipass: bool = False
    terminfo_resolution: TerminfoResolution = field(default_factory=TerminfoResolution.none)
    write_modules_directory_env: str | None = None
    run_none: bool = False
    run_repl: bool = False
    run_module: str | None = None
    run_eval: str | None = None
    run_file: pathlib.Path | None = None

    def __post_init__(self) -> None:
        requested: list[str] = self.run_mode_requests()
        if len(requested) > 1:
            raise ConfigurationConflictError(
                f"run modes are mutually exclusive; got {', '.join(requested)}",
                label="run_mode",
            )

    def run_mode_requests(self) -> list[str]:
        requested: list[str] = []
        if self.run_none is True:
            requested.append("run_none")
        if self.run_repl is True:
            requested.append("run_repl")
        if self.run_module is not None:
            requested.append("run_module")
        if self.run_eval is not None:
            requested.append("run_eval")
        if self.run_file is not None:
            requested.append("run_file")
        return requested

    def resolve_run_mode(self) -> RunMode:
        """Derive the run mode; REPL when nothing was requested."""

        self.__post_init__()
        if self.run_none is True:
            return RunNone()
        if self.run_module is not None:
            return RunModule(module=self.run_module)
        if self.run_eval is not None:
            return RunEval(code=self.run_eval)
        if self.run_file is not None:
            return RunFile(path=self.run_file)
        return RunRepl()


def set_option(options: RunTimeOptions, name: str, value: Any) -> None:
    """Set a run-time or interpreter option by name.

    On any error ``options`` is left unchanged.

    :param options: Options to update.
    :param name: Field name of :class:`RunTimeOptions` or :class:`InterpreterConfig`.
    :param value: New value.
    :raises InvalidArgumentError: On unknown names or ill-typed values.
    :raises ConfigurationConflictError: If the update sets a second run mode.
    """

    if name in RUNTIME_OPTION_KINDS:
        kind: Any = RUNTIME_OPTION_KINDS[name]
        converted: Any
        if kind is TerminfoResolution:
            if isinstance(value, TerminfoResolution) is True:
                converted = value
            elif isinstance(value, str) is True:
                converted = TerminfoResolution.parse(value)
            else:
                raise InvalidArgumentError(f"{name} expects a terminfo resolution; got {type(value).__name__}")
        else:
            converted = coerce_value(kind, value, name)
        if converted is None and name in _NON_NULLABLE_OPTIONS:
            raise InvalidArgumentError(f"{name} cannot be None")
        # replace() re-runs the run mode exclusivity check before anything changes.
        replace(options, **{name: converted})
        setattr(options, name, converted)
        return

    if name in INTERPRETER_CONFIG_KINDS:
        converted_ic: Any = coerce_value(INTERPRETER_CONFIG_KINDS[name], value, name)
        if name == "profile" and converted_ic is None:
            raise InvalidArgumentError("profile cannot be None")
        setattr(options.interpreter_config, name, converted_ic)
        return

    raise InvalidArgumentError(f"unknown option {name!r}")


def build_embedded_config(
    collection: "ResourceCollection | None",
    options: RunTimeOptions,
    *,
    target_triple: str | None,
) -> EmbeddedConfig:
    """Assemble the final embedded config.

    :param collection: Resources that will ship, used to derive importer settings.
    :param options: Run-time options.
    :param target_triple: Target triple, used to derive the raw allocator.
    :returns: New config, independent of ``options``.
    :raises ConfigurationConflictError: If options conflict or a required value
        cannot be derived.
    """

    run_mode: RunMode = options.resolve_run_mode()
    if isinstance(run_mode, RunFile) and len(str(run_mode.path)) == 0:
        raise ConfigurationConflictError("run_file must not be empty", label="run_mode")
    if isinstance(run_mode, RunModule) and len(run_mode.module) == 0:
        raise ConfigurationConflictError("run_module must not be empty", label="run_mode")

    raw_allocator: MemoryAllocatorBackend
    if options.raw_allocator is not None:
        raw_allocator = options.raw_allocator
    elif target_triple is not None and len(target_triple) > 0:
        raw_allocator = default_raw_allocator(target_triple)
    else:
        raise ConfigurationConflictError(
            "cannot derive a raw allocator without a target triple; set it explicitly",
            label="raw_allocator",
        )

    has_filesystem: bool = False
    has_in_memory: bool = False
    if collection is not None:
        has_filesystem = collection.has_filesystem_resources()
        has_in_memory = collection.has_in_memory_resources()

    filesystem_importer: bool
    if options.filesystem_importer is not None:
        filesystem_importer = options.filesystem_importer
    else:
        filesystem_importer = has_filesystem

    if options.oxidized_importer is False and has_in_memory is True:
        raise ConfigurationConflictError(
            "in-memory resources require the oxidized importer",
            label="oxidized_importer",
        )

    return EmbeddedConfig(
        interpreter_config=copy.deepcopy(options.interpreter_config),
        raw_allocator=raw_allocator,
        oxidized_importer=options.oxidized_importer,
        filesystem_importer=filesystem_importer,
        argvb=options.argvb,
        sys_frozen=options.sys_frozen,
        sys_meipass=options.sys_meipass,
        terminfo_resolution=options.terminfo_resolution,
        write_modules_directory_env=options.write_modules_directory_env,
        run_mode=run_mode,
    )


def interpreter_config_field_names() -> list[str]:
    return [f.name for f in fields(InterpreterConfig)]
