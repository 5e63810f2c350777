"""Embedded config source emitter and parser.

The config is emitted as a Python expression that builds
``pyembed.OxidizedPythonInterpreterConfig(...)``. The expression is fully
explicit: every field is written, in schema order, with ``None`` for unset
values. Enum members map to named constants through the tables below, and the
packed resources are referenced by path, never inlined.

:func:`parse_config_source` reads the same text back with :mod:`ast`. It is
strict: a missing, extra or reordered field is an error, so a parsed config is
always exactly the one that was written.
"""

import ast
import enum
import pathlib
import textwrap
from typing import Any

from python_embedder.bytecode import BytecodeOptimizationLevel
from python_embedder.config import (
    BOOL,
    INT,
    INTERPRETER_CONFIG_FIELDS,
    PATH,
    PATH_LIST,
    STR,
    STR_LIST,
    Allocator,
    BytesWarning,
    CheckHashPycsMode,
    CoerceCLocale,
    EmbeddedConfig,
    InterpreterConfig,
    MemoryAllocatorBackend,
    PythonInterpreterProfile,
    RunEval,
    RunFile,
    RunMode,
    RunModule,
    RunNone,
    RunRepl,
    TerminfoResolution,
)
from python_embedder.errors import ConfigurationConflictError

CONFIG_CALL: str = "pyembed.OxidizedPythonInterpreterConfig"
INTERPRETER_CONFIG_CALL: str = "pyembed.PythonInterpreterConfig"
INCLUDE_BYTES_CALL: str = "pyembed.include_bytes"

ENUM_CONSTANTS: dict[type[enum.Enum], dict[Any, str]] = {
    PythonInterpreterProfile: {
        PythonInterpreterProfile.ISOLATED: "pyembed.PythonInterpreterProfile.Isolated",
        PythonInterpreterProfile.PYTHON: "pyembed.PythonInterpreterProfile.Python",
    },
    Allocator: {
        Allocator.DEBUG: "pyembed.Allocator.Debug",
        Allocator.DEFAULT: "pyembed.Allocator.Default",
        Allocator.MALLOC: "pyembed.Allocator.Malloc",
        Allocator.MALLOC_DEBUG: "pyembed.Allocator.MallocDebug",
        Allocator.NOT_SET: "pyembed.Allocator.NotSet",
        Allocator.PY_MALLOC: "pyembed.Allocator.PyMalloc",
        Allocator.PY_MALLOC_DEBUG: "pyembed.Allocator.PyMallocDebug",
    },
    CoerceCLocale: {
        CoerceCLocale.C: "pyembed.CoerceCLocale.C",
        CoerceCLocale.LC_CTYPE: "pyembed.CoerceCLocale.LCCtype",
    },
    BytesWarning: {
        BytesWarning.NONE: "pyembed.BytesWarning.NoWarn",
        BytesWarning.WARN: "pyembed.BytesWarning.Warn",
        BytesWarning.RAISE: "pyembed.BytesWarning.Raise",
    },
    CheckHashPycsMode: {
        CheckHashPycsMode.ALWAYS: "pyembed.CheckHashPycsMode.Always",
        CheckHashPycsMode.DEFAULT: "pyembed.CheckHashPycsMode.Default",
        CheckHashPycsMode.NEVER: "pyembed.CheckHashPycsMode.Never",
    },
    BytecodeOptimizationLevel: {
        BytecodeOptimizationLevel.ZERO: "pyembed.BytecodeOptimizationLevel.Zero",
        BytecodeOptimizationLevel.ONE: "pyembed.BytecodeOptimizationLevel.One",
        BytecodeOptimizationLevel.TWO: "pyembed.BytecodeOptimizationLevel.Two",
    },
    MemoryAllocatorBackend: {
        MemoryAllocatorBackend.JEMALLOC: "pyembed.MemoryAllocatorBackend.Jemalloc",
        MemoryAllocatorBackend.RUST: "pyembed.MemoryAllocatorBackend.Rust",
        MemoryAllocatorBackend.SYSTEM: "pyembed.MemoryAllocatorBackend.System",
    },
}

TERMINFO_CALLS: dict[str, str] = {
    "none": "pyembed.TerminfoResolution.none",
    "dynamic": "pyembed.TerminfoResolution.dynamic",
    "static": "pyembed.TerminfoResolution.static",
}

RUN_MODE_CALLS: dict[type, str] = {
    RunNone: "pyembed.RunMode.none",
    RunRepl: "pyembed.RunMode.repl",
    RunModule: "pyembed.RunMode.module",
    RunEval: "pyembed.RunMode.eval",
    RunFile: "pyembed.RunMode.file",
}

# Field order is the order of the external schema.
EMBEDDED_CONFIG_FIELDS: tuple[str, ...] = (
    "origin",
    "interpreter_config",
    "raw_allocator",
    "oxidized_importer",
    "filesystem_importer",
    "packed_resources",
    "extra_extension_modules",
    "argvb",
    "sys_frozen",
    "sys_meipass",
    "terminfo_resolution",
    "write_modules_directory_env",
    "run",
)

# Written as None and required to be None when parsed.
ALWAYS_NONE_FIELDS: tuple[str, ...] = ("origin", "extra_extension_modules")

_INDENT: str = "    "


def _emit_scalar(kind: Any, value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(kind, type) and issubclass(kind, enum.Enum):
        return ENUM_CONSTANTS[kind][value]
    if kind == BOOL:
        return "True" if value is True else "False"
    if kind == INT:
        return str(int(value))
    if kind == STR:
        return repr(str(value))
    if kind == PATH:
        return repr(str(value))
    if kind == STR_LIST or kind == PATH_LIST:
        return "[" + ", ".join(repr(str(v)) for v in value) + "]"
    raise ConfigurationConflictError(f"cannot serialize value of kind {kind!r}")


def _emit_call(name: str, items: list[tuple[str, str]], depth: int) -> str:
    pad: str = _INDENT * (depth + 1)
    lines: list[str] = [f"{name}("]
    for key, value in items:
        lines.append(f"{pad}{key}={value},")
    lines.append(f"{_INDENT * depth})")
    return "\n".join(lines)


def _emit_terminfo(value: TerminfoResolution) -> str:
    if value.mode == "static":
        return f"{TERMINFO_CALLS['static']}({value.value!r})"
    return f"{TERMINFO_CALLS[value.mode]}()"


def _emit_run_mode(run_mode: RunMode) -> str:
    name: str = RUN_MODE_CALLS[type(run_mode)]
    if isinstance(run_mode, RunModule):
        return f"{name}({run_mode.module!r})"
    if isinstance(run_mode, RunEval):
        return f"{name}({run_mode.code!r})"
    if isinstance(run_mode, RunFile):
        return f"{name}({str(run_mode.path)!r})"
    return f"{name}()"


def to_config_source(config: EmbeddedConfig, packed_resources_path: str | None = None) -> str:
    """Render a config as a Python expression.

    :param config: Config to render.
    :param packed_resources_path: Path of the packed resources file, relative
        to the generated source, or ``None`` when there are none.
    :returns: Expression source, deterministic for equal inputs.
    """

    ic: InterpreterConfig = config.interpreter_config
    ic_items: list[tuple[str, str]] = [
        (name, _emit_scalar(kind, getattr(ic, name))) for name, kind in INTERPRETER_CONFIG_FIELDS
    ]

    packed: str = "None"
    if packed_resources_path is not None:
        packed = f"{INCLUDE_BYTES_CALL}({packed_resources_path!r})"

    values: dict[str, str] = {
        "origin": "None",
        "interpreter_config": _emit_call(INTERPRETER_CONFIG_CALL, ic_items, 1),
        "raw_allocator": _emit_scalar(MemoryAllocatorBackend, config.raw_allocator),
        "oxidized_importer": _emit_scalar(BOOL, config.oxidized_importer),
        "filesystem_importer": _emit_scalar(BOOL, config.filesystem_importer),
        "packed_resources": packed,
        "extra_extension_modules": "None",
        "argvb": _emit_scalar(BOOL, config.argvb),
        "sys_frozen": _emit_scalar(BOOL, config.sys_frozen),
        "sys_meipass": _emit_scalar(BOOL, config.sys_meipass),
        "terminfo_resolution": _emit_terminfo(config.terminfo_resolution),
        "write_modules_directory_env": _emit_scalar(STR, config.write_modules_directory_env),
        "run": _emit_run_mode(config.run_mode),
    }
    return _emit_call(CONFIG_CALL, [(name, values[name]) for name in EMBEDDED_CONFIG_FIELDS], 0)


def render_config_module(config: EmbeddedConfig, packed_resources_path: str | None = None) -> str:
    expr: str = to_config_source(config, packed_resources_path)
    body: str = textwrap.indent(expr, _INDENT)
    return (
        "# Generated by python-embedder. Do not edit.\n"
        "import pyembed\n"
        "\n"
        "\n"
        "def default_python_config():\n"
        f"{_INDENT}return {body.lstrip()}\n"
    )


def write_default_python_config(
    path: pathlib.Path,
    config: EmbeddedConfig,
    packed_resources_path: str | None = None,
) -> pathlib.Path:
    """Write the config as a module defining ``default_python_config()``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_config_module(config, packed_resources_path), encoding="utf-8")
    return path


def _conflict(message: str) -> ConfigurationConflictError:
    return ConfigurationConflictError(message, label="parse_config_source()")


def _dotted_name(node: ast.AST) -> str | None:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base: str | None = _dotted_name(node.value)
        if base is None:
            return None
        return f"{base}.{node.attr}"
    return None


def _call_keywords(node: ast.AST, name: str, expected: list[str]) -> dict[str, ast.expr]:
    """Check a call's name and keyword order; return its keyword values."""

    if isinstance(node, ast.Call) is False:
        raise _conflict(f"expected a {name}(...) call")
    assert isinstance(node, ast.Call)
    if _dotted_name(node.func) != name:
        raise _conflict(f"expected a {name}(...) call; got {_dotted_name(node.func)}")
    if len(node.args) > 0:
        raise _conflict(f"{name} takes keyword arguments only")

    got: list[str] = []
    for kw in node.keywords:
        if kw.arg is None:
            raise _conflict(f"{name} does not accept ** arguments")
        got.append(kw.arg)

    if got != expected:
        missing: list[str] = [n for n in expected if n not in got]
        extra: list[str] = [n for n in got if n not in expected]
        if len(missing) > 0:
            raise _conflict(f"{name} is missing fields: {', '.join(missing)}")
        if len(extra) > 0:
            raise _conflict(f"{name} has unknown fields: {', '.join(extra)}")
        raise _conflict(f"{name} fields are out of order or repeated")

    return {kw.arg: kw.value for kw in node.keywords if kw.arg is not None}


def _literal(node: ast.expr, field_name: str) -> Any:
    try:
        return ast.literal_eval(node)
    except (ValueError, TypeError, SyntaxError) as e:
        raise _conflict(f"{field_name}: unsupported value {ast.unparse(node)}") from e


def _parse_scalar(kind: Any, node: ast.expr, field_name: str) -> Any:
    if isinstance(node, ast.Constant) and node.value is None:
        return None

    if isinstance(kind, type) and issubclass(kind, enum.Enum):
        dotted: str | None = _dotted_name(node)
        for member, constant in ENUM_CONSTANTS[kind].items():
            if constant == dotted:
                return member
        raise _conflict(f"{field_name}: unknown constant {ast.unparse(node)}")

    value: Any = _literal(node, field_name)
    if kind == BOOL and isinstance(value, bool) is True:
        return value
    if kind == INT and isinstance(value, int) is True and isinstance(value, bool) is False:
        return value
    if kind == STR and isinstance(value, str) is True:
        return value
    if kind == PATH and isinstance(value, str) is True:
        return pathlib.Path(value)
    if (kind == STR_LIST or kind == PATH_LIST) and isinstance(value, list) is True:
        if all(isinstance(v, str) for v in value) is True:
            if kind == PATH_LIST:
                return [pathlib.Path(v) for v in value]
            return value
    raise _conflict(f"{field_name}: expected {kind}, got {ast.unparse(node)}")


def _parse_tagged_call(node: ast.expr, calls: dict[Any, str], field_name: str) -> tuple[Any, str | None]:
    """Match ``<name>()`` or ``<name>('arg')`` against a table of call names."""

    if isinstance(node, ast.Call) is False:
        raise _conflict(f"{field_name}: expected a call; got {ast.unparse(node)}")
    assert isinstance(node, ast.Call)
    dotted: str | None = _dotted_name(node.func)
    for tag, call_name in calls.items():
        if call_name != dotted:
            continue
        if len(node.keywords) > 0 or len(node.args) > 1:
            raise _conflict(f"{field_name}: {call_name} takes at most one positional argument")
        if len(node.args) == 0:
            return tag, None
        arg: Any = _literal(node.args[0], field_name)
        if isinstance(arg, str) is False:
            raise _conflict(f"{field_name}: {call_name} expects a string")
        return tag, arg
    raise _conflict(f"{field_name}: unknown constant {ast.unparse(node.func)}")


def _parse_terminfo(node: ast.expr) -> TerminfoResolution:
    mode, arg = _parse_tagged_call(node, TERMINFO_CALLS, "terminfo_resolution")
    if (mode == "static") != (arg is not None):
        raise _conflict(f"terminfo_resolution: bad arguments for {mode}")
    return TerminfoResolution(mode, arg)


def _parse_run_mode(node: ast.expr) -> RunMode:
    mode_type, arg = _parse_tagged_call(node, RUN_MODE_CALLS, "run")
    if mode_type in (RunNone, RunRepl):
        if arg is not None:
            raise _conflict("run: none() and repl() take no argument")
        return mode_type()
    if arg is None:
        raise _conflict(f"run: {RUN_MODE_CALLS[mode_type]} requires an argument")
    if mode_type is RunFile:
        return RunFile(path=pathlib.Path(arg))
    return mode_type(arg)


def _parse_packed(node: ast.expr) -> str | None:
    if isinstance(node, ast.Constant) and node.value is None:
        return None
    if isinstance(node, ast.Call) and _dotted_name(node.func) == INCLUDE_BYTES_CALL:
        if len(node.args) == 1 and len(node.keywords) == 0:
            value: Any = _literal(node.args[0], "packed_resources")
            if isinstance(value, str) is True:
                return value
    raise _conflict(f"packed_resources: expected None or {INCLUDE_BYTES_CALL}('<path>')")


def _find_config_expr(tree: ast.Module) -> ast.expr:
    if len(tree.body) == 1 and isinstance(tree.body[0], ast.Expr):
        return tree.body[0].value

    for stmt in tree.body:
        if isinstance(stmt, ast.FunctionDef) and stmt.name == "default_python_config":
            last: ast.stmt = stmt.body[-1]
            if isinstance(last, ast.Return) and last.value is not None:
                return last.value
            raise _conflict("default_python_config() must return the config")

    raise _conflict("no config expression or default_python_config() found")


def parse_config_source(text: str) -> tuple[EmbeddedConfig, str | None]:
    """Parse text produced by :func:`to_config_source` or :func:`write_default_python_config`.

    :param text: Expression or module source.
    :returns: The config and the packed resources path (or ``None``).
    :raises ConfigurationConflictError: If the text does not match the schema exactly.
    """

    try:
        tree: ast.Module = ast.parse(text)
    except SyntaxError as e:
        raise _conflict(f"invalid config source: {e}") from e

    top: dict[str, ast.expr] = _call_keywords(
        _find_config_expr(tree), CONFIG_CALL, list(EMBEDDED_CONFIG_FIELDS)
    )
    ic_nodes: dict[str, ast.expr] = _call_keywords(
        top["interpreter_config"],
        INTERPRETER_CONFIG_CALL,
        [name for name, _ in INTERPRETER_CONFIG_FIELDS],
    )

    ic_values: dict[str, Any] = {
        name: _parse_scalar(kind, ic_nodes[name], name) for name, kind in INTERPRETER_CONFIG_FIELDS
    }
    if ic_values["profile"] is None:
        raise _conflict("profile must be set")

    for name in ALWAYS_NONE_FIELDS:
        if isinstance(top[name], ast.Constant) is False or top[name].value is not None:
            raise _conflict(f"{name} must be None")

    raw_allocator: Any = _parse_scalar(MemoryAllocatorBackend, top["raw_allocator"], "raw_allocator")
    if raw_allocator is None:
        raise _conflict("raw_allocator must be set")

    flags: dict[str, bool] = {}
    for name in ("oxidized_importer", "filesystem_importer", "argvb", "sys_frozen", "sys_meipass"):
        value: Any = _parse_scalar(BOOL, top[name], name)
        if value is None:
            raise _conflict(f"{name} must be True or False")
        flags[name] = value

    config: EmbeddedConfig = EmbeddedConfig(
        interpreter_config=InterpreterConfig(**ic_values),
        raw_allocator=raw_allocator,
        terminfo_resolution=_parse_terminfo(top["terminfo_resolution"]),
        write_modules_directory_env=_parse_scalar(
            STR, top["write_modules_directory_env"], "write_modules_directory_env"
        ),
        run_mode=_parse_run_mode(top["run"]),
        **flags,
    )
    return config, _parse_packed(top["packed_resources"])
