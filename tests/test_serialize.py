"""Tests for the config source emitter and parser"""

import ast
import pathlib

import pytest

from python_embedder.config import (
    BOOL,
    INT,
    INTERPRETER_CONFIG_FIELDS,
    PATH,
    PATH_LIST,
    STR,
    STR_LIST,
    BytesWarning,
    EmbeddedConfig,
    InterpreterConfig,
    MemoryAllocatorBackend,
    RunEval,
    RunFile,
    RunModule,
    RunNone,
    TerminfoResolution,
)
from python_embedder.errors import ConfigurationConflictError
from python_embedder.serialize import (
    CONFIG_CALL,
    EMBEDDED_CONFIG_FIELDS,
    parse_config_source,
    render_config_module,
    to_config_source,
    write_default_python_config,
)


def _fully_set_interpreter_config() -> InterpreterConfig:
    values = {}
    for name, kind in INTERPRETER_CONFIG_FIELDS:
        if kind == BOOL:
            values[name] = True
        elif kind == INT:
            values[name] = 42
        elif kind == STR:
            values[name] = f"{name}-value"
        elif kind == PATH:
            values[name] = pathlib.Path(f"/opt/{name}")
        elif kind == STR_LIST:
            values[name] = ["a", "b"]
        elif kind == PATH_LIST:
            values[name] = [pathlib.Path("lib"), pathlib.Path("/usr/lib")]
        else:
            values[name] = list(kind)[-1]
    return InterpreterConfig(**values)


class TestRoundTrip:
    """Tests for emitting and parsing back"""

    def test_defaults(self):
        config = EmbeddedConfig()
        assert parse_config_source(to_config_source(config)) == (config, None)

    def test_everything_set(self):
        config = EmbeddedConfig(
            interpreter_config=_fully_set_interpreter_config(),
            raw_allocator=MemoryAllocatorBackend.JEMALLOC,
            oxidized_importer=False,
            filesystem_importer=True,
            argvb=True,
            sys_frozen=True,
            sys_meipass=True,
            terminfo_resolution=TerminfoResolution.static("/usr/share/terminfo:/lib/terminfo"),
            write_modules_directory_env="PYEMBED_MODULES_DIR",
            run_mode=RunFile(path=pathlib.Path("main.py")),
        )
        parsed, packed = parse_config_source(to_config_source(config, "packed-resources"))
        assert parsed == config
        assert packed == "packed-resources"

    @pytest.mark.parametrize("run_mode", [RunNone(), RunModule(module="app.__main__"), RunEval(code="import app")])
    def test_run_modes(self, run_mode):
        config = EmbeddedConfig(run_mode=run_mode)
        assert parse_config_source(to_config_source(config))[0].run_mode == run_mode

    def test_awkward_strings(self):
        code = "print('it''s')\nprint(\"\\\\\")\n"
        config = EmbeddedConfig(run_mode=RunEval(code=code))
        config.interpreter_config.argv = ["quote'd", 'dbl"', "back\\slash", "new\nline"]
        parsed, _ = parse_config_source(to_config_source(config))
        assert parsed.run_mode.code == code
        assert parsed.interpreter_config.argv == config.interpreter_config.argv

    def test_module_form(self, tmp_path):
        config = EmbeddedConfig(terminfo_resolution=TerminfoResolution.dynamic())
        path = write_default_python_config(tmp_path / "gen" / "default_python_config.py", config, "packed-resources")
        text = path.read_text()
        assert text.startswith("# Generated by python-embedder")
        assert parse_config_source(text) == (config, "packed-resources")


class TestEmitter:
    """Tests for the emitted text"""

    def test_deterministic(self):
        config = EmbeddedConfig(interpreter_config=_fully_set_interpreter_config())
        assert to_config_source(config) == to_config_source(config)

    def test_valid_python(self):
        ast.parse(render_config_module(EmbeddedConfig()))

    def test_every_field_written(self):
        source = to_config_source(EmbeddedConfig())
        assert source.startswith(f"{CONFIG_CALL}(")
        for name, _ in INTERPRETER_CONFIG_FIELDS:
            assert f"\n        {name}=" in source
        assert "packed_resources=None," in source
        for name in EMBEDDED_CONFIG_FIELDS:
            assert f"\n    {name}=" in source
        assert "\n    origin=None," in source
        assert "\n    extra_extension_modules=None," in source
        assert source.index("origin=") < source.index("interpreter_config=")
        assert source.index("packed_resources=") < source.index("extra_extension_modules=") < source.index("argvb=")
        assert "run_mode=" not in source

    def test_bytes_warning_none_constant(self):
        config = EmbeddedConfig()
        config.interpreter_config.bytes_warning = BytesWarning.NONE
        assert "bytes_warning=pyembed.BytesWarning.NoWarn," in to_config_source(config)

    def test_run_mode_and_terminfo_calls(self):
        source = to_config_source(EmbeddedConfig())
        assert "run=pyembed.RunMode.repl()," in source
        assert "terminfo_resolution=pyembed.TerminfoResolution.none()," in source


class TestStrictParser:
    """Tests for rejection of anything not written by the emitter"""

    def _source(self):
        return to_config_source(EmbeddedConfig())

    def _expect(self, text, message):
        with pytest.raises(ConfigurationConflictError, match=message) as exc:
            parse_config_source(text)
        assert exc.value.label == "parse_config_source()"

    def test_missing_field(self):
        self._expect(self._source().replace("    argvb=False,\n", ""), "missing fields: argvb")

    def test_unknown_field(self):
        self._expect(self._source().replace("    argvb=False,\n", "    argvb=False,\n    extra=1,\n"), "unknown fields: extra")

    def test_reordered_fields(self):
        text = self._source().replace("    argvb=False,\n    sys_frozen=False,\n", "    sys_frozen=False,\n    argvb=False,\n")
        self._expect(text, "out of order")

    def test_unknown_constant(self):
        text = self._source().replace("pyembed.PythonInterpreterProfile.Isolated", "pyembed.PythonInterpreterProfile.Nope")
        self._expect(text, "unknown constant")

    def test_wrong_type(self):
        self._expect(self._source().replace("    argvb=False,", "    argvb='no',"), "argvb")

    def test_unsafe_expression(self):
        self._expect(self._source().replace("    argvb=False,", "    argvb=__import__('os'),"), "argvb")

    @pytest.mark.parametrize("name", ["origin", "extra_extension_modules"])
    def test_always_none_fields(self, name):
        self._expect(self._source().replace(f"    {name}=None,", f"    {name}=[],"), f"{name} must be None")

    def test_not_python(self):
        self._expect("pyembed.OxidizedPythonInterpreterConfig(", "invalid config source")

    def test_wrong_call(self):
        self._expect("dict(a=1)", "expected a")
