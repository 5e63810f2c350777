"""Bytecode compilation.

Bytecode must be produced by an interpreter matching the target's Python
version, which is generally not the interpreter running python-embedder. A
:class:`BytecodeCompiler` spawns the distribution's ``python`` once, feeds it
compile requests over stdin and reads results from stdout. Spawning is the
expensive part, so a compiler instance is kept for the lifetime of its owner.

Wire protocol (one request at a time):

- request: a JSON header line ``{"filename", "optimize", "mode",
  "source_length"}`` followed by ``source_length`` raw source bytes.
- response: a JSON header line ``{"ok": true, "length": N}`` followed by ``N``
  bytes, or ``{"ok": false, "error": "..."}`` with no payload.
"""

import enum
import json
import logging
import pathlib
import subprocess
import textwrap

from python_embedder.errors import CompilationError


class BytecodeOptimizationLevel(enum.IntEnum):
    ZERO = 0
    ONE = 1
    TWO = 2


class CompileMode(enum.Enum):
    """Output format of a compile request."""

    # Raw marshalled code object.
    BYTECODE = "bytecode"
    # Full .pyc files (header + marshalled code) using hash-based validation.
    PYC_CHECKED_HASH = "pyc-checked-hash"
    PYC_UNCHECKED_HASH = "pyc-unchecked-hash"


_COMPILER_SCRIPT: str = textwrap.dedent(
    r'''
    import importlib._bootstrap_external
    import importlib.util
    import json
    import marshal
    import sys

    stdin = sys.stdin.buffer
    stdout = sys.stdout.buffer

    while True:
        header_line = stdin.readline()
        if not header_line:
            break
        header = json.loads(header_line)
        source = stdin.read(header["source_length"])
        data = b""
        try:
            code = compile(
                source,
                header["filename"],
                "exec",
                dont_inherit=True,
                optimize=header["optimize"],
            )
            mode = header["mode"]
            if mode == "bytecode":
                data = marshal.dumps(code)
            elif mode == "pyc-checked-hash" or mode == "pyc-unchecked-hash":
                data = bytes(
                    importlib._bootstrap_external._code_to_hash_pyc(
                        code,
                        importlib.util.source_hash(source),
                        mode == "pyc-checked-hash",
                    )
                )
            else:
                raise ValueError("unknown compile mode %r" % mode)
            response = {"ok": True, "length": len(data)}
        except Exception as e:
            data = b""
            response = {"ok": False, "error": "%s: %s" % (type(e).__name__, e)}
        stdout.write(json.dumps(response).encode("utf-8") + b"\n")
        stdout.write(data)
        stdout.flush()
    '''
).lstrip()


class BytecodeCompiler:
    """Compiles Python source with an external interpreter.

    :param python_exe: Interpreter used for compilation.
    :param logger: Logger for progress output.
    """

    def __init__(self, python_exe: pathlib.Path, *, logger: logging.Logger | None = None) -> None:
        self.python_exe: pathlib.Path = python_exe
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("python_embedder")
        self._proc: subprocess.Popen[bytes] | None = None
        self.compile_count: int = 0

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        """Spawn the compiler process.

        :raises CompilationError: If the interpreter cannot be started.
        """

        if self.running is True:
            return

        cmd: list[str] = [str(self.python_exe), "-E", "-s", "-c", _COMPILER_SCRIPT]
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"python-embedder: starting bytecode compiler: {self.python_exe}")
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
            )
        except OSError as e:
            raise CompilationError(
                f"unable to start bytecode compiler {self.python_exe}: {e}",
                label="create_bytecode_compiler()",
            ) from e

    def compile(
        self,
        source: bytes,
        filename: str,
        optimize: BytecodeOptimizationLevel,
        mode: CompileMode,
    ) -> bytes:
        """Compile source to bytecode.

        :param source: Source bytes.
        :param filename: File name recorded in the code object.
        :param optimize: Optimization level.
        :param mode: Output format.
        :returns: Bytecode bytes.
        :raises CompilationError: If compilation fails or the process died.
        """

        self.start()
        proc = self._proc
        assert proc is not None and proc.stdin is not None and proc.stdout is not None

        header: dict[str, object] = {
            "filename": filename,
            "optimize": int(optimize),
            "mode": mode.value,
            "source_length": len(source),
        }
        try:
            proc.stdin.write(json.dumps(header).encode("utf-8") + b"\n")
            proc.stdin.write(source)
            proc.stdin.flush()
            response_line: bytes = proc.stdout.readline()
        except OSError as e:
            raise CompilationError(f"bytecode compiler process failed: {e}") from e

        if len(response_line) == 0:
            raise CompilationError(
                f"bytecode compiler exited unexpectedly (exit={proc.poll()}) while compiling {filename}"
            )

        response: dict[str, object] = json.loads(response_line)
        if response.get("ok") is not True:
            raise CompilationError(f"error compiling {filename}: {response.get('error')}")

        length = response["length"]
        assert isinstance(length, int)
        data: bytes = proc.stdout.read(length)
        if len(data) != length:
            raise CompilationError(f"truncated bytecode for {filename}")

        self.compile_count += 1
        return data

    def close(self) -> None:
        """Stop the compiler process, if running."""

        proc = self._proc
        self._proc = None
        if proc is None:
            return
        if proc.stdin is not None:
            proc.stdin.close()
        try:
            proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()

    def __enter__(self) -> "BytecodeCompiler":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def bytecode_cache_path(
    *,
    name: str,
    is_package: bool,
    cache_tag: str,
    optimize: BytecodeOptimizationLevel,
) -> str:
    """Relative path of the ``.pyc`` for a module, as ``importlib`` expects it.

    >>> bytecode_cache_path(name="a.b", is_package=False, cache_tag="cpython-39", optimize=BytecodeOptimizationLevel.ONE)
    'a/__pycache__/b.cpython-39.opt-1.pyc'
    """

    parts: list[str] = name.split(".")
    if is_package is True:
        directory: list[str] = parts
        stem: str = "__init__"
    else:
        directory = parts[:-1]
        stem = parts[-1]

    suffix: str = f".{cache_tag}"
    if optimize != BytecodeOptimizationLevel.ZERO:
        suffix += f".opt-{int(optimize)}"
    return "/".join([*directory, "__pycache__", f"{stem}{suffix}.pyc"])


def module_source_path(*, name: str, is_package: bool) -> str:
    """Relative path of a module's ``.py`` file."""

    parts: list[str] = name.split(".")
    if is_package is True:
        return "/".join([*parts, "__init__.py"])
    return "/".join(parts) + ".py"
