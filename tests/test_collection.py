"""Tests for the resource collection"""

import pathlib
from unittest.mock import Mock

import pytest

from python_embedder.bytecode import BytecodeOptimizationLevel, CompileMode
from python_embedder.collection import ResourceCollection
from python_embedder.errors import CompilationError, PolicyConflictError, UnsupportedResourceError
from python_embedder.resource import (
    AddCollectionContext,
    CollectibleResource,
    DataLocation,
    PythonExtensionModule,
    PythonModuleSource,
    PythonPackageDistributionResource,
    PythonPackageResource,
    ResourceKind,
    ResourceLocation,
)


def _ctx(location=None, fallback=None, **kwargs) -> AddCollectionContext:
    return AddCollectionContext(
        include=True,
        location=location if location is not None else ResourceLocation.in_memory(),
        location_fallback=fallback,
        **kwargs,
    )


def _module(name: str, source: bytes = b"x = 1\n", **kwargs) -> PythonModuleSource:
    return PythonModuleSource(name=name, source=DataLocation.memory(source), cache_tag="cpython-310", **kwargs)


def _resource(name: str, provenance: str | None = None) -> PythonPackageResource:
    return PythonPackageResource(
        leaf_package="pkg",
        relative_name=name,
        data=DataLocation.memory(name.encode()),
        provenance=pathlib.Path(provenance) if provenance is not None else None,
    )


def _shared_ext(suffix: str = ".so") -> PythonExtensionModule:
    return PythonExtensionModule(
        name="pkg._speedups",
        init_fn="PyInit__speedups",
        extension_file_suffix=suffix,
        shared_library=DataLocation.memory(b"\x7fELF"),
    )


def _fake_compile(source, filename, optimize, mode):
    return f"{mode.value}:{int(optimize)}:{filename}".encode()


@pytest.fixture
def collection(logger):
    return ResourceCollection(logger=logger)


class TestAdd:
    """Tests for ResourceCollection.add"""

    def test_excluded_not_stored(self, collection):
        assert collection.add(_module("app"), AddCollectionContext(include=False)) is False
        assert len(collection) == 0
        assert collection.excluded == 1

    def test_collectible_carries_context(self, collection):
        assert collection.add(CollectibleResource(resource=_module("app"), add_context=_ctx())) is True
        assert (ResourceKind.SOURCE_MODULE, "app") in collection

    def test_conflict_keeps_first(self, collection):
        collection.add(_module("app", b"first = 1\n"), _ctx())
        with pytest.raises(PolicyConflictError) as exc:
            collection.add(_module("app", b"second = 2\n"), _ctx())
        assert exc.value.label == "add_python_resource()"
        assert str(exc.value).count("source_module 'app'") == 2
        kept = collection.get((ResourceKind.SOURCE_MODULE, "app"))
        assert kept.resource.source.data == b"first = 1\n"

    def test_override_replaces(self, logger):
        collection = ResourceCollection(allow_override=True, logger=logger)
        collection.add(_module("app", b"first = 1\n"), _ctx())
        collection.add(_module("app", b"second = 2\n"), _ctx())
        assert len(collection) == 1
        assert collection.get((ResourceKind.SOURCE_MODULE, "app")).resource.source.data == b"second = 2\n"

    def test_same_name_different_kind(self, collection):
        collection.add(_module("foo"), _ctx())
        collection.add(PythonExtensionModule(name="foo", init_fn="PyInit_foo"), _ctx())
        assert len(collection) == 2

    def test_context_is_copied(self, collection):
        ctx = _ctx(store_source=True)
        collection.add(_module("app"), ctx)
        ctx.store_source = False
        assert collection.get((ResourceKind.SOURCE_MODULE, "app")).context.store_source is True

    def test_missing_location(self, collection):
        with pytest.raises(UnsupportedResourceError):
            collection.add(_module("app"), AddCollectionContext(include=True))

    def test_missing_context(self, collection):
        with pytest.raises(UnsupportedResourceError):
            collection.add(_module("app"))


class TestLocations:
    """Tests for location resolution"""

    def test_shared_extension_falls_back_to_filesystem(self, collection):
        collection.add(_shared_ext(), _ctx(fallback=ResourceLocation.filesystem_relative("lib")))
        entry = collection.get((ResourceKind.EXTENSION_MODULE, "pkg._speedups"))
        assert entry.location.prefix == "lib"
        assert collection.has_filesystem_resources() is True

    def test_shared_extension_in_memory_without_fallback(self, collection):
        with pytest.raises(UnsupportedResourceError):
            collection.add(_shared_ext(), _ctx())

    def test_shared_extension_in_memory_when_supported(self, logger):
        collection = ResourceCollection(supports_in_memory_shared_library_loading=True, logger=logger)
        collection.add(_shared_ext(), _ctx())
        assert collection.has_filesystem_resources() is False

    def test_no_shared_library_loading(self, logger):
        collection = ResourceCollection(supports_shared_library_loading=False, logger=logger)
        with pytest.raises(UnsupportedResourceError, match="cannot load shared library"):
            collection.add(_shared_ext(), _ctx(fallback=ResourceLocation.filesystem_relative("lib")))

    def test_suffix_mismatch(self, logger):
        collection = ResourceCollection(extension_suffixes=[".cpython-310-x86_64-linux-gnu.so"], logger=logger)
        with pytest.raises(UnsupportedResourceError, match="suffix"):
            collection.add(_shared_ext(".pyd"), _ctx(fallback=ResourceLocation.filesystem_relative("lib")))

    def test_builtin_extension_always_in_memory(self, collection):
        collection.add(
            PythonExtensionModule(name="_io", init_fn="PyInit__io"),
            _ctx(location=ResourceLocation.filesystem_relative("lib")),
        )
        assert collection.get((ResourceKind.EXTENSION_MODULE, "_io")).location.is_in_memory is True


class TestFilter:
    """Tests for filtering by provenance"""

    def test_exact_file(self, collection):
        collection.add(_resource("a.dat", "/pkg/a.dat"), _ctx())
        collection.add(_resource("b.dat", "/pkg/b.dat"), _ctx())
        removed = collection.filter_from_files(files=["/pkg/a.dat"])
        assert removed == [(ResourceKind.PACKAGE_RESOURCE, "pkg:a.dat")]
        assert [r.identity_name for r, _ in collection] == ["pkg:b.dat"]

    def test_glob(self, collection):
        collection.add(_resource("a.dat", "/pkg/a.dat"), _ctx())
        collection.add(_resource("b.txt", "/pkg/b.txt"), _ctx())
        collection.filter_from_files(glob_files=["*.dat"])
        assert [r.identity_name for r, _ in collection] == ["pkg:b.txt"]

    def test_glob_stays_in_its_directory(self, collection):
        collection.add(_resource("a.dat", "/pkg/a.dat"), _ctx())
        collection.add(_resource("sub/c.dat", "/pkg/sub/c.dat"), _ctx())
        removed = collection.filter_from_files(glob_files=["/pkg/*.dat"])
        assert removed == [(ResourceKind.PACKAGE_RESOURCE, "pkg:a.dat")]
        assert [r.identity_name for r, _ in collection] == ["pkg:sub/c.dat"]

    def test_lexical_normalization(self, collection):
        collection.add(_resource("a.dat", "/pkg/sub/../a.dat"), _ctx())
        assert len(collection.filter_from_files(files=["/pkg/./a.dat"])) == 1

    def test_no_provenance_untouched(self, collection):
        collection.add(_resource("a.dat"), _ctx())
        assert collection.filter_from_files(glob_files=["*"]) == []
        assert len(collection) == 1

    def test_add_after_filter(self, collection):
        collection.add(_resource("a.dat", "/pkg/a.dat"), _ctx())
        collection.filter_from_files(files=["/pkg/a.dat"])
        collection.add(_resource("a.dat", "/pkg/a.dat"), _ctx())
        assert len(collection) == 1

    def test_iteration_restarts(self, collection):
        collection.add(_module("a"), _ctx())
        collection.add(_module("b"), _ctx())
        assert [r.name for r, _ in collection] == ["a", "b"]
        assert [r.name for r, _ in collection] == ["a", "b"]


class TestPrepare:
    """Tests for ResourceCollection.prepare"""

    def test_in_memory_module(self, collection):
        collection.add(_module("pkg", is_package=True), _ctx(store_source=True, optimize_level_zero=True, optimize_level_two=True))
        prepared = collection.prepare(_fake_compile)
        [res] = prepared.resources
        assert res.is_package is True
        assert res.payloads["source"] == b"x = 1\n"
        assert res.payloads["bytecode"] == b"bytecode:0:pkg/__init__.py"
        assert res.payloads["bytecode_opt2"] == b"bytecode:2:pkg/__init__.py"
        assert "bytecode_opt1" not in res.payloads
        assert prepared.files == []

    def test_filesystem_module(self, collection):
        lib = ResourceLocation.filesystem_relative("lib")
        collection.add(_module("a.b"), _ctx(location=lib, store_source=True, optimize_level_one=True))
        prepared = collection.prepare(_fake_compile)
        assert [f.path for f in prepared.files] == [
            "lib/a/b.py",
            "lib/a/__pycache__/b.cpython-310.opt-1.pyc",
        ]
        assert prepared.files[1].data == b"pyc-unchecked-hash:1:a/b.py"

    def test_filesystem_resources(self, collection):
        lib = ResourceLocation.filesystem_relative("lib")
        collection.add(
            PythonPackageResource(leaf_package="a.b", relative_name="data/x.txt", data=DataLocation.memory(b"x")),
            _ctx(location=lib),
        )
        collection.add(
            PythonPackageDistributionResource(
                package="a", version="1.0", name="METADATA", data=DataLocation.memory(b"m")
            ),
            _ctx(location=lib),
        )
        collection.add(_shared_ext(), _ctx(location=lib))
        paths = [f.path for f in collection.prepare(_fake_compile).files]
        assert paths == ["lib/a/b/data/x.txt", "lib/a-1.0.dist-info/METADATA", "lib/pkg/_speedups.so"]

    def test_builtin_extension(self, collection):
        collection.add(PythonExtensionModule(name="_io", init_fn="PyInit__io"), _ctx())
        [res] = collection.prepare(_fake_compile).resources
        assert res.is_builtin is True
        assert res.init_fn == "PyInit__io"
        assert res.payloads == {}

    def test_compile_error_names_module(self, collection):
        collection.add(_module("broken"), _ctx(optimize_level_zero=True))
        compile_fn = Mock(side_effect=CompilationError("SyntaxError: invalid syntax"))
        with pytest.raises(CompilationError, match="module broken"):
            collection.prepare(compile_fn)

    def test_compile_called_with_mode(self, collection):
        collection.add(_module("app"), _ctx(optimize_level_zero=True))
        compile_fn = Mock(return_value=b"code")
        collection.prepare(compile_fn)
        compile_fn.assert_called_once_with(b"x = 1\n", "app.py", BytecodeOptimizationLevel.ZERO, CompileMode.BYTECODE)

    def test_counts(self, collection):
        collection.add(_module("a"), _ctx())
        collection.add(_resource("a.dat"), _ctx())
        prepared = collection.prepare(_fake_compile)
        assert prepared.count(ResourceKind.SOURCE_MODULE) == 1
        assert prepared.count(ResourceKind.PACKAGE_RESOURCE) == 1
