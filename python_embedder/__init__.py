"""python-embedder.

Build-time core for embedding a Python interpreter into a native executable:
it resolves a runtime distribution, decides which resources ship and where they
live, compiles bytecode, and emits the packed resources plus the embedded
interpreter configuration that a native builder links into the binary.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
