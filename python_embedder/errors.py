"""Error types.

Every failure surfaced by a public operation is a :class:`BuildError` carrying a
stable ``code`` and a human readable ``label`` naming the operation that failed.
Front ends are expected to print them verbatim.
"""


class BuildError(RuntimeError):
    """Base class for all python-embedder failures.

    :ivar code: Stable machine readable error code.
    :ivar label: Name of the operation that failed (may be empty).
    :ivar message: Human readable description.
    """

    default_code: str = "PYTHON_EMBEDDER_BUILD"

    def __init__(self, message: str, *, label: str = "", code: str | None = None) -> None:
        super().__init__(message)
        self.message: str = message
        self.label: str = label
        self.code: str = code if code is not None else self.default_code

    def __str__(self) -> str:
        if len(self.label) > 0:
            return f"{self.label}: {self.message}"
        return self.message

    def relabel(self, label: str) -> "BuildError":
        """Attach the label of the operation surfacing this error.

        :param label: Operation label (e.g. ``add_resource()``).
        :returns: ``self``, for ``raise e.relabel(...)``.
        """

        self.label = label
        return self


class AcquisitionError(BuildError):
    """A distribution could not be fetched, verified, extracted or located."""

    default_code = "PYTHON_DISTRIBUTION"


class PolicyConflictError(BuildError):
    """Two resources share an identity and overriding is not allowed."""

    default_code = "RESOURCE_CONFLICT"


class CompilationError(BuildError):
    """The bytecode compiler failed."""

    default_code = "BYTECODE_COMPILE"


class ConfigurationConflictError(BuildError):
    """Run-time options are contradictory or a required value is missing."""

    default_code = "CONFIG_CONFLICT"


class UnsupportedResourceError(BuildError):
    """A resource cannot be shipped with the target distribution."""

    default_code = "UNSUPPORTED_RESOURCE"


class InstallError(BuildError):
    """An external installer (pip, setup.py) or resource scan failed."""

    default_code = "PIP_INSTALL_ERROR"


class InvalidArgumentError(BuildError):
    """A caller passed a value of the wrong type or shape."""

    default_code = "INCORRECT_PARAMETER_TYPE"


class TargetResolutionError(BuildError, ValueError):
    """Raised when a target spec cannot be resolved."""

    default_code = "TARGET_RESOLUTION"
