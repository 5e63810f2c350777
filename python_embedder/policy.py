"""Packaging policy.

A :class:`PackagingPolicy` decides, for every resource about to enter a
collection, whether it ships and how. Decisions start from the policy's default
flags and then pass through the registered override callbacks, in registration
order. :meth:`PackagingPolicy.to_collectible` is the single conversion point:
every discovered resource is routed through it exactly once.

Override callbacks have the signature ``(policy, resource, context) ->
AddCollectionContext``. They receive a copy of the current context and return
the context to continue with. State a callback wants to carry from one resource
to the next belongs in :attr:`PackagingPolicy.callback_state`.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import enum
from typing import Any, TYPE_CHECKING

from python_embedder.errors import BuildError, InvalidArgumentError
from python_embedder.resource import (
    AddCollectionContext,
    CollectibleResource,
    PythonExtensionModule,
    PythonModuleSource,
    PythonPackageDistributionResource,
    PythonPackageResource,
    Resource,
    ResourceLocation,
    describe_resource,
    is_resource,
)

if TYPE_CHECKING:
    from python_embedder.distribution import ResolvedDistribution


class ExtensionModuleFilter(enum.Enum):
    ALL = "all"
    MINIMAL = "minimal"
    NO_LIBRARIES = "no-libraries"


ResourceOverride = Callable[["PackagingPolicy", Resource, AddCollectionContext], AddCollectionContext]


@dataclass(slots=True)
class PackagingPolicy:
    """Default inclusion rules plus an ordered list of overrides."""

    extension_module_filter: ExtensionModuleFilter = ExtensionModuleFilter.ALL
    preferred_extension_module_variants: dict[str, str] = field(default_factory=dict)
    resources_location: ResourceLocation = field(default_factory=ResourceLocation.in_memory)
    resources_location_fallback: ResourceLocation | None = None
    allow_in_memory_shared_library_loading: bool = False
    allow_resource_override: bool = False
    include_distribution_sources: bool = True
    include_distribution_resources: bool = False
    include_non_distribution_sources: bool = True
    include_test: bool = False
    bytecode_optimize_level_zero: bool = True
    bytecode_optimize_level_one: bool = False
    bytecode_optimize_level_two: bool = False
    callback_state: dict[str, Any] = field(default_factory=dict)
    _overrides: list[ResourceOverride] = field(default_factory=list)

    @property
    def overrides(self) -> tuple[ResourceOverride, ...]:
        return tuple(self._overrides)

    def register_override(self, callback: ResourceOverride) -> None:
        """Append an override callback.

        :raises InvalidArgumentError: If ``callback`` is not callable.
        """

        if callable(callback) is False:
            raise InvalidArgumentError(f"override must be callable; got {type(callback).__name__}")
        self._overrides.append(callback)

    def set_attribute(self, name: str, value: Any) -> None:
        """Set a policy flag by name, validating its type.

        String values are accepted for enum and location fields.

        :raises InvalidArgumentError: On unknown names or wrong types.
        """

        if name.startswith("_") is True or name in {"callback_state"} or hasattr(self, name) is False:
            raise InvalidArgumentError(f"unknown packaging policy attribute {name!r}")

        current: Any = getattr(self, name)
        converted: Any
        if name == "extension_module_filter":
            converted = _coerce_enum(ExtensionModuleFilter, value, name)
        elif name in {"resources_location", "resources_location_fallback"}:
            if value is None and name == "resources_location_fallback":
                converted = None
            elif isinstance(value, ResourceLocation) is True:
                converted = value
            elif isinstance(value, str) is True:
                converted = ResourceLocation.parse(value)
            else:
                raise InvalidArgumentError(f"{name} expects a resource location; got {type(value).__name__}")
        elif isinstance(current, bool) is True:
            if isinstance(value, bool) is False:
                raise InvalidArgumentError(f"{name} expects a bool; got {type(value).__name__}")
            converted = value
        elif isinstance(current, dict) is True:
            if isinstance(value, dict) is False:
                raise InvalidArgumentError(f"{name} expects a dict; got {type(value).__name__}")
            converted = dict(value)
        else:
            raise InvalidArgumentError(f"packaging policy attribute {name!r} is read-only")

        setattr(self, name, converted)

    def derive_add_collection_context(self, resource: Resource) -> AddCollectionContext:
        """Build the default decision for a resource, without overrides."""

        ctx: AddCollectionContext = AddCollectionContext()

        if isinstance(resource, PythonModuleSource):
            if resource.is_stdlib is True:
                ctx.include = self.include_distribution_sources
            else:
                ctx.include = self.include_non_distribution_sources
            if resource.is_test is True and self.include_test is False:
                ctx.include = False
            if ctx.include is True:
                ctx.store_source = True
                ctx.optimize_level_zero = self.bytecode_optimize_level_zero
                ctx.optimize_level_one = self.bytecode_optimize_level_one
                ctx.optimize_level_two = self.bytecode_optimize_level_two

        elif isinstance(resource, PythonPackageResource):
            if resource.is_stdlib is True:
                ctx.include = self.include_distribution_resources
            else:
                ctx.include = True
            if resource.is_test is True and self.include_test is False:
                ctx.include = False

        elif isinstance(resource, PythonPackageDistributionResource):
            ctx.include = True

        elif isinstance(resource, PythonExtensionModule):
            ctx.include = self._include_extension_module(resource)

        else:
            raise InvalidArgumentError(
                f"resource argument must be a Python resource type; got {type(resource).__name__}"
            )

        if ctx.include is True:
            ctx.location = self.resources_location
            ctx.location_fallback = self.resources_location_fallback
        return ctx

    def _include_extension_module(self, module: PythonExtensionModule) -> bool:
        if module.required is True:
            return True

        preferred: str | None = self.preferred_extension_module_variants.get(module.name)
        if preferred is not None and module.variant is not None and module.variant != preferred:
            return False

        if self.extension_module_filter == ExtensionModuleFilter.ALL:
            return True
        if self.extension_module_filter == ExtensionModuleFilter.MINIMAL:
            return module.builtin_default
        # NO_LIBRARIES
        return len(module.link_libraries) == 0

    def apply_to_resource(self, resource: Resource) -> AddCollectionContext:
        """Compute the final decision for a resource.

        :param resource: Resource being converted for collection.
        :returns: Default decision with every override applied in order.
        :raises InvalidArgumentError: If an override raises, or returns something else
            than a context.
        """

        ctx: AddCollectionContext = self.derive_add_collection_context(resource)
        for callback in self._overrides:
            name: object = getattr(callback, "__name__", callback)
            try:
                result: object = callback(self, resource, ctx.copy())
            except BuildError:
                raise
            except Exception as e:
                raise InvalidArgumentError(
                    f"override {name!r} failed on {describe_resource(resource)}: {type(e).__name__}: {e}",
                    label="apply_to_resource()",
                ) from e
            if isinstance(result, AddCollectionContext) is False:
                raise InvalidArgumentError(
                    f"override {name!r} must return an "
                    f"AddCollectionContext; got {type(result).__name__}",
                    label="apply_to_resource()",
                )
            assert isinstance(result, AddCollectionContext)
            ctx = result
        return ctx

    def to_collectible(self, resource: Resource) -> CollectibleResource:
        if is_resource(resource) is False:
            raise InvalidArgumentError(
                f"resource argument must be a Python resource type; got {type(resource).__name__}"
            )
        return CollectibleResource(resource=resource, add_context=self.apply_to_resource(resource))


def create_policy(distribution: "ResolvedDistribution") -> PackagingPolicy:
    """Derive a packaging policy from a distribution's capabilities.

    :param distribution: Resolved distribution.
    :returns: New policy with distribution-specific defaults.
    """

    policy: PackagingPolicy = PackagingPolicy()
    if distribution.supports_in_memory_shared_library_loading() is True:
        policy.allow_in_memory_shared_library_loading = True
    if distribution.libpython_link_mode == "shared":
        policy.resources_location_fallback = ResourceLocation.filesystem_relative("lib")
    return policy


def _coerce_enum(enum_type: type[enum.Enum], value: Any, name: str) -> Any:
    if isinstance(value, enum_type) is True:
        return value
    if isinstance(value, str) is True:
        for member in enum_type:
            if member.value == value:
                return member
    raise InvalidArgumentError(
        f"{name} must be one of {[m.value for m in enum_type]}; got {value!r}"
    )
