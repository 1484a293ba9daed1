"""
Operation catalog - binds handler names to Operation implementations.

Handler names in the registry resolve, in order, to:
1. Implementations registered on the catalog (built-ins: shell, noop)
2. Implementations advertised through the ``stackforge.operations``
   entry-point group by installed packages
3. A dotted ``module.path:ClassName`` reference

Binding happens once, when the registry loads, so an unknown handler is a
configuration error and never a mid-run surprise.
"""

import importlib
import logging
from importlib.metadata import entry_points
from typing import Optional

from stackforge.operations.base import NoOpOperation, Operation, OperationContext
from stackforge.operations.shell import ShellOperation

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "stackforge.operations"


def discover_operations() -> dict[str, type[Operation]]:
    """
    Discover operation implementations from installed entry points.

    Returns:
        {"docker_compose": <class>, ...}
    """
    found: dict[str, type[Operation]] = {}
    for ep in entry_points().select(group=ENTRY_POINT_GROUP):
        # ep.value: "mypkg.ops:DockerOperation"
        logger.debug(f"Loading operation entry point: {ep.name} ({ep.value})")
        found[ep.name] = ep.load()
    return found


def import_operation(reference: str) -> type[Operation]:
    """Import ``module.path:ClassName`` and check it is an Operation subclass."""
    module_path, _, attr = reference.partition(":")
    if not module_path or not attr:
        raise KeyError(f"Invalid operation reference: {reference} (expected module:Class)")
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise KeyError(f"Cannot import operation module {module_path}: {e}")
    impl = getattr(module, attr, None)
    if impl is None:
        raise KeyError(f"Module {module_path} has no attribute {attr}")
    if not (isinstance(impl, type) and issubclass(impl, Operation)):
        raise KeyError(f"{reference} is not an Operation subclass")
    return impl


class OperationCatalog:
    """
    Registry of Operation implementations by handler name.

    Usage:
        catalog = OperationCatalog.create_default()
        catalog.register("docker", DockerOperation)

        operation = catalog.create(context)
    """

    def __init__(self, discover: bool = False) -> None:
        self._impls: dict[str, type[Operation]] = {}
        self._discover = discover
        self._discovered: Optional[dict[str, type[Operation]]] = None

    def register(self, name: str, impl: type[Operation]) -> None:
        """Register an implementation under a handler name."""
        self._impls[name] = impl

    def has(self, name: str) -> bool:
        try:
            self.get(name)
        except KeyError:
            return False
        return True

    def list_handlers(self) -> list[str]:
        """List registered and discovered handler names."""
        names = set(self._impls)
        if self._discover:
            names.update(self._entry_points())
        return sorted(names)

    def get(self, name: str) -> type[Operation]:
        """
        Resolve a handler name to an implementation class.

        Raises:
            KeyError: If the name cannot be resolved
        """
        if name in self._impls:
            return self._impls[name]
        if self._discover and name in self._entry_points():
            return self._entry_points()[name]
        if ":" in name:
            impl = import_operation(name)
            self._impls[name] = impl
            return impl
        raise KeyError(
            f"No operation registered for handler: {name}. "
            f"Registered: {self.list_handlers()}"
        )

    def create(self, context: OperationContext) -> Operation:
        """Instantiate the implementation for a bound definition."""
        return self.get(context.definition.handler)(context)

    def _entry_points(self) -> dict[str, type[Operation]]:
        if self._discovered is None:
            self._discovered = discover_operations()
        return self._discovered

    @classmethod
    def create_default(cls, discover: bool = True) -> "OperationCatalog":
        """Catalog with the built-in handlers and entry-point discovery."""
        catalog = cls(discover=discover)
        catalog.register("shell", ShellOperation)
        catalog.register("noop", NoOpOperation)
        return catalog
