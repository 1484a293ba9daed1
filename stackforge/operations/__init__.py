"""
stackforge.operations - Operation capability interface and built-in handlers.

Built-in handlers:
- shell: run a command or script (ShellOperation)
- noop: do nothing (NoOpOperation)
"""

from stackforge.operations.base import (
    NoOpOperation,
    Operation,
    OperationContext,
    OperationResult,
)
from stackforge.operations.shell import ShellOperation
from stackforge.operations.catalog import (
    ENTRY_POINT_GROUP,
    OperationCatalog,
    discover_operations,
)

__all__ = [
    "NoOpOperation",
    "Operation",
    "OperationContext",
    "OperationResult",
    "ShellOperation",
    "ENTRY_POINT_GROUP",
    "OperationCatalog",
    "discover_operations",
]
