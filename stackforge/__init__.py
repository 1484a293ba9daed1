"""
stackforge - Resumable, phase-ordered project provisioning

Runs idempotent setup operations grouped into dependency-linked phases,
checkpoints each one, simulates runs without side effects, and pauses at
breakpoints where a human or external agent takes over.
"""

__version__ = "0.1.0"


__all__ = [
    "StackforgeConfig",
    "load_config",
    "get_stackforge_home",
    "Registry",
    "load_registry",
    "ExecutionEngine",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
]

from .config import StackforgeConfig, load_config, get_stackforge_home
from .registry import Registry, load_registry
from .engine import ExecutionEngine
from .checkpoint_store import FileCheckpointStore, InMemoryCheckpointStore
