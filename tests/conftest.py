import copy
import threading
import time

import pytest

from stackforge.breakpoints import BreakpointCoordinator
from stackforge.checkpoint_store import InMemoryCheckpointStore
from stackforge.config import StackforgeConfig
from stackforge.engine import ExecutionEngine
from stackforge.operations import NoOpOperation, Operation, OperationCatalog, OperationResult
from stackforge.registry import Registry
from stackforge.schemas import PlannedEffect


SCENARIO = {
    "phases": [
        {
            "id": "p1",
            "operations": [
                {"id": "a", "handler": "fake", "creates": ["a.txt"]},
                {"id": "b", "handler": "fake", "dependencies": ["a"], "modifies": ["a.txt"]},
            ],
        },
        {
            "id": "p2",
            "dependencies": ["p1"],
            "operations": [
                {"id": "c", "handler": "fake", "dependencies": ["b"]},
            ],
        },
    ],
}


@pytest.fixture
def scenario():
    """Two phases: p1 (a, b) and p2 (c) depending on p1."""
    return copy.deepcopy(SCENARIO)


@pytest.fixture
def calls():
    """Every capability invocation as (capability, operation_id)."""
    return []


@pytest.fixture
def shutdown():
    return threading.Event()


@pytest.fixture
def catalog(calls, shutdown):
    """Catalog whose ``fake`` handler is steered by operation params.

    Params:
        fail: execute returns failure
        raise: execute raises RuntimeError with this message
        fail_validate: validate returns failure
        fail_rollback: rollback returns failure
        sleep: seconds execute sleeps
        interrupt: execute sets the shutdown event
        plan_raises: dry_run raises
        plan_none: dry_run returns None
    """

    class FakeOperation(Operation):
        def validate(self):
            calls.append(("validate", self.definition.id))
            if self.context.params.get("fail_validate"):
                return OperationResult.fail("precondition not met")
            return OperationResult.ok()

        def dry_run(self):
            calls.append(("dry_run", self.definition.id))
            if self.context.params.get("plan_raises"):
                raise RuntimeError("needs network")
            if self.context.params.get("plan_none"):
                return None
            return PlannedEffect(
                operation_key=self.definition.key,
                commands=(f"fake {self.definition.id}",),
            )

        def execute(self):
            calls.append(("execute", self.definition.id))
            params = self.context.params
            if params.get("sleep"):
                time.sleep(params["sleep"])
            if params.get("interrupt"):
                shutdown.set()
            if params.get("raise"):
                raise RuntimeError(params["raise"])
            if params.get("fail"):
                return OperationResult.fail("boom")
            return OperationResult.ok()

        def rollback(self):
            calls.append(("rollback", self.definition.id))
            if self.context.params.get("fail_rollback"):
                return OperationResult.fail("cannot undo")
            return OperationResult.ok()

    cat = OperationCatalog()
    cat.register("fake", FakeOperation)
    cat.register("noop", NoOpOperation)
    return cat


@pytest.fixture
def config(tmp_path):
    return StackforgeConfig(project_root=tmp_path, operation_timeout=None)


@pytest.fixture
def make_registry(config, catalog):
    """Build a Registry from a dict with the fake catalog."""
    def _make(data, profile=None):
        registry = Registry.from_dict(data, config=config, catalog=catalog)
        if profile is not None:
            registry = registry.with_profile(profile)
        return registry
    return _make


@pytest.fixture
def store():
    return InMemoryCheckpointStore()


@pytest.fixture
def engine(config, store, shutdown):
    return ExecutionEngine(
        config,
        store,
        coordinator=BreakpointCoordinator(config.handoff_dir),
        shutdown_event=shutdown,
    )
