"""Tests for stackforge.errors."""

import pytest

from stackforge.errors import (
    ConfigurationError,
    ExecutionError,
    OperationError,
    PersistenceError,
    PreconditionError,
    StackforgeError,
    UnknownProfileError,
    UnmetDependencyError,
)


class TestHierarchy:
    """All errors share the StackforgeError base."""

    @pytest.mark.parametrize("cls", [
        ConfigurationError,
        UnknownProfileError,
        PreconditionError,
        ExecutionError,
        UnmetDependencyError,
        PersistenceError,
    ])
    def test_base_class(self, cls):
        assert issubclass(cls, StackforgeError)

    def test_unknown_profile_is_configuration_error(self):
        assert issubclass(UnknownProfileError, ConfigurationError)

    def test_operation_errors(self):
        for cls in (PreconditionError, ExecutionError, UnmetDependencyError):
            assert issubclass(cls, OperationError)
        assert not issubclass(PersistenceError, OperationError)


class TestOperationError:
    """Operation-scoped errors carry phase, operation and reason."""

    def test_key_and_message(self):
        err = ExecutionError("p1", "b", "exit code 1")
        assert err.phase_id == "p1"
        assert err.operation_id == "b"
        assert err.reason == "exit code 1"
        assert err.key == "p1/b"
        assert str(err) == "p1/b: exit code 1"

    def test_phase_scoped(self):
        err = PreconditionError("p1", None, "missing tool")
        assert err.key == "p1"
        assert str(err) == "p1: missing tool"

    def test_unmet_dependency_lists_missing(self):
        err = UnmetDependencyError("p2", "c", ["p1/a", "p1/b"])
        assert err.missing == ["p1/a", "p1/b"]
        assert "p1/a, p1/b" in str(err)
        assert err.key == "p2/c"


class TestUnknownProfileError:

    def test_lists_available(self):
        err = UnknownProfileError("nope", ["minimal", "full"])
        assert err.name == "nope"
        assert "minimal, full" in str(err)

    def test_without_available(self):
        err = UnknownProfileError("nope")
        assert str(err) == "Unknown profile: 'nope'"
