"""
Tests for dispatch error mapping and lock-conflict translation.
"""

import pytest
from fastapi import status
from sqlalchemy.exc import DBAPIError, IntegrityError

from app.core.errors import (
    DEADLOCK_DETECTED,
    LOCK_NOT_AVAILABLE,
    NotFoundError,
    StaleStateError,
    WindowUnavailableError,
    dispatch_error_to_http,
    is_lock_conflict,
    lock_conflicts_as_stale,
)


class _DriverError(Exception):
    def __init__(self, sqlstate=None, pgcode=None):
        super().__init__(sqlstate or pgcode)
        self.sqlstate = sqlstate
        self.pgcode = pgcode


def _db_error(**codes) -> DBAPIError:
    return DBAPIError("SELECT 1 FOR UPDATE", {}, _DriverError(**codes))


class TestLockConflicts:
    def test_lock_timeout_and_deadlock_detected(self):
        assert is_lock_conflict(_db_error(sqlstate=LOCK_NOT_AVAILABLE))
        assert is_lock_conflict(_db_error(sqlstate=DEADLOCK_DETECTED))
        assert is_lock_conflict(_db_error(pgcode=DEADLOCK_DETECTED))

    def test_other_states_are_not_lock_conflicts(self):
        assert not is_lock_conflict(_db_error(sqlstate="23505"))
        assert not is_lock_conflict(_db_error())

    @pytest.mark.parametrize("code", [LOCK_NOT_AVAILABLE, DEADLOCK_DETECTED])
    async def test_decorated_operation_raises_stale(self, code):
        @lock_conflicts_as_stale
        async def locked_update():
            raise _db_error(sqlstate=code)

        with pytest.raises(StaleStateError) as exc_info:
            await locked_update()
        assert isinstance(exc_info.value.__cause__, DBAPIError)

        http = dispatch_error_to_http(exc_info.value)
        assert http.status_code == status.HTTP_409_CONFLICT
        assert http.detail["code"] == "stale_state"

    async def test_unrelated_database_errors_propagate(self):
        @lock_conflicts_as_stale
        async def insert_duplicate():
            raise IntegrityError("INSERT", {}, _DriverError(sqlstate="23505"))

        with pytest.raises(IntegrityError):
            await insert_duplicate()

    async def test_return_value_passes_through(self):
        @lock_conflicts_as_stale
        async def read():
            return 42

        assert await read() == 42
        assert read.__name__ == "read"


class TestHttpMapping:
    def test_specific_subclass_wins(self):
        http = dispatch_error_to_http(WindowUnavailableError("Shift already started"))
        assert http.status_code == status.HTTP_412_PRECONDITION_FAILED
        assert http.detail == {"code": "window_unavailable", "message": "Shift already started"}

    def test_not_found(self):
        assert dispatch_error_to_http(NotFoundError("gone")).status_code == 404
