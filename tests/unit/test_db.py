"""
Unit tests for the session helpers in carwash.lib.db.
"""
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from carwash.lib.db import get_db, get_db_context, lock_for_transaction, new_id
from carwash.models.users import User, UserRole


@pytest.mark.unit
def test_new_id_uses_prefix():
    first, second = new_id("BOOK"), new_id("BOOK")

    assert first.startswith("BOOK_")
    assert first != second


@pytest.mark.unit
def test_get_db_context_commits_on_success():
    with get_db_context() as db:
        db.add(User(id="USER_ctx", email="ctx@example.com", full_name="Ctx", role=UserRole.USER))

    with get_db_context() as db:
        assert db.get(User, "USER_ctx") is not None


@pytest.mark.unit
def test_get_db_context_rolls_back_on_error():
    with pytest.raises(RuntimeError):
        with get_db_context() as db:
            db.add(User(id="USER_gone", email="gone@example.com", full_name="Gone", role=UserRole.USER))
            db.flush()
            raise RuntimeError("boom")

    with get_db_context() as db:
        assert db.execute(select(User).where(User.id == "USER_gone")).scalar_one_or_none() is None


class _RecordingSession:
    def __init__(self, dialect_name):
        self.dialect_name = dialect_name
        self.statements = []

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect_name))

    def execute(self, statement):
        self.statements.append(statement)


@pytest.mark.unit
def test_lock_for_transaction_takes_advisory_lock_on_postgresql():
    session = _RecordingSession("postgresql")

    lock_for_transaction(session, "slot:Taguig:2026-10-21:9:00 AM")

    [statement] = session.statements
    compiled = str(statement.compile(dialect=postgresql.dialect()))
    assert "pg_advisory_xact_lock(hashtext(" in compiled


@pytest.mark.unit
def test_lock_for_transaction_is_a_no_op_on_sqlite(db):
    session = _RecordingSession("sqlite")

    lock_for_transaction(session, "slot:Taguig:2026-10-21:9:00 AM")
    lock_for_transaction(db, "slot:Taguig:2026-10-21:9:00 AM")

    assert session.statements == []
    assert not db.in_transaction()


@pytest.mark.unit
def test_get_db_yields_and_closes_session():
    generator = get_db()
    db = next(generator)

    assert db.execute(select(User)).scalars().all() == []

    with pytest.raises(StopIteration):
        next(generator)
