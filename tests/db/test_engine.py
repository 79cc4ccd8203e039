"""
Tests for the module-level engine and session scope.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from approval_kernel.db.engine import (
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from approval_kernel.models import UserModel


@pytest.fixture
def uninitialized():
    reset_engine()
    yield
    reset_engine()


def _user_row(name):
    return UserModel(id=uuid4(), name=name, email=f"{name}@example.com")


class TestInitialization:

    def test_accessors_require_init(self, uninitialized):
        with pytest.raises(RuntimeError):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session_factory()
        with pytest.raises(RuntimeError):
            with session_scope():
                pass

    def test_sqlite_shares_one_connection(self, uninitialized, captured_logs):
        engine = init_engine_from_url("sqlite://")
        assert isinstance(engine.pool, StaticPool)
        assert get_engine() is engine

        logged = [r for r in captured_logs() if r["message"] == "engine_initialized"]
        assert logged[0]["dialect"] == "sqlite"
        assert logged[0]["pool_class"] == "StaticPool"

    def test_reset_forgets_engine(self, uninitialized):
        init_engine_from_url("sqlite://")
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()


class TestSessionScope:

    def test_commits(self, sql_engine):
        with session_scope() as session:
            session.add(_user_row("ana"))
        with session_scope() as session:
            assert session.scalars(select(UserModel.name)).all() == ["ana"]

    def test_rolls_back_and_reraises(self, sql_engine, captured_logs):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(_user_row("ben"))
                session.flush()
                raise RuntimeError("abort")

        with session_scope() as session:
            assert session.scalars(select(UserModel)).all() == []
        assert any(r["message"] == "session_rolled_back" for r in captured_logs())
