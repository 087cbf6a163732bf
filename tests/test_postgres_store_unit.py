from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from userhub.storage.errors import ConstraintViolation
from userhub.storage.models import User
from userhub.storage.postgres import PostgresStore, _escape_like

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        outcome = self.pool.results.pop(0) if self.pool.results else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, results=None):
        self.statements = []
        self.results = list(results or [])

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


def _store(*results) -> tuple[PostgresStore, FakePool]:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    pool = FakePool(results)
    store.pool = pool
    store.dsn = "postgresql://unit"
    return store, pool


def _user_row(**overrides):
    row = {
        "id": "u1",
        "name": "Alice",
        "email": "alice@example.com",
        "password_hash": "hash",
        "role": "user",
        "is_verified": True,
        "email_verification_token": None,
        "password_reset_token": None,
        "password_reset_expires": None,
        "profile_image": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_escape_like():
    assert _escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_ensure_schema_creates_both_tables():
    store, pool = _store()
    store._ensure_schema()
    sql = " ".join(statement for statement, _ in pool.statements)
    assert "CREATE TABLE IF NOT EXISTS app_user" in sql
    assert "REFERENCES app_user(id) ON DELETE CASCADE" in sql


def test_create_user_maps_unique_violation():
    store, _ = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user(User.new("Alice", "alice@example.com", "hash"))
    assert exc.value.field == "email"


def test_get_user_by_email_normalizes():
    store, pool = _store(FakeResult([_user_row()]))
    user = store.get_user_by_email(" Alice@Example.com ")
    assert user.id == "u1"
    assert pool.statements[0][1] == ("alice@example.com",)


def test_consume_verification_token_is_one_conditional_update():
    store, pool = _store(FakeResult([_user_row()]))
    user = store.consume_verification_token("tok")
    assert user.is_verified
    statement, params = pool.statements[0]
    assert statement.startswith("UPDATE app_user")
    assert "WHERE email_verification_token = %s RETURNING *" in statement
    assert params == ("tok",)


def test_consume_verification_token_miss():
    store, pool = _store(FakeResult([]))
    assert store.consume_verification_token("tok") is None
    assert store.consume_verification_token("") is None
    assert len(pool.statements) == 1


def test_consume_password_reset_checks_expiry_in_sql():
    store, pool = _store(FakeResult([_user_row(password_hash="new")]))
    user = store.consume_password_reset("reset", "new", NOW)
    assert user.password_hash == "new"
    statement, params = pool.statements[0]
    assert "WHERE password_reset_token = %s AND password_reset_expires > %s" in statement
    assert params == ("new", "reset", NOW)


def test_rotate_refresh_token_is_conditional():
    new_expiry = NOW + timedelta(days=7)
    row = {
        "id": "r1",
        "token": "new",
        "user_id": "u1",
        "expires_at": new_expiry,
        "created_at": NOW,
    }
    store, pool = _store(FakeResult([row]))
    rotated = store.rotate_refresh_token("old", "new", new_expiry, NOW)
    assert rotated.token == "new" and rotated.user_id == "u1"
    statement, params = pool.statements[0]
    assert "WHERE token = %s AND expires_at > %s RETURNING *" in statement
    assert params == ("new", new_expiry, "old", NOW)


def test_rotate_refresh_token_loser_gets_none():
    store, _ = _store(FakeResult([]))
    assert store.rotate_refresh_token("old", "new", NOW, NOW) is None


def test_create_refresh_token_for_missing_user():
    store, _ = _store(errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token("ghost", "rt", NOW)


def test_list_users_escapes_search_and_paginates():
    store, pool = _store(FakeResult([{"total": 11}]), FakeResult([_user_row()]))
    users, total = store.list_users(page=2, limit=5, search="a_b")
    assert total == 11
    assert [u.id for u in users] == ["u1"]
    count_sql, count_params = pool.statements[0]
    assert "ILIKE" in count_sql
    assert count_params == ["%a\\_b%", "%a\\_b%"]
    page_sql, page_params = pool.statements[1]
    assert "ORDER BY created_at DESC LIMIT %s OFFSET %s" in page_sql
    assert page_params[-2:] == [5, 5]


def test_set_password_hash_missing_user():
    store, _ = _store(FakeResult(rowcount=0))
    with pytest.raises(ConstraintViolation):
        store.set_password_hash("ghost", "hash")


def test_delete_user_reports_rowcount():
    store, _ = _store(FakeResult(rowcount=1), FakeResult(rowcount=0))
    assert store.delete_user("u1") is True
    assert store.delete_user("u1") is False
