import asyncio
import importlib.util
from pathlib import Path

import pytest

from userhub.storage.memory import MemoryStore
from userhub.storage.memory_cache import MemoryCache
from userhub.storage.models import User

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Sh0rt!", False),
        ("alllowercaseletters", False),
        ("Longer-Password1", True),
        ("longerpassword12!", True),
    ],
)
def test_validate_password(password, ok):
    assert bootstrap.validate_password(password) is ok


def test_creates_verified_admin():
    store = MemoryStore()
    result = bootstrap.bootstrap_admin(store, "Admin@Example.com", "Longer-Password1", "Admin")
    assert result["status"] == "created"
    user = store.get_user_by_email("admin@example.com")
    assert user.role == "admin"
    assert user.is_verified
    assert user.password_hash.startswith("$argon2id$")


def test_promotes_existing_user():
    store = MemoryStore()
    existing = store.create_user(User.new("Bob", "bob@example.com", "hash"))
    result = bootstrap.bootstrap_admin(store, "bob@example.com", "Longer-Password1", "Bob")
    assert result == {"user_id": existing.id, "email": "bob@example.com", "status": "promoted"}
    promoted = store.get_user(existing.id)
    assert promoted.role == "admin" and promoted.is_verified
    again = bootstrap.bootstrap_admin(store, "bob@example.com", "Longer-Password1", "Bob")
    assert again["status"] == "already_admin"


def test_promotion_evicts_cached_profile(clock):
    store = MemoryStore()
    cache = MemoryCache(clock=clock)
    existing = store.create_user(User.new("Bob", "bob@example.com", "hash"))
    asyncio.run(cache.cache_user_profile(existing.id, existing.public_profile(), 3600))
    asyncio.run(cache.cache_directory_page(1, 10, "", {"users": []}, 300))
    result = bootstrap.bootstrap_admin(
        store, "bob@example.com", "Longer-Password1", "Bob", cache=cache
    )
    assert result["status"] == "promoted"
    assert asyncio.run(cache.get_user_profile(existing.id)) is None
    assert asyncio.run(cache.get_directory_page(1, 10, "")) is None


def test_dry_run_changes_nothing():
    store = MemoryStore()
    result = bootstrap.bootstrap_admin(
        store, "admin@example.com", "Longer-Password1", "Admin", dry_run=True
    )
    assert result["status"] == "dry_run"
    assert store.get_user_by_email("admin@example.com") is None
