import pytest
from sqlmodel import Session

from filedesk.core.exceptions import NotFound, ValidationError
from filedesk.models import Permission
from filedesk.services import keys as key_registry


@pytest.fixture
def session(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


def test_same_name_twice_gives_independent_keys(session):
    first = key_registry.create_key(session, "ci", "WRITE", "admin-1")
    second = key_registry.create_key(session, "ci", Permission.WRITE, "admin-1")

    assert first.id != second.id
    assert first.key != second.key
    for api_key in (first, second):
        assert api_key.key.startswith("sk_")
        assert len(api_key.key) == len("sk_") + 32


def test_tokens_are_fresh_every_time():
    tokens = {key_registry.generate_token() for _ in range(200)}
    assert len(tokens) == 200


@pytest.mark.parametrize("name", ["", "   ", None])
def test_empty_name_is_rejected(session, name):
    with pytest.raises(ValidationError):
        key_registry.create_key(session, name, "READ", "admin-1")
    assert key_registry.list_keys(session) == []


def test_unknown_permission_is_rejected(session):
    with pytest.raises(ValidationError) as excinfo:
        key_registry.create_key(session, "bad", "ADMIN", "admin-1")
    assert "FULL_ACCESS" in excinfo.value.message


def test_permission_names_are_case_insensitive(session):
    api_key = key_registry.create_key(session, "lower", "full_access", "admin-1")
    assert api_key.permission is Permission.FULL_ACCESS


def test_update_permission_keeps_token(session):
    api_key = key_registry.create_key(session, "deploy", "READ", "admin-1")
    token = api_key.key

    updated = key_registry.update_permission(session, api_key.id, "DELETE")
    again = key_registry.update_permission(session, api_key.id, "DELETE")

    assert updated.permission is Permission.DELETE
    assert again.key == token
    assert key_registry.find_by_token(session, token).permission is Permission.DELETE


def test_update_permission_of_missing_key(session):
    with pytest.raises(NotFound):
        key_registry.update_permission(session, "missing", "READ")


def test_revoke_is_hard_delete_and_not_idempotent(session):
    api_key = key_registry.create_key(session, "temp", "READ", "admin-1")

    key_registry.revoke_key(session, api_key.id)

    assert key_registry.find_by_token(session, api_key.key) is None
    with pytest.raises(NotFound):
        key_registry.revoke_key(session, api_key.id)


def test_list_is_newest_first_with_plaintext_tokens(session):
    older = key_registry.create_key(session, "older", "READ", "admin-1")
    newer = key_registry.create_key(session, "newer", "WRITE", "admin-1")

    listed = key_registry.list_keys(session)

    assert [k.id for k in listed] == [newer.id, older.id]
    assert listed[0].key == newer.key


def test_find_by_token_requires_exact_match(session):
    api_key = key_registry.create_key(session, "exact", "READ", "admin-1")

    assert key_registry.find_by_token(session, api_key.key).id == api_key.id
    assert key_registry.find_by_token(session, api_key.key.upper()) is None
    assert key_registry.find_by_token(session, api_key.key[:-1]) is None
    assert key_registry.find_by_token(session, "") is None


@pytest.mark.parametrize(
    "held, required, allowed",
    [
        (Permission.FULL_ACCESS, Permission.READ, True),
        (Permission.FULL_ACCESS, Permission.WRITE, True),
        (Permission.FULL_ACCESS, Permission.DELETE, True),
        (Permission.READ, Permission.READ, True),
        (Permission.READ, Permission.WRITE, False),
        (Permission.WRITE, Permission.READ, False),
        (Permission.WRITE, Permission.DELETE, False),
        (Permission.DELETE, Permission.DELETE, True),
        (Permission.DELETE, Permission.READ, False),
    ],
)
def test_permission_grants(held, required, allowed):
    assert held.grants(required) is allowed
