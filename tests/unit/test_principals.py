"""Tests for user and guest persistence with hashed lookups."""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from envelope_store.domain.documents.models import PageRequest
from envelope_store.domain.principals.models import (
    Guest,
    PasswordIdentity,
    ProviderIdentity,
    Role,
    SensitiveGuestData,
    SessionInfo,
    SensitiveUserData,
    User,
    UserIdentities,
)
from envelope_store.domain.result import Err
from envelope_store.errors import (
    DocumentConflictError,
    DocumentEncryptionError,
    DocumentHashError,
    DocumentNotFoundError,
    HashSecretError,
    InvalidCriteriaError,
)


def make_user(email, name="Ada", roles=None, groups=(), providers=None, password_hash=None, created_at=None):
    identities = UserIdentities(
        password=PasswordIdentity(password_hash=password_hash) if password_hash else None,
        providers={p: ProviderIdentity(principal_id=pid) for p, pid in (providers or {}).items()},
    )
    kwargs = {"created_at": created_at} if created_at else {}
    return User(
        sensitive=SensitiveUserData(name=name, email=email, identities=identities),
        roles=roles or {Role.USER},
        groups=set(groups),
        **kwargs,
    )


def make_guest(name="Visitor", groups=()):
    return Guest(sensitive=SensitiveGuestData(name=name), groups=set(groups))


async def collect(stream):
    return [item async for item in stream]


@pytest.mark.asyncio
async def test_stored_principal_has_hashes_but_no_plaintext(principal_service, principal_store):
    user = make_user("ada@example.com", providers={"github": "gh-4242"}, password_hash="$argon2id$x")
    await principal_service.save(user)

    raw = await principal_store.find_by_id(user.id)
    dumped = json.dumps(raw)

    assert "ada@example.com" not in dumped
    assert "gh-4242" not in dumped
    assert "argon2id" not in dumped
    assert raw["kind"] == "user"
    assert raw["email"]["data"]
    assert raw["identities"]["github"]["principal_id"]["data"]
    assert raw["identities"]["password"] == {"principal_id": None}


@pytest.mark.asyncio
async def test_find_by_email_returns_matching_user(principal_service):
    ada = make_user("ada@example.com")
    await principal_service.save(ada)
    await principal_service.save(make_user("bob@example.com", name="Bob"))

    found = (await principal_service.find_by_email("  ADA@example.com ")).unwrap()

    assert isinstance(found, User)
    assert found.id == ada.id
    assert found.email == "ada@example.com"


@pytest.mark.asyncio
async def test_find_by_email_decrypts_only_the_match(principal_service):
    users = [make_user(f"user{i}@example.com") for i in range(5)]
    for user in users:
        await principal_service.save(user)

    with patch.object(principal_service.crud, "decrypt", wraps=principal_service.crud.decrypt) as decrypt:
        found = (await principal_service.find_by_email("user3@example.com")).unwrap()

    assert found.id == users[3].id
    decrypt.assert_called_once()
    assert decrypt.call_args.args[0].id == users[3].id


@pytest.mark.asyncio
async def test_find_by_email_miss_decrypts_nothing(principal_service):
    await principal_service.save(make_user("ada@example.com"))

    with patch.object(principal_service.crud, "decrypt") as decrypt:
        result = await principal_service.find_by_email("nobody@example.com")

    assert isinstance(result.unwrap_err(), DocumentNotFoundError)
    decrypt.assert_not_called()


@pytest.mark.asyncio
async def test_exists_by_email(principal_service):
    await principal_service.save(make_user("ada@example.com"))

    assert (await principal_service.exists_by_email("Ada@Example.com")).unwrap() is True
    assert (await principal_service.exists_by_email("bob@example.com")).unwrap() is False


@pytest.mark.asyncio
async def test_find_by_provider_identity(principal_service):
    ada = make_user("ada@example.com", providers={"github": "gh-1", "google": "go-1"})
    await principal_service.save(ada)
    await principal_service.save(make_user("bob@example.com", providers={"github": "gh-2"}))

    found = (await principal_service.find_by_provider_identity("google", "go-1")).unwrap()
    missing = await principal_service.find_by_provider_identity("google", "gh-1")

    assert found.id == ada.id
    assert isinstance(missing.unwrap_err(), DocumentNotFoundError)


@pytest.mark.asyncio
async def test_dotted_provider_names_are_rejected(principal_service):
    await principal_service.save(make_user("ada@example.com", providers={"github": "gh-1"}))

    result = await principal_service.find_by_provider_identity("git.hub", "gh-1")

    assert isinstance(result.unwrap_err(), InvalidCriteriaError)
    with pytest.raises(ValidationError):
        make_user("bob@example.com", providers={"git.hub": "gh-2"})


@pytest.mark.asyncio
async def test_guests_round_trip_and_are_not_users(principal_service):
    guest = make_guest(groups=["trial"])
    await principal_service.save(guest)

    found = (await principal_service.find_by_id(guest.id)).unwrap()
    as_user = await principal_service.find_user_by_id(guest.id)

    assert isinstance(found, Guest)
    assert found.sensitive.name == "Visitor"
    assert found.roles == {Role.GUEST}
    assert isinstance(as_user.unwrap_err(), DocumentNotFoundError)


@pytest.mark.asyncio
async def test_find_all_by_role_and_group(principal_service):
    admin = make_user("root@example.com", roles={Role.ADMIN, Role.USER}, groups=["ops"])
    await principal_service.save(admin)
    await principal_service.save(make_user("ada@example.com", groups=["dev"]))
    await principal_service.save(make_guest(groups=["ops"]))

    admins = await collect(principal_service.find_all_by_role(Role.ADMIN))
    ops = await collect(principal_service.find_all_by_group("ops"))

    assert [r.unwrap().id for r in admins] == [admin.id]
    assert len(ops) == 2
    assert {type(r.unwrap()) for r in ops} == {User, Guest}


@pytest.mark.asyncio
async def test_find_users_paginated_filters(principal_service):
    now = datetime.now(timezone.utc)
    old = make_user("old@example.com", created_at=now - timedelta(days=90))
    new_admin = make_user("admin@example.com", roles={Role.ADMIN}, providers={"github": "gh-9"})
    new_user = make_user("new@example.com")
    for principal in (old, new_admin, new_user, make_guest()):
        await principal_service.save(principal)

    recent = (await principal_service.find_users_paginated(
        PageRequest(size=10), created_at_after=now - timedelta(days=1)
    )).unwrap()
    admins = (await principal_service.find_users_paginated(PageRequest(), roles=[Role.ADMIN])).unwrap()
    by_email = (await principal_service.find_users_paginated(PageRequest(), email="OLD@example.com")).unwrap()
    with_github = (await principal_service.find_users_paginated(PageRequest(), identity_keys=["github"])).unwrap()
    everyone = (await principal_service.find_users_paginated(PageRequest())).unwrap()

    assert {u.id for u in recent.content} == {new_admin.id, new_user.id}
    assert [u.id for u in admins.content] == [new_admin.id]
    assert [u.id for u in by_email.content] == [old.id]
    assert [u.id for u in with_github.content] == [new_admin.id]
    assert everyone.total == 3


@pytest.mark.asyncio
async def test_convert_guest_to_user(principal_service):
    guest = make_guest(groups=["trial"])
    await principal_service.save(guest)

    user = (await principal_service.convert_guest_to_user(guest.id, "ada@example.com", "$argon2id$x", "Ada")).unwrap()

    assert isinstance(user, User)
    assert user.id == guest.id
    assert user.groups == {"trial"}
    assert user.sensitive.identities.password.password_hash == "$argon2id$x"
    assert (await principal_service.find_by_email("ada@example.com")).unwrap().id == guest.id


@pytest.mark.asyncio
async def test_convert_guest_rejects_taken_email_and_non_guests(principal_service):
    existing = make_user("ada@example.com")
    guest = make_guest()
    await principal_service.save(existing)
    await principal_service.save(guest)

    taken = await principal_service.convert_guest_to_user(guest.id, "ada@example.com")
    not_guest = await principal_service.convert_guest_to_user(existing.id, "other@example.com")
    missing = await principal_service.convert_guest_to_user("missing", "other@example.com")

    assert isinstance(taken.unwrap_err(), DocumentConflictError)
    assert isinstance(not_guest.unwrap_err(), DocumentConflictError)
    assert isinstance(missing.unwrap_err(), DocumentNotFoundError)


@pytest.mark.asyncio
async def test_hash_failure_on_save_and_lookup(principal_service, hash_service):
    async def unavailable(value):
        return Err(HashSecretError("hash secret unavailable"))

    with patch.object(hash_service, "hash_searchable_hmac_sha256", side_effect=unavailable):
        saved = await principal_service.save(make_user("ada@example.com"))
        found = await principal_service.find_by_email("ada@example.com")

    assert isinstance(saved.unwrap_err(), DocumentEncryptionError)
    assert isinstance(found.unwrap_err(), DocumentHashError)


@pytest.mark.asyncio
async def test_stale_hashes_miss_until_rehashed(principal_service, principal_store, hash_secrets):
    ada = make_user("ada@example.com", providers={"github": "gh-1"})
    await principal_service.save(ada)
    await principal_service.save(make_guest())

    new_hash_secret = (await hash_secrets.update_secret()).unwrap().key
    stale = await principal_service.find_by_email("ada@example.com")
    assert isinstance(stale.unwrap_err(), DocumentNotFoundError)

    report = (await principal_service.rehash_searchable_fields()).unwrap()

    assert report.rotated == 1
    assert report.skipped == 1
    raw = await principal_store.find_by_id(ada.id)
    assert raw["email"]["secret_id"] == new_hash_secret
    assert raw["identities"]["github"]["principal_id"]["secret_id"] == new_hash_secret
    assert (await principal_service.find_by_email("ada@example.com")).unwrap().id == ada.id
    assert (await principal_service.find_by_provider_identity("github", "gh-1")).unwrap().id == ada.id
    assert principal_service.last_successful_rehash == report.finished_at

    writes = principal_store.writes
    again = (await principal_service.rehash_searchable_fields()).unwrap()
    assert again.rotated == 0
    assert principal_store.writes == writes


@pytest.mark.asyncio
async def test_encryption_rotation_keeps_hashes_searchable(principal_service, encryption_secrets):
    ada = make_user("ada@example.com")
    await principal_service.save(ada)

    await encryption_secrets.update_secret()
    report = (await principal_service.rotate_secret()).unwrap()

    assert report.rotated == 1
    assert (await principal_service.find_by_email("ada@example.com")).unwrap().id == ada.id


def test_session_helpers():
    user = make_user("ada@example.com")
    before = user.last_active
    user.add_or_update_session("s1", SessionInfo(browser="firefox"))
    user.add_or_update_session("s2", SessionInfo(browser="curl"))
    user.remove_session("s1")

    assert list(user.sensitive.sessions) == ["s2"]
    assert user.clear_sessions().sensitive.sessions == {}
    assert not user.is_admin
    assert user.update_last_active().last_active >= before
