import pytest

from envelope_store.errors import HashSecretError


@pytest.mark.asyncio
async def test_hash_is_deterministic(hash_service):
    first = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()
    second = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()

    assert first.data == second.data
    assert first.secret_id == second.secret_id


@pytest.mark.asyncio
async def test_distinct_inputs_hash_differently(hash_service):
    a = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()
    b = (await hash_service.hash_searchable_hmac_sha256("b@example.com")).unwrap()

    assert a.data != b.data


@pytest.mark.asyncio
async def test_input_is_trimmed_and_lowercased(hash_service):
    plain = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()
    noisy = (await hash_service.hash_searchable_hmac_sha256("  A@Example.COM \n")).unwrap()

    assert plain.data == noisy.data


@pytest.mark.asyncio
async def test_hash_is_unpadded_base64url_of_sha256(hash_service):
    hashed = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()

    assert len(hashed.data) == 43
    assert "=" not in hashed.data
    assert "+" not in hashed.data and "/" not in hashed.data
    assert "example" not in hashed.data


@pytest.mark.asyncio
async def test_hash_references_current_hash_secret(hash_service, hash_secrets):
    before = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()
    assert before.secret_id == (await hash_secrets.get_current_secret()).unwrap().key

    await hash_secrets.update_secret()
    after = (await hash_service.hash_searchable_hmac_sha256("a@example.com")).unwrap()

    assert after.secret_id != before.secret_id
    assert after.data != before.data


@pytest.mark.asyncio
async def test_missing_hash_secret_is_reported(hash_service, secret_store):
    secret_store.unavailable = True

    result = await hash_service.hash_searchable_hmac_sha256("a@example.com")

    assert isinstance(result.unwrap_err(), HashSecretError)


def test_repr_hides_hash_data():
    from envelope_store.domain.hashing.service import SearchableHash

    hashed = SearchableHash(data="c2VjcmV0LWhhc2g", secret_id="test-hash-1")
    assert "c2VjcmV0LWhhc2g" not in repr(hashed)
    assert "test-hash-1" in repr(hashed)
