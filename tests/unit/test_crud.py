"""Tests for the generic sensitive CRUD service."""
import json
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from envelope_store.domain.documents.criteria import CriteriaBuilder
from envelope_store.domain.documents.models import SORT_ASC, SORT_DESC, PageRequest
from envelope_store.domain.result import Err
from envelope_store.errors import (
    DocumentDatabaseError,
    DocumentEncryptionError,
    DocumentNotFoundError,
    InvalidCriteriaError,
    ObjectMappingError,
    PostCommitSideEffectError,
)


def make_note(notes, title, tags=()):
    return notes.Note(sensitive=notes.NoteContent(title=title, body=f"body of {title}"), tags=list(tags))


async def collect(stream):
    return [item async for item in stream]


@pytest.mark.asyncio
async def test_save_returns_decrypted_document(note_crud, notes):
    note = make_note(notes, "first", ["b", "a"])

    saved = (await note_crud.save(note)).unwrap()

    assert saved.id == note.id
    assert saved.sensitive == note.sensitive
    assert saved.tags == ["a", "b"]


@pytest.mark.asyncio
async def test_stored_form_holds_only_an_envelope(note_crud, note_store, notes):
    note = make_note(notes, "classified")
    await note_crud.save(note)

    raw = await note_store.find_by_id(note.id)

    assert set(raw["sensitive"]) == {"secret_key", "ciphertext", "alg"}
    assert "classified" not in json.dumps(raw)


@pytest.mark.asyncio
async def test_find_by_id(note_crud, notes):
    note = make_note(notes, "find me")
    await note_crud.save(note)

    found = (await note_crud.find_by_id(note.id)).unwrap()

    assert found.sensitive.title == "find me"


@pytest.mark.asyncio
async def test_find_by_id_missing_is_not_found(note_crud):
    result = await note_crud.find_by_id("missing")

    assert isinstance(result.unwrap_err(), DocumentNotFoundError)
    assert (await note_crud.find_by_id_or_none("missing")).unwrap() is None


@pytest.mark.asyncio
async def test_find_encrypted_by_id_does_not_decrypt(note_crud, notes):
    note = make_note(notes, "sealed")
    await note_crud.save(note)

    with patch.object(note_crud.encryption_service, "unwrap") as unwrap:
        encrypted = (await note_crud.find_encrypted_by_id(note.id)).unwrap()

    unwrap.assert_not_called()
    assert encrypted.sensitive.secret_key


@pytest.mark.asyncio
async def test_exists_and_delete(note_crud, notes):
    note = make_note(notes, "short lived")
    await note_crud.save(note)
    assert (await note_crud.exists_by_id(note.id)).unwrap() is True

    await note_crud.delete_by_id(note.id)

    assert (await note_crud.exists_by_id(note.id)).unwrap() is False


@pytest.mark.asyncio
async def test_save_all_and_delete_all(note_crud, notes):
    batch = [make_note(notes, f"n{i}") for i in range(3)]

    saved = (await note_crud.save_all(batch)).unwrap()
    assert [n.sensitive.title for n in saved] == ["n0", "n1", "n2"]

    await note_crud.delete_all()
    assert await collect(note_crud.find_all()) == []


@pytest.mark.asyncio
async def test_find_all_streams_decrypted_documents(note_crud, notes):
    for i in range(4):
        await note_crud.save(make_note(notes, f"n{i}", ["even" if i % 2 == 0 else "odd"]))

    everything = await collect(note_crud.find_all())
    evens = await collect(note_crud.find_all(CriteriaBuilder().is_equal_to("tags", "even").build()))

    assert all(r.is_ok() for r in everything)
    assert sorted(r.unwrap().sensitive.title for r in everything) == ["n0", "n1", "n2", "n3"]
    assert sorted(r.unwrap().sensitive.title for r in evens) == ["n0", "n2"]


@pytest.mark.asyncio
async def test_find_all_reports_undecryptable_documents_and_continues(note_crud, note_store, notes):
    good = make_note(notes, "good")
    bad = make_note(notes, "bad")
    await note_crud.save(good)
    await note_crud.save(bad)
    raw = await note_store.find_by_id(bad.id)
    raw["sensitive"]["secret_key"] = "test-encryption-retired"
    await note_store.save(raw)

    results = await collect(note_crud.find_all())

    assert len(results) == 2
    assert sum(r.is_ok() for r in results) == 1
    assert any(isinstance(r.unwrap_err(), DocumentEncryptionError) for r in results if r.is_err())


@pytest.mark.asyncio
async def test_find_all_store_failure_yields_error(note_crud, note_store):
    note_store.failing.add("find_all")

    results = await collect(note_crud.find_all())

    assert len(results) == 1
    assert isinstance(results[0].unwrap_err(), DocumentDatabaseError)


@pytest.mark.asyncio
async def test_paginated_with_criteria_and_sort(note_crud, notes):
    for i in range(5):
        await note_crud.save(make_note(notes, f"n{i}", ["keep", f"rank-{i}"] if i != 2 else ["drop"]))

    page = (await note_crud.find_all_paginated(
        PageRequest(page=0, size=3, sort=[("id", SORT_DESC)]),
        CriteriaBuilder().is_equal_to("tags", "keep").build(),
    )).unwrap()

    assert page.total == 4
    assert page.total_pages == 2
    assert page.has_next
    assert len(page.content) == 3
    ids = [n.id for n in page.content]
    assert ids == sorted(ids, reverse=True)

    second = (await note_crud.find_all_paginated(
        PageRequest(page=1, size=3, sort=[("id", SORT_DESC)]),
        CriteriaBuilder().is_equal_to("tags", "keep").build(),
    )).unwrap()
    assert len(second.content) == 1
    assert not second.has_next


@pytest.mark.asyncio
async def test_criteria_over_ciphertext_are_rejected(note_crud):
    criteria = CriteriaBuilder().is_equal_to("sensitive.ciphertext", "abc").build()

    paged = await note_crud.find_all_paginated(PageRequest(), criteria)
    one = await note_crud.find_encrypted_one(criteria)
    streamed = await collect(note_crud.find_all(criteria))

    assert isinstance(paged.unwrap_err(), InvalidCriteriaError)
    assert isinstance(one.unwrap_err(), InvalidCriteriaError)
    assert isinstance(streamed[0].unwrap_err(), InvalidCriteriaError)


@pytest.mark.asyncio
async def test_sorting_by_ciphertext_is_rejected(note_crud, notes, note_store):
    await note_crud.save(make_note(notes, "n0", ["keep"]))
    note_store.failing.add("find_page")

    paged = await note_crud.find_all_paginated(PageRequest(sort=[("sensitive.ciphertext", SORT_ASC)]))

    assert isinstance(paged.unwrap_err(), InvalidCriteriaError)


@pytest.mark.asyncio
async def test_paginated_ascending_sort(note_crud, notes):
    for i in range(3):
        await note_crud.save(make_note(notes, f"n{i}", ["keep"]))

    page = (await note_crud.find_all_paginated(PageRequest(sort=[("id", SORT_ASC)]))).unwrap()

    ids = [n.id for n in page.content]
    assert ids == sorted(ids)


def test_unknown_sort_direction_is_invalid():
    with pytest.raises(ValidationError):
        PageRequest(sort=[("id", "sideways")])


@pytest.mark.asyncio
async def test_store_failure_is_database_error(note_crud, note_store, notes):
    note_store.failing.update({"save", "find_by_id", "count"})

    saved = await note_crud.save(make_note(notes, "x"))
    found = await note_crud.find_by_id("anything")
    paged = await note_crud.find_all_paginated(PageRequest())

    assert isinstance(saved.unwrap_err(), DocumentDatabaseError)
    assert isinstance(found.unwrap_err(), DocumentDatabaseError)
    assert isinstance(paged.unwrap_err(), DocumentDatabaseError)


@pytest.mark.asyncio
async def test_encryption_failure_on_save(note_crud, note_store, secret_store, notes):
    secret_store.unavailable = True

    result = await note_crud.save(make_note(notes, "x"))

    assert isinstance(result.unwrap_err(), DocumentEncryptionError)
    assert note_store.writes == 0


@pytest.mark.asyncio
async def test_decrypt_failure_after_commit_is_degraded_success(note_crud, note_store, notes):
    note = make_note(notes, "committed")

    async def broken_decrypt(encrypted, payload):
        return Err(ObjectMappingError("cannot assemble"))

    with patch.object(note_crud.codec, "do_decrypt", side_effect=broken_decrypt):
        result = await note_crud.save(note)

    assert isinstance(result.unwrap_err(), PostCommitSideEffectError)
    assert await note_store.exists_by_id(note.id)


@pytest.mark.asyncio
async def test_malformed_stored_document_is_database_error(note_crud, note_store):
    await note_store.save({"id": "broken", "sensitive": "not an envelope"})

    result = await note_crud.find_by_id("broken")

    assert isinstance(result.unwrap_err(), DocumentDatabaseError)
