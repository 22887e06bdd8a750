import pytest

from conftest import make_address
from errors import NotFoundError, SyncError, ValidationError
from stores import AddressBookStore
from sync import SyncAdapter


@pytest.fixture
def book():
    return AddressBookStore()


def defaults(book):
    return [a.id for a in book.addresses if a.is_default]


def test_add_assigns_unique_ids(book):
    first = book.add_address(make_address())
    second = book.add_address(make_address(label="Work"))
    assert first.id != second.id
    assert first.id.startswith("addr_")
    assert book.get_address(second.id).label == "Work"


@pytest.mark.parametrize("overrides", [
    {"recipient_phone": "12345"},
    {"recipient_phone": "call me maybe"},
    {"recipient_name": "   "},
    {"full_address": ""},
    {"label": "Other"},
    {"label": "Other", "custom_label": "  "},
    {"label": "Cabin"},
])
def test_invalid_addresses_rejected(book, overrides):
    with pytest.raises(ValidationError):
        book.add_address(make_address(**overrides))
    assert book.addresses == []


def test_other_label_uses_custom_label(book):
    address = book.add_address(make_address(label="Other", custom_label="Grandma's"))
    assert address.display_label == "Grandma's"


def test_custom_label_dropped_for_standard_labels(book):
    address = book.add_address(make_address(label="Work", custom_label="ignored"))
    assert address.custom_label is None


def test_new_default_unsets_previous(book):
    first = book.add_address(make_address(is_default=True))
    second = book.add_address(make_address(is_default=True))
    assert defaults(book) == [second.id]
    assert not book.get_address(first.id).is_default


def test_set_default_is_exclusive(book):
    ids = [book.add_address(make_address()).id for _ in range(3)]
    book.set_default_address(ids[0])
    book.set_default_address(ids[2])
    assert defaults(book) == [ids[2]]


def test_set_default_unknown_raises(book):
    with pytest.raises(NotFoundError):
        book.set_default_address("addr_missing")


def test_default_falls_back_to_first(book):
    assert book.get_default_address() is None
    first = book.add_address(make_address())
    book.add_address(make_address())
    assert book.get_default_address().id == first.id


def test_update_revalidates(book):
    address = book.add_address(make_address())
    with pytest.raises(ValidationError):
        book.update_address(address.id, {"recipient_phone": "nope"})
    updated = book.update_address(address.id, {"full_address": "5 Hill Cart Road, Siliguri"})
    assert updated.full_address == "5 Hill Cart Road, Siliguri"
    assert updated.created_at == address.created_at
    assert updated.recipient_phone == address.recipient_phone


def test_update_to_default_keeps_single_default(book):
    first = book.add_address(make_address(is_default=True))
    second = book.add_address(make_address())
    book.update_address(second.id, {"is_default": True})
    assert defaults(book) == [second.id]
    assert not book.get_address(first.id).is_default


def test_update_unknown_raises(book):
    with pytest.raises(NotFoundError):
        book.update_address("addr_missing", {"full_address": "x"})


def test_delete_unknown_is_noop(book):
    book.add_address(make_address())
    assert book.delete_address("addr_missing") is None
    assert len(book.addresses) == 1


def test_delete(book):
    address = book.add_address(make_address())
    book.delete_address(address.id)
    assert book.get_address(address.id) is None


def test_replace_state_repairs_multiple_defaults(book):
    book.replace_state({"addresses": [
        {**make_address(), "id": "a1", "is_default": True},
        {**make_address(), "id": "a2", "is_default": True},
    ]})
    assert defaults(book) == ["a2"]


async def test_add_push_failure_reaches_caller(book, flaky_documents):
    SyncAdapter(book, flaky_documents, "addresses", "user123").attach()
    flaky_documents.fail_set = True
    address = book.add_address(make_address())
    with pytest.raises(SyncError, match="quota exceeded"):
        await book.last_push
    assert book.get_address(address.id) is not None

    flaky_documents.fail_set = False
    book.update_address(address.id, {"full_address": "Hill Cart Road"})
    await book.last_push
    assert book.error is None


def test_merge_keeps_local_default_and_remote_additions(book):
    home = book.add_address(make_address(is_default=True))
    base = book.snapshot()
    work = book.add_address(make_address(label="Work", is_default=True))
    remote_only = make_address(label="Other", custom_label="Cabin", is_default=True)
    remote = {"addresses": [home.model_dump(), {**remote_only, "id": "addr_remote"}]}
    book.merge_state(remote, base)
    assert [a.id for a in book.addresses] == [home.id, "addr_remote", work.id]
    assert defaults(book) == [work.id]
