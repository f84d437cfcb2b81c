import pytest

from blob_store import PLACEHOLDER_IMAGE
from book_service import ImageUpload, count_current_books
from errors import Forbidden, InvalidState, NotFound
from record_store import BOOKS, TRADES
from tests.conftest import complete_trade


def cover(name="cover.png", data=b"\x89PNG fake"):
    return ImageUpload(data=data, filename=name, mime_type="image/png")


async def test_add_book_defaults(book_service, alice):
    book = await book_service.add_book(alice["user_id"])
    assert book["title"] == "Untitled"
    assert book["author"] == "Unknown"
    assert book["description"] == ""
    assert book["condition"] == "used"
    assert book["status"] == "current"
    assert book["image_url"] == PLACEHOLDER_IMAGE
    assert book["relisted_at"] is None


async def test_add_book_unknown_user(book_service):
    with pytest.raises(NotFound):
        await book_service.add_book("nobody", title="Dune")


async def test_add_book_stores_image(book_service, blob_store, alice):
    book = await book_service.add_book(alice["user_id"], title="Dune", image=cover())
    assert book["image_url"].startswith("http://test/images/")
    blob_id = blob_store.blob_id_from_url(book["image_url"])
    assert blob_id.endswith(".png")
    assert await blob_store.download(blob_id) == (b"\x89PNG fake", "image/png")


async def test_current_book_cap(book_service, store, alice):
    for i in range(5):
        await book_service.add_book(alice["user_id"], title=f"Book {i}")
    with pytest.raises(InvalidState):
        await book_service.add_book(alice["user_id"], title="One too many")
    assert await count_current_books(store, alice["user_id"]) == 5


async def test_previous_books_do_not_count_toward_cap(book_service, manager, accepted_trade, alice):
    await complete_trade(manager, accepted_trade)
    for i in range(5):
        await book_service.add_book(alice["user_id"], title=f"Book {i}")
    assert await count_current_books(book_service.store, alice["user_id"]) == 5


async def test_update_book_fields(book_service, alice, a1):
    book = await book_service.update_book(
        a1["book_id"], alice["user_id"], {"title": "Dune Messiah", "author": "", "description": ""}
    )
    assert book["title"] == "Dune Messiah"
    assert book["author"] == "Frank Herbert"
    assert book["description"] == ""
    assert book["updated_at"] >= a1["updated_at"]


async def test_update_replaces_image_and_deletes_old_blob(book_service, blob_store, alice):
    book = await book_service.add_book(alice["user_id"], title="Dune", image=cover("old.png"))
    old_id = blob_store.blob_id_from_url(book["image_url"])

    updated = await book_service.update_book(book["book_id"], alice["user_id"], {}, image=cover("new.png", b"new"))
    new_id = blob_store.blob_id_from_url(updated["image_url"])
    assert new_id != old_id
    assert old_id not in blob_store.blobs
    assert blob_store.blobs[new_id] == (b"new", "image/png")


async def test_update_keeps_status_of_relisted_book(book_service, manager, store, accepted_trade, bob, a1):
    await complete_trade(manager, accepted_trade)
    await manager.relist(accepted_trade["trade_id"], bob["user_id"])

    book = await book_service.update_book(a1["book_id"], bob["user_id"], {"title": "Dune (worn)"})
    assert book["status"] == "current"
    assert book["relisted_from_trade_id"] == accepted_trade["trade_id"]
    assert (await store.get(BOOKS, a1["book_id"]))["title"] == "Dune (worn)"


async def test_traded_away_book_is_frozen_for_its_old_owner(book_service, manager, store, accepted_trade, alice, bob, a1):
    await complete_trade(manager, accepted_trade)

    with pytest.raises(InvalidState):
        await book_service.update_book(a1["book_id"], alice["user_id"], {"title": "Still mine"})
    with pytest.raises(InvalidState):
        await book_service.delete_book(a1["book_id"], alice["user_id"])
    # the receiver is not the owner until they relist
    with pytest.raises(Forbidden):
        await book_service.delete_book(a1["book_id"], bob["user_id"])

    book = await manager.relist(accepted_trade["trade_id"], bob["user_id"])
    assert book["user_id"] == bob["user_id"]
    assert (await store.get(BOOKS, a1["book_id"]))["title"] == "Dune"


async def test_book_in_accepted_trade_cannot_change(book_service, store, accepted_trade, alice, bob, a1, b1):
    with pytest.raises(InvalidState) as excinfo:
        await book_service.delete_book(a1["book_id"], alice["user_id"])
    assert excinfo.value.details["trade_id"] == accepted_trade["trade_id"]
    with pytest.raises(InvalidState):
        await book_service.update_book(b1["book_id"], bob["user_id"], {"title": "Emma, annotated"})
    assert await store.get(BOOKS, a1["book_id"]) is not None


async def test_unsettled_completion_still_freezes_book(book_service, manager, store, accepted_trade, alice, a1):
    trade = await complete_trade(manager, accepted_trade)
    book = await store.get(BOOKS, a1["book_id"])
    book["status"] = "current"
    await store.put(BOOKS, book)
    trade["books_settled"] = False
    await store.put(TRADES, trade)

    with pytest.raises(InvalidState):
        await book_service.delete_book(a1["book_id"], alice["user_id"])


async def test_book_with_only_pending_trades_can_change(book_service, pending_trade, bob, b1):
    book = await book_service.update_book(b1["book_id"], bob["user_id"], {"condition": "like new"})
    assert book["condition"] == "like new"


async def test_update_requires_owner(book_service, bob, a1):
    with pytest.raises(Forbidden):
        await book_service.update_book(a1["book_id"], bob["user_id"], {"title": "Mine now"})


async def test_update_unknown_book(book_service, alice):
    with pytest.raises(NotFound):
        await book_service.update_book("missing", alice["user_id"], {})


async def test_delete_book_removes_record_and_blob(book_service, blob_store, store, alice):
    book = await book_service.add_book(alice["user_id"], title="Dune", image=cover())
    await book_service.delete_book(book["book_id"], alice["user_id"])
    assert await store.get(BOOKS, book["book_id"]) is None
    assert blob_store.blobs == {}


async def test_delete_placeholder_book(book_service, store, alice, a1):
    await book_service.delete_book(a1["book_id"], alice["user_id"])
    assert await store.get(BOOKS, a1["book_id"]) is None


async def test_delete_requires_owner(book_service, store, bob, a1):
    with pytest.raises(Forbidden):
        await book_service.delete_book(a1["book_id"], bob["user_id"])
    assert await store.get(BOOKS, a1["book_id"]) is not None
