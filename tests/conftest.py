"""Shared fixtures: memory-backed stores, services and an API client.

Every test gets fresh memory stores; the API client swaps them in through
FastAPI dependency overrides, so no MongoDB is needed.
"""

import os

os.environ["STORE_BACKEND"] = "memory"

import pytest
from httpx import ASGITransport, AsyncClient

from blob_store import MemoryBlobStore
from book_service import BookService
from dataBase import get_blob_store, get_store
from feed_service import FeedAssembler
from main import app
from record_store import USERS, MemoryRecordStore
from trade_service import TradeLifecycleManager
from utils import create_access_token, hash_password, utcnow

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)


async def make_user(store, user_id, username):
    user = {
        "user_id": user_id,
        "username": username,
        "email": f"{username.lower()}@example.com",
        "password_hash": PASSWORD_HASH,
        "shipping_address": None,
        "created_at": utcnow(),
    }
    await store.put(USERS, user)
    return user


def auth_headers(user):
    token = create_access_token({"user_id": user["user_id"], "email": user["email"]})
    return {"Authorization": f"Bearer {token}"}


async def complete_trade(manager, trade):
    """Drive an accepted trade through both mailings and receipts."""
    trade_id = trade["trade_id"]
    await manager.mark_mailed(trade_id, trade["from_user_id"])
    await manager.mark_mailed(trade_id, trade["to_user_id"])
    await manager.mark_received(trade_id, trade["to_user_id"])
    return await manager.mark_received(trade_id, trade["from_user_id"])


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def blob_store():
    return MemoryBlobStore(base_url="http://test")


@pytest.fixture
def manager(store):
    return TradeLifecycleManager(store)


@pytest.fixture
def book_service(store, blob_store):
    return BookService(store, blob_store)


@pytest.fixture
def feed(store):
    return FeedAssembler(store)


@pytest.fixture
async def alice(store):
    return await make_user(store, "user-a", "Alice")


@pytest.fixture
async def bob(store):
    return await make_user(store, "user-b", "Bob")


@pytest.fixture
async def carol(store):
    return await make_user(store, "user-c", "Carol")


@pytest.fixture
async def a1(book_service, alice):
    return await book_service.add_book(alice["user_id"], title="Dune", author="Frank Herbert")


@pytest.fixture
async def b1(book_service, bob):
    return await book_service.add_book(bob["user_id"], title="Emma", author="Jane Austen")


@pytest.fixture
async def b2(book_service, bob):
    return await book_service.add_book(bob["user_id"], title="Ulysses", author="James Joyce")


@pytest.fixture
async def pending_trade(manager, alice, bob, a1, b1):
    return await manager.create_trade(alice["user_id"], bob["user_id"], a1["book_id"], b1["book_id"], "Swap?")


@pytest.fixture
async def accepted_trade(manager, pending_trade, bob):
    return await manager.accept(pending_trade["trade_id"], bob["user_id"])


@pytest.fixture
async def client(store, blob_store):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_blob_store] = lambda: blob_store

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
