import re
import types
from datetime import date, datetime, timedelta, timezone

import pytest
from pymongo.errors import DuplicateKeyError

from relay_backend.models.records import DispatchResult
from relay_backend.repositories import DispatchRecordRepository, RecurringTaskRepository, RelayConfigRepository


def _matches(doc, query):
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, clause) for clause in expected):
                return False
            continue
        value = doc.get(key)
        if isinstance(expected, re.Pattern):
            if not isinstance(value, str) or not expected.match(value):
                return False
        elif isinstance(expected, dict) and "$lt" in expected:
            if value is None or not value < expected["$lt"]:
                return False
        elif isinstance(expected, dict) and "$in" in expected:
            if not any(
                (isinstance(value, str) and p.match(value)) if isinstance(p, re.Pattern) else p == value
                for p in expected["$in"]
            ):
                return False
        elif value != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key, direction):
        return self

    def __aiter__(self):
        self._iter = iter(self.docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Just enough of the async collection API; (definition_id, dispatch_date) is unique."""

    def __init__(self, docs=None, unique=None):
        self.docs = list(docs or [])
        self.unique = unique

    async def insert_one(self, doc):
        if self.unique and any(all(d.get(k) == doc.get(k) for k in self.unique) for d in self.docs):
            raise DuplicateKeyError("duplicate key")
        self.docs.append(dict(doc))

    async def find_one(self, query):
        return next((d for d in self.docs if _matches(d, query)), None)

    def find(self, query):
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    async def find_one_and_update(self, query, update):
        doc = await self.find_one(query)
        if doc is not None:
            doc.update(update["$set"])
        return doc

    async def update_one(self, query, update):
        await self.find_one_and_update(query, update)

    async def delete_one(self, query):
        doc = await self.find_one(query)
        if doc is not None:
            self.docs.remove(doc)

    async def delete_many(self, query):
        self.docs = [d for d in self.docs if not _matches(d, query)]


def db_context(**collections):
    return types.SimpleNamespace(database=types.SimpleNamespace(**collections))


LEASE = timedelta(seconds=30)
MONDAY = date(2024, 1, 1)


@pytest.mark.asyncio
async def test_dispatch_claim_is_exclusive_per_day():
    collection = FakeCollection(unique=("definition_id", "dispatch_date"))
    repo = DispatchRecordRepository(db_context(dispatch_records=collection))
    now = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)

    assert await repo.try_claim("rt-1", MONDAY, now, LEASE) is True
    assert await repo.try_claim("rt-1", MONDAY, now + timedelta(seconds=5), LEASE) is False
    assert await repo.try_claim("rt-1", date(2024, 1, 3), now, LEASE) is True

    await repo.confirm("rt-1", MONDAY, DispatchResult.accept("task-9"))
    records = await repo.list_for(MONDAY)
    assert records[0].status == "dispatched"
    assert records[0].task_id == "task-9"
    # Confirmed records are never taken over.
    assert await repo.try_claim("rt-1", MONDAY, now + timedelta(hours=1), LEASE) is False


@pytest.mark.asyncio
async def test_abandoned_claim_is_taken_over_after_lease():
    collection = FakeCollection(unique=("definition_id", "dispatch_date"))
    repo = DispatchRecordRepository(db_context(dispatch_records=collection))
    now = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)

    await repo.try_claim("rt-1", MONDAY, now, LEASE)

    assert await repo.try_claim("rt-1", MONDAY, now + timedelta(seconds=10), LEASE) is False
    assert await repo.try_claim("rt-1", MONDAY, now + timedelta(seconds=31), LEASE) is True


@pytest.mark.asyncio
async def test_release_and_prune():
    collection = FakeCollection(unique=("definition_id", "dispatch_date"))
    repo = DispatchRecordRepository(db_context(dispatch_records=collection))
    now = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    await repo.try_claim("rt-1", MONDAY, now, LEASE)
    await repo.try_claim("rt-2", date(2024, 1, 2), now, LEASE)

    await repo.release("rt-1", MONDAY)
    assert await repo.try_claim("rt-1", MONDAY, now, LEASE) is True

    await repo.prune_before(date(2024, 1, 2))
    assert [d["definition_id"] for d in collection.docs] == ["rt-2"]


@pytest.mark.asyncio
async def test_relay_config_lookup_is_case_insensitive():
    collection = FakeCollection(
        [
            {"_id": "c1", "relay_id": "AA:BB:CC:DD:EE:01", "relay_name": "Elevator A", "relay_map": {"doorOpen": 0}},
            {"_id": "c2", "relay_id": "lobby-board", "relay_name": "Lobby", "is_active": False},
        ]
    )
    repo = RelayConfigRepository(db_context(relay_configurations=collection))

    by_mac = await repo.find_by_identity("AA:BB:CC:DD:EE:01")
    by_name = await repo.find_by_target("elevator a")
    many = await repo.find_by_identities(["AA:BB:CC:DD:EE:01", "lobby-board"])

    assert by_mac.id == "c1"
    assert by_name.relay_id == "AA:BB:CC:DD:EE:01"
    assert list(many) == ["AA:BB:CC:DD:EE:01"]


@pytest.mark.asyncio
async def test_relay_config_joined_through_mac_address():
    collection = FakeCollection(
        [
            {"_id": "c1", "relay_id": "elevator-1", "mac_address": "aa:bb:cc:dd:ee:01", "relay_name": "Elevator A"},
            {"_id": "c2", "relay_id": "BB:BB:CC:DD:EE:02", "relay_name": "Elevator B"},
        ]
    )
    repo = RelayConfigRepository(db_context(relay_configurations=collection))

    many = await repo.find_by_identities(["AA:BB:CC:DD:EE:01", "bb:bb:cc:dd:ee:02", "lobby-board"])
    by_name = await repo.find_by_target("Elevator A")

    assert sorted(many) == ["AA:BB:CC:DD:EE:01", "BB:BB:CC:DD:EE:02"]
    assert many["AA:BB:CC:DD:EE:01"].id == "c1"
    assert by_name.identities == ["AA:BB:CC:DD:EE:01", "elevator-1"]


@pytest.mark.asyncio
async def test_recurring_repository_skips_invalid_documents():
    collection = FakeCollection(
        [
            {"_id": "rt-1", "task_type": "delivery", "schedule_time": "09:00", "days_of_week": ["monday"], "is_active": True},
            {"_id": "rt-2", "task_type": "delivery", "schedule_time": "nine", "days_of_week": ["monday"], "is_active": True},
        ]
    )
    repo = RecurringTaskRepository(db_context(recurring_tasks=collection))

    definitions = await repo.list_active()

    assert [d.id for d in definitions] == ["rt-1"]
