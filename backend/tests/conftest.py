"""
Shared fixtures for media wallet tests.

FakeDatabase is an in-memory stand-in for a motor database. It supports the
query and update operators the wallet services use, unique indexes, and
all-or-nothing `with_transaction` (a failing callback restores the data it
started from).
"""

import copy
import os
import sys
import uuid
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import DuplicateKeyError

sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017/?replicaSet=rs0")
os.environ.setdefault("DB_NAME", "media_wallet_test")

_MISSING = object()

# collection -> [(field, partial filter or None)]
UNIQUE_INDEXES = {
    "users": [("id", None), ("normalized_username", {"normalized_username": {"$type": "string"}})],
    "subscriptions": [("subscription_id", None), ("user_id", {"status": "active"})],
    "token_purchases": [("order_id", None)],
    "tips": [("order_id", None)],
}


def _get(doc, path):
    current = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _set(doc, path, value):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _unset(doc, path):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _compare(value, op, arg):
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op == "$ne":
        return value is _MISSING or value != arg
    if op == "$in":
        return value is not _MISSING and value in arg
    if op == "$type":
        return arg == "string" and isinstance(value, str)
    if value is _MISSING or value is None:
        return False
    if op == "$gte":
        return value >= arg
    if op == "$gt":
        return value > arg
    if op == "$lte":
        return value <= arg
    if op == "$lt":
        return value < arg
    raise NotImplementedError(f"Unsupported operator {op}")


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        value = _get(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, arg) for op, arg in condition.items()):
                return False
        elif condition is None:
            if value is not _MISSING and value is not None:
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def sort_docs(docs, keys):
    docs = list(docs)
    for key, direction in reversed(keys):
        present = [d for d in docs if _get(d, key) not in (_MISSING, None)]
        absent = [d for d in docs if _get(d, key) in (_MISSING, None)]
        present.sort(key=lambda d: _get(d, key), reverse=direction < 0)
        docs = present + absent if direction < 0 else absent + present
    return docs


def apply_update(doc, update, inserting=False):
    for path, value in update.get("$set", {}).items():
        _set(doc, path, copy.deepcopy(value))
    for path, amount in update.get("$inc", {}).items():
        current = _get(doc, path)
        _set(doc, path, (0 if current is _MISSING else current) + amount)
    for path in update.get("$unset", {}):
        _unset(doc, path)
    if inserting:
        for path, value in update.get("$setOnInsert", {}).items():
            _set(doc, path, copy.deepcopy(value))


class FakeCursor:
    def __init__(self, docs, projection=None):
        self._docs = docs
        self._projection = projection
        self._limit = 0

    def sort(self, key, direction=None):
        keys = key if isinstance(key, list) else [(key, direction or 1)]
        self._docs = sort_docs(self._docs, keys)
        return self

    def limit(self, count):
        self._limit = count
        return self

    async def to_list(self, length=None):
        docs = self._docs
        for bound in (self._limit, length):
            if bound:
                docs = docs[:bound]
        return [project(d, self._projection) for d in docs]


class FakeCollection:
    def __init__(self, database, name):
        self.database = database
        self.name = name

    @property
    def docs(self):
        return self.database.data.setdefault(self.name, [])

    def _check_unique(self, candidate, ignore=None):
        for field, partial in UNIQUE_INDEXES.get(self.name, []):
            value = _get(candidate, field)
            if value is _MISSING or (partial and not matches(candidate, partial)):
                continue
            for existing in self.docs:
                if existing is ignore or (partial and not matches(existing, partial)):
                    continue
                if _get(existing, field) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} key: {field}")

    async def find_one(self, query=None, projection=None, sort=None, session=None):
        found = [d for d in self.docs if matches(d, query)]
        if sort:
            found = sort_docs(found, sort)
        return project(found[0], projection) if found else None

    def find(self, query=None, projection=None, session=None):
        return FakeCursor([d for d in self.docs if matches(d, query)], projection)

    async def count_documents(self, query, session=None):
        return len([d for d in self.docs if matches(d, query)])

    async def insert_one(self, document, session=None):
        doc = copy.deepcopy(document)
        doc.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def _update(self, query, update, upsert, many):
        targets = [d for d in self.docs if matches(d, query)]
        if not many:
            targets = targets[:1]
        modified = 0
        for doc in targets:
            before = copy.deepcopy(doc)
            apply_update(doc, update)
            try:
                self._check_unique(doc, ignore=doc)
            except DuplicateKeyError:
                doc.clear()
                doc.update(before)
                raise
            if doc != before:
                modified += 1
        upserted_id = None
        if not targets and upsert:
            doc = {k: copy.deepcopy(v) for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
            apply_update(doc, update, inserting=True)
            result = await self.insert_one(doc)
            upserted_id = result.inserted_id
        return SimpleNamespace(matched_count=len(targets), modified_count=modified, upserted_id=upserted_id)

    async def update_one(self, query, update, upsert=False, session=None):
        return await self._update(query, update, upsert, many=False)

    async def update_many(self, query, update, upsert=False, session=None):
        return await self._update(query, update, upsert, many=True)

    async def index_information(self):
        return dict(self.database.indexes.get(self.name, {}))

    async def create_index(self, keys, **options):
        name = options.get("name") or "_".join(f"{k}_{d}" for k, d in keys)
        self.database.indexes.setdefault(self.name, {})[name] = {"key": keys, **options}
        return name


class FakeSession:
    def __init__(self, database):
        self.database = database

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def with_transaction(self, callback):
        snapshot = copy.deepcopy(self.database.data)
        self.database.transactions += 1
        try:
            return await callback(self)
        except Exception:
            self.database.data = snapshot
            self.database.aborted += 1
            raise


class FakeClient:
    def __init__(self, database):
        self.database = database

    async def start_session(self):
        return FakeSession(self.database)


class FakeDatabase:
    def __init__(self):
        self.data = {}
        self.indexes = {}
        self.transactions = 0
        self.aborted = 0
        self.client = FakeClient(self)

    def __getitem__(self, name):
        return FakeCollection(self, name)

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return FakeCollection(self, name)

    def all(self, name):
        return copy.deepcopy(self.data.get(name, []))


def make_user(user_id="user-1", username="Alice", token_balance=0, linked=True):
    user = {
        "id": user_id,
        "username": username,
        "normalized_username": username.lower(),
        "token_balance": token_balance,
        "services": {}
    }
    if linked:
        user["services"] = {
            "emby": {"linked": True, "service_account_id": f"emby-{user_id}"},
            "jellyseerr": {"linked": True, "service_account_id": f"seerr-{user_id}"}
        }
    return user


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def add_user(fake_db):
    """Insert a user document and return it."""
    def _add(user_id="user-1", username="Alice", token_balance=0, linked=True):
        user = make_user(user_id, username, token_balance, linked)
        fake_db.data.setdefault("users", []).append(copy.deepcopy(user))
        return user
    return _add


@pytest.fixture
def synchronizer():
    sync = AsyncMock()
    sync.apply_plan.return_value = True
    sync.disable.return_value = True
    return sync


def balance_of(db, user_id):
    for user in db.data.get("users", []):
        if user["id"] == user_id:
            return user.get("token_balance", 0)
    return None


@pytest.fixture
def balance(fake_db):
    """Current token balance of a user in the fake store."""
    return lambda user_id: balance_of(fake_db, user_id)
