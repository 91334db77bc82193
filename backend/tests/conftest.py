"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from pymongo.errors import DuplicateKeyError, PyMongoError

from fastapi.testclient import TestClient
from auth import create_access_token
from server import app


# ============================================
# In-memory `clients` collection
# ============================================

class FakeUpdateResult:
    def __init__(self, matched_count: int, modified_count: int):
        self.matched_count = matched_count
        self.modified_count = modified_count


class FakeDeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d.get(key), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        return [copy.deepcopy(d) for d in self._docs[:length]]


class FakeClientsCollection:
    """Document store implementing the filters and update operators the portal uses.

    Set `fail_writes = True` to make every write raise like an unreachable server.
    """

    def __init__(self):
        self.docs = {}
        self.fail_writes = False
        self.fail_reads = False
        self.write_calls = 0

    def seed(self, doc):
        self.docs[doc["_id"]] = copy.deepcopy(doc)

    @staticmethod
    def _matches(doc, query):
        for key, value in query.items():
            if key == "signatureRequests.id":
                if not any(r.get("id") == value for r in doc.get("signatureRequests") or []):
                    return False
            elif doc.get(key) != value:
                return False
        return True

    @staticmethod
    def _pull_matches(item, condition):
        if isinstance(condition, dict):
            return isinstance(item, dict) and all(item.get(k) == v for k, v in condition.items())
        return item == condition

    def _apply(self, doc, update):
        for field, value in update.get("$set", {}).items():
            doc[field] = copy.deepcopy(value)
        for field, value in update.get("$addToSet", {}).items():
            items = doc.setdefault(field, [])
            if value not in items:
                items.append(copy.deepcopy(value))
        for field, condition in update.get("$pull", {}).items():
            doc[field] = [i for i in doc.get(field) or [] if not self._pull_matches(i, condition)]
        for field, value in update.get("$push", {}).items():
            doc.setdefault(field, []).append(copy.deepcopy(value))

    async def find_one(self, query, projection=None):
        if self.fail_reads:
            raise PyMongoError("connection refused")
        for doc in self.docs.values():
            if self._matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None):
        if self.fail_reads:
            raise PyMongoError("connection refused")
        return FakeCursor([d for d in self.docs.values() if self._matches(d, query or {})])

    async def insert_one(self, doc):
        self._before_write()
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("E11000 duplicate key error")
        self.docs[doc["_id"]] = copy.deepcopy(doc)

    async def update_one(self, query, update, upsert=False):
        self._before_write()
        for doc in self.docs.values():
            if self._matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                return FakeUpdateResult(1, int(doc != before))
        return FakeUpdateResult(0, 0)

    async def delete_one(self, query):
        self._before_write()
        for key, doc in list(self.docs.items()):
            if self._matches(doc, query):
                del self.docs[key]
                return FakeDeleteResult(1)
        return FakeDeleteResult(0)

    def _before_write(self):
        self.write_calls += 1
        if self.fail_writes:
            raise PyMongoError("write timed out")


class FakeRevokedSessions:
    """Keyed store for signed-out session ids."""

    def __init__(self):
        self.docs = {}

    async def find_one(self, query):
        doc = self.docs.get(query["_id"])
        return copy.deepcopy(doc) if doc else None

    async def update_one(self, query, update, upsert=False):
        doc = self.docs.setdefault(query["_id"], {"_id": query["_id"]})
        doc.update(update.get("$set", {}))
        return FakeUpdateResult(1, 1)


def make_fake_db():
    db = MagicMock()
    db.clients = FakeClientsCollection()
    db.revoked_sessions = FakeRevokedSessions()
    db.portal_users = MagicMock()
    db.portal_users.find_one = AsyncMock(return_value=None)
    db.portal_users.update_one = AsyncMock()
    db.portal_users.delete_one = AsyncMock()
    db.audit_logs = MagicMock()
    db.audit_logs.insert_one = AsyncMock()
    return db


def client_doc(client_id="smith@evans-portal.com", folder_id="F1", **overrides):
    doc = {
        "_id": client_id,
        "folderId": folder_id,
        "quoteFolderId": "",
        "signatureNeeded": False,
        "projectValue": "0",
        "status": "Lead",
        "notes": "",
        "createdAt": "2024-01-01T00:00:00+00:00",
        "signatureRequests": [],
        "signatures": [],
    }
    doc.update(overrides)
    return doc


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def fake_db():
    """Fake database wired into every module through the shared `database` object."""
    db = make_fake_db()
    with patch("database.database.get_db", return_value=db):
        yield db


@pytest.fixture
def fresh_sessions():
    from services.portal_session import portal_sessions
    portal_sessions._sessions.clear()
    yield portal_sessions
    portal_sessions._sessions.clear()


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


def bearer(email="smith@evans-portal.com", role="ROLE_CLIENT", sid="sess-1"):
    token = create_access_token({"sub": email, "role": role, "sid": sid})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_headers():
    return bearer


@pytest.fixture
def make_client_doc():
    return client_doc


@pytest.fixture
def ink_png_data_url():
    """A small opaque black PNG, as a browser signature pad would send it."""
    import base64
    import io
    from PIL import Image
    buf = io.BytesIO()
    Image.new("RGBA", (60, 30), (0, 0, 0, 255)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
