"""
Pytest configuration and shared test helpers for backend tests.

FakeCollection is a small in-memory stand-in for a motor collection. Each
method body runs without awaiting, so under asyncio every call is atomic,
the same guarantee a single MongoDB update statement gives.
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


class FakeResult:
    def __init__(self, matched_count=0, modified_count=0, upserted_id=None, inserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id
        self.inserted_id = inserted_id


class FakeCursor:
    """Async-iterable cursor with the sort/limit/to_list chain services use."""

    def __init__(self, rows):
        self.rows = list(rows)

    def sort(self, key_or_list, direction=None):
        keys = [(key_or_list, direction or 1)] if isinstance(key_or_list, str) else list(key_or_list)
        for key, order in reversed(keys):
            self.rows.sort(key=lambda r: (r.get(key) is None, r.get(key)), reverse=order == -1)
        return self

    def limit(self, n):
        self.rows = self.rows[:n]
        return self

    async def to_list(self, length=None):
        return list(self.rows if length is None else self.rows[:length])

    def __aiter__(self):
        self._iter = iter(self.rows)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, unique_key=None):
        self.docs = []
        self.unique_key = unique_key

    # -- matching ---------------------------------------------------------

    @staticmethod
    def _matches(doc, filt):
        for key, cond in filt.items():
            value = doc.get(key)
            if isinstance(cond, dict):
                for op, operand in cond.items():
                    if op == "$gt":
                        ok = value is not None and value > operand
                    elif op == "$gte":
                        ok = value is not None and value >= operand
                    elif op == "$lt":
                        ok = value is not None and value < operand
                    elif op == "$lte":
                        ok = value is not None and value <= operand
                    elif op == "$in":
                        ok = value in operand
                    elif op == "$ne":
                        ok = value != operand
                    else:
                        raise NotImplementedError(op)
                    if not ok:
                        return False
            elif value != cond:
                return False
        return True

    def _find(self, filt):
        return next((d for d in self.docs if self._matches(d, filt)), None)

    # -- updates ----------------------------------------------------------

    def _eval(self, expr, doc):
        if isinstance(expr, str) and expr.startswith("$"):
            return doc.get(expr[1:])
        if isinstance(expr, dict):
            (op, args), = expr.items()
            values = [self._eval(arg, doc) for arg in args]
            if op == "$add":
                return sum(values)
            if op == "$max":
                return max(values)
            if op == "$ifNull":
                return values[0] if values[0] is not None else values[1]
            raise NotImplementedError(op)
        return expr

    def _apply(self, doc, update, inserting):
        if isinstance(update, list):
            for stage in update:
                computed = {k: self._eval(v, doc) for k, v in stage["$set"].items()}
                doc.update(computed)
            return
        for key, value in update.get("$set", {}).items():
            doc[key] = value
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = value

    def _insert(self, doc):
        if self.unique_key and any(d.get(self.unique_key) == doc.get(self.unique_key) for d in self.docs):
            raise DuplicateKeyError(f"duplicate {self.unique_key}")
        self.docs.append(doc)

    def _upsert(self, filt, update):
        doc = {k: v for k, v in filt.items() if not isinstance(v, dict)}
        self._apply(doc, update, inserting=True)
        self._insert(doc)
        return doc

    async def insert_one(self, doc):
        self._insert(dict(doc))
        return FakeResult(inserted_id=len(self.docs))

    async def update_one(self, filt, update, upsert=False):
        doc = self._find(filt)
        if doc is None:
            if not upsert:
                return FakeResult()
            self._upsert(filt, update)
            return FakeResult(upserted_id=len(self.docs))
        self._apply(doc, update, inserting=False)
        return FakeResult(matched_count=1, modified_count=1)

    async def update_many(self, filt, update):
        matched = [d for d in self.docs if self._matches(d, filt)]
        for doc in matched:
            self._apply(doc, update, inserting=False)
        return FakeResult(matched_count=len(matched), modified_count=len(matched))

    async def find_one_and_update(self, filt, update, upsert=False,
                                  return_document=ReturnDocument.BEFORE, projection=None):
        doc = self._find(filt)
        if doc is None:
            if not upsert:
                return None
            doc = self._upsert(filt, update)
            return dict(doc) if return_document == ReturnDocument.AFTER else None
        before = dict(doc)
        self._apply(doc, update, inserting=False)
        return dict(doc) if return_document == ReturnDocument.AFTER else before

    # -- reads ------------------------------------------------------------

    async def find_one(self, filt, projection=None):
        doc = self._find(filt)
        return dict(doc) if doc else None

    def find(self, filt, projection=None):
        return FakeCursor(dict(d) for d in self.docs if self._matches(d, filt))

    async def count_documents(self, filt):
        return sum(1 for d in self.docs if self._matches(d, filt))


@pytest.fixture
def fake_db():
    """MagicMock database whose core collections are in-memory fakes."""
    db = MagicMock()
    db.usage_metrics = FakeCollection(unique_key="account_id")
    db.subscriptions = FakeCollection(unique_key="account_id")
    db.forms = FakeCollection(unique_key="form_id")
    db.form_usage = FakeCollection()
    db.formtier_audit_logs = FakeCollection()
    return db


@pytest.fixture
def mock_audit():
    audit = MagicMock()
    audit.log = AsyncMock(return_value=None)
    return audit
