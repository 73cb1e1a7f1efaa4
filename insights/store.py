# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault document store — per-user hierarchical collections on disk.

Layout:
    <root>/users/<user_id>/profile.json
    <root>/users/<user_id>/<collection>/<doc_id>.json

Every component receives a DocumentStore instance; nothing reaches for a
global. The store offers what the engine needs from a document database:

  - get / set / create / add / delete by key
  - ordered, filtered, limited queries
  - partial update with ArrayUnion append
  - compare-and-swap on a per-document revision (_rev)
  - atomic multi-document batches with preconditions

Writes go to <file>.tmp, fsync, rename. Every access holds a re-entrant
lock inside the process plus an exclusive flock on <root>/.lock, so two
processes (daemon and CLI) sharing a data root serialize their revision
checks and a batch is never observed half-applied through a store.
"""

import copy
import fcntl
import json
import logging
import operator
import os
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from insights.schemas import (
    InsightsNotFoundError,
    InsightsValidationError,
    StoreConflictError,
    _atomic_rename,
    atomic_write_json,
    parse_timestamp,
    write_json_tmp,
)

logger = logging.getLogger("echovault.store")

REV_FIELD = "_rev"
LOCK_FILE = ".lock"

Filter = Tuple[str, str, Any]
Precondition = Callable[[Optional[Dict[str, Any]]], bool]

_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
    "not-in": lambda value, options: value not in options,
    "array-contains": lambda value, item: isinstance(value, list) and item in value,
}


class ArrayUnion:
    """Update sentinel: append each value not already in the stored list."""

    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, existing: Any) -> List[Any]:
        result = list(existing) if isinstance(existing, list) else []
        for v in self.values:
            if v not in result:
                result.append(v)
        return result


def _check_key(key: str, what: str) -> str:
    if not key or not isinstance(key, str) or "/" in key or "\\" in key or key.startswith("."):
        raise InsightsValidationError(f"Invalid {what}: {key!r}")
    return key


def _apply_fields(doc: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in fields.items():
        if isinstance(value, ArrayUnion):
            doc[key] = value.apply(doc.get(key))
        else:
            doc[key] = copy.deepcopy(value)
    return doc


def _matches(doc: Dict[str, Any], where: Iterable[Filter]) -> bool:
    for field, op, expected in where:
        fn = _OPS.get(op)
        if fn is None:
            raise InsightsValidationError(f"Unsupported query operator: {op}")
        value = doc.get(field)
        try:
            if not fn(value, expected):
                return False
        except TypeError:
            return False
    return True


def _order_key(value: Any) -> Tuple[int, Any]:
    """Timestamps compare as instants, whatever offset they were written with."""
    if isinstance(value, str):
        dt = parse_timestamp(value)
        if dt is not None:
            return (1, dt.timestamp())
    return (0, value)


class WriteBatch:
    """
    Atomic multi-document write. Nothing touches disk until commit().

    Preconditions are evaluated under the store lock right before the
    writes; if any fails the whole batch is dropped with StoreConflictError.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[Tuple[str, str, str, str, Dict[str, Any]]] = []
        self._preconditions: List[Tuple[str, str, str, Precondition]] = []
        self._committed = False

    def set(self, user_id: str, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("set", user_id, collection, doc_id, data))
        return self

    def update(self, user_id: str, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("update", user_id, collection, doc_id, fields))
        return self

    def precondition(self, user_id: str, collection: str, doc_id: str, check: Precondition) -> "WriteBatch":
        self._preconditions.append((user_id, collection, doc_id, check))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> int:
        """Apply all writes atomically. Returns the number of documents written."""
        if self._committed:
            raise InsightsValidationError("Batch already committed")
        self._committed = True
        return self._store._commit(self._ops, self._preconditions)


class DocumentStore:
    """Filesystem-backed keyed repository. One instance per data root."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.RLock()
        self._lock_fd: Optional[int] = None
        self._lock_depth = 0

    @contextmanager
    def _exclusive(self):
        """Thread lock plus flock on the data root; only the outermost entry takes the flock."""
        with self._lock:
            if self._lock_depth == 0:
                self.root.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(self.root / LOCK_FILE), os.O_RDWR | os.O_CREAT, 0o644)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError:
                    os.close(fd)
                    raise
                self._lock_fd = fd
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    fd, self._lock_fd = self._lock_fd, None
                    fcntl.flock(fd, fcntl.LOCK_UN)
                    os.close(fd)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def _user_dir(self, user_id: str) -> Path:
        return self.root / "users" / _check_key(user_id, "user id")

    def _collection_dir(self, user_id: str, collection: str) -> Path:
        return self._user_dir(user_id) / _check_key(collection, "collection")

    def _doc_path(self, user_id: str, collection: str, doc_id: str) -> Path:
        return self._collection_dir(user_id, collection) / f"{_check_key(doc_id, 'document id')}.json"

    def _profile_path(self, user_id: str) -> Path:
        return self._user_dir(user_id) / "profile.json"

    # ------------------------------------------------------------------
    # Raw I/O
    # ------------------------------------------------------------------
    @staticmethod
    def _read(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Unreadable document %s: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _with_id(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(data)
        result["id"] = doc_id
        return result

    @staticmethod
    def _body(data: Dict[str, Any], rev: int) -> Dict[str, Any]:
        body = {k: v for k, v in data.items() if k not in ("id", REV_FIELD)}
        body[REV_FIELD] = rev
        return body

    # ------------------------------------------------------------------
    # Single documents
    # ------------------------------------------------------------------
    def get(self, user_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._exclusive():
            data = self._read(self._doc_path(user_id, collection, doc_id))
        return self._with_id(doc_id, data) if data is not None else None

    def set(self, user_id: str, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Full replace."""
        path = self._doc_path(user_id, collection, doc_id)
        with self._exclusive():
            existing = self._read(path)
            rev = (existing or {}).get(REV_FIELD, 0) + 1
            body = self._body(data, rev)
            atomic_write_json(path, body)
        return self._with_id(doc_id, body)

    def create(self, user_id: str, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Write a new document. Raises StoreConflictError if the key is taken."""
        path = self._doc_path(user_id, collection, doc_id)
        with self._exclusive():
            if path.exists():
                raise StoreConflictError(f"{collection}/{doc_id} already exists")
            body = self._body(data, 1)
            atomic_write_json(path, body)
        return self._with_id(doc_id, body)

    def add(self, user_id: str, collection: str, data: Dict[str, Any]) -> str:
        """Write a new document under a generated id. Returns the id."""
        doc_id = uuid.uuid4().hex
        self.create(user_id, collection, doc_id, data)
        return doc_id

    def update(
        self,
        user_id: str,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Atomic partial update. ArrayUnion values append without duplicates.

        With expected_revision set this is a compare-and-swap: if another
        writer got there first, StoreConflictError is raised and nothing
        is written.
        """
        path = self._doc_path(user_id, collection, doc_id)
        with self._exclusive():
            existing = self._read(path)
            if existing is None:
                raise InsightsNotFoundError(f"{collection}/{doc_id} not found")
            current_rev = existing.get(REV_FIELD, 0)
            if expected_revision is not None and current_rev != expected_revision:
                raise StoreConflictError(
                    f"{collection}/{doc_id} revision {current_rev} != expected {expected_revision}"
                )
            doc = _apply_fields(existing, fields)
            body = self._body(doc, current_rev + 1)
            atomic_write_json(path, body)
        return self._with_id(doc_id, body)

    def delete(self, user_id: str, collection: str, doc_id: str) -> bool:
        path = self._doc_path(user_id, collection, doc_id)
        with self._exclusive():
            if not path.exists():
                return False
            path.unlink()
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def query(
        self,
        user_id: str,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Filter (AND), order, limit. Documents missing the order field sort first."""
        coll_dir = self._collection_dir(user_id, collection)
        results = []
        with self._exclusive():
            if not coll_dir.exists():
                return []
            for path in sorted(coll_dir.glob("*.json")):
                data = self._read(path)
                if data is None or not _matches(data, where):
                    continue
                results.append(self._with_id(path.stem, data))

        if order_by:
            present = [d for d in results if d.get(order_by) is not None]
            missing = [d for d in results if d.get(order_by) is None]
            present.sort(key=lambda d: _order_key(d[order_by]), reverse=descending)
            results = present + missing if descending else missing + present
        if limit is not None:
            results = results[:limit]
        return results

    def list_users(self) -> List[str]:
        users_dir = self.root / "users"
        if not users_dir.exists():
            return []
        return sorted(p.name for p in users_dir.iterdir() if p.is_dir() and not p.name.startswith("."))

    # ------------------------------------------------------------------
    # User profile document
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> Dict[str, Any]:
        with self._exclusive():
            data = self._read(self._profile_path(user_id)) or {}
        return {k: v for k, v in data.items() if k != REV_FIELD}

    def merge_user(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow merge into the profile document, creating it if needed."""
        path = self._profile_path(user_id)
        with self._exclusive():
            existing = self._read(path) or {}
            rev = existing.get(REV_FIELD, 0) + 1
            doc = _apply_fields(existing, fields)
            doc[REV_FIELD] = rev
            atomic_write_json(path, doc)
        return {k: v for k, v in doc.items() if k != REV_FIELD}

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _commit(self, ops, preconditions) -> int:
        with self._exclusive():
            for user_id, collection, doc_id, check in preconditions:
                current = self.get(user_id, collection, doc_id)
                if not check(current):
                    raise StoreConflictError(f"Precondition failed on {collection}/{doc_id}")

            # Resolve final contents first so a bad op aborts before any write
            staged: Dict[Path, Dict[str, Any]] = {}
            for kind, user_id, collection, doc_id, data in ops:
                path = self._doc_path(user_id, collection, doc_id)
                existing = staged.get(path) or self._read(path)
                rev = (existing or {}).get(REV_FIELD, 0) + 1
                if kind == "set":
                    staged[path] = self._body(data, rev)
                else:
                    if existing is None:
                        raise InsightsNotFoundError(f"{collection}/{doc_id} not found")
                    staged[path] = self._body(_apply_fields(dict(existing), data), rev)

            tmps: List[Tuple[Path, Path]] = []
            try:
                for path, body in staged.items():
                    tmps.append((write_json_tmp(path, body), path))
            except OSError:
                for tmp, _ in tmps:
                    tmp.unlink(missing_ok=True)
                raise
            for tmp, path in tmps:
                _atomic_rename(tmp, path)

        logger.debug("Committed batch of %d documents", len(staged))
        return len(staged)
