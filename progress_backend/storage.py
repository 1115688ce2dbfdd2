import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from . import config
from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "progress_records", "reward_opportunities", "achievements")

SortSpec = Union[str, Sequence[Tuple[str, int]]]


class _InMemoryResult:
    def __init__(
        self,
        *,
        matched_count: int = 0,
        modified_count: int = 0,
        upserted_id: Optional[str] = None,
        inserted_id: Optional[str] = None,
    ):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id
        self.inserted_id = inserted_id


def _apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)
    # Only exclusion projections like {"_id": 0} are used by the engine.
    excluded_keys = {k for k, v in projection.items() if v == 0}
    return {k: copy.deepcopy(v) for k, v in doc.items() if k not in excluded_keys}


def _matches_operator(value: Any, op: str, operand: Any) -> bool:
    if op == "$in":
        return value in operand
    if value is None:
        return False
    if op == "$gte":
        return value >= operand
    if op == "$lte":
        return value <= operand
    raise ValueError(f"Unsupported query operator: {op}")


def _match_filter(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        value = doc.get(key)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            if not all(_matches_operator(value, op, operand) for op, operand in expected.items()):
                return False
            continue

        if value != expected:
            return False
    return True


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any], *, inserting: bool) -> None:
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$setOnInsert":
            if inserting:
                doc.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = (doc.get(key) or 0) + amount
        elif op == "$max":
            for key, candidate in fields.items():
                current = doc.get(key)
                if current is None or candidate > current:
                    doc[key] = candidate
        else:
            raise ValueError(f"Unsupported update operator: {op}")


def _seed_from_filter(query: Dict[str, Any]) -> Dict[str, Any]:
    # Equality clauses become fields of an upserted document, as in MongoDB.
    return {
        k: copy.deepcopy(v)
        for k, v in query.items()
        if not (isinstance(v, dict) and any(str(op).startswith("$") for op in v))
    }


def _sort_value(value: Any) -> Tuple[int, Any]:
    # Nulls sort first ascending, matching MongoDB.
    return (0, 0) if value is None else (1, value)


def _normalize_sort(key_or_list: SortSpec, direction: Optional[int] = None) -> List[Tuple[str, int]]:
    if isinstance(key_or_list, str):
        return [(key_or_list, direction if direction is not None else ASCENDING)]
    return [(field, d) for field, d in key_or_list]


def _sorted_docs(docs: List[Dict[str, Any]], keys: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    ordered = list(docs)
    # Stable sorts applied from the least significant key.
    for field, direction in reversed(keys):
        ordered.sort(key=lambda d: _sort_value(d.get(field)), reverse=direction == -1)
    return ordered


class _InMemoryCursor:
    def __init__(self, docs: List[Dict[str, Any]], projection: Optional[Dict[str, int]]):
        self._docs = docs
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []

    def sort(self, key_or_list: SortSpec, direction: Optional[int] = None):
        self._sort = _normalize_sort(key_or_list, direction)
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = _sorted_docs(self._docs, self._sort) if self._sort else list(self._docs)
        if length is not None:
            docs = docs[:length]
        return [_apply_projection(d, self._projection) for d in docs]


class _InMemoryCollection:
    """Subset of the Motor collection API backed by a list of dicts.

    Every statement runs under the owning database's lock and performs no
    other awaits until it has finished mutating, so each call is atomic with
    respect to concurrent tasks, like a single MongoDB statement.
    """

    def __init__(self, db: "InMemoryDB", name: str):
        self._db = db
        self.name = name
        self._unique: Dict[str, Tuple[str, ...]] = {}

    def _docs(self) -> List[Dict[str, Any]]:
        return self._db._data[self.name]

    def _check_unique(self, candidate: Dict[str, Any], original: Optional[Dict[str, Any]] = None) -> None:
        for index_name, fields in self._unique.items():
            key = tuple(candidate.get(f) for f in fields)
            for doc in self._docs():
                if doc is original:
                    continue
                if tuple(doc.get(f) for f in fields) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {index_name} dup key: {key}",
                        11000,
                    )

    def _first_match(self, query: Dict[str, Any], sort: Optional[SortSpec] = None) -> Optional[Dict[str, Any]]:
        matched = [d for d in self._docs() if _match_filter(d, query)]
        if sort:
            matched = _sorted_docs(matched, _normalize_sort(sort))
        return matched[0] if matched else None

    def _update_doc(self, doc: Dict[str, Any], update: Dict[str, Any]) -> bool:
        updated = copy.deepcopy(doc)
        _apply_update(updated, update, inserting=False)
        if updated == doc:
            return False
        self._check_unique(updated, original=doc)
        doc.clear()
        doc.update(updated)
        return True

    def _upsert_doc(self, query: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        doc = _seed_from_filter(query)
        _apply_update(doc, update, inserting=True)
        self._check_unique(doc)
        self._docs().append(doc)
        return doc

    async def create_index(self, keys: SortSpec, unique: bool = False, name: Optional[str] = None, **kwargs):
        fields = _normalize_sort(keys)
        index_name = name or "_".join(f"{f}_{d}" for f, d in fields)
        if unique:
            self._unique[index_name] = tuple(f for f, _ in fields)
        return index_name

    async def find_one(
        self,
        query: Optional[Dict[str, Any]] = None,
        projection: Optional[Dict[str, int]] = None,
        sort: Optional[SortSpec] = None,
    ):
        async with self._db._lock:
            doc = self._first_match(query or {}, sort)
            return _apply_projection(doc, projection) if doc is not None else None

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        # Cursor is consumed later; keep it independent of future mutations.
        matched = [copy.deepcopy(d) for d in self._docs() if _match_filter(d, query or {})]
        return _InMemoryCursor(matched, projection)

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._db._lock:
            return sum(1 for d in self._docs() if _match_filter(d, query))

    async def insert_one(self, doc: Dict[str, Any]):
        async with self._db._lock:
            stored = copy.deepcopy(doc)
            self._check_unique(stored)
            self._docs().append(stored)
            await self._db._save_to_disk()
        return _InMemoryResult(inserted_id=stored.get("id"))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._db._lock:
            doc = self._first_match(query)
            if doc is None:
                if not upsert:
                    return _InMemoryResult(matched_count=0)
                created = self._upsert_doc(query, update)
                await self._db._save_to_disk()
                return _InMemoryResult(upserted_id=created.get("id"))

            modified = self._update_doc(doc, update)
            if modified:
                await self._db._save_to_disk()
            return _InMemoryResult(matched_count=1, modified_count=int(modified))

    async def update_many(self, query: Dict[str, Any], update: Dict[str, Any]):
        async with self._db._lock:
            matched = [d for d in self._docs() if _match_filter(d, query)]
            modified = sum(1 for doc in matched if self._update_doc(doc, update))
            if modified:
                await self._db._save_to_disk()
        return _InMemoryResult(matched_count=len(matched), modified_count=modified)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        projection: Optional[Dict[str, int]] = None,
        sort: Optional[SortSpec] = None,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ):
        async with self._db._lock:
            doc = self._first_match(query, sort)
            if doc is None:
                if not upsert:
                    return None
                created = self._upsert_doc(query, update)
                await self._db._save_to_disk()
                if return_document == ReturnDocument.AFTER:
                    return _apply_projection(created, projection)
                return None

            before = copy.deepcopy(doc)
            if self._update_doc(doc, update):
                await self._db._save_to_disk()
            result = doc if return_document == ReturnDocument.AFTER else before
            return _apply_projection(result, projection)


class InMemoryDB:
    backend_name = "memory"

    def __init__(self):
        self._lock = asyncio.Lock()
        self._data: Dict[str, List[Dict[str, Any]]] = {name: [] for name in COLLECTIONS}
        self.users = _InMemoryCollection(self, "users")
        self.progress_records = _InMemoryCollection(self, "progress_records")
        self.reward_opportunities = _InMemoryCollection(self, "reward_opportunities")
        self.achievements = _InMemoryCollection(self, "achievements")

    async def _save_to_disk(self) -> None:
        return None


class FileBackedDB(InMemoryDB):
    backend_name = "file"

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            loaded = json.loads(raw) if raw.strip() else {}
        except (OSError, ValueError) as e:
            logger.warning("Failed to load file-backed DB (%s). Starting empty.", str(e))
            return
        if isinstance(loaded, dict):
            for key in COLLECTIONS:
                value = loaded.get(key)
                if isinstance(value, list):
                    self._data[key] = value

    async def _save_to_disk(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = json.dumps(self._data, ensure_ascii=False, separators=(",", ":"))
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._path)


async def ensure_indexes(db: Any) -> None:
    await db.users.create_index([("id", ASCENDING)], unique=True, name="uq_users_id")
    await db.progress_records.create_index(
        [("user_id", ASCENDING), ("day", ASCENDING)], unique=True, name="uq_progress_user_day"
    )
    await db.progress_records.create_index(
        [("finalized", ASCENDING), ("finalize_at", ASCENDING)], name="ix_progress_due"
    )
    await db.progress_records.create_index(
        [("day", ASCENDING), ("finalized", ASCENDING)], name="ix_progress_day_finalized"
    )
    await db.reward_opportunities.create_index(
        [("user_id", ASCENDING), ("points_milestone", ASCENDING)],
        unique=True,
        name="uq_opportunity_user_milestone",
    )
    await db.achievements.create_index(
        [("user_id", ASCENDING), ("type", ASCENDING), ("points_required", ASCENDING)],
        unique=True,
        name="uq_achievement_user_points",
    )


def _file_backed_db() -> FileBackedDB:
    path = Path(config.DATA_FILE) if config.DATA_FILE else config.DEFAULT_DATA_FILE
    db = FileBackedDB(path)
    logger.warning("Using file-backed DB at %s (data persists between restarts).", str(path))
    return db


async def connect_storage() -> Tuple[Optional[AsyncIOMotorClient], Any]:
    """Open the configured store and make sure its unique indexes exist."""
    backend = config.DB_BACKEND
    client = None
    db: Any = None

    if backend == "memory":
        db = InMemoryDB()
        logger.warning("Using in-memory DB (data is lost on restart).")
    elif backend == "file":
        db = _file_backed_db()
    else:
        if config.MONGO_URL:
            try:
                client = AsyncIOMotorClient(config.MONGO_URL, serverSelectionTimeoutMS=2000)
                await client.admin.command("ping")
                db = client[config.DB_NAME]
                logger.info("Connected to MongoDB: %s", config.DB_NAME)
            except PyMongoError as e:
                if client is not None:
                    client.close()
                client = None
                if backend == "mongo" or config.IS_PROD:
                    raise StorageUnavailableError(f"MongoDB not available: {e}") from e
                logger.warning("MongoDB not available (%s). Falling back to file-backed DB.", str(e))
        elif backend == "mongo" or config.IS_PROD:
            raise StorageUnavailableError("MONGO_URL must be set to use the MongoDB backend")

        if db is None:
            db = _file_backed_db()

    try:
        await ensure_indexes(db)
    except PyMongoError as e:
        raise StorageUnavailableError(f"Could not create indexes: {e}") from e
    return client, db


def storage_backend_name(db: Any) -> str:
    return getattr(db, "backend_name", "mongo")
