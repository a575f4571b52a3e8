import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "persons", "profiles", "projects", "tasks")

Document = Dict[str, Any]


class StorageError(Exception):
    """Raised when the document store cannot serve a request."""


def _matches(doc: Document, filter: Optional[Dict[str, Any]]) -> bool:
    # list filter value -> "one of"; list document value -> "contains"
    if not filter:
        return True
    for key, expected in filter.items():
        actual = doc.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif isinstance(actual, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class JSONStorage:
    """Document store keeping one JSON file per collection.

    The store must be opened before use and closed on shutdown; the
    application does both from its lifespan handler.
    """

    def __init__(self, storage_dir: Union[str, Path] = "data"):
        self.storage_dir = Path(storage_dir)
        self._open = False

    def open(self) -> "JSONStorage":
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            # Initialize files if they don't exist
            for name in COLLECTIONS:
                file = self._path(name)
                if not file.exists():
                    with open(file, "w") as f:
                        json.dump([], f)
        except OSError as e:
            raise StorageError(f"Cannot open storage at {self.storage_dir}: {e}") from e
        self._open = True
        logger.info(f"Storage opened at {self.storage_dir}")
        return self

    def close(self) -> None:
        if self._open:
            self._open = False
            logger.info("Storage closed")

    @property
    def is_open(self) -> bool:
        return self._open

    def _path(self, collection: str) -> Path:
        if collection not in COLLECTIONS:
            raise StorageError(f"Unknown collection: {collection}")
        return self.storage_dir / f"{collection}.json"

    def _read_file(self, collection: str) -> List[Document]:
        if not self._open:
            raise StorageError("Storage is closed")
        try:
            with open(self._path(collection), "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {collection}: {e}") from e

    def _write_file(self, collection: str, data: List[Document]):
        if not self._open:
            raise StorageError("Storage is closed")
        try:
            with open(self._path(collection), "w") as f:
                json.dump(data, f, indent=2)
        except (OSError, TypeError) as e:
            raise StorageError(f"Cannot write {collection}: {e}") from e

    def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        *,
        sort: Optional[str] = None,
        descending: bool = False,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Document]:
        docs = [d for d in self._read_file(collection) if _matches(d, filter)]
        if sort:
            docs.sort(key=lambda d: str(d.get(sort) or ""), reverse=descending)
        docs = docs[skip:]
        if limit is not None:
            docs = docs[:limit]
        return docs

    def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        return len(self.find(collection, filter))

    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[Document]:
        return next(iter(self.find(collection, filter)), None)

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        return self.find_one(collection, {"id": doc_id})

    def find_by_ids(self, collection: str, ids: Iterable[str]) -> List[Document]:
        by_id = {d["id"]: d for d in self._read_file(collection)}
        return [by_id[i] for i in ids if i in by_id]

    def insert(self, collection: str, doc: Document) -> Document:
        docs = self._read_file(collection)
        doc = {"id": str(uuid.uuid4()), **doc}
        docs.append(doc)
        self._write_file(collection, docs)
        return doc

    def update_by_id(self, collection: str, doc_id: str, patch: Document) -> Optional[Document]:
        docs = self._read_file(collection)
        for i, doc in enumerate(docs):
            if doc["id"] == doc_id:
                docs[i] = {**doc, **patch, "id": doc_id}
                self._write_file(collection, docs)
                return docs[i]
        return None

    def update_many(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]],
        *,
        set_fields: Optional[Document] = None,
        add_to_set: Optional[Dict[str, Any]] = None,
        pull: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Apply field operations to every matching document.

        ``set_fields`` overwrites fields, ``add_to_set`` appends a value to a list
        field unless already present, ``pull`` removes every occurrence of a
        value from a list field. Returns the number of documents matched.
        """
        docs = self._read_file(collection)
        matched = 0
        for doc in docs:
            if not _matches(doc, filter):
                continue
            matched += 1
            if set_fields:
                doc.update(set_fields)
            for field, value in (add_to_set or {}).items():
                items = doc.setdefault(field, [])
                if value not in items:
                    items.append(value)
            for field, value in (pull or {}).items():
                doc[field] = [item for item in doc.get(field) or [] if item != value]
        if matched:
            self._write_file(collection, docs)
        return matched

    def delete_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        docs = self._read_file(collection)
        for i, doc in enumerate(docs):
            if doc["id"] == doc_id:
                del docs[i]
                self._write_file(collection, docs)
                return doc
        return None

    def populate(
        self,
        docs: Union[Document, List[Document]],
        field: str,
        collection: str,
        fields: Optional[Iterable[str]] = None,
    ) -> Union[Document, List[Document]]:
        """Replace the reference(s) stored under ``field`` with target documents.

        Works on a single document or a list of them and returns copies.
        Dangling scalar references become ``None``; dangling entries of a
        reference list are dropped.
        """
        many = isinstance(docs, list)
        items = docs if many else [docs]
        targets = {d["id"]: d for d in self._read_file(collection)}
        keep = None if fields is None else {"id", *fields}

        def resolve(ref):
            target = targets.get(ref)
            if target is None or keep is None:
                return target
            return {k: v for k, v in target.items() if k in keep}

        populated = []
        for doc in items:
            value = doc.get(field)
            if isinstance(value, list):
                resolved = [resolve(ref) for ref in value]
                value = [r for r in resolved if r is not None]
            elif value is not None:
                value = resolve(value)
            populated.append({**doc, field: value})
        return populated if many else populated[0]
