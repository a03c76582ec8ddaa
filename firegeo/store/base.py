"""
Document store contract used by the spatial index.

Documents are addressed by slash-separated paths with an even number of
segments (``collection/doc`` or ``collection/doc/sub/doc``). A collection
path has an odd number of segments.
"""
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from ..exceptions import DocumentNotFound, InvalidArgument

DOCUMENT_ID = "__name__"
OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "array-contains")


class Document(NamedTuple):
    id: str
    path: str
    data: Dict[str, Any]


class WriteOp(NamedTuple):
    op: str
    path: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False


def doc_path(*segments: str) -> str:
    if len(segments) % 2 != 0:
        raise InvalidArgument(f"Document path needs an even number of segments: {segments}")
    for segment in segments:
        if not segment or "/" in segment:
            raise InvalidArgument(f"Invalid path segment: {segment!r}")
    return "/".join(segments)


def split_path(path: str) -> Tuple[str, str]:
    """Split a document path into ``(collection_path, doc_id)``."""
    collection, _, doc_id = path.rpartition("/")
    if not collection or not doc_id or len(path.split("/")) % 2 != 0:
        raise InvalidArgument(f"Not a document path: {path!r}")
    return collection, doc_id


def get_field(data: Dict[str, Any], field_path: str) -> Any:
    value: Any = data
    for part in field_path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_update(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply an update where dotted keys address nested fields."""
    updated = copy.deepcopy(base)
    for key, value in changes.items():
        target = updated
        parts = key.split(".")
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = copy.deepcopy(value)
    return updated


def apply_write(current: Optional[Dict[str, Any]], op: WriteOp) -> Optional[Dict[str, Any]]:
    """Return the document state after ``op``; ``None`` means deleted."""
    if op.op == "delete":
        return None
    if op.op == "set":
        if op.merge and current is not None:
            return deep_merge(current, op.data or {})
        return copy.deepcopy(op.data or {})
    if op.op == "update":
        if current is None:
            raise DocumentNotFound(op.path)
        return apply_update(current, op.data or {})
    raise InvalidArgument(f"Unknown write operation: {op.op}")


def stage_writes(ops: Sequence[WriteOp], current: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
    """Apply ``ops`` in order on top of ``current`` without touching the store."""
    staged = dict(current)
    for op in ops:
        staged[op.path] = apply_write(staged.get(op.path), op)
    return staged


def matches(doc_id: str, data: Dict[str, Any], field_path: str, op: str, value: Any) -> bool:
    actual = doc_id if field_path == DOCUMENT_ID else get_field(data, field_path)
    if op == "==":
        return actual == value
    if op == "!=":
        return actual is not None and actual != value
    if op == "in":
        return actual in value
    if op == "array-contains":
        return isinstance(actual, list) and value in actual
    if actual is None:
        return False
    try:
        if op == "<":
            return actual < value
        if op == "<=":
            return actual <= value
        if op == ">":
            return actual > value
        if op == ">=":
            return actual >= value
    except TypeError:
        return False
    raise InvalidArgument(f"Unsupported query operator: {op}")


def check_query(op: str, value: Any, max_in: int) -> None:
    if op not in OPERATORS:
        raise InvalidArgument(f"Unsupported query operator: {op}")
    if op == "in":
        if not isinstance(value, (list, tuple)) or not value:
            raise InvalidArgument("'in' queries need a non-empty list")
        if len(value) > max_in:
            raise InvalidArgument(f"'in' queries accept at most {max_in} values")


class WriteBatch:
    """Collects writes and commits them all-or-nothing."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[WriteOp] = []
        self._committed = False

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        split_path(path)
        self._ops.append(WriteOp("set", path, data, merge))
        return self

    def update(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        split_path(path)
        self._ops.append(WriteOp("update", path, data))
        return self

    def delete(self, path: str) -> "WriteBatch":
        split_path(path)
        self._ops.append(WriteOp("delete", path))
        return self

    @property
    def ops(self) -> List[WriteOp]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if self._committed:
            raise InvalidArgument("Batch already committed")
        self._committed = True
        if self._ops:
            await self._store.commit(self._ops)


class DocumentStore(ABC):
    """Transactional key-document store with batched writes and field queries."""

    max_in_values = 10

    @abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    async def get_all(self, paths: Iterable[str]) -> List[Optional[Dict[str, Any]]]:
        return [await self.get(path) for path in paths]

    @abstractmethod
    async def list_documents(self, collection_path: str) -> List[Document]:
        ...

    @abstractmethod
    async def query(self, collection_path: str, field_path: str, op: str, value: Any) -> List[Document]:
        ...

    @abstractmethod
    async def query_range(self, collection_path: str, order_by: str, start_at: Any, end_at: Any) -> List[Document]:
        """Documents whose ``order_by`` field lies in ``[start_at, end_at]``, ordered by it."""

    @abstractmethod
    async def commit(self, ops: Sequence[WriteOp]) -> None:
        ...

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass
