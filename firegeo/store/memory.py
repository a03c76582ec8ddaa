import copy
import logging
from typing import Any, Dict, List, Optional, Sequence

from .base import (
    Document,
    DocumentStore,
    WriteOp,
    check_query,
    get_field,
    matches,
    split_path,
    stage_writes,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local document store.

    Used for development and tests. Reads return copies so callers can't
    mutate stored state, and a batch is validated in full before any of it
    is applied.
    """

    def __init__(self, documents: Optional[Dict[str, Dict[str, Any]]] = None):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self.commit_count = 0
        for path, data in (documents or {}).items():
            split_path(path)
            self._docs[path] = copy.deepcopy(data)

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        split_path(path)
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def list_documents(self, collection_path: str) -> List[Document]:
        docs = []
        for path in sorted(self._docs):
            parent, doc_id = split_path(path)
            if parent == collection_path:
                docs.append(Document(doc_id, path, copy.deepcopy(self._docs[path])))
        return docs

    async def query(self, collection_path: str, field_path: str, op: str, value: Any) -> List[Document]:
        check_query(op, value, self.max_in_values)
        return [
            doc for doc in await self.list_documents(collection_path)
            if matches(doc.id, doc.data, field_path, op, value)
        ]

    async def query_range(self, collection_path: str, order_by: str, start_at: Any, end_at: Any) -> List[Document]:
        docs = [
            doc for doc in await self.list_documents(collection_path)
            if matches(doc.id, doc.data, order_by, ">=", start_at)
            and matches(doc.id, doc.data, order_by, "<=", end_at)
        ]
        docs.sort(key=lambda doc: (get_field(doc.data, order_by), doc.id))
        return docs

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        current = {op.path: self._docs.get(op.path) for op in ops}
        staged = stage_writes(ops, current)
        for path, data in staged.items():
            if data is None:
                self._docs.pop(path, None)
            else:
                self._docs[path] = data
        self.commit_count += 1
        logger.debug(f"Committed batch of {len(ops)} writes")

    def dump(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._docs)
