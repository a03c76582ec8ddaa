import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ..exceptions import BackingStoreUnavailable
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

# Separates the indexed value from the document id inside a lex-ordered zset member
_SEP = "\x00"


class RedisDocumentStore(DocumentStore):
    """
    Document store on Redis.

    Each document is a JSON string under ``doc:{path}``; ``col:{collection}``
    is the set of ids in a collection. Fields listed in ``range_indexes`` get
    a lexicographic sorted set so range queries don't scan the collection.
    Batches run as a single MULTI/EXEC guarded by WATCH on every touched key.
    """

    def __init__(self, client: redis.Redis, range_indexes: Optional[Dict[str, List[str]]] = None):
        self.client = client
        self.range_indexes = range_indexes or {}

    @classmethod
    def from_url(cls, url: str, range_indexes: Optional[Dict[str, List[str]]] = None) -> "RedisDocumentStore":
        return cls(redis.from_url(url, decode_responses=True), range_indexes)

    @staticmethod
    def _doc_key(path: str) -> str:
        return f"doc:{path}"

    @staticmethod
    def _col_key(collection_path: str) -> str:
        return f"col:{collection_path}"

    @staticmethod
    def _idx_key(collection_path: str, field_path: str) -> str:
        return f"idx:{collection_path}:{field_path}"

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        split_path(path)
        try:
            raw = await self.client.get(self._doc_key(path))
        except RedisError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise BackingStoreUnavailable(f"Failed to read {path}") from e
        return json.loads(raw) if raw else None

    async def get_all(self, paths: Iterable[str]) -> List[Optional[Dict[str, Any]]]:
        paths = list(paths)
        if not paths:
            return []
        try:
            raws = await self.client.mget([self._doc_key(p) for p in paths])
        except RedisError as e:
            logger.error(f"Failed to read {len(paths)} documents: {e}")
            raise BackingStoreUnavailable("Failed to read documents") from e
        return [json.loads(raw) if raw else None for raw in raws]

    async def _load(self, collection_path: str, doc_ids: Sequence[str]) -> List[Document]:
        ids = sorted(doc_ids)
        paths = [f"{collection_path}/{doc_id}" for doc_id in ids]
        docs = []
        for doc_id, path, data in zip(ids, paths, await self.get_all(paths)):
            if data is not None:
                docs.append(Document(doc_id, path, data))
        return docs

    async def list_documents(self, collection_path: str) -> List[Document]:
        try:
            doc_ids = await self.client.smembers(self._col_key(collection_path))
        except RedisError as e:
            logger.error(f"Failed to list {collection_path}: {e}")
            raise BackingStoreUnavailable(f"Failed to list {collection_path}") from e
        return await self._load(collection_path, list(doc_ids))

    async def query(self, collection_path: str, field_path: str, op: str, value: Any) -> List[Document]:
        check_query(op, value, self.max_in_values)
        if field_path == "__name__" and op == "in":
            return await self._load(collection_path, list(dict.fromkeys(value)))
        return [
            doc for doc in await self.list_documents(collection_path)
            if matches(doc.id, doc.data, field_path, op, value)
        ]

    async def query_range(self, collection_path: str, order_by: str, start_at: Any, end_at: Any) -> List[Document]:
        if order_by not in self.range_indexes.get(collection_path, []):
            docs = [
                doc for doc in await self.list_documents(collection_path)
                if matches(doc.id, doc.data, order_by, ">=", start_at)
                and matches(doc.id, doc.data, order_by, "<=", end_at)
            ]
            docs.sort(key=lambda doc: (get_field(doc.data, order_by), doc.id))
            return docs

        try:
            members = await self.client.zrangebylex(
                self._idx_key(collection_path, order_by),
                f"[{start_at}",
                f"({end_at}\x01",
            )
        except RedisError as e:
            logger.error(f"Range query on {collection_path}.{order_by} failed: {e}")
            raise BackingStoreUnavailable(f"Failed to query {collection_path}") from e

        doc_ids = [member.rsplit(_SEP, 1)[1] for member in members]
        docs = {doc.id: doc for doc in await self._load(collection_path, doc_ids)}
        return [docs[doc_id] for doc_id in doc_ids if doc_id in docs]

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        paths = list(dict.fromkeys(op.path for op in ops))
        keys = [self._doc_key(path) for path in paths]
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                await pipe.watch(*keys)
                current = {}
                for path, key in zip(paths, keys):
                    raw = await pipe.get(key)
                    current[path] = json.loads(raw) if raw else None

                staged = stage_writes(ops, current)

                pipe.multi()
                for path, data in staged.items():
                    collection_path, doc_id = split_path(path)
                    previous = current.get(path)
                    for field_path in self.range_indexes.get(collection_path, []):
                        idx_key = self._idx_key(collection_path, field_path)
                        old_value = get_field(previous, field_path) if previous else None
                        if old_value is not None:
                            pipe.zrem(idx_key, f"{old_value}{_SEP}{doc_id}")
                        new_value = get_field(data, field_path) if data else None
                        if new_value is not None:
                            pipe.zadd(idx_key, {f"{new_value}{_SEP}{doc_id}": 0})
                    if data is None:
                        pipe.delete(self._doc_key(path))
                        pipe.srem(self._col_key(collection_path), doc_id)
                    else:
                        pipe.set(self._doc_key(path), json.dumps(data))
                        pipe.sadd(self._col_key(collection_path), doc_id)
                await pipe.execute()
        except WatchError as e:
            logger.warning(f"Batch of {len(ops)} writes lost a race on {paths}")
            raise BackingStoreUnavailable("Concurrent modification, batch not applied") from e
        except RedisError as e:
            logger.error(f"Batch commit failed: {e}")
            raise BackingStoreUnavailable("Batch commit failed") from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
