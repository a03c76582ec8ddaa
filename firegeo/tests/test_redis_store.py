import logging
import os
import unittest

from firegeo import config
from firegeo.exceptions import DocumentNotFound
from firegeo.models import LocationUpdate, NearbyQuery
from firegeo.service import LocationService
from firegeo.store import RANGE_INDEXES
from firegeo.store.redis_store import RedisDocumentStore
from firegeo.tests.helpers import SF_CENTER, SF_NEARBY, seed_users

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("FIREGEO_TEST_REDIS_URL")


@unittest.skipUnless(REDIS_URL, "FIREGEO_TEST_REDIS_URL not set")
class TestRedisDocumentStoreReal(unittest.IsolatedAsyncioTestCase):
    """Runs against a real Redis; the target database is flushed before and after each test."""

    async def asyncSetUp(self):
        self.store = RedisDocumentStore.from_url(REDIS_URL, RANGE_INDEXES)
        await self.store.client.flushdb()
        logger.info("Initialized RedisDocumentStore with real Redis connection")

    async def asyncTearDown(self):
        await self.store.client.flushdb()
        await self.store.close()

    async def test_ping(self):
        self.assertTrue(await self.store.ping())

    async def test_set_get_delete(self):
        await self.store.batch().set("users_public/u1", {"displayName": "Ada"}).commit()
        self.assertEqual(await self.store.get("users_public/u1"), {"displayName": "Ada"})
        await self.store.batch().delete("users_public/u1").commit()
        self.assertIsNone(await self.store.get("users_public/u1"))
        self.assertEqual(await self.store.list_documents("users_public"), [])

    async def test_batch_is_all_or_nothing(self):
        await self.store.batch().set("geo_index/9q8yy/users/u1", {"userId": "u1"}).commit()
        batch = self.store.batch()
        batch.delete("geo_index/9q8yy/users/u1")
        batch.update("locations/missing", {"lastActive": "now"})
        with self.assertRaises(DocumentNotFound):
            await batch.commit()
        self.assertIsNotNone(await self.store.get("geo_index/9q8yy/users/u1"))

    async def test_list_and_in_query(self):
        batch = self.store.batch()
        for i in range(4):
            batch.set(f"users_public/u{i}", {"displayName": f"User {i}"})
        batch.set("geo_index/9q8yy/users/u1", {"userId": "u1"})
        await batch.commit()
        self.assertEqual([d.id for d in await self.store.list_documents("users_public")], ["u0", "u1", "u2", "u3"])
        self.assertEqual([d.id for d in await self.store.list_documents("geo_index/9q8yy/users")], ["u1"])
        docs = await self.store.query("users_public", "__name__", "in", ["u3", "u1", "missing"])
        self.assertEqual(sorted(d.id for d in docs), ["u1", "u3"])

    async def test_indexed_range_query(self):
        """Test the lex index follows document changes."""
        batch = self.store.batch()
        batch.set("live_locations/a", {"geohash": "9q8yyk8yu"})
        batch.set("live_locations/b", {"geohash": "9q8yy0000"})
        batch.set("live_locations/c", {"geohash": "9q8yz0000"})
        await batch.commit()
        docs = await self.store.query_range("live_locations", "geohash", "9q8yy", "9q8yy~")
        self.assertEqual([d.id for d in docs], ["b", "a"])

        batch = self.store.batch()
        batch.set("live_locations/b", {"geohash": "dr5re0000"})
        batch.delete("live_locations/a")
        await batch.commit()
        self.assertEqual(await self.store.query_range("live_locations", "geohash", "9q8yy", "9q8yy~"), [])

    async def test_service_end_to_end(self):
        service = LocationService(self.store, config.TestSettings())
        await seed_users(self.store, ["alice", "bob"])
        await service.update_location("bob", LocationUpdate(latitude=SF_NEARBY[0], longitude=SF_NEARBY[1]))
        response = await service.query_nearby("alice", NearbyQuery(latitude=SF_CENTER[0], longitude=SF_CENTER[1]))
        self.assertEqual([u.user_id for u in response.users], ["bob"])


if __name__ == '__main__':
    unittest.main()
