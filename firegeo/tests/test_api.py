import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import jwt
from fastapi.testclient import TestClient

from firegeo import config
from firegeo.api import create_app
from firegeo.rate_limit import TokenBucketRateLimiter
from firegeo.store import InMemoryDocumentStore
from firegeo.tests.helpers import SF_CENTER, SF_NEARBY, seed_users


class UnhealthyStore(InMemoryDocumentStore):
    async def ping(self):
        return False


class TestAPI(unittest.TestCase):
    def setUp(self):
        self.settings = config.TestSettings()
        self.store = InMemoryDocumentStore()
        asyncio.run(seed_users(self.store, ["alice", "bob"]))
        self.client = TestClient(create_app(self.settings, store=self.store))

    def auth(self, user_id, **claims):
        token = jwt.encode({"user_id": user_id, **claims}, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}

    def post_location(self, user_id, latitude, longitude, **extra):
        return self.client.post(
            "/location",
            json={"latitude": latitude, "longitude": longitude, **extra},
            headers=self.auth(user_id),
        )

    def test_missing_token(self):
        response = self.client.post("/location", json={"latitude": 1.0, "longitude": 1.0})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "unauthenticated")

    def test_invalid_token(self):
        response = self.client.post(
            "/nearby",
            json={"latitude": 1.0, "longitude": 1.0},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        self.assertEqual(response.status_code, 401)

    def test_sub_claim_accepted(self):
        token = jwt.encode({"sub": "alice"}, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)
        response = self.client.post(
            "/location",
            json={"latitude": 1.0, "longitude": 1.0},
            headers={"Authorization": f"Bearer {token}"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["userId"], "alice")

    def test_invalid_arguments(self):
        """Test malformed payloads are rejected with invalid-argument."""
        cases = [
            ("/location", {"latitude": 91.0, "longitude": 0.0}),
            ("/location", {"latitude": "37.7", "longitude": 0.0}),
            ("/location", {"longitude": 0.0}),
            ("/location", {"latitude": 0.0, "longitude": 0.0, "unknownField": 1}),
            ("/nearby", {"latitude": 0.0, "longitude": 0.0, "radiusKm": 60}),
            ("/nearby", {"latitude": 0.0, "longitude": 0.0, "radiusKm": 0}),
            ("/nearby/recent", {"latitude": 0.0, "longitude": -181.0}),
        ]
        for path, body in cases:
            response = self.client.post(path, json=body, headers=self.auth("alice"))
            self.assertEqual(response.status_code, 400, f"{path} {body}")
            self.assertEqual(response.json()["error"]["code"], "invalid-argument")
            self.assertFalse(response.json()["success"])

    def test_unknown_profile(self):
        response = self.post_location("nobody", 1.0, 1.0)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "not-found")

    def test_update_then_query(self):
        """Test a location written by one user is visible to another."""
        response = self.post_location("bob", *SF_NEARBY, accuracy=5.0, movementState="walking")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["geohash"][:5], "9q8yy")
        self.assertFalse(body["inPrivacyZone"])

        response = self.client.post(
            "/nearby",
            json={"latitude": SF_CENTER[0], "longitude": SF_CENTER[1], "radiusKm": 1},
            headers=self.auth("alice"),
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 1)
        user = body["users"][0]
        self.assertEqual(user["userId"], "bob")
        self.assertEqual(user["displayName"], "User bob")
        self.assertEqual(user["movementState"], "walking")
        self.assertAlmostEqual(user["distance"], 0.09, places=2)
        self.assertEqual(user["location"]["accuracy"], 5.0)

        response = self.client.post(
            "/nearby/recent",
            json={"latitude": SF_CENTER[0], "longitude": SF_CENTER[1]},
            headers=self.auth("alice"),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([u["userId"] for u in response.json()["users"]], ["bob"])

    def test_stale_update(self):
        now = datetime.now(timezone.utc)
        self.assertEqual(self.post_location("alice", 1.0, 1.0, capturedAt=now.isoformat()).status_code, 200)
        response = self.post_location("alice", 2.0, 2.0, capturedAt=(now - timedelta(minutes=1)).isoformat())
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "aborted")

    def test_privacy_and_sign_out(self):
        self.post_location("bob", *SF_NEARBY)
        response = self.client.post("/privacy", json={"ghostMode": True}, headers=self.auth("bob"))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["privacySettings"]["ghostMode"])

        response = self.client.post(
            "/nearby",
            json={"latitude": SF_CENTER[0], "longitude": SF_CENTER[1]},
            headers=self.auth("alice"),
        )
        self.assertEqual(response.json()["count"], 0)

        response = self.client.post("/signout", headers=self.auth("bob"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "User signed out successfully")

    def test_rate_limited(self):
        limiter = TokenBucketRateLimiter(capacity=2, refill_rate=0.001)
        client = TestClient(create_app(self.settings, store=self.store, limiter=limiter))
        headers = self.auth("alice")
        body = {"latitude": 0.0, "longitude": 0.0}
        self.assertEqual(client.post("/nearby", json=body, headers=headers).status_code, 200)
        self.assertEqual(client.post("/nearby", json=body, headers=headers).status_code, 200)
        response = client.post("/nearby", json=body, headers=headers)
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"]["code"], "resource-exhausted")
        # buckets are per user
        self.assertEqual(client.post("/nearby", json=body, headers=self.auth("bob")).status_code, 200)

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

        client = TestClient(create_app(self.settings, store=UnhealthyStore()))
        self.assertEqual(client.get("/health").status_code, 503)

    def test_privacy_unknown_user(self):
        response = self.client.post("/privacy", json={"ghostMode": True}, headers=self.auth("nobody"))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "not-found")

    def test_shutdown_closes_created_limiter(self):
        """Test the limiter the app built is closed on shutdown, an injected one is not."""
        settings = config.TestSettings(store_backend="redis", rate_limit_enabled=True)
        app = create_app(settings, store=self.store)
        with patch.object(app.state.limiter, "close", new_callable=AsyncMock) as close:
            with TestClient(app):
                pass
        close.assert_awaited_once()

        injected = TokenBucketRateLimiter(capacity=5)
        with patch.object(injected, "close", new_callable=AsyncMock) as close:
            with TestClient(create_app(settings, store=self.store, limiter=injected)):
                pass
        close.assert_not_awaited()


if __name__ == '__main__':
    unittest.main()
