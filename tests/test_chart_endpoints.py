from __future__ import annotations

from datetime import datetime
import os
from pathlib import Path
import sys
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from redis.exceptions import RedisError

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.main import create_app
from app.routes.api import _env_float
from app.services.advice import AdviceError
from app.store.chart_store import InMemoryChartStore, PersistentChartStore


async def _fake_request_advice(**kwargs):
    chart = kwargs["chart"]
    return f"Advice for {chart.skin_type} skin: {kwargs['question']}"


class _LostRedisBackend:
    backend_kind = "redis"

    async def get(self, uid):
        raise RedisError("connection lost")

    async def set(self, uid, chart):
        raise RedisError("connection lost")

    async def update(self, uid, mutate):
        raise RedisError("connection lost")

    async def close(self) -> None:
        return None


class _RedisDownStore(PersistentChartStore):
    async def initialize(self) -> None:
        self._backend = _LostRedisBackend()
        self._backend_kind = "redis"


class TestSessionEndpoint(unittest.TestCase):
    def test_new_session_issues_uid_and_empty_chart(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.post("/api/session", json={})

        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertTrue(data["userId"])
        chart = data["medicalChart"]
        self.assertIsNone(chart["skinType"])
        self.assertEqual(chart["skinConcerns"], [])
        self.assertEqual(chart["allergies"], [])
        self.assertIsNotNone(chart["lastUpdated"])

    def test_known_uid_returns_existing_chart(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            uid = client.post("/api/session", json={}).json()["userId"]
            client.post("/api/update-chart", json={"userId": uid, "userInput": "very oily skin"})
            res = client.post("/api/session", json={"userId": uid})

        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["userId"], uid)
        self.assertEqual(data["medicalChart"]["skinType"], "oily")

    def test_unknown_uid_gets_fresh_session(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.post("/api/session", json={"userId": "uid_never_issued"})

        self.assertEqual(res.status_code, 200)
        self.assertNotEqual(res.json()["userId"], "uid_never_issued")


class TestUpdateChartEndpoint(unittest.TestCase):
    def test_requires_uid_and_input(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            missing_input = client.post("/api/update-chart", json={"userId": "uid_1"})
            missing_uid = client.post("/api/update-chart", json={"userInput": "oily"})

        self.assertEqual(missing_input.status_code, 400)
        self.assertEqual(missing_uid.status_code, 400)

    def test_unknown_user_is_404(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.post("/api/update-chart", json={"userId": "uid_missing", "userInput": "oily"})

        self.assertEqual(res.status_code, 404)

    def test_accumulates_across_messages(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            uid = client.post("/api/session", json={}).json()["userId"]
            first = client.post(
                "/api/update-chart",
                json={"userId": uid, "userInput": "I have acne and some dark spots from old breakouts"},
            )
            second = client.post(
                "/api/update-chart",
                json={"userId": uid, "userInput": "I'm allergic to fragrance and cannot use retinol"},
            )
            again = client.post(
                "/api/update-chart",
                json={"userId": uid, "userInput": "I'm allergic to fragrance and cannot use retinol"},
            )
            stored = client.get(f"/api/chart/{uid}")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["extracted"]["concerns"], ["acne", "hyperpigmentation"])
        self.assertEqual(second.json()["extracted"]["allergens"], ["fragrance", "retinol"])

        chart = again.json()["medicalChart"]
        self.assertEqual(chart["skinConcerns"], ["acne", "hyperpigmentation"])
        self.assertEqual(chart["allergies"], ["fragrance", "retinol"])
        self.assertGreaterEqual(
            datetime.fromisoformat(chart["lastUpdated"].replace("Z", "+00:00")),
            datetime.fromisoformat(first.json()["medicalChart"]["lastUpdated"].replace("Z", "+00:00")),
        )
        self.assertEqual(stored.json()["medicalChart"], chart)


class TestChartEditing(unittest.TestCase):
    def test_get_unknown_is_404(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.get("/api/chart/uid_missing")

        self.assertEqual(res.status_code, 404)

    def test_put_overwrites_fields(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            uid = client.post("/api/session", json={}).json()["userId"]
            client.post("/api/update-chart", json={"userId": uid, "userInput": "acne on my oily skin"})
            res = client.put(
                f"/api/chart/{uid}",
                json={"currentProducts": ["BHA toner", "SPF 50"], "lifestyleFactors": ["night shifts"]},
            )

        self.assertEqual(res.status_code, 200)
        chart = res.json()["medicalChart"]
        self.assertEqual(chart["currentProducts"], ["BHA toner", "SPF 50"])
        self.assertEqual(chart["lifestyleFactors"], ["night shifts"])
        self.assertEqual(chart["skinType"], "oily")
        self.assertEqual(chart["skinConcerns"], ["acne"])

    def test_put_rejects_unknown_skin_type(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            uid = client.post("/api/session", json={}).json()["userId"]
            res = client.put(f"/api/chart/{uid}", json={"skinType": "scaly"})

        self.assertEqual(res.status_code, 422)

    def test_put_unknown_user_is_404(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.put("/api/chart/uid_missing", json={"currentProducts": ["SPF"]})

        self.assertEqual(res.status_code, 404)


class TestAdviceEndpoint(unittest.TestCase):
    def test_advice_uses_current_chart(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with patch("app.routes.api.request_advice", side_effect=_fake_request_advice) as mocked:
            with TestClient(app) as client:
                uid = client.post("/api/session", json={}).json()["userId"]
                client.post("/api/update-chart", json={"userId": uid, "userInput": "My skin is so dry"})
                res = client.post("/api/advice", json={"userId": uid, "question": "Which moisturizer?"})

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["advice"], "Advice for dry skin: Which moisturizer?")
        self.assertEqual(mocked.call_args.kwargs["chart"].skin_concerns, ["dryness"])

    def test_advice_requires_question(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.post("/api/advice", json={"userId": "uid_1"})

        self.assertEqual(res.status_code, 400)

    def test_advice_unknown_user_is_404(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.post("/api/advice", json={"userId": "uid_missing", "question": "SPF?"})

        self.assertEqual(res.status_code, 404)

    def test_upstream_failure_is_502(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with patch(
            "app.routes.api.request_advice",
            side_effect=AdviceError("Failed to get skincare advice. Please try again."),
        ):
            with TestClient(app) as client:
                uid = client.post("/api/session", json={}).json()["userId"]
                res = client.post("/api/advice", json={"userId": uid, "question": "SPF?"})

        self.assertEqual(res.status_code, 502)
        detail = res.json()["detail"]
        self.assertEqual(detail["upstream"], "perplexity")
        self.assertIn("Failed to get skincare advice", detail["error"])


class TestHealthz(unittest.TestCase):
    def test_reports_store_backend(self) -> None:
        app = create_app(chart_store=InMemoryChartStore())

        with TestClient(app) as client:
            res = client.get("/healthz")

        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertTrue(data["ok"])
        self.assertEqual(data["chart_store_backend"], "memory")


class TestStoreUnavailable(unittest.TestCase):
    def test_backend_errors_are_503_not_a_new_session(self) -> None:
        app = create_app(chart_store=_RedisDownStore(redis_url="", file_path=""))

        with TestClient(app) as client:
            session = client.post("/api/session", json={"userId": "uid_1"})
            update = client.post("/api/update-chart", json={"userId": "uid_1", "userInput": "oily"})
            fetched = client.get("/api/chart/uid_1")
            edited = client.put("/api/chart/uid_1", json={"currentProducts": ["SPF"]})
            advice = client.post("/api/advice", json={"userId": "uid_1", "question": "SPF?"})
            health = client.get("/healthz")

        for res in (session, update, fetched, edited, advice):
            self.assertEqual(res.status_code, 503)
            self.assertEqual(res.json()["detail"], "Chart store unavailable")
        self.assertEqual(health.json()["chart_store_backend"], "redis")


class TestEnvFloat(unittest.TestCase):
    def test_malformed_value_uses_default(self) -> None:
        with patch.dict(os.environ, {"ADVICE_TIMEOUT_S": "thirty"}):
            self.assertEqual(_env_float("ADVICE_TIMEOUT_S", 30.0), 30.0)

    def test_blank_value_uses_default(self) -> None:
        with patch.dict(os.environ, {"ADVICE_TIMEOUT_S": "  "}):
            self.assertEqual(_env_float("ADVICE_TIMEOUT_S", 30.0), 30.0)

    def test_valid_value_is_parsed(self) -> None:
        with patch.dict(os.environ, {"ADVICE_TIMEOUT_S": " 12.5 "}):
            self.assertEqual(_env_float("ADVICE_TIMEOUT_S", 30.0), 12.5)


if __name__ == "__main__":
    unittest.main()
