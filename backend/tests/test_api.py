import pytest
from unittest.mock import patch, AsyncMock
from fastapi.testclient import TestClient

from backend.api.main import app, get_current_user
from backend.api.database import get_db
from backend.api.schemas import DetailedRecipe, GoalUpdate, XpAwardResult
from backend.tests.fakes import USER_ID, make_table, rpc_params

ACTIVITY_ID = "7d0e2c3a-5b4f-4e8a-9c1d-2f3e4a5b6c7d"
AUDIO = ("clip.webm", b"\x1a\x45\xdf\xa3" + b"\x00" * 4096, "audio/webm")


@pytest.fixture
def funded(db):
    """User with a healthy balance and working ledger"""
    db.tables["user_token_balance"] = make_table({"user_id": USER_ID, "available_tokens": 1000})
    db.rpc_results["consume_tokens_atomic"] = {"success": True, "tokens_consumed": 15, "balance_after": 985}
    return db


class TestHealth:

    def test_health(self, client):
        with patch('backend.api.main.SB.ping', return_value=True):
            response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_health_database_down(self, client):
        with patch('backend.api.main.SB.ping', return_value=False):
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"

    def test_quick_health_and_metrics(self, client):
        assert client.get("/health/quick").json()["status"] == "healthy"
        metrics = client.get("/metrics").json()
        assert metrics["requests_total"] >= 1
        assert "GET /health/quick" in metrics["requests_by_endpoint"]

    def test_metrics_use_route_templates(self, client):
        client.delete("/security/sessions/secret-session-token-123")
        client.get("/no/such/page/42")

        endpoints = client.get("/metrics").json()["requests_by_endpoint"]
        assert "DELETE /security/sessions/{session_token}" in endpoints
        assert "GET unmatched" in endpoints
        assert not any("secret-session-token-123" in name or "42" in name for name in endpoints)

    def test_detailed_health_degraded(self, client):
        result = {"status": "degraded", "checks": {}}
        with patch('backend.api.main.health_checker.run_all_checks', new_callable=AsyncMock, return_value=result):
            response = client.get("/health/detailed")
        assert response.status_code == 503

    def test_request_id_echoed(self, client):
        response = client.get("/health/quick", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"


class TestAuthentication:

    def test_missing_bearer(self, db):
        app.dependency_overrides[get_db] = lambda: db
        try:
            response = TestClient(app).get("/tokens/balance")
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 401

    def test_invalid_token_is_logged(self, db):
        db.auth.get_user.side_effect = Exception("invalid JWT")
        app.dependency_overrides[get_db] = lambda: db
        try:
            response = TestClient(app).get("/tokens/balance", headers={"Authorization": "Bearer nope"})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 401
        assert rpc_params(db, "log_security_event")[0]["p_event_type"] == "unauthorized_access"

    def test_reset_requires_service_key(self, client, monkeypatch):
        monkeypatch.setenv("SUPABASE_KEY", "service-key")
        assert client.post("/tokens/reset-monthly").status_code == 401
        assert client.post("/tokens/reset-monthly", headers={"Authorization": "Bearer user-jwt"}).status_code == 401

    def test_reset_with_cron_secret(self, client, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "cron-secret")
        summary = {"message": "done", "count": 0, "successful": 0, "failed": 0, "results": []}
        with patch('backend.api.main.reset_monthly_tokens', return_value=summary):
            response = client.post("/tokens/reset-monthly", headers={"X-Cron-Secret": "cron-secret"})
        assert response.status_code == 200
        assert response.json()["message"] == "done"


class TestTokens:

    def test_balance(self, client, db):
        db.tables["user_token_balance"] = make_table({"user_id": USER_ID, "available_tokens": 420, "bonus_tokens": 20})
        db.tables["user_subscriptions"] = make_table({"status": "active", "plan_type": "pro_19"})

        response = client.get("/tokens/balance")
        assert response.status_code == 200
        data = response.json()
        assert data["available_tokens"] == 420
        assert data["is_subscribed"]
        assert data["plan_type"] == "pro_19"

    def test_balance_missing(self, client):
        response = client.get("/tokens/balance")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NOT_FOUND"

    def test_initialize_creates_then_noops(self, client, db):
        row = {"user_id": USER_ID, "available_tokens": 15000}
        db.tables["user_token_balance"] = make_table(sequence=[None, [row], row])

        first = client.post("/tokens/initialize")
        assert first.status_code == 201
        assert first.json()["action_taken"] == "balance_created"

        second = client.post("/tokens/initialize")
        assert second.status_code == 200
        assert second.json()["action_taken"] == "none_required"

    def test_rate_limited(self, client, db):
        db.tables["user_token_balance"] = make_table({"user_id": USER_ID, "available_tokens": 1})
        for _ in range(30):
            assert client.get("/tokens/balance").status_code == 200
        response = client.get("/tokens/balance")
        assert response.status_code == 429
        assert "Retry-After" in response.headers


class TestTranscription:

    @patch('backend.api.main.transcribe_audio')
    def test_transcribe(self, mock_transcribe, client, funded):
        mock_transcribe.return_value = {"text": "bonjour", "language": "fr", "duration": 30.0}

        response = client.post(
            "/transcribe/audio",
            files={"audio": AUDIO},
            data={"language": "fr"},
            headers={"Idempotency-Key": "upload-1"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["text"] == "bonjour"
        assert data["tokens_consumed"] == 15
        assert data["cost_usd"] == pytest.approx(0.003)

        params = rpc_params(funded, "consume_tokens_atomic")[0]
        assert params["p_request_id"] == "upload-1"
        assert params["p_edge_function_name"] == "audio-transcribe"
        assert params["p_openai_model"] == "whisper-1"

    @patch('backend.api.main.transcribe_audio')
    def test_insufficient_tokens(self, mock_transcribe, client, db):
        db.tables["user_token_balance"] = make_table({"user_id": USER_ID, "available_tokens": 0})

        response = client.post("/transcribe/audio", files={"audio": AUDIO})

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["code"] == "INSUFFICIENT_TOKENS"
        assert detail["details"]["needsUpgrade"]
        mock_transcribe.assert_not_called()

    def test_audio_too_small(self, client, db):
        response = client.post("/transcribe/audio", files={"audio": ("a.webm", b"\x00" * 10, "audio/webm")})
        assert response.status_code == 422
        assert rpc_params(db, "log_security_event")[0]["p_event_type"] == "input_validation_failed"


class TestRecipes:

    def test_cached_recipes_stream(self, client, db):
        recipe = {"id": "r1", "title": "Bowl", "ingredients": [{"name": "riz"}]}
        db.tables["ai_analysis_jobs"] = make_table([{"result_payload": {"recipes": [recipe]}}])

        response = client.post("/recipes/generate", json={"inventory_final": [{"name": "riz"}]})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "event: recipe" in response.text
        assert '"cache_hit": true' in response.text
        assert rpc_params(db, "consume_tokens_atomic") == []

    def test_generation_needs_tokens(self, client, db):
        db.tables["user_token_balance"] = make_table({"user_id": USER_ID, "available_tokens": 5})
        response = client.post("/recipes/generate", json={"inventory_final": [{"name": "riz"}]})
        assert response.status_code == 402

    def test_empty_inventory(self, client):
        response = client.post("/recipes/generate", json={"inventory_final": []})
        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "inventory_final"

    @patch('backend.api.main.RecipeDetailGenerator')
    def test_recipe_detail(self, mock_generator, client):
        recipe = DetailedRecipe(id="d1", title="Saumon", ingredients=[{"name": "saumon"}])
        mock_generator.return_value.generate.return_value = (recipe, False, 0.00125, 7)

        response = client.post("/recipes/detail", json={
            "meal_title": "Saumon <b>rôti</b>", "main_ingredients": ["saumon"], "meal_type": "dinner",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["recipe"]["title"] == "Saumon"
        assert data["tokens_consumed"] == 7
        sent = mock_generator.return_value.generate.call_args[0][1]
        assert sent.meal_title == "Saumon &lt;b&gt;rôti&lt;/b&gt;"


class TestWearables:

    def test_invalid_activity_id(self, client):
        response = client.post("/wearables/sync-goals", json={"activity_id": "not-a-uuid"})
        assert response.status_code == 422

    @patch('backend.api.main.GamificationService')
    @patch('backend.api.main.GoalSync')
    def test_sync_awards_xp(self, mock_sync, mock_service, client):
        mock_sync.return_value.sync.return_value = [GoalUpdate(
            goal_id="g1", goal_title="10 km", goal_type="distance", previous_value=5, value_added=8,
            new_value=13, target_value=10, progress_percent=100, completed=True,
        )]
        mock_service.return_value.award_xp.return_value = XpAwardResult(xp_awarded=15)

        response = client.post("/wearables/sync-goals", json={"activity_id": ACTIVITY_ID})

        assert response.status_code == 200
        data = response.json()
        assert data["goals_updated"] == 1
        assert data["xp_awarded"] == 15
        assert mock_service.return_value.award_xp.call_args[0][1] == "wearable_sync"


class TestSecurityEndpoints:

    @patch('backend.api.main.SessionManager')
    def test_session_refused(self, mock_sessions, client):
        mock_sessions.return_value.create_session.return_value = {"success": False, "error": "Maximum reached"}
        response = client.post("/security/sessions")
        assert response.status_code == 409
        assert response.json()["error"] == "Maximum reached"

    def test_create_session(self, client, db):
        db.rpc_results["get_active_session_count"] = 0
        response = client.post("/security/sessions")
        assert response.status_code == 200
        assert response.json()["session_token"]

    def test_terminate_requires_csrf(self, client):
        response = client.delete("/security/sessions")
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "CSRF_VALIDATION_FAILED"

    def test_csrf_token(self, client, db):
        db.rpc_results["generate_csrf_token"] = "csrf-xyz"
        response = client.post("/security/csrf-token")
        assert response.json() == {"csrf_token": "csrf-xyz", "expires_in_minutes": 60}


class TestGamificationEndpoints:

    def test_short_fast(self, client, db):
        response = client.post("/gamification/fasting", json={
            "session_id": "s1", "duration_hours": 5, "target_hours": 16, "outcome": "partial",
        })
        assert response.status_code == 422
        assert rpc_params(db, "award_xp") == []

    def test_xp_stats_window_bounds(self, client):
        assert client.get("/gamification/xp-stats?days=0").status_code == 422
        assert client.get("/gamification/xp-stats?days=7").status_code == 200

    def test_progress_missing(self, client):
        assert client.get("/gamification/progress").status_code == 404

    def test_forge_action(self, client, db):
        db.rpc_results["award_xp"] = {"xp_awarded": 30, "base_xp": 30, "multiplier": 1.0}
        response = client.post("/gamification/forge-action", json={"action": "fridge_scan"})
        assert response.status_code == 200
        assert response.json()["award"]["xp_awarded"] == 30

    def test_weight_out_of_range(self, client):
        assert client.post("/gamification/weight", json={"new_weight_kg": 5}).status_code == 422

    def test_bonus_period_filter(self, client, db):
        response = client.get("/gamification/bonuses?period=daily")
        assert response.status_code == 200
        assert response.json() == []
        db.tables["bonus_rules"].eq.assert_any_call("period", "daily")
