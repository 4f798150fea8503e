# backend/tests/test_api.py
"""
HTTP surface of the governor.

Covers:
1. Training batches and halts (200 / 500 / 503)
2. Kill switch control
3. Budget status
4. Admin authentication
5. Script adherence
6. Scenario injection
7. Breakthrough review and analytics
8. Health checks
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import PLAIN_TRANSCRIPT, FakeCollaborator
from governor.agents.gate_checker import ACQUISITION_GATES
from governor.config import settings
from governor.main import app
from governor.models.battle import Battle
from governor.models.scenario import Scenario
from governor.runtime import get_runtime


client = TestClient(app)


@pytest.fixture
def runtime(make_runtime):
    rt = make_runtime(FakeCollaborator(referee_scores=[97, 64, 81]))
    app.dependency_overrides[get_runtime] = lambda: rt
    yield rt
    app.dependency_overrides.pop(get_runtime, None)


# ============================================================================
# 1. TRAINING
# ============================================================================

class TestTrain:
    def test_train_runs_batch(self, runtime, make_persona):
        make_persona()
        response = client.post("/api/sandbox/train", json={"batchSize": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["started"] == 2
        assert data["battlesCompleted"] == 2
        assert data["haltedReason"] is None
        assert len(data["battleIds"]) == 2

    def test_train_default_batch_size(self, runtime, make_persona, config):
        make_persona()
        response = client.post("/api/sandbox/train", json={})
        assert response.status_code == 200
        assert response.json()["requested"] == config.default_batch_size

    def test_train_rejects_zero(self, runtime):
        response = client.post("/api/sandbox/train", json={"batchSize": 0})
        assert response.status_code == 422

    def test_budget_exceeded_returns_500_and_trips_switch(self, runtime, make_persona, add_spend):
        make_persona()
        add_spend(15.01)

        response = client.post("/api/sandbox/train", json={"batchSize": 1})

        assert response.status_code == 500
        assert response.json()["error"] == "BudgetExceeded"
        assert response.json()["summary"]["started"] == 0
        assert client.get("/api/sandbox/kill-switch").json()["active"] is True

    def test_kill_switch_returns_503(self, runtime, make_persona, db):
        make_persona()
        runtime.kill_switch.activate(db, reason="maintenance")

        response = client.post("/api/sandbox/train", json={"batchSize": 1})

        assert response.status_code == 503
        assert response.json()["error"] == "KillSwitchActive"

    def test_kill_switch_wins_over_empty_roster(self, runtime, db):
        runtime.kill_switch.activate(db, reason="maintenance")
        response = client.post("/api/sandbox/train", json={"batchSize": 1})
        assert response.status_code == 503

    def test_budget_wins_over_empty_roster(self, runtime, add_spend):
        add_spend(15.01)
        response = client.post("/api/sandbox/train", json={"batchSize": 1})
        assert response.status_code == 500
        assert client.get("/api/sandbox/kill-switch").json()["active"] is True

    def test_train_status(self, runtime, make_persona):
        make_persona()
        client.post("/api/sandbox/train", json={"batchSize": 1})

        data = client.get("/api/sandbox/train/status").json()
        assert data["state"] == "idle"
        assert data["lastBatch"]["battlesCompleted"] == 1
        assert data["killSwitch"]["active"] is False
        assert "todaySpend" in data["budget"]


# ============================================================================
# 2. KILL SWITCH
# ============================================================================

class TestKillSwitchEndpoint:
    def test_activate_twice_keeps_first_timestamp(self, runtime):
        first = client.post("/api/sandbox/kill-switch", json={"action": "activate", "reason": "spend spike"})
        second = client.post("/api/sandbox/kill-switch", json={"action": "activate", "reason": "still spiking"})

        assert first.status_code == 200
        assert second.json()["active"] is True
        assert second.json()["activatedAt"] == first.json()["activatedAt"]
        assert second.json()["reason"] == "still spiking"

    def test_deactivate(self, runtime):
        client.post("/api/sandbox/kill-switch", json={"action": "activate"})
        response = client.post("/api/sandbox/kill-switch", json={"action": "deactivate"})
        assert response.json()["active"] is False
        assert response.json()["deactivatedAt"] is not None

    def test_invalid_action(self, runtime):
        response = client.post("/api/sandbox/kill-switch", json={"action": "explode"})
        assert response.status_code == 400


# ============================================================================
# 3. BUDGET STATUS
# ============================================================================

class TestBudgetStatusEndpoint:
    def test_budget_status(self, runtime, add_spend):
        add_spend(3.25)
        data = client.get("/api/sandbox/budget-status").json()

        assert data["todaySpend"] == pytest.approx(3.25)
        assert data["dailyCap"] == 15.0
        assert data["isThrottled"] is True
        assert data["isExceeded"] is False
        assert data["breakdown"]["openai"]["entries"] == 1


# ============================================================================
# 4. AUTH
# ============================================================================

class TestAdminAuth:
    def test_token_required_when_configured(self, runtime, make_persona):
        make_persona()
        with patch.object(settings, "ADMIN_API_TOKEN", "s3cret"):
            denied = client.post("/api/sandbox/train", json={"batchSize": 1})
            wrong = client.post(
                "/api/sandbox/train", json={"batchSize": 1}, headers={"Authorization": "Bearer nope"}
            )
            allowed = client.post(
                "/api/sandbox/train", json={"batchSize": 1}, headers={"Authorization": "Bearer s3cret"}
            )
            # reads stay open
            status = client.get("/api/sandbox/budget-status")

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200
        assert status.status_code == 200


# ============================================================================
# 5. SCRIPT ADHERENCE
# ============================================================================

class TestScriptEndpoints:
    def test_check_before_seeding_degrades(self, runtime):
        response = client.post("/api/sandbox/script/check", json={"transcript": "hello", "currentGate": 2})
        data = response.json()
        assert response.status_code == 200
        assert "warning" in data
        assert data["recommendedGate"] == 2

    def test_embed_then_check(self, runtime):
        seeded = client.post("/api/sandbox/script/embed", json={"mode": "acquisition"})
        assert seeded.status_code == 200
        assert seeded.json()["gatesEmbedded"] == 8

        response = client.post(
            "/api/sandbox/script/check",
            json={"transcript": ACQUISITION_GATES[2][2], "currentGate": 3},
        )
        assert response.json()["recommendedGate"] == 4

    def test_unknown_mode(self, runtime):
        response = client.post("/api/sandbox/script/check", json={"transcript": "hi", "mode": "telepathy"})
        assert response.status_code == 400

    def test_check_blocked_by_kill_switch(self, runtime, db):
        runtime.kill_switch.activate(db, reason="halt")
        response = client.post("/api/sandbox/script/check", json={"transcript": "hello", "currentGate": 2})
        assert response.status_code == 503

    def test_check_blocked_by_budget(self, runtime, add_spend):
        add_spend(15.50)
        response = client.post("/api/sandbox/script/check", json={"transcript": "hello"})
        assert response.status_code == 500
        assert response.json()["error"] == "BudgetExceeded"

    def test_embed_blocked_by_kill_switch(self, runtime, db):
        runtime.kill_switch.activate(db, reason="halt")
        response = client.post("/api/sandbox/script/embed", json={"mode": "acquisition"})
        assert response.status_code == 503


# ============================================================================
# 6. SCENARIOS
# ============================================================================

class TestScenarioEndpoints:
    def test_inject_runs_in_background(self, runtime):
        response = client.post("/api/sandbox/scenarios/inject", json={"rawObjection": "I need 300k, not a penny less"})

        assert response.status_code == 202
        scenario_id = response.json()["scenarioId"]

        # the test client waits for background tasks before returning
        scenario = client.get(f"/api/sandbox/scenarios/{scenario_id}").json()
        assert scenario["status"] == "solved"
        assert scenario["attempts"] == 1
        assert scenario["bestScore"] == 97

        listing = client.get("/api/sandbox/scenarios").json()
        assert [s["scenarioId"] for s in listing["scenarios"]] == [scenario_id]

    def test_inject_blank(self, runtime):
        response = client.post("/api/sandbox/scenarios/inject", json={"rawObjection": ""})
        assert response.status_code == 422

    def test_run_resumes_interrupted_scenario(self, runtime, db, make_persona):
        persona = make_persona("Zillow Zoe", persona_type="scenario")
        scenario = Scenario(
            raw_objection="Zillow says 250k", synthesized_persona_id=persona.id,
            status="running", attempts=2, max_attempts=5, best_score=61,
        )
        db.add(scenario)
        db.commit()

        response = client.post(f"/api/sandbox/scenarios/{scenario.id}/run")

        assert response.status_code == 202
        assert response.json()["attempts"] == 2
        data = client.get(f"/api/sandbox/scenarios/{scenario.id}").json()
        assert data["status"] == "solved"
        assert data["attempts"] == 3
        assert data["bestScore"] == 97

    def test_run_rejects_finished_and_unknown(self, runtime, db, make_persona):
        persona = make_persona()
        done = Scenario(raw_objection="too low", synthesized_persona_id=persona.id, status="solved", attempts=1)
        db.add(done)
        db.commit()

        assert client.post(f"/api/sandbox/scenarios/{done.id}/run").status_code == 409
        assert client.post("/api/sandbox/scenarios/999/run").status_code == 404

    def test_run_blocked_by_kill_switch(self, runtime, db, make_persona):
        persona = make_persona()
        pending = Scenario(raw_objection="too low", synthesized_persona_id=persona.id, status="pending", attempts=0)
        db.add(pending)
        db.commit()
        runtime.kill_switch.activate(db, reason="halt")

        assert client.post(f"/api/sandbox/scenarios/{pending.id}/run").status_code == 503

    def test_unknown_scenario(self, runtime):
        assert client.get("/api/sandbox/scenarios/999").status_code == 404


# ============================================================================
# 7. BREAKTHROUGHS AND ANALYTICS
# ============================================================================

class TestBreakthroughEndpoints:
    def _flag_one(self, db, make_persona, runtime):
        persona = make_persona()
        battle = Battle(
            persona_id=persona.id, status="completed", referee_score=97, humanity_grade=90,
            winning_rebuttal="Anchor on the repair estimate, then go quiet",
        )
        db.add(battle)
        db.commit()
        runtime.detector.scan(db)
        return battle.id

    def test_list_and_review(self, runtime, db, make_persona):
        battle_id = self._flag_one(db, make_persona, runtime)

        listing = client.get("/api/sandbox/breakthroughs").json()
        assert listing["unreadCount"] == 1
        assert listing["breakthroughs"][0]["battleId"] == battle_id

        promoted = client.post(f"/api/sandbox/breakthroughs/{battle_id}", json={"action": "promote"})
        assert promoted.status_code == 200
        assert promoted.json()["status"] == "promoted"
        assert promoted.json()["tactic"]["tacticText"] == "Anchor on the repair estimate, then go quiet"
        assert promoted.json()["tactic"]["isActive"] is True

        tactics = client.get("/api/sandbox/tactics").json()["tactics"]
        assert [t["battleId"] for t in tactics] == [battle_id]

        again = client.post(f"/api/sandbox/breakthroughs/{battle_id}", json={"action": "reject"})
        assert again.status_code == 409

    def test_review_errors(self, runtime, db, make_persona):
        battle_id = self._flag_one(db, make_persona, runtime)
        assert client.post(f"/api/sandbox/breakthroughs/{battle_id}", json={"action": "party"}).status_code == 400
        assert client.post("/api/sandbox/breakthroughs/9999", json={"action": "promote"}).status_code == 404
        assert client.get("/api/sandbox/breakthroughs?status=bogus").status_code == 400

    def test_promote_without_rebuttal_is_404(self, runtime, db, make_persona):
        persona = make_persona()
        battle = Battle(persona_id=persona.id, status="completed", referee_score=99, humanity_grade=95)
        db.add(battle)
        db.commit()
        runtime.detector.scan(db)

        response = client.post(f"/api/sandbox/breakthroughs/{battle.id}", json={"action": "promote"})

        assert response.status_code == 404
        assert "winning rebuttal" in response.json()["detail"]
        assert client.get("/api/sandbox/tactics").json()["tactics"] == []

    def test_persona_analytics(self, runtime, make_persona):
        make_persona("Only One")
        client.post("/api/sandbox/train", json={"batchSize": 2})

        personas = client.get("/api/sandbox/persona-analytics").json()["personas"]
        assert len(personas) == 1
        assert personas[0]["totalBattles"] == 2
        assert personas[0]["successfulBattles"] <= personas[0]["primarySuccesses"] <= 2

    def test_battles_and_reaudit(self, runtime, db, make_persona):
        persona = make_persona()
        battle = Battle(persona_id=persona.id, status="completed", referee_score=70, transcript=PLAIN_TRANSCRIPT)
        empty = Battle(persona_id=persona.id, status="completed", referee_score=70, transcript=None)
        db.add_all([battle, empty])
        db.commit()

        listed = client.get("/api/sandbox/battles").json()["battles"]
        assert len(listed) == 2
        detail = client.get(f"/api/sandbox/battles/{battle.id}").json()
        assert detail["transcript"] == PLAIN_TRANSCRIPT

        audited = client.post(f"/api/sandbox/battles/{battle.id}/audit")
        assert audited.status_code == 200
        assert audited.json()["humanityGrade"] is not None

        assert client.post(f"/api/sandbox/battles/{empty.id}/audit").status_code == 422
        assert client.get("/api/sandbox/battles/9999").status_code == 404

        grades = client.get("/api/sandbox/humanity-grades").json()
        assert grades["count"] == 1


# ============================================================================
# 8. HEALTH
# ============================================================================

class TestHealth:
    def test_root(self):
        assert client.get("/").json()["status"] == "running"

    def test_health_simple(self):
        assert client.get("/health/simple").json() == {"status": "ok"}

    def test_health(self):
        data = client.get("/health").json()
        assert data["checks"]["database"] == "ok"
        assert data["checks"]["kill_switch_active"] is False
        assert "active_audit_sessions" in data["checks"]
