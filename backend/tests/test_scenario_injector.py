# backend/tests/test_scenario_injector.py
"""
Scenario injection: persona synthesis from a raw objection and the
brute-force loop (solved / exhausted / halted).
"""

import pytest

from conftest import FakeCollaborator
from governor.database import SessionLocal
from governor.errors import BudgetExceeded, KillSwitchActive
from governor.models.battle import Battle
from governor.models.budget_ledger import BudgetLedgerEntry
from governor.models.persona import Persona
from governor.models.scenario import Scenario
from governor.services.kill_switch import KillSwitch

OBJECTION = "Your offer is insulting, Zillow says my house is worth 250k"


class TestCreateScenario:
    @pytest.mark.asyncio
    async def test_creates_persona_and_pending_scenario(self, db, make_runtime):
        collaborator = FakeCollaborator()
        runtime = make_runtime(collaborator)

        scenario_id = await runtime.injector.create_scenario(OBJECTION)

        scenario = db.get(Scenario, scenario_id)
        assert scenario.status == "pending"
        assert scenario.attempts == 0
        assert scenario.max_attempts == 5
        persona = db.get(Persona, scenario.synthesized_persona_id)
        assert persona.is_active is True
        assert persona.behavior_params["scenario_objection"] == OBJECTION
        assert persona.behavior_params["conflict_state"]["objection"] == OBJECTION
        assert collaborator.persona_requests == [OBJECTION]

        entry = db.query(BudgetLedgerEntry).one()
        assert entry.entry_metadata["type"] == "persona_synthesis"

    @pytest.mark.asyncio
    async def test_blank_objection(self, make_runtime):
        with pytest.raises(ValueError):
            await make_runtime().injector.create_scenario("   ")

    @pytest.mark.asyncio
    async def test_unknown_base_persona(self, make_runtime):
        with pytest.raises(LookupError):
            await make_runtime().injector.create_scenario(OBJECTION, base_persona_id=999)

    @pytest.mark.asyncio
    async def test_synthesis_blocked_by_kill_switch(self, db, make_runtime):
        collaborator = FakeCollaborator()
        runtime = make_runtime(collaborator)
        runtime.kill_switch.activate(db, reason="halt")

        with pytest.raises(KillSwitchActive):
            await runtime.injector.create_scenario(OBJECTION)
        assert collaborator.persona_requests == []
        assert db.query(Scenario).count() == 0

    @pytest.mark.asyncio
    async def test_synthesis_blocked_by_budget(self, db, make_runtime, add_spend):
        add_spend(15.50)
        runtime = make_runtime(FakeCollaborator())
        with pytest.raises(BudgetExceeded):
            await runtime.injector.create_scenario(OBJECTION)


class TestBruteForce:
    @pytest.mark.asyncio
    async def test_solved_on_third_attempt(self, db, make_runtime):
        collaborator = FakeCollaborator(referee_scores=[50, 72, 85, 95, 99])
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)

        result = await runtime.injector.brute_force(scenario_id)

        assert result["status"] == "solved"
        assert result["attempts"] == 3
        assert result["bestScore"] == 85
        assert len(collaborator.judge_models) == 3

        winner = db.get(Battle, result["winningBattleId"])
        assert winner.referee_score == 85
        assert winner.scenario_id == scenario_id
        assert result["winningTranscript"] == winner.transcript

    @pytest.mark.asyncio
    async def test_attempts_use_scenario_temperature(self, make_runtime, config):
        collaborator = FakeCollaborator(referee_scores=[90])
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)

        await runtime.injector.brute_force(scenario_id)

        assert collaborator.synth_calls[0]["options"].temperature == config.scenario_temperature

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts(self, db, make_runtime):
        collaborator = FakeCollaborator(referee_scores=[10, 20, 79, 30, 40, 99])
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)

        result = await runtime.injector.brute_force(scenario_id)

        assert result["status"] == "exhausted"
        assert result["attempts"] == 5
        assert result["bestScore"] == 79
        assert result["winningBattleId"] is None
        assert len(collaborator.judge_models) == 5
        assert db.query(Battle).filter(Battle.scenario_id == scenario_id).count() == 5

    @pytest.mark.asyncio
    async def test_failed_attempt_counts(self, db, make_runtime):
        collaborator = FakeCollaborator(referee_scores=[90])
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)
        persona_id = db.get(Scenario, scenario_id).synthesized_persona_id
        collaborator.fail_for = {persona_id}

        result = await runtime.injector.brute_force(scenario_id)

        assert result["status"] == "exhausted"
        assert result["attempts"] == 5
        assert result["bestScore"] is None

    @pytest.mark.asyncio
    async def test_terminal_scenario_is_not_rerun(self, make_runtime):
        collaborator = FakeCollaborator(referee_scores=[99])
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)
        await runtime.injector.brute_force(scenario_id)

        again = await runtime.injector.brute_force(scenario_id)

        assert again["status"] == "solved"
        assert len(collaborator.judge_models) == 1

    @pytest.mark.asyncio
    async def test_kill_switch_returns_scenario_to_pending(self, db, make_runtime):
        runtime = make_runtime(FakeCollaborator())
        scenario_id = await runtime.injector.create_scenario(OBJECTION)
        runtime.kill_switch.activate(db, reason="operator halt")

        with pytest.raises(KillSwitchActive):
            await runtime.injector.brute_force(scenario_id)

        db.expire_all()
        scenario = db.get(Scenario, scenario_id)
        assert scenario.status == "pending"
        assert scenario.attempts == 0

    @pytest.mark.asyncio
    async def test_budget_halt_mid_run_keeps_attempts(self, db, make_runtime, make_config):
        # each attempt costs 0.02; the cap is hit after the second attempt
        cfg = make_config(daily_cap=0.04, throttle_threshold=0.04, estimated_battle_cost=0.0)
        collaborator = FakeCollaborator(referee_scores=[10, 20, 30], cost=0.01)
        runtime = make_runtime(collaborator, governor_config=cfg)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)

        with pytest.raises(BudgetExceeded):
            await runtime.injector.brute_force(scenario_id)

        db.expire_all()
        scenario = db.get(Scenario, scenario_id)
        assert scenario.status == "pending"
        assert scenario.attempts == 2
        assert runtime.kill_switch.is_active(db) is True

    @pytest.mark.asyncio
    async def test_unknown_scenario(self, make_runtime):
        with pytest.raises(LookupError):
            await make_runtime().injector.brute_force(12345)


class TestInjectAndBruteForce:
    @pytest.mark.asyncio
    async def test_inject_then_solve(self, db, make_runtime):
        collaborator = FakeCollaborator(referee_scores=[60, 88])
        runtime = make_runtime(collaborator)

        result = await runtime.injector.inject_and_brute_force(OBJECTION)

        assert result["status"] == "solved"
        assert result["attempts"] == 2
        assert db.get(Scenario, result["scenarioId"]).raw_objection == OBJECTION


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_after_kill_switch_keeps_attempts(self, db, make_runtime, notifier):
        def trip(persona, options):
            session = SessionLocal()
            try:
                KillSwitch(notifier).activate(session, reason="operator halt")
            finally:
                session.close()

        collaborator = FakeCollaborator(referee_scores=[50, 90], on_synthesize=trip)
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)

        with pytest.raises(KillSwitchActive):
            await runtime.injector.brute_force(scenario_id)
        db.expire_all()
        assert db.get(Scenario, scenario_id).attempts == 1

        collaborator.on_synthesize = None
        runtime.kill_switch.deactivate(db)
        result = await runtime.injector.brute_force(scenario_id)

        assert result["status"] == "solved"
        assert result["attempts"] == 2
        assert result["bestScore"] == 90

    @pytest.mark.asyncio
    async def test_scenario_left_running_is_resumed(self, db, make_runtime):
        collaborator = FakeCollaborator(referee_scores=[10, 20, 30])
        runtime = make_runtime(collaborator)
        scenario_id = await runtime.injector.create_scenario(OBJECTION)
        scenario = db.get(Scenario, scenario_id)
        scenario.status = "running"
        scenario.attempts = 3
        scenario.best_score = 40
        db.commit()

        result = await runtime.injector.brute_force(scenario_id)

        assert result["status"] == "exhausted"
        assert result["attempts"] == 5
        assert result["bestScore"] == 40
        assert len(collaborator.judge_models) == 2
