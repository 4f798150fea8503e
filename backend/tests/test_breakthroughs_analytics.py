# backend/tests/test_breakthroughs_analytics.py
"""
Breakthrough detection and review, judge-response parsing, persona analytics.
"""

from datetime import datetime, timedelta

import pytest

from governor.agents.breakthrough_detector import BreakthroughDetector, extract_winning_rebuttal, list_tactics
from governor.agents.persona_analytics import get_humanity_grades, get_persona_analytics
from governor.errors import InvalidReviewTransition, ProviderError
from governor.models.battle import Battle
from governor.models.tactic import Tactic
from governor.services.referee import JudgeScores, aggregate_persona_stats, is_ultimate_success

NOW = datetime(2026, 5, 10, 12, 0)


@pytest.fixture
def add_battle(db):
    def _add(persona, referee=70.0, humanity=None, yes=False, document="pending",
             status="completed", error=None, created_at=NOW, rebuttal=None, transcript=None):
        battle = Battle(
            persona_id=persona.id,
            status=status,
            referee_score=referee,
            success_score=referee,
            humanity_grade=humanity,
            verbal_yes_to_price=yes,
            document_status=document,
            error=error,
            winning_rebuttal=rebuttal,
            transcript=transcript,
            created_at=created_at,
        )
        db.add(battle)
        db.commit()
        return battle

    return _add


# ============================================================================
# BREAKTHROUGH DETECTOR
# ============================================================================

class TestBreakthroughScan:
    def test_flags_only_qualifying_recent_battles(self, db, config, make_persona, add_battle):
        persona = make_persona()
        hit = add_battle(persona, referee=96, humanity=90)
        edge = add_battle(persona, referee=95, humanity=85)
        low_humanity = add_battle(persona, referee=99, humanity=60)
        low_referee = add_battle(persona, referee=80, humanity=95)
        stale = add_battle(persona, referee=99, humanity=99, created_at=NOW - timedelta(hours=30))
        failed = add_battle(persona, referee=99, humanity=99, error="ProviderError: boom")

        flagged = BreakthroughDetector(config).scan(db, now=NOW)

        assert sorted(b.id for b in flagged) == sorted([hit.id, edge.id])
        db.expire_all()
        for battle in (low_humanity, low_referee, stale, failed):
            assert db.get(Battle, battle.id).status == "completed"
        assert db.get(Battle, hit.id).status == "pending_review"
        assert db.get(Battle, hit.id).breakthrough_detected_at == NOW

    def test_scan_does_not_reflag(self, db, config, make_persona, add_battle):
        persona = make_persona()
        add_battle(persona, referee=97, humanity=90)
        detector = BreakthroughDetector(config)

        assert len(detector.scan(db, now=NOW)) == 1
        assert detector.scan(db, now=NOW) == []

    def test_unaudited_battles_are_not_flagged(self, db, config, make_persona, add_battle):
        persona = make_persona()
        add_battle(persona, referee=99, humanity=None)
        assert BreakthroughDetector(config).scan(db, now=NOW) == []


class TestBreakthroughReview:
    def _flagged(self, db, config, make_persona, add_battle):
        battle = add_battle(make_persona(), referee=98, humanity=91, rebuttal="Walk through the repair math")
        BreakthroughDetector(config).scan(db, now=NOW)
        return battle

    @pytest.mark.parametrize("action,status", [
        ("mark_reviewed", "reviewed"),
        ("promote", "promoted"),
        ("reject", "rejected"),
    ])
    def test_review_actions(self, db, config, make_persona, add_battle, action, status):
        battle = self._flagged(db, config, make_persona, add_battle)
        reviewed = BreakthroughDetector(config).review(db, battle.id, action, reviewer="ops")
        assert reviewed.status == status

    def test_review_is_one_way(self, db, config, make_persona, add_battle):
        battle = self._flagged(db, config, make_persona, add_battle)
        detector = BreakthroughDetector(config)
        detector.review(db, battle.id, "promote")
        with pytest.raises(InvalidReviewTransition):
            detector.review(db, battle.id, "reject")

    def test_unflagged_battle_cannot_be_reviewed(self, db, config, make_persona, add_battle):
        battle = add_battle(make_persona(), referee=50, humanity=50)
        with pytest.raises(InvalidReviewTransition):
            BreakthroughDetector(config).review(db, battle.id, "promote")

    def test_unknown_action_and_battle(self, db, config, make_persona, add_battle):
        battle = self._flagged(db, config, make_persona, add_battle)
        detector = BreakthroughDetector(config)
        with pytest.raises(ValueError):
            detector.review(db, battle.id, "celebrate")
        with pytest.raises(LookupError):
            detector.review(db, 424242, "promote")

    def test_list_and_unread_count(self, db, config, make_persona, add_battle):
        persona = make_persona("Stubborn Stan")
        first = add_battle(persona, referee=97, humanity=90)
        add_battle(persona, referee=96, humanity=88)
        detector = BreakthroughDetector(config)
        detector.scan(db, now=NOW)
        detector.review(db, first.id, "mark_reviewed")

        listing = detector.list_breakthroughs(db, now=NOW)
        assert len(listing["breakthroughs"]) == 2
        assert listing["unreadCount"] == 1
        assert listing["breakthroughs"][0]["personaName"] == "Stubborn Stan"

        pending = detector.list_breakthroughs(db, status="pending_review", now=NOW)
        assert len(pending["breakthroughs"]) == 1

        with pytest.raises(ValueError):
            detector.list_breakthroughs(db, status="completed", now=NOW)


class TestTacticPromotion:
    def _flag(self, db, config, make_persona, add_battle, **kwargs):
        battle = add_battle(make_persona(), referee=98, humanity=91, **kwargs)
        BreakthroughDetector(config).scan(db, now=NOW)
        return battle

    def test_promote_activates_tactic(self, db, config, make_persona, add_battle):
        battle = self._flag(db, config, make_persona, add_battle, rebuttal="Show the repair math line by line")

        BreakthroughDetector(config).review(db, battle.id, "promote", reviewer="ops")

        tactic = db.query(Tactic).one()
        assert tactic.battle_id == battle.id
        assert tactic.tactic_text == "Show the repair math line by line"
        assert tactic.is_active is True
        assert tactic.promoted_by == "ops"
        assert tactic.promoted_at is not None
        assert [t["battleId"] for t in list_tactics(db)] == [battle.id]

    def test_rebuttal_falls_back_to_closer_lines(self, db, config, make_persona, add_battle):
        transcript = "\n".join([
            "Closer: First line",
            "Seller: Hmm",
            "Closer: Second line",
            "Closer: Third line",
            "Seller: Okay",
            "Closer: Fourth line",
        ])
        battle = self._flag(db, config, make_persona, add_battle, transcript=transcript)

        assert extract_winning_rebuttal(battle) == "Second line Third line Fourth line"
        BreakthroughDetector(config).review(db, battle.id, "promote")
        assert db.query(Tactic).one().tactic_text == "Second line Third line Fourth line"

    def test_promote_without_rebuttal_is_refused(self, db, config, make_persona, add_battle):
        battle = self._flag(db, config, make_persona, add_battle, transcript="Seller: No closer spoke")

        with pytest.raises(LookupError):
            BreakthroughDetector(config).review(db, battle.id, "promote")

        db.expire_all()
        assert db.get(Battle, battle.id).status == "pending_review"
        assert db.query(Tactic).count() == 0

    def test_reject_creates_no_tactic(self, db, config, make_persona, add_battle):
        battle = self._flag(db, config, make_persona, add_battle, rebuttal="Anything")
        BreakthroughDetector(config).review(db, battle.id, "reject")
        assert db.query(Tactic).count() == 0
        assert list_tactics(db, active_only=False) == []


# ============================================================================
# JUDGE RESPONSE PARSING
# ============================================================================

class TestJudgeScores:
    def test_camel_case(self):
        scores = JudgeScores.from_dict({
            "refereeScore": 88, "mathDefenseScore": "72", "humanityScore": 64.5, "successScore": 90,
            "verbalYesToPrice": True, "documentStatus": "completed", "winningRebuttal": "Run the repair math",
        })
        assert scores.referee_score == 88
        assert scores.math_defense_score == 72
        assert scores.verbal_yes_to_price is True
        assert scores.document_status == "completed"
        assert scores.winning_rebuttal == "Run the repair math"

    def test_snake_case_and_clamping(self):
        scores = JudgeScores.from_dict({"referee_score": 140, "humanity_score": -5, "verbal_yes_to_price": "yes"})
        assert scores.referee_score == 100
        assert scores.humanity_score == 0
        assert scores.verbal_yes_to_price is True

    def test_missing_referee_score(self):
        with pytest.raises(ProviderError):
            JudgeScores.from_dict({"humanityScore": 80})

    def test_non_numeric_score(self):
        with pytest.raises(ProviderError):
            JudgeScores.from_dict({"refereeScore": "excellent"})

    def test_unknown_document_status_is_pending(self):
        assert JudgeScores.from_dict({"refereeScore": 50, "documentStatus": "faxed"}).document_status == "pending"

    def test_ultimate_success_requires_both(self):
        assert is_ultimate_success(JudgeScores(referee_score=90, verbal_yes_to_price=True, document_status="completed"))
        assert not is_ultimate_success(JudgeScores(referee_score=90, verbal_yes_to_price=False, document_status="completed"))
        assert not is_ultimate_success(JudgeScores(referee_score=90, verbal_yes_to_price=True, document_status="sent"))


# ============================================================================
# PERSONA ANALYTICS
# ============================================================================

class TestPersonaAnalytics:
    def test_success_counts_nest(self):
        battles = [
            JudgeScores(referee_score=90, verbal_yes_to_price=True, document_status="completed"),
            JudgeScores(referee_score=85, verbal_yes_to_price=True, document_status="sent"),
            JudgeScores(referee_score=40, verbal_yes_to_price=False, document_status="completed"),
            JudgeScores(referee_score=20),
        ]
        stats = aggregate_persona_stats(battles)
        assert stats["totalBattles"] == 4
        assert stats["primarySuccesses"] == 2
        assert stats["successfulBattles"] == 1
        assert stats["successfulBattles"] <= stats["primarySuccesses"] <= stats["totalBattles"]
        assert stats["successRate"] == 25.0
        assert stats["averageScore"] == pytest.approx(58.8)

    def test_empty(self):
        stats = aggregate_persona_stats([])
        assert stats["totalBattles"] == 0
        assert stats["successRate"] == 0.0

    def test_sorted_hardest_first_and_unjudged_ignored(self, db, make_persona, add_battle):
        easy = make_persona("Easy Eddie")
        hard = make_persona("Hard Harriet")
        retired = make_persona("Retired Rita", is_active=False)
        add_battle(easy, referee=90, yes=True, document="completed")
        add_battle(easy, referee=88, yes=True, document="completed")
        add_battle(hard, referee=40)
        add_battle(hard, referee=92, yes=True, document="completed")
        add_battle(hard, referee=None, error="ProviderError: judge down")
        add_battle(retired, referee=99, yes=True, document="completed")

        analytics = get_persona_analytics(db)

        assert [p["personaName"] for p in analytics] == ["Hard Harriet", "Easy Eddie"]
        assert analytics[0]["totalBattles"] == 2
        assert analytics[0]["successRate"] == 50.0
        assert analytics[1]["successRate"] == 100.0

    def test_humanity_grades(self, db, config, make_persona, add_battle):
        persona = make_persona()
        add_battle(persona, humanity=90)
        add_battle(persona, humanity=60)
        add_battle(persona, humanity=None)

        grades = get_humanity_grades(db, config)

        assert grades["count"] == 2
        assert grades["averageGrade"] == 75.0
        assert grades["belowThreshold"] == 1
        assert len(grades["recent"]) == 2
