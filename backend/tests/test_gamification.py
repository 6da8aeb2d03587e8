import pytest
from datetime import date

from backend.ai.gamification import (
    get_streak_multiplier, calculate_fasting_xp, calculate_weight_milestone, period_bounds,
    measure_rule_progress, GamificationService, XP_VALUES, FIRST_TIME_BASE_XP
)
from backend.api.logging_config import DatabaseError, ValidationError
from backend.api.schemas import BonusRule
from backend.tests.fakes import USER_ID, make_db, make_table, rpc_params

AWARD_REPLY = {
    "xp_awarded": 50, "base_xp": 25, "multiplier": 2.0, "streak_days": 8, "leveled_up": True,
    "old_level": 3, "new_level": 4, "current_xp": 10, "xp_to_next_level": 190, "total_xp": 610,
}

TRIPLE_SCAN = BonusRule(id="r1", rule_name="daily_triple_scan", period="daily", condition_type="event_count",
                        event_type="meal_scan", threshold=3, xp_reward=30)

TODAY = date(2026, 10, 14)


def meal_scans(count):
    return [{"event_type": "meal_scan", "event_category": "nutrition", "final_xp": 25,
             "event_date": "2026-10-14T08:00:00"} for _ in range(count)]


class TestRules:
    """Pure XP rules"""

    def test_streak_multiplier(self):
        assert get_streak_multiplier(0) == 1.0
        assert get_streak_multiplier(3) == 1.5
        assert get_streak_multiplier(13) == 2.0
        assert get_streak_multiplier(14) == 2.5
        assert get_streak_multiplier(45) == 3.0

    def test_fasting_xp(self):
        assert calculate_fasting_xp(16, 16, True) == (50, "fasting_success")
        assert calculate_fasting_xp(20, 16, True) == (70, "fasting_success_exceeded")
        assert calculate_fasting_xp(13, 16, False) == (35, "fasting_partial_12h")
        assert calculate_fasting_xp(9, 16, True) == (25, "fasting_partial_8h")

    def test_short_fast_earns_nothing(self):
        with pytest.raises(ValidationError):
            calculate_fasting_xp(5, 16, False)

    def test_weight_milestone(self):
        assert calculate_weight_milestone(80.0, 78.9, "fat_loss")[0]
        assert not calculate_weight_milestone(80.0, 79.5, "fat_loss")[0]
        reached, data = calculate_weight_milestone(70.0, 70.6, "muscle_gain")
        assert reached
        assert data == {"type": "weight_gain", "amount": 0.6, "objective": "muscle_gain"}
        assert calculate_weight_milestone(None, 70.0, "fat_loss") == (False, {})

    def test_period_bounds(self):
        assert period_bounds("daily", TODAY) == (TODAY, TODAY)
        assert period_bounds("weekly", TODAY) == (date(2026, 10, 12), date(2026, 10, 18))
        assert period_bounds("monthly", date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))
        assert period_bounds("monthly", date(2026, 12, 31)) == (date(2026, 12, 1), date(2026, 12, 31))
        with pytest.raises(ValidationError):
            period_bounds("yearly", TODAY)

    def test_rule_progress(self):
        events = meal_scans(2) + [{"event_type": "fasting_success", "event_category": "fasting", "final_xp": 100}]
        assert measure_rule_progress(TRIPLE_SCAN, events) == 2

        xp_rule = TRIPLE_SCAN.model_copy(update={"condition_type": "xp_total", "event_type": None, "threshold": 100})
        assert measure_rule_progress(xp_rule, events) == 150

        categories = TRIPLE_SCAN.model_copy(update={"condition_type": "distinct_categories", "event_type": None})
        assert measure_rule_progress(categories, events) == 2


class TestAwards:

    def test_award_xp(self):
        db = make_db(rpc={"award_xp": AWARD_REPLY})
        result = GamificationService(db).award_xp(USER_ID, "meal_scan", "nutrition", 25, {"meal_id": "m1"})

        assert result.xp_awarded == 50
        assert result.leveled_up
        assert result.new_level == 4
        params = rpc_params(db, "award_xp")[0]
        assert params["p_base_xp"] == 25
        assert params["p_event_metadata"] == {"meal_id": "m1"}

    def test_award_xp_failure(self):
        db = make_db(rpc={"award_xp": Exception("function missing")})
        with pytest.raises(DatabaseError):
            GamificationService(db).award_xp(USER_ID, "meal_scan", "nutrition", 25)

    def test_first_forge_action_of_day_pays(self):
        db = make_db(rpc={"award_xp": AWARD_REPLY})
        result = GamificationService(db).award_forge_action(USER_ID, "fridge_scan", "scan-1")

        assert result["awarded"]
        assert rpc_params(db, "award_xp")[0]["p_event_category"] == "culinary"
        recorded = db.tables["daily_actions_completion"].insert.call_args[0][0]
        assert recorded["is_first_of_day"]
        assert recorded["xp_earned"] == 50

    def test_repeat_forge_action_is_recorded_without_xp(self):
        db = make_db({"daily_actions_completion": make_table([{"id": "a1"}])})
        result = GamificationService(db).award_forge_action(USER_ID, "meal_scan")

        assert result == {"awarded": False, "reason": "already_awarded_today", "award": None}
        assert rpc_params(db, "award_xp") == []
        recorded = db.tables["daily_actions_completion"].insert.call_args[0][0]
        assert recorded["occurrence_number"] == 2
        assert recorded["xp_earned"] == 0

    def test_fasting_award(self):
        db = make_db(rpc={"award_xp": AWARD_REPLY})
        xp_base, award = GamificationService(db).award_fasting_xp(USER_ID, "s1", 16, 16, "success")
        assert xp_base == 50
        params = rpc_params(db, "award_xp")[0]
        assert params["p_event_type"] == "fasting_success"
        assert params["p_event_metadata"]["session_id"] == "s1"

    def test_weight_update_with_milestone(self):
        db = make_db(
            {"user_profile": make_table({"weight_kg": 82.0, "objective": "fat_loss"})},
            {"award_xp": AWARD_REPLY},
        )
        result = GamificationService(db).update_weight(USER_ID, 80.5)

        assert result["milestone_reached"]
        assert result["weight_delta_kg"] == -1.5
        assert result["xp_base"] == XP_VALUES["weight_update"] + XP_VALUES["weight_milestone_bonus"]
        history = db.tables["weight_updates_history"].insert.call_args[0][0]
        assert history["previous_weight"] == 82.0
        db.tables["user_profile"].update.assert_called_once_with({"weight_kg": 80.5})

    def test_first_weigh_in(self):
        db = make_db(rpc={"award_xp": AWARD_REPLY})
        result = GamificationService(db).update_weight(USER_ID, 70.0)
        assert result["previous_weight_kg"] is None
        assert result["weight_delta_kg"] == 0.0
        assert result["xp_base"] == XP_VALUES["weight_update"]

    def test_first_time_bonus(self):
        db = make_db(rpc={"claim_first_time_bonus": {"bonus_applicable": True, "bonus_xp": 25}})
        result = GamificationService(db).claim_first_time_bonus(USER_ID, "meal_scan")
        assert result["bonus_applicable"]
        assert rpc_params(db, "claim_first_time_bonus")[0]["p_base_xp"] == FIRST_TIME_BASE_XP["meal_scan"]

    def test_first_time_bonus_error_is_not_applicable(self):
        db = make_db(rpc={"claim_first_time_bonus": Exception("down")})
        result = GamificationService(db).claim_first_time_bonus(USER_ID, "fasting")
        assert result == {"bonus_applicable": False, "bonus_xp": 0, "message": "rpc_error"}


class TestProgress:

    def test_progress_includes_milestone(self):
        db = make_db({
            "user_gamification_progress": make_table({"user_id": USER_ID, "current_level": 5,
                                                      "current_streak_days": 7}),
            "level_milestones": make_table({"level": 5, "title": "Artisan"}),
        })
        progress = GamificationService(db).get_progress(USER_ID)
        assert progress["milestone"]["title"] == "Artisan"
        assert progress["streak_multiplier"] == 2.0

    def test_no_progress_row(self):
        assert GamificationService(make_db()).get_progress(USER_ID) is None

    def test_xp_stats(self):
        events = meal_scans(3) + [{"event_type": "fasting_success", "event_category": "fasting", "final_xp": 100}]
        db = make_db({"xp_events_log": make_table(events)})
        stats = GamificationService(db).get_xp_stats(USER_ID, 7)

        assert stats.total_xp == 175
        assert stats.average_xp_per_day == 25
        assert stats.top_events[0] == {"event_type": "fasting_success", "count": 1, "total_xp": 100}
        assert stats.breakdown == {"nutrition": 75, "fasting": 100}

    def test_xp_stats_rejects_bad_window(self):
        with pytest.raises(ValidationError):
            GamificationService(make_db()).get_xp_stats(USER_ID, 0)


class TestBonuses:

    def rule_row(self):
        return TRIPLE_SCAN.model_dump()

    def test_met_rule_is_awarded_once(self):
        db = make_db(
            {
                "bonus_rules": make_table([self.rule_row()]),
                "xp_events_log": make_table(meal_scans(3)),
                "bonus_awards": make_table([]),
            },
            {"award_bonus": {"awarded": True, "award_id": "b1", "awarded_at": "2026-10-14T12:00:00+00:00",
                             "xp": AWARD_REPLY}},
        )
        progress = GamificationService(db).evaluate_bonuses(USER_ID, today=TODAY)

        assert len(progress) == 1
        assert progress[0].eligible
        assert progress[0].already_awarded
        assert progress[0].progress_percentage == 100.0
        params = rpc_params(db, "award_bonus")[0]
        assert params["p_period_start"] == "2026-10-14"
        assert params["p_xp_reward"] == 30
        assert params["p_rule_name"] == "daily_triple_scan"
        db.tables["bonus_awards"].insert.assert_not_called()

    def test_already_awarded_this_period(self):
        db = make_db({
            "bonus_rules": make_table([self.rule_row()]),
            "xp_events_log": make_table(meal_scans(4)),
            "bonus_awards": make_table([{"id": "b1"}]),
        })
        progress = GamificationService(db).evaluate_bonuses(USER_ID, today=TODAY)

        assert progress[0].already_awarded
        assert rpc_params(db, "award_bonus") == []

    def test_progress_below_threshold(self):
        db = make_db({
            "bonus_rules": make_table([self.rule_row()]),
            "xp_events_log": make_table(meal_scans(1)),
            "bonus_awards": make_table([]),
        })
        progress = GamificationService(db).evaluate_bonuses(USER_ID, today=TODAY)[0]

        assert not progress.eligible
        assert progress.current_progress == 1
        assert progress.progress_percentage == pytest.approx(33.3)
        assert progress.message == "2 more to unlock +30 XP"

    def test_concurrent_award_loses_quietly(self):
        db = make_db(rpc={"award_bonus": {"awarded": False}})
        assert GamificationService(db).award_bonus(USER_ID, TRIPLE_SCAN, TODAY) is None

    def test_failed_award_is_retried_on_next_evaluation(self):
        db = make_db(
            {
                "bonus_rules": make_table([self.rule_row()]),
                "xp_events_log": make_table(meal_scans(3)),
                "bonus_awards": make_table([]),
            },
            {"award_bonus": Exception("award_xp failed")},
        )
        service = GamificationService(db)

        first = service.evaluate_bonuses(USER_ID, today=TODAY)[0]
        assert first.eligible
        assert not first.already_awarded

        db.rpc_results["award_bonus"] = {"awarded": True, "award_id": "b1", "xp": AWARD_REPLY}
        second = service.evaluate_bonuses(USER_ID, today=TODAY)[0]
        assert second.already_awarded
        assert len(rpc_params(db, "award_bonus")) == 2

    def test_history(self):
        row = {"id": "b1", "user_id": USER_ID, "rule_id": "r1", "period_start": "2026-10-12",
               "period_end": "2026-10-18", "xp_awarded": 75, "awarded_at": "2026-10-14T12:00:00+00:00",
               "bonus_rules": {"rule_name": "weekly_culinary_explorer"}}
        db = make_db({"bonus_awards": make_table([row])})
        history = GamificationService(db).get_bonus_history(USER_ID, 5)

        assert history[0].rule_name == "weekly_culinary_explorer"
        db.tables["bonus_awards"].limit.assert_called_once_with(5)
