import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from backend.api.logging_config import DatabaseError, ValidationError
from backend.api.schemas import BonusAward, BonusProgress, BonusRule, XpAwardResult, XpStats

logger = logging.getLogger(__name__)

XP_VALUES = {
    "meal_scan": 25,
    "barcode_scan": 15,
    "daily_calorie_goal_met": 50,
    "fridge_scan": 30,
    "recipe_generated": 20,
    "meal_plan_generated": 35,
    "shopping_list_generated": 15,
    "training_session": 30,
    "meal_plan_followed": 40,
    "body_scan": 25,
    "fasting_success": 50,
    "fasting_partial_8h": 25,
    "fasting_partial_12h": 35,
    "fasting_bonus_exceeded": 20,
    "wearable_sync": 15,
    "weight_update": 15,
    "weight_milestone_bonus": 25,
    "record_share": 50,  # first share only
}

# Awarded once per action per day
FORGE_XP_REWARDS = {
    "meal_scan": 25,
    "barcode_scan": 15,
    "daily_recap_viewed": 10,
    "trend_analysis_viewed": 10,
    "fridge_scan": 30,
    "recipe_generated": 20,
    "meal_plan_generated": 35,
    "shopping_list_generated": 15,
}
CULINARY_ACTIONS = {"fridge_scan", "recipe_generated", "meal_plan_generated", "shopping_list_generated"}

# (minimum streak days, multiplier), highest first
STREAK_MULTIPLIERS = [(30, 3.0), (14, 2.5), (7, 2.0), (3, 1.5)]

FIRST_TIME_BASE_XP = {
    "meal_scan": XP_VALUES["meal_scan"],
    "activity": XP_VALUES["wearable_sync"],
    "training": XP_VALUES["training_session"],
    "body_scan": XP_VALUES["body_scan"],
    "fasting": XP_VALUES["fasting_success"],
    "calorie_goal": XP_VALUES["daily_calorie_goal_met"],
}


def get_streak_multiplier(streak_days: int) -> float:
    for min_days, multiplier in STREAK_MULTIPLIERS:
        if streak_days >= min_days:
            return multiplier
    return 1.0


def calculate_fasting_xp(duration_hours: float, target_hours: float, completed: bool) -> Tuple[int, str]:
    """Returns (base XP, event type); fasts under 8 hours earn nothing and are rejected"""
    if completed and duration_hours >= target_hours:
        if duration_hours >= target_hours * 1.2:
            return XP_VALUES["fasting_success"] + XP_VALUES["fasting_bonus_exceeded"], "fasting_success_exceeded"
        return XP_VALUES["fasting_success"], "fasting_success"
    if duration_hours >= 12:
        return XP_VALUES["fasting_partial_12h"], "fasting_partial_12h"
    if duration_hours >= 8:
        return XP_VALUES["fasting_partial_8h"], "fasting_partial_8h"
    raise ValidationError("Fasting duration too short (< 8h) - no XP awarded", "duration_hours")


def calculate_weight_milestone(previous_weight: Optional[float], new_weight: float,
                               objective: Optional[str]) -> Tuple[bool, Dict[str, Any]]:
    if not previous_weight or not objective:
        return False, {}
    delta = round(new_weight - previous_weight, 1)
    if objective == "fat_loss" and delta <= -1:
        return True, {"type": "weight_loss", "amount": abs(delta), "objective": objective}
    if objective == "muscle_gain" and delta >= 0.5:
        return True, {"type": "weight_gain", "amount": delta, "objective": objective}
    return False, {}


def period_bounds(period: str, today: Optional[date] = None) -> Tuple[date, date]:
    """Calendar bounds (inclusive) of the daily, weekly (Monday start) or monthly period containing today"""
    today = today or datetime.utcnow().date()
    if period == "daily":
        return today, today
    if period == "weekly":
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=6)
    if period == "monthly":
        start = today.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return start, next_month - timedelta(days=1)
    raise ValidationError(f"Unknown bonus period: {period}", "period")


def measure_rule_progress(rule: BonusRule, events: List[Dict[str, Any]]) -> int:
    """Progress of one rule over the XP events of its period"""
    matching = [
        e for e in events
        if (not rule.event_type or e.get("event_type") == rule.event_type)
        and (not rule.event_category or e.get("event_category") == rule.event_category)
    ]
    if rule.condition_type == "event_count":
        return len(matching)
    if rule.condition_type == "xp_total":
        return sum(e.get("final_xp") or 0 for e in matching)
    return len({e.get("event_category") for e in matching if e.get("event_category")})


def _award_result(data: Dict[str, Any]) -> XpAwardResult:
    return XpAwardResult(
        xp_awarded=data.get("xp_awarded") or 0,
        base_xp=data.get("base_xp") or 0,
        multiplier=float(data.get("multiplier") or 1.0),
        streak_days=data.get("streak_days") or 0,
        leveled_up=bool(data.get("leveled_up")),
        old_level=data.get("old_level") or 1,
        new_level=data.get("new_level") or 1,
        current_xp=data.get("current_xp") or 0,
        xp_to_next_level=data.get("xp_to_next_level") or 0,
        total_xp=data.get("total_xp") or 0,
    )


class GamificationService:
    """XP awards, streaks, levels and bonus rules over the gamification tables"""

    def __init__(self, db: Client):
        self.db = db

    def award_xp(self, user_id: str, event_type: str, event_category: str, base_xp: int,
                 metadata: Optional[Dict[str, Any]] = None) -> XpAwardResult:
        """
        Award XP through the `award_xp` database function, which applies the
        streak multiplier, logs the event and handles level ups.
        """
        try:
            data = self.db.rpc("award_xp", {
                "p_user_id": user_id,
                "p_event_type": event_type,
                "p_event_category": event_category,
                "p_base_xp": base_xp,
                "p_event_metadata": metadata or {},
            }).execute().data
        except Exception as e:
            logger.error(f"Failed to award XP for {event_type}: {e}", extra={"user_id": user_id})
            raise DatabaseError("award_xp", str(e))

        result = _award_result(data or {})
        logger.info(
            f"XP awarded: {event_type} +{result.xp_awarded} (x{result.multiplier})",
            extra={"user_id": user_id},
        )
        if result.leveled_up:
            logger.info(f"Level up {result.old_level} -> {result.new_level}", extra={"user_id": user_id})
        return result

    def get_progress(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            result = self.db.table("user_gamification_progress").select("*") \
                .eq("user_id", user_id).maybe_single().execute()
        except Exception as e:
            raise DatabaseError("fetch_progress", str(e))
        progress = result.data if result is not None else None
        if not progress:
            return None

        milestone = self.get_level_milestone(progress.get("current_level") or 1)
        progress["milestone"] = milestone
        progress["streak_multiplier"] = get_streak_multiplier(progress.get("current_streak_days") or 0)
        return progress

    def get_level_milestone(self, level: int) -> Optional[Dict[str, Any]]:
        try:
            result = self.db.table("level_milestones").select("*").eq("level", level).maybe_single().execute()
        except Exception as e:
            logger.warning(f"Level milestone lookup failed: {e}")
            return None
        return result.data if result is not None else None

    def award_forge_action(self, user_id: str, action: str, action_id: Optional[str] = None) -> Dict[str, Any]:
        """Forge actions pay out on their first occurrence each day; repeats are recorded without XP"""
        today = datetime.utcnow().date().isoformat()
        try:
            existing = self.db.table("daily_actions_completion").select("id") \
                .eq("user_id", user_id) \
                .eq("action_id", action) \
                .eq("action_date", today) \
                .execute()
        except Exception as e:
            raise DatabaseError("fetch_daily_actions", str(e))

        occurrence = len(existing.data or []) + 1
        award = None
        if occurrence == 1:
            category = "culinary" if action in CULINARY_ACTIONS else "nutrition"
            award = self.award_xp(user_id, action, category, FORGE_XP_REWARDS[action],
                                  {"forge_action": action, "action_id": action_id})

        try:
            self.db.table("daily_actions_completion").insert({
                "user_id": user_id,
                "action_id": action,
                "action_date": today,
                "completed_at": datetime.utcnow().isoformat(),
                "xp_earned": award.xp_awarded if award else 0,
                "occurrence_number": occurrence,
                "is_first_of_day": occurrence == 1,
            }).execute()
        except Exception as e:
            logger.error(f"Failed to record forge action: {e}", extra={"user_id": user_id})

        if award is None:
            return {"awarded": False, "reason": "already_awarded_today", "award": None}
        return {"awarded": True, "reason": None, "award": award}

    def award_fasting_xp(self, user_id: str, session_id: str, duration_hours: float,
                         target_hours: float, outcome: str) -> Tuple[int, XpAwardResult]:
        base_xp, event_type = calculate_fasting_xp(duration_hours, target_hours, outcome == "success")
        award = self.award_xp(user_id, event_type, "fasting", base_xp, {
            "session_id": session_id,
            "outcome": outcome,
            "xp_breakdown": {
                "base_xp": base_xp,
                "duration_hours": duration_hours,
                "target_hours": target_hours,
                "completed": outcome == "success",
            },
        })
        return base_xp, award

    def update_weight(self, user_id: str, new_weight: float,
                      updated_from: str = "dashboard_gaming") -> Dict[str, Any]:
        """Record a weigh-in, update the profile and award XP (plus a milestone bonus toward the objective)"""
        try:
            result = self.db.table("user_profile").select("weight_kg, objective") \
                .eq("user_id", user_id).maybe_single().execute()
        except Exception as e:
            raise DatabaseError("fetch_profile", str(e))
        profile = (result.data if result is not None else None) or {}

        previous_weight = profile.get("weight_kg")
        delta = round(new_weight - previous_weight, 1) if previous_weight else None
        milestone, milestone_data = calculate_weight_milestone(previous_weight, new_weight, profile.get("objective"))
        total_xp = XP_VALUES["weight_update"] + (XP_VALUES["weight_milestone_bonus"] if milestone else 0)

        try:
            self.db.table("weight_updates_history").insert({
                "user_id": user_id,
                "previous_weight": previous_weight,
                "new_weight": new_weight,
                "weight_delta": delta,
                "updated_from": updated_from,
                "xp_awarded": total_xp,
                "is_milestone": milestone,
                "milestone_data": milestone_data,
            }).execute()
            self.db.table("user_profile").update({"weight_kg": new_weight}).eq("user_id", user_id).execute()
        except Exception as e:
            raise DatabaseError("update_weight", str(e))

        award = self.award_xp(user_id, "weight_update", "general", total_xp, {
            "previous_weight": previous_weight,
            "new_weight": new_weight,
            "weight_delta": delta,
            "is_milestone": milestone,
            **milestone_data,
        })
        return {
            "previous_weight_kg": previous_weight,
            "new_weight_kg": new_weight,
            "weight_delta_kg": delta or 0.0,
            "milestone_reached": milestone,
            "xp_base": total_xp,
            "award": award,
        }

    def claim_first_time_bonus(self, user_id: str, event_type: str) -> Dict[str, Any]:
        try:
            data = self.db.rpc("claim_first_time_bonus", {
                "p_user_id": user_id,
                "p_action_type": event_type,
                "p_base_xp": FIRST_TIME_BASE_XP[event_type],
            }).execute().data
        except Exception as e:
            logger.error(f"Error claiming first time bonus: {e}", extra={"user_id": user_id})
            return {"bonus_applicable": False, "bonus_xp": 0, "message": "rpc_error"}

        data = data or {}
        logger.info(f"First time bonus for {event_type}: {data.get('bonus_applicable')}", extra={"user_id": user_id})
        return {
            "bonus_applicable": bool(data.get("bonus_applicable")),
            "bonus_xp": data.get("bonus_xp") or 0,
            "message": data.get("message") or data.get("reason"),
        }

    def _events_since(self, user_id: str, since: datetime, until: Optional[datetime] = None) -> List[Dict[str, Any]]:
        query = self.db.table("xp_events_log").select("event_type, event_category, final_xp, event_date") \
            .eq("user_id", user_id) \
            .gte("event_date", since.isoformat())
        if until is not None:
            query = query.lt("event_date", until.isoformat())
        try:
            return query.execute().data or []
        except Exception as e:
            raise DatabaseError("fetch_xp_events", str(e))

    def get_xp_stats(self, user_id: str, days: int = 30) -> XpStats:
        if days <= 0:
            raise ValidationError("days must be positive", "days")
        events = self._events_since(user_id, datetime.utcnow() - timedelta(days=days))

        total = 0
        by_type: Dict[str, Dict[str, int]] = {}
        breakdown: Dict[str, int] = {}
        for event in events:
            xp = event.get("final_xp") or 0
            total += xp
            stats = by_type.setdefault(event.get("event_type"), {"count": 0, "total_xp": 0})
            stats["count"] += 1
            stats["total_xp"] += xp
            category = event.get("event_category") or "general"
            breakdown[category] = breakdown.get(category, 0) + xp

        top = sorted(
            ({"event_type": name, **stats} for name, stats in by_type.items()),
            key=lambda s: s["total_xp"],
            reverse=True,
        )[:5]
        return XpStats(
            total_xp=total,
            average_xp_per_day=round(total / days),
            days=days,
            top_events=top,
            breakdown=breakdown,
        )

    def get_active_rules(self, period: Optional[str] = None) -> List[BonusRule]:
        query = self.db.table("bonus_rules").select("*").eq("is_active", True)
        if period:
            query = query.eq("period", period)
        try:
            rows = query.execute().data or []
        except Exception as e:
            raise DatabaseError("fetch_bonus_rules", str(e))
        return [BonusRule(**row) for row in rows]

    def _existing_award(self, user_id: str, rule_id: str, period_start: date) -> Optional[Dict[str, Any]]:
        try:
            rows = self.db.table("bonus_awards").select("id") \
                .eq("user_id", user_id) \
                .eq("rule_id", rule_id) \
                .eq("period_start", period_start.isoformat()) \
                .execute().data
        except Exception as e:
            raise DatabaseError("fetch_bonus_awards", str(e))
        return rows[0] if rows else None

    def calculate_bonus_progress(self, user_id: str, rule: BonusRule,
                                 today: Optional[date] = None) -> BonusProgress:
        start, end = period_bounds(rule.period, today)
        events = self._events_since(
            user_id,
            datetime.combine(start, datetime.min.time()),
            datetime.combine(end + timedelta(days=1), datetime.min.time()),
        )
        current = measure_rule_progress(rule, events)
        eligible = current >= rule.threshold
        already_awarded = self._existing_award(user_id, rule.id, start) is not None

        if already_awarded:
            message = f"Bonus already earned: +{rule.xp_reward} XP"
        elif eligible:
            message = f"Bonus unlocked: +{rule.xp_reward} XP"
        else:
            message = f"{rule.threshold - current} more to unlock +{rule.xp_reward} XP"

        return BonusProgress(
            rule=rule,
            current_progress=current,
            required_progress=rule.threshold,
            progress_percentage=min(100.0, round(current / rule.threshold * 100, 1)),
            eligible=eligible,
            already_awarded=already_awarded,
            message=message,
        )

    def evaluate_bonuses(self, user_id: str, period: Optional[str] = None,
                         today: Optional[date] = None) -> List[BonusProgress]:
        """Progress on every active rule, awarding those newly met in their current period"""
        results = []
        for rule in self.get_active_rules(period):
            progress = self.calculate_bonus_progress(user_id, rule, today)
            if progress.eligible and not progress.already_awarded:
                if self.award_bonus(user_id, rule, today) is not None:
                    progress.already_awarded = True
                    progress.message = f"Bonus earned: +{rule.xp_reward} XP"
            results.append(progress)
        return results

    def award_bonus(self, user_id: str, rule: BonusRule, today: Optional[date] = None) -> Optional[BonusAward]:
        """
        Record a bonus award and credit its XP through the `award_bonus` database
        function, which does both in one transaction.

        Returns None when the period was already awarded or the call failed; a
        failed call leaves no award row, so the next evaluation retries it.
        """
        start, end = period_bounds(rule.period, today)
        try:
            data = self.db.rpc("award_bonus", {
                "p_user_id": user_id,
                "p_rule_id": rule.id,
                "p_rule_name": rule.rule_name,
                "p_period_start": start.isoformat(),
                "p_period_end": end.isoformat(),
                "p_xp_reward": rule.xp_reward,
            }).execute().data or {}
        except Exception as e:
            logger.error(f"Bonus {rule.rule_name} not awarded: {e}", extra={"user_id": user_id})
            return None

        if not data.get("awarded"):
            logger.info(f"Bonus {rule.rule_name} already awarded for {start}", extra={"user_id": user_id})
            return None

        xp = _award_result(data.get("xp") or {})
        logger.info(f"Bonus awarded: {rule.rule_name} +{xp.xp_awarded} XP", extra={"user_id": user_id})
        return BonusAward(
            id=data.get("award_id"),
            user_id=user_id,
            rule_id=rule.id,
            rule_name=rule.rule_name,
            period_start=start.isoformat(),
            period_end=end.isoformat(),
            xp_awarded=rule.xp_reward,
            awarded_at=data.get("awarded_at"),
        )

    def get_bonus_history(self, user_id: str, limit: int = 10) -> List[BonusAward]:
        try:
            rows = self.db.table("bonus_awards").select("*, bonus_rules(rule_name)") \
                .eq("user_id", user_id) \
                .order("awarded_at", desc=True) \
                .limit(limit) \
                .execute().data or []
        except Exception as e:
            raise DatabaseError("fetch_bonus_history", str(e))
        return [
            BonusAward(
                id=row.get("id"),
                user_id=row["user_id"],
                rule_id=row["rule_id"],
                rule_name=(row.get("bonus_rules") or {}).get("rule_name"),
                period_start=str(row["period_start"]),
                period_end=str(row["period_end"]),
                xp_awarded=row["xp_awarded"],
                awarded_at=row.get("awarded_at"),
            )
            for row in rows
        ]
