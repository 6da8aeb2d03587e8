import logging
from typing import Any, Dict, List, Optional

from supabase import Client

from backend.api.logging_config import DatabaseError, NotFoundError
from backend.api.schemas import GoalUpdate

logger = logging.getLogger(__name__)

STRENGTH_ACTIVITY_TYPES = ["musculation", "force", "strength", "weightlifting", "powerlifting", "crossfit"]


def is_strength_activity(activity_type: Optional[str]) -> bool:
    activity_type = (activity_type or "").lower()
    return any(kind in activity_type for kind in STRENGTH_ACTIVITY_TYPES)


def goal_contribution(goal: Dict[str, Any], activity: Dict[str, Any]) -> float:
    """How much one activity moves a goal, in the goal's own unit"""
    goal_type = goal.get("goal_type")
    unit = goal.get("unit")

    if goal_type == "volume":
        if unit in ("minutes", "min"):
            return activity.get("duration_min") or 0
        if unit == "sessions":
            return 1
        return 0

    if goal_type == "distance":
        distance = activity.get("distance_meters")
        if not distance:
            return 0
        if unit in ("km", "kilometers"):
            return distance / 1000
        if unit in ("m", "meters"):
            return distance
        return 0

    if goal_type == "endurance":
        # VO2max goals track the latest estimate, not a running sum
        if unit == "vo2max" and activity.get("vo2max_estimated"):
            return activity["vo2max_estimated"] - (goal.get("current_value") or 0)
        return 0

    if goal_type == "strength":
        if unit == "sessions" and is_strength_activity(activity.get("type")):
            return 1
        if unit == "total_load" and activity.get("training_load_score"):
            return activity["training_load_score"]
        return 0

    if goal_type == "frequency" and unit == "sessions_per_week":
        return 1

    return 0


class GoalSync:
    """Applies synced wearable activities to a user's active training goals"""

    def __init__(self, db: Client):
        self.db = db

    def _fetch_activity(self, user_id: str, activity_id: str) -> Dict[str, Any]:
        try:
            result = self.db.table("activities").select("*") \
                .eq("id", activity_id) \
                .eq("user_id", user_id) \
                .maybe_single() \
                .execute()
        except Exception as e:
            raise DatabaseError("fetch_activity", str(e))
        activity = result.data if result is not None else None
        if not activity:
            raise NotFoundError("Activity")
        return activity

    def _fetch_active_goals(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            return self.db.table("training_goals").select("*") \
                .eq("user_id", user_id) \
                .eq("is_active", True) \
                .execute().data or []
        except Exception as e:
            raise DatabaseError("fetch_goals", str(e))

    def sync(self, user_id: str, activity_id: str) -> List[GoalUpdate]:
        """
        Add the activity's contribution to every active goal.

        Goals reaching their target are marked completed and deactivated. A goal
        whose update fails is logged and skipped so the others still progress.
        """
        activity = self._fetch_activity(user_id, activity_id)
        results = []

        for goal in self._fetch_active_goals(user_id):
            value_added = goal_contribution(goal, activity)
            if not value_added:
                continue

            previous = goal.get("current_value") or 0
            new_value = previous + value_added
            target = goal.get("target_value") or 0
            progress = (new_value / target * 100) if target else 0
            completed = target > 0 and progress >= 100

            update = {"current_value": new_value}
            if completed:
                update.update({"status": "completed", "is_active": False})
            try:
                self.db.table("training_goals").update(update) \
                    .eq("id", goal["id"]) \
                    .eq("user_id", user_id) \
                    .execute()
            except Exception as e:
                logger.error(f"Failed to update goal {goal['id']}: {e}", extra={"user_id": user_id})
                continue

            if completed:
                logger.info(f"Goal completed: {goal.get('title')}", extra={"user_id": user_id})

            results.append(GoalUpdate(
                goal_id=goal["id"],
                goal_title=goal.get("title") or "",
                goal_type=goal.get("goal_type") or "",
                previous_value=previous,
                value_added=value_added,
                new_value=new_value,
                target_value=target,
                progress_percent=round(min(progress, 100), 1),
                completed=completed,
            ))

        logger.info(f"Synced activity {activity_id} into {len(results)} goals", extra={"user_id": user_id})
        return results
