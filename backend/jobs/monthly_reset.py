import logging
from datetime import datetime
from typing import Any, Dict, List

from dotenv import load_dotenv
from supabase import Client

from backend.api.database import SB
from backend.api.logging_config import DatabaseError, setup_logging
from backend.api.schemas import MonthlyResetResp, ResetResult
from backend.api.security import CSRFProtection, SessionManager

logger = logging.getLogger(__name__)


def fetch_subscription_plans(db: Client) -> Dict[str, Any]:
    try:
        result = db.table("token_pricing_config").select("subscription_plans") \
            .eq("is_active", True).maybe_single().execute()
    except Exception as e:
        raise DatabaseError("fetch_pricing_config", str(e))
    config = result.data if result is not None else None
    if not config:
        raise DatabaseError("fetch_pricing_config", "No active pricing config")
    return config.get("subscription_plans") or {}


def fetch_active_subscriptions(db: Client) -> List[Dict[str, Any]]:
    try:
        return db.table("user_subscriptions") \
            .select("id, user_id, plan_type, current_period_start, current_period_end, users:user_id(email)") \
            .eq("status", "active") \
            .execute().data or []
    except Exception as e:
        raise DatabaseError("fetch_subscriptions", str(e))


def reset_user(db: Client, subscription: Dict[str, Any], plans: Dict[str, Any]) -> ResetResult:
    user_id = subscription["user_id"]
    plan_type = subscription.get("plan_type") or "unknown"
    email = (subscription.get("users") or {}).get("email") or "unknown"

    plan = plans.get(plan_type)
    if not plan:
        logger.error(f"Invalid plan type {plan_type}", extra={"user_id": user_id})
        return ResetResult(user_id=user_id, email=email, plan_type=plan_type, success=False,
                           error="Invalid plan type")

    tokens = plan.get("tokens_per_month") or 0
    try:
        data = db.rpc("reset_subscription_tokens", {
            "p_user_id": user_id,
            "p_token_amount": tokens,
            "p_metadata": {
                "plan_type": plan_type,
                "subscription_id": subscription.get("id"),
                "reset_date": datetime.utcnow().isoformat(),
            },
        }).execute().data or {}
    except Exception as e:
        logger.error(f"Failed to reset tokens: {e}", extra={"user_id": user_id})
        return ResetResult(user_id=user_id, email=email, plan_type=plan_type, tokens_allocated=tokens,
                           success=False, error=str(e))

    if not data.get("success"):
        return ResetResult(user_id=user_id, email=email, plan_type=plan_type, tokens_allocated=tokens,
                           previous_balance=data.get("previous_balance") or 0,
                           new_balance=data.get("previous_balance") or 0,
                           success=False, error=data.get("error") or "Reset failed")

    logger.info(f"Reset {plan_type} subscription to {tokens} tokens", extra={"user_id": user_id})
    return ResetResult(
        user_id=user_id,
        email=email,
        plan_type=plan_type,
        tokens_allocated=tokens,
        previous_balance=data.get("previous_balance") or 0,
        new_balance=data.get("new_balance") or 0,
        success=True,
    )


def reset_monthly_tokens(db: Client) -> MonthlyResetResp:
    """
    Refill subscription tokens for every active subscription.

    One-time and bonus tokens carry over. A failure for one user is recorded in
    its result and the run continues.
    """
    plans = fetch_subscription_plans(db)
    subscriptions = fetch_active_subscriptions(db)
    if not subscriptions:
        logger.info("No active subscriptions to reset")
        return MonthlyResetResp(message="No active subscriptions to reset", count=0, successful=0,
                                failed=0, results=[])

    logger.info(f"Processing {len(subscriptions)} active subscriptions")
    results = [reset_user(db, subscription, plans) for subscription in subscriptions]
    successful = sum(1 for r in results if r.success)

    logger.info(f"Monthly reset completed: {successful} ok, {len(results) - successful} failed")
    return MonthlyResetResp(
        message="Monthly token reset completed",
        count=len(results),
        successful=successful,
        failed=len(results) - successful,
        results=results,
    )


def run_job():
    load_dotenv()
    setup_logging()
    db = SB.client()

    summary = reset_monthly_tokens(db)
    sessions = SessionManager(db).cleanup_expired_sessions()
    csrf_tokens = CSRFProtection(db).cleanup_expired_tokens()
    logger.info(
        f"Job finished: {summary.successful}/{summary.count} resets, "
        f"{sessions} expired sessions and {csrf_tokens} CSRF tokens removed"
    )
    return summary


if __name__ == "__main__":
    run_job()
