"""
Token ledger: prices OpenAI usage, checks balances and debits/credits them
through the database functions that own the balance row.

Balances are only ever mutated by the `consume_tokens_atomic`, `add_tokens`
and `reset_subscription_tokens` database functions. This module never
writes `available_tokens` directly except when creating a missing row.
"""
import math
import uuid
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from supabase import Client

from .logging_config import InsufficientTokensError, DatabaseError, ValidationError
from .schemas import TokenCheckResult, TokenConsumptionRequest, TokenConsumptionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# USD per 1M tokens unless stated otherwise
OPENAI_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-5": {"input": 1.25, "output": 10.00},
    "gpt-5-mini": {"input": 0.25, "output": 2.00},
    "gpt-5-nano": {"input": 0.05, "output": 0.40},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "gpt-4": {"input": 30.00, "output": 60.00},
    "gpt-image-1": {"per_image": 0.015},
    "dall-e-3": {"per_image": 0.04, "per_image_hd": 0.08},
    "whisper-1": {"per_minute": 0.006},
    "tts-1": {"per_1m_chars": 15.00},
    "tts-1-hd": {"per_1m_chars": 30.00},
    "gpt-4o-realtime-preview": {"input": 5.00, "output": 20.00, "audio": 100.00},
}

PROFIT_MARGIN_MULTIPLIER = 5.0
TOKEN_USD_RATE = 0.001

# Flat charges when no usage or cost is known
ESTIMATED_OPERATION_COSTS = {
    "image-generation": 15,
    "audio-transcription": 10,
    "voice-realtime": 100,
    "chat-completion": 20,
    "body-scan-analysis": 150,
    "meal-analysis": 100,
    "training-analysis": 120,
}
DEFAULT_OPERATION_COST = 50

WELCOME_BONUS_TOKENS = 15000


def calculate_openai_cost(model: str,
                          input_tokens: Optional[int] = None,
                          output_tokens: Optional[int] = None,
                          audio_tokens: Optional[int] = None,
                          image_count: Optional[int] = None) -> float:
    """USD cost of one OpenAI call; unknown models cost nothing"""
    pricing = OPENAI_PRICING.get(model)
    if not pricing:
        return 0.0

    total = 0.0
    if "input" in pricing and input_tokens:
        total += input_tokens / 1_000_000 * pricing["input"]
    if "output" in pricing and output_tokens:
        total += output_tokens / 1_000_000 * pricing["output"]
    if "audio" in pricing and audio_tokens:
        total += audio_tokens / 1_000_000 * pricing["audio"]
    if "per_image" in pricing and image_count:
        total += image_count * pricing["per_image"]
    return total


def calculate_whisper_cost(duration_seconds: float) -> float:
    return (duration_seconds / 60) * OPENAI_PRICING["whisper-1"]["per_minute"]


def convert_usd_to_tokens(usd_amount: float) -> int:
    """Charge in tokens for a provider cost, margin included"""
    return math.ceil(usd_amount * PROFIT_MARGIN_MULTIPLIER / TOKEN_USD_RATE)


def compute_tokens_to_consume(request: TokenConsumptionRequest) -> Tuple[int, float]:
    """Return (tokens, provider cost in USD) for a consumption request"""
    if request.openai_model and (request.openai_input_tokens or request.openai_output_tokens):
        cost = calculate_openai_cost(
            request.openai_model,
            request.openai_input_tokens,
            request.openai_output_tokens,
        )
        return convert_usd_to_tokens(cost), cost
    if request.openai_cost_usd:
        return convert_usd_to_tokens(request.openai_cost_usd), request.openai_cost_usd
    tokens = ESTIMATED_OPERATION_COSTS.get(request.operation_type, DEFAULT_OPERATION_COST)
    return tokens, request.openai_cost_usd or 0.0


def _fetch_one(db: Client, table: str, columns: str, user_id: str) -> Optional[Dict[str, Any]]:
    result = db.table(table).select(columns).eq("user_id", user_id).maybe_single().execute()
    return result.data if result is not None else None


def get_subscription(db: Client, user_id: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(db, "user_subscriptions", "status, plan_type, stripe_subscription_id", user_id)


def check_token_balance(db: Client, user_id: str, required_tokens: int) -> TokenCheckResult:
    """
    Compare a user's balance with what an operation will cost.

    A missing balance row is created empty. Any database failure reports
    "not enough tokens" so callers never run an unpaid AI call.
    """
    try:
        balance = _fetch_one(db, "user_token_balance", "available_tokens, user_id", user_id)

        if balance is None:
            try:
                db.table("user_token_balance").insert({
                    "user_id": user_id,
                    "available_tokens": 0,
                    "subscription_tokens": 0,
                    "onetime_tokens": 0,
                    "bonus_tokens": 0,
                    "last_monthly_reset": datetime.utcnow().isoformat(),
                }).execute()
            except Exception as e:
                logger.error(f"Failed to create token balance: {e}", extra={"user_id": user_id})
                return TokenCheckResult(
                    has_enough_tokens=False,
                    required_tokens=required_tokens,
                    error="Failed to initialize token balance",
                )
            return TokenCheckResult(has_enough_tokens=False, required_tokens=required_tokens)

        subscription = get_subscription(db, user_id)
        status = subscription.get("status") if subscription else None
        available = balance.get("available_tokens") or 0

        return TokenCheckResult(
            has_enough_tokens=available >= required_tokens,
            current_balance=available,
            required_tokens=required_tokens,
            is_subscribed=status == "active",
            subscription_status=status,
        )
    except Exception as e:
        logger.error(f"Error fetching token balance: {e}", extra={"user_id": user_id})
        return TokenCheckResult(
            has_enough_tokens=False,
            required_tokens=required_tokens,
            error=str(e),
        )


def require_tokens(db: Client, user_id: str, required_tokens: int) -> TokenCheckResult:
    """check_token_balance that raises InsufficientTokensError on a shortfall"""
    check = check_token_balance(db, user_id, required_tokens)
    if not check.has_enough_tokens:
        logger.warning(
            "Insufficient tokens",
            extra={"user_id": user_id, "current_balance": check.current_balance, "required_tokens": required_tokens},
        )
        raise InsufficientTokensError(
            current_balance=check.current_balance,
            required_tokens=required_tokens,
            needs_upgrade=not check.is_subscribed,
        )
    return check


def log_token_consumption(request: TokenConsumptionRequest, tokens: int, cost_usd: float):
    logger.info(
        "TOKEN_CONSUMPTION",
        extra={
            "edge_function": request.edge_function_name,
            "user_id": request.user_id,
            "operation_type": request.operation_type,
            "openai_model": request.openai_model,
            "cost_usd": round(cost_usd, 6),
            "tokens_consumed": tokens,
            "margin_multiplier": PROFIT_MARGIN_MULTIPLIER,
            "margin_percentage": (PROFIT_MARGIN_MULTIPLIER - 1) / PROFIT_MARGIN_MULTIPLIER * 100,
            "profit_usd": round(cost_usd * (PROFIT_MARGIN_MULTIPLIER - 1), 6),
        },
    )


def _record_cost_analytics(db: Client, request: TokenConsumptionRequest, tokens: int, cost_usd: float):
    try:
        db.table("ai_cost_analytics").insert({
            "user_id": request.user_id,
            "edge_function_name": request.edge_function_name,
            "operation_type": request.operation_type,
            "openai_model": request.openai_model,
            "openai_cost_usd": cost_usd,
            "tokens_charged": tokens,
            "margin_multiplier": PROFIT_MARGIN_MULTIPLIER,
            "margin_percentage": (PROFIT_MARGIN_MULTIPLIER - 1) / PROFIT_MARGIN_MULTIPLIER * 100,
            "profit_usd": cost_usd * (PROFIT_MARGIN_MULTIPLIER - 1),
            "revenue_usd": tokens * TOKEN_USD_RATE,
        }).execute()
    except Exception as e:
        logger.error(f"Failed to record cost analytics: {e}", extra={"user_id": request.user_id})


def consume_tokens_atomic(db: Client,
                          request: TokenConsumptionRequest,
                          request_id: Optional[str] = None) -> TokenConsumptionResult:
    """
    Debit a user through the `consume_tokens_atomic` database function.

    `request_id` is the idempotence key: replaying it returns the original
    balance with `duplicate=True` and charges nothing. Never raises.
    """
    request_id = request_id or str(uuid.uuid4())
    tokens, cost_usd = compute_tokens_to_consume(request)

    try:
        data = db.rpc("consume_tokens_atomic", {
            "p_request_id": request_id,
            "p_user_id": request.user_id,
            "p_token_amount": tokens,
            "p_edge_function_name": request.edge_function_name,
            "p_operation_type": request.operation_type,
            "p_openai_model": request.openai_model,
            "p_openai_input_tokens": request.openai_input_tokens or None,
            "p_openai_output_tokens": request.openai_output_tokens or None,
            "p_openai_cost_usd": cost_usd or None,
            "p_metadata": request.metadata,
        }).execute().data
    except Exception as e:
        logger.error(
            f"Atomic consumption failed: {e}",
            extra={"user_id": request.user_id, "request_id": request_id, "edge_function": request.edge_function_name},
        )
        return TokenConsumptionResult(success=False, request_id=request_id, error=str(e))

    data = data or {}
    if not data.get("success"):
        if data.get("duplicate"):
            logger.info("Idempotent replay of token consumption", extra={"request_id": request_id})
            return TokenConsumptionResult(
                success=True,
                duplicate=True,
                remaining_balance=data.get("balance_after") or 0,
                request_id=request_id,
            )

        if data.get("error") == "rate_limit_exceeded":
            return TokenConsumptionResult(
                success=False,
                request_id=request_id,
                error=data.get("message"),
                retry_after_seconds=data.get("retry_after_seconds") or 5,
            )

        if data.get("error") == "insufficient_tokens":
            try:
                subscription = get_subscription(db, request.user_id)
            except Exception as e:
                logger.warning(f"Subscription lookup failed: {e}", extra={"user_id": request.user_id})
                subscription = None
            return TokenConsumptionResult(
                success=False,
                request_id=request_id,
                remaining_balance=data.get("available_tokens") or 0,
                error=data.get("message"),
                needs_upgrade=(subscription or {}).get("status") != "active",
            )

        return TokenConsumptionResult(
            success=False,
            request_id=request_id,
            error=data.get("message") or data.get("error") or "Token consumption failed",
        )

    log_token_consumption(request, tokens, cost_usd)
    _record_cost_analytics(db, request, tokens, cost_usd)

    return TokenConsumptionResult(
        success=True,
        remaining_balance=data.get("balance_after") or 0,
        consumed=data.get("tokens_consumed") or tokens,
        request_id=request_id,
    )


def add_tokens(db: Client, user_id: str, amount: int, source: str,
               metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Credit a user; returns the database function's reply"""
    if amount <= 0:
        raise ValidationError("Token amount must be positive", "amount")
    try:
        data = db.rpc("add_tokens", {
            "p_user_id": user_id,
            "p_token_amount": amount,
            "p_source": source,
            "p_metadata": metadata or {},
        }).execute().data
    except Exception as e:
        raise DatabaseError("add_tokens", str(e))
    logger.info(f"Added {amount} tokens from {source}", extra={"user_id": user_id})
    return data or {}


def with_token_consumption(db: Client,
                           user_id: str,
                           estimated_tokens: int,
                           operation: Callable[[], T],
                           build_request: Callable[[T], TokenConsumptionRequest],
                           request_id: Optional[str] = None) -> Tuple[T, TokenConsumptionResult]:
    """
    Pre-check, run `operation`, then debit using the request built from its result.

    A failed debit after a successful operation is logged, not raised, since the
    provider has already been paid.
    """
    require_tokens(db, user_id, estimated_tokens)
    value = operation()
    consumption = consume_tokens_atomic(db, build_request(value), request_id)
    if not consumption.success:
        logger.error(
            f"Token consumption failed after operation: {consumption.error}",
            extra={"user_id": user_id, "request_id": consumption.request_id},
        )
    return value, consumption


def get_token_balance(db: Client, user_id: str) -> Optional[Dict[str, Any]]:
    try:
        return _fetch_one(db, "user_token_balance", "*", user_id)
    except Exception as e:
        raise DatabaseError("fetch_balance", str(e))


def _log_anomaly(db: Client, user_id: str, anomaly_type: str, severity: str, details: Dict[str, Any]):
    try:
        db.table("token_anomalies").insert({
            "user_id": user_id,
            "anomaly_type": anomaly_type,
            "severity": severity,
            "details": details,
            "detected_at": datetime.utcnow().isoformat(),
        }).execute()
    except Exception as e:
        logger.error(f"Failed to record token anomaly: {e}", extra={"user_id": user_id})


def initialize_token_balance(db: Client, user_id: str) -> Tuple[Dict[str, Any], bool]:
    """
    Give a new user their welcome balance.

    Returns (balance row, created). Calling it again for the same user is a no-op.
    """
    existing = get_token_balance(db, user_id)
    if existing is not None:
        return existing, False

    now = datetime.utcnow()
    try:
        inserted = db.table("user_token_balance").insert({
            "user_id": user_id,
            "available_tokens": WELCOME_BONUS_TOKENS,
            "subscription_tokens": 0,
            "onetime_tokens": 0,
            "bonus_tokens": WELCOME_BONUS_TOKENS,
            "tokens_consumed_this_month": 0,
            "tokens_consumed_last_month": 0,
            "last_monthly_reset": now.isoformat(),
        }).execute()
        balance = inserted.data[0] if inserted.data else {
            "user_id": user_id,
            "available_tokens": WELCOME_BONUS_TOKENS,
            "bonus_tokens": WELCOME_BONUS_TOKENS,
        }

        if get_subscription(db, user_id) is None:
            db.table("user_subscriptions").insert({
                "user_id": user_id,
                "plan_type": "free",
                "status": "trialing",
                "tokens_monthly_quota": WELCOME_BONUS_TOKENS,
                "current_period_start": now.isoformat(),
                "current_period_end": (now + timedelta(days=365)).isoformat(),
            }).execute()

        db.table("token_transactions").insert({
            "user_id": user_id,
            "transaction_type": "bonus",
            "token_amount": WELCOME_BONUS_TOKENS,
            "balance_after": WELCOME_BONUS_TOKENS,
            "source": "welcome_bonus",
            "metadata": {"reason": "initial_balance"},
        }).execute()
    except Exception as e:
        _log_anomaly(db, user_id, "balance_initialization_failed", "high", {"error": str(e)})
        raise DatabaseError("initialize_balance", str(e))

    _log_anomaly(db, user_id, "balance_initialized", "low", {"tokens": WELCOME_BONUS_TOKENS})
    logger.info("Token balance initialized", extra={"user_id": user_id, "tokens_consumed": 0})
    return balance, True
