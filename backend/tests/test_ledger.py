import json
import logging
import pytest
from unittest.mock import MagicMock

from backend.api.ledger import (
    calculate_openai_cost, calculate_whisper_cost, convert_usd_to_tokens, compute_tokens_to_consume,
    check_token_balance, require_tokens, consume_tokens_atomic, add_tokens, with_token_consumption,
    initialize_token_balance, WELCOME_BONUS_TOKENS
)
from backend.api.logging_config import InsufficientTokensError, ValidationError, DatabaseError, StructuredFormatter
from backend.api.schemas import TokenConsumptionRequest
from backend.tests.fakes import USER_ID, make_db, make_table, rpc_params


def consumption_request(**overrides):
    fields = {
        "user_id": USER_ID,
        "edge_function_name": "recipe-detail-generator",
        "operation_type": "recipe_detail_enrichment",
        "openai_model": "gpt-5-mini",
        "openai_input_tokens": 1000,
        "openai_output_tokens": 500,
    }
    fields.update(overrides)
    return TokenConsumptionRequest(**fields)


class TestPricing:
    """Provider cost and token conversion"""

    def test_openai_cost_per_million(self):
        assert calculate_openai_cost("gpt-5-mini", 1_000_000, 1_000_000) == pytest.approx(2.25)
        assert calculate_openai_cost("gpt-4o-mini", 1_000_000, 0) == pytest.approx(0.15)

    def test_unknown_model_costs_nothing(self):
        assert calculate_openai_cost("not-a-model", 1000, 1000) == 0.0

    def test_whisper_cost_per_minute(self):
        assert calculate_whisper_cost(60) == pytest.approx(0.006)
        assert calculate_whisper_cost(30) == pytest.approx(0.003)

    def test_usd_to_tokens_rounds_up_with_margin(self):
        # 0.0021 USD * 5 margin / 0.001 USD per token = 10.5
        assert convert_usd_to_tokens(0.0021) == 11
        assert convert_usd_to_tokens(0) == 0

    def test_tokens_from_usage(self):
        tokens, cost = compute_tokens_to_consume(consumption_request())
        assert cost == pytest.approx(0.00125)
        assert tokens == 7

    def test_tokens_from_declared_cost(self):
        request = consumption_request(openai_input_tokens=None, openai_output_tokens=None, openai_cost_usd=0.0021)
        assert compute_tokens_to_consume(request) == (11, 0.0021)

    def test_tokens_from_operation_estimate(self):
        request = consumption_request(openai_model=None, openai_input_tokens=None, openai_output_tokens=None,
                                      operation_type="audio-transcription")
        assert compute_tokens_to_consume(request)[0] == 10

        request = consumption_request(openai_model=None, openai_input_tokens=None, openai_output_tokens=None,
                                      operation_type="something-else")
        assert compute_tokens_to_consume(request)[0] == 50


class TestBalanceChecks:
    """Pre-checks before paid operations"""

    def test_enough_tokens(self):
        db = make_db({
            "user_token_balance": make_table({"available_tokens": 100, "user_id": USER_ID}),
            "user_subscriptions": make_table({"status": "active", "plan_type": "pro_19"}),
        })
        check = check_token_balance(db, USER_ID, 30)
        assert check.has_enough_tokens
        assert check.current_balance == 100
        assert check.is_subscribed

    def test_missing_balance_row_is_created_empty(self):
        db = make_db()
        check = check_token_balance(db, USER_ID, 30)
        assert not check.has_enough_tokens
        inserted = db.tables["user_token_balance"].insert.call_args[0][0]
        assert inserted["available_tokens"] == 0

    def test_database_failure_reports_not_enough(self):
        db = make_db({"user_token_balance": make_table(sequence=[Exception("connection reset")])})
        check = check_token_balance(db, USER_ID, 30)
        assert not check.has_enough_tokens
        assert "connection reset" in check.error

    def test_require_tokens_raises_with_upgrade_hint(self):
        db = make_db({"user_token_balance": make_table({"available_tokens": 5, "user_id": USER_ID})})
        with pytest.raises(InsufficientTokensError) as exc_info:
            require_tokens(db, USER_ID, 30)
        error = exc_info.value
        assert error.status_code == 402
        assert error.needs_upgrade
        assert error.details == {
            "currentBalance": 5,
            "requiredTokens": 30,
            "needsUpgrade": True,
            "message": error.message,
        }


class TestAtomicConsumption:
    """Debits through the consume_tokens_atomic database function"""

    def test_success_records_analytics(self):
        db = make_db(rpc={"consume_tokens_atomic": {"success": True, "tokens_consumed": 7, "balance_after": 93}})
        result = consume_tokens_atomic(db, consumption_request(), "req-1")

        assert result.success
        assert result.consumed == 7
        assert result.remaining_balance == 93
        params = rpc_params(db, "consume_tokens_atomic")[0]
        assert params["p_request_id"] == "req-1"
        assert params["p_token_amount"] == 7
        assert params["p_openai_model"] == "gpt-5-mini"
        analytics = db.tables["ai_cost_analytics"].insert.call_args[0][0]
        assert analytics["tokens_charged"] == 7
        assert analytics["margin_multiplier"] == 5.0

    def test_generates_request_id_when_missing(self):
        db = make_db(rpc={"consume_tokens_atomic": {"success": True, "tokens_consumed": 7, "balance_after": 93}})
        result = consume_tokens_atomic(db, consumption_request())
        assert result.request_id
        assert rpc_params(db, "consume_tokens_atomic")[0]["p_request_id"] == result.request_id

    def test_duplicate_request_is_not_charged_again(self):
        db = make_db(rpc={"consume_tokens_atomic": {"success": False, "duplicate": True, "balance_after": 93}})
        result = consume_tokens_atomic(db, consumption_request(), "req-1")

        assert result.success
        assert result.duplicate
        assert result.consumed == 0
        assert result.remaining_balance == 93
        assert "ai_cost_analytics" not in db.tables

    def test_insufficient_tokens(self):
        db = make_db(rpc={"consume_tokens_atomic": {
            "success": False, "error": "insufficient_tokens", "message": "Insufficient tokens", "available_tokens": 3,
        }})
        result = consume_tokens_atomic(db, consumption_request(), "req-1")

        assert not result.success
        assert result.remaining_balance == 3
        assert result.needs_upgrade

    def test_rate_limited(self):
        db = make_db(rpc={"consume_tokens_atomic": {
            "success": False, "error": "rate_limit_exceeded", "message": "slow down", "retry_after_seconds": 5,
        }})
        result = consume_tokens_atomic(db, consumption_request(), "req-1")
        assert not result.success
        assert result.retry_after_seconds == 5

    def test_rpc_failure_never_raises(self):
        db = make_db(rpc={"consume_tokens_atomic": Exception("timeout")})
        result = consume_tokens_atomic(db, consumption_request(), "req-1")
        assert not result.success
        assert result.error == "timeout"

    def test_consumption_log_line_carries_margin(self, caplog):
        caplog.set_level(logging.INFO, logger="backend.api.ledger")
        db = make_db(rpc={"consume_tokens_atomic": {"success": True, "tokens_consumed": 7, "balance_after": 93}})
        consume_tokens_atomic(db, consumption_request(), "req-1")

        record = next(r for r in caplog.records if r.getMessage() == "TOKEN_CONSUMPTION")
        line = json.loads(StructuredFormatter().format(record))
        assert line["openai_model"] == "gpt-5-mini"
        assert line["margin_multiplier"] == 5.0
        assert line["margin_percentage"] == pytest.approx(80.0)
        assert line["profit_usd"] == pytest.approx(0.005)


class TestCredits:

    def test_add_tokens_rejects_non_positive(self):
        with pytest.raises(ValidationError):
            add_tokens(make_db(), USER_ID, 0, "purchase")

    def test_add_tokens(self):
        db = make_db(rpc={"add_tokens": {"success": True, "balance_after": 1000}})
        assert add_tokens(db, USER_ID, 500, "purchase", {"pack": "pack_19"})["balance_after"] == 1000
        params = rpc_params(db, "add_tokens")[0]
        assert params["p_token_amount"] == 500
        assert params["p_source"] == "purchase"

    def test_add_tokens_database_failure(self):
        db = make_db(rpc={"add_tokens": Exception("down")})
        with pytest.raises(DatabaseError):
            add_tokens(db, USER_ID, 500, "purchase")


class TestWithTokenConsumption:

    def test_operation_skipped_without_tokens(self):
        db = make_db({"user_token_balance": make_table({"available_tokens": 0, "user_id": USER_ID})})
        operation = MagicMock()
        with pytest.raises(InsufficientTokensError):
            with_token_consumption(db, USER_ID, 15, operation, lambda value: consumption_request())
        operation.assert_not_called()
        assert rpc_params(db, "consume_tokens_atomic") == []

    def test_debits_after_operation(self):
        db = make_db(
            {"user_token_balance": make_table({"available_tokens": 100, "user_id": USER_ID})},
            {"consume_tokens_atomic": {"success": True, "tokens_consumed": 7, "balance_after": 93}},
        )
        value, consumption = with_token_consumption(
            db, USER_ID, 15, lambda: "done", lambda value: consumption_request(metadata={"value": value}), "req-9"
        )
        assert value == "done"
        assert consumption.consumed == 7
        assert rpc_params(db, "consume_tokens_atomic")[0]["p_metadata"] == {"value": "done"}

    def test_failed_debit_still_returns_value(self):
        db = make_db(
            {"user_token_balance": make_table({"available_tokens": 100, "user_id": USER_ID})},
            {"consume_tokens_atomic": Exception("timeout")},
        )
        value, consumption = with_token_consumption(db, USER_ID, 15, lambda: "done", lambda v: consumption_request())
        assert value == "done"
        assert not consumption.success


class TestInitializeBalance:

    def test_existing_balance_is_left_alone(self):
        row = {"user_id": USER_ID, "available_tokens": 42}
        db = make_db({"user_token_balance": make_table(row)})
        balance, created = initialize_token_balance(db, USER_ID)
        assert balance == row
        assert not created
        db.tables["user_token_balance"].insert.assert_not_called()

    def test_new_user_gets_welcome_bonus(self):
        row = {"user_id": USER_ID, "available_tokens": WELCOME_BONUS_TOKENS, "bonus_tokens": WELCOME_BONUS_TOKENS}
        db = make_db({"user_token_balance": make_table(sequence=[None, [row]])})
        balance, created = initialize_token_balance(db, USER_ID)

        assert created
        assert balance["available_tokens"] == WELCOME_BONUS_TOKENS
        subscription = db.tables["user_subscriptions"].insert.call_args[0][0]
        assert subscription["plan_type"] == "free"
        transaction = db.tables["token_transactions"].insert.call_args[0][0]
        assert transaction["token_amount"] == WELCOME_BONUS_TOKENS
        assert transaction["source"] == "welcome_bonus"

    def test_insert_failure_records_anomaly(self):
        db = make_db({"user_token_balance": make_table(sequence=[None, Exception("duplicate key")])})
        with pytest.raises(DatabaseError):
            initialize_token_balance(db, USER_ID)
        anomaly = db.tables["token_anomalies"].insert.call_args[0][0]
        assert anomaly["anomaly_type"] == "balance_initialization_failed"
