import re
import pathlib

FUNCTIONS_SQL = pathlib.Path(__file__).parent.parent / "db" / "functions.sql"

WELCOME_ROW = {
    "available_tokens": 15000,
    "subscription_tokens": 0,
    "onetime_tokens": 0,
    "bonus_tokens": 15000,
    "tokens_consumed_this_month": 0,
    "tokens_consumed_last_month": 0,
}


def function_body(name):
    text = FUNCTIONS_SQL.read_text(encoding="utf-8")
    start = text.index(f"CREATE OR REPLACE FUNCTION {name}(")
    return text[start:text.index("$$;", start)]


def balance_assignments(name):
    """(column, expression) pairs of the user_token_balance UPDATE in a database function"""
    match = re.search(r"UPDATE user_token_balance\s+SET (.*?)\n\s+WHERE", function_body(name), re.S)
    pairs = []
    for assignment in re.split(r",\s*\n", match.group(1)):
        column, expression = assignment.split("=", 1)
        if "now()" not in expression:
            pairs.append((column.strip(), expression.strip()))
    return pairs


def run_update(name, row, **params):
    """Evaluate the UPDATE with Postgres semantics: every right-hand side reads the old row"""
    scope = dict(row, LEAST=min, GREATEST=max, **params)
    updated = dict(row)
    for column, expression in balance_assignments(name):
        updated[column] = eval(expression, {"__builtins__": {}}, scope)
    return updated


def consume(row, amount):
    assert row["available_tokens"] >= amount
    return run_update("consume_tokens_atomic", row, p_token_amount=amount)


def reset(row, amount):
    return run_update("reset_subscription_tokens", row, p_token_amount=amount)


def bucket_total(row):
    return row["subscription_tokens"] + row["onetime_tokens"] + row["bonus_tokens"]


class TestLedgerFunctions:
    """Balance arithmetic of the ledger database functions"""

    def test_debit_is_conditional(self):
        assert "AND available_tokens >= p_token_amount" in function_body("consume_tokens_atomic")

    def test_debit_drains_subscription_then_onetime_then_bonus(self):
        row = dict(WELCOME_ROW, available_tokens=180, subscription_tokens=100, onetime_tokens=50, bonus_tokens=30)

        row = consume(row, 120)
        assert (row["subscription_tokens"], row["onetime_tokens"], row["bonus_tokens"]) == (0, 30, 30)
        assert row["available_tokens"] == 60

        row = consume(row, 50)
        assert (row["subscription_tokens"], row["onetime_tokens"], row["bonus_tokens"]) == (0, 0, 10)
        assert row["available_tokens"] == 10
        assert row["tokens_consumed_this_month"] == 170

    def test_consume_then_reset_carries_only_unspent_tokens(self):
        row = consume(WELCOME_ROW, 14000)
        assert row["bonus_tokens"] == 1000

        row = reset(row, 15000)
        assert row["available_tokens"] == 16000
        assert row["subscription_tokens"] == 15000
        assert row["tokens_consumed_last_month"] == 14000
        assert row["tokens_consumed_this_month"] == 0
        assert bucket_total(row) == row["available_tokens"]

    def test_reset_replaces_unspent_subscription_tokens(self):
        row = dict(WELCOME_ROW, available_tokens=150000 + 2000, subscription_tokens=150000, onetime_tokens=2000,
                   bonus_tokens=0)
        row = consume(row, 1000)
        row = reset(row, 150000)
        assert row["available_tokens"] == 152000
        assert row["onetime_tokens"] == 2000

    def test_reset_caps_carry_over_on_drifted_rows(self):
        drifted = dict(WELCOME_ROW, available_tokens=1000)
        row = reset(drifted, 15000)
        assert row["available_tokens"] == 16000
        assert bucket_total(row) == row["available_tokens"]

    def test_buckets_always_sum_to_available(self):
        row = dict(WELCOME_ROW)
        for amount in (30, 4000, 15, 900):
            row = consume(row, amount)
            assert bucket_total(row) == row["available_tokens"]
        row = reset(row, 350000)
        assert bucket_total(row) == row["available_tokens"]
        row = consume(row, 351000)
        assert bucket_total(row) == row["available_tokens"] >= 0
