# Overview: Pytest coverage for the flask CLI command groups.

from posledger.models import Sale
from posledger.services import loyalty_service, settings_service


def test_system_init_is_repeatable(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "init", "--opening-main", "10000"])
    second = runner.invoke(args=["system", "init"])

    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert "Created loyalty rule v1" in first.output
    assert "Using loyalty rule v1" in second.output
    assert loyalty_service.get_active_rule().version == 1


def test_ledger_balance_prints_funds(app, db_session):
    runner = app.test_cli_runner()
    runner.invoke(args=["system", "init", "--opening-petty", "1250"])

    result = runner.invoke(args=["ledger", "balance"])
    assert result.exit_code == 0
    assert "petty: 12.50" in result.output
    assert "total: 12.50" in result.output


def test_reconcile_exit_code(app, db_session):
    runner = app.test_cli_runner()
    assert runner.invoke(args=["ledger", "reconcile"]).exit_code == 0

    db_session.add(Sale(
        receipt_number="LEGACY-9",
        subtotal_cents=100,
        discount_cents=0,
        total_amount_cents=100,
        payment_method="cash",
        payment_status="paid",
        return_status="none",
    ))
    db_session.commit()

    result = runner.invoke(args=["ledger", "reconcile"])
    assert result.exit_code == 1
    assert "FAIL missing_cash_entries: 1 issue(s)" in result.output


def test_set_return_window_and_rule(app, db_session):
    runner = app.test_cli_runner()

    assert runner.invoke(args=["system", "set-return-window", "14"]).exit_code == 0
    assert settings_service.get_return_window_days() == 14

    result = runner.invoke(args=["loyalty", "set-rule", "--bps", "5000"])
    assert result.exit_code == 0
    assert loyalty_service.get_active_rule().points_per_currency_bps == 5000
