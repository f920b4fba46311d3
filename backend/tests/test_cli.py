# Overview: Smoke tests for the Flask CLI command groups.

from billing_core.services import wallet_service


class TestWalletCommands:
    def test_deposit_and_show(self, app, db_session, company):
        runner = app.test_cli_runner()

        result = runner.invoke(args=[
            "wallets", "deposit", "--company-id", str(company.id), "--amount", "1000.00", "--reference", "PAY-1",
        ])
        assert result.exit_code == 0
        assert "PASS Deposited 1000.00 EGP (bonus 200.00 EGP); balance 1200.00 EGP" in result.output

        result = runner.invoke(args=[
            "wallets", "deposit", "--company-id", str(company.id), "--amount", "1000.00", "--reference", "PAY-1",
        ])
        assert "WARN Reference 'PAY-1' already recorded" in result.output
        assert wallet_service.get_balance(company.id).balance_cents == 120_000

        result = runner.invoke(args=["wallets", "show", "--company-id", str(company.id)])
        assert result.exit_code == 0
        assert "Balance:   1200.00 EGP" in result.output
        assert "BONUS" in result.output

    def test_deposit_rejects_bad_amount(self, app, db_session, company):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "wallets", "deposit", "--company-id", str(company.id), "--amount", "10.001",
        ])
        assert result.exit_code != 0
        assert wallet_service.get_wallet_stats()["active_wallets"] == 0


class TestCatalogCommands:
    def test_add_app_and_list(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "catalog", "add-app", "--slug", "crm", "--name", "CRM", "--price", "150.00",
        ])
        assert "PASS Created app: crm" in result.output

        result = runner.invoke(args=[
            "catalog", "add-app", "--slug", "leads", "--name", "Leads", "--price", "50", "--requires", "crm",
        ])
        assert "PASS Created app: leads" in result.output

        result = runner.invoke(args=["catalog", "list"])
        assert "crm" in result.output
        assert "requires: crm" in result.output

    def test_add_bundle_unknown_app(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "catalog", "add-bundle", "--slug", "suite", "--name", "Suite", "--apps", "nope", "--price", "10",
        ])
        assert "FAIL" in result.output


class TestBillingCommands:
    def test_run_cycle_nothing_due(self, app, db_session, company):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["billing", "run-cycle", "--now", "2026-01-10T00:00:00Z", "--no-usage"])
        assert result.exit_code == 0
        assert "Nothing due." in result.output

    def test_reconcile_reports_pass(self, app, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        runner = app.test_cli_runner()
        result = runner.invoke(args=["billing", "reconcile"])
        assert "PASS 1 wallets reconciled" in result.output
