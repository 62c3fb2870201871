"""Provider account linking and the monetization flag."""

import pytest

from creatorpay.common.errors import NotFound, ProviderUnavailable


class TestRemoteLinking:
    def test_first_link_creates_account_and_returns_onboarding(self, accounts, creator, stripe_fake):
        link = accounts.link_account(creator, "stripe")

        assert link.status == "pending"
        assert link.url == f"https://stripe.test/onboard/acct_{creator}"
        assert stripe_fake.created_accounts == [f"acct_{creator}"]
        status = accounts.get_status(creator, "stripe")
        assert (status.status, status.external_account_id) == ("pending", f"acct_{creator}")

    def test_relink_reuses_account_and_returns_dashboard_when_active(self, accounts, creator, stripe_fake):
        accounts.link_account(creator, "stripe")
        stripe_fake.active_accounts.add(f"acct_{creator}")

        link = accounts.link_account(creator, "stripe")

        assert link.status == "active"
        assert link.url == f"https://stripe.test/dashboard/acct_{creator}"
        assert stripe_fake.created_accounts == [f"acct_{creator}"]

    def test_refresh_reads_remote_status(self, accounts, creator, stripe_fake):
        accounts.link_account(creator, "stripe")
        stripe_fake.active_accounts.add(f"acct_{creator}")

        assert accounts.get_status(creator, "stripe").status == "pending"
        assert accounts.get_status(creator, "stripe", refresh=True).status == "active"
        assert accounts.get_status(creator, "stripe").status == "active"

    def test_remote_failure_leaves_local_status_unchanged(self, accounts, creator, stripe_fake, monkeypatch):
        accounts.link_account(creator, "stripe")

        def unavailable(account_id):
            raise ProviderUnavailable("stripe down")

        monkeypatch.setattr(stripe_fake, "retrieve_account", unavailable)
        with pytest.raises(ProviderUnavailable):
            accounts.link_account(creator, "stripe")
        assert accounts.get_status(creator, "stripe").status == "pending"


class TestManualLinking:
    def test_held_funds_provider_starts_pending(self, accounts, creator, config):
        link = accounts.link_account(creator, "paypal")

        assert link.status == "pending"
        assert link.url == config.manual_onboarding_url
        assert accounts.get_status(creator, "paypal").status == "pending"

    def test_active_account_gets_dashboard(self, accounts, paypal_creator, config):
        link = accounts.link_account(paypal_creator, "paypal")

        assert link.status == "active"
        assert link.url == config.manual_dashboard_url


class TestAccountStatus:
    def test_reports_every_configured_provider(self, accounts, creator):
        accounts.link_account(creator, "paypal")

        report = accounts.get_account_status(creator)

        assert report.can_monetize is True
        assert {a.provider: a.status for a in report.accounts} == {"stripe": "none", "paypal": "pending"}

    def test_unknown_creator(self, accounts):
        report = accounts.get_account_status("nobody")
        assert report.can_monetize is False
        assert all(a.status == "none" for a in report.accounts)

    def test_flag_can_be_revoked(self, accounts, creator):
        assert accounts.set_can_monetize(creator, False).can_monetize is False

    def test_unknown_provider(self, accounts, creator):
        with pytest.raises(NotFound):
            accounts.link_account(creator, "venmo")
