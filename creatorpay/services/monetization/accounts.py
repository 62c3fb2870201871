"""Provider account linking and creator account bookkeeping."""

from sqlalchemy import select

from creatorpay.common.config import MonetizationConfig
from creatorpay.common.db import unit_of_work
from creatorpay.common.logging import logger
from creatorpay.common.state_machine import ACCOUNT_TRANSITIONS, validate_transition
from creatorpay.services.monetization.models import CreatorAccount, ProviderAccount
from creatorpay.services.monetization.providers import ConnectedAccountProvider, ProviderEvent, ProviderRegistry
from creatorpay.services.monetization.schemas import (
    AccountStatusResponse,
    LinkResponse,
    ProviderAccountStatus,
)


def get_or_create_creator(db, creator_id: str, for_update: bool = False) -> CreatorAccount:
    """Load a creator account, creating it lazily on first use."""

    stmt = select(CreatorAccount).where(CreatorAccount.creator_id == creator_id)
    if for_update:
        stmt = stmt.with_for_update()
    account = db.execute(stmt).scalar_one_or_none()
    if account is None:
        account = CreatorAccount(creator_id=creator_id, can_monetize=False)
        db.add(account)
        db.flush()
    return account


def find_provider_account(db, creator_id: str, provider: str, for_update: bool = False) -> ProviderAccount | None:
    stmt = select(ProviderAccount).where(
        ProviderAccount.creator_id == creator_id,
        ProviderAccount.provider == provider,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


class AccountLinker:
    """Creates and refreshes creators' accounts at payment providers."""

    def __init__(
        self,
        session_factory,
        providers: ProviderRegistry,
        config: MonetizationConfig,
        service_name: str = "monetization",
    ) -> None:
        self.session_factory = session_factory
        self.providers = providers
        self.config = config
        self.service_name = service_name

    def _run(self, work):
        return unit_of_work(
            self.session_factory,
            work,
            attempts=self.config.storage_retry_attempts,
            service_name=self.service_name,
        )

    def _record(self, db, creator_id: str, provider: str, account_id: str | None, status: str) -> ProviderAccount:
        get_or_create_creator(db, creator_id)
        account = find_provider_account(db, creator_id, provider, for_update=True)
        if account is None:
            account = ProviderAccount(creator_id=creator_id, provider=provider, status="none")
            db.add(account)
        validate_transition(ACCOUNT_TRANSITIONS, account.status, status)
        if account_id is not None:
            account.external_account_id = account_id
        if account.status != status:
            logger.info(
                "provider account status creator_id=%s provider=%s from=%s to=%s",
                creator_id,
                provider,
                account.status,
                status,
            )
        account.status = status
        db.flush()
        return account

    def link_account(self, creator_id: str, provider_name: str) -> LinkResponse:
        """Start or continue onboarding; returns an onboarding or dashboard URL."""

        provider = self.providers.get(provider_name)
        if provider.capabilities.supports_direct_transfer:
            return self._link_remote(creator_id, provider)
        return self._link_manual(creator_id, provider.name)

    def _link_manual(self, creator_id: str, provider_name: str) -> LinkResponse:
        # Held-funds onboarding happens outside the platform; a provider
        # callback later confirms it and flips the status to active.
        def work(db) -> LinkResponse:
            existing = find_provider_account(db, creator_id, provider_name, for_update=True)
            if existing is not None and existing.status == "active":
                return LinkResponse(url=self.config.manual_dashboard_url, status="active")
            self._record(db, creator_id, provider_name, None, "pending")
            return LinkResponse(url=self.config.manual_onboarding_url, status="pending")

        return self._run(work)

    def _link_remote(self, creator_id: str, provider: ConnectedAccountProvider) -> LinkResponse:
        with self.session_factory() as db:
            existing = find_provider_account(db, creator_id, provider.name)
            account_id = existing.external_account_id if existing is not None else None

        if account_id is None:
            account_id = provider.create_account(creator_id)
            logger.info("remote account created creator_id=%s provider=%s", creator_id, provider.name)
            self._run(lambda db: self._record(db, creator_id, provider.name, account_id, "pending"))

        # Local status is only ever taken from a successful remote read.
        remote = provider.retrieve_account(account_id)
        status = "active" if remote.active else "pending"
        self._run(lambda db: self._record(db, creator_id, provider.name, account_id, status))
        if remote.active:
            return LinkResponse(url=provider.dashboard_url(account_id), status=status)
        return LinkResponse(url=provider.onboarding_url(account_id), status=status)

    def get_status(self, creator_id: str, provider_name: str, refresh: bool = False) -> ProviderAccountStatus:
        """Status of one provider account; `refresh` re-reads remote-capable providers."""

        provider = self.providers.get(provider_name)
        with self.session_factory() as db:
            account = find_provider_account(db, creator_id, provider.name)
            account_id = account.external_account_id if account is not None else None
            status = account.status if account is not None else "none"

        if refresh and account_id and provider.capabilities.supports_direct_transfer:
            remote = provider.retrieve_account(account_id)
            status = "active" if remote.active else "pending"
            self._run(lambda db: self._record(db, creator_id, provider.name, account_id, status))
        return ProviderAccountStatus(provider=provider.name, status=status, external_account_id=account_id)

    def get_account_status(self, creator_id: str) -> AccountStatusResponse:
        with self.session_factory() as db:
            creator = db.get(CreatorAccount, creator_id)
            rows = {
                row.provider: row
                for row in db.execute(
                    select(ProviderAccount).where(ProviderAccount.creator_id == creator_id)
                ).scalars()
            }
        accounts = []
        for name in self.providers.names():
            row = rows.get(name)
            accounts.append(
                ProviderAccountStatus(
                    provider=name,
                    status=row.status if row is not None else "none",
                    external_account_id=row.external_account_id if row is not None else None,
                )
            )
        return AccountStatusResponse(
            creator_id=creator_id,
            can_monetize=bool(creator.can_monetize) if creator is not None else False,
            accounts=accounts,
        )

    def set_can_monetize(self, creator_id: str, can_monetize: bool) -> AccountStatusResponse:
        """Entry point for the external eligibility rules (age, content volume, standing)."""

        def work(db) -> None:
            creator = get_or_create_creator(db, creator_id, for_update=True)
            creator.can_monetize = can_monetize

        self._run(work)
        logger.info("monetization flag creator_id=%s can_monetize=%s", creator_id, can_monetize)
        return self.get_account_status(creator_id)

    def apply_account_update(self, db, event: ProviderEvent) -> ProviderAccount | None:
        """Apply a provider account callback inside the caller's unit of work.

        Returns None when no local account matches, so the caller can record an
        orphan.
        """

        account = None
        if event.account_id:
            account = db.execute(
                select(ProviderAccount)
                .where(
                    ProviderAccount.provider == event.provider,
                    ProviderAccount.external_account_id == event.account_id,
                )
                .with_for_update()
            ).scalar_one_or_none()
        if account is None and event.creator_id:
            account = find_provider_account(db, event.creator_id, event.provider, for_update=True)
        if account is None:
            return None
        status = "active" if event.account_active else "pending"
        return self._record(db, account.creator_id, event.provider, event.account_id, status)
