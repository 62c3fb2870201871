"""Bounded storage retries in `unit_of_work`."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from creatorpay.common.db import unit_of_work
from creatorpay.common.errors import ConcurrencyConflict, TransientStorageError
from creatorpay.services.monetization.models import CreatorAccount


def locked() -> OperationalError:
    return OperationalError("UPDATE balances", {}, Exception("database is locked"))


class FlakyWork:
    """Raises the queued errors one per call, then writes a creator row."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self, db):
        self.calls += 1
        db.add(CreatorAccount(creator_id=f"creator-{self.calls}"))
        db.flush()
        if self.errors:
            raise self.errors.pop(0)
        return self.calls


def creator_ids(session_factory) -> list[str]:
    with session_factory() as db:
        return list(db.execute(select(CreatorAccount.creator_id).order_by(CreatorAccount.creator_id)).scalars())


@pytest.mark.parametrize("error", [ConcurrencyConflict("version moved"), locked()])
def test_contention_is_retried_until_it_succeeds(session_factory, error):
    work = FlakyWork(error, error)

    result = unit_of_work(session_factory, work, attempts=3, backoff_seconds=0)

    assert result == 3
    # Failed attempts were rolled back; only the last write is kept.
    assert creator_ids(session_factory) == ["creator-3"]


def test_exhausted_retries_surface_as_transient_storage_error(session_factory):
    work = FlakyWork(locked(), locked(), locked())

    with pytest.raises(TransientStorageError) as excinfo:
        unit_of_work(session_factory, work, attempts=3, backoff_seconds=0)

    assert work.calls == 3
    assert excinfo.value.retryable
    assert excinfo.value.http_status == 503
    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert creator_ids(session_factory) == []


def test_other_errors_are_not_retried(session_factory):
    work = FlakyWork(ValueError("bad input"))

    with pytest.raises(ValueError):
        unit_of_work(session_factory, work, attempts=3, backoff_seconds=0)

    assert work.calls == 1
    assert creator_ids(session_factory) == []
