"""Outbox claim, mark, requeue and the publisher loop against SQLite."""

import asyncio
from datetime import datetime, timedelta, timezone

from prometheus_client import REGISTRY
from sqlalchemy import select, update

from creatorpay.common.outbox import (
    OutboxPublisher,
    claim_outbox_batch,
    enqueue_event,
    mark_outbox_sent,
    requeue_outbox_event,
)
from creatorpay.services.monetization.models import OutboxEvent


class RecordingBus:
    """Stands in for `KafkaBus`; fails any topic listed in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.published = []

    async def publish(self, topic, event):
        if topic in self.failing:
            raise ConnectionError(f"broker unavailable for {topic}")
        self.published.append((topic, event))


def stage(session_factory, topic: str, aggregate_id: str, creator_id: str = "creator-1") -> None:
    with session_factory() as db:
        enqueue_event(
            db,
            OutboxEvent,
            topic=topic,
            aggregate_type="payout",
            aggregate_id=aggregate_id,
            creator_id=creator_id,
            payload={"amount_cents": 970},
        )
        db.commit()


def statuses(session_factory) -> dict[str, str]:
    with session_factory() as db:
        rows = db.execute(select(OutboxEvent.aggregate_id, OutboxEvent.status)).all()
    return {row.aggregate_id: row.status for row in rows}


class TestHelpers:
    def test_enqueue_wraps_payload_in_an_envelope(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1")

        with session_factory() as db:
            row = db.execute(select(OutboxEvent)).scalar_one()
        assert row.status == "PENDING"
        assert row.topic == "payouts.requested"
        assert row.payload["event_type"] == "payouts.requested"
        assert row.payload["aggregate_id"] == "po-1"
        assert row.payload["creator_id"] == "creator-1"
        assert row.payload["payload"] == {"amount_cents": 970}
        assert row.payload["event_id"]

    def test_claim_then_mark_sent(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1")
        stage(session_factory, "payouts.completed", "po-2")

        with session_factory() as db:
            claimed = claim_outbox_batch(db, OutboxEvent)
            db.commit()
        assert sorted(row["topic"] for row in claimed) == ["payouts.completed", "payouts.requested"]
        assert statuses(session_factory) == {"po-1": "PROCESSING", "po-2": "PROCESSING"}

        with session_factory() as db:
            # Claimed rows are not handed out again while in flight.
            assert claim_outbox_batch(db, OutboxEvent) == []
            mark_outbox_sent(db, OutboxEvent, claimed[0]["id"])
            requeue_outbox_event(db, OutboxEvent, claimed[1]["id"])
            db.commit()

        sent_id, requeued_id = (row["payload"]["aggregate_id"] for row in claimed)
        assert statuses(session_factory) == {sent_id: "SENT", requeued_id: "PENDING"}

    def test_claim_respects_limit(self, session_factory):
        for index in range(3):
            stage(session_factory, "transactions.completed", f"tx-{index}")

        with session_factory() as db:
            claimed = claim_outbox_batch(db, OutboxEvent, limit=2)
            db.commit()

        assert len(claimed) == 2
        assert sorted(statuses(session_factory).values()) == ["PENDING", "PROCESSING", "PROCESSING"]

    def test_stale_processing_rows_are_reclaimed(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1")
        with session_factory() as db:
            db.execute(
                update(OutboxEvent).values(
                    status="PROCESSING", sent_at=datetime.now(timezone.utc) - timedelta(minutes=5)
                )
            )
            db.commit()

        with session_factory() as db:
            claimed = claim_outbox_batch(db, OutboxEvent, processing_timeout_seconds=30)
            db.commit()

        assert [row["payload"]["aggregate_id"] for row in claimed] == ["po-1"]

    def test_sent_rows_are_never_requeued(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1")
        with session_factory() as db:
            [row] = claim_outbox_batch(db, OutboxEvent)
            mark_outbox_sent(db, OutboxEvent, row["id"])
            requeue_outbox_event(db, OutboxEvent, row["id"])
            db.commit()

        assert statuses(session_factory) == {"po-1": "SENT"}


class TestPublisher:
    def test_publishes_and_marks_sent(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1", creator_id="creator-7")
        stage(session_factory, "transactions.completed", "tx-1", creator_id="creator-7")
        bus = RecordingBus()
        publisher = OutboxPublisher(session_factory, OutboxEvent, bus, "monetization")

        sent = asyncio.run(publisher.publish_pending())

        assert sent == 2
        assert sorted(topic for topic, _ in bus.published) == ["payouts.requested", "transactions.completed"]
        assert {event.creator_id for _, event in bus.published} == {"creator-7"}
        assert set(statuses(session_factory).values()) == {"SENT"}
        assert asyncio.run(publisher.publish_pending()) == 0

    def test_failed_publish_is_requeued_and_retried(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1")
        stage(session_factory, "payouts.failed", "po-2")
        bus = RecordingBus(failing={"payouts.failed"})
        publisher = OutboxPublisher(session_factory, OutboxEvent, bus, "monetization")

        assert asyncio.run(publisher.publish_pending()) == 1
        assert statuses(session_factory) == {"po-1": "SENT", "po-2": "PENDING"}

        bus.failing.clear()
        assert asyncio.run(publisher.publish_pending()) == 1
        assert statuses(session_factory) == {"po-1": "SENT", "po-2": "SENT"}
        assert [topic for topic, _ in bus.published] == ["payouts.requested", "payouts.failed"]

    def test_backlog_gauge_counts_unsent_rows(self, session_factory):
        stage(session_factory, "payouts.requested", "po-1")
        publisher = OutboxPublisher(session_factory, OutboxEvent, RecordingBus(), "outbox-gauge-test")

        asyncio.run(publisher.publish_pending())

        # Measured right after the claim, before the row is published.
        assert REGISTRY.get_sample_value("outbox_pending_total", {"service": "outbox-gauge-test"}) == 1.0
