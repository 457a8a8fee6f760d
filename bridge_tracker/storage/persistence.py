from typing import Iterable
from sqlalchemy import select, func, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
import logging

from bridge_tracker.storage.models.bridge_event import BridgeEvent as BridgeEventRow
from bridge_tracker.storage.db_utils import dialect_insert
from bridge_tracker.utils.types import BridgeEvent

log = logging.getLogger(__name__)


def save_bridge_events(session_factory, events: Iterable[BridgeEvent]) -> dict:
    """Insert decoded events one row at a time, ignoring duplicates.

    A row that already exists for (tx_hash, log_index) counts as skipped;
    any other database error is logged and counted as failed so the caller
    can keep the range open for another pass.
    """
    inserted = 0
    skipped = 0
    failed = 0
    with session_factory() as db:
        for event in events:
            row = event.to_row()
            stmt = (
                dialect_insert(db, BridgeEventRow)
                .values(**row)
                .on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
            )
            try:
                result = db.execute(stmt)
                db.commit()
            except IntegrityError:
                db.rollback()
                skipped += 1
                continue
            except SQLAlchemyError as e:
                db.rollback()
                log.error(f"Failed to save event {row['tx_hash']}:{row['log_index']}: {e}")
                failed += 1
                continue

            if result.rowcount:
                inserted += 1
            else:
                skipped += 1

    if inserted or skipped or failed:
        log.info(f"Saved bridge events: {inserted} inserted, {skipped} skipped, {failed} failed")
    return {"inserted": inserted, "skipped": skipped, "failed": failed}


def count_unpriced_events(session_factory) -> int:
    with session_factory() as db:
        return db.execute(
            select(func.count())
            .select_from(BridgeEventRow)
            .where(BridgeEventRow.usd_value.is_(None), BridgeEventRow.bridge_type == "token")
        ).scalar_one()


def get_wallet_events(session_factory, wallet: str, limit: int = 100) -> list[BridgeEventRow]:
    with session_factory() as db:
        return list(db.execute(
            select(BridgeEventRow)
            .where(BridgeEventRow.wallet == wallet.lower())
            .order_by(desc(BridgeEventRow.block_number), desc(BridgeEventRow.log_index))
            .limit(limit)
        ).scalars())


def bridge_event_stats(session_factory) -> dict:
    """Event counts by bridge type and direction, plus how many still lack a price."""
    with session_factory() as db:
        rows = db.execute(
            select(BridgeEventRow.bridge_type, BridgeEventRow.direction, func.count())
            .group_by(BridgeEventRow.bridge_type, BridgeEventRow.direction)
        ).all()
    by_type: dict[str, dict[str, int]] = {}
    total = 0
    for bridge_type, direction, count in rows:
        by_type.setdefault(bridge_type, {"in": 0, "out": 0})[direction] = count
        total += count
    return {
        "total_events": total,
        "by_type": by_type,
        "events_needing_prices": count_unpriced_events(session_factory),
    }
