import argparse
import asyncio
from typing import Optional

from email_queue.config import settings
from email_queue.database import SessionLocal, engine, init_db
from email_queue.exceptions import NotFoundError, PersistenceError, TransportUnavailable
from email_queue.schemas import DrainSummary
from email_queue.services.delivery import DeliveryOutcome, attempt_delivery
from email_queue.store import MessageStore
from email_queue.transport import Transport, build_transport
from email_queue.utils.logger import get_logger

logger = get_logger("worker")

DEFAULT_BATCH_SIZE = 10


async def drain_queue(
    store: MessageStore,
    transport: Optional[Transport],
    limit: int = DEFAULT_BATCH_SIZE,
) -> DrainSummary:
    """Attempt delivery for up to ``limit`` eligible messages, one at a time.

    Records are processed in selection order (priority, then age). A storage
    error on one record is logged and the batch moves on. ``failed`` counts
    only records that reached the terminal failed status during this call.
    """
    if transport is None:
        raise TransportUnavailable("transport not configured")
    transport.ensure_available()

    batch = store.select_eligible_for_delivery(limit)
    summary = DrainSummary(total=len(batch))
    if not batch:
        logger.info("drain_empty")
        return summary

    logger.info("drain_started", extra={"total": summary.total, "limit": limit})

    for position, record in enumerate(batch):
        try:
            attempt = await attempt_delivery(store, transport, record)
        except TransportUnavailable as e:
            logger.warning(
                "drain_transport_unavailable",
                extra={"email_id": record.id, "remaining": summary.total - position, "error": str(e)},
            )
            break
        except (PersistenceError, NotFoundError) as e:
            logger.error("drain_record_aborted", extra={"email_id": record.id, "error": str(e)})
            continue

        if attempt.outcome == DeliveryOutcome.sent:
            summary.sent += 1
        elif attempt.outcome == DeliveryOutcome.failed:
            summary.failed += 1

    logger.info("drain_completed", extra=summary.model_dump())
    return summary


async def main(limit: Optional[int] = None):
    """Run a single drain. Meant for cron or a platform scheduler."""
    init_db(engine)
    store = MessageStore(SessionLocal)
    transport = build_transport(settings)
    if transport is None:
        logger.error("drain_aborted", extra={"error": "transport not configured"})
        raise SystemExit(1)
    try:
        return await drain_queue(store, transport, limit or settings.drain_batch_size)
    finally:
        await transport.aclose()


def run(argv=None):
    """CLI entry point. Prints the drain summary; exits 1 if any email failed for good."""
    parser = argparse.ArgumentParser(description="Deliver pending queued emails once.")
    parser.add_argument("--limit", type=int, default=None, help="maximum number of emails to attempt")
    args = parser.parse_args(argv)
    summary = asyncio.run(main(args.limit))
    print(summary.model_dump_json())
    if summary.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    run()
