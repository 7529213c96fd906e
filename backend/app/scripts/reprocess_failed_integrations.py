# app/scripts/reprocess_failed_integrations.py
"""
Re-attempts downstream integrations for succeeded sales that still have an
unset delivery flag.

    python -m app.scripts.reprocess_failed_integrations [--dry-run] [--limit N]
        [--date-from YYYY-MM-DD] [--date-to YYYY-MM-DD]

Only the missing channels of each sale are retried. Exit code 1 on a fatal
error (data store unreachable, bad arguments).
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Dict, List, Optional, Sequence

from app.core.http_client import build_http_client
from app.core.logging_setup import logger, setup_logging
from app.db.mongo_client import MongoConnection
from app.modules.integrations.fanout import IntegrationFanout
from app.modules.offers.repository import OfferRepository
from app.modules.sales.repository import SaleRepository
from app.services.components import build_components

DEFAULT_LIMIT = 1000


def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reprocess_failed_integrations",
        description="Retry access, conversion and tracking integrations for sales that missed them.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only report the backlog; send nothing.")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help=f"Max sales to process (default {DEFAULT_LIMIT}).")
    parser.add_argument("--date-from", type=parse_date, default=None, help="Only sales created on/after this day.")
    parser.add_argument("--date-to", type=parse_date, default=None, help="Only sales created on/before this day.")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.limit < 1:
        parser.error("--limit must be a positive integer")
    if args.date_to is not None:
        # Inclusive of the whole day
        args.date_to = datetime.combine(args.date_to.date(), time.max, tzinfo=timezone.utc)
    if args.date_from and args.date_to and args.date_from > args.date_to:
        parser.error("--date-from must not be after --date-to")
    return args


@dataclass
class ReprocessReport:
    scanned: int = 0
    backlog_by_channel: Dict[str, int] = field(default_factory=dict)
    fully_delivered: int = 0
    still_missing: int = 0
    skipped_no_offer: int = 0
    errors: List[str] = field(default_factory=list)


async def reprocess(sale_repo: SaleRepository, offer_repo: OfferRepository, fanout: IntegrationFanout,
                    args: argparse.Namespace) -> ReprocessReport:
    report = ReprocessReport()
    report.backlog_by_channel = await sale_repo.count_missing_by_channel(args.date_from, args.date_to)
    sales = await sale_repo.find_missing_integrations(args.limit, args.date_from, args.date_to)
    report.scanned = len(sales)

    print(f"Sales with missing integrations (scanned {report.scanned}, limit {args.limit}):")
    for channel, count in report.backlog_by_channel.items():
        print(f"  {channel:<10} {count}")
    if args.dry_run:
        for sale in sales:
            missing = ", ".join(c.value for c in sale.missing_channels())
            print(f"  [dry-run] {sale.external_reference} ({sale.created_at:%Y-%m-%d}): {missing}")
        return report

    for sale in sales:
        log = logger.bind(sale_id=sale.id, external_reference=sale.external_reference)
        offer = await offer_repo.get_by_id(sale.offer_id) if sale.offer_id else None
        if offer is None:
            log.warning("Offer no longer exists. Skipping.")
            report.skipped_no_offer += 1
            continue
        try:
            delivered = await fanout.deliver(sale, offer)
        except Exception as e:
            log.exception("Reprocessing failed for sale.")
            report.errors.append(f"{sale.external_reference}: {e}")
            continue
        if all(delivered.values()):
            report.fully_delivered += 1
        else:
            report.still_missing += 1

    print(f"Fully delivered: {report.fully_delivered}  Still missing: {report.still_missing}  "
          f"Skipped (no offer): {report.skipped_no_offer}  Errors: {len(report.errors)}")
    return report


async def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(json_output=False)
    mongo = MongoConnection()
    http = build_http_client()
    try:
        await mongo.connect()
        components = build_components(mongo.db, http)
        await reprocess(components.sale_repo, components.offer_repo, components.fanout, args)
        return 0
    except Exception as e:
        logger.critical(f"Reprocessing aborted: {e}")
        return 1
    finally:
        await http.aclose()
        mongo.close()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
