"""
Tests for `app/scripts/reprocess_failed_integrations.py`.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from app.db.schemas.sale_schemas import IntegrationChannel, SaleStatus
from app.modules.integrations.fanout import IntegrationFanout
from app.scripts.reprocess_failed_integrations import parse_args, reprocess

from fakes import FakeOfferRepository, FakeSaleRepository, at, make_offer, make_owner, make_sale


def test_defaults():
    args = parse_args([])
    assert args.dry_run is False
    assert args.limit == 1000
    assert args.date_from is None and args.date_to is None


def test_date_range_covers_the_whole_last_day():
    args = parse_args(["--date-from", "2026-01-01", "--date-to", "2026-01-10", "--limit", "5"])

    assert args.date_from == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert args.date_to.date() == datetime(2026, 1, 10).date()
    assert args.date_to.hour == 23 and args.date_to.minute == 59
    assert args.limit == 5


@pytest.mark.parametrize("argv", [
    ["--limit", "0"],
    ["--limit", "abc"],
    ["--date-from", "10/01/2026"],
    ["--date-from", "2026-01-10", "--date-to", "2026-01-01"],
])
def test_invalid_arguments_exit_with_an_error(argv):
    with pytest.raises(SystemExit) as exc_info:
        parse_args(argv)
    assert exc_info.value.code != 0


def backlog():
    owner = make_owner()
    offer = make_offer(owner)
    sales = FakeSaleRepository()
    sales.add(make_sale(offer, "pi_done", 10000, created_at=at(0), integrations_access_sent=True,
                        integrations_facebook_sent=True, integrations_tracking_sent=True))
    sales.add(make_sale(offer, "pi_access", 10000, created_at=at(1), integrations_facebook_sent=True,
                        integrations_tracking_sent=True))
    sales.add(make_sale(offer, "pi_all", 10000, created_at=at(2)))
    sales.add(make_sale(offer, "pi_failed", 10000, status=SaleStatus.FAILED, created_at=at(3)))
    return sales, FakeOfferRepository([offer], [owner]), offer


@pytest.mark.asyncio
async def test_dry_run_reports_without_sending(capsys):
    sales, offers, _ = backlog()
    fanout = AsyncMock()

    report = await reprocess(sales, offers, fanout, parse_args(["--dry-run"]))

    assert report.scanned == 2
    assert report.backlog_by_channel == {"access": 2, "facebook": 1, "tracking": 1}
    fanout.deliver.assert_not_awaited()
    out = capsys.readouterr().out
    assert "[dry-run] pi_access" in out
    assert "pi_done" not in out


@pytest.mark.asyncio
async def test_reprocess_retries_missing_channels_only():
    sales, offers, offer = backlog()
    fanout = AsyncMock()
    fanout.deliver.side_effect = [
        {IntegrationChannel.ACCESS: True, IntegrationChannel.FACEBOOK: True, IntegrationChannel.TRACKING: False},
        {IntegrationChannel.ACCESS: True},
    ]

    report = await reprocess(sales, offers, fanout, parse_args([]))

    # Newest first
    delivered_refs = [call.args[0].external_reference for call in fanout.deliver.await_args_list]
    assert delivered_refs == ["pi_all", "pi_access"]
    assert all(call.args[1] is offer for call in fanout.deliver.await_args_list)
    assert report.fully_delivered == 1
    assert report.still_missing == 1


@pytest.mark.asyncio
async def test_missing_offer_is_skipped_and_errors_are_isolated():
    sales, offers, _ = backlog()
    sales.rows["pi_all"] = sales.rows["pi_all"].model_copy(update={"offer_id": None})
    fanout = AsyncMock()
    fanout.deliver.side_effect = RuntimeError("network down")

    report = await reprocess(sales, offers, fanout, parse_args([]))

    assert report.skipped_no_offer == 1
    assert len(report.errors) == 1
    assert report.errors[0].startswith("pi_access")


@pytest.mark.asyncio
async def test_limit_and_date_window_are_applied():
    sales, offers, _ = backlog()
    fanout = AsyncMock()
    fanout.deliver.return_value = {IntegrationChannel.ACCESS: True}

    report = await reprocess(sales, offers, fanout, parse_args(["--limit", "1"]))
    assert report.scanned == 1

    args = parse_args(["--date-from", "2027-01-01"])
    report = await reprocess(sales, offers, fanout, args)
    assert report.scanned == 0


@pytest.mark.asyncio
async def test_reprocess_does_not_send_purchase_before_it_is_due():
    owner = make_owner()
    offer = make_offer(owner)
    sales = FakeSaleRepository()
    sales.add(make_sale(offer, "pi_recent", 10000, created_at=at(0), facebook_purchase_send_after=at(10),
                        integrations_access_sent=True, integrations_tracking_sent=True))
    facebook = AsyncMock()
    fanout = IntegrationFanout(sales, AsyncMock(), AsyncMock(), facebook, clock=lambda: at(5))

    report = await reprocess(sales, FakeOfferRepository([offer], [owner]), fanout, parse_args([]))

    facebook.send_to_pixels.assert_not_awaited()
    assert report.still_missing == 1
    assert sales.rows["pi_recent"].integrations_facebook_sent is False
