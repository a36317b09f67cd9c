from unittest.mock import Mock

import pytest
from conftest import (
    DETAIL_ROW_SELECTOR,
    FakeObserver,
    FakePortalDom,
    electronic_id,
    listing_payload,
    make_page,
)

from etaharvest.etaharvester import (
    HarvestInProgressError,
    HarvestOptions,
    InvoiceHarvester,
    RecordAccumulator,
    records_frame,
)
from etaharvest.etamodels import InvoiceRecord, StopReason

LIST_URL = "https://invoicing.eta.gov.eg/api/v1/documents/recent"


def test_accumulator_dedupes_and_renumbers():
    acc = RecordAccumulator()
    a = InvoiceRecord(serial_number="7", electronic_number="A" * 26)
    b = InvoiceRecord(serial_number="1", internal_number="INV-1", total_amount="5")
    assert acc.merge([a, b]) == 2
    assert acc.merge([InvoiceRecord(electronic_number="A" * 26), b]) == 0
    assert [r.serial_number for r in acc.records] == ["1", "2"]
    keys = [r.identity_key() for r in acc.records]
    assert len(keys) == len(set(keys))


def test_results_counter_scenario(cfg, clock):
    pages = [
        make_page(1, 10, results="Results: 23"),
        make_page(11, 10, results="Results: 23"),
        make_page(21, 3, results="Results: 23"),
    ]
    dom = FakePortalDom(pages)
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    assert result.success
    assert len(result.records) == 23
    assert result.requested_total == 23
    assert result.pages_visited == 3
    assert result.stop_reason is StopReason.TOTAL_REACHED
    assert [r.serial_number for r in result.records] == [str(i) for i in range(1, 24)]
    body = result.to_wire()
    assert body["totalProcessed"] == 23
    assert body["expectedTotal"] == 23
    assert body["data"][0]["electronicNumber"] == electronic_id(1)


def test_overlapping_pages_are_deduplicated(cfg, clock):
    pages = [make_page(1, 10), make_page(8, 10), make_page(18, 2)]
    dom = FakePortalDom(pages)
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    ids = [r.electronic_number for r in result.records]
    assert len(ids) == 19
    assert len(set(ids)) == 19
    assert result.stop_reason is StopReason.NAVIGATION_FAILED


def test_stuck_page_stops_with_partial_data(cfg, clock):
    dom = FakePortalDom([make_page(1, 10, results="Results: 50")], advance="stuck")
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    assert result.success
    assert result.stop_reason is StopReason.STUCK
    assert len(result.records) == 10
    assert dom.next_clicks == 3
    assert result.requested_total == 50


def test_never_advancing_pager_without_totals_terminates(cfg, clock):
    dom = FakePortalDom([make_page(1, 10)], advance="stuck")
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    assert result.stop_reason is StopReason.STUCK
    assert result.pages_visited == 4


def test_empty_pages_terminate(cfg, clock):
    cfg.scan.ready_timeout_ms = 100
    empty = {"rows": [], "texts": {}}
    dom = FakePortalDom([make_page(1, 10), empty, empty, empty, make_page(50, 10)])
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    assert result.stop_reason is StopReason.EMPTY_PAGES
    assert len(result.records) == 10
    assert dom.index == 3


def test_max_pages_option_caps_cycles(cfg, clock):
    dom = FakePortalDom([make_page(i * 10 + 1, 10) for i in range(6)])
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all(
        options=HarvestOptions(max_pages=2),
    )
    assert result.stop_reason is StopReason.MAX_PAGES
    assert result.pages_visited == 2
    assert len(result.records) == 20


def test_start_from_first_returns_to_page_one(cfg, clock):
    dom = FakePortalDom([make_page(1, 10), make_page(11, 5)], has_first=True)
    dom.index = 1
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    assert dom.first_clicks == 1
    assert result.records[0].electronic_number == electronic_id(1)
    assert len(result.records) == 15


def test_network_payloads_drive_the_run(cfg, clock):
    observer = FakeObserver()
    dom = FakePortalDom(
        [make_page(1, 10, results="Results: 10") for _ in range(3)],
        has_first=True,
        on_navigate=lambda i: observer.push(
            f"{LIST_URL}?page={i + 1}",
            listing_payload(i * 10 + 1, min(10, 25 - i * 10), total=25),
        ),
    )
    harvester = InvoiceHarvester(dom, cfg, observer, clock=clock)
    result = harvester.harvest_all()
    assert result.requested_total == 25
    assert result.stop_reason is StopReason.TOTAL_REACHED
    assert len(result.records) == 25
    assert {r.source for r in result.records} == {"network"}
    assert len(observer.callbacks) == 1


def test_use_network_false_ignores_payloads(cfg, clock):
    observer = FakeObserver()
    dom = FakePortalDom(
        [make_page(1, 10, results="Results: 10")],
        has_first=True,
        on_navigate=lambda i: observer.push(LIST_URL, listing_payload(1, 10, total=25)),
    )
    result = InvoiceHarvester(dom, cfg, observer, clock=clock).harvest_all(
        options=HarvestOptions(use_network=False),
    )
    assert {r.source for r in result.records} == {"dom"}
    assert result.requested_total == 10


def test_second_harvest_is_rejected_while_running(cfg, clock):
    dom = FakePortalDom([make_page(1, 10), make_page(11, 10)])
    harvester = InvoiceHarvester(dom, cfg, clock=clock)
    rejected = []

    def progress(_update):
        try:
            harvester.harvest_all()
        except HarvestInProgressError as exc:
            rejected.append(str(exc))

    harvester.harvest_all(progress)
    assert rejected == ["Already processing", "Already processing"]
    assert not harvester.is_running
    assert harvester.harvest_all().success


def test_fault_returns_partial_records(cfg, clock):
    dom = FakePortalDom([make_page(1, 10), make_page(11, 10)])
    dom.fail_on_page = 1
    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all()
    assert not result.success
    assert result.stop_reason is StopReason.ERROR
    assert "malformed" in result.error
    assert len(result.records) == 10
    body = result.to_wire()
    assert body["success"] is False
    assert len(body["data"]) == 10
    assert body["expectedTotal"] == 10


def test_failed_session_setup_releases_the_harvest(cfg, clock):
    observer = Mock()
    calls = []

    def subscribe(callback):
        calls.append(callback)
        if len(calls) == 2:
            msg = "page closed"
            raise RuntimeError(msg)
        return Mock()

    observer.subscribe.side_effect = subscribe
    dom = FakePortalDom([make_page(1, 10)])
    harvester = InvoiceHarvester(dom, cfg, observer, clock=clock)
    result = harvester.harvest_all()
    assert not result.success
    assert result.stop_reason is StopReason.ERROR
    assert result.error == "page closed"
    assert result.records == []
    assert result.pages_visited == 0
    assert not harvester.is_running
    assert harvester.harvest_all().success


def test_stop_cancels_between_cycles(cfg, clock):
    dom = FakePortalDom([make_page(i * 10 + 1, 10) for i in range(5)])
    harvester = InvoiceHarvester(dom, cfg, clock=clock)
    result = harvester.harvest_all(lambda _u: harvester.stop())
    assert result.stop_reason is StopReason.CANCELLED
    assert result.pages_visited == 1
    assert not harvester.stop()


def test_progress_is_reported_every_page_and_sink_errors_are_ignored(cfg, clock):
    dom = FakePortalDom(
        [
            make_page(1, 10, results="Results: 23"),
            make_page(11, 10, results="Results: 23"),
            make_page(21, 3, results="Results: 23"),
        ],
    )
    updates = []

    def sink(update):
        updates.append((update.current_page, update.total_pages, update.percentage))
        raise RuntimeError("observer went away")

    result = InvoiceHarvester(dom, cfg, clock=clock).harvest_all(sink)
    assert result.success
    assert [u[0] for u in updates] == [1, 2, 3]
    assert updates[-1][1] == 3
    assert updates[-1][2] == pytest.approx(100.0)


def test_snapshot_and_rescan(cfg, clock):
    observer = FakeObserver()
    dom = FakePortalDom([make_page(1, 4, results="Results: 4")])
    harvester = InvoiceHarvester(dom, cfg, observer, clock=clock)
    observer.push(LIST_URL, listing_payload(1, 10, total=40))

    data = harvester.wire_snapshot()
    assert data["source"] == "network"
    assert data["totalCount"] == 40
    assert data["totalPages"] == 4
    assert len(data["invoices"]) == 10

    data = harvester.wire_snapshot(force_scan=True)
    assert data["source"] == "dom"
    assert len(data["invoices"]) == 4
    assert data["totalCount"] == 4


def test_invoice_details_from_detail_table(cfg, clock):
    eid = electronic_id(1)
    detail_row = {"cells": ["EG-1", "Rice", "KG", "3", "10.00", "30.00", "4.20", "34.20 EGP"]}
    dom = FakePortalDom([make_page(1, 1)], details={eid: [detail_row]})
    lines = InvoiceHarvester(dom, cfg, clock=clock).invoice_details(eid)
    assert [line.description for line in lines] == ["Rice"]
    assert dom.backs == 1
    assert cfg.scan.details_rows.selectors[0] == DETAIL_ROW_SELECTOR


def test_invoice_details_from_cached_payload(cfg, clock):
    observer = FakeObserver()
    dom = FakePortalDom([make_page(1, 1)])
    harvester = InvoiceHarvester(dom, cfg, observer, clock=clock)
    eid = electronic_id(1)
    observer.push(
        f"https://invoicing.eta.gov.eg/api/v1/documents/{eid}/details",
        {"invoiceLines": [{"itemCode": "EG-9", "description": "Tea", "total": 57}]},
    )
    lines = harvester.invoice_details(eid)
    assert [line.item_code for line in lines] == ["EG-9"]
    assert dom.backs == 0


def test_invoice_details_without_link_is_empty(cfg, clock):
    dom = FakePortalDom([make_page(1, 1)])
    assert InvoiceHarvester(dom, cfg, clock=clock).invoice_details("missing") == []
    assert InvoiceHarvester(dom, cfg, clock=clock).invoice_details("") == []


def test_records_frame_uses_wire_columns():
    frame = records_frame([InvoiceRecord(electronic_number="A" * 26, total_amount="1")])
    assert list(frame["electronicNumber"]) == ["A" * 26]
    assert records_frame([]).empty


def test_close_unsubscribes_idle_session(cfg):
    observer = Mock()
    unsubscribe = Mock()
    observer.subscribe.return_value = unsubscribe
    harvester = InvoiceHarvester(FakePortalDom([make_page(1, 1)]), cfg, observer)
    harvester.close()
    unsubscribe.assert_called_once_with()


def test_rows_per_page_label_does_not_end_the_run_early(cfg, clock):
    pages = []
    for i in range(6):
        start = i * 10 + 1
        count = 10 if i < 5 else 7
        pages.append(
            make_page(
                start,
                count,
                pagination=f"Rows per page\n10\n{start} - {start + count - 1} of 57",
            ),
        )
    result = InvoiceHarvester(FakePortalDom(pages), cfg, clock=clock).harvest_all()
    assert result.stop_reason is StopReason.TOTAL_REACHED
    assert len(result.records) == 57
    assert result.pages_visited == 6
