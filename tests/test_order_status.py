"""Tests for composite status and on-demand refresh."""

import pytest

import orders
from conftest import FakeSmmAPI
from errors import ExternalApiError, OrderNotFound
from order_status import composite_status, normalize_status, refresh_order
from orders import OrderStatus, ServicePlacement


@pytest.mark.parametrize("statuses,expected", [
    (["Success", "Success"], OrderStatus.SUCCESS),
    (["Success", "Partial"], OrderStatus.PARTIAL),
    (["Processing", "In progress"], OrderStatus.PROCESSING),
    (["Pending", "In progress"], OrderStatus.IN_PROGRESS),
    (["Partial", "Error"], OrderStatus.ERROR),
    (["Pending", "Success"], OrderStatus.PENDING),
    (["completed", "Canceled"], OrderStatus.ERROR),
    (["Success", "Refilling"], OrderStatus.PENDING),
    ([], OrderStatus.ERROR),
])
def test_composite_status(statuses, expected):
    assert composite_status(statuses) is expected


def test_normalize_status_is_case_insensitive():
    assert normalize_status(" in PROGRESS ") is OrderStatus.IN_PROGRESS
    assert normalize_status(None) is OrderStatus.PENDING


async def place(account_id="1", external_ids=("501", "502")):
    placements = [
        ServicePlacement(service_key=f"svc{i}", service_id=str(24044 + i), quantity=10, external_id=ext)
        for i, ext in enumerate(external_ids)
    ]
    return await orders.create_order(account_id, "https://quora.com/q/1", placements, OrderStatus.PROCESSING)


class TestRefreshOrder:
    async def test_persists_composite_and_sub_statuses(self, db):
        record = await place()
        api = FakeSmmAPI(statuses={
            "501": {"status": "Success", "start_count": 120, "remains": 0},
            "502": {"status": "Partial", "start_count": "40", "remains": "15"},
        })

        refreshed = await refresh_order(api, record.id, account_id="1")

        assert refreshed.status is OrderStatus.PARTIAL
        by_id = {s.external_id: s for s in refreshed.services}
        assert by_id["501"].status == "Success"
        assert by_id["501"].start_count == "120"
        assert by_id["502"].remains == "15"
        stored = await orders.get_order(record.id)
        assert stored.status is OrderStatus.PARTIAL

    async def test_refresh_is_idempotent(self, db):
        record = await place()
        api = FakeSmmAPI(statuses={"501": {"status": "Success"}, "502": {"status": "Success"}})

        first = await refresh_order(api, record.id)
        second = await refresh_order(api, record.id)

        assert first.status is second.status is OrderStatus.SUCCESS
        assert [s.status for s in first.services] == [s.status for s in second.services]

    async def test_other_account_cannot_see_order(self, db):
        record = await place(account_id="1")
        api = FakeSmmAPI()

        with pytest.raises(OrderNotFound):
            await refresh_order(api, record.id, account_id="2")
        assert api.status_calls == []

    async def test_unknown_order(self, db):
        with pytest.raises(OrderNotFound):
            await refresh_order(FakeSmmAPI(), 404)

    async def test_failed_poll_keeps_last_status(self, db):
        record = await place()
        api = FakeSmmAPI()
        api.status_error = ExternalApiError("status", "Order not found")

        with pytest.raises(ExternalApiError):
            await refresh_order(api, record.id)

        stored = await orders.get_order(record.id)
        assert stored.status is OrderStatus.PROCESSING
        assert all(s.status is None for s in stored.services)

    async def test_order_without_external_ids_is_error(self, db):
        record = await place(external_ids=(None, None))
        assert record.status is OrderStatus.ERROR
        api = FakeSmmAPI()

        refreshed = await refresh_order(api, record.id)

        assert refreshed.status is OrderStatus.ERROR
        assert api.status_calls == []

    async def test_unplaced_service_keeps_order_in_error(self, db):
        record = await place(external_ids=("501", None))
        api = FakeSmmAPI(statuses={"501": {"status": "Completed"}})

        refreshed = await refresh_order(api, record.id)

        assert api.status_calls == ["501"]
        assert refreshed.status is OrderStatus.ERROR
        assert (await orders.get_order(record.id)).status is OrderStatus.ERROR
