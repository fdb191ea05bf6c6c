import io
from datetime import datetime

from ledgerpos.models import InventoryItem, MovementEvent
from ledgerpos.services import movement_service
from sqlalchemy.exc import OperationalError


def test_health(client, db_session):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"]["status"] == "healthy"


def test_writes_require_actor(client, db_session):
    resp = client.post("/api/inventory", json={"name": "X", "rate": "1", "mrp": "2"})
    assert resp.status_code == 401


def test_create_and_get_item(client, db_session, staff_headers):
    resp = client.post(
        "/api/inventory",
        json={"name": "Vitamin C", "stock": 20, "rate": "10.00", "mrp": "12.50", "expiry_date": "2027-01-31",
              "tags": ["supplement", "supplement", " otc "]},
        headers=staff_headers,
    )
    assert resp.status_code == 201
    item = resp.get_json()["item"]
    assert item["stock"] == 20
    assert item["mrp"] == "12.50"
    assert item["tags"] == ["supplement", "otc"]

    got = client.get(f"/api/inventory/{item['id']}")
    assert got.status_code == 200
    assert got.get_json()["item"]["name"] == "Vitamin C"


def test_create_item_validation(client, db_session, staff_headers):
    resp = client.post(
        "/api/inventory", json={"name": "Bad", "rate": "10.00", "mrp": "9.00"}, headers=staff_headers
    )
    assert resp.status_code == 400
    resp = client.post(
        "/api/inventory", json={"name": "Bad", "rate": "1", "mrp": "2", "stock": -1}, headers=staff_headers
    )
    assert resp.status_code == 400
    resp = client.post("/api/inventory", json={"name": "Bad", "rate": "1", "mrp": "2", "id": "x"}, headers=staff_headers)
    assert resp.status_code == 400


def test_patch_item_with_stale_version(client, db_session, make_item, staff_headers):
    item = make_item(stock=5)
    resp = client.patch(
        f"/api/inventory/{item.id}", json={"stock": 9, "expected_version": 99}, headers=staff_headers
    )
    assert resp.status_code == 409
    assert resp.get_json()["retryable"] is True


def test_adjust_out_beyond_stock(client, db_session, make_item, staff_headers):
    item = make_item(stock=2)
    resp = client.post(
        f"/api/inventory/{item.id}/adjust", json={"type": "out", "quantity": 3}, headers=staff_headers
    )
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "STOCK_INSUFFICIENT"


def test_finalize_and_edit_bill(client, db_session, make_item, staff_headers):
    item = make_item(stock=10, rate="80.00", mrp="100.00")

    resp = client.post(
        "/api/bills/finalize",
        json={
            "items": [{"item_id": item.id, "quantity": 5}],
            "status": "debt",
            "amount_paid": "200",
            "discount_amount": "50",
            "customer_name": "Ravi Stores",
        },
        headers=staff_headers,
    )
    assert resp.status_code == 201
    bill = resp.get_json()["bill"]
    assert bill["grand_total"] == "450.00"
    assert bill["remaining_balance"] == "250.00"
    assert bill["status"] == "debt"

    resp = client.patch(
        f"/api/bills/{bill['id']}",
        json={"edit_key": "pay-1", "payment_received_now": "250"},
        headers=staff_headers,
    )
    assert resp.status_code == 200
    edited = resp.get_json()["bill"]
    assert edited["status"] == "paid"
    assert edited["amount_actually_paid"] == "450.00"
    assert edited["remaining_balance"] == "0.00"


def test_finalize_oversell_is_409(client, db_session, make_item, staff_headers):
    item = make_item(stock=1)
    resp = client.post(
        "/api/bills/finalize",
        json={"items": [{"item_id": item.id, "quantity": 2}], "status": "paid"},
        headers=staff_headers,
    )
    assert resp.status_code == 409
    assert resp.get_json()["details"]["item_id"] == item.id


def test_finalize_replay_returns_200(client, db_session, make_item, staff_headers):
    item = make_item(stock=10)
    body = {"items": [{"item_id": item.id, "quantity": 1}], "status": "paid", "finalize_key": "till-1-0001"}
    first = client.post("/api/bills/finalize", json=body, headers=staff_headers)
    second = client.post("/api/bills/finalize", json=body, headers=staff_headers)
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.get_json()["replayed"] is True
    assert db_session.get(InventoryItem, item.id).stock == 9


def test_finalize_with_audit_failure_returns_warning(client, db_session, make_item, staff_headers, monkeypatch):
    item = make_item(stock=10)

    def broken_append(daily_key, event, *, attempts=3):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(movement_service, "append_movement", broken_append)
    resp = client.post(
        "/api/bills/finalize",
        json={"items": [{"item_id": item.id, "quantity": 1}], "status": "paid"},
        headers=staff_headers,
    )
    assert resp.status_code == 201
    assert resp.get_json()["warnings"][0]["type"] == "audit_log_write_failure"
    assert db_session.get(InventoryItem, item.id).stock == 9


def test_bill_history_paging(client, db_session, make_bill):
    for i in range(5):
        make_bill(datetime(2026, 4, 1, 9, i), customer_name="Meera" if i % 2 else "Walk-in Customer")

    first = client.get("/api/bills?page_size=2").get_json()
    assert [b["id"] for b in first["items"]] == ["B-000005", "B-000004"]
    assert first["has_next"] is True

    second = client.get(f"/api/bills?page_size=2&cursor={first['next_cursor']}").get_json()
    assert [b["id"] for b in second["items"]] == ["B-000003", "B-000002"]

    filtered = client.get("/api/bills?page_size=10&customer=meera").get_json()
    assert [b["id"] for b in filtered["items"]] == ["B-000004", "B-000002"]

    assert client.get("/api/bills?status=void").status_code == 400


def test_export_csv_and_xlsx(client, db_session, make_bill):
    make_bill(datetime(2026, 4, 1, 9, 0), customer_name="Meera")

    resp = client.get("/api/bills/export?format=csv")
    assert resp.status_code == 200
    lines = resp.data.decode("utf-8").splitlines()
    assert lines[0].startswith("Bill Number,Date,Customer Name")
    assert lines[1].startswith("B-000001,")

    resp = client.get("/api/bills/export?format=xlsx")
    assert resp.status_code == 200
    from openpyxl import load_workbook
    rows = list(load_workbook(io.BytesIO(resp.data)).active.values)
    assert rows[1][0] == "B-000001"
    assert rows[1][2] == "Meera"


def test_batch_delete_requires_admin(client, db_session, make_bill, staff_headers, admin_headers):
    bill = make_bill(datetime(2026, 4, 1))
    resp = client.post("/api/bills/batch-delete", json={"bill_ids": [bill.id]}, headers=staff_headers)
    assert resp.status_code == 403
    resp = client.post("/api/bills/batch-delete", json={"bill_ids": [bill.id]}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()["deleted"] == 1


def test_movements_history_and_clear(client, db_session, make_item, staff_headers, admin_headers):
    item = make_item(stock=5)
    client.post(f"/api/inventory/{item.id}/adjust", json={"type": "in", "quantity": 2}, headers=staff_headers)

    body = client.get("/api/movements?days=1").get_json()
    assert body["days"][0]["movements"][0]["quantity"] == 2
    assert body["can_load_more"] is True

    assert client.delete("/api/movements?confirm=yes", headers=staff_headers).status_code == 403
    resp = client.delete("/api/movements?confirm=yes", headers=admin_headers)
    assert resp.status_code == 200
    assert db_session.query(MovementEvent).count() == 0


def test_import_upload_partial_returns_207(client, db_session, make_item, staff_headers):
    item = make_item(stock=1)
    csv_bytes = f"item_id,stock\n{item.id},6\nmissing-item,3\n".encode("utf-8")
    resp = client.post(
        "/api/inventory/import",
        data={"file": (io.BytesIO(csv_bytes), "stock.csv")},
        headers=staff_headers,
        content_type="multipart/form-data",
    )
    assert resp.status_code == 207
    body = resp.get_json()
    assert body["succeeded_rows"] == 1
    assert body["failed_rows"] == 1

    summary = client.get(f"/api/inventory/imports/{body['batch_id']}")
    assert summary.get_json()["batch"]["status"] == "PARTIAL"


def test_summary_report(client, db_session, make_item, make_bill):
    make_item(stock=3, rate="2.00", mrp="3.00", low_stock_threshold=5)
    make_bill(datetime(2026, 4, 1, 9, 0), status="debt", sub_total="100.00", paid=40)

    body = client.get("/api/reports/summary?start_date=2026-04-01&end_date=2026-04-01").get_json()
    assert body["inventory"]["item_count"] == 1
    assert body["inventory"]["inventory_value"] == "6.00"
    assert body["inventory"]["low_stock_count"] == 1
    assert body["sales"]["bill_count"] == 1
    assert body["sales"]["collected"] == "40.00"
    assert body["sales"]["outstanding_debt"] == "60.00"


def test_sales_analytics_route(client, db_session, make_bill):
    make_bill(datetime(2026, 4, 1, 9, 0), sub_total="100.00")

    body = client.get("/api/reports/sales?period=monthly").get_json()
    assert body["rows"][0]["period_start"] == "2026-04-01"
    assert body["rows"][0]["total_sales"] == "100.00"
    assert set(body["current"]) == {"date", "today", "this_week", "this_month"}

    assert client.get("/api/reports/sales?period=yearly").status_code == 400
