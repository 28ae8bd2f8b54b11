from sqlalchemy.exc import OperationalError

from toolcrib.config import settings
from toolcrib.error import ConcurrencyConflictError
from toolcrib.services import ledger


def _create(client, headers, lines, job="J-100", notes=None):
    body = {"job_number": job, "notes": notes, "lines": lines}
    return client.post("/requests", json=body, headers=headers)


def _fulfill(client, headers, request_id, amounts):
    body = {"lines": [{"line_id": k, "quantity_fulfilled": v} for k, v in amounts.items()]}
    return client.post(f"/requests/{request_id}/fulfill", json=body, headers=headers)


def _records(client, headers, **params):
    r = client.get("/tech-inventory", params=params, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_create_request_validation(client, tech, add_item):
    drill = add_item("Drill", quantity=5)

    r = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 1}], job="  ")
    assert r.status_code == 400

    r = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 0}])
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

    r = _create(client, tech, [{"item_id": 999, "quantity_requested": 1}])
    assert r.status_code == 404


def test_create_request_drops_zero_lines(client, tech, add_item, notifier):
    drill = add_item("Drill", quantity=5)
    saw = add_item("Saw", quantity=5)

    r = _create(
        client,
        tech,
        [{"item_id": drill["id"], "quantity_requested": 3}, {"item_id": saw["id"], "quantity_requested": 0}],
    )
    assert r.status_code == 200
    req = r.json()
    assert req["status"] == "pending"
    assert [(ln["item_name"], ln["quantity_requested"], ln["quantity_fulfilled"]) for ln in req["lines"]] == [
        ("Drill", 3, 0)
    ]
    # no admin e-mail configured yet
    assert notifier.sent == []


def test_create_request_notifies_admin(client, admin, tech, add_item, notifier):
    client.patch("/companies/me", json={"admin_email": "ops@acme.test"}, headers=admin)
    drill = add_item("Drill", quantity=5)

    r = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 2}], job="J-7")
    assert r.status_code == 200
    assert notifier.kinds() == ["stock_request_created"]
    payload = notifier.sent[0][1]
    assert payload["to"] == "ops@acme.test"
    assert payload["job_number"] == "J-7"
    assert payload["items"] == [{"item_name": "Drill", "quantity": 2}]


def test_notifier_failure_does_not_fail_request(client, admin, tech, add_item, notifier):
    client.patch("/companies/me", json={"admin_email": "ops@acme.test"}, headers=admin)
    notifier.fail = True
    drill = add_item("Drill", quantity=5)
    r = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 2}])
    assert r.status_code == 200
    assert client.get(f"/requests/{r.json()['id']}", headers=admin).json()["status"] == "pending"


def test_fulfill_credits_technician(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 3}]).json()
    line_id = req["lines"][0]["id"]

    r = _fulfill(client, admin, req["id"], {line_id: 2})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["request"]["status"] == "fulfilled"
    assert body["request"]["fulfilled_at"] is not None
    assert body["request"]["lines"][0]["quantity_fulfilled"] == 2
    assert body["lines"][0]["outcome"] == "fulfilled"
    assert body["warnings"] == []

    assert client.get(f"/items/{drill['id']}", headers=admin).json()["quantity"] == 3
    records = _records(client, tech)
    assert len(records) == 1
    assert records[0]["quantity"] == 2
    assert records[0]["remaining_quantity"] == 2
    assert records[0]["status"] == "active"
    assert records[0]["request_id"] == req["id"]


def test_second_fulfillment_merges_into_active_record(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    for amount in (2, 1):
        req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 3}]).json()
        assert _fulfill(client, admin, req["id"], {req["lines"][0]["id"]: amount}).status_code == 200

    records = _records(client, tech, include_all=True)
    assert len(records) == 1
    assert records[0]["quantity"] == 3
    assert records[0]["remaining_quantity"] == 3
    assert "Added 1 from job #J-100" in records[0]["notes"]


def test_fulfill_is_admin_only_and_pending_only(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 1}]).json()
    line_id = req["lines"][0]["id"]

    assert _fulfill(client, tech, req["id"], {line_id: 1}).status_code == 403
    assert _fulfill(client, admin, req["id"], {line_id: 1}).status_code == 200

    r = _fulfill(client, admin, req["id"], {line_id: 1})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "INVALID_STATE"


def test_fulfill_amounts_are_validated_before_any_change(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 2}]).json()
    line_id = req["lines"][0]["id"]

    r = _fulfill(client, admin, req["id"], {line_id: 3})
    assert r.status_code == 400
    r = _fulfill(client, admin, req["id"], {line_id: 0})
    assert r.status_code == 400
    r = _fulfill(client, admin, req["id"], {line_id + 100: 1})
    assert r.status_code == 400

    assert client.get(f"/items/{drill['id']}", headers=admin).json()["quantity"] == 5
    assert client.get(f"/requests/{req['id']}", headers=admin).json()["status"] == "pending"


def test_partial_fulfillment_reports_skipped_lines(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    saw = add_item("Saw", quantity=1)
    req = _create(
        client,
        tech,
        [{"item_id": drill["id"], "quantity_requested": 2}, {"item_id": saw["id"], "quantity_requested": 3}],
    ).json()
    drill_line, saw_line = (ln["id"] for ln in req["lines"])

    r = _fulfill(client, admin, req["id"], {drill_line: 2, saw_line: 3})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["request"]["status"] == "fulfilled"
    outcomes = {o["item_name"]: o for o in body["lines"]}
    assert outcomes["Drill"]["outcome"] == "fulfilled"
    assert outcomes["Saw"]["outcome"] == "skipped"
    assert "Insufficient stock for Saw" in outcomes["Saw"]["reason"]
    assert outcomes["Saw"]["code"] == "INSUFFICIENT_STOCK"
    assert len(body["warnings"]) == 1

    # the failed line left no trace
    assert client.get(f"/items/{saw['id']}", headers=admin).json()["quantity"] == 1
    assert client.get(f"/items/{drill['id']}", headers=admin).json()["quantity"] == 3
    assert [r["item_name"] for r in _records(client, tech)] == ["Drill"]
    lines = {ln["item_name"]: ln for ln in body["request"]["lines"]}
    assert lines["Saw"]["quantity_fulfilled"] == 0


def test_fulfill_with_no_successful_line_stays_pending(client, admin, tech, add_item):
    saw = add_item("Saw", quantity=1)
    req = _create(client, tech, [{"item_id": saw["id"], "quantity_requested": 3}]).json()

    r = _fulfill(client, admin, req["id"], {req["lines"][0]["id"]: 3})
    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_STOCK"
    assert detail["errors"][0]["outcome"] == "skipped"

    assert client.get(f"/requests/{req['id']}", headers=admin).json()["status"] == "pending"
    assert _records(client, tech) == []


def test_fulfill_draws_from_grouped_units(client, admin, tech, category, truck):
    r = client.post(
        "/imports", json={"rows": [{"name": "Ladder", "category": "Tools", "quantity": 3}]}, headers=admin
    )
    first_id = r.json()["rows"][0]["item_ids"][0]
    req = _create(client, tech, [{"item_id": first_id, "quantity_requested": 2}]).json()

    r = _fulfill(client, admin, req["id"], {req["lines"][0]["id"]: 2})
    assert r.status_code == 200, r.text
    groups = client.get("/items/groups", headers=admin).json()
    assert groups[0]["total"] == 3
    assert groups[0]["in_warehouse"] == 1
    assert groups[0]["on_trucks"] == 0
    units = client.get("/items", params={"sort": "id_asc"}, headers=admin).json()["items"]
    assert [i["quantity"] for i in units] == [0, 0, 1]

    # a unit handed to the technician cannot reappear on a truck
    r = client.post(f"/items/{units[0]['id']}/transfer", json={"truck_id": truck["id"]}, headers=admin)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_TRANSFER"
    r = client.patch(
        f"/items/{units[1]['id']}", json={"location_type": "truck", "assigned_truck_id": truck["id"]}, headers=admin
    )
    assert r.status_code == 400

    r = client.post(f"/items/{units[2]['id']}/transfer", json={"truck_id": truck["id"]}, headers=admin)
    assert r.status_code == 200, r.text
    groups = client.get("/items/groups", headers=admin).json()
    assert (groups[0]["in_warehouse"], groups[0]["on_trucks"]) == (0, 1)


def test_low_stock_notification_after_fulfill(client, admin, tech, add_item, notifier):
    client.patch("/companies/me", json={"admin_email": "ops@acme.test"}, headers=admin)
    drill = add_item("Drill", quantity=3, min_quantity=2)
    saw = add_item("Saw", quantity=3, min_quantity=2)
    req = _create(
        client,
        tech,
        [{"item_id": drill["id"], "quantity_requested": 2}, {"item_id": saw["id"], "quantity_requested": 2}],
    ).json()
    notifier.sent.clear()

    r = _fulfill(client, admin, req["id"], {ln["id"]: 2 for ln in req["lines"]})
    assert r.status_code == 200
    assert notifier.kinds() == ["low_stock"]
    items = notifier.sent[0][1]["items"]
    assert [(i["item_name"], i["remaining"], i["minimum"]) for i in items] == [("Drill", 1, 2), ("Saw", 1, 2)]


def test_low_stock_alerts_can_be_disabled(client, admin, tech, add_item, notifier):
    client.patch(
        "/companies/me", json={"admin_email": "ops@acme.test", "low_stock_alerts_enabled": False}, headers=admin
    )
    drill = add_item("Drill", quantity=3, min_quantity=2)
    req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 2}]).json()
    notifier.sent.clear()

    assert _fulfill(client, admin, req["id"], {req["lines"][0]["id"]: 2}).status_code == 200
    assert notifier.sent == []


def test_stock_at_minimum_is_not_low(client, admin, tech, add_item, notifier):
    client.patch("/companies/me", json={"admin_email": "ops@acme.test"}, headers=admin)
    drill = add_item("Drill", quantity=4, min_quantity=2)
    req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 2}]).json()
    notifier.sent.clear()

    assert _fulfill(client, admin, req["id"], {req["lines"][0]["id"]: 2}).status_code == 200
    assert notifier.sent == []


def _two_line_fulfilled(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    saw = add_item("Saw", quantity=5)
    req = _create(
        client,
        tech,
        [{"item_id": drill["id"], "quantity_requested": 1}, {"item_id": saw["id"], "quantity_requested": 1}],
    ).json()
    _fulfill(client, admin, req["id"], {ln["id"]: 1 for ln in req["lines"]})
    return req


def test_receipt_any_line_closes_request_by_default(client, admin, tech, add_item):
    req = _two_line_fulfilled(client, admin, tech, add_item)
    first = req["lines"][0]["id"]

    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [first]}, headers=tech)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "received"
    assert body["received_at"] is not None
    assert [ln["received"] for ln in body["lines"]] == [True, False]

    entries = client.get("/activity", params={"action": "received"}, headers=admin).json()["items"]
    assert entries[0]["details"]["complete"] is False


def test_receipt_can_require_every_line(client, admin, tech, add_item, monkeypatch):
    monkeypatch.setattr(settings, "receipt_requires_all_lines", True)
    req = _two_line_fulfilled(client, admin, tech, add_item)
    first, second = (ln["id"] for ln in req["lines"])

    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [first]}, headers=tech)
    assert r.status_code == 200
    assert r.json()["status"] == "fulfilled"

    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [second]}, headers=tech)
    assert r.json()["status"] == "received"


def test_receipt_rules(client, admin, tech, signup, add_item):
    drill = add_item("Drill", quantity=5)
    req = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 1}]).json()
    line_id = req["lines"][0]["id"]

    # still pending
    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [line_id]}, headers=tech)
    assert r.status_code == 409

    _fulfill(client, admin, req["id"], {line_id: 1})

    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": []}, headers=tech)
    assert r.status_code == 400

    other = signup("tina")
    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [line_id]}, headers=other)
    assert r.status_code == 403

    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [line_id + 100]}, headers=tech)
    assert r.status_code == 400

    assert client.post(f"/requests/{req['id']}/receive", json={"line_ids": [line_id]}, headers=tech).status_code == 200
    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [line_id]}, headers=tech)
    assert r.status_code == 409


def test_unfulfilled_line_cannot_be_received(client, admin, tech, add_item):
    drill = add_item("Drill", quantity=5)
    saw = add_item("Saw", quantity=0)
    req = _create(
        client,
        tech,
        [{"item_id": drill["id"], "quantity_requested": 1}, {"item_id": saw["id"], "quantity_requested": 1}],
    ).json()
    drill_line, saw_line = (ln["id"] for ln in req["lines"])
    _fulfill(client, admin, req["id"], {drill_line: 1, saw_line: 1})

    r = client.post(f"/requests/{req['id']}/receive", json={"line_ids": [saw_line]}, headers=tech)
    assert r.status_code == 400


def test_technicians_only_see_their_requests(client, admin, tech, signup, add_item):
    drill = add_item("Drill", quantity=5)
    mine = _create(client, tech, [{"item_id": drill["id"], "quantity_requested": 1}]).json()
    other = signup("tina")
    theirs = _create(client, other, [{"item_id": drill["id"], "quantity_requested": 1}]).json()

    assert [r["id"] for r in client.get("/requests", headers=tech).json()] == [mine["id"]]
    assert client.get(f"/requests/{theirs['id']}", headers=tech).status_code == 404
    assert len(client.get("/requests", headers=admin).json()) == 2
    assert len(client.get("/requests", params={"status": "fulfilled"}, headers=admin).json()) == 0


def _locked():
    return OperationalError("UPDATE", {}, Exception("database is locked"))


def test_fulfill_retries_a_line_after_a_transient_error(client, admin, tech, add_item, monkeypatch):
    drill = add_item("Drill", quantity=5)
    saw = add_item("Saw", quantity=5)
    req = _create(
        client,
        tech,
        [{"item_id": drill["id"], "quantity_requested": 2}, {"item_id": saw["id"], "quantity_requested": 2}],
    ).json()
    drill_line, saw_line = (ln["id"] for ln in req["lines"])

    real = ledger.decrement_warehouse_stock
    calls = {"drill": 0}

    def _flaky(session, company_id, item_id, amount):
        if item_id == drill["id"]:
            calls["drill"] += 1
            if calls["drill"] == 1:
                raise _locked()
        return real(session, company_id, item_id, amount)

    monkeypatch.setattr(ledger, "decrement_warehouse_stock", _flaky)
    r = _fulfill(client, admin, req["id"], {drill_line: 2, saw_line: 2})
    assert r.status_code == 200, r.text

    assert calls["drill"] == 2
    assert {ln["item_name"]: ln["outcome"] for ln in r.json()["lines"]} == {"Drill": "fulfilled", "Saw": "fulfilled"}
    assert r.json()["warnings"] == []
    assert client.get(f"/items/{drill['id']}", headers=admin).json()["quantity"] == 3
    assert sorted(rec["remaining_quantity"] for rec in _records(client, tech)) == [2, 2]


def test_fulfill_skips_lines_whose_retries_run_out(client, admin, tech, add_item, monkeypatch):
    monkeypatch.setattr(settings, "store_retry_attempts", 2)
    drill = add_item("Drill", quantity=5)
    saw = add_item("Saw", quantity=5)
    hammer = add_item("Hammer", quantity=5)
    req = _create(
        client,
        tech,
        [
            {"item_id": drill["id"], "quantity_requested": 1},
            {"item_id": saw["id"], "quantity_requested": 1},
            {"item_id": hammer["id"], "quantity_requested": 1},
        ],
    ).json()
    amounts = {ln["id"]: 1 for ln in req["lines"]}

    real = ledger.decrement_warehouse_stock
    calls = {"saw": 0, "hammer": 0}

    def _failing(session, company_id, item_id, amount):
        if item_id == saw["id"]:
            calls["saw"] += 1
            raise ConcurrencyConflictError("Stock for Saw changed concurrently")
        if item_id == hammer["id"]:
            calls["hammer"] += 1
            raise _locked()
        return real(session, company_id, item_id, amount)

    monkeypatch.setattr(ledger, "decrement_warehouse_stock", _failing)
    r = _fulfill(client, admin, req["id"], amounts)
    assert r.status_code == 200, r.text
    body = r.json()

    assert calls == {"saw": 2, "hammer": 2}
    outcomes = {ln["item_name"]: ln for ln in body["lines"]}
    assert outcomes["Drill"]["outcome"] == "fulfilled"
    assert outcomes["Saw"]["outcome"] == "skipped"
    assert outcomes["Saw"]["code"] == "CONCURRENCY_CONFLICT"
    assert outcomes["Hammer"]["outcome"] == "skipped"
    assert outcomes["Hammer"]["code"] == "STORE_UNAVAILABLE"
    assert len(body["warnings"]) == 2
    assert body["request"]["status"] == "fulfilled"

    assert client.get(f"/items/{saw['id']}", headers=admin).json()["quantity"] == 5
    assert client.get(f"/items/{hammer['id']}", headers=admin).json()["quantity"] == 5
    assert [rec["item_name"] for rec in _records(client, tech)] == ["Drill"]
