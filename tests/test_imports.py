import base64

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _import(client, headers, rows):
    return client.post("/imports", json={"rows": rows}, headers=headers)


def test_grouped_row_creates_units(client, admin, category):
    r = _import(client, admin, [{"name": "Ladder", "category": "Tools", "quantity": 5, "serial_number": "SN-L"}])
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["items_created"] == 5
    row = body["rows"][0]
    assert row["quantity"] == 5
    assert row["group_id"]
    assert len(row["item_ids"]) == 5

    items = client.get("/items", params={"group_id": row["group_id"]}, headers=admin).json()
    assert items["total"] == 5
    for item in items["items"]:
        assert item["group_id"] == row["group_id"]
        assert item["serial_number"] is None
        assert item["barcode"] is None
        assert item["quantity"] == 1
        assert item["location_type"] == "warehouse"

    entries = client.get("/activity", params={"action": "added"}, headers=admin).json()["items"]
    assert len(entries) == 1
    assert entries[0]["details"]["group_id"] == row["group_id"]
    assert entries[0]["details"]["quantity"] == 5
    assert entries[0]["details"]["first_item_id"] == row["item_ids"][0]


def test_single_row_keeps_codes_and_defaults(client, admin, category):
    r = _import(client, admin, [{"name": "Drill", "category": "tools", "serial_number": "SN-1", "barcode": "BC-1"}])
    assert r.status_code == 200
    row = r.json()["rows"][0]
    assert row["group_id"] is None

    item = client.get(f"/items/{row['item_ids'][0]}", headers=admin).json()
    assert item["serial_number"] == "SN-1"
    assert item["barcode"] == "BC-1"
    assert item["condition"] == "good"
    assert item["unit_price"] == 0


def test_quantity_is_clamped(client, admin, category):
    r = _import(client, admin, [{"name": "Glove", "category": "Tools", "quantity": 0}])
    assert r.json()["items_created"] == 1
    r = _import(client, admin, [{"name": "Screw", "category": "Tools", "quantity": 10_000}])
    assert r.json()["items_created"] == 500


def test_bad_rows_reject_the_whole_batch(client, admin, category):
    rows = [
        {"name": "Drill", "category": "Tools"},
        {"name": "", "category": "Tools"},
        {"name": "Saw", "category": "Nope"},
        {},
    ]
    r = _import(client, admin, rows)
    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["code"] == "VALIDATION_ERROR"
    assert detail["errors"] == [
        "Row 2: Name and Category are required",
        'Row 3: Invalid category "Nope"',
    ]
    assert client.get("/items", headers=admin).json()["total"] == 0


def test_duplicate_serial_rejects_the_batch(client, admin, category, add_item):
    add_item("Drill", serial_number="SN-1")
    rows = [
        {"name": "Saw", "category": "Tools"},
        {"name": "Drill", "category": "Tools", "serial_number": "SN-1"},
    ]
    r = _import(client, admin, rows)
    assert r.status_code == 409
    assert r.json()["detail"]["message"].startswith("Row 2:")
    assert client.get("/items", headers=admin).json()["total"] == 1


def test_duplicate_within_the_same_batch(client, admin, category):
    rows = [
        {"name": "Drill", "category": "Tools", "barcode": "BC-1"},
        {"name": "Drill 2", "category": "Tools", "barcode": "BC-1"},
    ]
    assert _import(client, admin, rows).status_code == 409
    assert client.get("/items", headers=admin).json()["total"] == 0


def test_image_is_stored_once_per_group(client, admin, category, image_store):
    rows = [
        {
            "name": "Ladder",
            "category": "Tools",
            "quantity": 3,
            "image_base64": base64.b64encode(PNG).decode(),
            "image_content_type": "image/png",
        }
    ]
    r = _import(client, admin, rows)
    assert r.status_code == 200, r.text
    assert len(list(image_store.root.iterdir())) == 1

    ids = r.json()["rows"][0]["item_ids"]
    urls = {client.get(f"/items/{i}", headers=admin).json()["image_url"] for i in ids}
    assert len(urls) == 1 and None not in urls

    # deleting the representative hands the image to the next unit
    client.delete(f"/items/{ids[0]}", headers=admin)
    assert len(list(image_store.root.iterdir())) == 1
    assert client.get(f"/items/{ids[1]}", headers=admin).json()["image_url"] in urls


def test_bad_image_rejects_the_batch(client, admin, category):
    rows = [{"name": "Ladder", "category": "Tools", "image_base64": "***"}]
    r = _import(client, admin, rows)
    assert r.status_code == 400
    assert r.json()["detail"]["errors"] == ["Row 1: image is not valid base64"]


def test_import_is_admin_only(client, tech, category):
    assert _import(client, tech, [{"name": "Drill", "category": "Tools"}]).status_code == 403
