from backend.app.db.models.core_types import BoxType, InventoryStatus

US = "美国"
OP = {"X-Operator": "alice"}
BATCH = {"country": US, "marketplace": "amazon.com", "shipping_method": "sea"}


def _submit(client, lines, **extra):
    return client.post("/v1/demands", json={**BATCH, "lines": lines, **extra}, headers=OP)


def _record_nums(client, need_num):
    return [ln["record_num"] for ln in client.get(f"/v1/demands/{need_num}").json()["lines"]]


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_mutations_require_operator_header(client):
    r = client.post("/v1/demands", json={**BATCH, "lines": [{"sku": "A", "quantity": 1}]})
    assert r.status_code == 401

    r = client.post("/v1/shipments", json={"lines": [{"sku": "A", "quantity": 1}]})
    assert r.status_code == 401


def test_submit_demand_and_notification(client, notifier):
    """
    GIVEN
    - POST /v1/demands sans besoin existant

    THEN
    - lot créé, created_by = X-Operator
    - notification envoyée en tâche de fond
    """
    r = _submit(client, [{"sku": "AGXB362D1", "quantity": 44}], deadline="2026-12-01")

    assert r.status_code == 200
    body = r.json()
    assert body["partial"] is False
    need_num = body["need_num"]
    assert [s.need_num for s in notifier.sent] == [need_num]
    assert notifier.sent[0].created_by == "alice"

    detail = client.get(f"/v1/demands/{need_num}").json()
    assert detail["summary"]["total_quantity"] == 44
    assert detail["lines"][0]["effective_status"] == "pending"
    assert detail["lines"][0]["created_by"] == "alice"

    listing = client.get("/v1/demands", params={"status": "pending"}).json()
    assert listing["total"] == 1
    assert listing["list"][0]["need_num"] == need_num


def test_request_validation(client):
    r = _submit(client, [{"sku": "A", "quantity": 0}])
    assert r.status_code == 422

    r = _submit(client, [{"sku": "A", "quantity": 1}, {"sku": "A", "quantity": 2}])
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_conflict_flow_through_sessions(client, notifier):
    """
    GIVEN
    - X x 20 existant, nouvelle soumission X x 10 + Y x 2 sans résolution

    THEN
    - 409 CONFLICT_UNRESOLVED avec token de session
    - résolution "add" via la session, puis finalize -> lot avec Y seulement
    """
    need_x = _submit(client, [{"sku": "X", "quantity": 20}]).json()["need_num"]
    (rec_x,) = _record_nums(client, need_x)

    r = _submit(client, [{"sku": "X", "quantity": 10}, {"sku": "Y", "quantity": 2}])
    assert r.status_code == 409
    err = r.json()["error"]
    assert err["code"] == "CONFLICT_UNRESOLVED"
    assert err["retryable"] is False
    token = err["details"]["session_token"]
    assert err["details"]["conflicts"][0]["existing_remaining_quantity"] == 20

    state = client.get(f"/v1/demand-sessions/{token}").json()
    item_token = state["next_item_token"]

    r = client.post(f"/v1/demand-sessions/{token}/items/{item_token}", json={"resolution": "add"}, headers=OP)
    assert r.status_code == 200
    assert r.json()["result_quantity"] == 30

    r = client.post(f"/v1/demand-sessions/{token}/finalize", headers=OP)
    assert r.status_code == 200
    new_need = r.json()["need_num"]

    assert client.get(f"/v1/demands/lines/{rec_x}").json()["quantity"] == 30
    new_lines = client.get(f"/v1/demands/{new_need}").json()["lines"]
    assert [(ln["sku"], ln["quantity"]) for ln in new_lines] == [("Y", 2)]
    assert new_need in [s.need_num for s in notifier.sent]


def test_one_shot_submission_with_resolutions(client):
    need_x = _submit(client, [{"sku": "X", "quantity": 20}]).json()["need_num"]
    (rec_x,) = _record_nums(client, need_x)

    r = _submit(client, [{"sku": "X", "quantity": 6}], resolutions={"X": "replace"})

    assert r.status_code == 200
    assert r.json()["applied"][0]["quantity"] == 6
    assert client.get(f"/v1/demands/lines/{rec_x}").json()["quantity"] == 6


def test_inventory_endpoints(client):
    r = client.post(
        "/v1/inventory/units",
        json={"sku": "A", "country": US, "quantity": 30, "boxes": 3},
        headers=OP,
    )
    assert r.status_code == 200
    unit = r.json()
    assert unit["status"] == InventoryStatus.pending_outbound.value
    assert unit["available_quantity"] == 30
    assert unit["operator"] == "alice"

    r = client.post(
        "/v1/inventory/units/mixed-box",
        json={"mix_box_num": "MIX-1", "items": [{"sku": "A", "country": US, "quantity": 4}]},
        headers=OP,
    )
    assert r.status_code == 200
    assert r.json()[0]["box_type"] == BoxType.mixed_box.value

    avail = client.get("/v1/inventory/availability", params={"sku": "A", "country": US}).json()
    assert avail == {
        "sku": "A",
        "country": US,
        "whole_box_quantity": 30,
        "whole_box_count": 3,
        "mixed_box_quantity": 4,
        "total_available": 34,
    }

    summary = client.get("/v1/inventory/summary", params={"country": US}).json()
    assert summary[0]["mixed_box_count"] == 1

    r = client.post(f"/v1/inventory/units/{unit['id']}/cancel", json={"reason": "wet"}, headers=OP)
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"

    r = client.post("/v1/inventory/units/999/cancel", headers=OP)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


def test_shipment_lifecycle(client):
    """
    GIVEN
    - stock A x 20, besoin A x 20
    - expédition liée + ligne manuelle order_item_id = -4

    THEN
    - relation MANUAL- avec sentinelle -4
    - PATCH quantité sous le déjà expédié -> 400 INVALID_QUANTITY
    - DELETE restitue le stock, un second DELETE -> 404
    """
    client.post("/v1/inventory/units", json={"sku": "A", "country": US, "quantity": 20, "boxes": 2}, headers=OP)
    client.post("/v1/inventory/units", json={"sku": "B", "country": US, "quantity": 5, "boxes": 1}, headers=OP)
    need_num = _submit(client, [{"sku": "A", "quantity": 20}]).json()["need_num"]
    (rec_a,) = _record_nums(client, need_num)

    r = client.post(
        "/v1/shipments",
        json={
            "shipping_method": "sea",
            "lines": [
                {"order_item_id": rec_a, "sku": "A", "quantity": 10},
                {"order_item_id": -4, "sku": "B", "country": US, "quantity": 5},
            ],
        },
        headers={"X-Operator": "bob"},
    )
    assert r.status_code == 200
    shipment = r.json()
    assert shipment["operator"] == "bob"
    rels = {rel["need_num"]: rel for rel in shipment["relations"]}
    manual = [n for n in rels if n.startswith("MANUAL-")]
    assert len(manual) == 1
    assert rels[manual[0]]["manual_sentinel"] == -4
    assert rels[need_num]["completion_status"] == "partial"

    r = client.patch(f"/v1/demands/lines/{rec_a}", json={"quantity": 5}, headers=OP)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_QUANTITY"

    r = client.delete(f"/v1/demands/{need_num}", headers=OP)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "HAS_SHIPMENTS"

    listing = client.get("/v1/shipments", params={"operator": "bob"}).json()
    assert listing["total"] == 1

    r = client.patch(f"/v1/shipments/{shipment['shipment_id']}/status", json={"status": "shipped"}, headers=OP)
    assert r.status_code == 200
    assert r.json()["status"] == "shipped"

    r = client.delete(f"/v1/shipments/{shipment['shipment_id']}", headers=OP)
    assert r.status_code == 200
    assert client.get("/v1/inventory/availability", params={"sku": "A", "country": US}).json()["total_available"] == 20

    r = client.delete(f"/v1/shipments/{shipment['shipment_id']}", headers=OP)
    assert r.status_code == 404


def test_insufficient_stock_maps_to_409(client):
    need_num = _submit(client, [{"sku": "A", "quantity": 5}]).json()["need_num"]
    (rec_a,) = _record_nums(client, need_num)

    r = client.post("/v1/shipments", json={"lines": [{"order_item_id": rec_a, "sku": "A", "quantity": 5}]}, headers=OP)

    assert r.status_code == 409
    assert r.json()["error"]["code"] == "INSUFFICIENT_STOCK"
    assert r.json()["error"]["details"]["missing"] == 5


def test_consistency_repair_endpoint(client, db_session, make_unit):
    make_unit("A", US, 10, shipped=10, status=InventoryStatus.pending_outbound)

    dry = client.post("/v1/inventory/consistency-repair", params={"dry_run": True}, headers=OP).json()
    assert dry["mismatches"] == 1
    assert dry["fixed"] == 0

    done = client.post("/v1/inventory/consistency-repair", headers=OP).json()
    assert done["fixed"] == 1

    again = client.post("/v1/inventory/consistency-repair", headers=OP).json()
    assert again["mismatches"] == 0
