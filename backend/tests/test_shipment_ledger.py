from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from backend.app.db.models.core_types import BoxType, CompletionStatus, InventoryStatus, ShipmentStatus
from backend.app.db.models.models_v1 import (
    DemandLine,
    InventoryUnit,
    OrderShipmentRelation,
    ShipmentAllocation,
    ShipmentLine,
    ShipmentRecord,
)
from backend.services.demand import CandidateLine, cancel_demand_line, create_demand_batch, shipped_by_record
from backend.services import shipments
from backend.services.errors import InsufficientStock, InvalidQuantity, NotFound, ValidationError
from backend.services.shipments import (
    BoxBreakdown,
    Linked,
    Manual,
    ShipmentLineInput,
    create_shipment,
    delete_shipment,
    get_shipment,
    list_shipments,
    target_from_order_item_id,
    update_shipment_status,
)

US = "美国"
UK = "英国"
BATCH = dict(country=US, marketplace="amazon.com", shipping_method="sea", created_by="alice")


def _batch(db, *lines):
    need_num = create_demand_batch(db, [CandidateLine(sku, qty) for sku, qty in lines], **BATCH)
    nums = db.execute(
        select(DemandLine.record_num).where(DemandLine.need_num == need_num).order_by(DemandLine.record_num)
    ).scalars().all()
    return need_num, nums


def _unit_state(db):
    db.expire_all()
    return {
        u.id: (u.shipped_quantity, u.status, u.shipped_at)
        for u in db.execute(select(InventoryUnit).order_by(InventoryUnit.id)).scalars()
    }


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.mark.parametrize(
    "order_item_id,manual_need_num,expected",
    [
        (12, None, Linked(12)),
        (-4, None, Manual(None, -4)),
        (0, None, Manual(None, 0)),
        (None, "MANUAL-PO-7", Manual("MANUAL-PO-7", None)),
        (None, "  ", Manual(None, None)),
    ],
)
def test_target_from_order_item_id(order_item_id, manual_need_num, expected):
    assert target_from_order_item_id(order_item_id, manual_need_num) == expected


def test_linked_shipment_whole_boxes_first(db_session, make_unit):
    """
    GIVEN
    - besoin A x 30
    - stock : caisse mixte 15 (emballée en premier) + unité entière 20 / 2 caisses

    THEN
    - 20 pris sur l'entière, 10 sur la mixte
    - whole_boxes = 2, mixed_box_quantity = 10, total_boxes = 3
    - relation complete, besoin fully_fulfilled
    """
    # ---------- ARRANGE ----------
    mixed = make_unit("A", US, 15, box_type=BoxType.mixed_box, mix_box_num="MIX-1")
    whole = make_unit("A", US, 20, boxes=2)
    need_num, (record_num,) = _batch(db_session, ("A", 30))

    # ---------- ACT ----------
    record = create_shipment(
        db_session,
        operator="bob",
        lines=[ShipmentLineInput(target=Linked(record_num), sku="A", quantity=30, amz_sku="A-US")],
        shipping_method="sea",
        logistics_provider="DHL",
    )

    # ---------- ASSERT ----------
    detail = get_shipment(db_session, record.shipment_id)
    assert detail["shipment_number"].startswith("SH" + datetime.now(timezone.utc).strftime("%y%m%d"))
    assert detail["shipment_number"].endswith("0001")
    assert detail["status"] == "preparing"
    assert detail["total_items"] == 30
    assert detail["total_boxes"] == 3
    assert detail["logistics_provider"] == "DHL"

    (line,) = detail["lines"]
    assert line["order_item_id"] == record_num
    assert line["need_num"] == need_num
    assert line["amz_sku"] == "A-US"
    assert line["requested_quantity"] == 30
    assert line["shipped_quantity"] == 30
    assert line["whole_boxes"] == 2
    assert line["mixed_box_quantity"] == 10
    assert [(a["unit_id"], a["quantity"]) for a in line["allocations"]] == [(whole.id, 20), (mixed.id, 10)]

    (rel,) = detail["relations"]
    assert rel["need_num"] == need_num
    assert (rel["total_requested"], rel["total_shipped"]) == (30, 30)
    assert rel["completion_status"] == CompletionStatus.complete.value

    state = _unit_state(db_session)
    assert state[whole.id][:2] == (20, InventoryStatus.fully_outbound)
    assert state[whole.id][2] is not None
    assert state[mixed.id][:2] == (10, InventoryStatus.partially_outbound)
    assert shipped_by_record(db_session, [record_num]) == {record_num: 30}


def test_partial_shipment_relation_is_partial(db_session, make_unit):
    make_unit("A", US, 50, boxes=5)
    need_num, (record_num,) = _batch(db_session, ("A", 30))

    record = create_shipment(
        db_session,
        operator="bob",
        lines=[ShipmentLineInput(target=Linked(record_num), sku="A", quantity=10)],
    )

    (rel,) = get_shipment(db_session, record.shipment_id)["relations"]
    assert (rel["total_requested"], rel["total_shipped"]) == (30, 10)
    assert rel["completion_status"] == "partial"

    # le reste (20) complète le lot dans une seconde expédition
    second = create_shipment(
        db_session,
        operator="bob",
        lines=[ShipmentLineInput(target=Linked(record_num), sku="A", quantity=20)],
    )
    (rel2,) = get_shipment(db_session, second.shipment_id)["relations"]
    assert (rel2["total_requested"], rel2["total_shipped"]) == (20, 20)
    assert rel2["completion_status"] == "complete"

    with pytest.raises(InvalidQuantity):
        create_shipment(
            db_session,
            operator="bob",
            lines=[ShipmentLineInput(target=Linked(record_num), sku="A", quantity=1)],
        )


def test_manual_shipment_gets_synthetic_need_num(db_session, make_unit):
    """
    GIVEN
    - order_item_id = -4, aucune ligne de besoin

    THEN
    - need_num synthétique MANUAL-...
    - la relation garde la sentinelle -4 et est complete
    """
    make_unit("B", UK, 12, boxes=1)

    record = create_shipment(
        db_session,
        operator="bob",
        lines=[ShipmentLineInput(target=target_from_order_item_id(-4), sku="B", quantity=5, country=UK)],
    )

    detail = get_shipment(db_session, record.shipment_id)
    (line,) = detail["lines"]
    (rel,) = detail["relations"]
    assert line["order_item_id"] is None
    assert line["manual_sentinel"] == -4
    assert line["need_num"].startswith("MANUAL-")
    assert rel["need_num"] == line["need_num"]
    assert rel["manual_sentinel"] == -4
    assert rel["completion_status"] == "complete"
    assert _count(db_session, DemandLine) == 0


def test_manual_line_needs_country_and_supplied_need_num_is_kept(db_session, make_unit):
    make_unit("B", UK, 12, boxes=1)

    with pytest.raises(ValidationError):
        create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Manual(), sku="B", quantity=1)])

    record = create_shipment(
        db_session,
        operator="bob",
        lines=[ShipmentLineInput(target=Manual(need_num="MANUAL-PO-7"), sku="B", quantity=2, country=UK)],
    )
    assert get_shipment(db_session, record.shipment_id)["relations"][0]["need_num"] == "MANUAL-PO-7"


def test_manual_need_nums_differ_within_the_same_millisecond(db_session, make_unit, monkeypatch):
    """
    GIVEN
    - deux expéditions manuelles créées au même instant (horloge figée)

    THEN
    - deux need_num synthétiques distincts, un lot manuel par expédition
    """
    # ---------- ARRANGE ----------
    make_unit("B", UK, 12, boxes=1)
    frozen = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)
    monkeypatch.setattr(shipments, "utcnow", lambda: frozen)

    # ---------- ACT ----------
    first, second = (
        create_shipment(
            db_session,
            operator="bob",
            lines=[ShipmentLineInput(target=target_from_order_item_id(-4), sku="B", quantity=1, country=UK)],
        )
        for _ in range(2)
    )

    # ---------- ASSERT ----------
    need_first = get_shipment(db_session, first.shipment_id)["relations"][0]["need_num"]
    need_second = get_shipment(db_session, second.shipment_id)["relations"][0]["need_num"]
    assert need_first.startswith("MANUAL-")
    assert need_first != need_second
    assert _count(db_session, OrderShipmentRelation) == 2


def test_shipment_spanning_two_batches(db_session, make_unit):
    make_unit("A", US, 40, boxes=4)
    make_unit("C", US, 10, boxes=1)
    need_1, (rec_a,) = _batch(db_session, ("A", 10))
    need_2, (rec_c,) = _batch(db_session, ("C", 8))

    record = create_shipment(
        db_session,
        operator="bob",
        lines=[
            ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=10),
            ShipmentLineInput(target=Linked(rec_c), sku="C", quantity=4),
        ],
    )

    rels = {r["need_num"]: r for r in get_shipment(db_session, record.shipment_id)["relations"]}
    assert set(rels) == {need_1, need_2}
    assert rels[need_1]["completion_status"] == "complete"
    assert rels[need_2]["completion_status"] == "partial"


def test_create_then_delete_restores_everything(db_session, make_unit):
    """
    GIVEN
    - stock entier + mixte, un besoin partiellement couvert auparavant

    THEN
    - create puis delete : quantités / statuts / shipped_at des unités
      et quantités expédiées des besoins identiques à l'état initial
    - un second delete lève NotFound (pas de double restitution)
    """
    # ---------- ARRANGE ----------
    make_unit("A", US, 20, boxes=2)
    make_unit("A", US, 15, box_type=BoxType.mixed_box, mix_box_num="MIX-1")
    make_unit("B", UK, 6, boxes=1)
    _, (rec_a,) = _batch(db_session, ("A", 30))
    create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=5)])

    units_before = _unit_state(db_session)
    shipped_before = shipped_by_record(db_session, [rec_a])

    # ---------- ACT ----------
    record = create_shipment(
        db_session,
        operator="bob",
        lines=[
            ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=25),
            ShipmentLineInput(target=Manual(sentinel=-1), sku="B", quantity=6, country=UK),
        ],
    )
    assert _unit_state(db_session) != units_before

    summary = delete_shipment(db_session, record.shipment_id, operator="bob")

    # ---------- ASSERT ----------
    assert _unit_state(db_session) == units_before
    assert shipped_by_record(db_session, [rec_a]) == shipped_before
    assert sum(r["quantity"] for r in summary["restored_units"]) == 31
    assert db_session.get(ShipmentRecord, record.shipment_id) is None

    with pytest.raises(NotFound):
        delete_shipment(db_session, record.shipment_id)
    assert _unit_state(db_session) == units_before


def test_insufficient_stock_rolls_back_whole_shipment(db_session, make_unit):
    """
    GIVEN
    - ligne 1 couvrable, ligne 2 sans stock suffisant

    THEN
    - InsufficientStock, aucune trace : ni record, ni ligne, ni décrément
    """
    make_unit("A", US, 20, boxes=2)
    make_unit("C", US, 3, boxes=1)
    _, (rec_a, rec_c) = _batch(db_session, ("A", 20), ("C", 10))
    before = _unit_state(db_session)

    with pytest.raises(InsufficientStock) as exc:
        create_shipment(
            db_session,
            operator="bob",
            lines=[
                ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=20),
                ShipmentLineInput(target=Linked(rec_c), sku="C", quantity=10),
            ],
        )

    assert exc.value.details["missing"] == 7
    assert _unit_state(db_session) == before
    for model in (ShipmentRecord, ShipmentLine, ShipmentAllocation, OrderShipmentRelation):
        assert _count(db_session, model) == 0


@pytest.mark.parametrize(
    "line_kwargs",
    [
        {"sku": "WRONG", "quantity": 1},
        {"sku": "A", "quantity": 0},
        {"sku": "A", "quantity": 1, "country": UK},
    ],
)
def test_linked_line_validation(db_session, make_unit, line_kwargs):
    make_unit("A", US, 10, boxes=1)
    _, (rec_a,) = _batch(db_session, ("A", 5))

    with pytest.raises(ValidationError):
        create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Linked(rec_a), **line_kwargs)])


def test_cancelled_or_unknown_demand_line_cannot_be_shipped(db_session, make_unit):
    make_unit("A", US, 10, boxes=1)
    _, (rec_a,) = _batch(db_session, ("A", 5))
    cancel_demand_line(db_session, rec_a, operator="alice")

    with pytest.raises(ValidationError):
        create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=1)])
    with pytest.raises(NotFound):
        create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Linked(987654), sku="A", quantity=1)])
    with pytest.raises(ValidationError):
        create_shipment(db_session, operator="  ", lines=[ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=1)])


def test_preferred_mixed_box_and_box_breakdown_override(db_session, make_unit):
    make_unit("A", US, 20, boxes=2)
    wanted = make_unit("A", US, 5, box_type=BoxType.mixed_box, mix_box_num="MIX-7")
    _, (rec_a,) = _batch(db_session, ("A", 8))

    record = create_shipment(
        db_session,
        operator="bob",
        lines=[
            ShipmentLineInput(
                target=Linked(rec_a),
                sku="A",
                quantity=8,
                mix_box_num="MIX-7",
                box_breakdown=BoxBreakdown(whole_boxes=1, mixed_box_quantity=5),
            )
        ],
    )

    (line,) = get_shipment(db_session, record.shipment_id)["lines"]
    assert line["allocations"][0] == {"unit_id": wanted.id, "quantity": 5, "box_type": "mixed_box", "mix_box_num": "MIX-7"}
    assert line["allocations"][1]["quantity"] == 3
    assert (line["whole_boxes"], line["mixed_box_quantity"]) == (1, 5)


def test_update_status_only_preparing_to_shipped(db_session, make_unit):
    make_unit("A", US, 10, boxes=1)
    _, (rec_a,) = _batch(db_session, ("A", 5))
    record = create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=5)])

    assert update_shipment_status(db_session, record.shipment_id, "shipped").status == ShipmentStatus.shipped
    # même statut : rien à faire
    assert update_shipment_status(db_session, record.shipment_id, ShipmentStatus.shipped).status == ShipmentStatus.shipped

    with pytest.raises(ValidationError):
        update_shipment_status(db_session, record.shipment_id, ShipmentStatus.preparing)
    with pytest.raises(ValidationError):
        update_shipment_status(db_session, record.shipment_id, ShipmentStatus.cancelled)
    with pytest.raises(NotFound):
        update_shipment_status(db_session, 424242, ShipmentStatus.shipped)


def test_list_shipments_filters(db_session, make_unit):
    make_unit("A", US, 50, boxes=5)
    _, (rec_a,) = _batch(db_session, ("A", 30))
    first = create_shipment(db_session, operator="bob", lines=[ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=5)])
    create_shipment(db_session, operator="carol", lines=[ShipmentLineInput(target=Linked(rec_a), sku="A", quantity=5)])
    update_shipment_status(db_session, first.shipment_id, ShipmentStatus.shipped)

    today = datetime.now(timezone.utc).date()

    assert list_shipments(db_session).total == 2
    assert [s["operator"] for s in list_shipments(db_session, operator="car").items] == ["carol"]
    assert [s["shipment_id"] for s in list_shipments(db_session, status=ShipmentStatus.shipped).items] == [
        first.shipment_id
    ]
    assert list_shipments(db_session, date_from=today, date_to=today).total == 2
    assert list_shipments(db_session, date_from=today + timedelta(days=1)).total == 0
    assert list_shipments(db_session, date_to=date(2000, 1, 1)).total == 0
    assert len(list_shipments(db_session, page=1, limit=1).items) == 1

    with pytest.raises(NotFound):
        get_shipment(db_session, 999)
