import pytest

from automation.changes import EntityType
from db.models import Inventory, InventoryStatus, derive_inventory_status


@pytest.mark.parametrize(
    "current,minimum,expected",
    [
        (0, 500, InventoryStatus.OUT_OF_STOCK),
        (-3, 500, InventoryStatus.OUT_OF_STOCK),
        (249.9, 500, InventoryStatus.CRITICAL),
        (250, 500, InventoryStatus.LOW),
        (499, 500, InventoryStatus.LOW),
        (500, 500, InventoryStatus.OK),
        (12000, 500, InventoryStatus.OK),
    ],
)
def test_derive_inventory_status(current, minimum, expected):
    assert derive_inventory_status(current, minimum) is expected


@pytest.mark.asyncio
async def test_status_recomputed_on_every_write(store, feed):
    item = await store.create(Inventory, material_type="Portland Cement", current_quantity=800, minimum_quantity=500, unit="LB")
    assert item.status == "OK"
    assert item.status_changed_at is not None

    for quantity in (450, 200, 0, 900):
        item = await store.update_by_id(Inventory, item.id, {"current_quantity": quantity})
        assert item.status == derive_inventory_status(quantity, 500).value

    updates = [e for e in feed.events(EntityType.INVENTORY) if e["operation"] == "update"]
    assert len(updates) == 4
    assert all('"status"' in e["changed_fields"] for e in updates)


@pytest.mark.asyncio
async def test_status_changed_at_moves_only_with_status(store):
    item = await store.create(Inventory, material_type="Rebar #5", current_quantity=300, minimum_quantity=500, unit="FT")
    first = item.status_changed_at

    item = await store.update_by_id(Inventory, item.id, {"current_quantity": 320})
    assert item.status == "LOW"
    assert item.status_changed_at == first

    item = await store.update_by_id(Inventory, item.id, {"current_quantity": 100})
    assert item.status == "CRITICAL"
    assert item.status_changed_at >= first


@pytest.mark.asyncio
async def test_status_cannot_be_written_directly(store):
    item = await store.create(Inventory, material_type="Fly Ash", current_quantity=800, minimum_quantity=500, unit="LB")
    with pytest.raises(ValueError, match="derived"):
        await store.update_by_id(Inventory, item.id, {"status": "OUT_OF_STOCK"})


@pytest.mark.asyncio
async def test_low_stock_items_sorted_by_severity(store):
    for material, quantity in [("Sand", 400), ("Admixture", 0), ("Aggregate", 100), ("Cement", 900)]:
        await store.create(Inventory, material_type=material, current_quantity=quantity, minimum_quantity=500, unit="YD3")

    items = await store.low_stock_items()
    assert [(i.material_type, i.status) for i in items] == [
        ("Admixture", "OUT_OF_STOCK"),
        ("Aggregate", "CRITICAL"),
        ("Sand", "LOW"),
    ]
