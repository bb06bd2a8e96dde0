import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import text

from storefront import event_store
from storefront.errors import InsufficientStock, InvalidInput, ItemNotFound
from storefront.inventory import commands, queries


@pytest.mark.asyncio
async def test_add_sweet_stores_price_as_decimal_and_records_event(seed, session_factory):
    sweet = await seed(name="Lemon Drop", price="1.35", quantity=7)

    async with session_factory() as session:
        loaded = await queries.get_sweet(session, sweet.id)
        events = await event_store.load_events(session, sweet.id)
        cents = (
            await session.execute(
                text("SELECT price_cents FROM sweets WHERE id = :id"), {"id": sweet.id}
            )
        ).scalar_one()

    assert loaded.price == Decimal("1.35")
    assert loaded.quantity == 7
    assert loaded.version == 1
    assert cents == 135
    assert [e["event_type"] for e in events] == ["SweetAdded"]
    assert events[0]["version"] == 1


@pytest.mark.asyncio
async def test_add_sweet_rejects_negative_quantity(session_factory):
    async with session_factory() as session:
        with pytest.raises(InvalidInput):
            await commands.add_sweet(
                session, name="Gum", category="candy", price=Decimal("1.00"), quantity=-1
            )


@pytest.mark.asyncio
async def test_list_sweets_newest_first(seed, session_factory):
    first = await seed(name="First")
    second = await seed(name="Second")

    async with session_factory() as session:
        sweets = await queries.list_sweets(session)

    assert [s.id for s in sweets] == [second.id, first.id]


@pytest.mark.asyncio
async def test_check_availability_reports_first_missing_item_in_cart_order(seed, session_factory):
    a = await seed(name="A", quantity=1)

    async with session_factory() as session:
        with pytest.raises(ItemNotFound) as exc_info:
            await queries.check_availability(session, {a.id: 5, "Z": 1, "Y": 1})

    # 在庫不足より存在確認が先
    assert exc_info.value.item_id == "Z"


@pytest.mark.asyncio
async def test_check_availability_reports_short_line(seed, session_factory):
    a = await seed(name="A", quantity=3)
    b = await seed(name="B", quantity=1)

    async with session_factory() as session:
        with pytest.raises(InsufficientStock) as exc_info:
            await queries.check_availability(session, {a.id: 3, b.id: 2})

    err = exc_info.value
    assert err.item_id == b.id
    assert err.requested == 2
    assert err.available == 1
    assert "B" in err.message


@pytest.mark.asyncio
async def test_check_availability_is_read_only(seed, session_factory):
    a = await seed(name="A", quantity=3)

    async with session_factory() as session:
        sweets = await queries.check_availability(session, {a.id: 2})
        sweets_again = await queries.check_availability(session, {a.id: 2})

    assert sweets[a.id].quantity == 3
    assert sweets_again[a.id].version == 1


@pytest.mark.asyncio
async def test_reserve_stock_decrements_and_records_events(seed, session_factory):
    a = await seed(name="A", quantity=2)
    b = await seed(name="B", quantity=5)

    async with session_factory() as session:
        async with session.begin():
            reserved = await commands.reserve_stock(session, "order-1", {b.id: 3, a.id: 2})

    assert list(reserved) == [b.id, a.id]
    assert reserved[a.id].quantity == 0
    assert reserved[b.id].quantity == 2
    assert reserved[a.id].version == 2

    async with session_factory() as session:
        events = await event_store.load_events(session, a.id)

    assert [e["event_type"] for e in events] == ["SweetAdded", "StockReserved"]
    assert events[1]["event_data"]["order_id"] == "order-1"
    assert events[1]["event_data"]["quantity_after"] == 0


@pytest.mark.asyncio
async def test_reserve_stock_failure_rolls_back_earlier_decrements(seed, session_factory):
    a = await seed(name="A", quantity=5)
    b = await seed(name="B", quantity=1)

    with pytest.raises(InsufficientStock):
        async with session_factory() as session:
            async with session.begin():
                await commands.reserve_stock(session, "order-1", {a.id: 2, b.id: 2})

    async with session_factory() as session:
        sweets = await queries.get_sweets(session, [a.id, b.id])

    assert sweets[a.id].quantity == 5
    assert sweets[b.id].quantity == 1


@pytest.mark.asyncio
async def test_reserve_stock_unknown_item(seed, session_factory):
    a = await seed(name="A", quantity=5)

    with pytest.raises(ItemNotFound) as exc_info:
        async with session_factory() as session:
            async with session.begin():
                await commands.reserve_stock(session, "order-1", {a.id: 1, "missing": 1})

    assert exc_info.value.item_id == "missing"


@pytest.mark.asyncio
async def test_restock_adds_to_current_quantity(seed, session_factory):
    a = await seed(name="A", quantity=2)

    async with session_factory() as session:
        async with session.begin():
            sweet = await commands.restock(session, a.id, 3)

    assert sweet.quantity == 5
    assert sweet.version == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -4])
async def test_restock_requires_positive_quantity(seed, session_factory, quantity):
    a = await seed(name="A", quantity=2)

    async with session_factory() as session:
        with pytest.raises(InvalidInput):
            await commands.restock(session, a.id, quantity)


@pytest.mark.asyncio
async def test_restock_unknown_item(session_factory):
    async with session_factory() as session:
        with pytest.raises(ItemNotFound):
            await commands.restock(session, "missing", 1)


@pytest.mark.asyncio
async def test_update_sweet_changes_only_given_fields(seed, session_factory):
    a = await seed(name="A", price="2.00", quantity=4)

    async with session_factory() as session:
        async with session.begin():
            sweet = await commands.update_sweet(session, a.id, {"price": Decimal("2.25")})

    assert sweet.price == Decimal("2.25")
    assert sweet.name == "A"
    assert sweet.quantity == 4
    assert sweet.version == 2


@pytest.mark.asyncio
async def test_update_sweet_validation(seed, session_factory):
    a = await seed(name="A")

    async with session_factory() as session:
        with pytest.raises(InvalidInput):
            await commands.update_sweet(session, a.id, {"colour": "red"})
        with pytest.raises(InvalidInput):
            await commands.update_sweet(session, a.id, {"name": None})
        with pytest.raises(InvalidInput):
            await commands.update_sweet(session, a.id, {"quantity": -1})
        with pytest.raises(ItemNotFound):
            await commands.update_sweet(session, "missing", {"name": "B"})


@pytest.mark.asyncio
async def test_remove_sweet(seed, session_factory):
    a = await seed(name="A")

    async with session_factory() as session:
        async with session.begin():
            await commands.remove_sweet(session, a.id)

    async with session_factory() as session:
        assert await queries.get_sweet(session, a.id) is None
        events = await event_store.load_events(session, a.id)
        with pytest.raises(ItemNotFound):
            await commands.remove_sweet(session, a.id)

    assert events[-1]["event_type"] == "SweetRemoved"
    assert events[-1]["version"] == 2


@pytest.mark.asyncio
async def test_remove_sweet_records_event_after_latest_reservation(seed, session_factory):
    a = await seed(name="A", quantity=5)

    async with session_factory() as session:
        async with session.begin():
            await commands.reserve_stock(session, "order-1", {a.id: 1})
        async with session.begin():
            await commands.remove_sweet(session, a.id)

    async with session_factory() as session:
        events = await event_store.load_events(session, a.id)

    assert [(e["event_type"], e["version"]) for e in events] == [
        ("SweetAdded", 1),
        ("StockReserved", 2),
        ("SweetRemoved", 3),
    ]


@pytest.mark.asyncio
async def test_remove_racing_a_reservation_keeps_event_versions_unique(seed, session_factory):
    a = await seed(name="A", quantity=5)

    async def reserve():
        async with session_factory() as session:
            async with session.begin():
                await commands.reserve_stock(session, "order-1", {a.id: 1})

    async def remove():
        async with session_factory() as session:
            async with session.begin():
                await commands.remove_sweet(session, a.id)

    results = await asyncio.gather(reserve(), remove(), return_exceptions=True)

    # 削除が先なら引き当ては ItemNotFound になる。それ以外の失敗はない
    assert all(r is None or isinstance(r, ItemNotFound) for r in results)
    async with session_factory() as session:
        events = await event_store.load_events(session, a.id)
        assert await queries.get_sweet(session, a.id) is None

    versions = [e["version"] for e in events]
    assert versions == list(range(1, len(versions) + 1))
    assert events[-1]["event_type"] == "SweetRemoved"
