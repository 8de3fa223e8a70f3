"""Tests for order placement and inventory adjustment."""

import time
from concurrent.futures import ThreadPoolExecutor

import cloudinary.uploader
import pytest
from pymongo.errors import PyMongoError

import orders
from errors import InsufficientStock, NotFound, UpstreamFailure, ValidationError
from orders import (
    compute_total,
    parse_order_request,
    place_order,
    reserve_stock,
    resolve_line_items,
    update_order_status,
)


@pytest.fixture
def checkout(customer, make_address):
    """Customer id and one of their addresses."""
    return customer["id"], make_address(customer["id"])


def order_request(address_id, items, **extra):
    return parse_order_request({"addressId": address_id, "items": items, **extra})


class TestPricing:
    def test_total_is_sum_of_unit_price_times_quantity(self, db, checkout, make_product):
        user_id, address_id = checkout
        p1, _ = make_product(name="Whey", price=500, stock=10)
        p2, [v1] = make_product(name="Creatine", price=300, stock=20,
                                variants=[{"label": "Unflavored", "price": 350, "stock": 5}])

        order = place_order(db, user_id, order_request(address_id, [
            {"productId": p1, "quantity": 2},
            {"productId": p2, "variantId": v1, "quantity": 3},
        ]))

        assert order["total"] == 500 * 2 + 350 * 3
        assert [i["price"] for i in order["items"]] == [500, 350]

    def test_total_rounds_half_up(self, db, make_product):
        pid, _ = make_product(price=10.25, stock=10)
        lines = resolve_line_items(db, parse_order_request(
            {"addressId": "a", "items": [{"productId": pid, "quantity": 2}]}
        ).items)
        assert compute_total(lines) == 21

    def test_unit_price_is_frozen_at_order_time(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product(price=500, stock=10)
        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 1}]))

        db["product"].update_one({}, {"$set": {"price": 900}})

        stored = db["order"].find_one()
        assert stored["total"] == 500
        assert stored["items"][0]["price"] == 500
        assert order["total"] == 500


class TestPlaceOrder:
    def test_example_cod_order(self, db, checkout, make_product, stock_of):
        user_id, address_id = checkout
        pid, _ = make_product(price=500, stock=10)

        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 2}],
                                                      paymentMethod="COD"))

        assert order["total"] == 1000
        assert order["status"] == "PENDING"
        assert order["payment_status"] == "PENDING"
        assert order["receipt"] is None
        assert stock_of("product", pid) == 8

    def test_variant_and_parent_stock_decremented(self, db, checkout, make_product, stock_of):
        user_id, address_id = checkout
        pid, [vid] = make_product(stock=20, variants=[{"label": "Chocolate", "price": 550, "stock": 6}])

        order = place_order(db, user_id, order_request(address_id, [
            {"productId": pid, "variantId": vid, "quantity": 4},
        ]))

        assert stock_of("productvariant", vid) == 2
        assert stock_of("product", pid) == 16
        assert order["items"][0]["variant"]["label"] == "Chocolate"

    def test_insufficient_stock_creates_nothing(self, db, checkout, make_product, stock_of):
        user_id, address_id = checkout
        pid, _ = make_product(stock=5)

        with pytest.raises(InsufficientStock):
            place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 6}]))

        assert db["order"].count_documents({}) == 0
        assert db["notification"].count_documents({}) == 0
        assert stock_of("product", pid) == 5

    def test_variant_stock_is_what_gets_checked(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, [vid] = make_product(stock=100, variants=[{"label": "Vanilla", "price": 500, "stock": 1}])

        with pytest.raises(InsufficientStock):
            place_order(db, user_id, order_request(address_id, [
                {"productId": pid, "variantId": vid, "quantity": 2},
            ]))

    def test_unknown_product_is_not_found(self, db, checkout, make_product, stock_of):
        user_id, address_id = checkout
        pid, _ = make_product(stock=5)

        with pytest.raises(NotFound):
            place_order(db, user_id, order_request(address_id, [
                {"productId": pid, "quantity": 1},
                {"productId": "64b7f0c2a1b2c3d4e5f60718", "quantity": 1},
            ]))

        assert db["order"].count_documents({}) == 0
        assert stock_of("product", pid) == 5

    def test_variant_of_another_product_is_not_found(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product(name="Whey")
        _, [other_vid] = make_product(name="Shaker", variants=[{"label": "Blue", "price": 10, "stock": 5}])

        with pytest.raises(NotFound, match="Variant"):
            place_order(db, user_id, order_request(address_id, [
                {"productId": pid, "variantId": other_vid, "quantity": 1},
            ]))

    def test_unknown_user_and_foreign_address(self, db, make_user, make_address, make_product):
        pid, _ = make_product()
        jane = make_user()
        omar = make_user(name="Omar", email="omar@gymstore.com")
        omars_address = make_address(omar["id"])

        with pytest.raises(NotFound, match="User"):
            place_order(db, "64b7f0c2a1b2c3d4e5f60718",
                        order_request(omars_address, [{"productId": pid, "quantity": 1}]))
        with pytest.raises(NotFound, match="Address"):
            place_order(db, jane["id"], order_request(omars_address, [{"productId": pid, "quantity": 1}]))

    def test_new_order_notification(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product(price=500)

        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 3}]))

        note = db["notification"].find_one()
        assert note["type"] == "NEW_ORDER"
        assert note["order_id"] == order["id"]
        assert note["is_read"] is False
        assert order["id"][-8:].upper() in note["message"]
        assert "Jane Doe" in note["message"]
        assert "1500" in note["message"]

    def test_notification_failure_keeps_the_order(self, db, checkout, make_product, monkeypatch):
        user_id, address_id = checkout
        pid, _ = make_product()

        def broken(*args, **kwargs):
            raise PyMongoError("notification collection unavailable")

        monkeypatch.setattr(orders, "notify_new_order", broken)
        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 1}]))

        assert order["id"]
        assert db["order"].count_documents({}) == 1
        assert db["notification"].count_documents({}) == 0

    def test_order_write_failure_releases_stock(self, db, checkout, make_product, stock_of, monkeypatch):
        user_id, address_id = checkout
        pid, _ = make_product(stock=10)

        def failing_create(database, collection_name, data):
            raise PyMongoError("write concern error")

        monkeypatch.setattr(orders, "create_document", failing_create)
        with pytest.raises(orders.PersistenceError):
            place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 4}]))

        assert stock_of("product", pid) == 10

    def test_populated_response(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product(name="Whey")

        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 1}]))

        assert order["user"] == {"id": user_id, "name": "Jane Doe", "email": "jane@gymstore.com"}
        assert order["address"]["id"] == address_id
        assert order["items"][0]["product"]["name"] == "Whey"
        assert order["created_at"]


class TestReceipts:
    def test_online_payment_with_data_url(self, db, checkout, make_product, uploads):
        user_id, address_id = checkout
        pid, _ = make_product()

        order = place_order(db, user_id, order_request(
            address_id, [{"productId": pid, "quantity": 1}],
            paymentMethod="ONLINE", receipt="data:image/png;base64,iVBORw0KGgo=",
        ))

        assert order["payment_status"] == "PAID"
        assert order["receipt"] == "https://res.cloudinary.com/demo/receipts/img1.png"
        assert uploads[0] == ("data:image/png;base64,iVBORw0KGgo=", "receipts")

    def test_online_payment_with_file(self, db, checkout, make_product, uploads):
        user_id, address_id = checkout
        pid, _ = make_product()

        order = place_order(db, user_id, order_request(
            address_id, [{"productId": pid, "quantity": 1}], paymentMethod="ONLINE",
        ), receipt_file=b"\x89PNG fake bytes")

        assert order["receipt"].endswith("receipts/img1.png")
        assert len(uploads) == 1

    def test_upload_failure_aborts_before_any_write(self, db, checkout, make_product, stock_of, monkeypatch):
        user_id, address_id = checkout
        pid, _ = make_product(stock=3)

        def rejected(*args, **kwargs):
            raise RuntimeError("cloudinary: 401 invalid signature")

        monkeypatch.setattr(cloudinary.uploader, "upload", rejected)
        with pytest.raises(UpstreamFailure):
            place_order(db, user_id, order_request(
                address_id, [{"productId": pid, "quantity": 1}],
                paymentMethod="ONLINE", receipt="data:image/png;base64,AAAA",
            ))

        assert db["order"].count_documents({}) == 0
        assert stock_of("product", pid) == 3

    def test_receipt_must_be_an_image(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product()
        with pytest.raises(ValidationError):
            place_order(db, user_id, order_request(
                address_id, [{"productId": pid, "quantity": 1}],
                paymentMethod="ONLINE", receipt="https://example.org/receipt.png",
            ))


class TestRequestParsing:
    def test_items_may_be_json_string(self):
        req = parse_order_request({
            "addressId": "a1",
            "items": '[{"productId": "p1", "quantity": 2}, {"productId": "p2", "variantId": "v1", "quantity": 1}]',
            "paymentMethod": "ONLINE",
        })
        assert [(i.product_id, i.variant_id, i.quantity) for i in req.items] == [
            ("p1", None, 2), ("p2", "v1", 1)
        ]

    @pytest.mark.parametrize("data", [
        {"items": [{"productId": "p1", "quantity": 1}]},
        {"addressId": "a1", "items": []},
        {"addressId": "a1", "items": "not json"},
        {"addressId": "a1", "items": [{"productId": "p1", "quantity": 0}]},
        {"addressId": "a1", "items": [{"quantity": 1}]},
        {"addressId": "a1", "items": [{"productId": "p1", "quantity": 1}], "paymentMethod": "CARD"},
    ])
    def test_malformed_requests(self, data):
        with pytest.raises(ValidationError):
            parse_order_request(data)


class TestConcurrentStock:
    """Stock check and decrement are separate steps; the decrement guards itself."""

    def test_two_orders_for_the_last_unit(self, db, make_product, stock_of):
        pid, _ = make_product(stock=1)
        items = parse_order_request({"addressId": "a", "items": [{"productId": pid, "quantity": 1}]}).items

        # both requests pass the stock check before either decrements
        first = resolve_line_items(db, items)
        second = resolve_line_items(db, items)

        reserve_stock(db, first)
        with pytest.raises(InsufficientStock):
            reserve_stock(db, second)

        assert stock_of("product", pid) == 0

    def test_partial_reservation_is_rolled_back(self, db, make_product, stock_of):
        whey, _ = make_product(name="Whey", stock=5)
        bar, _ = make_product(name="Protein Bar", stock=1)
        lines = resolve_line_items(db, parse_order_request({"addressId": "a", "items": [
            {"productId": whey, "quantity": 2},
            {"productId": bar, "quantity": 1},
        ]}).items)

        # the last bar is sold in between
        db["product"].update_one({"name": "Protein Bar"}, {"$set": {"stock": 0}})

        with pytest.raises(InsufficientStock, match="Protein Bar"):
            reserve_stock(db, lines)
        assert stock_of("product", whey) == 5
        assert stock_of("product", bar) == 0


class TestOrderStatus:
    def test_cancel_restocks_once(self, db, checkout, make_product, stock_of):
        user_id, address_id = checkout
        pid, [vid] = make_product(stock=10, variants=[{"label": "Berry", "price": 400, "stock": 4}])
        order = place_order(db, user_id, order_request(address_id, [
            {"productId": pid, "variantId": vid, "quantity": 3},
        ]))

        update_order_status(db, order["id"], "CANCELLED")
        update_order_status(db, order["id"], "CANCELLED")

        assert stock_of("product", pid) == 10
        assert stock_of("productvariant", vid) == 4

    def test_concurrent_cancels_restock_once(self, db, checkout, make_product, stock_of, monkeypatch):
        user_id, address_id = checkout
        pid, _ = make_product(stock=10)
        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 3}]))
        assert stock_of("product", pid) == 7

        original_restock = orders.restock_items

        def slow_restock(*args, **kwargs):
            time.sleep(0.2)
            original_restock(*args, **kwargs)

        monkeypatch.setattr(orders, "restock_items", slow_restock)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: update_order_status(db, order["id"], "CANCELLED"), range(2)))

        assert [r["status"] for r in results] == ["CANCELLED", "CANCELLED"]
        assert stock_of("product", pid) == 10

    def test_cancelled_orders_stay_cancelled(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product()
        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 1}]))
        update_order_status(db, order["id"], "CANCELLED")

        with pytest.raises(ValidationError):
            update_order_status(db, order["id"], "SHIPPED")

    def test_unknown_status(self, db, checkout, make_product):
        user_id, address_id = checkout
        pid, _ = make_product()
        order = place_order(db, user_id, order_request(address_id, [{"productId": pid, "quantity": 1}]))
        with pytest.raises(ValidationError):
            update_order_status(db, order["id"], "LOST")
