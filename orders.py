"""Order placement and inventory adjustment.

An order request goes through these steps, in order:

1. ``parse_order_request`` validates the body (``items`` may arrive as a
   JSON-encoded string when the request is multipart).
2. The purchaser and the shipping address are looked up.
3. ``resolve_line_items`` fetches every product/variant and captures the unit
   price, rejecting lines whose quantity exceeds the stock on hand.
4. ``compute_total`` sums ``unit_price * quantity`` into whole currency units.
5. ``ingest_receipt`` uploads a proof-of-payment image, if one was sent.
6. ``reserve_stock`` decrements stock with conditional updates that only
   match while ``stock >= quantity``; a line that no longer fits undoes the
   reservations made so far and fails the request.
7. ``write_order`` inserts the order with its items embedded, in one write.
8. ``notify_new_order`` leaves a notification for the admins. Its failure is
   logged, the committed order is still returned.
"""

import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from addresses import get_user_address
from database import create_document, find_by_id, get_documents, now, oid, serialize
from errors import (
    InsufficientStock,
    NotFound,
    PersistenceError,
    StoreError,
    ValidationError,
    parse_model,
)
from schemas import ORDER_STATUSES, Notification, Order, OrderItem, PaymentMethod
from uploads import RECEIPT_FOLDER, upload_image

logger = logging.getLogger(__name__)

# --------------------- Request schema ---------------------


class LineItemRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)

    @field_validator("variant_id", mode="before")
    @classmethod
    def blank_variant(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class OrderRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    address_id: str = Field(..., min_length=1)
    items: List[LineItemRequest] = Field(..., min_length=1)
    payment_method: PaymentMethod = "COD"
    receipt: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def decode_items(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                raise ValueError("items must be a JSON array")
        return v

    @field_validator("receipt", mode="before")
    @classmethod
    def blank_receipt(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


def parse_order_request(data: dict) -> OrderRequest:
    return parse_model(OrderRequest, data, "order request")


# --------------------- Catalog lookup & pricing ---------------------


@dataclass
class ResolvedLine:
    product: dict
    variant: Optional[dict]
    quantity: int

    @property
    def unit_price(self) -> float:
        if self.variant is not None:
            return self.variant["price"]
        return self.product["price"]

    @property
    def available(self) -> int:
        if self.variant is not None:
            return self.variant.get("stock", 0)
        return self.product.get("stock", 0)

    def to_item(self) -> OrderItem:
        return OrderItem(
            product_id=str(self.product["_id"]),
            variant_id=str(self.variant["_id"]) if self.variant else None,
            quantity=self.quantity,
            price=self.unit_price,
        )


def resolve_line_items(db: Database, items: List[LineItemRequest]) -> List[ResolvedLine]:
    lines = []
    for item in items:
        product = find_by_id(db, "product", item.product_id)
        if product is None or product.get("is_active") is False:
            raise NotFound("Product", item.product_id)

        variant = None
        if item.variant_id:
            variant_oid = oid(item.variant_id)
            if variant_oid is not None:
                variant = db["productvariant"].find_one(
                    {"_id": variant_oid, "product_id": str(product["_id"])}
                )
            if variant is None:
                raise NotFound("Variant", item.variant_id)

        line = ResolvedLine(product=product, variant=variant, quantity=item.quantity)
        if line.quantity > line.available:
            raise InsufficientStock(product["name"], line.quantity, line.available)
        lines.append(line)
    return lines


def compute_total(lines: List[ResolvedLine]) -> int:
    total = sum((Decimal(str(line.unit_price)) * line.quantity for line in lines), Decimal(0))
    return int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# --------------------- Receipt ---------------------


def ingest_receipt(receipt: Optional[str], receipt_file: Optional[bytes] = None) -> Optional[str]:
    if receipt_file is not None:
        return upload_image(receipt_file, RECEIPT_FOLDER)
    if receipt:
        return upload_image(receipt, RECEIPT_FOLDER)
    return None


# --------------------- Inventory ---------------------

Reservation = Tuple[str, ObjectId, int]


def _decrement(db: Database, collection_name: str, _id: ObjectId, quantity: int, name: str):
    result = db[collection_name].update_one(
        {"_id": _id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}},
    )
    if result.matched_count == 0:
        logger.warning("Stock reservation failed for %s %s (qty %d)", collection_name, _id, quantity)
        raise InsufficientStock(name, quantity)


def release_stock(db: Database, reserved: List[Reservation]):
    for collection_name, _id, quantity in reversed(reserved):
        db[collection_name].update_one({"_id": _id}, {"$inc": {"stock": quantity}})
    if reserved:
        logger.info("Released %d stock reservation(s)", len(reserved))


def reserve_stock(db: Database, lines: List[ResolvedLine]) -> List[Reservation]:
    """Take stock for every line; all or nothing."""
    reserved: List[Reservation] = []
    try:
        for line in lines:
            name = line.product["name"]
            if line.variant is not None:
                _decrement(db, "productvariant", line.variant["_id"], line.quantity, name)
                reserved.append(("productvariant", line.variant["_id"], line.quantity))
            _decrement(db, "product", line.product["_id"], line.quantity, name)
            reserved.append(("product", line.product["_id"], line.quantity))
    except StoreError:
        release_stock(db, reserved)
        raise
    except PyMongoError as e:
        release_stock(db, reserved)
        raise PersistenceError(f"Failed to update stock: {e}") from e
    return reserved


def restock_items(db: Database, items: List[dict]):
    for item in items:
        if item.get("variant_id"):
            db["productvariant"].update_one(
                {"_id": oid(item["variant_id"])}, {"$inc": {"stock": item["quantity"]}}
            )
        db["product"].update_one(
            {"_id": oid(item["product_id"])}, {"$inc": {"stock": item["quantity"]}}
        )


# --------------------- Order writer & notifier ---------------------


def write_order(
    db: Database,
    user_id: str,
    address_id: str,
    lines: List[ResolvedLine],
    total: int,
    payment_method: str,
    receipt: Optional[str],
) -> str:
    order = Order(
        user_id=user_id,
        address_id=address_id,
        items=[line.to_item() for line in lines],
        total=total,
        payment_method=payment_method,
        payment_status="PAID" if payment_method == "ONLINE" else "PENDING",
        receipt=receipt,
        status="PENDING",
    )
    try:
        return create_document(db, "order", order)
    except PyMongoError as e:
        raise PersistenceError(f"Failed to save order: {e}") from e


def notify_new_order(db: Database, order_id: str, user: dict, total: int) -> str:
    message = f"New order #{order_id[-8:].upper()} from {user.get('name', 'customer')} - total {total}"
    return create_document(db, "notification", Notification(message=message, order_id=order_id))


def place_order(
    db: Database,
    user_id: str,
    req: OrderRequest,
    receipt_file: Optional[bytes] = None,
) -> dict:
    user = find_by_id(db, "user", user_id)
    if user is None:
        raise NotFound("User", user_id)
    address = get_user_address(db, user_id, req.address_id)

    lines = resolve_line_items(db, req.items)
    total = compute_total(lines)
    receipt_url = ingest_receipt(req.receipt, receipt_file)

    reserved = reserve_stock(db, lines)
    try:
        order_id = write_order(
            db, user_id, str(address["_id"]), lines, total, req.payment_method, receipt_url
        )
    except StoreError:
        release_stock(db, reserved)
        raise
    logger.info("Order %s placed by user %s, total %d", order_id, user_id, total)

    try:
        notify_new_order(db, order_id, user, total)
    except PyMongoError:
        logger.exception("Could not create notification for order %s", order_id)

    return order_details(db, find_by_id(db, "order", order_id))


# --------------------- Reads & admin updates ---------------------


def _user_summary(user: Optional[dict]) -> Optional[dict]:
    if user is None:
        return None
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}


def order_details(db: Database, order: dict) -> dict:
    """Serialize an order with its items' product/variant, address and user."""
    out = serialize(order)
    items = []
    for item in order.get("items", []):
        product = find_by_id(db, "product", item["product_id"])
        variant = find_by_id(db, "productvariant", item["variant_id"]) if item.get("variant_id") else None
        items.append({**item, "product": serialize(product), "variant": serialize(variant)})
    out["items"] = items
    out["address"] = serialize(find_by_id(db, "address", order["address_id"]))
    out["user"] = _user_summary(find_by_id(db, "user", order["user_id"]))
    return out


def list_orders(db: Database, user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
    query = {"user_id": user_id} if user_id else {}
    docs = get_documents(db, "order", query, limit=limit, sort=[("created_at", -1)])
    return [order_details(db, d) for d in docs]


def update_order_status(db: Database, order_id: str, status: str) -> dict:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    order = find_by_id(db, "order", order_id)
    if order is None:
        raise NotFound("Order", order_id)

    # the status change matches only orders that are not cancelled yet, so
    # exactly one caller moves an order to CANCELLED and restocks it
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$ne": "CANCELLED"}},
        {"$set": {"status": status, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if status != "CANCELLED":
            raise ValidationError("Cancelled orders cannot be reopened")
        return order_details(db, find_by_id(db, "order", order_id))

    if status == "CANCELLED":
        restock_items(db, order.get("items", []))
        logger.info("Order %s cancelled, stock restored", order_id)
    return order_details(db, updated)


def update_payment_status(db: Database, order_id: str, payment_status: str) -> dict:
    if payment_status not in ("PENDING", "PAID"):
        raise ValidationError(f"Invalid payment status: {payment_status}")
    order = find_by_id(db, "order", order_id)
    if order is None:
        raise NotFound("Order", order_id)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"payment_status": payment_status, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return order_details(db, updated)
