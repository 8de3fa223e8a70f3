"""Shipping addresses owned by a user."""

import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, find_by_id, get_documents, now, oid
from errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("full_name", "phone", "street", "city", "state", "zip_code", "country")


class AddressRequest(BaseModel):
    """Address body; every field optional here, required-ness is checked on create."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def create_address(db: Database, user_id: str, body: AddressRequest) -> dict:
    values = {f: _clean(getattr(body, f)) for f in ADDRESS_FIELDS}
    missing = [to_camel(f) for f, v in values.items() if v is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    if find_by_id(db, "user", user_id) is None:
        raise NotFound("User", user_id)

    address_id = create_document(db, "address", {"user_id": user_id, **values})
    logger.info("Created address %s for user %s", address_id, user_id)
    return db["address"].find_one({"_id": oid(address_id)})


def update_address(db: Database, user_id: str, address_id: str, body: AddressRequest) -> dict:
    existing = find_by_id(db, "address", address_id)
    if existing is None or existing.get("user_id") != user_id:
        raise NotFound("Address", address_id)

    updates = {}
    for f in ADDRESS_FIELDS:
        value = _clean(getattr(body, f))
        updates[f] = value if value is not None else existing.get(f)
    updates["updated_at"] = now()

    return db["address"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )


def list_addresses(db: Database, user_id: str) -> List[dict]:
    return get_documents(db, "address", {"user_id": user_id}, sort=[("created_at", -1)])


def get_user_address(db: Database, user_id: str, address_id: str) -> dict:
    address = find_by_id(db, "address", address_id)
    if address is None or address.get("user_id") != user_id:
        raise NotFound("Address", address_id)
    return address
