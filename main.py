import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from addresses import AddressRequest, create_address, list_addresses, update_address
from auth import (
    AuthUser,
    get_current_user,
    hash_password,
    require_capability,
    token_for,
    verify_password,
)
from database import as_utc, create_document, find_by_id, get_db, get_documents, now, oid, serialize
from errors import Conflict, NotFound, StoreError, ValidationError, describe_errors, parse_model
from orders import (
    LineItemRequest,
    list_orders,
    order_details,
    parse_order_request,
    place_order,
    resolve_line_items,
    update_order_status,
    update_payment_status,
)
from schemas import (
    Banner as BannerSchema,
    Bundle as BundleSchema,
    CartItem as CartItemSchema,
    Product as ProductSchema,
    ProductVariant as ProductVariantSchema,
    Review as ReviewSchema,
    User as UserSchema,
    WishlistItem as WishlistItemSchema,
)
from uploads import upload_image

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Supplement Store API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------- Error handlers ---------------------

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": describe_errors(exc.errors())})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc)})


# --------------------- Utility ---------------------

def _decode_json(v):
    if isinstance(v, str):
        try:
            return json.loads(v)
        except ValueError:
            raise ValueError("expected a JSON array")
    return v


JsonList = Annotated[List[str], BeforeValidator(_decode_json)]


async def read_payload(request: Request) -> Tuple[Dict[str, Any], Dict[str, List[bytes]]]:
    """Read a JSON or multipart body into (fields, files)."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        data: Dict[str, Any] = {}
        files: Dict[str, List[bytes]] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                files.setdefault(key, []).append(await value.read())
            else:
                data[key] = value
        return data, files
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON or multipart form data")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body, {}


def user_out(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "CUSTOMER"),
        "created_at": as_utc(user["created_at"]).isoformat() if user.get("created_at") else None,
    }


def product_out(db: Database, product: dict) -> dict:
    out = serialize(product)
    variants = get_documents(db, "productvariant", {"product_id": str(product["_id"])})
    out["variants"] = [serialize(v) for v in variants]
    return out


def get_product_or_404(db: Database, product_id: str, active_only: bool = False) -> dict:
    product = find_by_id(db, "product", product_id)
    if product is None or (active_only and product.get("is_active") is False):
        raise NotFound("Product", product_id)
    return product


# --------------------- Models ---------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    role: str = "CUSTOMER"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr


class VariantCreate(CamelModel):
    label: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)


class ProductCreate(CamelModel):
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    sub_category: Optional[str] = None
    brand: Optional[str] = None
    price: float = Field(..., ge=0)
    size: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    warnings: JsonList = Field(default_factory=list)
    directions: str = ""
    images: JsonList = Field(default_factory=list)
    variants: Annotated[List[VariantCreate], BeforeValidator(_decode_json)] = Field(default_factory=list)


class ProductUpdate(CamelModel):
    name: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    size: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    warnings: Optional[JsonList] = None
    directions: Optional[str] = None
    images: Optional[JsonList] = None
    is_active: Optional[bool] = None


class ReviewRequest(CamelModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CartUpdateRequest(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int


class WishlistRequest(CamelModel):
    product_id: str


class StatusUpdateRequest(BaseModel):
    status: str


class PaymentUpdateRequest(CamelModel):
    payment_status: str


class BannerRequest(BaseModel):
    title: Optional[str] = None
    link: Optional[str] = None


class BundleRequest(CamelModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    product_ids: JsonList = Field(default_factory=list)
    existing_image: Optional[str] = None


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Supplement Store API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/signup", status_code=201)
def signup(req: RegisterRequest, db: Database = Depends(get_db)):
    role = req.role.upper()
    if role not in ("ADMIN", "CUSTOMER"):
        raise ValidationError(f"Invalid role: {req.role}")
    # only the very first account may register itself as admin
    if role == "ADMIN" and db["user"].count_documents({}) > 0:
        raise HTTPException(status_code=403, detail="Only customers can self-register")
    if db["user"].find_one({"email": req.email}):
        raise Conflict("Email already registered")

    user_doc = UserSchema(
        name=req.name,
        email=req.email,
        password_hash=hash_password(req.password),
        role=role,
        is_active=True,
    )
    user_id = create_document(db, "user", user_doc)
    user = db["user"].find_one({"_id": oid(user_id)})
    logger.info("Registered %s user %s", role, user_id)
    return {"message": "User created successfully", "user": user_out(user), "token": token_for(user)}


@app.post("/login")
def login(req: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": req.email})
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")
    return {"message": "Login successful", "user": user_out(user), "token": token_for(user)}


@app.get("/getprofile")
def get_profile(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = find_by_id(db, "user", user.id)
    if doc is None:
        raise NotFound("User", user.id)
    profile = user_out(doc)
    profile["addresses"] = [serialize(a) for a in list_addresses(db, user.id)]
    return {"user": profile}


@app.put("/profile")
def update_profile(req: ProfileUpdateRequest, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    if db["user"].find_one({"email": req.email, "_id": {"$ne": oid(user.id)}}):
        raise Conflict("Email already in use")
    updated = db["user"].find_one_and_update(
        {"_id": oid(user.id)},
        {"$set": {"name": req.name, "email": req.email, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("User", user.id)
    return {"message": "Profile updated successfully", "user": user_out(updated)}


@app.get("/admin/users")
def list_users(user: AuthUser = Depends(require_capability("manage_users")), db: Database = Depends(get_db)):
    docs = get_documents(db, "user", sort=[("created_at", -1)])
    return {"users": [user_out(d) for d in docs]}


# Products
@app.get("/getallproducts")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = 50,
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": {"$ne": False}}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    docs = get_documents(db, "product", query, limit=limit, sort=[("created_at", -1)])
    return {"products": [product_out(db, d) for d in docs]}


@app.get("/product/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return product_out(db, get_product_or_404(db, product_id, active_only=True))


@app.get("/getcategories")
def get_categories(db: Database = Depends(get_db)):
    categories = db["product"].distinct("category", {"is_active": {"$ne": False}})
    return {"categories": sorted(c for c in categories if c)}


def _create_product(db: Database, body: ProductCreate, uploads: List[bytes]) -> dict:
    images = list(body.images) + [upload_image(data, "products") for data in uploads]
    stock = body.stock
    if stock is None:
        stock = sum(v.stock for v in body.variants)
    product = ProductSchema(
        name=body.name,
        category=body.category,
        sub_category=body.sub_category,
        brand=body.brand,
        price=body.price,
        size=body.size,
        stock=stock,
        description=body.description,
        warnings=body.warnings,
        directions=body.directions,
        images=images,
    )
    product_id = create_document(db, "product", product)
    for v in body.variants:
        create_document(db, "productvariant", ProductVariantSchema(product_id=product_id, **v.model_dump()))
    logger.info("Created product %s with %d variant(s)", product_id, len(body.variants))
    return product_out(db, db["product"].find_one({"_id": oid(product_id)}))


@app.post("/create-product", status_code=201)
async def create_product(
    request: Request,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    data, files = await read_payload(request)
    body = parse_model(ProductCreate, data, "product")
    product = await run_in_threadpool(_create_product, db, body, files.get("images", []))
    return {"message": "Product created successfully", "product": product}


@app.put("/product/{product_id}")
async def update_product(
    product_id: str,
    request: Request,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    product = get_product_or_404(db, product_id)
    data, files = await read_payload(request)
    body = parse_model(ProductUpdate, data, "product")
    updates = body.model_dump(exclude_unset=True)
    uploads = files.get("images", [])
    if uploads:
        new_urls = [await run_in_threadpool(upload_image, d, "products") for d in uploads]
        updates["images"] = list(updates.get("images") or product.get("images", [])) + new_urls
    updates["updated_at"] = now()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return {"message": "Product updated successfully", "product": product_out(db, updated)}


@app.delete("/product/{product_id}")
def delete_product(
    product_id: str,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    # Products are removed for good, unlike bundles which are only deactivated.
    product = get_product_or_404(db, product_id)
    pid = str(product["_id"])
    db["product"].delete_one({"_id": product["_id"]})
    db["productvariant"].delete_many({"product_id": pid})
    db["cartitem"].delete_many({"product_id": pid})
    db["wishlistitem"].delete_many({"product_id": pid})
    logger.info("Deleted product %s", pid)
    return {"message": "Product deleted successfully"}


@app.post("/givereview", status_code=201)
def give_review(req: ReviewRequest, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_product_or_404(db, req.product_id)
    pid = str(product["_id"])
    if db["review"].find_one({"user_id": user.id, "product_id": pid}):
        raise Conflict("You already reviewed this product")

    review_id = create_document(db, "review", ReviewSchema(
        user_id=user.id, product_id=pid, rating=req.rating, comment=req.comment
    ))
    stats = list(db["review"].aggregate([
        {"$match": {"product_id": pid}},
        {"$group": {"_id": None, "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    rating = round(stats[0]["avg"], 1) if stats else 0
    count = stats[0]["count"] if stats else 0
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"rating": rating, "review_count": count, "updated_at": now()}},
    )
    review = serialize(db["review"].find_one({"_id": oid(review_id)}))
    return {"message": "Review added successfully", "review": review}


# Cart
def _cart_key(user_id: str, product_id: str, variant_id: Optional[str]) -> dict:
    return {"user_id": user_id, "product_id": product_id, "variant_id": variant_id or None}


@app.post("/addtocart")
def add_to_cart(req: LineItemRequest, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    [line] = resolve_line_items(db, [req])
    key = _cart_key(user.id, str(line.product["_id"]), str(line.variant["_id"]) if line.variant else None)
    existing = db["cartitem"].find_one(key)
    if existing:
        # the merged quantity must still fit in stock
        merged = LineItemRequest(product_id=req.product_id, variant_id=req.variant_id,
                                 quantity=existing["quantity"] + req.quantity)
        resolve_line_items(db, [merged])
        cart_item = db["cartitem"].find_one_and_update(
            {"_id": existing["_id"]},
            {"$inc": {"quantity": req.quantity}, "$set": {"updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
    else:
        item_id = create_document(db, "cartitem", CartItemSchema(**key, quantity=req.quantity, price=line.unit_price))
        cart_item = db["cartitem"].find_one({"_id": oid(item_id)})
    return {"message": "Product added to cart", "cartItem": serialize(cart_item)}


@app.get("/showcart")
def show_cart(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    items = []
    total = 0.0
    for doc in get_documents(db, "cartitem", {"user_id": user.id}, sort=[("created_at", 1)]):
        product = find_by_id(db, "product", doc["product_id"])
        variant = find_by_id(db, "productvariant", doc["variant_id"]) if doc.get("variant_id") else None
        total += doc["price"] * doc["quantity"]
        items.append({
            **serialize(doc),
            "product": product_out(db, product) if product else None,
            "variant": serialize(variant),
        })
    return {"cartItems": items, "total": round(total, 2)}


@app.post("/updatecart")
def update_cart(req: CartUpdateRequest, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    key = _cart_key(user.id, req.product_id, req.variant_id)
    if req.quantity <= 0:
        result = db["cartitem"].delete_one(key)
        if result.deleted_count == 0:
            raise NotFound("Cart item")
        return {"message": "Item removed from cart"}

    cart_item = db["cartitem"].find_one(key)
    if cart_item is None:
        raise NotFound("Cart item")
    resolve_line_items(db, [LineItemRequest(product_id=req.product_id, variant_id=req.variant_id, quantity=req.quantity)])
    db["cartitem"].update_one(
        {"_id": cart_item["_id"]}, {"$set": {"quantity": req.quantity, "updated_at": now()}}
    )
    return {"message": "Cart updated successfully"}


@app.delete("/removecart/{item_id}")
def remove_cart_item(item_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    result = db["cartitem"].delete_one({"_id": oid(item_id), "user_id": user.id})
    if result.deleted_count == 0:
        raise NotFound("Cart item", item_id)
    return {"message": "Item removed from cart"}


@app.delete("/clearcart")
def clear_cart(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    db["cartitem"].delete_many({"user_id": user.id})
    return {"message": "Cart cleared successfully"}


# Wishlist
@app.post("/wishlist", status_code=201)
def add_to_wishlist(req: WishlistRequest, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_product_or_404(db, req.product_id)
    pid = str(product["_id"])
    if db["wishlistitem"].find_one({"user_id": user.id, "product_id": pid}):
        raise Conflict("Product already in wishlist")
    create_document(db, "wishlistitem", WishlistItemSchema(user_id=user.id, product_id=pid))
    return {"message": "Added to wishlist"}


@app.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    result = db["wishlistitem"].delete_one({"user_id": user.id, "product_id": product_id})
    if result.deleted_count == 0:
        raise NotFound("Wishlist item", product_id)
    return {"message": "Removed from wishlist"}


@app.get("/wishlist/exists/{product_id}")
def is_wishlisted(product_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    exists = db["wishlistitem"].find_one({"user_id": user.id, "product_id": product_id}) is not None
    return {"exists": exists}


@app.get("/wishlist")
def get_wishlist(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist = []
    for doc in get_documents(db, "wishlistitem", {"user_id": user.id}, sort=[("created_at", -1)]):
        product = find_by_id(db, "product", doc["product_id"])
        wishlist.append({**serialize(doc), "product": serialize(product)})
    return {"wishlist": wishlist}


# Addresses
@app.post("/address", status_code=201)
def add_address(req: AddressRequest, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    owner = req.user_id or user.id
    if owner != user.id and not user.can("manage_users"):
        raise HTTPException(status_code=403, detail="Access denied")
    address = create_address(db, owner, req)
    return {"message": "Address created successfully", "address": serialize(address)}


@app.put("/address/{address_id}")
def edit_address(
    address_id: str,
    req: AddressRequest,
    user: AuthUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    address = update_address(db, user.id, address_id, req)
    return {"message": "Address updated successfully", "address": serialize(address)}


@app.get("/addresses")
def get_addresses(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"addresses": [serialize(a) for a in list_addresses(db, user.id)]}


# Orders
@app.post("/orders", status_code=201)
async def create_order(
    request: Request,
    user: AuthUser = Depends(require_capability("place_order")),
    db: Database = Depends(get_db),
):
    data, files = await read_payload(request)
    receipt_files = files.get("receipt") or []
    req = parse_order_request(data)

    owner = req.user_id or user.id
    if owner != user.id and not user.can("manage_orders"):
        raise HTTPException(status_code=403, detail="Cannot place orders for another user")

    receipt_file = receipt_files[0] if receipt_files else None
    order = await run_in_threadpool(place_order, db, owner, req, receipt_file)
    return {"message": "Order created successfully", "order": order}


@app.get("/orders")
def my_orders(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"orders": list_orders(db, user.id)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    order = find_by_id(db, "order", order_id)
    if order is None or (order["user_id"] != user.id and not user.can("manage_orders")):
        raise NotFound("Order", order_id)
    return {"order": order_details(db, order)}


@app.get("/admin/orders")
def all_orders(
    limit: int = 100,
    user: AuthUser = Depends(require_capability("manage_orders")),
    db: Database = Depends(get_db),
):
    return {"orders": list_orders(db, limit=limit)}


@app.put("/admin/orders/{order_id}/status")
def set_order_status(
    order_id: str,
    req: StatusUpdateRequest,
    user: AuthUser = Depends(require_capability("manage_orders")),
    db: Database = Depends(get_db),
):
    order = update_order_status(db, order_id, req.status.upper())
    return {"message": "Order status updated", "order": order}


@app.put("/admin/orders/{order_id}/payment")
def set_payment_status(
    order_id: str,
    req: PaymentUpdateRequest,
    user: AuthUser = Depends(require_capability("manage_orders")),
    db: Database = Depends(get_db),
):
    order = update_payment_status(db, order_id, req.payment_status.upper())
    return {"message": "Payment status updated", "order": order}


# Notifications
@app.get("/admin/notifications")
def get_notifications(user: AuthUser = Depends(require_capability("manage_orders")), db: Database = Depends(get_db)):
    docs = get_documents(db, "notification", sort=[("created_at", -1)])
    return {"success": True, "notifications": [serialize(d) for d in docs]}


@app.get("/admin/notifications/unread-count")
def get_unread_count(user: AuthUser = Depends(require_capability("manage_orders")), db: Database = Depends(get_db)):
    return {"success": True, "count": db["notification"].count_documents({"is_read": False})}


@app.delete("/admin/notifications/{notification_id}")
def acknowledge_notification(
    notification_id: str,
    user: AuthUser = Depends(require_capability("manage_orders")),
    db: Database = Depends(get_db),
):
    notification = find_by_id(db, "notification", notification_id)
    if notification is None:
        raise NotFound("Notification", notification_id)
    db["notification"].delete_one({"_id": notification["_id"]})
    return {"success": True, "message": "Notification deleted successfully"}


@app.delete("/admin/notifications")
def delete_all_notifications(user: AuthUser = Depends(require_capability("manage_orders")), db: Database = Depends(get_db)):
    result = db["notification"].delete_many({})
    return {"success": True, "message": "All notifications deleted successfully", "deleted": result.deleted_count}


# Banners
@app.get("/banners")
def get_banners(db: Database = Depends(get_db)):
    docs = get_documents(db, "banner", {"is_active": True}, sort=[("created_at", -1)])
    return [serialize(d) for d in docs]


@app.post("/admin/banners", status_code=201)
async def create_banner(
    request: Request,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    data, files = await read_payload(request)
    body = parse_model(BannerRequest, data, "banner")
    images = files.get("image") or []
    if not images:
        raise ValidationError("Image is required")
    image_url = await run_in_threadpool(upload_image, images[0], "banners")
    banner_id = create_document(db, "banner", BannerSchema(image=image_url, title=body.title, link=body.link))
    banner = serialize(db["banner"].find_one({"_id": oid(banner_id)}))
    return {"message": "Banner created successfully", "banner": banner}


@app.delete("/admin/banners/{banner_id}")
def delete_banner(
    banner_id: str,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    banner = find_by_id(db, "banner", banner_id)
    if banner is None:
        raise NotFound("Banner", banner_id)
    db["banner"].delete_one({"_id": banner["_id"]})
    return {"message": "Banner deleted successfully"}


# Bundles
def bundle_out(db: Database, bundle: dict) -> dict:
    out = serialize(bundle)
    products = []
    for pid in bundle.get("product_ids", []):
        product = find_by_id(db, "product", pid)
        if product:
            products.append({
                "id": str(product["_id"]),
                "name": product["name"],
                "images": product.get("images", []),
                "price": product["price"],
            })
    out["products"] = products
    return out


def _check_bundle_products(db: Database, body: BundleRequest):
    for pid in body.product_ids:
        if find_by_id(db, "product", pid) is None:
            raise NotFound("Product", pid)


def _bundle_fields(body: BundleRequest, image: Optional[str]) -> BundleSchema:
    return BundleSchema(
        name=body.name,
        description=body.description,
        price=body.price,
        original_price=body.original_price,
        image=image,
        product_ids=body.product_ids,
    )


@app.get("/bundles")
def get_bundles(db: Database = Depends(get_db)):
    docs = get_documents(db, "bundle", {"is_active": True}, sort=[("created_at", -1)])
    return [bundle_out(db, d) for d in docs]


@app.get("/bundle/{bundle_id}")
def get_bundle(bundle_id: str, db: Database = Depends(get_db)):
    bundle = find_by_id(db, "bundle", bundle_id)
    if bundle is None:
        raise NotFound("Bundle", bundle_id)
    return bundle_out(db, bundle)


@app.post("/admin/bundles", status_code=201)
async def create_bundle(
    request: Request,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    data, files = await read_payload(request)
    body = parse_model(BundleRequest, data, "bundle")
    _check_bundle_products(db, body)
    images = files.get("image") or []
    image_url = await run_in_threadpool(upload_image, images[0], "bundles") if images else None
    bundle_id = create_document(db, "bundle", _bundle_fields(body, image_url))
    bundle = db["bundle"].find_one({"_id": oid(bundle_id)})
    return {"message": "Bundle created successfully", "bundle": bundle_out(db, bundle)}


@app.put("/admin/bundles/{bundle_id}")
async def update_bundle(
    bundle_id: str,
    request: Request,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    existing = find_by_id(db, "bundle", bundle_id)
    if existing is None:
        raise NotFound("Bundle", bundle_id)
    data, files = await read_payload(request)
    body = parse_model(BundleRequest, data, "bundle")
    _check_bundle_products(db, body)
    images = files.get("image") or []
    image_url = body.existing_image or existing.get("image")
    if images:
        image_url = await run_in_threadpool(upload_image, images[0], "bundles")

    fields = _bundle_fields(body, image_url).model_dump(exclude={"is_active"})
    fields["updated_at"] = now()
    bundle = db["bundle"].find_one_and_update(
        {"_id": existing["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )
    return {"message": "Bundle updated successfully", "bundle": bundle_out(db, bundle)}


@app.delete("/admin/bundles/{bundle_id}")
def delete_bundle(
    bundle_id: str,
    user: AuthUser = Depends(require_capability("manage_catalog")),
    db: Database = Depends(get_db),
):
    # Bundles are deactivated rather than removed.
    result = db["bundle"].update_one(
        {"_id": oid(bundle_id)}, {"$set": {"is_active": False, "updated_at": now()}}
    )
    if result.matched_count == 0:
        raise NotFound("Bundle", bundle_id)
    return {"message": "Bundle deleted successfully"}


# Admin dashboard
@app.get("/admin/stats")
def get_admin_stats(user: AuthUser = Depends(require_capability("manage_orders")), db: Database = Depends(get_db)):
    start_of_month = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    monthly = list(db["order"].aggregate([
        {"$match": {"created_at": {"$gte": start_of_month}}},
        {"$group": {"_id": None, "revenue": {"$sum": "$total"}}},
    ]))
    revenue = monthly[0]["revenue"] if monthly else 0
    return {
        "success": True,
        "data": {
            "totalUsers": db["user"].count_documents({}),
            "totalOrders": db["order"].count_documents({}),
            "totalRevenue": revenue,
        },
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
