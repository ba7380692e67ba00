import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from typing import Optional

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId

from database import db, create_document, ensure_indexes
from errors import AppError, Conflict, InsufficientStock, NotFound, Unauthorized
from orders import (
    cancel_order, effective_price, get_order, list_orders, paginate, place_order,
    to_object_id, update_order_status,
)
from schemas import (
    UserCreate, UserLogin, User,
    Gem, GemCreate, GemUpdate, GemSearch,
    CartAdd, CartUpdate,
    OrderCreate, OrderStatus, OrderStatusUpdate,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("gemstore")

ADMIN_KEY = os.getenv("ADMIN_KEY", "admin123")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "7"))
REPRICE_SERVER_SIDE = os.getenv("REPRICE_SERVER_SIDE", "false").lower() in ("1", "true", "yes")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="Gemstore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

GEM_SUMMARY_EXCLUDE = ("description", "benefits", "whom_to_use", "certification", "origin")

# -------------------- Error envelope --------------------

def fail(status_code: int, message: str, errors: Optional[list] = None) -> JSONResponse:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return fail(exc.status_code, exc.message, exc.errors)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e["loc"] if p not in ("body", "query", "path")), "message": e["msg"]}
        for e in exc.errors()
    ]
    return fail(400, "Validation failed", errors)


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return fail(500, "Server error")


# -------------------- Helpers --------------------

def ok(message: str, data=None) -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def doc_to_json(doc: dict, exclude: tuple = ()) -> dict:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k in exclude:
            continue
        key = "id" if k == "_id" else to_camel(k)
        if isinstance(v, ObjectId):
            out[key] = str(v)
        elif isinstance(v, datetime):
            out[key] = v.isoformat()
        elif isinstance(v, dict):
            out[key] = doc_to_json(v)
        elif isinstance(v, list):
            out[key] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[key] = v
    return out


def user_json(user: dict) -> dict:
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"), "phone": user.get("phone")}


def issue_token(user_id: ObjectId) -> str:
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=TOKEN_TTL_DAYS)
    db["user"].update_one({"_id": user_id}, {"$set": {"token": token, "token_expires": expires}})
    return token


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    phone: Optional[str] = None


def get_user_by_token(token: str) -> Optional[dict]:
    user = db["user"].find_one({"token": token, "is_active": True})
    if not user or not user.get("token_expires"):
        return None
    expires = user["token_expires"]
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    if expires <= datetime.now(timezone.utc):
        return None
    return user


async def protect(authorization: Optional[str] = Header(None)) -> AuthUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Not authorized, no token")
    token = authorization.split(" ", 1)[1].strip()
    user = get_user_by_token(token)
    if not user:
        raise Unauthorized("Not authorized, token failed")
    return AuthUser(id=str(user["_id"]), email=user["email"], name=user.get("name", ""), phone=user.get("phone"))


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    if not x_admin_key or not secrets.compare_digest(x_admin_key, ADMIN_KEY):
        raise Unauthorized("Unauthorized: invalid admin key")


def find_gem(gem_id: str) -> dict:
    gem = db["gem"].find_one({"_id": to_object_id(gem_id)})
    if not gem:
        raise NotFound("Gem not found")
    return gem


def paged_gems(query: dict, page: int, limit: int) -> dict:
    cursor = db["gem"].find(query).sort([("created_at", -1), ("_id", -1)]).skip((page - 1) * limit).limit(limit)
    gems = [doc_to_json(g, exclude=GEM_SUMMARY_EXCLUDE) for g in cursor]
    return {"gems": gems, "pagination": paginate(page, limit, db["gem"].count_documents(query))}


def gem_filter(category: Optional[str] = None, min_price: Optional[float] = None, max_price: Optional[float] = None,
               zodiac: Optional[str] = None, availability: Optional[bool] = None) -> dict:
    query = {}
    if category:
        query["category"] = category
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if zodiac:
        query["whom_to_use"] = {"$in": [zodiac]}
    if availability is not None:
        query["availability"] = availability
    return query


# -------------------- Health & Test --------------------

@app.get("/")
def read_root():
    return {"message": "Gemstore API is running"}


@app.get("/test")
def test_database():
    if db is None:
        return {"backend": "running", "database": "not configured", "collections": []}
    try:
        collections = sorted(db.list_collection_names())
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        return {"backend": "running", "database": "unreachable", "database_name": db.name, "collections": []}
    return {"backend": "running", "database": "connected", "database_name": db.name, "collections": collections}


# -------------------- Auth --------------------

@app.post("/auth/register", status_code=201)
def register(payload: UserCreate):
    clauses = [{"email": payload.email}]
    if payload.phone:
        clauses.append({"phone": payload.phone})
    if db["user"].find_one({"$or": clauses}):
        raise Conflict("User already exists with this email or phone number")
    pw_hash, salt = hash_password(payload.password)
    user = User(name=payload.name, email=payload.email, phone=payload.phone, password_hash=pw_hash, salt=salt)
    try:
        user_id = ObjectId(create_document("user", user, db))
    except DuplicateKeyError:
        raise Conflict("User already exists with this email or phone number")
    token = issue_token(user_id)
    logger.info("Registered user %s", user_id)
    saved = db["user"].find_one({"_id": user_id})
    return {**ok("User registered successfully"), "token": token, "user": user_json(saved)}


@app.post("/auth/login")
def login(payload: UserLogin):
    user = db["user"].find_one({"email": payload.email})
    if not user:
        raise Unauthorized("Invalid credentials")
    if not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    token = issue_token(user["_id"])
    return {**ok("Login successful"), "token": token, "user": user_json(user)}


@app.get("/auth/me")
def me(user: AuthUser = Depends(protect)):
    return ok("Current user", user.model_dump())


# -------------------- Gems --------------------

@app.post("/gems", status_code=201, dependencies=[Depends(require_admin)])
def create_gem(payload: GemCreate):
    gem = Gem(**payload.model_dump(), all_images=payload.images + payload.uploaded_images)
    gem_id = create_document("gem", gem.model_dump(exclude={"created_at", "updated_at"}), db)
    saved = db["gem"].find_one({"_id": ObjectId(gem_id)})
    return ok("Gem added successfully", {"id": gem_id, "name": saved["name"], "createdAt": doc_to_json(saved)["createdAt"]})


@app.get("/gems")
def list_gems(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    zodiac: Optional[str] = None,
    availability: Optional[bool] = None,
):
    query = gem_filter(category, min_price, max_price, zodiac, availability)
    return ok("Gems retrieved", paged_gems(query, page, limit))


@app.post("/gems/search")
def search_gems(payload: GemSearch):
    query = gem_filter(payload.category, payload.min_price, payload.max_price, payload.zodiac, payload.availability)
    if payload.query:
        pattern = {"$regex": payload.query, "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"category": pattern}]
    if payload.benefits:
        query["benefits"] = {"$in": payload.benefits}
    return ok("Gems retrieved", paged_gems(query, payload.page, payload.limit))


@app.get("/gems/categories")
def gem_categories():
    return ok("Categories retrieved", sorted(db["gem"].distinct("category")))


@app.get("/gems/category/{category}")
def gems_by_category(category: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)):
    return ok("Gems retrieved", paged_gems({"category": category}, page, limit))


@app.get("/gems/zodiac/{zodiac_sign}")
def gems_by_zodiac(zodiac_sign: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)):
    return ok("Gems retrieved", paged_gems({"whom_to_use": {"$in": [zodiac_sign]}}, page, limit))


@app.get("/gems/{gem_id}")
def get_gem(gem_id: str):
    return ok("Gem retrieved", doc_to_json(find_gem(gem_id)))


@app.put("/gems/{gem_id}", dependencies=[Depends(require_admin)])
def update_gem(gem_id: str, payload: GemUpdate):
    gem = find_gem(gem_id)
    update = payload.model_dump(exclude_none=True)
    if "images" in update or "uploaded_images" in update:
        update["all_images"] = update.get("images", gem.get("images", [])) + \
            update.get("uploaded_images", gem.get("uploaded_images", []))
    update["updated_at"] = datetime.now(timezone.utc)
    saved = db["gem"].find_one_and_update({"_id": gem["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER)
    if not saved:
        raise NotFound("Gem not found")
    return ok("Gem updated successfully", {"id": str(saved["_id"]), "updatedAt": doc_to_json(saved)["updatedAt"]})


@app.delete("/gems/{gem_id}", dependencies=[Depends(require_admin)])
def delete_gem(gem_id: str):
    res = db["gem"].delete_one({"_id": to_object_id(gem_id)})
    if res.deleted_count == 0:
        raise NotFound("Gem not found")
    return ok("Gem deleted successfully")


# -------------------- Cart --------------------

def check_sellable(gem: dict, quantity: int) -> None:
    if not gem.get("availability", False) or int(gem.get("stock", 0)) < quantity:
        raise InsufficientStock(gem.get("name", str(gem["_id"])))


@app.post("/cart/add", status_code=201)
def cart_add(payload: CartAdd, user: AuthUser = Depends(protect)):
    gem = find_gem(payload.gem_id)
    gem_id = str(gem["_id"])
    existing = db["cart_item"].find_one({"user_id": user.id, "gem_id": gem_id})
    in_cart = existing["quantity"] if existing else 0
    check_sellable(gem, in_cart + payload.quantity)
    now = datetime.now(timezone.utc)
    item = db["cart_item"].find_one_and_update(
        {"user_id": user.id, "gem_id": gem_id},
        {"$inc": {"quantity": payload.quantity}, "$set": {"updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return ok("Item added to cart", {"cartItem": {
        "id": str(item["_id"]),
        "gemId": item["gem_id"],
        "quantity": item["quantity"],
        "addedAt": doc_to_json(item).get("createdAt"),
    }})


@app.get("/cart")
def get_cart(user: AuthUser = Depends(protect)):
    cart_items = list(db["cart_item"].find({"user_id": user.id}).sort([("created_at", -1), ("_id", -1)]))
    gems = {str(g["_id"]): g for g in db["gem"].find({"_id": {"$in": [ObjectId(c["gem_id"]) for c in cart_items]}})}
    items = []
    total = 0.0
    item_count = 0
    for ci in cart_items:
        gem = gems.get(ci["gem_id"])
        if not gem:
            continue
        total += effective_price(gem) * ci["quantity"]
        item_count += ci["quantity"]
        items.append({
            "id": str(ci["_id"]),
            "gem": {
                "id": ci["gem_id"],
                "name": gem.get("name"),
                "price": gem.get("price"),
                "discount": gem.get("discount", 0),
                "discountType": gem.get("discount_type", "percentage"),
                "images": gem.get("images", []),
            },
            "quantity": ci["quantity"],
            "addedAt": doc_to_json(ci).get("createdAt"),
        })
    return ok("Cart retrieved", {"items": items, "total": round(total, 2), "itemCount": item_count})


@app.put("/cart/update/{gem_id}")
def cart_update(gem_id: str, payload: CartUpdate, user: AuthUser = Depends(protect)):
    gem = find_gem(gem_id)
    check_sellable(gem, payload.quantity)
    res = db["cart_item"].update_one(
        {"user_id": user.id, "gem_id": str(gem["_id"])},
        {"$set": {"quantity": payload.quantity, "updated_at": datetime.now(timezone.utc)}},
    )
    if res.matched_count == 0:
        raise NotFound("Cart item not found")
    return ok("Cart item updated")


@app.delete("/cart/remove/{gem_id}")
def cart_remove(gem_id: str, user: AuthUser = Depends(protect)):
    res = db["cart_item"].delete_one({"user_id": user.id, "gem_id": str(to_object_id(gem_id))})
    if res.deleted_count == 0:
        raise NotFound("Cart item not found")
    return ok("Item removed from cart")


@app.delete("/cart/clear")
def cart_clear(user: AuthUser = Depends(protect)):
    db["cart_item"].delete_many({"user_id": user.id})
    return ok("Cart cleared")


# -------------------- Orders --------------------

@app.post("/orders", status_code=201)
def create_order(payload: OrderCreate, user: AuthUser = Depends(protect)):
    data = place_order(db, user.id, payload, reprice=REPRICE_SERVER_SIDE)
    return ok("Order created successfully", data)


@app.get("/orders")
def user_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user: AuthUser = Depends(protect),
):
    return ok("Orders retrieved", list_orders(db, user.id, page, limit, status))


@app.get("/orders/{order_id}")
def user_order(order_id: str, user: AuthUser = Depends(protect)):
    return ok("Order retrieved", get_order(db, order_id, user.id))


@app.put("/orders/{order_id}/cancel")
def user_cancel_order(order_id: str, user: AuthUser = Depends(protect)):
    cancel_order(db, order_id, user.id)
    return ok("Order cancelled successfully")


@app.patch("/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def admin_order_status(order_id: str, payload: OrderStatusUpdate):
    data = update_order_status(db, order_id, OrderStatus(payload.status), payload.tracking_number)
    return ok("Order status updated", data)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
