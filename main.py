import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field
import jwt
import structlog
from passlib.context import CryptContext
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import db, create_document, ensure_indexes, get_documents, now_utc
from schemas import (
    Address,
    Cart as CartSchema,
    Category as CategorySchema,
    ContactMessage as ContactMessageSchema,
    Order as OrderSchema,
    OrderItem,
    PaymentResult,
    Product as ProductSchema,
    Review as ReviewSchema,
    User as UserSchema,
)

structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    ),
)
logger = structlog.get_logger(__name__)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

DEFAULT_JWT_SECRET = "dev-secret-change-me"
JWT_SECRET = os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET)
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 120  # 2 hours

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

CART_WRITE_RETRIES = 3

if JWT_SECRET == DEFAULT_JWT_SECRET:
    logger.warning("jwt_secret_default")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/users/login")

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------------------------------
# Error Handlers
# ----------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", method=request.method, path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def oid_str(oid) -> str:
    return str(oid) if isinstance(oid, ObjectId) else oid


def parse_oid(value: str, detail: str, status_code: int = 404) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=status_code, detail=detail)
    return ObjectId(value)


def canonical_id(value: str) -> str:
    """Lower-case hex form of an id string; ids differing only in case name the same document."""
    return str(ObjectId(value)) if ObjectId.is_valid(value) else value


def doc_to_public(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = oid_str(doc.pop("_id"))
    # hide sensitive fields
    doc.pop("password_hash", None)
    return doc


def patch_fields(body: BaseModel, nullable: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Fields the client actually sent. Absent fields are left out so they stay
    untouched; an explicit null is only accepted for fields that can be cleared.
    """
    data = body.model_dump(exclude_unset=True)
    for key, value in data.items():
        if value is None and key not in nullable:
            raise HTTPException(status_code=400, detail=f"{key} cannot be null")
    return data


def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid)}, {"password_hash": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    # role comes from the stored user, not the token claim
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def public_products(product_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Resolve product ids to public product documents, keyed by id. Unknown ids are absent."""
    oids = [ObjectId(pid) for pid in set(product_ids) if ObjectId.is_valid(pid)]
    if not oids:
        return {}
    return {str(p["_id"]): doc_to_public(p) for p in db["product"].find({"_id": {"$in": oids}})}


def public_user_refs(user_ids: Iterable[str], fields: tuple = ("name",)) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(uid) for uid in set(user_ids) if ObjectId.is_valid(uid)]
    if not oids:
        return {}
    projection = {f: 1 for f in fields}
    return {
        str(u["_id"]): {"id": str(u["_id"]), **{f: u.get(f) for f in fields}}
        for u in db["user"].find({"_id": {"$in": oids}}, projection)
    }


def with_category(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [p["category"] for p in products if p.get("category") and ObjectId.is_valid(p["category"])]
    categories = {}
    if ids:
        categories = {str(c["_id"]): doc_to_public(c) for c in db["category"].find({"_id": {"$in": [ObjectId(i) for i in ids]}})}
    out = []
    for p in products:
        p = doc_to_public(p)
        if p.get("category"):
            p["category"] = categories.get(p["category"])
        out.append(p)
    return out


def cart_to_public(cart: Dict[str, Any]) -> Dict[str, Any]:
    items = cart.get("items", [])
    products = public_products(i["product_id"] for i in items)
    out = doc_to_public(cart)
    out.pop("version", None)
    out["items"] = [
        {"product_id": i["product_id"], "product": products.get(i["product_id"]), "quantity": i["quantity"]}
        for i in items
    ]
    return out


def order_to_public(order: Dict[str, Any]) -> Dict[str, Any]:
    items = order.get("order_items", [])
    products = public_products(i["product_id"] for i in items)
    owner = public_user_refs([order["user_id"]], fields=("name", "email"))
    out = doc_to_public(order)
    out["order_items"] = [{**i, "product": products.get(i["product_id"])} for i in items]
    out["user"] = owner.get(order["user_id"])
    return out


def review_to_public(review: Dict[str, Any], reviewers: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    out = doc_to_public(review)
    out["user"] = reviewers.get(review["user_id"])
    return out


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    password: Optional[str] = Field(None, min_length=1)


class AdminUserUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    role: Optional[str] = Field(None, pattern="^(user|admin)$")


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    description: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    category: Optional[str] = None
    brand: Optional[str] = None
    count_in_stock: int = Field(0, ge=0)
    colors: List[str] = []
    sizes: List[str] = []
    is_flash_sale: bool = False
    discount: float = Field(0, ge=0, le=100)
    sale_end: Optional[datetime] = None


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    brand: Optional[str] = None
    count_in_stock: Optional[int] = Field(None, ge=0)
    colors: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    is_flash_sale: Optional[bool] = None
    discount: Optional[float] = Field(None, ge=0, le=100)
    sale_end: Optional[datetime] = None


class ReviewRequest(BaseModel):
    rating: float = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class AddCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class UpdateCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    payment_method: str = Field(..., min_length=1)
    shipping_address: Optional[Address] = None


class OrderStatusUpdateRequest(BaseModel):
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None


class ContactRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    subject: Optional[str] = None
    message: str = Field(..., min_length=1)


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/health")
def health():
    response = {"health": "healthy", "database": "not configured", "collections": []}
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()
            response["database"] = "ok"
        except PyMongoError as e:
            response["database"] = f"error: {str(e)[:80]}"
    return response


# ----------------------------------------------------------------------------
# Users & Auth
# ----------------------------------------------------------------------------

@app.post("/api/users/register", status_code=201)
def register(body: RegisterRequest):
    email = body.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    user = UserSchema(
        name=body.name,
        email=email,
        password_hash=hash_password(body.password),
        role="user",
    )
    try:
        uid = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    logger.info("user_registered", user_id=uid)
    return doc_to_public(db["user"].find_one({"_id": ObjectId(uid)}))


@app.post("/api/users/login", response_model=TokenResponse)
def login(body: LoginRequest):
    user = db["user"].find_one({"email": body.email.lower()})
    if not user or not verify_password(body.password, user.get("password_hash", "")):
        logger.warning("login_failed", email=body.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")})
    return TokenResponse(access_token=token)


def apply_user_update(user: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    uid = user["_id"]
    if "email" in update:
        update["email"] = update["email"].lower()
        if db["user"].find_one({"email": update["email"], "_id": {"$ne": uid}}):
            raise HTTPException(status_code=409, detail="Email already registered")
    if update.get("address") is not None:
        # merge into the stored address field by field
        update["address"] = {**(user.get("address") or {}), **update["address"]}
    if "password" in update:
        update["password_hash"] = hash_password(update.pop("password"))
    update["updated_at"] = now_utc()
    try:
        db["user"].update_one({"_id": uid}, {"$set": update})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    return doc_to_public(db["user"].find_one({"_id": uid}, {"password_hash": 0}))


@app.get("/api/users/profile")
def get_profile(current=Depends(get_current_user)):
    return doc_to_public(current)


@app.put("/api/users/profile")
def update_profile(body: ProfileUpdateRequest, current=Depends(get_current_user)):
    update = patch_fields(body, nullable=("phone", "address"))
    return apply_user_update(current, update)


@app.get("/api/users")
def list_users(admin=Depends(get_current_admin)):
    return [doc_to_public(u) for u in db["user"].find({}, {"password_hash": 0})]


@app.get("/api/users/{user_id}")
def get_user(user_id: str, admin=Depends(get_current_admin)):
    user = db["user"].find_one({"_id": parse_oid(user_id, "User not found")}, {"password_hash": 0})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return doc_to_public(user)


@app.put("/api/users/{user_id}")
def update_user(user_id: str, body: AdminUserUpdateRequest, admin=Depends(get_current_admin)):
    user = db["user"].find_one({"_id": parse_oid(user_id, "User not found")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    update = patch_fields(body, nullable=("phone", "address"))
    if "role" in update:
        logger.info("user_role_set", user_id=user_id, role=update["role"], admin_id=str(admin["_id"]))
    return apply_user_update(user, update)


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin=Depends(get_current_admin)):
    res = db["user"].delete_one({"_id": parse_oid(user_id, "User not found")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("user_removed", user_id=user_id, admin_id=str(admin["_id"]))
    return {"message": "User removed"}


# ----------------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------------

@app.get("/api/categories")
def list_categories():
    return [doc_to_public(c) for c in get_documents("category", sort=[("name", 1)])]


@app.post("/api/categories", status_code=201)
def create_category(body: CategorySchema, admin=Depends(get_current_admin)):
    if db["category"].find_one({"name": body.name}):
        raise HTTPException(status_code=409, detail="Category already exists")
    try:
        cid = create_document("category", body)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Category already exists")
    return doc_to_public(db["category"].find_one({"_id": ObjectId(cid)}))


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdateRequest, admin=Depends(get_current_admin)):
    cid = parse_oid(category_id, "Category not found")
    if not db["category"].find_one({"_id": cid}):
        raise HTTPException(status_code=404, detail="Category not found")
    update = patch_fields(body, nullable=("description",))
    if "name" in update and db["category"].find_one({"name": update["name"], "_id": {"$ne": cid}}):
        raise HTTPException(status_code=409, detail="Category already exists")
    update["updated_at"] = now_utc()
    try:
        db["category"].update_one({"_id": cid}, {"$set": update})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Category already exists")
    return doc_to_public(db["category"].find_one({"_id": cid}))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, admin=Depends(get_current_admin)):
    res = db["category"].delete_one({"_id": parse_oid(category_id, "Category not found")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"message": "Category deleted successfully"}


# ----------------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------------

def require_category(category_id: Optional[str]):
    if category_id is None:
        return
    if not ObjectId.is_valid(category_id) or not db["category"].find_one({"_id": ObjectId(category_id)}):
        raise HTTPException(status_code=404, detail="Category not found")


@app.get("/api/products")
def list_products(
    category: Optional[str] = Query(None),
    keyword: Optional[str] = Query(None),
    flash_sale: Optional[bool] = Query(None),
):
    query: Dict[str, Any] = {}
    if category:
        query["category"] = canonical_id(category)
    if flash_sale:
        query["is_flash_sale"] = True
    if keyword:
        query["name"] = {"$regex": re.escape(keyword), "$options": "i"}
    return with_category(list(db["product"].find(query)))


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    pid = parse_oid(product_id, "Product not found")
    doc = db["product"].find_one({"_id": pid})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    product = with_category([doc])[0]
    reviews = list(db["review"].find({"product_id": str(pid)}).sort("created_at", -1))
    reviewers = public_user_refs(r["user_id"] for r in reviews)
    product["reviews"] = [review_to_public(r, reviewers) for r in reviews]
    return product


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateRequest, admin=Depends(get_current_admin)):
    require_category(body.category)
    data = body.model_dump()
    if data["category"] is not None:
        data["category"] = canonical_id(data["category"])
    product = ProductSchema(**data)
    pid = create_document("product", product)
    logger.info("product_created", product_id=pid, admin_id=str(admin["_id"]))
    return with_category([db["product"].find_one({"_id": ObjectId(pid)})])[0]


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateRequest, admin=Depends(get_current_admin)):
    pid = parse_oid(product_id, "Product not found")
    if not db["product"].find_one({"_id": pid}):
        raise HTTPException(status_code=404, detail="Product not found")
    update = patch_fields(body, nullable=("category", "brand", "sale_end"))
    if update.get("category") is not None:
        require_category(update["category"])
        update["category"] = canonical_id(update["category"])
    update["updated_at"] = now_utc()
    db["product"].update_one({"_id": pid}, {"$set": update})
    return get_product(product_id)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin=Depends(get_current_admin)):
    res = db["product"].delete_one({"_id": parse_oid(product_id, "Product not found")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("product_deleted", product_id=product_id, admin_id=str(admin["_id"]))
    return {"message": "Product deleted successfully"}


# ----------------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------------

def refresh_product_rating(product_id: str):
    """
    Recompute a product's review list, review count and average rating from
    the review collection. Always a full rescan so the cached aggregate can
    never drift from the stored reviews.
    """
    reviews = list(db["review"].find({"product_id": product_id}).sort("created_at", 1))
    ratings = [r["rating"] for r in reviews]
    db["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$set": {
            "reviews": [str(r["_id"]) for r in reviews],
            "num_reviews": len(reviews),
            "rating": sum(ratings) / len(ratings) if ratings else 0,
            "updated_at": now_utc(),
        }},
    )


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, body: ReviewRequest, current=Depends(get_current_user)):
    pid = parse_oid(product_id, "Product not found")
    if not db["product"].find_one({"_id": pid}):
        raise HTTPException(status_code=404, detail="Product not found")
    pid_str = str(pid)
    uid = oid_str(current["_id"])
    if db["review"].find_one({"user_id": uid, "product_id": pid_str}):
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    review = ReviewSchema(user_id=uid, product_id=pid_str, rating=body.rating, comment=body.comment)
    try:
        rid = create_document("review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    refresh_product_rating(pid_str)
    logger.info("review_added", review_id=rid, product_id=pid_str, user_id=uid)
    saved = db["review"].find_one({"_id": ObjectId(rid)})
    return {"message": "Review added", "review": doc_to_public(saved)}


@app.get("/api/reviews/{product_id}")
def list_reviews(product_id: str):
    reviews = list(db["review"].find({"product_id": canonical_id(product_id)}).sort("created_at", -1))
    reviewers = public_user_refs(r["user_id"] for r in reviews)
    return [review_to_public(r, reviewers) for r in reviews]


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, current=Depends(get_current_user)):
    rid = parse_oid(review_id, "Review not found")
    review = db["review"].find_one({"_id": rid})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if review["user_id"] != oid_str(current["_id"]) and current.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied")
    db["review"].delete_one({"_id": rid})
    refresh_product_rating(review["product_id"])
    logger.info("review_deleted", review_id=review_id, user_id=str(current["_id"]))
    return {"message": "Review deleted"}


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

def get_or_create_cart(user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart:
        return cart
    try:
        create_document("cart", CartSchema(user_id=user_id))
    except DuplicateKeyError:
        # created by a concurrent request
        pass
    return db["cart"].find_one({"user_id": user_id})


def update_cart_items(
    user_id: str,
    mutate: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
    create: bool = False,
) -> Dict[str, Any]:
    """
    Read the user's cart, apply `mutate` to its items and write them back only
    if the cart version is still the one that was read. A lost race is retried
    from a fresh read; after CART_WRITE_RETRIES attempts the request fails.
    """
    for attempt in range(1, CART_WRITE_RETRIES + 1):
        cart = get_or_create_cart(user_id) if create else db["cart"].find_one({"user_id": user_id})
        if not cart:
            raise HTTPException(status_code=404, detail="Cart not found")
        items = mutate([dict(i) for i in cart.get("items", [])])
        if "version" in cart:
            match = {"_id": cart["_id"], "version": cart["version"]}
        else:
            match = {"_id": cart["_id"], "version": {"$exists": False}}
        res = db["cart"].update_one(
            match,
            {"$set": {"items": items, "updated_at": now_utc()}, "$inc": {"version": 1}},
        )
        if res.matched_count:
            return db["cart"].find_one({"_id": cart["_id"]})
        logger.info("cart_write_conflict", cart_id=str(cart["_id"]), attempt=attempt)
    raise HTTPException(status_code=409, detail="Cart was modified concurrently, please retry")


@app.get("/api/cart")
def get_cart(current=Depends(get_current_user)):
    return cart_to_public(get_or_create_cart(oid_str(current["_id"])))


@app.post("/api/cart/add", status_code=201)
def add_to_cart(body: AddCartRequest, current=Depends(get_current_user)):
    pid = parse_oid(body.product_id, "Invalid product id", status_code=400)
    if not db["product"].find_one({"_id": pid}):
        raise HTTPException(status_code=404, detail="Product not found")
    pid_str = str(pid)

    def add(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        found = False
        for item in items:
            if item["product_id"] == pid_str:
                item["quantity"] = item.get("quantity", 1) + body.quantity
                found = True
                break
        if not found:
            items.append({"product_id": pid_str, "quantity": body.quantity})
        return items

    cart = update_cart_items(oid_str(current["_id"]), add, create=True)
    return cart_to_public(cart)


@app.put("/api/cart/update")
def update_cart_item(body: UpdateCartRequest, current=Depends(get_current_user)):
    pid_str = canonical_id(body.product_id)

    def set_quantity(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for item in items:
            if item["product_id"] == pid_str:
                item["quantity"] = body.quantity
                return items
        raise HTTPException(status_code=404, detail="Product not found in cart")

    cart = update_cart_items(oid_str(current["_id"]), set_quantity)
    return cart_to_public(cart)


@app.delete("/api/cart/remove/{product_id}")
def remove_from_cart(product_id: str, current=Depends(get_current_user)):
    pid_str = canonical_id(product_id)
    cart = update_cart_items(
        oid_str(current["_id"]),
        lambda items: [i for i in items if i["product_id"] != pid_str],
    )
    return cart_to_public(cart)


@app.delete("/api/cart/clear")
def clear_cart(current=Depends(get_current_user)):
    db["cart"].update_one(
        {"user_id": oid_str(current["_id"])},
        {"$set": {"items": [], "updated_at": now_utc()}, "$inc": {"version": 1}},
    )
    return {"message": "Cart cleared"}


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

@app.post("/api/orders", status_code=201)
def create_order(body: CreateOrderRequest, current=Depends(get_current_user)):
    uid = oid_str(current["_id"])
    cart = db["cart"].find_one({"user_id": uid})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")

    # Snapshot current catalog prices
    products = public_products(i["product_id"] for i in cart["items"])
    items: List[OrderItem] = []
    for line in cart["items"]:
        product = products.get(line["product_id"])
        if not product:
            raise HTTPException(status_code=400, detail="Product in cart no longer exists")
        items.append(OrderItem(product_id=line["product_id"], quantity=line["quantity"], price=float(product.get("price", 0))))
    total = sum(i.price * i.quantity for i in items)

    # Claim the cart before writing the order so its items cannot be ordered twice
    claimed = db["cart"].update_one(
        {"_id": cart["_id"], "version": cart.get("version", 0)},
        {"$set": {"items": [], "updated_at": now_utc()}, "$inc": {"version": 1}},
    )
    if claimed.matched_count == 0:
        raise HTTPException(status_code=409, detail="Cart was modified concurrently, please retry")

    shipping_address = body.shipping_address or current.get("address")
    order = OrderSchema(
        user_id=uid,
        order_items=items,
        shipping_address=shipping_address,
        payment_method=body.payment_method,
        total_price=total,
    )
    try:
        oid = create_document("order", order)
    except PyMongoError:
        db["cart"].update_one(
            {"_id": cart["_id"]},
            {"$push": {"items": {"$each": cart["items"]}}, "$inc": {"version": 1}},
        )
        raise
    logger.info("order_placed", order_id=oid, user_id=uid, total=total)
    return order_to_public(db["order"].find_one({"_id": ObjectId(oid)}))


@app.get("/api/orders/mine")
def my_orders(current=Depends(get_current_user)):
    cursor = db["order"].find({"user_id": oid_str(current["_id"])}).sort("created_at", -1)
    return [order_to_public(o) for o in cursor]


@app.get("/api/orders")
def all_orders(admin=Depends(get_current_admin)):
    cursor = db["order"].find({}).sort("created_at", -1)
    return [order_to_public(o) for o in cursor]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user)):
    doc = db["order"].find_one({"_id": parse_oid(order_id, "Order not found")})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    if doc["user_id"] != oid_str(current["_id"]) and current.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied")
    return order_to_public(doc)


@app.put("/api/orders/{order_id}")
def update_order_status(order_id: str, body: OrderStatusUpdateRequest, admin=Depends(get_current_admin)):
    oid = parse_oid(order_id, "Order not found")
    if not db["order"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="Order not found")
    # No transition rules: paid and delivered are independent flags
    update = patch_fields(body, nullable=("paid_at", "delivered_at", "payment_result"))
    update["updated_at"] = now_utc()
    db["order"].update_one({"_id": oid}, {"$set": update})
    logger.info("order_updated", order_id=order_id, admin_id=str(admin["_id"]), fields=sorted(update))
    return order_to_public(db["order"].find_one({"_id": oid}))


# ----------------------------------------------------------------------------
# Contact
# ----------------------------------------------------------------------------

@app.post("/api/contact", status_code=201)
def send_message(body: ContactRequest):
    create_document("contactmessage", ContactMessageSchema(**body.model_dump()))
    return {"message": "Message received"}


@app.get("/api/contact")
def list_messages(admin=Depends(get_current_admin)):
    return [doc_to_public(m) for m in get_documents("contactmessage", sort=[("created_at", -1)])]


# ----------------------------------------------------------------------------
# Admin Seed and Startup Hook
# ----------------------------------------------------------------------------

def seed_admin():
    """Create the ADMIN_EMAIL account once, when ADMIN_EMAIL and ADMIN_PASSWORD are set."""
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return
    email = ADMIN_EMAIL.lower()
    if db["user"].find_one({"email": email}):
        return
    admin = UserSchema(
        name="Admin",
        email=email,
        password_hash=hash_password(ADMIN_PASSWORD),
        role="admin",
    )
    create_document("user", admin)
    logger.info("admin_seeded", email=email)


@app.on_event("startup")
def on_startup():
    if db is None:
        logger.warning("startup_skipped", reason="database not configured")
        return
    try:
        ensure_indexes()
        seed_admin()
    except PyMongoError:
        logger.exception("startup_database_setup_failed")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
