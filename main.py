import os
import math
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId

import accounts
import catalog
import orders
from database import db, create_document, ensure_indexes, get_documents, now_utc, oid, serialize_doc
from mailer import Mailer
from rate_limit import SlidingWindowRateLimiter
from schemas import Product as ProductSchema, ProductSize
from security import decode_access_token

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("ekoseller")

API_PREFIX = os.getenv("API_URL", "/api/v1")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("public", "uploads"))
OTP_RATE_LIMIT = 3
OTP_RATE_WINDOW_SECONDS = 15 * 60

USER_PROJECTION = {f: 0 for f in accounts.PRIVATE_FIELDS}

bearer_scheme = HTTPBearer(auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    app.state.mailer = Mailer.from_env()
    app.state.otp_limiter = SlidingWindowRateLimiter(OTP_RATE_LIMIT, OTP_RATE_WINDOW_SECONDS)
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL not set, data routes will answer 500")
    await run_in_threadpool(app.state.mailer.verify)
    yield


app = FastAPI(title="Eko Seller API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/public/uploads", StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


# ---------------------- Errors ----------------------

def _describe(errors) -> List[str]:
    out = []
    for e in errors:
        loc = ".".join(str(p) for p in e.get("loc", ()) if p not in ("body", "query", "path", "form"))
        out.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    return out


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={
        "success": False, "message": "Validation failed", "errors": _describe(exc.errors()),
    })


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={
        "success": False, "message": "Validation failed", "errors": _describe(exc.errors()),
    })


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={
        "success": False, "message": "Resource with this information already exists",
    })


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Database error"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ---------------------- Dependencies ----------------------

class CurrentUser(BaseModel):
    id: str
    name: Optional[str] = None
    email: str
    role: str = "user"


def require_db():
    if db is None:
        raise HTTPException(500, "Database not configured")


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def otp_rate_limit(request: Request):
    limiter: SlidingWindowRateLimiter = request.app.state.otp_limiter
    origin = request.client.host if request.client else "unknown"
    if not limiter.hit(origin):
        raise HTTPException(429, "Too many OTP requests from this IP, please try again later.")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> CurrentUser:
    if credentials is None:
        raise HTTPException(401, "Authentication required")
    payload = decode_access_token(credentials.credentials)
    user_id = payload.get("userId") if payload else None
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(401, "Authentication failed")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(401, "Authentication failed")
    return CurrentUser(id=str(user["_id"]), name=user.get("name"), email=user["email"], role=user.get("role", "user"))


def require_roles(*roles: str):
    label = " or ".join(roles).capitalize()

    def checker(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current.role not in roles:
            raise HTTPException(403, f"Access denied. {label} privileges required")
        return current

    return checker


seller_or_admin = require_roles("seller", "admin")
admin_only = require_roles("admin")

api = APIRouter(prefix=API_PREFIX, dependencies=[Depends(require_db)])


# ---------------------- Request bodies ----------------------

class RegisterBody(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    marketLocation: Optional[str] = None
    description: Optional[str] = None
    localGovernmentArea: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class VerifyOTPBody(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    email: Optional[str] = None
    otp: Optional[str] = None


class ResendOTPBody(BaseModel):
    email: Optional[str] = None


class LoginBody(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileBody(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    marketLocation: Optional[str] = None
    description: Optional[str] = None
    localGovernmentArea: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class AdminUserUpdateBody(ProfileBody):
    role: Optional[str] = None
    isVerified: Optional[bool] = None


class CategoryBody(BaseModel):
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    parentCategory: Optional[str] = None


class CategoryUpdateBody(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None


class OrderLine(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)


class OrderBody(BaseModel):
    orderItems: List[OrderLine]
    shippingAddress1: str
    shippingAddress2: str
    state: str
    zip: str
    country: str
    phone: str
    status: Optional[str] = None
    user: Optional[str] = None


class OrderStatusBody(BaseModel):
    status: str = Field(..., min_length=1)


SHIPPING_FIELDS = {"shippingAddress1", "shippingAddress2", "state", "zip", "country", "phone"}


# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Eko Seller backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is not None:
        response["database_name"] = db.name
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ---------------------- Users ----------------------

def _page_meta(count: int, page: int, limit: int):
    return {"totalPages": math.ceil(count / limit), "currentPage": page}


def _public_user(user):
    return serialize_doc(user, exclude=accounts.PRIVATE_FIELDS)


@api.get("/users/sellers")
def list_sellers(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    state: Optional[str] = None,
    localGovernmentArea: Optional[str] = None,
    marketLocation: Optional[str] = None,
):
    filt = {"role": "seller"}
    if state:
        filt["state"] = state
    if localGovernmentArea:
        filt["localGovernmentArea"] = localGovernmentArea
    if marketLocation:
        filt["marketLocation"] = marketLocation
    sellers = db["user"].find(filt, USER_PROJECTION).skip((page - 1) * limit).limit(limit)
    count = db["user"].count_documents(filt)
    return {
        "success": True,
        **_page_meta(count, page, limit),
        "totalSellers": count,
        "sellers": [_public_user(s) for s in sellers],
    }


@api.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    role: Optional[str] = None,
    state: Optional[str] = None,
    country: Optional[str] = None,
    isVerified: Optional[str] = None,
    current: CurrentUser = Depends(admin_only),
):
    filt = {}
    if role:
        filt["role"] = role
    if state:
        filt["state"] = state
    if country:
        filt["country"] = country
    if isVerified:
        filt["isVerified"] = isVerified == "true"
    users = db["user"].find(filt, USER_PROJECTION).skip((page - 1) * limit).limit(limit)
    count = db["user"].count_documents(filt)
    return {
        "success": True,
        **_page_meta(count, page, limit),
        "totalUsers": count,
        "users": [_public_user(u) for u in users],
    }


@api.get("/users/{user_id}")
def get_user(user_id: str, current: CurrentUser = Depends(admin_only)):
    user = db["user"].find_one({"_id": oid(user_id)}, USER_PROJECTION)
    if not user:
        raise HTTPException(404, "User not found")
    return {"success": True, "user": _public_user(user)}


@api.post("/users/register", status_code=201)
def register(body: RegisterBody, mailer: Mailer = Depends(get_mailer)):
    user = accounts.register_user(db, mailer, body.model_dump())
    return {
        "success": True,
        "message": "User registered successfully. Please verify email with the OTP sent",
        "userId": str(user["_id"]),
    }


@api.post("/users/verify-otp")
def verify_otp(body: VerifyOTPBody):
    accounts.verify_otp(db, body.email, body.otp)
    return {"success": True, "message": "User verified successfully"}


@api.post("/users/resend-otp", dependencies=[Depends(otp_rate_limit)])
def resend_otp(body: ResendOTPBody, mailer: Mailer = Depends(get_mailer)):
    accounts.resend_otp(db, mailer, body.email)
    return {"success": True, "message": "New OTP has been sent to your email"}


@api.post("/users/login")
def login(body: LoginBody):
    result = accounts.login(db, body.email, body.password)
    return {"success": True, "message": "Login successful", **result}


def _save_user_changes(target, changes):
    if not changes:
        return db["user"].find_one({"_id": target}, USER_PROJECTION)
    return db["user"].find_one_and_update(
        {"_id": target}, {"$set": changes}, projection=USER_PROJECTION, return_document=ReturnDocument.AFTER,
    )


@api.put("/users/update-profile/{user_id}")
def update_profile(user_id: str, body: ProfileBody, current: CurrentUser = Depends(get_current_user)):
    target = oid(user_id)
    if str(target) != current.id and current.role != "admin":
        raise HTTPException(403, "You can only update your own profile")
    user = db["user"].find_one({"_id": target})
    if not user:
        raise HTTPException(404, "User not found")
    changes = accounts.apply_profile_update(db, user, body.model_dump())
    updated = _save_user_changes(target, changes)
    return {"success": True, "message": "Profile updated successfully", "user": _public_user(updated)}


@api.post("/users", status_code=201)
def create_user(body: RegisterBody, current: CurrentUser = Depends(admin_only)):
    user = accounts.build_user(body.model_dump(), verified=True)
    accounts.ensure_unique(db, email=user.email, phone=user.phone)
    user_id = create_document("user", user, database=db)
    created = db["user"].find_one({"_id": ObjectId(user_id)}, USER_PROJECTION)
    return {"success": True, "message": "User created successfully", "user": _public_user(created)}


@api.put("/users/{user_id}")
def update_user(user_id: str, body: AdminUserUpdateBody, current: CurrentUser = Depends(admin_only)):
    target = oid(user_id)
    user = db["user"].find_one({"_id": target})
    if not user:
        raise HTTPException(404, "User not found")
    changes = accounts.apply_profile_update(db, user, body.model_dump(), admin=True)
    updated = _save_user_changes(target, changes)
    return {"success": True, "message": "User updated successfully", "user": _public_user(updated)}


@api.delete("/users/{user_id}")
def delete_user(user_id: str, current: CurrentUser = Depends(admin_only)):
    user = db["user"].find_one_and_delete({"_id": oid(user_id)})
    if not user:
        raise HTTPException(404, "User not found")
    db["userotpverification"].delete_one({"email": user.get("email")})
    return {"success": True, "message": "User deleted successfully"}


# ---------------------- Categories ----------------------

@api.get("/categories")
def list_categories():
    cats = catalog.populate_parents(db, get_documents("category", database=db))
    return {"success": True, "categories": serialize_doc(cats)}


@api.get("/categories/{category_id}")
def get_category(category_id: str):
    category = db["category"].find_one({"_id": oid(category_id)})
    if not category:
        raise HTTPException(404, "Category with given ID not found")
    catalog.populate_parents(db, [category])
    return {"success": True, "category": serialize_doc(category)}


@api.post("/categories", status_code=201)
def create_category(body: CategoryBody, current: CurrentUser = Depends(seller_or_admin)):
    category = catalog.create_category(db, body.name, body.icon, body.color, body.parentCategory)
    catalog.populate_parents(db, [category])
    return {"success": True, "message": "Category created successfully", "category": serialize_doc(category)}


@api.put("/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdateBody, current: CurrentUser = Depends(seller_or_admin)):
    changes = body.model_dump(exclude_none=True)
    if "name" in changes and not changes["name"].strip():
        raise HTTPException(400, "Category name cannot be empty")
    category = db["category"].find_one_and_update(
        {"_id": oid(category_id)}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    ) if changes else db["category"].find_one({"_id": oid(category_id)})
    if not category:
        raise HTTPException(404, "Category not found")
    return {"success": True, "message": "Category updated successfully", "category": serialize_doc(category)}


@api.delete("/categories/{category_id}")
def delete_category(category_id: str, current: CurrentUser = Depends(admin_only)):
    res = db["category"].delete_one({"_id": oid(category_id)})
    if res.deleted_count == 0:
        raise HTTPException(404, "Category not found")
    return {"success": True, "message": "Category deleted"}


# ---------------------- Products ----------------------

def _load_product(product_id: ObjectId):
    product = db["product"].find_one({"_id": product_id})
    if not product:
        raise HTTPException(404, "Product not found")
    catalog.populate_categories(db, [product])
    return serialize_doc(product)


@api.get("/products")
def list_products(
    categories: Optional[str] = None,
    brand: Optional[str] = None,
    colour: Optional[str] = None,
    size: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0, alias="minPrice"),
    max_price: Optional[float] = Query(None, ge=0, alias="maxPrice"),
    sort: Optional[str] = Query(None, description="field:asc|desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    filt = catalog.build_product_filter(categories, brand, colour, size, min_price, max_price)
    cursor = db["product"].find(filt).sort(catalog.parse_sort(sort)).skip((page - 1) * limit).limit(limit)
    products = catalog.populate_categories(db, list(cursor))
    count = db["product"].count_documents(filt)
    return {
        "success": True,
        "products": serialize_doc(products),
        **_page_meta(count, page, limit),
        "totalProducts": count,
    }


@api.get("/products/get/count")
def count_products():
    return {"success": True, "productCount": db["product"].count_documents({})}


@api.get("/products/category/{category_id}")
def products_by_category(category_id: str):
    products = list(db["product"].find({"category": oid(category_id)}).sort("dateCreated", -1))
    catalog.populate_categories(db, products)
    return {"success": True, "products": serialize_doc(products)}


@api.get("/products/{product_id}")
def get_product(product_id: str):
    return {"success": True, "product": _load_product(oid(product_id))}


@api.post("/products", status_code=201)
def create_product(
    request: Request,
    name: str = Form(...),
    description: str = Form(...),
    price: float = Form(...),
    colour: str = Form(...),
    size: str = Form(...),
    category: str = Form(...),
    countInStock: int = Form(...),
    brand: str = Form(""),
    image: Optional[UploadFile] = File(None),
    images: Optional[List[UploadFile]] = File(None),
    current: CurrentUser = Depends(seller_or_admin),
):
    cat = catalog.find_category(db, category)
    if not cat:
        raise HTTPException(400, "Invalid category")
    if image is None:
        raise HTTPException(400, "No image provided")
    product = ProductSchema(
        name=name, description=description, brand=brand, price=price, colour=colour,
        size=ProductSize.parse(size), category=str(cat["_id"]), countInStock=countInStock,
    )
    base_url = str(request.base_url)
    product.image = catalog.save_upload(image, UPLOAD_DIR, base_url)
    product.images = [catalog.save_upload(f, UPLOAD_DIR, base_url) for f in images or []]

    doc = product.model_dump()
    doc["category"] = cat["_id"]
    product_id = create_document("product", doc, database=db)
    return {"success": True, "message": "Product created successfully", "product": _load_product(ObjectId(product_id))}


@api.put("/products/gallery-images/{product_id}")
def update_gallery(
    request: Request,
    product_id: str,
    images: List[UploadFile] = File(...),
    current: CurrentUser = Depends(seller_or_admin),
):
    pid = oid(product_id)
    if not db["product"].find_one({"_id": pid}, {"_id": 1}):
        raise HTTPException(404, "Product not found")
    base_url = str(request.base_url)
    urls = [catalog.save_upload(f, UPLOAD_DIR, base_url) for f in images]
    db["product"].update_one({"_id": pid}, {"$set": {"images": urls}})
    return {"success": True, "message": "Gallery updated", "product": _load_product(pid)}


@api.put("/products/{product_id}")
def update_product(
    request: Request,
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    colour: Optional[str] = Form(None),
    size: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    countInStock: Optional[int] = Form(None),
    rating: Optional[float] = Form(None),
    image: Optional[UploadFile] = File(None),
    current: CurrentUser = Depends(seller_or_admin),
):
    pid = oid(product_id)
    existing = db["product"].find_one({"_id": pid})
    if not existing:
        raise HTTPException(404, "Product not found")

    changes = {k: v for k, v in {
        "name": name, "description": description, "brand": brand, "price": price, "colour": colour,
        "size": size, "countInStock": countInStock, "rating": rating,
    }.items() if v is not None}
    if "size" in changes:
        changes["size"] = ProductSize.parse(changes["size"])
    category_id = existing.get("category")
    if category is not None:
        cat = catalog.find_category(db, category)
        if not cat:
            raise HTTPException(400, "Invalid category")
        category_id = cat["_id"]

    merged = {k: existing[k] for k in ProductSchema.model_fields if k in existing}
    merged.update(changes)
    merged["category"] = str(category_id)
    validated = ProductSchema(**merged).model_dump()

    update = {k: validated[k] for k in changes}
    update["category"] = category_id
    if image is not None:
        update["image"] = catalog.save_upload(image, UPLOAD_DIR, str(request.base_url))
    db["product"].update_one({"_id": pid}, {"$set": update})
    return {"success": True, "message": "Product updated successfully", "product": _load_product(pid)}


@api.delete("/products/{product_id}")
def delete_product(product_id: str, current: CurrentUser = Depends(seller_or_admin)):
    res = db["product"].delete_one({"_id": oid(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(404, "Product not found")
    return {"success": True, "message": "Product deleted successfully"}


# ---------------------- Orders ----------------------

def _can_see_orders_of(current: CurrentUser, user_id) -> bool:
    return current.role in ("seller", "admin") or current.id == str(user_id)


@api.get("/orders")
def list_orders(current: CurrentUser = Depends(seller_or_admin)):
    found = db["order"].find().sort("dateOrdered", -1)
    return {"success": True, "orders": serialize_doc([orders.populate_order(db, o) for o in found])}


@api.get("/orders/get/totalsales")
def get_total_sales(current: CurrentUser = Depends(seller_or_admin)):
    return {"success": True, "totalSales": orders.total_sales(db)}


@api.get("/orders/get/count")
def get_order_count(current: CurrentUser = Depends(seller_or_admin)):
    return {"success": True, "orderCount": db["order"].count_documents({})}


@api.get("/orders/get/userorders/{user_id}")
def get_user_orders(user_id: str, current: CurrentUser = Depends(get_current_user)):
    uid = oid(user_id)
    if not _can_see_orders_of(current, uid):
        raise HTTPException(403, "Access denied")
    found = list(db["order"].find({"user": uid}).sort("dateOrdered", -1))
    if not found:
        raise HTTPException(404, "No orders found for this user")
    return {"success": True, "orders": serialize_doc([orders.populate_order(db, o) for o in found])}


@api.get("/orders/{order_id}")
def get_order(order_id: str, current: CurrentUser = Depends(get_current_user)):
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(404, "Order not found")
    if not _can_see_orders_of(current, order.get("user")):
        raise HTTPException(403, "Access denied")
    return {"success": True, "order": serialize_doc(orders.populate_order(db, order))}


@api.post("/orders", status_code=201)
def create_order(body: OrderBody, current: CurrentUser = Depends(get_current_user)):
    user_id = current.id
    if body.user and body.user != current.id:
        if current.role != "admin":
            raise HTTPException(403, "Not allowed to place orders for another user")
        if not db["user"].find_one({"_id": oid(body.user)}, {"_id": 1}):
            raise HTTPException(404, "User not found")
        user_id = body.user

    order_id = orders.place_order(
        db,
        [line.model_dump() for line in body.orderItems],
        body.model_dump(include=SHIPPING_FIELDS),
        user_id,
        status=body.status,
    )
    order = orders.populate_order(db, db["order"].find_one({"_id": order_id}))
    return {"success": True, "message": "Order created successfully", "order": serialize_doc(order)}


@api.put("/orders/{order_id}")
def update_order_status(order_id: str, body: OrderStatusBody, current: CurrentUser = Depends(seller_or_admin)):
    order = db["order"].find_one_and_update(
        {"_id": oid(order_id)},
        {"$set": {"status": body.status, "dateUpdated": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise HTTPException(404, "Order not found")
    return {"success": True, "order": serialize_doc(order)}


@api.delete("/orders/{order_id}")
def delete_order(order_id: str, current: CurrentUser = Depends(admin_only)):
    if not orders.delete_order(db, oid(order_id)):
        raise HTTPException(404, "Order not found")
    return {"success": True, "message": "Order deleted successfully"}


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
