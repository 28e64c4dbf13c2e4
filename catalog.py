import os
import time
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException, UploadFile

from database import now_utc, oid
from schemas import Category, ProductSize

logger = logging.getLogger(__name__)

FILE_TYPE_MAP = {
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/jpg": "jpg",
}

SORT_FIELDS = ("name", "price", "rating", "dateCreated", "countInStock")


# ---------------------- Categories ----------------------

def find_category(db, category_id) -> Optional[Dict[str, Any]]:
    if isinstance(category_id, str) and not ObjectId.is_valid(category_id):
        return None
    return db["category"].find_one({"_id": ObjectId(category_id)})


def create_category(db, name: str, icon: Optional[str] = None, color: Optional[str] = None,
                    parent_category: Optional[str] = None) -> Dict[str, Any]:
    """Create a category, creating its parent first when `parent_category` matches nothing.

    An unknown parent is created with `parent_category` as its name.
    """
    category = Category(name=name, icon=icon, color=color)
    parent = None
    if parent_category:
        parent = find_category(db, parent_category)
        if parent is None:
            new_parent = Category(name=str(parent_category), icon="default_icon", color="default-color")
            doc = new_parent.model_dump()
            doc["dateCreated"] = now_utc()
            doc["_id"] = db["category"].insert_one(doc).inserted_id
            logger.info("Created parent category %r for %r", new_parent.name, name)
            parent = doc

    doc = category.model_dump()
    doc["parentCategory"] = parent["_id"] if parent else None
    doc["dateCreated"] = now_utc()
    doc["_id"] = db["category"].insert_one(doc).inserted_id
    return doc


def populate_parents(db, categories: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    parent_ids = [c["parentCategory"] for c in categories if c.get("parentCategory")]
    parents = {p["_id"]: {"_id": p["_id"], "name": p.get("name")}
               for p in db["category"].find({"_id": {"$in": parent_ids}})}
    for c in categories:
        if c.get("parentCategory"):
            c["parentCategory"] = parents.get(c["parentCategory"], c["parentCategory"])
    return categories


# ---------------------- Products ----------------------

def populate_categories(db, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cat_ids = [p.get("category") for p in products]
    cats = {c["_id"]: c for c in db["category"].find({"_id": {"$in": cat_ids}})}
    for p in products:
        p["category"] = cats.get(p.get("category"), p.get("category"))
    return products


def build_product_filter(categories: Optional[str] = None, brand: Optional[str] = None,
                         colour: Optional[str] = None, size: Optional[str] = None,
                         min_price: Optional[float] = None, max_price: Optional[float] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if categories:
        filt["category"] = {"$in": [oid(c.strip()) for c in categories.split(",") if c.strip()]}
    if brand:
        filt["brand"] = brand
    if colour:
        filt["colour"] = colour
    if size:
        parsed = ProductSize.parse(size)
        filt["size.kind"] = parsed.kind
        filt["size.value"] = parsed.value
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    return filt


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    """`price:desc` -> [("price", -1)]. Newest first when nothing is asked for."""
    if not sort:
        return [("dateCreated", -1)]
    field, _, order = sort.partition(":")
    field = field or "dateCreated"
    if field not in SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"Cannot sort by '{field}'")
    return [(field, -1 if order == "desc" else 1)]


# ---------------------- Uploads ----------------------

def save_upload(upload: UploadFile, upload_dir: str, base_url: str) -> str:
    """Store an uploaded image and return its public URL."""
    extension = FILE_TYPE_MAP.get(upload.content_type)
    if not extension:
        raise HTTPException(status_code=400, detail="Invalid image type")
    stem = os.path.splitext(os.path.basename(upload.filename or "image"))[0]
    file_name = f"{stem.replace(' ', '-')}-{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}"
    os.makedirs(upload_dir, exist_ok=True)
    with open(os.path.join(upload_dir, file_name), "wb") as out:
        out.write(upload.file.read())
    return f"{base_url.rstrip('/')}/public/uploads/{file_name}"
