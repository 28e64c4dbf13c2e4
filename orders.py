"""
Order placement.

Each requested line becomes an `orderitem` holding a copy of the product's
price at the moment of ordering; the order header stores the sum of
price x quantity over its items. If any step fails, the order items created
for the request are deleted again so no partial order is left behind.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo.errors import PyMongoError

from database import now_utc, oid
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)


def _discard_items(db, item_ids: List[ObjectId]) -> None:
    if not item_ids:
        return
    try:
        db["orderitem"].delete_many({"_id": {"$in": item_ids}})
        logger.info("Removed %d order items from a failed order", len(item_ids))
    except PyMongoError:
        logger.exception("Could not remove order items %s", item_ids)


def place_order(db, lines: Iterable[Dict[str, Any]], shipping: Dict[str, Any], user_id: str,
                status: Optional[str] = None) -> ObjectId:
    """Persist order items and the order header, returning the new order id.

    `lines` holds {"product": <id>, "quantity": <int>} entries.
    """
    lines = list(lines)
    if not lines:
        raise HTTPException(status_code=400, detail="Order must contain at least one item")

    item_ids: List[ObjectId] = []
    total_price = 0.0
    try:
        for line in lines:
            product_id = oid(line.get("product"))
            product = db["product"].find_one({"_id": product_id}, {"price": 1})
            if not product:
                raise HTTPException(status_code=404, detail=f"Product with ID {product_id} not found")
            item = OrderItem(product=str(product_id), quantity=line.get("quantity") or 1,
                             price=product["price"])
            doc = item.model_dump()
            doc["product"] = product_id
            doc["dateCreated"] = now_utc()
            item_ids.append(db["orderitem"].insert_one(doc).inserted_id)
            total_price += item.price * item.quantity

        order = Order(orderItems=[str(i) for i in item_ids], totalPrice=total_price, user=str(oid(user_id)),
                      status=status or "Pending", **shipping)
        doc = order.model_dump()
        doc["orderItems"] = item_ids
        doc["user"] = oid(user_id)
        doc["dateOrdered"] = now_utc()
        order_id = db["order"].insert_one(doc).inserted_id
    except Exception:
        _discard_items(db, item_ids)
        raise

    logger.info("Order %s placed by %s, total %.2f", order_id, user_id, total_price)
    return order_id


def populate_order(db, order: Dict[str, Any]) -> Dict[str, Any]:
    """Expand user, order items, their products and the products' categories in place."""
    if order is None:
        return None
    user = db["user"].find_one({"_id": order.get("user")}, {"name": 1})
    order["user"] = user if user else order.get("user")

    item_ids = order.get("orderItems") or []
    items = {i["_id"]: i for i in db["orderitem"].find({"_id": {"$in": item_ids}})}
    product_ids = [i.get("product") for i in items.values()]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": product_ids}})}
    cat_ids = [p.get("category") for p in products.values()]
    cats = {c["_id"]: c for c in db["category"].find({"_id": {"$in": cat_ids}})}
    for p in products.values():
        p["category"] = cats.get(p.get("category"), p.get("category"))

    populated = []
    for item_id in item_ids:
        item = items.get(item_id)
        if item is None:
            continue
        item["product"] = products.get(item.get("product"), item.get("product"))
        populated.append(item)
    order["orderItems"] = populated
    return order


def delete_order(db, order_id: ObjectId) -> bool:
    order = db["order"].find_one_and_delete({"_id": order_id})
    if not order:
        return False
    db["orderitem"].delete_many({"_id": {"$in": order.get("orderItems") or []}})
    return True


def total_sales(db) -> float:
    result = list(db["order"].aggregate([
        {"$group": {"_id": None, "totalSales": {"$sum": "$totalPrice"}}},
    ]))
    return result[0]["totalSales"] if result else 0
