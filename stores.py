"""
Collection-level data access.

Every write to `product.stock` goes through `decrement_stock_if_available`
or `increment_stock`; order lifecycle writes are compare-and-set on the
current status.
"""
from typing import Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from database import create_document, to_object_id, utcnow
from schemas import Order, Product, Review, User


class CatalogStore:
    def __init__(self, database):
        self.collection = database["product"]

    def find_product(self, product_id: str) -> Optional[dict]:
        return self.collection.find_one({"_id": to_object_id(product_id, "Product")})

    def find_products(self, product_ids: Iterable[str]) -> dict:
        ids = [to_object_id(pid, "Product") for pid in set(product_ids)]
        return {str(p["_id"]): p for p in self.collection.find({"_id": {"$in": ids}})}

    def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        """Atomically take `quantity` units; False when fewer are in stock."""
        result = self.collection.update_one(
            {"_id": to_object_id(product_id, "Product"), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        )
        return result.modified_count == 1

    def increment_stock(self, product_id: str, quantity: int) -> None:
        self.collection.update_one(
            {"_id": to_object_id(product_id, "Product")},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
        )

    def adjust_stock(self, product_id: str, delta: int) -> bool:
        """Add or remove units relative to the current stock; False if removal would go negative."""
        if delta < 0:
            return self.decrement_stock_if_available(product_id, -delta)
        self.increment_stock(product_id, delta)
        return True

    def create_product(self, product: Product) -> dict:
        pid = create_document(self.collection.database, self.collection.name, product)
        return self.find_product(pid)

    def update_product(self, product_id: str, fields: dict) -> Optional[dict]:
        fields = {**fields, "updated_at": utcnow()}
        return self.collection.find_one_and_update(
            {"_id": to_object_id(product_id, "Product")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def delete_product(self, product_id: str) -> bool:
        res = self.collection.delete_one({"_id": to_object_id(product_id, "Product")})
        return res.deleted_count == 1

    def set_ratings(self, product_id: str, average: float, count: int) -> None:
        self.collection.update_one(
            {"_id": to_object_id(product_id, "Product")},
            {"$set": {"ratings": {"average": average, "count": count}, "updated_at": utcnow()}},
        )

    def list_products(self, query: dict, sort: List[Tuple[str, int]], skip: int, limit: int) -> Tuple[list, int]:
        items = list(self.collection.find(query).sort(sort).skip(skip).limit(limit))
        return items, self.collection.count_documents(query)

    def products_for_seller(self, seller_id: str, active_only: bool = False) -> list:
        query = {"seller_id": seller_id}
        if active_only:
            query["is_active"] = True
        return list(self.collection.find(query).sort("created_at", DESCENDING))

    def categories(self) -> list:
        return sorted(self.collection.distinct("category"))


class AccountStore:
    def __init__(self, database):
        self.collection = database["user"]

    def find_user(self, user_id: str) -> Optional[dict]:
        return self.collection.find_one({"_id": to_object_id(user_id, "User")})

    def find_users(self, user_ids: Iterable[str]) -> dict:
        ids = [to_object_id(uid, "User") for uid in set(user_ids)]
        return {str(u["_id"]): u for u in self.collection.find({"_id": {"$in": ids}})}

    def find_by_email(self, email: str) -> Optional[dict]:
        return self.collection.find_one({"email": email.lower()})

    def create_user(self, user: User) -> dict:
        uid = create_document(self.collection.database, self.collection.name, user)
        return self.find_user(uid)

    def update_user(self, user_id: str, fields: dict) -> Optional[dict]:
        fields = {**fields, "updated_at": utcnow()}
        return self.collection.find_one_and_update(
            {"_id": to_object_id(user_id, "User")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def replace_addresses(self, user_id: str, addresses: List[dict], seen: Optional[List[dict]]) -> bool:
        """Write the address book only if it still equals `seen`, the copy the caller read."""
        result = self.collection.update_one(
            {"_id": to_object_id(user_id, "User"), "addresses": seen},
            {"$set": {"addresses": addresses, "updated_at": utcnow()}},
        )
        return result.matched_count == 1

    def delete_user(self, user_id: str) -> bool:
        return self.collection.delete_one({"_id": to_object_id(user_id, "User")}).deleted_count == 1

    def list_users(self, query: dict, skip: int, limit: int) -> Tuple[list, int]:
        items = list(self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit))
        return items, self.collection.count_documents(query)

    def count(self, query: Optional[dict] = None) -> int:
        return self.collection.count_documents(query or {})


class OrderLedger:
    def __init__(self, database):
        self.collection = database["order"]

    def ensure_indexes(self) -> None:
        self.collection.create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
        self.collection.create_index("status")
        self.collection.create_index("items.seller_id")
        self.collection.create_index("payment_reference", unique=True, sparse=True)

    def insert_order(self, order: Order) -> dict:
        oid = create_document(self.collection.database, self.collection.name, order)
        return self.find_order(oid)

    def find_order(self, order_id: str) -> Optional[dict]:
        return self.collection.find_one({"_id": to_object_id(order_id, "Order")})

    def find_by_payment_reference(self, payment_reference: Optional[str]) -> Optional[dict]:
        # {"payment_reference": None} would also match orders without a reference.
        if not payment_reference:
            return None
        return self.collection.find_one({"payment_reference": payment_reference})

    def update_order_status(self, order_id: str, status: Optional[str], fields: dict,
                            expected: Optional[dict] = None) -> Optional[dict]:
        """Apply `status`/`fields` only if the order still matches `expected`.

        Returns the updated order, or None when the guard no longer holds.
        """
        guard = {"_id": to_object_id(order_id, "Order")}
        guard.update(expected or {})
        update = {**fields, "updated_at": utcnow()}
        if status is not None:
            update["status"] = status
        return self.collection.find_one_and_update(
            guard, {"$set": update}, return_document=ReturnDocument.AFTER
        )

    def list_orders(self, query: dict, skip: int = 0, limit: int = 0) -> Tuple[list, int]:
        cursor = self.collection.find(query).sort("created_at", DESCENDING)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor), self.collection.count_documents(query)


class ReviewStore:
    def __init__(self, database):
        self.collection = database["review"]

    def ensure_indexes(self) -> None:
        self.collection.create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)

    def find_review(self, review_id: str) -> Optional[dict]:
        return self.collection.find_one({"_id": to_object_id(review_id, "Review")})

    def find_by_user(self, product_id: str, user_id: str) -> Optional[dict]:
        return self.collection.find_one({"product_id": product_id, "user_id": user_id})

    def create_review(self, review: Review) -> dict:
        rid = create_document(self.collection.database, self.collection.name, review)
        return self.find_review(rid)

    def update_review(self, review_id: str, fields: dict) -> Optional[dict]:
        fields = {**fields, "updated_at": utcnow()}
        return self.collection.find_one_and_update(
            {"_id": to_object_id(review_id, "Review")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def delete_review(self, review_id: str) -> None:
        self.collection.delete_one({"_id": to_object_id(review_id, "Review")})

    def reviews_for_product(self, product_id: str) -> list:
        return list(self.collection.find({"product_id": product_id}).sort("created_at", DESCENDING))
