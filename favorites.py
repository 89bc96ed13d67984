"""
Favorites: User.favorites and its reverse index Product.favorited_by.

Both sides are written with $addToSet/$pull so a toggle never rewrites
the whole set from a stale read.
"""

import logging
from typing import List, Optional

from bson import ObjectId
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from catalog import ProductFilters, get_products
from errors import ErrorChannel, PreconditionError, report_store_failure
from schemas import ProductOut

logger = logging.getLogger(__name__)


def _write_both(db: Database, user_id: str, product_id: str, add: bool, session: Optional[ClientSession] = None) -> None:
    op = "$addToSet" if add else "$pull"
    db["user"].update_one({"_id": user_id}, {op: {"favorites": product_id}}, session=session)
    db["product"].update_one({"_id": ObjectId(product_id)}, {op: {"favorited_by": user_id}}, session=session)


def _write_with_compensation(db: Database, user_id: str, product_id: str, add: bool) -> None:
    op, undo = ("$addToSet", "$pull") if add else ("$pull", "$addToSet")
    db["user"].update_one({"_id": user_id}, {op: {"favorites": product_id}})
    try:
        db["product"].update_one({"_id": ObjectId(product_id)}, {op: {"favorited_by": user_id}})
    except PyMongoError:
        db["user"].update_one({"_id": user_id}, {undo: {"favorites": product_id}})
        raise


def toggle_favorite(db: Database, user_id: str, product_id: str, errors: Optional[ErrorChannel] = None, use_transactions: Optional[bool] = None) -> bool:
    """Flip the product's membership in the user's favorites.

    Returns the new state: True when the product is now a favorite.
    """
    if use_transactions is None:
        use_transactions = database.MONGO_TRANSACTIONS

    user = db["user"].find_one({"_id": user_id}, {"favorites": 1})
    if user is None:
        raise PreconditionError("User not found")

    add = product_id not in (user.get("favorites") or [])
    if add and (
        not ObjectId.is_valid(product_id)
        or db["product"].find_one({"_id": ObjectId(product_id)}, {"_id": 1}) is None
    ):
        raise PreconditionError("Product not found")

    try:
        if not ObjectId.is_valid(product_id):
            # dangling id left in favorites; no product side to update
            db["user"].update_one({"_id": user_id}, {"$pull": {"favorites": product_id}})
        elif use_transactions:
            with db.client.start_session() as session:
                session.with_transaction(lambda s: _write_both(db, user_id, product_id, add, session=s))
        else:
            _write_with_compensation(db, user_id, product_id, add)
    except PyMongoError as exc:
        report_store_failure(
            errors, exc, f"user/{user_id}", "update",
            {"favorites": {"add" if add else "remove": product_id}},
        )
        raise
    logger.info("User %s %s favorite %s", user_id, "added" if add else "removed", product_id)
    return add


def get_favorite_products(db: Database, user_id: str) -> List[ProductOut]:
    user = db["user"].find_one({"_id": user_id}, {"favorites": 1})
    if user is None:
        return []
    return get_products(db, ProductFilters(ids=user.get("favorites") or []))
