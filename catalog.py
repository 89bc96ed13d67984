"""
Product catalog: categories, the product query builder and product writes.

The query builder keeps to the lowest common denominator of document
stores: bounded membership lists, one range predicate per query, and
title prefix matching in place of full-text search.
"""

import logging
import os
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, Field, ValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, to_iso
from errors import ErrorChannel, PreconditionError, report_store_failure
from schemas import CATEGORIES, Category, Condition, Product, ProductOut

logger = logging.getLogger(__name__)

# Size cap for "value in list" predicates
MAX_IN_LIST = 30
# Home feed size when no filter narrows the query
DEFAULT_PAGE_SIZE = 20
# Sorts after any character a title will realistically contain
TITLE_PREFIX_SENTINEL = "\uf8ff"

COMBINE_SEARCH_WITH_PRICE = os.getenv("COMBINE_SEARCH_WITH_PRICE", "false").lower() == "true"


def get_categories() -> List[Category]:
    return list(CATEGORIES)


def get_category(category_id: str) -> Optional[Category]:
    return next((c for c in CATEGORIES if c.id == category_id), None)


class ProductFilters(BaseModel):
    categories: Optional[List[str]] = None
    conditions: Optional[List[Condition]] = None
    search_term: Optional[str] = None
    seller_id: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    ids: Optional[List[str]] = None

    def is_empty(self) -> bool:
        return not (
            self.categories
            or self.conditions
            or (self.search_term or "").strip()
            or self.seller_id
            or self.min_price is not None
            or self.max_price is not None
            or self.ids is not None
        )


class ProductQuery(NamedTuple):
    filter: Dict[str, Any]
    sort: List[Tuple[str, int]]
    limit: Optional[int] = None


def chunked(values: List[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _unique_object_ids(ids: Iterable[str]) -> List[ObjectId]:
    seen = set()
    out = []
    for pid in ids:
        if not ObjectId.is_valid(pid):
            continue
        # ObjectId normalizes hex case, so compare after parsing
        oid = ObjectId(pid)
        if oid in seen:
            continue
        seen.add(oid)
        out.append(oid)
    return out


def build_product_queries(filters: Optional[ProductFilters] = None, combine_search_with_price: bool = COMBINE_SEARCH_WITH_PRICE) -> List[ProductQuery]:
    """Translate a filter bag into the store queries that answer it.

    Returns an empty list when `ids` is given but empty, one query per
    chunk of at most MAX_IN_LIST ids when `ids` is given, and a single
    query otherwise.
    """
    filters = filters or ProductFilters()

    base: Dict[str, Any] = {}
    if filters.categories:
        base["category"] = {"$in": list(dict.fromkeys(filters.categories))}
    if filters.conditions:
        base["condition"] = {"$in": list(dict.fromkeys(filters.conditions))}
    if filters.seller_id:
        base["seller_id"] = filters.seller_id

    price: Dict[str, float] = {}
    if filters.min_price is not None:
        price["$gte"] = filters.min_price
    if filters.max_price is not None:
        price["$lte"] = filters.max_price

    term = (filters.search_term or "").strip()
    if term:
        base["title"] = {"$gte": term, "$lt": term + TITLE_PREFIX_SENTINEL}
        sort = [("title", ASCENDING), ("created_at", DESCENDING)]
        if price:
            if combine_search_with_price:
                base["price"] = price
            else:
                logger.debug("Dropping price bounds %s for title search %r", price, term)
    else:
        if price:
            base["price"] = price
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]

    if filters.ids is not None:
        object_ids = _unique_object_ids(filters.ids)
        return [ProductQuery({**base, "_id": {"$in": chunk}}, sort) for chunk in chunked(object_ids, MAX_IN_LIST)]

    limit = DEFAULT_PAGE_SIZE if filters.is_empty() else None
    return [ProductQuery(base, sort, limit)]


def product_from_document(doc: Dict[str, Any]) -> Optional[ProductOut]:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    data["created_at"] = to_iso(data.get("created_at"))
    try:
        return ProductOut.model_validate(data)
    except ValidationError as e:
        logger.warning("Skipping malformed product %s: %s", data["id"], e)
        return None


def get_products(db: Database, filters: Optional[ProductFilters] = None) -> List[ProductOut]:
    """Run the product queries for `filters`.

    Store failures (including missing indexes) are logged and come back as
    an empty list, so an empty result does not prove there are no matches.
    """
    products: List[ProductOut] = []
    try:
        for query in build_product_queries(filters):
            cursor = db["product"].find(query.filter).sort(query.sort)
            if query.limit:
                cursor = cursor.limit(query.limit)
            for doc in cursor:
                product = product_from_document(doc)
                if product is not None:
                    products.append(product)
    except PyMongoError:
        logger.exception("Error fetching products")
        return []
    return products


def get_product(db: Database, product_id: str) -> Optional[ProductOut]:
    if not ObjectId.is_valid(product_id):
        return None
    try:
        doc = db["product"].find_one({"_id": ObjectId(product_id)})
    except PyMongoError:
        logger.exception("Error fetching product %s", product_id)
        return None
    if doc is None:
        logger.info("No such product: %s", product_id)
        return None
    return product_from_document(doc)


def create_product(db: Database, product: Product, errors: Optional[ErrorChannel] = None) -> str:
    if db["user"].find_one({"_id": product.seller_id}, {"_id": 1}) is None:
        raise PreconditionError("Seller not found")

    payload = product.model_dump()
    try:
        product_id = create_document(db, "product", payload)
    except PyMongoError as exc:
        report_store_failure(errors, exc, "product", "create", payload)
        raise
    logger.info("Product %s listed by %s", product_id, product.seller_id)
    return product_id


def increment_view_count(db: Database, product_id: str, errors: Optional[ErrorChannel] = None) -> None:
    """Best-effort view counter; failures are reported, never raised."""
    if not ObjectId.is_valid(product_id):
        return
    try:
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"views": 1}})
    except PyMongoError as exc:
        report_store_failure(errors, exc, f"product/{product_id}", "update", {"views": "+1"})
        logger.warning("Could not increment views for product %s", product_id)
