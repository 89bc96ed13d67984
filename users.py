"""
User profiles: signup area check, profile creation and admin role changes.
"""

import logging
import math
import os
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents, to_iso
from errors import ErrorChannel, PermissionDeniedError, PreconditionError, report_store_failure
from schemas import Role, User, UserOut

logger = logging.getLogger(__name__)

TIJUANA_COORDS = (32.5149, -117.0382)
SERVICE_AREA_RADIUS_KM = float(os.getenv("SERVICE_AREA_RADIUS_KM", "50"))
EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance (haversine)."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_within_service_area(latitude: float, longitude: float, radius_km: float = SERVICE_AREA_RADIUS_KM) -> bool:
    return distance_km(latitude, longitude, *TIJUANA_COORDS) <= radius_km


def user_from_document(doc: Dict[str, Any]) -> Optional[UserOut]:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    data["created_at"] = to_iso(data.get("created_at"))
    try:
        return UserOut.model_validate(data)
    except ValidationError as e:
        logger.warning("Skipping malformed user %s: %s", data["id"], e)
        return None


def get_user(db: Database, user_id: str) -> Optional[UserOut]:
    try:
        doc = db["user"].find_one({"_id": user_id})
    except PyMongoError:
        logger.exception("Error fetching user %s", user_id)
        return None
    return user_from_document(doc) if doc else None


def get_all_users(db: Database) -> List[UserOut]:
    try:
        docs = get_documents(db, "user")
    except PyMongoError:
        logger.exception("Error fetching users")
        return []
    users = (user_from_document(doc) for doc in docs)
    return [u for u in users if u is not None]


def create_user_profile(db: Database, user_id: str, profile: User, errors: Optional[ErrorChannel] = None) -> UserOut:
    """Store the profile for a freshly signed-up auth identity."""
    payload = profile.model_dump()
    payload.update(_id=user_id, role="user", favorites=[], rating=None, rating_count=0)
    try:
        create_document(db, "user", payload)
    except DuplicateKeyError:
        raise
    except PyMongoError as exc:
        payload.pop("_id")
        report_store_failure(errors, exc, f"user/{user_id}", "create", payload)
        raise
    logger.info("Created profile for %s", user_id)
    return get_user(db, user_id)


def update_user_role(db: Database, acting_user_id: str, user_id: str, role: Role, errors: Optional[ErrorChannel] = None) -> None:
    acting = db["user"].find_one({"_id": acting_user_id}, {"role": 1})
    if not acting or acting.get("role") != "admin":
        raise PermissionDeniedError("Admin access denied")
    if db["user"].find_one({"_id": user_id}, {"_id": 1}) is None:
        raise PreconditionError("User not found")
    try:
        db["user"].update_one({"_id": user_id}, {"$set": {"role": role}})
    except PyMongoError as exc:
        report_store_failure(errors, exc, f"user/{user_id}", "update", {"role": role})
        raise
    logger.info("User %s set role of %s to %s", acting_user_id, user_id, role)
