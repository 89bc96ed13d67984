"""
Buyer/seller chats.

A chat is keyed by the unordered pair of participants plus the product, so
there is at most one chat per pair and product. New chats are inserted
under that key; the store's unique _id settles concurrent creators.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from bson import ObjectId
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from catalog import product_from_document
from database import create_document, to_iso, utcnow
from errors import ErrorChannel, MarketplaceError, PermissionDeniedError, PreconditionError, report_store_failure
from schemas import Chat, ChatOut, Message, MessageOut, ParticipantDetails
from users import user_from_document

logger = logging.getLogger(__name__)


def chat_key(user_a: str, user_b: str, product_id: str) -> str:
    # uids are opaque; escaping keeps ":" a separator only
    low, high = sorted((user_a, user_b))
    return ":".join(quote(part, safe="") for part in (low, high, product_id))


def _id_filter(chat_id: str) -> Dict[str, Any]:
    # chats from before keyed ids carry an ObjectId
    if ObjectId.is_valid(chat_id):
        return {"_id": {"$in": [chat_id, ObjectId(chat_id)]}}
    return {"_id": chat_id}


def chat_from_document(doc: Dict[str, Any]) -> Optional[ChatOut]:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    data["created_at"] = to_iso(data.get("created_at"))
    last = data.get("last_message")
    if last:
        data["last_message"] = {"text": last.get("text", ""), "timestamp": to_iso(last.get("timestamp"))}
    try:
        return ChatOut.model_validate(data)
    except ValidationError as e:
        logger.warning("Skipping malformed chat %s: %s", data["id"], e)
        return None


def message_from_document(doc: Dict[str, Any]) -> Optional[MessageOut]:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    data["timestamp"] = to_iso(data.get("timestamp"))
    try:
        return MessageOut.model_validate(data)
    except ValidationError as e:
        logger.warning("Skipping malformed message %s: %s", data["id"], e)
        return None


def find_existing_chat(db: Database, user_a: str, user_b: str, product_id: str) -> Optional[str]:
    """Oldest chat between the two users about the product, if any."""
    cursor = db["chat"].find(
        {"participants": user_a, "product_id": product_id},
        {"participants": 1},
    ).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
    for doc in cursor:
        if user_b in doc.get("participants", []):
            return str(doc["_id"])
    return None


def _load_chat_subjects(db: Database, user_a: str, user_b: str, product_id: str):
    # store errors propagate here, unlike the read helpers in users/catalog
    first = db["user"].find_one({"_id": user_a})
    second = db["user"].find_one({"_id": user_b})
    product = db["product"].find_one({"_id": ObjectId(product_id)}) if ObjectId.is_valid(product_id) else None
    return (
        user_from_document(first) if first else None,
        user_from_document(second) if second else None,
        product_from_document(product) if product else None,
    )


def get_or_create_chat(db: Database, user_a: str, user_b: str, product_id: str, errors: Optional[ErrorChannel] = None) -> str:
    if user_a == user_b:
        raise PreconditionError("You cannot message yourself")

    try:
        existing = find_existing_chat(db, user_a, user_b, product_id)
    except PyMongoError as exc:
        report_store_failure(errors, exc, "chat", "list", {"participants": user_a, "product_id": product_id})
        raise
    if existing:
        return existing

    try:
        first, second, product = _load_chat_subjects(db, user_a, user_b, product_id)
    except PyMongoError as exc:
        report_store_failure(errors, exc, "chat", "get", {"participants": [user_a, user_b], "product_id": product_id})
        raise
    if not first or not second or not product:
        raise PreconditionError("Could not find user or product to create chat")

    key = chat_key(user_a, user_b, product_id)
    chat = Chat(
        participants=[user_a, user_b],
        participant_details={
            user_a: ParticipantDetails(name=first.name, avatar=first.profile_picture or ""),
            user_b: ParticipantDetails(name=second.name, avatar=second.profile_picture or ""),
        },
        product_id=product_id,
        product_title=product.title,
        product_image=product.images[0] if product.images else "",
    )
    payload = chat.model_dump()
    try:
        create_document(db, "chat", {"_id": key, **payload})
    except DuplicateKeyError:
        winner = db["chat"].find_one({"_id": key}, {"participants": 1, "product_id": 1})
        if (
            winner is None
            or sorted(winner.get("participants", [])) != sorted((user_a, user_b))
            or winner.get("product_id") != product_id
        ):
            raise MarketplaceError(f"Chat {key} belongs to another conversation")
        logger.info("Chat %s was created concurrently", key)
    except PyMongoError as exc:
        report_store_failure(errors, exc, f"chat/{key}", "create", payload)
        raise
    else:
        logger.info("Created chat %s", key)
    return key


def get_chat(db: Database, chat_id: str) -> Optional[ChatOut]:
    try:
        doc = db["chat"].find_one(_id_filter(chat_id))
    except PyMongoError:
        logger.exception("Error fetching chat %s", chat_id)
        return None
    return chat_from_document(doc) if doc else None


def get_chats_for_user(db: Database, user_id: str) -> List[ChatOut]:
    try:
        docs = list(db["chat"].find({"participants": user_id}).sort("last_message.timestamp", DESCENDING))
    except PyMongoError:
        logger.exception("Error fetching chats for %s", user_id)
        return []
    chats = (chat_from_document(doc) for doc in docs)
    return [c for c in chats if c is not None]


def send_message(db: Database, chat_id: str, sender_id: str, text: str, errors: Optional[ErrorChannel] = None) -> Optional[str]:
    """Post a message and refresh the chat's last_message summary.

    Blank text is ignored and returns None.
    """
    text = (text or "").strip()
    if not text:
        return None

    chat = db["chat"].find_one(_id_filter(chat_id), {"participants": 1})
    if chat is None:
        raise PreconditionError("Chat not found")
    if sender_id not in chat.get("participants", []):
        raise PermissionDeniedError("Not your conversation")

    message = Message(chat_id=str(chat["_id"]), sender_id=sender_id, text=text)
    now = utcnow()
    try:
        result = db["message"].insert_one({**message.model_dump(), "timestamp": now})
        db["chat"].update_one(
            {"_id": chat["_id"]},
            {"$set": {"last_message": {"text": text, "timestamp": now}, "updated_at": now}},
        )
    except PyMongoError as exc:
        report_store_failure(errors, exc, f"chat/{chat_id}/message", "create", message.model_dump())
        raise
    return str(result.inserted_id)


def list_messages(db: Database, chat_id: str, limit: Optional[int] = None) -> List[MessageOut]:
    chat = db["chat"].find_one(_id_filter(chat_id), {"_id": 1})
    if chat is None:
        return []
    cursor = db["message"].find({"chat_id": str(chat["_id"])}).sort([("timestamp", ASCENDING), ("_id", ASCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    messages = (message_from_document(doc) for doc in cursor)
    return [m for m in messages if m is not None]
