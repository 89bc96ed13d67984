import os
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from database import get_db
from catalog import ProductFilters, create_product, get_categories, get_product, get_products, increment_view_count
from chats import get_chat, get_chats_for_user, get_or_create_chat, list_messages, send_message
from errors import PERMISSION_ERROR, STORE_ERROR, ErrorChannel, PermissionDeniedError, PreconditionError, log_store_error
from favorites import get_favorite_products, toggle_favorite
from schemas import Category, ChatOut, Condition, MessageOut, Product as ProductSchema, ProductOut, Role, User as UserSchema, UserOut
from search_interpreter import filters_from_interpretation, interpret_search_query
from users import create_user_profile, get_all_users, get_user, is_within_service_area, update_user_role

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

app = FastAPI(title="Tijuana Shop API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.error_channel = ErrorChannel()
app.state.error_channel.subscribe(PERMISSION_ERROR, log_store_error)
app.state.error_channel.subscribe(STORE_ERROR, log_store_error)


def get_error_channel(request: Request) -> ErrorChannel:
    return request.app.state.error_channel


@app.exception_handler(PreconditionError)
def precondition_failed(request: Request, exc: PreconditionError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PermissionDeniedError)
def permission_denied(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(PyMongoError)
def store_unavailable(request: Request, exc: PyMongoError):
    return JSONResponse(status_code=503, content={"detail": "Store operation failed"})


# Promote the configured admin account on startup
@app.on_event("startup")
def seed_admin():
    if database.db is None or not ADMIN_EMAIL:
        return
    result = database.db["user"].update_one({"email": ADMIN_EMAIL}, {"$set": {"role": "admin"}})
    if result.matched_count:
        logger.info("Admin role ensured for %s", ADMIN_EMAIL)


# Auth Endpoints
class RegisterBody(BaseModel):
    user_id: str = Field(..., description="Auth provider uid")
    name: str
    email: EmailStr
    profile_picture: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    terms_accepted: bool = False


@app.post("/api/auth/register", response_model=UserOut)
def register(body: RegisterBody, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    if not is_within_service_area(body.latitude, body.longitude):
        raise HTTPException(status_code=403, detail="You must be in the Tijuana area to register")
    if not body.terms_accepted:
        raise HTTPException(status_code=400, detail="Terms and conditions must be accepted")
    if db["user"].find_one({"_id": body.user_id}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Account already registered")
    if db["user"].find_one({"email": str(body.email)}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Email already registered")

    profile = UserSchema(
        name=body.name,
        email=body.email,
        profile_picture=body.profile_picture or f"https://picsum.photos/seed/{body.user_id}/400/400",
    )
    try:
        return create_user_profile(db, body.user_id, profile, errors)
    except DuplicateKeyError:
        # lost a race with a concurrent registration
        raise HTTPException(status_code=400, detail="Account already registered")


@app.get("/api/users/{user_id}", response_model=UserOut)
def read_user(user_id: str, db: Database = Depends(get_db)):
    user = get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# Admin Endpoints
class RoleBody(BaseModel):
    user_id: str = Field(..., description="Acting admin uid")
    role: Role


@app.get("/api/admin/users", response_model=List[UserOut])
def list_users(user_id: str, db: Database = Depends(get_db)):
    acting = get_user(db, user_id)
    if not acting or acting.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access denied")
    return get_all_users(db)


@app.patch("/api/admin/users/{target_id}/role")
def change_role(target_id: str, body: RoleBody, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    update_user_role(db, body.user_id, target_id, body.role, errors)
    return {"id": target_id, "role": body.role}


# Catalog Endpoints
class CreateProductBody(BaseModel):
    user_id: str
    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field(..., max_length=5000)
    price: float = Field(..., ge=0)
    category: str
    condition: Condition
    location: str
    images: List[str] = Field(..., min_length=1)


@app.get("/api/categories", response_model=List[Category])
def list_categories():
    return get_categories()


@app.get("/api/products", response_model=List[ProductOut])
def list_products(
    categories: Optional[List[str]] = Query(None),
    conditions: Optional[List[Condition]] = Query(None),
    q: Optional[str] = None,
    seller_id: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    smart: bool = False,
    db: Database = Depends(get_db),
):
    filters = ProductFilters(
        categories=categories,
        conditions=conditions,
        search_term=q,
        seller_id=seller_id,
        min_price=min_price,
        max_price=max_price,
    )
    if smart and q:
        interpreted = filters_from_interpretation(interpret_search_query(q))
        # explicit query parameters win over inferred ones
        filters = interpreted.model_copy(update=filters.model_dump(exclude_none=True, exclude={"search_term"}))
    return get_products(db, filters)


@app.get("/api/products/{product_id}", response_model=ProductOut)
def read_product(product_id: str, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    increment_view_count(db, product_id, errors)
    return product


@app.post("/api/products")
def list_product(body: CreateProductBody, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    try:
        product = ProductSchema(seller_id=body.user_id, **body.model_dump(exclude={"user_id"}))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    product_id = create_product(db, product, errors)
    return {"id": product_id}


# Favorites
class FavoriteBody(BaseModel):
    user_id: str
    product_id: str


@app.post("/api/favorites/toggle")
def toggle(body: FavoriteBody, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    favorited = toggle_favorite(db, body.user_id, body.product_id, errors)
    return {"product_id": body.product_id, "favorited": favorited}


@app.get("/api/favorites/{user_id}", response_model=List[ProductOut])
def list_favorites(user_id: str, db: Database = Depends(get_db)):
    return get_favorite_products(db, user_id)


# Messaging
class StartChatBody(BaseModel):
    user_id: str
    product_id: str


class SendMessageBody(BaseModel):
    user_id: str
    text: str = Field(..., max_length=5000)


@app.post("/api/chats")
def start_chat(body: StartChatBody, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    product = get_product(db, body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.seller_id == body.user_id:
        raise HTTPException(status_code=400, detail="You cannot message yourself")
    chat_id = get_or_create_chat(db, body.user_id, product.seller_id, body.product_id, errors)
    return {"id": chat_id}


@app.get("/api/chats", response_model=List[ChatOut])
def list_chats(user_id: str, db: Database = Depends(get_db)):
    return get_chats_for_user(db, user_id)


def _chat_for_participant(db: Database, chat_id: str, user_id: str) -> ChatOut:
    chat = get_chat(db, chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if user_id not in chat.participants:
        raise HTTPException(status_code=403, detail="Not your conversation")
    return chat


@app.get("/api/chats/{chat_id}", response_model=ChatOut)
def read_chat(chat_id: str, user_id: str, db: Database = Depends(get_db)):
    return _chat_for_participant(db, chat_id, user_id)


@app.get("/api/chats/{chat_id}/messages", response_model=List[MessageOut])
def read_messages(chat_id: str, user_id: str, limit: int = Query(200, ge=1, le=500), db: Database = Depends(get_db)):
    chat = _chat_for_participant(db, chat_id, user_id)
    return list_messages(db, chat.id, limit=limit)


@app.post("/api/chats/{chat_id}/messages")
def post_message(chat_id: str, body: SendMessageBody, db: Database = Depends(get_db), errors: ErrorChannel = Depends(get_error_channel)):
    message_id = send_message(db, chat_id, body.user_id, body.text, errors)
    if message_id is None:
        raise HTTPException(status_code=400, detail="Message content required")
    return {"id": message_id}


# Search
class InterpretBody(BaseModel):
    query: str


@app.post("/api/search/interpret")
def interpret(body: InterpretBody):
    return interpret_search_query(body.query).model_dump(exclude_none=True)


@app.get("/")
def read_root():
    return {"message": "Tijuana Shop backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is None:
        return response
    response["database"] = "✅ Available"
    response["connection_status"] = "Connected"
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
