"""
Database Schemas for Tijuana Shop (local marketplace)

Each Pydantic model maps to a MongoDB collection (lowercased class name).
Use these for validation and to keep collections consistent. The *Out
models are what the data layer hands back to callers: ids as strings and
timestamps as ISO-8601 strings.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

Condition = Literal["Nuevo", "Usado"]
Role = Literal["user", "admin"]


class Category(BaseModel):
    id: str
    name: str


CATEGORIES: List[Category] = [
    Category(id="autos", name="Autos"),
    Category(id="electronica", name="Electrónica"),
    Category(id="hogar", name="Hogar"),
    Category(id="ropa", name="Ropa"),
    Category(id="otros", name="Otros"),
]

CATEGORY_IDS = [c.id for c in CATEGORIES]
CONDITIONS = ["Nuevo", "Usado"]


# People who sell, message and favorite. The document id is the auth uid.
class User(BaseModel):
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Email address")
    profile_picture: Optional[str] = Field(None, description="Avatar URL")
    location: str = Field("Tijuana", description="Location label")
    role: Role = Field("user")
    rating: Optional[float] = Field(None, ge=0, le=5)
    rating_count: int = Field(0, ge=0)
    favorites: List[str] = Field(default_factory=list, description="Favorited product ids")

    @model_validator(mode="after")
    def check_rating_votes(self):
        if self.rating_count == 0:
            self.rating = None
        return self


# Items for sale
class Product(BaseModel):
    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field(..., max_length=5000)
    price: float = Field(..., ge=0)
    category: str = Field(..., description="One of CATEGORY_IDS")
    condition: Condition
    location: str
    seller_id: str = Field(..., description="Owner user id")
    images: List[str] = Field(default_factory=list)
    views: int = Field(0, ge=0)
    favorited_by: List[str] = Field(default_factory=list, description="Reverse index of User.favorites")

    @field_validator("category")
    @classmethod
    def check_category(cls, v: str) -> str:
        if v not in CATEGORY_IDS:
            raise ValueError(f"unknown category: {v}")
        return v


class ParticipantDetails(BaseModel):
    name: str
    avatar: str = ""


class LastMessage(BaseModel):
    text: str
    timestamp: Optional[str] = None


# A thread between exactly two users about one product
class Chat(BaseModel):
    participants: List[str] = Field(..., min_length=2, max_length=2)
    participant_details: Dict[str, ParticipantDetails]
    product_id: str
    product_title: str
    product_image: str = ""

    @model_validator(mode="after")
    def check_distinct_participants(self):
        if self.participants[0] == self.participants[1]:
            raise ValueError("participants must be distinct")
        return self


# Messages posted in a chat
class Message(BaseModel):
    chat_id: str
    sender_id: str
    text: str = Field(..., min_length=1, max_length=5000)


class UserOut(User):
    id: str
    created_at: Optional[str] = None


class ProductOut(Product):
    id: str
    created_at: str


class ChatOut(Chat):
    id: str
    created_at: Optional[str] = None
    last_message: Optional[LastMessage] = None


class MessageOut(Message):
    id: str
    timestamp: Optional[str] = None
