"""
Database Schemas for the Forum API

Each document-bearing Pydantic model maps to a MongoDB collection:
- users
- posts
- comments
- announcements
- reports
- commentReports
- payments

Categories and tags are reference lists seeded outside the API. The *Payload
models describe request bodies; the matching documents are built from them in
main.py with server-assigned ids and timestamps.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator

MEMBERSHIP_FREE = "Free"
MEMBERSHIP_GOLD = "Gold"
ROLE_ADMIN = "admin"


# Users
class User(BaseModel):
    id: int
    username: str
    email: EmailStr = Field(..., description="Unique email address")
    profileImage: Optional[str] = None
    badge: List[str] = Field(default_factory=lambda: ["Bronze"])
    posts: List[int] = Field(default_factory=list, description="Ids of posts owned by the user")
    membershipStatus: str = Field(MEMBERSHIP_FREE, description="Free | Gold")
    role: Optional[str] = Field(None, description="admin or absent")


class AddUserPayload(BaseModel):
    username: str
    email: EmailStr
    profileImage: Optional[str] = None


# Posts
class Post(BaseModel):
    id: int
    authorId: int
    authorEmail: EmailStr
    title: str
    description: str
    category: str
    tags: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    upVotes: int = 0
    downVotes: int = 0
    comments: List[int] = Field(default_factory=list)
    postTime: datetime


class AddPostPayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: str
    category: str
    tags: List[str] = Field(default_factory=list)
    image: Optional[str] = None


class VotePayload(BaseModel):
    id: int = Field(..., description="Post id")
    vote: Literal["up", "down"]


# Comments
class Comment(BaseModel):
    id: int
    postId: int
    commenterEmail: EmailStr
    commenterName: Optional[str] = None
    comment: str
    commentTime: datetime


class AddCommentPayload(BaseModel):
    postId: int
    comment: str = Field(..., min_length=1)


# Admin
class AdminPrivilegePayload(BaseModel):
    id: int = Field(..., description="Target user id")
    membershipStatus: Optional[Literal["Free", "Gold"]] = None
    role: Optional[Literal["admin", "user"]] = None

    @field_validator("membershipStatus", "role", mode="before")
    @classmethod
    def empty_as_unset(cls, v, info: ValidationInfo):
        if v is None or v == "" or v == [] or v == {}:
            return None
        if info.field_name == "role" and isinstance(v, str):
            return v.lower()
        return v

    def updates(self) -> dict:
        """Only the fields that carry a value."""
        fields = {"membershipStatus": self.membershipStatus, "role": self.role}
        return {k: v for k, v in fields.items() if v is not None}


class Announcement(BaseModel):
    id: int
    adminId: int
    title: str
    announcements: str
    image: Optional[str] = None
    createdAt: datetime


class AnnouncementPayload(BaseModel):
    title: str = Field(..., min_length=1)
    announcements: str
    image: Optional[str] = None


# Reports
class ReportPayload(BaseModel):
    postId: int
    reportedUserEmail: Optional[EmailStr] = None
    details: str = ""
    option: str = Field(..., description="Report reason")


class CommentReportPayload(ReportPayload):
    commentId: int


# Payments
class PriceRequest(BaseModel):
    price: float = Field(..., gt=0)


class PaymentRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount: float = Field(..., ge=0)
    transactionId: str
    uuid: Optional[str] = None


class JwtPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: EmailStr
