import datetime
import uuid
from typing import Optional

from sqlmodel import Field, SQLModel


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Sermon(SQLModel, table=True):
    __tablename__ = "sermons"

    id: str = Field(default_factory=_uuid, primary_key=True)
    title: str = Field(max_length=255)
    speaker: str = Field(max_length=255, index=True)
    slug: Optional[str] = Field(default=None, index=True, unique=True)
    bible_passage: Optional[str] = Field(default=None, max_length=100)
    sermon_date: datetime.date = Field(index=True)
    description: Optional[str] = None
    transcript: Optional[str] = None
    sermon_notes: Optional[str] = None
    thumbnail_url: Optional[str] = None
    is_published: bool = Field(default=True, index=True)
    is_featured: bool = Field(default=False, index=True)
    view_count: int = Field(default=0)
    like_count: int = Field(default=0)
    share_count: int = Field(default=0)
    download_count: int = Field(default=0)
    created_at: datetime.datetime = Field(default_factory=_now)
    updated_at: datetime.datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime.datetime] = None


class Blog(SQLModel, table=True):
    """Blog post; `featured_image` holds a public `/uploads/blogs/...` URL."""
    __tablename__ = "blogs"

    id: str = Field(default_factory=_uuid, primary_key=True)
    title: str = Field(max_length=255)
    slug: str = Field(index=True, unique=True)
    content: str
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    author_id: Optional[str] = None
    published_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=_now)
    updated_at: datetime.datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime.datetime] = None


class Ministry(SQLModel, table=True):
    __tablename__ = "ministries"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str = Field(max_length=255)
    description: str
    short_description: Optional[str] = Field(default=None, max_length=500)
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_person: Optional[str] = None
    meeting_times: Optional[str] = None
    meeting_location: Optional[str] = None
    cover_image_url: Optional[str] = None
    is_active: bool = Field(default=True)
    created_at: datetime.datetime = Field(default_factory=_now)
    updated_at: datetime.datetime = Field(default_factory=_now)
