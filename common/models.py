"""
Pydantic models for record store inputs
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, EmailStr


class PublicationStatus(str, Enum):
    """Publication lifecycle of collections and documents"""
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    PUBLISHED = "published"


class FragmentKind(str, Enum):
    """Kinds of text fragments inside a chapter"""
    PARAGRAPH = "paragraph"
    QUOTE = "quote"
    DIALOGUE = "dialogue"


DEFAULT_AUTHOR = "Unknown author"


class UserInput(BaseModel):
    """Input model for creating a user"""
    email: EmailStr
    display_name: str = Field(..., min_length=1, max_length=255)


class CollectionInput(BaseModel):
    """Input model for creating a collection"""
    owner_id: UUID
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = Field(None, max_length=5000)
    author: str = Field(DEFAULT_AUTHOR, min_length=1, max_length=255)
    status: PublicationStatus = PublicationStatus.DRAFT


class DocumentInput(BaseModel):
    """Input model for creating a document"""
    owner_id: UUID
    title: str = Field(..., min_length=1, max_length=500)
    summary: Optional[str] = Field(None, max_length=5000)
    author: str = Field(DEFAULT_AUTHOR, min_length=1, max_length=255)
    collection_id: Optional[UUID] = None
    status: PublicationStatus = PublicationStatus.DRAFT


class ChapterInput(BaseModel):
    """Input model for creating a chapter; position None appends"""
    document_id: UUID
    title: str = Field(..., min_length=1, max_length=500)
    position: Optional[int] = Field(None, ge=1)


class FragmentInput(BaseModel):
    """Input model for creating a text fragment; position None appends"""
    chapter_id: UUID
    content: str = Field(..., min_length=1, max_length=100000)
    kind: FragmentKind = FragmentKind.PARAGRAPH
    position: Optional[int] = Field(None, ge=1)


# ===================================
# Update models
# ===================================
# Unset fields keep their stored value; NOT NULL columns reject an explicit None

class UserUpdate(BaseModel):
    """Model for updating a user"""
    email: EmailStr = None
    display_name: str = Field(None, min_length=1, max_length=255)
    is_active: bool = None
    last_login_at: Optional[datetime] = None


class CollectionUpdate(BaseModel):
    """Model for updating a collection"""
    owner_id: UUID = None
    title: str = Field(None, min_length=1, max_length=500)
    description: Optional[str] = Field(None, max_length=5000)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    status: PublicationStatus = None


class DocumentUpdate(BaseModel):
    """Model for updating a document"""
    owner_id: UUID = None
    title: str = Field(None, min_length=1, max_length=500)
    summary: Optional[str] = Field(None, max_length=5000)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    collection_id: Optional[UUID] = None
    status: PublicationStatus = None


class ChapterUpdate(BaseModel):
    """Model for updating a chapter; use move_chapter to reorder"""
    title: str = Field(None, min_length=1, max_length=500)


class FragmentUpdate(BaseModel):
    """Model for updating a fragment; use move_fragment to reorder"""
    content: str = Field(None, min_length=1, max_length=100000)
    kind: FragmentKind = None
