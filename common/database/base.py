"""
Base interface for database adapters using Adapter Pattern
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from common.models import (
    ChapterInput,
    CollectionInput,
    DocumentInput,
    FragmentInput,
    UserInput,
)


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters

    Adapters return records as dictionaries with sensitive fields already
    decrypted. Single-record reads raise codec errors; list reads skip
    records that fail to decrypt.
    """

    def __init__(self, **kwargs):
        """
        Initialize database connection

        Args:
            **kwargs: Database-specific connection parameters
        """
        self.config = kwargs

    @abstractmethod
    async def connect(self):
        """Establish database connection"""
        pass

    @abstractmethod
    async def disconnect(self):
        """Close database connection"""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check database connectivity

        Returns:
            True if database is accessible, False otherwise
        """
        pass

    # User operations
    @abstractmethod
    async def create_user(self, data: UserInput) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_users(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """
        Find an active user by email

        Emails are sealed per record, so this scans and decrypts active users.
        """
        pass

    @abstractmethod
    async def update_user(self, user_id: str, **fields) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_user(self, user_id: str) -> bool:
        pass

    # Collection operations
    @abstractmethod
    async def create_collection(self, data: CollectionInput) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_collection(self, collection_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_collections(self, owner_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update_collection(self, collection_id: str, **fields) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_collection(self, collection_id: str) -> bool:
        pass

    # Document operations
    @abstractmethod
    async def create_document(self, data: DocumentInput) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_documents(
        self,
        owner_id: Optional[str] = None,
        collection_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update_document(self, document_id: str, **fields) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        pass

    # Chapter operations (ordered within a document)
    @abstractmethod
    async def create_chapter(self, data: ChapterInput) -> Dict[str, Any]:
        """
        Create a chapter, shifting later chapters down

        Args:
            data: Chapter input; position None appends

        Returns:
            Created chapter with its final position
        """
        pass

    @abstractmethod
    async def get_chapter(self, chapter_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_chapters(self, document_id: str) -> List[Dict[str, Any]]:
        """Chapters of a document in position order"""
        pass

    @abstractmethod
    async def update_chapter(self, chapter_id: str, **fields) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def move_chapter(self, chapter_id: str, position: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_chapter(self, chapter_id: str) -> bool:
        """Delete a chapter and close the gap in its document"""
        pass

    # Fragment operations (ordered within a chapter)
    @abstractmethod
    async def create_fragment(self, data: FragmentInput) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_fragment(self, fragment_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_fragments(self, chapter_id: str) -> List[Dict[str, Any]]:
        """Fragments of a chapter in position order"""
        pass

    @abstractmethod
    async def update_fragment(self, fragment_id: str, **fields) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def move_fragment(self, fragment_id: str, position: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_fragment(self, fragment_id: str) -> bool:
        """Delete a fragment and close the gap in its chapter"""
        pass
