"""
Table declarations: which columns are sealed and which are stored in clear
"""
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class TableSpec:
    """Storage layout of one entity table"""
    name: str
    encrypted_fields: Tuple[str, ...]
    plain_fields: Tuple[str, ...]
    scope_column: Optional[str] = None  # parent column for ordered children
    order_column: str = "position"

    @property
    def is_ordered(self) -> bool:
        return self.scope_column is not None


USERS = TableSpec(
    name="users",
    encrypted_fields=("email", "display_name"),
    plain_fields=("is_active", "last_login_at"),
)

COLLECTIONS = TableSpec(
    name="collections",
    encrypted_fields=("title", "description", "author"),
    plain_fields=("owner_id", "status"),
)

DOCUMENTS = TableSpec(
    name="documents",
    encrypted_fields=("title", "summary", "author"),
    plain_fields=("owner_id", "collection_id", "status"),
)

CHAPTERS = TableSpec(
    name="chapters",
    encrypted_fields=("title",),
    plain_fields=("document_id",),
    scope_column="document_id",
)

FRAGMENTS = TableSpec(
    name="fragments",
    encrypted_fields=("content",),
    plain_fields=("chapter_id", "kind"),
    scope_column="chapter_id",
)

ALL_TABLES = (USERS, COLLECTIONS, DOCUMENTS, CHAPTERS, FRAGMENTS)
