"""
Linkly Database Layer

Usage:
    from linkly.database import (
        init_db, session_scope,
        Link, Collection, AnalysisStatus,
        LinkRepository, CollectionRepository,
    )

    # Initialize database
    init_db()

    # Store and read links
    links = LinkRepository()
    link = links.create(owner_id, "ab12c", "https://example.com")
    links.increment_hits("ab12c")
"""

from .models import (
    Base,
    Link,
    Collection,
    LinkCollectionRef,
    CollectionMember,
    OwnerTag,
    AnalysisStatus,
)
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    make_session_factory,
    get_session_factory,
    session_scope,
    init_db,
    check_db_connection,
)
from .repository import (
    LinkRepository,
    CollectionRepository,
    as_uuid,
)

__all__ = [
    # Models
    "Base",
    "Link",
    "Collection",
    "LinkCollectionRef",
    "CollectionMember",
    "OwnerTag",
    "AnalysisStatus",
    # Session
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "make_session_factory",
    "get_session_factory",
    "session_scope",
    "init_db",
    "check_db_connection",
    # Repository
    "LinkRepository",
    "CollectionRepository",
    "as_uuid",
]
