"""
Repository Layer - Clean Interface for Data Operations

Provides simple methods to store and retrieve links and collections.
Handles all SQLAlchemy complexity internally and hands plain dicts back,
so callers never hold a live session.

Membership is stored twice (link references and collection members).
Each repository owns one side; keeping them symmetric is the job of
`linkly.services.membership`.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Union
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from linkly.errors import DuplicateCollectionName
from .models import (
    AnalysisStatus,
    Collection,
    CollectionMember,
    Link,
    LinkCollectionRef,
    OwnerTag,
)
from .session import session_scope

logger = logging.getLogger(__name__)

IdLike = Union[str, UUID]

# Fields a caller may patch through update_fields
LINK_UPDATABLE_FIELDS = frozenset({
    "code",
    "destination",
    "analysis_status",
    "summary",
    "tags",
    "safety_rating",
    "safety_justification",
    "category",
    "category_confidence",
    "category_reason",
    "analysis_error",
    "analyzed_at",
})

# Integer columns that support atomic increment
LINK_COUNTER_FIELDS = frozenset({"hit_count"})


def as_uuid(value: IdLike) -> UUID:
    """Coerce a string or UUID to UUID. Raises ValueError on garbage."""
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def _try_uuid(value: IdLike) -> Optional[UUID]:
    try:
        return as_uuid(value)
    except (ValueError, TypeError, AttributeError):
        return None


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def _link_to_dict(link: Link, collection_ids: Optional[Iterable[UUID]] = None) -> Dict[str, Any]:
    status = link.analysis_status or AnalysisStatus.PENDING
    data = {
        "id": link.id,
        "code": link.code,
        "destination": link.destination,
        "owner_id": link.owner_id,
        "hit_count": link.hit_count or 0,
        "analysis_status": status.value,
        "summary": link.summary,
        "tags": list(link.tags or []),
        "safety_rating": link.safety_rating,
        "safety_justification": link.safety_justification,
        "classification": {
            "category": link.category,
            "confidence": link.category_confidence,
            "reason": link.category_reason,
        },
        "analysis_error": link.analysis_error,
        "analyzed_at": link.analyzed_at,
        "created_at": link.created_at,
        "updated_at": link.updated_at,
    }
    if collection_ids is not None:
        data["collection_ids"] = sorted(collection_ids, key=str)
    return data


def _collection_to_dict(collection: Collection, link_ids: Optional[Iterable[UUID]] = None) -> Dict[str, Any]:
    data = {
        "id": collection.id,
        "owner_id": collection.owner_id,
        "name": collection.name,
        "description": collection.description,
        "color": collection.color,
        "is_system": bool(collection.is_system),
        "system_category": collection.system_category,
        "created_at": collection.created_at,
    }
    if link_ids is not None:
        data["link_ids"] = sorted(link_ids, key=str)
    return data


class _BaseRepository:
    """Shared session handling."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._factory = session_factory

    @contextmanager
    def _session(self):
        with session_scope(self._factory) as db:
            yield db


# =============================================================================
# LINK REPOSITORY
# =============================================================================

class LinkRepository(_BaseRepository):
    """Durable store for Link records, keyed by id and by short code."""

    def create(self, owner_id: str, code: str, destination: str) -> Dict[str, Any]:
        """Insert a new PENDING link."""
        with self._session() as db:
            link = Link(
                code=code,
                destination=destination,
                owner_id=str(owner_id),
                hit_count=0,
                analysis_status=AnalysisStatus.PENDING,
                tags=[],
            )
            db.add(link)
            db.flush()
            logger.info(f"Created link {link.id} ({code}) for owner {owner_id}")
            return _link_to_dict(link, [])

    def get_by_id(self, link_id: IdLike) -> Optional[Dict[str, Any]]:
        uid = _try_uuid(link_id)
        if uid is None:
            return None
        with self._session() as db:
            link = db.get(Link, uid)
            if link is None:
                return None
            return _link_to_dict(link, self._ref_ids(db, uid))

    def get_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        with self._session() as db:
            link = db.execute(select(Link).where(Link.code == code)).scalar_one_or_none()
            if link is None:
                return None
            return _link_to_dict(link, self._ref_ids(db, link.id))

    def code_exists(self, code: str) -> bool:
        with self._session() as db:
            return db.execute(
                select(Link.id).where(Link.code == code)
            ).first() is not None

    def find_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        """All links of an owner, newest first."""
        with self._session() as db:
            links = db.execute(
                select(Link)
                .where(Link.owner_id == str(owner_id))
                .order_by(Link.created_at.desc())
            ).scalars().all()
            return [_link_to_dict(link) for link in links]

    def find_by_owner_and_destination(self, owner_id: str, destination: str) -> Optional[Dict[str, Any]]:
        with self._session() as db:
            link = db.execute(
                select(Link)
                .where(Link.owner_id == str(owner_id), Link.destination == destination)
                .limit(1)
            ).scalar_one_or_none()
            return _link_to_dict(link) if link else None

    def list_owner_ids(self) -> List[str]:
        """Distinct owners that have at least one link."""
        with self._session() as db:
            rows = db.execute(select(Link.owner_id).distinct()).all()
            return sorted(row[0] for row in rows)

    def update_fields(self, link_id: IdLike, patch: Dict[str, Any]) -> bool:
        """
        Patch whitelisted fields of a link.

        Returns False when the link does not exist.
        """
        unknown = set(patch) - LINK_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        values = dict(patch)
        status = values.get("analysis_status")
        if isinstance(status, str):
            values["analysis_status"] = AnalysisStatus(status)
        values["updated_at"] = datetime.utcnow()

        with self._session() as db:
            result = db.execute(
                update(Link).where(Link.id == as_uuid(link_id)).values(**values)
            )
            return result.rowcount > 0

    def set_status(self, link_id: IdLike, status: AnalysisStatus, error: Optional[str] = None) -> bool:
        patch: Dict[str, Any] = {"analysis_status": status}
        if error is not None:
            patch["analysis_error"] = error[:2000]
        return self.update_fields(link_id, patch)

    def increment_counter(self, code: str, field: str = "hit_count", amount: int = 1) -> bool:
        """
        Atomically add `amount` to a counter column.

        Runs as a single UPDATE ... SET col = col + n so concurrent callers
        never lose increments. Returns False when the code is unknown.
        """
        if field not in LINK_COUNTER_FIELDS:
            raise ValueError(f"Not a counter field: {field}")
        if amount < 0:
            raise ValueError("Counters are monotonic")

        column = getattr(Link, field)
        with self._session() as db:
            result = db.execute(
                update(Link)
                .where(Link.code == code)
                .values({column: column + amount})
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def increment_hits(self, code: str) -> bool:
        return self.increment_counter(code, "hit_count", 1)

    def delete(self, link_id: IdLike) -> bool:
        uid = _try_uuid(link_id)
        if uid is None:
            return False
        with self._session() as db:
            link = db.get(Link, uid)
            if link is None:
                return False
            db.delete(link)
            logger.info(f"Deleted link {uid} ({link.code})")
            return True

    # -------------------------------------------------------------------------
    # Link side of membership
    # -------------------------------------------------------------------------

    @staticmethod
    def _ref_ids(db: Session, link_id: UUID) -> Set[UUID]:
        rows = db.execute(
            select(LinkCollectionRef.collection_id).where(LinkCollectionRef.link_id == link_id)
        ).all()
        return {row[0] for row in rows}

    def get_collection_ids(self, link_id: IdLike) -> Set[UUID]:
        with self._session() as db:
            return self._ref_ids(db, as_uuid(link_id))

    def add_collection_ref(self, link_id: IdLike, collection_id: IdLike) -> bool:
        """Add a collection reference. Returns False if already present."""
        key = (as_uuid(link_id), as_uuid(collection_id))
        try:
            with self._session() as db:
                if db.get(LinkCollectionRef, key) is not None:
                    return False
                db.add(LinkCollectionRef(link_id=key[0], collection_id=key[1]))
            return True
        except IntegrityError:
            # Lost a race with a concurrent insert of the same reference
            logger.debug(f"Reference {key} already present")
            return False

    def remove_collection_ref(self, link_id: IdLike, collection_id: IdLike) -> bool:
        with self._session() as db:
            result = db.execute(
                delete(LinkCollectionRef).where(
                    LinkCollectionRef.link_id == as_uuid(link_id),
                    LinkCollectionRef.collection_id == as_uuid(collection_id),
                )
            )
            return result.rowcount > 0

    def replace_collection_refs(self, link_id: IdLike, collection_ids: Iterable[IdLike]) -> Set[UUID]:
        """Replace the full reference set in one transaction. Returns the new set."""
        uid = as_uuid(link_id)
        target = {as_uuid(cid) for cid in collection_ids}
        with self._session() as db:
            current = self._ref_ids(db, uid)
            stale = current - target
            if stale:
                db.execute(
                    delete(LinkCollectionRef).where(
                        LinkCollectionRef.link_id == uid,
                        LinkCollectionRef.collection_id.in_(stale),
                    )
                )
            for cid in target - current:
                db.add(LinkCollectionRef(link_id=uid, collection_id=cid))
        return target

    # -------------------------------------------------------------------------
    # Owner tag vocabulary
    # -------------------------------------------------------------------------

    def add_owner_tags(self, owner_id: str, tags: Iterable[str]) -> int:
        """Merge tags into the owner's vocabulary. Returns count of new tags."""
        cleaned = {t.strip()[:100] for t in tags if t and t.strip()}
        if not cleaned:
            return 0
        with self._session() as db:
            existing = {
                row[0] for row in db.execute(
                    select(OwnerTag.tag).where(
                        OwnerTag.owner_id == str(owner_id), OwnerTag.tag.in_(cleaned)
                    )
                ).all()
            }
            new_tags = cleaned - existing
            for tag in new_tags:
                db.add(OwnerTag(owner_id=str(owner_id), tag=tag))
            return len(new_tags)

    def get_owner_tags(self, owner_id: str) -> List[str]:
        with self._session() as db:
            rows = db.execute(
                select(OwnerTag.tag).where(OwnerTag.owner_id == str(owner_id)).order_by(OwnerTag.tag)
            ).all()
            return [row[0] for row in rows]


# =============================================================================
# COLLECTION REPOSITORY
# =============================================================================

class CollectionRepository(_BaseRepository):
    """Durable store for collections and the collection side of membership."""

    def create(
        self,
        owner_id: str,
        name: str,
        description: str = "",
        color: str = "#144EE3",
        is_system: bool = False,
        system_category: Optional[str] = None,
    ) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValueError("Collection name cannot be empty")
        if len(name) > 100:
            raise ValueError("Collection name cannot exceed 100 characters")

        try:
            with self._session() as db:
                clash = db.execute(
                    select(Collection.id).where(
                        Collection.owner_id == str(owner_id), Collection.name == name
                    )
                ).first()
                if clash is not None:
                    raise DuplicateCollectionName(
                        f"A collection named '{name}' already exists for owner {owner_id}"
                    )
                collection = Collection(
                    owner_id=str(owner_id),
                    name=name,
                    description=description,
                    color=color,
                    is_system=is_system,
                    system_category=system_category,
                )
                db.add(collection)
                db.flush()
                return _collection_to_dict(collection, [])
        except IntegrityError as e:
            raise DuplicateCollectionName(
                f"A collection named '{name}' already exists for owner {owner_id}"
            ) from e

    def get(self, collection_id: IdLike) -> Optional[Dict[str, Any]]:
        uid = _try_uuid(collection_id)
        if uid is None:
            return None
        with self._session() as db:
            collection = db.get(Collection, uid)
            if collection is None:
                return None
            return _collection_to_dict(collection, self._member_ids(db, uid))

    def get_many(self, collection_ids: Iterable[IdLike]) -> Dict[UUID, Dict[str, Any]]:
        uids = {u for u in (_try_uuid(c) for c in collection_ids) if u is not None}
        if not uids:
            return {}
        with self._session() as db:
            rows = db.execute(select(Collection).where(Collection.id.in_(uids))).scalars().all()
            return {c.id: _collection_to_dict(c) for c in rows}

    def find_by_owner(self, owner_id: str, include_system: bool = True) -> List[Dict[str, Any]]:
        with self._session() as db:
            stmt = select(Collection).where(Collection.owner_id == str(owner_id))
            if not include_system:
                stmt = stmt.where(Collection.is_system.is_(False))
            rows = db.execute(stmt.order_by(Collection.name)).scalars().all()
            return [_collection_to_dict(c) for c in rows]

    def find_system_collection(self, owner_id: str, category: str) -> Optional[Dict[str, Any]]:
        with self._session() as db:
            collection = db.execute(
                select(Collection).where(
                    Collection.owner_id == str(owner_id),
                    Collection.is_system.is_(True),
                    Collection.system_category == category,
                ).limit(1)
            ).scalar_one_or_none()
            return _collection_to_dict(collection) if collection else None

    def system_categories_for_owner(self, owner_id: str) -> Set[str]:
        with self._session() as db:
            rows = db.execute(
                select(Collection.system_category).where(
                    Collection.owner_id == str(owner_id), Collection.is_system.is_(True)
                )
            ).all()
            return {row[0] for row in rows if row[0]}

    # -------------------------------------------------------------------------
    # Collection side of membership
    # -------------------------------------------------------------------------

    @staticmethod
    def _member_ids(db: Session, collection_id: UUID) -> Set[UUID]:
        rows = db.execute(
            select(CollectionMember.link_id).where(CollectionMember.collection_id == collection_id)
        ).all()
        return {row[0] for row in rows}

    def get_member_ids(self, collection_id: IdLike) -> Set[UUID]:
        with self._session() as db:
            return self._member_ids(db, as_uuid(collection_id))

    def find_collections_containing(self, link_id: IdLike) -> Set[UUID]:
        with self._session() as db:
            rows = db.execute(
                select(CollectionMember.collection_id).where(
                    CollectionMember.link_id == as_uuid(link_id)
                )
            ).all()
            return {row[0] for row in rows}

    def add_member(self, collection_id: IdLike, link_id: IdLike) -> bool:
        """Add a link to a collection. Returns False if already a member."""
        key = (as_uuid(collection_id), as_uuid(link_id))
        try:
            with self._session() as db:
                if db.get(CollectionMember, key) is not None:
                    return False
                db.add(CollectionMember(collection_id=key[0], link_id=key[1]))
            return True
        except IntegrityError:
            logger.debug(f"Member {key} already present")
            return False

    def remove_member(self, collection_id: IdLike, link_id: IdLike) -> bool:
        with self._session() as db:
            result = db.execute(
                delete(CollectionMember).where(
                    CollectionMember.collection_id == as_uuid(collection_id),
                    CollectionMember.link_id == as_uuid(link_id),
                )
            )
            return result.rowcount > 0
