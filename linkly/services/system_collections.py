"""
System Collections

One auto-maintained collection per classification category, per owner.
Analysis files each link into the collection matching its category.
"""

import logging
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from linkly.analyzer.schemas import CATEGORIES, FALLBACK_CATEGORY, normalize_category
from linkly.database.repository import CollectionRepository, IdLike, LinkRepository
from linkly.errors import CollectionNotFound, DuplicateCollectionName
from .membership import MembershipService

logger = logging.getLogger(__name__)

CATEGORY_COLORS: Dict[str, str] = {
    "Programming/Tech Blog": "#3B82F6",
    "Documentation/Reference": "#10B981",
    "Research/Academic": "#8B5CF6",
    "News/Current Affairs": "#EF4444",
    "Learning/Education": "#F59E0B",
    "Product/Service Page": "#06B6D4",
    "E-commerce/Marketplace": "#84CC16",
    "Social Media/Forum": "#EC4899",
    "Entertainment/Media": "#F97316",
    "Scam/Phishing/Unsafe": "#DC2626",
    "Other": "#6B7280",
}
DEFAULT_COLOR = "#6B7280"


def category_color(category: str) -> str:
    return CATEGORY_COLORS.get(category, DEFAULT_COLOR)


def category_description(category: str) -> str:
    return f"Automatically organized {category.lower()} content"


class SystemCollectionService:
    """Creates system collections and files analyzed links into them."""

    def __init__(
        self,
        links: LinkRepository,
        collections: CollectionRepository,
        membership: Optional[MembershipService] = None,
    ):
        self.links = links
        self.collections = collections
        self.membership = membership or MembershipService(links, collections)

    def create_system_collections(self, owner_id: str) -> List[dict]:
        """
        Create any missing category collection for an owner.

        Idempotent. If the owner already has a user collection named after
        a category, the system one is created as "<category> (Auto)".
        """
        existing = self.collections.system_categories_for_owner(owner_id)
        created = []

        for category in CATEGORIES:
            if category in existing:
                continue
            collection = self._create_one(owner_id, category)
            if collection is not None:
                created.append(collection)

        if created:
            logger.info(f"Created {len(created)} system collections for owner {owner_id}")
        return created

    def _create_one(self, owner_id: str, category: str) -> Optional[dict]:
        for name in (category, f"{category} (Auto)"):
            try:
                return self.collections.create(
                    owner_id,
                    name,
                    description=category_description(category),
                    color=category_color(category),
                    is_system=True,
                    system_category=category,
                )
            except DuplicateCollectionName:
                logger.warning(f"Owner {owner_id} already has a collection named '{name}'")
        return None

    def get_system_collection(self, owner_id: str, category: str) -> Optional[dict]:
        return self.collections.find_system_collection(owner_id, normalize_category(category))

    def assign_link_to_system_collection(self, owner_id: str, link_id: IdLike, category: str) -> UUID:
        """
        File a link into the owner's system collection for `category`.

        Unknown categories file into Other. Missing system collections are
        created on the way. A link sits in at most one system collection, so
        a re-analysis into a new category moves it. Safe to repeat.

        Returns:
            The system collection id
        """
        category = normalize_category(category)
        collection = self.collections.find_system_collection(owner_id, category)

        if collection is None:
            self.create_system_collections(owner_id)
            collection = self.collections.find_system_collection(owner_id, category)
            if collection is None:
                raise CollectionNotFound(f"system:{owner_id}:{category}")

        for stale_id in self._other_system_collections(owner_id, link_id, collection["id"]):
            if self.membership.detach(link_id, stale_id):
                logger.info(f"Removed link {link_id} from stale system collection {stale_id}")

        if self.membership.attach(link_id, collection["id"]):
            logger.info(f"Filed link {link_id} into system collection {category}")

        return collection["id"]

    def _other_system_collections(self, owner_id: str, link_id: IdLike, keep_id: UUID) -> List[UUID]:
        """System collections of the owner holding the link on either side, except `keep_id`."""
        held = (
            self.links.get_collection_ids(link_id)
            | self.collections.find_collections_containing(link_id)
        )
        held.discard(keep_id)
        found = self.collections.get_many(held)
        return [
            cid for cid, c in found.items()
            if c["is_system"] and c["owner_id"] == owner_id
        ]

    def add_link_tags_to_owner(self, owner_id: str, tags: Iterable[str]) -> int:
        """Merge a link's tags into the owner's tag vocabulary."""
        added = self.links.add_owner_tags(owner_id, tags)
        if added:
            logger.debug(f"Added {added} tags to owner {owner_id}")
        return added

    def backfill_system_collections(self) -> Dict[str, int]:
        """Ensure every owner with links has the full set of system collections."""
        owners = self.links.list_owner_ids()
        stats = {"owners": len(owners), "owners_updated": 0, "collections_created": 0}

        for owner_id in owners:
            created = self.create_system_collections(owner_id)
            if created:
                stats["owners_updated"] += 1
                stats["collections_created"] += len(created)

        logger.info(
            f"Backfill complete: {stats['collections_created']} collections "
            f"for {stats['owners_updated']}/{stats['owners']} owners"
        )
        return stats


__all__ = [
    "CATEGORY_COLORS",
    "FALLBACK_CATEGORY",
    "SystemCollectionService",
    "category_color",
    "category_description",
]
