"""
Bidirectional Link <-> Collection Membership

Membership is stored on both sides: the link's collection references and
each collection's member list. Every mutation goes through this service so
the two stay symmetric. A half-applied update raises
MembershipInconsistency; `resync_membership` repairs it, treating the
link side as the source of truth.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Set
from uuid import UUID

from linkly.database.repository import (
    CollectionRepository,
    IdLike,
    LinkRepository,
    _try_uuid,
    as_uuid,
)
from linkly.errors import (
    CollectionNotFound,
    LinkNotFound,
    MembershipInconsistency,
    SystemCollectionMutation,
)

logger = logging.getLogger(__name__)


@dataclass
class MembershipDrift:
    """Difference between the two sides of one link's membership."""
    link_id: UUID
    # Referenced by the link, but the collection does not list it
    missing_on_collection_side: Set[UUID] = field(default_factory=set)
    # Listed by a collection, but the link does not reference it
    missing_on_link_side: Set[UUID] = field(default_factory=set)

    @property
    def consistent(self) -> bool:
        return not self.missing_on_collection_side and not self.missing_on_link_side


class MembershipService:
    """Keeps link references and collection members symmetric."""

    def __init__(self, links: LinkRepository, collections: CollectionRepository):
        self.links = links
        self.collections = collections

    def _require_link(self, link_id: IdLike) -> dict:
        link = self.links.get_by_id(link_id)
        if link is None:
            raise LinkNotFound(str(link_id))
        return link

    def set_membership(self, link_id: IdLike, collection_ids: Iterable[IdLike]) -> Set[UUID]:
        """
        Replace the user-chosen collections of a link.

        System collections are filed by analysis only: they may not appear
        in `collection_ids`, and the link's current system memberships are
        kept as they are.

        Returns:
            The link's full reference set after the update

        Raises:
            LinkNotFound, CollectionNotFound, SystemCollectionMutation
            MembershipInconsistency: one side applied and the other did not
        """
        link = self._require_link(link_id)
        uid = link["id"]

        requested: Set[UUID] = set()
        for cid in collection_ids:
            parsed = _try_uuid(cid)
            if parsed is None:
                raise CollectionNotFound(str(cid))
            requested.add(parsed)

        found = self.collections.get_many(requested)
        for cid in requested:
            collection = found.get(cid)
            if collection is None or collection["owner_id"] != link["owner_id"]:
                raise CollectionNotFound(str(cid))
            if collection["is_system"]:
                raise SystemCollectionMutation(
                    f"Collection {cid} is a system collection and is filed automatically"
                )

        current_refs = set(link.get("collection_ids") or [])
        containing = self.collections.find_collections_containing(uid)
        known = self.collections.get_many(current_refs | containing)
        system_ids = {cid for cid, c in known.items() if c["is_system"]}

        target = requested | (current_refs & system_ids)
        to_add = target - containing
        to_remove = (containing - target) - system_ids

        errors: List[str] = []

        link_side_ok = True
        try:
            self.links.replace_collection_refs(uid, target)
        except Exception as e:
            link_side_ok = False
            errors.append(f"link references: {e}")

        collection_side_ok = True
        for cid in to_add:
            try:
                self.collections.add_member(cid, uid)
            except Exception as e:
                collection_side_ok = False
                errors.append(f"add to {cid}: {e}")
        for cid in to_remove:
            try:
                self.collections.remove_member(cid, uid)
            except Exception as e:
                collection_side_ok = False
                errors.append(f"remove from {cid}: {e}")

        if errors:
            logger.error(f"Membership update for link {uid} half-applied: {errors}")
            raise MembershipInconsistency(str(uid), link_side_ok, collection_side_ok, errors)

        logger.info(
            f"Link {uid} membership set: +{len(to_add)} -{len(to_remove)}, "
            f"{len(target)} collections"
        )
        return target

    def attach(self, link_id: IdLike, collection_id: IdLike) -> bool:
        """
        Add one link to one collection on both sides.

        Returns True when either side changed.
        """
        uid, cid = as_uuid(link_id), as_uuid(collection_id)
        errors: List[str] = []
        changed = False

        link_side_ok = True
        try:
            changed = self.links.add_collection_ref(uid, cid) or changed
        except Exception as e:
            link_side_ok = False
            errors.append(f"link reference: {e}")

        collection_side_ok = True
        try:
            changed = self.collections.add_member(cid, uid) or changed
        except Exception as e:
            collection_side_ok = False
            errors.append(f"collection member: {e}")

        if errors:
            logger.error(f"Attaching link {uid} to {cid} half-applied: {errors}")
            raise MembershipInconsistency(str(uid), link_side_ok, collection_side_ok, errors)

        return changed

    def detach(self, link_id: IdLike, collection_id: IdLike) -> bool:
        """
        Remove one link from one collection on both sides.

        Returns True when either side changed.
        """
        uid, cid = as_uuid(link_id), as_uuid(collection_id)
        errors: List[str] = []
        changed = False

        collection_side_ok = True
        try:
            changed = self.collections.remove_member(cid, uid) or changed
        except Exception as e:
            collection_side_ok = False
            errors.append(f"collection member: {e}")

        link_side_ok = True
        try:
            changed = self.links.remove_collection_ref(uid, cid) or changed
        except Exception as e:
            link_side_ok = False
            errors.append(f"link reference: {e}")

        if errors:
            logger.error(f"Detaching link {uid} from {cid} half-applied: {errors}")
            raise MembershipInconsistency(str(uid), link_side_ok, collection_side_ok, errors)

        return changed

    def detach_all(self, link_id: IdLike) -> Set[UUID]:
        """Remove a link from every collection, both sides. Used before deletion."""
        uid = as_uuid(link_id)
        held = self.links.get_collection_ids(uid) | self.collections.find_collections_containing(uid)

        errors: List[str] = []
        collection_side_ok = True
        for cid in held:
            try:
                self.collections.remove_member(cid, uid)
            except Exception as e:
                collection_side_ok = False
                errors.append(f"remove from {cid}: {e}")

        link_side_ok = True
        try:
            self.links.replace_collection_refs(uid, [])
        except Exception as e:
            link_side_ok = False
            errors.append(f"link references: {e}")

        if errors:
            logger.error(f"Detaching link {uid} half-applied: {errors}")
            raise MembershipInconsistency(str(uid), link_side_ok, collection_side_ok, errors)

        return held

    def verify_membership(self, link_id: IdLike) -> MembershipDrift:
        uid = as_uuid(link_id)
        refs = self.links.get_collection_ids(uid)
        containing = self.collections.find_collections_containing(uid)
        return MembershipDrift(
            link_id=uid,
            missing_on_collection_side=refs - containing,
            missing_on_link_side=containing - refs,
        )

    def resync_membership(self, link_id: IdLike) -> MembershipDrift:
        """
        Compensating pass: make the collection side match the link side.

        References to collections that no longer exist are dropped.
        Returns the drift that was repaired.
        """
        drift = self.verify_membership(link_id)
        if drift.consistent:
            return drift

        existing = self.collections.get_many(drift.missing_on_collection_side)
        for cid in drift.missing_on_collection_side:
            if cid in existing:
                self.collections.add_member(cid, drift.link_id)
            else:
                self.links.remove_collection_ref(drift.link_id, cid)

        for cid in drift.missing_on_link_side:
            self.collections.remove_member(cid, drift.link_id)

        logger.warning(
            f"Resynced membership of link {drift.link_id}: "
            f"{len(drift.missing_on_collection_side)} added to collections, "
            f"{len(drift.missing_on_link_side)} stale members removed"
        )
        return drift
