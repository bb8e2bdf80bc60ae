"""
Link Lifecycle

Creation, edits and deletion of links, and the hook that schedules
content analysis. Every mutation of a redirect-relevant field drops the
cached projection after the repository write commits.
"""

import asyncio
import logging
import re
import secrets
import string
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError

from linkly.cache.invalidation import CacheEvent, LinkCacheInvalidator
from linkly.database.models import AnalysisStatus
from linkly.database.repository import IdLike, LinkRepository
from linkly.errors import DuplicateLink, InvalidDestination, LinkNotFound
from linkly.jobs.queue import Job, RedisJobQueue
from .membership import MembershipService

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.digits + string.ascii_lowercase
CUSTOM_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{3,64}$")
MAX_CODE_ATTEMPTS = 10


def validate_destination(destination: str) -> str:
    """Return the trimmed destination, or raise InvalidDestination."""
    destination = (destination or "").strip()
    if not destination.startswith(("http://", "https://")):
        raise InvalidDestination("URL must start with 'http://' or 'https://'")
    if not urlparse(destination).netloc:
        raise InvalidDestination(f"URL has no host: {destination}")
    return destination


def generate_code(length: int = 5) -> str:
    """Random lowercase base-36 short code."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class LinkService:
    """Owner-facing link operations."""

    def __init__(
        self,
        links: LinkRepository,
        membership: MembershipService,
        queue: RedisJobQueue,
        invalidator: LinkCacheInvalidator,
        code_length: int = 5,
    ):
        self.links = links
        self.membership = membership
        self.queue = queue
        self.invalidator = invalidator
        self.code_length = code_length

    async def _get_owned(self, owner_id: str, link_id: IdLike) -> Dict[str, Any]:
        link = await asyncio.to_thread(self.links.get_by_id, link_id)
        if link is None or link["owner_id"] != str(owner_id):
            raise LinkNotFound(str(link_id))
        return link

    async def create_link(self, owner_id: str, destination: str) -> Dict[str, Any]:
        """
        Shorten a destination for an owner and schedule its analysis.

        Raises:
            InvalidDestination: not an http(s) URL
            DuplicateLink: owner already shortened this destination
        """
        destination = validate_destination(destination)

        existing = await asyncio.to_thread(
            self.links.find_by_owner_and_destination, owner_id, destination
        )
        if existing is not None:
            raise DuplicateLink(f"Link already exists: {existing['code']}")

        link = None
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_code(self.code_length)
            if await asyncio.to_thread(self.links.code_exists, code):
                continue
            try:
                link = await asyncio.to_thread(self.links.create, owner_id, code, destination)
                break
            except IntegrityError:
                # Lost the code to a concurrent create
                logger.debug(f"Short code {code} taken concurrently, retrying")

        if link is None:
            raise DuplicateLink(f"Could not allocate a free short code of length {self.code_length}")

        await self.on_link_created_or_edited(link["id"])
        return link

    async def on_link_created_or_edited(self, link_id: IdLike) -> Job:
        """Schedule content analysis for a link."""
        return await self.queue.enqueue_analysis(link_id)

    async def edit_destination(self, owner_id: str, link_id: IdLike, destination: str) -> Dict[str, Any]:
        """Point a link somewhere else; analysis restarts from PENDING."""
        link = await self._get_owned(owner_id, link_id)
        destination = validate_destination(destination)

        if destination == link["destination"]:
            return link

        clash = await asyncio.to_thread(
            self.links.find_by_owner_and_destination, owner_id, destination
        )
        if clash is not None and clash["id"] != link["id"]:
            raise DuplicateLink(f"Link already exists: {clash['code']}")

        await asyncio.to_thread(
            self.links.update_fields,
            link["id"],
            {
                "destination": destination,
                "analysis_status": AnalysisStatus.PENDING,
                "analysis_error": None,
            },
        )
        await self.invalidator.handle_event(CacheEvent.LINK_EDITED, code=link["code"])
        await self.on_link_created_or_edited(link["id"])

        logger.info(f"Link {link['id']} destination changed, analysis rescheduled")
        return await self._get_owned(owner_id, link["id"])

    async def change_short_code(self, owner_id: str, link_id: IdLike, new_code: str) -> Dict[str, Any]:
        """Rename a link's short code. The old code stops resolving."""
        link = await self._get_owned(owner_id, link_id)
        new_code = (new_code or "").strip()

        if not CUSTOM_CODE_RE.match(new_code):
            raise ValueError("Short code must be 3-64 letters, digits, '-' or '_'")
        if new_code == link["code"]:
            return link
        if await asyncio.to_thread(self.links.code_exists, new_code):
            raise DuplicateLink(f"Short code already in use: {new_code}")

        try:
            await asyncio.to_thread(self.links.update_fields, link["id"], {"code": new_code})
        except IntegrityError as e:
            raise DuplicateLink(f"Short code already in use: {new_code}") from e

        await self.invalidator.handle_event(
            CacheEvent.LINK_CODE_CHANGED, codes=[link["code"], new_code]
        )
        logger.info(f"Link {link['id']} code changed {link['code']} -> {new_code}")
        return await self._get_owned(owner_id, link["id"])

    async def delete_link(self, owner_id: str, link_id: IdLike) -> bool:
        """Delete a link, its memberships and its cached projection."""
        link = await self._get_owned(owner_id, link_id)

        await asyncio.to_thread(self.membership.detach_all, link["id"])
        deleted = await asyncio.to_thread(self.links.delete, link["id"])
        await self.invalidator.handle_event(CacheEvent.LINK_DELETED, code=link["code"])

        return deleted

    async def get_link(self, owner_id: str, link_id: IdLike) -> Dict[str, Any]:
        return await self._get_owned(owner_id, link_id)

    async def list_links(self, owner_id: str) -> List[Dict[str, Any]]:
        """Owner's links, newest first."""
        return await asyncio.to_thread(self.links.find_by_owner, owner_id)
