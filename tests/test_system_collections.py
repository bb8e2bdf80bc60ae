"""
Tests for system collections and auto-filing.
"""

import pytest

from linkly.analyzer.schemas import CATEGORIES
from linkly.services.system_collections import category_color, category_description

OWNER = "owner-1"


class TestCreateSystemCollections:

    def test_one_per_category(self, system_collections, collection_repo):
        created = system_collections.create_system_collections(OWNER)

        assert len(created) == len(CATEGORIES) == 11
        assert {c["system_category"] for c in created} == set(CATEGORIES)
        assert all(c["is_system"] for c in created)

    def test_idempotent(self, system_collections, collection_repo):
        system_collections.create_system_collections(OWNER)
        assert system_collections.create_system_collections(OWNER) == []
        assert len(collection_repo.find_by_owner(OWNER)) == 11

    def test_color_and_description(self, system_collections):
        system_collections.create_system_collections(OWNER)
        news = system_collections.get_system_collection(OWNER, "News/Current Affairs")

        assert news["color"] == category_color("News/Current Affairs") == "#EF4444"
        assert news["description"] == category_description("News/Current Affairs")
        assert news["description"] == "Automatically organized news/current affairs content"

    def test_name_clash_gets_auto_suffix(self, system_collections, collection_repo):
        collection_repo.create(OWNER, "Other")

        system_collections.create_system_collections(OWNER)

        other = system_collections.get_system_collection(OWNER, "Other")
        assert other["name"] == "Other (Auto)"
        assert other["is_system"]

    def test_owners_are_isolated(self, system_collections, collection_repo):
        system_collections.create_system_collections(OWNER)
        assert collection_repo.find_by_owner("owner-2") == []


class TestAssign:

    @pytest.fixture
    def link(self, link_repo):
        return link_repo.create(OWNER, "sys01", "https://example.com/docs")

    def test_creates_collections_on_first_assignment(self, system_collections, collection_repo, link, link_repo):
        collection_id = system_collections.assign_link_to_system_collection(
            OWNER, link["id"], "Documentation/Reference"
        )

        docs = system_collections.get_system_collection(OWNER, "Documentation/Reference")
        assert collection_id == docs["id"]
        assert len(collection_repo.find_by_owner(OWNER)) == 11
        assert link_repo.get_collection_ids(link["id"]) == {docs["id"]}
        assert collection_repo.get_member_ids(docs["id"]) == {link["id"]}

    def test_unknown_category_files_as_other(self, system_collections, link):
        collection_id = system_collections.assign_link_to_system_collection(OWNER, link["id"], "Recipes")
        assert collection_id == system_collections.get_system_collection(OWNER, "Other")["id"]

    def test_repeat_assignment(self, system_collections, collection_repo, link):
        first = system_collections.assign_link_to_system_collection(OWNER, link["id"], "Other")
        second = system_collections.assign_link_to_system_collection(OWNER, link["id"], "Other")

        assert first == second
        assert collection_repo.get_member_ids(first) == {link["id"]}

    def test_new_category_moves_link(self, system_collections, collection_repo, link, link_repo):
        docs = system_collections.assign_link_to_system_collection(OWNER, link["id"], "Documentation/Reference")
        other = system_collections.assign_link_to_system_collection(OWNER, link["id"], "Other")

        assert link_repo.get_collection_ids(link["id"]) == {other}
        assert collection_repo.get_member_ids(other) == {link["id"]}
        assert collection_repo.get_member_ids(docs) == set()
        assert collection_repo.find_collections_containing(link["id"]) == {other}

    def test_user_collections_survive_recategorization(
        self, system_collections, collection_repo, membership, link, link_repo
    ):
        reading = collection_repo.create(OWNER, "Reading list")
        membership.attach(link["id"], reading["id"])

        system_collections.assign_link_to_system_collection(OWNER, link["id"], "Documentation/Reference")
        other = system_collections.assign_link_to_system_collection(OWNER, link["id"], "Other")

        assert link_repo.get_collection_ids(link["id"]) == {reading["id"], other}
        assert collection_repo.get_member_ids(reading["id"]) == {link["id"]}


class TestBackfillAndTags:

    def test_backfill_covers_every_owner(self, system_collections, link_repo, collection_repo):
        link_repo.create("owner-a", "bf001", "https://example.com/1")
        link_repo.create("owner-b", "bf002", "https://example.com/2")
        system_collections.create_system_collections("owner-a")

        stats = system_collections.backfill_system_collections()

        assert stats == {"owners": 2, "owners_updated": 1, "collections_created": 11}
        assert len(collection_repo.find_by_owner("owner-b")) == 11

    def test_owner_tags_are_merged(self, system_collections, link_repo):
        assert system_collections.add_link_tags_to_owner(OWNER, ["python", "web"]) == 2
        assert system_collections.add_link_tags_to_owner(OWNER, ["web", " rust ", ""]) == 1
        assert link_repo.get_owner_tags(OWNER) == ["python", "rust", "web"]
