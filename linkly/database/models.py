"""
SQLAlchemy Models for the Linkly Link Core

Design Principles:
1. A Link is a normalized row with an atomic hit counter
2. Analysis results live on the Link they describe
3. Membership is stored on both sides (link references, collection members)
   and kept symmetric by the membership service
4. System collections are ordinary collections flagged with their category
"""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Enum, Index, CheckConstraint, UniqueConstraint,
    JSON, Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# =============================================================================
# ENUMS
# =============================================================================

class AnalysisStatus(enum.Enum):
    """Status of a link's content analysis"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# =============================================================================
# CORE TABLES
# =============================================================================

class Link(Base):
    """Short link with its destination, hit counter and analysis results"""
    __tablename__ = "links"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), unique=True, nullable=False, index=True)
    destination = Column(Text, nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)

    hit_count = Column(Integer, nullable=False, default=0)

    # Analysis results
    analysis_status = Column(
        Enum(AnalysisStatus), nullable=False, default=AnalysisStatus.PENDING
    )
    summary = Column(Text, nullable=True)
    tags = Column(JSON, default=list)
    safety_rating = Column(Integer, nullable=True)
    safety_justification = Column(Text, nullable=True)
    category = Column(String(64), nullable=False, default="Other")
    category_confidence = Column(Float, nullable=False, default=0.0)
    category_reason = Column(Text, nullable=True)
    analysis_error = Column(Text, nullable=True)
    analyzed_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    collection_refs = relationship(
        "LinkCollectionRef", back_populates="link", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("hit_count >= 0", name="ck_links_hit_count_non_negative"),
        CheckConstraint(
            "safety_rating IS NULL OR (safety_rating >= 1 AND safety_rating <= 5)",
            name="ck_links_safety_rating_range",
        ),
        Index("ix_links_owner_created", "owner_id", "created_at"),
    )


class Collection(Base):
    """User-created or system-generated grouping of links"""
    __tablename__ = "collections"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), default="")
    color = Column(String(7), default="#144EE3")

    is_system = Column(Boolean, nullable=False, default=False)
    system_category = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship(
        "CollectionMember", back_populates="collection", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_collections_owner_name"),
        Index("ix_collections_owner_system", "owner_id", "is_system", "system_category"),
    )


class LinkCollectionRef(Base):
    """Link side of membership: the collections a link says it belongs to"""
    __tablename__ = "link_collection_refs"

    link_id = Column(
        Uuid(as_uuid=True), ForeignKey("links.id", ondelete="CASCADE"), primary_key=True
    )
    collection_id = Column(Uuid(as_uuid=True), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    link = relationship("Link", back_populates="collection_refs")


class CollectionMember(Base):
    """Collection side of membership: the links a collection lists"""
    __tablename__ = "collection_members"

    collection_id = Column(
        Uuid(as_uuid=True), ForeignKey("collections.id", ondelete="CASCADE"), primary_key=True
    )
    link_id = Column(Uuid(as_uuid=True), primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    collection = relationship("Collection", back_populates="members")


class OwnerTag(Base):
    """Tag vocabulary accumulated from an owner's analyzed links"""
    __tablename__ = "owner_tags"

    owner_id = Column(String(64), primary_key=True)
    tag = Column(String(100), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow)
