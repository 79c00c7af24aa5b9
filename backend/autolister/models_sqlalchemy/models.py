import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

from autolister.models_sqlalchemy import Base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# Job statuses that count as "active" for the one-job-per-key rule.
ACTIVE_JOB_STATUSES = ("pending", "processing")


class CategoryAspectRequirement(Base):
    """Aspect names eBay expects for a leaf category.

    Rows are populated from the Taxonomy API ``get_item_aspects_for_category``
    response the first time a category is seen and are only replaced by an
    explicit re-sync.
    """

    __tablename__ = "ebay_category_aspects"
    __table_args__ = (
        UniqueConstraint("category_id", "aspect_name", name="uq_ebay_category_aspects_category_aspect"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(String(32), nullable=False, index=True)
    aspect_name = Column(String(255), nullable=False)
    required = Column(Boolean, nullable=False, default=False)
    # FREE_TEXT or SELECTION_ONLY
    aspect_mode = Column(String(32), nullable=True)
    allowed_values = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)


class AspectKeyword(Base):
    """Learned keyword pattern mapping a title match to an aspect value.

    ``category_id`` NULL means the pattern applies to every category. Rows are
    insert-only; a duplicate (aspect, pattern, category) is silently ignored.
    """

    __tablename__ = "ebay_aspect_keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    aspect_name = Column(String(255), nullable=False, index=True)
    keyword_pattern = Column(Text, nullable=False)
    aspect_value = Column(String(255), nullable=False)
    category_id = Column(String(32), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now, server_default=func.now())


Index(
    "uq_ebay_aspect_keywords_pattern",
    AspectKeyword.aspect_name,
    AspectKeyword.keyword_pattern,
    func.coalesce(AspectKeyword.category_id, ""),
    unique=True,
)


class AspectMiss(Base):
    """Required aspect that could not be resolved while building a listing."""

    __tablename__ = "ebay_aspect_misses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asin = Column(String(32), nullable=False, index=True)
    category_id = Column(String(32), nullable=True)
    category_name = Column(String(255), nullable=True)
    aspect_name = Column(String(255), nullable=False)
    product_title = Column(Text, nullable=True)
    keepa_brand = Column(String(255), nullable=True)
    keepa_model = Column(String(255), nullable=True)

    status = Column(String(32), nullable=False, default="pending", index=True)  # pending, processed, review_needed
    suggested_value = Column(String(255), nullable=True)
    suggested_pattern = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)


class CorrelationJob(Base):
    """Background correlation-discovery run for one (user, product) pair."""

    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    search_key = Column("search_asin", String(32), nullable=False)

    status = Column(String(32), nullable=False, default="pending")  # pending, processing, complete, error
    total_count = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    approved_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)


# At most one active job per (user, product). The dedup read in the job
# manager handles the common case; this index rejects the concurrent loser.
Index(
    "uq_import_jobs_active_per_key",
    CorrelationJob.user_id,
    CorrelationJob.search_key,
    unique=True,
    postgresql_where=CorrelationJob.status.in_(ACTIVE_JOB_STATUSES),
    sqlite_where=CorrelationJob.status.in_(ACTIVE_JOB_STATUSES),
)


class CorrelationResult(Base):
    """Related product found by a correlation job, awaiting a human decision."""

    __tablename__ = "asin_correlations"
    __table_args__ = (
        UniqueConstraint("user_id", "search_asin", "similar_asin", name="uq_asin_correlations_user_pair"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    search_key = Column("search_asin", String(32), nullable=False, index=True)
    candidate_key = Column("similar_asin", String(32), nullable=False)
    candidate_title = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    search_image_url = Column(Text, nullable=True)
    candidate_url = Column(Text, nullable=True)
    # variation (auto-approved) or similar (approved by inference)
    source = Column(String(32), nullable=True)

    decision = Column(String(16), nullable=True)  # accepted, declined
    decline_reason = Column(Text, nullable=True)
    decision_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now)
