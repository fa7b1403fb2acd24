# database/models/article_model.py
import uuid
from sqlalchemy import Column, Integer, String, Text, JSON, Boolean, DateTime, ForeignKey, func
from database.db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Article(Base):
    __tablename__ = "articles"

    id = Column(String(36), primary_key=True, default=_new_id)

    # Canonical identifiers. Either may be missing, never duplicated.
    pmid = Column(String(32), unique=True, index=True, nullable=True)
    doi = Column(String(255), unique=True, index=True, nullable=True)

    # Core metadata
    title = Column(Text, nullable=False)
    abstract = Column(Text, nullable=True)
    authors = Column(JSON, default=lambda: [])
    year = Column(Integer, nullable=True)
    journal = Column(String(512), nullable=True)
    url = Column(String(1024), nullable=True)
    source = Column(String(64), nullable=False, default="pubmed")

    # Derived statistics signal
    has_stats = Column(Boolean, nullable=False, default=False)
    stats_json = Column(JSON(none_as_null=True), nullable=True)
    stats_quality = Column(Integer, nullable=False, default=0)

    # Grown by union on every resolution, never shrunk
    publication_types = Column(JSON, default=lambda: [])

    raw_payload = Column(JSON(none_as_null=True), nullable=True)

    # Bibliographic neighborhood
    reference_pmids = Column(JSON(none_as_null=True), nullable=True)
    cited_by_pmids = Column(JSON(none_as_null=True), nullable=True)
    reference_dois = Column(JSON(none_as_null=True), nullable=True)
    citation_count = Column(Integer, nullable=True)
    references_fetched_at = Column(DateTime(timezone=True), nullable=True)

    title_translated = Column(Text, nullable=True)
    abstract_translated = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ArticleEmbedding(Base):
    __tablename__ = "article_embeddings"

    article_id = Column(String(36), ForeignKey("articles.id", ondelete="CASCADE"), primary_key=True)
    embedding = Column(JSON, nullable=False)
    model = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
