# database/models/project_model.py
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint, func
from database.db import Base


class ArticleStatus(str, enum.Enum):
    CANDIDATE = "candidate"
    SELECTED = "selected"
    EXCLUDED = "excluded"
    DELETED = "deleted"


class ProjectArticle(Base):
    __tablename__ = "project_articles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    project_id = Column(String(64), nullable=False, index=True)
    article_id = Column(String(36), ForeignKey("articles.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String(32), nullable=False, default=ArticleStatus.CANDIDATE.value)

    # Provenance: the query or job that introduced the article
    source_query = Column(Text, nullable=True)
    added_by = Column(String(255), nullable=True)

    added_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("project_id", "article_id", name="uq_project_article"),
    )
