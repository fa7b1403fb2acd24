# tests/conftest.py
import os

# Must be set before database.db / api.dependencies.auth are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("NEXTAUTH_SECRET", "test-secret")
os.environ.setdefault("JOB_QUEUE_BACKEND", "memory")
os.environ.setdefault("RUN_JOB_WORKERS", "false")

import pytest
from sqlalchemy.orm import sessionmaker

from database.db import init_db, make_engine
from database.models.article_model import Article
from database.models.project_model import ProjectArticle


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def session_factory(db):
    # Workers close their session when done; handing them the test session
    # keeps everything on the single in-memory connection.
    return lambda: db


@pytest.fixture
def make_article(db):
    def _make(project_id=None, status="candidate", **fields):
        fields.setdefault("title", "Untitled")
        article = Article(**fields)
        db.add(article)
        db.flush()
        if project_id:
            db.add(ProjectArticle(project_id=project_id, article_id=article.id, status=status))
        db.commit()
        return article.id

    return _make
