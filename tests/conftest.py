import pytest

import app.db.models  # noqa: F401  registers tables on Base.metadata
from app.db.database import Base, build_engine, build_session_factory
from app.db.review_store import ReviewStore


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'reviews.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return ReviewStore(session_factory)


@pytest.fixture
def pr_payload():
    def _build(action="opened", number=12, repo="acme/widgets", installation_id=77):
        return {
            "action": action,
            "number": number,
            "pull_request": {
                "number": number,
                "title": "Add widget endpoint",
                "state": "closed" if action == "closed" else "open",
                "html_url": f"https://github.com/{repo}/pull/{number}",
                "user": {"login": "octocat", "id": 1},
                "head": {"sha": "a" * 40, "ref": "feature"},
                "base": {"sha": "b" * 40, "ref": "main"},
                "changed_files": 2,
                "additions": 3,
                "deletions": 0,
            },
            "repository": {"id": 501, "name": repo.split("/")[1], "full_name": repo, "private": False},
            "installation": {"id": installation_id},
            "sender": {"login": "octocat", "id": 1},
        }

    return _build


@pytest.fixture
def installation_payload():
    def _build(action="created", installation_id=77, repositories=None):
        return {
            "action": action,
            "installation": {
                "id": installation_id,
                "account": {"login": "acme", "id": 9, "type": "Organization"},
            },
            "repositories": repositories
            if repositories is not None
            else [
                {"id": 501, "name": "widgets", "full_name": "acme/widgets", "private": False},
                {"id": 502, "name": "gadgets", "full_name": "acme/gadgets", "private": True},
            ],
        }

    return _build
