"""Transactional writes behind the review lifecycle.

The relational store is the only concurrency control: the upsert keyed on
(pr_number, repo_full_name), row locks on the review when writing derived
rows, and compare-and-swap status updates. Nothing here holds in-process locks.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import (
    ACTIVE_STATUSES,
    FileChange,
    Installation,
    Repository,
    Review,
    ReviewComment,
    utcnow,
)
from app.models.events import RepositoryRef
from app.models.schemas import CancelledProgress, FileAnalysis, QueuedProgress, ReviewProgress
from app.services.service_errors import ServiceError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"in_progress", "failed", "cancelled"}),
    "in_progress": frozenset({"in_progress", "completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def allowed_sources(target: str) -> List[str]:
    return sorted(source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def upsert(db: Session, model: Any, values: Dict[str, Any], conflict_on: Sequence[str], update_columns: Sequence[str]) -> None:
    dialect = db.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = insert_fn(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_on),
            set_={column: stmt.excluded[column] for column in update_columns},
        )
    elif dialect in ("mysql", "mariadb"):
        stmt = mysql_insert(model).values(**values)
        stmt = stmt.on_duplicate_key_update({column: stmt.inserted[column] for column in update_columns})
    else:
        raise ServiceError(f"Upsert is not supported on {dialect}", code="unsupported_dialect")
    db.execute(stmt)


@dataclass(frozen=True)
class QueuedReview:
    review_id: int
    run_id: str


@dataclass(frozen=True)
class RemovedInstallation:
    review_ids: List[int]
    repositories_removed: int
    installations_removed: int


class ReviewStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def queue_review(
        self,
        pr_number: int,
        repo_full_name: str,
        installation_id: int,
        metadata: QueuedProgress,
    ) -> QueuedReview:
        """Upsert the review to pending and discard the previous run's rows in one transaction."""
        run_id = uuid.uuid4().hex
        now = utcnow()
        values = {
            "pr_number": pr_number,
            "repo_full_name": repo_full_name,
            "installation_id": installation_id,
            "status": "pending",
            "run_id": run_id,
            "review_data": metadata.model_dump(),
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
        }
        with self.session_factory() as db, db.begin():
            upsert(
                db,
                Review,
                values,
                conflict_on=("pr_number", "repo_full_name"),
                update_columns=(
                    "installation_id",
                    "status",
                    "run_id",
                    "review_data",
                    "created_at",
                    "updated_at",
                    "completed_at",
                ),
            )
            review_id = db.scalar(
                select(Review.id).where(Review.pr_number == pr_number, Review.repo_full_name == repo_full_name)
            )
            db.execute(delete(ReviewComment).where(ReviewComment.review_id == review_id))
            db.execute(delete(FileChange).where(FileChange.review_id == review_id))
        return QueuedReview(review_id=review_id, run_id=run_id)

    def transition(
        self,
        review_id: int,
        target: str,
        progress: ReviewProgress,
        run_id: Optional[str] = None,
    ) -> bool:
        """Compare-and-swap the status; returns False when the guard rejects the write."""
        now = utcnow()
        with self.session_factory() as db, db.begin():
            current = db.scalar(select(Review.review_data).where(Review.id == review_id))
            if current is None:
                return False
            values: Dict[str, Any] = {
                "status": target,
                "review_data": {**current, **progress.model_dump(exclude_none=True)},
                "updated_at": now,
            }
            if target == "completed":
                values["completed_at"] = now
            stmt = update(Review).where(Review.id == review_id, Review.status.in_(allowed_sources(target)))
            if run_id is not None:
                stmt = stmt.where(Review.run_id == run_id)
            result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
            return result.rowcount == 1

    def record_file_analysis(
        self,
        review_id: int,
        run_id: str,
        file_status: str,
        analysis: FileAnalysis,
        complexity_score: int = 0,
    ) -> bool:
        """Persist one file's analysis unless the run was superseded or the review closed."""
        with self.session_factory() as db, db.begin():
            row = db.execute(
                select(Review.run_id, Review.status).where(Review.id == review_id).with_for_update()
            ).first()
            if row is None or row.run_id != run_id or row.status not in ACTIVE_STATUSES:
                return False
            db.add(
                FileChange(
                    review_id=review_id,
                    filename=analysis.filename,
                    status=file_status,
                    language=analysis.language,
                    additions=analysis.additions,
                    deletions=analysis.deletions,
                    patch=analysis.patch,
                    analyzed=True,
                    should_review=analysis.should_review,
                    complexity_score=complexity_score,
                )
            )
            db.add_all(
                [
                    ReviewComment(
                        review_id=review_id,
                        filename=analysis.filename,
                        line_number=issue.line,
                        severity=issue.severity,
                        issue_type=issue.type,
                        message=issue.message,
                        suggestion=issue.suggestion,
                        rule=issue.rule,
                    )
                    for issue in analysis.issues
                ]
            )
        return True

    def cancel_reviews_for_pr(self, pr_number: int, repo_full_name: str, reason: str) -> List[int]:
        with self.session_factory() as db, db.begin():
            return self._cancel_where(
                db,
                CancelledProgress(reason=reason),
                Review.pr_number == pr_number,
                Review.repo_full_name == repo_full_name,
            )

    def record_installation(
        self,
        installation_id: int,
        account_login: str,
        account_type: str,
        repositories: Iterable[RepositoryRef] = (),
    ) -> int:
        with self.session_factory() as db, db.begin():
            self._upsert_installation(db, installation_id, account_login, account_type)
            return self._upsert_repositories(db, installation_id, repositories)

    def add_repositories(
        self,
        installation_id: int,
        repositories: Iterable[RepositoryRef],
        account_login: Optional[str] = None,
        account_type: str = "User",
    ) -> int:
        with self.session_factory() as db, db.begin():
            if account_login:
                self._upsert_installation(db, installation_id, account_login, account_type)
            return self._upsert_repositories(db, installation_id, repositories)

    def remove_repositories(self, installation_id: int, repo_ids: Iterable[int]) -> int:
        repo_ids = list(repo_ids)
        if not repo_ids:
            return 0
        with self.session_factory() as db, db.begin():
            result = db.execute(
                delete(Repository)
                .where(Repository.installation_id == installation_id, Repository.repo_id.in_(repo_ids))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def remove_installation(self, installation_id: int) -> RemovedInstallation:
        """Cancel active reviews, drop repositories and the installation in one transaction."""
        with self.session_factory() as db, db.begin():
            cancelled = self._cancel_where(
                db,
                CancelledProgress(reason="installation_deleted"),
                Review.installation_id == installation_id,
            )
            repositories = db.execute(
                delete(Repository)
                .where(Repository.installation_id == installation_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            installations = db.execute(
                delete(Installation)
                .where(Installation.installation_id == installation_id)
                .execution_options(synchronize_session=False)
            ).rowcount
        return RemovedInstallation(
            review_ids=cancelled, repositories_removed=repositories, installations_removed=installations
        )

    def _cancel_where(self, db: Session, progress: CancelledProgress, *criteria: Any) -> List[int]:
        sources = allowed_sources("cancelled")
        rows = db.execute(select(Review.id, Review.review_data).where(*criteria, Review.status.in_(sources))).all()
        cancelled: List[int] = []
        for review_id, data in rows:
            result = db.execute(
                update(Review)
                .where(Review.id == review_id, Review.status.in_(sources))
                .values(status="cancelled", review_data={**data, **progress.model_dump()}, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                cancelled.append(review_id)
        return cancelled

    def _upsert_installation(self, db: Session, installation_id: int, account_login: str, account_type: str) -> None:
        now = utcnow()
        upsert(
            db,
            Installation,
            {
                "installation_id": installation_id,
                "account_login": account_login,
                "account_type": account_type,
                "created_at": now,
                "updated_at": now,
            },
            conflict_on=("installation_id",),
            update_columns=("account_login", "account_type", "updated_at"),
        )

    def _upsert_repositories(self, db: Session, installation_id: int, repositories: Iterable[RepositoryRef]) -> int:
        count = 0
        for repo in repositories:
            upsert(
                db,
                Repository,
                {
                    "installation_id": installation_id,
                    "repo_id": repo.id,
                    "full_name": repo.full_name,
                    "private": repo.private,
                },
                conflict_on=("installation_id", "repo_id"),
                update_columns=("full_name", "private"),
            )
            count += 1
        return count
