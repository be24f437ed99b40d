"""Review lifecycle: pending -> in_progress -> completed | failed | cancelled.

Every mutating operation returns a LifecycleResult instead of raising, so the
dispatcher sees success and failure alike. Status changes go through
ReviewStore.transition, which refuses to move a review out of a terminal
state or to write on behalf of a run that a newer delivery has replaced.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from app.db.review_store import ReviewStore
from app.models.events import (
    InstallationCreated,
    InstallationDeleted,
    PullRequestClosed,
    PullRequestQueued,
    RepositoriesAdded,
    RepositoriesRemoved,
)
from app.models.schemas import (
    AnalyzingProgress,
    ChangedFile,
    CompletedProgress,
    FailedProgress,
    FetchingProgress,
    QueuedProgress,
    ReadyProgress,
    ReviewProgress,
)
from app.services.file_analyzer import FileAnalyzer
from app.services.service_errors import ServiceError

logger = logging.getLogger(__name__)


class ChangedFilesFetcher(Protocol):
    def fetch_changed_files(self, installation_id: int, owner: str, repo: str, pr_number: int) -> List[ChangedFile]:
        ...


@dataclass
class LifecycleResult:
    action: str
    ok: bool = True
    review_id: Optional[int] = None
    status: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class CancellationRegistry:
    """One token per review id; setting it asks the running pipeline to stop after the current file."""

    def __init__(self) -> None:
        self._tokens: Dict[int, threading.Event] = {}

    def start(self, review_id: int) -> threading.Event:
        previous = self._tokens.get(review_id)
        if previous is not None:
            previous.set()
        token = threading.Event()
        self._tokens[review_id] = token
        return token

    def cancel(self, review_id: int) -> bool:
        token = self._tokens.get(review_id)
        if token is None:
            return False
        token.set()
        return True

    def finish(self, review_id: int, token: threading.Event) -> None:
        if self._tokens.get(review_id) is token:
            self._tokens.pop(review_id, None)


def _error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or exc.__class__.__name__


class ReviewLifecycle:
    def __init__(
        self,
        store: ReviewStore,
        fetcher: ChangedFilesFetcher,
        analyzer: Optional[FileAnalyzer] = None,
        cancellations: Optional[CancellationRegistry] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.analyzer = analyzer or FileAnalyzer()
        self.cancellations = cancellations or CancellationRegistry()

    def queue_review(self, event: PullRequestQueued) -> LifecycleResult:
        pr = event.pull_request
        repo_full_name = event.repository.full_name
        metadata = QueuedProgress(
            pr_title=pr.title,
            pr_author=pr.user.login,
            pr_url=pr.html_url,
            head_sha=pr.head.sha,
            base_sha=pr.base.sha,
            changed_files=pr.changed_files,
            additions=pr.additions,
            deletions=pr.deletions,
        )
        try:
            queued = self.store.queue_review(pr.number, repo_full_name, event.installation.id, metadata)
        except (SQLAlchemyError, ServiceError) as exc:
            logger.error("Failed to queue review", extra={"repo": repo_full_name, "pr": pr.number, "error": str(exc)})
            return LifecycleResult(action="queue_review", ok=False, error=str(exc))

        logger.info(
            "Queued review",
            extra={"repo": repo_full_name, "pr": pr.number, "review_id": queued.review_id, "run_id": queued.run_id},
        )
        try:
            return self.run_review(queued.review_id, queued.run_id, event.installation.id, repo_full_name, pr.number)
        except Exception as exc:
            # only this delivery's run is failed; a newer run keeps going
            logger.exception("Review run crashed", extra={"review_id": queued.review_id, "run_id": queued.run_id})
            return self.fail_review(queued.review_id, _error_message(exc), run_id=queued.run_id)

    def run_review(
        self,
        review_id: int,
        run_id: str,
        installation_id: int,
        repo_full_name: str,
        pr_number: int,
    ) -> LifecycleResult:
        token = self.cancellations.start(review_id)
        try:
            return self._run_pipeline(review_id, run_id, installation_id, repo_full_name, pr_number, token)
        finally:
            self.cancellations.finish(review_id, token)

    def _run_pipeline(
        self,
        review_id: int,
        run_id: str,
        installation_id: int,
        repo_full_name: str,
        pr_number: int,
        token: threading.Event,
    ) -> LifecycleResult:
        result = LifecycleResult(action="run_review", review_id=review_id)
        try:
            if not self.store.transition(review_id, "in_progress", FetchingProgress(), run_id=run_id):
                return self._stopped(result, "superseded_or_closed")

            owner, _, repo = repo_full_name.partition("/")
            files = self.fetcher.fetch_changed_files(installation_id, owner, repo, pr_number)
            self._progress(review_id, run_id, AnalyzingProgress(files_found=len(files)))

            analyzed = 0
            issues_found = 0
            files_to_review = 0
            for file in files:
                if token.is_set():
                    return self._stopped(result, "cancelled")
                analysis = self.analyzer.analyze_file(file)
                complexity = self.analyzer.complexity_score(file.patch) if analysis.should_review else 0
                if not self.store.record_file_analysis(review_id, run_id, file.status, analysis, complexity):
                    return self._stopped(result, "superseded_or_closed")

                analyzed += 1
                issues_found += len(analysis.issues)
                files_to_review += int(analysis.should_review)
                progress = 30 + (analyzed * 40) // len(files)
                self._progress(review_id, run_id, AnalyzingProgress(progress=progress, files_analyzed=analyzed))

            self._progress(review_id, run_id, ReadyProgress(files_analyzed=analyzed, files_to_review=files_to_review))

            completed = CompletedProgress(files_analyzed=analyzed, issues_found=issues_found)
            if not self.store.transition(review_id, "completed", completed, run_id=run_id):
                return self._stopped(result, "superseded_or_closed")
        except Exception as exc:
            message = _error_message(exc)
            logger.exception("Review pipeline failed", extra={"review_id": review_id, "error": message})
            return self.fail_review(review_id, message, run_id=run_id)

        logger.info(
            "Review completed",
            extra={"review_id": review_id, "files_analyzed": analyzed, "issues_found": issues_found},
        )
        result.status = "completed"
        result.details = {"files_analyzed": analyzed, "issues_found": issues_found, "files_to_review": files_to_review}
        return result

    def fail_review(self, review_id: int, error: str, run_id: Optional[str] = None) -> LifecycleResult:
        result = LifecycleResult(action="fail_review", ok=False, review_id=review_id, error=error)
        try:
            if self.store.transition(review_id, "failed", FailedProgress(error=error), run_id=run_id):
                result.status = "failed"
        except SQLAlchemyError as exc:
            logger.error("Failed to record review failure", extra={"review_id": review_id, "error": str(exc)})
            result.details["store_error"] = str(exc)
        return result

    def cancel_reviews(self, event: PullRequestClosed) -> LifecycleResult:
        pr_number = event.pull_request.number
        repo_full_name = event.repository.full_name
        try:
            cancelled = self.store.cancel_reviews_for_pr(pr_number, repo_full_name, reason="pull_request_closed")
        except SQLAlchemyError as exc:
            logger.error("Failed to cancel reviews", extra={"repo": repo_full_name, "pr": pr_number, "error": str(exc)})
            return LifecycleResult(action="cancel_reviews", ok=False, error=str(exc))

        for review_id in cancelled:
            self.cancellations.cancel(review_id)
        logger.info(
            "Cancelled reviews for closed PR",
            extra={"repo": repo_full_name, "pr": pr_number, "count": len(cancelled)},
        )
        return LifecycleResult(
            action="cancel_reviews",
            review_id=cancelled[0] if cancelled else None,
            status="cancelled" if cancelled else None,
            details={"review_ids": cancelled},
        )

    def record_installation(self, event: InstallationCreated) -> LifecycleResult:
        installation = event.installation
        account = installation.account
        if account is None:
            return LifecycleResult(action="record_installation", ok=False, error="installation payload has no account")
        try:
            count = self.store.record_installation(
                installation.id, account.login, account.type, event.repositories
            )
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to record installation", extra={"installation_id": installation.id, "error": str(exc)}
            )
            return LifecycleResult(action="record_installation", ok=False, error=str(exc))

        logger.info(
            "Recorded installation",
            extra={"installation_id": installation.id, "account": account.login, "repositories": count},
        )
        return LifecycleResult(action="record_installation", details={"repositories": count})

    def remove_installation(self, event: InstallationDeleted) -> LifecycleResult:
        installation_id = event.installation.id
        try:
            removed = self.store.remove_installation(installation_id)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to remove installation", extra={"installation_id": installation_id, "error": str(exc)}
            )
            return LifecycleResult(action="remove_installation", ok=False, error=str(exc))

        for review_id in removed.review_ids:
            self.cancellations.cancel(review_id)
        counts = {
            "reviews_cancelled": len(removed.review_ids),
            "repositories_removed": removed.repositories_removed,
            "installations_removed": removed.installations_removed,
        }
        logger.info("Removed installation", extra={"installation_id": installation_id, **counts})
        return LifecycleResult(action="remove_installation", details=counts)

    def add_repositories(self, event: RepositoriesAdded) -> LifecycleResult:
        installation = event.installation
        account = installation.account
        try:
            count = self.store.add_repositories(
                installation.id,
                event.repositories_added,
                account_login=account.login if account else None,
                account_type=account.type if account else "User",
            )
        except SQLAlchemyError as exc:
            logger.error("Failed to add repositories", extra={"installation_id": installation.id, "error": str(exc)})
            return LifecycleResult(action="add_repositories", ok=False, error=str(exc))

        logger.info("Added repositories", extra={"installation_id": installation.id, "count": count})
        return LifecycleResult(action="add_repositories", details={"repositories": count})

    def remove_repositories(self, event: RepositoriesRemoved) -> LifecycleResult:
        installation_id = event.installation.id
        try:
            count = self.store.remove_repositories(installation_id, [repo.id for repo in event.repositories_removed])
        except SQLAlchemyError as exc:
            logger.error("Failed to remove repositories", extra={"installation_id": installation_id, "error": str(exc)})
            return LifecycleResult(action="remove_repositories", ok=False, error=str(exc))

        logger.info("Removed repositories", extra={"installation_id": installation_id, "count": count})
        return LifecycleResult(action="remove_repositories", details={"repositories": count})

    def _progress(self, review_id: int, run_id: str, progress: ReviewProgress) -> None:
        # best-effort; a lost progress write is repaired by the next one or by redelivery
        try:
            self.store.transition(review_id, "in_progress", progress, run_id=run_id)
        except SQLAlchemyError as exc:
            logger.warning("Progress update failed", extra={"review_id": review_id, "error": str(exc)})

    def _stopped(self, result: LifecycleResult, reason: str) -> LifecycleResult:
        logger.info("Review run stopped", extra={"review_id": result.review_id, "reason": reason})
        result.status = "stopped"
        result.details = {"reason": reason}
        return result
