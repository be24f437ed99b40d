import logging
from typing import Callable, Dict, Type

from app.models.events import (
    InstallationCreated,
    InstallationDeleted,
    PullRequestClosed,
    PullRequestQueued,
    RepositoriesAdded,
    RepositoriesRemoved,
    WebhookEvent,
    describe,
)
from app.services.review_lifecycle import LifecycleResult, ReviewLifecycle

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(self, lifecycle: ReviewLifecycle) -> None:
        self.lifecycle = lifecycle
        self.handlers: Dict[Type, Callable[..., LifecycleResult]] = {
            PullRequestQueued: lifecycle.queue_review,
            PullRequestClosed: lifecycle.cancel_reviews,
            InstallationCreated: lifecycle.record_installation,
            InstallationDeleted: lifecycle.remove_installation,
            RepositoriesAdded: lifecycle.add_repositories,
            RepositoriesRemoved: lifecycle.remove_repositories,
        }

    def dispatch(self, event: WebhookEvent) -> LifecycleResult:
        name = describe(event)
        handler = self.handlers[type(event)]
        try:
            result = handler(event)
        except Exception as exc:
            # the lifecycle fails reviews itself, fenced by the run it created
            logger.exception("Unhandled error dispatching event", extra={"event": name})
            result = LifecycleResult(action=name, ok=False, error=str(exc))

        if result.ok:
            logger.info("Event handled", extra={"event": name, "action": result.action, "status": result.status})
        else:
            logger.error(
                "Event handling failed",
                extra={"event": name, "action": result.action, "review_id": result.review_id, "error": result.error},
            )
        return result
