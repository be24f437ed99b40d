from sqlalchemy import func, select

from app.db.models import FileChange, Installation, Repository, Review, ReviewComment
from app.models.events import parse_event
from app.models.schemas import ChangedFile, FetchingProgress, QueuedProgress
from app.services.review_lifecycle import CancellationRegistry, ReviewLifecycle
from app.services.service_errors import ServiceError

JS_FILE = ChangedFile(
    filename="a.js", status="modified", additions=1, deletions=0, patch="@@ -0,0 +1 @@\n+console.log('x')"
)
PNG_FILE = ChangedFile(filename="b.png", status="modified", additions=0, deletions=0, patch=None)
PY_FILE = ChangedFile(
    filename="svc/c.py", status="added", additions=2, deletions=0, patch="@@ -0,0 +1,2 @@\n+print(1)\n+print(2)"
)


class _FakeFetcher:
    def __init__(self, *responses, on_fetch=None):
        self.responses = list(responses)
        self.on_fetch = on_fetch
        self.calls = []

    def fetch_changed_files(self, installation_id, owner, repo, pr_number):
        self.calls.append((installation_id, owner, repo, pr_number))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if self.on_fetch is not None:
            hook, self.on_fetch = self.on_fetch, None
            hook()
        if isinstance(response, Exception):
            raise response
        return list(response)


def _rows(session_factory, model):
    with session_factory() as db:
        return db.scalars(select(model).order_by(*model.__mapper__.primary_key)).all()


def _count(session_factory, model):
    with session_factory() as db:
        return db.scalar(select(func.count()).select_from(model))


def test_opened_event_produces_completed_review(store, session_factory, pr_payload):
    fetcher = _FakeFetcher([JS_FILE, PNG_FILE])
    lifecycle = ReviewLifecycle(store, fetcher)

    result = lifecycle.queue_review(parse_event("pull_request", pr_payload("opened", 12, "acme/widgets")))

    assert result.ok
    assert result.status == "completed"
    assert fetcher.calls == [(77, "acme", "widgets", 12)]

    reviews = _rows(session_factory, Review)
    assert len(reviews) == 1
    review = reviews[0]
    assert (review.pr_number, review.repo_full_name, review.status) == (12, "acme/widgets", "completed")
    assert review.completed_at is not None
    assert review.review_data["step"] == "completed"
    assert review.review_data["progress"] == 100
    assert review.review_data["issues_found"] == 1
    assert review.review_data["pr_title"] == "Add widget endpoint"

    changes = {change.filename: change for change in _rows(session_factory, FileChange)}
    assert set(changes) == {"a.js", "b.png"}
    assert changes["a.js"].should_review is True
    assert changes["a.js"].language == "javascript"
    assert changes["b.png"].should_review is False
    assert all(change.analyzed for change in changes.values())

    comments = _rows(session_factory, ReviewComment)
    assert [(c.filename, c.line_number, c.rule, c.severity) for c in comments] == [
        ("a.js", 1, "no-console", "medium")
    ]


def test_requeue_replaces_previous_run(store, session_factory, pr_payload):
    fetcher = _FakeFetcher([JS_FILE, PNG_FILE], [PY_FILE])
    lifecycle = ReviewLifecycle(store, fetcher)

    lifecycle.queue_review(parse_event("pull_request", pr_payload("opened")))
    first_run = _rows(session_factory, Review)[0].run_id
    lifecycle.queue_review(parse_event("pull_request", pr_payload("synchronize")))

    reviews = _rows(session_factory, Review)
    assert len(reviews) == 1
    assert reviews[0].run_id != first_run
    assert reviews[0].status == "completed"
    assert [change.filename for change in _rows(session_factory, FileChange)] == ["svc/c.py"]
    assert [(c.filename, c.line_number) for c in _rows(session_factory, ReviewComment)] == [
        ("svc/c.py", 1),
        ("svc/c.py", 2),
    ]


def test_overlapping_synchronize_leaves_only_newest_run(store, session_factory, pr_payload):
    event = parse_event("pull_request", pr_payload("synchronize"))
    newer = ReviewLifecycle(store, _FakeFetcher([PY_FILE]))
    # separate registries: the two deliveries share nothing but the database
    older = ReviewLifecycle(
        store,
        _FakeFetcher([JS_FILE, PNG_FILE], on_fetch=lambda: newer.queue_review(event)),
        cancellations=CancellationRegistry(),
    )

    result = older.queue_review(event)

    assert result.ok
    assert result.status == "stopped"
    reviews = _rows(session_factory, Review)
    assert len(reviews) == 1
    assert reviews[0].status == "completed"
    assert [change.filename for change in _rows(session_factory, FileChange)] == ["svc/c.py"]
    assert {c.filename for c in _rows(session_factory, ReviewComment)} == {"svc/c.py"}


def test_overlapping_synchronize_in_one_process_stops_older_run_early(store, session_factory, pr_payload):
    event = parse_event("pull_request", pr_payload("synchronize"))
    fetcher = _FakeFetcher([JS_FILE, PNG_FILE], [PY_FILE])
    lifecycle = ReviewLifecycle(store, fetcher)
    fetcher.on_fetch = lambda: lifecycle.queue_review(event)

    result = lifecycle.queue_review(event)

    assert result.details == {"reason": "cancelled"}
    assert len(fetcher.calls) == 2
    assert [change.filename for change in _rows(session_factory, FileChange)] == ["svc/c.py"]
    assert _rows(session_factory, Review)[0].status == "completed"


def test_fetch_failure_marks_review_failed(store, session_factory, pr_payload):
    error = ServiceError("GitHub access denied", status_code=403, code="github_access_denied")
    lifecycle = ReviewLifecycle(store, _FakeFetcher(error))

    result = lifecycle.queue_review(parse_event("pull_request", pr_payload("opened")))

    assert not result.ok
    assert result.status == "failed"
    assert result.error == "GitHub access denied"
    review = _rows(session_factory, Review)[0]
    assert review.status == "failed"
    assert review.review_data["step"] == "failed"
    assert review.review_data["error"] == "GitHub access denied"
    assert review.completed_at is None
    assert _count(session_factory, FileChange) == 0


def test_closed_event_cancels_pending_review(store, session_factory, pr_payload):
    store.queue_review(12, "acme/widgets", 77, QueuedProgress())
    lifecycle = ReviewLifecycle(store, _FakeFetcher([]))

    result = lifecycle.cancel_reviews(parse_event("pull_request", pr_payload("closed")))

    assert result.ok
    assert result.status == "cancelled"
    review = _rows(session_factory, Review)[0]
    assert review.status == "cancelled"
    assert review.completed_at is None
    assert review.review_data["reason"] == "pull_request_closed"


def test_closed_event_leaves_completed_review_alone(store, session_factory, pr_payload):
    lifecycle = ReviewLifecycle(store, _FakeFetcher([JS_FILE]))
    lifecycle.queue_review(parse_event("pull_request", pr_payload("opened")))

    result = lifecycle.cancel_reviews(parse_event("pull_request", pr_payload("closed")))

    assert result.ok
    assert result.details == {"review_ids": []}
    assert _rows(session_factory, Review)[0].status == "completed"


def test_close_during_analysis_stops_pipeline(store, session_factory, pr_payload):
    fetcher = _FakeFetcher([JS_FILE, PNG_FILE])
    lifecycle = ReviewLifecycle(store, fetcher)
    fetcher.on_fetch = lambda: lifecycle.cancel_reviews(parse_event("pull_request", pr_payload("closed")))

    result = lifecycle.queue_review(parse_event("pull_request", pr_payload("opened")))

    assert result.status == "stopped"
    assert _rows(session_factory, Review)[0].status == "cancelled"
    assert _count(session_factory, FileChange) == 0


def test_reopened_after_cancel_starts_fresh_run(store, session_factory, pr_payload):
    store.queue_review(12, "acme/widgets", 77, QueuedProgress())
    lifecycle = ReviewLifecycle(store, _FakeFetcher([JS_FILE]))
    lifecycle.cancel_reviews(parse_event("pull_request", pr_payload("closed")))

    result = lifecycle.queue_review(parse_event("pull_request", pr_payload("reopened")))

    assert result.status == "completed"
    assert _rows(session_factory, Review)[0].status == "completed"


def test_installation_bookkeeping(store, session_factory, pr_payload, installation_payload):
    lifecycle = ReviewLifecycle(store, _FakeFetcher([]))

    created = lifecycle.record_installation(parse_event("installation", installation_payload("created")))
    assert created.ok and created.details == {"repositories": 2}
    installation = _rows(session_factory, Installation)[0]
    assert (installation.installation_id, installation.account_login, installation.account_type) == (
        77,
        "acme",
        "Organization",
    )

    added = lifecycle.add_repositories(
        parse_event(
            "installation_repositories",
            {
                "action": "added",
                "installation": {"id": 77, "account": {"login": "acme", "type": "Organization"}},
                "repositories_added": [{"id": 503, "full_name": "acme/tools", "private": False}],
            },
        )
    )
    assert added.ok
    assert sorted(repo.full_name for repo in _rows(session_factory, Repository)) == [
        "acme/gadgets",
        "acme/tools",
        "acme/widgets",
    ]

    removed = lifecycle.remove_repositories(
        parse_event(
            "installation_repositories",
            {
                "action": "removed",
                "installation": {"id": 77},
                "repositories_removed": [{"id": 502, "full_name": "acme/gadgets"}, {"id": 999, "full_name": "x/y"}],
            },
        )
    )
    assert removed.details == {"repositories": 1}

    # redelivery of "created" is an upsert, not a duplicate
    lifecycle.record_installation(parse_event("installation", installation_payload("created", repositories=[])))
    assert _count(session_factory, Installation) == 1


def test_installation_deleted_cancels_reviews_and_drops_repositories(
    store, session_factory, pr_payload, installation_payload
):
    lifecycle = ReviewLifecycle(store, _FakeFetcher([JS_FILE]))
    lifecycle.record_installation(parse_event("installation", installation_payload("created")))
    lifecycle.queue_review(parse_event("pull_request", pr_payload("opened", number=1)))
    store.queue_review(2, "acme/widgets", 77, QueuedProgress())
    store.queue_review(3, "other/repo", 88, QueuedProgress())

    result = lifecycle.remove_installation(parse_event("installation", installation_payload("deleted")))

    assert result.ok
    assert result.details == {"reviews_cancelled": 1, "repositories_removed": 2, "installations_removed": 1}
    statuses = {review.pr_number: review.status for review in _rows(session_factory, Review)}
    assert statuses == {1: "completed", 2: "cancelled", 3: "pending"}
    assert _count(session_factory, Repository) == 0
    assert _count(session_factory, Installation) == 0


def test_store_errors_become_failed_results(store, pr_payload, monkeypatch):
    from sqlalchemy.exc import OperationalError

    def _boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "queue_review", _boom)
    result = ReviewLifecycle(store, _FakeFetcher([])).queue_review(parse_event("pull_request", pr_payload("opened")))

    assert not result.ok
    assert result.action == "queue_review"
    assert "database is locked" in result.error


def test_installation_deleted_during_fetch_stops_pipeline(store, session_factory, pr_payload, installation_payload):
    fetcher = _FakeFetcher([JS_FILE, PNG_FILE])
    lifecycle = ReviewLifecycle(store, fetcher)
    fetcher.on_fetch = lambda: lifecycle.remove_installation(
        parse_event("installation", installation_payload("deleted"))
    )

    result = lifecycle.queue_review(parse_event("pull_request", pr_payload("opened")))

    assert result.details == {"reason": "cancelled"}
    review = _rows(session_factory, Review)[0]
    assert review.status == "cancelled"
    assert review.review_data["reason"] == "installation_deleted"
    assert _count(session_factory, FileChange) == 0


def test_queue_failure_before_upsert_leaves_running_review_alone(store, session_factory, pr_payload, monkeypatch):
    running = store.queue_review(12, "acme/widgets", 77, QueuedProgress())
    store.transition(running.review_id, "in_progress", FetchingProgress(), run_id=running.run_id)

    def _unsupported(*args, **kwargs):
        raise ServiceError("Upsert is not supported on oracle", code="unsupported_dialect")

    monkeypatch.setattr(store, "queue_review", _unsupported)
    result = ReviewLifecycle(store, _FakeFetcher([])).queue_review(parse_event("pull_request", pr_payload("opened")))

    assert not result.ok
    assert result.action == "queue_review"
    assert "unsupported_dialect" in result.error
    assert _rows(session_factory, Review)[0].status == "in_progress"


def test_crashed_run_does_not_fail_a_newer_run(store, session_factory, pr_payload, monkeypatch):
    lifecycle = ReviewLifecycle(store, _FakeFetcher([]))

    def _superseded_then_crash(review_id, run_id, *args):
        store.queue_review(12, "acme/widgets", 77, QueuedProgress())
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(lifecycle, "run_review", _superseded_then_crash)
    result = lifecycle.queue_review(parse_event("pull_request", pr_payload("opened")))

    assert not result.ok
    assert result.status is None
    assert _rows(session_factory, Review)[0].status == "pending"
