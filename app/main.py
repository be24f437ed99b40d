import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import Engine, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.db.database import Base, build_session_factory
from app.db.database import engine as default_engine
from app.db.models import FileChange, Installation, Repository, Review, ReviewComment
from app.db.review_store import ReviewStore
from app.models.events import describe, parse_event
from app.models.schemas import (
    FileChangeOut,
    Pagination,
    RecentActivity,
    ReviewCommentOut,
    ReviewDetail,
    ReviewListResponse,
    ReviewOut,
    ReviewStatus,
    StatsResponse,
)
from app.services.event_dispatcher import EventDispatcher
from app.services.github_service import GitHubService
from app.services.review_lifecycle import ChangedFilesFetcher, ReviewLifecycle
from app.utils.logging_utils import configure_logging
from app.utils.security import verify_webhook_request

configure_logging()
logger = logging.getLogger("pr-reviewer")

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
router = APIRouter()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def create_app(engine: Optional[Engine] = None, fetcher: Optional[ChangedFilesFetcher] = None) -> FastAPI:
    engine = engine or default_engine
    session_factory = build_session_factory(engine)
    lifecycle = ReviewLifecycle(ReviewStore(session_factory), fetcher or GitHubService())

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        Base.metadata.create_all(bind=engine)
        yield

    application = FastAPI(title="PR Review Service", lifespan=lifespan)
    application.state.limiter = limiter
    application.state.session_factory = session_factory
    application.state.dispatcher = EventDispatcher(lifecycle)

    allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    application.add_exception_handler(
        RateLimitExceeded,
        lambda request, exc: JSONResponse(status_code=429, content={"detail": "Rate limit exceeded", "code": "rate_limited"}),
    )
    application.add_middleware(SlowAPIMiddleware)
    application.include_router(router)
    return application


@router.post("/webhooks/github", status_code=202)
@limiter.exempt
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    body: bytes = Depends(verify_webhook_request),
):
    event_name = request.headers.get("X-GitHub-Event", "")
    delivery_id = request.headers.get("X-GitHub-Delivery", "")

    if event_name == "ping":
        return JSONResponse(status_code=200, content={"status": "pong"})

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": "Webhook body is not valid JSON", "code": "invalid_json"},
        ) from exc

    try:
        event = parse_event(event_name, payload)
    except ValidationError as exc:
        logger.warning(
            "Rejected webhook payload",
            extra={"event": event_name, "delivery": delivery_id, "errors": exc.error_count()},
        )
        raise HTTPException(
            status_code=400,
            detail={"message": f"Invalid {event_name} payload", "code": "invalid_payload"},
        ) from exc

    if event is None:
        action = payload.get("action") if isinstance(payload, dict) else None
        logger.info("Ignoring webhook", extra={"event": event_name, "action": action, "delivery": delivery_id})
        return JSONResponse(status_code=200, content={"status": "ignored"})

    name = describe(event)
    logger.info("Webhook accepted", extra={"event": name, "delivery": delivery_id})
    background_tasks.add_task(request.app.state.dispatcher.dispatch, event)
    return {"status": "accepted", "event": name}


@router.get("/")
def root(db: Session = Depends(get_db)) -> Dict[str, object]:
    try:
        total = db.scalar(select(func.count(Review.id)))
    except SQLAlchemyError as exc:
        logger.error("Database unavailable", extra={"error": str(exc)})
        raise HTTPException(status_code=503, detail={"message": "Database unavailable", "code": "db_unavailable"}) from exc
    return {
        "status": "PR review service is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_reviews": total,
    }


@router.get("/api/health")
def health(db: Session = Depends(get_db)):
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check failed", extra={"error": str(exc)})
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "timestamp": timestamp},
        )
    return {"status": "healthy", "database": "connected", "timestamp": timestamp}


@router.get("/api/reviews", response_model=ReviewListResponse)
@limiter.limit(settings.rate_limit)
def list_reviews(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[ReviewStatus] = None,
    db: Session = Depends(get_db),
) -> ReviewListResponse:
    criteria = [Review.status == status] if status else []
    total = db.scalar(select(func.count(Review.id)).where(*criteria)) or 0
    reviews = db.scalars(
        select(Review).where(*criteria).order_by(Review.created_at.desc(), Review.id.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return ReviewListResponse(
        reviews=[ReviewOut.model_validate(review) for review in reviews],
        pagination=Pagination(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit),
    )


@router.get("/api/reviews/{review_id}", response_model=ReviewDetail)
@limiter.limit(settings.rate_limit)
def get_review(request: Request, review_id: int, db: Session = Depends(get_db)) -> ReviewDetail:
    review = db.get(Review, review_id)
    if review is None:
        raise HTTPException(status_code=404, detail={"message": "Review not found", "code": "review_not_found"})

    installation = db.get(Installation, review.installation_id)
    comments = db.scalars(
        select(ReviewComment).where(ReviewComment.review_id == review_id).order_by(ReviewComment.line_number, ReviewComment.id)
    ).all()
    file_changes = db.scalars(select(FileChange).where(FileChange.review_id == review_id).order_by(FileChange.id)).all()
    return ReviewDetail(
        **ReviewOut.model_validate(review).model_dump(),
        account_login=installation.account_login if installation else None,
        account_type=installation.account_type if installation else None,
        comments=[ReviewCommentOut.model_validate(comment) for comment in comments],
        file_changes=[FileChangeOut.model_validate(change) for change in file_changes],
    )


@router.get("/api/repos/{owner}/{repo}/reviews", response_model=List[ReviewOut])
@limiter.limit(settings.rate_limit)
def list_repository_reviews(request: Request, owner: str, repo: str, db: Session = Depends(get_db)) -> List[ReviewOut]:
    reviews = db.scalars(
        select(Review).where(Review.repo_full_name == f"{owner}/{repo}").order_by(Review.created_at.desc()).limit(50)
    ).all()
    return [ReviewOut.model_validate(review) for review in reviews]


@router.get("/api/stats", response_model=StatsResponse)
@limiter.limit(settings.rate_limit)
def stats(request: Request, db: Session = Depends(get_db)) -> StatsResponse:
    status_counts = {status: count for status, count in db.execute(select(Review.status, func.count(Review.id)).group_by(Review.status))}
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    recent = db.scalars(select(Review).where(Review.created_at >= since).order_by(Review.created_at.desc()).limit(10)).all()
    return StatsResponse(
        installations=db.scalar(select(func.count()).select_from(Installation)) or 0,
        repositories=db.scalar(select(func.count()).select_from(Repository)) or 0,
        reviews={"total": sum(status_counts.values()), **status_counts},
        recent_activity=[RecentActivity.model_validate(review) for review in recent],
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
