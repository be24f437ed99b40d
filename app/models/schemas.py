from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["low", "medium", "high", "critical"]
IssueType = Literal["security", "performance", "quality", "bug", "style"]
ReviewStatus = Literal["pending", "in_progress", "completed", "failed", "cancelled"]
FileStatus = Literal["added", "removed", "modified", "renamed", "copied", "changed", "unchanged"]


class ChangedFile(BaseModel):
    filename: str
    status: FileStatus = "modified"
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None


class CodeIssue(BaseModel):
    line: int
    severity: Severity
    type: IssueType
    message: str
    suggestion: Optional[str] = None
    rule: Optional[str] = None


class FileAnalysis(BaseModel):
    filename: str
    language: str
    additions: int
    deletions: int
    patch: str
    should_review: bool
    issues: List[CodeIssue] = Field(default_factory=list)


# Review.review_data shapes, one per lifecycle step. Writes are merged into the
# stored blob, so fields left as None keep whatever an earlier step recorded.


class QueuedProgress(BaseModel):
    step: Literal["queued"] = "queued"
    progress: int = 0
    pr_title: str = ""
    pr_author: str = ""
    pr_url: str = ""
    head_sha: str = ""
    base_sha: str = ""
    changed_files: int = 0
    additions: int = 0
    deletions: int = 0


class FetchingProgress(BaseModel):
    step: Literal["fetching_files"] = "fetching_files"
    progress: int = 10


class AnalyzingProgress(BaseModel):
    step: Literal["analyzing_files"] = "analyzing_files"
    progress: int = 30
    files_found: Optional[int] = None
    files_analyzed: Optional[int] = None


class ReadyProgress(BaseModel):
    step: Literal["ready_for_further_processing"] = "ready_for_further_processing"
    progress: int = 70
    files_analyzed: int = 0
    files_to_review: int = 0


class CompletedProgress(BaseModel):
    step: Literal["completed"] = "completed"
    progress: int = 100
    files_analyzed: int = 0
    issues_found: int = 0


class FailedProgress(BaseModel):
    step: Literal["failed"] = "failed"
    error: str


class CancelledProgress(BaseModel):
    step: Literal["cancelled"] = "cancelled"
    reason: str = "pull_request_closed"


ReviewProgress = Annotated[
    Union[
        QueuedProgress,
        FetchingProgress,
        AnalyzingProgress,
        ReadyProgress,
        CompletedProgress,
        FailedProgress,
        CancelledProgress,
    ],
    Field(discriminator="step"),
]


class ReviewOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pr_number: int
    repo_full_name: str
    installation_id: int
    status: ReviewStatus
    review_data: Dict[str, Any]
    created_at: datetime
    completed_at: Optional[datetime] = None


class ReviewCommentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    line_number: int
    severity: Severity
    issue_type: IssueType
    message: str
    suggestion: Optional[str] = None
    rule: Optional[str] = None


class FileChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    status: str
    language: str
    additions: int
    deletions: int
    analyzed: bool
    should_review: bool
    complexity_score: int


class ReviewDetail(ReviewOut):
    account_login: Optional[str] = None
    account_type: Optional[str] = None
    comments: List[ReviewCommentOut] = Field(default_factory=list)
    file_changes: List[FileChangeOut] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ReviewListResponse(BaseModel):
    reviews: List[ReviewOut]
    pagination: Pagination


class RecentActivity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pr_number: int
    repo_full_name: str
    status: ReviewStatus
    created_at: datetime


class StatsResponse(BaseModel):
    installations: int
    repositories: int
    reviews: Dict[str, int]
    recent_activity: List[RecentActivity]
