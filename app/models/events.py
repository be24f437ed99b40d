"""Typed webhook events.

Each supported (event, action) pair maps to exactly one model. Payloads are
validated here at ingress; everything downstream works with these classes
instead of raw dicts.
"""

from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Account(_Payload):
    id: Optional[int] = None
    login: str
    type: str = "User"


class InstallationRef(_Payload):
    id: int
    account: Optional[Account] = None


class RepositoryRef(_Payload):
    id: int
    full_name: str
    name: str = ""
    private: bool = False

    @property
    def owner_and_name(self) -> Tuple[str, str]:
        owner, _, name = self.full_name.partition("/")
        return owner, name


class UserRef(_Payload):
    login: str = ""


class GitRef(_Payload):
    sha: str = ""
    ref: str = ""


class PullRequestRef(_Payload):
    number: int
    title: str = ""
    state: str = "open"
    html_url: str = ""
    user: UserRef = Field(default_factory=UserRef)
    head: GitRef = Field(default_factory=GitRef)
    base: GitRef = Field(default_factory=GitRef)
    changed_files: int = 0
    additions: int = 0
    deletions: int = 0


class PullRequestQueued(_Payload):
    event: ClassVar[str] = "pull_request"
    action: Literal["opened", "synchronize", "reopened"]
    pull_request: PullRequestRef
    repository: RepositoryRef
    installation: InstallationRef


class PullRequestClosed(_Payload):
    event: ClassVar[str] = "pull_request"
    action: Literal["closed"]
    pull_request: PullRequestRef
    repository: RepositoryRef
    installation: Optional[InstallationRef] = None


class InstallationCreated(_Payload):
    event: ClassVar[str] = "installation"
    action: Literal["created"]
    installation: InstallationRef
    repositories: List[RepositoryRef] = Field(default_factory=list)


class InstallationDeleted(_Payload):
    event: ClassVar[str] = "installation"
    action: Literal["deleted"]
    installation: InstallationRef


class RepositoriesAdded(_Payload):
    event: ClassVar[str] = "installation_repositories"
    action: Literal["added"]
    installation: InstallationRef
    repositories_added: List[RepositoryRef] = Field(default_factory=list)


class RepositoriesRemoved(_Payload):
    event: ClassVar[str] = "installation_repositories"
    action: Literal["removed"]
    installation: InstallationRef
    repositories_removed: List[RepositoryRef] = Field(default_factory=list)


WebhookEvent = Union[
    PullRequestQueued,
    PullRequestClosed,
    InstallationCreated,
    InstallationDeleted,
    RepositoriesAdded,
    RepositoriesRemoved,
]

EVENT_MODELS: Dict[Tuple[str, str], Type[_Payload]] = {
    ("pull_request", "opened"): PullRequestQueued,
    ("pull_request", "synchronize"): PullRequestQueued,
    ("pull_request", "reopened"): PullRequestQueued,
    ("pull_request", "closed"): PullRequestClosed,
    ("installation", "created"): InstallationCreated,
    ("installation", "deleted"): InstallationDeleted,
    ("installation_repositories", "added"): RepositoriesAdded,
    ("installation_repositories", "removed"): RepositoriesRemoved,
}


def parse_event(event_name: str, payload: Dict[str, Any]) -> Optional[WebhookEvent]:
    """Validate a webhook payload into its event model.

    Returns None for (event, action) pairs the service does not handle.
    Raises pydantic.ValidationError when a handled payload is malformed.
    """
    action = payload.get("action") if isinstance(payload, dict) else None
    model = EVENT_MODELS.get((event_name, action or ""))
    if model is None:
        return None
    return model.model_validate(payload)


def describe(event: WebhookEvent) -> str:
    return f"{event.event}.{event.action}"
