class ServiceError(Exception):
    """Failure talking to an upstream collaborator (GitHub API, persistence)."""

    def __init__(self, message: str, status_code: int = 500, code: str = "service_error") -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        return f"{self.message} ({self.code})"
