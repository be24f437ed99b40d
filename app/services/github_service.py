import logging
import time
from typing import Dict, List, Optional

import httpx
import jwt

from app.config import Settings, settings as default_settings
from app.models.schemas import ChangedFile
from app.services.service_errors import ServiceError

logger = logging.getLogger(__name__)


class GitHubService:
    """Fetches pull-request files as a GitHub App installation (or with a static token)."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = settings or default_settings
        self.api_base_url = self.settings.github_api_base_url.rstrip("/")
        self.timeout = self.settings.github_api_timeout_seconds
        self.transport = transport

    def fetch_changed_files(self, installation_id: int, owner: str, repo: str, pr_number: int) -> List[ChangedFile]:
        token = self.get_installation_token(installation_id)
        headers = self._build_headers(token)
        files_url = f"{self.api_base_url}/repos/{owner}/{repo}/pulls/{pr_number}/files"

        try:
            with self._client() as client:
                return self._fetch_paginated_files(client, files_url, headers, owner, repo, pr_number)
        except httpx.RequestError as exc:
            raise ServiceError(
                "Unable to reach GitHub API while fetching PR files",
                status_code=502,
                code="github_api_unreachable",
            ) from exc

    def get_installation_token(self, installation_id: int) -> str:
        if not self.settings.github_app_id:
            # personal/static token deployments; may be empty for public repos
            return self.settings.github_token.strip()

        app_jwt = self._build_app_jwt()
        url = f"{self.api_base_url}/app/installations/{installation_id}/access_tokens"
        try:
            with self._client() as client:
                response = client.post(url, headers=self._build_headers(app_jwt))
        except httpx.RequestError as exc:
            raise ServiceError(
                "Unable to reach GitHub API while creating installation token",
                status_code=502,
                code="github_api_unreachable",
            ) from exc

        if response.status_code >= 400:
            logger.warning(
                "Installation token request failed",
                extra={"installation_id": installation_id, "status": response.status_code},
            )
            raise ServiceError(
                f"Could not create installation token for installation {installation_id}",
                status_code=403 if response.status_code in (401, 403, 404) else 502,
                code="github_installation_token_failed",
            )
        return response.json()["token"]

    def _build_app_jwt(self) -> str:
        now = int(time.time())
        payload = {"iat": now - 60, "exp": now + 540, "iss": self.settings.github_app_id}
        return jwt.encode(payload, self._private_key(), algorithm="RS256")

    def _private_key(self) -> str:
        if self.settings.github_private_key:
            return self.settings.github_private_key.replace("\\n", "\n")
        if self.settings.github_private_key_path:
            with open(self.settings.github_private_key_path, "r", encoding="utf-8") as f:
                return f.read()
        raise ServiceError(
            "GITHUB_APP_ID is set but neither GITHUB_PRIVATE_KEY nor GITHUB_PRIVATE_KEY_PATH is configured",
            status_code=500,
            code="github_app_misconfigured",
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _fetch_paginated_files(
        self,
        client: httpx.Client,
        files_url: str,
        headers: Dict[str, str],
        owner: str,
        repo: str,
        pr_number: int,
    ) -> List[ChangedFile]:
        changed_files: List[ChangedFile] = []
        page = 1
        per_page = 100

        while True:
            response = client.get(files_url, headers=headers, params={"per_page": per_page, "page": page})
            self._raise_for_github_error(response, owner, repo, pr_number)

            files = response.json()
            for f in files:
                changed_files.append(
                    ChangedFile(
                        filename=f.get("filename", ""),
                        status=f.get("status", "modified"),
                        additions=int(f.get("additions", 0)),
                        deletions=int(f.get("deletions", 0)),
                        patch=f.get("patch"),
                    )
                )

            if len(files) < per_page:
                break
            page += 1

        logger.info(
            "Fetched PR files",
            extra={"repo": f"{owner}/{repo}", "pr": pr_number, "files": len(changed_files), "pages": page},
        )
        return changed_files

    def _build_headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "pr-review-service/1.0",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _raise_for_github_error(self, response: httpx.Response, owner: str, repo: str, pr_number: int) -> None:
        if response.status_code < 400:
            return

        if response.status_code == 404:
            raise ServiceError(
                f"PR #{pr_number} not found in {owner}/{repo}",
                status_code=404,
                code="pr_not_found",
            )
        if response.status_code in (401, 403):
            if response.headers.get("x-ratelimit-remaining") == "0":
                raise ServiceError(
                    "GitHub API rate limit exhausted",
                    status_code=429,
                    code="github_rate_limited",
                )
            raise ServiceError(
                "GitHub access denied. Check the app installation's repository permissions.",
                status_code=403,
                code="github_access_denied",
            )
        raise ServiceError(
            f"GitHub API error ({response.status_code}) while fetching PR files",
            status_code=502,
            code="github_api_error",
        )
