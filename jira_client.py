"""
Minimal Jira REST client used to check the status of issues linked from
merge request titles.
"""

import logging
from typing import Dict, Optional

import requests
from requests.auth import HTTPBasicAuth


logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = '2'
DEFAULT_TIMEOUT = 30


class JiraError(Exception):
    """Raised when a Jira request fails for a reason other than a missing issue."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ''):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class JiraClient:
    """Read-only access to Jira issues."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        email: Optional[str] = None,
        api_token: Optional[str] = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: int = DEFAULT_TIMEOUT
    ):
        self.base_url = base_url.rstrip('/')
        self.api_version = str(api_version)
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({'Accept': 'application/json'})
        if token:
            self._session.headers['Authorization'] = f'Bearer {token}'
        elif email and api_token:
            self._session.auth = HTTPBasicAuth(email, api_token)
        self._status_cache: Dict[str, Optional[str]] = {}

    def browse_url(self, issue_key: str) -> str:
        """Return the web URL of an issue."""
        return f"{self.base_url}/browse/{issue_key}"

    def get_issue_status(self, issue_key: str) -> Optional[str]:
        """
        Get the status name of an issue.

        Args:
            issue_key: Issue key, e.g. "PROJ-123"

        Returns:
            The status name, or None if the issue does not exist

        Raises:
            JiraError: If the request fails with any status other than 404
        """
        if issue_key in self._status_cache:
            return self._status_cache[issue_key]

        url = f"{self.base_url}/rest/api/{self.api_version}/issue/{issue_key}"
        try:
            resp = self._session.request(
                'GET', url, params={'fields': 'status'}, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise JiraError(f"jira - http client error: {e}") from e

        if resp.status_code == 404:
            logger.debug(f"Jira issue {issue_key} not found")
            self._status_cache[issue_key] = None
            return None
        if resp.status_code >= 400:
            body = (resp.text or '').strip()[:500]
            raise JiraError(
                f"jira - invalid request. Status code: {resp.status_code}. Body: {body}",
                status_code=resp.status_code,
                body=body
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise JiraError(
                f"jira - response for {issue_key} is not JSON", status_code=resp.status_code
            ) from e

        status = ((data.get('fields') or {}).get('status') or {}).get('name')
        logger.debug(f"Jira issue {issue_key} has status {status!r}")
        self._status_cache[issue_key] = status
        return status
