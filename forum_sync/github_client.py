"""
GitHub access for the forum sync cog.

REST calls go through PyGithub on a worker thread; the one operation REST
does not offer (deleting an issue) is a GraphQL mutation over aiohttp.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import aiohttp
from github import Auth, Github, GithubException

from .errors import CounterpartMissingError, ForumSyncError
from .models import IssueCommentRef, IssueRef, RepoCredentials

T = TypeVar("T")

log = logging.getLogger("red.forum_sync.github")

GRAPHQL_URL = "https://api.github.com/graphql"

DELETE_ISSUE_MUTATION = """
mutation deleteIssue($issueId: ID!) {
  deleteIssue(input: {issueId: $issueId}) {
    clientMutationId
  }
}
"""


class GitHubAPIError(ForumSyncError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def issue_ref_from_pygithub(issue: Any) -> IssueRef:
    user = getattr(issue, "user", None)
    return IssueRef(
        number=issue.number,
        node_id=issue.node_id,
        title=issue.title or "",
        body=issue.body or "",
        state=issue.state,
        locked=bool(issue.locked),
        labels=[label.name for label in issue.labels],
        is_pull_request=issue.pull_request is not None,
        html_url=issue.html_url,
        author=user.login if user else None,
    )


def issue_ref_from_payload(issue: Dict[str, Any]) -> IssueRef:
    """Build an IssueRef from the ``issue`` object of a webhook payload."""
    return IssueRef(
        number=int(issue["number"]),
        node_id=issue["node_id"],
        title=issue.get("title") or "",
        body=issue.get("body") or "",
        state=issue.get("state", "open"),
        locked=bool(issue.get("locked", False)),
        labels=[label["name"] for label in issue.get("labels") or [] if isinstance(label, dict) and "name" in label],
        is_pull_request="pull_request" in issue,
        html_url=issue.get("html_url"),
        author=(issue.get("user") or {}).get("login"),
    )


class GitHubClient:
    """
    Thin async wrapper over PyGithub and the GraphQL endpoint.

    Clients are cached per token. A 404 from GitHub is raised as
    CounterpartMissingError; any other API failure as GitHubAPIError.
    """

    def __init__(self, *, lock_reason: str = "resolved") -> None:
        self.lock_reason = lock_reason
        self._clients: Dict[str, Github] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    def _client(self, credentials: RepoCredentials) -> Github:
        if not credentials.token:
            raise GitHubAPIError(f"No GitHub token configured for {credentials.full_name}")
        client = self._clients.get(credentials.token)
        if client is None:
            log.debug("Creating GitHub client for %s", credentials.full_name)
            client = self._clients[credentials.token] = Github(auth=Auth.Token(credentials.token))
        return client

    async def _gh_call(self, fn_noargs: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn_noargs)
        except GithubException as e:
            if e.status == 404:
                raise CounterpartMissingError(str(e)) from e
            raise GitHubAPIError(f"GitHub API error {e.status}: {e.data}", e.status) from e

    def _repo(self, credentials: RepoCredentials):
        return self._client(credentials).get_repo(credentials.full_name)

    # ----------------------
    # Issues
    # ----------------------
    async def create_issue(
        self, credentials: RepoCredentials, title: str, body: str, labels: Optional[List[str]] = None
    ) -> IssueRef:
        issue = await self._gh_call(
            lambda: self._repo(credentials).create_issue(title=title, body=body, labels=labels or [])
        )
        log.info("Created issue %s#%d", credentials.full_name, issue.number)
        return issue_ref_from_pygithub(issue)

    async def update_issue(
        self,
        credentials: RepoCredentials,
        number: int,
        *,
        state: Optional[str] = None,
        title: Optional[str] = None,
        labels: Optional[List[str]] = None,
    ) -> None:
        changes: Dict[str, Any] = {}
        if state is not None:
            changes["state"] = state
        if title is not None:
            changes["title"] = title
        if labels is not None:
            changes["labels"] = labels
        if not changes:
            return

        def _edit() -> None:
            self._repo(credentials).get_issue(number).edit(**changes)

        await self._gh_call(_edit)
        log.debug("Updated issue %s#%d: %s", credentials.full_name, number, sorted(changes))

    async def lock_issue(self, credentials: RepoCredentials, number: int) -> None:
        await self._gh_call(lambda: self._repo(credentials).get_issue(number).lock(self.lock_reason))

    async def unlock_issue(self, credentials: RepoCredentials, number: int) -> None:
        await self._gh_call(lambda: self._repo(credentials).get_issue(number).unlock())

    async def delete_issue(self, credentials: RepoCredentials, node_id: str) -> None:
        await self._graphql_request(credentials, DELETE_ISSUE_MUTATION, {"issueId": node_id})
        log.info("Deleted issue %s (%s)", node_id, credentials.full_name)

    async def list_issues(self, credentials: RepoCredentials, state: str = "all") -> List[IssueRef]:
        issues = await self._gh_call(lambda: list(self._repo(credentials).get_issues(state=state)))
        return [issue_ref_from_pygithub(issue) for issue in issues]

    # ----------------------
    # Comments
    # ----------------------
    async def create_comment(self, credentials: RepoCredentials, number: int, body: str) -> IssueCommentRef:
        comment = await self._gh_call(lambda: self._repo(credentials).get_issue(number).create_comment(body))
        return IssueCommentRef(id=comment.id, issue_number=number, body=comment.body or "")

    async def delete_comment(self, credentials: RepoCredentials, number: int, comment_id: int) -> None:
        await self._gh_call(lambda: self._repo(credentials).get_issue(number).get_comment(comment_id).delete())

    async def list_comments(self, credentials: RepoCredentials) -> List[IssueCommentRef]:
        """All issue comments in the repository."""

        def _fetch() -> List[IssueCommentRef]:
            result = []
            for comment in self._repo(credentials).get_issues_comments():
                number = int(comment.issue_url.rstrip("/").rsplit("/", 1)[-1])
                result.append(IssueCommentRef(id=comment.id, issue_number=number, body=comment.body or ""))
            return result

        return await self._gh_call(_fetch)

    # ----------------------
    # Repository
    # ----------------------
    async def validate_token(self, token: str) -> Optional[str]:
        """Return the login the token belongs to, or None if GitHub rejects it."""
        gh = Github(auth=Auth.Token(token))
        try:
            return await asyncio.to_thread(lambda: gh.get_user().login)
        except GithubException:
            log.warning("GitHub token validation failed")
            return None
        finally:
            gh.close()

    async def repository_exists(self, credentials: RepoCredentials) -> bool:
        try:
            await self._gh_call(lambda: self._repo(credentials).full_name)
        except CounterpartMissingError:
            return False
        return True

    # ----------------------
    # GraphQL
    # ----------------------
    async def _graphql_request(
        self, credentials: RepoCredentials, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not credentials.token:
            raise GitHubAPIError(f"No GitHub token configured for {credentials.full_name}")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

        headers = {
            "Authorization": f"Bearer {credentials.token}",
            "Content-Type": "application/json",
        }
        payload = {"query": query, "variables": variables or {}}

        async with self._session.post(GRAPHQL_URL, headers=headers, json=payload) as response:
            if response.status != 200:
                text = await response.text()
                raise GitHubAPIError(f"GraphQL request failed with status {response.status}: {text}", response.status)
            data = await response.json()

        errors = data.get("errors") or []
        if errors:
            if any(e.get("type") == "NOT_FOUND" for e in errors):
                raise CounterpartMissingError(errors[0].get("message", "Not found"))
            raise GitHubAPIError("GraphQL errors: %s" % [e.get("message", str(e))[:100] for e in errors[:3]])
        return data.get("data") or {}

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        for client in self._clients.values():
            client.close()
        self._clients.clear()
