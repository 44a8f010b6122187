"""Code-hosting adapter using direct REST API calls.

``HostingClient`` talks to a GitHub-compatible REST API through a blocking
``httpx.Client``. ``HostingOperations`` builds transaction operations on top
of it. Remote objects such as issues and pull requests cannot be deleted
through the API, so their inverses are best-effort: an issue or pull request
is closed with an explanatory comment, and a merge cannot be undone at all
(its inverse reports a warning that ends up in the transaction's audit
trail).

Example:
    >>> with HostingClient("https://api.github.com", token, "acme", "widgets") as client:
    ...     hosting = HostingOperations(client)
    ...     issue_op, issue = hosting.create_issue("Track release", "Body")
    ...     txn.add_operation(issue_op)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from repo_atomic.engine.operation import Operation
from repo_atomic.enums import OperationKind, RetryPolicy
from repo_atomic.exceptions import ExternalServiceError
from repo_atomic.utils.retry import retry

log = structlog.get_logger(__name__)

ROLLBACK_COMMENT = "Closed automatically: the transaction that created this was rolled back."

# A lost reply may still have created the object, so creates are not re-run.
CREATE_POLICY = RetryPolicy(max_attempts=1, timeout_seconds=60.0)

# Only transport-level failures are retried; HTTP error statuses are final.
_transient = retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.TransportError,))
# Requests that create something are retried only when nothing reached the server.
_unsent = retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.ConnectError, httpx.ConnectTimeout))


class HostingClient:
    """Blocking REST client for a GitHub-compatible hosting API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        owner: str,
        repo: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API base URL (e.g., https://api.github.com)
            token: API token
            owner: Repository owner
            repo: Repository name
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.owner = owner
        self.repo = repo
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "Authorization": f"token {token.strip() if token else token}",
                "Accept": "application/vnd.github+json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HostingClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @_unsent
    def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> dict[str, Any]:
        """Create an issue and return its JSON representation."""
        log.info("create_issue", title=title)
        data: dict[str, Any] = {"title": title, "body": body}
        if labels:
            data["labels"] = list(labels)
        return self._request("POST", f"{self.repo_path}/issues", json=data)

    @_transient
    def close_issue(self, number: int) -> dict[str, Any]:
        log.info("close_issue", number=number)
        return self._request("PATCH", f"{self.repo_path}/issues/{number}", json={"state": "closed"})

    @_unsent
    def add_comment(self, number: int, body: str) -> dict[str, Any]:
        """Comment on an issue or pull request."""
        log.info("add_comment", number=number)
        return self._request("POST", f"{self.repo_path}/issues/{number}/comments", json={"body": body})

    @_unsent
    def create_pull_request(self, title: str, body: str, head: str, base: str) -> dict[str, Any]:
        log.info("create_pull_request", title=title, head=head, base=base)
        data = {"title": title, "body": body, "head": head, "base": base}
        return self._request("POST", f"{self.repo_path}/pulls", json=data)

    @_transient
    def get_pull_request(self, number: int) -> dict[str, Any]:
        log.info("get_pull_request", number=number)
        return self._request("GET", f"{self.repo_path}/pulls/{number}")

    @_transient
    def close_pull_request(self, number: int) -> dict[str, Any]:
        log.info("close_pull_request", number=number)
        return self._request("PATCH", f"{self.repo_path}/pulls/{number}", json={"state": "closed"})

    @_transient
    def merge_pull_request(self, number: int, method: str = "merge") -> dict[str, Any]:
        log.info("merge_pull_request", number=number, method=method)
        return self._request("PUT", f"{self.repo_path}/pulls/{number}/merge", json={"merge_method": method})

    @_transient
    def add_labels(self, number: int, labels: list[str]) -> list[dict[str, Any]]:
        log.info("add_labels", number=number, labels=labels)
        return self._request("POST", f"{self.repo_path}/issues/{number}/labels", json={"labels": list(labels)})

    @_transient
    def remove_label(self, number: int, label: str) -> None:
        """Remove a label. A label that is already absent is not an error."""
        log.info("remove_label", number=number, label=label)
        try:
            self._request("DELETE", f"{self.repo_path}/issues/{number}/labels/{label}")
        except ExternalServiceError as e:
            if e.status_code != 404:
                raise
            log.debug("remove_label_absent", number=number, label=label)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._client.request(method, path, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error(
                "hosting_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise ExternalServiceError(
                f"{method} {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                response_text=response.text,
            ) from e
        if response.status_code == 204 or not response.content:
            return None
        return response.json()


@dataclass
class RemoteObject:
    """Holder for the number of an issue or pull request created by an operation.

    Operations are built before the transaction runs, so later operations
    read ``number`` from this holder at execution time.
    """

    kind: str
    number: int | None = None
    url: str | None = None

    def require(self) -> int:
        if self.number is None:
            raise ExternalServiceError(f"No {self.kind} has been created yet")
        return self.number


class HostingOperations:
    """Build transaction operations over a ``HostingClient``.

    All operations are of kind ``REMOTE_API`` with its best-effort rollback
    guarantee. Issue and pull request creation run once (``CREATE_POLICY``);
    the other operations use the kind's default retry policy.
    """

    def __init__(self, client: HostingClient) -> None:
        self.client = client

    def create_issue(
        self,
        title: str,
        body: str,
        labels: Iterable[str] = (),
        *,
        op_id: str = "create-issue",
        depends_on: Iterable[str] | str = (),
    ) -> tuple[Operation, RemoteObject]:
        """Create an issue; the inverse closes it with a comment."""
        issue = RemoteObject("issue")
        labels = list(labels)

        def action() -> int:
            data = self.client.create_issue(title, body, labels or None)
            issue.number = data["number"]
            issue.url = data.get("html_url")
            return issue.number

        def inverse() -> None:
            if issue.number is None:
                return
            self.client.add_comment(issue.number, ROLLBACK_COMMENT)
            self.client.close_issue(issue.number)

        operation = Operation(
            id=op_id,
            action=action,
            inverse=inverse,
            kind=OperationKind.REMOTE_API,
            description=f"Create issue '{title}'",
            retry_policy=CREATE_POLICY,
            post_condition=lambda: issue.number is not None,
            dependencies=depends_on,
        )
        return operation, issue

    def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        *,
        op_id: str = "create-pull-request",
        depends_on: Iterable[str] | str = (),
    ) -> tuple[Operation, RemoteObject]:
        """Open a pull request; the inverse closes it with a comment."""
        pull = RemoteObject("pull request")

        def action() -> int:
            data = self.client.create_pull_request(title, body, head, base)
            pull.number = data["number"]
            pull.url = data.get("html_url")
            return pull.number

        def inverse() -> None:
            if pull.number is None:
                return
            self.client.add_comment(pull.number, ROLLBACK_COMMENT)
            self.client.close_pull_request(pull.number)

        def is_open() -> bool:
            return pull.number is not None and self.client.get_pull_request(pull.number).get("state") == "open"

        operation = Operation(
            id=op_id,
            action=action,
            inverse=inverse,
            kind=OperationKind.REMOTE_API,
            description=f"Open pull request '{title}' ({head} -> {base})",
            retry_policy=CREATE_POLICY,
            post_condition=is_open,
            dependencies=depends_on,
        )
        return operation, pull

    def add_labels(
        self,
        target: RemoteObject,
        labels: Iterable[str],
        *,
        op_id: str = "add-labels",
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Label an issue or pull request; the inverse removes those labels."""
        wanted = list(labels)

        def inverse() -> None:
            if target.number is None:
                return
            for label in wanted:
                self.client.remove_label(target.number, label)

        return Operation(
            id=op_id,
            action=lambda: self.client.add_labels(target.require(), wanted),
            inverse=inverse,
            kind=OperationKind.REMOTE_API,
            description=f"Add labels {', '.join(wanted)} to {target.kind}",
            dependencies=depends_on,
        )

    def merge_pull_request(
        self,
        target: RemoteObject,
        method: str = "merge",
        *,
        op_id: str = "merge-pull-request",
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Merge a pull request. A merge has no inverse through the API."""

        def inverse() -> str:
            return (
                f"Merged {target.kind} #{target.number} cannot be reverted automatically; "
                "revert the merge commit manually"
            )

        return Operation(
            id=op_id,
            action=lambda: self.client.merge_pull_request(target.require(), method),
            inverse=inverse,
            kind=OperationKind.REMOTE_API,
            description=f"Merge {target.kind} ({method})",
            dependencies=depends_on,
        )
