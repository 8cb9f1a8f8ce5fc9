from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import PlanExecutorError
from ..quality.scripts import run_process

LOGGER = logging.getLogger(__name__)

ALREADY_EXISTS = "already exists"


@dataclass
class PullRequestResult:
    url: str | None
    already_exists: bool = False
    output: str = ""


class PullRequestOpener:
    def open(self, source: str, target: str, title: str, body: str) -> PullRequestResult:
        raise NotImplementedError


class GhCliPullRequestOpener(PullRequestOpener):
    """Opens pull requests with the GitHub CLI (``gh``) from inside ``repo``."""

    def __init__(self, repo: str | Path, timeout_s: float = 120.0) -> None:
        self.repo = Path(repo)
        self.timeout_s = timeout_s

    def open(self, source: str, target: str, title: str, body: str) -> PullRequestResult:
        argv = ["gh", "pr", "create", "--base", target, "--head", source, "--title", title, "--body", body]
        outcome = run_process(argv, cwd=self.repo, timeout_s=self.timeout_s)
        if outcome.passed:
            url = outcome.output.strip().splitlines()[-1] if outcome.output.strip() else None
            LOGGER.info("Opened pull request %s -> %s: %s", source, target, url)
            return PullRequestResult(url=url, output=outcome.output)
        if ALREADY_EXISTS in outcome.output.lower():
            LOGGER.warning("Pull request %s -> %s already exists", source, target)
            return PullRequestResult(url=None, already_exists=True, output=outcome.output)
        raise PlanExecutorError(f"gh pr create failed ({outcome.returncode}): {outcome.output.strip()}")


@dataclass
class GitHubApiPullRequestOpener(PullRequestOpener):
    repository: str
    token: str
    base_url: str = "https://api.github.com"
    timeout_s: float = 60.0
    transport: object | None = None

    def open(self, source: str, target: str, title: str, body: str) -> PullRequestResult:
        import httpx

        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
        }
        payload = {"title": title, "head": source, "base": target, "body": body}
        url = self.base_url.rstrip("/") + f"/repos/{self.repository}/pulls"
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
            response = client.post(url, headers=headers, json=payload)
        if response.status_code == 422 and ALREADY_EXISTS in response.text.lower():
            LOGGER.warning("Pull request %s -> %s already exists", source, target)
            return PullRequestResult(url=None, already_exists=True, output=response.text)
        response.raise_for_status()
        data = response.json()
        LOGGER.info("Opened pull request %s", data.get("html_url"))
        return PullRequestResult(url=data.get("html_url"), output=response.text)


def default_pull_request_opener(repo: str | Path) -> PullRequestOpener:
    """REST API when ``GITHUB_TOKEN`` and ``GITHUB_REPOSITORY`` are set, ``gh`` otherwise."""
    token = os.getenv("GITHUB_TOKEN")
    repository = os.getenv("GITHUB_REPOSITORY")
    if token and repository:
        return GitHubApiPullRequestOpener(repository=repository, token=token)
    return GhCliPullRequestOpener(repo)
