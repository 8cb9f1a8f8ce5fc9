from .operations import (
    CommandOutcome,
    GitClient,
    GitOperationResult,
    execute_git_operation,
    format_git_error,
    is_terminal_error,
    sanitize_path,
)
from .pull_request import (
    GhCliPullRequestOpener,
    GitHubApiPullRequestOpener,
    PullRequestOpener,
    PullRequestResult,
    default_pull_request_opener,
)
from .rate_limit import TokenBucket
from .safety import SafetyCheckResult, check_git_safety

__all__ = [
    "CommandOutcome",
    "GitClient",
    "GitOperationResult",
    "execute_git_operation",
    "format_git_error",
    "is_terminal_error",
    "sanitize_path",
    "GhCliPullRequestOpener",
    "GitHubApiPullRequestOpener",
    "PullRequestOpener",
    "PullRequestResult",
    "default_pull_request_opener",
    "TokenBucket",
    "SafetyCheckResult",
    "check_git_safety",
]
