from relay.clients.tracker import ClickUpClient, WorkTracker, request_with_retry
from relay.clients.vcs import GitHubCliHost, VcsHost

__all__ = [
    "ClickUpClient",
    "GitHubCliHost",
    "VcsHost",
    "WorkTracker",
    "request_with_retry",
]
