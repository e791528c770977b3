"""Git CLI transport used by the repository synchronizer."""

from .runner import GitExecutionResult, GitNotFoundError, GitRunner, GitRunnerError

__all__ = [
    "GitRunner",
    "GitExecutionResult",
    "GitRunnerError",
    "GitNotFoundError",
]
