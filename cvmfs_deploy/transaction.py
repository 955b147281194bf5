"""
Script: cvmfs_deploy/transaction.py
What: Opens, aborts, and publishes the CVMFS transaction on the Stratum 0.
Doing: Wraps `cvmfs_server transaction|abort|publish` and tracks the transaction state.
Why: A transaction left open blocks every later publish on the repository.
Goal: Resolve each opened transaction exactly once, and decide whether to publish.
"""

from __future__ import annotations

import enum

from cvmfs_deploy.common import CiToolError, log, log_debug
from cvmfs_deploy.remote import SshSession


BOT_DEPLOY_COMMAND = "@galaxybot deploy"


class TransactionState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    PUBLISHED = "published"
    ABORTED = "aborted"


def publish_tag(git_commit: str) -> str:
    return f"tools-{git_commit[:7]}"


def publish_message(git_commit: str) -> str:
    return f"Automated tool installation for commit {git_commit}"


def check_bot_command(comment_body: str) -> bool:
    """True when a PR comment asks the bot to deploy (prefix match)."""
    log("Checking for Github PR Bot commands")
    log_debug(f"Value of $ghprbCommentBody is: {comment_body or 'UNSET'}")
    return comment_body.startswith(BOT_DEPLOY_COMMAND)


def resolve_publish_intent(publish: bool, comment_body: str) -> bool:
    # The bot command can only turn publishing on, never off.
    intent = publish or check_bot_command(comment_body)
    if intent:
        log_debug("Changes will be published")
    else:
        log_debug("Test installation, changes will be discarded")
    return intent


class CvmfsTransaction:
    def __init__(self, session: SshSession, repo: str) -> None:
        self.session = session
        self.repo = repo
        self.state = TransactionState.CLOSED

    def _require(self, expected: TransactionState, action: str) -> None:
        if self.state is not expected:
            raise CiToolError(
                f"Cannot {action} transaction on {self.repo}: transaction is {self.state.value}"
            )

    def begin(self) -> None:
        self._require(TransactionState.CLOSED, "open")
        log(f"Opening transaction on {self.repo}")
        self.session.exec_on(["cvmfs_server", "transaction", self.repo])
        self.state = TransactionState.OPEN

    def abort(self) -> None:
        self._require(TransactionState.OPEN, "abort")
        log(f"Aborting transaction on {self.repo}")
        self.session.exec_on(["cvmfs_server", "abort", "-f", self.repo])
        self.state = TransactionState.ABORTED

    def publish(self, git_commit: str) -> None:
        self._require(TransactionState.OPEN, "publish")
        log(f"Publishing transaction on {self.repo}")
        self.session.exec_on(
            [
                "cvmfs_server",
                "publish",
                "-a", publish_tag(git_commit),
                "-m", publish_message(git_commit),
                self.repo,
            ]
        )
        self.state = TransactionState.PUBLISHED
