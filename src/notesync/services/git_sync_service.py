"""Commit and remote synchronization for a notes repository.

Runs on top of an open :class:`~notesync.storage.git_wrapper.GitWrapper`
and uses the same subprocess git runner. Every operation holds the
repository lock for its whole duration and returns a ``Result``; the typed
errors raised by the git layer become the failure value.

Sync sequence: ensure remote, fetch, measure divergence, ask the
:class:`ConflictPolicy`, fast-forward or merge, push. A merge that hits
conflicts is aborted and the working tree restored to its pre-sync state.
"""

import logging
from typing import Dict, List, Optional, Tuple

from notesync.concurrency import CancellationToken, check_cancelled
from notesync.exceptions import GitError, MergeConflictError, NotesyncError
from notesync.models.schema import (
    NOTHING_TO_COMMIT,
    CommitResult,
    RemoteConfig,
    Result,
    Signature,
    SyncOutcome,
    SyncReport,
)
from notesync.observability import timed_operation
from notesync.services.conflict_policy import (
    ConflictPolicy,
    Divergence,
    MergeAction,
)
from notesync.storage.git_wrapper import GitWrapper

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "Update notes"


def identity_env(signature: Signature) -> Dict[str, str]:
    """Environment that makes git use ``signature`` as author and committer."""
    date = signature.git_date()
    return {
        "GIT_AUTHOR_NAME": signature.name,
        "GIT_AUTHOR_EMAIL": signature.email,
        "GIT_AUTHOR_DATE": date,
        "GIT_COMMITTER_NAME": signature.name,
        "GIT_COMMITTER_EMAIL": signature.email,
        "GIT_COMMITTER_DATE": date,
    }


class GitSyncEngine:
    """Commit, sync and discard for one open repository."""

    def __init__(self, handle: GitWrapper, policy: Optional[ConflictPolicy] = None):
        self.handle = handle
        self.policy = policy or ConflictPolicy()

    # =========================================================================
    # Commit
    # =========================================================================

    def commit_all(
        self,
        signature: Signature,
        message: str,
        cancel: Optional[CancellationToken] = None,
    ) -> Result[CommitResult]:
        """Stage every change in the working tree and commit it.

        Succeeds with ``NOTHING_TO_COMMIT`` when the tree is clean. If the
        commit fails or is cancelled after staging, the staging area is
        reset so a retry starts from the same state.
        """
        handle = self.handle
        try:
            with handle.lock, timed_operation("commit_all") as op:
                check_cancelled(cancel, "commit_all", "stage")
                handle.run_git(["add", "-A"])
                staged = handle.run_git(["diff", "--cached", "--quiet"], check=False)
                if staged.returncode == 0:
                    logger.debug("Nothing to commit")
                    op["created"] = False
                    return Result.success(NOTHING_TO_COMMIT)

                try:
                    check_cancelled(cancel, "commit_all", "commit")
                    handle.run_git(
                        [
                            "-c", "commit.gpgsign=false",
                            "commit", "-q", "--no-verify",
                            "-m", message.strip() or DEFAULT_COMMIT_MESSAGE,
                        ],
                        env=identity_env(signature),
                    )
                except NotesyncError:
                    self._unstage_all()
                    raise

                commit_hash = handle.head_commit()
                op["created"] = True
                op["commit"] = commit_hash[:7] if commit_hash else None
            logger.info(f"Committed {commit_hash[:7] if commit_hash else '?'} as {signature}")
            return Result.success(CommitResult(commit_hash=commit_hash))
        except NotesyncError as e:
            logger.error(f"commit_all failed: {e}")
            return Result.failure(e)

    def _unstage_all(self) -> None:
        if self.handle.head_commit() is None:
            self.handle.run_git(
                ["rm", "-r", "-q", "--cached", "--ignore-unmatch", "."], check=False
            )
        else:
            self.handle.run_git(["reset", "-q"], check=False)

    # =========================================================================
    # Sync
    # =========================================================================

    def sync(
        self,
        remote: Optional[RemoteConfig],
        signature: Optional[Signature] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Result[SyncReport]:
        """Bring the current branch in line with ``remote``.

        With no remote this is a local no-op and nothing touches the
        network. Uncommitted changes are never committed here; if a merge
        would put them at risk the sync fails with ``MergeConflictError``
        and the tree is left as it was.
        """
        handle = self.handle
        if remote is None:
            try:
                head = handle.head_commit()
            except NotesyncError as e:
                return Result.failure(e)
            logger.debug("No remote configured; sync is local only")
            return Result.success(SyncReport(SyncOutcome.LOCAL_ONLY, head=head))

        try:
            with handle.lock, timed_operation("sync", remote=remote.name) as op:
                report = self._sync_locked(remote, signature, cancel)
                op["outcome"] = report.outcome.value
            logger.info(
                f"Sync with '{remote.name}' finished: {report.outcome.value}"
                f"{' (pushed)' if report.pushed else ''}"
            )
            return Result.success(report)
        except NotesyncError as e:
            logger.error(f"Sync with '{remote.name}' failed: {e}")
            return Result.failure(e)

    def _sync_locked(
        self,
        remote: RemoteConfig,
        signature: Optional[Signature],
        cancel: Optional[CancellationToken],
    ) -> SyncReport:
        handle = self.handle
        branch = handle.current_branch()
        remote_branch = remote.branch or branch
        upstream = f"refs/remotes/{remote.name}/{remote_branch}"

        self._ensure_remote(remote)
        check_cancelled(cancel, "sync", "before_fetch")
        handle.run_git(["fetch", "--quiet", "--prune", remote.name], network=True)
        check_cancelled(cancel, "sync", "after_fetch")

        local_head = handle.head_commit()
        upstream_head = self._resolve(upstream)

        if upstream_head is None:
            if local_head is None:
                return SyncReport(SyncOutcome.UP_TO_DATE, head=None)
            self._push(remote, remote_branch)
            return SyncReport(SyncOutcome.PUSHED, head=local_head, pushed=True)

        divergence, base = self._divergence(local_head, upstream)
        upstream_changed = self._changed_since(base, upstream)
        decision = self.policy.decide(divergence, handle.changed_paths(), upstream_changed)
        logger.debug(
            f"Divergence ahead={divergence.ahead} behind={divergence.behind}: "
            f"{decision.action.value}"
        )

        if decision.action is MergeAction.UP_TO_DATE:
            return SyncReport(SyncOutcome.UP_TO_DATE, head=local_head)

        if decision.action is MergeAction.PUSH_ONLY:
            check_cancelled(cancel, "sync", "before_push")
            self._push(remote, remote_branch)
            return SyncReport(SyncOutcome.PUSHED, head=local_head, pushed=True)

        if decision.action is MergeAction.ABORT:
            raise MergeConflictError(
                decision.blocking_paths,
                message=f"Sync aborted: {decision.reason}",
                reason="uncommitted",
            )

        if decision.action is MergeAction.FAST_FORWARD:
            handle.run_git(["merge", "--ff-only", "-q", upstream])
            check_cancelled(cancel, "sync", "after_merge")
            return SyncReport(
                SyncOutcome.FAST_FORWARDED,
                head=handle.head_commit(),
                updated_paths=upstream_changed,
            )

        self._merge(local_head, upstream, unrelated=base is None, signature=signature)
        check_cancelled(cancel, "sync", "after_merge")
        self._push(remote, remote_branch)
        return SyncReport(
            SyncOutcome.MERGED,
            head=handle.head_commit(),
            pushed=True,
            updated_paths=upstream_changed,
        )

    def _ensure_remote(self, remote: RemoteConfig) -> None:
        current = self.handle.run_git(["remote", "get-url", remote.name], check=False)
        existing = current.stdout.strip() if current.returncode == 0 else None
        if remote.url is None:
            if existing is None:
                raise GitError(f"Remote '{remote.name}' is not configured")
            return
        if existing is None:
            logger.info(f"Adding remote '{remote.name}'")
            self.handle.run_git(["remote", "add", remote.name, remote.url])
        elif existing != remote.url:
            logger.info(f"Updating URL of remote '{remote.name}'")
            self.handle.run_git(["remote", "set-url", remote.name, remote.url])

    def _resolve(self, ref: str) -> Optional[str]:
        result = self.handle.run_git(["rev-parse", "--verify", "-q", ref], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _divergence(
        self, local_head: Optional[str], upstream: str
    ) -> Tuple[Divergence, Optional[str]]:
        """Commit counts and merge base; base is None for unrelated histories."""
        if local_head is None:
            behind = self.handle.run_git(["rev-list", "--count", upstream])
            return Divergence(ahead=0, behind=int(behind.stdout.strip() or 0)), None

        counts = self.handle.run_git(
            ["rev-list", "--left-right", "--count", f"HEAD...{upstream}"]
        )
        ahead, behind = (int(n) for n in counts.stdout.split())
        base = self.handle.run_git(["merge-base", "HEAD", upstream], check=False)
        merge_base = base.stdout.strip() if base.returncode == 0 else None
        return Divergence(ahead=ahead, behind=behind), merge_base or None

    def _changed_since(self, base: Optional[str], upstream: str) -> List[str]:
        if base is None:
            result = self.handle.run_git(["ls-tree", "-r", "--name-only", upstream])
        else:
            result = self.handle.run_git(["diff", "--name-only", base, upstream])
        return sorted(line for line in result.stdout.splitlines() if line)

    def _merge(
        self,
        pre_merge_head: Optional[str],
        upstream: str,
        unrelated: bool,
        signature: Optional[Signature],
    ) -> None:
        """Create a merge commit, or restore the tree and raise on conflict."""
        handle = self.handle
        signature = signature or handle.current_signature()
        args = [
            "-c", "commit.gpgsign=false",
            "merge", "--no-ff", "--no-edit", "-q",
            "-m", f"Merge {upstream.rsplit('/', 1)[-1]} from remote",
        ]
        if unrelated:
            args.append("--allow-unrelated-histories")
        result = handle.run_git(
            args + [upstream],
            check=False,
            env=identity_env(signature) if signature else None,
        )
        if result.returncode == 0:
            return

        unmerged = handle.run_git(
            ["diff", "--name-only", "--diff-filter=U"], check=False
        ).stdout.splitlines()
        logger.warning(f"Merge failed with {len(unmerged)} conflicting paths; aborting")

        abort = handle.run_git(["merge", "--abort"], check=False)
        if abort.returncode != 0 and pre_merge_head:
            handle.run_git(["reset", "--hard", "-q", pre_merge_head])
        if handle.head_commit() != pre_merge_head:
            raise GitError("Working tree could not be restored after a failed merge")

        if unmerged:
            raise MergeConflictError(sorted(unmerged))
        raise GitError(
            f"Merge of {upstream} failed",
            returncode=result.returncode,
            stderr=(result.stderr or "").strip() or None,
        )

    def _push(self, remote: RemoteConfig, remote_branch: str) -> None:
        self.handle.run_git(
            ["push", "--quiet", remote.name, f"HEAD:refs/heads/{remote_branch}"],
            network=True,
        )

    # =========================================================================
    # Discard
    # =========================================================================

    def discard_changes(self, relative_path: str) -> Result[None]:
        """Restore ``relative_path`` to its last-committed state."""
        try:
            with self.handle.lock, timed_operation("discard_changes", path=relative_path):
                return self.handle.checkout_path(relative_path)
        except NotesyncError as e:
            return Result.failure(e)
