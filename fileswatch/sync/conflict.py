"""Conflict resolution for bidirectional watch pairs."""

import logging
from dataclasses import replace
from typing import Union

from ..utils import utc_now_iso
from .models import (
    ChangeOrigin,
    ConflictCase,
    FileSnapshot,
    Resolution,
    TransferKind,
    TransferTask,
)

logger = logging.getLogger(__name__)


def _mtime(snapshot: FileSnapshot) -> float:
    return snapshot.modified_time if snapshot.modified_time is not None else 0.0


def pick_newest(case: ConflictCase) -> ChangeOrigin:
    """Later modification time wins; ties go to the larger file, then remote."""
    local_mtime = _mtime(case.local)
    remote_mtime = _mtime(case.remote)
    if local_mtime != remote_mtime:
        return ChangeOrigin.LOCAL if local_mtime > remote_mtime else ChangeOrigin.REMOTE
    if case.local.size != case.remote.size:
        return (
            ChangeOrigin.LOCAL
            if case.local.size > case.remote.size
            else ChangeOrigin.REMOTE
        )
    return ChangeOrigin.REMOTE


def pick_largest(case: ConflictCase) -> ChangeOrigin:
    """Larger file wins; ties are broken like :func:`pick_newest`."""
    if case.local.size != case.remote.size:
        return (
            ChangeOrigin.LOCAL
            if case.local.size > case.remote.size
            else ChangeOrigin.REMOTE
        )
    return pick_newest(case)


class ConflictResolver:
    """Applies the configured conflict policy.

    Examples:
        >>> resolver = ConflictResolver("newest")
        >>> case = resolver.resolve(case)  # doctest: +SKIP
        >>> tasks = resolver.tasks_for(case)  # doctest: +SKIP
    """

    def __init__(
        self,
        policy: Union[Resolution, str] = Resolution.NEWEST,
        backup: bool = True,
    ):
        """Initialize the resolver.

        Args:
            policy: "newest", "largest" or "manual"
            backup: Keep a copy of the losing side before overwriting it

        Raises:
            ValueError: If the policy is unknown
        """
        if isinstance(policy, str) and not isinstance(policy, Resolution):
            policy = Resolution.from_policy(policy)
        if policy is Resolution.UNRESOLVED:
            raise ValueError("unresolved is not a conflict policy")
        self.policy = policy
        self.backup = backup

    def new_case(
        self, path: str, local: FileSnapshot, remote: FileSnapshot
    ) -> ConflictCase:
        """Create an unresolved case for a path changed on both sides."""
        return ConflictCase(
            path=path, local=local, remote=remote, detected_at=utc_now_iso()
        )

    def resolve(self, case: ConflictCase) -> ConflictCase:
        """Apply the policy to a case.

        Manual policy leaves the case unresolved; it is persisted until an
        operator picks a side with :meth:`choose`.

        Returns:
            The case with ``resolution`` and ``winner`` set
        """
        if case.is_resolved:
            return case

        if self.policy is Resolution.MANUAL:
            logger.info(f"Conflict on {case.path} waits for manual resolution")
            return replace(case, resolution=Resolution.UNRESOLVED, winner=None)

        if self.policy is Resolution.LARGEST:
            winner = pick_largest(case)
        else:
            winner = pick_newest(case)

        logger.info(
            f"Conflict on {case.path} resolved by {self.policy.value}: "
            f"{winner.value} wins"
        )
        return replace(case, resolution=self.policy, winner=winner)

    def choose(self, case: ConflictCase, choice: ChangeOrigin) -> ConflictCase:
        """Resolve a manual case with an operator decision."""
        logger.info(f"Conflict on {case.path} resolved manually: keep {choice.value}")
        return replace(
            case, resolution=Resolution.MANUAL, winner=choice, chosen=choice
        )

    def tasks_for(self, case: ConflictCase) -> list[TransferTask]:
        """Transfers that make both sides converge on the winner.

        Returns:
            One upload (local wins) or download (remote wins); nothing for
            an unresolved case
        """
        if not case.is_resolved or case.winner is None:
            return []

        if case.winner is ChangeOrigin.LOCAL:
            kind = TransferKind.UPLOAD
        else:
            kind = TransferKind.DOWNLOAD
        return [
            TransferTask(
                path=case.path,
                kind=kind,
                backup_first=self.backup,
                reason=f"conflict ({case.resolution.value}, {case.winner.value} wins)",
            )
        ]
