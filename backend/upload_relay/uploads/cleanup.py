"""Removal of staged files once their transfer has resolved.

The local staging area is never storage: every staged file is deleted after
its transfer, whether the transfer succeeded or not. Exactly one delete
attempt is made per staged file. Failures are logged and kept in a bounded
record for operators and tests; they are never retried.
"""
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, List, Union

import aiofiles.os

from .errors import CleanupFailed
from .schemas import StagedFile

logger = logging.getLogger(__name__)

DEFAULT_HISTORY = 1024


@dataclass(frozen=True)
class Deleted:
    stored_name: str


@dataclass(frozen=True)
class DeleteFailed:
    stored_name: str
    reason: str

    def as_error(self) -> CleanupFailed:
        return CleanupFailed(self.stored_name, self.reason)

    def describe(self) -> str:
        return self.as_error().message


CleanupResult = Union[Deleted, DeleteFailed]


class CleanupCoordinator:
    """Deletes staged files exactly once.

    Args:
        history: How many recent results (and failures) to remember.
    """

    def __init__(self, history: int = DEFAULT_HISTORY) -> None:
        self._history = history
        self._results: "OrderedDict[Path, CleanupResult]" = OrderedDict()
        self._failures: Deque[DeleteFailed] = deque(maxlen=history)
        self.attempts = 0

    @property
    def failures(self) -> List[DeleteFailed]:
        """Recent delete failures, oldest first."""
        return list(self._failures)

    async def cleanup(self, staged: StagedFile) -> CleanupResult:
        """Delete *staged* from disk.

        A repeated call for a file that was already handled makes no new
        delete attempt and returns the earlier result.
        """
        previous = self._results.get(staged.path)
        if previous is not None:
            logger.warning(
                "[uploads/cleanup] Cleanup already ran for %s, not deleting again",
                staged.stored_name,
            )
            return previous

        self.attempts += 1
        try:
            await aiofiles.os.remove(staged.path)
        except FileNotFoundError:
            result: CleanupResult = DeleteFailed(staged.stored_name, "file already gone")
        except OSError as exc:
            result = DeleteFailed(staged.stored_name, exc.strerror or str(exc))
        else:
            result = Deleted(staged.stored_name)

        self._remember(staged.path, result)
        if isinstance(result, DeleteFailed):
            self._failures.append(result)
            logger.error("[uploads/cleanup] %s", result.describe())
        else:
            logger.info("[uploads/cleanup] Deleted staged file %s", staged.stored_name)
        return result

    def _remember(self, path: Path, result: CleanupResult) -> None:
        self._results[path] = result
        while len(self._results) > self._history:
            self._results.popitem(last=False)
