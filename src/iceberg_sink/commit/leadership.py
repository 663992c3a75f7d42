"""Coordinator leadership as seen by the commit core.

Election itself belongs to the orchestration host.  The core only needs to
ask "am I still the leader" right before a table commit, and to notice a
demotion between processing steps.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

logger = structlog.get_logger()


class Leadership:
    """Leader flag plus a cancellation signal raised on demotion.

    ``check`` is an optional host-supplied callable consulted in addition to the
    local flag, e.g. a lookup of which task currently owns the first source
    partition.
    """

    def __init__(
        self,
        *,
        leader: bool = False,
        check: Callable[[], bool] | None = None,
    ) -> None:
        self._leader = leader
        self._check = check
        self._demoted = asyncio.Event()

    def is_leader(self) -> bool:
        if not self._leader:
            return False
        if self._check is not None and not self._check():
            self.demote()
            return False
        return True

    @property
    def cancelled(self) -> bool:
        return self._demoted.is_set()

    def promote(self) -> None:
        if not self._leader:
            logger.info("leadership.promoted")
        self._leader = True
        self._demoted = asyncio.Event()

    def demote(self) -> None:
        if self._leader:
            logger.warning("leadership.demoted")
        self._leader = False
        self._demoted.set()

    async def wait_demoted(self) -> None:
        await self._demoted.wait()
