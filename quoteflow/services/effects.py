"""
Post-commit effect outbox
=========================

Audit records, notification emails and cache invalidation are secondary to
the pipeline's state changes.  Services queue them on an ``EffectOutbox``
while building a transaction and call ``run()`` only after the commit
succeeded.  Each effect runs in order; a failing effect is logged and the
remaining effects still run.  ``run()`` never raises.

Usage::

    outbox = EffectOutbox()
    outbox.add("audit:quote_accepted", auditService.deferred(db, ...))
    await db.commit()
    await outbox.run()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Effect = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class OutboxReport:
    """What happened when an outbox was drained."""
    succeeded: tuple[str, ...]
    failed: tuple[str, ...]


@dataclass
class EffectOutbox:
    _effects: list[tuple[str, Effect]] = field(default_factory=list)

    def add(self, name: str, effect: Effect) -> None:
        self._effects.append((name, effect))

    def extend(self, other: "EffectOutbox") -> None:
        self._effects.extend(other._effects)
        other._effects.clear()

    def discard(self) -> None:
        """Drop queued effects, e.g. after the transaction rolled back."""
        self._effects.clear()

    def __len__(self) -> int:
        return len(self._effects)

    async def run(self) -> OutboxReport:
        succeeded: list[str] = []
        failed: list[str] = []
        effects, self._effects = self._effects, []

        for name, effect in effects:
            try:
                await effect()
            except Exception:
                logger.exception("Post-commit effect %s failed; continuing", name)
                failed.append(name)
            else:
                succeeded.append(name)

        return OutboxReport(succeeded=tuple(succeeded), failed=tuple(failed))
