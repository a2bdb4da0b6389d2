from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from docpages.errors import ErrorKind
from docpages.recovery.classifier import user_message
from docpages.recovery.models import Affordance, ErrorContext, PageError, RecoveryResult
from docpages.recovery.strategies import STRATEGY_TABLE, RecoveryStrategy, RecoveryToolkit

log = logging.getLogger(__name__)


class RecoveryEngine:
    """
    Walks the strategy list for an error kind, stopping at the first success.

    At most `max_attempts` strategies run per call and each one is bounded by
    its own timeout.
    """

    def __init__(
        self,
        toolkit: RecoveryToolkit,
        *,
        table: Mapping[ErrorKind, tuple[RecoveryStrategy, ...]] = STRATEGY_TABLE,
        max_attempts: int = 3,
        strategy_timeout_s: float = 10.0,
    ) -> None:
        self.toolkit = toolkit
        self._table = table
        self.max_attempts = max_attempts
        self._strategy_timeout_s = strategy_timeout_s

    def strategies_for(self, kind: ErrorKind) -> tuple[RecoveryStrategy, ...]:
        return tuple(self._table.get(kind, self._table.get(ErrorKind.UNKNOWN, ())))

    def is_recoverable(self, kind: ErrorKind) -> bool:
        return bool(self.strategies_for(kind))

    async def handle(self, kind: ErrorKind, ctx: ErrorContext) -> RecoveryResult:
        strategies = self.strategies_for(kind)[: self.max_attempts]
        attempts = 0

        for strategy in strategies:
            attempts += 1
            ctx.attempt_count += 1
            try:
                recovered = await asyncio.wait_for(strategy.run(ctx, self.toolkit), timeout=self._strategy_timeout_s)
            except asyncio.TimeoutError:
                log.warning(
                    "recovery: %s timed out after %.1fs (kind=%s doc=%s page=%s role=%s context=%s attempt=%s/%s fault=%r)",
                    strategy.name,
                    self._strategy_timeout_s,
                    kind.value,
                    ctx.document_id,
                    ctx.page_number,
                    ctx.caller_role.value,
                    ctx.viewing_context,
                    attempts,
                    len(strategies),
                    ctx.fault,
                )
                continue
            except Exception as exc:
                log.warning(
                    "recovery: %s failed (kind=%s doc=%s page=%s role=%s context=%s attempt=%s/%s fault=%r): %r",
                    strategy.name,
                    kind.value,
                    ctx.document_id,
                    ctx.page_number,
                    ctx.caller_role.value,
                    ctx.viewing_context,
                    attempts,
                    len(strategies),
                    ctx.fault,
                    exc,
                )
                continue

            log.info(
                "recovery: %s succeeded for %s page %s (kind=%s attempt=%s)",
                strategy.name,
                ctx.document_id,
                ctx.page_number,
                kind.value,
                attempts,
            )
            return RecoveryResult(
                success=True,
                kind=kind,
                strategy=strategy.name,
                attempts=attempts,
                record=recovered.record,
                url=recovered.url,
                pages=list(recovered.pages),
                message="Recovered",
            )

        log.error(
            "recovery: exhausted for %s page %s (kind=%s role=%s context=%s attempts=%s fault=%r)",
            ctx.document_id,
            ctx.page_number,
            kind.value,
            ctx.caller_role.value,
            ctx.viewing_context,
            attempts,
            ctx.fault,
        )
        return RecoveryResult(success=False, kind=kind, attempts=attempts, message=user_message(kind))

    def page_error(self, result: RecoveryResult, ctx: ErrorContext) -> PageError:
        recoverable = self.is_recoverable(result.kind)
        affordances = [Affordance.RETRY, Affordance.SKIP, Affordance.REPORT] if recoverable else [Affordance.SKIP, Affordance.REPORT]
        return PageError(
            document_id=ctx.document_id,
            page_number=ctx.page_number,
            kind=result.kind,
            message=user_message(result.kind),
            attempts=result.attempts,
            recoverable=recoverable,
            affordances=affordances,
        )
