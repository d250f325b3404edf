"""
Multi-document write sequences.

A ``Saga`` runs the steps of one operation (create ledger entry, update
booking, update receipt ...) in one of two modes:

* transactional - the store supports transactions (replica set / mongos);
  every step gets the Motor session, commit on success, abort on error.
* best-effort - single-node deployments; each step commits on its own and may
  register a compensating action. On error the compensations run newest
  first and the original error is re-raised.

    async with Saga("allocate") as saga:
        entry = await saga.step(create_entry, compensate=delete_entry)
"""
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from dealerledger.config.database import db_config

logger = logging.getLogger(__name__)

Action = Callable[[Any], Awaitable[Any]]
Compensation = Callable[[Any], Awaitable[None]]


class Saga:
    def __init__(self, operation: str):
        self.operation = operation
        self.transactional = db_config.supports_transactions
        self._session = None
        self._compensations: List[Tuple[str, Compensation, Any]] = []

    @property
    def session(self):
        """Motor session in transactional mode, None otherwise"""
        return self._session

    async def __aenter__(self) -> "Saga":
        if self.transactional:
            self._session = await db_config.client.start_session()
            self._session.start_transaction()
        return self

    async def step(self, action: Action, compensate: Optional[Compensation] = None,
                   name: Optional[str] = None) -> Any:
        """Run one step; ``compensate(result)`` undoes it in best-effort mode."""
        result = await action(self._session)
        if compensate is not None and not self.transactional:
            self._compensations.append((name or getattr(action, "__name__", "step"), compensate, result))
        return result

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self.transactional:
            try:
                if exc_type is None:
                    await self._session.commit_transaction()
                else:
                    logger.error("%s: aborting transaction after %s", self.operation, exc_type.__name__)
                    await self._session.abort_transaction()
            finally:
                await self._session.end_session()
            return False

        if exc_type is not None and self._compensations:
            await self._compensate()
        return False

    async def _compensate(self) -> None:
        logger.warning(
            "%s failed in best-effort mode; compensating %d step(s)",
            self.operation, len(self._compensations),
        )
        for name, compensate, result in reversed(self._compensations):
            try:
                await compensate(result)
            except Exception:
                # left for reconciliation; the original error still propagates
                logger.exception("%s: compensation for step '%s' failed", self.operation, name)
        self._compensations.clear()
