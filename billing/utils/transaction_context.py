"""
Context manager для атомарных транзакций с поддержкой автоматического rollback.

Использование:
    async with TransactionContext(session, name="fulfill:42") as tx:
        await order_dal.mark_orders_discounted(tx.session, ids)
        # Если нужно откатить без исключения
        tx.mark_for_rollback()

    # Автоматический commit/rollback в __aexit__
"""

import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession


class TransactionContext:
    """
    Async context manager для атомарных транзакций с гарантированным commit/rollback.

    - commit при успешном завершении блока
    - rollback при любом исключении (исключение пробрасывается дальше)
    - rollback без исключения через mark_for_rollback()
    """

    def __init__(self, session: AsyncSession, name: Optional[str] = None):
        self.session = session
        self.name = name or "transaction"
        self._should_rollback = False

    async def __aenter__(self):
        self._should_rollback = False
        logging.debug(f"TransactionContext[{self.name}]: entering")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                logging.warning(
                    f"TransactionContext[{self.name}]: exception occurred, rolling back: {exc_type.__name__}"
                )
                await self.session.rollback()
            elif self._should_rollback:
                logging.info(f"TransactionContext[{self.name}]: explicit rollback requested")
                await self.session.rollback()
            else:
                logging.debug(f"TransactionContext[{self.name}]: committing")
                await self.session.commit()

        except Exception as e:
            logging.error(
                f"TransactionContext[{self.name}]: error during commit/rollback: {e}",
                exc_info=True
            )
            try:
                await self.session.rollback()
            except Exception as rollback_error:
                logging.critical(
                    f"TransactionContext[{self.name}]: failed to rollback after error: {rollback_error}",
                    exc_info=True
                )
            raise

        # Не подавляем исключения
        return False

    def mark_for_rollback(self):
        logging.debug(f"TransactionContext[{self.name}]: marked for rollback")
        self._should_rollback = True
