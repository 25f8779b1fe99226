import logging
from typing import Optional, List, Dict, Any
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.exceptions import BalanceUpdateFailed
from billing.utils.transaction_context import TransactionContext
from db.dal import user_dal
from db.dal import balance_dal
from db.dal.balance_dal import BalanceMutationRejected
from db.models import UserBalance


class BalanceService:
    """Сервис для работы с балансом пользователя"""

    async def get_balance(self, session: AsyncSession, user_id: int) -> int:
        """
        Получить текущий баланс пользователя.

        Args:
            session: Сессия БД
            user_id: ID пользователя

        Returns:
            int: Баланс в минимальных единицах валюты (0 если пользователь не найден)
        """
        user = await user_dal.get_user_by_id(session, user_id)
        if not user:
            logging.warning(f"User {user_id} not found when getting balance")
            return 0

        return user.balance or 0

    async def apply_in_transaction(
        self,
        session: AsyncSession,
        user_id: int,
        amount: int,
        operation_type: str,
        description: Optional[str] = None,
        order_id: Optional[int] = None,
        allow_negative: bool = False,
    ) -> UserBalance:
        """
        Изменить баланс внутри уже открытой транзакции вызывающего.

        Строка пользователя блокируется до конца транзакции.

        Raises:
            BalanceUpdateFailed: пользователь не найден, баланс ушел бы в минус
                или не удалось получить блокировку
        """
        try:
            operation = await balance_dal.add_balance_operation(
                session=session,
                user_id=user_id,
                amount=amount,
                operation_type=operation_type,
                description=description,
                order_id=order_id,
                allow_negative=allow_negative,
            )
        except BalanceMutationRejected as e:
            raise BalanceUpdateFailed(str(e)) from e
        except DBAPIError as e:
            raise BalanceUpdateFailed(f"Balance row of user {user_id} could not be updated: {e}") from e

        logging.info(
            f"Balance operation '{operation_type}': user_id={user_id}, "
            f"amount={amount}, order_id={order_id}"
        )
        return operation

    async def add_balance(
        self,
        session: AsyncSession,
        user_id: int,
        amount: int,
        operation_type: str = "adjustment",
        description: Optional[str] = None,
        allow_negative: bool = False,
    ) -> bool:
        """
        Изменить баланс пользователя в собственной короткой транзакции.

        Блокировка строки, изменение, проверка на отрицательный баланс и
        сохранение выполняются атомарно; безопасно при конкурентных вызовах.

        Args:
            session: Сессия БД (без открытых изменений вызывающего)
            user_id: ID пользователя
            amount: Изменение баланса (отрицательное для списания)
            operation_type: Тип операции для истории
            description: Описание операции
            allow_negative: Разрешить отрицательный итоговый баланс

        Returns:
            bool: True при успехе, False если изменение отклонено и откатено
        """
        try:
            async with TransactionContext(session, name=f"add_balance:{user_id}"):
                await self.apply_in_transaction(
                    session,
                    user_id=user_id,
                    amount=amount,
                    operation_type=operation_type,
                    description=description,
                    allow_negative=allow_negative,
                )
        except BalanceUpdateFailed as e:
            logging.error(f"Failed to change balance of user {user_id} by {amount}: {e}")
            return False
        except DBAPIError as e:
            # commit failed after the row was changed
            logging.error(f"Balance change of user {user_id} by {amount} was not committed: {e}")
            return False
        return True

    async def get_balance_history(
        self,
        session: AsyncSession,
        user_id: int,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        operations = await balance_dal.get_user_balance_history(
            session=session,
            user_id=user_id,
            limit=limit,
            offset=offset
        )

        result = []
        for op in operations:
            result.append({
                "id": op.id,
                "amount": op.amount,
                "operation_type": op.operation_type,
                "description": op.description,
                "order_id": op.order_id,
                "created_at": op.created_at,
            })

        logging.debug(f"Retrieved {len(result)} balance history records for user {user_id}")
        return result
