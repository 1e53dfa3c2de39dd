"""
Order Service — 注文 ID の生成

形式: ORD-XXXXXXXXXX (10 桁の乱数)
DB の自動採番には依存しない。secrets で生成し、衝突したら作り直す。
"""

import logging
import secrets
from collections.abc import Awaitable, Callable

from .errors import OrderIdGenerationError

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "ORD-"
ORDER_ID_DIGITS = 10
MAX_ATTEMPTS = 10

_LOWEST = 10 ** (ORDER_ID_DIGITS - 1)
_SPAN = 9 * _LOWEST


def random_order_id() -> str:
    return f"{ORDER_ID_PREFIX}{_LOWEST + secrets.randbelow(_SPAN)}"


async def generate_order_id(
    exists: Callable[[str], Awaitable[bool]],
    max_attempts: int = MAX_ATTEMPTS,
) -> str:
    """
    Order Store に存在しない注文 ID を返す。

    exists は ID が既に使われているかを返すコルーチン関数。
    max_attempts 回続けて衝突したら OrderIdGenerationError。
    """
    for attempt in range(1, max_attempts + 1):
        order_id = random_order_id()
        if not await exists(order_id):
            return order_id
        logger.warning(
            "Order ID collision detected: %s, retrying... (attempt %d/%d)",
            order_id,
            attempt,
            max_attempts,
        )
    raise OrderIdGenerationError(
        f"Failed to generate unique order ID after {max_attempts} attempts"
    )
