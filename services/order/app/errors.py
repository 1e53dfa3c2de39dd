"""
Order Service — 例外定義

NotFound   : 存在が前提の注文 / Saga が見つからない
Conflict   : 楽観的ロックや Saga 状態の compare-and-set に負けた
Transition : 状態機械で許可されていない遷移
"""


class OrderServiceError(Exception):
    """Order Service の全例外の基底クラス"""


class NotFoundError(OrderServiceError):
    pass


class OrderNotFound(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class SagaNotFound(NotFoundError):
    def __init__(self, saga_id: str):
        super().__init__(f"Saga not found: {saga_id}")
        self.saga_id = saga_id


class ConflictError(OrderServiceError):
    pass


class ConcurrencyConflict(ConflictError):
    """別の書き込みが先にコミットされた (version / state が一致しない)"""


class InvalidTransition(OrderServiceError):
    pass


class OrderIdGenerationError(OrderServiceError):
    """注文 ID の生成リトライを使い切った。乱数源か ID 空間の異常。"""
