"""
Order Service — リクエスト / メッセージ処理のコンテキスト

相関 ID はスレッドローカルに置かず、引数として明示的に渡す。
1 リクエスト (または 1 メッセージ) の処理の間だけ有効。
"""

from dataclasses import dataclass, replace
from uuid import uuid4


@dataclass(frozen=True)
class RequestContext:
    correlation_id: str
    saga_id: str | None = None

    @classmethod
    def new(cls, correlation_id: str | None = None) -> "RequestContext":
        return cls(correlation_id=correlation_id or str(uuid4()))

    def with_saga(self, saga_id: str) -> "RequestContext":
        return replace(self, saga_id=saga_id)

    def log_extra(self) -> dict:
        extra = {"correlation_id": self.correlation_id}
        if self.saga_id:
            extra["saga_id"] = self.saga_id
        return extra
