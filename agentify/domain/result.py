"""编排轮次的返回值类型。

每一轮编排要么成功返回 Ok(value)，要么返回 Err(TurnFailure)。
TurnFailure 自带 recoverable 标记，调用方只需判断类型即可决定
是把错误包装成 TurnResult 还是向外抛出。
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from agentify.domain.exceptions import classify_error


T = TypeVar("T")


@dataclass
class TurnFailure:
    error: BaseException
    recoverable: bool

    @classmethod
    def classify(cls, error: BaseException) -> "TurnFailure":
        return cls(error=error, recoverable=classify_error(error) == "recoverable")


@dataclass
class Ok(Generic[T]):
    value: T


@dataclass
class Err:
    failure: TurnFailure


Result = Union[Ok[T], Err]
