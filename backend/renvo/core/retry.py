"""
统一的重试封装

收据校验和对账中的外部调用都通过这里重试，参数为
(最大尝试次数, 退避策略, 是否可重试的判断函数)。
底层使用 tenacity。
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from renvo.core.config import settings
from renvo.exceptions import TransientNetworkFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_transient(exc: BaseException) -> bool:
    """
    默认判断：可重试的瞬时故障

    超时不在原地重试，交给调用方安排稍后重试，避免长时间阻塞。
    """
    return isinstance(exc, TransientNetworkFailure) and not exc.timed_out


@dataclass(frozen=True)
class RetryPolicy:
    """
    重试策略

    - max_attempts: 最大尝试次数（包含第一次），默认 4 次即最多重试 3 次
    - backoff_seconds: 指数退避的初始间隔
    - backoff_max_seconds: 单次等待上限
    - is_retryable: 判断异常是否值得重试
    """
    max_attempts: int = 4
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable_transient)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            backoff_seconds=settings.PROVIDER_BACKOFF_SECONDS,
            backoff_max_seconds=settings.PROVIDER_BACKOFF_MAX_SECONDS,
        )


def call_with_retry(policy: RetryPolicy, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    按策略执行 fn，耗尽次数后抛出最后一次的异常

    Args:
        policy: 重试策略
        fn: 要执行的函数

    Returns:
        fn 的返回值
    """
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.backoff_seconds, max=policy.backoff_max_seconds
        ),
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retrying(fn, *args, **kwargs)
