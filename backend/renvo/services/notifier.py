"""
通知服务

引擎只负责告知通知层发生了什么（宽限期即将结束、会员等级变化等），
具体的推送 / 邮件由通知层消费 Redis Stream 后完成。
"""
import json
import logging
from typing import Any

from renvo.core.redis_client import get_redis_client

logger = logging.getLogger(__name__)

NOTIFICATION_STREAM_KEY = "renvo:notifications"
NOTIFICATION_STREAM_MAXLEN = 10000


class Notifier:
    """通知发布器"""

    def notify(self, user_id: int, kind: str, **data: Any) -> None:
        """
        发布一条通知

        Args:
            user_id: 用户 ID
            kind: 通知类型（如 "grace_ending_soon"、"tier_changed"）
            **data: 通知附带的数据
        """
        logger.info(f"Notify user {user_id}: {kind} {data}")
        get_redis_client().xadd(
            NOTIFICATION_STREAM_KEY,
            {"user_id": str(user_id), "kind": kind, "data": json.dumps(data, default=str)},
            maxlen=NOTIFICATION_STREAM_MAXLEN,
        )


# 全局通知器实例
_notifier: Notifier | None = None


def set_notifier(notifier: Notifier | None) -> None:
    """替换全局通知器（测试中注入记录型实现）"""
    global _notifier
    _notifier = notifier


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier
