"""
Redis 客户端

引擎只在两处用到 Redis：
- 定时任务锁：多个调度器实例同时运行时，同一任务只执行一次
- 通知 Stream：会员等级变化、宽限期即将结束等通知写入 Stream，由通知层消费

Redis 不可用时两者都降级（任务本次跳过、通知丢弃并记日志），不影响订阅数据本身。
"""

import logging

import redis

from renvo.core.config import settings

logger = logging.getLogger(__name__)

# 值匹配时才删除，避免误删其他实例在锁过期后重新获取的锁
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisClient:
    """Redis 客户端封装"""

    def __init__(self, url: str | None = None, **connection_kwargs):
        """
        Args:
            url: redis:// 连接串，为空时使用 REDIS_HOST / REDIS_PORT 等配置
            connection_kwargs: 传给 redis.Redis 的其他参数
        """
        if url:
            self.client = redis.Redis.from_url(url, decode_responses=True, **connection_kwargs)
        else:
            self.client = redis.Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
                password=settings.REDIS_PASSWORD,
                decode_responses=True,
                **connection_kwargs,
            )
        self._release_lock = self.client.register_script(RELEASE_LOCK_SCRIPT)

    def acquire_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        """
        获取任务锁

        Returns:
            是否获取成功；Redis 不可用时返回 False
        """
        try:
            return bool(self.client.set(lock_key, lock_value, nx=True, ex=expire_seconds))
        except redis.RedisError as e:
            logger.error(f"Could not acquire lock {lock_key}: {e}")
            return False

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        """释放任务锁，lock_value 必须与获取时一致"""
        try:
            return self._release_lock(keys=[lock_key], args=[lock_value]) == 1
        except redis.RedisError as e:
            logger.error(f"Could not release lock {lock_key}, it will expire on its own: {e}")
            return False

    def xadd(self, stream_key: str, fields: dict[str, str], maxlen: int | None = None) -> str | None:
        """
        写入 Stream

        Returns:
            消息 ID；写入失败时为 None
        """
        try:
            return self.client.xadd(stream_key, fields, maxlen=maxlen, approximate=True)
        except redis.RedisError as e:
            logger.error(f"Failed to publish to {stream_key}: {e}")
            return None


_redis_client: RedisClient | None = None


def get_redis_client() -> RedisClient:
    """进程内共享的 Redis 客户端，第一次调用时按配置创建"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
        logger.info(f"Redis client created for {settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}")
    return _redis_client
