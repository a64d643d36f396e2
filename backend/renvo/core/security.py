"""
安全工具模块

认证由外部认证层完成，引擎只负责解析它签发的 JWT 并信任其中的用户 ID。
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from renvo.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: str | Any, expires_delta: timedelta | None = None) -> str:
    """
    创建访问令牌

    Args:
        subject: 令牌主体（用户 ID）
        expires_delta: 过期时长，默认使用 ACCESS_TOKEN_EXPIRE_DAYS

    Returns:
        JWT 字符串
    """
    if expires_delta is None:
        expires_delta = timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
