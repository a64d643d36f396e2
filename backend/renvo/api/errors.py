"""
自定义异常模块

定义 API 层的异常类，用于统一的错误处理。
所有需要返回给客户端的错误都转换为 AppError，在 main.py 中有统一的异常处理器。

错误码规则：HTTP 状态码 * 1000 + 序号
- 4011xx / 4001xx: webhook 与收据
- 4002xx / 4042xx / 4092xx: 逾期确认
- 4093xx: 账号注销
- 5031xx: 支付通道暂时不可用
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息
    - status_code: HTTP 状态码

    使用示例：
        raise AppError(code=400101, message="Could not verify purchase", status_code=400)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def invalid_signature() -> AppError:
    return AppError(code=401001, message="Invalid webhook signature", status_code=401)


def malformed_event(message: str = "Missing event id/type") -> AppError:
    return AppError(code=400001, message=message, status_code=400)


def purchase_not_verified() -> AppError:
    """
    收据被确定性拒绝

    不向客户端透露通道返回的具体原因，只记录在日志中。
    """
    return AppError(code=400101, message="Could not verify purchase", status_code=400)


def no_live_subscription() -> AppError:
    return AppError(code=404101, message="No active subscription", status_code=404)


def provider_unsupported(message: str) -> AppError:
    return AppError(code=400102, message=message, status_code=400)


def provider_unavailable() -> AppError:
    """通道调用重试耗尽，客户端可以稍后再试"""
    return AppError(code=503101, message="Payment provider unavailable, please try again later", status_code=503)


def item_not_found() -> AppError:
    return AppError(code=404201, message="Recurring item not found", status_code=404)


def invalid_confirmation(message: str) -> AppError:
    return AppError(code=400201, message=message, status_code=400)


def confirmation_conflict(message: str) -> AppError:
    return AppError(code=409201, message=message, status_code=409)


def deletion_conflict(message: str) -> AppError:
    return AppError(code=409301, message=message, status_code=409)
