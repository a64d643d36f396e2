"""
领域异常模块

支付对账引擎内部使用的异常分类。API 层把需要让用户看到的异常转换为 AppError，
其余异常只出现在日志中。
"""
from __future__ import annotations


class BillingError(Exception):
    """所有领域异常的基类"""


class SignatureInvalid(BillingError):
    """Webhook 签名校验失败，网关直接拒绝，不重试"""


class MalformedEvent(BillingError):
    """签名有效但缺少事件 ID / 类型等必要字段"""


class TransientNetworkFailure(BillingError):
    """
    外部调用的瞬时故障（超时、5xx、连接错误）

    timed_out 为 True 时不在原地重试，由调用方安排稍后重试。
    """

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class DefinitiveRejection(BillingError):
    """
    确定性拒绝（收据格式错误、无效收据）

    status 为提供方返回的状态码（如果有）。
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StateConflict(BillingError):
    """事件比已应用的状态更旧，或确认请求与当前状态不一致"""


class SubscriptionNotFound(BillingError):
    """无法把事件关联到任何用户或订阅"""


class ProviderOperationUnsupported(BillingError):
    """支付通道不支持该操作（例如 App Store 不能由服务端取消订阅）"""


class ItemNotFound(BillingError):
    """跟踪账单不存在或不属于当前用户"""


class InvalidConfirmation(BillingError):
    """确认结果不适用于该账单（例如周期性账单不能忽略）"""
