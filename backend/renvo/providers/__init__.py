"""
支付通道适配器

- base.py: 能力接口和归一化数据结构
- card_gateway.py: 卡支付网关（Stripe）
- mobile_iap.py: 移动端应用内购买（App Store）
- apple_jws.py: App Store 签名数据校验
- registry.py: 按 provider 标签分派
"""
from .base import (
    NormalizedEvent,
    PaymentProviderAdapter,
    ProviderSnapshot,
    ValidatedProduct,
    ValidatedReceipt,
)
from .registry import get_adapter, init_adapters, register_adapter, reset_adapters

__all__ = [
    "NormalizedEvent",
    "PaymentProviderAdapter",
    "ProviderSnapshot",
    "ValidatedProduct",
    "ValidatedReceipt",
    "get_adapter",
    "init_adapters",
    "register_adapter",
    "reset_adapters",
]
