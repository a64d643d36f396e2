"""
支付通道注册表

按订阅记录上的 provider 标签取得对应的适配器实例。
"""
import logging

from renvo.core.config import settings
from renvo.enums import Provider
from renvo.exceptions import ProviderOperationUnsupported
from renvo.providers.base import PaymentProviderAdapter
from renvo.providers.card_gateway import CardGatewayAdapter
from renvo.providers.mobile_iap import MobileIapAdapter

logger = logging.getLogger(__name__)

# 全局适配器实例
_adapters: dict[Provider, PaymentProviderAdapter] = {}


def init_adapters() -> dict[Provider, PaymentProviderAdapter]:
    """
    根据配置初始化所有适配器

    Returns:
        provider → 适配器
    """
    _adapters[Provider.card_gateway] = CardGatewayAdapter(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
    )
    _adapters[Provider.mobile_iap] = MobileIapAdapter()
    logger.info("Payment provider adapters initialized")
    return _adapters


def register_adapter(provider: Provider, adapter: PaymentProviderAdapter) -> None:
    """替换某个通道的适配器（测试中注入假实现）"""
    _adapters[provider] = adapter


def reset_adapters() -> None:
    _adapters.clear()


def get_adapter(provider: Provider | str) -> PaymentProviderAdapter:
    """
    获取适配器

    Raises:
        ProviderOperationUnsupported: provider 为 none 或未知
    """
    provider = Provider(provider)
    if provider == Provider.none:
        raise ProviderOperationUnsupported("Subscription has no payment provider")
    if provider not in _adapters:
        init_adapters()
    return _adapters[provider]
