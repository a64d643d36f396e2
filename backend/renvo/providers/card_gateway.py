"""
卡支付网关适配器（Stripe）

负责：
- Stripe-Signature 验签
- 把 Stripe 事件映射为 NormalizedEvent
- 查询 / 列出 / 取消订阅（对账和取消请求使用）

单次调用不做重试，网络类错误转换为 TransientNetworkFailure。
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any, TypeVar

import stripe

from renvo.core.config import settings
from renvo.enums import EventKind, Provider, SubscriptionStatus
from renvo.exceptions import (
    DefinitiveRejection,
    MalformedEvent,
    SignatureInvalid,
    TransientNetworkFailure,
)
from renvo.providers.base import (
    NormalizedEvent,
    ProviderSnapshot,
    ValidatedProduct,
    ValidatedReceipt,
    from_timestamp,
    parse_user_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stripe 订阅状态 → 本地订阅状态
STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.trialing,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "paused": SubscriptionStatus.paused,
    "incomplete": SubscriptionStatus.incomplete,
    "incomplete_expired": SubscriptionStatus.cancelled,
    "canceled": SubscriptionStatus.cancelled,
}

SUBSCRIPTION_EVENT_KINDS: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.purchased,
    "customer.subscription.updated": EventKind.updated,
    "customer.subscription.deleted": EventKind.expired,
    "customer.subscription.paused": EventKind.paused,
    "customer.subscription.resumed": EventKind.resumed,
}

INTERVAL_TO_CYCLE = {"month": "monthly", "year": "yearly", "week": "weekly", "day": "daily"}


def map_stripe_status(status: str | None) -> SubscriptionStatus:
    """未知状态按 incomplete 处理"""
    return STRIPE_STATUS_MAP.get(status or "", SubscriptionStatus.incomplete)


def _as_dict(obj: Any) -> dict[str, Any]:
    """StripeObject → 普通 dict"""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _first_item(sub: dict[str, Any]) -> dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _billing_cycle(item: dict[str, Any]) -> str | None:
    recurring = (item.get("price") or {}).get("recurring") or {}
    interval = recurring.get("interval")
    count = recurring.get("interval_count") or 1
    if interval == "month" and count == 3:
        return "quarterly"
    if interval == "month" and count == 6:
        return "semiannually"
    return INTERVAL_TO_CYCLE.get(interval) if interval else None


def _to_amount(cents: Any) -> Decimal | None:
    if cents is None:
        return None
    return Decimal(int(cents)) / Decimal(100)


def _invoice_subscription_ref(invoice: dict[str, Any]) -> str | None:
    ref = invoice.get("subscription")
    if ref:
        return ref if isinstance(ref, str) else ref.get("id")
    # 新版 API 把订阅放在 parent.subscription_details 中
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _invoice_metadata(invoice: dict[str, Any]) -> dict[str, Any]:
    details = invoice.get("subscription_details") or (
        (invoice.get("parent") or {}).get("subscription_details") or {}
    )
    return details.get("metadata") or invoice.get("metadata") or {}


def snapshot_from_subscription(sub: dict[str, Any]) -> ProviderSnapshot:
    """
    把 Stripe Subscription 对象转换为 ProviderSnapshot

    新版 API 的计费周期字段在 items.data[0] 上，旧版在订阅对象上，两者都兼容。
    """
    item = _first_item(sub)
    period_start = sub.get("current_period_start") or item.get("current_period_start")
    period_end = sub.get("current_period_end") or item.get("current_period_end")
    pause = sub.get("pause_collection") or {}
    return ProviderSnapshot(
        subscription_ref=sub["id"],
        status=map_stripe_status(sub.get("status")),
        customer_ref=sub.get("customer") if isinstance(sub.get("customer"), str) else None,
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        paused_until=from_timestamp(pause.get("resumes_at")),
        product_id=(item.get("price") or {}).get("product"),
        billing_cycle=_billing_cycle(item),
        created_at=from_timestamp(sub.get("created")),
        user_id=parse_user_id((sub.get("metadata") or {}).get("user_id")),
    )


class CardGatewayAdapter:
    """卡支付网关（Stripe）适配器"""

    provider = Provider.card_gateway

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
        timeout: float | None = None,
    ):
        """
        初始化适配器

        Args:
            api_key: Stripe Secret Key
            webhook_secret: Webhook 签名密钥
            tolerance_seconds: 签名时间戳允许的偏差
            timeout: 单次请求超时（秒）
        """
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds or settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        if api_key:
            stripe.api_key = api_key
        # 重试统一由 call_with_retry 负责
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS
        )

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def verify_webhook(self, body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        signature = headers.get("stripe-signature")
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise SignatureInvalid("Stripe webhook secret not configured")

        payload = body.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(str(e)) from e

        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedEvent("Webhook body is not valid JSON") from e

    def parse_event(self, payload: dict[str, Any]) -> NormalizedEvent:
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise MalformedEvent("Stripe event missing id or type")

        obj = (payload.get("data") or {}).get("object") or {}
        occurred_at = from_timestamp(payload.get("created"))
        if occurred_at is None:
            raise MalformedEvent("Stripe event missing created timestamp")

        event = NormalizedEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.ignored,
            occurred_at=occurred_at,
            payload=payload,
        )

        if event_type in SUBSCRIPTION_EVENT_KINDS:
            snapshot = snapshot_from_subscription(obj)
            event.kind = SUBSCRIPTION_EVENT_KINDS[event_type]
            event.user_id = snapshot.user_id
            event.customer_ref = snapshot.customer_ref
            event.subscription_ref = snapshot.subscription_ref
            event.period_start = snapshot.current_period_start
            event.period_end = snapshot.current_period_end
            event.product_id = snapshot.product_id
            event.billing_cycle = snapshot.billing_cycle
            event.cancel_at_period_end = snapshot.cancel_at_period_end
            event.paused_until = snapshot.paused_until
            event.provider_status = snapshot.status
            event.trial = snapshot.status == SubscriptionStatus.trialing
        elif event_type in ("invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"):
            succeeded = event_type != "invoice.payment_failed"
            lines = (obj.get("lines") or {}).get("data") or []
            period = (lines[0].get("period") if lines else None) or {}
            event.kind = EventKind.renewal_succeeded if succeeded else EventKind.renewal_failed
            event.user_id = parse_user_id(_invoice_metadata(obj).get("user_id"))
            event.customer_ref = obj.get("customer")
            event.subscription_ref = _invoice_subscription_ref(obj)
            event.transaction_ref = obj.get("payment_intent") or obj.get("id")
            event.amount = _to_amount(obj.get("amount_paid") if succeeded else obj.get("amount_due"))
            event.currency = (obj.get("currency") or "").upper() or None
            if succeeded:
                event.period_start = from_timestamp(period.get("start"))
                event.period_end = from_timestamp(period.get("end"))
        elif event_type == "charge.refunded":
            event.kind = EventKind.refunded
            event.user_id = parse_user_id((obj.get("metadata") or {}).get("user_id"))
            event.customer_ref = obj.get("customer")
            event.transaction_ref = obj.get("payment_intent") or obj.get("invoice") or obj.get("id")
            event.amount = _to_amount(obj.get("amount_refunded"))
            event.currency = (obj.get("currency") or "").upper() or None

        return event

    # ------------------------------------------------------------------
    # 出站调用
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """执行一次 Stripe 调用并转换异常"""
        try:
            return fn(*args, **kwargs)
        except stripe.APIConnectionError as e:
            raise TransientNetworkFailure(f"Stripe connection error: {e}") from e
        except stripe.RateLimitError as e:
            raise TransientNetworkFailure(f"Stripe rate limited: {e}") from e
        except stripe.APIError as e:
            raise TransientNetworkFailure(f"Stripe API error: {e}") from e

    def validate_receipt(self, raw_receipt: str) -> ValidatedReceipt:
        """
        校验卡支付的"收据"

        卡支付没有收据，客户端提交 Checkout Session ID（cs_ 开头）或订阅 ID，
        这里向 Stripe 查询对应订阅。
        """
        ref = (raw_receipt or "").strip()
        if not ref.startswith(("cs_", "sub_")):
            raise DefinitiveRejection("Not a Stripe checkout session or subscription id")

        try:
            if ref.startswith("cs_"):
                session = _as_dict(self._call(stripe.checkout.Session.retrieve, ref))
                sub_ref = session.get("subscription")
                if not sub_ref:
                    raise DefinitiveRejection("Checkout session has no subscription")
                ref = sub_ref if isinstance(sub_ref, str) else sub_ref["id"]
            sub = _as_dict(self._call(stripe.Subscription.retrieve, ref))
        except stripe.InvalidRequestError as e:
            raise DefinitiveRejection(f"Stripe rejected receipt: {e}") from e

        snapshot = snapshot_from_subscription(sub)
        product = ValidatedProduct(
            product_id=snapshot.product_id or "",
            transaction_id=sub.get("latest_invoice") if isinstance(sub.get("latest_invoice"), str) else snapshot.subscription_ref,
            purchase_at=snapshot.current_period_start,
            expires_at=snapshot.current_period_end,
            original_transaction_id=snapshot.subscription_ref,
            trial=snapshot.status == SubscriptionStatus.trialing,
            cancelled=snapshot.status == SubscriptionStatus.cancelled,
        )
        return ValidatedReceipt(
            products=[product],
            environment="production" if sub.get("livemode") else "sandbox",
            customer_ref=snapshot.customer_ref,
            user_id=snapshot.user_id,
        )

    def get_status(self, subscription_ref: str) -> ProviderSnapshot:
        try:
            sub = _as_dict(self._call(stripe.Subscription.retrieve, subscription_ref))
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                # 通道侧已不存在的订阅视为已取消
                logger.info(f"Stripe subscription {subscription_ref} not found, treating as cancelled")
                return ProviderSnapshot(
                    subscription_ref=subscription_ref, status=SubscriptionStatus.cancelled
                )
            raise
        return snapshot_from_subscription(sub)

    def list_customer_subscriptions(self, customer_ref: str) -> list[ProviderSnapshot]:
        result = _as_dict(
            self._call(stripe.Subscription.list, customer=customer_ref, status="all", limit=100)
        )
        return [snapshot_from_subscription(_as_dict(sub)) for sub in result.get("data") or []]

    def cancel(self, subscription_ref: str, at_period_end: bool = True) -> None:
        if at_period_end:
            self._call(stripe.Subscription.modify, subscription_ref, cancel_at_period_end=True)
        else:
            self._call(stripe.Subscription.cancel, subscription_ref)
        logger.info(
            f"Requested Stripe cancel for {subscription_ref} (at_period_end={at_period_end})"
        )
