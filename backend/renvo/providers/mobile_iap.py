"""
移动端应用内购买适配器（App Store）

文档:
- Server Notifications V2: https://developer.apple.com/documentation/appstoreservernotifications
- verifyReceipt: https://developer.apple.com/documentation/appstorereceipts/verifyreceipt
- Server API: https://developer.apple.com/documentation/appstoreserverapi

负责：
- 校验通知的 signedPayload（见 apple_jws）并映射为 NormalizedEvent
- verifyReceipt 收据校验（生产环境优先，21007 时改用沙盒环境，且只改一次）
- 通过 Server API 查询订阅状态
"""
from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
import jwt

from renvo.core.config import settings
from renvo.enums import EventKind, Provider, SubscriptionStatus
from renvo.exceptions import (
    DefinitiveRejection,
    MalformedEvent,
    ProviderOperationUnsupported,
    SignatureInvalid,
    TransientNetworkFailure,
)
from renvo.providers import apple_jws
from renvo.providers.base import (
    NormalizedEvent,
    ProviderSnapshot,
    ValidatedProduct,
    ValidatedReceipt,
    from_timestamp,
    parse_user_id,
)

logger = logging.getLogger(__name__)

# verifyReceipt 状态码
RECEIPT_STATUS_VALID = 0
RECEIPT_STATUS_SANDBOX_RECEIPT_IN_PROD = 21007
RECEIPT_STATUS_MESSAGES = {
    21000: "App Store could not read the request",
    21002: "Receipt data is malformed",
    21003: "Receipt could not be authenticated",
    21004: "Shared secret does not match",
    21005: "Receipt server is temporarily unavailable",
    21006: "Subscription has expired",
    21008: "Production receipt sent to sandbox",
    21009: "App Store internal error",
    21010: "Account not found",
}
# 可重试的状态码：21005、21009 以及 21100-21199 的内部错误
RETRYABLE_RECEIPT_STATUSES = frozenset({21005, 21009, *range(21100, 21200)})

BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")

# 通知类型 → 事件类型
NOTIFICATION_KINDS: dict[str, EventKind] = {
    "SUBSCRIBED": EventKind.purchased,
    "DID_RENEW": EventKind.renewal_succeeded,
    "DID_FAIL_TO_RENEW": EventKind.renewal_failed,
    "EXPIRED": EventKind.expired,
    "GRACE_PERIOD_EXPIRED": EventKind.expired,
    "REFUND": EventKind.refunded,
    "REVOKE": EventKind.refunded,
}

# Server API lastTransactions[].status → 本地订阅状态
SERVER_API_STATUS_MAP: dict[int, SubscriptionStatus] = {
    1: SubscriptionStatus.active,
    2: SubscriptionStatus.cancelled,
    3: SubscriptionStatus.past_due,  # billing retry
    4: SubscriptionStatus.past_due,  # billing grace period
    5: SubscriptionStatus.cancelled,  # revoked
}


def _billing_cycle_from_product(product_id: str | None) -> str | None:
    if not product_id:
        return None
    lowered = product_id.lower()
    for cycle in ("yearly", "annual", "monthly", "weekly", "quarterly"):
        if cycle in lowered:
            return "yearly" if cycle == "annual" else cycle
    return None


class MobileIapAdapter:
    """移动端应用内购买（App Store）适配器"""

    provider = Provider.mobile_iap

    def __init__(
        self,
        bundle_id: str | None = None,
        shared_secret: str | None = None,
        http_client: httpx.Client | None = None,
        trusted_fingerprints: list[str] | None = None,
    ):
        """
        初始化适配器

        Args:
            bundle_id: App Bundle ID，收据与通知中的 bundle id 必须一致
            shared_secret: verifyReceipt 共享密钥
            http_client: 出站 HTTP 客户端（测试中可注入 MockTransport）
            trusted_fingerprints: 受信任根证书指纹，默认读配置
        """
        self.bundle_id = bundle_id or settings.APPLE_BUNDLE_ID
        self.shared_secret = shared_secret or settings.APPLE_SHARED_SECRET
        self.http_client = http_client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.trusted_fingerprints = trusted_fingerprints

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def verify_webhook(self, body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        """
        校验 Server Notifications V2

        通知体为 {"signedPayload": "<JWS>"}，嵌套的 signedTransactionInfo /
        signedRenewalInfo 同样校验后解码到 data.transactionInfo / data.renewalInfo。
        """
        try:
            body_json = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SignatureInvalid("Notification body is not JSON") from e

        signed_payload = body_json.get("signedPayload") if isinstance(body_json, dict) else None
        if not signed_payload:
            raise SignatureInvalid("Notification missing signedPayload")

        payload = apple_jws.verify_signed_payload(signed_payload, self.trusted_fingerprints)
        data = payload.get("data") or {}
        if data.get("bundleId") and data["bundleId"] != self.bundle_id:
            raise SignatureInvalid(f"Notification for unexpected bundle id {data['bundleId']}")

        data["transactionInfo"] = apple_jws.decode_optional(
            data.pop("signedTransactionInfo", None), self.trusted_fingerprints
        )
        data["renewalInfo"] = apple_jws.decode_optional(
            data.pop("signedRenewalInfo", None), self.trusted_fingerprints
        )
        payload["data"] = data
        return payload

    def parse_event(self, payload: dict[str, Any]) -> NormalizedEvent:
        event_id = payload.get("notificationUUID")
        notification_type = payload.get("notificationType")
        if not event_id or not notification_type:
            raise MalformedEvent("Notification missing notificationUUID or notificationType")

        subtype = payload.get("subtype")
        data = payload.get("data") or {}
        tx = data.get("transactionInfo") or {}
        renewal = data.get("renewalInfo") or {}

        kind = NOTIFICATION_KINDS.get(notification_type, EventKind.ignored)
        if notification_type == "DID_CHANGE_RENEWAL_STATUS":
            kind = (
                EventKind.cancel_scheduled
                if subtype == "AUTO_RENEW_DISABLED"
                else EventKind.renewal_resumed
            )

        occurred_at = from_timestamp(payload.get("signedDate"), millis=True) or datetime.now(
            timezone.utc
        )
        price = tx.get("price")
        auto_renew = renewal.get("autoRenewStatus")

        event = NormalizedEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=f"{notification_type}:{subtype}" if subtype else notification_type,
            kind=kind,
            occurred_at=occurred_at,
            user_id=parse_user_id(tx.get("appAccountToken")),
            subscription_ref=tx.get("originalTransactionId"),
            transaction_ref=tx.get("transactionId"),
            amount=Decimal(int(price)) / Decimal(1000) if price is not None else None,
            currency=tx.get("currency"),
            period_start=from_timestamp(tx.get("purchaseDate"), millis=True),
            period_end=from_timestamp(tx.get("expiresDate"), millis=True),
            product_id=tx.get("productId"),
            billing_cycle=_billing_cycle_from_product(tx.get("productId")),
            trial=tx.get("offerDiscountType") == "FREE_TRIAL",
            cancel_at_period_end=(auto_renew == 0) if auto_renew is not None else None,
            payload=payload,
        )
        if kind == EventKind.renewal_failed:
            # 续费失败通知中的 expiresDate 是已结束的旧周期，不参与周期推进
            event.period_start = None
            event.period_end = None
        return event

    # ------------------------------------------------------------------
    # verifyReceipt
    # ------------------------------------------------------------------

    def _post_verify_receipt(self, url: str, receipt: str) -> dict[str, Any]:
        """向 verifyReceipt 发送一次请求"""
        body: dict[str, Any] = {"receipt-data": receipt, "exclude-old-transactions": True}
        if self.shared_secret:
            body["password"] = self.shared_secret
        try:
            response = self.http_client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise TransientNetworkFailure(f"verifyReceipt timed out: {e}", timed_out=True) from e
        except httpx.TransportError as e:
            raise TransientNetworkFailure(f"verifyReceipt transport error: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkFailure(f"verifyReceipt HTTP {response.status_code}")
        if response.status_code != 200:
            raise DefinitiveRejection(f"verifyReceipt HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise TransientNetworkFailure("verifyReceipt returned invalid JSON") from e

    def validate_receipt(self, raw_receipt: str) -> ValidatedReceipt:
        """
        校验 base64 收据

        Raises:
            DefinitiveRejection: 收据格式错误、状态码表示无效、bundle id 不匹配
            TransientNetworkFailure: 超时、5xx、21005/21009 等可重试状态
        """
        receipt = (raw_receipt or "").strip()
        if not receipt:
            raise DefinitiveRejection("Receipt is empty")
        if receipt.startswith("eyJ"):
            raise DefinitiveRejection("JWS tokens are not accepted as receipts")
        if not BASE64_RE.match(receipt):
            raise DefinitiveRejection("Receipt is not valid base64")

        environment = "production"
        result = self._post_verify_receipt(settings.APPLE_VERIFY_RECEIPT_URL, receipt)
        status = result.get("status")
        if status == RECEIPT_STATUS_SANDBOX_RECEIPT_IN_PROD:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            environment = "sandbox"
            result = self._post_verify_receipt(settings.APPLE_VERIFY_RECEIPT_SANDBOX_URL, receipt)
            status = result.get("status")

        if status != RECEIPT_STATUS_VALID:
            message = RECEIPT_STATUS_MESSAGES.get(status, "Unknown receipt validation error")
            if status in RETRYABLE_RECEIPT_STATUSES or result.get("is-retryable"):
                raise TransientNetworkFailure(f"{message} ({status})")
            raise DefinitiveRejection(f"{message} ({status})", status=status)

        receipt_info = result.get("receipt") or {}
        if receipt_info.get("bundle_id") != self.bundle_id:
            raise DefinitiveRejection("Receipt bundle id does not match app")

        purchases = result.get("latest_receipt_info") or receipt_info.get("in_app") or []
        if not purchases:
            raise DefinitiveRejection("Receipt contains no purchases")

        products = [
            ValidatedProduct(
                product_id=p.get("product_id", ""),
                transaction_id=p.get("transaction_id", ""),
                original_transaction_id=p.get("original_transaction_id"),
                purchase_at=from_timestamp(p.get("purchase_date_ms"), millis=True),
                expires_at=from_timestamp(p.get("expires_date_ms"), millis=True),
                trial=p.get("is_trial_period") == "true",
                cancelled=bool(p.get("cancellation_date_ms")),
            )
            for p in purchases
        ]
        return ValidatedReceipt(products=products, environment=environment)

    # ------------------------------------------------------------------
    # Server API
    # ------------------------------------------------------------------

    def _server_api_token(self) -> str:
        """生成 App Store Server API 的 ES256 Bearer token"""
        if not (settings.APPLE_ISSUER_ID and settings.APPLE_KEY_ID and settings.APPLE_PRIVATE_KEY):
            raise ProviderOperationUnsupported("App Store Server API credentials not configured")
        now = int(time.time())
        payload = {
            "iss": settings.APPLE_ISSUER_ID,
            "iat": now,
            "exp": now + 1200,
            "aud": "appstoreconnect-v1",
            "bid": self.bundle_id,
        }
        return jwt.encode(
            payload,
            settings.APPLE_PRIVATE_KEY,
            algorithm="ES256",
            headers={"kid": settings.APPLE_KEY_ID},
        )

    def _server_api_url(self) -> str:
        if settings.ENVIRONMENT == "production":
            return settings.APPLE_SERVER_API_URL
        return settings.APPLE_SERVER_API_SANDBOX_URL

    def get_status(self, subscription_ref: str) -> ProviderSnapshot:
        url = f"{self._server_api_url()}/inApps/v1/subscriptions/{subscription_ref}"
        try:
            response = self.http_client.get(
                url, headers={"Authorization": f"Bearer {self._server_api_token()}"}
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkFailure(f"Server API timed out: {e}", timed_out=True) from e
        except httpx.TransportError as e:
            raise TransientNetworkFailure(f"Server API transport error: {e}") from e

        if response.status_code == 404:
            logger.info(f"App Store subscription {subscription_ref} not found, treating as cancelled")
            return ProviderSnapshot(subscription_ref=subscription_ref, status=SubscriptionStatus.cancelled)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkFailure(f"Server API HTTP {response.status_code}")
        if response.status_code != 200:
            raise DefinitiveRejection(f"Server API HTTP {response.status_code}")

        body = response.json()
        for group in body.get("data") or []:
            for last in group.get("lastTransactions") or []:
                if last.get("originalTransactionId") != subscription_ref:
                    continue
                tx = apple_jws.decode_optional(last.get("signedTransactionInfo"), self.trusted_fingerprints)
                renewal = apple_jws.decode_optional(last.get("signedRenewalInfo"), self.trusted_fingerprints)
                return ProviderSnapshot(
                    subscription_ref=subscription_ref,
                    status=SERVER_API_STATUS_MAP.get(last.get("status"), SubscriptionStatus.cancelled),
                    current_period_start=from_timestamp(tx.get("purchaseDate"), millis=True),
                    current_period_end=from_timestamp(tx.get("expiresDate"), millis=True),
                    cancel_at_period_end=renewal.get("autoRenewStatus") == 0,
                    product_id=tx.get("productId"),
                    billing_cycle=_billing_cycle_from_product(tx.get("productId")),
                    created_at=from_timestamp(tx.get("originalPurchaseDate"), millis=True),
                    user_id=parse_user_id(tx.get("appAccountToken")),
                )

        return ProviderSnapshot(subscription_ref=subscription_ref, status=SubscriptionStatus.cancelled)

    def list_customer_subscriptions(self, customer_ref: str) -> list[ProviderSnapshot]:
        # App Store 同一订阅组内不会同时存在多个有效订阅
        return []

    def cancel(self, subscription_ref: str, at_period_end: bool = True) -> None:
        raise ProviderOperationUnsupported(
            "App Store subscriptions can only be cancelled by the user in system settings"
        )
