"""
App Store 签名数据（JWS）校验

App Store Server Notifications V2 和 Server API 返回的 signedPayload /
signedTransactionInfo / signedRenewalInfo 都是 ES256 JWS，头部 x5c 携带证书链：
叶子证书 → 中间证书 → 根证书。

校验步骤：
1. 证书链中每一张证书都由下一张直接签发
2. 根证书的 SHA-256 指纹在配置的受信任列表中
3. 所有证书在当前时间有效
4. 用叶子证书的公钥校验 JWS 签名
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Any

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes

from renvo.core.config import settings
from renvo.exceptions import SignatureInvalid

logger = logging.getLogger(__name__)


def _load_chain(x5c: list[str]) -> list[x509.Certificate]:
    try:
        return [x509.load_der_x509_certificate(base64.b64decode(cert)) for cert in x5c]
    except ValueError as e:
        raise SignatureInvalid(f"Invalid x5c certificate: {e}") from e


def verify_signed_payload(
    token: str,
    trusted_fingerprints: list[str] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    校验 App Store JWS 并返回载荷

    Args:
        token: JWS 字符串
        trusted_fingerprints: 受信任根证书的 SHA-256 指纹（十六进制），默认读配置
        now: 校验证书有效期使用的时间

    Returns:
        JWS 载荷

    Raises:
        SignatureInvalid: 证书链或签名校验失败
    """
    if trusted_fingerprints is None:
        trusted_fingerprints = list(settings.APPLE_ROOT_CERT_FINGERPRINTS)
    trusted = {fp.lower().replace(":", "") for fp in trusted_fingerprints}
    if not trusted:
        raise SignatureInvalid("No trusted App Store root certificates configured")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as e:
        raise SignatureInvalid(f"Malformed JWS: {e}") from e

    if header.get("alg") != "ES256":
        raise SignatureInvalid(f"Unexpected JWS algorithm: {header.get('alg')}")
    x5c = header.get("x5c") or []
    if len(x5c) < 2:
        raise SignatureInvalid("JWS x5c chain too short")

    chain = _load_chain(x5c)
    try:
        for child, issuer in zip(chain, chain[1:]):
            child.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature) as e:
        raise SignatureInvalid(f"Broken x5c chain: {e}") from e

    root_fingerprint = chain[-1].fingerprint(hashes.SHA256()).hex()
    if root_fingerprint not in trusted:
        raise SignatureInvalid("JWS root certificate is not trusted")

    now = now or datetime.now(timezone.utc)
    for cert in chain:
        if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
            raise SignatureInvalid("JWS certificate outside its validity window")

    try:
        return jwt.decode(
            token,
            key=chain[0].public_key(),
            algorithms=["ES256"],
            options={"verify_aud": False},
        )
    except jwt.PyJWTError as e:
        raise SignatureInvalid(f"JWS signature invalid: {e}") from e


def decode_optional(token: str | None, trusted_fingerprints: list[str] | None = None) -> dict[str, Any]:
    """校验可选的嵌套 JWS（如 signedRenewalInfo），为空时返回空 dict"""
    if not token:
        return {}
    return verify_signed_payload(token, trusted_fingerprints)
