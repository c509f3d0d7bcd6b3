"""
身份凭证：签名令牌的编解码与校验。
令牌载荷：{actorId, tenantId|null, role, iat, exp}；HMAC 签名，密钥来自配置（AUTHZ_TOKEN_SECRET），不得硬编码。
校验顺序：结构与签名 -> 有效期（按注入时钟）-> 角色/租户组合一致性。
"""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Union

import jwt

from .collaborators import TokenCodec
from .errors import InvalidTokenSignature, MalformedToken, ReasonCode, Rejection, reject
from .models import ClaimSet, Role

DEFAULT_TTL_SEC = 24 * 3600


class JwtTokenCodec:
    """令牌签发/解析协作方（PyJWT）。只负责验签与结构，不判断过期。"""

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_sec: int = DEFAULT_TTL_SEC,
                 clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("未配置 token 签名密钥")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl_sec = ttl_sec
        self._clock = clock

    def issue(self, claims: ClaimSet, issued_at: Optional[float] = None) -> str:
        iat = int(self._clock() if issued_at is None else issued_at)
        payload = {
            "actorId": claims.actor_id,
            "tenantId": claims.tenant_id,
            "role": claims.role.value,
            "iat": iat,
            "exp": iat + self._ttl_sec,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def parse(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            raise InvalidTokenSignature(str(e)) from e
        except jwt.InvalidTokenError as e:
            raise MalformedToken(str(e)) from e


class TokenValidator:
    """validate(raw) -> ClaimSet | Rejection(INVALID_SIGNATURE | EXPIRED | MALFORMED)。无副作用。"""

    def __init__(self, codec: TokenCodec, validity_window_sec: int = DEFAULT_TTL_SEC,
                 clock: Callable[[], float] = time.time) -> None:
        self._codec = codec
        self._window = validity_window_sec
        self._clock = clock

    def validate_header(self, authorization: Optional[str]) -> Union[ClaimSet, Rejection]:
        """从 Authorization: Bearer <token> 取令牌后校验。"""
        if not authorization or not authorization.strip().lower().startswith("bearer "):
            return reject(ReasonCode.UNAUTHENTICATED)
        token = authorization.strip()[7:].strip()
        if not token:
            return reject(ReasonCode.UNAUTHENTICATED, "缺少 token")
        return self.validate(token)

    def validate(self, raw: str) -> Union[ClaimSet, Rejection]:
        try:
            payload = self._codec.parse(raw)
        except InvalidTokenSignature as e:
            return reject(ReasonCode.INVALID_SIGNATURE, str(e))
        except MalformedToken as e:
            return reject(ReasonCode.MALFORMED, str(e))

        try:
            issued_at = float(payload["iat"])
            expires_at = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return reject(ReasonCode.MALFORMED, "iat/exp 缺失或非数字")
        now = self._clock()
        if now >= expires_at or now >= issued_at + self._window:
            return reject(ReasonCode.EXPIRED)

        return _claims_from_payload(payload)


def _claims_from_payload(payload: Dict[str, Any]) -> Union[ClaimSet, Rejection]:
    actor_id = payload.get("actorId")
    if not isinstance(actor_id, str) or not actor_id:
        return reject(ReasonCode.MALFORMED, "actorId 缺失")
    try:
        role = Role(payload.get("role"))
    except ValueError:
        return reject(ReasonCode.MALFORMED, f"未知角色: {payload.get('role')!r}")
    tenant_id = payload.get("tenantId")
    if tenant_id is not None and (not isinstance(tenant_id, str) or not tenant_id):
        return reject(ReasonCode.MALFORMED, "tenantId 格式错误")
    # 平台管理员不得携带租户
    if role is Role.PLATFORM_ADMIN and tenant_id is not None:
        return reject(ReasonCode.MALFORMED, "super_admin 不得绑定租户")
    return ClaimSet(actor_id=actor_id, tenant_id=tenant_id, role=role)
