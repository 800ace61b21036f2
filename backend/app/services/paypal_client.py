"""
PayPal REST 客户端：OAuth2 token、发票（Invoicing v2）、打款（Payouts v1）、webhook 验签

所有调用都有超时上限；网络错误、超时、非 2xx 统一转为 ExternalServiceError，
2xx 但响应体无法解析转为 ExternalResponseError（请求可能已生效）。
PayPal 返回的原始错误只写日志，不透传给调用方。
"""
import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import ExternalResponseError, ExternalServiceError
from app.schemas.payment import (
    CreatedInvoice,
    CreatedPayout,
    ExternalInvoiceState,
    ExternalPayoutItemState,
)
from app.services import cache_service

logger = logging.getLogger(__name__)

# webhook 验签需要的请求头
WEBHOOK_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)


def _money(amount: Decimal, currency: str) -> Dict[str, str]:
    return {"currency_code": currency, "value": f"{Decimal(amount):.2f}"}


class PayPalClient:
    """PayPal 支付服务客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PAYPAL_API_URL).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.PAYPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.PAYPAL_CLIENT_SECRET
        seconds = timeout or settings.PAYPAL_TIMEOUT_SECONDS
        self.timeout = httpx.Timeout(seconds, connect=min(seconds, 10.0))
        # 测试时注入 httpx.MockTransport
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    # ==========================================================
    # OAuth2
    # ==========================================================
    async def get_access_token(self) -> str:
        """client_credentials 获取 token，按 expires_in 缓存到 Redis"""
        cached = await asyncio.to_thread(cache_service.get_processor_token, self.client_id)
        if cached:
            return cached
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                )
        except httpx.HTTPError as e:
            logger.error("获取 PayPal access token 失败: %s", e)
            raise ExternalServiceError(reason=str(e)) from e
        if resp.status_code >= 400:
            logger.error("获取 PayPal access token 失败: status=%s body=%s", resp.status_code, resp.text[:500])
            raise ExternalServiceError(reason=f"oauth status {resp.status_code}")
        try:
            data = resp.json()
            token = data["access_token"]
            # 提前 60 秒过期，避免边界上用到失效 token
            ttl = max(int(data.get("expires_in", 300)) - 60, 30)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("PayPal access token 响应无法解析: status=%s body=%s", resp.status_code, resp.text[:500])
            raise ExternalServiceError(reason="oauth response unreadable") from e
        if not token:
            logger.error("PayPal access token 响应中 token 为空")
            raise ExternalServiceError(reason="oauth token empty")
        await asyncio.to_thread(cache_service.set_processor_token, self.client_id, token, ttl)
        return token

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        """带 Bearer token 的请求，返回 JSON（无响应体时返回 {}）"""
        token = await self.get_access_token()
        try:
            async with self._client() as client:
                resp = await client.request(
                    method,
                    path,
                    json=json,
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            logger.error("PayPal 请求超时 %s %s", method, path)
            raise ExternalServiceError(reason="timeout", path=path) from e
        except httpx.HTTPError as e:
            logger.error("PayPal 请求失败 %s %s: %s", method, path, e)
            raise ExternalServiceError(reason=str(e), path=path) from e
        if resp.status_code >= 400:
            try:
                body = resp.json()
                message = body.get("message") or body.get("name") or resp.text[:200]
            except (ValueError, AttributeError):
                message = resp.text[:200]
            logger.error("PayPal 返回错误 %s %s: status=%s message=%s", method, path, resp.status_code, message)
            raise ExternalServiceError(reason=message, path=path, status=resp.status_code)
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            logger.error(
                "PayPal 响应无法解析 %s %s: status=%s body=%s", method, path, resp.status_code, resp.text[:200]
            )
            raise ExternalResponseError(reason="response is not JSON", path=path, status=resp.status_code) from e
        if not isinstance(data, dict):
            logger.error("PayPal 响应格式异常 %s %s: %r", method, path, data)
            raise ExternalResponseError(reason="response is not an object", path=path, status=resp.status_code)
        return data

    # ==========================================================
    # 发票
    # ==========================================================
    async def create_invoice(
        self,
        invoice_number: str,
        order_id: int,
        order_title: str,
        website_name: str,
        amount: Decimal,
        buyer_email: str,
        buyer_name: Optional[str] = None,
    ) -> CreatedInvoice:
        """
        创建并发送发票。创建失败抛 ExternalServiceError；
        创建成功但发送失败视为成功（发票可通过链接访问），warning 中说明。
        """
        currency = settings.CURRENCY_CODE
        payload = {
            "detail": {
                "invoice_number": invoice_number,
                "reference": f"Order-{order_id}",
                "invoice_date": datetime.now(timezone.utc).date().isoformat(),
                "currency_code": currency,
                "note": f"Payment for order: {order_title}",
                "payment_term": {"term_type": "DUE_ON_RECEIPT"},
            },
            "invoicer": {
                "name": {"business_name": settings.PAYPAL_BUSINESS_NAME},
                "email_address": settings.PAYPAL_BUSINESS_EMAIL or None,
                "website": settings.APP_URL,
            },
            "primary_recipients": [
                {
                    "billing_info": {
                        "name": {"full_name": buyer_name or "Advertiser"},
                        "email_address": buyer_email,
                    }
                }
            ],
            "items": [
                {
                    "name": order_title[:200],
                    "description": f"Link placement/content on {website_name}",
                    "quantity": "1",
                    "unit_amount": _money(amount, currency),
                }
            ],
            "configuration": {
                "allow_tip": False,
                "tax_calculated_after_discount": True,
                "tax_inclusive": False,
            },
        }
        created = await self._request("POST", "/v2/invoicing/invoices", json=payload)
        invoice_id = created.get("id") or (created.get("href") or "").rstrip("/").split("/")[-1]
        if not invoice_id:
            logger.error("PayPal 创建发票响应中没有 invoice id: %s", created)
            raise ExternalResponseError(reason="invoice id missing in response")
        invoice_url = f"{settings.paypal_web_url}/invoice/p/#{invoice_id}"

        warning = None
        try:
            await self._request(
                "POST",
                f"/v2/invoicing/invoices/{invoice_id}/send",
                json={"send_to_invoicer": False, "send_to_recipient": True},
            )
        except ExternalServiceError as e:
            logger.warning("发票 %s 已创建但发送失败，买家仍可通过链接付款: %s", invoice_id, e.context)
            warning = "Invoice created but email notification failed. The advertiser can still pay via the invoice link."
        logger.info("PayPal 发票已创建 invoice_id=%s number=%s order=%s", invoice_id, invoice_number, order_id)
        return CreatedInvoice(invoice_id=invoice_id, invoice_url=invoice_url, warning=warning)

    async def get_invoice(self, invoice_id: str) -> ExternalInvoiceState:
        data = await self._request("GET", f"/v2/invoicing/invoices/{invoice_id}")
        transactions = (data.get("payments") or {}).get("transactions") or []
        return ExternalInvoiceState(
            invoice_id=invoice_id,
            status=data.get("status", "UNKNOWN"),
            transaction_id=transactions[0].get("payment_id") if transactions else None,
        )

    # ==========================================================
    # 打款
    # ==========================================================
    async def create_payout(
        self,
        payout_id: int,
        order_id: int,
        order_title: str,
        amount: Decimal,
        receiver_email: str,
    ) -> CreatedPayout:
        currency = settings.CURRENCY_CODE
        sender_batch_id = f"PAYOUT-{payout_id}-{int(datetime.now(timezone.utc).timestamp())}"
        payload = {
            "sender_batch_header": {
                "sender_batch_id": sender_batch_id,
                "email_subject": "You received a payment from Link Marketplace",
                "email_message": f"Payment for order: {order_title}. Thank you for your work!",
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {"value": f"{Decimal(amount):.2f}", "currency": currency},
                    "receiver": receiver_email,
                    "note": f"Payment for order #{order_id}",
                    "sender_item_id": str(payout_id),
                }
            ],
        }
        result = await self._request("POST", "/v1/payments/payouts", json=payload)
        header = result.get("batch_header") or {}
        batch_id = header.get("payout_batch_id")
        if not batch_id:
            logger.error("PayPal 打款响应中没有 payout_batch_id: %s", result)
            raise ExternalResponseError(reason="payout batch id missing in response")

        # item id 只在部分响应里出现：先看 items，再看 links
        item_id = None
        items = result.get("items") or []
        if items:
            item_id = items[0].get("payout_item_id")
        if not item_id:
            for link in result.get("links") or []:
                href = link.get("href", "")
                if link.get("rel") == "item" or "/payouts-item/" in href:
                    item_id = href.rstrip("/").split("/")[-1]
                    break
        if not item_id:
            logger.warning("打款 %s 未拿到 payout_item_id，webhook 将按 batch_id 匹配", payout_id)
        logger.info("PayPal 打款已创建 payout=%s batch=%s item=%s", payout_id, batch_id, item_id)
        return CreatedPayout(batch_id=batch_id, item_id=item_id, status=header.get("batch_status"))

    async def get_payout_item(self, item_id: str) -> ExternalPayoutItemState:
        data = await self._request("GET", f"/v1/payments/payouts-item/{item_id}")
        errors = data.get("errors") or {}
        if isinstance(errors, list):
            errors = errors[0] if errors else {}
        return ExternalPayoutItemState(
            item_id=item_id,
            batch_id=data.get("payout_batch_id"),
            transaction_status=data.get("transaction_status", "UNKNOWN"),
            failure_reason=errors.get("message"),
        )

    async def get_payout_batch(self, batch_id: str) -> Optional[ExternalPayoutItemState]:
        """按 batch 查询打款状态，用于创建时没拿到 item id 的打款；batch 里还没有条目时返回 None"""
        data = await self._request("GET", f"/v1/payments/payouts/{batch_id}")
        items = data.get("items") or []
        if not items or not items[0].get("payout_item_id"):
            return None
        item = items[0]
        errors = item.get("errors") or {}
        if isinstance(errors, list):
            errors = errors[0] if errors else {}
        return ExternalPayoutItemState(
            item_id=item["payout_item_id"],
            batch_id=item.get("payout_batch_id") or batch_id,
            transaction_status=item.get("transaction_status", "UNKNOWN"),
            failure_reason=errors.get("message"),
        )

    # ==========================================================
    # Webhook 验签
    # ==========================================================
    async def verify_webhook_signature(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        """
        调用 PayPal verify-webhook-signature。缺少签名头或校验不通过返回 False；
        PayPal 不可达抛 ExternalServiceError（由调用方返回 500，让 PayPal 重投）。
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        if not all(lowered.get(h) for h in WEBHOOK_SIGNATURE_HEADERS):
            return False
        if not settings.PAYPAL_WEBHOOK_ID:
            logger.error("未配置 PAYPAL_WEBHOOK_ID，无法校验 webhook 签名")
            return False
        result = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                "transmission_id": lowered["paypal-transmission-id"],
                "transmission_time": lowered["paypal-transmission-time"],
                "cert_url": lowered["paypal-cert-url"],
                "auth_algo": lowered["paypal-auth-algo"],
                "transmission_sig": lowered["paypal-transmission-sig"],
                "webhook_id": settings.PAYPAL_WEBHOOK_ID,
                "webhook_event": event,
            },
        )
        return result.get("verification_status") == "SUCCESS"
