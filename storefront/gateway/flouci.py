"""Flouci (api.flouci.com v2) adapter.

Amounts go over the wire in millimes. Both calls authenticate with the
``apppublic``/``appsecret`` header pair; session creation also repeats the
credentials in the body.
"""

import httpx
import structlog

from storefront.core.config import settings
from storefront.core.errors import GatewayError, GatewayUnavailable
from storefront.gateway.port import PaymentGateway, PaymentSession, VerificationResult

logger = structlog.get_logger(__name__)

SUCCESS = "SUCCESS"


class FlouciGateway(PaymentGateway):
    name = "flouci"

    def __init__(
        self,
        base_url: str | None = None,
        app_token: str | None = None,
        app_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.FLOUCI_BASE_URL).rstrip("/")
        self.app_token = app_token if app_token is not None else settings.FLOUCI_APP_TOKEN
        self.app_secret = app_secret if app_secret is not None else settings.FLOUCI_APP_SECRET
        self.timeout = timeout if timeout is not None else settings.FLOUCI_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Content-Type": "application/json",
                "apppublic": self.app_token,
                "appsecret": self.app_secret,
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> tuple[httpx.Response, dict | None]:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("flouci.timeout", path=path, timeout=self.timeout)
            raise GatewayUnavailable(f"Flouci timed out after {self.timeout}s") from exc
        except httpx.RequestError as exc:
            logger.warning("flouci.transport_error", path=path, error=str(exc))
            raise GatewayUnavailable("Flouci unreachable") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None
        if body is not None and not isinstance(body, dict):
            body = None

        if resp.is_error and body is None:
            logger.warning("flouci.unreadable_error", path=path, status_code=resp.status_code)
            raise GatewayUnavailable(f"Flouci returned HTTP {resp.status_code}")
        return resp, body

    def create_payment(self, amount_minor: int, order_id: str, success_link: str, fail_link: str) -> PaymentSession:
        payload = {
            "app_token": self.app_token,
            "app_secret": self.app_secret,
            "amount": amount_minor,
            "accept_card": "true",
            "session_timeout_secs": settings.FLOUCI_SESSION_TIMEOUT_SECS,
            "success_link": success_link,
            "fail_link": fail_link,
            "developer_tracking_id": order_id,
        }
        resp, body = self._request("POST", "/generate_payment", json=payload)
        if body is None:
            raise GatewayUnavailable("Flouci returned an unreadable body")
        result = body.get("result") or {}
        if resp.is_error or not result.get("payment_id") or not result.get("link"):
            message = body.get("message") or result.get("message") or "Failed to generate payment"
            logger.info("flouci.generate_refused", order_id=order_id, status_code=resp.status_code, message=message)
            raise GatewayError(message, body)

        logger.info("flouci.generated", order_id=order_id, payment_id=result["payment_id"], amount_minor=amount_minor)
        return PaymentSession(payment_id=result["payment_id"], redirect_link=result["link"])

    def verify_payment(self, payment_id: str) -> VerificationResult:
        resp, body = self._request("GET", f"/verify_payment/{payment_id}")
        if body is None:
            raise GatewayUnavailable("Flouci returned an unreadable body")
        if resp.is_error:
            return VerificationResult(success=False, status="error", raw=body)

        result = body.get("result") or {}
        status = result.get("status") or "UNKNOWN"
        success = status == SUCCESS
        tx_id = result.get("id")
        logger.info("flouci.verified", payment_id=payment_id, status=status)
        return VerificationResult(
            success=success,
            status=status,
            transaction_id=str(tx_id) if success and tx_id is not None else None,
            raw=body,
        )
