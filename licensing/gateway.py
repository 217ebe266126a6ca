from __future__ import annotations

import abc
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

import httpx

from config import (
    GATEWAY_API_BASE,
    GATEWAY_KEY,
    GATEWAY_PAY_TYPE,
    GATEWAY_PID,
    GATEWAY_TIMEOUT_SECONDS,
    PAYMENT_GATEWAY,
)
from observability import get_logger, log_event

from .errors import ConfigurationError, GatewayRejectedError, GatewayUnavailableError
from .gateway_sign import sign_gateway_params

GatewayName = Literal["mock", "zpay"]

GATEWAY_SUCCESS_CODE = 1
GATEWAY_PAID_STATUS = 1
_LOGGER = get_logger("vipserver.licensing.gateway")


@dataclass(frozen=True)
class GatewayOrder:
    """Normalized result of a successful create call."""

    gateway: GatewayName
    out_trade_no: str
    qrcode: str = ""
    img: str = ""
    trade_no: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayOrderStatus:
    out_trade_no: str
    status: int
    trade_no: Optional[str] = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def paid(self) -> bool:
        return self.status == GATEWAY_PAID_STATUS


class BasePaymentGateway(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> GatewayName:
        raise NotImplementedError

    @property
    def pay_type(self) -> str:
        return "alipay"

    @abc.abstractmethod
    def create_order(
        self,
        *,
        out_trade_no: str,
        name: str,
        money: str,
        notify_url: str,
        return_url: str,
        client_ip: str,
    ) -> GatewayOrder:
        """
        Register an order with the gateway and return its payment QR payload.

        Raises GatewayRejectedError when the gateway answers with an error code
        and GatewayUnavailableError on transport failure or timeout.
        """

    @abc.abstractmethod
    def query_order(self, out_trade_no: str) -> GatewayOrderStatus:
        raise NotImplementedError


class MockGateway(BasePaymentGateway):
    """
    In-process gateway for development and tests.

    Orders are "paid" by calling ``mark_paid``; nothing leaves the process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, dict[str, Any]] = {}
        self.reject_next: Optional[str] = None

    @property
    def name(self) -> GatewayName:
        return "mock"

    def create_order(
        self,
        *,
        out_trade_no: str,
        name: str,
        money: str,
        notify_url: str,
        return_url: str,
        client_ip: str,
    ) -> GatewayOrder:
        with self._lock:
            if self.reject_next:
                message, self.reject_next = self.reject_next, None
                raise GatewayRejectedError(message)
            self._orders[out_trade_no] = {
                "name": name,
                "money": money,
                "notify_url": notify_url,
                "return_url": return_url,
                "clientip": client_ip,
                "status": 0,
                "trade_no": None,
            }
        qrcode = f"mock://pay?out_trade_no={out_trade_no}"
        return GatewayOrder(gateway="mock", out_trade_no=out_trade_no, qrcode=qrcode, img="", raw={})

    def mark_paid(self, out_trade_no: str, trade_no: Optional[str] = None) -> None:
        with self._lock:
            order = self._orders.setdefault(out_trade_no, {})
            order["status"] = GATEWAY_PAID_STATUS
            order["trade_no"] = trade_no or f"MOCK{out_trade_no}"

    def query_order(self, out_trade_no: str) -> GatewayOrderStatus:
        with self._lock:
            order = self._orders.get(out_trade_no)
        if order is None:
            raise GatewayRejectedError("订单不存在")
        return GatewayOrderStatus(
            out_trade_no=out_trade_no,
            status=int(order.get("status") or 0),
            trade_no=order.get("trade_no"),
            message="ok",
            raw=dict(order),
        )


class ZPayGateway(BasePaymentGateway):
    """
    epay-compatible gateway (``mapi.php`` / ``api.php``), MD5-signed.

    No automatic retry: a timeout surfaces as GatewayUnavailableError and the
    caller decides whether to try again.
    """

    def __init__(
        self,
        *,
        api_base: str,
        pid: str,
        key: str,
        pay_type: str = "alipay",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_base = str(api_base or "").strip().rstrip("/")
        self.pid = str(pid or "").strip()
        self.key = str(key or "")
        self._pay_type = str(pay_type or "alipay").strip() or "alipay"
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        if not self.api_base:
            raise ConfigurationError("GATEWAY_API_BASE is missing")
        if not self.pid or not self.key:
            raise ConfigurationError("GATEWAY_PID/GATEWAY_KEY is missing")

    @property
    def name(self) -> GatewayName:
        return "zpay"

    @property
    def pay_type(self) -> str:
        return self._pay_type

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_seconds, trust_env=False, transport=self._transport)

    def _decode(self, resp: httpx.Response, action: str) -> dict[str, Any]:
        if resp.status_code >= 500:
            raise GatewayUnavailableError(f"gateway {action} failed: status={resp.status_code}")
        try:
            data = resp.json() if resp.content else {}
        except ValueError as exc:
            raise GatewayUnavailableError(
                f"gateway {action} returned non-json body: {(resp.text or '')[:200]}"
            ) from exc
        if not isinstance(data, dict):
            raise GatewayUnavailableError(f"gateway {action} returned unexpected payload")
        return data

    def create_order(
        self,
        *,
        out_trade_no: str,
        name: str,
        money: str,
        notify_url: str,
        return_url: str,
        client_ip: str,
    ) -> GatewayOrder:
        params = sign_gateway_params(
            {
                "pid": self.pid,
                "type": self._pay_type,
                "out_trade_no": out_trade_no,
                "notify_url": notify_url,
                "return_url": return_url,
                "name": name,
                "money": money,
                "clientip": client_ip,
            },
            self.key,
        )
        try:
            with self._client() as client:
                resp = client.post(f"{self.api_base}/mapi.php", data=params)
        except httpx.HTTPError as exc:
            log_event(
                _LOGGER,
                40,
                "license.gateway.create_failed",
                out_trade_no=out_trade_no,
                error=exc.__class__.__name__,
            )
            raise GatewayUnavailableError(f"gateway create failed: {exc.__class__.__name__}") from exc
        data = self._decode(resp, "create")
        if _as_int(data.get("code")) != GATEWAY_SUCCESS_CODE:
            raise GatewayRejectedError(str(data.get("msg") or "创建订单失败"))
        return GatewayOrder(
            gateway="zpay",
            out_trade_no=out_trade_no,
            qrcode=str(data.get("qrcode") or data.get("payurl") or ""),
            img=str(data.get("img") or ""),
            trade_no=str(data.get("trade_no") or "") or None,
            raw=data,
        )

    def query_order(self, out_trade_no: str) -> GatewayOrderStatus:
        query = {"act": "order", "pid": self.pid, "key": self.key, "out_trade_no": out_trade_no}
        try:
            with self._client() as client:
                resp = client.get(f"{self.api_base}/api.php", params=query)
        except httpx.HTTPError as exc:
            log_event(
                _LOGGER,
                40,
                "license.gateway.query_failed",
                out_trade_no=out_trade_no,
                error=exc.__class__.__name__,
            )
            raise GatewayUnavailableError(f"gateway query failed: {exc.__class__.__name__}") from exc
        data = self._decode(resp, "query")
        if _as_int(data.get("code")) != GATEWAY_SUCCESS_CODE:
            raise GatewayRejectedError(str(data.get("msg") or "查询失败"))
        return GatewayOrderStatus(
            out_trade_no=out_trade_no,
            status=_as_int(data.get("status")),
            trade_no=str(data.get("trade_no") or "") or None,
            message=str(data.get("msg") or ""),
            raw=data,
        )


def _as_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def get_payment_gateway(name: Optional[str] = None) -> BasePaymentGateway:
    """
    Gateway factory.

    If `name` is not provided, reads from config.PAYMENT_GATEWAY.
    """

    selected = (name or PAYMENT_GATEWAY or "mock").strip().lower()
    if selected == "zpay":
        return ZPayGateway(
            api_base=GATEWAY_API_BASE,
            pid=GATEWAY_PID,
            key=GATEWAY_KEY,
            pay_type=GATEWAY_PAY_TYPE,
            timeout_seconds=GATEWAY_TIMEOUT_SECONDS,
        )
    return MockGateway()
