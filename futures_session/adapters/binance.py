"""
Futures Session - Binance USD-M Futures Service.

============================================================
PURPOSE
============================================================
Production binding of ExchangeService for Binance Futures.

TRANSPORTS:
- REST (aiohttp)       metadata, account, listenKey, algo orders,
                       position mode, leverage, klines
- Combined stream      <symbol>@kline_<interval> + <listenKey>
- WebSocket API        order.place / order.modify / order.status

SAFETY FEATURES:
- HMAC-SHA256 request signing
- Error code mapping onto the session error hierarchy
- Credentials masked in every log line

============================================================
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from ..config import ExchangeConfig, TimeoutConfig
from ..errors import (
    AuthError,
    ExchangeRejectedError,
    FuturesSessionError,
    SessionTokenFetchFailed,
    TransportError,
    map_binance_error,
)
from ..types import (
    Candle,
    ConditionalOrderSpec,
    OrderAck,
    OrderRef,
    OrderSide,
    OrderSpec,
    OrderStatusReport,
    PositionSide,
    SymbolMetadata,
)
from .base import ExchangeService, MessageHandler, OrderChannel, StreamChannel
from .logging_utils import ExchangeLogger, mask_url


logger = logging.getLogger(__name__)


# ============================================================
# SIGNING
# ============================================================

def sign(query: str, secret: str) -> str:
    """HMAC-SHA256 hex signature of a query string."""
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


def signed_query(params: Dict[str, Any], secret: str) -> str:
    """Urlencode params (insertion order) and append the signature."""
    query = urlencode(params)
    return f"{query}&signature={sign(query, secret)}"


def sign_ws_params(params: Dict[str, Any], secret: str) -> Dict[str, Any]:
    """WebSocket API signing: signature over the sorted params."""
    ordered = dict(sorted(params.items()))
    ordered["signature"] = sign(urlencode(ordered), secret)
    return ordered


# ============================================================
# PARSING
# ============================================================

def parse_exchange_info(data: Dict[str, Any]) -> List[SymbolMetadata]:
    """Extract LOT_SIZE / PRICE_FILTER filters for every symbol."""
    result = []
    for sym in data["symbols"]:
        min_qty = Decimal("0")
        step = Decimal("0")
        tick = Decimal("0")
        for filt in sym.get("filters", []):
            if filt["filterType"] == "LOT_SIZE":
                min_qty = Decimal(filt["minQty"])
                step = Decimal(filt["stepSize"])
            elif filt["filterType"] == "PRICE_FILTER":
                tick = Decimal(filt["tickSize"])
        result.append(SymbolMetadata(
            symbol=sym["symbol"],
            min_quantity=min_qty,
            quantity_step=step,
            price_step=tick,
        ))
    return result


def parse_kline_row(row: List[Any]) -> Candle:
    """REST kline row: [openTime, o, h, l, c, v, closeTime, quoteVolume, ...]."""
    return Candle(
        open_time=int(row[0]),
        open=str(row[1]),
        high=str(row[2]),
        low=str(row[3]),
        close=str(row[4]),
        volume=str(row[5]),
        close_time=int(row[6]),
        quote_volume=str(row[7]),
    )


def parse_order_ack(data: Dict[str, Any]) -> OrderAck:
    return OrderAck(
        order_id=str(data["orderId"]),
        client_order_id=data.get("clientOrderId"),
        symbol=data.get("symbol", ""),
        status=data.get("status", ""),
        raw=data,
    )


def parse_order_status(data: Dict[str, Any]) -> OrderStatusReport:
    return OrderStatusReport(
        order_id=str(data["orderId"]),
        client_order_id=data.get("clientOrderId"),
        symbol=data["symbol"],
        side=OrderSide(data["side"]),
        position_side=PositionSide.from_wire(data.get("positionSide", "BOTH")),
        order_type=data.get("type", ""),
        status=data["status"],
        price=Decimal(data.get("price", "0")),
        quantity=Decimal(data.get("origQty", "0")),
        executed_quantity=Decimal(data.get("executedQty", "0")),
    )


def order_params(spec: OrderSpec) -> Dict[str, Any]:
    """Order channel params for order.place / order.modify."""
    params: Dict[str, Any] = {
        "symbol": spec.symbol,
        "side": spec.side.value,
        "quantity": spec.quantity,
    }
    if spec.order_id is None:
        params["type"] = spec.order_type.value
        params["positionSide"] = spec.position_side.wire_value
        if spec.time_in_force is not None:
            params["timeInForce"] = spec.time_in_force.value
        if spec.reduce_only:
            params["reduceOnly"] = "true"
        if spec.client_order_id:
            params["newClientOrderId"] = spec.client_order_id
    else:
        params["orderId"] = spec.order_id
    if spec.price is not None:
        params["price"] = spec.price
    return params


# ============================================================
# CHANNELS
# ============================================================

class BinanceStreamChannel(StreamChannel):
    """Combined stream socket feeding decoded envelopes to a handler."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, on_message: MessageHandler):
        super().__init__("binance-stream")
        self._ws = ws
        self._on_message = on_message
        self._receive_task = asyncio.ensure_future(self._receive_loop())

    async def _receive_loop(self) -> None:
        reason = "server closed the stream"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        parsed = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning(f"Dropping non-JSON stream frame: {msg.data[:100]!r}")
                        continue
                    try:
                        self._on_message(parsed)
                    except Exception as e:
                        logger.error(f"Stream handler error: {e}")

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"stream error: {self._ws.exception()}"
                    break
        except aiohttp.ClientError as e:
            reason = f"stream error: {e}"
        finally:
            self._mark_closed(reason)

    async def close(self) -> None:
        self._mark_closed("closed by client")
        if not self._ws.closed:
            await self._ws.close()
        if not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass


class BinanceOrderChannel(OrderChannel):
    """
    WebSocket API order channel.

    Requests carry an id; replies are matched back to the
    awaiting caller by that id.
    """

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        api_key: str,
        api_secret: str,
        response_timeout: float,
        recv_window: int,
        exchange_logger: ExchangeLogger,
    ):
        super().__init__("binance-order-channel")
        self._ws = ws
        self._api_key = api_key
        self._api_secret = api_secret
        self._response_timeout = response_timeout
        self._recv_window = recv_window
        self._log = exchange_logger
        self._pending: Dict[str, asyncio.Future] = {}
        self._receive_task = asyncio.ensure_future(self._receive_loop())

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def submit(self, spec: OrderSpec) -> OrderAck:
        data = await self._call("order.place", order_params(spec))
        return parse_order_ack(data)

    async def modify(self, spec: OrderSpec) -> OrderAck:
        if spec.order_id is None:
            raise ValueError("modify() needs spec.order_id")
        data = await self._call("order.modify", order_params(spec))
        return parse_order_ack(data)

    async def query_status(self, ref: OrderRef) -> OrderStatusReport:
        params: Dict[str, Any] = {"symbol": ref.symbol}
        if ref.order_id:
            params["orderId"] = ref.order_id
        else:
            params["origClientOrderId"] = ref.client_order_id
        data = await self._call("order.status", params)
        return parse_order_status(data)

    async def close(self) -> None:
        self._mark_closed("closed by client")
        if not self._ws.closed:
            await self._ws.close()
        if not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._fail_pending(TransportError("Order channel closed"))

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.closed:
            raise TransportError(f"Order channel closed ({self.close_reason})")

        params = dict(params)
        params["apiKey"] = self._api_key
        params["timestamp"] = int(time.time() * 1000)
        params["recvWindow"] = self._recv_window
        signed = sign_ws_params(params, self._api_secret)

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        log_id = self._log.log_request(method, "WS", method, signed)
        started = time.monotonic()
        try:
            await self._ws.send_json({"id": request_id, "method": method, "params": signed})
            data = await asyncio.wait_for(future, self._response_timeout)
        except asyncio.TimeoutError as e:
            self._log.log_response(method, log_id, "timeout", (time.monotonic() - started) * 1000, False)
            raise TransportError(f"{method} timed out after {self._response_timeout}s") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"{method} failed: {e}") from e
        except FuturesSessionError as e:
            self._log.log_response(
                method, log_id, "error", (time.monotonic() - started) * 1000, False,
                error_code=getattr(e, "code", None), error_message=str(e),
            )
            raise
        finally:
            self._pending.pop(request_id, None)

        self._log.log_response(method, log_id, 200, (time.monotonic() - started) * 1000, True)
        return data

    async def _receive_loop(self) -> None:
        reason = "server closed the order channel"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"order channel error: {self._ws.exception()}"
                    break
        except aiohttp.ClientError as e:
            reason = f"order channel error: {e}"
        finally:
            self._mark_closed(reason)
            self._fail_pending(TransportError(f"Order channel lost: {reason}"))

    def _dispatch(self, raw: str) -> None:
        try:
            reply = json.loads(raw)
            future = self._pending.get(reply["id"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Dropping unexpected order channel frame: {e}")
            return

        if future is None or future.done():
            return

        status = reply.get("status")
        if status == 200:
            future.set_result(reply.get("result") or {})
            return

        error = reply.get("error") or {}
        future.set_exception(map_binance_error(error.get("code"), error.get("msg", "unknown error"), status))

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()


# ============================================================
# BINANCE FUTURES SERVICE
# ============================================================

class BinanceFuturesService(ExchangeService):
    """
    Binance USD-M Futures exchange service.

    Usage:
        service = BinanceFuturesService(ExchangeConfig(testnet=True))
        rules = await service.fetch_symbol_metadata()
        ...
        await service.close()
    """

    def __init__(
        self,
        config: Optional[ExchangeConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        heartbeat_seconds: float = 30.0,
    ):
        """
        Initialize Binance service.

        Args:
            config: Exchange configuration
            timeout_config: Timeout configuration
            api_key: API key (default: from config.api_key_env)
            api_secret: API secret (default: from config.api_secret_env)
            heartbeat_seconds: WebSocket ping interval
        """
        self._config = config or ExchangeConfig()
        self._timeout_config = timeout_config or TimeoutConfig()
        self._heartbeat = heartbeat_seconds

        env_key, env_secret = self._config.load_credentials()
        self._api_key = api_key if api_key is not None else env_key
        self._api_secret = api_secret if api_secret is not None else env_secret

        self._session: Optional[aiohttp.ClientSession] = None
        self._log = ExchangeLogger(self.exchange_id)

    @property
    def exchange_id(self) -> str:
        return "binance_futures"

    @property
    def is_testnet(self) -> bool:
        return self._config.testnet

    # --------------------------------------------------------
    # MARKET METADATA
    # --------------------------------------------------------

    async def fetch_symbol_metadata(self) -> List[SymbolMetadata]:
        data = await self._request("GET", "/fapi/v1/exchangeInfo")
        return parse_exchange_info(data)

    async def fetch_reference_price(self, symbol: str) -> Decimal:
        data = await self._request("GET", "/fapi/v1/ticker/24hr", params={"symbol": symbol})
        return Decimal(data["lastPrice"])

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 500) -> List[Candle]:
        data = await self._request(
            "GET",
            "/fapi/v1/klines",
            params={"symbol": symbol, "interval": interval, "limit": limit},
        )
        return [parse_kline_row(row) for row in data]

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def fetch_account_positions(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/fapi/v2/account", signed=True)
        if isinstance(data, dict):
            return data.get("positions")
        return data

    async def set_position_mode(self, hedge: bool) -> None:
        await self._request(
            "POST",
            "/fapi/v1/positionSide/dual",
            params={"dualSidePosition": "true" if hedge else "false"},
            signed=True,
        )

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/fapi/v1/leverage",
            params={"symbol": symbol, "leverage": leverage},
            signed=True,
        )

    # --------------------------------------------------------
    # SESSION TOKEN
    # --------------------------------------------------------

    async def open_session_token(self) -> str:
        try:
            data = await self._request("POST", "/fapi/v1/listenKey", keyed=True)
        except (AuthError, ExchangeRejectedError) as e:
            raise SessionTokenFetchFailed(f"listenKey request rejected: {e}") from e

        token = data.get("listenKey") if isinstance(data, dict) else None
        if not token:
            raise SessionTokenFetchFailed("listenKey missing from response")
        return token

    async def keepalive_session_token(self, token: str) -> None:
        await self._request("PUT", "/fapi/v1/listenKey", keyed=True)

    async def close_session_token(self, token: str) -> None:
        await self._request("DELETE", "/fapi/v1/listenKey", keyed=True)

    # --------------------------------------------------------
    # STREAMS AND CHANNELS
    # --------------------------------------------------------

    async def open_market_and_user_stream(
        self,
        symbol: str,
        interval: str,
        token: str,
        on_message: MessageHandler,
    ) -> BinanceStreamChannel:
        streams = f"{self.market_stream_id(symbol, interval)}/{self.user_stream_id(token)}"
        url = f"{self._config.stream_url}/stream?streams={streams}"
        ws = await self._ws_connect(url)
        logger.info(f"Stream connected: {mask_url(url)}")
        return BinanceStreamChannel(ws, on_message)

    async def open_order_channel(self) -> BinanceOrderChannel:
        ws = await self._ws_connect(self._config.ws_api_url)
        logger.info(f"Order channel connected: {self._config.ws_api_url}")
        return BinanceOrderChannel(
            ws,
            api_key=self._api_key,
            api_secret=self._api_secret,
            response_timeout=self._timeout_config.order_response_timeout_seconds,
            recv_window=self._config.recv_window,
            exchange_logger=self._log,
        )

    # --------------------------------------------------------
    # CONDITIONAL ORDERS
    # --------------------------------------------------------

    async def submit_conditional_order(self, spec: ConditionalOrderSpec) -> OrderAck:
        params: Dict[str, Any] = {
            "algoType": "CONDITIONAL",
            "symbol": spec.symbol,
            "side": spec.side.value,
            "positionSide": spec.position_side.wire_value,
            "type": spec.order_type.value,
            "quantity": spec.quantity,
            "triggerPrice": spec.trigger_price,
            "workingType": spec.working_type.value,
        }
        if spec.client_order_id:
            params["clientAlgoId"] = spec.client_order_id

        data = await self._request("POST", "/fapi/v1/algoOrder", params=params, signed=True)
        return OrderAck(
            order_id=str(data["algoId"]),
            client_order_id=data.get("clientAlgoId", spec.client_order_id),
            symbol=data.get("symbol", spec.symbol),
            status=data.get("algoStatus", "NEW"),
            raw=data,
        )

    async def cancel_conditional_order(self, ref: OrderRef) -> None:
        params: Dict[str, Any] = {"symbol": ref.symbol}
        if ref.order_id:
            params["algoId"] = ref.order_id
        else:
            params["clientAlgoId"] = ref.client_order_id
        await self._request("DELETE", "/fapi/v1/algoOrder", params=params, signed=True)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session is not None:
            await self._session.close()
            self._session = None
            logger.info("Binance HTTP session closed")

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                connect=self._timeout_config.connection_timeout_seconds,
                sock_read=self._timeout_config.read_timeout_seconds,
                total=self._timeout_config.request_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _ws_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        try:
            return await self._get_session().ws_connect(url, heartbeat=self._heartbeat)
        except aiohttp.WSServerHandshakeError as e:
            if e.status in (401, 403):
                raise AuthError(f"WebSocket handshake rejected: {e.status}") from e
            raise TransportError(f"WebSocket handshake failed: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"WebSocket connect failed: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        keyed: bool = False,
    ) -> Any:
        """
        Make a REST request.

        Args:
            method: HTTP method
            path: Endpoint path
            params: Query parameters
            signed: Add timestamp/recvWindow and HMAC signature
            keyed: Send the API key header without signing

        Raises:
            TransportError / AuthError / ExchangeRejectedError
        """
        params = dict(params or {})
        headers = {}
        if signed or keyed:
            headers["X-MBX-APIKEY"] = self._api_key

        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self._config.recv_window
            query = signed_query(params, self._api_secret)
        else:
            query = urlencode(params)

        url = f"{self._config.rest_url}{path}"
        if query:
            url = f"{url}?{query}"

        request_id = self._log.log_request(path, method, path, params)
        started = time.monotonic()

        try:
            async with self._get_session().request(method, url, headers=headers) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._log.log_response(path, request_id, "network", (time.monotonic() - started) * 1000, False,
                                   error_message=str(e))
            raise TransportError(f"{method} {path} failed: {e}") from e

        latency_ms = (time.monotonic() - started) * 1000

        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            if status == 200:
                raise TransportError(f"{method} {path} returned invalid JSON") from e
            data = {"msg": text[:200]}

        if status != 200:
            code = data.get("code") if isinstance(data, dict) else None
            msg = data.get("msg", "Unknown error") if isinstance(data, dict) else str(data)
            self._log.log_response(path, request_id, status, latency_ms, False, error_code=code, error_message=msg)
            raise map_binance_error(code, msg, status)

        self._log.log_response(path, request_id, status, latency_ms, True)
        return data
