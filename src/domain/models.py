from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def parse_time(value: Any) -> datetime | None:
    """Parse the service's ISO-8601 timestamps ("2020-04-15T02:45:00.000Z") into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_time(value: datetime | None) -> str | None:
    """Render a datetime the way the service expects it (UTC, millisecond precision, Z suffix)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class ProvisioningProfileData:
    id: str
    name: str
    version: int
    status: str
    type: str | None = None
    broker_timezone: str | None = None
    broker_dst_switch_timezone: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ProvisioningProfileData:
        return cls(
            id=str(d.get("_id") or d.get("id") or ""),
            name=str(d.get("name") or ""),
            version=int(d.get("version") or 0),
            status=str(d.get("status") or ""),
            type=d.get("type"),
            broker_timezone=d.get("brokerTimezone"),
            broker_dst_switch_timezone=d.get("brokerDSTSwitchTimezone"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "version": self.version,
                "status": self.status,
                "type": self.type,
                "broker_timezone": self.broker_timezone,
                "broker_dst_switch_timezone": self.broker_dst_switch_timezone,
            }
        )


@dataclass(frozen=True)
class AccountInfo:
    id: str
    name: str
    login: str
    server: str
    state: str
    connection_status: str
    type: str | None = None
    provisioning_profile_id: str | None = None
    synchronization_mode: str | None = None
    magic: int | None = None
    application: str | None = None
    time_converter: str | None = None
    reliability: str | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AccountInfo:
        magic = d.get("magic")
        return cls(
            id=str(d.get("_id") or d.get("id") or ""),
            name=str(d.get("name") or ""),
            login=str(d.get("login") or ""),
            server=str(d.get("server") or ""),
            state=str(d.get("state") or "CREATED"),
            connection_status=str(d.get("connectionStatus") or "DISCONNECTED"),
            type=d.get("type"),
            provisioning_profile_id=d.get("provisioningProfileId"),
            synchronization_mode=d.get("synchronizationMode"),
            magic=int(magic) if magic is not None else None,
            application=d.get("application"),
            time_converter=d.get("timeConverter"),
            reliability=d.get("reliability"),
            tags=tuple(d.get("tags") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "login": self.login,
                "server": self.server,
                "state": self.state,
                "connection_status": self.connection_status,
                "type": self.type,
                "provisioning_profile_id": self.provisioning_profile_id,
                "synchronization_mode": self.synchronization_mode,
                "magic": self.magic,
                "application": self.application,
                "time_converter": self.time_converter,
                "reliability": self.reliability,
                "tags": list(self.tags) or None,
            }
        )


@dataclass(frozen=True)
class AccountInformation:
    broker: str
    currency: str
    server: str
    balance: float
    equity: float
    margin: float
    free_margin: float
    leverage: float
    margin_level: float | None = None
    platform: str | None = None
    name: str | None = None
    login: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AccountInformation:
        login = d.get("login")
        return cls(
            broker=str(d.get("broker") or ""),
            currency=str(d.get("currency") or ""),
            server=str(d.get("server") or ""),
            balance=float(d.get("balance") or 0.0),
            equity=float(d.get("equity") or 0.0),
            margin=float(d.get("margin") or 0.0),
            free_margin=float(d.get("freeMargin") or 0.0),
            leverage=float(d.get("leverage") or 0.0),
            margin_level=_float(d.get("marginLevel")),
            platform=d.get("platform"),
            name=d.get("name"),
            login=str(login) if login is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "broker": self.broker,
            "currency": self.currency,
            "server": self.server,
            "balance": self.balance,
            "equity": self.equity,
            "margin": self.margin,
            "free_margin": self.free_margin,
            "leverage": self.leverage,
            "margin_level": self.margin_level,
            "platform": self.platform,
            "name": self.name,
            "login": self.login,
        }


@dataclass(frozen=True)
class Position:
    id: str
    symbol: str
    type: str
    volume: float
    open_price: float
    time: datetime | None
    current_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    profit: float | None = None
    swap: float | None = None
    commission: float | None = None
    magic: int | None = None
    comment: str | None = None
    client_id: str | None = None
    update_time: datetime | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Position:
        magic = d.get("magic")
        return cls(
            id=str(d.get("id") or ""),
            symbol=str(d.get("symbol") or ""),
            type=str(d.get("type") or ""),
            volume=float(d.get("volume") or 0.0),
            open_price=float(d.get("openPrice") or 0.0),
            time=parse_time(d.get("time")),
            current_price=_float(d.get("currentPrice")),
            stop_loss=_float(d.get("stopLoss")),
            take_profit=_float(d.get("takeProfit")),
            profit=_float(d.get("profit")),
            swap=_float(d.get("swap")),
            commission=_float(d.get("commission")),
            magic=int(magic) if magic is not None else None,
            comment=d.get("comment"),
            client_id=d.get("clientId"),
            update_time=parse_time(d.get("updateTime")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "type": self.type,
            "volume": self.volume,
            "open_price": self.open_price,
            "time": format_time(self.time),
            "current_price": self.current_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "profit": self.profit,
            "swap": self.swap,
            "commission": self.commission,
            "magic": self.magic,
            "comment": self.comment,
            "client_id": self.client_id,
            "update_time": format_time(self.update_time),
        }


@dataclass(frozen=True)
class Order:
    """Pending order, or a history order when `done_time` is set."""

    id: str
    symbol: str
    type: str
    state: str
    volume: float
    current_volume: float
    time: datetime | None
    open_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    position_id: str | None = None
    done_time: datetime | None = None
    magic: int | None = None
    comment: str | None = None
    client_id: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Order:
        magic = d.get("magic")
        position_id = d.get("positionId")
        return cls(
            id=str(d.get("id") or ""),
            symbol=str(d.get("symbol") or ""),
            type=str(d.get("type") or ""),
            state=str(d.get("state") or ""),
            volume=float(d.get("volume") or 0.0),
            current_volume=float(d.get("currentVolume") or 0.0),
            time=parse_time(d.get("time")),
            open_price=_float(d.get("openPrice")),
            stop_loss=_float(d.get("stopLoss")),
            take_profit=_float(d.get("takeProfit")),
            position_id=str(position_id) if position_id is not None else None,
            done_time=parse_time(d.get("doneTime")),
            magic=int(magic) if magic is not None else None,
            comment=d.get("comment"),
            client_id=d.get("clientId"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "type": self.type,
            "state": self.state,
            "volume": self.volume,
            "current_volume": self.current_volume,
            "time": format_time(self.time),
            "open_price": self.open_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "position_id": self.position_id,
            "done_time": format_time(self.done_time),
            "magic": self.magic,
            "comment": self.comment,
            "client_id": self.client_id,
        }


@dataclass(frozen=True)
class Deal:
    id: str
    type: str
    time: datetime | None
    symbol: str | None = None
    entry_type: str | None = None
    volume: float | None = None
    price: float | None = None
    profit: float | None = None
    commission: float | None = None
    swap: float | None = None
    order_id: str | None = None
    position_id: str | None = None
    comment: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Deal:
        order_id = d.get("orderId")
        position_id = d.get("positionId")
        return cls(
            id=str(d.get("id") or ""),
            type=str(d.get("type") or ""),
            time=parse_time(d.get("time")),
            symbol=d.get("symbol"),
            entry_type=d.get("entryType"),
            volume=_float(d.get("volume")),
            price=_float(d.get("price")),
            profit=_float(d.get("profit")),
            commission=_float(d.get("commission")),
            swap=_float(d.get("swap")),
            order_id=str(order_id) if order_id is not None else None,
            position_id=str(position_id) if position_id is not None else None,
            comment=d.get("comment"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "time": format_time(self.time),
            "symbol": self.symbol,
            "entry_type": self.entry_type,
            "volume": self.volume,
            "price": self.price,
            "profit": self.profit,
            "commission": self.commission,
            "swap": self.swap,
            "order_id": self.order_id,
            "position_id": self.position_id,
            "comment": self.comment,
        }


@dataclass(frozen=True)
class SymbolSpecification:
    symbol: str
    tick_size: float
    digits: int | None = None
    min_volume: float | None = None
    max_volume: float | None = None
    volume_step: float | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SymbolSpecification:
        digits = d.get("digits")
        return cls(
            symbol=str(d.get("symbol") or ""),
            tick_size=float(d.get("tickSize") or 0.0),
            digits=int(digits) if digits is not None else None,
            min_volume=_float(d.get("minVolume")),
            max_volume=_float(d.get("maxVolume")),
            volume_step=_float(d.get("volumeStep")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "tick_size": self.tick_size,
            "digits": self.digits,
            "min_volume": self.min_volume,
            "max_volume": self.max_volume,
            "volume_step": self.volume_step,
        }


@dataclass(frozen=True)
class SymbolPrice:
    symbol: str
    bid: float
    ask: float
    time: datetime | None
    broker_time: str | None = None
    profit_tick_value: float | None = None
    loss_tick_value: float | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SymbolPrice:
        return cls(
            symbol=str(d.get("symbol") or ""),
            bid=float(d.get("bid") or 0.0),
            ask=float(d.get("ask") or 0.0),
            time=parse_time(d.get("time")),
            broker_time=d.get("brokerTime"),
            profit_tick_value=_float(d.get("profitTickValue")),
            loss_tick_value=_float(d.get("lossTickValue")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "bid": self.bid,
            "ask": self.ask,
            "time": format_time(self.time),
            "broker_time": self.broker_time,
            "profit_tick_value": self.profit_tick_value,
            "loss_tick_value": self.loss_tick_value,
        }


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: str
    time: datetime
    open: float
    high: float
    low: float
    close: float
    tick_volume: float | None = None
    spread: float | None = None
    volume: float | None = None
    broker_time: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Candle:
        """Raises ValueError for rows without an open time."""
        time = parse_time(d.get("time"))
        if time is None:
            raise ValueError(f"Candle row has no time: {d!r}")
        return cls(
            symbol=str(d.get("symbol") or ""),
            timeframe=str(d.get("timeframe") or ""),
            time=time,
            open=float(d.get("open") or 0.0),
            high=float(d.get("high") or 0.0),
            low=float(d.get("low") or 0.0),
            close=float(d.get("close") or 0.0),
            tick_volume=_float(d.get("tickVolume")),
            spread=_float(d.get("spread")),
            volume=_float(d.get("volume")),
            broker_time=d.get("brokerTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "time": format_time(self.time),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "tick_volume": self.tick_volume,
            "spread": self.spread,
            "volume": self.volume,
            "broker_time": self.broker_time,
        }


@dataclass(frozen=True)
class Tick:
    symbol: str
    time: datetime | None
    bid: float | None = None
    ask: float | None = None
    last: float | None = None
    volume: float | None = None
    side: str | None = None
    broker_time: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Tick:
        return cls(
            symbol=str(d.get("symbol") or ""),
            time=parse_time(d.get("time")),
            bid=_float(d.get("bid")),
            ask=_float(d.get("ask")),
            last=_float(d.get("last")),
            volume=_float(d.get("volume")),
            side=d.get("side"),
            broker_time=d.get("brokerTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "time": format_time(self.time),
            "bid": self.bid,
            "ask": self.ask,
            "last": self.last,
            "volume": self.volume,
            "side": self.side,
            "broker_time": self.broker_time,
        }


@dataclass(frozen=True)
class BookEntry:
    type: str
    price: float
    volume: float

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "price": self.price, "volume": self.volume}


@dataclass(frozen=True)
class Book:
    symbol: str
    time: datetime | None
    entries: tuple[BookEntry, ...] = ()
    broker_time: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Book:
        entries = tuple(
            BookEntry(
                type=str(e.get("type") or ""),
                price=float(e.get("price") or 0.0),
                volume=float(e.get("volume") or 0.0),
            )
            for e in (d.get("book") or [])
        )
        return cls(
            symbol=str(d.get("symbol") or ""),
            time=parse_time(d.get("time")),
            entries=entries,
            broker_time=d.get("brokerTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "time": format_time(self.time),
            "entries": [e.to_dict() for e in self.entries],
            "broker_time": self.broker_time,
        }


@dataclass(frozen=True)
class MarketDataSubscription:
    """One market data stream for a symbol: quotes, candles, ticks or marketDepth."""

    type: str
    timeframe: str | None = None
    interval_in_milliseconds: int | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MarketDataSubscription:
        interval = d.get("intervalInMilliseconds")
        return cls(
            type=str(d.get("type") or ""),
            timeframe=d.get("timeframe"),
            interval_in_milliseconds=int(interval) if interval is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "timeframe": self.timeframe,
            "interval_in_milliseconds": self.interval_in_milliseconds,
        }

    def to_request(self) -> dict[str, Any]:
        """Wire form used in subscribe requests."""
        return _drop_none(
            {
                "type": self.type,
                "timeframe": self.timeframe,
                "intervalInMilliseconds": self.interval_in_milliseconds,
            }
        )


@dataclass(frozen=True)
class MarketDataUnsubscription:
    type: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}

    def to_request(self) -> dict[str, Any]:
        return {"type": self.type}


DEFAULT_SUBSCRIPTIONS: tuple[MarketDataSubscription, ...] = (
    MarketDataSubscription(type="quotes", interval_in_milliseconds=5000),
    MarketDataSubscription(type="candles", timeframe="1m", interval_in_milliseconds=10000),
    MarketDataSubscription(type="ticks"),
    MarketDataSubscription(type="marketDepth", interval_in_milliseconds=5000),
)


@dataclass(frozen=True)
class TradeResult:
    numeric_code: int
    string_code: str
    message: str
    order_id: str | None = None
    position_id: str | None = None

    @property
    def description(self) -> str:
        return self.string_code

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TradeResult:
        order_id = d.get("orderId")
        position_id = d.get("positionId")
        return cls(
            numeric_code=int(d.get("numericCode") or 0),
            string_code=str(d.get("stringCode") or ""),
            message=str(d.get("message") or ""),
            order_id=str(order_id) if order_id is not None else None,
            position_id=str(position_id) if position_id is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "numeric_code": self.numeric_code,
            "string_code": self.string_code,
            "message": self.message,
            "order_id": self.order_id,
            "position_id": self.position_id,
        }


@dataclass
class TradeOptions:
    """Optional fields shared by trade requests."""

    comment: str | None = None
    client_id: str | None = None
    magic: int | None = None
    slippage: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_request(self) -> dict[str, Any]:
        out = _drop_none(
            {
                "comment": self.comment,
                "clientId": self.client_id,
                "magic": self.magic,
                "slippage": self.slippage,
            }
        )
        out.update(self.extra)
        return out
