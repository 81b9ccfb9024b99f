"""
Robinhood portfolio aggregation

Totals come from the unified account endpoint (phoenix) when it answers.
Otherwise they are rebuilt from stock positions, crypto holdings and option
positions. Nothing here is cached across calls: every snapshot is derived
fresh from the API.

Per-position lookups (instrument, quote, market data) run concurrently;
totals are summed over the ordered results so they do not depend on which
request finished first.
"""
import asyncio
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from models.robinhood import (
    AccountSummary,
    CryptoHolding,
    OptionPosition,
    OptionTrade,
    PortfolioSnapshot,
    Position,
    Quote,
)
from .client import RobinhoodClient, find_crypto_pair_id
from .errors import RobinhoodAPIError
from .sessions import SessionManager

logger = logging.getLogger(__name__)

MARKET_TIMEZONE = ZoneInfo("America/New_York")
OPTION_CONTRACT_MULTIPLIER = 100.0

_FRACTION = re.compile(r"\.(\d+)")


def to_float(value: Any, default: float = 0.0) -> float:
    """Robinhood sends numbers as strings; missing or garbled values become `default`"""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def percent(change: float, base: float) -> float:
    return (change / base) * 100 if base > 0 else 0.0


def parse_timestamp(timestamp: str) -> Optional[datetime]:
    """
    Parse an API timestamp ("2026-10-19T14:30:00.123456Z")

    Fractional seconds are padded or cut to 6 digits first: Robinhood sends
    anywhere from 1 to 7 and older fromisoformat only takes 3 or 6.
    """
    if not timestamp or not isinstance(timestamp, str):
        return None
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), timestamp.strip(), count=1)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def market_date(timestamp: str) -> Optional[date]:
    """Calendar date of an API timestamp in market time (America/New_York)"""
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(MARKET_TIMEZONE).date()


def _sort_key(timestamp: str) -> float:
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class PortfolioAggregator:
    """
    Read-only views over one user's Robinhood account

    Every method needs a valid session (NotConnectedError otherwise) except
    quote(), which also works anonymously.
    """

    def __init__(self, client: RobinhoodClient, sessions: SessionManager):
        self.client = client
        self.sessions = sessions

    async def _token(self, user_id: str) -> str:
        session = await self.sessions.require(user_id)
        return session.access_token

    # ─────────────────────────────────────────────────────────────────────────
    # Account / totals
    # ─────────────────────────────────────────────────────────────────────────

    async def account(self, user_id: str) -> Optional[AccountSummary]:
        token = await self._token(user_id)
        raw = await self._first_account(token)
        if raw is None:
            return None
        return AccountSummary(
            account_number=str(raw.get("account_number") or ""),
            buying_power=to_float(raw.get("buying_power")),
            cash=to_float(raw.get("cash")),
            cash_available_for_withdrawal=to_float(raw.get("cash_available_for_withdrawal")),
            account_type=raw.get("type"),
            state=raw.get("state"),
        )

    async def portfolio(self, user_id: str) -> PortfolioSnapshot:
        token = await self._token(user_id)

        unified = await self._unified_account(token)
        if unified is not None:
            return self._from_unified(unified)

        logger.info(f"Building fallback portfolio for user {user_id}")
        return await self._fallback(token)

    async def _first_account(self, token: str) -> Optional[Dict[str, Any]]:
        accounts = await self.client.get_accounts(token)
        return accounts[0] if accounts else None

    async def _unified_account(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self.client.get_unified_account(token)
        except RobinhoodAPIError as e:
            logger.warning(f"Unified account unavailable, falling back: {e}")
            return None
        if not isinstance(data, dict) or optional_float(data.get("total_equity")) is None:
            logger.warning("Unified account response missing total_equity, falling back")
            return None
        return data

    @staticmethod
    def _from_unified(data: Dict[str, Any]) -> PortfolioSnapshot:
        total_equity = to_float(data.get("total_equity"))
        previous_close = to_float(
            data.get("total_previous_close")
            or data.get("previous_close")
            or data.get("portfolio_previous_close")
        )
        day_change = total_equity - previous_close

        return PortfolioSnapshot(
            total_value=total_equity,
            equity=to_float(data.get("portfolio_equity")),
            cash=to_float(data.get("uninvested_cash")),
            buying_power=to_float(data.get("account_buying_power")),
            day_change=day_change,
            day_change_percent=percent(day_change, previous_close),
            stocks_equity=optional_float((data.get("equities") or {}).get("equity")),
            crypto_equity=optional_float((data.get("crypto") or {}).get("equity")),
            crypto_buying_power=optional_float(data.get("crypto_buying_power")),
            options_buying_power=optional_float(data.get("options_buying_power")),
            source="unified",
        )

    async def _fallback(self, token: str) -> PortfolioSnapshot:
        account = await self._first_account(token)
        if account is None:
            raise RobinhoodAPIError("No Robinhood account found")

        cash = to_float(account.get("cash"))
        buying_power = to_float(account.get("buying_power"))

        stock_value, stock_previous_close = await self._stock_totals(token)

        crypto_value = 0.0
        try:
            crypto_value = sum(h.market_value for h in await self._crypto_holdings(token))
        except RobinhoodAPIError as e:
            # Crypto is not enabled on every account
            logger.warning(f"Crypto holdings unavailable: {e}")

        options_value = 0.0
        try:
            options_value = sum(p.market_value for p in await self._option_positions(token))
        except RobinhoodAPIError as e:
            logger.warning(f"Option positions unavailable: {e}")

        total = cash + stock_value + crypto_value + options_value
        # Baseline only knows stock previous closes: crypto/options moves count fully as day change
        baseline = cash + stock_previous_close
        day_change = total - baseline

        return PortfolioSnapshot(
            total_value=total,
            equity=total,
            cash=cash,
            buying_power=buying_power,
            day_change=day_change,
            day_change_percent=percent(day_change, baseline),
            stocks_equity=stock_value,
            crypto_equity=crypto_value,
            options_equity=options_value,
            source="fallback",
        )

    async def _stock_totals(self, token: str) -> Tuple[float, float]:
        """(Σ qty·price, Σ qty·previous_close) over open stock positions"""
        raw_positions = [p for p in await self.client.get_positions(token) if to_float(p.get("quantity"))]
        valued = await asyncio.gather(*(self._value_stock(p, token) for p in raw_positions))

        value = 0.0
        previous_close = 0.0
        for item in valued:
            if item is None:
                continue
            value += item[0]
            previous_close += item[1]
        return value, previous_close

    async def _value_stock(self, raw: Dict[str, Any], token: str) -> Optional[Tuple[float, float]]:
        quantity = to_float(raw.get("quantity"))
        try:
            instrument = await self.client.get_instrument(raw.get("instrument") or "", token)
            quote = await self.client.get_quote(instrument.get("symbol") or "", token)
        except RobinhoodAPIError as e:
            logger.warning(f"Skipping position in totals, quote lookup failed: {e}")
            return None

        # Extended-hours price is the most recent one whenever it is present
        price = optional_float(quote.get("last_extended_hours_trade_price"))
        if price is None:
            price = to_float(quote.get("last_trade_price"))
        return quantity * price, quantity * to_float(quote.get("previous_close"))

    # ─────────────────────────────────────────────────────────────────────────
    # Stocks
    # ─────────────────────────────────────────────────────────────────────────

    async def positions(self, user_id: str) -> List[Position]:
        token = await self._token(user_id)
        raw_positions = [p for p in await self.client.get_positions(token) if to_float(p.get("quantity"))]
        return list(await asyncio.gather(*(self._position(p, token) for p in raw_positions)))

    async def _position(self, raw: Dict[str, Any], token: str) -> Position:
        quantity = to_float(raw.get("quantity"))
        symbol, name, current_price = "UNKNOWN", "Unknown", 0.0
        try:
            instrument = await self.client.get_instrument(raw.get("instrument") or "", token)
            symbol = instrument.get("symbol") or symbol
            name = instrument.get("simple_name") or instrument.get("name") or name
            quote = await self.client.get_quote(symbol, token)
            current_price = to_float(quote.get("last_trade_price"))
        except RobinhoodAPIError as e:
            logger.warning(f"Instrument/quote lookup failed for position {symbol}: {e}")

        average_cost = to_float(raw.get("average_buy_price"))
        market_value = quantity * current_price
        total_cost = quantity * average_cost
        gain_loss = market_value - total_cost
        return Position(
            symbol=symbol,
            name=name,
            quantity=quantity,
            average_cost=average_cost,
            current_price=current_price,
            market_value=market_value,
            total_gain_loss=gain_loss,
            total_gain_loss_percent=percent(gain_loss, total_cost),
        )

    async def quote(self, symbol: str, user_id: Optional[str] = None) -> Quote:
        token = None
        if user_id:
            session = await self.sessions.get(user_id)
            token = session.access_token if session else None

        raw = await self.client.get_quote(symbol, token)
        last_price = to_float(raw.get("last_trade_price"))
        previous_close = to_float(raw.get("previous_close"))
        change = last_price - previous_close
        return Quote(
            symbol=raw.get("symbol") or symbol.upper(),
            last_price=last_price,
            change=change,
            change_percent=percent(change, previous_close),
            bid_price=to_float(raw.get("bid_price")),
            ask_price=to_float(raw.get("ask_price")),
            previous_close=previous_close,
            extended_hours_price=optional_float(raw.get("last_extended_hours_trade_price")),
            trading_halted=bool(raw.get("trading_halted")),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Crypto
    # ─────────────────────────────────────────────────────────────────────────

    async def crypto_holdings(self, user_id: str) -> List[CryptoHolding]:
        return await self._crypto_holdings(await self._token(user_id))

    async def _crypto_holdings(self, token: str) -> List[CryptoHolding]:
        raw_holdings = [h for h in await self.client.get_crypto_holdings(token) if to_float(h.get("quantity"))]
        if not raw_holdings:
            return []

        try:
            pairs = await self.client.get_currency_pairs(token)
        except RobinhoodAPIError as e:
            logger.warning(f"Crypto pairs unavailable, pricing holdings at 0: {e}")
            pairs = []

        return list(await asyncio.gather(*(self._crypto_holding(h, pairs, token) for h in raw_holdings)))

    async def _crypto_holding(
        self,
        raw: Dict[str, Any],
        pairs: List[Dict[str, Any]],
        token: str
    ) -> CryptoHolding:
        currency = raw.get("currency") or {}
        symbol = currency.get("code") or "UNKNOWN"
        quantity = to_float(raw.get("quantity"))

        # Weighted across lots: Σ cost / Σ quantity
        total_cost = 0.0
        total_quantity = 0.0
        for lot in raw.get("cost_bases") or []:
            total_cost += to_float(lot.get("direct_cost_basis"))
            total_quantity += to_float(lot.get("direct_quantity"))
        average_cost = total_cost / total_quantity if total_quantity > 0 else 0.0

        current_price = 0.0
        pair_id = find_crypto_pair_id(pairs, symbol)
        if pair_id is None:
            logger.warning(f"No trading pair for {symbol}, pricing at 0")
        else:
            try:
                quote = await self.client.get_crypto_quote(pair_id, token)
                current_price = to_float(quote.get("mark_price"))
            except RobinhoodAPIError as e:
                logger.warning(f"Crypto quote failed for {symbol}, pricing at 0: {e}")

        market_value = quantity * current_price
        gain_loss = market_value - total_cost
        return CryptoHolding(
            symbol=symbol,
            name=currency.get("name") or symbol,
            quantity=quantity,
            average_cost=average_cost,
            current_price=current_price,
            market_value=market_value,
            total_gain_loss=gain_loss,
            total_gain_loss_percent=percent(gain_loss, total_cost),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Options
    # ─────────────────────────────────────────────────────────────────────────

    def _cached_instrument(self, cache: Dict[str, Awaitable], option_url: str, token: str) -> Awaitable:
        """One instrument fetch per option URL, shared by concurrent lookups"""
        if option_url not in cache:
            cache[option_url] = asyncio.ensure_future(self.client.get_option_instrument(option_url, token))
        return cache[option_url]

    async def option_positions(self, user_id: str) -> List[OptionPosition]:
        return await self._option_positions(await self._token(user_id))

    async def _option_positions(self, token: str) -> List[OptionPosition]:
        raw_positions = [
            p for p in await self.client.get_option_positions(token) if to_float(p.get("quantity"))
        ]
        cache: Dict[str, Awaitable] = {}
        return list(await asyncio.gather(*(self._option_position(p, token, cache) for p in raw_positions)))

    async def _option_position(
        self,
        raw: Dict[str, Any],
        token: str,
        cache: Dict[str, Awaitable]
    ) -> OptionPosition:
        quantity = to_float(raw.get("quantity"))
        option_url = raw.get("option") or ""
        symbol = raw.get("chain_symbol") or "UNKNOWN"
        option_type, strike_price, expiration_date = "call", 0.0, ""
        current_price = 0.0

        try:
            instrument = await self._cached_instrument(cache, option_url, token)
            symbol = instrument.get("chain_symbol") or symbol
            if instrument.get("type") in ("call", "put"):
                option_type = instrument["type"]
            strike_price = to_float(instrument.get("strike_price"))
            expiration_date = instrument.get("expiration_date") or ""
        except RobinhoodAPIError as e:
            logger.warning(f"Option instrument lookup failed for {symbol}: {e}")

        try:
            market_data = await self.client.get_option_market_data(option_url, token)
            if market_data:
                current_price = to_float(market_data.get("mark_price"))
        except RobinhoodAPIError as e:
            logger.warning(f"Option market data failed for {symbol}: {e}")

        position_type = "short" if raw.get("type") == "short" else "long"
        return self.value_option(
            symbol=symbol,
            option_type=option_type,
            strike_price=strike_price,
            expiration_date=expiration_date,
            quantity=quantity,
            average_cost=to_float(raw.get("average_price")),
            current_price=current_price,
            multiplier=to_float(raw.get("trade_value_multiplier")) or OPTION_CONTRACT_MULTIPLIER,
            position_type=position_type,
        )

    @staticmethod
    def value_option(
        symbol: str,
        option_type: str,
        strike_price: float,
        expiration_date: str,
        quantity: float,
        average_cost: float,
        current_price: float,
        multiplier: float,
        position_type: str
    ) -> OptionPosition:
        """
        Value one option position

        A short position gains when the option loses value: gain/loss is
        cost - market value instead of market value - cost.
        """
        market_value = quantity * current_price * multiplier
        total_cost = quantity * average_cost * multiplier
        if position_type == "short":
            gain_loss = total_cost - market_value
        else:
            gain_loss = market_value - total_cost

        return OptionPosition(
            symbol=symbol,
            option_type=option_type,
            strike_price=strike_price,
            expiration_date=expiration_date,
            quantity=quantity,
            average_cost=average_cost,
            current_price=current_price,
            market_value=market_value,
            total_gain_loss=gain_loss,
            total_gain_loss_percent=percent(gain_loss, total_cost),
            position_type=position_type,
        )

    async def todays_option_trades(self, user_id: str) -> List[OptionTrade]:
        """
        Every option order leg created today (market time), newest first

        Includes filled, pending and cancelled orders.
        """
        token = await self._token(user_id)
        today = self.sessions.clock().astimezone(MARKET_TIMEZONE).date()

        def past_today(page: List[Dict[str, Any]]) -> bool:
            # Orders come newest first: once a page ends before today, stop
            last_date = market_date(page[-1].get("created_at") or "")
            return last_date is not None and last_date < today

        orders = await self.client.get_option_orders(token, stop_when=past_today)
        todays_orders = [o for o in orders if market_date(o.get("created_at") or "") == today]

        cache: Dict[str, Awaitable] = {}
        legs = [(order, leg) for order in todays_orders for leg in order.get("legs") or []]
        trades = await asyncio.gather(*(self._option_trade(order, leg, token, cache) for order, leg in legs))

        result = [t for t in trades if t is not None]
        result.sort(key=lambda t: _sort_key(t.executed_at), reverse=True)
        return result

    async def _option_trade(
        self,
        order: Dict[str, Any],
        leg: Dict[str, Any],
        token: str,
        cache: Dict[str, Awaitable]
    ) -> Optional[OptionTrade]:
        option_url = leg.get("option") or ""
        try:
            instrument = await self._cached_instrument(cache, option_url, token)
        except RobinhoodAPIError as e:
            logger.warning(f"Skipping leg of order {order.get('id')}, instrument lookup failed: {e}")
            return None

        quantity = to_float(order.get("processed_quantity")) * to_float(leg.get("ratio_quantity"), 1.0)
        price = to_float(order.get("price"))

        executions = leg.get("executions") or []
        executed_at = order.get("updated_at") or ""
        if executions and executions[-1].get("timestamp"):
            executed_at = executions[-1]["timestamp"]

        return OptionTrade(
            symbol=instrument.get("chain_symbol") or "UNKNOWN",
            option_type="put" if instrument.get("type") == "put" else "call",
            strike_price=to_float(instrument.get("strike_price")),
            expiration_date=instrument.get("expiration_date") or "",
            side="sell" if leg.get("side") == "sell" else "buy",
            position_effect="close" if leg.get("position_effect") == "close" else "open",
            quantity=quantity,
            price=price,
            total_value=quantity * price * OPTION_CONTRACT_MULTIPLIER,
            state=str(order.get("state") or ""),
            executed_at=executed_at,
            order_id=str(order.get("id") or ""),
        )
