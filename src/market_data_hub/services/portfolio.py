"""Portfolio snapshots from stored holdings and live quotes, with a risk score."""
import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlmodel import select

from market_data_hub.db import HoldingRecord, get_session
from market_data_hub.providers.core import normalize_symbol, round2
from market_data_hub.schemas import (MarketQuote, PortfolioAsset,
                                     PortfolioSummary, RiskLevel)
from market_data_hub.services.market_data import MarketDataRouter

logger = logging.getLogger(__name__)

# Sub-score weights. Correlation and sector concentration need data we do not
# have, so the remaining weights are normalized by their sum.
VOLATILITY_WEIGHT = 0.3
CONCENTRATION_WEIGHT = 0.25
MARKET_CAP_WEIGHT = 0.15
LIQUIDITY_WEIGHT = 0.1
_WEIGHT_TOTAL = VOLATILITY_WEIGHT + CONCENTRATION_WEIGHT + MARKET_CAP_WEIGHT + LIQUIDITY_WEIGHT

MAX_SINGLE_ASSET_ALLOCATION = 30.0


@dataclass(frozen=True)
class RiskInput:
    """Per-asset inputs to the risk score. allocation is in percent."""

    allocation: float
    change_24h: float | None = None
    market_cap: float | None = None
    volume_24h: float | None = None


def _volatility_bucket(change_pct: float | None) -> float:
    move = abs(change_pct or 0.0)
    if move <= 20:
        return 25.0
    if move <= 40:
        return 50.0
    if move <= 60:
        return 75.0
    return 100.0


def _market_cap_bucket(market_cap: float | None) -> float:
    if market_cap is None:
        return 100.0
    if market_cap >= 10e9:
        return 25.0
    if market_cap >= 1e9:
        return 50.0
    if market_cap >= 100e6:
        return 75.0
    return 100.0


def _liquidity(asset: RiskInput) -> float:
    if not asset.market_cap or asset.volume_24h is None:
        return 100.0
    return max(0.0, min(100.0, (1 - asset.volume_24h / asset.market_cap) * 100))


def calculate_risk_score(assets: list[RiskInput]) -> float:
    """Weighted 0-100 risk score; 0 for an empty portfolio."""
    if not assets:
        return 0.0
    volatility = sum(_volatility_bucket(a.change_24h) * a.allocation / 100 for a in assets)
    max_allocation = max(a.allocation for a in assets)
    concentration = min(max(0.0, (max_allocation - MAX_SINGLE_ASSET_ALLOCATION) * 2), 100.0)
    market_cap = sum(_market_cap_bucket(a.market_cap) * a.allocation / 100 for a in assets)
    liquidity = sum(_liquidity(a) * a.allocation / 100 for a in assets)

    weighted = (
        volatility * VOLATILITY_WEIGHT
        + concentration * CONCENTRATION_WEIGHT
        + market_cap * MARKET_CAP_WEIGHT
        + liquidity * LIQUIDITY_WEIGHT
    ) / _WEIGHT_TOTAL
    return round(max(0.0, min(100.0, weighted)), 2)


class HoldingsPortfolioSource:
    """PortfolioSource over the holding table and live CoinGecko quotes."""

    def __init__(self, engine: Engine, market_data: MarketDataRouter) -> None:
        self._engine = engine
        self._market_data = market_data

    async def snapshot(self, user_id: str) -> PortfolioSummary:
        """Value, P/L and risk for a user's holdings. Raises FetchError if quotes fail."""
        holdings = await asyncio.to_thread(self._load_holdings, user_id)
        if not holdings:
            return PortfolioSummary(user_id=user_id)
        quotes = await self._market_data.get_quotes([h.symbol for h in holdings])
        return build_summary(user_id, holdings, quotes)

    async def set_holding(
        self, user_id: str, symbol: str, quantity: float, average_price: float
    ) -> HoldingRecord:
        return await asyncio.to_thread(
            self._upsert_holding, user_id, normalize_symbol(symbol), quantity, average_price
        )

    def _load_holdings(self, user_id: str) -> list[HoldingRecord]:
        with get_session(self._engine) as session:
            rows = session.exec(
                select(HoldingRecord).where(HoldingRecord.user_id == user_id)
            ).all()
            return list(rows)

    def _upsert_holding(
        self, user_id: str, symbol: str, quantity: float, average_price: float
    ) -> HoldingRecord:
        with get_session(self._engine) as session:
            record = session.exec(
                select(HoldingRecord).where(
                    HoldingRecord.user_id == user_id, HoldingRecord.symbol == symbol
                )
            ).first()
            if record is None:
                record = HoldingRecord(user_id=user_id, symbol=symbol, quantity=0, average_price=0)
            record.quantity = quantity
            record.average_price = average_price
            session.add(record)
            session.flush()
            session.refresh(record)
            return record


def build_summary(
    user_id: str, holdings: list[HoldingRecord], quotes: dict[str, MarketQuote]
) -> PortfolioSummary:
    """Combine holdings with quotes. Holdings without a quote are valued at cost."""
    rows: list[tuple[HoldingRecord, float, MarketQuote | None]] = []
    for holding in holdings:
        quote = quotes.get(holding.symbol)
        if quote is None:
            logger.warning("No quote for %s; valuing at average price", holding.symbol)
        price = quote.value if quote is not None else holding.average_price
        rows.append((holding, price, quote))

    total_value = sum(h.quantity * price for h, price, _ in rows)
    total_cost = sum(h.quantity * h.average_price for h, _, _ in rows)

    assets: list[PortfolioAsset] = []
    risk_inputs: list[RiskInput] = []
    for holding, price, quote in rows:
        value = holding.quantity * price
        cost = holding.quantity * holding.average_price
        allocation = value / total_value * 100 if total_value else 0.0
        assets.append(
            PortfolioAsset(
                symbol=holding.symbol,
                quantity=holding.quantity,
                average_price=holding.average_price,
                current_price=price,
                value=round2(value),
                profit_loss=round2(value - cost),
                profit_loss_pct=round2((value - cost) / cost * 100) if cost else None,
                allocation=round2(allocation),
            )
        )
        metadata = (quote.metadata or {}) if quote is not None else {}
        risk_inputs.append(
            RiskInput(
                allocation=allocation,
                change_24h=metadata.get("change_24h"),
                market_cap=metadata.get("market_cap"),
                volume_24h=quote.volume if quote is not None else None,
            )
        )

    score = calculate_risk_score(risk_inputs)
    return PortfolioSummary(
        user_id=user_id,
        total_value=round2(total_value),
        total_cost=round2(total_cost),
        profit_loss=round2(total_value - total_cost),
        risk_score=score,
        risk_level=RiskLevel.from_score(score),
        assets=assets,
    )
