"""Tests for the SQL alert store, portfolio source, auth and topic fetcher."""
from datetime import timedelta

import pytest
from conftest import FakeMarketData, FakePortfolio, make_alert
from jose import jwt

from market_data_hub.db import HoldingRecord, Source, init_db, make_engine
from market_data_hub.realtime.alerts import AlertEngine
from market_data_hub.realtime.exceptions import (AlertNotFoundError, AuthError,
                                                 FetchError)
from market_data_hub.realtime.fetcher import TopicFetcher
from market_data_hub.realtime.topics import (TopicKind, alerts_topic,
                                             parse_topic, portfolio_topic)
from market_data_hub.schemas import AlertSpec, MarketQuote, RiskLevel
from market_data_hub.services import JwtAuthValidator, SqlAlertStore
from market_data_hub.services.portfolio import (HoldingsPortfolioSource,
                                                RiskInput, build_summary,
                                                calculate_risk_score)


@pytest.fixture
def engine():
    db_engine = make_engine("sqlite://")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


class TestSqlAlertStore:
    """Alert persistence on in-memory SQLite."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, engine):
        store = SqlAlertStore(engine)

        created = await store.create("alice", AlertSpec(symbol="btc", condition="above", threshold=50000))
        await store.create("bob", AlertSpec(symbol="ETH", condition="below", threshold=2000))

        assert created.id is not None
        assert created.symbol == "BTC"
        assert created.active is True
        assert [a.id for a in await store.list_for_user("alice")] == [created.id]

    @pytest.mark.asyncio
    async def test_disable_and_rearm(self, engine):
        store = SqlAlertStore(engine)
        alert = await store.create(
            "alice",
            AlertSpec(symbol="BTC", condition="pct_decrease", threshold=5, basePrice=100),
        )

        await store.disable(alert.id)
        disabled = await store.get(alert.id)
        assert disabled.active is False
        assert disabled.triggered_at is not None
        assert await store.load_all() == []

        rearmed = await store.rearm(alert.id, base_price=120)
        assert rearmed.active is True
        assert rearmed.triggered_at is None
        assert rearmed.base_price == 120
        assert [a.id for a in await store.load_all()] == [alert.id]

    @pytest.mark.asyncio
    async def test_rearm_missing(self, engine):
        with pytest.raises(AlertNotFoundError):
            await SqlAlertStore(engine).rearm(404)

    @pytest.mark.asyncio
    async def test_get_missing(self, engine):
        assert await SqlAlertStore(engine).get(404) is None


class TestRiskScore:
    """Weighted risk score over allocations."""

    def test_empty_portfolio(self):
        assert calculate_risk_score([]) == 0.0

    def test_large_cap_diversified_is_low(self):
        assets = [
            RiskInput(allocation=25, change_24h=2, market_cap=500e9, volume_24h=400e9)
            for _ in range(4)
        ]
        score = calculate_risk_score(assets)
        assert RiskLevel.from_score(score) is RiskLevel.LOW

    def test_single_small_cap_volatile_is_critical(self):
        score = calculate_risk_score([RiskInput(allocation=100, change_24h=80, market_cap=5e6)])
        assert score == 100.0
        assert RiskLevel.from_score(score) is RiskLevel.CRITICAL

    @pytest.mark.parametrize(
        "score,level",
        [(0, RiskLevel.LOW), (24.99, RiskLevel.LOW), (25, RiskLevel.MEDIUM),
         (50, RiskLevel.HIGH), (75, RiskLevel.CRITICAL)],
    )
    def test_levels(self, score, level):
        assert RiskLevel.from_score(score) is level


class TestPortfolio:
    """Holdings valued with live quotes."""

    def test_build_summary(self):
        holdings = [
            HoldingRecord(user_id="alice", symbol="BTC", quantity=1, average_price=40000),
            HoldingRecord(user_id="alice", symbol="XYZ", quantity=10, average_price=10),
        ]
        quotes = {
            "BTC": MarketQuote(source=Source.COINGECKO, symbol="BTC", value=50000, volume=1e9,
                               metadata={"market_cap": 900e9, "change_24h": 3.0}),
        }

        summary = build_summary("alice", holdings, quotes)

        assert summary.total_value == 50100.0
        assert summary.total_cost == 40100.0
        assert summary.profit_loss == 10000.0
        btc, xyz = summary.assets
        assert btc.profit_loss_pct == 25.0
        assert xyz.current_price == 10
        assert 0 <= summary.risk_score <= 100

    @pytest.mark.asyncio
    async def test_snapshot_without_holdings(self, engine):
        source = HoldingsPortfolioSource(engine, market_data=None)
        summary = await source.snapshot("nobody")
        assert summary.total_value == 0.0
        assert summary.risk_level is RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_snapshot_uses_quotes(self, engine):
        class Quotes:
            async def get_quotes(self, symbols):
                return {
                    s: MarketQuote(source=Source.COINGECKO, symbol=s, value=2.0) for s in symbols
                }

        source = HoldingsPortfolioSource(engine, market_data=Quotes())
        await source.set_holding("alice", "ada", 100, 1.0)
        await source.set_holding("alice", "ADA", 50, 1.0)

        summary = await source.snapshot("alice")

        [asset] = summary.assets
        assert asset.symbol == "ADA"
        assert asset.quantity == 50
        assert summary.total_value == 100.0


class TestJwtAuthValidator:
    """Token issue and validation."""

    def test_round_trip(self):
        validator = JwtAuthValidator("secret")
        token = validator.create_access_token("alice")
        assert validator.validate_token(token).user_id == "alice"

    def test_wrong_secret(self):
        token = JwtAuthValidator("secret").create_access_token("alice")
        with pytest.raises(AuthError):
            JwtAuthValidator("other").validate_token(token)

    def test_expired(self):
        validator = JwtAuthValidator("secret")
        token = validator.create_access_token("alice", expires_in=timedelta(seconds=-5))
        with pytest.raises(AuthError):
            validator.validate_token(token)

    def test_legacy_user_id_claim(self):
        token = jwt.encode({"userId": 7}, "secret", algorithm="HS256")
        assert JwtAuthValidator("secret").validate_token(token).user_id == "7"

    def test_garbage(self):
        with pytest.raises(AuthError):
            JwtAuthValidator("secret").validate_token("not-a-jwt")


class TestTopicFetcher:
    """Topic kinds resolve to the right collaborator."""

    def _fetcher(self, *alerts):
        market_data = FakeMarketData()
        portfolio = FakePortfolio()
        engine = AlertEngine(store=None, dispatcher=None)
        for alert in alerts:
            engine.add(alert)
        return TopicFetcher(market_data, portfolio, engine), market_data, portfolio

    @pytest.mark.asyncio
    async def test_market_kinds(self):
        fetcher, market_data, _ = self._fetcher()
        market_data.set_price("BTC", 100.0)

        assert (await fetcher.fetch(parse_topic("price:BTC")))["value"] == 100.0
        await fetcher.fetch(parse_topic("orderbook:ETH:5"))

        assert market_data.calls[-1] == (TopicKind.ORDERBOOK, "ETH", 5)

    @pytest.mark.asyncio
    async def test_portfolio(self):
        fetcher, _, portfolio = self._fetcher()
        portfolio.risk_scores["alice"] = 33.0

        value = await fetcher.fetch(portfolio_topic("alice"))

        assert value["user_id"] == "alice"
        assert value["risk_score"] == 33.0

    @pytest.mark.asyncio
    async def test_alerts_snapshot(self):
        fetcher, market_data, portfolio = self._fetcher(
            make_alert(1),
            make_alert(2, threshold=60000),
            make_alert(3, kind="RISK", symbol=None, threshold=70),
        )
        market_data.set_price("BTC", 55000.0)
        portfolio.risk_scores["alice"] = 12.0

        value = await fetcher.fetch(alerts_topic("alice"))

        assert [a["id"] for a in value["alerts"]] == [1, 2, 3]
        assert value["observations"]["price:BTC"]["value"] == 55000.0
        assert value["observations"]["portfolio:alice"]["risk_score"] == 12.0
        assert [c[1] for c in market_data.calls] == ["BTC"]

    @pytest.mark.asyncio
    async def test_alerts_snapshot_skips_failed_scopes(self):
        fetcher, market_data, _ = self._fetcher(
            make_alert(1), make_alert(2, symbol="ETH", threshold=1)
        )
        market_data.failing.add((TopicKind.PRICE, "ETH"))

        value = await fetcher.fetch(alerts_topic("alice"))

        assert set(value["observations"]) == {"price:BTC"}

    @pytest.mark.asyncio
    async def test_alerts_snapshot_all_failed(self):
        fetcher, market_data, _ = self._fetcher(make_alert(1))
        market_data.failing.add((TopicKind.PRICE, "BTC"))

        with pytest.raises(FetchError):
            await fetcher.fetch(alerts_topic("alice"))

    @pytest.mark.asyncio
    async def test_no_armed_alerts(self):
        fetcher, _, _ = self._fetcher()
        assert await fetcher.fetch(alerts_topic("alice")) == {"alerts": [], "observations": {}}
