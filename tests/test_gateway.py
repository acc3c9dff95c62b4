"""Tests for SubscriptionGateway: auth, messages, cleanup and heartbeat."""
import asyncio
import json

import pytest
from conftest import FakeTransport, ManualSleep, make_components

from market_data_hub.realtime.gateway import (CLOSE_AUTH_FAILED,
                                              CLOSE_GOING_AWAY,
                                              CLOSE_HEARTBEAT_TIMEOUT,
                                              CLOSE_SEND_FAILED,
                                              parse_client_message)
from market_data_hub.realtime.exceptions import MessageValidationError
from market_data_hub.realtime.registry import ConnectionState
from market_data_hub.realtime.topics import alerts_topic, parse_topic, price_topic
from market_data_hub.schemas.messages import SetupAlertMessage, SubscribeMessage


def _frame(**message) -> str:
    return json.dumps(message)


class TestParseClientMessage:
    """Incoming frame validation."""

    def test_subscribe(self):
        message = parse_client_message(_frame(type="subscribe", topics=["price:BTC"]))
        assert isinstance(message, SubscribeMessage)

    def test_setup_alert_uses_camel_case(self):
        message = parse_client_message(
            _frame(
                type="setup_alert",
                alertSpec={"symbol": "btc", "condition": "above", "threshold": 1},
            )
        )
        assert isinstance(message, SetupAlertMessage)
        assert message.alert_spec.symbol == "BTC"

    def test_unknown_type(self):
        with pytest.raises(MessageValidationError, match="bogus"):
            parse_client_message(_frame(type="bogus"))

    def test_missing_type(self):
        with pytest.raises(MessageValidationError, match="type"):
            parse_client_message(_frame(topics=["price:BTC"]))

    def test_invalid_json(self):
        with pytest.raises(MessageValidationError, match="Invalid JSON"):
            parse_client_message("{not json")

    def test_empty_topics(self):
        with pytest.raises(MessageValidationError):
            parse_client_message(_frame(type="subscribe", topics=[]))


class TestAuthentication:
    """Connecting -> Authenticating -> Active, or closed with 1008."""

    @pytest.mark.asyncio
    async def test_valid_token_activates(self, parts):
        transport = FakeTransport()
        connection = parts.gateway.open(transport)
        assert connection.state is ConnectionState.AUTHENTICATING

        assert await parts.gateway.authenticate(connection.id, "token-alice")

        assert connection.state is ConnectionState.ACTIVE
        assert transport.sent == [
            {
                "type": "connection",
                "status": "connected",
                "clientId": connection.id,
                "userId": "alice",
            }
        ]
        assert parts.registry.connections_for_user("alice") == {connection.id}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["garbage", None, ""])
    async def test_bad_token_gets_error_and_1008(self, parts, token):
        transport = FakeTransport()
        connection = parts.gateway.open(transport)

        assert not await parts.gateway.authenticate(connection.id, token)

        [error] = transport.sent
        assert error["type"] == "error"
        assert error["message"].startswith("Authentication failed")
        assert transport.close_code == CLOSE_AUTH_FAILED
        assert connection.id not in parts.registry
        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_messages_before_auth_are_ignored(self, parts):
        transport = FakeTransport()
        connection = parts.gateway.open(transport)

        await parts.gateway.handle_text(connection.id, _frame(type="subscribe", topics=["price:BTC"]))

        assert transport.sent == []
        assert parts.topic_index.topics() == set()

    @pytest.mark.asyncio
    async def test_authenticate_again_is_an_error(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(connection_id, _frame(type="authenticate", token="token-bob"))

        assert transport.of_type("error")[0]["message"] == "Already authenticated"
        assert parts.registry.get(connection_id).user_id == "alice"


class TestMessages:
    """Replies to subscribe, unsubscribe and bad frames."""

    @pytest.mark.asyncio
    async def test_unknown_type_keeps_connection_open(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(connection_id, _frame(type="bogus"))

        [error] = transport.of_type("error")
        assert "bogus" in error["message"]
        assert parts.registry.get(connection_id).state is ConnectionState.ACTIVE

    @pytest.mark.asyncio
    async def test_subscribe_replies_with_canonical_topics(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id,
            _frame(type="subscribe", topics=["price:btc", "PRICE:BTC", "orderbook:eth", "portfolio"]),
        )

        [reply] = transport.of_type("subscription_success")
        assert reply["topics"] == ["price:BTC", "orderbook:ETH:20", "portfolio:alice"]
        assert parts.topic_index.topics_of(connection_id) == {
            price_topic("BTC"),
            parse_topic("orderbook:ETH"),
            parse_topic("portfolio", user_id="alice"),
        }
        assert parts.scheduler.is_running(price_topic("BTC"))

    @pytest.mark.asyncio
    async def test_subscribe_options(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id,
            _frame(type="subscribe", topics=["orderbook:ETH"], options={"interval": 15, "depth": 5}),
        )

        topic = parse_topic("orderbook:ETH:5")
        assert transport.of_type("subscription_success")[0]["topics"] == ["orderbook:ETH:5"]
        assert parts.scheduler.current_interval(topic) == 15.0
        assert parts.topic_index.options_of(topic, connection_id) == {"interval": 15.0, "depth": 5}

    @pytest.mark.asyncio
    async def test_subscribe_is_all_or_nothing(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id, _frame(type="subscribe", topics=["price:BTC", "weather:x"])
        )

        assert transport.of_type("subscription_success") == []
        assert len(transport.of_type("error")) == 1
        assert parts.topic_index.topics() == set()
        assert not parts.scheduler.is_running(price_topic("BTC"))

    @pytest.mark.asyncio
    async def test_other_users_portfolio_is_rejected(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id, _frame(type="subscribe", topics=["portfolio:bob"])
        )

        assert "Not authorized" in transport.of_type("error")[0]["message"]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_polling_and_is_idempotent(self, parts):
        connection_id, transport = await parts.connect("alice")
        await parts.gateway.handle_text(connection_id, _frame(type="subscribe", topics=["price:BTC"]))

        await parts.gateway.handle_text(connection_id, _frame(type="unsubscribe", topics=["price:btc"]))
        await parts.gateway.handle_text(connection_id, _frame(type="unsubscribe", topics=["price:BTC"]))

        replies = transport.of_type("unsubscription_success")
        assert [r["topics"] for r in replies] == [["price:BTC"], ["price:BTC"]]
        assert not parts.scheduler.is_running(price_topic("BTC"))
        assert transport.of_type("error") == []

    @pytest.mark.asyncio
    async def test_pong_updates_liveness(self, parts):
        connection_id, transport = await parts.connect("alice")
        parts.clock[0] = 42.0

        await parts.gateway.handle_text(connection_id, _frame(type="pong"))

        assert parts.registry.get(connection_id).last_seen == 42.0
        assert transport.of_type("error") == []


class TestAlertsOverSocket:
    """setup_alert and rearm_alert."""

    @pytest.mark.asyncio
    async def test_setup_alert_creates_and_subscribes(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id,
            _frame(
                type="setup_alert",
                alertSpec={"symbol": "BTC", "condition": "above", "threshold": 50000},
            ),
        )

        [created] = transport.of_type("alert_created")
        assert created["alert"]["symbol"] == "BTC"
        assert created["alert"]["active"] is True
        assert alerts_topic("alice") in parts.topic_index.topics_of(connection_id)
        assert parts.scheduler.is_running(alerts_topic("alice"))
        assert parts.alert_engine.armed_count == 1

    @pytest.mark.asyncio
    async def test_invalid_alert_spec(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id,
            _frame(type="setup_alert", alertSpec={"symbol": "BTC", "condition": "pct_increase", "threshold": 5}),
        )

        assert "basePrice" in transport.of_type("error")[0]["message"]
        assert parts.alert_engine.armed_count == 0

    @pytest.mark.asyncio
    async def test_store_failure_replies_error(self, parts):
        parts.store.fail_create = True
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(
            connection_id,
            _frame(type="setup_alert", alertSpec={"symbol": "BTC", "condition": "above", "threshold": 1}),
        )

        assert transport.of_type("error")[0]["message"] == "Failed to create alert"
        assert parts.topic_index.topics() == set()

    @pytest.mark.asyncio
    async def test_rearm_unknown_alert(self, parts):
        connection_id, transport = await parts.connect("alice")

        await parts.gateway.handle_text(connection_id, _frame(type="rearm_alert", alertId=7))

        assert transport.of_type("error")[0]["message"] == "Alert 7 not found"

    @pytest.mark.asyncio
    async def test_rearm_alert(self, parts):
        connection_id, transport = await parts.connect("alice")
        await parts.gateway.handle_text(
            connection_id,
            _frame(type="setup_alert", alertSpec={"symbol": "BTC", "condition": "above", "threshold": 1}),
        )
        alert_id = transport.of_type("alert_created")[0]["alert"]["id"]
        await parts.store.disable(alert_id)
        parts.alert_engine.remove(alert_id)

        await parts.gateway.handle_text(connection_id, _frame(type="rearm_alert", alertId=alert_id))

        [rearmed] = transport.of_type("alert_rearmed")
        assert rearmed["alert"]["active"] is True
        assert parts.alert_engine.armed_count == 1

    @pytest.mark.asyncio
    async def test_rearm_store_failure_keeps_connection_open(self, parts):
        connection_id, transport = await parts.connect("alice")
        await parts.gateway.handle_text(
            connection_id,
            _frame(type="setup_alert", alertSpec={"symbol": "BTC", "condition": "above", "threshold": 1}),
        )
        alert_id = transport.of_type("alert_created")[0]["alert"]["id"]
        parts.store.fail_rearm = True

        await parts.gateway.handle_text(connection_id, _frame(type="rearm_alert", alertId=alert_id))

        assert transport.of_type("error")[-1]["message"] == "Failed to rearm alert"
        assert transport.of_type("alert_rearmed") == []
        assert transport.close_code is None
        assert connection_id in parts.registry


class TestCleanup:
    """Disconnect paths converge on one idempotent close."""

    @pytest.mark.asyncio
    async def test_close_runs_once(self, parts):
        connection_id, transport = await parts.connect("alice")
        await parts.gateway.handle_text(connection_id, _frame(type="subscribe", topics=["price:BTC"]))

        results = await asyncio.gather(
            parts.gateway.close(connection_id),
            parts.gateway.close(connection_id, code=CLOSE_HEARTBEAT_TIMEOUT),
        )

        assert sorted(results) == [False, True]
        assert transport.close_calls == 1
        assert parts.topic_index.topics() == set()
        assert parts.scheduler.running_topics() == set()
        assert len(parts.registry) == 0

    @pytest.mark.asyncio
    async def test_two_clients_share_a_topic(self, parts):
        a, _ = await parts.connect("alice")
        b, transport_b = await parts.connect("bob")
        topic = price_topic("BTC")
        for connection_id in (a, b):
            await parts.gateway.handle_text(connection_id, _frame(type="subscribe", topics=["price:BTC"]))

        await parts.gateway.close(a, close_transport=False)

        assert parts.topic_index.subscribers_of(topic) == {b}
        assert parts.scheduler.is_running(topic)
        report = await parts.dispatcher.publish(topic, {"type": "price_update"})
        assert report.delivered == [b]
        assert transport_b.of_type("price_update")

    @pytest.mark.asyncio
    async def test_send_failure_closes_connection(self, parts):
        ok, ok_transport = await parts.connect("alice")
        bad, bad_transport = await parts.connect("bob")
        topic = price_topic("BTC")
        for connection_id in (ok, bad):
            await parts.gateway.handle_text(connection_id, _frame(type="subscribe", topics=["price:BTC"]))
        bad_transport.fail_sends = True

        report = await parts.dispatcher.publish(topic, {"type": "price_update"})
        for _ in range(5):
            await asyncio.sleep(0)

        assert list(report.failures) == [bad]
        assert bad not in parts.registry
        assert bad_transport.close_code == CLOSE_SEND_FAILED
        assert ok in parts.registry
        assert parts.topic_index.subscribers_of(topic) == {ok}
        assert ok_transport.of_type("price_update")

    @pytest.mark.asyncio
    async def test_shutdown_closes_everyone_with_1001(self, parts):
        _, a = await parts.connect("alice")
        _, b = await parts.connect("bob")

        await parts.gateway.shutdown()

        assert a.close_code == CLOSE_GOING_AWAY
        assert b.close_code == CLOSE_GOING_AWAY
        assert len(parts.registry) == 0


class TestHeartbeat:
    """Stale connections are closed with 4001, the rest are pinged."""

    @pytest.mark.asyncio
    async def test_silent_connection_times_out(self, parts):
        quiet, quiet_transport = await parts.connect("alice")
        parts.clock[0] = 50.0
        chatty, _ = await parts.connect("bob")

        closed = await parts.gateway.close_stale(61.0)

        assert closed == [quiet]
        assert quiet_transport.close_code == CLOSE_HEARTBEAT_TIMEOUT
        assert chatty in parts.registry

    @pytest.mark.asyncio
    async def test_activity_keeps_connection_alive(self, parts):
        connection_id, _ = await parts.connect("alice")
        parts.clock[0] = 55.0
        await parts.gateway.handle_text(connection_id, _frame(type="pong"))

        assert await parts.gateway.close_stale(100.0) == []
        assert connection_id in parts.registry

    @pytest.mark.asyncio
    async def test_status(self, parts):
        connection_id, _ = await parts.connect("alice")
        await parts.connect("alice")
        await parts.gateway.handle_text(connection_id, _frame(type="subscribe", topics=["price:BTC"]))

        assert parts.gateway.status() == {
            "connections": 2,
            "users": 1,
            "topics": {"price:BTC": 1},
        }

    @pytest.mark.asyncio
    async def test_loop_closes_at_two_intervals_of_silence(self):
        sleep = ManualSleep()
        parts = make_components(heartbeat_sleep=sleep)
        try:
            parts.gateway.start_heartbeat()
            delay, wake = await sleep.next()
            assert delay == 30.0

            # Connects just after the loop started, then never sends again.
            parts.clock[0] = 1.0
            connection_id, transport = await parts.connect("alice")

            parts.clock[0] = 30.0
            wake.set_result(None)
            delay, wake = await sleep.next()
            assert delay == 30.0

            parts.clock[0] = 60.0
            wake.set_result(None)
            delay, wake = await sleep.next()
            assert delay == 1.0
            assert connection_id in parts.registry

            parts.clock[0] = 61.0
            wake.set_result(None)
            await sleep.next()

            assert transport.close_code == CLOSE_HEARTBEAT_TIMEOUT
            assert connection_id not in parts.registry
            assert len(transport.of_type("ping")) == 2
        finally:
            await parts.aclose()

    @pytest.mark.asyncio
    async def test_next_stale_deadline_follows_activity(self, parts):
        assert parts.gateway.next_stale_deadline() is None
        parts.clock[0] = 5.0
        first, _ = await parts.connect("alice")
        parts.clock[0] = 20.0
        await parts.connect("bob")
        assert parts.gateway.next_stale_deadline() == 65.0

        await parts.gateway.handle_text(first, _frame(type="pong"))

        assert parts.gateway.next_stale_deadline() == 80.0
