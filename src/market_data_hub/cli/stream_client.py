"""CLI for the market_data_hub API and its /ws real-time stream.

Usage:
  poetry run stream-client token alice
  poetry run stream-client health
  poetry run stream-client status
  poetry run stream-client stream price:BTC orderbook:ETH:10 --token <jwt> --messages 5
  poetry run stream-client alert --token <jwt> BTC above 70000
"""
import argparse
import asyncio
import json
import os
import sys
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from market_data_hub.services.auth import JwtAuthValidator


def print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def ws_url(base_url: str, token: str) -> str:
    """http(s)://host -> ws(s)://host/ws?token=..."""
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/ws"
    return urlunsplit((scheme, parts.netloc, path, urlencode({"token": token}), ""))


def cmd_token(args: argparse.Namespace) -> int:
    secret = os.getenv("JWT_SECRET", "dev-only-insecure-key")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    print(JwtAuthValidator(secret, algorithm).create_access_token(args.user_id))
    return 0


def cmd_health(client: httpx.Client, _: argparse.Namespace) -> int:
    r = client.get("/")
    r.raise_for_status()
    print_json(r.json())
    return 0


def cmd_status(client: httpx.Client, _: argparse.Namespace) -> int:
    r = client.get("/realtime/status")
    r.raise_for_status()
    print_json(r.json())
    return 0


def cmd_alert(client: httpx.Client, args: argparse.Namespace) -> int:
    spec = {
        "kind": args.kind,
        "symbol": args.symbol,
        "condition": args.condition,
        "threshold": args.threshold,
    }
    if args.base_price is not None:
        spec["basePrice"] = args.base_price
    r = client.post("/alerts", json=spec, headers={"Authorization": f"Bearer {args.token}"})
    r.raise_for_status()
    print_json(r.json())
    return 0


def cmd_alerts(client: httpx.Client, args: argparse.Namespace) -> int:
    r = client.get("/alerts", headers={"Authorization": f"Bearer {args.token}"})
    r.raise_for_status()
    data = r.json()
    print(f"Found {len(data)} alerts")
    print_json(data)
    return 0


async def _stream(
    url: str,
    topics: list[str],
    interval: float | None,
    max_messages: int | None,
    show_pings: bool,
) -> int:
    count = 0
    async with websockets.connect(url) as ws:
        subscribe: dict = {"type": "subscribe", "topics": topics}
        if interval:
            subscribe["options"] = {"interval": interval}
        await ws.send(json.dumps(subscribe))
        async for raw in ws:
            message = json.loads(raw)
            if message.get("type") == "ping":
                await ws.send(json.dumps({"type": "pong"}))
                if not show_pings:
                    continue
            print_json(message)
            if message.get("type") == "error":
                print(f"Server error: {message.get('message')}", file=sys.stderr)
            count += 1
            if max_messages and count >= max_messages:
                break
    return count


def cmd_stream(args: argparse.Namespace) -> int:
    url = ws_url(args.base_url, args.token)
    print(
        f"Streaming {args.topics} (duration={args.duration}s, max_messages={args.messages or '∞'})",
        file=sys.stderr,
    )

    async def run_with_timeout() -> None:
        coro = _stream(url, args.topics, args.interval, args.messages, args.pings)
        if args.duration and args.duration > 0:
            try:
                await asyncio.wait_for(coro, timeout=args.duration)
            except asyncio.TimeoutError:
                print(f"Stopped after {args.duration}s", file=sys.stderr)
        else:
            await coro

    try:
        asyncio.run(run_with_timeout())
    except KeyboardInterrupt:
        print("\nStopped by user", file=sys.stderr)
        return 130
    except ConnectionClosed as e:
        print(f"Connection closed: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Connection error: {e}", file=sys.stderr)
        return 1
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Talk to the market_data_hub API and real-time stream.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8001",
        help="API base URL (default: http://localhost:8001)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Request timeout in seconds (default: 30)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command")

    p = subparsers.add_parser("token", help="Mint a dev JWT with JWT_SECRET")
    p.add_argument("user_id", help="User id to put in the token subject")

    subparsers.add_parser("health", help="GET / health check")
    subparsers.add_parser("status", help="GET /realtime/status")

    p = subparsers.add_parser("alert", help="POST /alerts")
    p.add_argument("--token", required=True, help="Bearer token")
    p.add_argument("--kind", choices=["PRICE", "VOLUME", "RISK"], default="PRICE")
    p.add_argument("--base-price", type=float, default=None, help="Base for pct conditions")
    p.add_argument("symbol", help="Ticker (e.g. BTC); ignored for RISK alerts")
    p.add_argument("condition", choices=["above", "below", "pct_increase", "pct_decrease"])
    p.add_argument("threshold", type=float, help="Price, volume, risk score or percentage")

    p = subparsers.add_parser("alerts", help="GET /alerts")
    p.add_argument("--token", required=True, help="Bearer token")

    p = subparsers.add_parser("stream", help="Subscribe on /ws and print pushed messages")
    p.add_argument("topics", nargs="+", help="Topics (e.g. price:BTC orderbook:ETH:10 portfolio)")
    p.add_argument("--token", required=True, help="Bearer token")
    p.add_argument("--interval", type=float, default=None, help="Poll interval override (s)")
    p.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="SECS",
        help="Stop after SECS seconds (default: run until Ctrl+C)",
    )
    p.add_argument(
        "--messages",
        type=int,
        default=None,
        metavar="N",
        help="Stop after N messages (default: no limit)",
    )
    p.add_argument("--pings", action="store_true", help="Also print heartbeat pings")

    args = parser.parse_args()
    args.base_url = args.base_url.rstrip("/")

    if args.command == "token":
        return cmd_token(args)
    if args.command == "stream":
        return cmd_stream(args)

    handlers = {
        "health": cmd_health,
        "status": cmd_status,
        "alert": cmd_alert,
        "alerts": cmd_alerts,
    }
    try:
        with httpx.Client(base_url=args.base_url, timeout=args.timeout) as client:
            return handlers[args.command](client, args)
    except httpx.HTTPStatusError as e:
        print(f"HTTP error: {e.response.status_code}", file=sys.stderr)
        if e.response.content:
            try:
                print(e.response.json(), file=sys.stderr)
            except ValueError:
                print(e.response.text, file=sys.stderr)
        return 1
    except httpx.RequestError as e:
        print(f"Request error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
