#!/usr/bin/env python3
"""
Fire a one-off Pusher event using the configured credentials.

Useful for checking credentials, cluster and chunking settings without
going through a route handler.

Usage:
    # Trigger on one channel
    python scripts/trigger_event.py orders order-created '{"id": 1}'

    # Several channels, excluding the sender's own connection
    python scripts/trigger_event.py orders,audit order-created '{"id": 1}' --socket-id 123.456

    # Print the signed request instead of sending it
    python scripts/trigger_event.py orders order-created '{"id": 1}' --dry-run

Environment:
    PUSHER_APP_ID, PUSHER_KEY, PUSHER_SECRET (required)
    PUSHER_CLUSTER / PUSHER_HOST, PUSHER_CHUNKING_ENABLED, PUSHER_CHUNKING_LIMIT (optional)
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pushcast.config import settings
from pushcast.infra.http_client import close_all_sessions
from pushcast.infra.logging_config import setup_logging
from pushcast.infra.pusher_client import PusherClient, PusherError, encode_data, sign_request


async def _send(args, data) -> int:
    client = PusherClient.from_settings(settings)
    channels = [c.strip() for c in args.channels.split(",") if c.strip()]
    try:
        await client.trigger(channels, args.event, data, args.socket_id)
    except PusherError as exc:
        print(f"Error: {exc} (retryable={exc.retryable})", file=sys.stderr)
        return 1
    finally:
        await close_all_sessions()

    print(f"Triggered {args.event} on {', '.join(channels)}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Trigger a Pusher event",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("channels", help="Channel name, or comma-separated list")
    parser.add_argument("event", help="Event name")
    parser.add_argument("data", help="JSON payload (sent as a plain string if not valid JSON)")
    parser.add_argument("--socket-id", "-s", default=None, help="Socket id to exclude from delivery")
    parser.add_argument("--dry-run", "-n", action="store_true", help="Print the signed request and exit")

    args = parser.parse_args()

    if not settings.pusher_configured:
        print("Error: PUSHER_APP_ID, PUSHER_KEY and PUSHER_SECRET must be set", file=sys.stderr)
        sys.exit(1)

    try:
        data = json.loads(args.data)
    except json.JSONDecodeError:
        data = args.data

    if args.dry_run:
        path = f"/apps/{settings.pusher_app_id}/events"
        body = {
            "name": args.event,
            "channels": args.channels.split(","),
            "data": encode_data(data),
        }
        if args.socket_id:
            body["socket_id"] = args.socket_id
        raw = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
        params = sign_request(settings.pusher_key, settings.pusher_secret, "POST", path, raw)
        print(f"POST {settings.pusher_base_url}{path}")
        for key, value in params.items():
            print(f"  {key}={value}")
        print(raw)
        return

    setup_logging(level=settings.log_level)
    sys.exit(asyncio.run(_send(args, data)))


if __name__ == "__main__":
    main()
