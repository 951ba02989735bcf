"""Utility that sends sample messages to a Service Bus entity for sbviewer."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sbviewer.config import CONFIG_FILE, EMULATOR_CONNECTION_STRING, AppConfig, ConnectionProfileConfig, load_config, save_config
from sbviewer.errors import SessionError
from sbviewer.session import ConnectionSession

DEFAULT_PROFILE = "Seeded Emulator"
DEFAULT_QUEUE = "queue.1"
DEFAULT_COUNT = 5


def sample_body(index: int) -> str:
    return json.dumps({"orderId": 1000 + index, "status": "created", "source": "seed_messages"})


def seed_messages(
    session: ConnectionSession,
    connection_string: str,
    entity: str,
    subscription: str | None,
    count: int,
) -> list[str]:
    session.connect(connection_string, None, entity, subscription)
    try:
        sent: list[str] = []
        for index in range(1, count + 1):
            message_id = session.send(sample_body(index), "application/json", {"seq": str(index)})
            print(f"sent {message_id}")
            sent.append(message_id)
        return sent
    finally:
        session.disconnect()


def update_config(connection_string: str, entity: str, subscription: str | None) -> None:
    try:
        config = load_config()
    except Exception:
        config = AppConfig()
    profiles = list(config.profiles)
    target = next((p for p in profiles if p.name == DEFAULT_PROFILE), None)
    if target is None:
        profiles.append(
            ConnectionProfileConfig(
                name=DEFAULT_PROFILE,
                backend="azure",
                connection_string=connection_string,
                entity_name=entity,
                subscription_name=subscription,
            )
        )
        config = config.model_copy(update={"profiles": profiles})
        save_config(config)
        print(f"Added '{DEFAULT_PROFILE}' profile to {CONFIG_FILE}.")
    else:
        print(f"Profile '{DEFAULT_PROFILE}' already present in config; leaving as-is.")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--connection-string",
        default=os.environ.get("CONNECTION_STRING") or EMULATOR_CONNECTION_STRING,
        help="Service Bus connection string (defaults to $CONNECTION_STRING or the local emulator)",
    )
    parser.add_argument("--entity", default=DEFAULT_QUEUE, help="Queue or topic to send to")
    parser.add_argument("--subscription", default=None, help="Treat --entity as a topic with this subscription")
    parser.add_argument("--count", type=int, default=DEFAULT_COUNT, help="Number of messages to send")
    parser.add_argument("--no-profile", action="store_true", help="Do not add a profile to the config file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        sent = seed_messages(ConnectionSession(), args.connection_string, args.entity, args.subscription, args.count)
    except SessionError as exc:
        print(exc.describe())
        return 1
    if not args.no_profile:
        update_config(args.connection_string, args.entity, args.subscription)
    print(f"Sent {len(sent)} message(s) to '{args.entity}'. Open them with the '{DEFAULT_PROFILE}' profile.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
