import argparse
import asyncio
import logging

from dealer.models import SessionConfig
from .server import RelayServer

logging.basicConfig(level=logging.INFO)


def main() -> None:
    defaults = SessionConfig()
    parser = argparse.ArgumentParser(description="Shared poker table relay")
    parser.add_argument("--host", default=defaults.host)
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument(
        "--shuffle-factor",
        type=int,
        default=defaults.default_shuffle_factor,
        help="Shuffle factor for new rooms, 0 (no shuffle) to 100 (fully random)",
    )
    parser.add_argument("--room-code-min", type=int, default=defaults.room_code_min)
    parser.add_argument("--room-code-max", type=int, default=defaults.room_code_max)
    parser.add_argument(
        "--token-ttl",
        type=float,
        default=defaults.token_ttl_s,
        help="Seconds a player's session token stays valid after its last use",
    )
    parser.add_argument("--read-retries", type=int, default=defaults.read_retries)
    parser.add_argument("--retry-backoff-ms", type=int, default=defaults.retry_backoff_ms)
    parser.add_argument("--request-timeout", type=float, default=defaults.request_timeout_s)
    parser.add_argument("--debug", action="store_true", help="Log every change event")
    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    if not 0 <= args.shuffle_factor <= 100:
        parser.error("--shuffle-factor must be between 0 and 100")
    if args.room_code_min > args.room_code_max:
        parser.error("--room-code-min must not exceed --room-code-max")

    config = SessionConfig(
        host=args.host,
        port=args.port,
        default_shuffle_factor=args.shuffle_factor,
        room_code_min=args.room_code_min,
        room_code_max=args.room_code_max,
        token_ttl_s=args.token_ttl,
        read_retries=args.read_retries,
        retry_backoff_ms=args.retry_backoff_ms,
        request_timeout_s=args.request_timeout,
    )

    server = RelayServer(config)
    asyncio.run(server.start(host=args.host, port=args.port))


if __name__ == "__main__":
    main()
