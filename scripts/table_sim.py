#!/usr/bin/env python3
"""Simulate a shared table with one host display and a few player phones.

This script spins up the table relay in-process, opens one connection per
device and plays a number of rounds. Players fold or flip their reveal flag
at random so the change feed and the showdown resolver get some traffic.

Example:
    python scripts/table_sim.py --players 4 --rounds 10
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from typing import List

from dealer.models import LogMessage, SessionConfig, Stage
from relay.client import RelayConnection, RemoteRegistry, RemoteStore, TableSession
from relay.server import RelayServer

LOGGER = logging.getLogger("table_sim")


@dataclass
class Device:
    name: str
    connection: RelayConnection
    session: TableSession
    rng: random.Random


def open_device(name: str, url: str, role: str, config: SessionConfig, rng: random.Random) -> Device:
    connection = RelayConnection(url, role=role, config=config)
    session = TableSession(RemoteStore(connection, config), RemoteRegistry(connection), config, rng)
    return Device(name=name, connection=connection, session=session, rng=rng)


async def settle(delay: float = 0.05) -> None:
    # Let change frames reach every mirror before the next action.
    await asyncio.sleep(delay)


async def play_round(host: Device, players: List[Device], fold_rate: float) -> None:
    for _ in range(len(Stage) - 1):
        room = await host.session.advance()
        await settle()
        if room is None:
            return
        if room.stage in (Stage.FLOP, Stage.TURN):
            for device in players:
                me = device.session.me
                if me is not None and me.hand and not me.has_folded and device.rng.random() < fold_rate:
                    await device.session.fold()
        if room.stage == Stage.RIVER:
            for device in players:
                if device.rng.random() < 0.5:
                    await device.session.toggle_reveal()
        await settle()

    room = host.session.room
    if room is not None and room.stage == Stage.SHOWDOWN:
        winners = ", ".join(f"{winner.name} ({winner.description})" for winner in room.winners) or "nobody"
        LOGGER.info("Round %s: %s", room.round_count + 1, winners)
    # Showdown -> waiting for the next round.
    await host.session.advance()
    await settle()


async def run_simulation(args: argparse.Namespace) -> None:
    config = SessionConfig(host=args.host, port=args.port, default_shuffle_factor=args.shuffle_factor)
    relay = RelayServer(config)
    server_task = asyncio.create_task(relay.start(args.host, args.port))
    await asyncio.sleep(0.5)  # give the socket time to bind

    url = f"ws://{args.host}:{args.port}"
    host = open_device("host", url, "host", config, random.Random(args.seed))
    players = [
        open_device(f"SimPlayer{i}", url, "player", config, random.Random(args.seed + i + 1))
        for i in range(args.players)
    ]
    devices = [host] + players

    def echo(device: Device):
        def _listener(messages: List[LogMessage]) -> None:
            for message in messages:
                LOGGER.debug("[%s] %s", device.name, message.text)

        return _listener

    try:
        for device in devices:
            await device.connection.connect()
            device.session.listeners.append(echo(device))

        room = await host.session.create_room()
        if room is None:
            LOGGER.error("Could not create a room: %s", host.session.alerts)
            return
        LOGGER.info("Room %s open", room.id)

        for device in players:
            await device.session.join(room.id, device.name)
        await settle()

        for _ in range(args.rounds):
            await asyncio.wait_for(play_round(host, players, args.fold_rate), timeout=args.timeout)

        for device in devices:
            alerts = list(device.session.alerts)
            if alerts:
                LOGGER.warning("%s saw alerts: %s", device.name, alerts)

        await host.session.end_room()
        await settle()
        ended = sum(1 for device in players if device.session.ended)
        LOGGER.info("Game over; %s/%s player sessions closed by the host", ended, len(players))
    except asyncio.TimeoutError:
        LOGGER.warning("Simulation timed out; stopping devices")
    finally:
        for device in devices:
            await device.session.close()
            await device.connection.close()
        server_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await server_task


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a local shared-table simulation")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=9001)
    parser.add_argument("--players", type=int, default=4)
    parser.add_argument("--rounds", type=int, default=5)
    parser.add_argument("--shuffle-factor", type=int, default=100)
    parser.add_argument("--fold-rate", type=float, default=0.15)
    parser.add_argument("--timeout", type=float, default=30.0, help="max seconds per round")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    try:
        asyncio.run(run_simulation(args))
    except KeyboardInterrupt:
        LOGGER.info("Simulation interrupted; shutting down")


if __name__ == "__main__":
    main()
