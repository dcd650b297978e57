#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dealer.models import LogKind, LogMessage, SessionConfig, Stage
from dealer.rounds import dealer_player
from relay.client import RelayConnection, RemoteRegistry, RemoteStore, TableSession

logging.basicConfig(level=logging.WARNING)

# ManualClient drives one device from the terminal: either the host display or
# a player's phone. Notifications print as they arrive from the change feed.

HOST_COMMANDS = {
    "n": "next stage (deal, flop, turn, river, showdown, new round)",
    "b": "set shuffle factor for the next round (0-100)",
    "j": "set the join link shown with the room code",
    "s": "show table",
    "q": "end the game for everyone",
}
PLAYER_COMMANDS = {
    "f": "fold",
    "r": "toggle show/muck at showdown",
    "s": "show table",
    "q": "leave the table",
}
KIND_MARKERS = {LogKind.INFO: " ", LogKind.ALERT: "!", LogKind.SUCCESS: "*"}


class ManualClient:
    def __init__(self, session: TableSession) -> None:
        self.session = session
        self.session.listeners.append(self._print_notifications)

    async def run_host(self, room_code: Optional[str], shuffle_factor: Optional[int]) -> None:
        if room_code:
            room = await self.session.recover_host(room_code)
        else:
            room = await self.session.create_room(shuffle_factor)
        if room is None:
            self._print_alerts()
            return
        print(f"Room code: {room.id}  (players join with --join {room.id} --name <you>)")
        await self._loop(HOST_COMMANDS)

    async def run_player(self, room_code: str, name: str) -> None:
        player = await self.session.join(room_code, name)
        if player is None:
            self._print_alerts()
            return
        print(f"Seated in room {player.room_id} as {player.name}. Resume token: {self.session.token}")
        await self._loop(PLAYER_COMMANDS)

    async def _loop(self, commands: dict) -> None:
        self._render()
        while not self.session.ended:
            choice = (await asyncio.to_thread(input, self._prompt(commands))).strip().lower()
            if self.session.ended:
                break
            if choice in ("", "s"):
                self._render()
            elif choice == "h":
                for key, text in commands.items():
                    print(f"  {key}  {text}")
            elif choice == "q":
                if self.session.is_host:
                    await self.session.end_room()
                else:
                    await self.session.leave()
                break
            elif self.session.is_host:
                await self._host_action(choice)
            else:
                await self._player_action(choice)
        print("Session closed")

    async def _host_action(self, choice: str) -> None:
        if choice == "n":
            await self.session.advance()
        elif choice == "b":
            value = (await asyncio.to_thread(input, "Shuffle factor [0-100]: ")).strip()
            try:
                bias = int(value)
            except ValueError:
                print("Enter a whole number")
                return
            room = await self.session.set_shuffle_bias(bias)
            if room is not None:
                print(f"Shuffle factor {room.shuffle_factor} applies from the next round")
        elif choice == "j":
            link = (await asyncio.to_thread(input, "Join link (blank to clear): ")).strip()
            room = await self.session.set_qr_url(link)
            if room is not None:
                print(f"Join link: {room.qr_url or '--'}")
        else:
            print("Unknown command (h=help)")

    async def _player_action(self, choice: str) -> None:
        me = self.session.me
        if choice == "f":
            if me is None or me.has_folded:
                print("Nothing to fold")
                return
            await self.session.fold()
        elif choice == "r":
            await self.session.toggle_reveal()
        else:
            print("Unknown command (h=help)")

    def _prompt(self, commands: dict) -> str:
        stage = self.session.room.stage.value if self.session.room else "?"
        return f"[{stage}] " + "/".join(commands) + " (h=help): "

    def _render(self) -> None:
        mirror = self.session.mirror
        room = self.session.room
        if mirror is None or room is None:
            print("No table loaded")
            return
        board = " ".join(card.id for card in room.visible_community()) or "--"
        hidden = len(room.community_cards) - len(room.visible_community())
        print(
            f"Room {room.id} | Round {room.round_count + 1} | Stage {room.stage.value} | "
            f"Board {board}{' + ' + str(hidden) + ' hidden' if hidden else ''} | Shuffle {room.shuffle_factor}"
        )
        if room.qr_url:
            print(f"Join at {room.qr_url}")
        players = mirror.player_list()
        dealer = dealer_player(room, players)
        for player in players:
            tags = []
            if dealer is not None and player.id == dealer.id:
                tags.append("D")
            if player.id == self.session.player_id:
                tags.append("ME")
            if player.has_folded:
                tags.append("FOLD")
            if player.is_revealed:
                tags.append("SHOW")
            label = f" [{','.join(tags)}]" if tags else ""
            print(f"  {player.name:<16}{self._hand_for(player)}{label}")
        if room.stage == Stage.SHOWDOWN and room.winners:
            print("Winners: " + ", ".join(f"{winner.name} ({winner.description})" for winner in room.winners))
        if self.session.waiting_for_deal:
            print("Waiting for your cards...")
        logs = mirror.recent_logs()
        if logs:
            print("Recent:")
            for message in reversed(logs):
                print(f"  {KIND_MARKERS[message.kind]} {message.text}")

    def _hand_for(self, player) -> str:
        if not player.hand:
            return "--"
        room = self.session.room
        own = player.id == self.session.player_id
        shown = room is not None and room.stage == Stage.SHOWDOWN and player.is_revealed
        if own or shown:
            return " ".join(card.id for card in player.hand)
        return "## ##"

    def _print_notifications(self, messages: List[LogMessage]) -> None:
        for message in messages:
            print(f"\n{KIND_MARKERS[message.kind]} {message.text}")

    def _print_alerts(self) -> None:
        for alert in self.session.alerts:
            print(f"! {alert}")


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Shared poker table terminal client")
    parser.add_argument("--url", default="ws://127.0.0.1:8765")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--host", action="store_true", help="Run the host display (creates a room)")
    group.add_argument("--join", metavar="CODE", help="Join a room as a player")
    parser.add_argument("--room", help="Re-attach the host display to an existing room")
    parser.add_argument("--name", help="Player name (required with --join)")
    parser.add_argument("--shuffle-factor", type=int, default=None)
    args = parser.parse_args(argv)
    if args.join and not args.name:
        parser.error("--name is required with --join")
    return args


async def run(args: argparse.Namespace) -> None:
    config = SessionConfig()
    role = "host" if args.host else "player"
    async with RelayConnection(args.url, role=role, config=config) as connection:
        session = TableSession(RemoteStore(connection, config), RemoteRegistry(connection), config)
        client = ManualClient(session)
        try:
            if args.host:
                await client.run_host(args.room, args.shuffle_factor)
            else:
                await client.run_player(args.join, args.name)
        finally:
            await session.close()


def main(argv: List[str]) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nSession closed")


if __name__ == "__main__":
    main(sys.argv[1:])
