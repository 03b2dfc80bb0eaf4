from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List

from chatline.core.errors import ChatError
from chatline.core.presence import PresenceLedger
from chatline.core.store import ChatStore
from chatline.utils.canonical import dumps_text

log = logging.getLogger("chatline.cmd.admin")


async def _add_user(store: ChatStore, args) -> Dict[str, Any]:
    return await store.create_user(args.name, email=args.email, avatar=args.avatar)


async def _befriend(store: ChatStore, args) -> Dict[str, Any]:
    edge = await store.request_friend(args.requester, args.addressee)
    await store.accept_friend(args.addressee, args.requester)
    return await store.friendship(edge["user_id"], edge["friend_id"])


async def _create_group(store: ChatStore, args) -> Dict[str, Any]:
    group = await store.create_group(args.owner, args.name, description=args.description or "")
    for uid in args.member or []:
        await store.add_group_member(group["id"], uid)
    return {**group, "members": sorted(await store.group_member_ids(group["id"]))}


async def _join_group(store: ChatStore, args) -> Dict[str, Any]:
    added = await store.add_group_member(args.group, args.user)
    return {"group_id": args.group, "user_id": args.user, "added": added}


async def _online(store: ChatStore, args) -> List[Dict[str, Any]]:
    ledger = PresenceLedger(store, server_id="admin", window_secs=args.window)
    return [r for r in await store.presence_rows(args.user) if r["last_seen"] >= ledger.cutoff()]


COMMANDS = {
    "add-user": _add_user,
    "befriend": _befriend,
    "create-group": _create_group,
    "join-group": _join_group,
    "online": _online,
}


async def _run(args) -> Any:
    store = await ChatStore(args.db).open()
    try:
        return await COMMANDS[args.command](store, args)
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatline-admin", description="Seed and inspect a chatline database")
    parser.add_argument("--db", default="chatline.db", help="SQLite database path")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add-user", help="Create a user")
    p.add_argument("name")
    p.add_argument("--email")
    p.add_argument("--avatar")

    p = sub.add_parser("befriend", help="Create an accepted friendship")
    p.add_argument("requester", type=int)
    p.add_argument("addressee", type=int)

    p = sub.add_parser("create-group", help="Create a group owned by a user")
    p.add_argument("owner", type=int)
    p.add_argument("name")
    p.add_argument("--description")
    p.add_argument("--member", type=int, action="append", help="Additional member id (repeatable)")

    p = sub.add_parser("join-group", help="Add a user to a group")
    p.add_argument("group", type=int)
    p.add_argument("user", type=int)

    p = sub.add_parser("online", help="List presence rows within the liveness window")
    p.add_argument("--user", type=int)
    p.add_argument("--window", type=float, default=300.0, help="Liveness window in seconds")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        result = asyncio.run(_run(args))
    except (LookupError, ValueError, ChatError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(dumps_text(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
