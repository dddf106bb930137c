"""Local stand-in for Jetstream.

Serves /subscribe over websockets and streams synthetic commit, identity and
account events, honouring wantedCollections and cursor. Point the relay at it
with JETSTREAM_URL=ws://localhost:6008/subscribe.
"""
import argparse
import asyncio
import json
import random
import string
import time
from urllib.parse import parse_qs, urlsplit

import websockets

DEFAULT_COLLECTIONS = ["app.bsky.feed.post", "app.bsky.feed.like", "app.bsky.graph.follow"]


def now_us() -> int:
    return time.time_ns() // 1000


def rand_str(n=13):
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=n))


def wanted(collection: str, patterns: list[str]) -> bool:
    if not patterns:
        return True
    for p in patterns:
        if p.endswith(".*") and collection.startswith(p[:-1]):
            return True
        if p == collection:
            return True
    return False


def gen_event(time_us: int, collections: list[str], other_ratio: float) -> dict:
    did = f"did:plc:{rand_str(24)}"
    roll = random.random()
    if roll < other_ratio / 2:
        return {
            "did": did, "time_us": time_us, "kind": "identity",
            "identity": {"did": did, "handle": f"{rand_str(8)}.test", "seq": time_us, "time": "2025-01-01T00:00:00Z"},
        }
    if roll < other_ratio:
        return {
            "did": did, "time_us": time_us, "kind": "account",
            "account": {"active": True, "did": did, "seq": time_us, "time": "2025-01-01T00:00:00Z"},
        }
    collection = random.choice(collections)
    return {
        "did": did,
        "time_us": time_us,
        "kind": "commit",
        "commit": {
            "rev": rand_str(),
            "operation": "create",
            "collection": collection,
            "rkey": rand_str(),
            "record": {"$type": collection, "createdAt": "2025-01-01T00:00:00Z"},
            "cid": f"bafy{rand_str(20)}",
        },
    }


async def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default="localhost")
    ap.add_argument("--port", type=int, default=6008)
    ap.add_argument("-r", "--rate", type=float, default=50.0, help="events per second")
    ap.add_argument("-o", "--other-ratio", type=float, default=0.3, help="share of identity/account events")
    ap.add_argument("-m", "--malformed-ratio", type=float, default=0.0)
    ap.add_argument("-c", "--collections", default=",".join(DEFAULT_COLLECTIONS))
    args = ap.parse_args()
    collections = [c for c in args.collections.split(",") if c]

    async def handler(ws):
        query = parse_qs(urlsplit(ws.request.path).query)
        patterns = query.get("wantedCollections", [])
        cursor = int(query.get("cursor", ["0"])[0] or 0)
        print(f"subscriber connected cursor={cursor} wanted={patterns}")
        served = [c for c in collections if wanted(c, patterns)] or collections
        # replay from the cursor in 1ms steps until caught up, then live
        t = cursor if cursor > 0 else now_us()
        interval = 1.0 / args.rate
        while True:
            t = t + 1000 if t + 1000 < now_us() else max(t + 1, now_us())
            if random.random() < args.malformed_ratio:
                await ws.send("{not json")
            else:
                await ws.send(json.dumps(gen_event(t, served, args.other_ratio)))
            await asyncio.sleep(interval)

    async with websockets.serve(handler, args.host, args.port):
        print(f"fake Jetstream on ws://{args.host}:{args.port}/subscribe")
        await asyncio.Future()


if __name__ == "__main__":
    asyncio.run(main())
