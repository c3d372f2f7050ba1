#!/usr/bin/env python3
"""Seed a handful of demo conversations into a running message analyzer backend."""

from __future__ import annotations

import argparse
import json
import time
import urllib.error
import urllib.request

BASE_URL_DEFAULT = "http://localhost:8000/api"

DEMO_THREADS: list[dict] = [
    {
        "thread_id": "demo-thread-001",
        "operator": "alex",
        "model": "luna",
        "messages": [
            ("incoming", "hey, are you online?"),
            ("outgoing", "hi babe, just got back, how was your day?"),
            ("incoming", "long day at work lol"),
            ("outgoing", "aw, tell me everything, I want to hear it"),
            ("incoming", "maybe later, what are you up to?"),
            ("outgoing", "thinking about you, I made something special today"),
        ],
        "converted_on": 5,
    },
    {
        "thread_id": "demo-thread-002",
        "operator": "sam",
        "model": "ivy",
        "messages": [
            ("incoming", "hello?"),
            ("outgoing", "hey there! nice to meet you"),
            ("incoming", "you too"),
        ],
        "converted_on": None,
    },
    {
        "thread_id": "demo-thread-003",
        "operator": "alex",
        "model": "ivy",
        "messages": [
            ("outgoing", "missed you this week"),
            ("incoming", "been busy, sorry"),
        ],
        "converted_on": None,
    },
]


def post_json(url: str, data: dict) -> dict:
    """POST JSON to a URL and return parsed response."""
    body = json.dumps(data).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req) as resp:
        return json.loads(resp.read().decode("utf-8"))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed demo threads into the message analyzer backend.")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Message analyzer API base URL")
    parser.add_argument(
        "--delay-seconds",
        type=float,
        default=0.0,
        help="Pause between messages so response times are non-zero",
    )
    parser.add_argument("--prefix", default="", help="Prefix added to every demo thread id")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    url = f"{args.base_url.rstrip('/')}/threads"

    print("=" * 60)
    print("Seeding demo threads")
    print("=" * 60)

    recorded = 0
    dispatched: list[str] = []
    for thread in DEMO_THREADS:
        thread_id = f"{args.prefix}{thread['thread_id']}"
        print(f"\n{thread_id} ({thread['operator']} / {thread['model']})")
        for index, (direction, text) in enumerate(thread["messages"]):
            payload = {
                "thread_id": thread_id,
                "operator": thread["operator"],
                "model": thread["model"],
                "type": direction,
                "message": text,
            }
            if thread["converted_on"] == index:
                payload["converted"] = "Yes"
            try:
                response = post_json(url, payload)
            except urllib.error.HTTPError as e:
                error_body = e.read().decode("utf-8") if e.fp else "unknown"
                print(f"  WARN: message {index} rejected: {e.code} {error_body}")
                continue
            recorded += 1
            print(f"  [{direction:8s}] {text}")
            if response.get("dispatch_scheduled"):
                dispatched.append(thread_id)
            if args.delay_seconds > 0:
                time.sleep(args.delay_seconds)

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(f"  Messages recorded:     {recorded}")
    print(f"  Analysis dispatched:   {', '.join(dispatched) or 'none'}")
    print("=" * 60)


if __name__ == "__main__":
    main()
