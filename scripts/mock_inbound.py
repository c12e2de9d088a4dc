from __future__ import annotations

import argparse
import json
import sys
import time
import urllib.error
import urllib.request


def post_json(url: str, body: bytes) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def build_event(index: int, args: argparse.Namespace) -> dict:
    phone = f"55119{index:08d}"[-13:]
    message: dict = {"timestamp": int(time.time())}
    if args.media:
        message["media"] = {"media_type": "image", "caption": f"mock image {index}"}
    else:
        message["text"] = f"mock inbound message {index}"
    return {
        "chat_handle": f"{phone}@s.whatsapp.net",
        "external_id": f"mock-{args.instance}-{index}",
        "instance_id": args.instance,
        "display_name": f"Mock Contact {index}",
        "message": message,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock inbound chat events to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--tenant", default="tenant-dev")
    parser.add_argument("--instance", default="instance-dev")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--media", action="store_true", help="send image events without a URL")
    parser.add_argument("--replay", type=int, default=1, help="deliveries per event")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/tenants/{args.tenant}/inbound/messages"
    for index in range(args.start_index, args.start_index + args.count):
        event = build_event(index, args)
        body = json.dumps(event, separators=(",", ":")).encode("utf-8")
        for _ in range(max(args.replay, 1)):
            status_code, response = post_json(endpoint, body)
            print(f"{status_code} {event['external_id']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
