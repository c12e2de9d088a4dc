from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from typing import Any, Optional


def request_json(
    *, url: str, method: str = "GET", payload: Optional[dict[str, Any]] = None
) -> tuple[int, Any, str]:
    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=body, method=method)
    request.add_header("Accept", "application/json")
    if body is not None:
        request.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            text = response.read().decode("utf-8")
            data = json.loads(text) if text.startswith("{") or text.startswith("[") else None
            return response.status, data, text
    except urllib.error.HTTPError as exc:
        text = exc.read().decode("utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        return exc.code, data, text


def request_text(*, url: str) -> tuple[int, str]:
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for the inbox engine API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--tenant", default="smoke-tenant")
    parser.add_argument("--chat-handle", default="5500000000001@s.whatsapp.net")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")

    status, data, _ = request_json(url=f"{base_url}/health")
    assert_true(status == 200, f"/health expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ok", "/health invalid payload")
    print("OK /health")

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    assert_true(
        isinstance(data, dict) and data.get("status") == "ready",
        "/health/ready invalid payload",
    )
    print("OK /health/ready")

    event = {
        "chat_handle": args.chat_handle,
        "external_id": "smoke-message-1",
        "message": {"text": "smoke test"},
    }
    inbound_url = f"{base_url}/tenants/{args.tenant}/inbound/messages"
    status, first, _ = request_json(url=inbound_url, method="POST", payload=event)
    assert_true(status == 200, f"inbound expected 200, got {status}")
    status, second, _ = request_json(url=inbound_url, method="POST", payload=event)
    assert_true(status == 200, f"inbound replay expected 200, got {status}")
    assert_true(
        second["message_id"] == first["message_id"] and second["message_created"] is False,
        "inbound replay created a second message",
    )
    print("OK inbound ingestion is idempotent")

    status, detail, _ = request_json(
        url=f"{base_url}/tenants/{args.tenant}/tickets/{first['ticket_id']}"
    )
    assert_true(status == 200, f"ticket detail expected 200, got {status}")
    assert_true(detail["ticket"]["status"] != "CLOSED", "ticket detail returned a closed ticket")
    print("OK ticket detail")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("inbox_engine_requests_total" in body, "/metrics missing requests counter")
    print("OK /metrics")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
