#!/usr/bin/env python3
"""
End-to-end smoke test against a running order pipeline.

Run:
  python e2e_smoke.py

Optional env:
  API_BASE=http://localhost:8000
  QUEUE_PROCESSOR_TOKEN=...       enables the queue trigger check
  PAYMENT_WEBHOOK_SECRET=...      enables the payment webhook checks
  LOW_STOCK_PRODUCT_ID=...        a product whose tracked stock is below 1000
  DEBUG=1
"""

import hashlib
import hmac
import json
import os
import sys
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests


# =========================
# Simple CLI UI (ANSI)
# =========================

class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def banner():
    title = " Order Pipeline - E2E Smoke Tests "
    line = "─" * len(title)
    print(f"\n{Style.CYAN}┌{line}┐{Style.RESET}")
    print(f"{Style.CYAN}│{Style.RESET}{Style.BOLD}{title}{Style.RESET}{Style.CYAN}│{Style.RESET}")
    print(f"{Style.CYAN}└{line}┘{Style.RESET}\n")


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}▶ {text}{Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def warn(msg: str):
    print(f"{Style.YELLOW}⚠ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

API_BASE = os.getenv("API_BASE", "http://localhost:8000").rstrip("/")
QUEUE_TOKEN = os.getenv("QUEUE_PROCESSOR_TOKEN", "")
WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
LOW_STOCK_PRODUCT_ID = os.getenv("LOW_STOCK_PRODUCT_ID", "")
DEBUG = os.getenv("DEBUG", "0").strip().lower() in {"1", "true", "yes"}


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


@dataclass
class TestResult:
    name: str
    success: bool
    details: str = ""


# =========================
# HTTP helpers
# =========================

def http(method: str, path: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 15)
    url = API_BASE + path
    debug(f"{method} {url}")
    return requests.request(method, url, **kwargs)


def order_payload(items: List[Dict[str, Any]], payment_method: str = "cash",
                  total: Optional[float] = None) -> Dict[str, Any]:
    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
    tax = round(subtotal * 0.0825, 2)
    delivery_fee = 5.0
    return {
        "customer_name": "Smoke Test",
        "customer_email": "smoke-test@example.com",
        "customer_phone": "612-555-0100",
        "delivery_first_name": "Smoke",
        "delivery_last_name": "Test",
        "delivery_address": {
            "street": "100 Main St",
            "city": "Minneapolis",
            "state": "MN",
            "zipcode": "55401",
        },
        "items": items,
        "subtotal": subtotal,
        "tax": tax,
        "delivery_fee": delivery_fee,
        "total": total if total is not None else round(subtotal + tax + delivery_fee, 2),
        "payment_method": payment_method,
    }


DEFAULT_ITEMS = [
    {"product_id": "smoke-product-a", "quantity": 1, "price": 25.0, "name": "Smoke A"},
    {"product_id": "smoke-product-b", "quantity": 2, "price": 10.0, "name": "Smoke B"},
]


def expect(name: str, resp: requests.Response, status: int) -> TestResult:
    success = resp.status_code == status
    details = f"HTTP {resp.status_code}, correlationId={_json(resp).get('correlationId')}"
    (ok if success else fail)(f"{name}: {details}")
    if not success:
        details += f", body={resp.text[:300]}"
    return TestResult(name, success, details)


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# =========================
# Scenarios
# =========================

def scenario_orders() -> Tuple[List[TestResult], Optional[str]]:
    section_title("Order submission")
    results = []

    resp = http("POST", "/api/v1/orders", json=order_payload(DEFAULT_ITEMS))
    results.append(expect("Cash order accepted", resp, 200))

    resp = http("POST", "/api/v1/orders", json=order_payload(DEFAULT_ITEMS, total=50.0))
    results.append(expect("Bad total rejected", resp, 400))

    if LOW_STOCK_PRODUCT_ID:
        items = [{"product_id": LOW_STOCK_PRODUCT_ID, "quantity": 1000, "price": 1.0, "name": "Low stock"}]
        resp = http("POST", "/api/v1/orders", json=order_payload(items))
        results.append(expect("Out-of-stock order rejected", resp, 409))
    else:
        warn("LOW_STOCK_PRODUCT_ID not set; skipping stock check")

    resp = http("POST", "/api/v1/orders", json=order_payload(DEFAULT_ITEMS, payment_method="card"))
    results.append(expect("Card order accepted", resp, 200))
    card_order_id = _json(resp).get("order", {}).get("id")
    return results, card_order_id


def scenario_queue() -> List[TestResult]:
    section_title("Queue processing")
    if not QUEUE_TOKEN:
        warn("QUEUE_PROCESSOR_TOKEN not set; skipping")
        return []
    results = [expect("Queue trigger rejects missing token", http("POST", "/api/v1/queue/process"), 401)]
    resp = http("POST", "/api/v1/queue/process", headers={"Authorization": f"Bearer {QUEUE_TOKEN}"})
    results.append(expect("Queue trigger runs", resp, 200))
    body = _json(resp)
    info(f"processed={body.get('processed')} successful={body.get('successful')} failed={body.get('failed')}")
    return results


def scenario_payment_webhook(order_id: Optional[str]) -> List[TestResult]:
    section_title("Payment webhook")
    if not WEBHOOK_SECRET or not order_id:
        warn("PAYMENT_WEBHOOK_SECRET not set or no card order; skipping")
        return []

    body = json.dumps({
        "id": f"evt_{uuid.uuid4().hex}",
        "type": "payment.succeeded",
        "data": {"id": f"pay_{uuid.uuid4().hex[:12]}", "metadata": {"order_id": order_id}},
    }).encode("utf-8")
    signature = hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    headers = {"X-Webhook-Signature": signature, "Content-Type": "application/json"}

    results = [expect("Unsigned webhook rejected", http("POST", "/api/v1/webhooks/payments", data=body), 401)]
    first = http("POST", "/api/v1/webhooks/payments", data=body, headers=headers)
    second = http("POST", "/api/v1/webhooks/payments", data=body, headers=headers)
    statuses = (_json(first).get("status"), _json(second).get("status"))
    success = statuses == ("processed", "duplicate")
    (ok if success else fail)(f"Replay handled once: {statuses}")
    results.append(TestResult("Webhook replay is idempotent", success, f"statuses={statuses}"))

    order = _json(http("GET", f"/api/v1/orders/{order_id}")).get("order", {})
    success = order.get("status") == "confirmed" and order.get("payment_status") == "paid"
    (ok if success else fail)(f"Order {order_id}: status={order.get('status')} payment={order.get('payment_status')}")
    results.append(TestResult("Card order confirmed", success, str(order.get("status"))))
    return results


def scenario_health() -> List[TestResult]:
    section_title("Health")
    resp = http("GET", "/api/v1/health")
    body = _json(resp)
    success = resp.status_code in (200, 503) and {"healthy", "checks", "metrics"} <= set(body)
    for check in body.get("checks", []):
        (ok if check.get("status") == "healthy" else warn)(
            f"{check.get('service')}: {check.get('message')} ({check.get('duration')}ms)"
        )
    return [TestResult("Health report", success, f"HTTP {resp.status_code}, healthy={body.get('healthy')}")]


# =========================
# Summary
# =========================

def print_results(results: List[TestResult]):
    print(f"\n{Style.BOLD}================ TEST RESULTS ================{Style.RESET}")
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'✅' if r.success else '❌'} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
    passed = sum(1 for r in results if r.success)
    failed = len(results) - passed
    print(f"Total: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  Failed: {Style.RED}{failed}{Style.RESET}\n")
    return failed


def main():
    banner()
    try:
        http("GET", "/")
    except requests.RequestException as exc:
        fail(f"Service at {API_BASE} is not reachable: {exc}")
        sys.exit(1)

    results: List[TestResult] = []
    order_results, card_order_id = scenario_orders()
    results.extend(order_results)
    results.extend(scenario_payment_webhook(card_order_id))
    results.extend(scenario_queue())
    results.extend(scenario_health())

    sys.exit(1 if print_results(results) else 0)


if __name__ == "__main__":
    main()
