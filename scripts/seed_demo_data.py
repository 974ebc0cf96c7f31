from __future__ import annotations

import argparse
import json
import random
import sys
import urllib.error
import urllib.request


def post_json(url: str, payload: dict, headers: dict[str, str]) -> tuple[int, dict | None]:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        content = exc.read().decode("utf-8")
        try:
            return exc.code, json.loads(content)
        except json.JSONDecodeError:
            return exc.code, None


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Seed customers, orders, a segment and a campaign into a local CRM API."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--count", type=int, default=20)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--user-id", default="demo-marketer")
    parser.add_argument("--min-spend", type=float, default=1000)
    parser.add_argument("--message", default="Hi {name}, here is 10% off your next visit!")
    parser.add_argument("--token", default="")
    parser.add_argument("--seed", type=int, default=7)
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    rng = random.Random(args.seed)

    created = 0
    for index in range(args.start_index, args.start_index + args.count):
        payload = {
            "name": f"Demo Customer {index}",
            "email": f"demo{index}@example.com",
            "phone": f"90000{index:05d}"[-10:],
            "total_spent": round(rng.uniform(50, 5000), 2),
            "visit_count": rng.randint(0, 12),
        }
        status_code, response = post_json(f"{base_url}/customers", payload, headers)
        print(f"{status_code} customer {payload['email']}")
        if status_code != 201 or not response:
            continue
        created += 1
        for _ in range(rng.randint(0, 3)):
            order = {
                "customer_id": response["customer"]["id"],
                "amount": round(rng.uniform(10, 800), 2),
            }
            order_status, _ = post_json(f"{base_url}/orders", order, headers)
            print(f"{order_status} order {order['customer_id']}")

    segment_status, segment = post_json(
        f"{base_url}/segments",
        {
            "user_id": args.user_id,
            "name": f"Spent over {args.min_spend:g}",
            "rules": {
                "combinator": "AND",
                "children": [{"field": "total_spent", "operator": ">", "value": args.min_spend}],
            },
        },
        headers,
    )
    if segment_status != 201 or not segment:
        print(f"segment creation failed: {segment_status} {segment}", file=sys.stderr)
        return 1
    print(f"{segment_status} segment {segment['segment']['id']} audience={segment['audience_size']}")

    campaign_status, campaign = post_json(
        f"{base_url}/campaigns",
        {"segment_id": segment["segment"]["id"], "message": args.message},
        headers,
    )
    if campaign_status != 201 or not campaign:
        print(f"campaign creation failed: {campaign_status} {campaign}", file=sys.stderr)
        return 1
    print(
        f"{campaign_status} campaign {campaign['campaign']['id']} "
        f"targeted={campaign['customers_targeted']} customers_created={created}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
