#!/usr/bin/env python3
"""
Seed script — creates a realistic dataset for trying the feed and messaging.

Creates:
  • 8 users
  • 3 posts per user, a few products, events and stories
  • Likes, comments and event interest across the content
  • One conversation with a short message exchange

Run against a running API (JWT_SECRET must match the API's):
  python scripts/seed_data.py --api-url http://localhost:8000

All IDs and a bearer token are printed so you can use them in curl commands.
"""
import argparse
import json
import os
import random
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt


BASE_USERS = [
    ("alice_makes", "Alice Chen"),
    ("bob_bikes", "Bob Martinez"),
    ("carol_cooks", "Carol Singh"),
    ("dave_designs", "Dave Kim"),
    ("eve_events", "Eve Johnson"),
    ("frank_films", "Frank Williams"),
    ("grace_gardens", "Grace Li"),
    ("henry_hikes", "Henry Brown"),
]

SAMPLE_POSTS = [
    "Finished restoring a vintage road bike this weekend. Steel frames never get old.",
    "Sourdough starter is finally alive after two weeks of feeding.",
    "Anyone know a good place for ceramics classes downtown?",
    "Sunrise hike on the ridge trail today. Worth the early alarm.",
    "Repotted all the succulents. The garden shelf looks brand new.",
    "Watched three classic films back to back. Cinema was different then.",
    "Sketching ideas for a minimalist poster series.",
    "Farmers market had the best heirloom tomatoes this morning.",
    "Looking for hiking partners for the coastal trail next month.",
    "Built a small bookshelf out of reclaimed pallet wood.",
]

SAMPLE_PRODUCTS = [
    ("Vintage road bike", "Steel frame, 56cm, recently serviced", 240.0, "sports", "good"),
    ("Cast iron skillet", "Pre-seasoned, 12 inch", 35.0, "kitchen", "likenew"),
    ("Film camera", "35mm rangefinder with leather case", 180.0, "electronics", "fair"),
    ("Hiking backpack", "45L, rain cover included", 60.0, "outdoors", "good"),
]

SAMPLE_EVENTS = [
    ("Community bike ride", "Easy 20km loop around the lake, all levels welcome", "Lakeside park"),
    ("Outdoor film night", "Classic films projected in the courtyard, bring a blanket", "Old town square"),
    ("Garden swap meet", "Trade cuttings, seeds and garden tools", "Community garden"),
]


def make_token(user_id: str, secret: str, hours: int = 24) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=hours)).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


@dataclass
class ApiClient:
    base_url: str
    secret: str

    def _request(self, method: str, path: str, data: Optional[dict], user_id: Optional[str]) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if user_id:
            headers["Authorization"] = f"Bearer {make_token(user_id, self.secret)}"
        body = json.dumps(data).encode() if data is not None else None
        req = urllib.request.Request(url, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on {method} {path}: {e.read().decode()}")
            return {}

    def post(self, path: str, data: Optional[dict] = None, as_user: Optional[str] = None) -> dict:
        return self._request("POST", path, data if data is not None else {}, as_user)

    def get(self, path: str, as_user: Optional[str] = None):
        return self._request("GET", path, None, as_user)


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for API at {client.base_url} ...")
    for i in range(retries):
        try:
            result = client.get("/health")
            if result.get("status") == "ok":
                print("  API is ready!\n")
                return
        except (urllib.error.URLError, ConnectionError):
            pass
        time.sleep(3)
    raise RuntimeError(f"API not reachable at {client.base_url} after {retries} retries")


def main(api_url: str, secret: str) -> None:
    client = ApiClient(api_url, secret)
    wait_for_api(client)

    # ── Create users ─────────────────────────────────────────────────────
    print("Creating users...")
    user_ids: list[str] = []
    for username, display_name in BASE_USERS:
        result = client.post("/api/users", {"username": username, "display_name": display_name})
        uid = result.get("user_id", "")
        if uid:
            user_ids.append(uid)
            print(f"  ✓ {username} ({uid})")
        else:
            print(f"  ✗ Failed to create {username}")

    if len(user_ids) < 2:
        print("Not enough users created — aborting")
        return

    # ── Create content ────────────────────────────────────────────────────
    print("\nCreating content...")
    items: list[tuple[str, str]] = []  # (collection, id)
    event_ids: list[str] = []
    posts = SAMPLE_POSTS * 3
    random.shuffle(posts)
    for i, user_id in enumerate(user_ids):
        for content in posts[i * 3:(i + 1) * 3]:
            result = client.post("/api/posts", {"content": content}, as_user=user_id)
            if result.get("id"):
                items.append(("posts", result["id"]))

    for title, description, price, category, condition in SAMPLE_PRODUCTS:
        result = client.post(
            "/api/products",
            {"title": title, "description": description, "price": price,
             "category": category, "condition": condition},
            as_user=random.choice(user_ids),
        )
        if result.get("id"):
            items.append(("products", result["id"]))

    for days_ahead, (title, details, location) in enumerate(SAMPLE_EVENTS, start=3):
        event_date = (datetime.now(timezone.utc) + timedelta(days=days_ahead)).isoformat()
        result = client.post(
            "/api/events",
            {"event_title": title, "event_details": details,
             "event_date": event_date, "event_location": location},
            as_user=random.choice(user_ids),
        )
        if result.get("id"):
            items.append(("events", result["id"]))
            event_ids.append(result["id"])

    for user_id in random.sample(user_ids, k=3):
        client.post("/api/stories", {"text": "Out and about today"}, as_user=user_id)
    print(f"  ✓ {len(items)} posts/products/events created, plus 3 stories")

    # ── Engagement ────────────────────────────────────────────────────────
    print("\nAdding engagement...")
    likes = comments = 0
    for collection, item_id in items:
        for user_id in random.sample(user_ids, k=random.randint(0, 4)):
            client.post(f"/api/{collection}/{item_id}/like", as_user=user_id)
            likes += 1
        if random.random() < 0.3:
            client.post(
                f"/api/{collection}/{item_id}/comments",
                {"content": "Love this!"},
                as_user=random.choice(user_ids),
            )
            comments += 1
    for event_id in event_ids:
        for user_id in random.sample(user_ids, k=2):
            client.post(f"/api/events/{event_id}/interested", as_user=user_id)
    print(f"  ✓ {likes} likes, {comments} comments, {2 * len(event_ids)} interest marks")

    # ── Conversation ──────────────────────────────────────────────────────
    print("\nStarting a conversation...")
    alice, bob = user_ids[0], user_ids[1]
    conversation = client.post("/api/messages/conversation", {"receiverId": bob}, as_user=alice)
    conversation_id = conversation.get("id")
    if conversation_id:
        client.post("/api/messages", {"conversationId": conversation_id,
                                      "content": "Is the road bike still available?"}, as_user=alice)
        client.post("/api/messages", {"conversationId": conversation_id,
                                      "content": "Yes! Want to see it this weekend?"}, as_user=bob)
        print(f"  ✓ Conversation {conversation_id}")

    # ── Print summary ─────────────────────────────────────────────────────
    token = make_token(alice, secret)
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    print(f"# Ranked feed for '{BASE_USERS[0][0]}':")
    print(f"  curl -s -X POST '{api_url}/api/feed' \\")
    print(f"    -H 'Authorization: Bearer {token}' -H 'Content-Type: application/json' \\")
    print(f"    -d '{{\"user_id\": \"{alice}\"}}' | python3 -m json.tool\n")
    print(f"# Conversations:")
    print(f"  curl -s '{api_url}/api/messages/conversations' -H 'Authorization: Bearer {token}'\n")
    print(f"# WebSocket: {api_url.replace('http', 'ws', 1)}/ws?token={token}")
    print(f"# Check Jaeger traces: http://localhost:16686")
    print(f"# Check Prometheus: http://localhost:9090")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the Social Hub API")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument(
        "--jwt-secret",
        default=os.environ.get("JWT_SECRET", "change-me"),
        help="Secret the API signs tokens with",
    )
    args = parser.parse_args()
    main(args.api_url, args.jwt_secret)
