# publisher/generator.py
import os
import random
import time
from datetime import datetime, timezone

import requests
from faker import Faker

# Configuration
TARGET_URL = os.getenv("TARGET_URL", "http://gamepulse:8080/events")
EVENT_COUNT = int(os.getenv("EVENT_COUNT", "1000"))  # number of events to send
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "20"))
PLAYER_COUNT = int(os.getenv("PLAYER_COUNT", "200"))
RETRY_RATE = float(os.getenv("RETRY_RATE", "0.30"))
DELAY = float(os.getenv("DELAY", "0.1"))  # delay between requests (seconds)

fake = Faker()

PLATFORMS = ["ios", "android", "web"]
GAME_MODES = ["classic", "timed", "endless"]

# Relative frequency of each event type in a session
EVENT_WEIGHTS = {
    "app_launched": 20,
    "game_started": 25,
    "game_ended": 25,
    "level_completed": 10,
    "currency_earned": 8,
    "currency_spent": 5,
    "ad_watched": 4,
    "purchase_completed": 2,
    "nickname_changed": 1,
}


def make_players(count=PLAYER_COUNT):
    return [
        {"subject_id": f"player_{fake.uuid4()[:8]}", "platform": random.choice(PLATFORMS)}
        for _ in range(count)
    ]


def make_payload(event_type, platform):
    payload = {"platform": platform}
    if event_type == "game_ended":
        payload.update(
            score=random.randint(0, 100000),
            duration_seconds=random.randint(20, 900),
            game_mode=random.choice(GAME_MODES),
        )
    elif event_type in ("currency_earned", "currency_spent"):
        payload.update(amount=random.randint(1, 500), currency_type=random.choice(["coins", "gems"]))
    elif event_type == "purchase_completed":
        payload.update(price_usd=random.choice([0.99, 4.99, 9.99, 19.99]), sku=fake.lexify("sku_????"))
    elif event_type == "level_completed":
        payload.update(level=random.randint(1, 200))
    elif event_type == "nickname_changed":
        payload.update(new_nickname=fake.user_name())
    return payload


def generate_event(player):
    """One game event from a simulated client."""
    event_type = random.choices(list(EVENT_WEIGHTS), weights=list(EVENT_WEIGHTS.values()))[0]
    return {
        "event_type": event_type,
        "subject_id": player["subject_id"],
        "payload": make_payload(event_type, player["platform"]),
        "client_timestamp": datetime.now(timezone.utc).timestamp(),
    }


def generate_batch(players, size=BATCH_SIZE):
    return [generate_event(random.choice(players)) for _ in range(size)]


def send_batch(batch, is_retry=False, url=TARGET_URL):
    """POST a batch to the ingestion endpoint. Returns the acknowledged count, or None on error."""
    tag = "[DUPLICATE/RETRY]" if is_retry else "[NEW]"
    try:
        response = requests.post(url, json=batch, timeout=5)
        count = response.json().get("count") if response.status_code == 200 else None
        print(f"{tag} Sent {len(batch)} events | Status: {response.status_code} | Accepted: {count}")
        return count
    except (requests.RequestException, ValueError) as e:
        print(f"[ERROR] Failed to send batch of {len(batch)}: {e}")
        return None


def main():
    print(f"Starting Publisher... Target: {TARGET_URL}")
    # give the ingestion service time to come up
    time.sleep(5)

    players = make_players()
    sent = 0
    while sent < EVENT_COUNT:
        batch = generate_batch(players, min(BATCH_SIZE, EVENT_COUNT - sent))
        send_batch(batch)
        sent += len(batch)

        # Simulated network glitch: the client resends a batch it already sent.
        # The server assigns new ids, so these land as duplicates of real plays.
        if random.random() < RETRY_RATE:
            time.sleep(0.05)
            print(f">>> Simulating network retry for batch of {len(batch)}")
            send_batch(batch, is_retry=True)

        time.sleep(DELAY)

    print("Publisher finished generating events.")


if __name__ == "__main__":
    main()
