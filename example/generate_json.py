import json
import random
import uuid
from datetime import datetime, timedelta, timezone

ACTIONS = {
    "kanban": ["create_task", "complete_task", "move_card", "comment_card", "share_board"],
    "wiki": ["create_page", "edit_page", "view_page", "comment_page"],
    "memory": ["store_memory", "search", "collaborate_memory"],
    "dashboard": ["view_dashboard"],
    "auth": ["login", "logout"],
}
WORK_HOURS = [8, 9, 9, 10, 10, 10, 11, 13, 14, 14, 15, 16, 17]


def generate_events(num_events: int, num_users: int = 20, days: int = 30):
    now = datetime.now(timezone.utc)
    users = [f"user-{index}" for index in range(num_users)]

    events = []
    for _ in range(num_events):
        category = random.choice(list(ACTIONS))
        action = random.choice(ACTIONS[category])
        created_at = (now - timedelta(days=random.randint(0, days - 1))).replace(
            hour=random.choice(WORK_HOURS), minute=random.randint(0, 59), second=random.randint(0, 59)
        )
        properties = {}
        if action == "complete_task":
            properties = {"duration": random.randint(15, 240), "complexity": random.randint(1, 10)}

        events.append({
            "user_id": random.choice(users),
            "session_id": str(uuid.uuid4()),
            "event_type": "action",
            "event_category": category,
            "event_action": action,
            "properties": properties,
            "created_at": created_at.isoformat(),
        })
    return {"events": events}


def main():
    data = generate_events(5000)
    with open("events.json", "w") as f:
        json.dump(data, f, indent=2)


if __name__ == "__main__":
    main()
