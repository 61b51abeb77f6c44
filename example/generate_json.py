import json
import random
import uuid


LESSONS = ["prompt-basics", "ai-ethics", "neural-networks", "rag-search", "agents-101"]
PLANS = {"basic": 19.0, "pro": 49.0, "mastermind": 99.0}
LANGUAGES = ["en", "es", "fr", "de"]
QUESTIONS = [
    "What is a transformer?",
    "How do embeddings work?",
    "Explain retrieval augmented generation",
    "What is prompt injection?",
]


def generate_session_events(user_id: str | None):
    session_id = f"session_{uuid.uuid4().hex[:12]}"
    events = [{"event": "page_view", "category": "user", "properties": {"page": "/"}}]

    lesson = random.choice(LESSONS)
    events.append({"event": "lesson_start", "category": "lesson", "properties": {"lessonId": lesson}})
    if random.random() < 0.6:
        events.append({
            "event": "lesson_complete",
            "category": "lesson",
            "properties": {"lessonId": lesson, "timeSpent": random.randint(120, 1800)},
        })

    for _ in range(random.randint(0, 3)):
        events.append({
            "event": "ai_interaction",
            "category": "ai",
            "properties": {
                "question": random.choice(QUESTIONS),
                "responseLength": random.randint(200, 2000),
                "responseTime": random.randint(300, 4000),
                "language": random.choice(LANGUAGES),
                "satisfaction": random.randint(1, 5),
            },
        })

    if user_id and random.random() < 0.2:
        plan = random.choice(list(PLANS))
        events.append({
            "event": "payment_completed",
            "category": "payment",
            "properties": {"amount": PLANS[plan], "plan": plan, "currency": "usd"},
        })

    return [
        {"userId": user_id, "request": dict(event, sessionId=session_id)}
        for event in events
    ]


def generate_events(num_sessions: int):
    events = []
    for _ in range(num_sessions):
        user_id = f"user_{random.randint(1, 200)}" if random.random() < 0.7 else None
        events.extend(generate_session_events(user_id))
    return {"events": events}


def main():
    data = generate_events(500)
    with open("events.json", "w") as f:
        json.dump(data, f, indent=2)


if __name__ == "__main__":
    main()
