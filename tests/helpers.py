import hashlib
import hmac
import json

WEBHOOK_SECRET = "dev-secret"
ADMIN_TOKEN = "admin-token"

# Two-step scenario used across the suite: email now, sms a day later
EMAIL_THEN_SMS = [
    {"order": 0, "channel": "email", "delay_minutes": 0,
     "content_template": "Hi {{ first_name }}, thanks for your interest in {{ sequence_name }}."},
    {"order": 1, "channel": "sms", "delay_minutes": 1440,
     "content_template": "Hi {{first_name}}, any questions about your enrollment?"},
]


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def signed_post(client, path: str, payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode()
    return client.post(
        path,
        content=body,
        headers={"content-type": "application/json", "x-signature": sign(body, secret)},
    )


def create_sequence(client, backend_name: str = "new-student-welcome", steps=None) -> dict:
    r = client.post("/sequences", json={
        "backend_name": backend_name,
        "display_name": backend_name.replace("-", " ").title(),
        "subject": "Welcome {{first_name}}!",
        "steps": steps or EMAIL_THEN_SMS,
    })
    assert r.status_code == 201, r.text
    return r.json()


def activate(client, student_id: str, backend_name: str = "new-student-welcome"):
    return client.post("/automated-follow-ups", json={
        "student_id": student_id,
        "sequence_backend_name": backend_name,
    })
