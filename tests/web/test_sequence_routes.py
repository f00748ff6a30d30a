from helpers import EMAIL_THEN_SMS, activate, create_sequence


def test_create_list_and_get(client):
    seq = create_sequence(client)
    assert seq["version"] == 1
    assert [s["order"] for s in seq["steps"]] == [0, 1]

    listed = client.get("/sequences").json()
    assert [s["id"] for s in listed] == [seq["id"]]
    assert client.get(f"/sequences/{seq['id']}").json()["backend_name"] == "new-student-welcome"


def test_invalid_definitions_are_422(client):
    r = client.post("/sequences", json={"backend_name": "empty", "display_name": "Empty", "steps": []})
    assert r.status_code == 422
    assert r.json()["code"] == "invalid_sequence"

    r = client.post("/sequences", json={
        "backend_name": "typo",
        "display_name": "Typo",
        "steps": [{"order": 0, "channel": "sms", "content_template": "Hi {{ frist_name }}"}],
    })
    assert r.status_code == 422
    assert "frist_name" in r.json()["detail"]


def test_duplicate_backend_name_is_rejected(client):
    create_sequence(client)
    r = client.post("/sequences", json={
        "backend_name": "new-student-welcome", "display_name": "Again", "steps": EMAIL_THEN_SMS,
    })
    assert r.status_code == 422


def test_update_bumps_version_without_touching_running_instances(client, sender, student):
    seq = create_sequence(client)
    run = activate(client, student.id).json()

    r = client.put(f"/sequences/{seq['id']}", json={"steps": [
        {"order": 0, "channel": "sms", "delay_minutes": 0, "content_template": "Replaced"},
    ]})
    assert r.status_code == 200
    assert r.json()["version"] == 2
    assert len(r.json()["steps"]) == 1

    client.post("/automated-follow-ups/dispatch")
    assert sender.sent[0]["channel"] == "email"
    detail = client.get(f"/automated-follow-ups/{run['id']}").json()["run"]
    assert detail["sequence_version"] == 1
    assert detail["total_steps"] == 2


def test_unknown_sequence_is_404(client):
    assert client.get("/sequences/missing").status_code == 404
    assert client.put("/sequences/missing", json={"display_name": "x"}).status_code == 404
