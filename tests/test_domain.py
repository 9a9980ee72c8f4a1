"""Profiles, animals, consultations, messaging, directory and portfolio over HTTP."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from vetconnect.dependencies import vet_tracker
from vetconnect.main import app

PASSWORD = "Secreta123"


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


class Account:
    def __init__(self, client: TestClient, email: str, role: str, full_name: str) -> None:
        response = client.post(
            "/auth/register",
            json={
                "full_name": full_name,
                "email": email,
                "password": PASSWORD,
                "confirm_password": PASSWORD,
                "role": role,
            },
        )
        assert response.status_code == 201, response.text
        client.cookies.clear()
        body = response.json()
        self.user_id = body["user_id"]
        self.headers = {"Authorization": f"Bearer {body['access_token']}"}


@pytest.fixture()
def farmer(client) -> Account:
    return Account(client, "farmer@example.com", "farmer", "Fiona Farmer")


@pytest.fixture()
def other_farmer(client) -> Account:
    return Account(client, "other@example.com", "pet_owner", "Oscar Owner")


@pytest.fixture()
def vet(client) -> Account:
    return Account(client, "vet@example.com", "veterinarian", "Dr. Ada Obi")


@pytest.fixture()
def second_vet(client) -> Account:
    return Account(client, "vet2@example.com", "veterinarian", "Dr. Ben Kim")


def _animal(client, owner: Account, **overrides) -> dict:
    payload = {"name": "Bessie", "animal_type": "cattle", "age_years": 3, "age_months": 4}
    payload.update(overrides)
    response = client.post("/animals", json=payload, headers=owner.headers)
    assert response.status_code == 201, response.text
    return response.json()


def _consultation(client, owner: Account, animal_id: str, files=None):
    data = {
        "subject": "Cow not eating",
        "description": "She stopped eating two days ago and seems weak.",
        "urgency_level": "high",
        "animal_id": animal_id,
    }
    return client.post("/consultations", data=data, files=files, headers=owner.headers)


# -------------------- Profiles --------------------
def test_profile_update(client, farmer) -> None:
    response = client.patch(
        "/profile", json={"location": "Nakuru", "phone_number": "+254700000000"}, headers=farmer.headers
    )
    assert response.status_code == 200
    assert response.json()["location"] == "Nakuru"


def test_only_vets_set_license(client, farmer, vet) -> None:
    assert client.patch("/profile", json={"license_number": "KVB-1"}, headers=farmer.headers).status_code == 403
    response = client.patch(
        "/profile", json={"license_number": "KVB-1", "specialization": "Dairy"}, headers=vet.headers
    )
    assert response.status_code == 200
    assert response.json()["license_number"] == "KVB-1"


def test_profile_rejects_null_name(client, farmer) -> None:
    response = client.patch("/profile", json={"full_name": None}, headers=farmer.headers)
    assert response.status_code == 422
    assert response.json() == {"detail": "Name is required"}
    assert client.get("/profile", headers=farmer.headers).json()["full_name"] == "Fiona Farmer"


def test_profile_photo_upload(client, farmer, make_image) -> None:
    response = client.post(
        "/profile/photo", files={"file": ("me.png", make_image("PNG"), "image/png")}, headers=farmer.headers
    )
    assert response.status_code == 200
    assert response.json()["errors"] == []
    url = response.json()["urls"][0]
    assert client.get("/profile", headers=farmer.headers).json()["profile_image_url"] == url


# -------------------- Animals --------------------
def test_animals_are_scoped_to_owner(client, farmer, other_farmer) -> None:
    first = _animal(client, farmer, name="Bessie")
    second = _animal(client, farmer, name="Daisy", animal_type="goat")

    listed = client.get("/animals", headers=farmer.headers).json()
    assert [a["name"] for a in listed] == ["Daisy", "Bessie"]

    assert client.get("/animals", headers=other_farmer.headers).json() == []
    assert client.get(f"/animals/{first['id']}", headers=other_farmer.headers).status_code == 404
    assert client.delete(f"/animals/{first['id']}", headers=other_farmer.headers).status_code == 404

    updated = client.patch(f"/animals/{second['id']}", json={"weight_kg": 41.5}, headers=farmer.headers)
    assert updated.json()["weight_kg"] == 41.5

    assert client.delete(f"/animals/{first['id']}", headers=farmer.headers).status_code == 204
    assert len(client.get("/animals", headers=farmer.headers).json()) == 1


def test_animal_validation(client, farmer) -> None:
    response = client.post(
        "/animals", json={"name": "Kid", "animal_type": "goat", "age_months": 12}, headers=farmer.headers
    )
    assert response.status_code == 422
    assert "less than or equal to 11" in response.json()["detail"]

    response = client.post("/animals", json={"name": "Rex", "animal_type": "dragon"}, headers=farmer.headers)
    assert response.status_code == 422


def test_animal_update_rejects_null_required_fields(client, farmer) -> None:
    animal = _animal(client, farmer)
    for field, detail in (("animal_type", "Animal type is required"), ("name", "Name is required")):
        response = client.patch(f"/animals/{animal['id']}", json={field: None}, headers=farmer.headers)
        assert response.status_code == 422
        assert response.json() == {"detail": detail}

    response = client.patch(f"/animals/{animal['id']}", json={"breed": None}, headers=farmer.headers)
    assert response.status_code == 200
    assert response.json()["animal_type"] == "cattle"


def test_animal_image(client, farmer, make_image) -> None:
    animal = _animal(client, farmer)
    response = client.post(
        f"/animals/{animal['id']}/image",
        files={"file": ("cow.jpg", make_image("JPEG"), "image/jpeg")},
        headers=farmer.headers,
    )
    assert response.status_code == 200
    assert client.get(f"/animals/{animal['id']}", headers=farmer.headers).json()["image_url"]


# -------------------- Consultations --------------------
def test_consultation_lifecycle(client, farmer, vet, second_vet, make_image) -> None:
    animal = _animal(client, farmer)
    files = [
        ("images", ("a.png", make_image("PNG"), "image/png")),
        ("images", ("b.txt", b"not an image", "text/plain")),
    ]
    created = _consultation(client, farmer, animal["id"], files=files)
    assert created.status_code == 201, created.text
    body = created.json()
    consultation = body["consultation"]
    assert consultation["status"] == "pending"
    assert len(consultation["image_urls"]) == 1
    assert body["upload_errors"] == ["b.txt must be JPEG, PNG, or WebP"]

    dashboard = client.get("/consultations/dashboard/farmer", headers=farmer.headers).json()
    assert dashboard["stats"] == {"total": 1, "pending": 1, "in_progress": 0, "completed": 0}

    vet_view = client.get("/consultations/dashboard/vet", headers=vet.headers).json()
    assert [c["id"] for c in vet_view["pending"]] == [consultation["id"]]
    assert client.get(f"/consultations/{consultation['id']}", headers=second_vet.headers).status_code == 200

    accepted = client.post(f"/consultations/{consultation['id']}/accept", headers=vet.headers)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "in_progress"
    assert accepted.json()["vet_id"] == vet.user_id

    too_late = client.post(f"/consultations/{consultation['id']}/accept", headers=second_vet.headers)
    assert too_late.status_code == 409
    assert too_late.json()["code"] == "consultation_unavailable"
    assert too_late.json()["detail"] == "This consultation has already been accepted by another veterinarian."

    # once assigned it is hidden from other vets
    assert client.get(f"/consultations/{consultation['id']}", headers=second_vet.headers).status_code == 404
    assert client.get("/consultations/dashboard/vet", headers=second_vet.headers).json()["pending"] == []

    wrong_vet = client.patch(
        f"/consultations/{consultation['id']}", json={"diagnosis": "x"}, headers=second_vet.headers
    )
    assert wrong_vet.status_code == 403

    completed = client.patch(
        f"/consultations/{consultation['id']}",
        json={"status": "completed", "diagnosis": "Bloat", "treatment_plan": "Rest and fluids"},
        headers=vet.headers,
    )
    assert completed.status_code == 200
    assert completed.json()["completed_at"] is not None
    assert completed.json()["diagnosis"] == "Bloat"

    stats = client.get("/consultations/dashboard/vet", headers=vet.headers).json()["stats"]
    assert stats == {"total": 1, "pending": 0, "in_progress": 0, "completed": 1}


def test_consultation_requires_own_animal(client, farmer, other_farmer) -> None:
    animal = _animal(client, farmer)
    response = _consultation(client, other_farmer, animal["id"])
    assert response.status_code == 422
    assert response.json()["detail"] == "Related information not found. Please check your selection."


def test_consultation_validation(client, farmer) -> None:
    animal = _animal(client, farmer)
    response = client.post(
        "/consultations",
        data={"subject": "Sick", "description": "short", "urgency_level": "high", "animal_id": animal["id"]},
        headers=farmer.headers,
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "String should have at least 5 characters"


def test_too_many_consultation_images(client, farmer, make_image) -> None:
    animal = _animal(client, farmer)
    files = [("images", (f"{i}.png", make_image("PNG"), "image/png")) for i in range(6)]
    body = _consultation(client, farmer, animal["id"], files=files).json()
    assert body["upload_errors"] == ["Maximum 5 files allowed"]
    assert body["consultation"]["image_urls"] is None


def test_role_guards(client, farmer, vet) -> None:
    animal = _animal(client, farmer)
    consultation = _consultation(client, farmer, animal["id"]).json()["consultation"]
    assert client.post(f"/consultations/{consultation['id']}/accept", headers=farmer.headers).status_code == 403
    assert client.get("/consultations/dashboard/vet", headers=farmer.headers).status_code == 403
    assert _consultation(client, vet, animal["id"]).status_code == 403


def test_cancel_only_pending(client, farmer, vet) -> None:
    animal = _animal(client, farmer)
    first = _consultation(client, farmer, animal["id"]).json()["consultation"]
    second = _consultation(client, farmer, animal["id"]).json()["consultation"]

    cancelled = client.post(f"/consultations/{first['id']}/cancel", headers=farmer.headers)
    assert cancelled.json()["status"] == "cancelled"

    client.post(f"/consultations/{second['id']}/accept", headers=vet.headers)
    refused = client.post(f"/consultations/{second['id']}/cancel", headers=farmer.headers)
    assert refused.status_code == 409


# -------------------- Messaging --------------------
def _accepted_consultation(client, farmer, vet) -> str:
    animal = _animal(client, farmer)
    consultation = _consultation(client, farmer, animal["id"]).json()["consultation"]
    client.post(f"/consultations/{consultation['id']}/accept", headers=vet.headers)
    return consultation["id"]


def test_messages_between_participants(client, farmer, vet, other_farmer) -> None:
    consultation_id = _accepted_consultation(client, farmer, vet)
    url = f"/consultations/{consultation_id}/messages"

    sent = client.post(url, json={"message": "  Hello doctor  "}, headers=farmer.headers)
    assert sent.status_code == 201
    assert sent.json()["message"] == "Hello doctor"
    client.post(url, json={"message": "Hello Fiona"}, headers=vet.headers)

    messages = client.get(url, headers=vet.headers).json()
    assert [(m["message"], m["sender_name"]) for m in messages] == [
        ("Hello doctor", "Fiona Farmer"),
        ("Hello Fiona", "Dr. Ada Obi"),
    ]

    blank = client.post(url, json={"message": "   "}, headers=farmer.headers)
    assert blank.status_code == 422
    assert blank.json()["detail"] == "Message cannot be empty."

    assert client.get(url, headers=other_farmer.headers).status_code == 403
    assert client.post(url, json={"message": "hi"}, headers=other_farmer.headers).status_code == 403


def test_message_stream(client, farmer, vet) -> None:
    consultation_id = _accepted_consultation(client, farmer, vet)
    token = vet.headers["Authorization"].split()[1]

    with client.websocket_connect(f"/ws/consultations/{consultation_id}/messages?token={token}") as ws:
        client.post(
            f"/consultations/{consultation_id}/messages", json={"message": "Any update?"}, headers=farmer.headers
        )
        event = ws.receive_json()
    assert event["event"] == "INSERT"
    assert event["record"]["message"] == "Any update?"
    assert event["record"]["sender_name"] == "Fiona Farmer"


# -------------------- Vet directory and presence --------------------
def test_directory_hides_private_fields(client, farmer, vet) -> None:
    client.patch(
        "/profile",
        json={"phone_number": "+254711111111", "license_number": "KVB-9", "location": "Eldoret"},
        headers=vet.headers,
    )
    vets = client.get("/vets").json()
    assert [v["user_id"] for v in vets] == [vet.user_id]
    assert vets[0]["phone_number"] is None
    assert vets[0]["license_number"] is None
    assert client.get("/vets", params={"q": "eldo"}).json()[0]["location"] == "Eldoret"
    assert client.get("/vets", params={"q": "mombasa"}).json() == []


def test_directory_orders_online_first_with_live_location(client, vet, second_vet) -> None:
    client.patch("/profile", json={"latitude": -1.0, "longitude": 36.0}, headers=vet.headers)
    client.patch("/profile", json={"latitude": 0.5, "longitude": 35.0}, headers=second_vet.headers)
    profile = client.get("/profile", headers=second_vet.headers).json()
    vet_tracker.track_vet(
        "test-ref", id=profile["id"], user_id=second_vet.user_id, full_name="Dr. Ben Kim", latitude=0.9, longitude=35.2
    )
    try:
        vets = client.get("/vets").json()
        assert [v["full_name"] for v in vets] == ["Dr. Ben Kim", "Dr. Ada Obi"]
        assert vets[0]["is_online"] is True
        assert (vets[0]["latitude"], vets[0]["longitude"]) == (0.9, 35.2)

        view = client.get("/vets/map", params={"selected": profile["id"]}).json()
        assert view["viewport"]["mode"] == "fit_bounds"
        colors = {m["user_id"]: m["color"] for m in view["markers"]}
        assert colors == {second_vet.user_id: "#16a34a", vet.user_id: "#3b82f6"}

        online = client.get("/vets/online").json()
        assert [o["user_id"] for o in online] == [second_vet.user_id]
    finally:
        vet_tracker.untrack("test-ref")


def test_presence_socket(client, vet, farmer) -> None:
    token = vet.headers["Authorization"].split()[1]
    with client.websocket_connect(f"/ws/presence?token={token}") as ws:
        assert ws.receive_json()["event"] == "sync"
        ws.send_json({"action": "track", "latitude": -1.2, "longitude": 36.8})
        joined = ws.receive_json()
        assert joined["event"] == "join"
        assert joined["new_presences"][0]["user_id"] == vet.user_id
        assert ws.receive_json()["event"] == "sync"
        assert client.get("/vets").json()[0]["is_online"] is True

    farmer_token = farmer.headers["Authorization"].split()[1]
    with client.websocket_connect(f"/ws/presence?token={farmer_token}") as ws:
        ws.receive_json()
        ws.send_json({"action": "track"})
        assert ws.receive_json() == {"event": "error", "detail": "Only veterinarians share presence"}


def test_presence_socket_rejects_malformed_frames(client, vet) -> None:
    token = vet.headers["Authorization"].split()[1]
    with client.websocket_connect(f"/ws/presence?token={token}") as ws:
        assert ws.receive_json()["event"] == "sync"
        for frame in ("not json", "[1, 2]", "42"):
            ws.send_text(frame)
            assert ws.receive_json() == {"event": "error", "detail": "Expected a JSON object"}
        ws.send_json({"action": "track"})
        assert ws.receive_json()["event"] == "join"


def test_map_sync_reports_marker_changes(client, vet, second_vet) -> None:
    client.patch("/profile", json={"latitude": -1.0, "longitude": 36.0}, headers=vet.headers)
    first = client.post("/vets/map/sync", json={}).json()
    assert len(first["added"]) == 1
    assert first["moved"] == [] and first["removed"] == []

    client.patch("/profile", json={"latitude": -1.5}, headers=vet.headers)
    client.patch("/profile", json={"latitude": 0.5, "longitude": 37.0}, headers=second_vet.headers)
    second = client.post("/vets/map/sync", json={"markers": first["view"]["markers"]}).json()
    assert second["moved"] == first["added"]
    assert len(second["added"]) == 1
    assert second["view"]["viewport"]["mode"] == "fit_bounds"

    client.patch("/profile", json={"latitude": None, "longitude": None}, headers=vet.headers)
    third = client.post("/vets/map/sync", json={"markers": second["view"]["markers"]}).json()
    assert third["removed"] == first["added"]
    assert third["view"]["viewport"]["mode"] == "center"


def test_vet_public_profile_with_portfolio(client, vet, farmer) -> None:
    client.post("/portfolio", json={"title": "Dairy herd health"}, headers=vet.headers)
    client.post("/portfolio", json={"title": "Poultry vaccination"}, headers=vet.headers)

    detail = client.get(f"/vets/{vet.user_id}").json()
    assert detail["vet"]["full_name"] == "Dr. Ada Obi"
    assert [p["title"] for p in detail["portfolio"]] == ["Poultry vaccination", "Dairy herd health"]

    assert client.get(f"/vets/{farmer.user_id}").status_code == 404


# -------------------- Portfolio --------------------
def test_portfolio_crud(client, vet, farmer, make_image) -> None:
    assert client.post("/portfolio", json={"title": "x"}, headers=farmer.headers).status_code == 403

    blank = client.post("/portfolio", json={"title": "   "}, headers=vet.headers)
    assert blank.status_code == 422
    assert blank.json()["detail"] == "Title is required"

    item = client.post(
        "/portfolio", json={"title": "Goat surgery", "category": "Surgery"}, headers=vet.headers
    ).json()
    updated = client.patch(f"/portfolio/{item['id']}", json={"description": "Caesarean"}, headers=vet.headers)
    assert updated.json()["description"] == "Caesarean"

    image = client.post(
        f"/portfolio/{item['id']}/image",
        files={"file": ("op.webp", make_image("WEBP"), "image/webp")},
        headers=vet.headers,
    )
    assert image.json()["errors"] == []
    assert client.get("/portfolio", headers=vet.headers).json()[0]["image_url"]

    assert client.delete(f"/portfolio/{item['id']}", headers=vet.headers).status_code == 204
    assert client.get("/portfolio", headers=vet.headers).json() == []
