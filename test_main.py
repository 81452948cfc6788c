from datetime import date, datetime

from errors import PersistenceError
from main import app, get_queue
from services import QueueService


def register(client, name="Amina Khan", contact="03001234567"):
    response = client.post("/visits", json={"name": name, "contact": contact})
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "ok", "redis": "disabled"}


def test_register_patient(client):
    data = register(client)
    assert data["message"] == "Your serial number is 1"
    assert data["visit"]["serial_number"] == 1
    assert data["visit"]["status"] == "waiting"
    assert data["visit"]["service_day"] == date.today().isoformat()
    assert data["wait"] == {"patients_ahead": 0, "minutes": 0, "label": "0 minutes"}

    data = register(client, name="Bilal")
    assert data["visit"]["serial_number"] == 2
    assert data["wait"]["minutes"] == 15


def test_register_rejects_short_contact(client):
    response = client.post("/visits", json={"name": "Amina", "contact": "12345"})
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"

    response = client.post("/visits", json={"name": "Amina"})
    assert response.status_code == 422


def test_register_survives_failed_wait_estimate(client, queue, monkeypatch):
    def unavailable(*args, **kwargs):
        raise PersistenceError("Could not estimate the wait. Please try again.")

    monkeypatch.setattr(queue, "estimate_wait", unavailable)

    data = register(client)
    assert data["visit"]["serial_number"] == 1
    assert data["wait"] is None
    assert data["message"] == "Your serial number is 1"
    assert len(queue.repository.list_visits()) == 1


def test_call_next_and_complete_flow(client):
    response = client.post("/queue/call-next")
    assert response.status_code == 200
    assert response.json() == {"visit": None, "message": "No waiting patients"}

    first = register(client, name="Amina")["visit"]
    second = register(client, name="Bilal")["visit"]

    response = client.post("/queue/call-next")
    assert response.status_code == 200
    assert response.json()["visit"]["id"] == first["id"]
    assert response.json()["visit"]["status"] == "in-progress"
    assert response.json()["message"] == "Now serving Amina (Serial #1)"

    response = client.post("/queue/call-next")
    assert response.status_code == 409
    assert response.json()["error"] == "AlreadyInProgressError"

    assert client.get("/queue/current").json()["id"] == first["id"]

    response = client.post("/queue/complete")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert client.get("/queue/current").json() is None

    response = client.post("/queue/call-next")
    assert response.json()["visit"]["id"] == second["id"]

    response = client.post("/queue/complete", json={"visit_id": second["id"]})
    assert response.status_code == 200
    assert response.json()["completed_at"] is not None


def test_complete_with_nobody_in_progress(client):
    response = client.post("/queue/complete")
    assert response.status_code == 404
    assert response.json()["detail"] == "No patient is currently in progress."


def test_get_visit_with_wait(client):
    register(client, name="Amina")
    register(client, name="Bilal")
    third = register(client, name="Chen")["visit"]

    response = client.get(f"/visits/{third['id']}")
    assert response.status_code == 200
    assert response.json()["visit"]["serial_number"] == 3
    assert response.json()["wait"]["patients_ahead"] == 2
    assert response.json()["wait"]["label"] == "30 minutes"

    assert client.get("/visits/unknown").status_code == 404


def test_get_visit_uses_the_queue_clock(client, repository):
    app.dependency_overrides[get_queue] = lambda: QueueService(
        repository, clock=lambda: datetime(2024, 3, 14, 9, 30)
    )
    register(client, name="Amina")
    second = register(client, name="Bilal")["visit"]
    assert second["service_day"] == "2024-03-14"

    response = client.get(f"/visits/{second['id']}")
    assert response.json()["wait"] == {"patients_ahead": 1, "minutes": 15, "label": "15 minutes"}


def test_wait_for_serial(client):
    for name in ("A", "B", "C", "D", "E", "F"):
        register(client, name=name)

    response = client.get("/queue/wait", params={"serial": 6})
    assert response.json() == {"patients_ahead": 5, "minutes": 75, "label": "1 hr 15 mins"}

    assert client.get("/queue/wait", params={"serial": 0}).status_code == 422


def test_today_summary(client):
    register(client, name="Amina")
    register(client, name="Bilal")
    client.post("/queue/call-next")

    data = client.get("/queue/today").json()
    assert data["waiting_count"] == 1
    assert data["completed_count"] == 0
    assert data["next_serial_number"] == 3
    assert data["current"]["name"] == "Amina"
    assert "label" in data["clinic_status"]


def test_history(client):
    register(client, name="Amina")
    register(client, name="Bilal")

    data = client.get("/history").json()
    assert len(data) == 1
    assert data[0]["day"] == date.today().isoformat()
    assert [v["name"] for v in data[0]["visits"]] == ["Amina", "Bilal"]


def test_clinic_status(client):
    data = client.get("/clinic/status").json()
    assert set(data) == {"is_open", "session", "label"}


def test_profile_round_trip(client):
    default = client.get("/profile").json()
    assert default == {
        "doctor_name": "Dr. John Doe",
        "clinic_name": "Wellness Medical Center",
        "morning": {"start": "09:00", "end": "12:00"},
        "evening": {"start": "17:00", "end": "20:00"},
        "avg_consultation_minutes": 15,
    }

    response = client.put("/profile", json={"clinic_name": "Riverside Clinic"})
    assert response.status_code == 200
    assert client.get("/profile").json() == dict(default, clinic_name="Riverside Clinic")

    response = client.put("/profile", json={"evening": None, "avg_consultation_minutes": 10})
    assert response.json()["evening"] is None
    assert response.json()["morning"] == default["morning"]
    assert response.json()["avg_consultation_minutes"] == 10


def test_profile_rejects_bad_values(client):
    assert client.put("/profile", json={"morning": {"start": "12:00", "end": "09:00"}}).status_code == 422
    assert client.put("/profile", json={"morning": {"start": "9am", "end": "12:00"}}).status_code == 422
    assert client.put("/profile", json={"avg_consultation_minutes": 0}).status_code == 422
    assert client.get("/profile").json()["avg_consultation_minutes"] == 15


def test_admin_timeline(client):
    visit = register(client)["visit"]
    client.post("/queue/call-next")

    data = client.get("/admin/timeline").json()
    assert [entry["event_type"] for entry in data] == ["called", "registered"]
    assert all(entry["visit_id"] == visit["id"] for entry in data)
