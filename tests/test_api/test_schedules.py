"""
Tests for Schedules API
=======================

Tests schedule creation with immediate expansion, pause/resume and updates.
"""

import pytest
from datetime import datetime, timedelta
from fastapi import status
from fastapi.testclient import TestClient

from models import AccessLevel, DoseEvent, DoseStatus
from tests.conftest import auth_headers, link_family


def count_scheduled(db_session, schedule_id):
    db_session.expire_all()
    return db_session.query(DoseEvent).filter(
        DoseEvent.schedule_id == schedule_id,
        DoseEvent.status == DoseStatus.SCHEDULED
    ).count()


class TestCreateSchedule:
    """Tests for schedule creation endpoint"""

    @pytest.mark.api
    def test_once_daily_expands_horizon(self, client: TestClient, db_session, patient, medication):
        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": medication.id, "frequency": "once_daily", "times_of_day": ["08:00"]},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()["data"]
        assert data["events_created"] == 30
        assert data["schedule"]["times_of_day"] == ["08:00"]
        assert data["schedule"]["is_indefinite"] is True
        assert count_scheduled(db_session, data["schedule"]["id"]) == 30

    @pytest.mark.api
    def test_as_needed_creates_no_events(self, client: TestClient, patient, medication):
        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": medication.id, "frequency": "as_needed"},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["data"]["events_created"] == 0

    @pytest.mark.api
    def test_wrong_time_count(self, client: TestClient, patient, medication):
        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": medication.id, "frequency": "twice_daily", "times_of_day": ["08:00"]},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "validation_error"

    @pytest.mark.api
    def test_unknown_frequency(self, client: TestClient, patient, medication):
        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": medication.id, "frequency": "hourly", "times_of_day": ["08:00"]},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["message"].startswith("frequency")

    @pytest.mark.api
    def test_unknown_medication(self, client: TestClient, patient):
        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": 4242, "frequency": "once_daily", "times_of_day": ["08:00"]},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.api
    def test_view_only_family_cannot_create(self, client: TestClient, db_session, patient, family_member, medication):
        link_family(db_session, patient, family_member, AccessLevel.VIEW_ONLY)

        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": medication.id, "frequency": "once_daily", "times_of_day": ["08:00"]},
            headers=auth_headers(family_member)
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestManageSchedule:
    """Tests for reading, pausing, resuming and updating schedules"""

    @pytest.fixture
    def created(self, client: TestClient, patient, medication):
        response = client.post(
            "/api/v1/schedules/",
            json={"medication_id": medication.id, "frequency": "once_daily", "times_of_day": ["09:00"]},
            headers=auth_headers(patient)
        )
        return response.json()["data"]["schedule"]

    @pytest.mark.api
    def test_list_and_get(self, client: TestClient, patient, created):
        listed = client.get("/api/v1/schedules/", headers=auth_headers(patient))
        single = client.get(f"/api/v1/schedules/{created['id']}", headers=auth_headers(patient))

        assert [s["id"] for s in listed.json()["data"]] == [created["id"]]
        assert single.json()["data"]["frequency"] == "once_daily"

    @pytest.mark.api
    def test_pause_rejects_past_until(self, client: TestClient, patient, created):
        past = (datetime.utcnow() - timedelta(days=1)).isoformat()

        response = client.post(
            f"/api/v1/schedules/{created['id']}/pause",
            json={"paused_until": past},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.api
    def test_pause_then_resume(self, client: TestClient, patient, created):
        paused = client.post(f"/api/v1/schedules/{created['id']}/pause", headers=auth_headers(patient))
        resumed = client.post(f"/api/v1/schedules/{created['id']}/resume", headers=auth_headers(patient))

        assert paused.status_code == status.HTTP_200_OK
        assert paused.json()["data"]["is_paused"] is True
        assert resumed.status_code == status.HTTP_200_OK
        assert resumed.json()["data"]["schedule"]["is_paused"] is False
        # Horizon was already full
        assert resumed.json()["data"]["events_created"] == 0

    @pytest.mark.api
    def test_update_adds_a_time(self, client: TestClient, db_session, patient, created):
        response = client.put(
            f"/api/v1/schedules/{created['id']}",
            json={"frequency": "twice_daily", "times_of_day": ["09:00", "21:00"]},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()["data"]
        assert data["schedule"]["times_of_day"] == ["09:00", "21:00"]
        assert data["events_created"] == 30
        assert count_scheduled(db_session, created["id"]) == 60

    @pytest.mark.api
    def test_expand_endpoint_is_idempotent(self, client: TestClient, patient, created):
        response = client.post("/api/v1/schedules/expand", headers=auth_headers(patient))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"] == {"patient_id": patient.id, "events_created": 0}
