"""
Tests for Family Access API
===========================

Tests the relationship overview, revocation, link repair and profile settings.
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from models import AccessLevel, UserProfile
from tests.conftest import auth_headers, link_family


class TestOverview:
    """Tests for listing relationships from both sides"""

    @pytest.mark.api
    def test_both_sides(self, client: TestClient, db_session, patient, family_member):
        link_family(db_session, patient, family_member, AccessLevel.FULL)

        as_patient = client.get("/api/v1/family-access/", headers=auth_headers(patient)).json()["data"]
        as_member = client.get("/api/v1/family-access/", headers=auth_headers(family_member)).json()["data"]

        assert as_patient["total_connections"] == 1
        assert as_patient["family_members_with_access_to_me"][0]["family_member_id"] == family_member.id
        assert as_patient["patients_i_have_access_to"] == []
        assert as_member["patients_i_have_access_to"][0]["patient_id"] == patient.id
        assert as_member["patients_i_have_access_to"][0]["access_level"] == "full"


class TestRevoke:
    """Tests for revoking access"""

    @pytest.mark.api
    def test_revoke_removes_access(self, client: TestClient, db_session, patient, family_member, medication):
        relationship = link_family(db_session, patient, family_member, AccessLevel.FULL)

        response = client.post(
            f"/api/v1/family-access/{relationship.id}/revoke",
            json={"reason": "moved away"},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()["data"]
        assert data["status"] == "revoked"
        assert data["revocation_reason"] == "moved away"

        denied = client.get(
            "/api/v1/medications/", params={"patient_id": patient.id}, headers=auth_headers(family_member)
        )
        assert denied.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.api
    def test_revoke_without_body(self, client: TestClient, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)

        response = client.post(f"/api/v1/family-access/{relationship.id}/revoke", headers=auth_headers(patient))

        assert response.json()["data"]["revocation_reason"] == "Removed by patient"

    @pytest.mark.api
    def test_member_cannot_revoke(self, client: TestClient, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)

        response = client.post(
            f"/api/v1/family-access/{relationship.id}/revoke", headers=auth_headers(family_member)
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.api
    def test_revoke_twice(self, client: TestClient, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)
        client.post(f"/api/v1/family-access/{relationship.id}/revoke", headers=auth_headers(patient))

        response = client.post(f"/api/v1/family-access/{relationship.id}/revoke", headers=auth_headers(patient))

        assert response.status_code == status.HTTP_409_CONFLICT

    @pytest.mark.api
    def test_unknown_relationship(self, client: TestClient, patient):
        response = client.post("/api/v1/family-access/missing/revoke", headers=auth_headers(patient))

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestProfile:
    """Tests for link repair and profile settings"""

    @pytest.mark.api
    def test_repair_restores_links(self, client: TestClient, db_session, patient, family_member):
        link_family(db_session, patient, family_member)
        family_member.linked_patient_ids = []
        family_member.primary_patient_id = None
        patient.family_member_ids = []
        db_session.commit()

        response = client.post("/api/v1/family-access/repair", headers=auth_headers(family_member))

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["message"] == "Family links repaired"
        assert body["data"]["linked_patient_ids"] == [patient.id]
        assert body["data"]["patients_updated"] == 1

    @pytest.mark.api
    def test_repair_not_needed(self, client: TestClient, db_session, patient, family_member):
        link_family(db_session, patient, family_member)

        response = client.post("/api/v1/family-access/repair", headers=auth_headers(family_member))

        assert response.json()["message"] == "No repair needed"
        assert response.json()["data"]["repaired"] is False

    @pytest.mark.api
    def test_update_timezone(self, client: TestClient, db_session, patient):
        response = client.put(
            "/api/v1/family-access/profile/timezone",
            json={"timezone": "America/New_York"},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["timezone"] == "America/New_York"
        db_session.expire_all()
        assert db_session.get(UserProfile, patient.id).timezone == "America/New_York"

    @pytest.mark.api
    def test_unknown_timezone(self, client: TestClient, patient):
        response = client.put(
            "/api/v1/family-access/profile/timezone",
            json={"timezone": "Nowhere/Special"},
            headers=auth_headers(patient)
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
