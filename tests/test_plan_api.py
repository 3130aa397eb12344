import pytest

from periop import main
from periop.db import models as db_models


class RecordingManager:
    def __init__(self) -> None:
        self.payloads = []

    async def broadcast(self, payload, room: str = "guidelines") -> int:
        self.payloads.append(dict(payload))
        return 0


@pytest.fixture
def guideline_id(api_client, login_as):
    login_as("doctor")
    guideline = api_client.post("/api/guidelines", json={"name": "Knee arthroscopy"}).json()["guideline"]
    api_client.post(
        f"/api/guidelines/{guideline['id']}/items",
        json={"title": "Stop blood thinners", "type": "medication", "window": {"from": "D-5"}},
    )
    return guideline["id"]


def _create_surgery(client, **body):
    resp = client.post("/api/surgery", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_create_surgery_seeds_draft_from_guideline(api_client, users, guideline_id):
    data = _create_surgery(
        api_client,
        patientId=users["patient"],
        guidelineId=str(guideline_id),
        scheduledAt="2025-03-10T12:00:00Z",
        location="Theatre 1",
    )
    surgery = data["surgery"]
    assert surgery["patientId"] == users["patient"]
    assert surgery["doctorId"] == users["doctor"]
    assert surgery["scheduledAt"] == "2025-03-10T12:00:00Z"
    assert surgery["status"] == "SCHEDULED"
    assert surgery["currentPublishedVersionId"] is None
    assert surgery["guideline"]["name"] == "Knee arthroscopy"

    version = data["version"]
    assert version["versionNo"] == 1
    assert version["status"] == "DRAFT"
    assert version["isPublished"] is False
    assert version["basedOnGuidelineId"] == guideline_id
    assert [i["title"] for i in version["instructions"]["items"]] == ["Stop blood thinners"]


def test_create_surgery_with_explicit_instructions(api_client, users, login_as):
    login_as("doctor")
    data = _create_surgery(
        api_client,
        patientId=users["patient"],
        instructions=[{"title": "Bring your ID"}],
    )
    assert data["surgery"]["scheduledAt"] is None
    assert data["version"]["instructions"] == {"items": [{"title": "Bring your ID"}]}


@pytest.mark.parametrize(
    "body, status, error",
    [
        ({}, 400, "Missing or invalid patientId."),
        ({"patientId": "abc"}, 400, "Missing or invalid patientId."),
        ({"patientId": 999}, 404, "Patient with ID 999 not found or is not a patient."),
        ({"patientId": "PATIENT", "guidelineId": "x"}, 400, "Invalid guidelineId format."),
        ({"patientId": "PATIENT", "guidelineId": 999}, 400, "Guideline not found."),
        ({"patientId": "PATIENT", "scheduledAt": "next tuesday"}, 400, "Invalid scheduledAt date format."),
    ],
)
def test_create_surgery_errors(api_client, users, login_as, body, status, error):
    login_as("doctor")
    if body.get("patientId") == "PATIENT":
        body = dict(body, patientId=users["patient"])
    resp = api_client.post("/api/surgery", json=body)
    assert resp.status_code == status
    assert resp.json() == {"error": error}


def test_doctor_cannot_be_operated_on(api_client, users, login_as):
    login_as("doctor")
    resp = api_client.post("/api/surgery", json={"patientId": users["doctor"]})
    assert resp.status_code == 404


def test_plan_versions_and_publishing(api_client, users, guideline_id, db_session, monkeypatch):
    manager = RecordingManager()
    monkeypatch.setattr(main, "guideline_ws_manager", manager)
    surgery_id = _create_surgery(api_client, patientId=users["patient"], guidelineId=guideline_id)["surgery"]["id"]

    resp = api_client.post(
        f"/api/surgery/{surgery_id}/plan",
        json={"instructions": {"items": [{"title": "Shower", "window": {"when": "DOS-morning"}}]}},
    )
    assert resp.status_code == 201
    v2 = resp.json()["version"]
    assert v2["versionNo"] == 2
    assert v2["author"] == {"id": users["doctor"], "name": "Grey", "role": "doctor"}

    versions = api_client.get(f"/api/surgery/{surgery_id}/plan").json()["versions"]
    assert [v["versionNo"] for v in versions] == [2, 1]
    v1_id = versions[1]["id"]

    resp = api_client.post(f"/api/surgery/{surgery_id}/plan/{v1_id}/publish")
    assert resp.status_code == 200
    assert resp.json()["version"]["status"] == "PUBLISHED"

    resp = api_client.post(f"/api/surgery/{surgery_id}/plan/{v2['id']}/publish")
    assert resp.status_code == 200
    published = resp.json()["version"]
    assert published["isPublished"] is True
    assert published["publishedAt"] is not None

    versions = {v["versionNo"]: v for v in api_client.get(f"/api/surgery/{surgery_id}/plan").json()["versions"]}
    assert versions[1]["status"] == "SUPERSEDED"
    assert versions[1]["isPublished"] is False
    assert versions[2]["status"] == "PUBLISHED"

    surgery = db_session.get(db_models.Surgery, surgery_id)
    assert surgery.current_published_version_id == v2["id"]
    assert [p["action"] for p in manager.payloads] == ["plan-published", "plan-published"]
    assert manager.payloads[-1]["versionId"] == v2["id"]


def test_plan_routes_validate_ids(api_client, users, login_as):
    login_as("doctor")
    resp = api_client.get("/api/surgery/abc/plan")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid surgery ID format."}

    assert api_client.get("/api/surgery/999/plan").status_code == 404
    assert api_client.post("/api/surgery/999/plan", json={"instructions": {}}).status_code == 404

    surgery_id = _create_surgery(api_client, patientId=users["patient"])["surgery"]["id"]
    resp = api_client.post(f"/api/surgery/{surgery_id}/plan/12345/publish")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Plan version not found."}


def test_version_from_other_surgery_cannot_be_published(api_client, users, login_as):
    login_as("doctor")
    first = _create_surgery(api_client, patientId=users["patient"])
    second = _create_surgery(api_client, patientId=users["other_patient"])
    resp = api_client.post(
        f"/api/surgery/{first['surgery']['id']}/plan/{second['version']['id']}/publish"
    )
    assert resp.status_code == 404


def test_patients_cannot_edit_plans(api_client, users, login_as):
    login_as("patient")
    assert api_client.post("/api/surgery", json={"patientId": users["patient"]}).status_code == 403
    assert api_client.get("/api/surgery/1/plan").status_code == 403
