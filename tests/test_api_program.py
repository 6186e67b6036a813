"""API tests for the program/activity/task CRUD blueprint."""

import pytest

PROGRAM_BODY = {
    "name": "Shelter 2025",
    "description": "Safe house operations",
    "year": 2025,
    "budget_total": 2500,
    "focus_area": "GBV Management",
}


def _activity_body(program_id, **overrides):
    body = {
        "program_id": program_id,
        "name": "Training",
        "description": "Train facilitators",
        "timeline_start": "2025-01-15",
        "timeline_end": "2025-03-31",
        "budget_allocated": "1200",
    }
    body.update(overrides)
    return body


class TestPrograms:
    def test_create_and_get_program(self, client, program):
        assert program["id"]
        assert program["location"] == "Migori County"
        assert program["public_visible"] is True

        res = client.get(f"/api/v1/programs/{program['id']}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["activities"] == []
        assert data["impact_metrics"] == {
            "beneficiaries_reached": 0,
            "activities_completed": 0,
            "budget_utilized": 0,
            "success_rate": 0,
        }

    def test_create_program_validation(self, client):
        res = client.post("/api/v1/programs", json={"name": "", "year": "abc"})
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"]["name"] == "required"
        assert body["details"]["year"] == "must be an integer"

    @pytest.mark.parametrize("budget", ["nan", "inf", "-nan", "Infinity"])
    def test_non_finite_budget_rejected(self, client, budget):
        res = client.post("/api/v1/programs", json={**PROGRAM_BODY, "budget_total": budget})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"budget_total": "must be a non-negative number"}

    def test_public_visible_form_string(self, client):
        res = client.post("/api/v1/programs", json={**PROGRAM_BODY, "public_visible": "false"})
        assert res.status_code == 201
        assert res.get_json()["public_visible"] is False

        res = client.post("/api/v1/programs", json={**PROGRAM_BODY, "public_visible": "sometimes"})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"public_visible": "must be a boolean"}

    def test_list_nests_activities_tasks_and_metrics(self, client, program):
        activity = client.post("/api/v1/activities", json=_activity_body(program["id"])).get_json()
        client.post("/api/v1/tasks", json={"activity_id": activity["id"], "name": "Recruit"})

        listed = client.get("/api/v1/programs").get_json()

        assert len(listed) == 1
        assert [a["name"] for a in listed[0]["activities"]] == ["Training"]
        assert [t["name"] for t in listed[0]["activities"][0]["tasks"]] == ["Recruit"]
        assert listed[0]["impact_metrics"]["activities_completed"] == 0

    def test_non_object_body_rejected(self, client):
        res = client.post("/api/v1/programs", json=["not", "an", "object"])
        assert res.status_code == 422

    def test_list_filters(self, client, program):
        client.post("/api/v1/programs", json={
            "name": "Shelter 2024", "description": "d", "year": 2024,
            "status": "completed", "budget_total": 5, "focus_area": "Other",
        })

        assert len(client.get("/api/v1/programs").get_json()) == 2
        assert len(client.get("/api/v1/programs?status=all").get_json()) == 2
        completed = client.get("/api/v1/programs?status=completed").get_json()
        assert [p["name"] for p in completed] == ["Shelter 2024"]
        by_year = client.get("/api/v1/programs?year=2025").get_json()
        assert [p["name"] for p in by_year] == ["Test Program"]
        by_area = client.get("/api/v1/programs?focus_area=Other").get_json()
        assert len(by_area) == 1

    def test_invalid_year_filter(self, client):
        assert client.get("/api/v1/programs?year=soon").status_code == 422

    def test_get_missing_program(self, client):
        res = client.get("/api/v1/programs/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_delete_program_cascades(self, client, program):
        activity = client.post("/api/v1/activities", json=_activity_body(program["id"])).get_json()
        client.post("/api/v1/tasks", json={"activity_id": activity["id"], "name": "Recruit"})

        res = client.delete(f"/api/v1/programs/{program['id']}")

        assert res.status_code == 200
        assert client.get(f"/api/v1/activities/{activity['id']}").status_code == 404
        assert client.get("/api/v1/tasks").get_json() == []


class TestActivities:
    def test_create_activity_normalises_form_values(self, client, program):
        res = client.post("/api/v1/activities", json=_activity_body(program["id"], progress="40"))

        assert res.status_code == 201
        data = res.get_json()
        assert data["budget_allocated"] == 1200
        assert data["budget_utilized"] == 0
        assert data["progress"] == 40
        assert data["status"] == "planned"

    def test_unknown_program(self, client):
        res = client.post("/api/v1/activities", json=_activity_body(999))
        assert res.status_code == 404

    def test_end_before_start(self, client, program):
        res = client.post("/api/v1/activities", json=_activity_body(
            program["id"], timeline_start="2025-05-01", timeline_end="2025-04-01",
        ))
        assert res.status_code == 422
        assert "timeline_end" in res.get_json()["details"]

    def test_list_by_program_and_metrics(self, client, program):
        client.post("/api/v1/activities", json=_activity_body(program["id"], progress=50))
        client.post("/api/v1/activities", json=_activity_body(
            program["id"], name="Outreach", status="completed", progress=100, budget_utilized=300,
        ))

        listed = client.get(f"/api/v1/activities?program_id={program['id']}").get_json()
        assert [a["name"] for a in listed] == ["Training", "Outreach"]

        metrics = client.get(f"/api/v1/programs/{program['id']}").get_json()["impact_metrics"]
        assert metrics == {
            "beneficiaries_reached": 150,
            "activities_completed": 1,
            "budget_utilized": 300,
            "success_rate": 75,
        }

    def test_bad_program_id_filter(self, client):
        assert client.get("/api/v1/activities?program_id=x").status_code == 422


class TestTasks:
    def test_create_task_defaults(self, client, program):
        activity = client.post("/api/v1/activities", json=_activity_body(program["id"])).get_json()

        res = client.post("/api/v1/tasks", json={
            "activity_id": activity["id"], "name": "Recruit", "target": "40",
            "activity_timeline": "10.02.2025",
        })

        assert res.status_code == 201
        task = res.get_json()
        assert task["status"] == 0
        assert task["target"] == 40
        assert task["activity_timeline"] == "2025-02-10"

        detail = client.get(f"/api/v1/activities/{activity['id']}").get_json()
        assert [t["name"] for t in detail["tasks"]] == ["Recruit"]

    def test_task_status_range(self, client, program):
        activity = client.post("/api/v1/activities", json=_activity_body(program["id"])).get_json()
        res = client.post("/api/v1/tasks", json={
            "activity_id": activity["id"], "name": "Recruit", "status": 11,
        })
        assert res.status_code == 422
        assert "status" in res.get_json()["details"]

    def test_missing_activity_id(self, client):
        res = client.post("/api/v1/tasks", json={"name": "Recruit"})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"activity_id": "required"}

    def test_delete_task(self, client, program):
        activity = client.post("/api/v1/activities", json=_activity_body(program["id"])).get_json()
        task = client.post("/api/v1/tasks", json={"activity_id": activity["id"], "name": "x"}).get_json()

        assert client.delete(f"/api/v1/tasks/{task['id']}").status_code == 200
        assert client.get(f"/api/v1/tasks/{task['id']}").status_code == 404


class TestHealth:
    def test_health_endpoints(self, client):
        assert client.get("/api/v1/health").get_json()["status"] == "ok"
        assert client.get("/api/v1/health/ready").status_code == 200
        live = client.get("/api/v1/health/live")
        assert live.status_code == 200
        assert live.get_json()["checks"]["database"]["status"] == "ok"

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.headers.get("X-Request-ID")

    def test_unknown_api_path(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["error"] == "Not found"
