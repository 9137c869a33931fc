import re
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

import obstracker.api.app as api_app_module
from obstracker.api.app import app
from obstracker.api.file_relay import AttachmentRelayError
from obstracker.core.dataverse import DataverseRecordStore
from obstracker.core.stores import InMemoryRecordStore

client = TestClient(app)

NOW = datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fresh_store(monkeypatch):
    store = InMemoryRecordStore()
    monkeypatch.setattr(api_app_module, "RECORD_STORE", store)
    monkeypatch.setattr(api_app_module, "_now", lambda: NOW)
    monkeypatch.delenv("OBSTRACKER_API_KEY", raising=False)
    monkeypatch.delenv("OBSTRACKER_REQUIRE_AUTH_FOR_READS", raising=False)
    return store


def _form(**overrides):
    form = {
        "year": "2024",
        "quarter": "Q1",
        "companyName": "Acme Holdings",
        "region": "North",
        "auditName": "Payroll Review",
        "auditReportDate": "2023-12-01",
        "observationType": "New",
        "observation": "Overtime approved after payment",
        "details": "Twelve overtime claims approved retroactively.",
        "riskRating": 2,
        "managementResponse": "Approval workflow will be enforced.",
        "headOfDepartment": "J. Mensah",
        "departmentResponsible": "HR",
        "personResponsible": "Ama Owusu",
        "email": "ama@example.com",
        "dueDate": "2024-01-01",
        "status": 1,
    }
    form.update(overrides)
    return form


def _create(**overrides):
    response = client.post("/tracker/observations", json=_form(**overrides))
    assert response.status_code == 201, response.text
    return response.json()["observation"]


def _submit_update(ref, email="ama@example.com", files=None, **fields):
    data = {
        "revisedFeedback": "Workflow enforced in payroll system",
        "revisedDueDate": "2024-09-30",
        "clientComments": "Screenshots attached",
        "email": email,
    }
    data.update(fields)
    return client.post(f"/client/observations/{ref}/updates", data=data, files=files or None)


def test_health_endpoint():
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"]
    diagnostics = body["diagnostics"]
    assert diagnostics["record_store"]["backend"] == "InMemoryRecordStore"
    assert diagnostics["auth"] == {
        "auditor_key_configured": False,
        "tracker_reads_protected": False,
        "client_access": "owner email match",
    }
    assert isinstance(diagnostics["file_relay"]["configured"], bool)


def test_create_observation_computes_derived_fields():
    created = _create()
    assert created["cr650_name"] == "IA--0001"
    assert created["cr650_daysoverdue"] == 182
    assert created["cr650_aging"] == 3
    assert created["cr650_duedate"] == "2024-01-01T00:00:00Z"


def test_create_closed_observation_without_remarks_is_rejected():
    response = client.post("/tracker/observations", json=_form(status=3))
    assert response.status_code == 422
    fields = [item["field"] for item in response.json()["detail"]]
    assert fields == ["cr650_closingremarks"]


def test_create_observation_rejects_unknown_form_keys():
    response = client.post("/tracker/observations", json=_form(colour="red"))
    assert response.status_code == 422


def test_update_and_delete_observation():
    obs_id = _create()["cr650_ia_observationid"]

    response = client.patch(f"/tracker/observations/{obs_id}", json=_form(status=3, closingRemarks="Verified"))
    assert response.status_code == 200
    detail = client.get(f"/tracker/observations/{obs_id}").json()
    assert detail["observation"]["cr650_status"] == 3
    assert detail["observation"]["cr650_aging"] == 1
    assert detail["observation"]["cr650_dateclosed"] == "2024-07-01T09:00:00Z"
    assert detail["closureFields"]["closingRemarks"] == {"visible": True, "required": True}
    assert detail["derived"] == {"cr650_daysoverdue": 182, "cr650_aging": 1}
    closed_rows = client.get("/tracker/observations", params={"status": "closed"}).json()["observations"]
    assert [o["cr650_ia_observationid"] for o in closed_rows] == [obs_id]
    assert client.get("/tracker/observations", params={"status": "1"}).json()["observations"] == []

    assert client.delete(f"/tracker/observations/{obs_id}").status_code == 200
    assert client.get(f"/tracker/observations/{obs_id}").status_code == 404
    assert client.delete(f"/tracker/observations/{obs_id}").status_code == 404


def test_tracker_list_filters_paginates_and_flags_pending_updates():
    first = _create()
    _create(year="2023", riskRating=4, observation="Petty cash not reconciled")
    for idx in range(21):
        _create(year="2022", observation=f"Bulk item {idx}")
    assert _submit_update(first["cr650_name"]).status_code == 201

    body = client.get("/tracker/observations").json()
    assert body["statistics"]["total"] == 23
    assert body["pagination"]["total_pages"] == 2
    assert body["pagination"]["page_size"] == 20
    assert len(body["observations"]) == 20

    filtered = client.get("/tracker/observations", params={"year": "2024"}).json()
    assert [o["cr650_ia_observationid"] for o in filtered["observations"]] == [first["cr650_ia_observationid"]]
    assert filtered["observations"][0]["hasPendingClientUpdate"] is True

    searched = client.get("/tracker/observations", params={"search": "petty", "risk": "4"}).json()
    assert len(searched["observations"]) == 1
    assert searched["observations"][0]["hasPendingClientUpdate"] is False
    by_label = client.get("/tracker/observations", params={"risk": "low"}).json()
    assert [o["cr650_observation"] for o in by_label["observations"]] == ["Petty cash not reconciled"]
    assert by_label["filters"]["risk"] == "4"

    last_page = client.get("/tracker/observations", params={"page": 5}).json()
    assert last_page["pagination"]["page"] == 2
    assert len(last_page["observations"]) == 3


def test_tracker_list_rejects_unknown_sort_field():
    response = client.get("/tracker/observations", params={"sort": "cr650_secret"})
    assert response.status_code == 400


def test_accept_client_response_closes_and_resolves_update():
    created = _create()
    obs_id = created["cr650_ia_observationid"]
    assert _submit_update(created["cr650_name"]).status_code == 201

    response = client.post(f"/tracker/observations/{obs_id}/accept", json={"closing_remarks": "Evidence reviewed"})
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"

    detail = client.get(f"/tracker/observations/{obs_id}").json()
    obs = detail["observation"]
    assert obs["cr650_status"] == 3
    assert obs["cr650_aging"] == 1
    assert obs["cr650_duedate"] == "2024-09-30T00:00:00Z"
    assert obs["cr650_dateclosed"] == "2024-07-01T09:00:00Z"
    assert obs["cr650_latestrevisedmap"] == "Workflow enforced in payroll system"
    assert detail["hasPendingClientUpdate"] is False
    assert detail["latestClientUpdate"]["cr650_updatestatus"] == 2

    again = client.post(f"/tracker/observations/{obs_id}/accept", json={"closing_remarks": "twice"})
    assert again.status_code == 409


def test_accept_requires_closing_remarks():
    obs_id = _create()["cr650_ia_observationid"]
    response = client.post(f"/tracker/observations/{obs_id}/accept", json={"closing_remarks": ""})
    assert response.status_code == 422


def test_reject_client_response_appends_note():
    created = _create()
    obs_id = created["cr650_ia_observationid"]
    assert _submit_update(obs_id).status_code == 201

    response = client.post(f"/tracker/observations/{obs_id}/reject", json={"reason": "bad data"})
    assert response.status_code == 200

    detail = client.get(f"/tracker/observations/{obs_id}").json()
    assert detail["observation"]["cr650_iawork"] == "[Jul 1, 2024] Client response rejected: bad data"
    assert detail["observation"]["cr650_status"] == 1
    assert detail["observation"]["cr650_lastcommunicationdate"] == "2024-07-01T09:00:00Z"
    assert detail["latestClientUpdate"]["cr650_updatestatus"] == 3

    missing_reason = client.post(f"/tracker/observations/{obs_id}/reject", json={"reason": " "})
    assert missing_reason.status_code == 422


def test_tracker_actions_dispatch_by_identifier():
    obs_id = _create()["cr650_ia_observationid"]

    view = client.post("/tracker/actions", json={"action": "view", "observation_id": obs_id})
    assert view.status_code == 200
    assert view.json()["observation"]["cr650_ia_observationid"] == obs_id

    blocked = client.post("/tracker/actions", json={"action": "change-status", "observation_id": obs_id, "status": 3})
    assert blocked.status_code == 422

    closed = client.post(
        "/tracker/actions",
        json={"action": "change-status", "observation_id": obs_id, "status": 3, "closing_remarks": "Done"},
    )
    assert closed.status_code == 200
    assert closed.json()["patch"] == {
        "cr650_status": 3,
        "cr650_aging": 1,
        "cr650_dateclosed": "2024-07-01T09:00:00Z",
        "cr650_closingremarks": "Done",
    }

    reopened = client.post("/tracker/actions", json={"action": "change-status", "observation_id": obs_id, "status": 1})
    assert reopened.status_code == 200
    detail = client.get(f"/tracker/observations/{obs_id}").json()
    assert detail["observation"]["cr650_closingremarks"] == "Done"
    assert detail["closureFields"]["dateClosed"]["visible"] is False

    unknown = client.post("/tracker/actions", json={"action": "archive", "observation_id": obs_id})
    assert unknown.status_code == 400
    assert "change-status" in unknown.json()["detail"]["actions"]

    deleted = client.post("/tracker/actions", json={"action": "delete", "observation_id": obs_id})
    assert deleted.status_code == 200
    assert client.get(f"/tracker/observations/{obs_id}").status_code == 404


def test_every_rendered_tracker_action_has_a_handler():
    empty_page = client.get("/tracker/ui").text
    created = _create()
    _create(observation="Second finding")
    _submit_update(created["cr650_name"])
    full_page = client.get("/tracker/ui").text
    dashboard = client.get("/dashboard/ui", params={"email": "ama@example.com"}).text

    rendered = set(re.findall(r'data-action="([^"]+)"', empty_page + full_page + dashboard))
    assert {"create-first", "edit", "accept-response", "reject-response", "next-page"} <= rendered
    assert rendered - set(api_app_module.TRACKER_ACTIONS.actions()) == set()


def test_tracker_listing_actions_navigate_and_export():
    for idx in range(21):
        _create(year="2022" if idx else "2024", observation=f"Finding {idx}")

    nxt = client.post("/tracker/actions", json={"action": "next-page", "page": 1}).json()
    assert nxt["pagination"]["page"] == 2
    assert len(nxt["observations"]) == 1

    prev = client.post("/tracker/actions", json={"action": "prev-page", "page": 2}).json()
    assert prev["pagination"]["page"] == 1

    cleared = client.post("/tracker/actions", json={"action": "clear-filters", "year": "2024"}).json()
    assert cleared["filters"]["year"] == ""
    assert cleared["pagination"]["total"] == 21

    export = client.post("/tracker/actions", json={"action": "export", "year": "2024"}).json()
    assert export == {"count": 1, "csv": "/tracker/export.csv?year=2024", "xlsx": "/tracker/export.xlsx?year=2024"}
    assert client.post("/tracker/actions", json={"action": "export", "year": "1999"}).status_code == 404


def test_edit_and_create_first_actions_prepare_the_form():
    obs_id = _create()["cr650_ia_observationid"]
    edit = client.post("/tracker/actions", json={"action": "edit", "observation_id": obs_id}).json()
    assert edit["mode"] == "edit"
    assert edit["observation"]["cr650_ia_observationid"] == obs_id

    blank = client.post("/tracker/actions", json={"action": "create-first"}).json()
    assert blank["mode"] == "create"
    assert blank["defaults"] == {"cr650_status": 1, "cr650_aging": 1}
    assert blank["closureFields"]["closingRemarks"]["visible"] is False


def test_export_csv_and_xlsx():
    assert client.get("/tracker/export.csv").status_code == 404
    _create()
    _create(year="2023", auditName='Cash "Vault", Main')

    response = client.get("/tracker/export.csv")
    assert response.status_code == 200
    assert "observations_complete_2024-07-01.csv" in response.headers["content-disposition"]
    lines = response.text.split("\n")
    assert lines[0].startswith("Year,Quarter,Month,Company Name")
    assert '"Cash ""Vault"", Main"' in response.text

    only_2023 = client.get("/tracker/export.csv", params={"year": "2023"})
    assert len(only_2023.text.split("\n")) == 2

    xlsx = client.get("/tracker/export.xlsx")
    assert xlsx.status_code == 200
    assert "observations_complete_2024-07-01.xlsx" in xlsx.headers["content-disposition"]
    assert xlsx.content[:2] == b"PK"


def test_dashboard_filters_by_email_and_derived_status():
    _create()
    _create(dueDate="2024-12-31", observation="Leave balances not reconciled")
    _create(status=3, closingRemarks="Closed out", auditName="Treasury Review")
    _create(email="kofi@example.com", personResponsible="Kofi Boateng")

    body = client.get("/dashboard", params={"email": "ama@example.com"}).json()
    assert body["statistics"] == {"total": 3, "overdue": 1, "pending": 1, "completed": 1}
    assert body["options"]["audits"] == ["Payroll Review", "Treasury Review"]
    assert body["user"]["name"] == "Ama Owusu"

    overdue = client.get("/dashboard", params={"email": "ama@example.com", "status": "overdue"}).json()
    assert overdue["count"] == 1
    assert overdue["observations"][0]["daysOverdue"] == 182
    assert overdue["notices"] == ["Status overdue"]

    searched = client.get("/dashboard", params={"email": "ama@example.com", "search": "ia--0002"}).json()
    assert [o["reference"] for o in searched["observations"]] == ["IA--0002"]


def test_dashboard_ui_renders_cards():
    _create()
    response = client.get("/dashboard/ui", params={"email": "ama@example.com"})
    assert response.status_code == 200
    assert 'id="totalCount">1<' in response.text
    assert "Welcome, Ama" in response.text
    assert 'data-obs-id="' in response.text


def test_client_view_enforces_email_and_shows_closed_state():
    created = _create()
    ref = created["cr650_name"]

    denied = client.get(f"/client/observations/{ref}", params={"email": "intruder@example.com"})
    assert denied.status_code == 403
    denied_ui = client.get(f"/client/observations/{ref}/ui", params={"email": "intruder@example.com"})
    assert denied_ui.status_code == 403
    assert "Access Denied" in denied_ui.text

    view = client.get(f"/client/observations/{ref}", params={"email": "AMA@example.com"}).json()
    assert view["closed"] is False
    assert view["daysOverdue"] == 182
    assert view["submittedBy"] == "Ama Owusu"

    form_ui = client.get(f"/client/observations/{ref}/ui", params={"email": "ama@example.com"})
    assert 'id="clientUpdateForm"' in form_ui.text
    assert "No documents uploaded." in form_ui.text

    obs_id = created["cr650_ia_observationid"]
    client.patch(f"/tracker/observations/{obs_id}", json=_form(status=3, closingRemarks="All good"))
    closed = client.get(f"/client/observations/{obs_id}", params={"email": "ama@example.com"}).json()
    assert closed["closed"] is True
    closed_ui = client.get(f"/client/observations/{obs_id}/ui", params={"email": "ama@example.com"})
    assert 'id="closedMessage"' in closed_ui.text
    assert "All good" in closed_ui.text
    assert _submit_update(ref).status_code == 409

    assert client.get("/client/observations/IA--0404").status_code == 404


def test_client_update_with_files_is_relayed(monkeypatch):
    created = _create()
    relayed = []

    def fake_relay(**kwargs):
        relayed.append(kwargs)
        return {}

    monkeypatch.setattr(api_app_module, "relay_attachments", fake_relay)
    response = _submit_update(
        created["cr650_name"],
        files=[("files", ("evidence.pdf", b"%PDF-1.4", "application/pdf"))],
    )
    assert response.status_code == 201
    body = response.json()
    assert body["warnings"] == []
    assert body["redirect"] == "/Client-Observation-Dashboard/?email=ama%40example.com"
    assert body["update"]["cr650_submittedby"] == "Ama Owusu"
    assert body["update"]["cr650_revisedduedate"] == "2024-09-30T00:00:00Z"

    assert len(relayed) == 1
    assert relayed[0]["observation_name"] == "IA--0001"
    assert relayed[0]["files"] == [("evidence.pdf", b"%PDF-1.4")]


def test_client_update_relay_failure_becomes_warning(monkeypatch):
    created = _create()

    def failing_relay(**kwargs):
        raise AttachmentRelayError("File upload failed: 500 - Internal Server Error")

    monkeypatch.setattr(api_app_module, "relay_attachments", failing_relay)
    response = _submit_update(
        created["cr650_name"],
        files=[("files", ("evidence.pdf", b"%PDF-1.4", "application/pdf"))],
    )
    assert response.status_code == 201
    assert response.json()["warnings"] == ["Update saved but file upload failed: File upload failed: 500 - Internal Server Error"]
    assert len(client.get(f"/client/observations/{created['cr650_name']}").json()["previousSubmissions"]) == 1


def test_client_update_validates_form_and_attachments():
    created = _create()
    bad_type = _submit_update(created["cr650_name"], files=[("files", ("photo.png", b"x", "image/png"))])
    assert bad_type.status_code == 422

    missing = _submit_update(created["cr650_name"], revisedFeedback="")
    assert missing.status_code == 422
    assert missing.json()["detail"][0]["field"] == "revisedFeedback"


def test_tracker_ui_renders_pending_indicator():
    created = _create()
    _submit_update(created["cr650_name"])
    response = client.get("/tracker/ui")
    assert response.status_code == 200
    assert 'id="pageInfo">1-1 of 1<' in response.text
    assert "Client updated" in response.text
    assert 'data-search-debounce-ms="300"' in response.text


def test_mutations_require_api_key_when_configured(monkeypatch):
    monkeypatch.setenv("OBSTRACKER_API_KEY", "secret")
    assert client.post("/tracker/observations", json=_form()).status_code == 401
    assert client.post("/tracker/observations", json=_form(), headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.post("/tracker/observations", json=_form(), headers={"X-API-Key": "secret"}).status_code == 201
    assert client.get("/tracker/observations").status_code == 200

    monkeypatch.setenv("OBSTRACKER_REQUIRE_AUTH_FOR_READS", "true")
    assert client.get("/tracker/observations").status_code == 401
    assert client.get("/tracker/observations", headers={"X-API-Key": "secret"}).status_code == 200
    assert client.get("/dashboard", params={"email": "ama@example.com"}).status_code == 200


def test_openapi_marks_auditor_routes_and_email_scoped_client_routes():
    app.openapi_schema = None
    schema = client.get("/openapi.json").json()
    assert schema["components"]["securitySchemes"]["AuditorKey"]["name"] == "X-API-Key"
    paths = schema["paths"]
    assert paths["/tracker/observations"]["post"]["security"] == [{"AuditorKey": []}]
    assert paths["/tracker/export.csv"]["get"]["security"] == [{"AuditorKey": []}]
    client_view = paths["/client/observations/{id_or_ref}"]["get"]
    assert client_view["security"] == []
    assert "owner's email" in client_view["description"]
    assert "security" not in paths["/health"]["get"]


def test_data_api_sign_in_page_maps_to_bad_gateway(monkeypatch):
    portal = DataverseRecordStore(
        "https://portal.example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>Sign in</html>")),
    )
    monkeypatch.setattr(api_app_module, "RECORD_STORE", portal)
    response = client.get("/tracker/observations")
    assert response.status_code == 502
    assert "non-JSON" in response.json()["detail"]
