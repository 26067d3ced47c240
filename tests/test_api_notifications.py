"""
Regulatory Filing Platform
Tests — Notification API.

Covers:
    - inbox per recipient includes broadcasts to 'all'
    - unread count, mark one read, mark all read
    - filing outcome → preparer notification (end to end over HTTP)
    - failed workflow execution → initiator notification
"""

from filing_engine.services.notification import NotificationService


def _seed(tenant):
    NotificationService.broadcast(title="13F due in 7 days", category="deadline", severity="warning",
                                  tenant_id=tenant.id, recipients=["compliance_officer", "analyst"])
    NotificationService.create(title="Maintenance window", tenant_id=tenant.id)


class TestInboxAPI:
    def test_inbox_includes_broadcasts(self, client, default_tenant):
        _seed(default_tenant)
        res = client.get(f"/api/v1/notifications?recipient=compliance_officer&tenant_id={default_tenant.id}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 2
        assert {n["title"] for n in data["items"]} == {"13F due in 7 days", "Maintenance window"}

    def test_recipient_required(self, client):
        assert client.get("/api/v1/notifications").status_code == 422

    def test_read_flow(self, client, default_tenant):
        _seed(default_tenant)
        url = "/api/v1/notifications/unread-count?recipient=analyst"
        assert client.get(url).get_json()["unread_count"] == 2

        inbox = client.get("/api/v1/notifications?recipient=analyst").get_json()["items"]
        res = client.patch(f"/api/v1/notifications/{inbox[0]['id']}/read")
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True
        assert client.get(url).get_json()["unread_count"] == 1

        res = client.post("/api/v1/notifications/mark-all-read", json={"recipient": "analyst"})
        assert res.get_json()["marked_read"] == 1
        assert client.get(url).get_json()["unread_count"] == 0

    def test_mark_unknown_is_404(self, client):
        assert client.patch("/api/v1/notifications/9999/read").status_code == 404

    def test_filed_filing_notifies_preparer(self, client, default_tenant, adv_input, publisher):
        res = client.post("/api/v1/filings", json={
            "tenant_id": default_tenant.id, "form_type": "form_adv",
            "reporting_period_end": "2023-12-31", "prepared_by": "dana", "form_data": adv_input})
        filing_id = res.get_json()["id"]
        client.post(f"/api/v1/filings/{filing_id}/submit", json={"submitted_by": "cco"})
        publisher.drain()

        items = client.get("/api/v1/notifications?recipient=dana").get_json()["items"]
        assert len(items) == 1
        assert items[0]["entity_id"] == filing_id
        assert items[0]["severity"] == "success"

    def test_rejected_execution_notifies_initiator(self, client, default_tenant, publisher):
        steps = [{"step_id": "signoff", "step_name": "Sign-off", "step_type": "approval",
                  "assigned_role": "compliance_officer", "estimated_duration": 1, "dependencies": []}]
        workflow = client.post("/api/v1/workflows", json={
            "tenant_id": default_tenant.id, "name": "ADV sign-off", "form_type": "form_adv",
            "steps": steps}).get_json()
        execution = client.post(f"/api/v1/workflows/{workflow['id']}/executions", json={
            "reporting_period_end": "2023-12-31", "initiated_by": "ops_lead"}).get_json()
        client.post(f"/api/v1/executions/{execution['id']}/steps/signoff/reject",
                    json={"actor": "cco", "notes": "Fee table incomplete"})
        publisher.drain()

        items = client.get("/api/v1/notifications?recipient=ops_lead").get_json()["items"]
        assert len(items) == 1
        assert items[0]["category"] == "workflow"
        assert items[0]["severity"] == "error"
        assert items[0]["title"] == "Workflow execution failed at step 'signoff'"
        assert items[0]["message"] == "Fee table incomplete"
