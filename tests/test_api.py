from datetime import datetime, timezone

import pytest

from therxos.scanner import run_scan


@pytest.fixture
def scanned(service, seeded):
    run_scan(service, [seeded["pharmacy_id"]])
    return seeded


def opp_for(service, seeded, code, last_name="SMITH"):
    return service.scalar(
        """
        SELECT o.opportunity_id FROM opportunities o JOIN patients p ON p.patient_id = o.patient_id
        WHERE o.trigger_id = ? AND p.last_name = ?
        """,
        (seeded["triggers"][code], last_name),
    )


# ----------------------------- Auth -------------------------------------------
def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_login_me_and_logout(client, seeded):
    bad = client.post("/api/auth/login", json={"email": seeded["emails"]["admin"], "password": "nope"})
    assert bad.status_code == 401

    r = client.post("/api/auth/login", json={"email": seeded["emails"]["admin"], "password": seeded["password"]})
    body = r.json()
    assert body["user"]["role"] == "admin"
    assert body["user"]["pharmacyId"] == seeded["pharmacy_id"]
    assert "manage_pharmacy_users" in body["user"]["permissions"]

    headers = {"Authorization": f"Bearer {body['token']}"}
    assert client.get("/api/auth/me", headers=headers).json()["user"]["email"] == seeded["emails"]["admin"]
    assert client.post("/api/auth/logout", headers=headers).json() == {"success": True}
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_change_password(client, seeded, auth_headers):
    headers = auth_headers("pharmacist")
    r = client.post("/api/auth/change-password", headers=headers,
                    json={"currentPassword": "wrong-one", "newPassword": "another-pass-1"})
    assert r.status_code == 400
    r = client.post("/api/auth/change-password", headers=headers,
                    json={"currentPassword": seeded["password"], "newPassword": "another-pass-1"})
    assert r.status_code == 200
    login = client.post("/api/auth/login",
                        json={"email": seeded["emails"]["pharmacist"], "password": "another-pass-1"})
    assert login.status_code == 200


# ----------------------------- Users & settings -------------------------------
def test_admin_manages_pharmacy_users(client, seeded, auth_headers):
    headers = auth_headers("admin")
    r = client.post("/api/users", headers=headers,
                    json={"email": "new.tech@demo-pharmacy.com", "role": "technician", "firstName": "Nia"})
    assert r.status_code == 201
    created = r.json()
    assert created["user"]["pharmacy_id"] == seeded["pharmacy_id"]
    assert created["user"]["must_change_password"] == 1
    login = client.post("/api/auth/login",
                        json={"email": "new.tech@demo-pharmacy.com", "password": created["temporaryPassword"]})
    assert login.json()["user"]["mustChangePassword"] is True

    users = client.get("/api/users", headers=headers).json()["users"]
    assert len(users) == 4
    assert all(u["pharmacy_id"] == seeded["pharmacy_id"] for u in users)

    r = client.post("/api/users", headers=headers, json={"email": "boss@x.com", "role": "super_admin"})
    assert r.status_code == 403
    r = client.delete(f"/api/users/{seeded['users']['admin']}", headers=headers)
    assert r.status_code == 400
    r = client.delete(f"/api/users/{seeded['users']['technician']}", headers=headers)
    assert r.json()["user"]["is_active"] == 0
    r = client.post("/api/auth/login",
                    json={"email": seeded["emails"]["technician"], "password": seeded["password"]})
    assert r.status_code == 401


def test_pharmacist_cannot_manage_users(client, auth_headers):
    assert client.get("/api/users", headers=auth_headers("pharmacist")).status_code == 403


def test_role_permission_overrides(client, auth_headers):
    tech = auth_headers("technician")
    assert client.get("/api/analytics/dashboard", headers=tech).status_code == 403
    assert client.get("/api/opportunities", headers=tech).status_code == 200

    r = client.patch("/api/pharmacy/settings", headers=auth_headers("admin"),
                     json={"rolePermissions": {"technician": ["view_analytics"]}})
    assert r.status_code == 200
    assert r.json()["settings"]["role_permissions"] == {"technician": ["view_analytics"]}
    assert client.get("/api/analytics/dashboard", headers=tech).status_code == 200
    assert client.get("/api/opportunities", headers=tech).status_code == 403


def test_other_pharmacy_is_off_limits(client, service, seeded, auth_headers):
    other = service.create_pharmacy("Elsewhere Rx")["pharmacy_id"]
    r = client.get(f"/api/opportunities?pharmacyId={other}", headers=auth_headers("admin"))
    assert r.status_code == 403
    r = client.get(f"/api/opportunities?pharmacyId={other}", headers=auth_headers("super_admin"))
    assert r.status_code == 200
    assert r.json()["total"] == 0


# ----------------------------- Patients ---------------------------------------
def test_patients_list_detail_and_med_sync(client, scanned, auth_headers):
    headers = auth_headers("technician")
    listing = client.get("/api/patients", headers=headers).json()
    assert listing["total"] == 6
    smith = client.get("/api/patients?search=smith", headers=headers).json()["patients"]
    assert len(smith) == 1
    assert smith[0]["opportunity_count"] == 2

    detail = client.get(f"/api/patients/{smith[0]['patient_id']}", headers=headers).json()
    assert detail["patient"]["last_name"] == "SMITH"
    assert len(detail["prescriptions"]) == 2
    assert len(detail["opportunities"]) == 2

    url = f"/api/patients/{smith[0]['patient_id']}/med-sync"
    assert client.post(url, headers=headers, json={"syncDate": 29}).status_code == 422
    patient = client.post(url, headers=headers, json={"syncDate": 15}).json()["patient"]
    assert (patient["med_sync_enrolled"], patient["med_sync_date"]) == (1, 15)
    assert client.get("/api/patients/missing", headers=headers).status_code == 404


# ----------------------------- Opportunities ----------------------------------
def test_blocked_opportunities_only_visible_to_super_admin(client, scanned, auth_headers):
    admin = client.get("/api/opportunities", headers=auth_headers("admin")).json()
    assert admin["total"] == 2
    root = client.get("/api/opportunities", headers=auth_headers("super_admin")).json()
    assert root["total"] == 4
    assert root["opportunities"][0]["annual_margin_gain"] == pytest.approx(240.0)


def test_update_opportunity_and_prescriber_block(client, service, scanned, auth_headers):
    statin = opp_for(service, scanned, "STATIN-PRAVA-ROSU")
    meter = opp_for(service, scanned, "DME-METER-STRIPS")
    r = client.patch("/api/pharmacy/settings", headers=auth_headers("admin"), json={"prescriberBlockThreshold": 1})
    assert r.json()["settings"]["prescriber_block_threshold"] == 1

    pharmacist = auth_headers("pharmacist")
    r = client.patch(f"/api/opportunities/{statin}", headers=pharmacist,
                     json={"status": "Submitted", "staffNotes": "Faxed DR ADAMS"})
    assert r.status_code == 200
    body = r.json()
    assert body["opportunity"]["status"] == "Submitted"
    assert body["opportunity"]["actioned_by"] == scanned["users"]["pharmacist"]
    assert body["prescriberWarning"] is None

    for status in ("Submitted", "Approved", "Completed"):
        r = client.patch(f"/api/opportunities/{meter}", headers=pharmacist, json={"status": status})
        assert r.status_code == 409
        assert "DR ADAMS" in r.json()["detail"]
    r = client.post("/api/opportunities/bulk-update", headers=pharmacist,
                    json={"opportunityIds": [meter], "status": "Submitted"})
    assert r.status_code == 409
    assert service.get_opportunity(meter)["status"] == "Not Submitted"

    # already actioned opportunities move freely
    r = client.patch(f"/api/opportunities/{statin}", headers=pharmacist, json={"status": "Approved"})
    assert r.status_code == 200
    r = client.patch(f"/api/opportunities/{meter}", headers=pharmacist, json={"status": "Denied"})
    assert r.status_code == 200

    stats = client.get("/api/opportunities/prescriber-stats/dr adams", headers=pharmacist).json()
    assert stats["uniquePatientsActioned"] == 1
    assert stats["shouldBlock"] is True


def test_prescriber_block_only_counts_current_window(client, service, scanned, auth_headers):
    statin = opp_for(service, scanned, "STATIN-PRAVA-ROSU")
    meter = opp_for(service, scanned, "DME-METER-STRIPS")
    client.patch("/api/pharmacy/settings", headers=auth_headers("admin"),
                 json={"prescriberBlockThreshold": 1, "prescriberWindowDays": 30})
    pharmacist = auth_headers("pharmacist")
    assert client.patch(f"/api/opportunities/{statin}", headers=pharmacist,
                        json={"status": "Submitted"}).status_code == 200
    with service.transaction() as conn:
        conn.execute("UPDATE opportunities SET actioned_at = datetime('now', '-31 day') WHERE opportunity_id = ?",
                     (statin,))

    r = client.post("/api/opportunities/bulk-update", headers=pharmacist,
                    json={"opportunityIds": [meter], "status": "Submitted"})
    assert r.json() == {"updated": 1}
    assert service.get_opportunity(meter)["status"] == "Submitted"


def test_invalid_status_rejected(client, service, scanned, auth_headers):
    statin = opp_for(service, scanned, "STATIN-PRAVA-ROSU")
    r = client.patch(f"/api/opportunities/{statin}", headers=auth_headers("admin"), json={"status": "Done"})
    assert r.status_code == 422


def test_bulk_update_and_stats(client, service, scanned, auth_headers):
    ids = [opp_for(service, scanned, "STATIN-PRAVA-ROSU"), opp_for(service, scanned, "DME-METER-STRIPS")]
    headers = auth_headers("admin")
    r = client.post("/api/opportunities/bulk-update", headers=headers,
                    json={"opportunityIds": ids, "status": "Completed"})
    assert r.json() == {"updated": 2}
    stats = client.get("/api/opportunities/summary/stats", headers=headers).json()
    assert stats["captured_annual_margin"] == pytest.approx(456.0)
    assert stats["active_count"] == 2


def test_delete_opportunity_requires_permission(client, service, scanned, auth_headers):
    statin = opp_for(service, scanned, "STATIN-PRAVA-ROSU")
    assert client.delete(f"/api/opportunities/{statin}", headers=auth_headers("pharmacist")).status_code == 403
    admin = auth_headers("admin")
    assert client.delete(f"/api/opportunities/{statin}", headers=admin).json() == {"success": True}
    assert client.get(f"/api/opportunities/{statin}", headers=admin).status_code == 404


# ----------------------------- Ingestion & scans ------------------------------
def test_upload_with_scan(client, service, seeded, auth_headers, claims_csv):
    csv = claims_csv([
        ("5001", "Nina", "Hart", "1958-08-08", "PRAVASTATIN SODIUM 20MG TAB", "68180-0486-09", 30, 30,
         "2025-01-18", "DR BAKER", "610014", "RXGRP1", "2.00", "0.00", "4.00"),
    ])
    r = client.post(
        "/api/ingest/csv",
        headers=auth_headers("pharmacist"),
        files={"file": ("claims.csv", csv, "text/csv")},
        data={"runScan": "true"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["inserted"] == 1
    assert body["scanQueued"] is True
    assert service.scalar("SELECT COUNT(*) FROM opportunities") == 5
    assert service.scalar("SELECT scan_type FROM scan_runs") == "ingestion"
    log = service.fetch_one("SELECT * FROM ingestion_logs WHERE ingestion_id = ?", (body["ingestionId"],))
    assert log["source_email"] == seeded["emails"]["pharmacist"]
    assert log["filename"] == "claims.csv"


def test_upload_rejects_bad_files(client, auth_headers):
    headers = auth_headers("admin")
    r = client.post("/api/ingest/csv", headers=headers,
                    files={"file": ("bad.csv", b"Patient ID,Drug Name\nP1,X\n", "text/csv")})
    assert r.status_code == 400
    assert r.json()["detail"].startswith("Missing required columns")
    r = client.post("/api/ingest/csv", headers=headers, files={"file": ("empty.csv", b"", "text/csv")})
    assert r.status_code == 400
    assert client.post("/api/ingest/csv", headers=auth_headers("technician"),
                       files={"file": ("x.csv", b"a\n1\n", "text/csv")}).status_code == 403


def test_scan_trigger_roles(client, service, seeded, auth_headers):
    assert client.post("/api/scan/trigger", headers=auth_headers("technician")).status_code == 403
    r = client.post("/api/scan/trigger", headers=auth_headers("pharmacist"))
    assert r.status_code == 202
    assert r.json()["pharmacyIds"] == [seeded["pharmacy_id"]]
    assert service.scalar("SELECT COUNT(*) FROM opportunities") == 4


# ----------------------------- Data quality -----------------------------------
def test_data_quality_review(client, service, scanned, auth_headers):
    assert client.get("/api/data-quality", headers=auth_headers("pharmacist")).status_code == 403
    headers = auth_headers("admin")
    listing = client.get("/api/data-quality", headers=headers).json()
    assert listing["count"] == 5
    stats = client.get("/api/data-quality/stats/summary", headers=headers).json()
    assert stats["total_pending"] == 5
    assert stats["by_type"]["missing_prescriber"] == 3
    assert stats["blocked_margin"] == pytest.approx(342.0)

    linked = next(i for i in listing["issues"] if i["opportunity_id"])
    r = client.patch(f"/api/data-quality/{linked['issue_id']}", headers=headers,
                     json={"status": "resolved", "resolvedValue": "DR GOMEZ"})
    assert r.json()["issue"]["status"] == "resolved"
    assert client.get("/api/opportunities", headers=headers).json()["total"] == 3
    r = client.patch(f"/api/data-quality/{linked['issue_id']}", headers=headers, json={"status": "fixed"})
    assert r.status_code == 422


# ----------------------------- Analytics --------------------------------------
def test_dashboard_and_breakdowns(client, scanned, auth_headers):
    headers = auth_headers("admin")
    dash = client.get("/api/analytics/dashboard", headers=headers).json()
    assert dash["pending_opportunities"] == 4
    assert dash["pending_annual"] == pytest.approx(798.0)
    assert dash["pending_monthly"] == pytest.approx(66.5)
    assert dash["total_patients"] == 6

    by_type = {t["opportunity_type"]: t for t in client.get("/api/analytics/opportunities/by-type",
                                                              headers=headers).json()["byType"]}
    assert by_type["missing_therapy"]["count"] == 2
    assert by_type["therapeutic_interchange"]["total_margin"] == pytest.approx(240.0)

    top = client.get("/api/analytics/top-patients", headers=headers).json()["patients"]
    assert top[0]["last_name"] in ("SMITH", "GARCIA")
    status = client.get("/api/analytics/ingestion-status", headers=headers).json()
    assert status["total_prescriptions"] == 8
    assert status["latest_dispensed_date"] == "2025-01-16"
    gp = client.get("/api/analytics/gp-metrics", headers=headers).json()
    assert gp["pharmacy_wide"]["total_rx_count"] == 8
    for path in ("trends", "performance", "prescriber-stats", "recommended-drug-stats"):
        assert client.get(f"/api/analytics/{path}", headers=headers).status_code == 200


def test_monthly_report_and_export(client, scanned, auth_headers):
    now = datetime.now(timezone.utc)
    query = f"month={now.month}&year={now.year}"
    headers = auth_headers("admin")
    report = client.get(f"/api/analytics/monthly?{query}", headers=headers).json()
    assert report["new_opportunities"] == 4
    assert report["total_value"] == pytest.approx(798.0)

    r = client.get(f"/api/analytics/monthly/export?{query}", headers=headers)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("pharmacy_name,patient_last_name")
    assert len(lines) == 5
    assert client.get(f"/api/analytics/monthly/export?{query}",
                      headers=auth_headers("pharmacist")).status_code == 403
    assert client.get("/api/analytics/monthly?month=13&year=2025", headers=headers).status_code == 422


# ----------------------------- Admin ------------------------------------------
def test_admin_routes_need_super_admin(client, auth_headers):
    assert client.get("/api/admin/triggers", headers=auth_headers("admin")).status_code == 403
    assert client.get("/api/admin/stats", headers=auth_headers("pharmacist")).status_code == 403


def test_admin_pharmacies_and_stats(client, scanned, auth_headers):
    headers = auth_headers("super_admin")
    r = client.post("/api/admin/pharmacies", headers=headers, json={"pharmacyName": "Second Rx", "state": "OK"})
    assert r.status_code == 201
    assert r.json()["pharmacy"]["status"] == "onboarding"
    pharmacies = client.get("/api/admin/pharmacies", headers=headers).json()["pharmacies"]
    assert [p["pharmacy_name"] for p in pharmacies] == ["Demo Pharmacy", "Second Rx"]
    stats = client.get("/api/admin/stats", headers=headers).json()
    assert stats["opportunities"] == 4
    assert stats["last_scan"]["status"] == "completed"


def test_trigger_crud_and_scan(client, seeded, auth_headers):
    headers = auth_headers("super_admin")
    payload = {
        "trigger_code": "ACE-ARB",
        "display_name": "Lisinopril to Losartan",
        "trigger_type": "therapeutic_interchange",
        "category": "RAS",
        "detection_keywords": ["LISINOPRIL"],
        "recommended_drug": "LOSARTAN POTASSIUM 50MG TAB",
        "default_gp_value": 15,
        "bin_values": [{"bin": "610014", "gpValue": 14}],
    }
    r = client.post("/api/admin/triggers", headers=headers, json=payload)
    assert r.status_code == 201
    trigger = r.json()["trigger"]
    assert trigger["bin_values"][0]["gpValue"] == 14
    assert trigger["bin_values"][0]["coverageStatus"] == "works"
    assert client.post("/api/admin/triggers", headers=headers, json=payload).status_code == 400

    tid = trigger["trigger_id"]
    scan = client.post(f"/api/admin/triggers/{tid}/scan", headers=headers).json()
    assert scan["opportunitiesCreated"] == 1

    r = client.put(f"/api/admin/triggers/{tid}", headers=headers, json={"is_enabled": False, "priority": "high"})
    assert r.json()["trigger"]["is_enabled"] is False
    assert r.json()["trigger"]["priority"] == "high"
    listed = {t["trigger_code"]: t for t in client.get("/api/admin/triggers", headers=headers).json()["triggers"]}
    assert listed["ACE-ARB"]["total_opportunities"] == 1

    assert client.delete(f"/api/admin/triggers/{tid}", headers=headers).json() == {"success": True}
    assert client.get(f"/api/admin/triggers/{tid}", headers=headers).status_code == 404


def test_exclude_bin_by_trigger_group(client, service, scanned, auth_headers):
    r = client.post("/api/admin/triggers/exclude-bin", headers=auth_headers("super_admin"),
                    json={"bin": "610014", "trigger_group": "STATIN-PRAVA-ROSU"})
    assert r.status_code == 200
    assert r.json()["removed"] == 1
    r = client.post("/api/admin/triggers/exclude-bin", headers=auth_headers("super_admin"),
                    json={"bin": "610014", "trigger_group": "nothing"})
    assert r.status_code == 404


def test_audit_rules_and_flags(client, seeded, auth_headers):
    headers = auth_headers("super_admin")
    r = client.post("/api/admin/audit-rules", headers=headers, json={
        "ruleCode": "HIGH-GP", "ruleName": "High GP claims", "ruleType": "high_gp_risk", "gpThreshold": 50,
    })
    assert r.status_code == 201
    assert r.json()["rule"]["severity"] == "warning"
    result = client.post("/api/admin/audit-rules/scan-all", headers=headers).json()
    assert result["newFlags"] == 2

    flags = client.get("/api/audit/flags", headers=auth_headers("pharmacist")).json()["flags"]
    assert [f["severity"] for f in flags] == ["critical", "warning"]
    assert {f["patient_last_name"] for f in flags} == {"LEE"}
    assert client.get("/api/audit/flags", headers=auth_headers("technician")).status_code == 403

    rules = client.get("/api/admin/audit-rules", headers=headers).json()["rules"]
    assert {r["rule_code"]: r["total_risks"] for r in rules} == {"HIGH-GP": 1, "OZEMPIC-QTY": 1}


def test_negative_gp_to_approval_queue(client, service, seeded, ccb_claims, auth_headers):
    service.create_trigger({
        "trigger_code": "CCB-AMLO-NIFE",
        "display_name": "Amlodipine to Nifedipine ER",
        "trigger_type": "therapeutic_interchange",
        "category": "CCB",
        "detection_keywords": ["AMLODIPINE"],
        "recommended_drug": "NIFEDIPINE ER 30MG TAB",
    })
    headers = auth_headers("super_admin")
    losers = client.get("/api/admin/negative-gp-losers", headers=headers).json()
    assert losers["count"] == 1
    scan = client.post("/api/admin/scan-negative-gp", headers=headers, json={"minMarginGain": 50}).json()
    assert scan["submittedToQueue"] == 1

    queue = client.get("/api/opportunity-approval", headers=headers).json()
    item = queue["items"][0]
    assert item["current_drug_name"] == "AMLODIPINE BESYLATE 10MG TAB"
    assert client.get(f"/api/opportunity-approval/{item['pending_type_id']}",
                      headers=headers).json()["item"]["status"] == "pending"

    r = client.post(f"/api/opportunity-approval/{item['pending_type_id']}/approve", headers=headers,
                    json={"notes": "formulary checked"})
    assert r.status_code == 200
    assert r.json()["trigger"]["recommended_drug"] == "NIFEDIPINE ER 30MG TAB"
    r = client.post(f"/api/opportunity-approval/{item['pending_type_id']}/reject", headers=headers)
    assert r.status_code == 400
    assert client.get("/api/admin/positive-gp-winners", headers=headers).json()["count"] == 1
    assert client.get("/api/admin/ndc-optimization", headers=headers).json()["count"] == 1


def test_duplicates_and_didnt_work_queue(client, service, scanned, auth_headers):
    headers = auth_headers("super_admin")
    assert client.get("/api/admin/opportunities/duplicates", headers=headers).json()["duplicates"] == []
    preview = client.post("/api/admin/opportunities/deduplicate", headers=headers, json={}).json()
    assert preview["dryRun"] is True
    assert preview["summary"]["opportunitiesRemoved"] == 0

    statin = opp_for(service, scanned, "STATIN-PRAVA-ROSU")
    client.patch(f"/api/opportunities/{statin}", headers=auth_headers("pharmacist"),
                 json={"status": "Didn't Work", "staffNotes": "PA required"})
    queue = client.get("/api/admin/didnt-work-queue", headers=headers).json()
    assert queue["count"] == 1
    assert queue["items"][0]["staff_notes"] == "PA required"
