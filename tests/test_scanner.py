import pytest

from therxos.config import Settings
from therxos.ingestion import ingest_csv
from therxos.scanner import (
    exclude_bin,
    find_trigger,
    margin_gain,
    match_trigger,
    resolve_gp_value,
    run_scan,
    scan_coverage,
    scan_negative_gp,
    verify_all_coverage,
)
from therxos.service import NotFoundError

STATIN = {
    "trigger_code": "T",
    "display_name": "Statin",
    "trigger_type": "therapeutic_interchange",
    "category": "Statin",
    "detection_keywords": ["PRAVASTATIN"],
    "recommended_drug": "ROSUVASTATIN CALCIUM 10MG TAB",
    "default_gp_value": 15,
    "bin_values": [
        {"bin": "610014", "group": None, "gpValue": 22, "isExcluded": False, "coverageStatus": "works"},
        {"bin": "610014", "group": "RXGRP1", "gpValue": 30, "isExcluded": False, "coverageStatus": "verified"},
        {"bin": "004336", "group": None, "gpValue": None, "isExcluded": True, "coverageStatus": "excluded"},
    ],
}


def claim(drug, **extra):
    return {"drug_name": drug, "ndc": "00000000001", "insurance_bin": "610014", "insurance_group": "", **extra}


def test_match_trigger_detection_and_exclusions():
    prava = claim("PRAVASTATIN SODIUM 40MG TAB")
    assert match_trigger(STATIN, prava, [prava["drug_name"]])
    assert not match_trigger(STATIN, claim("LISINOPRIL 10MG TAB"), ["LISINOPRIL 10MG TAB"])
    # already on the recommended drug
    assert not match_trigger(STATIN, prava, [prava["drug_name"], "ROSUVASTATIN CALCIUM 5MG TAB"])
    assert not match_trigger({**STATIN, "exclude_keywords": ["SODIUM"]}, prava, [prava["drug_name"]])
    assert not match_trigger({**STATIN, "bin_exclusions": ["610014"]}, prava, [prava["drug_name"]])
    assert not match_trigger({**STATIN, "bin_inclusions": ["004336"]}, prava, [prava["drug_name"]])


def test_match_trigger_if_has_and_all_mode():
    trigger = {
        "trigger_type": "combo_therapy",
        "detection_keywords": ["METFORMIN", "ER"],
        "keyword_match_mode": "all",
        "if_has_keywords": ["LISINOPRIL"],
        "recommended_drug": "JARDIANCE 10MG TAB",
    }
    drugs = ["METFORMIN ER 500MG TAB", "LISINOPRIL 10MG TAB"]
    assert match_trigger(trigger, claim(drugs[0]), drugs)
    assert not match_trigger(trigger, claim("METFORMIN HCL 500MG TAB"), ["METFORMIN HCL 500MG TAB", drugs[1]])
    assert not match_trigger(trigger, claim(drugs[0]), drugs[:1])


def test_ndc_optimization_skips_claims_already_on_recommended_ndc():
    trigger = {"trigger_type": "ndc_optimization", "detection_keywords": ["METFORMIN ER"],
               "recommended_ndc": "00093-7268-01"}
    assert match_trigger(trigger, claim("METFORMIN ER 500MG TAB", ndc="00378718501"), ["METFORMIN ER 500MG TAB"])
    assert not match_trigger(trigger, claim("METFORMIN ER 500MG TAB", ndc="00093726801"), ["METFORMIN ER 500MG TAB"])


def test_resolve_gp_value_prefers_group_then_bin_then_default():
    assert resolve_gp_value(STATIN, "610014", "RXGRP1") == 30
    assert resolve_gp_value(STATIN, "610014", "OTHER") == 22
    assert resolve_gp_value(STATIN, "4336", None) is None
    assert resolve_gp_value(STATIN, "999999", None) == 15
    assert resolve_gp_value({**STATIN, "default_gp_value": None}, "999999", None) is None


def test_margin_gain():
    assert margin_gain(STATIN, 22, 2.0) == 20
    assert margin_gain(STATIN, 22, -4.0) == 22
    assert margin_gain({"trigger_type": "missing_therapy"}, 18, 9.0) == 18


def test_seeded_scan_creates_expected_opportunities(service, seeded):
    pid = seeded["pharmacy_id"]
    result = run_scan(service, [pid])
    assert result["opportunitiesCreated"] == 4
    detail = result["results"][0]
    assert detail["byTrigger"] == {"DME-METER-STRIPS": 2, "STATIN-PRAVA-ROSU": 1, "NDC-METFORMIN-ER": 1}
    assert detail["skippedNoValue"] == 1

    statin = service.fetch_one(
        "SELECT * FROM opportunities WHERE trigger_id = ?", (seeded["triggers"]["STATIN-PRAVA-ROSU"],)
    )
    assert statin["potential_margin_gain"] == pytest.approx(20.0)
    assert statin["annual_margin_gain"] == pytest.approx(240.0)
    assert statin["prescriber_name"] == "DR ADAMS"
    ndc_opp = service.fetch_one(
        "SELECT * FROM opportunities WHERE trigger_id = ?", (seeded["triggers"]["NDC-METFORMIN-ER"],)
    )
    assert ndc_opp["potential_margin_gain"] == pytest.approx(10.5)

    run = service.fetch_one("SELECT * FROM scan_runs WHERE scan_id = ?", (result["scanId"],))
    assert run["status"] == "completed"
    assert run["opportunities_created"] == 4


def test_rescan_creates_nothing_new(service, seeded):
    run_scan(service, [seeded["pharmacy_id"]])
    again = run_scan(service, [seeded["pharmacy_id"]])
    assert again["opportunitiesCreated"] == 0
    assert service.scalar("SELECT COUNT(*) FROM opportunities") == 4


def test_didnt_work_is_not_recreated(service, seeded):
    pid = seeded["pharmacy_id"]
    run_scan(service, [pid])
    opp_id = service.scalar(
        "SELECT opportunity_id FROM opportunities WHERE trigger_id = ?", (seeded["triggers"]["STATIN-PRAVA-ROSU"],)
    )
    service.update_opportunity(opp_id, status="Didn't Work", staff_notes="Plan rejected")
    assert run_scan(service, [pid])["opportunitiesCreated"] == 0
    assert service.get_opportunity(opp_id)["status"] == "Didn't Work"


def test_missing_prescriber_holds_opportunity_back(service, seeded):
    pid = seeded["pharmacy_id"]
    run_scan(service, [pid])
    visible = service.list_opportunities(pid)
    assert visible["total"] == 2
    assert {o["patient_last_name"] for o in visible["opportunities"]} == {"SMITH"}
    assert service.list_opportunities(pid, include_blocked=True)["total"] == 4
    issues = service.list_data_quality(pid, issue_type="missing_prescriber")
    assert sum(1 for i in issues if i["opportunity_id"]) == 2


def test_resolving_prescriber_issue_releases_opportunity(service, seeded):
    pid = seeded["pharmacy_id"]
    run_scan(service, [pid])
    for issue in service.list_data_quality(pid, issue_type="missing_prescriber"):
        if issue["opportunity_id"]:
            service.update_data_quality_issue(issue["issue_id"], "resolved", resolved_value="DR GOMEZ")
    listing = service.list_opportunities(pid)
    assert listing["total"] == 4
    garcia = [o for o in listing["opportunities"] if o["patient_last_name"] == "GARCIA"]
    assert {o["prescriber_name"] for o in garcia} == {"DR GOMEZ"}


def test_min_margin_setting_filters_low_value(service, seeded):
    result = run_scan(service, [seeded["pharmacy_id"]], settings=Settings(scan_min_margin=25))
    assert result["opportunitiesCreated"] == 2
    assert result["results"][0]["skippedLowMargin"] == 2


def test_coverage_scan_learns_bin_values(service, seeded, claims_csv):
    pid = seeded["pharmacy_id"]
    ingest_csv(service, pid, claims_csv([
        ("3001", "Ron", "Park", "1945-02-02", "ROSUVASTATIN CALCIUM 10MG TAB", "00591-3747-30", 30, 30,
         "2025-01-20", "DR ADAMS", "610014", "RXGRP1", "2.00", "0.00", "24.00"),
        ("3002", "Sue", "Park", "1947-04-04", "ROSUVASTATIN CALCIUM 10MG TAB", "00591-3747-30", 30, 30,
         "2025-01-21", "DR ADAMS", "610014", "RXGRP1", "2.00", "0.00", "24.00"),
        ("3003", "Val", "Ross", "1951-06-06", "ROSUVASTATIN CALCIUM 10MG TAB", "00591-3747-30", 30, 30,
         "2025-01-22", "DR ADAMS", "015581", "X1", "2.00", "1.00", "5.00"),
    ]))
    tid = seeded["triggers"]["STATIN-PRAVA-ROSU"]
    result = scan_coverage(service, tid)
    assert result["prescriptionCount"] == 3
    assert result["binCount"] == 2
    assert result["verifiedCount"] == 1
    top, low = result["binValues"]
    assert (top["bin"], top["group"], top["gpValue"], top["coverageStatus"]) == ("610014", "RXGRP1", 22.0, "verified")
    assert top["claimCount"] == 2
    assert low["coverageStatus"] == "below_margin"

    stored = {(b["bin"], b["group"]): b for b in service.get_trigger(tid)["bin_values"]}
    assert stored[("610014", "RXGRP1")]["coverageStatus"] == "verified"
    assert stored[("610014", "RXGRP1")]["verifiedClaimCount"] == 2
    assert ("015581", "X1") not in stored
    assert stored[("004336", None)]["isExcluded"]


def test_verify_all_coverage_reports_triggers_without_claims(service, seeded):
    report = verify_all_coverage(service)
    assert report["summary"]["totalTriggers"] == 3
    assert report["summary"]["triggersWithNoMatches"] + report["summary"]["triggersWithMatches"] == 3
    assert all(n["reason"] for n in report["noMatches"])


def test_exclude_bin_removes_open_opportunities(service, seeded):
    pid = seeded["pharmacy_id"]
    tid = seeded["triggers"]["STATIN-PRAVA-ROSU"]
    run_scan(service, [pid])
    result = exclude_bin(service, tid, "610014")
    assert result["removed"] == 1
    assert run_scan(service, [pid])["opportunitiesCreated"] == 0
    assert service.scalar("SELECT COUNT(*) FROM opportunities WHERE trigger_id = ?", (tid,)) == 0
    with pytest.raises(ValueError):
        exclude_bin(service, tid, "")


def test_find_trigger(service, seeded):
    tid = seeded["triggers"]["STATIN-PRAVA-ROSU"]
    assert find_trigger(service, trigger_id=tid)["trigger_id"] == tid
    assert find_trigger(service, trigger_group="STATIN-PRAVA-ROSU")["trigger_id"] == tid
    assert find_trigger(service, trigger_group="Pravastatin to Rosuvastatin")["trigger_id"] == tid
    with pytest.raises(NotFoundError):
        find_trigger(service, trigger_group="nope")


def test_negative_gp_scan_queues_alternative_and_approval_creates_trigger(service, ccb_claims):
    service.create_trigger({
        "trigger_code": "CCB-AMLO-NIFE",
        "display_name": "Amlodipine to Nifedipine ER",
        "trigger_type": "therapeutic_interchange",
        "category": "CCB",
        "detection_keywords": ["AMLODIPINE"],
        "recommended_drug": "NIFEDIPINE ER 30MG TAB",
        "default_gp_value": 10,
    })
    result = scan_negative_gp(service)
    assert result["losersFound"] == 1
    assert result["submittedToQueue"] == 1
    detail = result["details"][0]
    assert detail["recommendedDrug"] == "NIFEDIPINE ER 30MG TAB"
    assert detail["estimatedAnnualGainPerPatient"] == pytest.approx(192.0)

    queue = service.list_pending_types()
    assert queue["counts"] == {"pending": 1}
    item = queue["items"][0]
    assert item["affected_pharmacies"] == [ccb_claims]
    assert item["affected_pharmacy_names"] == ["Test Pharmacy"]

    approved = service.approve_pending_type(item["pending_type_id"], user_id=None, notes="ok")
    assert approved["pendingType"]["status"] == "approved"
    trigger = approved["trigger"]
    assert trigger["category"] == "CCB"
    assert trigger["detection_keywords"] == ["AMLODIPINE"]
    assert trigger["bin_values"][0]["gpValue"] == pytest.approx(12.0)
    with pytest.raises(ValueError):
        service.approve_pending_type(item["pending_type_id"], user_id=None)

    assert scan_negative_gp(service)["skippedExisting"] == 1


def test_failed_approval_leaves_no_trigger_and_item_pending(service, ccb_claims):
    service.create_trigger({
        "trigger_code": "CCB-AMLO-NIFE",
        "display_name": "Amlodipine to Nifedipine ER",
        "trigger_type": "therapeutic_interchange",
        "category": "CCB",
        "detection_keywords": ["AMLODIPINE"],
        "recommended_drug": "NIFEDIPINE ER 30MG TAB",
        "default_gp_value": 10,
    })
    scan_negative_gp(service)
    item = service.list_pending_types()["items"][0]
    triggers_before = service.scalar("SELECT COUNT(*) FROM triggers")

    with pytest.raises(ValueError, match="already exists"):
        service.approve_pending_type(item["pending_type_id"], user_id=None,
                                     trigger_overrides={"trigger_code": "CCB-AMLO-NIFE"})
    assert service.scalar("SELECT COUNT(*) FROM triggers") == triggers_before
    assert service.get_pending_type(item["pending_type_id"])["status"] == "pending"

    approved = service.approve_pending_type(item["pending_type_id"], user_id=None)
    assert approved["pendingType"]["created_trigger_id"] == approved["trigger"]["trigger_id"]
    assert service.scalar("SELECT COUNT(*) FROM triggers") == triggers_before + 1
