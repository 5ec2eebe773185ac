import pytest

from therxos.database import new_id
from therxos.dedup import deduplicate, find_duplicates, pick_keeper
from therxos.scanner import run_scan
from therxos.service import NotFoundError


@pytest.fixture
def duplicated(service, seeded):
    """Seeded scan plus a second open statin opportunity for SMITH worth $360/yr."""
    pid = seeded["pharmacy_id"]
    run_scan(service, [pid])
    trigger = service.create_trigger({
        "trigger_code": "STATIN-SIMVA-ATORVA",
        "display_name": "Simvastatin to Atorvastatin",
        "trigger_type": "therapeutic_interchange",
        "category": "Statin",
        "detection_keywords": ["SIMVASTATIN"],
        "recommended_drug": "ATORVASTATIN 40MG TAB",
    })
    original = service.fetch_one(
        "SELECT * FROM opportunities WHERE trigger_id = ?", (seeded["triggers"]["STATIN-PRAVA-ROSU"],)
    )
    extra_id = new_id()
    with service.transaction() as conn:
        conn.execute(
            """
            INSERT INTO opportunities (opportunity_id, pharmacy_id, patient_id, trigger_id, opportunity_type,
                recommended_drug_name, potential_margin_gain, annual_margin_gain, prescriber_name)
            VALUES (?, ?, ?, ?, 'therapeutic_interchange', 'ATORVASTATIN 40MG TAB', 30, 360, 'DR ADAMS')
            """,
            (extra_id, pid, original["patient_id"], trigger["trigger_id"]),
        )
    return {"pharmacy_id": pid, "original_id": original["opportunity_id"], "extra_id": extra_id}


def test_pick_keeper_prefers_actioned_entries():
    group = [
        {"status": "Not Submitted", "annual_margin_gain": 500, "potential_margin_gain": 40},
        {"status": "Submitted", "annual_margin_gain": 100, "potential_margin_gain": 8},
        {"status": "Not Submitted", "annual_margin_gain": 0, "potential_margin_gain": 50},
    ]
    assert pick_keeper(group) is group[1]
    assert pick_keeper([group[0], group[2]]) is group[2]


def test_find_duplicates(service, duplicated):
    report = find_duplicates(service, duplicated["pharmacy_id"])
    assert len(report["duplicates"]) == 1
    dup = report["duplicates"][0]
    assert dup["category"] == "Statin"
    assert dup["patient_name"] == "JOHN SMITH"
    assert sorted(dup["values"]) == [240.0, 360.0]
    assert report["summary"] == {
        "patientsAffected": 1,
        "totalDuplicateOpportunities": 1,
        "inflatedMargin": "240.00",
    }


def test_deduplicate_dry_run_then_apply(service, duplicated):
    preview = deduplicate(service, duplicated["pharmacy_id"])
    assert preview["dryRun"] is True
    assert preview["summary"] == {"groupsProcessed": 1, "opportunitiesRemoved": 1, "marginRemoved": 240.0}
    assert preview["results"][0]["keptOpportunityId"] == duplicated["extra_id"]
    assert service.scalar("SELECT COUNT(*) FROM opportunities") == 5

    applied = deduplicate(service, duplicated["pharmacy_id"], dry_run=False)
    assert applied["summary"]["opportunitiesRemoved"] == 1
    assert applied["message"].startswith("Removed 1 duplicate")
    remaining = {r["opportunity_id"] for r in service.fetch_all("SELECT opportunity_id FROM opportunities")}
    assert duplicated["extra_id"] in remaining
    assert duplicated["original_id"] not in remaining
    assert find_duplicates(service)["duplicates"] == []


def test_deduplicate_keeps_worked_opportunity(service, duplicated):
    service.update_opportunity(duplicated["original_id"], status="Submitted")
    result = deduplicate(service, dry_run=False)
    assert result["results"][0]["keptOpportunityId"] == duplicated["original_id"]
    assert service.get_opportunity(duplicated["original_id"])["status"] == "Submitted"
    with pytest.raises(NotFoundError):
        service.get_opportunity(duplicated["extra_id"])
