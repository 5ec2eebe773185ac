import pytest

from therxos.audit import evaluate, parse_sig_daily_units, rule_applies, scan_all, scan_pharmacy


@pytest.mark.parametrize(
    "sig, expected",
    [
        ("TAKE 1 TABLET BY MOUTH TWICE DAILY", 2.0),
        ("take two tablets by mouth three times a day", 6.0),
        ("TAKE 1/2 TABLET DAILY", 0.5),
        ("Take 1 capsule every 6 hours", 4.0),
        ("INJECT 1MG SUBCUTANEOUSLY ONCE WEEKLY", None),
        ("USE AS DIRECTED", None),
        (None, None),
    ],
)
def test_parse_sig_daily_units(sig, expected):
    assert parse_sig_daily_units(sig) == expected


def test_rule_applies_by_keyword_or_ndc_glob():
    claim = {"drug_name": "OZEMPIC 1MG/DOSE PEN", "ndc": "00169-4130-13"}
    assert rule_applies({"drug_keywords": ["ozempic"]}, claim)
    assert rule_applies({"ndc_pattern": "00169%"}, claim)
    assert not rule_applies({"ndc_pattern": "00002*"}, claim)
    assert not rule_applies({"drug_keywords": ["MOUNJARO"]}, claim)
    assert rule_applies({}, claim)


def test_quantity_rules():
    rule = {"rule_type": "quantity_mismatch", "expected_quantity": 3, "quantity_tolerance": 0.1}
    assert evaluate(rule, {"quantity": 3, "days_supply": 28}) is None
    assert "differs from expected 3" in evaluate(rule, {"quantity": 6, "days_supply": 28})
    bounded = {"rule_type": "quantity_mismatch", "min_quantity": 30, "max_quantity": 90}
    assert "below minimum" in evaluate(bounded, {"quantity": 10})
    assert "above maximum" in evaluate(bounded, {"quantity": 120})


def test_days_supply_and_daw_rules():
    ds_rule = {"rule_type": "days_supply_mismatch", "min_days_supply": 28, "max_days_supply": 34}
    assert evaluate(ds_rule, {"quantity": 1, "days_supply": 30}) is None
    assert "above maximum" in evaluate(ds_rule, {"quantity": 1, "days_supply": 90})
    daw = {"rule_type": "daw_violation", "allowed_daw_codes": ["0", "1"], "has_generic_available": True}
    assert evaluate(daw, {"daw_code": "0"}) is None
    assert "DAW code 2" in evaluate(daw, {"daw_code": "2"})
    assert evaluate({**daw, "has_generic_available": False}, {"daw_code": "2"}) is None


def test_sig_quantity_and_high_gp_rules():
    sig_rule = {"rule_type": "sig_quantity_mismatch", "quantity_tolerance": 0.1}
    bid = "TAKE 1 TABLET BY MOUTH TWICE DAILY"
    assert evaluate(sig_rule, {"quantity": 60, "days_supply": 30, "sig": bid}) is None
    assert "does not match sig" in evaluate(sig_rule, {"quantity": 120, "days_supply": 30, "sig": bid})
    assert evaluate(sig_rule, {"quantity": 120, "days_supply": 30, "sig": "USE AS DIRECTED"}) is None
    gp_rule = {"rule_type": "high_gp_risk", "gp_threshold": 50}
    assert evaluate(gp_rule, {"gross_profit": 85.0}).startswith("Gross profit $85.00")
    assert evaluate(gp_rule, {"gross_profit": 12.0}) is None


def test_unknown_rule_type_raises():
    with pytest.raises(ValueError):
        evaluate({"rule_type": "mystery"}, {})


def test_seeded_rule_flags_ozempic_overbill(service, seeded):
    pid = seeded["pharmacy_id"]
    result = scan_pharmacy(service, seeded["audit_rule_id"], pid)
    assert result["newFlags"] == 1
    assert result["risk_count"] == 1
    assert result["patient_count"] == 1
    assert result["total_exposure"] == pytest.approx(935.0)

    flag = service.list_audit_flags(pid)[0]
    assert flag["patient_last_name"] == "LEE"
    assert flag["severity"] == "critical"
    assert flag["gross_profit"] == pytest.approx(85.0)
    assert flag["dispensed_quantity"] == 6

    again = scan_pharmacy(service, seeded["audit_rule_id"], pid)
    assert again["newFlags"] == 0
    assert again["risk_count"] == 1


def test_scan_all_uses_enabled_rules(service, seeded):
    service.create_audit_rule({
        "rule_code": "HIGH-GP",
        "rule_name": "High GP claims",
        "rule_type": "high_gp_risk",
        "gp_threshold": 50,
        "severity": "warning",
        "is_enabled": False,
    })
    result = scan_all(service)
    assert result["rulesScanned"] == 1
    assert result["pharmaciesScanned"] == 1
    assert result["newFlags"] == 1

    rules = {r["rule_code"]: r for r in service.list_audit_rules()}
    assert rules["OZEMPIC-QTY"]["total_risks"] == 1
    assert rules["OZEMPIC-QTY"]["total_exposure"] == pytest.approx(935.0)
    assert rules["HIGH-GP"]["total_risks"] == 0


def test_audit_rule_validation(service):
    with pytest.raises(ValueError):
        service.create_audit_rule({"rule_code": "X", "rule_name": "X", "rule_type": "bogus"})
    with pytest.raises(ValueError):
        service.create_audit_rule({"rule_code": "X", "rule_name": "X", "rule_type": "quantity_mismatch",
                                   "quantity_tolerance": 1.5})
