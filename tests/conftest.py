import os

os.environ.setdefault("THERXOS_NIGHTLY_SCAN_ENABLED", "false")
os.environ.setdefault("THERXOS_JWT_SECRET", "test-secret")
os.environ.setdefault("THERXOS_LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from therxos.seed import seed_demo  # noqa: E402
from therxos.service import TheRxService, get_service  # noqa: E402

CLAIM_HEADER = (
    "Rx Number,First Name,Last Name,DOB,Drug Name,NDC,Qty,Days Supply,Date Filled,"
    "Prescriber,BIN,Group,Acq Cost,Patient Pay,Insurance Paid"
)


@pytest.fixture
def service(tmp_path):
    svc = TheRxService(str(tmp_path / "therxos-test.db"))
    yield svc
    svc.close()


@pytest.fixture
def seeded(service):
    return seed_demo(service)


@pytest.fixture
def pharmacy_id(service):
    return service.create_pharmacy("Test Pharmacy", state="TX")["pharmacy_id"]


@pytest.fixture
def claims_csv():
    """Build a claims export from tuples in CLAIM_HEADER order."""

    def build(rows):
        lines = [CLAIM_HEADER]
        for row in rows:
            lines.append(",".join("" if v is None else str(v) for v in row))
        return ("\n".join(lines) + "\n").encode("utf-8")

    return build


@pytest.fixture
def client(service):
    from therxos.api import app

    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client, seeded):
    """Log a demo user in by role and return bearer headers."""

    def login(role="admin"):
        r = client.post(
            "/api/auth/login",
            json={"email": seeded["emails"][role], "password": seeded["password"]},
        )
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['token']}"}

    return login


AMLODIPINE = "AMLODIPINE BESYLATE 10MG TAB"


@pytest.fixture
def ccb_claims(service, pharmacy_id, claims_csv):
    """Three patients losing $4 per amlodipine fill and earning $12 on nifedipine ER,
    plus three more on a better-paying amlodipine NDC, all on BIN 610014 / G1."""
    from therxos.ingestion import ingest_csv

    rows = []
    for i, name in enumerate(["ADAMS", "BAKER", "CLARK"]):
        rows.append((f"A{i}", "Pat", name, "1950-01-01", AMLODIPINE, "00093-7167-01", 30, 30,
                     f"2025-02-0{i + 1}", "DR LOPEZ", "610014", "G1", "5.00", "0.00", "1.00"))
        rows.append((f"N{i}", "Pat", name, "1950-01-01", "NIFEDIPINE ER 30MG TAB", "00093-1020-01", 30, 30,
                     f"2025-02-0{i + 1}", "DR LOPEZ", "610014", "G1", "3.00", "0.00", "15.00"))
    for i, name in enumerate(["DAVIS", "EVANS", "FORD"]):
        rows.append((f"B{i}", "Pat", name, "1960-01-01", "AMLODIPINE 10MG TAB", "68180-0720-01", 30, 30,
                     f"2025-02-1{i}", "DR LOPEZ", "610014", "G1", "1.00", "0.00", "5.00"))
    ingest_csv(service, pharmacy_id, claims_csv(rows))
    return pharmacy_id
