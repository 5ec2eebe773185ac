import pytest
from fastapi import HTTPException

from therxos import auth
from therxos.config import Settings
from therxos.passwords import check_password_strength, hash_password, verify_password


def test_password_hash_roundtrip():
    hashed = hash_password("correct horse")
    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)
    assert not verify_password("correct horse", None)
    assert not verify_password("correct horse", "not-a-bcrypt-hash")


def test_password_strength():
    with pytest.raises(ValueError):
        check_password_strength("short")
    check_password_strength("long enough")


def test_token_roundtrip_and_rejection():
    settings = Settings(jwt_secret="unit-secret")
    user = {"user_id": "u1", "role": "pharmacist", "pharmacy_id": "p1"}
    token = auth.create_access_token(user, settings)
    payload = auth.decode_token(token, settings)
    assert (payload["sub"], payload["role"], payload["pharmacy_id"]) == ("u1", "pharmacist", "p1")
    with pytest.raises(HTTPException) as exc:
        auth.decode_token(token, Settings(jwt_secret="other-secret"))
    assert exc.value.status_code == 401


def test_expired_token_rejected():
    settings = Settings(jwt_secret="unit-secret", token_expire_minutes=-1)
    token = auth.create_access_token({"user_id": "u1", "role": "admin"}, settings)
    with pytest.raises(HTTPException):
        auth.decode_token(token, settings)


def test_permissions_for_roles_and_overrides():
    assert auth.permissions_for("super_admin") == set(auth.ALL_PERMISSIONS)
    tech = auth.permissions_for("technician")
    assert auth.SUBMIT_TO_APPROVAL in tech
    assert auth.VIEW_FINANCIAL_DATA not in tech
    overridden = auth.permissions_for(
        "technician", {"technician": [auth.VIEW_ANALYTICS, auth.ACCESS_ALL_PHARMACIES, "made_up"]}
    )
    assert overridden == {auth.VIEW_ANALYTICS}
    assert auth.permissions_for("super_admin", {"super_admin": []}) == set(auth.ALL_PERMISSIONS)


def test_resolve_pharmacy_id():
    admin = {"role": "admin", "pharmacy_id": "p1"}
    assert auth.resolve_pharmacy_id(admin) == "p1"
    assert auth.resolve_pharmacy_id(admin, "p1") == "p1"
    with pytest.raises(PermissionError):
        auth.resolve_pharmacy_id(admin, "p2")
    root = {"role": "super_admin", "pharmacy_id": None}
    assert auth.resolve_pharmacy_id(root) is None
    assert auth.resolve_pharmacy_id(root, "p2") == "p2"


def test_authenticate_and_change_password(service, seeded):
    email = seeded["emails"]["pharmacist"]
    user = service.authenticate(email.upper(), seeded["password"])
    assert user["role"] == "pharmacist"
    assert "password_hash" not in user
    assert user["last_login"]
    assert service.authenticate(email, "wrong-password") is None

    with pytest.raises(ValueError):
        service.change_password(user["user_id"], "wrong-password", "brand-new-pass")
    with pytest.raises(ValueError):
        service.change_password(user["user_id"], seeded["password"], seeded["password"])
    service.change_password(user["user_id"], seeded["password"], "brand-new-pass")
    assert service.authenticate(email, "brand-new-pass")


def test_inactive_user_cannot_log_in(service, seeded):
    uid = seeded["users"]["technician"]
    service.update_user(uid, {"is_active": False})
    assert service.authenticate(seeded["emails"]["technician"], seeded["password"]) is None


def test_user_validation(service, seeded):
    with pytest.raises(ValueError):
        service.create_user("someone@x.com", "long enough", "pharmacist")
    with pytest.raises(ValueError):
        service.create_user(seeded["emails"]["admin"], "long enough", "super_admin")
    with pytest.raises(ValueError):
        service.create_user("new@x.com", "long enough", "owner", pharmacy_id=seeded["pharmacy_id"])
