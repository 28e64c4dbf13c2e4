from datetime import timedelta

from security import create_access_token, get_password_hash, verify_password
from tests.conftest import API, auth, missing_id


def test_password_hashes_are_salted():
    first = get_password_hash("password123")
    second = get_password_hash("password123")
    assert first != second
    assert verify_password("password123", first)
    assert not verify_password("password124", first)
    assert not verify_password("password123", "")


def test_missing_token_is_rejected(client):
    res = client.get(f"{API}/users")
    assert res.status_code == 401
    assert res.json() == {"success": False, "message": "Authentication required"}


def test_garbage_and_expired_tokens_are_rejected(client, make_user):
    admin = make_user(role="admin")
    res = client.get(f"{API}/users", headers={"Authorization": "Bearer not.a.token"})
    assert res.status_code == 401

    expired = create_access_token({"userId": str(admin["_id"]), "email": admin["email"], "role": "admin"},
                                  expires_delta=timedelta(minutes=-1))
    res = client.get(f"{API}/users", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 401


def test_token_for_deleted_user_is_rejected(client, mongo, make_user):
    admin = make_user(role="admin")
    headers = auth(admin)
    mongo["user"].delete_one({"_id": admin["_id"]})
    assert client.get(f"{API}/users", headers=headers).status_code == 401


def test_role_gate_is_distinct_from_authentication(client, make_user):
    seller = make_user(role="seller")
    res = client.get(f"{API}/users", headers=auth(seller))
    assert res.status_code == 403
    assert res.json()["message"] == "Access denied. Admin privileges required"


def test_admin_user_management(client, mongo, make_user):
    admin = make_user(role="admin")
    user = make_user(state="Oyo")

    res = client.get(f"{API}/users", headers=auth(admin), params={"state": "Oyo"})
    assert res.status_code == 200
    body = res.json()
    assert body["totalUsers"] == 1
    assert body["users"][0]["id"] == str(user["_id"])
    assert "passwordHash" not in body["users"][0]
    assert "otp" not in body["users"][0]

    assert client.get(f"{API}/users/{user['_id']}", headers=auth(admin)).status_code == 200
    assert client.get(f"{API}/users/{missing_id()}", headers=auth(admin)).status_code == 404

    res = client.put(f"{API}/users/{user['_id']}", headers=auth(admin),
                     json={"role": "seller", "marketLocation": "Oja Oba", "description": "Spices",
                           "localGovernmentArea": "Ibadan North"})
    assert res.status_code == 200
    assert res.json()["user"]["role"] == "seller"

    assert client.delete(f"{API}/users/{user['_id']}", headers=auth(admin)).status_code == 200
    assert client.delete(f"{API}/users/{user['_id']}", headers=auth(admin)).status_code == 404


def test_admin_creates_verified_account(client, mongo, make_user):
    admin = make_user(role="admin")
    res = client.post(f"{API}/users", headers=auth(admin), json={
        "name": "Tunde", "email": "tunde@ekoseller.ng", "password": "password123", "phone": "08134567890",
        "role": "admin", "state": "Lagos", "country": "Nigeria",
    })
    assert res.status_code == 201
    assert res.json()["user"]["isVerified"] is True
    assert mongo["user"].find_one({"email": "tunde@ekoseller.ng"})["role"] == "admin"


def test_public_seller_listing_filters(client, make_user):
    make_user(role="seller", state="Lagos")
    make_user(role="seller", state="Kano")
    make_user(role="user", state="Kano")

    res = client.get(f"{API}/users/sellers", params={"state": "Kano"})
    assert res.status_code == 200
    body = res.json()
    assert body["totalSellers"] == 1
    seller = body["sellers"][0]
    assert seller["state"] == "Kano"
    assert "passwordHash" not in seller
