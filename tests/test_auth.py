from conftest import register


def test_register_and_login(client):
    headers = register(client, email="ana@example.com", name="Ana")
    res = client.get("/auth/me", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"]["email"] == "ana@example.com"
    assert body["data"]["role"] == "user"
    assert "hashed_password" not in body["data"]


def test_register_duplicate_email_conflicts(client):
    register(client, email="dup@example.com")
    res = client.post("/auth/register", json={"name": "Again", "email": "dup@example.com", "password": "secret123"})
    assert res.status_code == 409
    assert res.json() == {"success": False, "message": "User with this email already exists"}


def test_login_wrong_password(client):
    register(client, email="ana@example.com")
    res = client.post("/auth/login", json={"email": "ana@example.com", "password": "nope-nope"})
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_login_sets_cookie_that_authenticates(client):
    register(client, email="cookie@example.com")
    assert client.cookies.get("token")
    res = client.get("/auth/me")
    assert res.status_code == 200
    assert res.json()["data"]["email"] == "cookie@example.com"


def test_missing_and_bad_tokens(client):
    assert client.get("/clients").status_code == 401
    res = client.get("/clients", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid or expired token"


def test_change_password(client, auth):
    res = client.put("/auth/password", json={"current_password": "wrong", "new_password": "another1"},
                     headers=auth)
    assert res.status_code == 400
    res = client.put("/auth/password", json={"current_password": "secret123", "new_password": "another1"},
                     headers=auth)
    assert res.status_code == 200
    res = client.post("/auth/login", json={"email": "owner@example.com", "password": "another1"})
    assert res.status_code == 200


def test_admin_routes_require_admin(client, db, auth):
    assert client.get("/admin/users", headers=auth).status_code == 403
    db["user"].update_one({"email": "owner@example.com"}, {"$set": {"role": "admin"}})
    res = client.get("/admin/users", headers=auth)
    assert res.status_code == 200
    users = res.json()["data"]
    assert [u["email"] for u in users] == ["owner@example.com"]
    assert "hashed_password" not in users[0]


def test_validation_errors_use_envelope(client):
    res = client.post("/auth/register", json={"name": "X", "email": "not-an-email", "password": "secret123"})
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["message"].startswith("email")


def test_unconfigured_database_is_unavailable(client):
    from database import get_db
    from main import app

    del app.dependency_overrides[get_db]
    res = client.post("/auth/login", json={"email": "a@example.com", "password": "whatever"})
    assert res.status_code == 503
    assert res.json()["message"] == "Database not configured"


def test_health(client):
    assert client.get("/").json() == {"message": "ERP API running"}
    assert client.get("/test").json() == {
        "backend": "running", "database": "not configured", "database_name": None, "collections": [],
    }
