import pytest

from models import db, ProjectMember, Task, User


@pytest.fixture
def admin(make_user):
    return make_user(email="root@example.com", name="Root", role="admin")


@pytest.fixture
def headers_for(authenticator, auth_headers):
    def _headers_for(user):
        return auth_headers(authenticator.issue_token(user.id, user.role)[0])

    return _headers_for


def test_admin_creates_verified_account(client, admin, headers_for, login):
    response = client.post("/users", json={
        "name": "Nina", "email": "Nina@Example.com", "password": "secret-pass"
    }, headers=headers_for(admin))

    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["email"] == "nina@example.com"
    assert data["role"] == "user"
    assert User.query.filter_by(email="nina@example.com").one().is_verified is True
    # 不用驗證信就能登入
    assert login("nina@example.com", "secret-pass")


def test_create_account_rules(client, admin, make_user, headers_for):
    plain = make_user(email="plain@example.com", name="Plain")
    body = {"name": "Dup", "email": "plain@example.com", "password": "secret-pass"}

    assert client.post("/users", json=body, headers=headers_for(admin)).status_code == 409
    assert client.post("/users", json=dict(body, email="new@example.com"),
                       headers=headers_for(plain)).status_code == 403
    assert client.post("/users", json={"name": "X", "email": "x@example.com", "password": "123"},
                       headers=headers_for(admin)).status_code == 400


def test_delete_plain_member(client, admin, make_user, headers_for):
    owner = make_user(email="owner@example.com", name="Owner")
    member = make_user(email="member@example.com", name="Member")
    project_id = client.post("/projects", json={"name": "P"}, headers=headers_for(owner)).get_json()["data"]["id"]
    client.post(f"/projects/{project_id}/members", json={"user_id": member.id, "role": "member"},
                headers=headers_for(owner))
    task = Task(title="t", project_id=project_id, created_by=owner.id, assigned_to=member.id)
    db.session.add(task)
    db.session.commit()
    member_id, task_id = member.id, task.id
    # 被加入專案的活動紀錄是 owner 的, member 本人沒有
    response = client.delete(f"/users/{member_id}", headers=headers_for(admin))

    assert response.status_code == 200
    db.session.expire_all()
    assert db.session.get(User, member_id) is None
    assert ProjectMember.query.filter_by(user_id=member_id).count() == 0
    assert db.session.get(Task, task_id).assigned_to is None


def test_delete_refused_for_owners_and_self(client, admin, make_user, headers_for):
    owner = make_user(email="owner@example.com", name="Owner")
    client.post("/projects", json={"name": "P"}, headers=headers_for(owner))

    response = client.delete(f"/users/{owner.id}", headers=headers_for(admin))
    assert response.status_code == 409
    assert response.get_json()["message"] == "User still owns projects or teams"

    assert client.delete(f"/users/{admin.id}", headers=headers_for(admin)).status_code == 400
    assert client.delete("/users/999", headers=headers_for(admin)).status_code == 404
    assert client.delete(f"/users/{admin.id}", headers=headers_for(owner)).status_code == 403


# ============================================
# 已發出的 token 跟著帳號狀態走
# ============================================

def test_disabled_account_token_stops_working(client, admin, make_user, headers_for):
    user = make_user(email="bob@example.com", name="Bob")
    old_headers = headers_for(user)
    assert client.get("/auth/me", headers=old_headers).status_code == 200

    client.patch(f"/users/{user.id}", json={"is_active": False}, headers=headers_for(admin))

    response = client.get("/auth/me", headers=old_headers)
    assert response.status_code == 403
    assert response.get_json()["message"] == "Account is disabled"


def test_demoted_admin_loses_admin_routes(client, make_user, headers_for):
    boss = make_user(email="boss@example.com", name="Boss", role="admin")
    old_headers = headers_for(boss)
    assert client.get("/users", headers=old_headers).status_code == 200

    boss.role = "user"
    db.session.commit()

    assert client.get("/users", headers=old_headers).status_code == 403


def test_deleted_account_token_is_unauthorized(client, admin, make_user, headers_for):
    user = make_user(email="gone@example.com", name="Gone")
    old_headers = headers_for(user)

    assert client.delete(f"/users/{user.id}", headers=headers_for(admin)).status_code == 200

    response = client.get("/auth/me", headers=old_headers)
    assert response.status_code == 401
    assert response.get_json()["message"] == "User not found"
