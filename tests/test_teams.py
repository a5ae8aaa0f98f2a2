from datetime import datetime, timedelta

import pytest

from models import db, Project, TeamInvite, TeamMember


@pytest.fixture
def crew(make_user, authenticator, auth_headers):
    """Olga owns teams, Ada and Max are other users."""
    users = {
        "olga": make_user(email="olga@example.com", name="Olga"),
        "ada": make_user(email="ada@example.com", name="Ada"),
        "max": make_user(email="max@example.com", name="Max"),
    }
    return {
        "ids": {name: u.id for name, u in users.items()},
        "headers": {name: auth_headers(authenticator.issue_token(u.id, u.role)[0])
                    for name, u in users.items()},
    }


def _create_team(client, crew, owner="olga", **fields):
    body = {"name": "Platform"}
    body.update(fields)
    response = client.post("/teams", json=body, headers=crew["headers"][owner])
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]


def test_create_and_list_teams(client, crew):
    team = _create_team(client, crew, description="Infra folks")

    assert team["owner"]["id"] == crew["ids"]["olga"]
    assert [(m["id"], m["role"]) for m in team["members"]] == [(crew["ids"]["olga"], "owner")]
    assert team["is_public"] is False

    mine = client.get("/teams", headers=crew["headers"]["olga"]).get_json()["data"]
    assert [(t["id"], t["my_role"]) for t in mine["teams"]] == [(team["id"], "owner")]
    assert client.get("/teams", headers=crew["headers"]["ada"]).get_json()["data"]["teams"] == []


def test_create_team_requires_name(client, crew):
    response = client.post("/teams", json={"description": "no name"}, headers=crew["headers"]["olga"])

    assert response.status_code == 400
    assert "name" in response.get_json()["errors"]


def test_public_listing_needs_no_login(client, crew):
    _create_team(client, crew, name="Open", is_public=True)
    _create_team(client, crew, name="Closed")

    response = client.get("/teams/public")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert [t["name"] for t in data["teams"]] == ["Open"]
    assert data["pagination"]["total"] == 1
    assert "invite_code" not in data["teams"][0]


def test_other_team_routes_need_login(client):
    assert client.get("/teams").status_code == 401
    assert client.post("/teams/join", json={"invite_code": "abc"}).status_code == 401


def test_private_team_hidden_from_outsiders(client, crew):
    private = _create_team(client, crew, name="Closed")
    public = _create_team(client, crew, name="Open", is_public=True)

    assert client.get(f"/teams/{private['id']}", headers=crew["headers"]["ada"]).status_code == 403
    response = client.get(f"/teams/{public['id']}", headers=crew["headers"]["ada"])
    assert response.status_code == 200
    assert "my_role" not in response.get_json()["data"]
    assert client.get("/teams/999", headers=crew["headers"]["ada"]).status_code == 404


def test_only_owner_updates_and_deletes(client, crew):
    team = _create_team(client, crew)
    url = f"/teams/{team['id']}"

    assert client.patch(url, json={"name": "X"}, headers=crew["headers"]["ada"]).status_code == 403
    response = client.patch(url, json={"name": "Core", "is_public": True}, headers=crew["headers"]["olga"])
    assert response.get_json()["data"]["name"] == "Core"
    assert response.get_json()["data"]["is_public"] is True

    assert client.delete(url, headers=crew["headers"]["ada"]).status_code == 403
    assert client.delete(url, headers=crew["headers"]["olga"]).status_code == 200
    assert client.get(url, headers=crew["headers"]["olga"]).status_code == 404
    assert TeamMember.query.count() == 0


def test_member_management(client, crew):
    team = _create_team(client, crew)
    url = f"/teams/{team['id']}/members"

    response = client.post(url, json={"user_id": crew["ids"]["ada"], "role": "admin"},
                           headers=crew["headers"]["olga"])
    assert response.status_code == 201
    assert response.get_json()["data"]["role"] == "admin"

    # 團隊 admin 也可以管理成員
    assert client.post(url, json={"user_id": crew["ids"]["max"]}, headers=crew["headers"]["ada"]).status_code == 201
    assert client.post(url, json={"user_id": crew["ids"]["max"]}, headers=crew["headers"]["ada"]).status_code == 409
    assert client.post(url, json={"user_id": 999}, headers=crew["headers"]["olga"]).status_code == 404
    assert client.post(url, json={"user_id": crew["ids"]["olga"], "role": "owner"},
                       headers=crew["headers"]["olga"]).status_code == 400

    # 一般成員不能移除別人
    assert client.delete(f"{url}/{crew['ids']['ada']}", headers=crew["headers"]["max"]).status_code == 403
    assert client.delete(f"{url}/{crew['ids']['olga']}", headers=crew["headers"]["ada"]).status_code == 400
    assert client.delete(f"{url}/{crew['ids']['max']}", headers=crew["headers"]["ada"]).status_code == 200
    assert client.delete(f"{url}/{crew['ids']['max']}", headers=crew["headers"]["ada"]).status_code == 404

    members = client.get(f"/teams/{team['id']}", headers=crew["headers"]["ada"]).get_json()["data"]["members"]
    assert {m["id"] for m in members} == {crew["ids"]["olga"], crew["ids"]["ada"]}


def test_invite_and_join(client, crew):
    team = _create_team(client, crew)

    assert client.post(f"/teams/{team['id']}/invite", headers=crew["headers"]["ada"]).status_code == 403
    response = client.post(f"/teams/{team['id']}/invite", headers=crew["headers"]["olga"])
    assert response.status_code == 201
    code = response.get_json()["data"]["invite_code"]
    assert response.get_json()["data"]["expires_at"]

    response = client.post("/teams/join", json={"invite_code": code}, headers=crew["headers"]["ada"])
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["id"] == team["id"]
    assert data["my_role"] == "member"

    assert client.post("/teams/join", json={"invite_code": code},
                       headers=crew["headers"]["ada"]).status_code == 409
    assert client.post("/teams/join", json={"invite_code": "unknown"},
                       headers=crew["headers"]["max"]).status_code == 404
    assert client.post("/teams/join", json={}, headers=crew["headers"]["max"]).status_code == 400


def test_expired_invite_is_rejected(client, crew):
    team = _create_team(client, crew)
    db.session.add(TeamInvite(team_id=team["id"], code="stale-code", created_by=crew["ids"]["olga"],
                              expires_at=datetime.utcnow() - timedelta(minutes=1)))
    db.session.commit()

    response = client.post("/teams/join", json={"invite_code": "stale-code"}, headers=crew["headers"]["ada"])

    assert response.status_code == 400
    assert response.get_json()["message"] == "Invite code has expired"


def test_projects_belong_to_teams(client, crew):
    team = _create_team(client, crew)

    # 不是團隊成員不能把專案放進團隊
    response = client.post("/projects", json={"name": "Side", "team_id": team["id"]},
                           headers=crew["headers"]["ada"])
    assert response.status_code == 403
    assert client.post("/projects", json={"name": "Side", "team_id": 999},
                       headers=crew["headers"]["olga"]).status_code == 404

    project = client.post("/projects", json={"name": "Main", "team_id": team["id"]},
                          headers=crew["headers"]["olga"]).get_json()["data"]
    assert project["team_id"] == team["id"]

    detail = client.get(f"/teams/{team['id']}", headers=crew["headers"]["olga"]).get_json()["data"]
    assert detail["projects"] == [{"id": project["id"], "name": "Main"}]

    # 刪除團隊後專案保留
    client.delete(f"/teams/{team['id']}", headers=crew["headers"]["olga"])
    db.session.expire_all()
    assert db.session.get(Project, project["id"]).team_id is None
