from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from models import db, Notification, Project, Task
from notifications import (
    create_notification, push_notifications, send_due_soon_reminders, start_due_soon_scheduler,
)


@pytest.fixture
def alice(make_user):
    return make_user()


@pytest.fixture
def alice_headers(alice, authenticator, auth_headers):
    return auth_headers(authenticator.issue_token(alice.id, alice.role)[0])


@pytest.fixture
def inbox(alice, make_user):
    other = make_user(email="bob@example.com", name="Bob")
    created = [
        create_notification(alice.id, "assigned", "Task assigned to you", "first"),
        create_notification(alice.id, "commented", "New comment", "second"),
        create_notification(alice.id, "mentioned", "You were mentioned", "third"),
        create_notification(other.id, "assigned", "Task assigned to you", "not alice"),
    ]
    db.session.commit()
    return created


def test_list_newest_first(client, alice_headers, inbox):
    response = client.get("/notifications", headers=alice_headers)
    data = response.get_json()["data"]

    assert [n["message"] for n in data["notifications"]] == ["third", "second", "first"]
    assert data["pagination"]["total"] == 3


def test_list_filters(client, alice_headers, inbox):
    client.patch(f"/notifications/{inbox[0].id}/read", headers=alice_headers)

    unread = client.get("/notifications?unread_only=true", headers=alice_headers).get_json()["data"]
    assert [n["message"] for n in unread["notifications"]] == ["third", "second"]

    by_type = client.get("/notifications?type=commented", headers=alice_headers).get_json()["data"]
    assert [n["message"] for n in by_type["notifications"]] == ["second"]


def test_unread_count_and_mark_read(client, alice_headers, inbox):
    assert client.get("/notifications/unread-count", headers=alice_headers).get_json()["data"] == {"unread_count": 3}

    response = client.patch(f"/notifications/{inbox[1].id}/read", headers=alice_headers)
    data = response.get_json()["data"]
    assert data["is_read"] is True
    assert data["read_at"] is not None

    assert client.get("/notifications/unread-count", headers=alice_headers).get_json()["data"] == {"unread_count": 2}


def test_read_all_only_touches_own(client, alice_headers, inbox):
    response = client.patch("/notifications/read-all", headers=alice_headers)

    assert response.get_json()["data"] == {"updated": 3}
    db.session.expire_all()
    assert db.session.get(Notification, inbox[3].id).is_read is False


def test_cannot_touch_other_users_notification(client, alice_headers, inbox):
    foreign = inbox[3].id

    assert client.patch(f"/notifications/{foreign}/read", headers=alice_headers).status_code == 404
    assert client.delete(f"/notifications/{foreign}", headers=alice_headers).status_code == 404


def test_delete(client, alice_headers, inbox):
    response = client.delete(f"/notifications/{inbox[0].id}", headers=alice_headers)

    assert response.status_code == 200
    assert Notification.query.filter_by(user_id=inbox[0].user_id).count() == 2


def test_unknown_type_is_rejected(alice):
    with pytest.raises(ValueError):
        create_notification(alice.id, "weekly-digest", "t", "m")


def test_push_goes_to_user_room(alice, authenticator, socket_client, events):
    client = socket_client(authenticator.issue_token(alice.id, alice.role)[0])
    notification = create_notification(alice.id, "due-soon", "Task due soon", "tomorrow")
    db.session.commit()

    push_notifications([notification])

    received = events(client, "notification")
    assert len(received) == 1
    assert received[0]["notification"]["id"] == notification.id
    assert received[0]["notification"]["type"] == "due-soon"
    assert "timestamp" in received[0]


# ============================================
# 到期提醒
# ============================================

NOW = datetime(2030, 5, 1, 9, 0)


@pytest.fixture
def board(alice):
    project = Project(name="Board", owner_id=alice.id)
    db.session.add(project)
    db.session.commit()
    return project


def _task(board, alice, title, due_in, status="todo", assignee=True):
    task = Task(title=title, project_id=board.id, created_by=alice.id, status=status,
                assigned_to=alice.id if assignee else None,
                due_date=NOW + due_in if due_in is not None else None)
    db.session.add(task)
    db.session.commit()
    return task



def test_due_soon_reminders_pick_open_assigned_tasks(alice, board):
    due = _task(board, alice, "Ship it", timedelta(hours=3))
    _task(board, alice, "Already done", timedelta(hours=3), status="done")
    _task(board, alice, "Nobody", timedelta(hours=3), assignee=False)
    _task(board, alice, "Next week", timedelta(days=7))
    _task(board, alice, "Overdue", timedelta(hours=-1))
    _task(board, alice, "No date", None)

    sent = send_due_soon_reminders(timedelta(hours=24), now=NOW)

    assert [(n.user_id, n.related_task_id, n.type) for n in sent] == [(alice.id, due.id, "due-soon")]
    assert "Ship it" in sent[0].message


def test_due_soon_reminder_sent_once(alice, board):
    _task(board, alice, "Ship it", timedelta(hours=3))

    assert len(send_due_soon_reminders(timedelta(hours=24), now=NOW)) == 1
    assert send_due_soon_reminders(timedelta(hours=24), now=NOW) == []
    assert Notification.query.filter_by(type="due-soon").count() == 1


def test_due_soon_reminder_is_pushed(alice, board, authenticator, socket_client, events):
    client = socket_client(authenticator.issue_token(alice.id, alice.role)[0])
    task = _task(board, alice, "Ship it", timedelta(hours=1))

    send_due_soon_reminders(timedelta(hours=24), now=NOW)

    received = events(client, "notification")
    assert [r["notification"]["type"] for r in received] == ["due-soon"]
    assert received[0]["notification"]["related_task_id"] == task.id


def test_due_soon_scheduler_disabled_when_interval_is_zero(app):
    socketio = MagicMock()

    assert start_due_soon_scheduler(app, socketio, 0, timedelta(hours=24)) is None
    socketio.start_background_task.assert_not_called()


def test_due_soon_scheduler_starts_background_task(app):
    socketio = MagicMock()

    start_due_soon_scheduler(app, socketio, 60, timedelta(hours=24))

    socketio.start_background_task.assert_called_once()
