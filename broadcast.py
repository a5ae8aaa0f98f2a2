"""
REST 異動後的即時推播

每種事件一個函數,由 handler 在 commit 之後呼叫。
推播只是讓畫面即時更新,資料本身隨時可以從 REST 重新讀取,
所以房間沒人或送出失敗都不重試
"""
from dataclasses import dataclass, field
from datetime import datetime
import logging

from realtime import project_room, task_room, user_room

logger = logging.getLogger(__name__)


def _now_iso():
    return datetime.utcnow().isoformat() + 'Z'


@dataclass
class DomainEvent:
    kind: str
    room_targets: list
    payload: dict
    timestamp: str = field(default_factory=_now_iso)


def dispatch(hub, event):
    """把事件送到每個目標房間,回傳實際送出的房間數"""
    if hub is None:
        return 0

    message = dict(event.payload, timestamp=event.timestamp)
    delivered = 0
    for room in event.room_targets:
        try:
            if hub.emit_to_room(room, event.kind, message):
                delivered += 1
        except Exception as e:
            logger.warning(f"Broadcast {event.kind} to {room} failed: {str(e)}")
    return delivered


# ============================================
# 任務
# ============================================

def emit_task_updated(hub, project_id, task_id, task_data, updated_by):
    return dispatch(hub, DomainEvent('task-updated', [project_room(project_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'task': task_data,
        'updatedBy': updated_by
    }))


def emit_task_status_changed(hub, project_id, task_id, task_data, new_status, updated_by):
    delivered = dispatch(hub, DomainEvent('task-status-changed', [project_room(project_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'task': task_data,
        'newStatus': new_status,
        'updatedBy': updated_by
    }))
    # 任務頁面只需要知道新狀態
    delivered += dispatch(hub, DomainEvent('status-changed', [task_room(task_id)], {
        'taskId': task_id,
        'newStatus': new_status
    }))
    return delivered


def emit_task_assigned(hub, project_id, task_id, task_data, assignee_id, assigned_by):
    delivered = dispatch(hub, DomainEvent('task-assigned', [project_room(project_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'task': task_data,
        'assigneeId': assignee_id,
        'assignedBy': assigned_by
    }))
    delivered += dispatch(hub, DomainEvent('task-assigned-to-you', [user_room(assignee_id)], {
        'taskId': task_id,
        'taskTitle': task_data.get('title'),
        'projectId': project_id,
        'assignedBy': assigned_by
    }))
    return delivered


# ============================================
# 留言 / 表情
# ============================================

def emit_comment_added(hub, project_id, task_id, comment_data, author_id):
    delivered = dispatch(hub, DomainEvent('comment-added', [task_room(task_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'comment': comment_data,
        'authorId': author_id
    }))
    delivered += dispatch(hub, DomainEvent('task-comment-added', [project_room(project_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'commentId': comment_data.get('id'),
        'authorId': author_id
    }))
    return delivered


def emit_comment_updated(hub, project_id, task_id, comment_data):
    return dispatch(hub, DomainEvent('comment-updated', [task_room(task_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'comment': comment_data
    }))


def emit_comment_deleted(hub, project_id, task_id, comment_id):
    return dispatch(hub, DomainEvent('comment-deleted', [task_room(task_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'commentId': comment_id
    }))


def emit_reaction_added(hub, project_id, task_id, comment_id, emoji, user_id):
    return dispatch(hub, DomainEvent('reaction-added', [task_room(task_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'commentId': comment_id,
        'emoji': emoji,
        'userId': user_id
    }))


def emit_reaction_removed(hub, project_id, task_id, comment_id, emoji, user_id):
    return dispatch(hub, DomainEvent('reaction-removed', [task_room(task_id)], {
        'taskId': task_id,
        'projectId': project_id,
        'commentId': comment_id,
        'emoji': emoji,
        'userId': user_id
    }))


# ============================================
# 通知
# ============================================

def emit_notification(hub, user_id, notification_data):
    return dispatch(hub, DomainEvent('notification', [user_room(user_id)], {
        'notification': notification_data
    }))


# ============================================
# 專案
# ============================================

def emit_project_member_joined(hub, project_id, user_id, user_name):
    return dispatch(hub, DomainEvent('member-joined-project', [project_room(project_id)], {
        'projectId': project_id,
        'userId': user_id,
        'userName': user_name
    }))


def emit_project_updated(hub, project_id, project_data):
    return dispatch(hub, DomainEvent('project-updated', [project_room(project_id)], {
        'projectId': project_id,
        'project': project_data
    }))
