from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime
import logging

from auth import get_current_identity, require_auth_for_blueprint
from broadcast import emit_notification
from errors import NotFound
from models import db, Notification, Task
from realtime import get_hub
from responses import success_response
from serializers import serialize_notification
from validation import get_pagination_args, pagination_meta

notifications_bp = Blueprint('notifications', __name__)
notifications_bp.before_request(require_auth_for_blueprint)
logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ['assigned', 'due-soon', 'status-changed', 'mentioned', 'commented', 'project-added']


# ============================================
# 建立 / 推播通知 (供其他模組使用)
# ============================================

def create_notification(user_id, type, title, message, project_id=None, task_id=None, metadata=None):
    """
    建立通知,只加進 session

    呼叫端 commit 之後再用 push_notifications() 推播
    """
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f'Unknown notification type: {type}')

    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        related_project_id=project_id,
        related_task_id=task_id,
        extra=metadata or {}
    )
    db.session.add(notification)
    return notification


def notify_task_assigned(user_id, task, assigned_by):
    return create_notification(
        user_id, 'assigned', 'Task assigned to you',
        f'"{task.title}" was assigned to you by {assigned_by.name}',
        project_id=task.project_id, task_id=task.id,
        metadata={'taskId': task.id, 'assignedBy': assigned_by.id}
    )


def notify_status_changed(user_id, task, new_status, changed_by):
    return create_notification(
        user_id, 'status-changed', 'Task status changed',
        f'"{task.title}" status changed to {new_status} by {changed_by.name}',
        project_id=task.project_id, task_id=task.id,
        metadata={'taskId': task.id, 'newStatus': new_status, 'changedBy': changed_by.id}
    )


def notify_mentioned(user_id, task, mentioned_by):
    return create_notification(
        user_id, 'mentioned', 'You were mentioned',
        f'You were mentioned in "{task.title}" by {mentioned_by.name}',
        project_id=task.project_id, task_id=task.id,
        metadata={'taskId': task.id, 'mentionedBy': mentioned_by.id}
    )


def notify_commented(user_id, task, commented_by):
    return create_notification(
        user_id, 'commented', 'New comment on your task',
        f'{commented_by.name} commented on "{task.title}"',
        project_id=task.project_id, task_id=task.id,
        metadata={'taskId': task.id, 'commentedBy': commented_by.id}
    )


def notify_project_added(user_id, project, added_by):
    return create_notification(
        user_id, 'project-added', 'You were added to a project',
        f'{added_by.name} added you to "{project.name}"',
        project_id=project.id,
        metadata={'projectId': project.id, 'addedBy': added_by.id}
    )


def notify_due_soon(user_id, task):
    return create_notification(
        user_id, 'due-soon', 'Task due soon',
        f'"{task.title}" is due {task.due_date.strftime("%Y-%m-%d %H:%M")} UTC',
        project_id=task.project_id, task_id=task.id,
        metadata={'taskId': task.id, 'dueDate': task.due_date.isoformat()}
    )


def push_notifications(notifications):
    """commit 之後呼叫, 推到每個收件者的 user 房間"""
    hub = get_hub()
    for notification in notifications:
        emit_notification(hub, notification.user_id, serialize_notification(notification))


# ============================================
# 到期提醒
# ============================================

def send_due_soon_reminders(window, now=None):
    """
    提醒被指派者: window 內到期、還沒完成的任務

    同一個任務對同一個人只提醒一次

    Returns:
        list: 這次建立的通知
    """
    now = now or datetime.utcnow()
    tasks = Task.query.filter(
        Task.due_date.isnot(None),
        Task.due_date > now,
        Task.due_date <= now + window,
        Task.status != 'done',
        Task.assigned_to.isnot(None)
    ).order_by(Task.due_date, Task.id).all()

    notifications = []
    for task in tasks:
        reminded = Notification.query.filter_by(
            user_id=task.assigned_to, related_task_id=task.id, type='due-soon'
        ).first()
        if not reminded:
            notifications.append(notify_due_soon(task.assigned_to, task))

    if not notifications:
        return []

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info(f"Sent {len(notifications)} due-soon reminders")
    push_notifications(notifications)
    return notifications


def start_due_soon_scheduler(app, socketio, interval, window):
    """跟黑名單清理一樣用 socketio background task 定期執行"""
    if not interval:
        return None

    def run():
        while True:
            socketio.sleep(interval)
            with app.app_context():
                try:
                    send_due_soon_reminders(window)
                except Exception as e:
                    logger.error(f"Due-soon reminder run failed: {str(e)}", exc_info=True)
                finally:
                    db.session.remove()

    logger.info(f"Due-soon reminder scheduler started (every {interval}s)")
    return socketio.start_background_task(run)


# ============================================
# 1. 取得使用者的通知
# ============================================

@notifications_bp.route('/notifications', methods=['GET'])
def get_notifications():
    """取得當前使用者的通知 (最新的在前)"""
    user_id = get_current_identity().subject_id
    page, per_page = get_pagination_args()

    query = Notification.query.filter_by(user_id=user_id)

    if request.args.get('unread_only', '').lower() in ('1', 'true', 'yes'):
        query = query.filter_by(is_read=False)

    notification_type = request.args.get('type')
    if notification_type:
        query = query.filter_by(type=notification_type)

    paginated = query.order_by(
        Notification.created_at.desc(), Notification.id.desc()
    ).paginate(page=page, per_page=per_page, error_out=False)

    return success_response('Notifications retrieved', {
        'notifications': [serialize_notification(n) for n in paginated.items],
        'pagination': pagination_meta(paginated, page, per_page)
    })


@notifications_bp.route('/notifications/unread-count', methods=['GET'])
def get_unread_count():
    user_id = get_current_identity().subject_id
    count = Notification.query.filter_by(user_id=user_id, is_read=False).count()
    return success_response('Unread count retrieved', {'unread_count': count})


# ============================================
# 2. 標記通知為已讀
# ============================================

def _get_own_notification(notification_id):
    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=get_current_identity().subject_id
    ).first()
    if not notification:
        raise NotFound('Notification not found')
    return notification


@notifications_bp.route('/notifications/<int:notification_id>/read', methods=['PATCH'])
def mark_notification_read(notification_id):
    """標記單個通知為已讀"""
    notification = _get_own_notification(notification_id)

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.utcnow()
        db.session.commit()

    return success_response('Notification marked as read', serialize_notification(notification))


@notifications_bp.route('/notifications/read-all', methods=['PATCH'])
def mark_all_notifications_read():
    """標記所有通知為已讀"""
    user_id = get_current_identity().subject_id

    updated = Notification.query.filter_by(user_id=user_id, is_read=False).update(
        {'is_read': True, 'read_at': datetime.utcnow()},
        synchronize_session=False
    )
    db.session.commit()

    return success_response('All notifications marked as read', {'updated': updated})


# ============================================
# 3. 刪除通知
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>', methods=['DELETE'])
def delete_notification(notification_id):
    notification = _get_own_notification(notification_id)

    db.session.delete(notification)
    db.session.commit()

    return success_response('Notification deleted')
