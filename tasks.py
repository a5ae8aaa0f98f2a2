from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
from datetime import datetime
import logging

from access import EDITOR_ROLES, MANAGER_ROLES, check_project_access, require_project_access, require_task_access
from activity import diff_fields, log_activity
from auth import get_current_identity, get_current_user, require_auth_for_blueprint
from broadcast import emit_task_assigned, emit_task_status_changed, emit_task_updated
from errors import BadRequest, Forbidden, InternalError, NotFound
from models import db, Subtask, Task, TaskTag, User
from notifications import notify_status_changed, notify_task_assigned, push_notifications
from realtime import get_hub
from responses import success_response
from serializers import serialize_task
from validation import get_pagination_args, load_json_body, pagination_meta

tasks_bp = Blueprint('tasks', __name__)
tasks_bp.before_request(require_auth_for_blueprint)
logger = logging.getLogger(__name__)

TASK_STATUSES = ['todo', 'in-progress', 'review', 'done']
TASK_PRIORITIES = ['low', 'medium', 'high', 'critical']

# 這些欄位變更時推播 task-updated; status / assigned_to 有自己的事件
DETAIL_FIELDS = ['title', 'description', 'priority', 'progress', 'due_date']


# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES), load_default='todo')
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES), load_default='medium')
    assigned_to = fields.Int(allow_none=True)
    due_date = fields.DateTime(allow_none=True)
    progress = fields.Int(validate=validate.Range(min=0, max=100), load_default=0)


class UpdateTaskSchema(Schema):
    """更新任務驗證"""
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES))
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES))
    assigned_to = fields.Int(allow_none=True)
    due_date = fields.DateTime(allow_none=True)
    progress = fields.Int(validate=validate.Range(min=0, max=100))


class SubtaskSchema(Schema):
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Subtask title is required'}
    )


class TagSchema(Schema):
    tag = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=50),
        error_messages={'required': 'Tag is required'}
    )


# ============================================
# 輔助函數
# ============================================

def _resolve_assignee(project_id, user_id):
    """指派對象必須存在而且是專案成員"""
    if user_id is None:
        return None

    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('Assignee not found')

    has_access, _, _ = check_project_access(project_id, user_id)
    if not has_access:
        raise BadRequest('Assignee must be a project member')
    return user


def _apply_status(task, new_status):
    task.status = new_status
    task.completed_at = datetime.utcnow() if new_status == 'done' else None


# ============================================
# 建立任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
def create_task(project_id):
    """
    在專案中建立任務 (viewer 不能建立)

    有指派對象時會通知對方並推播 task-assigned
    """
    require_project_access(project_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()
    result = load_json_body(CreateTaskSchema)

    assignee = _resolve_assignee(project_id, result.get('assigned_to'))

    task = Task(
        title=result['title'],
        description=result.get('description'),
        priority=result['priority'],
        progress=result['progress'],
        due_date=result.get('due_date'),
        project_id=project_id,
        assigned_to=assignee.id if assignee else None,
        created_by=current_user.id
    )
    _apply_status(task, result['status'])

    notifications = []
    try:
        db.session.add(task)
        db.session.flush()

        log_activity(project_id, current_user.id, 'task-created',
                     f'Created task "{task.title}"', task_id=task.id)
        if assignee and assignee.id != current_user.id:
            notifications.append(notify_task_assigned(assignee.id, task, current_user))

        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Task creation error: {str(e)}", exc_info=True)
        raise InternalError('Task creation failed due to server error')

    logger.info(f"Task created: {task.title} in project {project_id} by {current_user.email}")

    data = serialize_task(task)
    hub = get_hub()
    emit_task_updated(hub, project_id, task.id, data, current_user.id)
    if assignee:
        emit_task_assigned(hub, project_id, task.id, data, assignee.id, current_user.id)
    push_notifications(notifications)

    return success_response('Task created', data, 201)


# ============================================
# 查詢任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['GET'])
def get_project_tasks(project_id):
    """查詢專案任務,可用 status / priority / assigned_to / tag 篩選"""
    require_project_access(project_id, get_current_identity())
    page, per_page = get_pagination_args()

    query = Task.query.filter_by(project_id=project_id).options(
        joinedload(Task.creator),
        joinedload(Task.assignee)
    )

    status = request.args.get('status')
    if status:
        query = query.filter(Task.status == status)

    priority = request.args.get('priority')
    if priority:
        query = query.filter(Task.priority == priority)

    assigned_to = request.args.get('assigned_to', type=int)
    if assigned_to:
        query = query.filter(Task.assigned_to == assigned_to)

    tag = request.args.get('tag')
    if tag:
        query = query.filter(Task.tags.any(TaskTag.name == tag.strip().lower()))

    paginated = query.order_by(Task.created_at.desc(), Task.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return success_response('Tasks retrieved', {
        'tasks': [serialize_task(t) for t in paginated.items],
        'pagination': pagination_meta(paginated, page, per_page)
    })


@tasks_bp.route('/tasks/<int:task_id>', methods=['GET'])
def get_task(task_id):
    task, _, _ = require_task_access(task_id, get_current_identity())
    return success_response('Task retrieved', serialize_task(task))


# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['PATCH'])
def update_task(task_id):
    """
    更新任務

    依變更內容推播:
    - 狀態改變 -> task-status-changed (專案) + status-changed (任務)
    - 指派改變 -> task-assigned (專案) + task-assigned-to-you (被指派者)
    - 其他欄位 -> task-updated (專案)
    """
    task, _, _ = require_task_access(task_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()
    result = load_json_body(UpdateTaskSchema)

    changes = diff_fields(task, result, DETAIL_FIELDS)
    detail_changed = bool(changes)

    old_status = task.status
    status_changed = 'status' in result and result['status'] != old_status
    if status_changed:
        _apply_status(task, result['status'])

    assignee = None
    assignee_changed = 'assigned_to' in result and result['assigned_to'] != task.assigned_to
    if assignee_changed:
        assignee = _resolve_assignee(task.project_id, result['assigned_to'])
        changes['assigned_to'] = {'from': task.assigned_to, 'to': result['assigned_to']}
        task.assigned_to = result['assigned_to']

    if not (detail_changed or status_changed or assignee_changed):
        return success_response('No changes to update', serialize_task(task))

    notifications = []
    try:
        if detail_changed:
            log_activity(task.project_id, current_user.id, 'task-updated',
                         f'Updated task "{task.title}"', task_id=task.id, changes=changes)
        if status_changed:
            log_activity(task.project_id, current_user.id, 'task-status-changed',
                         f'Changed status from {old_status} to {task.status}', task_id=task.id,
                         changes={'status': {'from': old_status, 'to': task.status}})
            if task.assigned_to and task.assigned_to != current_user.id:
                notifications.append(notify_status_changed(task.assigned_to, task, task.status, current_user))
        if assignee_changed:
            log_activity(task.project_id, current_user.id, 'task-assigned',
                         f'Assigned task to user {task.assigned_to}', task_id=task.id,
                         changes={'assignee': changes['assigned_to']})
            if assignee and assignee.id != current_user.id:
                notifications.append(notify_task_assigned(assignee.id, task, current_user))

        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Task update error: {str(e)}", exc_info=True)
        raise InternalError('Task update failed due to server error')

    logger.info(f"Task {task_id} updated by {current_user.email}")

    data = serialize_task(task)
    hub = get_hub()
    if status_changed:
        emit_task_status_changed(hub, task.project_id, task.id, data, task.status, current_user.id)
    if assignee:
        emit_task_assigned(hub, task.project_id, task.id, data, assignee.id, current_user.id)
    if detail_changed:
        emit_task_updated(hub, task.project_id, task.id, data, current_user.id)
    push_notifications(notifications)

    return success_response('Task updated', data)


# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
def delete_task(task_id):
    """刪除任務 (建立者、owner、lead)"""
    task, _, role = require_task_access(task_id, get_current_identity())
    current_user = get_current_user()

    if task.created_by != current_user.id and role not in MANAGER_ROLES + ('admin',):
        raise Forbidden('Only the task creator or project managers can delete the task')

    project_id, title = task.project_id, task.title
    try:
        db.session.delete(task)
        # 活動日誌的 task_id 沒有 FK, 刪除後紀錄仍保留
        log_activity(project_id, current_user.id, 'task-deleted',
                     f'Deleted task "{title}"', task_id=task_id)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Task deletion error: {str(e)}", exc_info=True)
        raise InternalError('Task deletion failed due to server error')

    logger.info(f"Task deleted: {title} by {current_user.email}")
    return success_response('Task deleted')


# ============================================
# 子任務 / 標籤
# ============================================

def _normalize_tag(value):
    tag = (value or '').strip().lower()
    if not tag or len(tag) > 50:
        raise BadRequest('Tag is required')
    return tag


def _commit_task_change(task, user, description, changes):
    """子任務 / 標籤異動共用: 記活動日誌, commit 後推播 task-updated"""
    try:
        log_activity(task.project_id, user.id, 'task-updated', description,
                     task_id=task.id, changes=changes)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Task update error: {str(e)}", exc_info=True)
        raise InternalError('Task update failed due to server error')

    data = serialize_task(task)
    emit_task_updated(get_hub(), task.project_id, task.id, data, user.id)
    return data


def _get_subtask(task, subtask_id):
    subtask = Subtask.query.filter_by(id=subtask_id, task_id=task.id).first()
    if not subtask:
        raise NotFound('Subtask not found')
    return subtask


@tasks_bp.route('/tasks/<int:task_id>/subtasks', methods=['POST'])
def add_subtask(task_id):
    task, _, _ = require_task_access(task_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()
    result = load_json_body(SubtaskSchema)

    db.session.add(Subtask(task_id=task.id, title=result['title']))
    data = _commit_task_change(task, current_user, f'Added subtask "{result["title"]}"',
                               {'subtasks': {'from': None, 'to': result['title']}})
    return success_response('Subtask added', data, 201)


@tasks_bp.route('/tasks/<int:task_id>/subtasks/<int:subtask_id>/toggle', methods=['PATCH'])
def toggle_subtask(task_id, subtask_id):
    """切換子任務完成狀態"""
    task, _, _ = require_task_access(task_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()
    subtask = _get_subtask(task, subtask_id)

    subtask.completed = not subtask.completed
    subtask.completed_at = datetime.utcnow() if subtask.completed else None

    data = _commit_task_change(task, current_user, f'Toggled subtask "{subtask.title}"',
                               {'subtask': {'id': subtask.id, 'from': not subtask.completed,
                                            'to': subtask.completed}})
    return success_response('Subtask toggled', data)


@tasks_bp.route('/tasks/<int:task_id>/subtasks/<int:subtask_id>', methods=['DELETE'])
def delete_subtask(task_id, subtask_id):
    task, _, _ = require_task_access(task_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()
    subtask = _get_subtask(task, subtask_id)

    title = subtask.title
    db.session.delete(subtask)
    data = _commit_task_change(task, current_user, f'Removed subtask "{title}"',
                               {'subtasks': {'from': title, 'to': None}})
    return success_response('Subtask removed', data)


@tasks_bp.route('/tasks/<int:task_id>/tags', methods=['POST'])
def add_tag(task_id):
    """
    新增標籤

    標籤一律轉小寫; 已存在的標籤不重複新增也不推播
    """
    task, _, _ = require_task_access(task_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()
    tag = _normalize_tag(load_json_body(TagSchema)['tag'])

    if any(t.name == tag for t in task.tags):
        return success_response('Tag added', serialize_task(task))

    db.session.add(TaskTag(task_id=task.id, name=tag))
    data = _commit_task_change(task, current_user, f'Added tag "{tag}"',
                               {'tags': {'from': None, 'to': tag}})
    return success_response('Tag added', data)


@tasks_bp.route('/tasks/<int:task_id>/tags', methods=['DELETE'])
def remove_tag(task_id):
    """要刪除的標籤放在 body 或 ?tag="""
    task, _, _ = require_task_access(task_id, get_current_identity(), EDITOR_ROLES)
    current_user = get_current_user()

    body = request.get_json(silent=True) or {}
    tag = _normalize_tag(body.get('tag') or request.args.get('tag'))

    existing = TaskTag.query.filter_by(task_id=task.id, name=tag).first()
    if not existing:
        return success_response('Tag removed', serialize_task(task))

    db.session.delete(existing)
    data = _commit_task_change(task, current_user, f'Removed tag "{tag}"',
                               {'tags': {'from': tag, 'to': None}})
    return success_response('Tag removed', data)
