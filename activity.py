from flask import Blueprint, request
from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload
from datetime import datetime, timedelta
import logging

from access import require_project_access, require_task_access
from auth import get_current_identity, require_auth_for_blueprint
from errors import BadRequest
from models import db, ActivityLog, Project, ProjectMember, User
from responses import success_response
from serializers import serialize_activity, serialize_user_brief
from validation import get_pagination_args, pagination_meta

activity_bp = Blueprint('activity', __name__)
activity_bp.before_request(require_auth_for_blueprint)
logger = logging.getLogger(__name__)

ACTIVITY_ACTIONS = [
    'project-created', 'project-updated', 'member-added', 'member-removed',
    'task-created', 'task-updated', 'task-status-changed', 'task-assigned', 'task-deleted',
    'comment-added', 'comment-deleted',
]

TOP_USERS_LIMIT = 5
TIMELINE_DAYS = 7


# ============================================
# 輔助函數 (供其他模組使用)
# ============================================

def log_activity(project_id, user_id, action, description, task_id=None, changes=None):
    """
    建立活動日誌

    只加進 session, 跟主要的異動一起 commit
    """
    activity = ActivityLog(
        project_id=project_id,
        task_id=task_id,
        user_id=user_id,
        action=action,
        description=description,
        changes=changes or {}
    )
    db.session.add(activity)
    return activity


def diff_fields(obj, updates, fields):
    """
    套用更新並回傳變更內容

    Returns:
        dict: {field: {'from': old, 'to': new}}
    """
    changes = {}
    for field in fields:
        if field not in updates:
            continue
        old_value = getattr(obj, field)
        new_value = updates[field]
        if old_value != new_value:
            changes[field] = {
                'from': old_value.isoformat() if hasattr(old_value, 'isoformat') else old_value,
                'to': new_value.isoformat() if hasattr(new_value, 'isoformat') else new_value
            }
            setattr(obj, field, new_value)
    return changes


def _paginated_activity(query, message):
    page, per_page = get_pagination_args()
    paginated = query.options(joinedload(ActivityLog.user)).order_by(
        ActivityLog.timestamp.desc(), ActivityLog.id.desc()
    ).paginate(page=page, per_page=per_page, error_out=False)

    return success_response(message, {
        'activities': [serialize_activity(a) for a in paginated.items],
        'pagination': pagination_meta(paginated, page, per_page)
    })


# ============================================
# 活動查詢 API
# ============================================

@activity_bp.route('/projects/<int:project_id>/activity', methods=['GET'])
def get_project_activity(project_id):
    require_project_access(project_id, get_current_identity())
    return _paginated_activity(
        ActivityLog.query.filter_by(project_id=project_id),
        'Project activity retrieved'
    )


@activity_bp.route('/tasks/<int:task_id>/activity', methods=['GET'])
def get_task_activity(task_id):
    require_task_access(task_id, get_current_identity())
    return _paginated_activity(
        ActivityLog.query.filter_by(task_id=task_id),
        'Task activity retrieved'
    )


@activity_bp.route('/activity/me', methods=['GET'])
def get_my_activity():
    identity = get_current_identity()
    return _paginated_activity(
        ActivityLog.query.filter_by(user_id=identity.subject_id),
        'User activity retrieved'
    )


@activity_bp.route('/activity/action/<action>', methods=['GET'])
def get_activity_by_action(action):
    """
    依動作類型查詢活動

    有 ?project_id 時只查該專案; 沒有時只查自己看得到的專案 (系統管理員看全部)
    """
    if action not in ACTIVITY_ACTIONS:
        raise BadRequest('Invalid action type')

    identity = get_current_identity()
    query = ActivityLog.query.filter_by(action=action)

    project_id = request.args.get('project_id', type=int)
    if project_id:
        require_project_access(project_id, identity)
        query = query.filter(ActivityLog.project_id == project_id)
    elif identity.role != 'admin':
        visible = db.select(Project.id).where(or_(
            Project.owner_id == identity.subject_id,
            Project.id.in_(db.select(ProjectMember.project_id).where(
                ProjectMember.user_id == identity.subject_id
            ))
        ))
        query = query.filter(ActivityLog.project_id.in_(visible))

    return _paginated_activity(query, f'Activities with action "{action}" retrieved')


@activity_bp.route('/projects/<int:project_id>/activity/stats', methods=['GET'])
def get_project_activity_stats(project_id):
    """
    專案活動統計

    - action_stats: 各動作次數 (多到少)
    - top_users: 最活躍的 5 位
    - timeline: 最近 7 天每天的次數
    """
    require_project_access(project_id, get_current_identity())

    action_stats = db.session.query(
        ActivityLog.action, func.count(ActivityLog.id).label('count')
    ).filter(ActivityLog.project_id == project_id).group_by(
        ActivityLog.action
    ).order_by(func.count(ActivityLog.id).desc(), ActivityLog.action).all()

    top_users = db.session.query(
        User, func.count(ActivityLog.id).label('activity_count')
    ).join(ActivityLog, ActivityLog.user_id == User.id).filter(
        ActivityLog.project_id == project_id
    ).group_by(User.id).order_by(
        func.count(ActivityLog.id).desc(), User.id
    ).limit(TOP_USERS_LIMIT).all()

    since = datetime.utcnow() - timedelta(days=TIMELINE_DAYS)
    day = func.date(ActivityLog.timestamp)
    timeline = db.session.query(day, func.count(ActivityLog.id)).filter(
        ActivityLog.project_id == project_id,
        ActivityLog.timestamp >= since
    ).group_by(day).order_by(day).all()

    return success_response('Project activity statistics retrieved', {
        'action_stats': [{'action': action, 'count': count} for action, count in action_stats],
        'top_users': [{'user': serialize_user_brief(user), 'activity_count': count}
                      for user, count in top_users],
        # SQLite 回傳字串, PostgreSQL 回傳 date
        'timeline': [{'date': str(d), 'count': count} for d, count in timeline]
    })
