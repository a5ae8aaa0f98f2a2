from flask import Blueprint
from sqlalchemy import func, case, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
import logging

from access import MANAGER_ROLES, PROJECT_ROLES, require_project_access
from activity import diff_fields, log_activity
from auth import get_current_identity, get_current_user, require_auth_for_blueprint
from broadcast import emit_project_member_joined, emit_project_updated
from errors import BadRequest, Conflict, Forbidden, InternalError, NotFound
from models import db, Project, ProjectMember, Task, Team, User
from notifications import notify_project_added, push_notifications
from realtime import get_hub
from responses import success_response
from serializers import serialize_member, serialize_project
from teams import get_team_role
from validation import get_pagination_args, load_json_body, pagination_meta

projects_bp = Blueprint('projects', __name__)
projects_bp.before_request(require_auth_for_blueprint)
logger = logging.getLogger(__name__)

PROJECT_STATUSES = ['planning', 'active', 'on-hold', 'completed', 'archived']


# ============================================
# Input Validation Schemas
# ============================================

class CreateProjectSchema(Schema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES), load_default='active')
    start_date = fields.DateTime(allow_none=True)
    end_date = fields.DateTime(allow_none=True)
    budget = fields.Float(allow_none=True, validate=validate.Range(min=0))
    color = fields.Str(validate=validate.Regexp(r'^#[0-9A-Fa-f]{6}$'))
    team_id = fields.Int(allow_none=True)


class UpdateProjectSchema(Schema):
    """更新專案驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES))
    start_date = fields.DateTime(allow_none=True)
    end_date = fields.DateTime(allow_none=True)
    budget = fields.Float(allow_none=True, validate=validate.Range(min=0))
    color = fields.Str(validate=validate.Regexp(r'^#[0-9A-Fa-f]{6}$'))
    team_id = fields.Int(allow_none=True)


class AddMemberSchema(Schema):
    """新增成員驗證"""
    user_id = fields.Int(required=True)
    # owner 只有一個, 不能透過新增成員指定
    role = fields.Str(validate=validate.OneOf([r for r in PROJECT_ROLES if r != 'owner']),
                      load_default='member')


def _check_team(team_id, user_id):
    """專案只能掛在自己所屬的團隊底下"""
    if team_id is None:
        return
    team = db.session.get(Team, team_id)
    if not team:
        raise NotFound('Team not found')
    if get_team_role(team, user_id) is None:
        raise Forbidden('You are not a member of this team')


# ============================================
# 建立專案
# ============================================

@projects_bp.route('/projects', methods=['POST'])
def create_project():
    """
    建立新專案

    建立者同時成為 owner 成員,專案、成員、活動日誌一次 commit
    """
    current_user = get_current_user()
    result = load_json_body(CreateProjectSchema)
    _check_team(result.get('team_id'), current_user.id)

    project = Project(owner_id=current_user.id, **result)

    try:
        db.session.add(project)
        db.session.flush()  # 取得 project.id 但不 commit

        db.session.add(ProjectMember(project_id=project.id, user_id=current_user.id, role='owner'))
        log_activity(project.id, current_user.id, 'project-created',
                     f'Created project "{project.name}"')

        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Project creation error: {str(e)}", exc_info=True)
        raise InternalError('Project creation failed due to server error')

    logger.info(f"Project created: {project.name} by user {current_user.email}")
    return success_response('Project created', serialize_project(project, 'owner'), 201)


# ============================================
# 查詢我的所有專案
# ============================================

@projects_bp.route('/projects', methods=['GET'])
def get_my_projects():
    """
    查詢我擁有或參與的所有專案

    任務數用 subquery 統計,避免 N+1
    """
    user_id = get_current_identity().subject_id
    page, per_page = get_pagination_args()

    task_stats = db.session.query(
        Task.project_id,
        func.count(Task.id).label('total_tasks'),
        func.sum(case((Task.status == 'done', 1), else_=0)).label('completed_tasks')
    ).group_by(Task.project_id).subquery()

    member_project_ids = db.select(ProjectMember.project_id).where(
        ProjectMember.user_id == user_id
    )

    query = db.session.query(
        Project,
        task_stats.c.total_tasks,
        task_stats.c.completed_tasks
    ).outerjoin(
        task_stats, Project.id == task_stats.c.project_id
    ).filter(
        or_(Project.owner_id == user_id, Project.id.in_(member_project_ids))
    ).options(
        joinedload(Project.owner)
    ).order_by(Project.created_at.desc(), Project.id.desc())

    paginated = query.paginate(page=page, per_page=per_page, error_out=False)

    roles = dict(db.session.query(ProjectMember.project_id, ProjectMember.role).filter(
        ProjectMember.user_id == user_id
    ).all())

    projects_list = []
    for project, total_tasks, completed_tasks in paginated.items:
        my_role = 'owner' if project.owner_id == user_id else roles.get(project.id)
        data = serialize_project(project, my_role)
        data['task_count'] = total_tasks or 0
        data['completed_task_count'] = completed_tasks or 0
        projects_list.append(data)

    return success_response('Projects retrieved', {
        'projects': projects_list,
        'pagination': pagination_meta(paginated, page, per_page)
    })


# ============================================
# 查詢 / 更新 / 刪除單一專案
# ============================================

@projects_bp.route('/projects/<int:project_id>', methods=['GET'])
def get_project(project_id):
    project, role = require_project_access(project_id, get_current_identity())

    members = ProjectMember.query.filter_by(project_id=project_id).options(
        joinedload(ProjectMember.user)
    ).order_by(ProjectMember.joined_at).all()

    data = serialize_project(project, role)
    data['members'] = [serialize_member(m) for m in members]
    data['task_count'] = Task.query.filter_by(project_id=project_id).count()
    return success_response('Project retrieved', data)


@projects_bp.route('/projects/<int:project_id>', methods=['PATCH'])
def update_project(project_id):
    """
    更新專案資訊 (owner / lead)

    記錄變更內容並推播給專案房間
    """
    project, _ = require_project_access(project_id, get_current_identity(), MANAGER_ROLES)
    current_user = get_current_user()
    result = load_json_body(UpdateProjectSchema)
    if result.get('team_id') is not None and result['team_id'] != project.team_id:
        _check_team(result['team_id'], current_user.id)

    changes = diff_fields(project, result, ['name', 'description', 'status', 'start_date',
                                            'end_date', 'budget', 'color', 'team_id'])
    if not changes:
        return success_response('No changes to update', serialize_project(project))

    try:
        log_activity(project_id, current_user.id, 'project-updated',
                     f'Updated project "{project.name}"', changes=changes)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Project update error: {str(e)}", exc_info=True)
        raise InternalError('Project update failed due to server error')

    logger.info(f"Project {project_id} updated by user {current_user.email}")

    data = serialize_project(project)
    emit_project_updated(get_hub(), project_id, data)
    return success_response('Project updated', data)


@projects_bp.route('/projects/<int:project_id>', methods=['DELETE'])
def delete_project(project_id):
    """刪除專案 (只有 owner 或系統管理員)"""
    identity = get_current_identity()
    project, role = require_project_access(project_id, identity)
    if role not in ('owner', 'admin'):
        raise Forbidden('Only project owner can delete the project')

    project_name = project.name
    try:
        # cascade 會一起刪除任務、成員、活動日誌
        db.session.delete(project)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Project deletion error: {str(e)}", exc_info=True)
        raise InternalError('Project deletion failed due to server error')

    logger.info(f"Project deleted: {project_name} by user {identity.subject_id}")
    return success_response('Project deleted')


# ============================================
# 專案成員管理
# ============================================

@projects_bp.route('/projects/<int:project_id>/members', methods=['GET'])
def get_project_members(project_id):
    require_project_access(project_id, get_current_identity())

    members = ProjectMember.query.filter_by(project_id=project_id).options(
        joinedload(ProjectMember.user)
    ).order_by(ProjectMember.joined_at).all()

    return success_response('Members retrieved', {
        'members': [serialize_member(m) for m in members],
        'total': len(members)
    })


@projects_bp.route('/projects/<int:project_id>/members', methods=['POST'])
def add_project_member(project_id):
    """
    新增專案成員 (owner / lead)

    會通知被加入的人,並推播 member-joined-project 給專案房間
    """
    project, _ = require_project_access(project_id, get_current_identity(), MANAGER_ROLES)
    current_user = get_current_user()
    result = load_json_body(AddMemberSchema)

    user = db.session.get(User, result['user_id'])
    if not user:
        raise NotFound('User not found')

    if project.owner_id == user.id or ProjectMember.query.filter_by(
            project_id=project_id, user_id=user.id).first():
        raise Conflict('User is already a member')

    try:
        member = ProjectMember(project_id=project_id, user_id=user.id, role=result['role'])
        db.session.add(member)
        notification = notify_project_added(user.id, project, current_user)
        log_activity(project_id, current_user.id, 'member-added',
                     f'Added {user.name} to project',
                     changes={'member': {'from': None, 'to': user.id}, 'role': result['role']})
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Error adding member: {str(e)}", exc_info=True)
        raise InternalError('Failed to add member due to server error')

    logger.info(f"Member added to project {project_id}: user {user.email}")

    push_notifications([notification])
    emit_project_member_joined(get_hub(), project_id, user.id, user.name)
    return success_response('Member added', serialize_member(member), 201)


@projects_bp.route('/projects/<int:project_id>/members/<int:user_id>', methods=['DELETE'])
def remove_project_member(project_id, user_id):
    project, _ = require_project_access(project_id, get_current_identity(), MANAGER_ROLES)
    current_user = get_current_user()

    if project.owner_id == user_id:
        raise BadRequest('Project owner cannot be removed')

    member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    if not member:
        raise NotFound('Member not found')

    member_name = member.user.name
    try:
        db.session.delete(member)
        log_activity(project_id, current_user.id, 'member-removed',
                     f'Removed {member_name} from project',
                     changes={'member': {'from': user_id, 'to': None}})
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Error removing member: {str(e)}", exc_info=True)
        raise InternalError('Failed to remove member due to server error')

    logger.info(f"Member {user_id} removed from project {project_id}")
    return success_response('Member removed')
