"""
專案權限檢查

角色: owner > lead > member > viewer
系統管理員 (User.role == 'admin') 可以看所有專案
"""
import logging

from sqlalchemy.orm import joinedload

from errors import Forbidden, NotFound
from models import db, Comment, Project, ProjectMember, Task

logger = logging.getLogger(__name__)

PROJECT_ROLES = ['owner', 'lead', 'member', 'viewer']
MANAGER_ROLES = ('owner', 'lead')
EDITOR_ROLES = ('owner', 'lead', 'member')


def check_project_access(project_id, user_id):
    """
    檢查使用者是否有權限訪問專案

    Returns:
        tuple: (has_access: bool, project: Project|None, role: str|None)
    """
    project = db.session.get(Project, project_id, options=[joinedload(Project.owner)])
    if not project:
        return False, None, None

    if project.owner_id == user_id:
        return True, project, 'owner'

    member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    if member:
        return True, project, member.role

    return False, project, None


def require_project_access(project_id, identity, roles=None):
    """
    取得專案並確認權限, 不符合直接丟錯誤

    roles 為 None 代表只要是成員就可以
    """
    has_access, project, role = check_project_access(project_id, identity.subject_id)
    if project is None:
        raise NotFound('Project not found')

    if not has_access:
        if identity.role == 'admin':
            return project, 'admin'
        logger.warning(f"User {identity.subject_id} denied access to project {project_id}")
        raise Forbidden('Permission denied')

    if roles and role not in roles:
        raise Forbidden('Insufficient project role')
    return project, role


def require_task_access(task_id, identity, roles=None):
    """回傳 (task, project, role)"""
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFound('Task not found')

    project, role = require_project_access(task.project_id, identity, roles)
    return task, project, role


def require_comment_access(comment_id, identity, roles=None):
    """回傳 (comment, task, role)"""
    comment = db.session.get(Comment, comment_id)
    if not comment:
        raise NotFound('Comment not found')

    task, _, role = require_task_access(comment.task_id, identity, roles)
    return comment, task, role
