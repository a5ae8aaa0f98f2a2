from flask import Blueprint
from sqlalchemy.exc import SQLAlchemyError
from marshmallow import Schema, fields, validate
import logging

from auth import get_current_identity, require_auth_for_blueprint, roles_required
from authenticator import get_authenticator
from errors import BadRequest, Conflict, Forbidden, InternalError, NotFound
from models import (
    db, ActivityLog, Comment, CommentReaction, Project, ProjectMember, Task, Team, TeamMember,
    User, comment_mentions,
)
from responses import success_response
from serializers import serialize_user
from validation import get_pagination_args, load_json_body, pagination_meta

users_bp = Blueprint('users', __name__)
users_bp.before_request(require_auth_for_blueprint)
logger = logging.getLogger(__name__)


class CreateUserSchema(Schema):
    """管理員建立帳號驗證"""
    name = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    email = fields.Email(required=True)
    password = fields.Str(required=True, validate=validate.Length(min=6, max=128))
    role = fields.Str(validate=validate.OneOf(['user', 'admin']), load_default='user')
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)
    address = fields.Str(validate=validate.Length(max=255), allow_none=True)


class UpdateUserSchema(Schema):
    """個人資料更新驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=100))
    email = fields.Email()
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)
    address = fields.Str(validate=validate.Length(max=255), allow_none=True)
    # 只有系統管理員可以改
    role = fields.Str(validate=validate.OneOf(['user', 'admin']))
    is_active = fields.Bool()


ADMIN_ONLY_FIELDS = ('role', 'is_active')


def _require_self_or_admin(user_id):
    identity = get_current_identity()
    if identity.role != 'admin' and identity.subject_id != user_id:
        raise Forbidden()
    return identity


@users_bp.route('/users', methods=['GET'])
@roles_required('admin')
def list_users():
    """列出所有使用者 (系統管理員)"""
    page, per_page = get_pagination_args()
    paginated = User.query.order_by(User.id).paginate(page=page, per_page=per_page, error_out=False)

    return success_response('Users retrieved', {
        'users': [serialize_user(u) for u in paginated.items],
        'pagination': pagination_meta(paginated, page, per_page)
    })


@users_bp.route('/users/<int:user_id>', methods=['GET'])
def get_user(user_id):
    """本人或系統管理員"""
    _require_self_or_admin(user_id)

    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')
    return success_response('User retrieved', serialize_user(user))


@users_bp.route('/users/<int:user_id>', methods=['PATCH'])
def update_user(user_id):
    identity = _require_self_or_admin(user_id)
    result = load_json_body(UpdateUserSchema)

    if identity.role != 'admin' and any(f in result for f in ADMIN_ONLY_FIELDS):
        raise Forbidden('Only admins can change role or account status')

    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')

    if 'email' in result:
        result['email'] = result['email'].strip().lower()
        if result['email'] != user.email and User.query.filter_by(email=result['email']).first():
            raise Conflict('Email already in use')

    for field, value in result.items():
        setattr(user, field, value)
    db.session.commit()

    logger.info(f"User {user_id} updated by {identity.subject_id}")
    return success_response('User updated', serialize_user(user))


@users_bp.route('/users', methods=['POST'])
@roles_required('admin')
def create_user():
    """
    系統管理員直接建立帳號

    管理員建立的帳號視為已驗證, 不寄驗證信
    """
    result = load_json_body(CreateUserSchema)
    email = result['email'].strip().lower()

    if User.query.filter_by(email=email).first():
        raise Conflict('Email already registered')

    user = User(
        name=result['name'],
        email=email,
        password_hash=get_authenticator().hash_password(result['password']),
        role=result['role'],
        phone=result.get('phone'),
        address=result.get('address'),
        is_verified=True
    )
    try:
        db.session.add(user)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"User creation error: {str(e)}", exc_info=True)
        raise InternalError('User creation failed due to server error')

    logger.info(f"User created by admin {get_current_identity().subject_id}: {user.email}")
    return success_response('User created', serialize_user(user), 201)


@users_bp.route('/users/<int:user_id>', methods=['DELETE'])
@roles_required('admin')
def delete_user(user_id):
    """
    刪除帳號 (系統管理員)

    只刪得掉沒有留下內容的帳號; 擁有專案 / 團隊, 或建立過任務、留言、
    活動紀錄的帳號回 409, 改用 is_active=false 停用
    """
    identity = get_current_identity()
    if identity.subject_id == user_id:
        raise BadRequest('You cannot delete your own account')

    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')

    if Project.query.filter_by(owner_id=user_id).first() or Team.query.filter_by(owner_id=user_id).first():
        raise Conflict('User still owns projects or teams')
    if (Task.query.filter_by(created_by=user_id).first()
            or Comment.query.filter_by(user_id=user_id).first()
            or ActivityLog.query.filter_by(user_id=user_id).first()):
        raise Conflict('User has activity history; deactivate the account instead')

    try:
        ProjectMember.query.filter_by(user_id=user_id).delete(synchronize_session=False)
        TeamMember.query.filter_by(user_id=user_id).delete(synchronize_session=False)
        CommentReaction.query.filter_by(user_id=user_id).delete(synchronize_session=False)
        db.session.execute(comment_mentions.delete().where(comment_mentions.c.user_id == user_id))
        Task.query.filter_by(assigned_to=user_id).update({'assigned_to': None}, synchronize_session=False)
        # notifications 由 relationship cascade 一起刪
        db.session.delete(user)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"User deletion error: {str(e)}", exc_info=True)
        raise InternalError('User deletion failed due to server error')

    logger.info(f"User {user_id} deleted by admin {identity.subject_id}")
    return success_response('User deleted')
