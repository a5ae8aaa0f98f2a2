from flask import Blueprint, current_app, request
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
from datetime import datetime, timedelta
import logging
import secrets

from auth import get_current_identity, get_current_user, require_auth_for_blueprint
from errors import BadRequest, Conflict, Forbidden, InternalError, NotFound
from models import db, Team, TeamInvite, TeamMember, User
from responses import success_response
from serializers import serialize_member, serialize_team
from validation import get_pagination_args, load_json_body, pagination_meta

teams_bp = Blueprint('teams', __name__)
logger = logging.getLogger(__name__)

TEAM_ROLES = ['owner', 'admin', 'member']
TEAM_MANAGER_ROLES = ('owner', 'admin')


@teams_bp.before_request
def require_auth_except_public():
    """公開團隊列表不用登入, 其他都要"""
    if request.endpoint == 'teams.get_public_teams':
        return None
    return require_auth_for_blueprint()


# ============================================
# Input Validation Schemas
# ============================================

class CreateTeamSchema(Schema):
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100),
        error_messages={'required': 'Team name is required'}
    )
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    is_public = fields.Bool(load_default=False)


class UpdateTeamSchema(Schema):
    name = fields.Str(validate=validate.Length(min=1, max=100))
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    is_public = fields.Bool()


class AddTeamMemberSchema(Schema):
    user_id = fields.Int(required=True)
    role = fields.Str(validate=validate.OneOf([r for r in TEAM_ROLES if r != 'owner']),
                      load_default='member')


class JoinTeamSchema(Schema):
    invite_code = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=64),
        error_messages={'required': 'Invite code is required'}
    )


# ============================================
# 輔助函數
# ============================================

def get_team_role(team, user_id):
    """回傳使用者在團隊中的角色, 不是成員回傳 None"""
    if team.owner_id == user_id:
        return 'owner'
    member = TeamMember.query.filter_by(team_id=team.id, user_id=user_id).first()
    return member.role if member else None


def _get_team_or_404(team_id):
    team = db.session.get(Team, team_id)
    if not team:
        raise NotFound('Team not found')
    return team


def _require_team_owner(team, identity, message):
    if team.owner_id != identity.subject_id:
        raise Forbidden(message)


def _team_detail(team):
    return serialize_team(team, include_members=True)


# ============================================
# 公開團隊
# ============================================

@teams_bp.route('/teams/public', methods=['GET'])
def get_public_teams():
    """列出公開團隊 (不需登入)"""
    page, per_page = get_pagination_args()

    paginated = Team.query.filter_by(is_public=True).options(
        joinedload(Team.owner)
    ).order_by(Team.created_at.desc(), Team.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return success_response('Public teams retrieved', {
        'teams': [serialize_team(t) for t in paginated.items],
        'pagination': pagination_meta(paginated, page, per_page)
    })


# ============================================
# 團隊 CRUD
# ============================================

@teams_bp.route('/teams', methods=['POST'])
def create_team():
    """建立團隊, 建立者同時成為 owner 成員"""
    current_user = get_current_user()
    result = load_json_body(CreateTeamSchema)

    team = Team(owner_id=current_user.id, **result)
    try:
        db.session.add(team)
        db.session.flush()
        db.session.add(TeamMember(team_id=team.id, user_id=current_user.id, role='owner'))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Team creation error: {str(e)}", exc_info=True)
        raise InternalError('Team creation failed due to server error')

    logger.info(f"Team created: {team.id} by user {current_user.email}")
    return success_response('Team created', _team_detail(team), 201)


@teams_bp.route('/teams', methods=['GET'])
def get_my_teams():
    """查詢我擁有或參與的團隊"""
    user_id = get_current_identity().subject_id

    member_team_ids = db.select(TeamMember.team_id).where(TeamMember.user_id == user_id)
    teams = Team.query.filter(
        or_(Team.owner_id == user_id, Team.id.in_(member_team_ids))
    ).options(joinedload(Team.owner)).order_by(Team.created_at.desc(), Team.id.desc()).all()

    data = []
    for team in teams:
        item = serialize_team(team)
        item['my_role'] = get_team_role(team, user_id)
        data.append(item)

    return success_response('Teams retrieved', {'teams': data, 'total': len(data)})


@teams_bp.route('/teams/<int:team_id>', methods=['GET'])
def get_team(team_id):
    """成員可以看; 公開團隊任何登入者都可以看"""
    identity = get_current_identity()
    team = _get_team_or_404(team_id)

    role = get_team_role(team, identity.subject_id)
    if role is None and not team.is_public and identity.role != 'admin':
        raise Forbidden('Not authorized to view this team')

    data = _team_detail(team)
    if role:
        data['my_role'] = role
    return success_response('Team retrieved', data)


@teams_bp.route('/teams/<int:team_id>', methods=['PATCH'])
def update_team(team_id):
    identity = get_current_identity()
    team = _get_team_or_404(team_id)
    _require_team_owner(team, identity, 'Only team owner can update team')

    result = load_json_body(UpdateTeamSchema)
    for field, value in result.items():
        setattr(team, field, value)
    db.session.commit()

    logger.info(f"Team updated: {team_id}")
    return success_response('Team updated', _team_detail(team))


@teams_bp.route('/teams/<int:team_id>', methods=['DELETE'])
def delete_team(team_id):
    """刪除團隊 (只有 owner); 團隊底下的專案保留"""
    identity = get_current_identity()
    team = _get_team_or_404(team_id)
    _require_team_owner(team, identity, 'Only team owner can delete team')

    try:
        db.session.delete(team)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Team deletion error: {str(e)}", exc_info=True)
        raise InternalError('Team deletion failed due to server error')

    logger.info(f"Team deleted: {team_id} by user {identity.subject_id}")
    return success_response('Team deleted')


# ============================================
# 團隊成員
# ============================================

@teams_bp.route('/teams/<int:team_id>/members', methods=['POST'])
def add_team_member(team_id):
    """新增成員 (owner / 團隊 admin)"""
    identity = get_current_identity()
    team = _get_team_or_404(team_id)
    if get_team_role(team, identity.subject_id) not in TEAM_MANAGER_ROLES:
        raise Forbidden('Not authorized to add members')

    result = load_json_body(AddTeamMemberSchema)

    user = db.session.get(User, result['user_id'])
    if not user:
        raise NotFound('User not found')
    if get_team_role(team, user.id) is not None:
        raise Conflict('User is already a member')

    member = TeamMember(team_id=team_id, user_id=user.id, role=result['role'])
    db.session.add(member)
    db.session.commit()

    logger.info(f"Member {user.id} added to team {team_id}")
    return success_response('Member added', serialize_member(member), 201)


@teams_bp.route('/teams/<int:team_id>/members/<int:user_id>', methods=['DELETE'])
def remove_team_member(team_id, user_id):
    identity = get_current_identity()
    team = _get_team_or_404(team_id)
    if get_team_role(team, identity.subject_id) not in TEAM_MANAGER_ROLES:
        raise Forbidden('Not authorized to remove members')

    if team.owner_id == user_id:
        raise BadRequest('Cannot remove team owner')

    member = TeamMember.query.filter_by(team_id=team_id, user_id=user_id).first()
    if not member:
        raise NotFound('Member not found')

    db.session.delete(member)
    db.session.commit()

    logger.info(f"Member {user_id} removed from team {team_id}")
    return success_response('Member removed')


# ============================================
# 邀請碼
# ============================================

@teams_bp.route('/teams/<int:team_id>/invite', methods=['POST'])
def generate_invite_code(team_id):
    """
    產生邀請碼 (只有 owner)

    每次呼叫都產生新的一組, 舊的在到期前仍然有效
    """
    identity = get_current_identity()
    team = _get_team_or_404(team_id)
    _require_team_owner(team, identity, 'Only owner can generate invite codes')

    invite = TeamInvite(
        team_id=team_id,
        code=secrets.token_urlsafe(12),
        created_by=identity.subject_id,
        expires_at=datetime.utcnow() + timedelta(days=current_app.config['TEAM_INVITE_DAYS'])
    )
    db.session.add(invite)
    db.session.commit()

    logger.info(f"Invite code generated for team {team_id}")
    return success_response('Invite code generated', {
        'invite_code': invite.code,
        'expires_at': invite.expires_at.isoformat()
    }, 201)


@teams_bp.route('/teams/join', methods=['POST'])
def join_team_by_code():
    current_user = get_current_user()
    result = load_json_body(JoinTeamSchema)

    invite = TeamInvite.query.filter_by(code=result['invite_code']).first()
    if not invite:
        raise NotFound('Invalid invite code')
    if invite.expires_at < datetime.utcnow():
        raise BadRequest('Invite code has expired')

    team = invite.team
    if get_team_role(team, current_user.id) is not None:
        raise Conflict('Already a member of this team')

    db.session.add(TeamMember(team_id=team.id, user_id=current_user.id, role='member'))
    db.session.commit()

    logger.info(f"User {current_user.id} joined team {team.id} via invite code")
    data = _team_detail(team)
    data['my_role'] = 'member'
    return success_response('Joined team', data)
