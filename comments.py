from flask import Blueprint, request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload
from marshmallow import Schema, fields, validate
import logging

from access import MANAGER_ROLES, check_project_access, require_comment_access, require_task_access
from activity import log_activity
from auth import get_current_identity, get_current_user, require_auth_for_blueprint
from broadcast import (
    emit_comment_added, emit_comment_deleted, emit_comment_updated,
    emit_reaction_added, emit_reaction_removed,
)
from errors import BadRequest, Forbidden, InternalError
from models import db, Comment, CommentReaction, Task, User
from notifications import notify_commented, notify_mentioned, push_notifications
from realtime import get_hub
from responses import success_response
from serializers import serialize_comment
from validation import load_json_body, validate_request_data

comments_bp = Blueprint('comments', __name__)
comments_bp.before_request(require_auth_for_blueprint)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas
# ============================================

class CreateCommentSchema(Schema):
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=5000),
        error_messages={'required': 'Comment content is required'}
    )
    mentions = fields.List(fields.Int(), load_default=list)


class UpdateCommentSchema(Schema):
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=5000),
        error_messages={'required': 'Comment content is required'}
    )


class ReactionSchema(Schema):
    emoji = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=32),
        error_messages={'required': 'Emoji is required'}
    )


# ============================================
# 輔助函數
# ============================================

def _resolve_mentions(project_id, user_ids):
    """只保留存在而且看得到這個專案的使用者"""
    if not user_ids:
        return []
    users = User.query.filter(User.id.in_(set(user_ids))).all()
    return [u for u in users if check_project_access(project_id, u.id)[0]]


def _change_comment_count(task_id, delta):
    # SQL 端加減, 同時留言不會互相覆蓋
    Task.query.filter_by(id=task_id).update(
        {Task.comment_count: Task.comment_count + delta},
        synchronize_session=False
    )


def _create_comment(task, author, result, parent=None):
    """
    建立留言或回覆並通知相關的人

    Returns:
        tuple: (comment, notifications)
    """
    mentioned = _resolve_mentions(task.project_id, result.get('mentions'))

    comment = Comment(
        task_id=task.id,
        user_id=author.id,
        parent_id=parent.id if parent else None,
        content=result['content']
    )
    comment.mentions = mentioned

    notifications = []
    try:
        db.session.add(comment)
        _change_comment_count(task.id, 1)
        log_activity(task.project_id, author.id, 'comment-added', 'Added comment on task',
                     task_id=task.id, changes={'contentPreview': result['content'][:50]})

        notified = {author.id}
        for user in mentioned:
            if user.id not in notified:
                notifications.append(notify_mentioned(user.id, task, author))
                notified.add(user.id)
        if task.assigned_to and task.assigned_to not in notified:
            notifications.append(notify_commented(task.assigned_to, task, author))

        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Comment creation error on task {task.id}: {str(e)}", exc_info=True)
        raise InternalError('Comment creation failed due to server error')

    logger.info(f"Comment {comment.id} added to task {task.id} by {author.email}")

    data = serialize_comment(comment)
    emit_comment_added(get_hub(), task.project_id, task.id, data, author.id)
    push_notifications(notifications)
    return comment, data


def _get_emoji():
    # DELETE 可能沒有 body, 允許用 ?emoji= 傳
    data = request.get_json(silent=True) or {'emoji': request.args.get('emoji')}
    is_valid, result = validate_request_data(ReactionSchema, data)
    if not is_valid:
        raise BadRequest('Validation failed', errors=result)
    return result['emoji']


# ============================================
# 任務留言
# ============================================

@comments_bp.route('/tasks/<int:task_id>/comments', methods=['GET'])
def get_task_comments(task_id):
    """取得任務的留言 (最上層留言,最新的在前,回覆附在裡面)"""
    require_task_access(task_id, get_current_identity())

    comments = Comment.query.filter_by(task_id=task_id, parent_id=None).options(
        selectinload(Comment.replies)
    ).order_by(Comment.created_at.desc(), Comment.id.desc()).all()

    return success_response('Comments retrieved', {
        'comments': [serialize_comment(c, include_replies=True) for c in comments],
        'total': len(comments)
    })


@comments_bp.route('/tasks/<int:task_id>/comments', methods=['POST'])
def create_comment(task_id):
    task, _, _ = require_task_access(task_id, get_current_identity())
    current_user = get_current_user()
    result = load_json_body(CreateCommentSchema)

    _, data = _create_comment(task, current_user, result)
    return success_response('Comment created', data, 201)


@comments_bp.route('/comments/<int:comment_id>/replies', methods=['POST'])
def reply_to_comment(comment_id):
    parent, task, _ = require_comment_access(comment_id, get_current_identity())
    current_user = get_current_user()
    result = load_json_body(CreateCommentSchema)

    # 回覆只有一層, 回覆別人的回覆時掛在同一個最上層留言下
    if parent.parent_id is not None:
        parent = parent.parent

    _, data = _create_comment(task, current_user, result, parent=parent)
    return success_response('Reply created', data, 201)


@comments_bp.route('/comments/<int:comment_id>', methods=['PATCH'])
def update_comment(comment_id):
    """只有作者可以修改留言"""
    comment, task, _ = require_comment_access(comment_id, get_current_identity())
    current_user = get_current_user()
    result = load_json_body(UpdateCommentSchema)

    if comment.user_id != current_user.id:
        raise Forbidden('Only the author can edit this comment')

    if comment.content != result['content']:
        comment.content = result['content']
        comment.is_edited = True
        db.session.commit()
        emit_comment_updated(get_hub(), task.project_id, task.id, serialize_comment(comment))

    return success_response('Comment updated', serialize_comment(comment))


@comments_bp.route('/comments/<int:comment_id>', methods=['DELETE'])
def delete_comment(comment_id):
    """作者或專案 owner / lead 可以刪除, 回覆會一起刪除"""
    comment, task, role = require_comment_access(comment_id, get_current_identity())
    current_user = get_current_user()

    if comment.user_id != current_user.id and role not in MANAGER_ROLES + ('admin',):
        raise Forbidden('Only the author can delete this comment')

    removed = 1 + len(comment.replies)
    try:
        db.session.delete(comment)
        _change_comment_count(task.id, -removed)
        log_activity(task.project_id, current_user.id, 'comment-deleted', 'Deleted comment',
                     task_id=task.id)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Comment deletion error: {str(e)}", exc_info=True)
        raise InternalError('Comment deletion failed due to server error')

    logger.info(f"Comment {comment_id} deleted by {current_user.email}")
    emit_comment_deleted(get_hub(), task.project_id, task.id, comment_id)
    return success_response('Comment deleted')


# ============================================
# 表情回應
# ============================================

@comments_bp.route('/comments/<int:comment_id>/reactions', methods=['POST'])
def add_reaction(comment_id):
    """同一個人對同一個留言的同一個 emoji 只算一次"""
    comment, task, _ = require_comment_access(comment_id, get_current_identity())
    user_id = get_current_identity().subject_id
    emoji = _get_emoji()

    exists = CommentReaction.query.filter_by(
        comment_id=comment_id, user_id=user_id, emoji=emoji
    ).first()

    if not exists:
        try:
            db.session.add(CommentReaction(comment_id=comment_id, user_id=user_id, emoji=emoji))
            db.session.commit()
        except IntegrityError:
            # 同時送出兩次, 另一個 request 已經寫入
            db.session.rollback()
        else:
            emit_reaction_added(get_hub(), task.project_id, task.id, comment_id, emoji, user_id)

    db.session.refresh(comment)
    return success_response('Reaction added', serialize_comment(comment))


@comments_bp.route('/comments/<int:comment_id>/reactions', methods=['DELETE'])
def remove_reaction(comment_id):
    comment, task, _ = require_comment_access(comment_id, get_current_identity())
    user_id = get_current_identity().subject_id
    emoji = _get_emoji()

    removed = CommentReaction.query.filter_by(
        comment_id=comment_id, user_id=user_id, emoji=emoji
    ).delete(synchronize_session=False)
    db.session.commit()

    if removed:
        emit_reaction_removed(get_hub(), task.project_id, task.id, comment_id, emoji, user_id)

    db.session.refresh(comment)
    return success_response('Reaction removed', serialize_comment(comment))
