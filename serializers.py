"""
Model -> dict

REST 回應和即時推播共用同一份格式,前端收到的資料長得一樣
"""


def _iso(value):
    return value.isoformat() if value else None


def serialize_user_brief(user):
    if user is None:
        return None
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email
    }


def serialize_user(user):
    # 不回傳 password_hash / verification_token
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'role': user.role,
        'phone': user.phone,
        'address': user.address,
        'is_verified': user.is_verified,
        'is_active': user.is_active,
        'last_login': _iso(user.last_login),
        'created_at': _iso(user.created_at)
    }


def serialize_member(membership):
    return {
        'id': membership.user.id,
        'name': membership.user.name,
        'email': membership.user.email,
        'role': membership.role,
        'joined_at': _iso(membership.joined_at)
    }


def serialize_project(project, my_role=None):
    data = {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'status': project.status,
        'color': project.color,
        'budget': project.budget,
        'start_date': _iso(project.start_date),
        'end_date': _iso(project.end_date),
        'owner': serialize_user_brief(project.owner),
        'team_id': project.team_id,
        'created_at': _iso(project.created_at),
        'updated_at': _iso(project.updated_at)
    }
    if my_role:
        data['my_role'] = my_role
    return data


def serialize_team(team, include_members=False):
    # invite code 不放進一般回應, 只在產生時回傳一次
    data = {
        'id': team.id,
        'name': team.name,
        'description': team.description,
        'is_public': team.is_public,
        'owner': serialize_user_brief(team.owner),
        'created_at': _iso(team.created_at),
        'updated_at': _iso(team.updated_at)
    }
    if include_members:
        data['members'] = [serialize_member(m) for m in sorted(team.members, key=lambda m: m.id)]
        data['projects'] = [{'id': p.id, 'name': p.name}
                            for p in sorted(team.projects, key=lambda p: p.id)]
    return data


def serialize_subtask(subtask):
    return {
        'id': subtask.id,
        'title': subtask.title,
        'completed': subtask.completed,
        'completed_at': _iso(subtask.completed_at)
    }


def serialize_task(task):
    return {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'progress': task.progress,
        'comment_count': task.comment_count,
        'subtasks': [serialize_subtask(s) for s in task.subtasks],
        'tags': [t.name for t in task.tags],
        'project_id': task.project_id,
        'assigned_to': serialize_user_brief(task.assignee),
        'created_by': serialize_user_brief(task.creator),
        'due_date': _iso(task.due_date),
        'completed_at': _iso(task.completed_at),
        'created_at': _iso(task.created_at),
        'updated_at': _iso(task.updated_at)
    }


def serialize_comment(comment, include_replies=False):
    reactions = {}
    for reaction in comment.reactions:
        reactions.setdefault(reaction.emoji, []).append(reaction.user_id)

    data = {
        'id': comment.id,
        'task_id': comment.task_id,
        'parent_id': comment.parent_id,
        'content': comment.content,
        'is_edited': comment.is_edited,
        'author': serialize_user_brief(comment.author),
        'mentions': [serialize_user_brief(u) for u in comment.mentions],
        'reactions': [{'emoji': emoji, 'user_ids': user_ids, 'count': len(user_ids)}
                      for emoji, user_ids in reactions.items()],
        'created_at': _iso(comment.created_at),
        'updated_at': _iso(comment.updated_at)
    }
    if include_replies:
        data['replies'] = [serialize_comment(reply)
                           for reply in sorted(comment.replies, key=lambda r: r.id)]
    return data


def serialize_notification(notification):
    return {
        'id': notification.id,
        'type': notification.type,
        'title': notification.title,
        'message': notification.message,
        'is_read': notification.is_read,
        'read_at': _iso(notification.read_at),
        'related_project_id': notification.related_project_id,
        'related_task_id': notification.related_task_id,
        'metadata': notification.extra or {},
        'created_at': _iso(notification.created_at)
    }


def serialize_activity(activity):
    return {
        'id': activity.id,
        'project_id': activity.project_id,
        'task_id': activity.task_id,
        'user': serialize_user_brief(activity.user),
        'action': activity.action,
        'description': activity.description,
        'changes': activity.changes,
        'timestamp': _iso(activity.timestamp)
    }
