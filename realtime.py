"""
即時通訊 Hub (Flask-SocketIO)

每個連線在 handshake 時帶 token (auth={'token': ...}),
驗證方式跟 HTTP 一樣走 SessionAuthenticator.authenticate()

房間命名:
    project:<id>  專案成員看板更新
    task:<id>     任務留言 / 打字中
    user:<id>     個人通知 (連線時自動加入)
"""
from dataclasses import dataclass, field
import logging
import threading

from flask import current_app, request
from flask_socketio import SocketIO, ConnectionRefusedError, join_room, leave_room

from errors import ApiError

logger = logging.getLogger(__name__)


def project_room(project_id):
    return f'project:{project_id}'


def task_room(task_id):
    return f'task:{task_id}'


def user_room(user_id):
    return f'user:{user_id}'


def get_hub():
    """從 app.extensions 取得 hub, 還沒建立時回傳 None"""
    return current_app.extensions.get('realtime_hub')


def _normalize_room_id(value):
    """前端可能傳數字或字串,空值/其他型別一律不接受"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class Connection:
    connection_id: str
    subject_id: int
    role: str
    rooms: set = field(default_factory=set)


class RealtimeHub:
    """
    管理 socket 連線和房間

    在 create_app 裡建立,放在 app.extensions['realtime_hub'],
    需要推播的地方從那裡拿,不使用全域的 io
    """

    def __init__(self, app=None, authenticator=None):
        self.socketio = None
        self.authenticator = authenticator
        self._connections = {}
        self._lock = threading.Lock()
        if app is not None:
            self.init_app(app, authenticator)

    def init_app(self, app, authenticator):
        self.authenticator = authenticator
        self.socketio = SocketIO(
            app,
            cors_allowed_origins=app.config.get('SOCKETIO_CORS_ORIGINS'),
            async_mode=app.config.get('SOCKETIO_ASYNC_MODE'),
            logger=False,
            engineio_logger=False
        )
        self._register_handlers()
        app.extensions['realtime_hub'] = self

    def _register_handlers(self):
        on = self.socketio.on_event
        on('connect', self._on_connect)
        on('disconnect', self._on_disconnect)
        on('join-project', self._on_join_project)
        on('leave-project', self._on_leave_project)
        on('join-task', self._on_join_task)
        on('leave-task', self._on_leave_task)
        on('start-typing', self._on_start_typing)
        on('stop-typing', self._on_stop_typing)

    # ============================================
    # 連線 registry
    # ============================================

    def connection(self, sid):
        with self._lock:
            return self._connections.get(sid)

    def connection_count(self):
        with self._lock:
            return len(self._connections)

    def room_members(self, room):
        """目前在房間裡的連線 id"""
        with self._lock:
            return {sid for sid, conn in self._connections.items() if room in conn.rooms}

    def _register(self, sid, identity):
        conn = Connection(sid, identity.subject_id, identity.role)
        with self._lock:
            self._connections[sid] = conn
        return conn

    def _join(self, sid, room):
        join_room(room)
        with self._lock:
            conn = self._connections.get(sid)
            if conn:
                conn.rooms.add(room)

    def _leave(self, sid, room):
        leave_room(room)
        with self._lock:
            conn = self._connections.get(sid)
            if conn:
                conn.rooms.discard(room)

    # ============================================
    # 推播
    # ============================================

    def emit_to_room(self, room, event, payload, skip_sid=None):
        """
        推播到房間

        best-effort: 房間沒人就直接丟掉,送出失敗只記 log
        """
        if self.socketio is None:
            return False
        try:
            self.socketio.emit(event, payload, to=room, skip_sid=skip_sid)
            return True
        except Exception as e:
            logger.warning(f"Failed to emit {event} to {room}: {str(e)}")
            return False

    # ============================================
    # Socket 事件
    # ============================================

    def _on_connect(self, auth=None):
        token = auth.get('token') if isinstance(auth, dict) else None

        try:
            identity = self.authenticator.authenticate(token)
        except ApiError as e:
            logger.warning(f"Socket auth rejected from {request.remote_addr}: {e.message}")
            raise ConnectionRefusedError(e.message)
        except Exception as e:
            logger.error(f"Socket auth error: {str(e)}", exc_info=True)
            raise ConnectionRefusedError('Authentication error')

        self._register(request.sid, identity)
        self._join(request.sid, user_room(identity.subject_id))
        logger.info(f"User {identity.subject_id} connected via WebSocket")

    def _on_disconnect(self, reason=None):
        # 房間由 Flask-SocketIO 自動清掉,這裡只移除 registry
        with self._lock:
            conn = self._connections.pop(request.sid, None)
        if conn:
            logger.info(f"User {conn.subject_id} disconnected")

    def _current(self):
        return self.connection(request.sid)

    def _membership_change(self, raw_id, room_for, event, id_key, joining):
        conn = self._current()
        room_id = _normalize_room_id(raw_id)
        if conn is None or room_id is None:
            logger.warning(f"Ignored {event} with invalid id: {raw_id!r}")
            return False

        room = room_for(room_id)
        if joining:
            self._join(conn.connection_id, room)
        else:
            self._leave(conn.connection_id, room)

        logger.info(f"User {conn.subject_id} {'joined' if joining else 'left'} room: {room}")
        # 離開時自己已不在房間內,只有剩下的成員會收到
        self.emit_to_room(room, event, {'userId': conn.subject_id, id_key: raw_id})
        return True

    def _on_join_project(self, project_id=None):
        return self._membership_change(project_id, project_room, 'user-joined', 'projectId', True)

    def _on_leave_project(self, project_id=None):
        return self._membership_change(project_id, project_room, 'user-left', 'projectId', False)

    def _on_join_task(self, task_id=None):
        return self._membership_change(task_id, task_room, 'user-joined-task', 'taskId', True)

    def _on_leave_task(self, task_id=None):
        return self._membership_change(task_id, task_room, 'user-left-task', 'taskId', False)

    def _on_start_typing(self, task_id=None, user_name=None):
        conn = self._current()
        room_id = _normalize_room_id(task_id)
        if conn is None or room_id is None:
            return False

        # 打字中不留狀態,發給同房間的其他人 (不含自己)
        self.emit_to_room(
            task_room(room_id),
            'user-typing',
            {'userId': conn.subject_id, 'userName': user_name, 'taskId': task_id},
            skip_sid=conn.connection_id
        )
        return True

    def _on_stop_typing(self, task_id=None):
        conn = self._current()
        room_id = _normalize_room_id(task_id)
        if conn is None or room_id is None:
            return False

        self.emit_to_room(
            task_room(room_id),
            'user-stop-typing',
            {'userId': conn.subject_id, 'taskId': task_id},
            skip_sid=conn.connection_id
        )
        return True
