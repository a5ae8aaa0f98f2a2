from flask import jsonify


def success_response(message, data=None, status_code=200):
    """統一的成功回應格式"""
    return jsonify({
        'success': True,
        'message': message,
        'data': data
    }), status_code


def error_response(message, status_code, errors=None):
    """
    統一的錯誤回應格式

    不要把 exception 細節放進 message
    """
    body = {
        'success': False,
        'message': message,
        'data': None
    }
    if errors:
        body['errors'] = errors
    return jsonify(body), status_code
