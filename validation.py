from flask import request, current_app
from marshmallow import ValidationError

from errors import BadRequest


def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages


def load_json_body(schema_class):
    """讀 JSON body 並驗證,失敗直接丟 BadRequest"""
    data = request.get_json(silent=True)
    if not data:
        raise BadRequest('Request body must be JSON')

    is_valid, result = validate_request_data(schema_class, data)
    if not is_valid:
        raise BadRequest('Validation failed', errors=result)
    return result


def get_pagination_args():
    """取得分頁參數,per_page 有上限避免一次撈太多"""
    page = max(request.args.get('page', 1, type=int), 1)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = max(min(per_page, current_app.config['MAX_PAGE_SIZE']), 1)
    return page, per_page


def pagination_meta(paginated, page, per_page):
    return {
        'page': page,
        'per_page': per_page,
        'total': paginated.total,
        'total_pages': paginated.pages
    }
