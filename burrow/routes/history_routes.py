"""
Run history routes - view recent backup, restore and cleanup runs.
"""

from flask import Blueprint, current_app, jsonify, request

from burrow.auth import require_api_token


bp = Blueprint('history', __name__, url_prefix='/api/history')

VALID_STATUSES = ['running', 'success', 'failed', 'cancelled']


@bp.route('', methods=['GET'])
@require_api_token
def list_history():
    """
    Get recent runs, newest first.

    Query params:
        - status: Filter by status (running/success/failed/cancelled)
        - service: Filter by service name
        - limit: Max number of records (default: 50, max: 200)

    Returns:
        JSON with history records
    """
    status_filter = request.args.get('status')
    service_filter = request.args.get('service')
    limit = request.args.get('limit', 50, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1

    if status_filter and status_filter not in VALID_STATUSES:
        return jsonify({'error': 'Invalid status filter'}), 400

    records = current_app.extensions['burrow'].history.recent(service=service_filter)
    if status_filter:
        records = [r for r in records if r.status == status_filter]

    return jsonify({
        'records': [r.to_dict() for r in records[:limit]],
        'total': len(records),
        'limit': limit
    })
