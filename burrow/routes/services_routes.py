"""
Service routes - list services and artifacts, run backups, restores and cleanup.
"""

from flask import Blueprint, current_app, jsonify, request

from burrow.auth import require_api_token
from burrow.backup.retention import RetentionError
from burrow.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_backup_now


bp = Blueprint('services', __name__, url_prefix='/api')


def _runner():
    return current_app.extensions['burrow']


@bp.route('/services', methods=['GET'])
@require_api_token
def list_services():
    """
    Get list of configured services.

    Returns:
        JSON array of services with their effective retention
    """
    settings = _runner().settings
    next_runs = {job['id']: job['next_run'] for job in get_scheduled_jobs()}

    services_data = []
    for service in sorted(settings.services.values(), key=lambda s: s.name):
        services_data.append({
            'name': service.name,
            'path': service.path,
            'container': service.container,
            'schedule': service.schedule,
            'next_run': next_runs.get(f"backup_{service.name}"),
            'exclude': list(service.exclude),
            'retain_backups': settings.retain_count(service),
            'pre_backup': service.pre_backup.command if service.pre_backup else None
        })

    return jsonify(services_data)


@bp.route('/services/<name>/backups', methods=['GET'])
@require_api_token
def list_backups(name):
    """
    List artifacts of a service on every backend, newest first.

    Returns:
        JSON object keyed by backend name
    """
    listing = _runner().executor.list_backups(name)

    return jsonify({
        'service': name,
        'backends': {
            backend: [f.to_dict() for f in files]
            for backend, files in listing[name].items()
        }
    })


@bp.route('/services/<name>/backup', methods=['POST'])
@require_api_token
def run_backup(name):
    """
    Back up a service now.

    With the scheduler running the backup is queued (202); otherwise it runs
    within the request (201).
    """
    if is_scheduler_running():
        job_id = trigger_backup_now(name)
        return jsonify({
            'message': f'Backup of {name} queued',
            'job_id': job_id
        }), 202

    artifact = _runner().backup(name)
    return jsonify({
        'message': f'Backup of {name} completed',
        'artifact': artifact.name,
        'size': artifact.size,
        'backends': list(artifact.backends)
    }), 201


@bp.route('/services/<name>/restore', methods=['POST'])
@require_api_token
def run_restore(name):
    """
    Restore an artifact into a service's directory.

    Request body:
        {"artifact": "<service>-<timestamp>.enc"}
    """
    data = request.get_json(silent=True) or {}
    artifact = data.get('artifact')

    if not artifact or not isinstance(artifact, str):
        return jsonify({'error': 'Missing required field: artifact'}), 400

    _runner().restore(name, artifact)

    return jsonify({
        'message': f'Restored {artifact} into {name}',
        'artifact': artifact
    })


@bp.route('/cleanup', methods=['POST'])
@require_api_token
def run_cleanup():
    """
    Enforce retention for all services, or for one.

    Request body (optional):
        {"service": "<name>"}
    """
    data = request.get_json(silent=True) or {}
    service = data.get('service')

    try:
        deleted = _runner().cleanup(service)
    except RetentionError as e:
        return jsonify({
            'error': str(e),
            'deleted': e.deleted,
            'errors': e.errors
        }), 500

    return jsonify({'deleted': deleted})
