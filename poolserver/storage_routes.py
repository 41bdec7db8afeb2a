from flask import Blueprint, current_app, jsonify, request

from storage_pool.errors import ErrorKind


storage_bp = Blueprint('storage_bp', __name__, url_prefix='/api/storage')

HTTP_STATUS = {
    ErrorKind.INVALID_INPUT.value: 400,
    ErrorKind.DEVICE_NOT_FOUND.value: 400,
    ErrorKind.POOL_INVARIANT_VIOLATION.value: 400,
    ErrorKind.REQUIRES_CONFIRMATION.value: 409,
    ErrorKind.OPERATION_IN_PROGRESS.value: 409,
}


def _service():
    return current_app.extensions['storage_pool']


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _flag(value):
    if isinstance(value, str):
        return value.strip().lower() in {'true', '1', 'yes', 'on'}
    return value is True or value == 1


def _respond(result):
    if result.success:
        return jsonify(result.to_dict())
    return jsonify(result.to_dict()), HTTP_STATUS.get(result.error_kind, 500)


@storage_bp.route('/disks', methods=['GET'])
def api_list_disks():
    """Configured and newly detected disks."""
    return _respond(_service().scan())


@storage_bp.route('/disks/ignored', methods=['GET'])
def api_list_ignored():
    return _respond(_service().list_ignored())


@storage_bp.route('/disks/add-to-pool', methods=['POST'])
def api_add_to_pool():
    """Body: {disk_id, role: data|cache|parity, format, force}"""
    body = _body()
    return _respond(_service().add_disk(
        body.get('disk_id'),
        body.get('role', 'data'),
        format=_flag(body.get('format', False)),
        force=_flag(body.get('force', False)),
    ))


@storage_bp.route('/disks/remove-from-pool', methods=['POST'])
def api_remove_from_pool():
    return _respond(_service().remove_disk(_body().get('disk_id')))


@storage_bp.route('/disks/mount-standalone', methods=['POST'])
def api_mount_standalone():
    """Body: {disk_id, name, format}"""
    body = _body()
    return _respond(_service().mount_standalone(
        body.get('disk_id'),
        body.get('name'),
        format=_flag(body.get('format', False)),
    ))


@storage_bp.route('/disks/ignore', methods=['POST'])
def api_ignore_disk():
    return _respond(_service().ignore_disk(_body().get('disk_id')))


@storage_bp.route('/disks/unignore', methods=['POST'])
def api_unignore_disk():
    return _respond(_service().unignore_disk(_body().get('disk_id')))


@storage_bp.route('/pool/configure', methods=['POST'])
def api_configure_pool():
    """Body: {disks: [{disk_id, role, format}, ...]}"""
    return _respond(_service().reconfigure(_body().get('disks')))


@storage_bp.route('/pool/status', methods=['GET'])
def api_pool_status():
    return _respond(_service().pool_status())


@storage_bp.route('/operation', methods=['GET'])
def api_operation_status():
    return jsonify(_service().operation_status())


@storage_bp.route('/snapraid/sync', methods=['POST'])
def api_snapraid_sync():
    return _respond(_service().start_sync())


@storage_bp.route('/snapraid/sync/progress', methods=['GET'])
def api_snapraid_sync_progress():
    return jsonify(_service().sync_progress())


@storage_bp.route('/snapraid/scrub', methods=['POST'])
def api_snapraid_scrub():
    return _respond(_service().scrub(_body().get('percent', 10)))


@storage_bp.route('/snapraid/status', methods=['GET'])
def api_snapraid_status():
    return _respond(_service().snapraid_status())
