"""
Backup sources routes - CRUD operations and run triggers.
"""

import re
import json
from flask import Blueprint, jsonify, request
from flask_login import login_required

from dumpkeeper import db
from dumpkeeper.models import BackupSource
from dumpkeeper.backup.errors import LockContentionError, RetentionPolicyError
from dumpkeeper.backup.executor import get_orchestrator
from dumpkeeper.backup.retention import RetentionPolicy
from dumpkeeper.backup.sources import SOURCE_TYPES
from dumpkeeper.utils.clock import isoformat


bp = Blueprint('sources', __name__, url_prefix='/api/sources')

# Names end up in storage keys and artifact ids
NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$')
RESERVED_NAMES = {'runs'}


def source_to_dict(source: BackupSource, include_config: bool = False) -> dict:
    data = {
        'id': source.id,
        'name': source.name,
        'description': source.description,
        'enabled': source.enabled,
        'source_type': source.source_type,
        'compression': source.compression,
        'encryption': source.encryption,
        'key_ref': source.key_ref,
        'retention_policy': source.policy,
        'retention_class': source.retention_class,
        'created_at': isoformat(source.created_at),
        'updated_at': isoformat(source.updated_at)
    }
    if include_config:
        data['source_config'] = source.config
    return data


BOOLEAN_FIELDS = ('enabled', 'compression', 'encryption')
STRING_FIELDS = ('name', 'description', 'source_type', 'key_ref', 'retention_class')


def _check_field_types(data: dict):
    """Return an error message for the first field with a wrong JSON type."""
    for field in BOOLEAN_FIELDS:
        if field in data and not isinstance(data[field], bool):
            return f'{field} must be true or false'
    for field in STRING_FIELDS:
        if data.get(field) is not None and not isinstance(data[field], str):
            return f'{field} must be a string'
    return None


def _validate_policy(policy):
    try:
        return RetentionPolicy.from_dict(policy).to_dict(), None
    except RetentionPolicyError as e:
        return None, str(e)


@bp.route('/', methods=['GET'])
@login_required
def list_sources():
    """
    Get list of all backup sources.

    Returns:
        JSON array of backup sources
    """
    sources = BackupSource.query.order_by(BackupSource.name).all()
    return jsonify([source_to_dict(source) for source in sources])


@bp.route('/<name>', methods=['GET'])
@login_required
def get_source(name):
    """
    Get a single backup source by name, including its source_config.
    """
    source = BackupSource.query.filter_by(name=name).first_or_404()
    return jsonify(source_to_dict(source, include_config=True))


@bp.route('/', methods=['POST'])
@login_required
def create_source():
    """
    Create a new backup source.

    Request body:
        - name: Source name (required, letters, digits, '.', '_' and '-')
        - description: Source description (optional)
        - enabled: Enable source (default: true)
        - source_type: 'command', 'ssh' or 'file' (required)
        - source_config: Source configuration object (required)
        - compression: Gzip artifacts (default: true)
        - encryption: Encrypt artifacts (default: false)
        - key_ref: Key reference (required when encryption is enabled)
        - retention_policy: Retention policy object (required)
        - retention_class: Free-form label copied to artifacts (default: standard)

    Returns:
        JSON with created source details
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Request body must be a JSON object'}), 400

    error = _check_field_types(data)
    if error:
        return jsonify({'error': error}), 400

    # Validate required fields
    name = data.get('name')
    if not name:
        return jsonify({'error': 'Source name is required'}), 400

    if not NAME_PATTERN.match(name) or name in RESERVED_NAMES:
        return jsonify({'error': 'Invalid source name'}), 400

    if data.get('source_type') not in SOURCE_TYPES:
        return jsonify({'error': f'Invalid source type. Valid options: {list(SOURCE_TYPES)}'}), 400

    if not isinstance(data.get('source_config'), dict):
        return jsonify({'error': 'Source configuration is required'}), 400

    if data.get('encryption') and not data.get('key_ref'):
        return jsonify({'error': 'key_ref is required when encryption is enabled'}), 400

    if 'retention_policy' not in data:
        return jsonify({'error': 'Retention policy is required'}), 400

    policy, error = _validate_policy(data['retention_policy'])
    if error:
        return jsonify({'error': f'Invalid retention policy: {error}'}), 400

    # Check if source name already exists
    if BackupSource.query.filter_by(name=name).first():
        return jsonify({'error': 'Source name already exists'}), 400

    source = BackupSource(
        name=name,
        description=data.get('description', ''),
        enabled=data.get('enabled', True),
        source_type=data['source_type'],
        source_config=json.dumps(data['source_config']),
        compression=data.get('compression', True),
        encryption=data.get('encryption', False),
        key_ref=data.get('key_ref'),
        retention_policy=json.dumps(policy),
        retention_class=data.get('retention_class') or 'standard'
    )

    db.session.add(source)
    db.session.commit()

    return jsonify(source_to_dict(source)), 201


@bp.route('/<name>', methods=['PUT'])
@login_required
def update_source(name):
    """
    Update an existing backup source.

    Request body: Same as create_source (all fields optional). The name
    cannot be changed, artifacts are filed under it.
    """
    source = BackupSource.query.filter_by(name=name).first_or_404()
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Request body must be a JSON object'}), 400

    error = _check_field_types(data)
    if error:
        return jsonify({'error': error}), 400

    if 'name' in data and data['name'] != source.name:
        return jsonify({'error': 'Source name cannot be changed'}), 400

    if 'description' in data:
        source.description = data['description']

    if 'enabled' in data:
        source.enabled = data['enabled']

    if 'source_type' in data:
        if data['source_type'] not in SOURCE_TYPES:
            return jsonify({'error': f'Invalid source type. Valid options: {list(SOURCE_TYPES)}'}), 400
        source.source_type = data['source_type']

    if 'source_config' in data:
        if not isinstance(data['source_config'], dict):
            return jsonify({'error': 'Source configuration must be an object'}), 400
        source.source_config = json.dumps(data['source_config'])

    if 'compression' in data:
        source.compression = data['compression']

    if 'encryption' in data:
        source.encryption = data['encryption']

    if 'key_ref' in data:
        source.key_ref = data['key_ref']

    if source.encryption and not source.key_ref:
        db.session.rollback()
        return jsonify({'error': 'key_ref is required when encryption is enabled'}), 400

    if 'retention_policy' in data:
        policy, error = _validate_policy(data['retention_policy'])
        if error:
            db.session.rollback()
            return jsonify({'error': f'Invalid retention policy: {error}'}), 400
        source.retention_policy = json.dumps(policy)

    if 'retention_class' in data:
        source.retention_class = data['retention_class'] or 'standard'

    db.session.commit()

    return jsonify(source_to_dict(source))


@bp.route('/<name>', methods=['DELETE'])
@login_required
def delete_source(name):
    """
    Delete a backup source. Its artifacts and run records are kept.
    """
    source = BackupSource.query.filter_by(name=name).first_or_404()
    db.session.delete(source)
    db.session.commit()

    return jsonify({'message': f'Backup source {name} deleted successfully'})


@bp.route('/<name>/runs', methods=['POST'])
@login_required
def run_source(name):
    """
    Run a backup of one source now (disabled sources included).

    Returns:
        JSON run report, 409 if a run of this source is already in progress
    """
    source = BackupSource.query.filter_by(name=name).first_or_404()

    try:
        report = get_orchestrator().run_once(source.name, allow_disabled=True)
    except LockContentionError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify(report.to_dict())


@bp.route('/runs', methods=['POST'])
@login_required
def run_all_sources():
    """
    Run all enabled sources, or the ones named in the request body.

    Request body (optional):
        - sources: List of source names

    Returns:
        JSON with one run report (or null when skipped) per source
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    names = data.get('sources')
    if names is not None and (not isinstance(names, list) or not all(isinstance(n, str) for n in names)):
        return jsonify({'error': 'sources must be a list of names'}), 400

    reports = get_orchestrator().run_many(names)

    return jsonify({
        'runs': {
            name: report.to_dict() if report is not None else None
            for name, report in reports.items()
        }
    })
