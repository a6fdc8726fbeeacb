"""
Artifact routes - Inspect the manifest and verify stored artifacts.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from dumpkeeper.models import ManifestEntry
from dumpkeeper.backup.errors import ArtifactNotFoundError, StorageError
from dumpkeeper.backup.executor import get_orchestrator
from dumpkeeper.backup.manifest import STATES
from dumpkeeper.utils.clock import isoformat


bp = Blueprint('artifacts', __name__, url_prefix='/api/artifacts')


def artifact_to_dict(entry: ManifestEntry) -> dict:
    return {
        'artifact_id': entry.artifact_id,
        'source_id': entry.source_id,
        'run_id': entry.run_id,
        'created_at': isoformat(entry.created_at),
        'size_bytes': entry.size_bytes,
        'size_mb': round(entry.size_bytes / 1024 / 1024, 2) if entry.size_bytes else None,
        'digest': entry.digest,
        'compressed': entry.compressed,
        'encrypted': entry.encrypted,
        'key_ref': entry.key_ref,
        'storage_key': entry.storage_key,
        'retention_class': entry.retention_class,
        'state': entry.state,
        'state_changed_at': isoformat(entry.state_changed_at),
        'verified_at': isoformat(entry.verified_at),
        'deleted_at': isoformat(entry.deleted_at)
    }


@bp.route('/', methods=['GET'])
@login_required
def list_artifacts():
    """
    Get manifest entries, newest first.

    Query params:
        - source: Filter by source name
        - state: Filter by lifecycle state
    """
    source_filter = request.args.get('source')
    state_filter = request.args.get('state')

    query = ManifestEntry.query

    if source_filter:
        query = query.filter(ManifestEntry.source_id == source_filter)

    if state_filter:
        if state_filter not in STATES:
            return jsonify({'error': f'Invalid state filter. Valid options: {list(STATES)}'}), 400
        query = query.filter(ManifestEntry.state == state_filter)

    entries = query.order_by(ManifestEntry.created_at.desc(), ManifestEntry.artifact_id.desc()).all()
    return jsonify([artifact_to_dict(entry) for entry in entries])


@bp.route('/<artifact_id>', methods=['GET'])
@login_required
def get_artifact(artifact_id):
    entry = ManifestEntry.query.filter_by(artifact_id=artifact_id).first_or_404()
    return jsonify(artifact_to_dict(entry))


@bp.route('/<artifact_id>/verify', methods=['POST'])
@login_required
def verify_artifact(artifact_id):
    """
    Read an artifact back from storage and compare it with its recorded digest.

    Returns:
        JSON verification result, 404 if the artifact has no live object,
        502 if storage could not be read
    """
    ManifestEntry.query.filter_by(artifact_id=artifact_id).first_or_404()

    try:
        result = get_orchestrator().verify_artifact(artifact_id)
    except ArtifactNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except StorageError as e:
        return jsonify({'error': str(e)}), 502

    return jsonify(result)
