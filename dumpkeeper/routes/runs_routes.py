"""
Run history routes - View orchestration run records.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from dumpkeeper.models import RunRecord
from dumpkeeper.backup.executor import OUTCOMES
from dumpkeeper.utils.clock import isoformat


bp = Blueprint('runs', __name__, url_prefix='/api/runs')


def run_to_dict(record: RunRecord, include_logs: bool = False) -> dict:
    data = {
        'run_id': record.run_id,
        'source_id': record.source_id,
        'state': record.state,
        'outcome': record.outcome,
        'started_at': isoformat(record.started_at),
        'finished_at': isoformat(record.finished_at),
        'duration_ms': record.duration_ms,
        'artifact_ids': record.artifact_id_list,
        'bytes_written': record.bytes_written,
        'expired_count': record.expired_count,
        'error_detail': record.error_detail,
        'has_logs': bool(record.logs)
    }
    if include_logs:
        data['logs'] = record.logs
    return data


@bp.route('/', methods=['GET'])
@login_required
def list_runs():
    """
    Get run records with filtering and pagination.

    Query params:
        - source: Filter by source name
        - outcome: Filter by outcome (success/partial/failed/running)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    source_filter = request.args.get('source')
    outcome_filter = request.args.get('outcome')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0

    query = RunRecord.query

    if source_filter:
        query = query.filter(RunRecord.source_id == source_filter)

    if outcome_filter:
        if outcome_filter == 'running':
            query = query.filter(RunRecord.outcome.is_(None))
        elif outcome_filter in OUTCOMES:
            query = query.filter(RunRecord.outcome == outcome_filter)
        else:
            return jsonify({'error': 'Invalid outcome filter'}), 400

    total_count = query.count()

    records = query.order_by(
        RunRecord.started_at.desc(), RunRecord.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [run_to_dict(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<run_id>', methods=['GET'])
@login_required
def get_run(run_id):
    """
    Get a single run record including its logs.
    """
    record = RunRecord.query.filter_by(run_id=run_id).first_or_404()
    return jsonify(run_to_dict(record, include_logs=True))
