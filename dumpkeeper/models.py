import json
from dumpkeeper import db
from dumpkeeper.utils.clock import utcnow


class Operator(db.Model):
    """API principal allowed to trigger runs and inspect the manifest"""
    __tablename__ = 'operators'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    token_prefix = db.Column(db.String(16), index=True, nullable=False)
    token_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<Operator {self.name}>'


class BackupSource(db.Model):
    """Backup source configuration"""
    __tablename__ = 'backup_sources'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    source_type = db.Column(db.String(20), nullable=False)  # command, ssh, file
    source_config = db.Column(db.Text, nullable=False)  # JSON string
    compression = db.Column(db.Boolean, default=True, nullable=False)
    encryption = db.Column(db.Boolean, default=False, nullable=False)
    key_ref = db.Column(db.String(255))  # Resolved by the key provider, never the key itself
    retention_policy = db.Column(db.Text, nullable=False)  # JSON string
    retention_class = db.Column(db.String(50), default='standard', nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def config(self) -> dict:
        return json.loads(self.source_config)

    @property
    def policy(self) -> dict:
        return json.loads(self.retention_policy)

    def __repr__(self):
        return f'<BackupSource {self.name} type={self.source_type} enabled={self.enabled}>'


class ManifestEntry(db.Model):
    """One artifact and its lifecycle state"""
    __tablename__ = 'artifacts'

    id = db.Column(db.Integer, primary_key=True)
    artifact_id = db.Column(db.String(300), unique=True, nullable=False)
    source_id = db.Column(db.String(255), index=True, nullable=False)
    run_id = db.Column(db.String(32), index=True)
    created_at = db.Column(db.DateTime, nullable=False)
    size_bytes = db.Column(db.BigInteger)
    digest = db.Column(db.String(100))  # sha256:<hex> of the stored bytes
    compressed = db.Column(db.Boolean, nullable=False)
    encrypted = db.Column(db.Boolean, nullable=False)
    key_ref = db.Column(db.String(255))
    storage_key = db.Column(db.String(500), nullable=False)
    retention_class = db.Column(db.String(50), default='standard', nullable=False)
    state = db.Column(db.String(20), index=True, nullable=False)  # pending, stored, verified, expiring, deleted, orphaned
    state_changed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    verified_at = db.Column(db.DateTime)
    deleted_at = db.Column(db.DateTime)

    def __repr__(self):
        return f'<ManifestEntry {self.artifact_id} state={self.state}>'


class RunRecord(db.Model):
    """Audit record of one orchestration run"""
    __tablename__ = 'runs'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), unique=True, nullable=False)
    source_id = db.Column(db.String(255), index=True, nullable=False)
    state = db.Column(db.String(20), nullable=False)  # last state machine state reached
    outcome = db.Column(db.String(20))  # success, partial, failed; NULL while running
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    finished_at = db.Column(db.DateTime)
    duration_ms = db.Column(db.Integer)
    artifact_ids = db.Column(db.Text, default='[]', nullable=False)  # JSON list
    bytes_written = db.Column(db.BigInteger, default=0, nullable=False)
    expired_count = db.Column(db.Integer, default=0, nullable=False)
    error_detail = db.Column(db.Text)
    logs = db.Column(db.Text)

    @property
    def artifact_id_list(self) -> list:
        return json.loads(self.artifact_ids or '[]')

    def __repr__(self):
        return f'<RunRecord {self.run_id} source={self.source_id} outcome={self.outcome}>'


class RunLock(db.Model):
    """Lease held by the run currently backing up a source"""
    __tablename__ = 'run_locks'

    source_id = db.Column(db.String(255), primary_key=True)
    holder = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime, nullable=False)
    heartbeat_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    def __repr__(self):
        return f'<RunLock {self.source_id} holder={self.holder}>'
