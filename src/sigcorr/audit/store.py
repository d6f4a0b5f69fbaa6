from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sigcorr.core.clock import Clock, utcnow
from sigcorr.grouping.engine import KeyLocks
from sigcorr.metrics.engine_metrics import record_side_effect_failure
from sigcorr.models.incident import AuditLog, User

logger = logging.getLogger(__name__)

# Serializes chain-head reads per workspace within the process
_CHAIN_LOCKS = KeyLocks(stripes=16)


class AuditSink:
    """Audit facts stored in the ``audit_logs`` table.

    Each row carries an integrity hash computed over {ts, workspace, actor,
    action, resource, metadata, prev} using SHA256, where ``prev`` is the
    hash of the previous row in the same workspace. Each workspace keeps its
    own chain. Emission is best effort: a failed write is
    logged and rolled back to a savepoint, never raised.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock

    def _compute_hash(self, payload: Dict[str, Any]) -> str:
        blob = json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()

    def resolve_actor(self, db: Session, workspace_id: str) -> Optional[str]:
        """Any member of the workspace stands in as the system actor."""
        user = (
            db.query(User)
            .filter(User.workspace_id == workspace_id)
            .order_by(User.created_at.asc(), User.id.asc())
            .first()
        )
        return user.id if user else None

    def emit(
        self,
        db: Session,
        workspace_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor_user_id: Optional[str] = None,
    ) -> Optional[AuditLog]:
        try:
            with _CHAIN_LOCKS.for_key(workspace_id, "audit"), db.begin_nested():
                actor = actor_user_id or self.resolve_actor(db, workspace_id)
                if actor is None:
                    logger.debug("No audit actor in workspace %s, skipping %s", workspace_id, action)
                    return None
                prev = (
                    db.query(AuditLog.hash)
                    .filter(AuditLog.workspace_id == workspace_id)
                    .order_by(AuditLog.id.desc())
                    .with_for_update()
                    .first()
                )
                ts = self.clock()
                base = {
                    "ts": ts.isoformat(),
                    "workspace_id": workspace_id,
                    "actor": actor,
                    "action": action,
                    "resource": f"{resource_type}:{resource_id}",
                    "metadata": metadata or {},
                    "prev": prev[0] if prev else None,
                }
                entry = AuditLog(
                    ts=ts,
                    workspace_id=workspace_id,
                    actor_user_id=actor,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    meta=metadata or {},
                    hash=self._compute_hash(base),
                )
                db.add(entry)
                db.flush()
            return entry
        except SQLAlchemyError as e:
            logger.warning("Failed to emit audit %s for %s:%s: %s", action, resource_type, resource_id, e)
            record_side_effect_failure("audit")
            return None

    def tail(self, db: Session, workspace_id: str, limit: int = 100) -> List[AuditLog]:
        if limit <= 0:
            return []
        return (
            db.query(AuditLog)
            .filter(AuditLog.workspace_id == workspace_id)
            .order_by(AuditLog.id.desc())
            .limit(limit)
            .all()
        )

    def verify_chain(self, db: Session, workspace_id: Optional[str] = None) -> Dict[str, Any]:
        """Recompute every hash and check each row links to its workspace predecessor.

        With ``workspace_id`` only that workspace's chain is checked.
        """
        q = db.query(AuditLog)
        if workspace_id is not None:
            q = q.filter(AuditLog.workspace_id == workspace_id)
        rows = q.order_by(AuditLog.id.asc()).all()
        heads: Dict[str, Optional[str]] = {}
        for idx, row in enumerate(rows):
            base = {
                "ts": row.ts.isoformat(),
                "workspace_id": row.workspace_id,
                "actor": row.actor_user_id,
                "action": row.action,
                "resource": f"{row.resource_type}:{row.resource_id}",
                "metadata": row.meta or {},
                "prev": heads.get(row.workspace_id),
            }
            if self._compute_hash(base) != row.hash:
                return {
                    "ok": False,
                    "entries": idx + 1,
                    "failure_index": idx,
                    "workspace_id": row.workspace_id,
                    "reason": "hash_mismatch",
                }
            heads[row.workspace_id] = row.hash
        result: Dict[str, Any] = {"ok": True, "entries": len(rows), "heads": heads}
        if workspace_id is not None:
            result["last_hash"] = heads.get(workspace_id)
        return result
