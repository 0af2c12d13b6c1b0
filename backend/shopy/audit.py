import math
from datetime import datetime
from typing import Dict, Optional

from flask import current_app

from .helpers import isoformat, normalize_email, sanitize_metadata


def record_audit_log(db, actor, action: str, metadata: Optional[Dict] = None):
    if not action:
        return
    try:
        actor_email = normalize_email(actor.get("email") if isinstance(actor, dict) else actor)
        db.audit_logs.insert_one(
            {
                "user_email": actor_email or None,
                "user_name": (actor.get("name", "") if isinstance(actor, dict) else "") or "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": datetime.utcnow(),
            }
        )
    except Exception as exc:
        current_app.logger.warning("Unable to record audit log: %s", exc)


def serialize_audit_log(document):
    if not document:
        return {}
    metadata = document.get("metadata")
    return {
        "id": str(document.get("_id")),
        "userEmail": document.get("user_email") or "",
        "userName": document.get("user_name") or "",
        "action": document.get("action") or "",
        "metadata": metadata if isinstance(metadata, dict) else {},
        "createdAt": isoformat(document.get("created_at")),
    }


def list_audit_logs(db, query: Dict, page: int, limit: int) -> Dict[str, object]:
    skip = (page - 1) * limit
    cursor = db.audit_logs.find(query).sort("created_at", -1).skip(skip).limit(limit)
    total = db.audit_logs.count_documents(query)
    return {
        "logs": [serialize_audit_log(document) for document in cursor],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
