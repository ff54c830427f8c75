"""
Governance Service - Operational summary across the trust and governance components
"""
import logging
from datetime import datetime
from typing import Dict, Any
from sqlalchemy.orm import Session
from trust_governance.services.invite_graph_service import invite_graph_service
from trust_governance.services.diversity_service import diversity_service
from trust_governance.services.promotion_service import promotion_service
from trust_governance.services.recalc_queue_service import recalc_queue_service

logger = logging.getLogger(__name__)


class GovernanceService:
    """Read-only dashboard views for admins"""

    def summary(self, db: Session) -> Dict[str, Any]:
        return {
            "total_users_in_tree": invite_graph_service.tree_size(db),
            "pending_promotions": promotion_service.pending_count(db),
            "invite_blocked_users": diversity_service.blocked_count(db),
            "trust_recalc_queue_size": recalc_queue_service.queue_size(db),
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

    def invite_tree(self, db: Session) -> Dict[str, Any]:
        generations = invite_graph_service.tree_by_generation(db)
        return {
            "total": sum(len(members) for members in generations.values()),
            "generations": generations,
        }

    def pending_promotions(self, db: Session) -> Dict[str, Any]:
        requests = promotion_service.list_pending(db)
        return {
            "count": len(requests),
            "requests": [
                promotion_service.serialize_request(db, request, include_review=True)
                for request in requests
            ],
        }

    def diversity_warnings(self, db: Session) -> Dict[str, Any]:
        metrics = diversity_service.list_flagged(db)
        return {
            "count": len(metrics),
            "warnings": [diversity_service.serialize_metric(metric) for metric in metrics],
        }

    def queue_status(self, db: Session, limit: int = 100) -> Dict[str, Any]:
        return {
            "queue_size": recalc_queue_service.queue_size(db),
            "pending": recalc_queue_service.list_jobs(db, status="pending", limit=limit),
            "processing": recalc_queue_service.list_jobs(db, status="processing", limit=limit),
        }


# Singleton instance
governance_service = GovernanceService()
