"""
Services package - Business logic layer
"""
from trust_governance.services.signal_client import signal_client
from trust_governance.services.trust_score_service import trust_score_service
from trust_governance.services.recalc_queue_service import recalc_queue_service
from trust_governance.services.diversity_service import diversity_service
from trust_governance.services.invite_code_service import invite_code_service
from trust_governance.services.invite_graph_service import invite_graph_service
from trust_governance.services.promotion_service import promotion_service
from trust_governance.services.moderation_gateway import moderation_gateway
from trust_governance.services.appeal_service import appeal_service
from trust_governance.services.jury_service import jury_service
from trust_governance.services.governance_service import governance_service

__all__ = [
    "signal_client",
    "trust_score_service",
    "recalc_queue_service",
    "diversity_service",
    "invite_code_service",
    "invite_graph_service",
    "promotion_service",
    "moderation_gateway",
    "appeal_service",
    "jury_service",
    "governance_service"
]
