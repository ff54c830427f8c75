"""
Moderation Gateway - The content pipeline's state as seen by appeals

Supplies whether a post is flagged and receives the pending re-review
transition when an appeal succeeds.
"""
import logging
from typing import Optional
from sqlalchemy.orm import Session
from trust_governance.db.models import Post, POST_FLAGGED, POST_PENDING_REVIEW

logger = logging.getLogger(__name__)


class ModerationGateway:
    """Reads and transitions post moderation state"""

    def get_post(self, db: Session, post_id: int) -> Optional[Post]:
        return db.query(Post).filter(Post.id == post_id).first()

    def is_flagged(self, post: Post) -> bool:
        return post.approval_status == POST_FLAGGED

    def mark_pending_review(self, db: Session, post_id: int) -> bool:
        """Move a flagged post back into the review queue (no commit)"""
        updated = db.query(Post).filter(
            Post.id == post_id,
            Post.approval_status == POST_FLAGGED
        ).update({Post.approval_status: POST_PENDING_REVIEW}, synchronize_session=False)
        if not updated:
            logger.warning(f"Post {post_id} was no longer flagged when its appeal succeeded")
        return bool(updated)


# Singleton instance
moderation_gateway = ModerationGateway()
