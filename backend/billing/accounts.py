"""Account lookup — the billing collaborator's read side."""
import logging

from core.exceptions import StoreError, UserNotFoundError
from schemas.account import UserAccount

logger = logging.getLogger(__name__)


async def load_account(store, user_id: str) -> UserAccount:
    """Fetch the user's billing facts. Raises UserNotFoundError if absent.

    Limits are never defaulted for a missing record: an unknown user must not
    be metered against an invented budget. Store failures propagate as
    StoreError.
    """
    try:
        doc = await store.get_user(user_id)
    except StoreError as e:
        logger.error("Account lookup failed: user=%s error=%s", user_id, e.message)
        raise
    if doc is None:
        logger.error("Account missing: user=%s", user_id)
        raise UserNotFoundError()
    doc.pop("_id", None)
    return UserAccount(**{**doc, "user_id": user_id})
