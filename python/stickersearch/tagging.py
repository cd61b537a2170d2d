import hmac
import time
from typing import Callable, Optional

from colored_logger import get_colored_logger

from .errors import AuthorizationError
from .models import Tagger
from .store import StickerStore

logger = get_colored_logger(__name__)


class TaggerRegistry:
    """
    Who may attach keyword tags to stickers.

    Users register themselves; an admin who knows the shared secret then
    allows them by username.
    """

    def __init__(
        self,
        store: StickerStore,
        admin_secret: str,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.admin_secret = admin_secret or ""
        self.clock = clock

    def register(self, user_id: int, username: Optional[str]) -> Tagger:
        """
        Record a tagging request. Re-registering keeps an existing approval.

        Raises:
            ValueError: the user has no username
        """
        username = (username or "").strip().lstrip("@")
        if not username:
            raise ValueError("A username is required to register as a tagger")

        with self.store.transaction() as txn:
            existing = txn.get_tagger(user_id)
            tagger = Tagger(
                user_id=user_id,
                username=username,
                allowed=existing.allowed if existing else False,
                registered_at=existing.registered_at if existing else self.clock(),
            )
            txn.put_tagger(tagger)

        logger.info("User %s registered for tagging permission", username)
        return tagger

    def allow(self, secret: str, username: str) -> Optional[Tagger]:
        """
        Grant tagging permission.

        Returns:
            The updated tagger, or None if the username never registered

        Raises:
            AuthorizationError: wrong secret (or no secret configured)
        """
        if not self.admin_secret or not hmac.compare_digest(
            (secret or "").encode("utf-8"), self.admin_secret.encode("utf-8")
        ):
            logger.warning("Rejected /allow for %s: bad secret", username)
            raise AuthorizationError("Invalid admin secret")

        username = (username or "").strip().lstrip("@")
        with self.store.transaction() as txn:
            tagger = txn.find_tagger(username)
            if tagger is None:
                return None
            tagger = Tagger(
                user_id=tagger.user_id,
                username=tagger.username,
                allowed=True,
                registered_at=tagger.registered_at,
            )
            txn.put_tagger(tagger)

        logger.info("Allowed user %s to tag stickers", username)
        return tagger

    def get(self, user_id: int) -> Optional[Tagger]:
        with self.store.snapshot() as snap:
            return snap.get_tagger(user_id)

    def is_allowed(self, user_id: int) -> bool:
        tagger = self.get(user_id)
        return bool(tagger and tagger.allowed)
