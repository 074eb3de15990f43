import logging
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from catalog import utcnow
from database import USERS, DocumentStore, user_path
from errors import AccountInactive, FieldError, NotFoundError, ValidationError
from schemas import User

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ADMIN = "admin"
BIDDER = "bidder"


class UserDirectory:
    """Profile documents under users/{uid}"""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def get(self, user_id: str) -> User:
        return User.from_document(self.store.get(user_path(user_id)))

    def find(self, user_id: str) -> Optional[User]:
        try:
            return self.get(user_id)
        except NotFoundError:
            return None

    def register(self, user_id: str, full_name: str, email: str, is_admin: bool = False) -> User:
        errors = []
        if not full_name or len(full_name.strip()) < 2:
            errors.append(FieldError(field="fullName", message="Full name must be at least 2 characters long"))
        if not email or not EMAIL_RE.match(email):
            errors.append(FieldError(field="email", message="Please enter a valid email address"))
        if errors:
            raise ValidationError(errors)
        now = self.clock()
        user = User(
            id=user_id, uid=user_id, full_name=full_name.strip(), email=email.strip(),
            is_admin=is_admin, is_active=True, created_at=now, updated_at=now,
        )
        self.store.set(user_path(user_id), user.to_document())
        logger.info("Registered %s %s", "admin" if is_admin else "user", user_id)
        return user

    def ensure(self, user_id: str, full_name: Optional[str] = None, email: Optional[str] = None) -> User:
        """Create a bare profile for a signed-in user that has none yet"""
        user = self.find(user_id)
        if user is not None:
            return user
        now = self.clock()
        user = User(
            id=user_id, uid=user_id,
            full_name=full_name or "Anonymous User",
            email=email or "no-email@example.com",
            created_at=now, updated_at=now,
        )
        self.store.set(user_path(user_id), user.to_document())
        return user

    def role_for(self, user_id: str) -> str:
        user = self.get(user_id)
        if not user.is_active:
            raise AccountInactive(user_id)
        return ADMIN if user.is_admin else BIDDER

    def set_active(self, user_id: str, is_active: bool) -> User:
        doc = self.store.conditional_update(
            user_path(user_id), {}, {"isActive": is_active, "updatedAt": self.clock()}
        )
        logger.info("User %s %s", user_id, "enabled" if is_active else "disabled")
        return User.from_document(doc)

    def all(self) -> List[User]:
        return [User.from_document(d) for d in self.store.query(USERS)]

    def search(self, term: str = "") -> List[User]:
        term = (term or "").strip().lower()
        users = self.all()
        if term:
            users = [u for u in users if term in u.display_name.lower() or term in (u.email or "").lower()]
        return sorted(users, key=lambda u: u.display_name.lower())

    def new_users_since(self, since: datetime) -> int:
        return len(self.store.query(USERS, [("createdAt", ">=", since)]))

    def new_users_recently(self, days: int = 2) -> int:
        return self.new_users_since(self.clock() - timedelta(days=days))
