import logging
from typing import Callable, Optional
from uuid import UUID

from pydantic import ValidationError as ModelValidationError
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import NotFoundError, ValidationError
from .models import RegisterUserRequest, User
from .notifications import NotificationDispatcher
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

PinVerifier = Callable[[str, str], bool]


class UserDirectory:
    def __init__(
        self,
        storage: InMemoryStorage,
        notifications: NotificationDispatcher,
        pin_verifier: PinVerifier = check_password_hash,
    ):
        self.storage = storage
        self.notifications = notifications
        self.pin_verifier = pin_verifier

    def register_user(self, request: RegisterUserRequest) -> User:
        if not request.pin.isdigit():
            raise ValidationError("PIN must contain digits only")
        if request.referred_by is not None:
            try:
                self.storage.get_user(request.referred_by)
            except NotFoundError:
                raise ValidationError(f"Referrer {request.referred_by} does not exist")
        try:
            user = User(
                full_name=request.full_name,
                phone=request.phone,
                email=request.email,
                role=request.role,
                referred_by=request.referred_by,
                pin_hash=generate_password_hash(request.pin),
            )
        except ModelValidationError as e:
            raise ValidationError(str(e)) from e
        self.storage.put_user(user)
        logger.info("Registered user %s", user.id)
        return user

    def get_user(self, user_id: UUID) -> User:
        return self.storage.get_user(user_id)

    def require_active(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if not user.is_active:
            raise ValidationError(f"User {user_id} is deactivated")
        return user

    def verify_pin(self, user: User, pin: str) -> None:
        if not user.pin_hash:
            raise ValidationError("Transaction PIN not set")
        if not pin or not self.pin_verifier(user.pin_hash, pin):
            raise ValidationError("Invalid transaction PIN")

    def set_user_status(self, user_id: UUID, active: bool, reason: Optional[str] = None) -> User:
        with self.storage.user_lock(user_id):
            user = self.storage.get_user(user_id)
            user.is_active = active
            self.storage.put_user(user)
        state = "activated" if active else "deactivated"
        logger.info("User %s %s. Reason: %s", user_id, state, reason)
        message = f"Your account has been {state}."
        if reason:
            message += f" Reason: {reason}"
        self.notifications.notify(user_id, "account_status", message)
        return user
