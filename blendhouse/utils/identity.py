from dataclasses import dataclass
from typing import Optional

from .errors import ValidationError


USER = "user"
GUEST = "guest"


@dataclass(frozen=True)
class CartRef:
    """Explicit owner of a cart: an authenticated user or a guest session."""

    owner_kind: str
    owner_id: str

    def __post_init__(self):
        if self.owner_kind not in (USER, GUEST):
            raise ValueError(f"unknown cart owner kind: {self.owner_kind}")
        if not self.owner_id:
            raise ValidationError("Cart owner id is required")

    @classmethod
    def for_user(cls, user_id: str) -> "CartRef":
        return cls(USER, user_id)

    @classmethod
    def for_guest(cls, session_id: str) -> "CartRef":
        return cls(GUEST, session_id)

    @property
    def is_guest(self) -> bool:
        return self.owner_kind == GUEST

    @property
    def user_id(self) -> Optional[str]:
        return self.owner_id if self.owner_kind == USER else None

    @property
    def session_id(self) -> Optional[str]:
        return self.owner_id if self.owner_kind == GUEST else None


@dataclass(frozen=True)
class Identity:
    """Verified caller identity handed over by the external auth layer."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def cart_ref(self) -> CartRef:
        # an authenticated user always shops with their own cart
        if self.user_id:
            return CartRef.for_user(self.user_id)
        if self.session_id:
            return CartRef.for_guest(self.session_id)
        raise ValidationError("Either authentication or a guest session id is required")

    @property
    def actor(self) -> Optional[str]:
        return self.user_id
