from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from app.common.base_models import TimestampMixin, UUIDBase


class User(UUIDBase, TimestampMixin):
    """Document owner.

    Accounts are provisioned and issued credentials by the surrounding product;
    this service only resolves the owner behind a verified bearer token.
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
