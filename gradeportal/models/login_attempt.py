from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gradeportal.db.base import Base


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    # Autoincrement id doubles as the per-identity submission order.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    identity: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_login_attempts_identity_attempted_at", "identity", "attempted_at"),
        Index("ix_login_attempts_attempted_at", "attempted_at"),
    )
