"""Employee profile created for every organization member.

The admin who provisions an organization gets one immediately; the
rest are created from invites and imports.
"""

import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from worktally.database import Base, TenantMixin


def default_pto() -> dict:
    return {
        "vacation": {
            "beginningBalance": 0,
            "ongoingBalance": 0,
            "firstYearRule": 40,
            "used": 0,
        },
        "sickLeave": {
            "beginningBalance": 0,
            "used": 0,
        },
    }


class Employee(TenantMixin, Base):
    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    member_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("organization_members.id", ondelete="SET NULL"), index=True
    )
    user_id: Mapped[str | None] = mapped_column(String(36), index=True)
    email: Mapped[str] = mapped_column(String(255), default="")
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    role: Mapped[str] = mapped_column(String(20), default="employee")
    status: Mapped[str] = mapped_column(String(20), default="active")
    start_date: Mapped[date | None] = mapped_column(Date, default=date.today)
    pto: Mapped[dict | None] = mapped_column(JSON, default=default_pto)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
