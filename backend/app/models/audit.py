"""
Audit models - record of administrative actions on orders.
"""

from typing import Optional

from sqlalchemy import String, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDMixin, CreatedAtMixin


class AuditLog(Base, UUIDMixin, CreatedAtMixin):
    """
    Audit trail for admin actions (payment verification, cancellation, deletion).

    entity_id is deliberately not a foreign key: the log must outlive a
    deleted order.
    """
    __tablename__ = "audit_logs"

    actor_id: Mapped[Optional[str]] = mapped_column(String(36))
    actor_type: Mapped[str] = mapped_column(String(20), default="human")  # human, system

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)

    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action_type", "action", "entity_type"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_created", "created_at"),
    )
