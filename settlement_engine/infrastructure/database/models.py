"""SQLAlchemy ORM models for groups, the debt ledger, and settlements"""

import uuid
from sqlalchemy import (
    Column,
    String,
    BigInteger,
    DateTime,
    Integer,
    ForeignKey,
    Text,
    JSON,
    Uuid,
    Index,
    CheckConstraint,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from settlement_engine.utils.time_utils import utcnow

Base = declarative_base()

IN_FLIGHT_CLAUSE = "status IN ('pending', 'processing')"


class GroupMember(Base):
    """Roster entry so members without debts still show as settled"""

    __tablename__ = "group_member"
    __table_args__ = (UniqueConstraint("group_id", "member_id", name="uq_group_member"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Text, nullable=False, index=True)
    member_id = Column(Text, nullable=False)
    display_name = Column(Text, nullable=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)


class GroupDebt(Base):
    """
    Ledger entry: from_member owes to_member.

    Completed settlements land here as reverse entries (kind="settlement"), so
    balances are always derived from active rows. Simplifying a group marks the
    current rows superseded and writes the plan's transfers (kind="simplified").
    """

    __tablename__ = "group_debt"
    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_group_debt_amount_positive"),
        CheckConstraint("from_member_id <> to_member_id", name="ck_group_debt_no_self_debt"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Text, nullable=False, index=True)
    from_member_id = Column(Text, nullable=False)
    to_member_id = Column(Text, nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    kind = Column(Text, nullable=False, default="debt")  # debt | settlement | simplified
    settlement_id = Column(Uuid, ForeignKey("settlement.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    superseded_at = Column(DateTime, nullable=True)


class Settlement(Base):
    """One money-movement attempt between two members"""

    __tablename__ = "settlement"
    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_settlement_amount_positive"),
        CheckConstraint("from_member_id <> to_member_id", name="ck_settlement_no_self_payment"),
        # At most one in-flight settlement per ordered pair; makes create a conditional insert
        Index(
            "uq_settlement_in_flight",
            "group_id",
            "from_member_id",
            "to_member_id",
            unique=True,
            postgresql_where=text(IN_FLIGHT_CLAUSE),
            sqlite_where=text(IN_FLIGHT_CLAUSE),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Text, nullable=False, index=True)
    from_member_id = Column(Text, nullable=False)
    to_member_id = Column(Text, nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Text, nullable=False, default="pending", index=True)
    payment_method = Column(Text, nullable=False)
    transaction_ref = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    history = relationship(
        "SettlementStatusHistory",
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementStatusHistory.id",
    )


class SettlementStatusHistory(Base):
    """Audit trail of applied status transitions"""

    __tablename__ = "settlement_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    settlement_id = Column(Uuid, ForeignKey("settlement.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utcnow)

    settlement = relationship("Settlement", back_populates="history")


class OutboxEvent(Base):
    """Realtime event queue written in the same transaction as the state change"""

    __tablename__ = "outbox_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Text, nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    last_attempt_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
