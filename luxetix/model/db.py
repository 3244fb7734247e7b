from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# Catalog + inventory
# ----------------------------
class Concert(Base):
    __tablename__ = "concerts"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    artist = Column(String, nullable=False)
    venue = Column(String, nullable=False)
    city = Column(String, nullable=False)
    starts_at = Column(Float, nullable=True)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True)
    concert_id = Column(String, ForeignKey("concerts.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # smallest currency unit
    total_quantity = Column(Integer, nullable=False)
    # only ever touched by the ledger's conditional updates
    available_quantity = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= total_quantity",
            name="ck_tier_available_bounds",
        ),
    )


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(String, primary_key=True)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    qty = Column(Integer, nullable=False)
    # held | consumed | released
    status = Column(String, nullable=False, default="held")
    created_at = Column(Float, nullable=False)
    settled_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_reservation_qty"),
    )


# ----------------------------
# Orders
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)
    # ticket | agent_registration
    kind = Column(String, nullable=False, default="ticket")

    # pending | awaiting_payment | paid | expired | failed | cancelled
    status = Column(String, nullable=False, default="pending")
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="IDR")

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=True)
    user_id = Column(String, nullable=True)

    payment_method = Column(String, nullable=True)
    payment_id = Column(String, nullable=True, index=True)

    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    fulfilled_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(status = 'paid') = (paid_at IS NOT NULL)",
            name="ck_order_paid_at",
        ),
        Index("ix_orders_status_expires", "status", "expires_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    subtotal = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_item_quantity"),
        CheckConstraint("subtotal = quantity * unit_price",
                        name="ck_item_subtotal"),
    )


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_item_id = Column(String,
                           ForeignKey("order_items.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    code = Column(String, nullable=False, unique=True)
    # issued | redeemed
    state = Column(String, nullable=False, default="issued")
    issued_at = Column(Float, nullable=False)
    redeemed_at = Column(Float, nullable=True)
    redeemed_by = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_item_id", "seq", name="uq_ticket_item_seq"),
        CheckConstraint(
            "(state = 'redeemed') = (redeemed_at IS NOT NULL)",
            name="ck_ticket_redeemed_at",
        ),
    )


# ----------------------------
# Webhook dedup
# ----------------------------
class PaymentCallbackEvent(Base):
    __tablename__ = "payment_callback_events"
    event_id = Column(String, primary_key=True)
    order_id = Column(String, nullable=True, index=True)
    reference = Column(String, nullable=False)
    # paid | failed | pending
    status = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    received_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)
    outcome = Column(String, nullable=True)


# ----------------------------
# Agents
# ----------------------------
class AgentRegistration(Base):
    __tablename__ = "agent_registrations"
    order_id = Column(String, ForeignKey("orders.id"), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    business_name = Column(String, nullable=False)
    business_description = Column(Text, nullable=True)
    bank_account_name = Column(String, nullable=True)
    bank_account_number = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    registration_fee = Column(Integer, nullable=False)
    processed_at = Column(Float, nullable=True)


class Agent(Base):
    __tablename__ = "agents"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, unique=True)
    business_name = Column(String, nullable=False)
    business_description = Column(Text, nullable=True)
    bank_account_name = Column(String, nullable=True)
    bank_account_number = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    max_events = Column(Integer, nullable=False, default=5)
    registration_status = Column(String, nullable=False, default="active")
    registration_payment_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class UserRole(Base):
    __tablename__ = "user_roles"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    role = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_role"),
    )


# ----------------------------
# Check-in audit
# ----------------------------
class CheckinLog(Base):
    __tablename__ = "checkin_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, nullable=True, index=True)
    operator = Column(String, nullable=False)
    # ACCEPTED | REJECTED | OVERRIDE
    outcome = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
