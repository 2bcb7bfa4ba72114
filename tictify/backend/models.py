from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    venue = Column(String, nullable=False, default="")
    starts_at = Column(Float, nullable=True)
    # DRAFT | LIVE | ENDED
    status = Column(String, nullable=False, default="LIVE")
    # [{"name": "Regular", "price": 3500}, ...]  (price in cents)
    ticket_types = Column(JSON, nullable=False, default=list)
    currency = Column(String, nullable=False, default="ngn")


class Payment(Base):
    __tablename__ = "payments"
    reference = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    ticket_type = Column(String, nullable=False)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)

    # PENDING | SUCCESS | FAILED  (terminal states never change)
    status = Column(String, nullable=False, default="PENDING")
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    code = Column(String, primary_key=True)
    # one ticket per payment; the unique index makes webhook replays no-ops
    reference = Column(String, nullable=False, unique=True)
    event_id = Column(String, nullable=False, index=True)
    ticket_type = Column(String, nullable=False)
    qr_image = Column(Text, nullable=False, default="")
    created_at = Column(Float, nullable=False)

    # the only mutable part of a ticket
    scanned = Column(Boolean, nullable=False, default=False)
    scanned_at = Column(Float, nullable=True)
