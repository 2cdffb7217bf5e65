import enum
import uuid

from sqlalchemy import Column, String, Integer, Numeric, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from payflow.database import Base, utcnow


def new_id():
    return str(uuid.uuid4())


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    PIX = "pix"
    PAYPAL = "paypal"


class User(Base):
    # Owned by the accounts service; read-only here
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255))
    email = Column(String(255), unique=True)


class Product(Base):
    # Owned by the catalog service; read-only here
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255))
    price = Column(Numeric(10, 2))
    stock = Column(Integer, default=0)


class Checkout(Base):
    __tablename__ = "checkouts"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CheckoutItem",
        back_populates="checkout",
        cascade="all, delete-orphan",
        order_by="CheckoutItem.position",
    )


class CheckoutItem(Base):
    __tablename__ = "checkout_items"

    id = Column(String(36), primary_key=True, default=new_id)
    checkout_id = Column(String(36), ForeignKey("checkouts.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # display order
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)       # quantity x unit price at write time
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    checkout = relationship("Checkout", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("checkout_id", name="uq_payments_checkout_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    checkout_id = Column(String(36), ForeignKey("checkouts.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    method = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    transaction_id = Column(String(255))
    gateway_response = Column(Text)
    failure_reason = Column(Text)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
