from decimal import Decimal, ROUND_HALF_UP

import structlog
from sqlalchemy import select, func
from sqlalchemy.orm import Session, selectinload

from payflow.collaborators import SqlUserDirectory, SqlProductCatalog
from payflow.database import utcnow
from payflow.errors import ValidationError, NotFoundError, InsufficientStockError
from payflow.ids import is_valid_uuid, require_uuid
from payflow.models import Checkout, CheckoutItem
from payflow.schemas import CheckoutOut, CheckoutPage

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def money(value):
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_page(page, limit):
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive integers")


class CheckoutService:
    def __init__(self, db: Session, users=None, products=None):
        self.db = db
        self.users = users or SqlUserDirectory(db)
        self.products = products or SqlProductCatalog(db)

    def create(self, data):
        require_uuid(data.user_id, "user")
        self._validate_items(data.items)

        if self.users.get(data.user_id) is None:
            raise NotFoundError(f"User with ID {data.user_id} not found")

        priced = self._price_items(data.items, check_stock=True)
        total = sum((subtotal for _, _, subtotal in priced), Decimal("0.00"))

        checkout = Checkout(user_id=data.user_id, total_amount=total)
        self.db.add(checkout)
        self.db.flush()
        for position, (product_id, quantity, subtotal) in enumerate(priced):
            self.db.add(CheckoutItem(
                checkout_id=checkout.id,
                product_id=product_id,
                position=position,
                quantity=quantity,
                subtotal=subtotal,
            ))
        self.db.commit()

        logger.info("checkout_created", checkout_id=checkout.id, user_id=data.user_id,
                    items=len(priced), total_amount=str(total))
        return self.find_one(checkout.id)

    def find_all(self, page=1, limit=10):
        validate_page(page, limit)
        return self._page(select(Checkout), select(func.count(Checkout.id)), page, limit)

    def find_by_user(self, user_id, page=1, limit=10):
        require_uuid(user_id, "user")
        validate_page(page, limit)
        return self._page(
            select(Checkout).where(Checkout.user_id == user_id),
            select(func.count(Checkout.id)).where(Checkout.user_id == user_id),
            page,
            limit,
        )

    def find_one(self, checkout_id):
        return CheckoutOut.model_validate(self._get(checkout_id))

    def update(self, checkout_id, data):
        require_uuid(checkout_id, "checkout")
        if data.user_id is not None:
            require_uuid(data.user_id, "user")
        if data.items is not None:
            self._validate_items(data.items)

        checkout = self._get(checkout_id)
        if data.user_id is not None and self.users.get(data.user_id) is None:
            raise NotFoundError(f"User with ID {data.user_id} not found")

        # stock is not re-checked on update
        priced = self._price_items(data.items, check_stock=False) if data.items is not None else None

        if data.user_id is not None:
            checkout.user_id = data.user_id

        if priced is not None:
            checkout.items.clear()
            self.db.flush()
            for position, (product_id, quantity, subtotal) in enumerate(priced):
                checkout.items.append(CheckoutItem(
                    product_id=product_id,
                    position=position,
                    quantity=quantity,
                    subtotal=subtotal,
                ))
            checkout.total_amount = sum((subtotal for _, _, subtotal in priced), Decimal("0.00"))

        checkout.updated_at = utcnow()
        self.db.commit()
        logger.info("checkout_updated", checkout_id=checkout_id, items_replaced=data.items is not None)
        return self.find_one(checkout_id)

    def remove(self, checkout_id):
        checkout = self._get(checkout_id)
        # items go first through the delete-orphan cascade
        self.db.delete(checkout)
        self.db.commit()
        logger.info("checkout_removed", checkout_id=checkout_id)

    def _get(self, checkout_id):
        require_uuid(checkout_id, "checkout")
        checkout = self.db.execute(
            select(Checkout)
            .options(selectinload(Checkout.items))
            .where(Checkout.id == checkout_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if checkout is None:
            raise NotFoundError(f"Checkout with ID {checkout_id} not found")
        return checkout

    def _validate_items(self, items):
        """Format checks only; runs before any lookup."""
        if not items:
            raise ValidationError("A checkout needs at least one item")
        for item in items:
            if not is_valid_uuid(item.product_id):
                raise ValidationError(f"Invalid product ID format: {item.product_id}")
            if item.quantity < 1:
                raise ValidationError(f"Quantity must be at least 1 for product {item.product_id}")

    def _price_items(self, items, check_stock):
        """Look up every line and return (product_id, quantity, subtotal) tuples."""
        priced = []
        for item in items:
            product = self.products.get(item.product_id)
            if product is None:
                raise NotFoundError(f"Product with ID {item.product_id} not found")

            if check_stock and product.stock < item.quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for product {product.name}. "
                    f"Available: {product.stock}, requested: {item.quantity}"
                )

            priced.append((item.product_id, item.quantity, money(product.price * item.quantity)))
        return priced

    def _page(self, query, count_query, page, limit):
        total = self.db.execute(count_query).scalar_one()
        checkouts = self.db.execute(
            query.options(selectinload(Checkout.items))
            .order_by(Checkout.created_at.desc(), Checkout.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return CheckoutPage(
            items=[CheckoutOut.model_validate(checkout) for checkout in checkouts],
            total=total,
            page=page,
            limit=limit,
        )
