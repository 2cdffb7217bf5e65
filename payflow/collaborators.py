"""
Read-only views of the services this core consumes but does not own:
user accounts and the product catalog (price and stock).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from payflow.models import User, Product


@dataclass(frozen=True)
class UserRecord:
    id: str
    name: Optional[str]
    email: Optional[str]


@dataclass(frozen=True)
class ProductRecord:
    id: str
    name: str
    price: Decimal
    stock: int


class UserDirectory(Protocol):
    def get(self, user_id: str) -> Optional[UserRecord]: ...


class ProductCatalog(Protocol):
    def get(self, product_id: str) -> Optional[ProductRecord]: ...


class SqlUserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id):
        user = self.db.get(User, user_id)
        if user is None:
            return None
        return UserRecord(id=user.id, name=user.name, email=user.email)


class SqlProductCatalog:
    """Stock is read live on every call, no snapshot caching."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id):
        product = self.db.get(Product, product_id)
        if product is None:
            return None
        return ProductRecord(
            id=product.id,
            name=product.name,
            price=Decimal(str(product.price)),
            stock=product.stock or 0,
        )
