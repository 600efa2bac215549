"""
Model factories for creating valid test data.

Every factory produces a valid, insertable SQLAlchemy model instance.
Override any field via kwargs.

Usage:
    product = ProductFactory.create(base_price=Decimal("34.99"), stock=5)
    db_session.add(product)
    await db_session.commit()
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _in_minutes(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex[:8]}@test.com"


def _key() -> str:
    return f"checkout-{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def make_member_user(user_id=None, email=None):
    from libs.auth.models import AuthUser

    return AuthUser(
        sub=user_id or f"user-{uuid.uuid4().hex[:8]}",
        email=email or _unique_email(),
        role="authenticated",
    )


def make_admin_user(user_id=None):
    from libs.auth.models import AuthUser

    return AuthUser(
        sub=user_id or f"admin-{uuid.uuid4().hex[:8]}",
        email=_unique_email(),
        role="admin",
    )


@contextmanager
def override_auth(app, user):
    """Resolve every auth dependency to ``user`` for the duration of the block."""
    from libs.auth.dependencies import get_current_user, get_optional_user

    previous = {
        dep: app.dependency_overrides.get(dep)
        for dep in (get_current_user, get_optional_user)
    }
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_optional_user] = lambda: user
    try:
        yield user
    finally:
        for dep, override in previous.items():
            if override is None:
                app.dependency_overrides.pop(dep, None)
            else:
                app.dependency_overrides[dep] = override


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ProductFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import Product

        defaults = {
            "id": _uuid(),
            "name": f"Product {uuid.uuid4().hex[:6]}",
            "description": "Test product",
            "category_id": None,
            "tags": [],
            "base_price": Decimal("10.00"),
            "sale_price": None,
            "on_sale": False,
            "stock": 10,
            "track_inventory": True,
            "allow_backorder": False,
            "is_active": True,
            "is_digital": False,
            "digital_files": [],
            "customization_schema_id": None,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return Product(**defaults)


class VariantFactory:
    @staticmethod
    def create(product_id=None, **overrides):
        from services.store_service.models import ProductVariant

        defaults = {
            "id": _uuid(),
            "product_id": product_id or _uuid(),
            "name": "Default",
            "price": Decimal("12.00"),
            "stock": 5,
            "created_at": _now(),
        }
        defaults.update(overrides)
        return ProductVariant(**defaults)


class CustomizationSchemaFactory:
    @staticmethod
    def create(fields=None, **overrides):
        from services.store_service.models import CustomizationSchemaRecord

        defaults = {
            "id": _uuid(),
            "name": "Custom print",
            "fields": fields if fields is not None else [],
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return CustomizationSchemaRecord(**defaults)


class CustomerRefFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import CustomerRef

        defaults = {
            "user_id": f"user-{uuid.uuid4().hex[:8]}",
            "email": _unique_email(),
        }
        defaults.update(overrides)
        return CustomerRef(**defaults)


# ---------------------------------------------------------------------------
# Promotions
# ---------------------------------------------------------------------------


class CouponFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import Coupon, CouponType

        defaults = {
            "id": _uuid(),
            "code": f"TEST{uuid.uuid4().hex[:6]}",
            "coupon_type": CouponType.PERCENTAGE,
            "value": Decimal("10"),
            "max_discount": None,
            "min_purchase": None,
            "is_active": True,
            "starts_at": None,
            "ends_at": None,
            "max_uses": None,
            "current_uses": 0,
            "max_uses_per_user": None,
            "allowed_emails": None,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return Coupon(**defaults)


class BundleDiscountFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import (
            BundleApplyTo,
            BundleDiscount,
            BundleDiscountType,
        )

        defaults = {
            "id": _uuid(),
            "name": "Buy 2 get 1 free",
            "apply_to": BundleApplyTo.ALL,
            "category_ids": [],
            "product_ids": [],
            "tag_ids": [],
            "discount_type": BundleDiscountType.BUY_X_GET_Y_FREE,
            "buy_quantity": 3,
            "get_quantity": 1,
            "discount_percent": None,
            "fixed_price": None,
            "priority": 0,
            "stackable": False,
            "is_active": True,
            "starts_at": None,
            "ends_at": None,
            "created_at": _now(),
        }
        defaults.update(overrides)
        return BundleDiscount(**defaults)


# ---------------------------------------------------------------------------
# Shipping
# ---------------------------------------------------------------------------


class ShippingZoneFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import ShippingZone

        defaults = {
            "id": _uuid(),
            "name": "Peninsula",
            "postal_codes": ["28000-28999"],
            "provinces": ["Madrid"],
            "priority": 0,
            "is_active": True,
            "created_at": _now(),
        }
        defaults.update(overrides)
        return ShippingZone(**defaults)


class ShippingMethodFactory:
    @staticmethod
    def create(zone_id=None, **overrides):
        from services.store_service.models import ShippingMethod

        defaults = {
            "id": _uuid(),
            "zone_id": zone_id or _uuid(),
            "name": "Standard",
            "base_price": Decimal("4.95"),
            "free_shipping_threshold": None,
            "is_active": True,
            "created_at": _now(),
        }
        defaults.update(overrides)
        return ShippingMethod(**defaults)


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------


class WalletFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import Wallet

        defaults = {
            "id": _uuid(),
            "user_id": f"user-{uuid.uuid4().hex[:8]}",
            "balance": Decimal("50.00"),
            "reserved_balance": Decimal("0.00"),
            "total_earned": Decimal("50.00"),
            "total_spent": Decimal("0.00"),
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return Wallet(**defaults)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import (
            Order,
            OrderStatus,
            PaymentStatus,
            StockReservationStatus,
            WalletReservationStatus,
        )

        defaults = {
            "id": _uuid(),
            "idempotency_key": _key(),
            "user_id": None,
            "customer_email": _unique_email(),
            "shipping_info": None,
            "billing_info": None,
            "coupon_id": None,
            "coupon_code": None,
            "use_wallet": False,
            "subtotal": Decimal("34.99"),
            "bundle_discount": Decimal("0.00"),
            "bundle_discount_details": [],
            "coupon_discount": Decimal("0.00"),
            "free_shipping": False,
            "tax": Decimal("0.00"),
            "tax_rate": Decimal("0"),
            "tax_type": None,
            "tax_label": None,
            "shipping_cost": Decimal("0.00"),
            "wallet_discount": Decimal("0.00"),
            "used_wallet": False,
            "total": Decimal("34.99"),
            "currency": "eur",
            "status": OrderStatus.PENDING,
            "payment_status": PaymentStatus.PENDING,
            "payment_mismatch": False,
            "stock_reservation_status": StockReservationStatus.NOT_REQUIRED,
            "stock_reservation": [],
            "reservation_expires_at": _in_minutes(30),
            "wallet_reservation_status": WalletReservationStatus.NONE,
            "wallet_reserved_amount": Decimal("0.00"),
            "payment_intent_id": None,
            "expected_amount_minor": 3499,
            "requires_payment": True,
            "post_payment_actions_completed": False,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return Order(**defaults)


class OrderItemFactory:
    @staticmethod
    def create(order_id=None, product_id=None, **overrides):
        from services.store_service.models import OrderItem

        defaults = {
            "id": _uuid(),
            "order_id": order_id or _uuid(),
            "product_id": product_id or _uuid(),
            "variant_id": None,
            "product_name": "Test product",
            "variant_name": None,
            "is_digital": False,
            "quantity": 1,
            "unit_price": Decimal("34.99"),
            "line_total": Decimal("34.99"),
            "customization": None,
        }
        defaults.update(overrides)
        return OrderItem(**defaults)
