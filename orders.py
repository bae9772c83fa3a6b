"""
Order placement and order lifecycle.

Placement runs as a saga over the catalog and the ledger: stock is reserved
with a conditional decrement per line, payment is confirmed, the order is
inserted, and any failure after reservation releases the reserved units.
Status changes go through ALLOWED_TRANSITIONS and are written with a
compare-and-set on the status the decision was made against.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from pymongo.errors import DuplicateKeyError

from database import serialize_doc
from errors import (
    EmptyCartError,
    ForbiddenError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    OrderNotFoundError,
    PaymentFailedError,
    PaymentGatewayError,
    ProductNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from payments import PaymentGateway
from schemas import (
    CartLine,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingAddress,
    UserRole,
)
from stores import AccountStore, CatalogStore, OrderLedger

LOG = logging.getLogger("orders")

PROGRESSION = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]
CANCELLABLE = (OrderStatus.PENDING, OrderStatus.CONFIRMED)
TERMINAL = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

ALLOWED_TRANSITIONS = frozenset(
    [(current, later) for i, current in enumerate(PROGRESSION) for later in PROGRESSION[i + 1:]]
    + [(current, OrderStatus.CANCELLED) for current in CANCELLABLE]
)

CENT = Decimal("0.01")


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    if (OrderStatus(current), OrderStatus(target)) not in ALLOWED_TRANSITIONS:
        if target == OrderStatus.CANCELLED:
            raise InvalidStateError("Cannot cancel order in current status")
        raise InvalidStateError(f"Cannot move order from {OrderStatus(current).value} to {OrderStatus(target).value}")


def is_fulfilling_seller(order: dict, actor: dict) -> bool:
    return any(item.get("seller_id") == actor["id"] for item in order.get("items", []))


def can_view(order: dict, actor: dict) -> bool:
    role = actor.get("role")
    if role == UserRole.ADMIN:
        return True
    if order["customer_id"] == actor["id"]:
        return True
    return role == UserRole.SELLER and is_fulfilling_seller(order, actor)


def _customer_summary(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return None
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"), "phone": user.get("phone")}


def _product_summary(product: Optional[dict]) -> Optional[dict]:
    if not product:
        return None
    return {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "images": product.get("images", []),
        "price": product.get("price"),
        "unit": product.get("unit"),
        "seller_id": product.get("seller_id"),
    }


class OrderService:
    def __init__(self, catalog: CatalogStore, accounts: AccountStore, ledger: OrderLedger,
                 gateways: Optional[Dict[PaymentMethod, PaymentGateway]] = None):
        self.catalog = catalog
        self.accounts = accounts
        self.ledger = ledger
        self.gateways = gateways or {}

    # ----------------------- Placement -----------------------

    def place_order(self, customer_id: str, items: Sequence[CartLine],
                    shipping_address: Optional[ShippingAddress] = None,
                    payment_method: PaymentMethod = PaymentMethod.COD,
                    payment_reference: Optional[str] = None,
                    address_id: Optional[str] = None,
                    notes: Optional[str] = None) -> dict:
        if not items:
            raise EmptyCartError()

        customer = self.accounts.find_user(customer_id)
        if customer is None:
            raise UserNotFoundError()
        address = self._resolve_address(customer, shipping_address, address_id)

        payment_method = PaymentMethod(payment_method)
        if payment_method == PaymentMethod.COD:
            payment_reference = None
        if payment_reference:
            existing = self.ledger.find_by_payment_reference(payment_reference)
            if existing is not None:
                return self._replay(existing, customer_id)

        lines, total = self._price_items(items)
        reserved = self._reserve_stock(lines)
        try:
            payment_status = self._confirm_payment(payment_method, payment_reference, total)
            order = Order(
                customer_id=customer_id,
                items=lines,
                total_amount=float(total),
                payment_status=payment_status,
                payment_method=payment_method,
                payment_reference=payment_reference,
                shipping_address=address,
                notes=notes,
            )
            saved = self.ledger.insert_order(order)
        except DuplicateKeyError:
            self._release_stock(reserved)
            existing = self.ledger.find_by_payment_reference(payment_reference)
            if existing is None:
                raise
            return self._replay(existing, customer_id)
        except Exception:
            self._release_stock(reserved)
            raise

        LOG.info("Order %s placed by %s: %d line(s), total %s, payment %s",
                 saved["_id"], customer_id, len(lines), total, payment_status.value)
        return self.populate(saved)

    def _replay(self, existing: dict, customer_id: str) -> dict:
        if existing["customer_id"] != customer_id:
            raise PaymentFailedError("Payment reference already used")
        LOG.info("Order %s already recorded for payment %s", existing["_id"], existing.get("payment_reference"))
        return self.populate(existing)

    def _resolve_address(self, customer: dict, shipping_address: Optional[ShippingAddress],
                         address_id: Optional[str]) -> ShippingAddress:
        if (shipping_address is None) == (address_id is None):
            raise ValidationError("Provide either a shipping address or an address id")
        if shipping_address is not None:
            return ShippingAddress(**shipping_address.model_dump())
        for entry in customer.get("addresses", []):
            if entry.get("id") == address_id:
                return ShippingAddress(**{k: v for k, v in entry.items() if k in ShippingAddress.model_fields})
        raise NotFoundError("Address not found")

    def _price_items(self, items: Iterable[CartLine]):
        merged = OrderedDict()
        for item in items:
            merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity

        lines: List[OrderItem] = []
        total = Decimal("0")
        for product_id, quantity in merged.items():
            try:
                product = self.catalog.find_product(product_id)
            except NotFoundError:
                product = None
            if product is None or not product.get("is_active", True):
                raise ProductNotFoundError(product_id)
            if product.get("stock", 0) < quantity:
                raise InsufficientStockError(product.get("name"))
            price = Decimal(str(product["price"]))
            total += price * quantity
            lines.append(OrderItem(
                product_id=str(product["_id"]),
                name=product["name"],
                seller_id=product.get("seller_id"),
                quantity=quantity,
                price=float(price),
            ))
        return lines, total.quantize(CENT)

    def _reserve_stock(self, lines: List[OrderItem]) -> List[OrderItem]:
        reserved = []
        for line in lines:
            if not self.catalog.decrement_stock_if_available(line.product_id, line.quantity):
                self._release_stock(reserved)
                raise InsufficientStockError(line.name)
            reserved.append(line)
        return reserved

    def _release_stock(self, lines: Iterable[dict]) -> None:
        for line in lines:
            if isinstance(line, OrderItem):
                product_id, quantity = line.product_id, line.quantity
            else:
                product_id, quantity = line["product_id"], line["quantity"]
            self.catalog.increment_stock(product_id, quantity)
            LOG.info("Released %d unit(s) of %s", quantity, product_id)

    def _gateway(self, payment_method: PaymentMethod) -> PaymentGateway:
        gateway = self.gateways.get(payment_method)
        if gateway is None:
            raise PaymentGatewayError(f"No payment gateway configured for {payment_method.value}")
        return gateway

    def _confirm_payment(self, payment_method: PaymentMethod, payment_reference: Optional[str],
                         total: Decimal) -> PaymentStatus:
        if payment_method == PaymentMethod.COD or not payment_reference:
            return PaymentStatus.PENDING
        confirmation = self._gateway(payment_method).confirm_payment(payment_reference)
        if confirmation.in_progress:
            return PaymentStatus.PENDING
        if not confirmation.succeeded:
            raise PaymentFailedError("Payment not completed")
        if confirmation.captured_amount < total:
            raise PaymentFailedError("Captured amount does not cover the order total")
        return PaymentStatus.COMPLETED

    # ----------------------- Reads -----------------------

    def populate(self, order: dict) -> dict:
        return self.populate_many([order])[0]

    def populate_many(self, orders: List[dict]) -> List[dict]:
        customers = self.accounts.find_users(o["customer_id"] for o in orders)
        products = self.catalog.find_products(i["product_id"] for o in orders for i in o["items"])
        populated = []
        for doc in orders:
            out = serialize_doc(doc)
            out["customer"] = _customer_summary(customers.get(doc["customer_id"]))
            for item in out["items"]:
                item["product"] = _product_summary(products.get(item["product_id"]))
            populated.append(out)
        return populated

    def _get(self, order_id: str) -> dict:
        try:
            order = self.ledger.find_order(order_id)
        except NotFoundError:
            order = None
        if order is None:
            raise OrderNotFoundError()
        return order

    def get_order(self, order_id: str, actor: dict) -> dict:
        order = self._get(order_id)
        if not can_view(order, actor):
            raise ForbiddenError("Not authorized to view this order")
        return self.populate(order)

    def list_orders(self, status: Optional[OrderStatus] = None, page: int = 1, limit: int = 10) -> dict:
        page, limit = max(page, 1), max(limit, 1)
        query = {"status": OrderStatus(status).value} if status else {}
        orders, total = self.ledger.list_orders(query, skip=(page - 1) * limit, limit=limit)
        return {
            "orders": self.populate_many(orders),
            "page": page,
            "pages": -(-total // limit),
            "total": total,
        }

    def customer_orders(self, customer_id: str) -> List[dict]:
        orders, _ = self.ledger.list_orders({"customer_id": customer_id})
        return self.populate_many(orders)

    def seller_orders(self, seller_id: str) -> List[dict]:
        # An order belongs to a seller when any of its line items does.
        orders, _ = self.ledger.list_orders({"items.seller_id": seller_id})
        return self.populate_many(orders)

    # ----------------------- Lifecycle -----------------------

    def cancel_order(self, order_id: str, actor: dict) -> dict:
        order = self._get(order_id)
        role = actor.get("role")
        allowed = (
            role == UserRole.ADMIN
            or order["customer_id"] == actor["id"]
            or (role == UserRole.SELLER and is_fulfilling_seller(order, actor))
        )
        if not allowed:
            raise ForbiddenError("Not authorized to cancel this order")
        return self._cancel(order)

    def _cancel(self, order: dict, fields: Optional[dict] = None, extra_guard: Optional[dict] = None) -> dict:
        check_transition(order["status"], OrderStatus.CANCELLED)
        guard = {"status": {"$in": [s.value for s in CANCELLABLE]}}
        guard.update(extra_guard or {})
        updated = self.ledger.update_order_status(
            str(order["_id"]), OrderStatus.CANCELLED.value, fields or {}, expected=guard
        )
        if updated is None:
            raise InvalidStateError("Cannot cancel order in current status")
        self._release_stock(updated["items"])
        LOG.info("Order %s cancelled from %s", updated["_id"], order["status"])
        return self.populate(updated)

    def advance_status(self, order_id: str, new_status: Optional[OrderStatus], actor: dict,
                       tracking_number: Optional[str] = None,
                       delivery_date: Optional[datetime] = None) -> dict:
        role = actor.get("role")
        if role not in (UserRole.SELLER, UserRole.ADMIN):
            raise ForbiddenError("Only sellers and admins can update order status")
        order = self._get(order_id)
        if role == UserRole.SELLER and not is_fulfilling_seller(order, actor):
            raise ForbiddenError("Not authorized to update this order")

        current = OrderStatus(order["status"])
        fields = {}
        if tracking_number:
            fields["tracking_number"] = tracking_number
        if delivery_date:
            fields["delivery_date"] = delivery_date

        if new_status is not None and OrderStatus(new_status) == OrderStatus.CANCELLED:
            return self._cancel(order, fields)

        if new_status is None or OrderStatus(new_status) == current:
            if current in TERMINAL:
                raise InvalidStateError(f"Order is {current.value}")
            target = None
        else:
            target = OrderStatus(new_status)
            check_transition(current, target)

        updated = self.ledger.update_order_status(
            order_id, target.value if target else None, fields, expected={"status": current.value}
        )
        if updated is None:
            raise InvalidStateError("Order status changed concurrently; reload and retry")
        if target:
            LOG.info("Order %s moved %s -> %s by %s", order_id, current.value, target.value, actor["id"])
        return self.populate(updated)

    # ----------------------- Payment -----------------------

    def confirm_order_payment(self, order_id: str, actor: dict, payment_reference: Optional[str] = None) -> dict:
        order = self._get(order_id)
        role = actor.get("role")
        if role != UserRole.ADMIN and order["customer_id"] != actor["id"]:
            if not (role == UserRole.SELLER and is_fulfilling_seller(order, actor)):
                raise ForbiddenError("Not authorized to update payment for this order")
        if order["status"] == OrderStatus.CANCELLED:
            raise InvalidStateError("Order is cancelled")

        method = PaymentMethod(order["payment_method"])
        if method == PaymentMethod.COD:
            # Cash is reconciled by whoever collected it.
            if role not in (UserRole.SELLER, UserRole.ADMIN):
                raise ForbiddenError("Cash payments are reconciled by sellers or admins")
            if order["payment_status"] == PaymentStatus.COMPLETED:
                return self.populate(order)
            updated = self.ledger.update_order_status(
                order_id, None, {"payment_status": PaymentStatus.COMPLETED.value},
                expected={"payment_status": {"$ne": PaymentStatus.COMPLETED.value}},
            )
            return self.populate(updated or self._get(order_id))

        payment_reference = payment_reference or order.get("payment_reference")
        if not payment_reference:
            raise ValidationError("Payment reference required")
        if order["payment_status"] == PaymentStatus.COMPLETED:
            if order.get("payment_reference") == payment_reference:
                return self.populate(order)
            raise InvalidStateError("Order is already paid")
        other = self.ledger.find_by_payment_reference(payment_reference)
        if other is not None and other["_id"] != order["_id"]:
            raise PaymentFailedError("Payment reference already used")

        confirmation = self._gateway(method).confirm_payment(payment_reference)
        if not confirmation.succeeded:
            raise PaymentFailedError("Payment not completed")
        if confirmation.captured_amount < Decimal(str(order["total_amount"])).quantize(CENT):
            raise PaymentFailedError("Captured amount does not cover the order total")

        try:
            updated = self.ledger.update_order_status(
                order_id, None,
                {"payment_status": PaymentStatus.COMPLETED.value, "payment_reference": payment_reference},
                expected={"payment_status": {"$ne": PaymentStatus.COMPLETED.value}},
            )
        except DuplicateKeyError:
            raise PaymentFailedError("Payment reference already used")
        LOG.info("Payment %s recorded for order %s", payment_reference, order_id)
        return self.populate(updated or self._get(order_id))

    def apply_payment_event(self, payment_reference: Optional[str], succeeded: bool) -> Optional[dict]:
        """Apply a gateway notification. Repeated notifications are no-ops."""
        if not payment_reference:
            LOG.warning("Payment event without a payment reference ignored")
            return None
        order = self.ledger.find_by_payment_reference(payment_reference)
        if order is None:
            LOG.info("No order for payment %s; event ignored", payment_reference)
            return None
        order_id = str(order["_id"])
        pending = {"payment_status": PaymentStatus.PENDING.value}

        if succeeded:
            updated = self.ledger.update_order_status(
                order_id, None, {"payment_status": PaymentStatus.COMPLETED.value}, expected=pending
            )
            if updated is not None:
                LOG.info("Payment %s completed for order %s", payment_reference, order_id)
            return self.populate(updated or order)

        if order["payment_status"] != PaymentStatus.PENDING or order["status"] not in CANCELLABLE:
            return self.populate(order)
        try:
            return self._cancel(order, {"payment_status": PaymentStatus.FAILED.value}, extra_guard=pending)
        except InvalidStateError:
            # Lost the race to another notification or a cancel.
            return self.populate(self._get(order_id))
