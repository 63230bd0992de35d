"""
workflow.py — Core Orchestration Logic for Checkout and the Order Lifecycle

This module contains the order creation workflow and every later status change.
It coordinates the catalog, the inventory ledger, the loyalty ledger and the order
ledger in the correct sequence.

Checkout Overview:
1. Validate the cart snapshot against the live catalog (read-only)
2. Price the order (tax, shipping, loyalty redemption)
3. Reserve stock line by line, in input order
4. Apply the loyalty / spend effect to the customer's account
5. Persist the order record
6. On any failure, run the recorded compensations in reverse (Saga Pattern)

Lifecycle Overview:
- Every status change is checked against the transition tables in `state_machine`
  and committed with a compare-and-set on the stored status.
- Cancellations and returns release the reserved stock (once per line) and reverse
  the loyalty effect after the status change has been committed. A reversal that
  fails leaves the order flagged `reversal_pending`; repeating the request finishes it.
"""

import math
from functools import partial

from .errors import (
    AccessDenied,
    DuplicateOrderKey,
    EmptyCart,
    InsufficientLoyaltyPoints,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    OrderServiceError,
    PersistenceFailure,
    ProductNotFound,
    VariantInvalid,
)
from .inventory import InventoryLedger
from .logging_config import get_logger
from .models import (
    CartItemKey,
    CartItemRequest,
    CartLine,
    CheckoutDetails,
    CheckoutItem,
    CheckoutRequest,
    Order,
    OrderFilter,
    OrderPage,
    OrderStatus,
    PaymentStatus,
    PaymentStatusUpdateRequest,
    StatusHistoryEntry,
    StatusUpdateRequest,
    TrackingStep,
    TrackingView,
    utc_now,
)
from .pricing import calculate_pricing
from .state_machine import CANCELLABLE, check_payment_transition, check_transition
from .validator import merge_duplicate_lines, validate_cart

log = get_logger(__name__)

TRACKING_STEPS = (
    (OrderStatus.PENDING, "Order Placed"),
    (OrderStatus.CONFIRMED, "Order Confirmed"),
    (OrderStatus.PROCESSING, "Processing"),
    (OrderStatus.SHIPPED, "Shipped"),
    (OrderStatus.DELIVERED, "Delivered"),
)


class OrderWorkflow:
    """
    Entry point for checkout and order lifecycle operations.

    Args:
        store: A storage bundle (`MongoStore` or `InMemoryStore`) exposing the
            catalog, users, orders, reservations and carts repositories.
    """
    def __init__(self, store):
        self.store = store
        self.catalog = store.catalog
        self.users = store.users
        self.orders = store.orders
        self.carts = store.carts
        self.inventory = InventoryLedger(store.catalog, store.reservations)

    # --- Checkout ---

    def checkout(self, request: CheckoutRequest, user_id: str | None = None,
                 idempotency_key: str | None = None) -> Order:
        """
        Creates an order from a checkout request.

        The call returns only once stock is reserved, the account effect applied and
        the order record stored. If any step fails, every step already applied in this
        call is compensated before the error is raised: no order record, no dangling
        reservation.

        Args:
            request (CheckoutRequest): Lines, addresses and payment details.
            user_id (str | None): Owning user; None for guest checkout.
            idempotency_key (str | None): Retried requests with the same key return the
                order created by the first one.

        Returns:
            Order: The created order, status=pending, payment_status=pending.

        Raises:
            ProductNotFound, VariantInvalid, InsufficientStock: Per-line validation failures.
            InsufficientLoyaltyPoints: If the redemption exceeds the balance (or for guests).
            PersistenceFailure: If the store could not commit; all effects are rolled back.
        """
        if idempotency_key:
            existing = self.orders.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, user_id, idempotency_key)

        items = validate_cart(request.items, self.catalog)
        source_index = [index for index, _ in merge_duplicate_lines(request.items)]

        available_points = 0
        if user_id is not None:
            account = self.users.get_account(user_id)
            if account is None:
                raise AccessDenied(f"Unknown user account: {user_id}")
            available_points = account.loyalty_points

        quote = calculate_pricing(items, request.loyalty_points_to_redeem, available_points,
                                  request.coupon_code)
        pricing = quote.pricing

        order_number = self.orders.next_order_number()
        log_prefix = f"[Order: {order_number}]"
        order = Order(
            order_number=order_number,
            user_id=user_id,
            items=items,
            pricing=pricing,
            payment_method=request.payment_method,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address or request.shipping_address,
            notes=request.notes,
            coupon_code=quote.coupon_code,
            loyalty_points_used=quote.loyalty_points_used,
            loyalty_points_earned=quote.loyalty_points_earned,
            idempotency_key=idempotency_key,
            status_history=[StatusHistoryEntry(status=OrderStatus.PENDING.value, note="Order placed",
                                               updated_by=user_id)],
        )
        log.info(f"{log_prefix} Checkout started: {len(items)} line(s), total {pricing.total}.")

        compensations = []
        try:
            # --- 1. Inventory ---
            for index, item in enumerate(items):
                try:
                    self.inventory.reserve(item.product_id, item.quantity,
                                           order_number=order_number, line_index=index)
                except InsufficientStock as e:
                    raise InsufficientStock(e.product_id, e.requested, e.available,
                                            product_name=e.product_name,
                                            line_index=source_index[index]) from None
                except ProductNotFound as e:
                    raise ProductNotFound(e.product_id, line_index=source_index[index]) from None
                compensations.append((
                    f"release line {index}",
                    partial(self.inventory.release_line, order_number, index, item.product_id, item.quantity),
                ))

            # --- 2. Loyalty / spend ledger ---
            if user_id is not None:
                account = self.users.apply_order(user_id, quote.loyalty_points_used,
                                                 quote.loyalty_points_earned, pricing.total)
                if account is None:
                    current = self.users.get_account(user_id)
                    raise InsufficientLoyaltyPoints(quote.loyalty_points_used,
                                                    current.loyalty_points if current else 0)
                compensations.append((
                    "revert loyalty",
                    partial(self.users.revert_order, user_id, order_number, quote.loyalty_points_used,
                            quote.loyalty_points_earned, pricing.total),
                ))

            # --- 3. Order ledger ---
            self.orders.insert(order)

        except DuplicateOrderKey:
            log.info(f"{log_prefix} Idempotency key {idempotency_key} won by a concurrent request. "
                     f"Starting compensation.")
            self._compensate(order_number, compensations)
            existing = self.orders.find_by_idempotency_key(idempotency_key)
            if existing is None:
                raise PersistenceFailure("Order could not be stored", order_number)
            return self._replay(existing, user_id, idempotency_key)

        except (ProductNotFound, VariantInvalid, InsufficientStock, InsufficientLoyaltyPoints) as e:
            log.warning(f"{log_prefix} Checkout rejected ({e.kind}): {e.message}. Starting compensation.")
            self._compensate(order_number, compensations)
            raise

        except OrderServiceError as e:
            log.error(f"{log_prefix} Checkout failed ({e.kind}): {e.message}. Starting compensation.")
            self._compensate(order_number, compensations)
            raise

        except Exception as e:
            log.critical(f"{log_prefix} Unexpected error during checkout: {e}", exc_info=True)
            self._compensate(order_number, compensations)
            raise PersistenceFailure("Order could not be created", order_number) from e

        log.info(f"{log_prefix} Order created (user: {user_id or 'guest'}).")
        if user_id is not None:
            self._clear_cart_lines(user_id, request.items, log_prefix)
        return order

    def checkout_from_cart(self, details: CheckoutDetails, user_id: str,
                           idempotency_key: str | None = None) -> Order:
        """Checks out the lines stored in the user's cart."""
        lines = self.carts.lines(user_id)
        if not lines:
            raise EmptyCart(user_id)
        request = CheckoutRequest(
            items=[CheckoutItem(product_id=line.product_id, quantity=line.quantity,
                                color=line.color, size=line.size) for line in lines],
            **details.model_dump(),
        )
        return self.checkout(request, user_id=user_id, idempotency_key=idempotency_key)

    def _replay(self, order: Order, user_id: str | None, idempotency_key: str) -> Order:
        if order.user_id != user_id:
            raise AccessDenied("Idempotency key belongs to another customer")
        log.info(f"[Order: {order.order_number}] Replayed for idempotency key {idempotency_key}.")
        return order

    def _compensate(self, order_number: str, compensations: list) -> tuple[int, int]:
        """
        Runs recorded compensations in reverse order.
        A failing compensation is logged and the remaining ones still run.
        Returns:
            tuple[int, int]: (compensations run, compensations failed).
        """
        log_prefix = f"[Order: {order_number}]"
        run = failed = 0
        for name, compensation in reversed(compensations):
            try:
                compensation()
                run += 1
            except Exception as e:
                failed += 1
                log.critical(f"{log_prefix} COMPENSATION FAILED ({name}): {e}. MANUAL ACTION REQUIRED!")
        if compensations:
            log.info(f"{log_prefix} Compensation finished: {run} run, {failed} failed.")
        return run, failed

    def _clear_cart_lines(self, user_id: str, items: list[CheckoutItem], log_prefix: str):
        keys = [CartItemKey(product_id=i.product_id, color=i.color, size=i.size) for i in items]
        try:
            removed = self.carts.clear(user_id, keys)
            if removed:
                log.info(f"{log_prefix} Removed {removed} purchased line(s) from the cart.")
        except Exception as e:
            log.warning(f"{log_prefix} Could not clear cart of user {user_id}: {e}")

    # --- Reads ---

    def get_order(self, order_number: str, user_id: str | None = None, is_staff: bool = False) -> Order:
        order = self._load(order_number)
        self._authorize(order, user_id, is_staff)
        return order

    def list_user_orders(self, user_id: str, page: int = 1, limit: int = 10) -> OrderPage:
        orders, total = self.orders.list_for_user(user_id, page, limit)
        return OrderPage(orders=orders, total=total, page=page, limit=limit, pages=math.ceil(total / limit))

    def search_orders(self, order_filter: OrderFilter, page: int = 1, limit: int = 20) -> OrderPage:
        orders, total = self.orders.search(order_filter, page, limit)
        return OrderPage(orders=orders, total=total, page=page, limit=limit, pages=math.ceil(total / limit))

    def tracking(self, order_number: str, user_id: str | None = None, is_staff: bool = False) -> TrackingView:
        """Timeline of the happy path with completion flags and first-reached timestamps."""
        order = self.get_order(order_number, user_id, is_staff)
        reached = {}
        for entry in order.status_history:
            reached.setdefault(entry.status, entry.timestamp)
        steps = [
            TrackingStep(status=status.value, label=label, completed=status.value in reached,
                         timestamp=reached.get(status.value))
            for status, label in TRACKING_STEPS
        ]
        return TrackingView(order_number=order.order_number, current_status=order.status,
                            tracking_number=order.tracking_number, carrier=order.carrier,
                            cancellable=order.status in CANCELLABLE, steps=steps)

    # --- Lifecycle ---

    def update_status(self, order_number: str, request: StatusUpdateRequest,
                      actor_id: str | None = None) -> Order:
        """
        Staff status change.

        Args:
            order_number (str): Order to update.
            request (StatusUpdateRequest): Target status plus optional tracking number,
                carrier, note, reason and the staff skip-forward override.
            actor_id (str | None): Staff member recorded in the status history.

        Returns:
            Order: The updated order.

        Raises:
            OrderNotFound: If the order does not exist.
            InvalidTransition: If the transition is not legal from the current status.
        """
        order = self._load(order_number)
        target = request.status

        if target == OrderStatus.CANCELLED:
            return self._cancel(order, request.reason or request.note or "Cancelled by staff", actor_id)
        if target == OrderStatus.RETURNED:
            return self._return(order, request.reason or request.note or "Returned", actor_id)

        self._check(order, target, override=request.override)
        now = utc_now()
        changes = {"status": target}
        if target == OrderStatus.SHIPPED:
            changes["shipped_at"] = now
            if request.tracking_number:
                changes["tracking_number"] = request.tracking_number
            if request.carrier:
                changes["carrier"] = request.carrier
        elif target == OrderStatus.DELIVERED:
            changes["delivered_at"] = now
            if order.payment_status == PaymentStatus.PENDING:
                # Cash-on-delivery settlement.
                changes["payment_status"] = PaymentStatus.COMPLETED
                changes["paid_at"] = now

        note = request.note or f"Order status changed to {target.value}"
        return self._commit(order, changes, note, actor_id)

    def cancel(self, order_number: str, reason: str, user_id: str | None = None,
               is_staff: bool = False) -> Order:
        """
        Cancels an order on behalf of its owner or staff.

        Legal from pending, confirmed and processing. Stock is released once per line,
        redeemed points are refunded and a completed payment is marked refunded.

        Raises:
            OrderNotFound: If the order does not exist.
            AccessDenied: If the caller is neither the owner nor staff.
            InvalidTransition: If the order can no longer be cancelled (including a
                second cancellation once the first has finished).
            PersistenceFailure: If stock or loyalty could not be reversed. The order stays
                cancelled and flagged; calling `cancel` again completes it.
        """
        order = self._load(order_number)
        self._authorize(order, user_id, is_staff)
        return self._cancel(order, reason, user_id)

    def update_payment_status(self, order_number: str, request: PaymentStatusUpdateRequest,
                              actor_id: str | None = None) -> Order:
        order = self._load(order_number)
        target = request.payment_status
        try:
            check_payment_transition(order, target)
        except InvalidTransition as e:
            log.warning(f"[InvalidTransition][Order: {order_number}] {e.message}")
            raise

        now = utc_now()
        changes = {"payment_status": target}
        if target == PaymentStatus.COMPLETED:
            changes["paid_at"] = now
        elif target == PaymentStatus.REFUNDED:
            amount = request.refund_amount if request.refund_amount is not None else order.pricing.total
            if amount > order.pricing.total:
                log.warning(f"[InvalidTransition][Order: {order_number}] Refund {amount} exceeds total.")
                raise InvalidTransition(order_number, order.payment_status.value, target.value,
                                        "refund exceeds order total")
            changes.update(refund_amount=amount, refund_reason=request.refund_reason, refunded_at=now)

        note = request.note or f"Payment status changed to {target.value}"
        return self._commit(order, changes, note, actor_id, history_status=order.status)

    def _cancel(self, order: Order, reason: str, actor_id: str | None) -> Order:
        if order.status == OrderStatus.CANCELLED and order.reversal_pending:
            log.info(f"[Order: {order.order_number}] Resuming unfinished cancellation.")
            return self._finish_reversal(order)
        self._check(order, OrderStatus.CANCELLED)
        now = utc_now()
        changes = {"status": OrderStatus.CANCELLED, "cancelled_at": now, "cancel_reason": reason,
                   "reversal_pending": True}
        changes.update(self._refund_changes(order, f"Order cancelled: {reason}", now))
        updated = self._commit(order, changes, f"Order cancelled: {reason}", actor_id)
        return self._finish_reversal(updated)

    def _return(self, order: Order, reason: str, actor_id: str | None) -> Order:
        if order.status == OrderStatus.RETURNED and order.reversal_pending:
            log.info(f"[Order: {order.order_number}] Resuming unfinished return.")
            return self._finish_reversal(order)
        self._check(order, OrderStatus.RETURNED)
        now = utc_now()
        changes = {"status": OrderStatus.RETURNED, "returned_at": now, "return_reason": reason,
                   "reversal_pending": True}
        changes.update(self._refund_changes(order, f"Order returned: {reason}", now))
        updated = self._commit(order, changes, f"Order returned: {reason}", actor_id)
        return self._finish_reversal(updated)

    @staticmethod
    def _refund_changes(order: Order, reason: str, now) -> dict:
        """A completed payment becomes a recorded refund obligation; never dropped."""
        if order.payment_status != PaymentStatus.COMPLETED:
            return {}
        return {
            "payment_status": PaymentStatus.REFUNDED,
            "refund_amount": order.pricing.total,
            "refund_reason": reason,
            "refunded_at": now,
        }

    def _finish_reversal(self, order: Order) -> Order:
        """
        Releases stock and reverses the loyalty effect of a cancelled / returned order.

        Runs after the status change is committed with `reversal_pending` set. Both steps
        are idempotent: each line is released through its reservation token, and the
        account records the orders it has reversed. If a step fails the order keeps its
        terminal status and the flag, and repeating the cancellation / return finishes
        the remaining work.

        Returns:
            Order: The order with `reversal_pending` cleared.

        Raises:
            PersistenceFailure: If a step failed; the order stays flagged for retry.
        """
        log_prefix = f"[Order: {order.order_number}]"
        try:
            released = self.inventory.release_order(order.order_number)
            log.info(f"{log_prefix} Released stock for {released} line(s).")
            if not order.is_guest and (order.loyalty_points_used or order.loyalty_points_earned):
                revoked = self.users.revert_order(order.user_id, order.order_number,
                                                  order.loyalty_points_used, order.loyalty_points_earned,
                                                  order.pricing.total)
                log.info(f"{log_prefix} Refunded {order.loyalty_points_used} loyalty point(s), "
                         f"revoked {revoked} earned.")
        except Exception as e:
            log.error(f"{log_prefix} Reversal after '{order.status.value}' failed: {e}. "
                      f"Order stays flagged for retry.")
            raise PersistenceFailure("Order could not be updated", order.order_number) from e

        current = order
        for _ in range(2):
            done = self.orders.compare_and_set(current.order_number, current.status, current.payment_status,
                                               {"reversal_pending": False})
            if done is not None:
                return done
            # Payment status changed since the commit; retry against the stored copy.
            current = self._load(order.order_number)
            if not current.reversal_pending:
                return current
        log.warning(f"{log_prefix} Reversal finished but the pending flag could not be cleared.")
        return current

    # --- Helpers ---

    def _load(self, order_number: str) -> Order:
        order = self.orders.get(order_number)
        if order is None:
            raise OrderNotFound(order_number)
        return order

    @staticmethod
    def _authorize(order: Order, user_id: str | None, is_staff: bool):
        if is_staff:
            return
        if order.is_guest or order.user_id != user_id:
            raise AccessDenied()

    @staticmethod
    def _check(order: Order, target: OrderStatus, override: bool = False):
        try:
            check_transition(order, target, override=override)
        except InvalidTransition as e:
            log.warning(f"[InvalidTransition][Order: {order.order_number}] {e.message}")
            raise

    def _commit(self, order: Order, changes: dict, note: str, actor_id: str | None,
                history_status: OrderStatus | None = None) -> Order:
        """Compare-and-set on (status, payment_status); losing a race is an InvalidTransition."""
        status = history_status or changes.get("status", order.status)
        entry = StatusHistoryEntry(status=status.value, note=note, updated_by=actor_id)
        updated = self.orders.compare_and_set(order.order_number, order.status, order.payment_status,
                                              changes, entry)
        if updated is None:
            current = self.orders.get(order.order_number)
            current_status = current.status.value if current else "missing"
            target = changes.get("status", changes.get("payment_status"))
            log.warning(f"[InvalidTransition][Order: {order.order_number}] Concurrent update: "
                        f"expected '{order.status.value}', found '{current_status}'.")
            raise InvalidTransition(order.order_number, current_status, target.value, "concurrent update")
        log.info(f"[Order: {order.order_number}] {note}")
        return updated

    # --- Cart ---

    def get_cart(self, user_id: str) -> list[CartLine]:
        return self.carts.lines(user_id)

    def add_to_cart(self, user_id: str, request: CartItemRequest) -> CartLine:
        """Upserts a cart line after checking the product and its variant selectors."""
        product = self.catalog.get_product(request.product_id)
        if product is None or product.status != "active":
            raise ProductNotFound(request.product_id)
        if request.color is not None and request.color not in product.colors:
            raise VariantInvalid(product.id, "color", request.color, product.colors)
        if request.size is not None and request.size not in product.sizes:
            raise VariantInvalid(product.id, "size", request.size, product.sizes)
        return self.carts.upsert(CartLine(user_id=user_id, product_id=request.product_id,
                                          quantity=request.quantity, color=request.color, size=request.size))

    def remove_from_cart(self, user_id: str, key: CartItemKey) -> bool:
        return self.carts.remove(user_id, key)
