"""
Order Service

An order is created once from the owner's cart. Each line is a copy of the cart
item as stored at checkout time, so the order keeps rendering after the cart is
cleared and prices or specs in the request body are never trusted. Afterwards
only payment-status changes touch an order.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument

from cart_service import resolve_owner
from config import Settings
from database import CART_COLLECTION, ORDER_COLLECTION, MongoResource, serialize_doc
from errors import (AuthorizationError, NotFoundError, ServiceResult, ValidationError,
                    service_operation, validate_model)
from notifier import Notifier
from schemas import CreateOrderDTO, Currency, Order, OrderItem, OrderStatus, PaymentStatus
from tasks import BackgroundDispatcher

logger = logging.getLogger("mousepad.orders")

# Payment statuses that move the order itself; anything else leaves status alone
PAYMENT_TRANSITIONS = {
    PaymentStatus.completed: OrderStatus.processing,
    PaymentStatus.failed: OrderStatus.payment_failed,
}


def _object_id(order_id: str) -> ObjectId:
    try:
        return ObjectId(order_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Order not found")


class OrderService:
    def __init__(self, settings: Settings, database: MongoResource, notifier: Notifier,
                 dispatcher: BackgroundDispatcher):
        self.settings = settings
        self.database = database
        self.notifier = notifier
        self.dispatcher = dispatcher

    @property
    def orders(self):
        return self.database.collection(ORDER_COLLECTION)

    @service_operation("creating order")
    def create_order(self, owner: Optional[str], items: List[Dict[str, Any]], pricing: Dict[str, Any],
                     customer_info: Dict[str, Any]) -> ServiceResult:
        owner = resolve_owner(owner, self.settings.owner_strategy)
        request = validate_model(CreateOrderDTO, {**(pricing or {}), "items": items, "customerInfo": customer_info})

        requested_ids = [line.cartItemId for line in request.items]
        if len(set(requested_ids)) != len(requested_ids):
            raise ValidationError("Each cart item may appear only once in an order")

        # Ownership check and snapshot read are the same query
        cart_items = {
            doc["id"]: doc
            for doc in self.database.collection(CART_COLLECTION).find({"owner": owner, "id": {"$in": requested_ids}})
        }
        if len(cart_items) != len(requested_ids):
            raise ValidationError("items do not belong to owner: some cart items do not exist or are not yours")

        snapshot = [self._snapshot(line.cartItemId, cart_items[line.cartItemId], line.quantity)
                    for line in request.items]
        currencies = {line.currency for line in snapshot}
        if len(currencies) > 1:
            raise ValidationError("All items in an order must share one currency")
        currency = currencies.pop()

        subtotal = round(sum(line.price * line.quantity for line in snapshot), 2)
        if request.subtotal is not None and abs(request.subtotal - subtotal) > 0.005:
            logger.warning("Order subtotal from request (%s) differs from cart (%s); using cart",
                           request.subtotal, subtotal)
        total = round(subtotal + request.shipping + request.tax, 2)
        if request.total is not None and abs(request.total - total) > 0.005:
            logger.warning("Order total from request (%s) differs from computed total (%s); using computed",
                           request.total, total)
        if request.currency is not None and request.currency != currency:
            logger.warning("Order currency from request (%s) differs from cart (%s); using cart",
                           request.currency.value, Currency(currency).value)
        order = Order(
            owner=owner,
            items=snapshot,
            subtotal=subtotal,
            shipping=request.shipping,
            tax=request.tax,
            total=total,
            currency=currency,
            customerInfo=request.customerInfo,
            status=OrderStatus.pending,
            paymentStatus=PaymentStatus.pending,
        )
        order_id = self.database.create_document(ORDER_COLLECTION, order.model_dump(mode="json"))
        created = serialize_doc(self.orders.find_one({"_id": ObjectId(order_id)}))
        logger.info("Order %s created for %s with %d items", order_id, owner, len(snapshot))

        self._notify(created)
        return ServiceResult.ok(created, status_code=201, message="Order created successfully")

    @service_operation("fetching order")
    def get_order(self, order_id: str, owner: Optional[str], is_admin: bool = False) -> ServiceResult:
        order = self._owned_order(order_id, owner, is_admin)
        return ServiceResult.ok(serialize_doc(order))

    @service_operation("fetching orders")
    def list_orders(self, owner: Optional[str]) -> ServiceResult:
        owner = resolve_owner(owner, self.settings.owner_strategy)
        docs = self.database.get_documents(ORDER_COLLECTION, {"owner": owner}, sort=[("created_at", DESCENDING)])
        return ServiceResult.ok([serialize_doc(d) for d in docs], count=len(docs))

    @service_operation("updating order payment status")
    def update_payment_status(self, order_id: str, owner: Optional[str], payment_status: str,
                              transaction_id: Optional[str] = None, is_admin: bool = False) -> ServiceResult:
        try:
            new_status = PaymentStatus(payment_status)
        except ValueError:
            raise ValidationError("Invalid payment status")
        order = self._owned_order(order_id, owner, is_admin)

        update: Dict[str, Any] = {"paymentStatus": new_status.value, "updated_at": datetime.now(timezone.utc)}
        if new_status in PAYMENT_TRANSITIONS:
            update["status"] = PAYMENT_TRANSITIONS[new_status].value
        if transaction_id:
            update["paymentTransactionId"] = transaction_id

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise NotFoundError("Order not found")
        updated = serialize_doc(updated)

        if new_status == PaymentStatus.completed or self.settings.notify_on_any_payment_status:
            self._notify(updated)
        return ServiceResult.ok(updated, message="Order payment status updated successfully")

    def _owned_order(self, order_id: str, owner: Optional[str], is_admin: bool) -> Dict[str, Any]:
        if not is_admin:
            owner = resolve_owner(owner, self.settings.owner_strategy)
        order = self.orders.find_one({"_id": _object_id(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if not is_admin and order.get("owner") != owner:
            raise AuthorizationError("Not authorized to access this order")
        return order

    @staticmethod
    def _snapshot(cart_item_id: str, cart_item: Dict[str, Any], quantity: Optional[int]) -> OrderItem:
        return OrderItem(
            cartItemId=cart_item_id,
            name=cart_item.get("name") or "Custom Mousepad",
            quantity=quantity or cart_item.get("quantity") or 1,
            price=cart_item["price"],
            currency=cart_item.get("currency") or "USD",
            finalImage=cart_item["finalImage"],
            originalImageUrl=cart_item["originalImageUrl"],
            mousepadType=cart_item.get("mousepadType") or "normal",
            mousepadSize=cart_item["mousepadSize"],
            thickness=cart_item["thickness"],
        )

    def _notify(self, order: Dict[str, Any]) -> None:
        self.dispatcher.submit(f"order email {order.get('id')}", self._send_notification, order)

    def _send_notification(self, order: Dict[str, Any]) -> bool:
        result = self.notifier.send_order_confirmation(order)
        if not result.success:
            logger.warning("Order email for %s not sent: %s", order.get("id"), result.error)
        return result.success or not result.retryable
