"""
Cart Service

Owner-scoped cart lines. A line is identified by the caller's ``id`` and there is
at most one line per (owner, id): adding the same id again overwrites it. A line's
images are cleaned up from the Media Store in the background whenever the line
is removed or an update replaces them; the database write is what counts,
so a failed cleanup only leaves an orphaned remote image behind.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import OwnerIdentityStrategy, Settings
from database import CART_COLLECTION, MongoResource, serialize_doc
from errors import NotFoundError, ServiceResult, ValidationError, service_operation, validate_model
from image_processing import ImageProcessor, image_urls
from schemas import CartItem, CartItemPayload, CartItemStatus, CartItemUpdate
from tasks import BackgroundDispatcher

logger = logging.getLogger("mousepad.cart")

_EMAIL = TypeAdapter(EmailStr)
SPEC_FIELDS = (("type", "mousepadType"), ("size", "mousepadSize"), ("thickness", "thickness"))


def resolve_owner(owner: Optional[str], strategy: OwnerIdentityStrategy) -> str:
    owner = str(owner).strip() if owner is not None else ""
    if not owner:
        raise ValidationError("owner required")
    if strategy == OwnerIdentityStrategy.email:
        try:
            return _EMAIL.validate_python(owner).lower()
        except PydanticValidationError:
            raise ValidationError("Invalid email format")
    return owner


def resolve_specs(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Merge the product spec from ``specs``, top-level fields or ``configuration``."""
    specs = payload.get("specs") or {}
    configuration = payload.get("configuration") or {}
    if not isinstance(specs, dict):
        raise ValidationError("specs incomplete: specs must be an object")
    if not isinstance(configuration, dict):
        raise ValidationError("specs incomplete: configuration must be an object")
    specs = dict(specs)
    for field, alias in SPEC_FIELDS:
        if not specs.get(field):
            specs[field] = payload.get(alias) or configuration.get(alias)
    missing = [field for field, _ in SPEC_FIELDS if not specs.get(field)]
    if missing:
        raise ValidationError(f"specs incomplete: missing {', '.join(missing)}")
    return specs


def serialize_cart_item(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return serialize_doc(doc, expose_object_id=False)


class CartService:
    def __init__(self, settings: Settings, database: MongoResource, images: ImageProcessor,
                 dispatcher: BackgroundDispatcher):
        self.settings = settings
        self.database = database
        self.images = images
        self.media_store = images.media_store
        self.dispatcher = dispatcher

    @property
    def items(self):
        return self.database.collection(CART_COLLECTION)

    def owner_key(self, owner: Optional[str]) -> str:
        return resolve_owner(owner, self.settings.owner_strategy)

    @service_operation("adding item to cart")
    def add_or_update_item(self, payload: Dict[str, Any], owner: Optional[str]) -> ServiceResult:
        owner = self.owner_key(owner)
        if not isinstance(payload, dict):
            raise ValidationError("Cart item must be an object")
        data = dict(payload)
        data["specs"] = resolve_specs(data)
        if not data.get("finalImage") and data.get("image"):
            data["finalImage"] = data["image"]
        item = validate_model(CartItemPayload, data)

        prepared, uploaded = self.images.prepare(item.model_dump(mode="json"))
        try:
            doc = self._document(prepared, owner)
            previous = self._upsert(owner, item.id, doc)
        except Exception:
            self.images.discard(uploaded)
            raise

        stored = self.items.find_one({"owner": owner, "id": item.id})
        created = previous is None
        if not created:
            self._schedule_cleanup(self._replaced(previous, stored), f"replaced images of {item.id}")
        return ServiceResult.ok(
            serialize_cart_item(stored),
            status_code=201 if created else 200,
            message="Item added to cart successfully" if created else "Cart item updated successfully",
        )

    @service_operation("updating cart item")
    def update_item(self, item_id: str, owner: Optional[str], updates: Dict[str, Any]) -> ServiceResult:
        owner = self.owner_key(owner)
        if not item_id:
            raise ValidationError("Item ID is required")
        if not isinstance(updates, dict):
            raise ValidationError("Cart item update must be an object")
        query = {"owner": owner, "id": item_id}
        existing = self.items.find_one(query)
        if not existing:
            raise NotFoundError("Cart item not found")

        data = dict(updates)
        if not data.get("finalImage") and data.get("image"):
            data["finalImage"] = data["image"]
        fields = validate_model(CartItemUpdate, data).model_dump(mode="json", exclude_none=True)
        prepared, uploaded = self.images.prepare(fields)
        fields = {k: v for k, v in prepared.items() if v is not None}
        if "specs" in fields:
            fields.update(self._denormalized(fields["specs"]))
        fields["updated_at"] = datetime.now(timezone.utc)

        try:
            updated = self.items.find_one_and_update(query, {"$set": fields}, return_document=ReturnDocument.AFTER)
        except Exception:
            self.images.discard(uploaded)
            raise
        if not updated:
            self.images.discard(uploaded)
            raise NotFoundError("Cart item not found")
        self._schedule_cleanup(self._replaced(existing, updated), f"replaced images of {item_id}")
        return ServiceResult.ok(serialize_cart_item(updated), message="Cart item updated successfully")

    @service_operation("removing item from cart")
    def remove_item(self, item_id: str, owner: Optional[str]) -> ServiceResult:
        owner = self.owner_key(owner)
        if not item_id:
            raise ValidationError("Item ID is required")
        deleted = self.items.find_one_and_delete({"owner": owner, "id": item_id})
        if not deleted:
            raise NotFoundError("Cart item not found")
        self._schedule_cleanup(image_urls(deleted), f"removed item {item_id}")
        return ServiceResult.ok(serialize_cart_item(deleted), message="Item removed from cart successfully")

    @service_operation("clearing cart")
    def clear_cart(self, owner: Optional[str]) -> ServiceResult:
        owner = self.owner_key(owner)
        cart = list(self.items.find({"owner": owner}))
        if not cart:
            return ServiceResult.ok({"deletedCount": 0}, message="Cart cleared successfully")
        # Delete exactly the lines read above
        result = self.items.delete_many({"owner": owner, "_id": {"$in": [doc["_id"] for doc in cart]}})
        urls: List[str] = []
        for doc in cart:
            for url in image_urls(doc):
                if url not in urls:
                    urls.append(url)
        self._schedule_cleanup(urls, f"cleared cart of {owner}")
        return ServiceResult.ok({"deletedCount": result.deleted_count}, message="Cart cleared successfully")

    @service_operation("fetching cart items")
    def list_cart(self, owner: Optional[str]) -> ServiceResult:
        owner = self.owner_key(owner)
        docs = self.database.get_documents(CART_COLLECTION, {"owner": owner}, sort=[("created_at", DESCENDING)])
        return ServiceResult.ok([serialize_cart_item(d) for d in docs], count=len(docs))

    @service_operation("fetching cart summary")
    def get_cart_summary(self, owner: Optional[str]) -> ServiceResult:
        owner = self.owner_key(owner)
        docs = self.database.get_documents(CART_COLLECTION, {"owner": owner}, sort=[("created_at", DESCENDING)])
        item_count = sum(int(d.get("quantity", 0)) for d in docs)
        total_price = sum(float(d.get("price", 0)) * int(d.get("quantity", 0)) for d in docs)
        # Mixed-currency carts report the first line's currency
        currency = docs[0].get("currency", "USD") if docs else "USD"
        return ServiceResult.ok({"itemCount": item_count, "totalPrice": round(total_price, 2), "currency": currency})

    @service_operation("updating payment status")
    def bulk_set_payment_status(self, owner: Optional[str], item_ids: List[str], status: str) -> ServiceResult:
        owner = self.owner_key(owner)
        if not isinstance(item_ids, list) or not item_ids:
            raise ValidationError("itemIds must be a non-empty array")
        try:
            status = CartItemStatus(status).value
        except ValueError:
            raise ValidationError("Valid payment status is required")
        result = self.items.update_many(
            {"owner": owner, "id": {"$in": [str(i) for i in item_ids]}},
            {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
        )
        if result.modified_count == 0:
            raise NotFoundError("No cart items found or updated")
        return ServiceResult.ok(
            {"modifiedCount": result.modified_count},
            message=f"Payment status updated for {result.modified_count} items.",
        )

    @service_operation("fetching all cart items")
    def list_all_items(self) -> ServiceResult:
        docs = self.database.get_documents(CART_COLLECTION, {}, sort=[("created_at", DESCENDING)])
        return ServiceResult.ok([serialize_cart_item(d) for d in docs], count=len(docs))

    def _document(self, prepared: Dict[str, Any], owner: str) -> Dict[str, Any]:
        if not prepared.get("finalImage"):
            raise ValidationError("finalImage is required")
        if not prepared.get("originalImageUrl"):
            raise ValidationError("originalImageUrl is required")
        item = validate_model(CartItem, {**prepared, "owner": owner, **self._denormalized(prepared["specs"])})
        return item.model_dump(mode="json")

    @staticmethod
    def _denormalized(specs: Dict[str, Any]) -> Dict[str, Any]:
        return {"mousepadType": specs["type"], "mousepadSize": specs["size"], "thickness": specs["thickness"]}

    def _upsert(self, owner: str, item_id: str, doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Create or overwrite the (owner, id) line; returns the previous version, if any."""
        now = datetime.now(timezone.utc)
        fields = {k: v for k, v in doc.items() if k not in ("owner", "id")}
        fields["updated_at"] = now
        update = {"$set": fields, "$setOnInsert": {"created_at": now}}
        query = {"owner": owner, "id": item_id}
        try:
            return self.items.find_one_and_update(query, update, upsert=True, return_document=ReturnDocument.BEFORE)
        except DuplicateKeyError:
            logger.info("Concurrent insert of cart item %s for %s; retrying as update", item_id, owner)
            return self.items.find_one_and_update(query, update, return_document=ReturnDocument.BEFORE)

    @staticmethod
    def _replaced(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> List[str]:
        kept = set(image_urls(after))
        return [url for url in image_urls(before) if url not in kept]

    def _schedule_cleanup(self, urls: List[str], reason: str) -> None:
        owned = [url for url in urls if self.media_store.owns(url)]
        if owned:
            self.dispatcher.submit(f"image cleanup ({reason})", self._delete_images, owned)

    def _delete_images(self, urls: List[str]) -> bool:
        ok = True
        for url in urls:
            if not self.media_store.delete(url):
                logger.warning("Error cleaning up image %s", url)
                ok = False
        return ok
