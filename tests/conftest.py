import uuid

import mongomock
import pytest

from cart_service import CartService
from config import FallbackConfig, ImageConfig, ImageStrategy, Settings
from database import MongoResource
from errors import ExternalServiceError
from image_processing import ImageProcessor
from media_store import MediaStore
from notifier import NotificationResult, Notifier
from order_service import OrderService
from tasks import BackgroundDispatcher

OWNER = "alice@gmail.com"
OTHER_OWNER = "bob@gmail.com"
MEDIA = "https://media.mousepad.store/"


class FakeMediaStore(MediaStore):
    def __init__(self):
        self.uploads = []
        self.deleted = []
        self.fail_uploads = False
        self.fail_deletes = False

    def upload(self, image, folder, transformation=None):
        if self.fail_uploads:
            raise ExternalServiceError("upload failed")
        url = f"{MEDIA}{folder}/img{len(self.uploads) + 1}.jpg"
        self.uploads.append({"url": url, "image": image, "folder": folder, "transformation": transformation})
        return url

    def owns(self, url):
        return isinstance(url, str) and url.startswith(MEDIA)

    def delete(self, url):
        if not self.owns(url):
            return True
        if self.fail_deletes:
            raise ExternalServiceError("delete failed")
        self.deleted.append(url)
        return True


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.result = NotificationResult(success=True, message_id="msg-1")

    def send_order_confirmation(self, order):
        self.sent.append(order)
        return self.result


def hosted(name):
    return f"{MEDIA}mousepad/final/{name}.jpg"


def make_item(item_id="a1", **overrides):
    item = {
        "id": item_id,
        "name": "Custom Mousepad",
        "quantity": 1,
        "price": 25.0,
        "currency": "USD",
        "finalImage": hosted(f"{item_id}-final"),
        "originalImageUrl": hosted(f"{item_id}-original"),
        "specs": {"type": "normal", "size": "400x900", "thickness": "3mm"},
    }
    item.update(overrides)
    return item


def make_customer(**overrides):
    customer = {
        "firstName": "Alice",
        "lastName": "Tan",
        "email": "alice@gmail.com",
        "phone": "+65 9123 4567",
        "address": {"street": "1 Orchard Rd", "city": "Singapore", "state": "SG", "zipCode": "238823",
                    "country": "Singapore"},
        "additionalNotes": "",
    }
    customer.update(overrides)
    return customer


@pytest.fixture
def settings():
    return Settings(
        image=ImageConfig(strategy=ImageStrategy.reject_inline),
        background_retry_delay=0,
    )


@pytest.fixture
def database():
    resource = MongoResource("mongodb://localhost:27017", f"mousepad_test_{uuid.uuid4().hex[:8]}",
                             client_factory=mongomock.MongoClient)
    resource.ensure_indexes()
    yield resource
    resource.connect().client.drop_database(resource.name)
    resource.close()


@pytest.fixture
def dispatcher():
    bg = BackgroundDispatcher(max_workers=2, max_attempts=2, retry_delay=0)
    yield bg
    bg.shutdown(wait=True)


@pytest.fixture
def media_store():
    return FakeMediaStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def cart(settings, database, media_store, dispatcher):
    return CartService(settings, database, ImageProcessor(settings.image, media_store), dispatcher)


@pytest.fixture
def transform_settings():
    return Settings(
        image=ImageConfig(
            strategy=ImageStrategy.transform_on_write,
            fallback=FallbackConfig(use_original=False, continue_on_error=True),
        ),
        background_retry_delay=0,
    )


@pytest.fixture
def transform_cart(transform_settings, database, media_store, dispatcher):
    return CartService(transform_settings, database, ImageProcessor(transform_settings.image, media_store),
                       dispatcher)


@pytest.fixture
def orders(settings, database, notifier, dispatcher):
    return OrderService(settings, database, notifier, dispatcher)
