from unittest.mock import MagicMock

import requests

from config import EmailConfig
from notifier import BrevoNotifier, format_address, render_order_email

ORDER = {
    "id": "65f0c0ffee0000000000beef",
    "created_at": "2026-10-18T09:30:00+00:00",
    "status": "pending",
    "paymentStatus": "pending",
    "currency": "SGD",
    "subtotal": 50,
    "shipping": 5,
    "tax": 0,
    "total": 55,
    "customerInfo": {
        "firstName": "Alice",
        "lastName": "Tan",
        "email": "alice@gmail.com",
        "phone": "+65 9123 4567",
        "address": {"street": "1 Orchard Rd", "city": "Singapore", "zipCode": "238823", "country": "Singapore"},
        "additionalNotes": "<b>ring twice</b>",
    },
    "items": [{"name": "Custom Mousepad", "quantity": 2, "price": 25, "mousepadType": "rgb",
               "mousepadSize": "400x900", "thickness": "4mm"}],
}


def response(status_code, body=None):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.reason = "Error"
    resp.json.return_value = body or {}
    return resp


def notifier(session, **config):
    return BrevoNotifier(EmailConfig(api_key="xkeysib-test", **config), session=session)


def test_render_order_email():
    subject, body = render_order_email(ORDER, "Mousepad Studio")

    assert subject == "New Order Received - Order #0000beef"
    assert "Alice Tan" in body
    assert "SGD 55.00" in body
    assert "Thickness: 4mm" in body
    assert "&lt;b&gt;ring twice&lt;/b&gt;" in body


def test_format_address_skips_missing_parts():
    assert format_address({"street": "1 Orchard Rd", "city": "Singapore", "state": ""}) == "1 Orchard Rd, Singapore"
    assert format_address(None) == "N/A"


def test_send_posts_to_brevo():
    session = MagicMock()
    session.post.return_value = response(201, {"messageId": "<abc@smtp>"})

    result = notifier(session, admin_email="ops@gmail.com").send_order_confirmation(ORDER)

    assert result.success
    assert result.message_id == "<abc@smtp>"
    _, kwargs = session.post.call_args
    assert kwargs["headers"]["api-key"] == "xkeysib-test"
    assert kwargs["json"]["to"] == [{"email": "ops@gmail.com"}]
    assert kwargs["timeout"] == 15.0


def test_timeout_is_reported_not_raised():
    session = MagicMock()
    session.post.side_effect = requests.Timeout("read timed out")

    result = notifier(session).send_order_confirmation(ORDER)

    assert not result.success
    assert result.timed_out
    assert result.retryable
    assert "timed out after 15s" in result.error


def test_connection_error_is_retryable():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("refused")

    result = notifier(session).send_order_confirmation(ORDER)

    assert not result.success
    assert result.retryable
    assert not result.timed_out


def test_auth_failure_is_not_retryable():
    session = MagicMock()
    session.post.return_value = response(401, {"message": "Key not found"})

    result = notifier(session).send_order_confirmation(ORDER)

    assert not result.success
    assert not result.retryable
    assert result.error == "Authentication failed (401): Key not found"


def test_server_error_is_retryable():
    session = MagicMock()
    session.post.return_value = response(503)

    assert notifier(session).send_order_confirmation(ORDER).retryable


def test_disabled_or_unconfigured_email_skips_sending():
    session = MagicMock()

    disabled = notifier(session, enabled=False).send_order_confirmation(ORDER)
    unconfigured = BrevoNotifier(EmailConfig(api_key=""), session=session).send_order_confirmation(ORDER)

    assert not disabled.success and not disabled.retryable
    assert not unconfigured.success
    session.post.assert_not_called()
