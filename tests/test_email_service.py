import resend

from services.notifications.services.email_service import EmailService

PAYLOAD = {
    "org_id": "org-1",
    "order_number": "FERAL-00042",
    "total": "85.50",
    "currency": "GBP",
    "customer": {"email": "alice.smith@gmail.com", "first_name": "Alice", "last_name": "Smith"},
    "event": {"id": "evt-1", "name": "Summer Rave", "venue_name": "Warehouse", "date_start": "2026-07-01"},
    "tickets": [
        {"ticket_code": "FERAL-AAAA1111", "ticket_type": "General Admission", "merch_size": None, "merch_name": None},
        {"ticket_code": "FERAL-BBBB2222", "ticket_type": "GA + Tee", "merch_size": "M", "merch_name": "Tour Tee"},
    ],
}


def test_render_order_confirmation():
    rendered = EmailService(api_key="").render_order_confirmation(PAYLOAD)

    assert rendered["subject"] == "Your tickets for Summer Rave (FERAL-00042)"
    assert "FERAL-AAAA1111" in rendered["html"]
    assert "Tour Tee" in rendered["html"]
    assert "data:image/png;base64," in rendered["html"]
    assert "£85.50" in rendered["text"]
    assert "- GA + Tee: FERAL-BBBB2222 (size M)" in rendered["text"]


async def test_send_without_api_key_is_simulated():
    service = EmailService(api_key="")
    assert service.resend_configured is False
    assert await service.send_order_confirmation_email(PAYLOAD) is True


async def test_missing_customer_email():
    payload = {**PAYLOAD, "customer": {}}
    assert await EmailService(api_key="").send_order_confirmation_email(payload) is False


async def test_send_through_resend(monkeypatch):
    sent = []

    def send(params):
        sent.append(params)
        return {"id": "email-1"}

    monkeypatch.setattr(resend.Emails, "send", send)
    service = EmailService(api_key="re_test", from_email="tickets@feral.example")

    assert await service.send_order_confirmation_email(PAYLOAD) is True
    assert sent[0]["to"] == ["alice.smith@gmail.com"]
    assert sent[0]["from"] == "tickets@feral.example"


async def test_resend_failure_returns_false(monkeypatch):
    def send(params):
        raise RuntimeError("resend down")

    monkeypatch.setattr(resend.Emails, "send", send)
    assert await EmailService(api_key="re_test").send_email("a@b.com", "Hi", "<p>Hi</p>") is False
