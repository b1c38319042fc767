"""Tests for the email output node across providers."""

import json
from email import message_from_bytes
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from automation.errors import ConfigurationError
from automation.nodes import mail
from automation.nodes.mail import html_to_text

ORDER = {"id": 42, "customer": {"name": "Ada", "email": "ada@example.com"}}


def email_data(provider, **extra):
    data = {
        "provider": provider,
        "to": "{{customer.email}}",
        "from": "shop@example.com",
        "subject": "Order {{id}} confirmed",
        "body": "<p>Hi {{customer.name}}</p>",
    }
    data.update(extra)
    return data


class TestCredentials:
    """Test credential resolution."""

    @pytest.mark.asyncio
    async def test_missing_api_key(self, node_context):
        """Test a missing credential raises a configuration error naming the secret."""
        executor, ctx = node_context("email-output", email_data("sendgrid"), input=ORDER)
        with pytest.raises(ConfigurationError, match="EMAIL_SENDGRID_API_KEY"):
            await executor.execute(ctx)

    @pytest.mark.asyncio
    async def test_secret_fallback(self, node_context, secrets, http_handler):
        """Test secrets fill credentials absent from the node data."""
        secrets.update({"EMAIL_SENDGRID_API_KEY": "SG.key", "EMAIL_FROM": "noreply@example.com"})
        data = email_data("sendgrid")
        del data["from"]
        executor, ctx = node_context("email-output", data, input=ORDER)
        result = await executor.execute(ctx)
        assert result.success
        request = http_handler.requests[0]
        assert request.headers["Authorization"] == "Bearer SG.key"
        assert json.loads(request.content)["from"] == {"email": "noreply@example.com"}


class TestSendGrid:
    """Test the SendGrid provider."""

    @pytest.mark.asyncio
    async def test_payload(self, node_context, http_handler):
        """Test personalizations, subject and content are rendered."""
        http_handler.queue(httpx.Response(202, headers={"x-message-id": "sg-1"}))
        executor, ctx = node_context("email-output", email_data(
            "sendgrid", apiKey="k", cc=["boss@example.com"], bodyType="both",
        ), input=ORDER)
        result = await executor.execute(ctx)
        assert result.success
        assert result.data["messageId"] == "sg-1"
        assert result.metadata["recipients"] == 2
        payload = json.loads(http_handler.requests[0].content)
        assert payload["personalizations"] == [{
            "to": [{"email": "ada@example.com"}],
            "cc": [{"email": "boss@example.com"}],
        }]
        assert payload["subject"] == "Order 42 confirmed"
        assert payload["content"] == [
            {"type": "text/plain", "value": "Hi Ada"},
            {"type": "text/html", "value": "<p>Hi Ada</p>"},
        ]

    @pytest.mark.asyncio
    async def test_rejection_fails_node(self, node_context, http_handler):
        """Test a provider error response fails the node."""
        http_handler.queue(httpx.Response(401, text="bad key"))
        executor, ctx = node_context("email-output", email_data("sendgrid", apiKey="k"), input=ORDER)
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error_details["statusCode"] == 401


class TestMailgun:
    """Test the Mailgun provider."""

    @pytest.mark.asyncio
    async def test_form_post(self, node_context, http_handler):
        """Test the regional endpoint and form fields."""
        http_handler.queue(httpx.Response(200, json={"id": "<mg-1>", "message": "Queued"}))
        executor, ctx = node_context("email-output", email_data(
            "mailgun", apiKey="k", domain="mg.example.com", mailgunRegion="eu", fromName="Shop",
        ), input=ORDER)
        result = await executor.execute(ctx)
        assert result.data["messageId"] == "<mg-1>"
        request = http_handler.requests[0]
        assert str(request.url) == "https://api.eu.mailgun.net/v3/mg.example.com/messages"
        body = request.content.decode()
        assert "subject=Order+42+confirmed" in body
        assert request.headers["Authorization"].startswith("Basic ")


class TestSmtp:
    """Test the SMTP provider with aiosmtplib patched."""

    @pytest.mark.asyncio
    async def test_sends_mime(self, node_context):
        """Test the MIME message and connection options."""
        send = AsyncMock(return_value=({}, "250 OK"))
        executor, ctx = node_context("email-output", email_data(
            "smtp", host="smtp.example.com", port=465, bodyType="text", body="Hi {{customer.name}}",
        ), input=ORDER)
        with patch.object(mail.aiosmtplib, "send", send):
            result = await executor.execute(ctx)
        assert result.success
        assert result.data["accepted"] == ["ada@example.com"]
        send.assert_awaited_once()
        message = send.await_args.args[0]
        kwargs = send.await_args.kwargs
        assert message["Subject"] == "Order 42 confirmed"
        assert message.get_content().strip() == "Hi Ada"
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["use_tls"] is True

    @pytest.mark.asyncio
    async def test_smtp_error(self, node_context):
        """Test SMTP exceptions fail the node."""
        send = AsyncMock(side_effect=mail.aiosmtplib.SMTPConnectError("refused"))
        executor, ctx = node_context("email-output", email_data("smtp", host="smtp.example.com"), input=ORDER)
        with patch.object(mail.aiosmtplib, "send", send):
            result = await executor.execute(ctx)
        assert not result.success
        assert result.error_details["exception"] == "SMTPConnectError"


class TestSes:
    """Test the SES provider with the boto3 client patched."""

    @pytest.mark.asyncio
    async def test_send_raw_email(self, node_context):
        """Test the raw message is handed to SES."""
        ses = MagicMock()
        ses.send_raw_email.return_value = {"MessageId": "ses-1", "ResponseMetadata": {"HTTPStatusCode": 200}}
        executor, ctx = node_context("email-output", email_data("aws-ses", region="eu-west-1"), input=ORDER)
        with patch.object(mail, "_ses_client", return_value=ses):
            result = await executor.execute(ctx)
        assert result.data["messageId"] == "ses-1"
        sent = ses.send_raw_email.call_args.kwargs
        assert sent["Destinations"] == ["ada@example.com"]
        raw = message_from_bytes(sent["RawMessage"]["Data"])
        assert raw["To"] == "ada@example.com"


def test_html_to_text():
    """Test tags are stripped and breaks kept."""
    assert html_to_text("<p>One</p><p>Two<br/>Three</p>") == "One\nTwo\nThree"
