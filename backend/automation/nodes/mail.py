"""Email Output Node

Sends a templated message through one of four providers:

- smtp: aiosmtplib
- sendgrid: v3 mail/send API via httpx
- mailgun: messages API via httpx
- aws-ses: boto3 ``send_raw_email`` in a worker thread

Credentials come from the node's data, falling back to ``EMAIL_*`` secrets.
"""

from __future__ import annotations

import asyncio
import logging
import re
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, List, Optional

import aiosmtplib
import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import template_context
from ..errors import ConfigurationError
from .registry import CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import render_mapping, render_text, split_addresses

logger = logging.getLogger(__name__)

PROVIDERS = ["smtp", "sendgrid", "mailgun", "aws-ses"]

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
MAILGUN_URLS = {"us": "https://api.mailgun.net/v3", "eu": "https://api.eu.mailgun.net/v3"}

# Node field -> secret name (after the EMAIL_ prefix), per provider
CREDENTIAL_SECRETS = {
    "smtp": {"host": "SMTP_HOST", "port": "SMTP_PORT", "username": "SMTP_USERNAME", "password": "SMTP_PASSWORD"},
    "sendgrid": {"apiKey": "SENDGRID_API_KEY"},
    "mailgun": {"apiKey": "MAILGUN_API_KEY", "domain": "MAILGUN_DOMAIN"},
    "aws-ses": {
        "region": "AWS_REGION",
        "accessKeyId": "AWS_ACCESS_KEY_ID",
        "secretAccessKey": "AWS_SECRET_ACCESS_KEY",
    },
}

REQUIRED_CREDENTIALS = {
    "smtp": ["host"],
    "sendgrid": ["apiKey"],
    "mailgun": ["apiKey", "domain"],
    "aws-ses": ["region"],
}

_TAG_PATTERN = re.compile(r"<[^>]+>")


def html_to_text(html: str) -> str:
    text = re.sub(r"<(br|/p|/div|/li)\s*/?>", "\n", html, flags=re.IGNORECASE)
    text = _TAG_PATTERN.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _ses_client(options: Dict[str, Any]):
    return boto3.client(
        "ses",
        region_name=options["region"],
        aws_access_key_id=options.get("accessKeyId"),
        aws_secret_access_key=options.get("secretAccessKey"),
    )


@register_node_type(
    node_type="email-output",
    display_name="Send Email",
    description="Send an email through SMTP, SendGrid, Mailgun or AWS SES",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "provider": {"type": "string", "enum": PROVIDERS},
            "to": {"type": ["string", "array"], "minLength": 1, "minItems": 1},
            "cc": {"type": ["string", "array"]},
            "bcc": {"type": ["string", "array"]},
            "from": {"type": "string"},
            "fromName": {"type": "string"},
            "replyTo": {"type": "string"},
            "subject": {"type": "string", "minLength": 1},
            "body": {"type": "string"},
            "textBody": {"type": "string"},
            "bodyType": {"type": "string", "enum": ["html", "text", "both"]},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "host": {"type": "string"},
            "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            "secure": {"type": "boolean"},
            "username": {"type": "string"},
            "password": {"type": "string"},
            "apiKey": {"type": "string"},
            "domain": {"type": "string"},
            "mailgunRegion": {"type": "string", "enum": ["us", "eu"]},
            "region": {"type": "string"},
            "accessKeyId": {"type": "string"},
            "secretAccessKey": {"type": "string"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["provider", "to", "subject"],
    },
    output_schema={
        "type": "object",
        "properties": {
            "messageId": {"type": ["string", "null"]},
            "accepted": {"type": "array"},
            "rejected": {"type": "array"},
            "response": {},
        },
    },
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        requires_auth=True,
        default_data={"bodyType": "html", "body": "", "headers": {}, "mailgunRegion": "us"},
    ),
    icon="mail",
    color="#EF4444",
)
class EmailOutputNode(BaseNodeImpl):
    """Render and send one message per run."""

    def _credentials(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        provider = self.config["provider"]
        options = dict(self.config)
        for field, secret in CREDENTIAL_SECRETS[provider].items():
            if not options.get(field):
                value = ctx.services.secrets.get(f"EMAIL_{secret}")
                if value is not None:
                    options[field] = int(value) if field == "port" else value
        if not options.get("from"):
            options["from"] = ctx.services.secrets.get("EMAIL_FROM")

        missing = [field for field in REQUIRED_CREDENTIALS[provider] if not options.get(field)]
        if missing:
            secret_names = [f"EMAIL_{CREDENTIAL_SECRETS[provider][f]}" for f in missing]
            raise ConfigurationError(
                f"{provider} requires {', '.join(missing)} (node data or {', '.join(secret_names)})",
                field=missing[0],
            )
        if not options.get("from"):
            raise ConfigurationError("A sender address is required (from or EMAIL_FROM)", field="from")
        return options

    def _render(self, ctx: NodeExecutionContext, options: Dict[str, Any]) -> Dict[str, Any]:
        context = template_context(ctx.input, ctx.identifiers())
        body = render_text(self.config.get("body", ""), context) or ""
        body_type = self.config.get("bodyType", "html")

        text_body: Optional[str] = None
        html_body: Optional[str] = None
        if body_type == "text":
            text_body = body
        elif body_type == "html":
            html_body = body
        else:
            html_body = body
            text_body = render_text(self.config.get("textBody"), context) or html_to_text(body)

        return {
            "to": split_addresses(render_text(_join(self.config.get("to")), context)),
            "cc": split_addresses(render_text(_join(self.config.get("cc")), context)),
            "bcc": split_addresses(render_text(_join(self.config.get("bcc")), context)),
            "from": render_text(options["from"], context),
            "fromName": render_text(self.config.get("fromName"), context),
            "replyTo": render_text(self.config.get("replyTo"), context),
            "subject": render_text(self.config["subject"], context),
            "text": text_body,
            "html": html_body,
            "headers": render_mapping(self.config.get("headers"), context),
        }

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        provider = self.config["provider"]
        options = self._credentials(ctx)
        message = self._render(ctx, options)
        if not message["to"]:
            return NodeResult.fail("No recipients after template resolution", provider=provider)

        senders = {
            "smtp": self._send_smtp,
            "sendgrid": self._send_sendgrid,
            "mailgun": self._send_mailgun,
            "aws-ses": self._send_ses,
        }
        try:
            data = await senders[provider](ctx, options, message)
        except aiosmtplib.SMTPException as e:
            return NodeResult.fail(f"SMTP send failed: {e}", details={"exception": type(e).__name__}, provider=provider)
        except httpx.HTTPStatusError as e:
            return NodeResult.fail(
                f"{provider} rejected the message: HTTP {e.response.status_code}",
                details={"statusCode": e.response.status_code, "body": e.response.text},
                provider=provider,
            )
        except httpx.HTTPError as e:
            return NodeResult.fail(f"{provider} request failed: {e}", details={"exception": type(e).__name__}, provider=provider)
        except (ClientError, BotoCoreError) as e:
            return NodeResult.fail(f"SES send failed: {e}", details={"exception": type(e).__name__}, provider=provider)

        logger.info(f"Email {self.node_id} sent via {provider} to {len(message['to'])} recipient(s)")
        recipients = len(message["to"]) + len(message["cc"]) + len(message["bcc"])
        return NodeResult.ok(data, provider=provider, recipients=recipients, messageId=data.get("messageId"))

    # --- Providers ---

    @staticmethod
    def build_mime(message: Dict[str, Any]) -> EmailMessage:
        mime = EmailMessage()
        mime["From"] = formataddr((message["fromName"], message["from"])) if message["fromName"] else message["from"]
        mime["To"] = ", ".join(message["to"])
        if message["cc"]:
            mime["Cc"] = ", ".join(message["cc"])
        if message["replyTo"]:
            mime["Reply-To"] = message["replyTo"]
        mime["Subject"] = message["subject"]
        mime["Message-ID"] = make_msgid()
        for name, value in message["headers"].items():
            mime[name] = value

        if message["text"] is not None:
            mime.set_content(message["text"])
            if message["html"] is not None:
                mime.add_alternative(message["html"], subtype="html")
        else:
            mime.set_content(message["html"] or "", subtype="html")
        return mime

    async def _send_smtp(self, ctx, options, message) -> Dict[str, Any]:
        mime = self.build_mime(message)
        port = int(options.get("port") or 587)
        secure = options.get("secure")
        if secure is None:
            secure = port == 465
        recipients = message["to"] + message["cc"] + message["bcc"]
        errors, response = await aiosmtplib.send(
            mime,
            recipients=recipients,
            hostname=options["host"],
            port=port,
            username=options.get("username"),
            password=options.get("password"),
            use_tls=bool(secure),
            start_tls=None if secure else port == 587,
        )
        rejected = sorted(errors or {})
        return {
            "messageId": mime["Message-ID"],
            "accepted": [r for r in recipients if r not in rejected],
            "rejected": rejected,
            "response": response,
        }

    async def _send_sendgrid(self, ctx, options, message) -> Dict[str, Any]:
        personalization: Dict[str, Any] = {"to": [{"email": a} for a in message["to"]]}
        if message["cc"]:
            personalization["cc"] = [{"email": a} for a in message["cc"]]
        if message["bcc"]:
            personalization["bcc"] = [{"email": a} for a in message["bcc"]]

        sender: Dict[str, Any] = {"email": message["from"]}
        if message["fromName"]:
            sender["name"] = message["fromName"]

        content = []
        if message["text"] is not None:
            content.append({"type": "text/plain", "value": message["text"]})
        if message["html"] is not None:
            content.append({"type": "text/html", "value": message["html"]})

        payload: Dict[str, Any] = {
            "personalizations": [personalization],
            "from": sender,
            "subject": message["subject"],
            "content": content,
        }
        if message["replyTo"]:
            payload["reply_to"] = {"email": message["replyTo"]}
        if message["headers"]:
            payload["headers"] = message["headers"]

        response = await ctx.services.http.post(
            SENDGRID_URL,
            json=payload,
            headers={"Authorization": f"Bearer {options['apiKey']}"},
        )
        response.raise_for_status()
        return {
            "messageId": response.headers.get("x-message-id"),
            "accepted": message["to"] + message["cc"] + message["bcc"],
            "rejected": [],
            "response": response.status_code,
        }

    async def _send_mailgun(self, ctx, options, message) -> Dict[str, Any]:
        base = MAILGUN_URLS.get(options.get("mailgunRegion", "us"), MAILGUN_URLS["us"])
        sender = formataddr((message["fromName"], message["from"])) if message["fromName"] else message["from"]
        form: Dict[str, Any] = {
            "from": sender,
            "to": message["to"],
            "subject": message["subject"],
        }
        if message["cc"]:
            form["cc"] = message["cc"]
        if message["bcc"]:
            form["bcc"] = message["bcc"]
        if message["text"] is not None:
            form["text"] = message["text"]
        if message["html"] is not None:
            form["html"] = message["html"]
        if message["replyTo"]:
            form["h:Reply-To"] = message["replyTo"]
        for name, value in message["headers"].items():
            form[f"h:{name}"] = value

        response = await ctx.services.http.post(
            f"{base}/{options['domain']}/messages",
            data=form,
            auth=("api", options["apiKey"]),
        )
        response.raise_for_status()
        body = response.json()
        return {
            "messageId": body.get("id"),
            "accepted": message["to"] + message["cc"] + message["bcc"],
            "rejected": [],
            "response": body.get("message"),
        }

    async def _send_ses(self, ctx, options, message) -> Dict[str, Any]:
        mime = self.build_mime(message)
        recipients = message["to"] + message["cc"] + message["bcc"]
        client = _ses_client(options)
        response = await asyncio.to_thread(
            client.send_raw_email,
            Source=message["from"],
            Destinations=recipients,
            RawMessage={"Data": mime.as_bytes()},
        )
        return {
            "messageId": response.get("MessageId"),
            "accepted": recipients,
            "rejected": [],
            "response": response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
        }


def _join(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)
