"""Trigger Node Type Implementations

Trigger nodes start a run. They accept no inputs; the engine seeds them with
the TriggerEvent payload as ``ctx.input`` (None when a run is started
without a delivery).

Node types:
- schedule: interval or cron fire events
- webhook: HTTP endpoint registration / inbound deliveries
- form: form descriptor / validated submissions
- email-receive: delivered messages or IMAP polling
- database-change: delivered change events or MongoDB polling
"""

from __future__ import annotations

import asyncio
import email
import imaplib
import logging
import re
from datetime import datetime, timedelta, timezone
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from croniter import croniter
from dateutil import tz

from .. import settings
from ..engine.context import NodeExecutionContext, NodeResult, now_iso, utcnow
from ..engine.template import get_value
from ..errors import ConfigurationError
from .registry import (
    CATEGORY_TRIGGERS,
    BaseNodeImpl,
    ExecutorMetadata,
    register_node_type,
)
from .utils import jsonable, mongo_client

logger = logging.getLogger(__name__)


def _trigger_metadata(**kwargs) -> ExecutorMetadata:
    return ExecutorMetadata(allowed_inputs=[], max_inputs=0, **kwargs)


# =====================================================================
# Schedule
# =====================================================================

INTERVAL_UNITS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}


def next_fire_time(config: Dict[str, Any], after: Optional[datetime] = None) -> datetime:
    """Next time a schedule trigger fires strictly after ``after``.

    Cron expressions are evaluated in the configured timezone (UTC by
    default); the result is always timezone-aware.

    Raises:
        ConfigurationError: If the schedule is malformed
    """
    after = after or utcnow()
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    if config.get("scheduleType", "interval") == "cron":
        expression = config.get("cron") or ""
        if not croniter.is_valid(expression):
            raise ConfigurationError(f"Invalid cron expression '{expression}'", field="cron")
        zone = tz.gettz(config.get("timezone") or "UTC")
        if zone is None:
            raise ConfigurationError(f"Unknown timezone '{config.get('timezone')}'", field="timezone")
        return croniter(expression, after.astimezone(zone)).get_next(datetime)

    interval = config.get("interval") or {}
    seconds = int(interval.get("value", 1)) * INTERVAL_UNITS.get(interval.get("unit", "minutes"), 60)
    return after + timedelta(seconds=seconds)


@register_node_type(
    node_type="schedule",
    display_name="Schedule",
    description="Start the workflow on an interval or cron schedule",
    category=CATEGORY_TRIGGERS,
    config_schema={
        "type": "object",
        "properties": {
            "scheduleType": {"type": "string", "enum": ["interval", "cron"]},
            "interval": {
                "type": "object",
                "properties": {
                    "value": {"type": "integer", "minimum": 1},
                    "unit": {"type": "string", "enum": list(INTERVAL_UNITS)},
                },
                "required": ["value", "unit"],
            },
            "cron": {"type": "string", "minLength": 1},
            "timezone": {"type": "string"},
            "payload": {},
        },
        "if": {"properties": {"scheduleType": {"const": "cron"}}},
        "then": {"required": ["cron"]},
        "else": {"required": ["interval"]},
    },
    output_schema={"description": "Trigger payload, or a fire event when none was delivered"},
    metadata=_trigger_metadata(default_data={"scheduleType": "interval", "timezone": "UTC"}),
    icon="clock",
    color="#6366F1",
)
class ScheduleTriggerNode(BaseNodeImpl):
    """Emits the delivered payload, the static ``payload``, or a fire event."""

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        if self.config.get("scheduleType") == "cron":
            if not croniter.is_valid(self.config.get("cron", "")):
                errors.append({"field": "cron", "error": f"Invalid cron expression '{self.config.get('cron')}'"})
        if self.config.get("timezone") and tz.gettz(self.config["timezone"]) is None:
            errors.append({"field": "timezone", "error": f"Unknown timezone '{self.config['timezone']}'"})
        return errors

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        fired_at = utcnow()
        next_run = next_fire_time(self.config, fired_at).isoformat()

        if ctx.input is not None:
            data = ctx.input
        elif "payload" in self.config:
            data = self.config["payload"]
        else:
            data = {
                "firedAt": fired_at.isoformat(),
                "scheduleType": self.config.get("scheduleType"),
                "nextFireTime": next_run,
            }
        return NodeResult.ok(data, scheduleType=self.config.get("scheduleType"), nextFireTime=next_run)


# =====================================================================
# Webhook
# =====================================================================

_AUTH_SCHEMA = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": ["none", "basic", "bearer", "header"]},
        "username": {"type": "string"},
        "password": {"type": "string"},
        "token": {"type": "string"},
        "headerName": {"type": "string"},
        "headerValue": {"type": "string"},
    },
    "allOf": [
        {
            "if": {"properties": {"type": {"const": "basic"}}, "required": ["type"]},
            "then": {"required": ["username", "password"]},
        },
        {
            "if": {"properties": {"type": {"const": "bearer"}}, "required": ["type"]},
            "then": {"required": ["token"]},
        },
        {
            "if": {"properties": {"type": {"const": "header"}}, "required": ["type"]},
            "then": {"required": ["headerName", "headerValue"]},
        },
    ],
}


@register_node_type(
    node_type="webhook",
    display_name="Webhook",
    description="Start the workflow when an HTTP request arrives",
    category=CATEGORY_TRIGGERS,
    config_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "minLength": 1, "pattern": r"^/?[A-Za-z0-9_\-./{}]+$"},
            "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
            "authentication": _AUTH_SCHEMA,
            "responseCode": {"type": "integer", "minimum": 100, "maximum": 599},
            "responseBody": {},
        },
        "required": ["path"],
    },
    output_schema={
        "type": "object",
        "properties": {
            "webhookUrl": {"type": "string"},
            "method": {"type": "string"},
            "path": {"type": "string"},
            "status": {"type": "string"},
        },
    },
    metadata=_trigger_metadata(
        is_async=True,
        default_data={"method": "POST", "authentication": {"type": "none"}, "responseCode": 200},
    ),
    icon="webhook",
    color="#10B981",
)
class WebhookTriggerNode(BaseNodeImpl):
    """Registers its endpoint; a delivered request becomes the node's output."""

    def _register(self, ctx: NodeExecutionContext) -> str:
        return ctx.services.webhooks.register(
            path=self.config["path"],
            method=self.config.get("method", "POST"),
            workflow_id=ctx.run.workflow_id,
            node_id=self.node_id,
            authentication=self.config.get("authentication"),
            response_code=self.config.get("responseCode", 200),
            response_body=self.config.get("responseBody"),
        )

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        url = self._register(ctx)
        method = self.config.get("method", "POST").upper()

        if ctx.input is not None:
            return NodeResult.ok(ctx.input, webhookUrl=url, method=method, delivered=True)

        return NodeResult.ok(
            {
                "webhookUrl": url,
                "method": method,
                "path": self.config["path"],
                "status": "waiting",
            },
            webhookUrl=url,
            method=method,
            delivered=False,
        )


def register_webhook_triggers(definition, registry) -> List[str]:
    """Register every webhook trigger of ``definition`` and return their URLs."""
    urls = []
    for node in definition.nodes:
        if node.type != "webhook":
            continue
        data = dict(node.data)
        urls.append(registry.register(
            path=data.get("path", ""),
            method=data.get("method", "POST"),
            workflow_id=definition.id,
            node_id=node.id,
            authentication=data.get("authentication"),
            response_code=data.get("responseCode", 200),
            response_body=data.get("responseBody"),
        ))
    return urls


# =====================================================================
# Form
# =====================================================================

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FORM_FIELD_TYPES = ["text", "email", "number", "textarea", "select", "checkbox", "date"]


@register_node_type(
    node_type="form",
    display_name="Form",
    description="Start the workflow when a form is submitted",
    category=CATEGORY_TRIGGERS,
    config_schema={
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "description": {"type": "string"},
            "submitLabel": {"type": "string"},
            "fields": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "label": {"type": "string"},
                        "type": {"type": "string", "enum": FORM_FIELD_TYPES},
                        "required": {"type": "boolean"},
                        "options": {"type": "array"},
                    },
                    "required": ["name"],
                },
            },
        },
        "required": ["fields"],
    },
    metadata=_trigger_metadata(default_data={"title": "Form", "submitLabel": "Submit"}),
    icon="form",
    color="#F59E0B",
)
class FormTriggerNode(BaseNodeImpl):
    """Validates a submission against the field list.

    Without a submission the node returns the form descriptor so the
    caller can render it.
    """

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        seen = set()
        for i, spec in enumerate(self.config.get("fields", [])):
            if spec["name"] in seen:
                errors.append({"field": f"fields[{i}].name", "error": f"Duplicate field name '{spec['name']}'"})
            seen.add(spec["name"])
        return errors

    def descriptor(self) -> Dict[str, Any]:
        return {
            "title": self.config.get("title"),
            "description": self.config.get("description", ""),
            "submitLabel": self.config.get("submitLabel"),
            "fields": self.config.get("fields", []),
        }

    def validate_submission(self, submission: Dict[str, Any]):
        values: Dict[str, Any] = {}
        field_errors: Dict[str, str] = {}

        for spec in self.config.get("fields", []):
            name = spec["name"]
            field_type = spec.get("type", "text")
            raw = submission.get(name)
            empty = raw is None or (isinstance(raw, str) and raw.strip() == "")

            if empty:
                if spec.get("required"):
                    field_errors[name] = "This field is required"
                elif field_type == "checkbox":
                    values[name] = False
                else:
                    values[name] = None
                continue

            if field_type == "email":
                if not EMAIL_PATTERN.match(str(raw).strip()):
                    field_errors[name] = "Invalid email address"
                    continue
                values[name] = str(raw).strip()
            elif field_type == "number":
                try:
                    number = float(raw)
                except (TypeError, ValueError):
                    field_errors[name] = "Must be a number"
                    continue
                values[name] = int(number) if number.is_integer() else number
            elif field_type == "checkbox":
                values[name] = raw if isinstance(raw, bool) else str(raw).lower() in ("true", "1", "on", "yes")
            elif field_type == "select" and spec.get("options"):
                allowed = [o.get("value") if isinstance(o, dict) else o for o in spec["options"]]
                if raw not in allowed:
                    field_errors[name] = f"Must be one of {allowed}"
                    continue
                values[name] = raw
            else:
                values[name] = raw

        return values, field_errors

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        if ctx.input is None:
            return NodeResult.ok({"form": self.descriptor(), "status": "waiting"}, submitted=False)

        if not isinstance(ctx.input, dict):
            return NodeResult.fail(
                "Form submission must be an object",
                error_type="validation",
                submitted=True,
            )

        values, field_errors = self.validate_submission(ctx.input)
        if field_errors:
            logger.info(f"Form {self.node_id}: submission rejected: {field_errors}")
            return NodeResult.fail(
                "Form submission is invalid",
                details={"fieldErrors": field_errors},
                error_type="validation",
                submitted=True,
            )

        values["submittedAt"] = now_iso()
        return NodeResult.ok(values, submitted=True, fieldCount=len(self.config.get("fields", [])))


# =====================================================================
# Email receive
# =====================================================================

def _header_text(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return "".join(
        part.decode(encoding or "utf-8", errors="replace") if isinstance(part, bytes) else part
        for part, encoding in decode_header(raw)
    )


def parse_email_message(raw_email: bytes, uid: str) -> Dict[str, Any]:
    """Parse an RFC822 message into the dict shape email-receive emits."""
    msg = email.message_from_bytes(raw_email)

    try:
        date = parsedate_to_datetime(msg.get("Date", "")).isoformat()
    except (TypeError, ValueError):
        date = now_iso()

    text, html, attachments = "", "", []
    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = str(part.get("Content-Disposition", ""))
        payload = part.get_payload(decode=True) or b""
        if "attachment" in disposition:
            attachments.append({
                "filename": part.get_filename() or "",
                "contentType": content_type,
                "size": len(payload),
            })
        elif content_type == "text/plain" and not text:
            text = payload.decode(part.get_content_charset() or "utf-8", errors="replace")
        elif content_type == "text/html" and not html:
            html = payload.decode(part.get_content_charset() or "utf-8", errors="replace")

    return {
        "id": uid,
        "messageId": msg.get("Message-ID", ""),
        "subject": _header_text(msg.get("Subject")),
        "from": _header_text(msg.get("From")),
        "to": [a.strip() for a in _header_text(msg.get("To")).split(",") if a.strip()],
        "date": date,
        "text": text,
        "html": html,
        "attachments": attachments,
    }


def _fetch_imap_messages(options: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Blocking IMAP fetch of unseen messages; run via ``asyncio.to_thread``."""
    cls = imaplib.IMAP4_SSL if options.get("secure", True) else imaplib.IMAP4
    connection = cls(options["host"], int(options.get("port") or (993 if options.get("secure", True) else 143)))
    try:
        connection.login(options["username"], options["password"])
        connection.select(options.get("folder") or "INBOX")
        _, data = connection.search(None, "UNSEEN")
        ids = data[0].split()[-int(options.get("maxMessages") or settings.EMAIL_POLL_MAX_MESSAGES):]

        messages = []
        for msg_id in ids:
            fetch_cmd = "(RFC822)" if options.get("markSeen", True) else "(BODY.PEEK[])"
            _, msg_data = connection.fetch(msg_id, fetch_cmd)
            if not msg_data or msg_data[0] is None:
                continue
            messages.append(parse_email_message(msg_data[0][1], msg_id.decode()))
        return messages
    finally:
        try:
            connection.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")


def _message_matches(message: Dict[str, Any], config: Dict[str, Any]) -> bool:
    case_sensitive = config.get("caseSensitive", False)

    def contains(haystack: Any, needle: str) -> bool:
        haystack = str(haystack or "")
        if not case_sensitive:
            return needle.lower() in haystack.lower()
        return needle in haystack

    subject_filter = config.get("subjectFilter")
    if subject_filter and not contains(message.get("subject"), subject_filter):
        return False
    from_filter = config.get("fromFilter")
    if from_filter and not contains(message.get("from"), from_filter):
        return False
    return True


@register_node_type(
    node_type="email-receive",
    display_name="Email Received",
    description="Start the workflow when a matching email arrives",
    category=CATEGORY_TRIGGERS,
    config_schema={
        "type": "object",
        "properties": {
            "subjectFilter": {"type": "string"},
            "fromFilter": {"type": "string"},
            "caseSensitive": {"type": "boolean"},
            "host": {"type": "string"},
            "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            "secure": {"type": "boolean"},
            "username": {"type": "string"},
            "password": {"type": "string"},
            "folder": {"type": "string"},
            "markSeen": {"type": "boolean"},
            "maxMessages": {"type": "integer", "minimum": 1},
        },
    },
    metadata=_trigger_metadata(
        is_async=True,
        requires_auth=True,
        default_data={"folder": "INBOX", "secure": True, "markSeen": True, "caseSensitive": False},
    ),
    icon="mail",
    color="#EF4444",
)
class EmailReceiveTriggerNode(BaseNodeImpl):
    """Filters delivered messages, or polls IMAP when nothing was delivered.

    IMAP credentials come from the node's data or from the
    ``EMAIL_IMAP_HOST/PORT/USERNAME/PASSWORD`` secrets.
    """

    def _imap_options(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        options = dict(self.config)
        fallback = ctx.services.secrets.with_prefix("EMAIL_IMAP_", "HOST", "PORT", "USERNAME", "PASSWORD")
        for key in ("host", "port", "username", "password"):
            if not options.get(key) and key.upper() in fallback:
                options[key] = fallback[key.upper()]
        missing = [key for key in ("host", "username", "password") if not options.get(key)]
        if missing:
            raise ConfigurationError(
                f"IMAP polling requires {', '.join(missing)} (node data or EMAIL_IMAP_* secrets)",
                field=missing[0],
            )
        return options

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        if ctx.input is None:
            options = self._imap_options(ctx)
            try:
                messages = await asyncio.to_thread(_fetch_imap_messages, options)
            except (imaplib.IMAP4.error, OSError) as e:
                logger.error(f"IMAP polling failed for node {self.node_id}: {e}")
                return NodeResult.fail(f"IMAP polling failed: {e}", details={"host": options.get("host")})
            matched = [m for m in messages if _message_matches(m, self.config)]
            return NodeResult.ok(matched, source="imap", received=len(messages), matched=len(matched))

        if isinstance(ctx.input, list):
            matched = [m for m in ctx.input if isinstance(m, dict) and _message_matches(m, self.config)]
            return NodeResult.ok(matched, source="delivery", received=len(ctx.input), matched=len(matched))

        if isinstance(ctx.input, dict) and _message_matches(ctx.input, self.config):
            return NodeResult.ok(ctx.input, source="delivery", received=1, matched=1)
        return NodeResult.ok(None, source="delivery", received=1, matched=0)


# =====================================================================
# Database change
# =====================================================================

CHANGE_OPERATIONS = ["insert", "update", "replace", "delete"]


def _field_filters_match(document: Any, filters: Dict[str, Any]) -> bool:
    if not filters:
        return True
    if not isinstance(document, dict):
        return False
    return all(get_value(document, path) == expected for path, expected in filters.items())


@register_node_type(
    node_type="database-change",
    display_name="Database Change",
    description="Start the workflow when documents change in a collection",
    category=CATEGORY_TRIGGERS,
    config_schema={
        "type": "object",
        "properties": {
            "connectionString": {"type": "string"},
            "database": {"type": "string", "minLength": 1},
            "collection": {"type": "string", "minLength": 1},
            "operations": {
                "type": "array",
                "items": {"type": "string", "enum": CHANGE_OPERATIONS},
                "minItems": 1,
            },
            "fieldFilters": {"type": "object"},
            "timestampField": {"type": "string"},
            "batchSize": {"type": "integer", "minimum": 1, "maximum": 1000},
        },
        "required": ["collection"],
    },
    metadata=_trigger_metadata(
        is_async=True,
        requires_auth=True,
        default_data={"operations": list(CHANGE_OPERATIONS), "timestampField": "updatedAt", "batchSize": 100},
    ),
    icon="database",
    color="#0EA5E9",
)
class DatabaseChangeTriggerNode(BaseNodeImpl):
    """Filters delivered ``{operation, document}`` events, or polls MongoDB.

    Polling reads documents whose ``timestampField`` is newer than the
    cursor kept in ``services.storage`` and advances the cursor.
    """

    CURSOR_NAMESPACE = "database-change"

    def _event_matches(self, event: Dict[str, Any]) -> bool:
        if event.get("operation") not in self.config.get("operations", CHANGE_OPERATIONS):
            return False
        return _field_filters_match(event.get("document"), self.config.get("fieldFilters") or {})

    async def _poll(self, ctx: NodeExecutionContext) -> NodeResult:
        uri = self.config.get("connectionString") or ctx.services.secrets.get("MONGODB_URI")
        if not uri:
            raise ConfigurationError(
                "Polling requires connectionString or the MONGODB_URI secret",
                field="connectionString",
            )
        database = self.config.get("database") or ctx.services.secrets.get("MONGODB_DATABASE")
        if not database:
            raise ConfigurationError("Polling requires a database name", field="database")

        storage = ctx.services.storage
        cursor_key = f"{ctx.run.workflow_id}:{self.node_id}"
        since = await storage.get(self.CURSOR_NAMESPACE, cursor_key)
        ts_field = self.config.get("timestampField", "updatedAt")

        query: Dict[str, Any] = dict(self.config.get("fieldFilters") or {})
        if since:
            query[ts_field] = {"$gt": datetime.fromisoformat(since)}

        client = mongo_client(uri)
        try:
            collection = client[database][self.config["collection"]]
            cursor = collection.find(query).sort(ts_field, 1).limit(int(self.config.get("batchSize", 100)))
            documents = await cursor.to_list(length=None)
        finally:
            client.close()

        if documents:
            last = documents[-1].get(ts_field)
            if isinstance(last, datetime):
                await storage.set(self.CURSOR_NAMESPACE, cursor_key, last.isoformat())

        events = [{"operation": "update", "document": jsonable(doc)} for doc in documents]
        return NodeResult.ok(events, source="poll", changes=len(events), since=since)

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        if ctx.input is None:
            return await self._poll(ctx)

        events = ctx.input if isinstance(ctx.input, list) else [ctx.input]
        matched = [e for e in events if isinstance(e, dict) and self._event_matches(e)]
        if isinstance(ctx.input, list):
            return NodeResult.ok(matched, source="delivery", changes=len(matched))
        return NodeResult.ok(matched[0] if matched else None, source="delivery", changes=len(matched))

