"""Automation infrastructure constants: the single source of truth for env vars."""

import os

# Server binding, used by `python -m gateway`
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Public URL of the gateway, used to build webhook trigger URLs
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", f"http://localhost:{API_PORT}").rstrip("/")

# Mount point of the inbound webhook listener
WEBHOOK_PATH_PREFIX = os.getenv("WEBHOOK_PATH_PREFIX", "/hooks")

# Reported to nodes as ctx.run.environment (e.g. "development", "production")
ENVIRONMENT = os.getenv("AUTOMATION_ENV", "development")

# Root directory for read-file and file-output nodes; paths outside it are rejected
FILES_ROOT = os.getenv("AUTOMATION_FILES_ROOT", os.getcwd())

# CORS origins for the gateway (comma-separated)
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]

# Gateway state database (workflows, executions, node results, key-value
# entries). Separate from the DATABASE_URL secret that database nodes use.
GATEWAY_DATABASE_URL = os.getenv("GATEWAY_DATABASE_URL", "sqlite+aiosqlite:///./automation.db")
GATEWAY_DB_ECHO = os.getenv("GATEWAY_DB_ECHO", "false").lower() == "true"
