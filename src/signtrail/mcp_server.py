"""SignTrail MCP Server — verification tools for AI agents.

Exposes the read side of SignTrail (document listing, public signature
verification, group progress and audit history) as MCP tools, so an
agent can check a signed file without going through the web UI.

Tools:
    list_documents         — List documents with optional status filter
    get_signature_details  — Public metadata behind a verification link
    unlock_signature       — Unlock a PIN-protected signature
    verify_file            — Hash a local file and compare with the record
    group_status           — Signer roster and pending count of a document
    get_audit_trail        — Full audit history for a document

Invocation:
    python -m signtrail.mcp_server
    signtrail-mcp

Client configuration (Claude Desktop / Cursor):
    {"mcpServers": {"signtrail": {"command": "signtrail-mcp"}}}
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .errors import SignTrailError
from .models import DocumentStatus
from .services import Services, build_services

logger = logging.getLogger("signtrail.mcp")

_services: Services | None = None

server = Server("signtrail")


def configure(services: Services) -> None:
    """Point the tools at a specific set of services."""
    global _services
    _services = services


def _svc() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


# ─────────────────────────────────────────────────────────────
# Response helpers
# ─────────────────────────────────────────────────────────────


def _json(data: Any) -> list[TextContent]:
    """Wrap data as a JSON TextContent response."""
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _error(message: str) -> list[TextContent]:
    """Return an error payload as a JSON TextContent response."""
    return [TextContent(type="text", text=json.dumps({"error": message}))]


def _signature_id_schema() -> dict:
    return {"type": "string", "description": "Signature ID from the verification link."}


# ─────────────────────────────────────────────────────────────
# Tool Definitions
# ─────────────────────────────────────────────────────────────


@server.list_tools()
async def list_tools() -> list[Tool]:
    """Register all SignTrail tools with the MCP server."""
    return [
        Tool(
            name="list_documents",
            description=(
                "List documents stored in SignTrail, newest first. "
                "Optionally filter by status (draft, pending, completed, archived)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "status": {"type": "string", "description": "Status filter."},
                },
                "required": [],
            },
        ),
        Tool(
            name="get_signature_details",
            description=(
                "Public metadata for a signature: signer, time, registered hash. "
                "PIN-protected signatures only reveal the document title."
            ),
            inputSchema={
                "type": "object",
                "properties": {"signature_id": _signature_id_schema()},
                "required": ["signature_id"],
            },
        ),
        Tool(
            name="unlock_signature",
            description=(
                "Unlock a PIN-protected signature. Three wrong codes lock it "
                "for 30 minutes. The signer stays hidden until a file is verified."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "signature_id": _signature_id_schema(),
                    "access_code": {"type": "string", "description": "The PIN."},
                },
                "required": ["signature_id", "access_code"],
            },
        ),
        Tool(
            name="verify_file",
            description=(
                "Compute the SHA-256 of a local file and compare it with the "
                "hash registered for a signature."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "signature_id": _signature_id_schema(),
                    "file_path": {"type": "string", "description": "Path to the file."},
                    "access_code": {
                        "type": "string",
                        "description": "PIN, for protected signatures.",
                    },
                },
                "required": ["signature_id", "file_path"],
            },
        ),
        Tool(
            name="group_status",
            description="Signer roster of a group document and how many are still pending.",
            inputSchema={
                "type": "object",
                "properties": {
                    "document_id": {"type": "string", "description": "Document ID."},
                },
                "required": ["document_id"],
            },
        ),
        Tool(
            name="get_audit_trail",
            description="Chronological audit entries for a document.",
            inputSchema={
                "type": "object",
                "properties": {
                    "document_id": {"type": "string", "description": "Document ID."},
                },
                "required": ["document_id"],
            },
        ),
    ]


# ─────────────────────────────────────────────────────────────
# Tool Dispatch
# ─────────────────────────────────────────────────────────────


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Dispatch incoming tool calls to the appropriate handler.

    Expected failures come back as ``{"error": message}``; anything else
    is logged with its traceback.
    """
    handlers = {
        "list_documents": _handle_list_documents,
        "get_signature_details": _handle_get_signature_details,
        "unlock_signature": _handle_unlock_signature,
        "verify_file": _handle_verify_file,
        "group_status": _handle_group_status,
        "get_audit_trail": _handle_get_audit_trail,
    }
    handler = handlers.get(name)
    if handler is None:
        return _error(f"Unknown tool: {name}")
    try:
        return await handler(arguments)
    except SignTrailError as exc:
        return _error(exc.message)
    except Exception as exc:
        logger.exception("Tool '%s' failed", name)
        return _error(f"{name} failed: {exc}")


# ─────────────────────────────────────────────────────────────
# Tool Handlers
# ─────────────────────────────────────────────────────────────


async def _handle_list_documents(args: dict) -> list[TextContent]:
    status_str: str | None = args.get("status")
    status: DocumentStatus | None = None

    if status_str:
        try:
            status = DocumentStatus(status_str)
        except ValueError:
            return _error(
                f"Invalid status '{status_str}'. Valid values: "
                + ", ".join(s.value for s in DocumentStatus)
            )

    documents = await _svc().store.list_documents(status=status)
    return _json([
        {
            "document_id": d.id,
            "title": d.title,
            "status": d.status.value,
            "owner_id": d.owner_id,
            "group_id": d.group_id,
            "current_version_id": d.current_version_id,
            "created_at": d.created_at.isoformat(),
        }
        for d in documents
    ])


async def _handle_get_signature_details(args: dict) -> list[TextContent]:
    signature_id = args.get("signature_id", "")
    if not signature_id:
        return _error("signature_id is required.")
    view = await _svc().verification.get_details(signature_id)
    return _json(view.model_dump(mode="json"))


async def _handle_unlock_signature(args: dict) -> list[TextContent]:
    signature_id = args.get("signature_id", "")
    access_code = (args.get("access_code") or "").strip()
    if not signature_id or not access_code:
        return _error("signature_id and access_code are required.")
    view = await _svc().verification.unlock(signature_id, access_code)
    if view is None:
        return _error("Wrong code or unknown document.")
    return _json(view.model_dump(mode="json"))


async def _handle_verify_file(args: dict) -> list[TextContent]:
    signature_id = args.get("signature_id", "")
    path = Path(args.get("file_path", ""))
    if not signature_id:
        return _error("signature_id is required.")
    verification = _svc().verification
    if await verification.resolve_kind(signature_id) is None:
        return _error("Signature not found.")
    if not path.is_file():
        return _error(f"File not found: {path}")

    result = await verification.verify_uploaded_file(
        signature_id, path.read_bytes(), access_code=args.get("access_code")
    )
    return _json(result.model_dump(mode="json"))


async def _handle_group_status(args: dict) -> list[TextContent]:
    document_id = args.get("document_id", "")
    group = _svc().group
    signers = await group.list_signers(document_id)
    pending = await group.count_pending_signers(document_id)
    return _json({
        "document_id": document_id,
        "pending": pending,
        "is_complete": bool(signers) and pending == 0,
        "signers": [
            {
                "user_id": s.user_id,
                "status": s.status.value,
                "order": s.order,
                "signature_id": s.signature_id,
            }
            for s in signers
        ],
    })


async def _handle_get_audit_trail(args: dict) -> list[TextContent]:
    document_id = args.get("document_id", "")
    entries = await _svc().store.get_audit_trail(document_id)
    return _json([e.model_dump(mode="json") for e in entries])


# ─────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────


def main() -> None:
    """Run the SignTrail MCP server on stdio transport."""
    logging.basicConfig(level=logging.WARNING, format="%(name)s: %(message)s")
    asyncio.run(_run_server())


async def _run_server() -> None:
    """Async entry point for the stdio MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream, write_stream, server.create_initialization_options()
        )


if __name__ == "__main__":
    main()
