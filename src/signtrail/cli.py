"""SignTrail CLI — sign documents and verify signatures from the terminal.

Usage:
    signtrail user add alice --name "Alice" --email alice@example.org
    signtrail upload contract.pdf --owner alice
    signtrail sign <version-id> --user alice --page 1 --x 100 --y 650
    signtrail group register <document-id> alice bob
    signtrail group finalize <document-id> --user alice
    signtrail verify <signature-id>
    signtrail verify-file <signature-id> signed.pdf
    signtrail history <document-id>
    signtrail serve [--port 8400]
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable
from pathlib import Path
from typing import Optional, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings, get_settings
from .errors import SignTrailError
from .models import (
    DocumentStatus,
    LockedView,
    SignaturePlacement,
    SignerStatus,
    SignOptions,
    UserProfile,
)
from .services import Services, build_services, upload_document

console = Console()

T = TypeVar("T")


def _run(awaitable: Awaitable[T]) -> T:
    """Run a service call; expected failures end the command with exit 1."""
    try:
        return asyncio.run(awaitable)
    except SignTrailError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(1)


def _placement_options(func):
    func = click.option("--height", default=0.0, type=float, help="Mark height")(func)
    func = click.option("--width", default=0.0, type=float, help="Mark width")(func)
    func = click.option("--y", "position_y", default=0.0, type=float, help="Top edge")(func)
    func = click.option("--x", "position_x", default=0.0, type=float, help="Left edge")(func)
    func = click.option("--page", default=1, type=int, help="Page number (1-indexed)")(func)
    return func


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="SignTrail data directory (default: ~/.signtrail)",
)
@click.option("-v", "--verbose", is_flag=True, help="Log service activity")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str], verbose: bool) -> None:
    """SignTrail — document signing with a verifiable audit trail."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    ctx.ensure_object(dict)
    settings = Settings(data_dir=Path(data_dir)) if data_dir else get_settings()
    ctx.obj["services"] = build_services(settings=settings)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@main.group()
def user() -> None:
    """Manage the local user directory."""


@user.command("add")
@click.argument("user_id")
@click.option("--name", required=True, help="Display name")
@click.option("--email", required=True, help="Email address")
@click.pass_context
def user_add(ctx: click.Context, user_id: str, name: str, email: str) -> None:
    """Register a user so their signatures can be displayed."""
    svc: Services = ctx.obj["services"]
    _run(svc.store.save_user(UserProfile(id=user_id, name=name, email=email)))
    console.print(f"[green]Saved user[/] {user_id} ({name} <{email}>)")


# ---------------------------------------------------------------------------
# Upload / sign
# ---------------------------------------------------------------------------

@main.command()
@click.argument("file", type=click.Path(exists=True))
@click.option("--owner", required=True, help="Owning user ID")
@click.option("--title", default=None, help="Document title")
@click.option("--group", "group_id", default=None, help="Owning group ID (group signing)")
@click.pass_context
def upload(
    ctx: click.Context,
    file: str,
    owner: str,
    title: Optional[str],
    group_id: Optional[str],
) -> None:
    """Register a file as the base version of a new document."""
    svc: Services = ctx.obj["services"]
    path = Path(file)
    document, version = _run(
        upload_document(svc, path.read_bytes(), title or path.stem, owner, group_id=group_id)
    )
    console.print(
        Panel(
            f"[bold green]Document uploaded[/]\n\n"
            f"  Document: {document.title}\n"
            f"  ID:       {document.id}\n"
            f"  Version:  {version.id}\n"
            f"  Hash:     {version.content_hash[:16]}...\n"
            f"  Status:   {document.status.value}",
            title="SignTrail",
            border_style="green",
        )
    )


@main.command()
@click.argument("version_id")
@click.option("--user", "user_id", required=True, help="Signing user ID")
@_placement_options
@click.option("--no-mark", is_flag=True, help="Don't draw the verification mark")
@click.pass_context
def sign(
    ctx: click.Context,
    version_id: str,
    user_id: str,
    page: int,
    position_x: float,
    position_y: float,
    width: float,
    height: float,
    no_mark: bool,
) -> None:
    """Sign your own document version."""
    svc: Services = ctx.obj["services"]
    placement = SignaturePlacement(
        page_number=page,
        position_x=position_x,
        position_y=position_y,
        width=width,
        height=height,
    )

    async def _sign():
        document = await svc.personal.sign(
            user_id, version_id, [placement], options=SignOptions(display_mark=not no_mark)
        )
        records = await svc.store.list_signatures(document.current_version_id)
        version = await svc.store.get_version(document.current_version_id)
        return document, records, version

    document, records, version = _run(_sign())
    links = "\n".join(
        f"  Verify:   {svc.personal.verification_url(r.id)}" for r in records
    )
    console.print(
        Panel(
            f"[bold green]Document signed![/]\n\n"
            f"  Document: {document.title}\n"
            f"  Version:  {document.current_version_id}\n"
            f"  Hash:     {version.signed_content_hash}\n"
            f"{links}\n"
            f"  Status:   {document.status.value}",
            title="SignTrail",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# Group signing
# ---------------------------------------------------------------------------

@main.group()
def group() -> None:
    """Multi-signer documents."""


@group.command("register")
@click.argument("document_id")
@click.argument("user_ids", nargs=-1, required=True)
@click.pass_context
def group_register(ctx: click.Context, document_id: str, user_ids: tuple[str, ...]) -> None:
    """Add signers to a group document."""
    svc: Services = ctx.obj["services"]
    added = _run(svc.group.register_signers(document_id, list(user_ids)))
    console.print(f"[green]Added {added} signer(s)[/] ({len(user_ids) - added} already present)")


@group.command("sign")
@click.argument("document_id")
@click.option("--user", "user_id", required=True, help="Signing user ID")
@_placement_options
@click.pass_context
def group_sign(
    ctx: click.Context,
    document_id: str,
    user_id: str,
    page: int,
    position_x: float,
    position_y: float,
    width: float,
    height: float,
) -> None:
    """Commit your mark on a group document."""
    svc: Services = ctx.obj["services"]
    placement = SignaturePlacement(
        page_number=page,
        position_x=position_x,
        position_y=position_y,
        width=width,
        height=height,
    )
    progress = _run(svc.group.record_signature(document_id, user_id, placement))
    if progress.is_complete:
        console.print("[bold green]All signers have signed.[/] Ready to finalize.")
    else:
        console.print(
            f"[green]Signed.[/] Waiting for {progress.remaining_signers} more signer(s)."
        )
    console.print(f"  Signature: {progress.signature.id}")


@group.command("decline")
@click.argument("document_id")
@click.option("--user", "user_id", required=True, help="Declining user ID")
@click.option("--reason", default=None, help="Why you decline")
@click.pass_context
def group_decline(
    ctx: click.Context, document_id: str, user_id: str, reason: Optional[str]
) -> None:
    """Decline to sign a group document."""
    svc: Services = ctx.obj["services"]
    _run(svc.group.decline(document_id, user_id, reason=reason))
    console.print(f"[yellow]Declined[/] document {document_id[:12]}")


@group.command("status")
@click.argument("document_id")
@click.pass_context
def group_status(ctx: click.Context, document_id: str) -> None:
    """Show the signer roster of a group document."""
    svc: Services = ctx.obj["services"]
    signers = _run(svc.group.list_signers(document_id))

    if not signers:
        console.print("[dim]No signers registered.[/]")
        return

    table = Table(title="Signers")
    table.add_column("#", style="dim", justify="right")
    table.add_column("User", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Signature", style="dim", max_width=12)

    for s in signers:
        color = {
            SignerStatus.PENDING: "yellow",
            SignerStatus.SIGNED: "green",
            SignerStatus.REJECTED: "red",
        }[s.status]
        table.add_row(
            str(s.order + 1),
            s.user_id,
            f"[{color}]{s.status.value}[/]",
            (s.signature_id or "—")[:12],
        )

    console.print(table)


@group.command("finalize")
@click.argument("document_id")
@click.option("--user", "user_id", required=True, help="Owner or group admin")
@click.pass_context
def group_finalize(ctx: click.Context, document_id: str, user_id: str) -> None:
    """Burn every mark into the final file and complete the document."""
    svc: Services = ctx.obj["services"]
    result = _run(svc.group.finalize(document_id, user_id))
    console.print(
        Panel(
            f"[bold green]Document finalized![/]\n\n"
            f"  Document:    {result.document.title}\n"
            f"  Version:     {result.document.current_version_id}\n"
            f"  URL:         {result.url}\n"
            f"  Access code: [bold]{result.access_code}[/]",
            title="SignTrail",
            border_style="green",
        )
    )


@group.command("reset")
@click.argument("document_id")
@click.option("--user", "user_id", default=None, help="Acting user ID")
@click.pass_context
def group_reset(ctx: click.Context, document_id: str, user_id: Optional[str]) -> None:
    """Put every signer back to PENDING."""
    svc: Services = ctx.obj["services"]
    count = _run(svc.group.reset_signers(document_id, actor_id=user_id))
    console.print(f"[yellow]Reset {count} signer(s)[/]")


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------

def _print_locked(view: LockedView) -> None:
    until = f"\n  Locked until: {view.locked_until:%Y-%m-%d %H:%M:%S}" if view.locked_until else ""
    console.print(
        Panel(
            f"[bold yellow]Protected signature[/]\n\n"
            f"  Document: {view.document_title}\n"
            f"  Type:     {view.type.value}"
            f"{until}\n\n"
            f"[dim]Unlock with: signtrail unlock {view.signature_id}[/]",
            title="SignTrail",
            border_style="yellow",
        )
    )


@main.command()
@click.argument("signature_id")
@click.pass_context
def verify(ctx: click.Context, signature_id: str) -> None:
    """Show the public record behind a verification link."""
    svc: Services = ctx.obj["services"]
    view = _run(svc.verification.get_details(signature_id))
    if isinstance(view, LockedView):
        _print_locked(view)
        return

    console.print(
        Panel(
            f"  Document: {view.document_title}\n"
            f"  Type:     {view.type.value}\n"
            f"  Signer:   {view.signer_name} <{view.signer_email}>\n"
            f"  IP:       {view.signer_ip_address}\n"
            f"  Signed:   {view.signed_at:%Y-%m-%d %H:%M:%S}\n"
            f"  Hash:     {view.stored_file_hash or '—'}\n"
            f"  Status:   {view.verification_status.value}",
            title="SignTrail — Verification",
            border_style="cyan",
        )
    )
    if view.group_signers:
        table = Table(title="Co-signers")
        table.add_column("Name", style="cyan")
        table.add_column("Email")
        table.add_column("Signed", style="dim")
        for s in view.group_signers:
            table.add_row(s.name, s.email, s.signed_at.strftime("%Y-%m-%d %H:%M"))
        console.print(table)


@main.command()
@click.argument("signature_id")
@click.option("--pin", prompt=True, hide_input=True, help="Access code")
@click.pass_context
def unlock(ctx: click.Context, signature_id: str, pin: str) -> None:
    """Unlock a PIN-protected signature."""
    svc: Services = ctx.obj["services"]
    view = _run(svc.verification.unlock(signature_id, pin.strip()))
    if view is None:
        console.print("[red]Wrong code or unknown document.[/]")
        sys.exit(1)
    console.print(
        Panel(
            f"[bold green]Unlocked[/]\n\n"
            f"  Document: {view.document_title}\n"
            f"  Hash:     {view.stored_file_hash or '—'}\n\n"
            f"[dim]Upload the file to see who signed: "
            f"signtrail verify-file {signature_id} <file>[/]",
            title="SignTrail",
            border_style="green",
        )
    )


@main.command("verify-file")
@click.argument("signature_id")
@click.argument("file", type=click.Path(exists=True))
@click.option("--pin", default=None, help="Access code, if the signature is protected")
@click.pass_context
def verify_file(ctx: click.Context, signature_id: str, file: str, pin: Optional[str]) -> None:
    """Check that a file is the one registered for a signature."""
    svc: Services = ctx.obj["services"]
    result = _run(
        svc.verification.verify_uploaded_file(
            signature_id, Path(file).read_bytes(), access_code=pin
        )
    )
    if isinstance(result, LockedView):
        _print_locked(result)
        sys.exit(1)

    status = "[bold green]VALID[/]" if result.is_hash_match else "[bold red]INVALID[/]"
    console.print(
        Panel(
            f"  Result:   {status}\n"
            f"  Document: {result.document_title}\n"
            f"  Signer:   {result.signer_name} <{result.signer_email}>\n"
            f"  IP:       {result.ip_address}\n"
            f"  Stored:   {result.stored_file_hash}\n"
            f"  Computed: {result.recalculated_file_hash}",
            title="SignTrail — File Check",
            border_style="green" if result.is_hash_match else "red",
        )
    )
    if not result.is_hash_match:
        sys.exit(1)


# ---------------------------------------------------------------------------
# List / audit
# ---------------------------------------------------------------------------

@main.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.pass_context
def list_docs(ctx: click.Context, status: Optional[str]) -> None:
    """List all documents."""
    svc: Services = ctx.obj["services"]
    status_filter = DocumentStatus(status) if status else None
    docs = _run(svc.store.list_documents(status=status_filter))

    if not docs:
        console.print("[dim]No documents found.[/]")
        return

    table = Table(title="SignTrail Documents")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Title", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Owner")
    table.add_column("Created")

    for doc in docs:
        status_color = {
            DocumentStatus.DRAFT: "dim",
            DocumentStatus.PENDING: "yellow",
            DocumentStatus.COMPLETED: "green",
            DocumentStatus.ARCHIVED: "red",
        }.get(doc.status, "white")

        table.add_row(
            doc.id[:12],
            doc.title,
            f"[{status_color}]{doc.status.value}[/]",
            doc.group_id or doc.owner_id,
            doc.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command()
@click.argument("document_id")
@click.pass_context
def audit(ctx: click.Context, document_id: str) -> None:
    """Show the audit trail for a document."""
    svc: Services = ctx.obj["services"]
    entries = _run(svc.store.get_audit_trail(document_id))

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("IP", style="dim")
    table.add_column("Details")

    for e in entries:
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            e.actor_id or "—",
            e.ip_address or "—",
            e.description,
        )

    console.print(table)


@main.command()
@click.argument("document_id")
@click.pass_context
def history(ctx: click.Context, document_id: str) -> None:
    """Show the version history of a document, oldest first."""
    svc: Services = ctx.obj["services"]
    document = _run(svc.store.get_document(document_id))
    if document is None:
        console.print(f"[red]Error:[/] Document not found: {document_id}")
        sys.exit(1)
    versions = _run(svc.store.list_versions(document_id))

    table = Table(title=f"Versions of {document.title}")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Created")
    table.add_column("Sealed", justify="center")
    table.add_column("Hash", style="dim", max_width=12)
    table.add_column("Current", justify="center")

    for v in versions:
        table.add_row(
            v.id[:12],
            v.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            "[green]yes[/]" if v.is_sealed else "no",
            (v.signed_content_hash or v.content_hash or "—")[:12],
            "*" if v.id == document.current_version_id else "",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the SignTrail API server."""
    import uvicorn

    from .api import create_app

    svc: Services = ctx.obj["services"]
    console.print(
        f"[bold]SignTrail API[/] listening on [cyan]http://{host}:{port}[/]"
    )
    app = create_app(store=svc.store, settings=svc.settings)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
