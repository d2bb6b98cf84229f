"""nutsync CLI - encrypted conversation sync and Cashu payments."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, AsyncIterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt
from rich.table import Table

from .config import Settings
from .crypto import decode_nsec, derive_key
from .event_store import EventStore
from .payment import PaymentSelector
from .pending import PendingTokenStore, RefundReconciler
from .provider import RecipientClient
from .relay import RelayPool
from .signer import LocalSigner
from .storage import LocalState
from .sync import SyncSession
from .types import NutsyncError, RelayError, WalletError
from .wallet import CashuWallet, LegacyWallet, Nip60Wallet

app = typer.Typer(
    name="nutsync",
    help="nutsync - encrypted conversation sync and Cashu payments",
    rich_markup_mode="markdown",
)
console = Console()

STATE_KEY_INFO = b"nutsync-local-state"


# ──────────────────────────────────────────────────────────────────────────────
# Setup helpers
# ──────────────────────────────────────────────────────────────────────────────


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )


def get_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1)


def get_signer(settings: Settings) -> LocalSigner:
    """Signer from NSEC, prompting when it is not configured."""
    nsec = settings.nsec
    if not nsec:
        console.print("\n[yellow]NSEC (Nostr private key) not found.[/yellow]")
        console.print("Format: nsec1... or hex private key")
        nsec = Prompt.ask("Enter your NSEC", password=True)
    if not nsec:
        console.print("[red]NSEC is required![/red]")
        raise typer.Exit(1)
    try:
        return LocalSigner.from_nsec(nsec)
    except ValueError as e:
        console.print(f"[red]❌ Invalid NSEC: {e}[/red]")
        raise typer.Exit(1)


def get_local_state(settings: Settings, signer: LocalSigner) -> LocalState:
    secret = decode_nsec(signer.nsec).secret
    return LocalState(settings.state_dir, derive_key(secret, STATE_KEY_INFO))


def handle_error(e: Exception) -> None:
    """Print an error in a user-friendly way."""
    if isinstance(e, WalletError):
        console.print(f"[red]💰 {e}[/red]")
    elif isinstance(e, RelayError):
        console.print(f"[red]📡 Relay error: {e}[/red]")
    elif isinstance(e, NutsyncError):
        console.print(f"[red]❌ {e}[/red]")
    elif isinstance(e, TimeoutError):
        console.print("[red]⏱️ Timed out waiting for relays[/red]")
    else:
        console.print(f"[red]❌ Error: {e}[/red]")


@asynccontextmanager
async def open_session(
    settings: Settings, signer: LocalSigner, state: LocalState
) -> AsyncIterator[SyncSession]:
    store = EventStore(settings.state_dir / "events.json")
    pool = RelayPool(settings.relays, store=store, eose_timeout=settings.eose_timeout)
    session = SyncSession(signer, pool, store, state)
    try:
        yield session
    finally:
        await session.close()


@asynccontextmanager
async def open_wallet(
    settings: Settings, signer: LocalSigner
) -> AsyncIterator[CashuWallet]:
    pool = RelayPool(settings.relays, eose_timeout=settings.eose_timeout)
    wallet: CashuWallet
    if settings.wallet_mode == "legacy":
        if not settings.preferred_mint:
            raise WalletError("Legacy wallet needs NUTSYNC_MINT or CASHU_MINTS")
        wallet = LegacyWallet(settings.preferred_mint, settings.state_dir / "proofs.json")
    else:
        wallet = Nip60Wallet(signer, pool, settings.mints)
    try:
        async with wallet:
            yield wallet
    finally:
        await pool.close()


def _format_time(timestamp: int | float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def _print_conversations(session: SyncSession) -> None:
    conversations = session.conversations
    if not conversations:
        console.print("[yellow]No conversations yet[/yellow]")
        return
    table = Table(title="Conversations", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="green")
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="blue")
    for conversation in conversations:
        table.add_row(
            conversation.id,
            conversation.title,
            str(len(conversation.messages)),
            _format_time(conversation.updated_at),
        )
    console.print(table)


# ──────────────────────────────────────────────────────────────────────────────
# Conversation commands
# ──────────────────────────────────────────────────────────────────────────────


@app.command()
def sync(
    timeout: Annotated[
        float, typer.Option("--timeout", "-t", help="Seconds to wait for relays")
    ] = 30.0,
) -> None:
    """Sync conversations from relays and list them."""

    async def _sync() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        async with open_session(settings, signer, state) as session:
            with console.status("Syncing conversations..."):
                async with asyncio.timeout(timeout):
                    await session.start()
            console.print(
                f"[green]✅ Synced with {len(session.keypairs)} sync key(s)[/green]"
            )
            _print_conversations(session)

    try:
        asyncio.run(_sync())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def conversations() -> None:
    """List conversations from the local snapshot without contacting relays."""

    async def _conversations() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        async with open_session(settings, signer, state) as session:
            session.restore()
            _print_conversations(session)

    try:
        asyncio.run(_conversations())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def show(
    conversation_id: Annotated[str, typer.Argument(help="Conversation ID")],
) -> None:
    """Show the active branch of one conversation."""

    async def _show() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        async with open_session(settings, signer, state) as session:
            session.restore()
            messages = session.assembler.active_branch(conversation_id)
            if not messages:
                console.print(f"[yellow]No messages in {conversation_id}[/yellow]")
                return
            for message in messages:
                style = "cyan" if message.role == "user" else "green"
                label = message.role
                if message.model_id:
                    label += f" ({message.model_id})"
                console.print(f"[bold {style}]{label}[/bold {style}]: {message.text}")

    try:
        asyncio.run(_show())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def post(
    conversation_id: Annotated[str, typer.Argument(help="Conversation ID")],
    content: Annotated[str, typer.Argument(help="Message text")],
    role: Annotated[str, typer.Option("--role", "-r", help="Message role")] = "user",
    prev_id: Annotated[
        Optional[str], typer.Option("--prev", help="Event ID this message replies to")
    ] = None,
    model: Annotated[
        Optional[str], typer.Option("--model", help="Model ID for assistant messages")
    ] = None,
    timeout: Annotated[
        float, typer.Option("--timeout", "-t", help="Seconds to wait for relays")
    ] = 30.0,
) -> None:
    """Encrypt a message and publish it to a conversation."""

    async def _post() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        async with open_session(settings, signer, state) as session:
            async with asyncio.timeout(timeout):
                await session.start()
            if prev_id is None:
                branch = session.assembler.active_branch(conversation_id)
                parent = branch[-1].event_id if branch else None
            else:
                parent = prev_id
            event_id = await session.publish_message(
                conversation_id, role, content, prev_id=parent, model_id=model
            )
            if event_id is None:
                console.print("[yellow]⚠️ No sync key, message kept locally only[/yellow]")
            else:
                console.print(f"[green]✅ Published {event_id}[/green]")

    try:
        asyncio.run(_post())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def delete(
    conversation_id: Annotated[str, typer.Argument(help="Conversation ID")],
    timeout: Annotated[
        float, typer.Option("--timeout", "-t", help="Seconds to wait for relays")
    ] = 30.0,
) -> None:
    """Delete a conversation here and on the relays."""

    async def _delete() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        async with open_session(settings, signer, state) as session:
            async with asyncio.timeout(timeout):
                await session.start()
            deletion = await session.delete_conversation(conversation_id)
            if deletion is None:
                console.print(f"[yellow]Nothing published for {conversation_id}[/yellow]")
            else:
                console.print(f"[green]✅ Deleted {conversation_id}[/green]")

    try:
        asyncio.run(_delete())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


# ──────────────────────────────────────────────────────────────────────────────
# Wallet commands
# ──────────────────────────────────────────────────────────────────────────────


@app.command()
def balance() -> None:
    """Show the balance held at each mint."""

    async def _balance() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        async with open_wallet(settings, signer) as wallet:
            balances = wallet.balances()
            if not balances:
                console.print("[yellow]No mints configured. Set CASHU_MINTS.[/yellow]")
                return
            table = Table(title="Mint Balances")
            table.add_column("Mint", style="cyan")
            table.add_column("Balance", style="green", justify="right")
            table.add_column("Unit")
            for mint_url, mint_balance in balances.items():
                table.add_row(mint_url, str(mint_balance.balance), mint_balance.unit)
            console.print(table)
            console.print(f"\n[bold]Total:[/bold] {wallet.balance_sats():g} sats")

    try:
        asyncio.run(_balance())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def spend(
    amount: Annotated[float, typer.Argument(help="Amount in sats")],
    base_url: Annotated[str, typer.Argument(help="Recipient API base URL")],
    mint: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Preferred mint URL")
    ] = None,
    reuse: Annotated[
        bool, typer.Option("--reuse", help="Reuse a pending token when it covers the amount")
    ] = False,
    lock: Annotated[
        Optional[str], typer.Option("--lock", help="Lock the token to this public key")
    ] = None,
) -> None:
    """Create a token to pay a recipient."""

    async def _spend() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        recipient = RecipientClient()
        try:
            async with open_wallet(settings, signer) as wallet:
                pending = PendingTokenStore(state)
                reconciler = RefundReconciler(wallet, pending, recipient, state)
                selector = PaymentSelector(wallet, pending, recipient, reconciler, state)
                result = await selector.spend(
                    mint or settings.preferred_mint,
                    amount,
                    base_url,
                    reuse_token=reuse,
                    p2pk_pubkey=lock,
                )
        finally:
            await recipient.aclose()

        if not result.ok:
            console.print(f"[red]💰 {result.error}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✅ Token for {result.balance:g} sats:[/green]")
        console.print(result.token, soft_wrap=True)

    try:
        asyncio.run(_spend())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def pending() -> None:
    """List tokens handed to recipients and not refunded yet."""
    settings = get_settings()
    signer = get_signer(settings)
    tokens = PendingTokenStore(get_local_state(settings, signer)).all()
    if not tokens:
        console.print("[green]No pending tokens[/green]")
        return
    table = Table(title="Pending Tokens")
    table.add_column("Recipient", style="cyan")
    table.add_column("Amount", style="green", justify="right")
    table.add_column("Mint")
    table.add_column("Created", style="blue")
    for token in tokens:
        table.add_row(
            token.base_url, f"{token.amount:g}", token.mint_url or "-", _format_time(token.created_at)
        )
    console.print(table)


@app.command()
def refund(
    base_url: Annotated[str, typer.Argument(help="Recipient API base URL")],
) -> None:
    """Ask a recipient to refund the pending token."""

    async def _refund() -> None:
        settings = get_settings()
        signer = get_signer(settings)
        state = get_local_state(settings, signer)
        recipient = RecipientClient()
        try:
            async with open_wallet(settings, signer) as wallet:
                store = PendingTokenStore(state)
                reconciler = RefundReconciler(wallet, store, recipient, state)
                async with store.lock(base_url):
                    result = await reconciler.refund(base_url)
        finally:
            await recipient.aclose()

        if not result.success:
            console.print(f"[red]❌ {result.message}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✅ {result.message}[/green]")

    try:
        asyncio.run(_refund())
    except typer.Exit:
        raise
    except Exception as e:
        handle_error(e)
        raise typer.Exit(1)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show")] = 20,
) -> None:
    """Show recent payments and refunds."""
    settings = get_settings()
    signer = get_signer(settings)
    entries = get_local_state(settings, signer).load_history()[-limit:]
    if not entries:
        console.print("[yellow]No transactions yet[/yellow]")
        return
    table = Table(title="History")
    table.add_column("Time", style="blue")
    table.add_column("Type", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for entry in reversed(entries):
        status_style = "green" if entry.status == "success" else "red"
        table.add_row(
            _format_time(entry.timestamp_ms / 1000),
            entry.type,
            f"{entry.amount:g}",
            f"[{status_style}]{entry.status}[/{status_style}]",
            entry.message or "",
        )
    console.print(table)


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────


def version_callback(value: bool) -> None:
    """Handle version flag."""
    if value:
        console.print("nutsync v0.1.0")
        raise typer.Exit()


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
) -> None:
    """nutsync - encrypted conversation sync and Cashu payments.

    📝 CONFIGURATION (environment or cwd/.env file):
    • NSEC: your Nostr private key (nsec1... or hex)
    • NUTSYNC_RELAYS: comma-separated relay URLs
    • CASHU_MINTS: comma-separated mint URLs
    • NUTSYNC_MINT: preferred mint
    • NUTSYNC_WALLET_MODE: nip60 (default) or legacy
    • NUTSYNC_STATE_DIR: local state directory (default ~/.nutsync)
    """
    setup_logging(verbose)


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
