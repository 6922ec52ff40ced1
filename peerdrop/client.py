import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import Settings
from .errors import PeerDropError
from .ice_servers import IceServerCache
from .node import PeerNode
from .signaling import WebSocketSignaling
from .transfer import Progress

app = typer.Typer(help="Encrypted peer-to-peer file and text transfer")

WELCOME_TIMEOUT = 10.0


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def ensure_storage_dir(storage_dir: Path) -> None:
    storage_dir.mkdir(parents=True, exist_ok=True)


def safe_name(name: str) -> str:
    """Strip any directory part a peer put in a file name."""
    cleaned = Path(name.replace("\\", "/")).name
    if cleaned in ("", ".", ".."):
        return "received.bin"
    return cleaned


def _print_progress(progress: Progress) -> None:
    typer.echo(
        f"\r{progress.name}: {progress.percent:5.1f}% "
        f"({progress.sent}/{progress.total} bytes, {progress.speed / 1024:.0f} KiB/s)",
        nl=progress.sent >= progress.total,
    )


def _print_state(peer_id: str, status: str, hint: Optional[str]) -> None:
    typer.echo(f"[{peer_id}] {status}" + (f": {hint}" if hint else ""))


async def _start_node(settings: Settings) -> PeerNode:
    signaling = WebSocketSignaling(settings.signaling_url)
    await signaling.connect()
    try:
        await asyncio.wait_for(signaling.welcomed.wait(), WELCOME_TIMEOUT)
    except asyncio.TimeoutError:
        await signaling.close()
        raise PeerDropError("Signaling server did not assign a peer id")
    node = PeerNode(signaling, settings)
    node.connections.set_local_peer_id(signaling.peer_id)
    node.connections.on_state_change = _print_state
    node.transfers.on_progress = _print_progress
    typer.echo(f"Connected as {signaling.peer_id}")
    return node


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except PeerDropError as e:
        typer.echo(f"P2P error: {e}")
        raise typer.Exit(1)


@app.command()
def servers(
    ice_servers_url: Optional[str] = typer.Option(None, help="ICE server directory URL"),
    refresh: bool = typer.Option(False, help="Ignore the cached list"),
) -> None:
    """Fetch, health-check and print the ranked ICE servers."""
    settings = Settings.from_env(ice_servers_url=ice_servers_url)

    async def _list() -> None:
        ranked = await IceServerCache(settings).get(force_refresh=refresh)
        for server in ranked:
            latency = f"{server.latency * 1000:.0f}ms" if server.latency is not None else "-"
            credentials = "yes" if server.credential else "no"
            typer.echo(f"{', '.join(server.urls)}  latency={latency}  credentials={credentials}")

    _run(_list())


@app.command("send-file")
def send_file(
    peer_id: str = typer.Argument(..., help="Target peer ID"),
    file_path: Path = typer.Argument(..., help="File to send"),
    signaling_url: Optional[str] = typer.Option(None, help="Signaling WebSocket URL"),
) -> None:
    """Send a file to a peer (direct channel, or relay when that fails)."""
    if not file_path.is_file():
        typer.echo(f"File not found: {file_path}")
        raise typer.Exit(1)
    settings = Settings.from_env(signaling_url=signaling_url)

    async def _send() -> None:
        node = await _start_node(settings)
        try:
            file_id = await node.send_file(peer_id, file_path)
            typer.echo(f"Sent {file_path.name} ({file_id})")
        finally:
            await node.close()

    _run(_send())


@app.command("send-text")
def send_text(
    peer_id: str = typer.Argument(..., help="Target peer ID"),
    text: str = typer.Argument(..., help="Message"),
    signaling_url: Optional[str] = typer.Option(None, help="Signaling WebSocket URL"),
) -> None:
    """Send a short text message to a peer."""
    settings = Settings.from_env(signaling_url=signaling_url)

    async def _send() -> None:
        node = await _start_node(settings)
        try:
            await node.send_text(peer_id, text)
            typer.echo("Text sent.")
        finally:
            await node.close()

    _run(_send())


@app.command()
def listen(
    output_dir: Path = typer.Option(Path("received"), help="Folder for incoming files"),
    signaling_url: Optional[str] = typer.Option(None, help="Signaling WebSocket URL"),
) -> None:
    """Wait for peers and store every file they send."""
    ensure_storage_dir(output_dir)
    settings = Settings.from_env(signaling_url=signaling_url)

    def on_file_received(peer_id: str, name: str, payload: bytes) -> None:
        target = output_dir / safe_name(name)
        target.write_bytes(payload)
        typer.echo(f"Received {name} from {peer_id} -> {target}")

    def on_text_received(peer_id: str, content: str) -> None:
        typer.echo(f"[{peer_id}] {content}")

    def on_transfer_failed(peer_id: str, file_id: str, name: str, reason: str) -> None:
        typer.echo(f"Transfer of {name} from {peer_id} failed: {reason}")

    async def _listen() -> None:
        node = await _start_node(settings)
        node.transfers.on_file_offered = lambda peer, meta: typer.echo(
            f"{peer} is sending {meta.name} ({meta.size} bytes)"
        )
        node.transfers.on_file_received = on_file_received
        node.transfers.on_text_received = on_text_received
        node.transfers.on_transfer_failed = on_transfer_failed
        typer.echo(f"Listening; files go to {output_dir}")
        try:
            await asyncio.Event().wait()
        finally:
            await node.close()

    try:
        _run(_listen())
    except KeyboardInterrupt:
        typer.echo("\nInterrupted. Exiting")


if __name__ == "__main__":
    app()
