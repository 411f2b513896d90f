"""FrameLink CLI - framelink command line tool."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from framelink import __version__
from framelink.camera import FrameCamera
from framelink.common.errors import FrameLinkError
from framelink.common.logging import setup_logging
from framelink.config import Config, load_config
from framelink.protocol.messages import TxPlainText
from framelink.session import FrameSession
from framelink.transport.base import Transport

app = typer.Typer(
    name="framelink",
    help="Brilliant Labs Frame glasses over BLE",
    no_args_is_help=True,
)
console = Console()

_state: dict = {"mock": False, "config_path": None}


@app.callback()
def main_options(
    mock: bool = typer.Option(False, "--mock", help="Use the in-memory glasses."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level."),
):
    """Global options."""
    _state["mock"] = mock
    _state["config_path"] = config_path
    _state["log_level"] = log_level


def get_config() -> Config:
    """Get configuration."""
    cfg = load_config(_state.get("config_path"))
    if _state.get("mock"):
        cfg.mock_mode = True
    if _state.get("log_level"):
        cfg.device.log_level = _state["log_level"]
    return cfg


def make_transport(cfg: Config) -> Transport:
    if cfg.mock_mode:
        from framelink.transport.mock import MockTransport

        return MockTransport()
    from framelink.transport.ble import BleakTransport

    return BleakTransport()


def _setup(cfg: Config) -> None:
    setup_logging(level=cfg.device.log_level, json_output=cfg.device.mode == "production")


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/] {e}")
    cause = getattr(e, "last_error", None)
    if cause is not None:
        console.print(f"[dim]Last cause: {type(cause).__name__}: {cause}[/]")
    sys.exit(1)


@app.command()
def scan(timeout: float = typer.Option(5.0, help="Scan duration in seconds.")):
    """List Frame glasses in range."""
    cfg = get_config()
    _setup(cfg)

    async def _scan():
        transport = make_transport(cfg)
        found = []
        async for peripheral in transport.scan([cfg.ble.service_uuid], timeout):
            found.append(peripheral)
        return found

    try:
        peripherals = asyncio.run(_scan())
    except FrameLinkError as e:
        _fail(e)

    table = Table(title="Frame Glasses")
    table.add_column("Address", style="cyan")
    table.add_column("Name")
    table.add_column("RSSI")
    table.add_column("Usable")

    for p in sorted(peripherals, key=lambda p: p.rssi, reverse=True):
        usable = "✓" if p.rssi >= cfg.ble.rssi_floor else ""
        table.add_row(p.id, p.name or "", str(p.rssi), usable)

    console.print(table)


@app.command()
def capture(
    output: Path = typer.Argument(Path("frame.jpg"), help="Where to write the photo."),
    quality: Optional[int] = typer.Option(None, min=0, max=4, help="Quality index 0-4."),
    resolution: Optional[int] = typer.Option(None, min=100, max=720, help="Resolution (even)."),
    manual: bool = typer.Option(False, "--manual", help="Use manual exposure."),
):
    """Capture one photo to a file."""
    cfg = get_config()
    _setup(cfg)
    if quality is not None:
        cfg.camera.quality_index = quality
    if resolution is not None:
        cfg.camera.resolution = resolution
    if manual:
        cfg.camera.auto_exposure = False

    async def _capture():
        async with FrameSession(make_transport(cfg), cfg) as session:
            return await FrameCamera(session).capture()

    try:
        photo = asyncio.run(_capture())
    except FrameLinkError as e:
        _fail(e)

    output.write_bytes(photo.data)
    meta = photo.metadata
    console.print(f"[green]Saved[/] {output} ({meta.size} bytes)")
    console.print(f"  Mode: {meta.mode}")
    console.print(f"  Resolution: {meta.resolution}")
    console.print(f"  Quality: {meta.quality}")
    console.print(f"  Elapsed: {meta.elapsed_ms} ms")


@app.command()
def display(text: str, x: int = 1, y: int = 1):
    """Show text on the glasses."""
    cfg = get_config()
    _setup(cfg)

    async def _display():
        async with FrameSession(make_transport(cfg), cfg) as session:
            await session.send_message(TxPlainText(text, x=x, y=y))

    try:
        asyncio.run(_display())
    except FrameLinkError as e:
        _fail(e)
    console.print("[green]Sent[/]")


@app.command()
def status():
    """Connect, probe the link and report battery."""
    cfg = get_config()
    _setup(cfg)

    async def _status():
        async with FrameSession(make_transport(cfg), cfg) as session:
            latency = await session.probe()
            battery = await session.battery_level()
            return session.status(), latency, battery

    try:
        info, latency, battery = asyncio.run(_status())
    except FrameLinkError as e:
        _fail(e)

    health = info["health"]["status"]
    health_color = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}.get(health, "white")
    console.print(Panel(f"[bold {health_color}]{health.upper()}[/]", title="Link Status"))
    console.print(f"  Device: {info['device_id']}")
    console.print(f"  MTU: {info['mtu']}")
    console.print(f"  Probe latency: {latency:.1f} ms")
    console.print(f"  Battery: {battery}%")


@app.command()
def run():
    """Run the tap-driven vision app."""
    from framelink.app import VisionAppService

    service = VisionAppService(config=get_config())
    try:
        service.run()
    except FrameLinkError as e:
        _fail(e)


@app.command()
def config(json_output: bool = False):
    """Show configuration."""
    cfg = get_config()

    if json_output:
        print(json.dumps(cfg.model_dump(), indent=2, default=str))
    else:
        console.print("[bold]Configuration[/]")
        console.print(f"  Name filter: {cfg.device.name_filter}")
        console.print(f"  Mode: {cfg.device.mode}")
        console.print(f"  Mock Mode: {cfg.mock_mode}")
        console.print("\n[bold]BLE[/]")
        console.print(f"  RSSI floor: {cfg.ble.rssi_floor} dBm")
        console.print(f"  Requested MTU: {cfg.ble.requested_mtu}")
        console.print(
            f"  Connect attempts: {cfg.retry.max_connect_attempts} ({cfg.retry.connect_retry_delay}s apart)"
        )
        console.print("\n[bold]Operations[/]")
        console.print(f"  Timeout: {cfg.operation.timeout}s")
        console.print(f"  Attempts: {cfg.operation.max_attempts}")
        console.print(f"  Conflict policy: {cfg.operation.conflict_policy}")
        console.print("\n[bold]Vision[/]")
        console.print(f"  Endpoint: {cfg.vision.api_endpoint or '(not set)'}")
        console.print(f"  Queue: {cfg.vision.queue_size} ({cfg.vision.overflow})")


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]FrameLink[/] v{__version__}")


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
