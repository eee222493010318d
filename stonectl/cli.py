"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import replace
from pathlib import Path

import typer

from stonectl.api import Client
from stonectl.backends.bluez import BluezBackend
from stonectl.core.config import load_config
from stonectl.core.errors import BackendError, RegistryError, StonectlError, TransportSendError
from stonectl.core.gaia import battery_status

app = typer.Typer(help="STONE speaker session control over Bluetooth")


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )
    ctx.ensure_object(dict)["config"] = config


def _build_client(ctx: typer.Context) -> Client:
    config = load_config(ctx.ensure_object(dict).get("config"))
    # One-shot commands act on the named device only.
    config = replace(config, connection=replace(config.connection, auto_connect=False))
    backend = BluezBackend(config.transport, name_filter=config.pairing.name_filter)
    for warning in _runtime_warnings():
        typer.echo(f"Warning: {warning}", err=True)
    return Client(backend=backend, config=config)


def _fail(exc: StonectlError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@app.command("devices")
def list_devices(ctx: typer.Context) -> None:
    """List paired Bluetooth devices known to the host."""
    try:
        client = _build_client(ctx)
        devices = asyncio.run(client.list_devices())
        if not devices:
            typer.echo("No Bluetooth devices found")
            return

        registered = {d.address for d in client.registered_devices()}
        for device in devices:
            marks = []
            if device.connected:
                marks.append("connected")
            if device.address.lower() in registered:
                marks.append("registered")
            suffix = f" [{', '.join(marks)}]" if marks else ""
            typer.echo(f"{device.address} {device.label}{suffix}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("scan")
def scan(ctx: typer.Context) -> None:
    """Scan for unregistered STONE speakers that can be paired."""
    try:
        client = _build_client(ctx)
        candidates = asyncio.run(client.scan())
        if not candidates:
            typer.echo("No unpaired STONE devices found")
            return
        for candidate in candidates:
            typer.echo(f"{candidate.address} {candidate.name}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("registered")
def registered(ctx: typer.Context) -> None:
    """List registered devices; the active one is marked with '*'."""
    try:
        client = _build_client(ctx)
        devices = client.registered_devices()
        if not devices:
            typer.echo("No registered devices")
            return
        for device in devices:
            marker = "*" if device.address == client.active_address else " "
            typer.echo(f"{marker} {device.address} {device.name}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("remove")
def remove(ctx: typer.Context, address: str) -> None:
    """Forget a registered device."""
    try:
        client = _build_client(ctx)
        if not client.remove_device(address):
            raise RegistryError(f"Device {address.strip().lower()} is not registered")
        typer.echo(f"Removed {address.strip().lower()}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("connect")
def connect(
    ctx: typer.Context,
    address: str,
    activate: bool = typer.Option(False, "--activate", help="Make the device active once connected"),
) -> None:
    """Connect to a device and wait for the outcome."""
    try:
        client = _build_client(ctx)
        asyncio.run(_connect(client, address, activate=activate, pair=False))
        typer.echo(f"Connected to {address.strip().lower()}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("pair")
def pair(ctx: typer.Context, address: str) -> None:
    """Connect to a new device and register it."""
    try:
        client = _build_client(ctx)
        asyncio.run(_connect(client, address, activate=True, pair=True))
        typer.echo(f"Paired {address.strip().lower()}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("disconnect")
def disconnect(ctx: typer.Context, address: str) -> None:
    """Disconnect from a device."""
    try:
        client = _build_client(ctx)
        asyncio.run(_disconnect(client, address))
        typer.echo(f"Disconnected from {address.strip().lower()}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("status")
def status(ctx: typer.Context) -> None:
    """Show connection state of known devices and the active device battery."""
    try:
        client = _build_client(ctx)
        records = asyncio.run(_status(client))
        active = client.active_address
        typer.echo(f"Active: {active or '<none>'}")
        if not records:
            typer.echo("No known connections")
        for address, record in sorted(records.items()):
            flags = f"link={'yes' if record.link else 'no'} rfcomm={'yes' if record.rfcomm else 'no'}"
            error = f" error={record.last_error}" if record.last_error else ""
            typer.echo(f"{address} {record.state} {flags}{error}")
        data = client.telemetry()
        battery = battery_status(data.battery_step, data.dc_state) if data else None
        if battery is not None:
            state = " charging" if battery.charging else " full" if battery.full else ""
            typer.echo(f"Battery: {battery.percent}%{state}")
    except StonectlError as exc:
        raise _fail(exc) from None


@app.command("send")
def send(
    ctx: typer.Context,
    vendor: str,
    command: str,
    payload: str = typer.Argument("", help="Payload bytes as hex"),
    listen: float = typer.Option(1.0, "--listen", help="Seconds to print incoming packets after sending"),
) -> None:
    """Send a raw GAIA command to the active device."""
    try:
        client = _build_client(ctx)
        asyncio.run(_send(client, vendor, command, payload, listen))
    except StonectlError as exc:
        raise _fail(exc) from None


async def _connect(client: Client, address: str, *, activate: bool, pair: bool) -> None:
    async with client:
        result = await client.connect_and_wait(address, activate=activate, pair=pair)
    if not result.ok:
        raise BackendError(f"Connect to {address.strip().lower()} failed: {result.error or 'unknown error'}")


async def _disconnect(client: Client, address: str) -> None:
    async with client:
        if not await client.disconnect(address):
            record = client.status().get(address.strip().lower())
            detail = record.last_error if record and record.last_error else "unknown error"
            raise BackendError(f"Disconnect failed: {detail}")


async def _status(client: Client):
    async with client:
        return client.status()


async def _send(client: Client, vendor: str, command: str, payload: str, listen: float) -> None:
    async with client:
        active = client.active_address
        if active is None:
            raise RegistryError("No active device. Use 'stonectl connect --activate' or 'stonectl pair' first.")
        unsubscribe = client.session.router.packets.subscribe(lambda line: typer.echo(f"IN  {line}"))
        try:
            if not client.session.is_active_connected():
                result = await client.connect_and_wait(active)
                if not result.ok:
                    raise BackendError(f"Connect to {active} failed: {result.error or 'unknown error'}")
            if not await client.send(vendor, command, payload):
                raise TransportSendError(f"Command {command} was not sent to {active}")
            typer.echo(f"OUT {vendor} {command} {payload or '<empty>'}")
            await asyncio.sleep(listen)
        finally:
            unsubscribe()


def _runtime_warnings() -> tuple[str, ...]:
    warnings: list[str] = []
    if not hasattr(socket, "AF_BLUETOOTH") or not hasattr(socket, "BTPROTO_RFCOMM"):
        warnings.append(
            "Python runtime missing AF_BLUETOOTH/BTPROTO_RFCOMM; RFCOMM connections will fail."
        )
    return tuple(warnings)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
