#!/usr/bin/env python3
"""
Key generation and signing CLI for the handshake authentication engine.

Generates ed25519 key pairs and signs challenge messages on the client side.
"""

import sys
from pathlib import Path
from typing import Optional

import click

from ..key_manager import KeyManager
from ..exceptions import HandshakeError


@click.command()
@click.option(
    '--output', '-o',
    type=click.Path(exists=False, dir_okay=False, path_type=Path),
    default=Path("handshake-key.pem"),
    help='Path for the private key file (default: handshake-key.pem)'
)
@click.option(
    '--overwrite', '-f',
    is_flag=True,
    help='Overwrite an existing key file'
)
@click.option(
    '--quiet', '-q',
    is_flag=True,
    help='Print only the address'
)
def generate(output: Path, overwrite: bool, quiet: bool) -> None:
    """Generate an ed25519 key pair and print its address."""
    if not overwrite and output.exists():
        click.echo(f"Error: Private key file already exists: {output}", err=True)
        click.echo("Use --overwrite to replace existing files", err=True)
        sys.exit(1)

    keypair = KeyManager.generate_keypair()
    try:
        KeyManager.save_keypair(keypair, output, overwrite=overwrite)
    except (HandshakeError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if quiet:
        click.echo(keypair.address)
        return

    click.echo(f"Private key saved to: {output}")
    click.echo(f"Address: {keypair.address}")


@click.command()
@click.argument(
    'key_file',
    type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def address(key_file: Path) -> None:
    """Show the address of a private key file."""
    try:
        keypair = KeyManager.load_keypair(key_file)
    except HandshakeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(keypair.address)


@click.command()
@click.argument(
    'key_file',
    type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option(
    '--message-file', '-m',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='File holding the message to sign (default: stdin)'
)
def sign(key_file: Path, message_file: Optional[Path]) -> None:
    """Sign a challenge message and print the signature."""
    try:
        keypair = KeyManager.load_keypair(key_file)
    except HandshakeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if message_file is not None:
        message = message_file.read_text(encoding="utf-8")
    else:
        message = click.get_text_stream("stdin").read()

    click.echo(keypair.sign_message(message))


@click.group()
def keygen_cli():
    """Handshake key generation and signing tools."""
    pass


keygen_cli.add_command(generate)
keygen_cli.add_command(address)
keygen_cli.add_command(sign)


if __name__ == '__main__':
    keygen_cli()
