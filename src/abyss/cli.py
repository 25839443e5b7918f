"""CLI for the abyss relay.

Runs the relay server and a minimal terminal client:
- serve: run the relay (uvicorn)
- chat: join a room and chat, encrypting on this machine
- room-code: print a random room code
- config: print the resolved server options
"""

from __future__ import annotations

import asyncio
import getpass
import json
import logging
import sys

import cyclopts

from .options import RelayConfigError, RelayOptions
from .rooms import generate_room_code

app = cyclopts.App(
    name="abyss",
    help="Ephemeral, password-gated, end-to-end encrypted chat relay",
)


def load_options(config: str | None = None, **overrides) -> RelayOptions:
    """Resolve options or exit with error."""
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        if config:
            return RelayOptions.from_file(config, **overrides)
        return RelayOptions.from_env(**overrides)
    except RelayConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


@app.command
def serve(
    *,
    host: str | None = None,
    port: int | None = None,
    config: str | None = None,
    log_level: str | None = None,
    reload: bool = False,
):
    """Run the relay server.

    Args:
        host: Bind address (default ABYSS_HOST or 0.0.0.0)
        port: Bind port (default ABYSS_PORT or 3000)
        config: YAML options file (default ABYSS_CONFIG)
        log_level: Logging level name (default ABYSS_LOG_LEVEL or INFO)
        reload: Reload on code changes (development only)
    """
    import uvicorn

    options = load_options(config, host=host, port=port, log_level=log_level)

    logging.basicConfig(
        level=options.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "abyss.api:app",
        host=options.host,
        port=options.port,
        reload=reload,
        log_level=options.log_level.lower(),
    )


@app.command
def chat(
    room: str,
    username: str,
    *,
    url: str = "ws://localhost:3000/ws",
    secret: str | None = None,
):
    """Join a room and chat from the terminal.

    Messages are encrypted locally with a key derived from the room secret;
    the relay only sees ciphertext.

    Args:
        room: Room code
        username: Display name (2-20 characters)
        url: Relay websocket URL
        secret: Room secret (prompted if omitted)
    """
    from .client import run_chat

    if secret is None:
        secret = getpass.getpass("Room secret: ")
    if not secret:
        raise cyclopts.ValidationError("A room secret is required")

    try:
        asyncio.run(run_chat(url, room.strip().upper(), username, secret))
    except KeyboardInterrupt:
        print("\nStopped.")
    except OSError as e:
        print(f"Connection error: {e}", file=sys.stderr)
        sys.exit(1)


@app.command(name="room-code")
def room_code(*, length: int = 6):
    """Print a random room code.

    Args:
        length: Number of characters
    """
    if length < 3:
        raise cyclopts.ValidationError("Room codes need at least 3 characters")
    print(generate_room_code(length))


@app.command(name="config")
def show_config(*, config: str | None = None):
    """Print the resolved server options as JSON.

    Args:
        config: YAML options file (default ABYSS_CONFIG)
    """
    options = load_options(config)
    print(json.dumps(options.to_dict(), indent=2))


if __name__ == "__main__":
    app()
