"""
=============================================================================
CONTACTSERVER - Abuse-Resistant TCP Contact Menu
=============================================================================

A plaintext TCP service (think `nc host 1337`) that shows a banner and a
numbered list of contact links, and reveals the chosen link.

The interesting part is not the menu but the admission layer in front of
it:

    1. PER-ADDRESS RATE LIMITING
       - Sliding window log, 5 connections / 10 s per address by default

    2. GLOBAL CONCURRENCY CAP
       - Fixed slot pool, the next client is told the server is busy

    3. TIMEOUTS AND INPUT LIMITS
       - Rolling idle timeout, absolute session lifetime, 1 KB lines

    4. GRACEFUL SHUTDOWN
       - SIGTERM stops accepting, running sessions get a grace period

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    contactserver/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m contactserver)
    ├── server.py            # ContactServer: dispatch + shutdown
    ├── session.py           # SessionHandler: banner, menu, input loop
    ├── contacts.py          # Static contact directory
    ├── config.py            # ServerConfig dataclass
    └── core/
        ├── socket_server.py # Listening socket, accept loop, signals
        ├── connection.py    # Line reads, deadlines, graceful close
        ├── rate_limit.py    # Per-address sliding window
        ├── admission.py     # Concurrency slot pool
        ├── tracker.py       # Active session count (wait-group)
        └── sweeper.py       # Stale rate limit record eviction

=============================================================================
QUICK START
=============================================================================

    from contactserver import ContactServer, ServerConfig

    server = ContactServer(ServerConfig(host="127.0.0.1", port=1337))
    server.run()   # Ctrl+C to stop

=============================================================================
"""

__version__ = "1.0.0"

from .server import ContactServer, create_server
from .config import ServerConfig

__all__ = ["ContactServer", "ServerConfig", "create_server", "__version__"]
