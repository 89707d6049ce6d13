"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

Centralized configuration for the contact server.

Every protection knob lives here: how many sessions may run at once, how
large a line may be, how long a client may idle or stay connected, and how
aggressively a single address may reconnect.

=============================================================================
THE PROTECTION KNOBS
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    WHAT EACH SETTING DEFENDS AGAINST                │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   max_connections        Connection floods (global cap)             │
    │   rate_limit_window/max  One address reconnecting in a loop         │
    │   max_input_size         Memory exhaustion via endless lines        │
    │   read_timeout           Idle clients holding a slot (rolling)      │
    │   conn_timeout           Slow drip clients (absolute cap)           │
    │   shutdown_grace         Shutdown hanging on stuck sessions         │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Defaults are the values the service ships with. Nothing has to be set in
the environment; from_env() exists for container deployments that want to
override a value without rebuilding.

=============================================================================
"""

import os
from dataclasses import dataclass


@dataclass
class ServerConfig:
    """
    Configuration for the contact server.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - host, port, backlog, buffer_size

    ADMISSION SETTINGS
    - max_connections, rate_limit_window, rate_limit_max,
      rate_limit_cleanup_interval

    SESSION SETTINGS
    - max_input_size, conn_timeout, read_timeout

    LIFECYCLE
    - shutdown_grace, install_signal_handlers, log_level

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = ""
    """
    The IP address to bind to.
    - "" - All interfaces, IPv4 and IPv6 where the OS allows (the public service)
    - "0.0.0.0" - All IPv4 interfaces only
    - "127.0.0.1" - Localhost only (development, tests)
    """

    port: int = 1337
    """
    The port number to listen on. 0 lets the OS pick a free port.
    """

    backlog: int = 128
    """
    Maximum number of queued connections waiting for accept().
    """

    buffer_size: int = 4096
    """
    Size of a single recv() call in bytes.
    """

    # ─────────────────────────────────────────────────────────────────────
    # ADMISSION SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    max_connections: int = 100
    """
    Maximum number of sessions running at the same time.
    The next connection beyond this is told the server is busy.
    """

    rate_limit_window: float = 10.0
    """
    Length of the sliding window in seconds.
    """

    rate_limit_max: int = 5
    """
    Connection attempts allowed per source address inside one window.
    """

    rate_limit_cleanup_interval: float = 60.0
    """
    Seconds between sweeps of stale rate limiter records.
    Only memory use depends on this, never correctness.
    """

    # ─────────────────────────────────────────────────────────────────────
    # SESSION SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    max_input_size: int = 1024
    """
    Longest accepted input line in bytes (newline not counted).
    """

    conn_timeout: float = 60.0
    """
    Absolute session lifetime in seconds, counted from accept().
    """

    read_timeout: float = 30.0
    """
    Rolling idle timeout in seconds, reset before every line read.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────────────

    shutdown_grace: float = 10.0
    """
    How long shutdown waits for active sessions before abandoning them.
    """

    install_signal_handlers: bool = True
    """
    Install SIGINT/SIGTERM handlers when started on the main thread.
    """

    log_level: str = "INFO"
    """
    Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES (all optional)
        =====================================================================

        CONTACT_HOST             Server host (default: all interfaces)
        CONTACT_PORT             Server port (default: 1337)
        CONTACT_MAX_CONNECTIONS  Concurrent session cap (default: 100)
        CONTACT_LOG_LEVEL        Logging level (default: INFO)

        =====================================================================
        """
        return cls(
            host=os.getenv("CONTACT_HOST", ""),
            port=int(os.getenv("CONTACT_PORT", "1337")),
            max_connections=int(os.getenv("CONTACT_MAX_CONNECTIONS", "100")),
            log_level=os.getenv("CONTACT_LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Called once at server construction so a bad value fails at
        startup instead of on the first connection.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")

        if self.max_input_size < 1:
            raise ValueError("max_input_size must be >= 1")

        if self.buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")

        if self.rate_limit_max < 1:
            raise ValueError("rate_limit_max must be >= 1")

        for name in ("conn_timeout", "read_timeout", "rate_limit_window",
                     "rate_limit_cleanup_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

        if self.shutdown_grace < 0:
            raise ValueError("shutdown_grace must be >= 0")
