"""
=============================================================================
SESSION HANDLER
=============================================================================

The interactive part of the service: banner, menu, and a read/answer loop.

=============================================================================
SESSION STATE MACHINE
=============================================================================

    GREETING ──────► AWAITING_INPUT ──────► RESPONDING
                          │    ▲                 │
                          │    └─────────────────┘
                          │
                          ▼
                        CLOSED   ◄── quit / oversized line / read error

=============================================================================
WHAT THE CLIENT SEES
=============================================================================

    $ nc contact.example 1337
    <banner>
      [1] Twitter/X  → x.com/hitto_kun
      ...
    > Select [1-5] or 'q' to quit: 3

    → Opening Zenn: https://zenn.dev/hitto

    > Select [1-5] or 'q' to quit: q

    Connection closed. See you! 👋

Only an oversized line gets an error message before the connection
closes. Idle timeouts, resets and EOF end the session silently.

=============================================================================
"""

import re
import logging
from enum import Enum
from typing import Optional, Sequence

from .contacts import CONTACTS, Contact, find_contact
from .core.connection import Connection, LineTooLongError


logger = logging.getLogger(__name__)


BANNER = r"""
 _     _ _   _
| |__ (_) |_| |_ ___
| '_ \| | __| __/ _ \
| | | | | |_| || (_) |
|_| |_|_|\__|\__\___/

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Welcome to hitto's contact server
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

  Available endpoints:

"""

SEPARATOR = "\n━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━\n\n"

QUIT_COMMANDS = frozenset({"q", "quit", "exit"})

FAREWELL_MESSAGE = "\nConnection closed. See you! 👋\n"
TOO_LARGE_MESSAGE = "\nInput too large. Connection closed.\n"

# Leading integer; whatever follows it is ignored
_LEADING_INTEGER = re.compile(r"([+-]?)([0-9]+)")

# Significant digits beyond this are treated as out of range
MAX_SELECTION_DIGITS = 18


class SessionState(Enum):
    """Where a session is in its lifecycle."""
    GREETING = "greeting"
    AWAITING_INPUT = "awaiting_input"
    RESPONDING = "responding"
    CLOSED = "closed"


def parse_selection(text: str) -> Optional[int]:
    """
    Parse a menu number.

    Leading whitespace is skipped and the leading decimal integer is
    taken; anything after it is ignored. Only ASCII digits count.

        "3"    → 3
        " 3 "  → 3
        "3a"   → 3
        "1.5"  → 1
        "a3"   → None
        ""     → None

    Numbers with more than MAX_SELECTION_DIGITS significant digits are
    rejected outright, since no menu is that long.
    """
    match = _LEADING_INTEGER.match(text.lstrip())
    if match is None:
        return None

    sign, digits = match.groups()
    digits = digits.lstrip("0") or "0"
    if len(digits) > MAX_SELECTION_DIGITS:
        return None
    return int(sign + digits)


class SessionHandler:
    """
    Runs the menu protocol on one admitted connection.

    The handler is stateless between connections; one instance serves
    every session concurrently.

    Usage:
        handler = SessionHandler()
        handler.handle(conn)   # returns when the session is over
    """

    def __init__(self, contacts: Sequence[Contact] = CONTACTS):
        if not contacts:
            raise ValueError("at least one contact is required")
        self.contacts = tuple(contacts)

    @property
    def prompt(self) -> str:
        return f"> Select [1-{len(self.contacts)}] or 'q' to quit: "

    @property
    def invalid_message(self) -> str:
        return f"Invalid input. Select [1-{len(self.contacts)}] or 'q' to quit: "

    def render_menu(self) -> str:
        """Banner, contact list and the first prompt."""
        lines = [
            f"  [{c.index}] {c.label:<10} → {c.url}\n" for c in self.contacts
        ]
        return BANNER + "".join(lines) + SEPARATOR + self.prompt

    def respond(self, line: str) -> tuple[str, bool]:
        """
        Work out the reply to one input line.

        Args:
            line: The line as received, without its terminator.

        Returns:
            (reply text, keep_open). keep_open is False for quit commands.
        """
        if line in QUIT_COMMANDS:
            return FAREWELL_MESSAGE, False

        number = parse_selection(line)
        contact = find_contact(self.contacts, number) if number is not None else None
        if contact is None:
            return self.invalid_message, True

        return f"\n→ Opening {contact.label}: {contact.resolved_url}\n\n" + self.prompt, True

    def handle(self, conn: Connection) -> SessionState:
        """
        Run one session to completion.

        Never raises for ordinary client behaviour: timeouts, resets,
        EOF and oversized input all end in CLOSED. The caller owns the
        connection and closes it.

        Every state change is logged at DEBUG, and the closing line
        names the state the session left from (AWAITING_INPUT for
        timeouts, EOF and oversized lines, RESPONDING for quit and
        failed writes).

        Returns:
            The final state (always CLOSED), for tests and logging.
        """
        state = self._enter(conn, SessionState.GREETING)

        if conn.send(self.render_menu()):
            while True:
                state = self._enter(conn, SessionState.AWAITING_INPUT)
                try:
                    line = conn.read_line()
                except LineTooLongError as e:
                    logger.warning(f"[{conn.id}] Input size limit exceeded from {conn.client_ip}: {e}")
                    conn.send(TOO_LARGE_MESSAGE)
                    break
                except (TimeoutError, OSError) as e:
                    logger.debug(f"[{conn.id}] Read ended: {e}")
                    break

                if line is None:
                    break  # Client closed the connection

                state = self._enter(conn, SessionState.RESPONDING)
                reply, keep_open = self.respond(line)

                if not conn.send(reply) or not keep_open:
                    break

        logger.debug(
            f"[{conn.id}] Session closed from {state.value} "
            f"after {conn.lines_read} lines"
        )
        return self._enter(conn, SessionState.CLOSED)

    def _enter(self, conn: Connection, state: SessionState) -> SessionState:
        logger.debug(f"[{conn.id}] Session state: {state.value}")
        return state
