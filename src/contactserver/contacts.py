"""
Static contact directory shown in the session menu.
"""

from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class Contact:
    """
    One menu entry.

    Attributes:
        index: 1-based menu number the client types.
        label: Display name (e.g. "GitHub").
        url: Host and path without scheme, as listed in the menu.
    """
    index: int
    label: str
    url: str

    @property
    def resolved_url(self) -> str:
        """Full URL revealed when the entry is selected."""
        return f"https://{self.url}"


CONTACTS: tuple[Contact, ...] = (
    Contact(1, "Twitter/X", "x.com/hitto_kun"),
    Contact(2, "GitHub", "github.com/hitto-hub"),
    Contact(3, "Zenn", "zenn.dev/hitto"),
    Contact(4, "Qiita", "qiita.com/hitto"),
    Contact(5, "Blog", "hitto-kun.hatenablog.com"),
)


def find_contact(contacts: Sequence[Contact], number: int) -> Optional[Contact]:
    """Return the contact for a menu number, or None if out of range."""
    if 1 <= number <= len(contacts):
        return contacts[number - 1]
    return None
