"""
Recipient file - the public identifiers downstream encryption targets.

One identifier per line, optionally prefixed with a label:

    # managed by provisionctl
    primary-yubikey: age1yubikey1q...
    age1...

Additions are unions: an identifier already present is never duplicated
and existing lines are never removed or reordered.
"""

import os
import tempfile
from pathlib import Path
from typing import List, Optional

from ..logging_config import get_logger
from .interfaces import RecipientSet

logger = get_logger(__name__)


def parse_recipient_line(line: str) -> Optional[str]:
    line = line.strip()
    if not line or line.startswith('#'):
        return None
    if ':' in line:
        _label, _, value = line.rpartition(':')
        line = value.strip()
    return line.split()[0] if line else None


class RecipientFile(RecipientSet):
    """RecipientSet stored as a text file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def snapshot(self) -> List[str]:
        if not self.path.exists():
            return []
        identifiers = []
        for line in self.path.read_text().splitlines():
            value = parse_recipient_line(line)
            if value and value not in identifiers:
                identifiers.append(value)
        return identifiers

    def add(self, identifier: str, label: Optional[str] = None) -> bool:
        identifier = identifier.strip()
        if identifier in self.snapshot():
            logger.debug(f"Recipient already present: {identifier}")
            return False

        existing = self.path.read_text() if self.path.exists() else ""
        if existing and not existing.endswith('\n'):
            existing += '\n'
        entry = f"{label}: {identifier}" if label else identifier

        # Readers see the old file or the new one, never a partial write
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix='.recipients-')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(existing + entry + '\n')
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

        logger.info(f"Added recipient {identifier}" + (f" ({label})" if label else ""))
        return True
