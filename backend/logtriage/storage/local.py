import logging
import os
import re
import uuid
from typing import IO

from logtriage.errors import SourceUnavailable

logger = logging.getLogger(__name__)

class LocalFileStore:
    """Uploaded files on local disk; the locator is the absolute file path."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def save(self, filename: str, content: bytes) -> str:
        os.makedirs(self.root, exist_ok=True)
        safe = re.sub(r'[^A-Za-z0-9._-]', '_', os.path.basename(filename or 'upload')) or 'upload'
        path = os.path.join(self.root, f"{uuid.uuid4().hex}_{safe}")
        with open(path, 'wb') as f:
            f.write(content)
        return path

    def open_text(self, locator: str) -> IO[str]:
        """Open a stored file for sequential text reads; may be called repeatedly."""
        if not locator or not os.path.isfile(locator):
            raise SourceUnavailable(f"file not found on disk: {locator}")
        try:
            return open(locator, 'r', encoding='utf-8', errors='replace', newline='')
        except OSError as e:
            raise SourceUnavailable(f"cannot read {locator}: {e}") from e

    def delete(self, locator: str) -> bool:
        if not locator:
            return False
        try:
            os.remove(locator)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("Error deleting stored file %s: %s", locator, e)
            return False
