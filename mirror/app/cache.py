from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Optional

from . import config

logger = logging.getLogger(__name__)

GARMENT_NAMESPACE = "garments"


class PreparedGarmentCache:
    """Disk cache of prepared garment data URIs keyed by upload content hash.

    Background removal is the slowest step of an upload, so re-uploading the
    same garment reuses the previous result. Cache failures are logged and
    treated as misses.
    """

    def __init__(self, root: Optional[Path] = None, namespace: str = GARMENT_NAMESPACE) -> None:
        self.root = Path(root or config.CACHE_DIR) / namespace

    def _path(self, cache_key: str) -> Path:
        return self.root / f"{cache_key}.json"

    def get(self, cache_key: str) -> Optional[str]:
        path = self._path(cache_key)
        if not path.exists():
            return None
        try:
            entry = json.loads(path.read_text())
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Unable to read prepared garment %s: %s", cache_key, exc)
            return None
        uri = entry.get("data_uri")
        return uri if isinstance(uri, str) and uri else None

    def put(self, cache_key: str, data_uri: str, *, degraded: bool = False) -> None:
        # Degraded (unprocessed) fallbacks are not cached so a later upload retries removal.
        if degraded:
            return
        path = self._path(cache_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps({"data_uri": data_uri, "created_at": time.time()}))
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Unable to write prepared garment %s: %s", cache_key, exc)

    def evict(self, cache_key: str) -> bool:
        path = self._path(cache_key)
        if not path.exists():
            return False
        try:
            path.unlink()
            return True
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Unable to evict prepared garment %s: %s", cache_key, exc)
            return False
