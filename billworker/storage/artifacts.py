"""
Local artifact storage.

Mirrors the layout the dashboard reads:

    {storage}/key_value_stores/{store}/{key}     PDFs, screenshots, HTML dumps, status.json
    {storage}/datasets/{dataset}/{n:09d}.json    result records
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger


# Well-known diagnostic keys
PAGE_DUMP = "PAGE_DUMP.html"
ERROR_SCREENSHOT = "ERROR_SCREENSHOT.png"
LOGIN_FAILURE_STATE = "LOGIN_FAILURE_STATE.png"
CAPTCHA_INJECTED = "captcha_injected_debug.png"
BILL_NOT_FOUND = "BILL_NOT_FOUND.png"
BILL_NOT_FOUND_DUMP = "BILL_NOT_FOUND_DUMP.html"
INSTALLATION_NOT_FOUND = "DEBUG_PAID_BILLS_PAGE.png"
STATUS = "status.json"
INPUT = "INPUT.json"

CONTENT_TYPES = {
    ".html": "text/html",
    ".png": "image/png",
    ".pdf": "application/pdf",
    ".json": "application/json",
}


class ArtifactSink:
    """Key-value store plus dataset for one run."""

    def __init__(self, directory: Union[str, Path], store: str = "default", dataset: str = "default"):
        self.directory = Path(directory)
        self.store_dir = self.directory / "key_value_stores" / store
        self.dataset_dir = self.directory / "datasets" / dataset
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self.dataset_dir.mkdir(parents=True, exist_ok=True)
        self._record_count = len(list(self.dataset_dir.glob("*.json")))

    def path_for(self, key: str) -> Path:
        return self.store_dir / key

    def set_value(self, key: str, value: Union[bytes, str, Dict[str, Any]]) -> Path:
        """Store a value under ``key``; dicts are written as JSON."""
        path = self.path_for(key)
        if isinstance(value, dict):
            path.write_text(json.dumps(value, indent=2, ensure_ascii=False), encoding="utf-8")
        elif isinstance(value, str):
            path.write_text(value, encoding="utf-8")
        else:
            path.write_bytes(value)
        logger.debug(f"Stored {key} ({CONTENT_TYPES.get(path.suffix, 'application/octet-stream')})")
        return path

    def get_value(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def push_data(self, record: Dict[str, Any]) -> Path:
        """Append one structured result record to the dataset."""
        self._record_count += 1
        path = self.dataset_dir / f"{self._record_count:09d}.json"
        path.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.debug(f"Pushed record {path.name}: {record.get('status')}")
        return path

    def records(self) -> List[Dict[str, Any]]:
        return [
            json.loads(path.read_text(encoding="utf-8"))
            for path in sorted(self.dataset_dir.glob("*.json"))
        ]

    def read_input(self) -> Optional[Dict[str, Any]]:
        """
        Read INPUT.json, trying the store first and then the usual fallbacks.

        Returns:
            Parsed input or None when no candidate file exists
        """
        candidates = [
            self.path_for(INPUT),
            Path("storage") / "key_value_stores" / "default" / INPUT,
            Path(INPUT),
        ]
        for path in candidates:
            logger.debug(f"Checking for input at: {path}")
            if path.exists():
                data = json.loads(path.read_text(encoding="utf-8"))
                logger.info(f"Input read from {path}")
                return data
        return None

    def write_status(self, exit_code: int, status: str, error: Optional[str] = None) -> Path:
        return self.set_value(STATUS, {
            "exitCode": exit_code,
            "status": status,
            "error": error,
            "finishedAt": datetime.now(timezone.utc).isoformat(),
        })
