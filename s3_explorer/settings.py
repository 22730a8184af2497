from __future__ import annotations
"""Application settings persistence helpers."""

from dataclasses import asdict, dataclass, field
import json
import logging
from pathlib import Path

from .services import BUCKET_LIST_TIMEOUT, DEFAULT_PART_SIZE
from .transfers import PROGRESS_INTERVAL

LOGGER = logging.getLogger(__name__)


def _default_download_dir() -> str:
    return str(Path.home() / "Downloads")


@dataclass
class AppSettings:
    """Simple container for persistent app settings."""

    download_dir: str = field(default_factory=_default_download_dir)
    part_size: int = DEFAULT_PART_SIZE
    bucket_list_timeout: float = BUCKET_LIST_TIMEOUT
    progress_interval: float = PROGRESS_INTERVAL
    verify_tls: bool = True


class SettingsStorage:
    """JSON-backed persistence for :class:`AppSettings`."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".s3_explorer_settings.json"
        self._path = Path(storage_path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AppSettings:
        if not self._path.exists():
            return AppSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Ignoring unreadable settings file %s", self._path)
            return AppSettings()
        if not isinstance(data, dict):
            return AppSettings()

        defaults = AppSettings()
        download_dir = data.get("download_dir")
        if not isinstance(download_dir, str) or not download_dir.strip():
            download_dir = defaults.download_dir
        return AppSettings(
            download_dir=download_dir,
            part_size=max(_coerce(data.get("part_size"), int, defaults.part_size), DEFAULT_PART_SIZE),
            bucket_list_timeout=_coerce(data.get("bucket_list_timeout"), float, defaults.bucket_list_timeout),
            progress_interval=_coerce(data.get("progress_interval"), float, defaults.progress_interval, allow_zero=True),
            verify_tls=_coerce_bool(data.get("verify_tls"), defaults.verify_tls),
        )

    def save(self, settings: AppSettings) -> None:
        payload = asdict(settings)
        payload["part_size"] = max(int(settings.part_size), DEFAULT_PART_SIZE)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError:
            # Persist best-effort; ignore filesystem issues.
            LOGGER.warning("Could not write settings file %s", self._path)
            return


def _coerce_bool(value, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _coerce(value, kind, default, *, allow_zero: bool = False):
    if value is None:
        return default
    try:
        converted = kind(value)
    except (TypeError, ValueError):
        return default
    if converted < 0 or (converted == 0 and not allow_zero):
        return default
    return converted

