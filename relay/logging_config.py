import datetime
import logging
from pathlib import Path
from typing import Optional, TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

LOGGER_NAME = "larkrelay"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

_configured = False


def _resolve_zone(name: Optional[str]) -> datetime.tzinfo:
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc


class LocalTimezoneFormatter(logging.Formatter):
    """
    Renders asctime in LOG_TIMEZONE (system local time when unset or
    unknown) as an ISO timestamp with milliseconds.
    """

    def __init__(self, *args, timezone_name: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._zone = _resolve_zone(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self._zone)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat(timespec="milliseconds")


class DailyFileHandler(logging.Handler):
    """
    Appends to <log_dir>/<prefix>-YYYY-MM-DD.log, switching files when the
    date changes and keeping the newest `backup_count` of them.
    """

    def __init__(
        self,
        log_dir: Path,
        filename_prefix: str = "app",
        backup_count: int = 7,
        encoding: str = "utf-8",
    ) -> None:
        super().__init__()
        self.log_dir = Path(log_dir)
        self.filename_prefix = filename_prefix
        self.backup_count = backup_count
        self.encoding = encoding
        self._day: Optional[datetime.date] = None
        self._stream: Optional[TextIO] = None

    def _switch_to(self, day: datetime.date) -> None:
        if self._stream is not None:
            self._stream.close()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_dir / f"{self.filename_prefix}-{day.isoformat()}.log"
        self._stream = path.open("a", encoding=self.encoding)
        self._day = day
        if self.backup_count > 0:
            # ISO dates sort chronologically.
            files = sorted(self.log_dir.glob(f"{self.filename_prefix}-*.log"))
            for old in files[: -self.backup_count]:
                old.unlink(missing_ok=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            today = datetime.date.today()
            if today != self._day:
                self._switch_to(today)
            self._stream.write(self.format(record) + "\n")
            self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        finally:
            self.release()
        super().close()


logger = logging.getLogger(LOGGER_NAME)


def setup_logging() -> None:
    """
    Send relay logs to the daily file under LOG_DIR and everything,
    uvicorn included, to the console. Repeated calls are no-ops.
    """
    global _configured
    if _configured:
        return

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = LocalTimezoneFormatter(LOG_FORMAT, timezone_name=settings.log_timezone)

    file_handler = DailyFileHandler(Path(settings.log_dir))
    file_handler.setFormatter(formatter)
    logger.setLevel(level)
    logger.addHandler(file_handler)

    root = logging.getLogger()
    root.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    _configured = True
