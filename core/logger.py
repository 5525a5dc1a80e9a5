import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from config import LogConfig, config
from messaging.models import SpawnRequest, Status, StatusCode


def configure_logging(cfg: Optional[LogConfig] = None) -> None:
    """Apply level and format from LogConfig to the root logger."""
    cfg = cfg or config.log
    logging.basicConfig(
        level=getattr(logging, cfg.level.upper(), logging.INFO),
        format=cfg.format,
    )


class SpawnLogHandler(logging.Handler):
    """
    Logging handler that turns records into SpawnRequest log lines.

    The remote-spawn channel streams these back to whoever started the
    pea/pod. Records at ERROR and above carry an ERROR status.
    """

    def __init__(
        self,
        sink: Optional[Callable[[SpawnRequest], None]] = None,
        maxlen: Optional[int] = None,
    ):
        super().__init__()
        self.sink = sink
        self.buffer: Deque[SpawnRequest] = deque(maxlen=maxlen or config.log.spawn_buffer_size)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            status = Status()
            if record.levelno >= logging.ERROR:
                status = Status(code=StatusCode.ERROR, description=record.getMessage())
            spawn = SpawnRequest(log_record=line, status=status)
            self.buffer.append(spawn)
            if self.sink is not None:
                self.sink(spawn)
        except Exception:
            self.handleError(record)

    def drain(self) -> List[SpawnRequest]:
        """Return and clear buffered records."""
        items = list(self.buffer)
        self.buffer.clear()
        return items
