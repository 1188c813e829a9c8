"""
事件数据文件的文本格式。

每个事件一行，字段以 ``|`` 分隔：

    DATE|TITLE|TIME|DESCRIPTION|REMINDERS

TITLE 与 DESCRIPTION 中的 ``|`` 写作 ``&#124;``，换行写作 ``&#10;``。
REMINDERS 为逗号分隔的分钟数，没有提醒时为空串。
"""
import logging
import os
import tempfile
from datetime import date, datetime, time
from typing import List, Optional, Tuple

from errors import ParseError, StorageUnavailable
from event_store import Event, EventStore

logger = logging.getLogger(__name__)

FIELD_SEP = "|"
FIELD_COUNT = 5
_ESCAPES = (("|", "&#124;"), ("\n", "&#10;"))


def escape_field(text: str) -> str:
    for raw, token in _ESCAPES:
        text = text.replace(raw, token)
    return text


def unescape_field(text: str) -> str:
    for raw, token in _ESCAPES:
        text = text.replace(token, raw)
    return text


def _format_time(t: time) -> str:
    return t.isoformat(timespec="minutes" if t.second == 0 else "seconds")


def encode_line(day: date, event: Event) -> str:
    return FIELD_SEP.join((
        day.isoformat(),
        escape_field(event.title),
        _format_time(event.occurs_at.time()),
        escape_field(event.description),
        ",".join(str(m) for m in event.reminder_offsets),
    ))


def decode_line(line: str) -> Tuple[date, Event]:
    """解析单行；格式错误时抛 ValueError（由 decode 转成 ParseError）。"""
    parts = line.split(FIELD_SEP)
    if len(parts) < FIELD_COUNT:
        raise ValueError(f"expected {FIELD_COUNT} fields, found {len(parts)}")
    day = date.fromisoformat(parts[0].strip())
    at = time.fromisoformat(parts[2].strip())
    if at.tzinfo is not None:
        raise ValueError("time must be local wall-clock time")
    offsets = [int(tok) for tok in parts[4].split(",")] if parts[4].strip() else []
    event = Event(
        title=unescape_field(parts[1]),
        occurs_at=datetime.combine(day, at),
        description=unescape_field(parts[3]),
        reminder_offsets=offsets,
    )
    return day, event


def encode(store: EventStore) -> str:
    return "".join(encode_line(day, e) + "\n" for day, e in store.all_events())


def decode(text: str, errors: Optional[List[ParseError]] = None) -> EventStore:
    store = EventStore()
    for number, line in enumerate(text.split("\n"), start=1):
        line = line.rstrip("\r")
        if not line.strip():
            continue
        try:
            day, event = decode_line(line)
        except ValueError as e:
            err = ParseError(number, line, str(e))
            logger.warning("Skipping malformed event line: %s", err)
            if errors is not None:
                errors.append(err)
            continue
        store.add(day, event)
    return store


def read_events(
    path: str,
    errors: Optional[List[ParseError]] = None,
    missing_ok: bool = True,
) -> EventStore:
    if missing_ok and not os.path.exists(path):
        logger.info("No saved events found at %s", path)
        return EventStore()
    try:
        # 不做换行转换，标题里单独的 \r 不能被当成换行
        with open(path, "r", encoding="utf-8", newline="") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.error("Error loading events from %s: %s", path, e)
        raise StorageUnavailable(path, str(e)) from e
    return decode(text, errors)


def write_text(path: str, text: str) -> None:
    """原子写入：先写临时文件再替换，中途崩溃不会破坏旧文件。"""
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        logger.error("Error saving %s: %s", path, e)
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise StorageUnavailable(path, str(e)) from e
