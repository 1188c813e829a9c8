import logging
import threading
import uuid
from datetime import datetime, timedelta, date, time
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from icalendar import Event as ICalEvent, Alarm

from errors import EmptyTitle, OutOfRange

logger = logging.getLogger(__name__)


class Reminder:
    """一个提醒偏移量及其投递状态（Pending / Fired）。"""

    __slots__ = ("offset_minutes", "fired")

    def __init__(self, offset_minutes: int, fired: bool = False):
        if isinstance(offset_minutes, bool) or not isinstance(offset_minutes, int):
            raise ValueError(f"reminder offset must be an int, got {offset_minutes!r}")
        if offset_minutes < 0:
            raise ValueError(f"reminder offset must be non-negative, got {offset_minutes}")
        self.offset_minutes = offset_minutes
        self.fired = fired

    def is_due(self, occurs_at: datetime, now: datetime) -> bool:
        # 按秒数比较，不构造提醒时刻（公元 1 年附近会溢出）
        return (now - occurs_at).total_seconds() >= -self.offset_minutes * 60

    def __repr__(self) -> str:
        state = "Fired" if self.fired else "Pending"
        return f"Reminder({self.offset_minutes}, {state})"


class Event:
    """领域模型；title/occurs_at/description 加上逐个提醒的投递标记。"""

    def __init__(
        self,
        title: str,
        occurs_at: datetime,
        description: str = "",
        reminder_offsets: Optional[Iterable[int]] = None,
    ):
        if not title or not title.strip():
            raise EmptyTitle()
        self.title = title
        # 持久化格式只到秒
        self.occurs_at = occurs_at.replace(microsecond=0)
        self.description = description or ""
        self.reminders: List[Reminder] = []
        self.reminder_offsets = list(reminder_offsets or [])

    @property
    def date(self) -> date:
        return self.occurs_at.date()

    @property
    def reminder_offsets(self) -> List[int]:
        return [r.offset_minutes for r in self.reminders]

    @reminder_offsets.setter
    def reminder_offsets(self, offsets: Iterable[int]) -> None:
        # 偏移量变化时投递状态全部重置
        self.reminders = [Reminder(o) for o in offsets]

    @property
    def fired(self) -> List[bool]:
        return [r.fired for r in self.reminders]

    def copy(self) -> "Event":
        dup = Event(self.title, self.occurs_at, self.description, self.reminder_offsets)
        for mine, theirs in zip(self.reminders, dup.reminders):
            theirs.fired = mine.fired
        return dup

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Event":
        """由编辑对话框的 payload 构造；标题为空时在构造前拒绝。"""
        title = (payload.get("title") or "").strip()
        if not title:
            raise EmptyTitle()
        day = payload["date"]
        if isinstance(day, str):
            day = date.fromisoformat(day)
        at = payload.get("time") or time(0, 0)
        if isinstance(at, str):
            at = time.fromisoformat(at)
        return cls(
            title=title,
            occurs_at=datetime.combine(day, at),
            description=payload.get("description", ""),
            reminder_offsets=[int(m) for m in payload.get("reminders", [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "date": self.occurs_at.date().isoformat(),
            "time": self.occurs_at.time().isoformat(timespec="minutes"),
            "description": self.description,
            "reminders": self.reminder_offsets,
        }

    def to_ical_component(self) -> ICalEvent:
        ical_event = ICalEvent()
        ical_event.add('uid', str(uuid.uuid4()))
        ical_event.add('summary', self.title)
        if self.description:
            ical_event.add('description', self.description)
        ical_event.add('dtstart', self.occurs_at)
        for r in self.reminders:
            alarm = Alarm()
            alarm.add('action', 'DISPLAY')
            alarm.add('description', self.title)
            alarm.add('trigger', timedelta(minutes=-r.offset_minutes))
            ical_event.add_component(alarm)
        return ical_event

    @classmethod
    def from_ical_component(cls, comp: ICalEvent) -> Optional["Event"]:
        title = str(comp.get('summary', '')).strip()
        dtstart = comp.get('dtstart')
        if not title or dtstart is None:
            logger.warning("Skipping VEVENT without summary or DTSTART: %s", comp.get('uid'))
            return None

        start = dtstart.dt
        if isinstance(start, datetime):
            if start.tzinfo is not None:
                # 只处理本地挂钟时间
                start = start.astimezone().replace(tzinfo=None)
        else:
            start = datetime(start.year, start.month, start.day)

        offsets = []
        for alarm in comp.walk('VALARM'):
            trigger = alarm.get('trigger')
            if trigger is None:
                continue
            value = trigger.dt
            if isinstance(value, timedelta):
                minutes = int(-value.total_seconds() // 60)
            elif isinstance(value, datetime):
                if value.tzinfo is not None:
                    value = value.astimezone().replace(tzinfo=None)
                minutes = int((start - value).total_seconds() // 60)
            else:
                continue
            # 事件之后才触发的提醒按 "at time" 处理
            offsets.append(max(minutes, 0))

        return cls(
            title=title,
            occurs_at=start,
            description=str(comp.get('description', '')),
            reminder_offsets=offsets,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Event):
            return NotImplemented
        return (
            self.title == other.title
            and self.occurs_at == other.occurs_at
            and self.description == other.description
            and self.reminder_offsets == other.reminder_offsets
        )

    __hash__ = None

    def __repr__(self) -> str:
        return f"Event({self.title!r}, {self.occurs_at.isoformat()}, reminders={self.reminders!r})"

    def __str__(self) -> str:
        line = f"{self.occurs_at.strftime('%H:%M')} - {self.title}"
        if self.description:
            line += f"\n   {self.description}"
        if self.reminders:
            labels = ", ".join(
                "at time" if m == 0 else f"{m}min before" for m in self.reminder_offsets
            )
            line += f"\n   Reminders: {labels}"
        return line


class EventStore:
    """日期 -> 事件列表。所有操作持有 self.lock，提醒扫描同样使用这把锁。"""

    def __init__(self):
        self.lock = threading.RLock()
        self._by_date: Dict[date, List[Event]] = {}

    def add(self, day: date, event: Event) -> None:
        with self.lock:
            self._by_date.setdefault(day, []).append(event)

    def remove_at(self, day: date, index: int) -> Event:
        with self.lock:
            self._check_index(day, index)
            events = self._by_date[day]
            removed = events.pop(index)
            if not events:
                del self._by_date[day]
            return removed

    def move_event(self, old_date: date, index: int, new_date: date, new_event: Event) -> Event:
        """先删后追加；同一天编辑时事件会移到当天末尾。"""
        with self.lock:
            removed = self.remove_at(old_date, index)
            self.add(new_date, new_event)
            return removed

    def events_on(self, day: date) -> Tuple[Event, ...]:
        with self.lock:
            return tuple(self._by_date.get(day, ()))

    def events_between(self, start: date, end: date) -> Dict[date, List[Event]]:
        with self.lock:
            return {
                d: list(events)
                for d, events in self._by_date.items()
                if start <= d <= end
            }

    def all_events(self) -> "_AllEvents":
        return _AllEvents(self)

    def _snapshot(self) -> List[Tuple[date, Event]]:
        with self.lock:
            return [(d, e) for d, events in self._by_date.items() for e in events]

    def dates(self) -> List[date]:
        with self.lock:
            return list(self._by_date)

    def clear(self) -> None:
        with self.lock:
            self._by_date.clear()

    def copy(self) -> "EventStore":
        dup = EventStore()
        with self.lock:
            dup._by_date = {d: list(events) for d, events in self._by_date.items()}
        return dup

    def replace_contents(self, other: "EventStore") -> None:
        with other.lock:
            staged = {d: list(events) for d, events in other._by_date.items()}
        with self.lock:
            self._by_date = staged

    def _check_index(self, day: date, index: int) -> None:
        events = self._by_date.get(day)
        if not events or not 0 <= index < len(events):
            raise OutOfRange(day, index)

    def __len__(self) -> int:
        with self.lock:
            return sum(len(events) for events in self._by_date.values())

    def __bool__(self) -> bool:
        with self.lock:
            return bool(self._by_date)

    def __contains__(self, day: date) -> bool:
        with self.lock:
            return day in self._by_date


class _AllEvents:
    """可重复迭代的 (date, event) 序列；每次迭代都重新取快照。"""

    def __init__(self, store: EventStore):
        self._store = store

    def __iter__(self) -> Iterator[Tuple[date, Event]]:
        return iter(self._store._snapshot())


def merge_events(store: EventStore, incoming: Iterable[Tuple[date, Event]]) -> int:
    """追加导入，不去重。"""
    count = 0
    with store.lock:
        for day, event in incoming:
            store.add(day, event)
            count += 1
    return count


def replace_events(store: EventStore, incoming: Iterable[Tuple[date, Event]]) -> int:
    pairs = list(incoming)
    with store.lock:
        store.clear()
        return merge_events(store, pairs)


