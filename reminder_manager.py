import logging
from PyQt5.QtCore import QObject, QTimer, pyqtSignal
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from event_store import Event, EventStore

logger = logging.getLogger(__name__)


def format_lead_time(minutes: int) -> str:
    if minutes >= 1440:
        return f"{minutes // 1440} day(s)"
    if minutes >= 60:
        return f"{minutes // 60} hour(s)"
    return f"{minutes} minute(s)"


def reminder_message(event: Event, offset_minutes: int) -> Tuple[str, str]:
    """通知弹窗的 (标题, 正文)，由展示层决定如何呈现。"""
    header = "Event happening now!" if offset_minutes == 0 else f"Event in {format_lead_time(offset_minutes)}"
    body = f"Event: {event.title}\nTime: {event.occurs_at.strftime('%b %d, %Y %H:%M')}"
    if event.description:
        body += f"\n\n{event.description}"
    return header, body


class ReminderManager(QObject):
    # (event, offset_minutes)；每个到期提醒只发一次
    reminderTriggered = pyqtSignal(object, int)
    dateChanged = pyqtSignal()

    def __init__(
        self,
        store: EventStore,
        interval_ms: int = 30000,
        on_reminder_due: Optional[Callable[[Event, int], None]] = None,
    ):
        super().__init__()
        self.store = store
        self.timer = QTimer(self)
        self.timer.setInterval(interval_ms)
        self.timer.timeout.connect(self.check_reminders)
        self._stopped = False
        self._current_date = datetime.now().date()
        if on_reminder_due is not None:
            self.reminderTriggered.connect(on_reminder_due)

    def start(self) -> None:
        """开始新一轮轮询；启动时立即扫描一次。"""
        self._stopped = False
        self.timer.start()
        self.check_reminders()

    def stop(self) -> None:
        self._stopped = True
        self.timer.stop()

    def is_running(self) -> bool:
        return self.timer.isActive()

    def _collect_due(self, now: datetime) -> List[Tuple[Event, int]]:
        due: List[Tuple[Event, int]] = []
        with self.store.lock:
            for _, e in self.store.all_events():
                for r in e.reminders:
                    if r.fired:
                        continue
                    if r.is_due(e.occurs_at, now):
                        r.fired = True
                        due.append((e, r.offset_minutes))
        return due

    def check_reminders(self, now: Optional[datetime] = None) -> List[Tuple[Event, int]]:
        if self._stopped:
            return []
        now = now or datetime.now()

        # 1. 跨天时通知展示层刷新“今天”
        if now.date() != self._current_date:
            self._current_date = now.date()
            self.dateChanged.emit()

        # 2. 持锁翻转 fired 标记，释放锁之后再回调
        due = self._collect_due(now)
        logger.debug("Reminder sweep at %s: %d due", now.isoformat(timespec="seconds"), len(due))
        for e, offset in due:
            if self._stopped:
                break
            self.reminderTriggered.emit(e, offset)
        return due
