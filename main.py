import os
import sys
import json
import logging
import signal

from PyQt5.QtCore import QCoreApplication, QTimer

from data_manager import DataManager
from errors import CalendarError
from event_store import Event
from reminder_manager import ReminderManager, reminder_message

logger = logging.getLogger("desk_calendar")


def _ensure_data_path() -> str:
    default_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), DataManager.SETTINGS_FILE)

    data_dir = os.path.dirname(default_path)
    if data_dir:
        os.makedirs(data_dir, exist_ok=True)

    if not os.path.exists(default_path):
        with open(default_path, "w", encoding="utf-8") as f:
            json.dump({"settings": {}}, f, indent=4, ensure_ascii=False)

    return default_path


def _on_reminder(e: Event, offset_minutes: int) -> None:
    header, body = reminder_message(e, offset_minutes)
    logger.info("%s\n%s", header, body)


def run(argv) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = QCoreApplication(argv)
    settings_path = argv[1] if len(argv) > 1 else _ensure_data_path()
    try:
        dm = DataManager(settings_path)
    except CalendarError as e:
        logger.error("Cannot start: %s", e)
        return 1

    reminder = ReminderManager(dm.store, dm.check_interval_ms, on_reminder_due=_on_reminder)
    reminder.start()

    # Ctrl+C：停止轮询，最后落盘一次再退出
    def _shutdown(*_):
        reminder.stop()
        try:
            dm.save()
        except CalendarError as e:
            logger.error("Final save failed: %s", e)
        app.quit()

    signal.signal(signal.SIGINT, _shutdown)
    # 让 Python 有机会处理信号
    wake = QTimer()
    wake.timeout.connect(lambda: None)
    wake.start(500)
    logger.info("Watching %d events in %s", dm.event_count(), dm.data_file)
    return app.exec_()


if __name__ == "__main__":
    sys.exit(run(sys.argv))
