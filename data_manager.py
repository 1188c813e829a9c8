import json
import logging
import os
import shutil
import threading
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple
from icalendar import Calendar

from errors import StorageUnavailable, ParseError
from event_store import Event, EventStore, merge_events, replace_events
import event_codec

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "2.0"
DEFAULT_DATA_FILE = "calendar_events.dat"
DEFAULT_CHECK_INTERVAL_MS = 30000


def _default_data_path() -> str:
    return os.path.join(os.path.expanduser("~"), "Calendar", DEFAULT_DATA_FILE)


def _default_settings() -> Dict[str, Any]:
    return {
        "data_file": _default_data_path(),
        "check_interval_ms": DEFAULT_CHECK_INTERVAL_MS,
    }


class DataManager:
    SETTINGS_FILE = "CalendarData.json"

    def __init__(self, settings_path: str, on_store_changed: Optional[Callable[[], None]] = None):
        self._settings_path = settings_path
        self._on_store_changed = on_store_changed
        self._write_lock = threading.Lock()
        self.store = EventStore()
        self.last_parse_errors: List[ParseError] = []

        self.data: Dict[str, Any] = self._load_settings_only()
        self.load_from_path(self.data_file)

    # --- Settings ---
    def _load_settings_only(self) -> Dict[str, Any]:
        data = {"version": DEFAULT_VERSION, "settings": _default_settings()}
        if os.path.exists(self._settings_path):
            try:
                with open(self._settings_path, "r", encoding="utf-8") as f:
                    raw_data = json.load(f)
                for k, v in raw_data.get("settings", {}).items():
                    data["settings"][k] = v
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable settings %s: %s", self._settings_path, e)
        return data

    def get_settings(self) -> Dict[str, Any]:
        return self.data["settings"]

    def save_settings(self, **kwargs) -> None:
        """先写盘，成功后才更新内存中的设置。"""
        merged = dict(self.data["settings"], **kwargs)
        text = json.dumps(
            {"version": DEFAULT_VERSION, "settings": merged},
            indent=4,
            ensure_ascii=False,
        )
        event_codec.write_text(self._settings_path, text)
        self.data["settings"].update(kwargs)

    @property
    def data_file(self) -> str:
        return self.data["settings"]["data_file"]

    @property
    def check_interval_ms(self) -> int:
        return int(self.data["settings"].get("check_interval_ms", DEFAULT_CHECK_INTERVAL_MS))

    # --- Mutations ---
    def _commit(self, mutate: Callable[[EventStore], Any]) -> Any:
        """在副本上修改、写盘成功后再替换内存数据；写盘失败时内存保持不变。"""
        with self._write_lock:
            staged = self.store.copy()
            result = mutate(staged)
            event_codec.write_text(self.data_file, event_codec.encode(staged))
            self.store.replace_contents(staged)
        self._notify_changed()
        return result

    def _notify_changed(self) -> None:
        if self._on_store_changed:
            self._on_store_changed()

    def add_event(self, event: Event) -> None:
        # 存副本，调用方之后的修改不会绕过 store.lock
        owned = event.copy()
        self._commit(lambda s: s.add(owned.date, owned))

    def edit_event(self, old_date: date, index: int, new_event: Event) -> Event:
        owned = new_event.copy()
        return self._commit(lambda s: s.move_event(old_date, index, owned.date, owned))

    def delete_event(self, day: date, index: int) -> Event:
        return self._commit(lambda s: s.remove_at(day, index))

    def import_merge(self, path: str) -> int:
        incoming = event_codec.read_events(path, missing_ok=False)
        count = self._commit(lambda s: merge_events(s, incoming.all_events()))
        logger.info("Merged %d events from %s", count, path)
        return count

    def import_replace(self, path: str) -> int:
        incoming = event_codec.read_events(path, missing_ok=False)
        count = self._commit(lambda s: replace_events(s, incoming.all_events()))
        logger.info("Replaced store with %d events from %s", count, path)
        return count

    # --- Load / Save / Export ---
    def load_from_path(self, path: str) -> int:
        errors: List[ParseError] = []
        loaded = event_codec.read_events(path, errors=errors)
        with self._write_lock:
            self.store.replace_contents(loaded)
        self.last_parse_errors = errors
        logger.info("Loaded %d events from %s (%d lines skipped)", len(loaded), path, len(errors))
        self._notify_changed()
        return len(loaded)

    def save_to_path(self, path: str) -> None:
        with self._write_lock:
            event_codec.write_text(path, event_codec.encode(self.store))
        logger.info("Saved %d events to %s", len(self.store), path)

    def save(self) -> None:
        self.save_to_path(self.data_file)

    def export_to(self, target_path: str) -> None:
        """按字节复制当前数据文件。"""
        with self._write_lock:
            try:
                shutil.copyfile(self.data_file, target_path)
            except OSError as e:
                raise StorageUnavailable(target_path, str(e)) from e
        logger.info("Exported %s to %s", self.data_file, target_path)

    def change_data_location(self, directory: str) -> str:
        new_path = os.path.join(directory, DEFAULT_DATA_FILE)
        with self._write_lock:
            if os.path.exists(self.data_file):
                try:
                    os.makedirs(directory, exist_ok=True)
                    shutil.copyfile(self.data_file, new_path)
                except OSError as e:
                    raise StorageUnavailable(new_path, str(e)) from e
        self.save_settings(data_file=new_path)
        logger.info("Data location changed to %s", new_path)
        return new_path

    # --- iCalendar interop ---
    def export_to_ics(self, target_path: str) -> int:
        cal = Calendar()
        cal.add('prodid', '-//Desk Calendar//NONSGML v2.0//EN')
        cal.add('version', '2.0')
        count = 0
        for _, e in self.store.all_events():
            cal.add_component(e.to_ical_component())
            count += 1
        try:
            with open(target_path, "wb") as f:
                f.write(cal.to_ical())
        except OSError as e:
            raise StorageUnavailable(target_path, str(e)) from e
        return count

    def import_from_ics(self, file_path: str, replace: bool = False) -> int:
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageUnavailable(file_path, str(e)) from e

        incoming: List[Tuple[date, Event]] = []
        if content.strip():
            try:
                cal = Calendar.from_ical(content)
            except ValueError as e:
                raise StorageUnavailable(file_path, f"not an iCalendar file: {e}") from e
            for component in cal.walk('VEVENT'):
                try:
                    e = Event.from_ical_component(component)
                except (ValueError, TypeError) as exc:
                    logger.warning("Skipping unreadable VEVENT in %s: %s", file_path, exc)
                    continue
                if e:
                    incoming.append((e.date, e))

        policy = replace_events if replace else merge_events
        count = self._commit(lambda s: policy(s, incoming))
        logger.info("Imported %d events from %s", count, file_path)
        return count

    # --- Queries ---
    def events_on(self, day: date) -> List[Event]:
        with self.store.lock:
            return [e.copy() for e in self.store.events_on(day)]

    def events_between(self, start: date, end: date) -> Dict[date, List[Event]]:
        with self.store.lock:
            return {
                d: [e.copy() for e in events]
                for d, events in self.store.events_between(start, end).items()
            }

    def event_count(self) -> int:
        return len(self.store)
