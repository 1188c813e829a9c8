from datetime import date
from typing import Optional


class CalendarError(Exception):
    """所有日历核心错误的基类。"""


class ParseError(CalendarError):
    """单行数据无法解析；调用方跳过该行继续。"""

    def __init__(self, line_number: int, line: str, reason: str):
        super().__init__(f"line {line_number}: {reason}: {line!r}")
        self.line_number = line_number
        self.line = line
        self.reason = reason


class StorageUnavailable(CalendarError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class OutOfRange(CalendarError, IndexError):
    def __init__(self, day: Optional[date], index: int):
        super().__init__(f"no event at index {index} on {day}")
        self.date = day
        self.index = index


class EmptyTitle(CalendarError, ValueError):
    def __init__(self):
        super().__init__("event title must not be empty")
