"""{{macro}} substitution over assembled prompt text."""

import logging
import re
import time
from datetime import datetime, tzinfo
from typing import Callable, Optional, Union

logger = logging.getLogger("chatwire.macros")

_MACRO_RE = re.compile(r"\{\{([^{}]+)\}\}")

MacroValue = Union[str, Callable[[], str]]


class MacroExpander:
    """Expands {{name}} tokens. Unknown names are left as written."""

    def __init__(
        self,
        user_name: str,
        char_name: str = "",
        tz: Optional[tzinfo] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._macros: dict[str, MacroValue] = {}
        self._clock = clock
        self._tz = tz
        self.register("user", user_name)
        self.register("char", char_name)
        self.register("time", self._now_clock)
        self.register("当前时间", self._now_full)
        self.register("date", self._now_date)

    def register(self, name: str, value: MacroValue):
        self._macros[name.strip().lower()] = value

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), self._tz)

    def _now_clock(self) -> str:
        return self._now().strftime("%H:%M")

    def _now_date(self) -> str:
        return self._now().strftime("%Y-%m-%d")

    def _now_full(self) -> str:
        return self._now().strftime("%Y-%m-%d %H:%M")

    def expand(self, text: str) -> str:
        if "{{" not in text:
            return text

        def _sub(match: re.Match) -> str:
            value = self._macros.get(match.group(1).strip().lower())
            if value is None:
                return match.group(0)
            return value() if callable(value) else value

        return _MACRO_RE.sub(_sub, text)
