"""Default macro engine: `{{user}}`, `{{char}}` and friends."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

# Legacy angle-bracket macros, resolved before the {{...}} environment
_LEGACY = {
    "USER": "user",
    "BOT": "char",
    "CHAR": "char",
    "CHARIFNOTGROUP": "charIfNotGroup",
    "GROUP": "group",
}
_LEGACY_RE = re.compile(r"<(USER|BOT|CHAR|CHARIFNOTGROUP|GROUP)>", re.IGNORECASE)
_TRIM_RE = re.compile(r"(?:\r?\n)*{{trim}}(?:\r?\n)*", re.IGNORECASE)
_NEWLINE_RE = re.compile(r"{{newline}}", re.IGNORECASE)
_NOOP_RE = re.compile(r"{{noop}}", re.IGNORECASE)


@dataclass
class MacroEngine:
    """Substitutes placeholders with live values.

    Callable as `engine(text, user_name, char_name)`. Names are matched
    case-insensitively; unknown macros are left untouched.
    """

    group: str = ""
    extra: dict[str, str] = field(default_factory=dict)
    clock: Callable[[], datetime] = datetime.now

    def environment(self, user_name: str, char_name: str) -> dict[str, str]:
        now = self.clock()
        group = self.group.strip()
        env = {
            "user": user_name or "",
            "char": char_name or "",
            "charIfNotGroup": group or char_name or "",
            "group": group,
            "time": now.strftime("%H:%M"),
            "date": now.strftime("%Y-%m-%d"),
            "weekday": now.strftime("%A"),
        }
        env.update(self.extra)
        return env

    def __call__(self, text: str, user_name: str = "", char_name: str = "") -> str:
        if not text:
            return ""
        env = self.environment(user_name, char_name)

        text = _LEGACY_RE.sub(lambda m: env[_LEGACY[m.group(1).upper()]], text)
        text = _NEWLINE_RE.sub("\n", text)
        text = _TRIM_RE.sub("", text)
        text = _NOOP_RE.sub("", text)
        if "{{" not in text:
            return text

        for key, value in env.items():
            pattern = re.compile("{{" + re.escape(key) + "}}", re.IGNORECASE)
            text = pattern.sub(lambda _m, v=value: v, text)
        return text
