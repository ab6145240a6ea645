"""Per-contact regex scripts applied to narrative text before it reaches the prompt."""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("chatwire.postprocess")

_SLASHED_RE = re.compile(r"^/(.*)/([a-z]*)$", re.S)
_JS_GROUP_RE = re.compile(r"\$(\d+|&)")

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "u": 0,
    "y": 0,
}


@dataclass
class RegexScript:
    name: str
    find_regex: str                  # "/pattern/flags" or a bare pattern
    replace_string: str = ""
    trim_strings: list[str] = field(default_factory=list)
    disabled: bool = False
    prompt_only: bool = True         # only scripts meant for prompt text are applied

    @classmethod
    def from_dict(cls, data: dict) -> "RegexScript":
        return cls(
            name=data.get("name") or data.get("scriptName") or "",
            find_regex=data.get("find_regex") or data.get("findRegex") or "",
            replace_string=data.get("replace_string") or data.get("replaceString") or "",
            trim_strings=list(data.get("trim_strings") or data.get("trimStrings") or []),
            disabled=bool(data.get("disabled", False)),
            prompt_only=bool(data.get("prompt_only", data.get("only_format_prompt", True))),
        )


def compile_pattern(source: str) -> tuple[re.Pattern, int]:
    """Compile '/pat/flags' or a bare pattern. Returns (pattern, sub count).

    Without the g flag only the first match is replaced.
    """
    m = _SLASHED_RE.match(source)
    if not m:
        return re.compile(source), 1
    body, flag_chars = m.group(1), m.group(2)
    flags = 0
    for ch in flag_chars:
        if ch == "g":
            continue
        if ch not in _FLAG_MAP:
            raise ValueError(f"Unsupported regex flag {ch!r} in {source!r}")
        flags |= _FLAG_MAP[ch]
    return re.compile(body, flags), 0 if "g" in flag_chars else 1


def convert_replacement(replacement: str) -> str:
    """$1 / $& / {{match}} to Python's \\g<n> form."""
    escaped = replacement.replace("\\", "\\\\").replace("{{match}}", "$&")
    return _JS_GROUP_RE.sub(lambda m: "\\g<0>" if m.group(1) == "&" else f"\\g<{m.group(1)}>", escaped)


def run_script(script: RegexScript, text: str) -> str:
    if not script.find_regex:
        return text
    pattern, count = compile_pattern(script.find_regex)
    result = pattern.sub(convert_replacement(script.replace_string), text, count=count)
    for trim in script.trim_strings:
        if trim:
            result = result.replace(trim, "")
    return result


class TextPostProcessor:
    """Ordered regex scripts per contact."""

    def __init__(self, scripts: Optional[dict[str, list[RegexScript]]] = None):
        self._scripts = scripts or {}

    def set_scripts(self, contact_id: str, scripts: list[RegexScript]):
        self._scripts[contact_id] = list(scripts)

    async def apply(self, contact_id: str, text: str) -> str:
        result = text
        for script in self._scripts.get(contact_id, []):
            if script.disabled or not script.prompt_only:
                continue
            try:
                result = run_script(script, result)
            except (re.error, ValueError) as e:
                logger.warning(f"Regex script {script.name!r} skipped for {contact_id}: {e}")
        return result
