"""Signal extraction from raw agent terminal output.

Terminal output arrives in arbitrary chunks: a JSON result object, a session
id or a prompt can straddle chunk boundaries. The module-level functions are
pure extractors over a piece of text; StreamScanner keeps the per-channel
accumulation needed to apply them across chunks.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from .models import PendingPrompt, PromptKind

logger = logging.getLogger(__name__)

DEFAULT_SENTINEL = "___AGENT_DONE___"

# Regex to match ANSI escape codes (comprehensive)
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences (including private modes like ?2026h)
    r'\x1b\][^\x07]*\x07|'       # OSC sequences (title, etc.)
    r'\x1b[PX^_].*?\x1b\\|'      # DCS, SOS, PM, APC sequences
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'\x1b[=>]|'                 # Keypad modes
    r'\x1b[78]|'                 # Save/restore cursor
    r'\x1b[DMEHc]|'              # Various single-char commands
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters (keeps \t \n \r)
)

# Resume id patterns, tried in order
SESSION_ID_FIELD_RE = re.compile(r'"session_id"\s*:\s*"([^"]+)"')
UUID_RE = re.compile(r'([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})', re.IGNORECASE)

# Start of the structured result object printed by `--output-format json`
RESULT_PREFIX_RE = re.compile(r'\{\s*"type"\s*:\s*"result"')

# Characters that change brace-matching state, outside and inside JSON strings
STRUCTURAL_RE = re.compile(r'[{}"]')
STRING_SPECIAL_RE = re.compile(r'["\\]')

# Menu: a question line followed by numbered options (❯ marks the current selection)
#   Do you want to make this edit?
#   ❯ 1. Yes
#     2. Yes, allow all edits
#     3. No
# Only complete lines take part, so an option still arriving is never cut short.
MENU_PROMPT_RE = re.compile(r'([^\n]+\?)[ \t]*\n((?:[ \t]*[❯>]?[ \t]*\d+\.[ \t]*[^\n]+\n)+)')
MENU_OPTION_PREFIX_RE = re.compile(r'^\s*[❯>]?\s*\d+\.\s*')

# Binary: "Do you want to proceed? (y/n)" or "Trust this folder? [Y/n]"
BINARY_PROMPT_RE = re.compile(r'([^\n]*\?)\s*[\[(]([yYnN])/([yYnN])[\])]')

# Workspace trust prompts, matched case-insensitively
TRUST_PHRASES = (
    "trust this folder",
    "trust this workspace",
)
TRUST_TITLE_RE = re.compile(r'([^\n]*trust this (?:folder|workspace)[^\n]*)', re.IGNORECASE)
TRUST_NUMBERED_OPTIONS_RE = re.compile(r'\d+\.\s*(Yes|No)', re.IGNORECASE)


def make_sentinel(base: str, seq: int) -> str:
    """Completion marker for the seq-th dispatched command, e.g. ___AGENT_DONE_7___."""
    return f"{base.rstrip('_')}_{seq}___"


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters, normalizing line ends."""
    text = ANSI_ESCAPE_RE.sub('', text)
    # Second pass: remove any remaining escape sequences we might have missed
    text = re.sub(r'\x1b[^a-zA-Z]*[a-zA-Z]', '', text)
    return text.replace('\r\n', '\n').replace('\r', '\n')


def extract_resume_id(text: str) -> Optional[str]:
    """Find a conversation id: the JSON session_id field first, then any UUID."""
    match = SESSION_ID_FIELD_RE.search(text) or UUID_RE.search(text)
    return match.group(1) if match else None


class BraceMatcher:
    """
    Incremental brace matcher for one JSON object.

    Text is fed piece by piece; depth and string state carry over between
    feeds, so every character is examined once however the object is split.
    Braces inside JSON strings are ignored.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.depth = 0
        self.in_string = False
        self.escaped = False

    def feed(self, text: str, start: int = 0) -> Optional[int]:
        """Return the index in `text` just past the closing brace, or None while the object is open."""
        i = start
        while True:
            if self.escaped:
                if i >= len(text):
                    return None
                i += 1
                self.escaped = False
                continue
            pattern = STRING_SPECIAL_RE if self.in_string else STRUCTURAL_RE
            match = pattern.search(text, i)
            if match is None:
                return None
            ch = match.group()
            i = match.end()
            if ch == '\\':
                self.escaped = True
            elif ch == '"':
                self.in_string = not self.in_string
            elif ch == '{':
                self.depth += 1
            else:
                self.depth -= 1
                if self.depth == 0:
                    return i


def find_balanced_end(text: str, start: int) -> Optional[int]:
    """
    Return the index just past the brace that closes the object at `start`.

    Braces inside JSON strings are ignored. Returns None while the object is
    still open.
    """
    return BraceMatcher().feed(text, start)


def _parse_candidate(raw: str) -> Optional[dict]:
    # Terminals may hard-wrap long lines; raw newlines are never valid inside JSON strings
    try:
        parsed = json.loads(raw.replace('\n', ''))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def find_result_object(text: str) -> tuple[Optional[dict], int]:
    """
    Locate and parse the first complete structured result object in text.

    Returns:
        (parsed object, end offset) on success, (None, -1) if no complete
        object is available yet. A balanced candidate that fails to parse
        counts as not complete.
    """
    for match in RESULT_PREFIX_RE.finditer(text):
        end = find_balanced_end(text, match.start())
        if end is None:
            return None, -1
        parsed = _parse_candidate(text[match.start():end])
        if parsed is not None:
            return parsed, end
    return None, -1


def _complete_lines(text: str) -> str:
    return text[:text.rfind('\n') + 1]


def _menu_from_match(match: re.Match) -> Optional[PendingPrompt]:
    options = [
        MENU_OPTION_PREFIX_RE.sub('', line).strip()
        for line in match.group(2).split('\n')
    ]
    options = [opt for opt in options if opt]
    if len(options) < 2:
        return None
    return PendingPrompt(
        kind=PromptKind.MENU,
        title=match.group(1).strip(),
        options=options,
        raw=match.group(0),
    )


def menu_still_arriving(text: str) -> bool:
    """True if the complete lines of text end inside a menu's option block."""
    lines = _complete_lines(text)
    last = None
    for last in MENU_PROMPT_RE.finditer(lines):
        pass
    return last is not None and last.end() == len(lines)


def _detect_menu(text: str) -> Optional[PendingPrompt]:
    for match in MENU_PROMPT_RE.finditer(_complete_lines(text)):
        prompt = _menu_from_match(match)
        if prompt:
            return prompt
    return None


def _detect_binary(text: str) -> Optional[PendingPrompt]:
    match = BINARY_PROMPT_RE.search(text)
    if not match:
        return None
    return PendingPrompt(
        kind=PromptKind.BINARY,
        title=match.group(1).strip(),
        options=["Yes", "No"],
        raw=match.group(0),
    )


def _detect_trust(text: str) -> Optional[PendingPrompt]:
    lowered = text.lower()
    if not any(phrase in lowered for phrase in TRUST_PHRASES):
        return None
    title_match = TRUST_TITLE_RE.search(text)
    title = title_match.group(1).strip() if title_match else "Trust this folder?"
    if TRUST_NUMBERED_OPTIONS_RE.search(text):
        return PendingPrompt(
            kind=PromptKind.MENU,
            title=title,
            options=["Yes, trust this folder", "No, exit"],
            raw=text,
        )
    return PendingPrompt(kind=PromptKind.BINARY, title=title, options=["Yes", "No"], raw=text)


def detect_prompt(text: str, settled: bool = True) -> Optional[PendingPrompt]:
    """
    Detect an interactive prompt. Precedence: menu, binary, trust phrase.

    Menus are read from complete lines only. With settled=False (more output
    may follow) nothing is reported while the text ends inside a menu's
    option block; the menu is reported once a non-option line follows it.
    With settled=True the text is final and an unterminated last line counts.
    """
    if settled:
        if not text.endswith('\n'):
            text += '\n'
    elif menu_still_arriving(text):
        return None
    for detector in (_detect_menu, _detect_binary, _detect_trust):
        prompt = detector(text)
        if prompt:
            return prompt
    return None


@dataclass
class ScanResult:
    """Signals found in one chunk (plus accumulated text)."""
    text: str = ""
    resume_id: Optional[str] = None
    result: Optional[dict] = None
    prompt: Optional[PendingPrompt] = None
    prompt_unsettled: bool = False  # A menu is still arriving; settle() once output goes quiet
    completed: bool = False


class StreamScanner:
    """
    Incremental scanner for one channel's output stream.

    Keeps bounded state: the text of a result object still being received
    (or a short carry while none has started), the unterminated tail of the
    last line (for the sentinel) and recent text not yet consumed by a
    prompt match.
    """

    def __init__(
        self,
        max_buffer_chars: int = 1_000_000,
        carry_chars: int = 512,
        prompt_window_chars: int = 4000,
    ):
        self.max_buffer_chars = max_buffer_chars
        self.carry_chars = carry_chars
        self.prompt_window_chars = prompt_window_chars
        self._buffer = ""
        self._object_parts: Optional[list[str]] = None
        self._object_len = 0
        self._matcher = BraceMatcher()
        self._id_tail = ""
        self._line_tail = ""
        self._prompt_window = ""

    def reset(self):
        """Forget accumulated command output (called when a command is dispatched)."""
        self._buffer = ""
        self._object_parts = None
        self._object_len = 0
        self._id_tail = ""
        self._line_tail = ""

    def clear_prompt_window(self):
        self._prompt_window = ""

    def scan(
        self,
        chunk: str,
        awaiting_resume_id: bool = False,
        sentinel: Optional[str] = None,
        prompt_pending: bool = False,
    ) -> ScanResult:
        """
        Apply every extractor to a raw chunk.

        Args:
            chunk: Raw output as read from the process
            awaiting_resume_id: Whether the channel wants a resume id captured
            sentinel: Completion line of the command in flight (None when idle)
            prompt_pending: Whether a prompt is already outstanding (suppresses detection)

        Returns:
            ScanResult with the cleaned text and any signals found
        """
        clean = strip_ansi(chunk)
        result = ScanResult(text=clean)

        id_window = self._id_tail + clean
        self._id_tail = id_window[-self.carry_chars:]
        if awaiting_resume_id:
            result.resume_id = extract_resume_id(id_window)

        result.result = self._consume_results(clean)

        if prompt_pending:
            self._prompt_window = ""
        else:
            self._prompt_window = (self._prompt_window + clean)[-self.prompt_window_chars:]
            result.prompt = detect_prompt(self._prompt_window, settled=False)
            if result.prompt:
                self._prompt_window = ""
            else:
                result.prompt_unsettled = menu_still_arriving(self._prompt_window)

        result.completed = self._consume_lines(clean, sentinel)
        return result

    def settle(self) -> Optional[PendingPrompt]:
        """Treat the prompt window as final (output went quiet) and report any prompt in it."""
        prompt = detect_prompt(self._prompt_window, settled=True)
        if prompt:
            self._prompt_window = ""
        return prompt

    def _consume_results(self, text: str) -> Optional[dict]:
        """Feed text through the result matcher; return the first object completed in it."""
        found = None
        while text:
            if self._object_parts is None:
                text = self._buffer + text
                match = RESULT_PREFIX_RE.search(text)
                if match is None:
                    self._buffer = text[-self.carry_chars:]
                    break
                self._buffer = ""
                self._object_parts = []
                self._object_len = 0
                self._matcher.reset()
                text = text[match.start():]

            end = self._matcher.feed(text)
            if end is None:
                self._object_parts.append(text)
                self._object_len += len(text)
                if self._object_len > self.max_buffer_chars:
                    logger.warning(f"Discarding oversized unterminated result object ({self._object_len} chars)")
                    self._object_parts = None
                    self._buffer = text[-self.carry_chars:]
                break

            self._object_parts.append(text[:end])
            raw = "".join(self._object_parts)
            self._object_parts = None
            parsed = _parse_candidate(raw)
            if parsed is None:
                # Not a valid object after all; look again just past its opening brace
                text = raw[1:] + text[end:]
                continue
            if found is None:
                found = parsed
            else:
                logger.debug("Ignoring extra result object in the same chunk")
            text = text[end:]
        return found

    def _consume_lines(self, clean: str, sentinel: Optional[str]) -> bool:
        """Return True if a complete line equal to the expected sentinel was seen."""
        lines = (self._line_tail + clean).split('\n')
        # Last element is unterminated; hold it back until its newline arrives
        self._line_tail = lines.pop()[-self.carry_chars:]
        if not sentinel:
            return False
        return any(line.strip() == sentinel for line in lines)
