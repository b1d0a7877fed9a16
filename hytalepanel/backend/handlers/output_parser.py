"""
Output Parser

Parses hytale-downloader text output. The downloader has no structured
interface, so every pattern the installer depends on lives here.

All matching is case-insensitive. Unmatched input yields None/False.
"""

import codecs
import re
from dataclasses import dataclass
from typing import List, Optional, Union

AUTH_DOMAIN = "hytale.com"
VERIFICATION_URL_BASE = "https://oauth.accounts.hytale.com/oauth2/device/verify"

# https://oauth.accounts.hytale.com/oauth2/device/verify?user_code=caHcKDCE
URL_WITH_CODE_PATTERN = re.compile(
    r'(https?://oauth\.accounts\.hytale\.com/oauth2/device/verify\?user_code=([A-Za-z0-9]+))',
    re.IGNORECASE
)
BASE_URL_PATTERN = re.compile(
    r'(https?://oauth\.accounts\.hytale\.com/oauth2/device/verify)',
    re.IGNORECASE
)

# "Authorization code: caHcKDCE", "Enter code: ABCD-1234", "user_code=caHcKDCE"
CODE_PATTERNS = [
    re.compile(r'Authorization code:\s*([A-Za-z0-9]+)', re.IGNORECASE),
    re.compile(r'Enter code:\s*([A-Za-z0-9-]+)', re.IGNORECASE),
    re.compile(r'user_code[=:]\s*([A-Za-z0-9]+)', re.IGNORECASE),
]

# "] 29.0% (413.5 MB / 1.4 GB)" and friends, tried in order
PROGRESS_PATTERNS = [
    re.compile(r'\]\s*(\d+(?:\.\d+)?)%'),
    re.compile(r'(\d+(?:\.\d+)?)%\s*\('),
    re.compile(r'progress[:\s]+(\d+(?:\.\d+)?)%', re.IGNORECASE),
]

# successfully downloaded ... to "2026.02.17-255364b8e.zip"
ARCHIVE_NAME_PATTERN = re.compile(r'to\s+"([^"]+\.zip)"', re.IGNORECASE)

# 2026.02.17-255364b8e
VERSION_PATTERN = re.compile(r'(\d{4}\.\d{2}\.\d{2}-[0-9a-f]+)', re.IGNORECASE)

AUTH_SUCCESS_PHRASES = ("authentication successful", "authorized")
UP_TO_DATE_PHRASE = "up to date"
DOWNLOADING_PATTERN = re.compile(r'\bdownloading\b', re.IGNORECASE)
INSTRUCTION_WORDS = ("authenticate", "authorization code")


@dataclass
class DeviceAuth:
    """Device-authorization prompt found in output. Either field may be missing."""
    url: Optional[str] = None
    code: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.url or self.code)


def parse_device_auth(text: str) -> DeviceAuth:
    """
    Extract the verification URL and user code from a fragment of output.

    A URL carrying user_code supplies the code directly. Otherwise URL and
    code are matched independently and may come from different lines.
    """
    result = DeviceAuth()
    if not text:
        return result

    url_match = URL_WITH_CODE_PATTERN.search(text)
    if url_match:
        result.url = url_match.group(1)
        result.code = url_match.group(2)
        return result

    base_match = BASE_URL_PATTERN.search(text)
    if base_match:
        result.url = base_match.group(1)

    for pattern in CODE_PATTERNS:
        match = pattern.search(text)
        if match:
            result.code = match.group(1)
            break

    return result


def is_auth_success(line: str) -> bool:
    lower = line.lower()
    return any(phrase in lower for phrase in AUTH_SUCCESS_PHRASES)


def detect_archive_name(line: str) -> Optional[str]:
    """Return the archive filename the downloader says it wrote, if this line announces one."""
    match = ARCHIVE_NAME_PATTERN.search(line)
    return match.group(1) if match else None


def extract_progress(line: str) -> Optional[int]:
    """Return the first percentage found in line, floored to an int."""
    for pattern in PROGRESS_PATTERNS:
        match = pattern.search(line)
        if match:
            return int(float(match.group(1)))
    return None


def apply_progress_ratchet(current: int, candidate: Optional[int]) -> int:
    """Only ever move progress forward, and never past 100."""
    if candidate is None:
        return current
    if current < candidate <= 100:
        return candidate
    return current


def is_up_to_date(line: str) -> bool:
    return UP_TO_DATE_PHRASE in line.lower()


def is_download_indicator(line: str) -> bool:
    """True when the line shows the game download has begun."""
    return extract_progress(line) is not None or DOWNLOADING_PATTERN.search(line) is not None


def is_interactive_instruction(line: str) -> bool:
    """Lines asking the operator to do something; never a result value."""
    lower = line.lower()
    return AUTH_DOMAIN in lower or any(word in lower for word in INSTRUCTION_WORDS)


def parse_version_from_archive(name: str) -> Optional[str]:
    match = VERSION_PATTERN.search(name or "")
    return match.group(1) if match else None


def last_informational_line(lines: List[str]) -> Optional[str]:
    """Pick the last non-empty line that is not an interactive instruction."""
    for line in reversed(lines):
        stripped = line.strip()
        if stripped and not is_interactive_instruction(stripped):
            return stripped
    return None


class LineSplitter:
    """
    Turns output chunks into complete lines.

    Lines end at '\\n' or '\\r' (progress bars redraw with carriage returns).
    The trailing partial line is held until more data arrives or flush().
    """

    def __init__(self):
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

    def decode(self, chunk: Union[bytes, str]) -> str:
        """Decode a byte chunk, holding back a multi-byte character split across chunks."""
        if isinstance(chunk, bytes):
            return self._decoder.decode(chunk)
        return chunk

    def split(self, text: str) -> List[str]:
        data = self._pending + text
        parts = re.split(r'\r\n|\r|\n', data)
        self._pending = parts.pop()
        return [p for p in parts if p.strip()]

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        return self.split(self.decode(chunk))

    def flush(self) -> List[str]:
        remainder = self._pending + self._decoder.decode(b'', final=True)
        self._pending = ""
        return [remainder] if remainder.strip() else []
