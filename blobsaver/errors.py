# errors.py
from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Tuple

ASK_TO_REPORT_BUG = (
    "\n\nPlease create a new issue on Github or PM me on Reddit. "
    "The log has been copied to your clipboard."
)

PRESET_HINT = (
    "If this was done to test whether the preset works in the background, "
    "please cancel that preset, fix the error, and try again."
)


class FormField(Enum):
    """Logical input fields an error can point at. The view maps these to widgets."""
    ECID = "ecid"
    DEVICE = "device_identifier"
    VERSION = "version"
    APNONCE = "apnonce"
    BOARD_CONFIG = "board_config"
    SAVE_PATH = "save_path"
    IPSW_URL = "ipsw_url"
    BUILD_ID = "build_id"


class TSSCheckerError(RuntimeError):
    """Base error for everything that can go wrong while saving blobs."""

    reportable = False

    def __init__(self, message: str, append_message: bool = True,
                 invalid_fields: Iterable[FormField] = ()) -> None:
        super().__init__(message + ASK_TO_REPORT_BUG if append_message else message)
        self.invalid_fields: Tuple[FormField, ...] = tuple(invalid_fields)
        # raw tsschecker output, when the error came from classifying it
        self.log: Optional[str] = None

    @property
    def message(self) -> str:
        return str(self)

    @property
    def invalid_element(self) -> Optional[FormField]:
        return self.invalid_fields[0] if self.invalid_fields else None

    def is_reportable(self) -> bool:
        return self.reportable


class Reportable(TSSCheckerError):
    """Unexpected failure; the user should be offered to report it."""

    reportable = True

    def __init__(self, message: str, append_message: bool = True,
                 invalid_fields: Iterable[FormField] = (),
                 original_exception: Optional[BaseException] = None) -> None:
        super().__init__(message, append_message, invalid_fields)
        self.original_exception = original_exception


class Unreportable(TSSCheckerError):
    """User-correctable input error."""


def invalid_url_error(url: str) -> Unreportable:
    return Unreportable(
        f'"{url}" is not a valid URL.\n\n'
        'Make sure it starts with "http://" or "https://", has "apple" in it, '
        'and ends with ".ipsw"',
        invalid_fields=(FormField.IPSW_URL,),
    )
