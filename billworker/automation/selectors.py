"""
Selector catalogue for the Light Agência Virtual portal.

The portal's markup drifts between sessions, so most lookups are ordered
fallback lists: entries are tried first to last and new variants are appended.
"""

from typing import Tuple

# ==================== Login ====================

USERNAME_INPUT = 'input[id*="wtUserNameInput"]'
PASSWORD_INPUT = 'input[id*="wtPasswordInput"]'
ERROR_BANNER = ".Feedback_Message_Error"

SUBMIT_STRATEGIES: Tuple[str, ...] = (
    'input[id*="wtEntrar"][type="submit"]',
    ".btn-entrar",
    'input[value="ENTRAR"]',
)

CHALLENGE_FRAME_MARKER = "google.com/recaptcha/api2/anchor"
SITE_KEY_ATTRIBUTE = "data-sitekey"
SITE_KEY_HOLDER = "[data-sitekey]"

TOKEN_FIELDS: Tuple[str, ...] = (
    "#g-recaptcha-response",
    'textarea[name="g-recaptcha-response"]',
    ".g-recaptcha textarea",
)

# ==================== Bill listing ====================

BILLS_CONTAINER = ".accordion-group"
LISTING_CONTAINERS = ".accordion-group, .accordion-item"
AJAX_WAIT = ".Feedback_AjaxWait"

INSTALLATION_ITEMS: Tuple[str, ...] = (
    ".accordion-item",
    ".accordion-item, .accordion-group",
)
INSTALLATION_CODE_LABELS: Tuple[str, ...] = (
    '.verde-span:text-is("{code}")',
    'text="{code}"',
)

CONTENT_CANDIDATES: Tuple[str, ...] = (
    ".accordion-item-content",
    ".accordion-body",
    ".accordion-inner",
    '[id*="content"]',
    '[id*="Content"]',
)
HEADER_CANDIDATES: Tuple[str, ...] = (
    ".accordion-item-header",
    ".accordion-heading",
    ".accordion-toggle",
    '[class*="header"]',
    '[class*="Header"]',
)
# The last icon wins: on paid bills the orange "multiple bills" chevron comes last
ICON_CANDIDATES: Tuple[str, ...] = (
    ".accordion-item-icon",
    ".accordion-toggle i",
    'i[class*="chevron"]',
    '[class*="chevron"]',
    ".fa-angle-down",
    'i[class*="angle-down"]',
)

BILL_ROWS = "tr"
EMPTY_ALERT = ".alert"
RECORD_ELEMENTS = "tr, .list-record, .TableVerticalAlign, .row.align-items-center"

MONTH_LABELS: Tuple[str, ...] = (
    'span:text-is("{month}")',
    'text="{month}"',
)

# ==================== Download ====================

DOWNLOAD_CONTROLS: Tuple[str, ...] = (
    ".fa-download",
    ".fa-file-pdf-o",
    'a[href*="Download" i]',
    '[id*="Download" i]',
    '[onclick*="download" i]',
    'button:has-text("Baixar")',
    'span:has-text("Download")',
    'span:has-text("Baixar")',
    'a:has-text("Baixar")',
    'a:has-text("Download")',
    '.material-symbols-outlined:has-text("download")',
    '[class*="material-symbols"]:has-text("download")',
)

# (a) row, card or grid cell holding the month label
ROW_ANCESTORS: Tuple[str, ...] = (
    "./ancestor::tr[1]",
    './ancestor::div[contains(@class, "TableVerticalAlign")][1]',
    './ancestor::div[contains(@class, "row")][1]',
)
# (b) plain containers at increasing depth
CONTAINER_ANCESTORS: Tuple[str, ...] = (
    "./ancestor::div[1]",
    "./ancestor::div[2]",
    "./ancestor::div[3]",
    "./ancestor::li[1]",
    './ancestor::*[contains(@class,"row")][1]',
)
# nearest enclosing link or button
CLICK_WRAPPERS: Tuple[str, ...] = (
    "./ancestor::*[self::a or self::button][1]",
)

REASON_MODALS: Tuple[str, ...] = (
    ".os-internal-Popup",
    '[role="dialog"]',
    ".modal.show",
)
REASON_SELECT = "select"
REASON_CONFIRM: Tuple[str, ...] = (
    'input[type="submit"][value*="Confirmar" i]',
    'button:has-text("Confirmar")',
    'a:has-text("Confirmar")',
    'button:has-text("Baixar")',
    'input[type="submit"]',
)


def any_of(candidates: Tuple[str, ...]) -> str:
    """Join fallbacks into one selector list (document order, not list order)."""
    return ", ".join(candidates)
