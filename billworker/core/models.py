"""
Run-scoped data model: input, credentials, bill matches and artifacts.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import InputInvalid


PDF_SIGNATURE = b"%PDF-"
REFERENCE_MONTH_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/\d{4}$")


class RunInput(BaseModel):
    """Parameters supplied by the external collaborator for one run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    captcha_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("captchaApiKey", "antiCaptchaKey", "captcha_api_key"),
    )
    installation_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("installationCode", "installation_code"),
    )
    reference_month: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("referenceMonth", "reference_month"),
    )

    @model_validator(mode="after")
    def check_invoice_pair(self) -> "RunInput":
        """installationCode and referenceMonth travel together."""
        # Blank strings count as absent
        self.installation_code = self.installation_code or None
        self.reference_month = self.reference_month or None
        if (self.installation_code is None) != (self.reference_month is None):
            raise ValueError("installationCode and referenceMonth must be given together")
        if self.reference_month and not REFERENCE_MONTH_PATTERN.match(self.reference_month):
            raise ValueError(f"referenceMonth must be MM/YYYY, got {self.reference_month!r}")
        return self

    @classmethod
    def parse(cls, data: Optional[Dict[str, Any]]) -> "RunInput":
        """Validate raw input, raising InputInvalid instead of ValidationError."""
        if not data:
            raise InputInvalid("Input is null or missing.")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
                for err in e.errors()
            )
            raise InputInvalid(f"Invalid input: {problems}") from e

    @property
    def wants_invoice(self) -> bool:
        return self.installation_code is not None


def normalize_username(raw: str) -> str:
    """
    Normalize a login name.

    National IDs (CPF/CNPJ) are typed with punctuation but the portal expects
    digits only; anything carrying an ``@`` is an e-mail and is kept as-is.
    """
    username = raw.strip()
    if "@" in username:
        return username
    return "".join(ch for ch in username if ch.isdigit())


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    @classmethod
    def from_input(cls, run_input: RunInput) -> "Credentials":
        username = normalize_username(run_input.username)
        if not username:
            raise InputInvalid("Username has no digits and is not an e-mail address.")
        return cls(username=username, password=run_input.password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class CaptchaTask:
    """A task submitted to the solving service."""
    task_id: Any
    site_key: str
    target_url: str
    status: TaskStatus = TaskStatus.PENDING
    solution_token: Optional[str] = None
    polls: int = 0

    def resolve(self, token: str):
        self.status = TaskStatus.READY
        self.solution_token = token

    def fail(self):
        self.status = TaskStatus.FAILED


@dataclass(frozen=True)
class BillMatch:
    """One occurrence of the reference month inside an installation block."""
    index: int
    label: str

    @property
    def sequence(self) -> int:
        return self.index + 1


def invoice_key(installation_code: str, reference_month: str, sequence: int) -> str:
    """Deterministic artifact key, e.g. ``invoice_9988_03-2025_1.pdf``."""
    return f"invoice_{installation_code}_{reference_month.replace('/', '-')}_{sequence}.pdf"


def is_pdf(data: bytes) -> bool:
    return data[:len(PDF_SIGNATURE)] == PDF_SIGNATURE


@dataclass
class DownloadArtifact:
    installation_code: str
    reference_month: str
    sequence: int
    data: bytes = field(repr=False)

    def __post_init__(self):
        if not is_pdf(self.data):
            raise ValueError("DownloadArtifact data must start with the PDF signature")

    @property
    def key(self) -> str:
        return invoice_key(self.installation_code, self.reference_month, self.sequence)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_record(self) -> Dict[str, Any]:
        return {
            "status": "downloaded",
            "file": self.key,
            "installation": self.installation_code,
            "month": self.reference_month,
            "sequence": self.sequence,
            "sizeBytes": self.size,
        }
