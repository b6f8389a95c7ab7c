from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from registry_crawlers.deadline import Deadline


class RunStatus(Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    CAPTCHA_FAILED = "captcha_failed"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    SITE_CHANGED = "site_changed"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


class ChallengeKind(Enum):
    RECAPTCHA_V2 = "recaptcha_v2"
    HCAPTCHA = "hcaptcha"
    IMAGE = "image"


@dataclass(frozen=True)
class RunRequest:
    file_number: str
    request_id: str
    deadline: Deadline

    @classmethod
    def create(cls, file_number: str, request_id: str, budget_seconds: float) -> RunRequest:
        file_number = file_number.strip()
        request_id = request_id.strip()
        if not file_number:
            raise ValueError("file_number must not be empty")
        if not request_id:
            raise ValueError("request_id must not be empty")
        return cls(file_number=file_number, request_id=request_id, deadline=Deadline(budget_seconds))


@dataclass(frozen=True)
class Challenge:
    kind: ChallengeKind
    page_url: str
    discovered_at: float
    site_key: str = ""
    image_b64: str = ""
    challenge_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def with_image(self, image_b64: str) -> Challenge:
        return Challenge(
            kind=self.kind,
            page_url=self.page_url,
            discovered_at=self.discovered_at,
            site_key=self.site_key,
            image_b64=image_b64,
            challenge_id=self.challenge_id,
        )


@dataclass(frozen=True)
class SolvedToken:
    value: str
    job_id: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ManagerRecord:
    name: str
    address: str
    role: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "address": self.address, "role": self.role}


@dataclass(frozen=True)
class EntityRecord:
    business_name: str
    business_address: str
    status: str
    managers: tuple[ManagerRecord, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "Business Name": self.business_name,
            "Business Address": self.business_address,
            "Status": self.status,
            "managers": [manager.to_dict() for manager in self.managers],
        }


@dataclass(frozen=True)
class RunResult:
    request_id: str
    file_number: str
    status: RunStatus
    record: EntityRecord | None = None
    reason: str | None = None
    log_path: str = ""
    transitions_path: str = ""
    screenshots: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if (self.record is not None) != (self.status is RunStatus.SUCCESS):
            raise ValueError(
                f"RunResult record must be set if and only if status is success "
                f"(status={self.status.value}, record={'set' if self.record else 'missing'})"
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "file_number": self.file_number,
            "request_id": self.request_id,
            "status": self.status.value,
            "data": self.record.to_dict() if self.record is not None else None,
            "reason": self.reason,
            "diagnostics": {
                "log": self.log_path,
                "transitions": self.transitions_path,
                "screenshots": list(self.screenshots),
            },
        }
