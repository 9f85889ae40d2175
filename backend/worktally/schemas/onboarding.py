"""Pydantic schemas for the onboarding wizard.

The same models serialize the durable Redis copy of the wizard state
(camelCase aliases, ISO-8601 timestamps) and the API payloads, so a
state written by one worker can be read back by any other.

Departments / service types / roles arrive either as bare strings or
as {id?, name, description?} objects; they are normalized into
NamedItem on read so nothing downstream has to care.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PASSWORD_PLACEHOLDER = "[PASSWORD_PROTECTED]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises ValueError for anything unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str):
            raise ValueError(f"Not a timestamp: {value!r}")
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enumerations ────────────────────────────────────────────

class Industry(str, enum.Enum):
    HEALTHCARE = "healthcare"
    TECHNOLOGY = "technology"
    RETAIL = "retail"
    CONTRACTING = "contracting"
    CONSTRUCTION = "construction"
    CONSULTING = "consulting"
    EDUCATION = "education"
    FINANCE = "finance"
    HOSPITALITY = "hospitality"
    LEGAL = "legal"
    MANUFACTURING = "manufacturing"
    NONPROFIT = "nonprofit"
    PROFESSIONAL_SERVICES = "professional_services"
    TRANSPORTATION = "transportation"
    OTHER = "other"


class OrganizationSize(str, enum.Enum):
    SMALL = "1-10"
    MEDIUM = "11-50"
    LARGE = "51+"


# ── Steps ───────────────────────────────────────────────────

class Step(CamelModel):
    id: str
    title: str
    completed: bool = False
    current: bool = False


STEP_TITLES: list[tuple[str, str]] = [
    ("welcome", "Welcome"),
    ("organization", "Organization Details"),
    ("admin", "Admin Account"),
    ("team", "Team Setup"),
    ("review", "Review & Submit"),
    ("complete", "Complete"),
]


def default_steps() -> list[Step]:
    return [
        Step(id=step_id, title=title, current=(index == 0))
        for index, (step_id, title) in enumerate(STEP_TITLES)
    ]


# ── Collected form data ─────────────────────────────────────

class OrganizationDetails(CamelModel):
    name: str | None = None
    industry: Industry | None = None
    size: OrganizationSize | None = None
    website: str | None = None


class AdminAccount(CamelModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    # Real value only in memory / the short-lived store. The durable
    # copy holds PASSWORD_PLACEHOLDER plus password_stored=True.
    password: str | None = None
    role: Literal["owner", "admin"] | None = None
    password_stored: bool = False


class NamedItem(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str | None = None


def normalize_named_items(value) -> list[dict]:
    """Coerce `string | {name, ...}` entries into NamedItem-shaped dicts."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("Expected a list of names or {name} objects")
    items = []
    for entry in value:
        if isinstance(entry, NamedItem):
            items.append(entry.model_dump())
        elif isinstance(entry, str):
            if entry.strip():
                items.append({"name": entry.strip()})
        elif isinstance(entry, dict) and entry.get("name"):
            items.append(entry)
        else:
            raise ValueError(f"Invalid entry: {entry!r}")
    return items


class TeamConfiguration(CamelModel):
    expected_users: int | None = 0
    departments: list[NamedItem] = Field(default_factory=list)
    roles: list[NamedItem] = Field(default_factory=list)
    service_types: list[NamedItem] = Field(default_factory=list)

    @field_validator("departments", "roles", "service_types", mode="before")
    @classmethod
    def _normalize(cls, value):
        return normalize_named_items(value)

    def department_names(self) -> list[str]:
        return [d.name for d in self.departments]

    def service_type_names(self) -> list[str]:
        return [s.name for s in self.service_types]


class ValidationIssue(CamelModel):
    field: str
    message: str


class ValidationResult(CamelModel):
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


# ── Whole wizard state ──────────────────────────────────────

class OnboardingState(CamelModel):
    current_step_index: int = 0
    steps: list[Step] = Field(default_factory=default_steps)
    organization: OrganizationDetails = Field(default_factory=OrganizationDetails)
    admin: AdminAccount = Field(default_factory=AdminAccount)
    team: TeamConfiguration = Field(default_factory=TeamConfiguration)
    validation: ValidationResult = Field(default_factory=ValidationResult)
    completed: bool = False
    submitted: bool = False
    expires_at: datetime | None = None
    last_updated: datetime = Field(default_factory=utcnow)

    @field_validator("expires_at", "last_updated", mode="before")
    @classmethod
    def _parse_timestamps(cls, value, info):
        if value is None or value == "":
            return None if info.field_name == "expires_at" else utcnow()
        return parse_timestamp(value)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    def current_step(self) -> Step | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def step_index(self, step_id: str) -> int:
        """Index of the step with this id, or -1."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def to_storage(self) -> dict:
        """JSON-ready dict in the persisted (camelCase) layout."""
        return self.model_dump(mode="json", by_alias=True)

    def redacted(self) -> "OnboardingState":
        """Copy safe to return to clients: no password, just the marker."""
        admin = self.admin.model_copy(
            update={
                "password": None,
                "password_stored": self.admin.password_stored
                or bool(self.admin.password and self.admin.password != PASSWORD_PLACEHOLDER),
            }
        )
        return self.model_copy(update={"admin": admin})


def initial_state() -> OnboardingState:
    """The canonical initial wizard state."""
    return OnboardingState()


# ── Reducer actions ─────────────────────────────────────────

class NextStep(BaseModel):
    type: Literal["NEXT_STEP"] = "NEXT_STEP"


class PreviousStep(BaseModel):
    type: Literal["PREVIOUS_STEP"] = "PREVIOUS_STEP"


class SetStep(BaseModel):
    type: Literal["SET_STEP"] = "SET_STEP"
    payload: int


class UpdateOrganization(BaseModel):
    type: Literal["UPDATE_ORGANIZATION"] = "UPDATE_ORGANIZATION"
    payload: dict


class UpdateAdmin(BaseModel):
    type: Literal["UPDATE_ADMIN"] = "UPDATE_ADMIN"
    payload: dict


class UpdateTeam(BaseModel):
    type: Literal["UPDATE_TEAM"] = "UPDATE_TEAM"
    payload: dict


class SetValidationErrors(BaseModel):
    type: Literal["SET_VALIDATION_ERRORS"] = "SET_VALIDATION_ERRORS"
    payload: list[ValidationIssue]


class SetValidationWarnings(BaseModel):
    type: Literal["SET_VALIDATION_WARNINGS"] = "SET_VALIDATION_WARNINGS"
    payload: list[ValidationIssue]


class CompleteStep(BaseModel):
    type: Literal["COMPLETE_STEP"] = "COMPLETE_STEP"
    payload: str


class CompleteOnboarding(BaseModel):
    type: Literal["COMPLETE_ONBOARDING"] = "COMPLETE_ONBOARDING"


class SubmitOnboarding(BaseModel):
    type: Literal["SUBMIT_ONBOARDING"] = "SUBMIT_ONBOARDING"


class LoadSavedState(BaseModel):
    type: Literal["LOAD_SAVED_STATE"] = "LOAD_SAVED_STATE"
    payload: dict


class ResetOnboarding(BaseModel):
    type: Literal["RESET_ONBOARDING"] = "RESET_ONBOARDING"


OnboardingAction = Annotated[
    Union[
        NextStep,
        PreviousStep,
        SetStep,
        UpdateOrganization,
        UpdateAdmin,
        UpdateTeam,
        SetValidationErrors,
        SetValidationWarnings,
        CompleteStep,
        CompleteOnboarding,
        SubmitOnboarding,
        LoadSavedState,
        ResetOnboarding,
    ],
    Field(discriminator="type"),
]


class ActionEnvelope(BaseModel):
    """Request body for POST /api/onboarding/actions."""
    action: OnboardingAction


# ── API responses ───────────────────────────────────────────

class StepCompletionResponse(BaseModel):
    state: OnboardingState
    validation: ValidationResult
